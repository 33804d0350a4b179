"""
Vault module - Record model, envelope format and the vault manager.

The manager is imported from ``vaultctl.vault.manager`` directly, since
it depends on the storage and session packages.
"""

from vaultctl.vault.envelope import Envelope
from vaultctl.vault.models import Entry, EntrySummary, Vault

__all__ = ["Entry", "EntrySummary", "Envelope", "Vault"]
