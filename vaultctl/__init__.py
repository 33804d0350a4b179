"""
vaultctl - A Zero-Knowledge Encrypted Secret Store
==================================================

Client-side envelope encryption of credential records, synchronized
across devices through an optimistic-concurrency remote store.

Security Notice:
- All encryption and decryption happens locally
- Remote stores only ever see encrypted envelopes
- No secrets are logged
"""

from vaultctl.core.config import VaultctlConfig
from vaultctl.core.logging import get_secure_logger
from vaultctl.vault.manager import VaultContext, VaultManager

__version__ = "0.1.0"
__author__ = "vaultctl Team"

__all__ = ["VaultContext", "VaultManager", "VaultctlConfig", "get_secure_logger", "__version__"]
