"""
Core module - Contains configuration, logging, errors and cryptographic primitives.
"""

from vaultctl.core.config import VaultctlConfig
from vaultctl.core.logging import get_secure_logger, SecureLogFilter

__all__ = ["VaultctlConfig", "get_secure_logger", "SecureLogFilter"]
