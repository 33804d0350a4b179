"""
Session module - Time-boxed vault key cache and device secret backends.
"""

from vaultctl.session.cache import SessionCache, SessionRecord
from vaultctl.session.secret_backend import (
    FileSecretBackend,
    InMemorySecretBackend,
    SecretBackend,
)

__all__ = [
    "FileSecretBackend",
    "InMemorySecretBackend",
    "SecretBackend",
    "SessionCache",
    "SessionRecord",
]
