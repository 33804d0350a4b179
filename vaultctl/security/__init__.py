"""
Security module - Tamper-aware audit trail.
"""

from vaultctl.security.audit import (
    AuditEvent,
    AuditEventType,
    AuditSeverity,
    TamperAwareAuditLog,
)

__all__ = [
    "AuditEvent",
    "AuditEventType",
    "AuditSeverity",
    "TamperAwareAuditLog",
]
