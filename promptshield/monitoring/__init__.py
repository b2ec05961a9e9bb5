"""Security event monitoring for template operations."""

from promptshield.monitoring.audit_dispatcher import AuditDispatcher, AuditEntry, AuditSink
from promptshield.monitoring.security_monitor import (
    ALERT_RESOLVED_EVENT,
    SECURITY_ALERT_EVENT,
    SecurityEventMonitor,
    ViolationCounter,
    sanitize_details,
)

__all__ = [
    "AuditDispatcher",
    "AuditEntry",
    "AuditSink",
    "ALERT_RESOLVED_EVENT",
    "SECURITY_ALERT_EVENT",
    "SecurityEventMonitor",
    "ViolationCounter",
    "sanitize_details",
]
