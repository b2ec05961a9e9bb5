"""
Security Event Monitor for template operations.

Aggregates security violations and other security events, keyed by user and
template, into higher-level alerts:

- TEMPLATE_INJECTION_ATTEMPT: any CRITICAL or code-injection violation
- REPEATED_SECURITY_VIOLATIONS: a user reaching the violation threshold
- MULTIPLE_FAILED_VALIDATIONS: a template reaching the violation threshold
- SUSPICIOUS_TEMPLATE_USAGE, UNUSUAL_ACCESS_PATTERN,
  PRIVILEGE_ESCALATION_ATTEMPT and RATE_LIMIT_EXCEEDED: one alert per event

Alerts live in memory with a one-way resolve lifecycle. Every read and
mutation of counters and alerts happens under a single re-entrant lock;
listeners and the audit sink are invoked after the lock is released.

Threshold windows are evaluated in one of two modes:

- ``cumulative`` (default): a counter holds an ever-increasing count plus the
  time of the last violation, and the window check is
  ``now - last_violation < window and count >= threshold``. Because the check
  runs right after recording, it reads the whole count for as long as the
  counter stays alive.
- ``sliding``: each counter also keeps the individual event times, pruned on
  read, and only events inside the trailing window are counted.
"""

import logging
import re
import secrets
import threading
from collections import deque
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Deque, Dict, List, Mapping, Optional, Sequence, Union

from promptshield.security.config import SecurityConfig
from promptshield.security.models import (
    SecurityAlert,
    SecurityAlertType,
    SecuritySeverity,
    ViolationType,
)

from .audit_dispatcher import AuditDispatcher, AuditEntry, AuditSink

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]
AlertListener = Callable[[str, SecurityAlert], None]

SECURITY_ALERT_EVENT = "security_alert"
ALERT_RESOLVED_EVENT = "alert_resolved"

OBJECT_PLACEHOLDER = "[Object]"

# Key, optional closing quote (JSON style), separator, then a whole quoted
# literal, a quoted literal cut off by truncation, or a bare token.
_SECRET_VALUE = (
    r"['\"]?\s{0,10}[:=]\s{0,10}"
    r"(?:(['\"])[^'\"\n]{0,200}\1|['\"][^'\"\n]{0,200}$|[^\s'\",;&]{1,200})"
)

_SECRET_ASSIGNMENTS = (
    (re.compile(r"password" + _SECRET_VALUE, re.IGNORECASE), "password=***"),
    (re.compile(r"api[_-]?key" + _SECRET_VALUE, re.IGNORECASE), "api_key=***"),
    (re.compile(r"secret" + _SECRET_VALUE, re.IGNORECASE), "secret=***"),
    (re.compile(r"token" + _SECRET_VALUE, re.IGNORECASE), "token=***"),
)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def sanitize_details(
    details: Optional[Mapping[str, Any]],
    max_length: int = 100,
) -> Dict[str, Any]:
    """Make free-form event details safe to store.

    Strings are truncated to ``max_length`` and secret assignments are
    redacted; nested mappings and sequences are replaced with a placeholder.
    Other scalar values are kept as they are.
    """
    if not details:
        return {}

    sanitized: Dict[str, Any] = {}
    for key, value in details.items():
        if isinstance(value, str):
            value = value[:max_length]
            for pattern, replacement in _SECRET_ASSIGNMENTS:
                value = pattern.sub(replacement, value)
            sanitized[str(key)] = value
        elif isinstance(value, (Mapping, list, tuple, set, frozenset)):
            sanitized[str(key)] = OBJECT_PLACEHOLDER
        else:
            sanitized[str(key)] = value
    return sanitized


@dataclass
class ViolationCounter:
    """Violation history for one user or template."""
    count: int = 0
    last_violation: Optional[datetime] = None
    events: Deque[datetime] = field(default_factory=deque)

    def record(self, now: datetime, track_events: bool = False) -> None:
        self.count += 1
        self.last_violation = now
        if track_events:
            self.events.append(now)

    def count_within(self, now: datetime, window: timedelta, mode: str = "cumulative") -> int:
        """Return the number of violations that count toward ``window``."""
        if self.last_violation is None:
            return 0
        if mode == "sliding":
            cutoff = now - window
            while self.events and self.events[0] <= cutoff:
                self.events.popleft()
            return len(self.events)
        if now - self.last_violation < window:
            return self.count
        return 0

    def is_idle(self, now: datetime, retention: timedelta) -> bool:
        return self.last_violation is None or now - self.last_violation > retention


class SecurityEventMonitor:
    """In-memory, thread-safe aggregator of template security events.

    Example:
        monitor = SecurityEventMonitor(audit_sink=audit_service)
        monitor.add_listener(lambda event, alert: notify(event, alert))
        alerts = monitor.record_security_violation(
            "u1", "tpl-1", ViolationType.CODE_INJECTION, SecuritySeverity.CRITICAL
        )
    """

    def __init__(
        self,
        config: Optional[SecurityConfig] = None,
        audit_sink: Optional[AuditSink] = None,
        clock: Optional[Clock] = None,
        synchronous_audit: bool = False,
    ):
        """
        Initialize the monitor.

        Args:
            config: Thresholds, windows and retention periods
            audit_sink: Receives audit entries through the dispatcher
            clock: Returns the current time; defaults to UTC wall clock
            synchronous_audit: Deliver audit entries inline
        """
        self.config = config or SecurityConfig()
        self.config.validate()
        self._clock = clock or _utc_now
        self._lock = threading.RLock()

        self._alerts: Dict[str, SecurityAlert] = {}
        self._user_counters: Dict[str, ViolationCounter] = {}
        self._template_counters: Dict[str, ViolationCounter] = {}
        self._listeners: List[AlertListener] = []

        self._audit = AuditDispatcher(
            audit_sink,
            queue_size=self.config.audit_queue_size,
            synchronous=synchronous_audit,
        )

        self._cleanup_thread: Optional[threading.Thread] = None
        self._stop_event = threading.Event()

    # ==================== Recording ====================

    def record_security_violation(
        self,
        user_id: str,
        template_id: Optional[str],
        violation_type: Union[ViolationType, str],
        severity: Union[SecuritySeverity, str],
        details: Optional[Mapping[str, Any]] = None,
    ) -> List[SecurityAlert]:
        """Record a violation and synthesize any alerts it triggers.

        Args:
            user_id: User who caused the violation (required)
            template_id: Template involved, if any
            violation_type: Category of the violation
            severity: Severity of the violation
            details: Free-form context, sanitized before storage

        Returns:
            Alerts created by this call, possibly empty

        Raises:
            ValueError: If user_id is empty or the type/severity is unknown
        """
        user_id = _require_user_id(user_id)
        violation_type = ViolationType(violation_type)
        severity = SecuritySeverity(severity)
        safe_details = sanitize_details(details, self.config.detail_max_length)
        sliding = self.config.window_mode == "sliding"

        with self._lock:
            now = self._clock()
            user_counter = self._user_counters.setdefault(user_id, ViolationCounter())
            user_counter.record(now, track_events=sliding)

            template_counter = None
            if template_id:
                template_counter = self._template_counters.setdefault(template_id, ViolationCounter())
                template_counter.record(now, track_events=sliding)

            created = self._evaluate_alert_rules(
                now, user_id, template_id, violation_type, severity,
                safe_details, user_counter, template_counter,
            )

        self._publish(created)
        self._audit.submit(AuditEntry(
            user_id=user_id,
            user_role="unknown",
            operation="SECURITY_VIOLATION_RECORDED",
            template_id=template_id,
            details={
                **safe_details,
                "violationType": violation_type.value,
                "severity": severity.value,
            },
            success=False,
            error_message=f"Security violation: {violation_type.value}",
        ))
        return created

    def record_suspicious_usage(
        self,
        user_id: str,
        template_id: Optional[str],
        patterns: Sequence[str],
        context: Optional[Mapping[str, Any]] = None,
    ) -> SecurityAlert:
        """Record suspicious rendering-time usage of a template."""
        user_id = _require_user_id(user_id)
        patterns = [str(p) for p in patterns]
        return self._record_single(
            SecurityAlertType.SUSPICIOUS_TEMPLATE_USAGE,
            SecuritySeverity.HIGH,
            f"Suspicious template usage detected: {', '.join(patterns)}",
            user_id=user_id,
            template_id=template_id,
            details={
                "suspiciousPatterns": patterns,
                "context": sanitize_details(context, self.config.detail_max_length),
            },
        )

    def record_unusual_access(
        self,
        user_id: str,
        pattern: str,
        details: Optional[Mapping[str, Any]] = None,
    ) -> SecurityAlert:
        """Record an unusual access pattern for a user."""
        user_id = _require_user_id(user_id)
        return self._record_single(
            SecurityAlertType.UNUSUAL_ACCESS_PATTERN,
            SecuritySeverity.MEDIUM,
            f"Unusual access pattern detected: {pattern}",
            user_id=user_id,
            details=sanitize_details(details, self.config.detail_max_length),
        )

    def record_privilege_escalation(
        self,
        user_id: str,
        operation: str,
        details: Optional[Mapping[str, Any]] = None,
    ) -> SecurityAlert:
        """Record an attempt to perform an operation beyond the user's role."""
        user_id = _require_user_id(user_id)
        return self._record_single(
            SecurityAlertType.PRIVILEGE_ESCALATION_ATTEMPT,
            SecuritySeverity.HIGH,
            f"Privilege escalation attempt: {operation}",
            user_id=user_id,
            details={
                **sanitize_details(details, self.config.detail_max_length),
                "operation": operation,
            },
        )

    def record_rate_limit_violation(
        self,
        user_id: str,
        endpoint: str,
        request_count: int,
        window_ms: int,
    ) -> SecurityAlert:
        """Record a rate limit violation."""
        user_id = _require_user_id(user_id)
        return self._record_single(
            SecurityAlertType.RATE_LIMIT_EXCEEDED,
            SecuritySeverity.MEDIUM,
            f"Rate limit exceeded: {request_count} requests in {window_ms}ms",
            user_id=user_id,
            details={
                "endpoint": endpoint,
                "requestCount": request_count,
                "timeWindow": window_ms,
            },
        )

    # ==================== Queries ====================

    def get_active_alerts(self) -> List[SecurityAlert]:
        """Unresolved alerts, most severe first, oldest first within a severity."""
        with self._lock:
            active = [_snapshot(a) for a in self._alerts.values() if not a.resolved]
        return sorted(active, key=lambda a: a.severity.rank, reverse=True)

    def get_user_alerts(self, user_id: str) -> List[SecurityAlert]:
        with self._lock:
            return [_snapshot(a) for a in self._alerts.values() if a.user_id == user_id]

    def get_template_alerts(self, template_id: str) -> List[SecurityAlert]:
        with self._lock:
            return [_snapshot(a) for a in self._alerts.values() if a.template_id == template_id]

    def get_alert(self, alert_id: str) -> Optional[SecurityAlert]:
        with self._lock:
            alert = self._alerts.get(alert_id)
            return _snapshot(alert) if alert else None

    def get_security_statistics(self) -> Dict[str, Any]:
        """Compute alert and offender statistics from current state."""
        limit = self.config.top_offenders_limit
        with self._lock:
            alerts = list(self._alerts.values())
            user_counts = [(k, c.count) for k, c in self._user_counters.items()]
            template_counts = [(k, c.count) for k, c in self._template_counters.items()]

        alerts_by_severity: Dict[str, int] = {}
        alerts_by_type: Dict[str, int] = {}
        for alert in alerts:
            alerts_by_severity[alert.severity.value] = alerts_by_severity.get(alert.severity.value, 0) + 1
            alerts_by_type[alert.type.value] = alerts_by_type.get(alert.type.value, 0) + 1

        top_users = sorted(user_counts, key=lambda item: item[1], reverse=True)[:limit]
        top_templates = sorted(template_counts, key=lambda item: item[1], reverse=True)[:limit]

        return {
            "totalAlerts": len(alerts),
            "activeAlerts": sum(1 for a in alerts if not a.resolved),
            "alertsBySeverity": alerts_by_severity,
            "alertsByType": alerts_by_type,
            "topViolatingUsers": [
                {"userId": user_id, "violationCount": count} for user_id, count in top_users
            ],
            "topViolatingTemplates": [
                {"templateId": template_id, "violationCount": count}
                for template_id, count in top_templates
            ],
        }

    # ==================== Lifecycle ====================

    def resolve_alert(self, alert_id: str, resolved_by: str) -> bool:
        """Mark an alert resolved.

        Returns:
            False if the alert does not exist or is already resolved
        """
        with self._lock:
            alert = self._alerts.get(alert_id)
            if alert is None or alert.resolved:
                return False
            alert.resolved = True
            alert.resolved_at = self._clock()
            alert.resolved_by = resolved_by
            resolved = _snapshot(alert)

        logger.info("Security alert %s resolved by %s", alert_id, resolved_by)
        self._audit.submit(AuditEntry(
            user_id=resolved_by,
            user_role="admin",
            operation="SECURITY_ALERT_RESOLVED",
            template_id=resolved.template_id,
            details={
                "alertId": alert_id,
                "alertType": resolved.type.value,
                "originalSeverity": resolved.severity.value,
            },
            success=True,
        ))
        self._notify(ALERT_RESOLVED_EVENT, resolved)
        return True

    def cleanup_old_data(self) -> Dict[str, int]:
        """Drop idle counters and long-resolved alerts.

        Unresolved alerts are never removed.

        Returns:
            Number of removed user counters, template counters and alerts
        """
        counter_retention = timedelta(seconds=self.config.counter_retention_seconds)
        alert_retention = timedelta(seconds=self.config.resolved_alert_retention_seconds)

        with self._lock:
            now = self._clock()
            stale_users = [k for k, c in self._user_counters.items() if c.is_idle(now, counter_retention)]
            stale_templates = [
                k for k, c in self._template_counters.items() if c.is_idle(now, counter_retention)
            ]
            stale_alerts = [
                alert_id for alert_id, alert in self._alerts.items()
                if alert.resolved and alert.resolved_at is not None
                and now - alert.resolved_at > alert_retention
            ]
            for key in stale_users:
                del self._user_counters[key]
            for key in stale_templates:
                del self._template_counters[key]
            for alert_id in stale_alerts:
                del self._alerts[alert_id]

        removed = {
            "users": len(stale_users),
            "templates": len(stale_templates),
            "alerts": len(stale_alerts),
        }
        if any(removed.values()):
            logger.debug("Security monitor cleanup removed %s", removed)
        return removed

    def start_cleanup_timer(self) -> None:
        """Run cleanup_old_data periodically on a daemon thread."""
        if self._cleanup_thread is not None and self._cleanup_thread.is_alive():
            return
        self._stop_event.clear()
        self._cleanup_thread = threading.Thread(
            target=self._cleanup_loop,
            name="promptshield-monitor-cleanup",
            daemon=True,
        )
        self._cleanup_thread.start()

    def stop(self) -> None:
        """Stop the cleanup thread and drain pending audit entries."""
        self._stop_event.set()
        if self._cleanup_thread is not None:
            self._cleanup_thread.join(timeout=5.0)
            self._cleanup_thread = None
        self._audit.close()

    def flush(self) -> None:
        """Wait for queued audit entries to reach the sink."""
        self._audit.flush()

    # ==================== Listeners ====================

    def add_listener(self, callback: AlertListener) -> None:
        """Register ``callback(event_name, alert)`` for alert events."""
        with self._lock:
            if callback not in self._listeners:
                self._listeners.append(callback)

    def remove_listener(self, callback: AlertListener) -> bool:
        with self._lock:
            if callback in self._listeners:
                self._listeners.remove(callback)
                return True
            return False

    # ==================== Internals ====================

    def _evaluate_alert_rules(
        self,
        now: datetime,
        user_id: str,
        template_id: Optional[str],
        violation_type: ViolationType,
        severity: SecuritySeverity,
        details: Dict[str, Any],
        user_counter: ViolationCounter,
        template_counter: Optional[ViolationCounter],
    ) -> List[SecurityAlert]:
        mode = self.config.window_mode
        created: List[SecurityAlert] = []

        if severity == SecuritySeverity.CRITICAL or violation_type == ViolationType.CODE_INJECTION:
            created.append(self._create_alert(
                now,
                SecurityAlertType.TEMPLATE_INJECTION_ATTEMPT,
                SecuritySeverity.CRITICAL,
                f"Critical security violation: {violation_type.value}",
                user_id, template_id,
                {**details, "violationType": violation_type.value},
            ))

        user_window = timedelta(seconds=self.config.user_violation_window_seconds)
        user_count = user_counter.count_within(now, user_window, mode)
        if user_count >= self.config.user_violation_threshold:
            created.append(self._create_alert(
                now,
                SecurityAlertType.REPEATED_SECURITY_VIOLATIONS,
                SecuritySeverity.HIGH,
                f"User has {user_count} security violations in the last "
                f"{_format_window(user_window)}",
                user_id, template_id,
                {**details, "violationCount": user_count, "violationType": violation_type.value},
            ))

        if template_counter is not None:
            template_window = timedelta(seconds=self.config.template_violation_window_seconds)
            template_count = template_counter.count_within(now, template_window, mode)
            if template_count >= self.config.template_violation_threshold:
                created.append(self._create_alert(
                    now,
                    SecurityAlertType.MULTIPLE_FAILED_VALIDATIONS,
                    SecuritySeverity.MEDIUM,
                    f"Template has {template_count} security violations in the last "
                    f"{_format_window(template_window)}",
                    user_id, template_id,
                    {**details, "violationCount": template_count, "violationType": violation_type.value},
                ))

        return created

    def _record_single(
        self,
        alert_type: SecurityAlertType,
        severity: SecuritySeverity,
        message: str,
        user_id: Optional[str] = None,
        template_id: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> SecurityAlert:
        with self._lock:
            alert = self._create_alert(
                self._clock(), alert_type, severity, message, user_id, template_id, details or {},
            )
        self._publish([alert])
        return alert

    def _create_alert(
        self,
        now: datetime,
        alert_type: SecurityAlertType,
        severity: SecuritySeverity,
        message: str,
        user_id: Optional[str],
        template_id: Optional[str],
        details: Dict[str, Any],
    ) -> SecurityAlert:
        """Store a new alert; caller must hold the lock."""
        alert = SecurityAlert(
            id=self._generate_alert_id(now),
            timestamp=now,
            severity=severity,
            type=alert_type,
            message=message,
            user_id=user_id,
            template_id=template_id,
            details=dict(details),
        )
        self._alerts[alert.id] = alert
        return _snapshot(alert)

    def _generate_alert_id(self, now: datetime) -> str:
        millis = int(now.timestamp() * 1000)
        while True:
            alert_id = f"alert_{millis}_{secrets.token_hex(5)}"
            if alert_id not in self._alerts:
                return alert_id

    def _publish(self, alerts: List[SecurityAlert]) -> None:
        for alert in alerts:
            logger.warning(
                "[SECURITY_ALERT][%s] %s (alert_id=%s, user_id=%s, template_id=%s, type=%s)",
                alert.severity.value, alert.message, alert.id,
                alert.user_id, alert.template_id, alert.type.value,
            )
            self._audit.submit(AuditEntry(
                user_id=alert.user_id or "system",
                user_role="system",
                operation="SECURITY_ALERT_CREATED",
                template_id=alert.template_id,
                details={
                    "alertId": alert.id,
                    "alertType": alert.type.value,
                    "severity": alert.severity.value,
                    "message": alert.message,
                },
                success=True,
            ))
            self._notify(SECURITY_ALERT_EVENT, alert)

    def _notify(self, event_name: str, alert: SecurityAlert) -> None:
        with self._lock:
            listeners = list(self._listeners)
        for listener in listeners:
            try:
                listener(event_name, alert)
            except Exception:
                logger.exception("Security alert listener failed for %s", event_name)

    def _cleanup_loop(self) -> None:
        interval = self.config.cleanup_interval_seconds
        while not self._stop_event.wait(interval):
            try:
                self.cleanup_old_data()
            except Exception:
                logger.exception("Security monitor cleanup failed")


def _require_user_id(user_id: Optional[str]) -> str:
    if not isinstance(user_id, str) or not user_id.strip():
        raise ValueError("user_id must be a non-empty string")
    return user_id


def _snapshot(alert: SecurityAlert) -> SecurityAlert:
    return replace(alert, details=dict(alert.details))


def _format_window(window: timedelta) -> str:
    seconds = int(window.total_seconds())
    if seconds % 60 == 0:
        minutes = seconds // 60
        return f"{minutes} minute{'s' if minutes != 1 else ''}"
    return f"{seconds} seconds"
