"""Tests for the rotating template audit service."""

import os
import time

import pytest

from promptshield.core.services.template_audit_service import TemplateAuditService
from promptshield.monitoring.audit_dispatcher import AuditEntry
from promptshield.monitoring.security_monitor import SecurityEventMonitor
from promptshield.security.content_analyzer import ContentSecurityAnalyzer
from promptshield.security.models import SecuritySeverity, ViolationType


@pytest.fixture
def audit_service(tmp_path):
    service = TemplateAuditService(log_dir=tmp_path / "audit")
    yield service
    service.close()


def _log_text(service: TemplateAuditService) -> str:
    for handler in service.logger.handlers:
        handler.flush()
    return (service.log_dir / service.log_file).read_text(encoding="utf-8")


class TestAuditLogFile:
    """Tests for log file creation and entry formatting."""

    def test_initialization_is_logged(self, audit_service):
        assert "EVENT=SERVICE_EVENT" in _log_text(audit_service)
        assert "SERVICE_EVENT=AUDIT_SERVICE_INITIALIZED" in _log_text(audit_service)

    def test_log_operation(self, audit_service):
        audit_service.log_operation(AuditEntry(
            user_id="u1",
            user_role="system",
            operation="SECURITY_VIOLATION_RECORDED",
            template_id="t1",
            details={"violationType": "CODE_INJECTION"},
            success=False,
            error_message="Security violation: CODE_INJECTION",
        ))

        text = _log_text(audit_service)
        assert "WARNING | EVENT=TEMPLATE_OPERATION" in text
        assert "OPERATION=SECURITY_VIOLATION_RECORDED" in text
        assert "TEMPLATE_ID=t1" in text
        assert "DETAIL_VIOLATIONTYPE=CODE_INJECTION" in text

    def test_successful_operation_logged_at_info(self, audit_service):
        audit_service.log_operation(AuditEntry(user_id="u1", user_role="admin", operation="OP"))

        assert "INFO | EVENT=TEMPLATE_OPERATION" in _log_text(audit_service)

    def test_log_injection_is_escaped(self, audit_service):
        audit_service.log_operation(AuditEntry(
            user_id="u1\nEVENT=FORGED | USER_ID=admin",
            user_role="system",
            operation="OP",
        ))

        text = _log_text(audit_service)
        assert "\nEVENT=FORGED" not in text
        assert "u1\\nEVENT=FORGED \\| USER_ID=admin" in text

    def test_sanitize_for_log(self, audit_service):
        assert audit_service._sanitize_for_log(None) == ""
        assert audit_service._sanitize_for_log("a\tb\x00") == "a\\x09b\\x00"
        assert audit_service._sanitize_for_log("a\\b") == "a\\\\b"
        assert audit_service._sanitize_for_log("x" * 1500).endswith("...[truncated]")

    def test_security_event_levels(self, audit_service):
        audit_service.log_security_event("PROBE", "HIGH", "probe detected", user_id="u1")
        audit_service.log_security_event("PROBE", "LOW", "probe noted")

        text = _log_text(audit_service)
        assert "ERROR | EVENT=SECURITY_EVENT" in text
        assert "INFO | EVENT=SECURITY_EVENT" in text
        assert "USER_ID=anonymous" in text


class TestValidationResultLogging:
    """Tests for validation result entries."""

    def test_blocked_result_with_critical_logged_at_error(self, audit_service):
        result = ContentSecurityAnalyzer().validate("eval(payload)")

        audit_service.log_validation_result("t1", result, user_id="u1", validation_duration_ms=1.5)

        text = _log_text(audit_service)
        assert "ERROR | EVENT=VALIDATION_RESULT" in text
        assert "STATUS=BLOCKED" in text
        assert "CRITICAL_COUNT=1" in text
        assert "DURATION_MS=1.50" in text

    def test_secure_result_logged_at_info(self, audit_service):
        result = ContentSecurityAnalyzer().validate("Hello there")

        audit_service.log_validation_result("t1", result)

        text = _log_text(audit_service)
        assert "INFO | EVENT=VALIDATION_RESULT" in text
        assert "STATUS=SECURE" in text


class TestQueryOperations:
    """Tests for the in-memory tail of recent entries."""

    def test_filters_and_ordering(self, audit_service):
        for i, (user, op) in enumerate([("u1", "A"), ("u2", "A"), ("u1", "B"), ("u1", "A")]):
            audit_service.log_operation(AuditEntry(
                user_id=user, user_role="user", operation=op, details={"seq": i},
            ))

        entries = audit_service.query_operations(user_id="u1", operation="A")

        assert [e.details["seq"] for e in entries] == [3, 0]

    def test_success_filter_and_limit(self, audit_service):
        for i in range(5):
            audit_service.log_operation(AuditEntry(
                user_id="u1", user_role="user", operation="OP", success=i % 2 == 0,
            ))

        assert len(audit_service.query_operations(success=False)) == 2
        assert len(audit_service.query_operations(limit=2)) == 2

    def test_tail_is_bounded(self, tmp_path):
        service = TemplateAuditService(log_dir=tmp_path, tail_size=3)
        try:
            for i in range(5):
                service.log_operation(AuditEntry(user_id="u1", user_role="user", operation=f"OP{i}"))

            assert [e.operation for e in service.query_operations()] == ["OP4", "OP3", "OP2"]
            assert service.get_log_statistics()["recent_entries"] == 3
        finally:
            service.close()


class TestMaintenance:
    """Tests for retention cleanup and statistics."""

    def test_cleanup_old_logs(self, audit_service):
        old_backup = audit_service.log_dir / f"{audit_service.log_file}.1"
        new_backup = audit_service.log_dir / f"{audit_service.log_file}.2"
        old_backup.write_text("old")
        new_backup.write_text("new")
        old_time = time.time() - 40 * 24 * 60 * 60
        os.utime(old_backup, (old_time, old_time))
        active = audit_service.log_dir / audit_service.log_file
        os.utime(active, (old_time, old_time))

        assert audit_service.cleanup_old_logs() == 1
        assert not old_backup.exists()
        assert new_backup.exists()
        assert active.exists()

    def test_statistics(self, audit_service):
        stats = audit_service.get_log_statistics()

        assert stats["file_count"] == 1
        assert stats["total_size_bytes"] > 0
        assert stats["retention_days"] == 30


class TestMonitorIntegration:
    """Tests for the audit service acting as the monitor's sink."""

    def test_monitor_entries_reach_audit_log(self, audit_service, clock):
        monitor = SecurityEventMonitor(audit_sink=audit_service, clock=clock, synchronous_audit=True)
        try:
            monitor.record_security_violation(
                "u1", "t1", ViolationType.CODE_INJECTION, SecuritySeverity.CRITICAL
            )
        finally:
            monitor.stop()

        operations = [e.operation for e in audit_service.query_operations(user_id="u1")]
        assert operations == ["SECURITY_VIOLATION_RECORDED", "SECURITY_ALERT_CREATED"]
        assert "DETAIL_ALERTTYPE=TEMPLATE_INJECTION_ATTEMPT" in _log_text(audit_service)
