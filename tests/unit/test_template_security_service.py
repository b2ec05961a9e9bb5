"""Tests for TemplateSecurityService."""

import pytest

from promptshield.core.services.template_audit_service import TemplateAuditService
from promptshield.core.services.template_security_service import TemplateSecurityService
from promptshield.security.exceptions import SecurityValidationError, VariableSchemaError
from promptshield.security.models import SecurityAlertType, ValidationResult


class BrokenAnalyzer:
    """Analyzer double that fails on every call."""

    def validate(self, content, variables=None):
        raise RuntimeError("pattern table corrupted")

    def detect_suspicious_usage(self, context):
        return []


@pytest.fixture
def service(analyzer, monitor):
    return TemplateSecurityService(analyzer=analyzer, monitor=monitor)


# ============================================================================
# Validation Tests
# ============================================================================

class TestValidateTemplate:
    """Tests for validate_template."""

    def test_secure_template(self, service):
        result = service.validate_template(
            "Hello {{name}}", [{"name": "name", "type": "string"}], template_id="t1", user_id="u1"
        )

        assert isinstance(result, ValidationResult)
        assert result.is_secure
        assert service.get_security_statistics()["total_validations"] == 1

    def test_violations_forwarded_to_monitor(self, service, monitor):
        result = service.validate_template(
            "<script>x</script> eval(a)", template_id="t1", user_id="u1"
        )

        assert not result.is_secure
        alerts = monitor.get_user_alerts("u1")
        assert [a.type for a in alerts] == [SecurityAlertType.TEMPLATE_INJECTION_ATTEMPT]
        assert "message" in alerts[0].details
        stats = monitor.get_security_statistics()
        assert stats["topViolatingUsers"] == [{"userId": "u1", "violationCount": 2}]

    def test_non_blocking_violations_are_forwarded(self, service, monitor):
        result = service.validate_template("{{config}}", template_id="t1", user_id="u1")

        assert result.is_secure
        assert monitor.get_security_statistics()["topViolatingUsers"] == [
            {"userId": "u1", "violationCount": 1}
        ]

    def test_anonymous_violations_not_forwarded(self, service, monitor):
        service.validate_template("eval(a)", template_id="t1")

        assert monitor.get_security_statistics()["topViolatingUsers"] == []

    def test_schema_error_propagates(self, service, monitor):
        with pytest.raises(VariableSchemaError):
            service.validate_template("eval(a)", [{"name": ""}], user_id="u1")

        stats = service.get_security_statistics()
        assert stats["schema_errors"] == 1
        assert monitor.get_security_statistics()["topViolatingUsers"] == []
        assert service.get_validation_history()[-1]["success"] is False

    def test_unexpected_failure_wrapped(self, monitor):
        service = TemplateSecurityService(analyzer=BrokenAnalyzer(), monitor=monitor)

        with pytest.raises(SecurityValidationError, match="pattern table corrupted"):
            service.validate_template("Hello", template_id="t1")

    def test_validate_template_file(self, service, tmp_path):
        path = tmp_path / "welcome.txt"
        path.write_text("Welcome <script>alert(1)</script>", encoding="utf-8")

        result = service.validate_template_file(path, user_id="u1")

        assert not result.is_secure
        assert service.get_validation_history()[-1]["template_id"] == "welcome.txt"

    def test_missing_template_file(self, service, tmp_path):
        with pytest.raises(SecurityValidationError, match="not found"):
            service.validate_template_file(tmp_path / "missing.txt")

    def test_results_are_audited(self, analyzer, tmp_path):
        audit_service = TemplateAuditService(log_dir=tmp_path)
        try:
            service = TemplateSecurityService(analyzer=analyzer, audit_service=audit_service)
            service.validate_template("DROP TABLE users", template_id="t9", user_id="u1")

            text = (tmp_path / audit_service.log_file).read_text(encoding="utf-8")
            assert "EVENT=VALIDATION_RESULT" in text
            assert "TEMPLATE_ID=t9" in text
            assert "STATUS=BLOCKED" in text
        finally:
            audit_service.close()


# ============================================================================
# Usage Monitoring Tests
# ============================================================================

class TestMonitorTemplateUsage:
    """Tests for rendering-time checks."""

    def test_suspicious_context_recorded(self, service, monitor):
        suspicious = service.monitor_template_usage(
            "t1", "u1", {"bio": "<script>steal()</script>", "name": "Ada"}
        )

        assert suspicious == ["Suspicious script content in variable: bio"]
        alerts = monitor.get_template_alerts("t1")
        assert [a.type for a in alerts] == [SecurityAlertType.SUSPICIOUS_TEMPLATE_USAGE]
        assert service.get_security_statistics()["suspicious_usages"] == 1

    def test_clean_context(self, service, monitor):
        assert service.monitor_template_usage("t1", "u1", {"name": "Ada"}) == []
        assert monitor.get_active_alerts() == []


# ============================================================================
# Statistics and Health Tests
# ============================================================================

class TestStatistics:
    """Tests for service statistics."""

    def test_empty_statistics(self, analyzer):
        stats = TemplateSecurityService(analyzer=analyzer).get_security_statistics()

        assert stats["total_validations"] == 0
        assert stats["security_block_rate"] == 0.0
        assert stats["fastest_validation_ms"] == 0.0
        assert "monitor" not in stats

    def test_block_rate_and_findings(self, service):
        service.validate_template("Hello")
        service.validate_template("<script>x</script>")

        stats = service.get_security_statistics()
        assert stats["total_validations"] == 2
        assert stats["security_blocks"] == 1
        assert stats["security_block_rate"] == 0.5
        assert stats["high_findings"] == 1
        assert stats["average_findings_per_validation"] == 0.5
        assert stats["recent_success_rate"] == 1.0
        assert "monitor" in stats

    def test_reset_statistics(self, service):
        service.validate_template("Hello")
        service.reset_statistics()

        assert service.get_security_statistics()["total_validations"] == 0
        assert service.get_validation_history() == []

    def test_history_is_bounded(self, analyzer):
        service = TemplateSecurityService(analyzer=analyzer, max_history_size=3)
        for i in range(5):
            service.validate_template("Hello", template_id=f"t{i}")

        assert [h["template_id"] for h in service.get_validation_history()] == ["t2", "t3", "t4"]


class TestHealth:
    """Tests for check_health."""

    def test_healthy(self, service):
        health = service.check_health()

        assert health["status"] == "healthy"
        assert health["analyzer_available"] is True
        assert health["monitor_attached"] is True
        assert health["active_alerts"] == 0

    def test_critical_alerts_reported(self, service):
        service.validate_template("eval(a)", user_id="u1")

        health = service.check_health()
        assert health["active_alerts"] == 1
        assert any("critical" in issue for issue in health["issues"])

    def test_broken_analyzer_is_unhealthy(self):
        health = TemplateSecurityService(analyzer=BrokenAnalyzer()).check_health()

        assert health["status"] == "unhealthy"
        assert health["analyzer_available"] is False
