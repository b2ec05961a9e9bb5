"""Template Security Service tying content analysis to event monitoring.

Provides security validation for templates with:
- Integration with ContentSecurityAnalyzer
- Forwarding of every violation to the SecurityEventMonitor
- Audit logging of validation results
- Performance monitoring and statistics
- Rendering-time suspicious usage checks
"""

import logging
import threading
import time
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Sequence

from promptshield.monitoring.security_monitor import SecurityEventMonitor
from promptshield.security.config import SecurityConfig
from promptshield.security.content_analyzer import ContentSecurityAnalyzer, VariableDeclaration
from promptshield.security.exceptions import SecurityValidationError, VariableSchemaError
from promptshield.security.models import ValidationResult

from .template_audit_service import TemplateAuditService

logger = logging.getLogger(__name__)

_HEALTH_CHECK_CONTENT = "Hello {{name}}, here is your summary."
_HEALTH_CHECK_VARIABLES = [{"name": "name", "type": "string", "required": True}]


def _empty_stats() -> Dict[str, Any]:
    return {
        'total_validations': 0,
        'total_duration_ms': 0.0,
        'security_blocks': 0,
        'schema_errors': 0,
        'critical_findings': 0,
        'high_findings': 0,
        'medium_findings': 0,
        'low_findings': 0,
        'warnings': 0,
        'suspicious_usages': 0,
        'average_duration_ms': 0.0,
        'slowest_validation_ms': 0.0,
        'fastest_validation_ms': float('inf')
    }


class TemplateSecurityService:
    """Service for template security validation and monitoring.

    Wraps ContentSecurityAnalyzer with additional features:
    - Violation forwarding to the security monitor
    - Audit logging
    - Performance monitoring
    - Statistics tracking and health checks
    """

    def __init__(
        self,
        analyzer: Optional[ContentSecurityAnalyzer] = None,
        monitor: Optional[SecurityEventMonitor] = None,
        audit_service: Optional[TemplateAuditService] = None,
        config: Optional[SecurityConfig] = None,
        enable_performance_monitoring: bool = True,
        max_history_size: int = 1000,
    ):
        """Initialize security service.

        Args:
            analyzer: Content analyzer; built from config when omitted
            monitor: Security event monitor receiving violations
            audit_service: Audit service receiving validation results
            config: Security configuration shared by default collaborators
            enable_performance_monitoring: Track validation performance
            max_history_size: Number of validations kept in history
        """
        self.config = config or SecurityConfig()
        self.analyzer = analyzer or ContentSecurityAnalyzer(self.config)
        self.monitor = monitor
        self.audit_service = audit_service
        self.enable_performance_monitoring = enable_performance_monitoring

        self._stats = _empty_stats()
        self._stats_lock = threading.Lock()

        # Validation history for trend analysis
        self._validation_history: List[Dict[str, Any]] = []
        self._max_history_size = max_history_size

    @contextmanager
    def _performance_monitor(self, template_id: str):
        """Context manager for monitoring validation performance.

        Yields:
            Dictionary to store performance metrics
        """
        start_time = time.perf_counter()
        metrics: Dict[str, Any] = {
            'template_id': template_id,
            'start_time': datetime.now(timezone.utc),
            'duration_ms': 0.0,
            'success': False,
            'error': None
        }

        try:
            yield metrics
            metrics['success'] = True
        except Exception as e:
            metrics['error'] = str(e)
            raise
        finally:
            metrics['duration_ms'] = (time.perf_counter() - start_time) * 1000
            metrics['end_time'] = datetime.now(timezone.utc)

            with self._stats_lock:
                if self.enable_performance_monitoring:
                    self._update_performance_stats(metrics)
                self._add_to_history(metrics)

    def _update_performance_stats(self, metrics: Dict[str, Any]) -> None:
        """Update performance statistics; caller holds the stats lock."""
        duration = metrics['duration_ms']

        self._stats['total_validations'] += 1
        self._stats['total_duration_ms'] += duration

        if duration > self._stats['slowest_validation_ms']:
            self._stats['slowest_validation_ms'] = duration
        if duration < self._stats['fastest_validation_ms']:
            self._stats['fastest_validation_ms'] = duration

        self._stats['average_duration_ms'] = (
            self._stats['total_duration_ms'] / self._stats['total_validations']
        )

    def _add_to_history(self, metrics: Dict[str, Any]) -> None:
        self._validation_history.append(metrics)
        if len(self._validation_history) > self._max_history_size:
            self._validation_history.pop(0)

    # ==================== Validation ====================

    def validate_template(
        self,
        content: str,
        variables: Optional[Sequence[VariableDeclaration]] = None,
        template_id: Optional[str] = None,
        user_id: Optional[str] = None,
    ) -> ValidationResult:
        """Validate template content and record any violations.

        Every violation is forwarded to the monitor when a user is known,
        regardless of whether the result blocks the template.

        Args:
            content: Template content
            variables: Declared template variables
            template_id: Template identifier for monitoring and audit
            user_id: User submitting the template

        Returns:
            ValidationResult from the analyzer

        Raises:
            VariableSchemaError: If variable declarations are malformed
            SecurityValidationError: If the analyzer fails unexpectedly
        """
        label = template_id or "unknown"

        with self._performance_monitor(label) as metrics:
            try:
                result = self.analyzer.validate(content, variables)
            except VariableSchemaError:
                with self._stats_lock:
                    self._stats['schema_errors'] += 1
                raise
            except Exception as e:
                raise SecurityValidationError(
                    f"Security validation failed for template '{label}': {e}"
                ) from e

            metrics['is_secure'] = result.is_secure
            metrics['risk_score'] = result.risk_score
            if user_id:
                metrics['user_id'] = user_id

        self._update_security_stats(result)
        self._forward_violations(result, template_id, user_id)

        if self.audit_service is not None:
            self.audit_service.log_validation_result(
                label, result, user_id=user_id,
                validation_duration_ms=metrics['duration_ms'],
            )

        if not result.is_secure:
            logger.info(
                "Template %s blocked: %d blocking violation(s), risk score %d",
                label, len(result.blocking_violations), result.risk_score,
            )
        return result

    def validate_template_file(
        self,
        template_path: Path,
        variables: Optional[Sequence[VariableDeclaration]] = None,
        user_id: Optional[str] = None,
    ) -> ValidationResult:
        """Validate a template stored in a file.

        Raises:
            SecurityValidationError: If the file cannot be read
        """
        template_path = Path(template_path)
        if not template_path.is_file():
            raise SecurityValidationError(f"Template file not found: {template_path}")

        try:
            content = template_path.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as e:
            raise SecurityValidationError(f"Cannot read template {template_path}: {e}") from e

        return self.validate_template(
            content, variables, template_id=template_path.name, user_id=user_id,
        )

    def monitor_template_usage(
        self,
        template_id: str,
        user_id: str,
        execution_context: Mapping[str, Any],
    ) -> List[str]:
        """Check rendering-time variable values for suspicious content.

        Returns:
            Suspicious pattern descriptions, empty when clean
        """
        suspicious = self.analyzer.detect_suspicious_usage(execution_context)
        if suspicious:
            with self._stats_lock:
                self._stats['suspicious_usages'] += 1
            if self.monitor is not None:
                self.monitor.record_suspicious_usage(
                    user_id, template_id, suspicious, execution_context,
                )
        return suspicious

    def _forward_violations(
        self,
        result: ValidationResult,
        template_id: Optional[str],
        user_id: Optional[str],
    ) -> None:
        if self.monitor is None or not result.violations:
            return
        if not user_id:
            logger.debug("Skipping violation recording for anonymous validation")
            return
        for violation in result.violations:
            self.monitor.record_security_violation(
                user_id,
                template_id,
                violation.type,
                violation.severity,
                {"message": violation.message},
            )

    def _update_security_stats(self, result: ValidationResult) -> None:
        counts = result.count_by_severity()
        with self._stats_lock:
            if not result.is_secure:
                self._stats['security_blocks'] += 1
            self._stats['critical_findings'] += counts['CRITICAL']
            self._stats['high_findings'] += counts['HIGH']
            self._stats['medium_findings'] += counts['MEDIUM']
            self._stats['low_findings'] += counts['LOW']
            self._stats['warnings'] += len(result.warnings)

    # ==================== Statistics ====================

    def get_security_statistics(self) -> Dict[str, Any]:
        """Get security validation statistics."""
        with self._stats_lock:
            stats = self._stats.copy()
            recent_history = self._validation_history[-100:]

        if stats['total_validations'] > 0:
            stats['security_block_rate'] = (
                stats['security_blocks'] / stats['total_validations']
            )
            stats['average_findings_per_validation'] = (
                (stats['critical_findings'] + stats['high_findings'] +
                 stats['medium_findings'] + stats['low_findings']) /
                stats['total_validations']
            )
        else:
            stats['security_block_rate'] = 0.0
            stats['average_findings_per_validation'] = 0.0

        if stats['fastest_validation_ms'] == float('inf'):
            stats['fastest_validation_ms'] = 0.0

        if recent_history:
            stats['recent_success_rate'] = (
                sum(1 for h in recent_history if h['success']) / len(recent_history)
            )
        else:
            stats['recent_success_rate'] = 0.0

        if self.monitor is not None:
            stats['monitor'] = self.monitor.get_security_statistics()

        return stats

    def get_validation_history(
        self,
        limit: int = 100,
        include_successful: bool = True,
        include_failures: bool = True
    ) -> List[Dict[str, Any]]:
        """Get validation history, most recent last."""
        with self._stats_lock:
            history = self._validation_history.copy()

        if not include_successful:
            history = [h for h in history if not h['success']]
        if not include_failures:
            history = [h for h in history if h['success']]

        return history[-limit:] if limit > 0 else history

    def reset_statistics(self) -> None:
        """Reset all statistics and history."""
        with self._stats_lock:
            self._stats = _empty_stats()
            self._validation_history.clear()

    def check_health(self) -> Dict[str, Any]:
        """Check the health of the analyzer and monitor.

        Returns:
            Health check results with ``status`` of healthy, degraded or unhealthy
        """
        health_status: Dict[str, Any] = {
            'status': 'healthy',
            'issues': [],
            'analyzer_available': True,
            'monitor_attached': self.monitor is not None,
        }

        try:
            probe = self.analyzer.validate(_HEALTH_CHECK_CONTENT, _HEALTH_CHECK_VARIABLES)
            if not probe.is_secure or probe.violations:
                health_status['issues'].append(
                    "Analyzer incorrectly flags safe content"
                )
                health_status['status'] = 'degraded'
        except Exception as e:
            logger.exception("Analyzer health probe failed")
            health_status['analyzer_available'] = False
            health_status['issues'].append(f"Analyzer error: {e}")
            health_status['status'] = 'unhealthy'

        stats = self.get_security_statistics()
        if stats.get('average_duration_ms', 0) > 5000:
            health_status['issues'].append(
                "Average validation duration exceeds 5 seconds"
            )
            if health_status['status'] == 'healthy':
                health_status['status'] = 'degraded'

        if self.monitor is not None:
            active = stats['monitor']['activeAlerts']
            health_status['active_alerts'] = active
            critical = stats['monitor']['alertsBySeverity'].get('CRITICAL', 0)
            if critical:
                health_status['issues'].append(f"{critical} critical security alert(s) recorded")

        health_status['statistics'] = stats
        return health_status
