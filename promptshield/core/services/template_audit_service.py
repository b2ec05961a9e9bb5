"""Template Audit Service with proper security and log rotation.

Provides audit logging for template security operations with:
- Log rotation to prevent disk space exhaustion
- Secure log entry formatting (no log injection)
- Structured pipe-delimited entries for analysis
- A bounded in-memory tail of recent entries for querying

The service implements the audit sink protocol used by the security monitor:
``log_operation(entry)``.
"""

import logging
import logging.handlers
import threading
from collections import deque
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Deque, Dict, List, Optional

from promptshield.monitoring.audit_dispatcher import AuditEntry
from promptshield.security.models import ValidationResult

AUDIT_LOGGER_NAME = "promptshield.template_audit"


class TemplateAuditService:
    """Audit logging service for template security operations.

    Provides secure, structured logging with rotation and retention
    policies to prevent disk exhaustion and maintain audit trails.
    """

    def __init__(
        self,
        log_dir: Optional[Path] = None,
        log_file: str = "template_audit.log",
        max_bytes: int = 10_000_000,  # 10MB per log file
        backup_count: int = 5,
        retention_days: int = 30,
        enable_console: bool = False,
        tail_size: int = 1000,
    ):
        """Initialize audit service with secure logging configuration.

        Args:
            log_dir: Directory for audit logs (defaults to ./logs)
            log_file: Base name for log file
            max_bytes: Maximum bytes per log file before rotation
            backup_count: Number of backup files to keep
            retention_days: Days to retain logs before cleanup
            enable_console: Enable console output for debugging
            tail_size: Number of recent entries kept in memory for queries
        """
        self.log_dir = Path(log_dir) if log_dir else Path("logs")
        self.log_file = log_file
        self.max_bytes = max_bytes
        self.backup_count = backup_count
        self.retention_days = retention_days
        self.enable_console = enable_console

        self._recent: Deque[AuditEntry] = deque(maxlen=tail_size)
        self._recent_lock = threading.Lock()

        self.log_dir.mkdir(exist_ok=True, parents=True)
        self.logger = self._setup_logger()

        self.log_service_event("AUDIT_SERVICE_INITIALIZED", {
            "log_dir": str(self.log_dir),
            "max_bytes": self.max_bytes,
            "backup_count": self.backup_count,
            "retention_days": self.retention_days,
        })

    def _setup_logger(self) -> logging.Logger:
        """Setup logger with rotating file handler and formatting."""
        logger = logging.getLogger(AUDIT_LOGGER_NAME)
        logger.setLevel(logging.INFO)
        logger.propagate = False

        # Remove existing handlers to prevent duplicates
        for handler in list(logger.handlers):
            logger.removeHandler(handler)
            handler.close()

        formatter = logging.Formatter(
            '%(asctime)s | %(levelname)s | %(message)s',
            datefmt='%Y-%m-%d %H:%M:%S'
        )

        file_handler = logging.handlers.RotatingFileHandler(
            self.log_dir / self.log_file,
            maxBytes=self.max_bytes,
            backupCount=self.backup_count,
            encoding='utf-8'
        )
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)

        if self.enable_console:
            console_handler = logging.StreamHandler()
            console_handler.setFormatter(formatter)
            console_handler.setLevel(logging.DEBUG)
            logger.addHandler(console_handler)

        return logger

    def _sanitize_for_log(self, value: Any) -> str:
        """Sanitize value for safe logging.

        Prevents log injection by escaping control characters and the field
        delimiter, and limits length to prevent log abuse.
        """
        if value is None:
            return ""

        str_value = str(value)
        if len(str_value) > 1000:
            str_value = str_value[:1000] + "...[truncated]"

        str_value = str_value.replace('\\', '\\\\')
        str_value = str_value.replace('\n', '\\n').replace('\r', '\\r')
        str_value = ''.join(
            f'\\x{ord(char):02x}' if ord(char) < 0x20 or ord(char) == 0x7f else char
            for char in str_value
        )
        return str_value.replace('|', '\\|')

    def _format_log_entry(
        self,
        event_type: str,
        details: Dict[str, Any],
        timestamp: Optional[datetime] = None,
    ) -> str:
        """Format a structured ``KEY=value | KEY=value`` log entry."""
        timestamp = timestamp or datetime.now(timezone.utc)

        safe_details = {
            key: self._sanitize_for_log(value)
            for key, value in details.items()
        }

        entry_parts = [
            f"EVENT={event_type}",
            f"TIMESTAMP={timestamp.isoformat()}"
        ]
        for key in sorted(safe_details.keys()):
            entry_parts.append(f"{key.upper()}={safe_details[key]}")

        return " | ".join(entry_parts)

    # ==================== Audit Sink ====================

    def log_operation(self, entry: AuditEntry) -> None:
        """Record an audit entry from the security monitor or service layer."""
        details: Dict[str, Any] = {
            "audit_id": entry.id,
            "operation": entry.operation,
            "user_id": entry.user_id or "anonymous",
            "user_role": entry.user_role,
            "template_id": entry.template_id or "",
            "success": str(entry.success),
        }
        if entry.error_message:
            details["error_message"] = entry.error_message
        for key, value in entry.details.items():
            details[f"detail_{key}"] = value

        line = self._format_log_entry("TEMPLATE_OPERATION", details, entry.timestamp)
        if entry.success:
            self.logger.info(line)
        else:
            self.logger.warning(line)

        with self._recent_lock:
            self._recent.append(entry)

    def query_operations(
        self,
        user_id: Optional[str] = None,
        operation: Optional[str] = None,
        template_id: Optional[str] = None,
        success: Optional[bool] = None,
        limit: int = 100,
    ) -> List[AuditEntry]:
        """Return recent audit entries matching the filters, newest first."""
        with self._recent_lock:
            entries = list(self._recent)

        if user_id is not None:
            entries = [e for e in entries if e.user_id == user_id]
        if operation is not None:
            entries = [e for e in entries if e.operation == operation]
        if template_id is not None:
            entries = [e for e in entries if e.template_id == template_id]
        if success is not None:
            entries = [e for e in entries if e.success == success]

        entries.reverse()
        return entries[:limit] if limit > 0 else entries

    # ==================== Structured Events ====================

    def log_validation_result(
        self,
        template_id: str,
        result: ValidationResult,
        user_id: Optional[str] = None,
        validation_duration_ms: Optional[float] = None
    ) -> None:
        """Log a template content validation result.

        Args:
            template_id: Template identifier or file name
            result: Validation result
            user_id: Optional user identifier
            validation_duration_ms: Validation duration in milliseconds
        """
        counts = result.count_by_severity()
        details = {
            "template_id": template_id,
            "status": "SECURE" if result.is_secure else "BLOCKED",
            "violations_count": len(result.violations),
            "warnings_count": len(result.warnings),
            "critical_count": counts["CRITICAL"],
            "high_count": counts["HIGH"],
            "medium_count": counts["MEDIUM"],
            "low_count": counts["LOW"],
            "risk_score": result.risk_score,
            "user_id": user_id or "anonymous",
        }
        if validation_duration_ms is not None:
            details["duration_ms"] = f"{validation_duration_ms:.2f}"

        entry = self._format_log_entry("VALIDATION_RESULT", details)

        if counts["CRITICAL"] > 0:
            self.logger.error(entry)
        elif not result.is_secure:
            self.logger.warning(entry)
        else:
            self.logger.info(entry)

    def log_security_event(
        self,
        event_type: str,
        severity: str,
        description: str,
        user_id: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None
    ) -> None:
        """Log security-related events at a level matching their severity."""
        base_details = {
            "event_type": event_type,
            "severity": severity,
            "description": description,
            "user_id": user_id or "anonymous"
        }
        if details:
            base_details.update(details)

        entry = self._format_log_entry("SECURITY_EVENT", base_details)

        log_level = {
            "CRITICAL": logging.CRITICAL,
            "HIGH": logging.ERROR,
            "MEDIUM": logging.WARNING,
            "LOW": logging.INFO
        }.get(severity.upper(), logging.INFO)

        self.logger.log(log_level, entry)

    def log_service_event(self, event_type: str, details: Dict[str, Any]) -> None:
        """Log service-level events."""
        details = {"service_event": event_type, **details}
        self.logger.info(self._format_log_entry("SERVICE_EVENT", details))

    # ==================== Maintenance ====================

    def cleanup_old_logs(self) -> int:
        """Delete rotated log files older than the retention period.

        Returns:
            Number of files removed
        """
        cutoff_date = datetime.now(timezone.utc) - timedelta(days=self.retention_days)
        active_log = self.log_dir / self.log_file
        cleaned_count = 0

        try:
            for log_file in self.log_dir.glob(f"{self.log_file}*"):
                if not log_file.is_file() or log_file == active_log:
                    continue
                file_time = datetime.fromtimestamp(log_file.stat().st_mtime, timezone.utc)
                if file_time < cutoff_date:
                    log_file.unlink()
                    cleaned_count += 1
                    self.log_service_event("LOG_CLEANUP", {
                        "file": str(log_file),
                        "file_date": file_time.isoformat(),
                        "cutoff_date": cutoff_date.isoformat()
                    })
        except OSError as e:
            self.log_service_event("LOG_CLEANUP_ERROR", {
                "error": str(e),
                "cutoff_date": cutoff_date.isoformat()
            })

        return cleaned_count

    def get_log_statistics(self) -> Dict[str, Any]:
        """Get logging statistics and information."""
        stats: Dict[str, Any] = {
            "log_dir": str(self.log_dir),
            "log_file": self.log_file,
            "max_bytes": self.max_bytes,
            "backup_count": self.backup_count,
            "retention_days": self.retention_days,
            "enable_console": self.enable_console,
        }
        with self._recent_lock:
            stats["recent_entries"] = len(self._recent)

        try:
            log_files = [f for f in self.log_dir.glob(f"{self.log_file}*") if f.is_file()]
            total_size = sum(f.stat().st_size for f in log_files)
            stats["file_count"] = len(log_files)
            stats["total_size_bytes"] = total_size
            stats["total_size_mb"] = round(total_size / (1024 * 1024), 2)
        except OSError:
            stats["file_count"] = 0
            stats["total_size_bytes"] = 0
            stats["total_size_mb"] = 0.0

        return stats

    def close(self) -> None:
        """Flush and close the audit log handlers."""
        for handler in list(self.logger.handlers):
            handler.flush()
            handler.close()
            self.logger.removeHandler(handler)
