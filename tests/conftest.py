"""Global test fixtures for PromptShield test suite."""

import threading
from datetime import datetime, timedelta, timezone
from typing import List

import pytest

from promptshield.monitoring.audit_dispatcher import AuditEntry
from promptshield.monitoring.security_monitor import SecurityEventMonitor
from promptshield.security.config import SecurityConfig
from promptshield.security.content_analyzer import ContentSecurityAnalyzer


# ==========================================
# Pytest Configuration
# ==========================================

def pytest_configure(config):
    """Configure pytest with custom markers."""
    config.addinivalue_line("markers", "unit: Unit tests")
    config.addinivalue_line("markers", "integration: Integration tests")
    config.addinivalue_line("markers", "slow: Slow tests")


# ==========================================
# Test Doubles
# ==========================================

class FakeClock:
    """Manually advanced UTC clock."""

    def __init__(self, start: datetime = None):
        self.now = start or datetime(2026, 1, 1, 12, 0, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class RecordingAuditSink:
    """Audit sink that keeps every entry in memory."""

    def __init__(self):
        self.entries: List[AuditEntry] = []
        self._lock = threading.Lock()

    def log_operation(self, entry: AuditEntry) -> None:
        with self._lock:
            self.entries.append(entry)

    @property
    def operations(self) -> List[str]:
        with self._lock:
            return [e.operation for e in self.entries]


class FailingAuditSink:
    """Audit sink that always raises."""

    def __init__(self):
        self.calls = 0

    def log_operation(self, entry: AuditEntry) -> None:
        self.calls += 1
        raise IOError("audit storage unavailable")


# ==========================================
# Fixtures
# ==========================================

@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def audit_sink() -> RecordingAuditSink:
    return RecordingAuditSink()


@pytest.fixture
def config() -> SecurityConfig:
    return SecurityConfig()


@pytest.fixture
def analyzer(config: SecurityConfig) -> ContentSecurityAnalyzer:
    return ContentSecurityAnalyzer(config)


@pytest.fixture
def monitor(config, audit_sink, clock):
    """Monitor with a fake clock and synchronous audit delivery."""
    monitor = SecurityEventMonitor(
        config=config,
        audit_sink=audit_sink,
        clock=clock,
        synchronous_audit=True,
    )
    yield monitor
    monitor.stop()


@pytest.fixture
def sliding_monitor(audit_sink, clock):
    """Monitor evaluating thresholds over exact sliding windows."""
    monitor = SecurityEventMonitor(
        config=SecurityConfig(window_mode="sliding"),
        audit_sink=audit_sink,
        clock=clock,
        synchronous_audit=True,
    )
    yield monitor
    monitor.stop()


@pytest.fixture
def failing_sink() -> FailingAuditSink:
    return FailingAuditSink()
