"""PromptShield: security validation and monitoring for prompt templates.

Scans user-submitted prompt templates for injection attacks, sensitive data
exposure and structural abuse, and aggregates violations into time-windowed
security alerts.
"""

__version__ = "0.1.0"
__license__ = "MIT"

from promptshield.monitoring.security_monitor import SecurityEventMonitor
from promptshield.security.config import SecurityConfig
from promptshield.security.content_analyzer import ContentSecurityAnalyzer
from promptshield.security.models import ValidationResult

__all__ = [
    "__version__",
    "__license__",
    "ContentSecurityAnalyzer",
    "SecurityConfig",
    "SecurityEventMonitor",
    "ValidationResult",
]
