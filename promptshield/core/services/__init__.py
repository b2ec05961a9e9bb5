"""Template Security Services.

This package provides focused, single-responsibility services:

- TemplateAuditService: Audit logging with rotation, the monitor's audit sink
- TemplateSecurityService: Validation, violation forwarding and statistics

Each service is designed to be:
- Single responsibility
- Thread-safe
- Testable in isolation
- Observable (statistics and health checks)
"""

from .template_audit_service import TemplateAuditService
from .template_security_service import TemplateSecurityService

__all__ = [
    'TemplateAuditService',
    'TemplateSecurityService',
]
