"""Security module for PromptShield.

This module provides content security analysis, sanitization and the shared
security models for prompt templates and their declared variables.
"""

from promptshield.security.config import SecurityConfig
from promptshield.security.content_analyzer import ContentSecurityAnalyzer
from promptshield.security.exceptions import (
    PromptShieldError,
    SecurityConfigError,
    SecurityValidationError,
    VariableSchemaError,
)
from promptshield.security.models import (
    SecurityAlert,
    SecurityAlertType,
    SecuritySeverity,
    SecurityViolation,
    SecurityWarning,
    TemplateVariable,
    ValidationResult,
    VariableType,
    ViolationType,
    WarningType,
)

__all__ = [
    "ContentSecurityAnalyzer",
    "SecurityConfig",
    "PromptShieldError",
    "SecurityConfigError",
    "SecurityValidationError",
    "VariableSchemaError",
    "SecurityAlert",
    "SecurityAlertType",
    "SecuritySeverity",
    "SecurityViolation",
    "SecurityWarning",
    "TemplateVariable",
    "ValidationResult",
    "VariableType",
    "ViolationType",
    "WarningType",
]
