"""Security models for template validation and monitoring.

Holds the value types shared by the content analyzer and the security
monitor: severities, violation and alert types, validation results,
template variable declarations and security alerts.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


# ==================== Enumerations ====================

class SecuritySeverity(str, Enum):
    """Security severity levels."""
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    CRITICAL = "CRITICAL"

    @property
    def rank(self) -> int:
        """Numeric ordering, higher is more severe."""
        return _SEVERITY_RANK[self]

    @property
    def is_blocking(self) -> bool:
        """Whether findings of this severity block template acceptance."""
        return self in (SecuritySeverity.CRITICAL, SecuritySeverity.HIGH)


_SEVERITY_RANK = {
    SecuritySeverity.LOW: 1,
    SecuritySeverity.MEDIUM: 2,
    SecuritySeverity.HIGH: 3,
    SecuritySeverity.CRITICAL: 4,
}


class ViolationType(str, Enum):
    """Categories of security violations found in template content."""
    SCRIPT_INJECTION = "SCRIPT_INJECTION"
    CODE_INJECTION = "CODE_INJECTION"
    COMMAND_INJECTION = "COMMAND_INJECTION"
    SQL_INJECTION = "SQL_INJECTION"
    TEMPLATE_INJECTION = "TEMPLATE_INJECTION"
    SENSITIVE_DATA_EXPOSURE = "SENSITIVE_DATA_EXPOSURE"
    UNSAFE_VARIABLE = "UNSAFE_VARIABLE"
    MALICIOUS_PATTERN = "MALICIOUS_PATTERN"
    EXCESSIVE_COMPLEXITY = "EXCESSIVE_COMPLEXITY"


class WarningType(str, Enum):
    """Advisory conditions that never block a template."""
    HIGH_VARIABLE_USAGE = "HIGH_VARIABLE_USAGE"
    UNUSED_VARIABLE = "UNUSED_VARIABLE"
    UNDECLARED_VARIABLE = "UNDECLARED_VARIABLE"
    DEPRECATED_SYNTAX = "DEPRECATED_SYNTAX"
    LONG_LINE = "LONG_LINE"
    EMAIL_EXPOSURE = "EMAIL_EXPOSURE"
    COMPLEX_VARIABLE = "COMPLEX_VARIABLE"


class SecurityAlertType(str, Enum):
    """Higher-level alerts synthesized by the security monitor."""
    MULTIPLE_FAILED_VALIDATIONS = "MULTIPLE_FAILED_VALIDATIONS"
    SUSPICIOUS_TEMPLATE_USAGE = "SUSPICIOUS_TEMPLATE_USAGE"
    REPEATED_SECURITY_VIOLATIONS = "REPEATED_SECURITY_VIOLATIONS"
    UNUSUAL_ACCESS_PATTERN = "UNUSUAL_ACCESS_PATTERN"
    TEMPLATE_INJECTION_ATTEMPT = "TEMPLATE_INJECTION_ATTEMPT"
    PRIVILEGE_ESCALATION_ATTEMPT = "PRIVILEGE_ESCALATION_ATTEMPT"
    RATE_LIMIT_EXCEEDED = "RATE_LIMIT_EXCEEDED"


class VariableType(str, Enum):
    """Allowed template variable types."""
    STRING = "string"
    NUMBER = "number"
    BOOLEAN = "boolean"
    ARRAY = "array"
    OBJECT = "object"
    SELECT = "select"
    MULTISELECT = "multiselect"


# ==================== Variable Declarations ====================

class TemplateVariable(BaseModel):
    """Declared template variable."""

    model_config = ConfigDict(extra="allow")

    name: str = Field(..., description="Variable name referenced as {{name}}")
    type: VariableType = Field(..., description="Declared variable type")
    required: bool = False
    description: Optional[str] = None
    default_value: Optional[Any] = None
    options: Optional[List[Any]] = None
    validation: Optional[List[Any]] = None

    @field_validator("name")
    @classmethod
    def validate_name(cls, v: str) -> str:
        """Reject empty or whitespace-only names."""
        if not v or not v.strip():
            raise ValueError("name must be a non-empty string")
        return v.strip()


# ==================== Validation Results ====================

@dataclass(frozen=True)
class SecurityViolation:
    """A detected security concern in template content."""
    type: ViolationType
    severity: SecuritySeverity
    message: str
    suggestion: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        """Convert violation to dictionary for serialization."""
        data = {
            "type": self.type.value,
            "severity": self.severity.value,
            "message": self.message,
        }
        if self.suggestion:
            data["suggestion"] = self.suggestion
        return data


@dataclass(frozen=True)
class SecurityWarning:
    """Advisory finding; never affects is_secure."""
    type: WarningType
    message: str
    suggestion: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data = {"type": self.type.value, "message": self.message}
        if self.suggestion:
            data["suggestion"] = self.suggestion
        return data


@dataclass
class ValidationResult:
    """Result of template content security validation."""
    is_secure: bool
    violations: List[SecurityViolation] = field(default_factory=list)
    warnings: List[SecurityWarning] = field(default_factory=list)
    risk_score: int = 0

    @property
    def blocking_violations(self) -> List[SecurityViolation]:
        """Return violations that should block template usage."""
        return [v for v in self.violations if v.severity.is_blocking]

    @property
    def display_risk_score(self) -> int:
        """Risk score clamped to 0-100 for presentation."""
        return max(0, min(100, self.risk_score))

    def count_by_severity(self) -> Dict[str, int]:
        counts = {severity.value: 0 for severity in SecuritySeverity}
        for violation in self.violations:
            counts[violation.severity.value] += 1
        return counts

    def to_dict(self) -> Dict[str, Any]:
        """Convert result to dictionary for serialization."""
        return {
            "isSecure": self.is_secure,
            "violations": [v.to_dict() for v in self.violations],
            "warnings": [w.to_dict() for w in self.warnings],
            "riskScore": self.risk_score,
        }


# ==================== Security Alerts ====================

@dataclass
class SecurityAlert:
    """Stateful security event with a one-way resolve lifecycle."""
    id: str
    timestamp: datetime
    severity: SecuritySeverity
    type: SecurityAlertType
    message: str
    user_id: Optional[str] = None
    template_id: Optional[str] = None
    details: Dict[str, Any] = field(default_factory=dict)
    resolved: bool = False
    resolved_at: Optional[datetime] = None
    resolved_by: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        """Convert alert to dictionary for serialization."""
        return {
            "id": self.id,
            "timestamp": self.timestamp.isoformat(),
            "severity": self.severity.value,
            "type": self.type.value,
            "message": self.message,
            "userId": self.user_id,
            "templateId": self.template_id,
            "details": dict(self.details),
            "resolved": self.resolved,
            "resolvedAt": self.resolved_at.isoformat() if self.resolved_at else None,
            "resolvedBy": self.resolved_by,
        }
