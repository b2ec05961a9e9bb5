"""Content Security Analyzer for prompt templates.

This module scans template text and its declared variables for injection
attacks, sensitive-data exposure and structural abuse, returning a
structured ValidationResult.

Security Categories Validated:
- Injection: code, script, command, SQL and template-context injection
- Data Exposure: hardcoded secrets, card numbers, SSNs
- Variables: reserved or prototype-polluting names
- Malicious Content: traversal, file URIs, executable data URIs, NUL bytes
- Resource Abuse: oversized content, too many variables, deep nesting

The analyzer holds no mutable state: identical inputs always produce equal
results, and concurrent calls never interact. Malformed variable
declarations are schema errors and raise VariableSchemaError before any
scanning takes place; security findings are always returned as data.
"""

import logging
import re
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple, Union

from pydantic import ValidationError as PydanticValidationError

from . import patterns
from .config import SecurityConfig
from .exceptions import VariableSchemaError
from .models import (
    SecurityViolation,
    SecurityWarning,
    TemplateVariable,
    ValidationResult,
    ViolationType,
    WarningType,
)

logger = logging.getLogger(__name__)

VariableDeclaration = Union[TemplateVariable, Mapping[str, Any]]

# Sanitization patterns
_SCRIPT_OPEN = re.compile(r"<script\b[^>]{0,1000}>", re.IGNORECASE)
_SCRIPT_CLOSE = re.compile(r"</script\s{0,20}>", re.IGNORECASE)
_SCRIPT_FRAGMENT = re.compile(r"</?script\b", re.IGNORECASE)
_JAVASCRIPT_URI = re.compile(r"javascript\s{0,20}:", re.IGNORECASE)
_EVENT_HANDLER_ATTRIBUTE = re.compile(
    patterns.EVENT_HANDLER_PATTERN.pattern
    + r"\s{0,20}(?:\"[^\"\n]{0,1000}\"|'[^'\n]{0,1000}'|[^\s>]{0,1000})",
    re.IGNORECASE,
)
_PROTOTYPE_EXPRESSION = re.compile(r"\{\{\s*(?:constructor|__proto__)\s*\}\}", re.IGNORECASE)
_BACKTICK_SPAN = re.compile(r"`([^`]*)`")
_BACKTICK_ESCAPABLE = re.compile(r"[$\\]")

# Suspicious runtime values
_SUSPICIOUS_SCRIPT = re.compile(r"<script|javascript:", re.IGNORECASE)
_SUSPICIOUS_CODE = re.compile(r"eval\s*\(|Function\s*\(")


class ContentSecurityAnalyzer:
    """Stateless security analyzer for template content.

    Example:
        analyzer = ContentSecurityAnalyzer()
        result = analyzer.validate("Hello {{name}}", [{"name": "name", "type": "string"}])
        if not result.is_secure:
            for violation in result.blocking_violations:
                print(violation.severity.value, violation.message)
    """

    def __init__(self, config: Optional[SecurityConfig] = None):
        """Initialize the analyzer.

        Args:
            config: Limits and thresholds; defaults are used when omitted
        """
        self.config = config or SecurityConfig()
        self.config.validate()
        self._extra_reserved = frozenset(
            name.strip().lower() for name in self.config.extra_reserved_variable_names
        )

    # ==================== Public API ====================

    def validate(
        self,
        content: str,
        variables: Optional[Sequence[VariableDeclaration]] = None,
    ) -> ValidationResult:
        """Validate template content and declared variables.

        Args:
            content: Raw template body, before variable substitution
            variables: Optional variable declarations (mappings or models)

        Returns:
            ValidationResult with violations, warnings and risk score

        Raises:
            VariableSchemaError: If a variable declaration is malformed
        """
        declared = self.parse_variables(variables)
        content = content if isinstance(content, str) else str(content)

        violations: List[SecurityViolation] = []
        warnings: List[SecurityWarning] = []

        self._check_content_length(content, violations)
        self._check_content_categories(content, violations)
        self._check_variable_security(declared, violations, warnings)
        self._check_malicious_patterns(content, violations)
        self._check_complexity(content, violations, warnings)
        self._check_advisories(content, declared, warnings)

        result = ValidationResult(
            is_secure=not any(v.severity.is_blocking for v in violations),
            violations=violations,
            warnings=warnings,
            risk_score=self.calculate_risk_score(violations),
        )

        if violations:
            logger.debug(
                "Template scan found %d violation(s), risk score %d",
                len(violations), result.risk_score,
            )
        return result

    def parse_variables(
        self,
        variables: Optional[Sequence[VariableDeclaration]],
    ) -> List[TemplateVariable]:
        """Parse variable declarations, failing fast on schema errors.

        Raises:
            VariableSchemaError: If any declaration is malformed
        """
        if not variables:
            return []

        parsed: List[TemplateVariable] = []
        errors: List[str] = []
        for index, declaration in enumerate(variables):
            try:
                parsed.append(self._parse_variable(declaration))
            except (PydanticValidationError, TypeError) as e:
                errors.append(f"Invalid variable at index {index}: {_describe_error(e)}")

        if errors:
            raise VariableSchemaError(errors)
        return parsed

    def validate_variable_declarations(
        self,
        variables: Optional[Sequence[VariableDeclaration]],
    ) -> List[str]:
        """Return schema error messages for variable declarations without raising."""
        try:
            self.parse_variables(variables)
        except VariableSchemaError as e:
            return e.errors
        return []

    def sanitize(self, content: str) -> str:
        """Best-effort removal of dangerous content.

        Strips script elements, javascript: URIs, event-handler attributes and
        prototype expressions, and escapes ``$``/``\\`` inside backtick spans.
        This is a convenience transform, not a security boundary.
        """
        sanitized = _strip_script_elements(content)
        sanitized = _JAVASCRIPT_URI.sub("", sanitized)
        sanitized = _EVENT_HANDLER_ATTRIBUTE.sub("", sanitized)
        sanitized = _PROTOTYPE_EXPRESSION.sub("", sanitized)
        sanitized = _BACKTICK_SPAN.sub(
            lambda m: "`" + _BACKTICK_ESCAPABLE.sub(lambda c: "\\" + c.group(0), m.group(1)) + "`",
            sanitized,
        )
        return sanitized

    def detect_suspicious_usage(self, context: Mapping[str, Any]) -> List[str]:
        """Inspect rendering-time variable values for suspicious content.

        Args:
            context: Variable values supplied when a template is executed

        Returns:
            Descriptions of suspicious patterns, empty when clean
        """
        suspicious: List[str] = []
        for key, value in context.items():
            if not isinstance(value, str):
                continue
            if _SUSPICIOUS_SCRIPT.search(value):
                suspicious.append(f"Suspicious script content in variable: {key}")
            if _SUSPICIOUS_CODE.search(value):
                suspicious.append(f"Code execution pattern in variable: {key}")
        return suspicious

    @staticmethod
    def calculate_risk_score(violations: Sequence[SecurityViolation]) -> int:
        """Sum of per-violation severity weights; not clamped."""
        return sum(patterns.RISK_WEIGHTS[v.severity] for v in violations)

    # ==================== Checks ====================

    def _check_content_length(self, content: str, violations: List[SecurityViolation]) -> None:
        limit = self.config.max_template_length
        if len(content) > limit:
            violations.append(_violation(
                ViolationType.EXCESSIVE_COMPLEXITY,
                f"Template exceeds maximum length of {limit} characters",
                suggestion="Reduce template size or split into multiple templates",
            ))

    def _check_content_categories(self, content: str, violations: List[SecurityViolation]) -> None:
        for category, detector in patterns.CATEGORY_DETECTORS:
            for message in detector(content):
                violations.append(_violation(category, message))

    def _check_variable_security(
        self,
        declared: List[TemplateVariable],
        violations: List[SecurityViolation],
        warnings: List[SecurityWarning],
    ) -> None:
        limit = self.config.max_variable_count
        if len(declared) > limit:
            violations.append(_violation(
                ViolationType.EXCESSIVE_COMPLEXITY,
                f"Too many variables ({len(declared)}), maximum allowed: {limit}",
                suggestion="Reduce the number of variables or split template",
            ))

        for variable in declared:
            classification = patterns.classify_variable_name(variable.name, self._extra_reserved)
            if classification == "reserved":
                violations.append(_violation(
                    ViolationType.UNSAFE_VARIABLE,
                    f"Dangerous variable name: {variable.name}",
                ))
            elif classification == "borderline_name":
                violations.append(_violation(
                    ViolationType.UNSAFE_VARIABLE,
                    f"Potentially unsafe variable name: {variable.name}",
                    condition="borderline_name",
                ))

            rules = variable.validation or []
            if len(rules) > self.config.max_variable_validation_rules:
                warnings.append(SecurityWarning(
                    type=WarningType.COMPLEX_VARIABLE,
                    message=f"Variable {variable.name} has many validation rules",
                    suggestion="Consider simplifying variable validation",
                ))

    def _check_malicious_patterns(self, content: str, violations: List[SecurityViolation]) -> None:
        for message in patterns.detect_malicious_patterns(content):
            violations.append(_violation(ViolationType.MALICIOUS_PATTERN, message))

    def _check_complexity(
        self,
        content: str,
        violations: List[SecurityViolation],
        warnings: List[SecurityWarning],
    ) -> None:
        depth = patterns.calculate_nesting_depth(content)
        limit = self.config.max_nesting_depth
        if depth > limit:
            violations.append(_violation(
                ViolationType.EXCESSIVE_COMPLEXITY,
                f"Template nesting too deep ({depth}), maximum: {limit}",
                condition="nesting_depth",
            ))

        references = patterns.extract_variable_references(content)
        if len(references) >= self.config.high_variable_usage_threshold:
            warnings.append(SecurityWarning(
                type=WarningType.HIGH_VARIABLE_USAGE,
                message=f"High number of variable references ({len(references)})",
                suggestion="Consider reducing variable usage for better performance",
            ))

    def _check_advisories(
        self,
        content: str,
        declared: List[TemplateVariable],
        warnings: List[SecurityWarning],
    ) -> None:
        for line_number, length in patterns.find_long_lines(content, self.config.long_line_threshold):
            warnings.append(SecurityWarning(
                type=WarningType.LONG_LINE,
                message=f"Line {line_number} is excessively long ({length} characters)",
                suggestion="Consider breaking long lines for better readability",
            ))

        if patterns.EMAIL_PATTERN.search(content):
            warnings.append(SecurityWarning(
                type=WarningType.EMAIL_EXPOSURE,
                message="Email addresses detected in template",
                suggestion="Consider using variables for email addresses",
            ))

        if patterns.DEPRECATED_SYNTAX_PATTERN.search(content):
            warnings.append(SecurityWarning(
                type=WarningType.DEPRECATED_SYNTAX,
                message="Deprecated interpolation syntax detected",
                suggestion="Use {{variable}} syntax",
            ))

        if not declared:
            return

        referenced = patterns.extract_variable_references(content)
        referenced_set = set(referenced)
        declared_names = [v.name for v in declared]
        declared_set = set(declared_names)

        for name in declared_names:
            if name not in referenced_set:
                warnings.append(SecurityWarning(
                    type=WarningType.UNUSED_VARIABLE,
                    message=f"Declared variable '{name}' is not used in the template",
                    suggestion="Remove the unused declaration",
                ))
        for name in referenced:
            if name not in declared_set:
                warnings.append(SecurityWarning(
                    type=WarningType.UNDECLARED_VARIABLE,
                    message=f"Variable '{name}' is referenced but not declared",
                    suggestion="Declare the variable or remove the reference",
                ))

    # ==================== Helpers ====================

    @staticmethod
    def _parse_variable(declaration: VariableDeclaration) -> TemplateVariable:
        if isinstance(declaration, TemplateVariable):
            return declaration
        if not isinstance(declaration, Mapping):
            raise TypeError(f"expected a mapping, got {type(declaration).__name__}")
        return TemplateVariable.model_validate(dict(declaration))


def _violation(
    category: ViolationType,
    message: str,
    condition: Optional[str] = None,
    suggestion: Optional[str] = None,
) -> SecurityViolation:
    return SecurityViolation(
        type=category,
        severity=patterns.severity_for(category, condition),
        message=message,
        suggestion=suggestion or patterns.CATEGORY_SUGGESTIONS[category],
    )


def _describe_error(error: Exception) -> str:
    if isinstance(error, PydanticValidationError):
        parts = []
        for item in error.errors():
            location = ".".join(str(loc) for loc in item.get("loc", ())) or "value"
            parts.append(f"{location}: {item.get('msg', 'invalid')}")
        return "; ".join(parts)
    return str(error)


def _strip_script_elements(content: str) -> str:
    """Remove ``<script>...</script>`` elements in one forward pass."""
    parts: List[str] = []
    position = 0
    while True:
        opening = _SCRIPT_OPEN.search(content, position)
        if opening is None:
            parts.append(content[position:])
            break
        parts.append(content[position:opening.start()])
        closing = _SCRIPT_CLOSE.search(content, opening.end())
        if closing is None:
            # No closer anywhere after this point: drop the remaining opening tags.
            parts.append(_SCRIPT_OPEN.sub("", content[opening.end():]))
            break
        position = closing.end()
    return _SCRIPT_FRAGMENT.sub("", "".join(parts))
