"""
Detection patterns for template content security scanning.

Pattern-based detection for:
- Code injection (dynamic evaluation, runtime object access)
- Script injection (HTML script, event handlers, javascript: URIs)
- Command injection (substitution, backticks, chained commands)
- SQL injection (tautologies, UNION SELECT, DDL/DML statements)
- Template injection (engine-internal context objects)
- Sensitive data exposure (hardcoded secrets, card numbers, SSNs)
- Malicious patterns (traversal, file URIs, script data URIs, NUL bytes)

Each category is an independent predicate over the content string returning
the messages of the rules that matched, in rule order. Severity is looked up
per category in CATEGORY_SEVERITY, never derived from content.

Every pattern is pre-compiled, starts on a literal token and uses bounded
repetition only, so scanning stays linear in the content length.
"""

import re
from dataclasses import dataclass
from typing import Dict, List, Optional, Pattern, Set, Tuple

from .models import SecuritySeverity, ViolationType


@dataclass(frozen=True)
class PatternRule:
    """A single detection rule."""
    pattern: Pattern
    message: str


def _rule(pattern: str, message: str, flags: int = 0) -> PatternRule:
    return PatternRule(re.compile(pattern, flags), message)


# ==================== Severity Policy ====================

CATEGORY_SEVERITY: Dict[ViolationType, SecuritySeverity] = {
    ViolationType.CODE_INJECTION: SecuritySeverity.CRITICAL,
    ViolationType.SCRIPT_INJECTION: SecuritySeverity.HIGH,
    ViolationType.COMMAND_INJECTION: SecuritySeverity.HIGH,
    ViolationType.SQL_INJECTION: SecuritySeverity.HIGH,
    ViolationType.TEMPLATE_INJECTION: SecuritySeverity.MEDIUM,
    ViolationType.SENSITIVE_DATA_EXPOSURE: SecuritySeverity.HIGH,
    ViolationType.UNSAFE_VARIABLE: SecuritySeverity.HIGH,
    ViolationType.MALICIOUS_PATTERN: SecuritySeverity.MEDIUM,
    ViolationType.EXCESSIVE_COMPLEXITY: SecuritySeverity.MEDIUM,
}

# Sub-conditions whose severity differs from the category default.
SEVERITY_OVERRIDES: Dict[Tuple[ViolationType, str], SecuritySeverity] = {
    (ViolationType.UNSAFE_VARIABLE, "borderline_name"): SecuritySeverity.MEDIUM,
    (ViolationType.EXCESSIVE_COMPLEXITY, "nesting_depth"): SecuritySeverity.LOW,
}

CATEGORY_SUGGESTIONS: Dict[ViolationType, str] = {
    ViolationType.CODE_INJECTION: "Remove or escape the dangerous code pattern",
    ViolationType.SCRIPT_INJECTION: "Remove HTML/JavaScript content or properly escape it",
    ViolationType.COMMAND_INJECTION: "Remove command execution patterns",
    ViolationType.SQL_INJECTION: "Remove SQL commands or use parameterized queries",
    ViolationType.TEMPLATE_INJECTION: "Avoid accessing sensitive objects in templates",
    ViolationType.SENSITIVE_DATA_EXPOSURE: "Remove sensitive data and use variables instead",
    ViolationType.UNSAFE_VARIABLE: "Use a different variable name",
    ViolationType.MALICIOUS_PATTERN: "Remove or properly validate the suspicious pattern",
    ViolationType.EXCESSIVE_COMPLEXITY: "Reduce template complexity or split into multiple templates",
}

RISK_WEIGHTS: Dict[SecuritySeverity, int] = {
    SecuritySeverity.CRITICAL: 60,
    SecuritySeverity.HIGH: 25,
    SecuritySeverity.MEDIUM: 10,
    SecuritySeverity.LOW: 3,
}


def severity_for(category: ViolationType, condition: Optional[str] = None) -> SecuritySeverity:
    """Return the fixed severity for a category (and optional sub-condition)."""
    if condition is not None:
        override = SEVERITY_OVERRIDES.get((category, condition))
        if override is not None:
            return override
    return CATEGORY_SEVERITY[category]


# ==================== Rule Tables ====================

_EVENT_NAMES = (
    "abort|afterprint|animationend|animationstart|beforeprint|beforeunload|blur|"
    "canplay|change|click|contextmenu|copy|cut|dblclick|drag|dragend|dragenter|"
    "dragleave|dragover|dragstart|drop|error|focus|focusin|focusout|hashchange|"
    "input|invalid|keydown|keypress|keyup|load|message|mousedown|mouseenter|"
    "mouseleave|mousemove|mouseout|mouseover|mouseup|paste|pause|play|"
    "pointerdown|pointerup|popstate|reset|resize|scroll|search|select|storage|"
    "submit|toggle|touchend|touchstart|transitionend|unload|wheel"
)

EVENT_HANDLER_PATTERN = re.compile(rf"\bon(?:{_EVENT_NAMES})\s*=", re.IGNORECASE)

CODE_INJECTION_RULES: Tuple[PatternRule, ...] = (
    _rule(r"eval\s*\(", "Potential eval() injection", re.IGNORECASE),
    _rule(r"Function\s*\(", "Potential Function constructor injection"),
    _rule(r"\bsetTimeout\s*\(", "Potential setTimeout injection"),
    _rule(r"\bsetInterval\s*\(", "Potential setInterval injection"),
    _rule(r"require\s*\(", "Potential require() injection"),
    _rule(r"\bprocess\.[A-Za-z_$]", "Potential process object access"),
    _rule(r"\bglobal(?:This)?\.[A-Za-z_$]", "Potential global object access"),
    _rule(r"\b__import__\s*\(", "Potential dynamic import injection"),
    _rule(r"\bos\.(?:system|popen|environ|exec[a-z]{0,2}|spawn[a-z]{0,3})\b",
          "Potential operating system access"),
    _rule(r"\{\{\s*constructor\b", "Potential constructor injection"),
    _rule(r"\{\{\s*__proto__\b", "Potential prototype pollution"),
)

SCRIPT_INJECTION_RULES: Tuple[PatternRule, ...] = (
    _rule(r"<script\b", "HTML script tag detected", re.IGNORECASE),
    _rule(r"\bjavascript\s*:", "JavaScript protocol detected", re.IGNORECASE),
    PatternRule(EVENT_HANDLER_PATTERN, "HTML event handler detected"),
    _rule(r"<iframe\b", "HTML iframe tag detected", re.IGNORECASE),
    _rule(r"<object\b", "HTML object tag detected", re.IGNORECASE),
    _rule(r"<embed\b", "HTML embed tag detected", re.IGNORECASE),
)

COMMAND_INJECTION_RULES: Tuple[PatternRule, ...] = (
    _rule(r"`[^`]{0,1000}`", "Backtick expression with potential command execution"),
    _rule(r"\$\([^)\n]{0,500}\)", "Command substitution pattern detected"),
    _rule(r";\s{0,20}(?:rm|del|format|shutdown|reboot|mkfs)\b",
          "Dangerous system command detected", re.IGNORECASE),
    _rule(r"\|\s{0,20}(?:curl|wget|nc|netcat|bash|sh)\b",
          "Network command in pipe detected", re.IGNORECASE),
)

_SQL_IDENTIFIER = r"[\w.`\"\[\]]{1,128}"

SQL_INJECTION_RULES: Tuple[PatternRule, ...] = (
    _rule(r"'\s{0,20}(?:or|and)\s{1,20}"
          r"(?:'?\d{1,20}'?\s{0,20}=\s{0,20}'?\d{1,20}|'[^'\n]{0,50}'\s{0,20}=\s{0,20}')",
          "SQL injection pattern detected", re.IGNORECASE),
    _rule(r"\bunion\s{1,20}(?:all\s{1,20})?select\b",
          "SQL UNION injection pattern detected", re.IGNORECASE),
    _rule(r"\bdrop\s{1,20}table\b", "SQL DROP TABLE command detected", re.IGNORECASE),
    _rule(rf"\bdelete\s{{1,20}}from\s{{1,20}}(?:\{{\{{|{_SQL_IDENTIFIER}\s{{1,20}}where\b)",
          "SQL DELETE command detected", re.IGNORECASE),
    _rule(rf"\binsert\s{{1,20}}into\s{{1,20}}(?:\{{\{{|{_SQL_IDENTIFIER}\s{{0,20}}(?:\(|values\b))",
          "SQL INSERT command detected", re.IGNORECASE),
    _rule(rf"\bupdate\s{{1,20}}(?:\{{\{{[^}}]{{0,128}}\}}\}}|{_SQL_IDENTIFIER})\s{{1,20}}set\s{{1,20}}"
          rf"(?:\{{\{{|{_SQL_IDENTIFIER}\s{{0,20}}=)",
          "SQL UPDATE command detected", re.IGNORECASE),
)

RESERVED_CONTEXT_OBJECTS: Tuple[str, ...] = (
    "config", "request", "response", "session", "settings", "self",
)

TEMPLATE_INJECTION_RULES: Tuple[PatternRule, ...] = tuple(
    _rule(rf"\{{\{{\s*{name}\b", f"Template {name} object access detected", re.IGNORECASE)
    for name in RESERVED_CONTEXT_OBJECTS
)

# Values that are themselves template references are the recommended form.
_QUOTED_LITERAL = r"\s{0,20}[:=]\s{0,20}(['\"])(?!\{\{)[^'\"\n]{1,200}\1"

SENSITIVE_DATA_RULES: Tuple[PatternRule, ...] = (
    _rule(r"(?<![a-z])password" + _QUOTED_LITERAL, "Hardcoded password detected", re.IGNORECASE),
    _rule(r"(?<![a-z])api[_-]?key" + _QUOTED_LITERAL, "Hardcoded API key detected", re.IGNORECASE),
    _rule(r"(?<![a-z])secret" + _QUOTED_LITERAL, "Hardcoded secret detected", re.IGNORECASE),
    _rule(r"(?<![a-z])token" + _QUOTED_LITERAL, "Hardcoded token detected", re.IGNORECASE),
    _rule(r"\b\d{4}[-\s]?\d{4}[-\s]?\d{4}[-\s]?\d{4}\b", "Credit card number pattern detected"),
    _rule(r"\b\d{3}-\d{2}-\d{4}\b", "SSN pattern detected"),
)

_SCRIPT_MIME_TYPES = (
    r"text/html|text/javascript|application/javascript|application/x-javascript|"
    r"application/ecmascript|application/xhtml\+xml|image/svg\+xml"
)

MALICIOUS_PATTERN_RULES: Tuple[PatternRule, ...] = (
    _rule(r"\.\.[/\\]", "Directory traversal pattern detected"),
    _rule(r"\bfile://", "File protocol URL detected", re.IGNORECASE),
    _rule(rf"\bdata:\s{{0,5}}(?:{_SCRIPT_MIME_TYPES})[^,\s]{{0,100}}base64",
          "Base64 data URL with executable content type detected", re.IGNORECASE),
    _rule(r"\x00", "Template contains null bytes"),
)

CATEGORY_RULES: Dict[ViolationType, Tuple[PatternRule, ...]] = {
    ViolationType.CODE_INJECTION: CODE_INJECTION_RULES,
    ViolationType.SCRIPT_INJECTION: SCRIPT_INJECTION_RULES,
    ViolationType.COMMAND_INJECTION: COMMAND_INJECTION_RULES,
    ViolationType.SQL_INJECTION: SQL_INJECTION_RULES,
    ViolationType.TEMPLATE_INJECTION: TEMPLATE_INJECTION_RULES,
    ViolationType.SENSITIVE_DATA_EXPOSURE: SENSITIVE_DATA_RULES,
    ViolationType.MALICIOUS_PATTERN: MALICIOUS_PATTERN_RULES,
}


# ==================== Variable Names ====================

RESERVED_VARIABLE_NAMES: Set[str] = {
    "constructor", "__proto__", "prototype", "eval", "function",
    "require", "process", "global", "globalthis", "window",
}

BORDERLINE_VARIABLE_NAMES: Set[str] = {
    "this", "self", "document", "module", "exports", "arguments",
    "tostring", "valueof", "hasownproperty",
}

_DUNDER_NAME = re.compile(r"^__\w+__$")


def classify_variable_name(name: str, extra_reserved: Optional[Set[str]] = None) -> Optional[str]:
    """Classify a declared variable name.

    Returns ``"reserved"``, ``"borderline_name"`` or None for a safe name.
    Comparison is case-insensitive.
    """
    lowered = name.strip().lower()
    if lowered in RESERVED_VARIABLE_NAMES or (extra_reserved and lowered in extra_reserved):
        return "reserved"
    if lowered in BORDERLINE_VARIABLE_NAMES or _DUNDER_NAME.match(lowered):
        return "borderline_name"
    return None


# ==================== Structural Scans ====================

VARIABLE_REFERENCE_PATTERN = re.compile(r"\{\{\s*([A-Za-z_$][\w$]{0,127})")
DEPRECATED_SYNTAX_PATTERN = re.compile(r"\$\{\s{0,10}[A-Za-z_][\w.]{0,127}\s{0,10}\}|<%=")
EMAIL_PATTERN = re.compile(
    r"\b[A-Za-z0-9._%+-]{1,64}@[A-Za-z0-9-]{1,63}(?:\.[A-Za-z0-9-]{1,63}){0,8}\.[A-Za-z]{2,24}\b"
)


def calculate_nesting_depth(content: str) -> int:
    """Return the maximum nesting depth of ``{{``/``}}`` delimiters.

    Single linear pass; unmatched closers never drive depth below zero.
    """
    max_depth = 0
    depth = 0
    i = 0
    length = len(content) - 1
    while i < length:
        pair = content[i:i + 2]
        if pair == "{{":
            depth += 1
            if depth > max_depth:
                max_depth = depth
            i += 2
        elif pair == "}}":
            depth = max(0, depth - 1)
            i += 2
        else:
            i += 1
    return max_depth


def extract_variable_references(content: str) -> List[str]:
    """Return distinct variable names referenced as ``{{name...}}``, in order."""
    seen: Dict[str, None] = {}
    for match in VARIABLE_REFERENCE_PATTERN.finditer(content):
        seen.setdefault(match.group(1), None)
    return list(seen)


def find_long_lines(content: str, threshold: int) -> List[Tuple[int, int]]:
    """Return ``(line_number, length)`` for lines longer than ``threshold``."""
    return [
        (index + 1, len(line))
        for index, line in enumerate(content.split("\n"))
        if len(line) > threshold
    ]


# ==================== Category Predicates ====================

def _match_rules(rules: Tuple[PatternRule, ...], content: str) -> List[str]:
    return [rule.message for rule in rules if rule.pattern.search(content)]


def detect_code_injection(content: str) -> List[str]:
    """Dynamic code execution and runtime introspection."""
    return _match_rules(CODE_INJECTION_RULES, content)


def detect_script_injection(content: str) -> List[str]:
    return _match_rules(SCRIPT_INJECTION_RULES, content)


def detect_command_injection(content: str) -> List[str]:
    return _match_rules(COMMAND_INJECTION_RULES, content)


def detect_sql_injection(content: str) -> List[str]:
    return _match_rules(SQL_INJECTION_RULES, content)


def detect_template_injection(content: str) -> List[str]:
    """References to engine-internal or request-context objects."""
    return _match_rules(TEMPLATE_INJECTION_RULES, content)


def detect_sensitive_data(content: str) -> List[str]:
    return _match_rules(SENSITIVE_DATA_RULES, content)


def detect_malicious_patterns(content: str) -> List[str]:
    return _match_rules(MALICIOUS_PATTERN_RULES, content)


CATEGORY_DETECTORS = (
    (ViolationType.CODE_INJECTION, detect_code_injection),
    (ViolationType.SCRIPT_INJECTION, detect_script_injection),
    (ViolationType.COMMAND_INJECTION, detect_command_injection),
    (ViolationType.SQL_INJECTION, detect_sql_injection),
    (ViolationType.TEMPLATE_INJECTION, detect_template_injection),
    (ViolationType.SENSITIVE_DATA_EXPOSURE, detect_sensitive_data),
)
