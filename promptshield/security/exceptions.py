"""Security-related exceptions."""

from typing import List, Optional


class PromptShieldError(Exception):
    """Base error for PromptShield."""
    pass


class VariableSchemaError(PromptShieldError, ValueError):
    """Raised when template variable declarations are malformed.

    These are schema errors, not security findings. They are raised before
    any content scanning happens.
    """

    def __init__(self, errors: List[str], message: Optional[str] = None):
        self.errors = list(errors)
        super().__init__(
            message or f"Invalid variable declarations: {'; '.join(self.errors)}"
        )


class SecurityConfigError(PromptShieldError, ValueError):
    """Raised when security configuration is invalid."""
    pass


class SecurityValidationError(PromptShieldError):
    """Raised when security validation fails unexpectedly."""
    pass
