"""Automation engine error definitions."""

from typing import Optional, Any
from enum import Enum


class ErrorSeverity(Enum):
    """Error severity levels for classification."""
    LOW = "low"           # Transient, caller may retry shortly
    MEDIUM = "medium"     # Retry with backoff
    HIGH = "high"         # Definition must be fixed
    CRITICAL = "critical" # Persistence invariant broken


class ErrorCategory(Enum):
    """Error categories for routing and handling."""
    TRANSIENT = "transient"       # Network, timeout - will likely resolve
    PERMANENT = "permanent"       # Config error, missing automation - won't resolve
    RESOURCE = "resource"         # Rate limits, cooldowns
    EXTERNAL = "external"         # Third-party service issue
    VALIDATION = "validation"     # Definition or input validation failure
    SAFETY = "safety"             # Run-level invariant violated


class AutomationError(Exception):
    """Base exception for all automation engine errors."""

    def __init__(
        self,
        message: str,
        severity: ErrorSeverity = ErrorSeverity.MEDIUM,
        category: ErrorCategory = ErrorCategory.TRANSIENT,
        context: Optional[dict[str, Any]] = None,
        retryable: bool = True,
    ):
        super().__init__(message)
        self.message = message
        self.severity = severity
        self.category = category
        self.context = context or {}
        self.retryable = retryable

    def to_dict(self) -> dict[str, Any]:
        """Serialize error for logging/storage."""
        return {
            "type": self.__class__.__name__,
            "message": self.message,
            "severity": self.severity.value,
            "category": self.category.value,
            "context": self.context,
            "retryable": self.retryable,
        }


class ConfigError(AutomationError):
    """Configuration loading or validation error."""

    def __init__(self, message: str, config_path: Optional[str] = None, **kwargs):
        kwargs.setdefault("severity", ErrorSeverity.HIGH)
        kwargs.setdefault("category", ErrorCategory.PERMANENT)
        kwargs.setdefault("retryable", False)
        super().__init__(message, **kwargs)
        self.context["config_path"] = config_path


class DefinitionError(AutomationError):
    """Automation missing, disabled, or malformed."""

    def __init__(self, message: str, automation_id: Optional[str] = None, **kwargs):
        kwargs.setdefault("severity", ErrorSeverity.HIGH)
        kwargs.setdefault("category", ErrorCategory.VALIDATION)
        kwargs.setdefault("retryable", False)
        super().__init__(message, **kwargs)
        self.context["automation_id"] = automation_id


class AutomationNotFoundError(DefinitionError):
    """No automation stored under the requested id."""

    def __init__(self, automation_id: str, **kwargs):
        kwargs.setdefault("category", ErrorCategory.PERMANENT)
        super().__init__(
            f"Automation not found: {automation_id}",
            automation_id=automation_id,
            **kwargs,
        )


class AutomationDisabledError(DefinitionError):
    """Automation exists but is switched off."""

    def __init__(self, automation_id: str, name: str, **kwargs):
        super().__init__(
            f"Automation is disabled: {name}",
            automation_id=automation_id,
            **kwargs,
        )


class RateLimitError(AutomationError):
    """Cooldown or hourly run limit triggered."""

    def __init__(
        self,
        message: str,
        automation_id: Optional[str] = None,
        retry_after: Optional[int] = None,
        **kwargs
    ):
        kwargs.setdefault("severity", ErrorSeverity.LOW)
        kwargs.setdefault("category", ErrorCategory.RESOURCE)
        super().__init__(message, **kwargs)
        self.retry_after = retry_after
        self.context["automation_id"] = automation_id
        self.context["retry_after"] = retry_after


class CooldownActiveError(RateLimitError):
    """The automation ran too recently."""


class RunLimitExceededError(RateLimitError):
    """The automation reached its runs-per-hour ceiling."""


class ActionError(AutomationError):
    """Action handler failure, attributed to one step of the sequence."""

    def __init__(
        self,
        message: str,
        action_type: Optional[str] = None,
        action_index: Optional[int] = None,
        **kwargs
    ):
        kwargs.setdefault("retryable", False)
        super().__init__(message, **kwargs)
        self.context["action_type"] = action_type
        self.context["action_index"] = action_index


class TransportError(ActionError):
    """Outbound HTTP call failed or returned a non-2xx status."""

    def __init__(
        self,
        message: str,
        url: Optional[str] = None,
        status_code: Optional[int] = None,
        **kwargs
    ):
        kwargs.setdefault("category", ErrorCategory.EXTERNAL)
        kwargs.setdefault("retryable", True)
        super().__init__(message, **kwargs)
        self.status_code = status_code
        self.context["url"] = url
        self.context["status_code"] = status_code


class TokenError(AutomationError):
    """Malformed {{...}} token expression."""

    def __init__(self, message: str, expression: Optional[str] = None, **kwargs):
        kwargs.setdefault("severity", ErrorSeverity.LOW)
        kwargs.setdefault("category", ErrorCategory.VALIDATION)
        kwargs.setdefault("retryable", False)
        super().__init__(message, **kwargs)
        self.context["expression"] = expression


class StateError(AutomationError):
    """Run history persistence error."""

    def __init__(self, message: str, run_id: Optional[str] = None, **kwargs):
        kwargs.setdefault("severity", ErrorSeverity.CRITICAL)
        kwargs.setdefault("category", ErrorCategory.SAFETY)
        kwargs.setdefault("retryable", False)
        super().__init__(message, **kwargs)
        self.context["run_id"] = run_id


class RecordStoreError(AutomationError):
    """Record repository rejected a read or write."""

    def __init__(
        self,
        message: str,
        entity_type: Optional[str] = None,
        record_id: Optional[str] = None,
        **kwargs
    ):
        kwargs.setdefault("category", ErrorCategory.EXTERNAL)
        kwargs.setdefault("retryable", False)
        super().__init__(message, **kwargs)
        self.context["entity_type"] = entity_type
        self.context["record_id"] = record_id


class WebhookSignatureError(AutomationError):
    """Inbound webhook signature missing or wrong."""

    def __init__(self, message: str, webhook_id: Optional[str] = None, **kwargs):
        kwargs.setdefault("category", ErrorCategory.SAFETY)
        kwargs.setdefault("retryable", False)
        super().__init__(message, **kwargs)
        self.context["webhook_id"] = webhook_id
