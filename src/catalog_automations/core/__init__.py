"""Core engine components."""

from .config import ConfigLoader, EngineConfig
from .state import AutomationStore
from .models import Automation, AutomationActionResult, AutomationRun, RunStatus
from .errors import (
    AutomationError,
    ConfigError,
    DefinitionError,
    RateLimitError,
    ActionError,
    TransportError,
    StateError,
)

__all__ = [
    "ConfigLoader",
    "EngineConfig",
    "AutomationStore",
    "Automation",
    "AutomationActionResult",
    "AutomationRun",
    "RunStatus",
    "AutomationError",
    "ConfigError",
    "DefinitionError",
    "RateLimitError",
    "ActionError",
    "TransportError",
    "StateError",
]
