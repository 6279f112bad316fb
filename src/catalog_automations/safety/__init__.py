"""Safety module - cooldowns and run limits."""

from .throttle import AutomationThrottle

__all__ = ["AutomationThrottle"]
