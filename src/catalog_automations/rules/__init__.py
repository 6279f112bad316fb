"""Automation rules: tokens, conditions, actions, and the engine."""

from .engine import AutomationEngine
from .evaluator import ConditionEvaluator
from .actions import ActionExecutor
from .tokens import TokenInterpolator

__all__ = ["AutomationEngine", "ConditionEvaluator", "ActionExecutor", "TokenInterpolator"]
