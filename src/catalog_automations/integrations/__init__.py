"""External collaborators: record store, agents, text generation, notifications, quality scores."""

from .agents import AgentRegistry, AgentRunResult
from .llm import OllamaTextGenerator
from .notifications import HttpNotificationTransport
from .quality import QualityScore, StaticQualityScoreSource
from .repository import InMemoryRecordRepository

__all__ = [
    "AgentRegistry",
    "AgentRunResult",
    "OllamaTextGenerator",
    "HttpNotificationTransport",
    "QualityScore",
    "StaticQualityScoreSource",
    "InMemoryRecordRepository",
]
