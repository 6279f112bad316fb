"""Registry of catalog-quality agents that automations can invoke by name."""

from dataclasses import dataclass, field
from typing import Any, Optional, Protocol, runtime_checkable


@dataclass
class AgentRunResult:
    """What an agent reports back after a run."""
    run_id: str
    success: bool
    stats: dict[str, Any] = field(default_factory=dict)


@runtime_checkable
class Agent(Protocol):
    async def run(self, context: dict[str, Any]) -> AgentRunResult:
        ...


class AgentRegistry:
    """Case-insensitive name -> agent lookup."""

    def __init__(self, agents: Optional[dict[str, Agent]] = None):
        self._agents: dict[str, Agent] = {}
        for name, agent in (agents or {}).items():
            self.register(name, agent)

    def register(self, name: str, agent: Agent) -> None:
        self._agents[name.lower()] = agent

    def get(self, name: str) -> Optional[Agent]:
        return self._agents.get(name.lower())

    def names(self) -> list[str]:
        return sorted(self._agents)
