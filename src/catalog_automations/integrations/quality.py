"""Table quality-score lookup."""

from dataclasses import dataclass
from typing import Any, Optional, Protocol, runtime_checkable


@dataclass
class QualityScore:
    score: float
    source: str
    owner: Optional[str] = None
    last_profiled: Optional[str] = None


@runtime_checkable
class QualityScoreSource(Protocol):
    async def lookup(self, table_name: str) -> Optional[QualityScore]:
        ...


class StaticQualityScoreSource:
    """Scores from a fixed mapping (typically config/quality_scores.yaml). Table names are case-insensitive."""

    def __init__(self, tables: dict[str, dict[str, Any]]):
        self._tables = {
            name.upper(): QualityScore(
                score=float(entry["score"]),
                source=entry.get("source", "unknown"),
                owner=entry.get("owner"),
                last_profiled=entry.get("last_profiled"),
            )
            for name, entry in tables.items()
        }

    async def lookup(self, table_name: str) -> Optional[QualityScore]:
        return self._tables.get(table_name.upper())
