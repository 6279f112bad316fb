"""Persistent automation definitions and run history using SQLite."""

import asyncio
import json
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional

import aiosqlite

from .errors import StateError
from .models import Automation, AutomationActionResult, AutomationRun, RunStatus


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _to_iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


def _from_iso(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


class AutomationStore:
    """
    Stores automation definitions and their run audit log.

    A run row is created in ``running`` status and transitions to a terminal
    status exactly once via ``complete_run``.
    """

    def __init__(self, db_path: str = "./data/automations.db"):
        self.db_path = db_path
        if db_path != ":memory:":
            Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        self._db: Optional[aiosqlite.Connection] = None
        self._lock = asyncio.Lock()

    async def initialize(self) -> None:
        """Open the database and create tables."""
        self._db = await aiosqlite.connect(self.db_path)
        self._db.row_factory = aiosqlite.Row

        await self._db.executescript("""
            -- Automation definitions
            CREATE TABLE IF NOT EXISTS automations (
                id TEXT PRIMARY KEY,
                name TEXT NOT NULL,
                enabled INTEGER DEFAULT 1,
                definition_json TEXT NOT NULL,
                last_run_at TEXT,
                run_count INTEGER DEFAULT 0,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            );

            -- Run audit log
            CREATE TABLE IF NOT EXISTS automation_runs (
                id TEXT PRIMARY KEY,
                automation_id TEXT NOT NULL,
                trigger_type TEXT NOT NULL,
                trigger_data_json TEXT,
                status TEXT NOT NULL,
                actions_executed_json TEXT,
                records_processed INTEGER DEFAULT 0,
                error_message TEXT,
                started_at TEXT NOT NULL,
                completed_at TEXT,
                duration_ms INTEGER,
                dry_run INTEGER DEFAULT 0
            );

            CREATE INDEX IF NOT EXISTS idx_runs_automation ON automation_runs(automation_id);
            CREATE INDEX IF NOT EXISTS idx_runs_started ON automation_runs(started_at);
        """)
        await self._db.commit()

    async def close(self) -> None:
        """Close database connection."""
        if self._db:
            await self._db.close()
            self._db = None

    # ==================== Automations ====================

    async def save_automation(self, automation: Automation) -> None:
        """Insert or replace a definition. Run stats of an existing row are kept."""
        async with self._lock:
            now = _utcnow().isoformat()
            await self._db.execute("""
                INSERT INTO automations
                (id, name, enabled, definition_json, last_run_at, run_count, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    name = excluded.name,
                    enabled = excluded.enabled,
                    definition_json = excluded.definition_json,
                    updated_at = excluded.updated_at
            """, (
                automation.id,
                automation.name,
                int(automation.enabled),
                json.dumps(automation.to_wire()),
                _to_iso(automation.last_run_at),
                automation.run_count,
                now,
                now,
            ))
            await self._db.commit()

    async def get_automation(self, automation_id: str) -> Optional[Automation]:
        cursor = await self._db.execute(
            "SELECT * FROM automations WHERE id = ?",
            (automation_id,)
        )
        row = await cursor.fetchone()
        return self._row_to_automation(row) if row else None

    async def list_automations(self, enabled_only: bool = False) -> list[Automation]:
        query = "SELECT * FROM automations"
        if enabled_only:
            query += " WHERE enabled = 1"
        cursor = await self._db.execute(query + " ORDER BY name")
        rows = await cursor.fetchall()
        return [self._row_to_automation(row) for row in rows]

    async def find_by_webhook_id(self, webhook_id: str) -> Optional[Automation]:
        """Automation whose webhook trigger carries ``webhook_id`` (enabled or not)."""
        for automation in await self.list_automations():
            trigger = automation.trigger
            if trigger.type == "webhook" and trigger.webhook_id == webhook_id:
                return automation
        return None

    async def record_run_stats(self, automation_id: str, ran_at: datetime) -> None:
        """Set last_run_at and bump run_count."""
        async with self._lock:
            await self._db.execute("""
                UPDATE automations
                SET last_run_at = ?, run_count = run_count + 1, updated_at = ?
                WHERE id = ?
            """, (ran_at.isoformat(), _utcnow().isoformat(), automation_id))
            await self._db.commit()

    def _row_to_automation(self, row: aiosqlite.Row) -> Automation:
        definition = json.loads(row["definition_json"])
        definition.update({
            "id": row["id"],
            "name": row["name"],
            "enabled": bool(row["enabled"]),
            "lastRunAt": row["last_run_at"],
            "runCount": row["run_count"],
        })
        return Automation.model_validate(definition)

    # ==================== Runs ====================

    async def create_run(
        self,
        run_id: str,
        automation_id: str,
        trigger_type: str,
        trigger_data: Optional[dict[str, Any]] = None,
        started_at: Optional[datetime] = None,
        dry_run: bool = False,
    ) -> AutomationRun:
        """Create a run in ``running`` status."""
        run = AutomationRun(
            id=run_id,
            automation_id=automation_id,
            trigger_type=trigger_type,
            status=RunStatus.RUNNING.value,
            started_at=started_at or _utcnow(),
            trigger_data=trigger_data,
            dry_run=dry_run,
        )
        async with self._lock:
            await self._db.execute("""
                INSERT INTO automation_runs
                (id, automation_id, trigger_type, trigger_data_json, status,
                 actions_executed_json, records_processed, started_at, dry_run)
                VALUES (?, ?, ?, ?, ?, '[]', 0, ?, ?)
            """, (
                run.id,
                run.automation_id,
                run.trigger_type,
                json.dumps(trigger_data, default=str) if trigger_data is not None else None,
                run.status,
                run.started_at.isoformat(),
                int(dry_run),
            ))
            await self._db.commit()
        return run

    async def complete_run(self, run: AutomationRun) -> None:
        """
        Persist a run's terminal fields.

        Raises:
            StateError: if the run is unknown, not terminal, or already completed
        """
        if not run.is_terminal:
            raise StateError(f"Run {run.id} has no terminal status", run_id=run.id)

        async with self._lock:
            result = await self._db.execute("""
                UPDATE automation_runs
                SET status = ?, actions_executed_json = ?, records_processed = ?,
                    error_message = ?, completed_at = ?, duration_ms = ?
                WHERE id = ? AND status = ?
            """, (
                run.status,
                json.dumps([r.to_dict() for r in run.actions_executed], default=str),
                run.records_processed,
                run.error_message,
                _to_iso(run.completed_at),
                run.duration_ms,
                run.id,
                RunStatus.RUNNING.value,
            ))
            await self._db.commit()

            if result.rowcount == 0:
                raise StateError(f"Run {run.id} not found or already completed", run_id=run.id)

    async def get_run(self, run_id: str) -> Optional[AutomationRun]:
        cursor = await self._db.execute(
            "SELECT * FROM automation_runs WHERE id = ?",
            (run_id,)
        )
        row = await cursor.fetchone()
        return self._row_to_run(row) if row else None

    async def list_runs(self, automation_id: str, limit: int = 50) -> list[AutomationRun]:
        """Most recent runs first."""
        cursor = await self._db.execute("""
            SELECT * FROM automation_runs
            WHERE automation_id = ?
            ORDER BY started_at DESC
            LIMIT ?
        """, (automation_id, limit))
        rows = await cursor.fetchall()
        return [self._row_to_run(row) for row in rows]

    async def count_runs_since(self, automation_id: str, since: datetime) -> int:
        cursor = await self._db.execute("""
            SELECT COUNT(*) as count FROM automation_runs
            WHERE automation_id = ? AND started_at >= ? AND dry_run = 0
        """, (automation_id, since.isoformat()))
        row = await cursor.fetchone()
        return row["count"] if row else 0

    def _row_to_run(self, row: aiosqlite.Row) -> AutomationRun:
        return AutomationRun(
            id=row["id"],
            automation_id=row["automation_id"],
            trigger_type=row["trigger_type"],
            status=row["status"],
            started_at=_from_iso(row["started_at"]),
            trigger_data=json.loads(row["trigger_data_json"]) if row["trigger_data_json"] else None,
            actions_executed=[
                AutomationActionResult.from_dict(item)
                for item in json.loads(row["actions_executed_json"] or "[]")
            ],
            records_processed=row["records_processed"],
            error_message=row["error_message"],
            completed_at=_from_iso(row["completed_at"]),
            duration_ms=row["duration_ms"],
            dry_run=bool(row["dry_run"]),
        )
