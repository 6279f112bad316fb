"""Automation engine - loads an automation, resolves records, runs actions, records the run."""

import hashlib
import hmac
import json
import math
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Iterator, Optional

import httpx
import structlog

from ..core.config import EngineConfig
from ..core.errors import (
    AutomationDisabledError,
    AutomationNotFoundError,
    DefinitionError,
    WebhookSignatureError,
)
from ..core.models import (
    RECORD_TRIGGER_TYPES,
    Automation,
    AutomationActionResult,
    AutomationRun,
    Condition,
    RunStatus,
)
from ..core.state import AutomationStore
from ..integrations.agents import AgentRegistry
from ..integrations.llm import TextGenerator
from ..integrations.notifications import EmailTransport, NotificationTransport
from ..integrations.quality import QualityScoreSource
from ..integrations.repository import RecordRepository
from ..safety.throttle import AutomationThrottle
from .actions import ActionBudget, ActionExecutionContext, ActionExecutor, SleepFunc, UNIT_SECONDS
from .evaluator import EvaluationContext
from .paths import MISSING, navigate_path
from .tokens import TokenContext


logger = structlog.get_logger()

# Rough per-action cost used by preview, in milliseconds
ACTION_COST_MS = {
    "run_agent": 30000,
    "generate_with_ai": 3000,
    "execute_webhook": 2000,
}
DEFAULT_ACTION_COST_MS = 500


@dataclass
class PreviewResult:
    """What a run would touch, without running it."""
    records: list[dict[str, Any]]
    matching_records: int
    actions: list[dict[str, Any]]
    estimated_duration: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "records": self.records,
            "matchingRecords": self.matching_records,
            "actions": self.actions,
            "estimatedDuration": self.estimated_duration,
        }


@dataclass
class ValidationReport:
    """Preflight findings for an automation definition."""
    valid: bool
    errors: list[str] = field(default_factory=list)
    missing_paths: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "valid": self.valid,
            "errors": self.errors,
            "missing_paths": self.missing_paths,
        }


@dataclass
class DispatchOutcome:
    """Result of running one automation matched by an event."""
    automation_id: str
    run: Optional[AutomationRun] = None
    error: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "automation_id": self.automation_id,
            "run": self.run.to_dict() if self.run else None,
            "error": self.error,
        }


class AutomationEngine:
    """
    Runs stored automations.

    Flow for ``execute``:
    1. Load the automation; reject if missing or (outside dry runs) disabled
    2. Enforce cooldown and hourly run limit
    3. Create the run row in ``running`` status
    4. Resolve records (trigger payload record, or a query for record_matches)
    5. Skip the run when a record trigger found nothing
    6. Per record: check the automation's conditions, run the action sequence
    7. Finalise the run once and update the automation's stats

    Collaborators are passed in so tests can substitute fakes.
    """

    def __init__(
        self,
        store: AutomationStore,
        repository: RecordRepository,
        config: Optional[EngineConfig] = None,
        agents: Optional[AgentRegistry] = None,
        text_generator: Optional[TextGenerator] = None,
        notifier: Optional[NotificationTransport] = None,
        email_transport: Optional[EmailTransport] = None,
        quality_source: Optional[QualityScoreSource] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        clock: Optional[Callable[[], datetime]] = None,
        sleep: Optional[SleepFunc] = None,
    ):
        self.store = store
        self.repository = repository
        self.config = config or EngineConfig()
        self._clock = clock or (lambda: datetime.now(timezone.utc))

        self.executor = ActionExecutor(
            repository=repository,
            config=self.config,
            agents=agents,
            text_generator=text_generator,
            notifier=notifier,
            email_transport=email_transport,
            quality_source=quality_source,
            http_client=http_client,
            sleep=sleep,
            clock=self._clock,
        )
        self.evaluator = self.executor.evaluator
        self.tokens = self.executor.tokens
        self.throttle = AutomationThrottle(store, clock=self._clock)

    # ==================== Execution ====================

    async def execute(
        self,
        automation_id: str,
        trigger_data: Optional[dict[str, Any]] = None,
        dry_run: bool = False,
        max_actions: Optional[int] = None,
    ) -> AutomationRun:
        """
        Execute an automation.

        Args:
            automation_id: Stored automation id
            trigger_data: Snapshot of the triggering event; a ``record`` key
                supplies the record to act on
            dry_run: Preview every action instead of performing it
            max_actions: Override the per-run action ceiling

        Returns:
            The finalised AutomationRun

        Raises:
            DefinitionError: automation missing or disabled
            RateLimitError: cooldown active or hourly limit reached
        """
        automation = await self._load(automation_id)

        if not automation.enabled and not dry_run:
            raise AutomationDisabledError(automation.id, automation.name)

        await self.throttle.check(automation)

        started = time.monotonic()
        run = await self.store.create_run(
            run_id=str(uuid.uuid4()),
            automation_id=automation.id,
            trigger_type=automation.trigger.type,
            trigger_data=trigger_data,
            started_at=self._clock(),
            dry_run=dry_run,
        )
        logger.info(
            "automation_run_started",
            automation_id=automation.id,
            run_id=run.id,
            trigger_type=run.trigger_type,
            dry_run=dry_run,
        )

        try:
            records = await self._records_to_process(automation, trigger_data)

            if not records and automation.trigger.type in RECORD_TRIGGER_TYPES:
                run.status = RunStatus.SKIPPED.value
                run.error_message = "No matching records found"
            else:
                results, processed = await self._process_records(
                    automation, records, trigger_data, dry_run, max_actions
                )
                run.actions_executed = results
                run.records_processed = processed

                failed = next((r for r in results if r.failed), None)
                if failed is not None:
                    run.status = RunStatus.FAILED.value
                    run.error_message = (
                        f"Action {failed.action_index} ({failed.action_type}) failed: {failed.error}"
                    )
                else:
                    run.status = RunStatus.SUCCESS.value

        except Exception as e:
            logger.exception("automation_run_error", automation_id=automation.id, run_id=run.id)
            run.status = RunStatus.FAILED.value
            run.error_message = str(e)
            run.actions_executed = []
            run.records_processed = 0
            await self._finalize(run, started)
            raise

        await self._finalize(run, started)

        if not dry_run and run.status != RunStatus.SKIPPED.value:
            await self.store.record_run_stats(automation.id, run.completed_at)

            if (
                run.status == RunStatus.FAILED.value
                and automation.settings.error_handling == "notify"
                and automation.settings.notify_webhook_url
            ):
                await self._notify_failure(automation, run)

        logger.info(
            "automation_run_completed",
            automation_id=automation.id,
            run_id=run.id,
            status=run.status,
            records_processed=run.records_processed,
            actions=len(run.actions_executed),
            duration_ms=run.duration_ms,
        )
        return run

    async def _process_records(
        self,
        automation: Automation,
        records: list[dict[str, Any]],
        trigger_data: Optional[dict[str, Any]],
        dry_run: bool,
        max_actions: Optional[int],
    ) -> tuple[list[AutomationActionResult], int]:
        limit = max_actions or self.config.limits.max_actions_per_run
        actions = automation.actions
        if len(actions) > limit:
            logger.warning(
                "actions_truncated",
                automation_id=automation.id,
                limit=limit,
                total=len(actions),
            )
            actions = actions[:limit]

        all_results: list[AutomationActionResult] = []
        processed = 0

        # Triggers without records run once with no record in context; conditions
        # only gate record passes
        for record in records or [None]:
            context = self._build_context(automation, record, trigger_data, dry_run, limit)

            if record is not None and not self.evaluator.evaluate_all(
                automation.conditions, {"record": record}
            ):
                continue

            results = await self.executor.execute_sequence(actions, context)
            all_results.extend(results)
            processed += 1

            if any(r.failed for r in results) and automation.settings.error_handling == "stop":
                logger.info("automation_run_stopped", automation_id=automation.id, records_processed=processed)
                break

        return all_results, processed

    def _build_context(
        self,
        automation: Automation,
        record: Optional[dict[str, Any]],
        trigger_data: Optional[dict[str, Any]],
        dry_run: bool,
        action_limit: int,
    ) -> ActionExecutionContext:
        token_context = TokenContext(
            record=record,
            trigger={
                "type": automation.trigger.type,
                "timestamp": self._clock().isoformat(),
                "data": trigger_data,
            },
            automation={"id": automation.id, "name": automation.name},
            env=self.config.template_env(),
        )
        return ActionExecutionContext(
            token_context=token_context,
            evaluation_context=EvaluationContext(record=record, data=dict(trigger_data or {})),
            dry_run=dry_run,
            entity_type=getattr(automation.trigger, "entity_type", None),
            budget=ActionBudget(limit=action_limit),
        )

    async def _records_to_process(
        self,
        automation: Automation,
        trigger_data: Optional[dict[str, Any]],
    ) -> list[dict[str, Any]]:
        if trigger_data and isinstance(trigger_data.get("record"), dict):
            return [trigger_data["record"]]

        trigger = automation.trigger
        if trigger.type == "record_matches":
            rows = await self.repository.select(
                trigger.entity_type,
                limit=self.config.limits.record_query_limit,
            )
            return self.evaluator.filter_records(rows, trigger.conditions)

        return []

    async def _finalize(self, run: AutomationRun, started: float) -> None:
        run.completed_at = self._clock()
        run.duration_ms = int((time.monotonic() - started) * 1000)
        await self.store.complete_run(run)

    async def _notify_failure(self, automation: Automation, run: AutomationRun) -> None:
        failed = sum(1 for r in run.actions_executed if r.failed)
        text = (
            f"Automation '{automation.name}' failed: {failed} failed action(s), "
            f"{run.records_processed} record(s) processed."
        )
        if run.error_message:
            text += f"\n{run.error_message}"

        try:
            await self.executor.notifier.post_json(
                automation.settings.notify_webhook_url,
                {"text": text, "subject": f"Automation failed: {automation.name}"},
            )
        except Exception as e:
            logger.warning(
                "failure_notification_failed",
                automation_id=automation.id,
                run_id=run.id,
                error=str(e),
            )

    async def _load(self, automation_id: str) -> Automation:
        automation = await self.store.get_automation(automation_id)
        if automation is None:
            raise AutomationNotFoundError(automation_id)
        return automation

    # ==================== Trigger entry points ====================

    def _trigger_data(self, trigger_type: str, **payload: Any) -> dict[str, Any]:
        data = {"triggerType": trigger_type, "triggeredAt": self._clock().isoformat()}
        data.update({k: v for k, v in payload.items() if v is not None})
        return data

    async def execute_scheduled(self, automation_id: str) -> AutomationRun:
        return await self.execute(automation_id, self._trigger_data("scheduled"))

    async def execute_manual(
        self,
        automation_id: str,
        record: Optional[dict[str, Any]] = None,
        dry_run: bool = False,
    ) -> AutomationRun:
        return await self.execute(
            automation_id,
            self._trigger_data("manual", record=record),
            dry_run=dry_run,
        )

    async def execute_on_record_event(
        self,
        automation_id: str,
        event: str,
        record: dict[str, Any],
        changed_fields: Optional[list[str]] = None,
    ) -> AutomationRun:
        return await self.execute(
            automation_id,
            self._trigger_data(f"record_{event}", record=record, changedFields=changed_fields),
        )

    async def execute_on_agent_complete(
        self,
        automation_id: str,
        agent_name: str,
        run_result: dict[str, Any],
    ) -> AutomationRun:
        return await self.execute(
            automation_id,
            self._trigger_data("agent_completed", agentName=agent_name, runResult=run_result),
        )

    async def execute_on_webhook(self, automation_id: str, payload: Any) -> AutomationRun:
        return await self.execute(automation_id, self._trigger_data("webhook", payload=payload))

    # ==================== Event dispatch ====================

    async def dispatch_record_event(
        self,
        entity_type: str,
        event: str,
        record: dict[str, Any],
        changed_fields: Optional[list[str]] = None,
    ) -> list[DispatchOutcome]:
        """Run every enabled automation listening for this record event."""
        trigger_type = f"record_{event}"
        outcomes = []

        for automation in await self.store.list_automations(enabled_only=True):
            trigger = automation.trigger
            if trigger.type != trigger_type or trigger.entity_type != entity_type:
                continue

            # Unknown changed fields do not filter
            if (
                trigger.type == "record_updated"
                and trigger.watch_fields
                and changed_fields is not None
                and not set(trigger.watch_fields) & set(changed_fields)
            ):
                continue

            if trigger.filter is not None and not self.evaluator.evaluate(
                trigger.filter, {"record": record}
            ):
                continue

            outcomes.append(await self._dispatch(
                automation,
                self.execute_on_record_event(automation.id, event, record, changed_fields),
            ))

        return outcomes

    async def dispatch_agent_completed(
        self,
        agent_name: str,
        run_result: dict[str, Any],
        success: bool,
    ) -> list[DispatchOutcome]:
        """Run every enabled automation listening for this agent's completion."""
        outcomes = []

        for automation in await self.store.list_automations(enabled_only=True):
            trigger = automation.trigger
            if trigger.type != "agent_completed":
                continue
            if trigger.agent_name and trigger.agent_name.lower() != agent_name.lower():
                continue
            if trigger.status != "any" and (trigger.status == "success") != success:
                continue
            if trigger.result_filter is not None and not self.evaluator.evaluate(
                trigger.result_filter,
                EvaluationContext(record=run_result, data={"agentName": agent_name}),
            ):
                continue

            outcomes.append(await self._dispatch(
                automation,
                self.execute_on_agent_complete(automation.id, agent_name, run_result),
            ))

        return outcomes

    async def _dispatch(
        self,
        automation: Automation,
        execution: Awaitable[AutomationRun],
    ) -> DispatchOutcome:
        try:
            return DispatchOutcome(automation_id=automation.id, run=await execution)
        except Exception as e:
            logger.exception("automation_dispatch_error", automation_id=automation.id)
            return DispatchOutcome(automation_id=automation.id, error=str(e))

    # ==================== Webhook ingress ====================

    async def handle_webhook(
        self,
        webhook_id: str,
        body: bytes,
        signature: Optional[str] = None,
    ) -> AutomationRun:
        """
        Run the automation bound to ``webhook_id``.

        When the trigger has a secret, ``signature`` must be the hex
        HMAC-SHA256 of the raw body under that secret.

        Raises:
            AutomationNotFoundError: no automation uses this webhook id
            AutomationDisabledError: the automation is switched off
            WebhookSignatureError: signature missing or wrong
            DefinitionError: body is not JSON
        """
        automation = await self.store.find_by_webhook_id(webhook_id)
        if automation is None:
            raise AutomationNotFoundError(webhook_id)
        if not automation.enabled:
            raise AutomationDisabledError(automation.id, automation.name)

        secret = automation.trigger.secret
        if secret:
            expected = hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()
            provided = (signature or "").strip().lower().removeprefix("sha256=")
            if not hmac.compare_digest(expected, provided):
                logger.warning("webhook_signature_rejected", webhook_id=webhook_id)
                raise WebhookSignatureError("Invalid webhook signature", webhook_id=webhook_id)

        if body.strip():
            try:
                payload = json.loads(body)
            except ValueError:
                raise DefinitionError("Webhook body is not valid JSON", automation_id=automation.id)
        else:
            payload = {}

        return await self.execute_on_webhook(automation.id, payload)

    # ==================== Preview / validation ====================

    async def preview(
        self,
        automation_id: str,
        trigger_data: Optional[dict[str, Any]] = None,
    ) -> PreviewResult:
        """Matching records, the action list and a rough duration; nothing is executed."""
        automation = await self._load(automation_id)
        records = await self._records_to_process(automation, trigger_data)
        matching = self.evaluator.filter_records(records, automation.conditions)

        return PreviewResult(
            records=matching[:self.config.limits.max_preview_records],
            matching_records=len(matching),
            actions=[action.to_wire() for action in automation.actions],
            estimated_duration=self.estimate_duration(automation.actions, len(matching)),
        )

    def estimate_duration(self, actions: list[Any], record_count: int) -> str:
        estimated_ms = 0.0
        for action in actions:
            if action.type == "delay":
                seconds = min(
                    action.duration * UNIT_SECONDS[action.unit],
                    self.config.limits.max_delay_seconds,
                )
                estimated_ms += seconds * 1000
            else:
                estimated_ms += ACTION_COST_MS.get(action.type, DEFAULT_ACTION_COST_MS)

        estimated_ms *= max(1, record_count)

        if estimated_ms < 1000:
            return "< 1 second"
        if estimated_ms < 60000:
            return f"~{math.ceil(estimated_ms / 1000)} seconds"
        return f"~{math.ceil(estimated_ms / 60000)} minutes"

    async def validate(
        self,
        automation_id: str,
        trigger_data: Optional[dict[str, Any]] = None,
    ) -> ValidationReport:
        """
        Check conditions and token references before running.

        Condition shape problems are errors. Token paths that do not resolve
        against a sample context (the first previewed record) are reported as
        ``missing_paths``; they depend on the sample and do not make the
        automation invalid. ``previous_action`` paths are only known at run
        time and are not checked.
        """
        automation = await self._load(automation_id)
        errors = []

        if not automation.actions:
            errors.append("Automation has no actions")

        for label, condition in self._iter_conditions(automation):
            result = self.evaluator.validate(condition)
            if not result.valid:
                errors.append(f"{label}: {result.error}")

        records = await self._records_to_process(automation, trigger_data)
        sample = records[0] if records else None
        context = self._build_context(
            automation, sample, trigger_data, True, self.config.limits.max_actions_per_run
        ).token_context.as_dict()

        missing_paths: list[str] = []
        for action in automation.actions:
            for template in _string_leaves(action.to_wire()):
                for path in self.tokens.extract_paths(template):
                    if path.startswith("previous_action") or path in missing_paths:
                        continue
                    if navigate_path(context, path.split(".")) is MISSING:
                        missing_paths.append(path)

        return ValidationReport(valid=not errors, errors=errors, missing_paths=missing_paths)

    def _iter_conditions(self, automation: Automation) -> Iterator[tuple[str, Condition]]:
        for i, condition in enumerate(automation.conditions):
            yield f"condition {i}", condition

        trigger = automation.trigger
        for i, condition in enumerate(getattr(trigger, "conditions", [])):
            yield f"trigger condition {i}", condition
        for name in ("filter", "result_filter"):
            condition = getattr(trigger, name, None)
            if condition is not None:
                yield f"trigger {name}", condition

        yield from _branch_conditions(automation.actions, "action")


def _branch_conditions(actions: list[Any], prefix: str) -> Iterator[tuple[str, Condition]]:
    for i, action in enumerate(actions):
        if action.type != "conditional_branch":
            continue
        label = f"{prefix} {i}"
        for j, condition in enumerate(action.conditions):
            yield f"{label} condition {j}", condition
        yield from _branch_conditions(action.if_true, f"{label} ifTrue")
        yield from _branch_conditions(action.if_false, f"{label} ifFalse")


def _string_leaves(value: Any) -> Iterator[str]:
    if isinstance(value, str):
        yield value
    elif isinstance(value, dict):
        for item in value.values():
            yield from _string_leaves(item)
    elif isinstance(value, list):
        for item in value:
            yield from _string_leaves(item)
