"""Action handlers and sequential execution for automations."""

import asyncio
import json
import time
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Optional

import httpx
import structlog

from ..core.config import EngineConfig
from ..core.errors import ActionError, ConfigError, TransportError
from ..core.models import (
    ACTION_TYPES,
    ActionStatus,
    AutomationActionResult,
    CheckDataQualityAction,
    ConditionalBranchAction,
    CreateRecordAction,
    DelayAction,
    ExecuteWebhookAction,
    GenerateWithAIAction,
    QualityThresholds,
    RunAgentAction,
    SendNotificationAction,
    UpdateRecordAction,
)
from ..integrations.agents import AgentRegistry
from ..integrations.llm import TextGenerator
from ..integrations.notifications import (
    EmailTransport,
    HttpNotificationTransport,
    NotificationTransport,
)
from ..integrations.quality import QualityScoreSource
from ..integrations.repository import RecordRepository
from .evaluator import ConditionEvaluator, EvaluationContext
from .tokens import TokenContext, TokenInterpolator


logger = structlog.get_logger()

UNIT_SECONDS = {"seconds": 1, "minutes": 60, "hours": 3600}
BODY_METHODS = frozenset({"POST", "PUT", "PATCH"})

SleepFunc = Callable[[float], Awaitable[None]]


@dataclass
class ActionBudget:
    """Counts actions (nested branch actions included) against a per-pass ceiling."""
    limit: int
    used: int = 0

    def consume(self, action_type: str, index: int) -> None:
        if self.used >= self.limit:
            raise ActionError(
                f"Action limit of {self.limit} per run reached",
                action_type=action_type,
                action_index=index,
            )
        self.used += 1


@dataclass
class ActionExecutionContext:
    """Everything a handler may read while executing one record pass."""
    token_context: TokenContext
    evaluation_context: EvaluationContext
    previous_results: list[AutomationActionResult] = field(default_factory=list)
    dry_run: bool = False
    entity_type: Optional[str] = None
    budget: Optional[ActionBudget] = None


def quality_status(score: float, thresholds: QualityThresholds) -> str:
    if score >= thresholds.excellent:
        return "excellent"
    if score >= thresholds.good:
        return "good"
    if score >= thresholds.fair:
        return "fair"
    return "poor"


class ActionExecutor:
    """
    Runs automation actions.

    Every action type has exactly one handler. Handlers interpolate their
    payload against the token context first; in dry-run mode they stop after
    interpolation and validation and return a preview instead of acting.

    ``execute`` never raises: handler failures become a failed
    AutomationActionResult carrying the error message.
    """

    def __init__(
        self,
        repository: RecordRepository,
        config: Optional[EngineConfig] = None,
        agents: Optional[AgentRegistry] = None,
        text_generator: Optional[TextGenerator] = None,
        notifier: Optional[NotificationTransport] = None,
        email_transport: Optional[EmailTransport] = None,
        quality_source: Optional[QualityScoreSource] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        interpolator: Optional[TokenInterpolator] = None,
        evaluator: Optional[ConditionEvaluator] = None,
        sleep: Optional[SleepFunc] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.config = config or EngineConfig()
        self.repository = repository
        self.agents = agents or AgentRegistry()
        self.text_generator = text_generator
        self.notifier = notifier or HttpNotificationTransport(
            client=http_client,
            timeout_seconds=self.config.webhook.timeout_seconds,
        )
        self.email_transport = email_transport
        self.quality_source = quality_source
        self.tokens = interpolator or TokenInterpolator(clock=clock)
        self.evaluator = evaluator or ConditionEvaluator()

        self._http_client = http_client
        self._sleep = sleep or asyncio.sleep
        self._clock = clock or (lambda: datetime.now(timezone.utc))

        self._handlers = {
            "update_record": self._update_record,
            "create_record": self._create_record,
            "send_notification": self._send_notification,
            "run_agent": self._run_agent,
            "execute_webhook": self._execute_webhook,
            "generate_with_ai": self._generate_with_ai,
            "delay": self._delay,
            "conditional_branch": self._conditional_branch,
            "check_data_quality": self._check_data_quality,
        }
        missing = set(ACTION_TYPES) - set(self._handlers)
        if missing:
            raise ConfigError(f"No handler for action types: {sorted(missing)}")

    def handled_types(self) -> list[str]:
        return list(self._handlers)

    async def execute(
        self,
        action: Any,
        context: ActionExecutionContext,
        index: int,
    ) -> AutomationActionResult:
        """
        Execute one action.

        Args:
            action: Parsed action definition
            context: Execution context; ``previous_results`` feeds
                ``{{previous_action.*}}``
            index: Position within the enclosing sequence

        Returns:
            AutomationActionResult with success or failed status
        """
        start = time.monotonic()

        if context.previous_results:
            last = context.previous_results[-1]
            context.token_context.previous_action = {
                "result": last.result,
                "status": last.status,
            }

        try:
            if context.budget is not None:
                context.budget.consume(action.type, index)
            handler = self._handlers[action.type]
            result = await handler(action, context)
        except Exception as e:
            logger.warning(
                "action_failed",
                action_type=action.type,
                action_index=index,
                error=str(e),
                dry_run=context.dry_run,
            )
            return AutomationActionResult(
                action_type=action.type,
                action_index=index,
                status=ActionStatus.FAILED.value,
                error=str(e),
                duration_ms=self._elapsed_ms(start),
            )

        return AutomationActionResult(
            action_type=action.type,
            action_index=index,
            status=ActionStatus.SUCCESS.value,
            result=result,
            duration_ms=self._elapsed_ms(start),
        )

    async def execute_sequence(
        self,
        actions: list[Any],
        context: ActionExecutionContext,
    ) -> list[AutomationActionResult]:
        """Run actions in order, stopping after the first failure."""
        results: list[AutomationActionResult] = []
        sequence_context = replace(context, previous_results=results)

        for index, action in enumerate(actions):
            result = await self.execute(action, sequence_context, index)
            results.append(result)
            if result.failed:
                break

        return results

    @staticmethod
    def _elapsed_ms(start: float) -> int:
        return int((time.monotonic() - start) * 1000)

    # ==================== Record actions ====================

    async def _update_record(
        self,
        action: UpdateRecordAction,
        ctx: ActionExecutionContext,
    ) -> dict[str, Any]:
        if action.target == "related_record" or action.related_record_query is not None:
            raise ActionError("Related record queries not yet implemented", action_type=action.type)

        tc = ctx.token_context
        record = tc.record or {}
        target_id = record.get("id")
        if not target_id:
            raise ActionError("No target record ID found", action_type=action.type)

        trigger_data = tc.trigger.get("data") or {}
        entity_type = trigger_data.get("entityType") or ctx.entity_type or "asset"
        updates = {
            update.field: self.tokens.resolve_deep(update.value, tc)
            for update in action.updates
        }

        if ctx.dry_run:
            return {
                "dryRun": True,
                "action": "update_record",
                "entityType": entity_type,
                "id": target_id,
                "updates": updates,
            }

        data = await self.repository.update(entity_type, str(target_id), updates)
        logger.info("record_updated", entity_type=entity_type, record_id=target_id)
        return {"updated": True, "entityType": entity_type, "id": target_id, "data": data}

    async def _create_record(
        self,
        action: CreateRecordAction,
        ctx: ActionExecutionContext,
    ) -> dict[str, Any]:
        data = self.tokens.resolve_deep(action.data, ctx.token_context)
        if not data.get("created_by"):
            data["created_by"] = "automation"

        if ctx.dry_run:
            return {
                "dryRun": True,
                "action": "create_record",
                "entityType": action.entity_type,
                "data": data,
            }

        row = await self.repository.insert(action.entity_type, data)
        logger.info("record_created", entity_type=action.entity_type, record_id=row.get("id"))
        return {"created": True, "entityType": action.entity_type, "id": row.get("id"), "data": row}

    # ==================== Outbound actions ====================

    async def _send_notification(
        self,
        action: SendNotificationAction,
        ctx: ActionExecutionContext,
    ) -> dict[str, Any]:
        tc = ctx.token_context
        body = self.tokens.resolve(action.template.body, tc)
        subject = (
            self.tokens.resolve(action.template.subject, tc)
            if action.template.subject else None
        )

        if action.channel == "email":
            if not action.recipients:
                raise ActionError(
                    "Email notifications require at least one recipient",
                    action_type=action.type,
                )
            recipients = [self.tokens.resolve(r, tc) for r in action.recipients]
            if ctx.dry_run:
                return {
                    "dryRun": True,
                    "action": "send_notification",
                    "channel": "email",
                    "recipients": recipients,
                    "subject": subject,
                    "body": body,
                }
            if self.email_transport is None:
                raise ActionError(
                    "Email transport not configured; notification not delivered",
                    action_type=action.type,
                )
            delivery = await self.email_transport.send(recipients, subject, body)
            return {"sent": True, "channel": "email", "recipients": recipients, "delivery": delivery}

        if action.channel == "slack":
            url = (
                self.tokens.resolve(action.webhook_url, tc) if action.webhook_url
                else tc.env.get("SLACK_WEBHOOK_URL") or self.config.notifications.slack_webhook_url
            )
            if not url:
                raise ActionError("Slack webhook URL is not configured", action_type=action.type)
            payload = {"text": body}
            if action.slack_channel:
                payload["channel"] = action.slack_channel
        else:
            if not action.webhook_url:
                raise ActionError(
                    "Webhook URL is required for webhook notifications",
                    action_type=action.type,
                )
            url = self.tokens.resolve(action.webhook_url, tc)
            payload = {"text": body}
            if subject:
                payload["subject"] = subject

        if ctx.dry_run:
            return {
                "dryRun": True,
                "action": "send_notification",
                "channel": action.channel,
                "url": url,
                "payload": payload,
            }

        status = await self.notifier.post_json(url, payload)
        logger.info("notification_sent", channel=action.channel, status=status)
        return {"sent": True, "channel": action.channel, "status": status}

    async def _run_agent(
        self,
        action: RunAgentAction,
        ctx: ActionExecutionContext,
    ) -> dict[str, Any]:
        agent_context = self.tokens.resolve_deep(action.context, ctx.token_context)
        agent = self.agents.get(action.agent_name)
        if agent is None:
            raise ActionError(f"Agent not found: {action.agent_name}", action_type=action.type)

        if ctx.dry_run:
            return {
                "dryRun": True,
                "action": "run_agent",
                "agentName": action.agent_name,
                "context": agent_context,
            }

        run = await agent.run({**agent_context, "triggeredBy": "automation"})
        logger.info("agent_run", agent=action.agent_name, run_id=run.run_id, success=run.success)
        return {
            "agentName": action.agent_name,
            "runId": run.run_id,
            "success": run.success,
            "stats": run.stats,
        }

    async def _execute_webhook(
        self,
        action: ExecuteWebhookAction,
        ctx: ActionExecutionContext,
    ) -> dict[str, Any]:
        tc = ctx.token_context
        url = self.tokens.resolve(action.url, tc)
        headers = self.tokens.resolve_deep(action.headers, tc)
        body = self.tokens.resolve_deep(action.body, tc) if action.body is not None else None

        if ctx.dry_run:
            return {
                "dryRun": True,
                "action": "execute_webhook",
                "url": url,
                "method": action.method,
                "headers": headers,
                "body": body,
            }

        request: dict[str, Any] = {"headers": {"Content-Type": "application/json", **headers}}
        if body is not None and action.method in BODY_METHODS:
            request["content"] = json.dumps(body)

        cfg = self.config.webhook
        attempts = (action.retry_count or cfg.default_retry_count) if action.retry_on_failure else 1
        last_error: Optional[TransportError] = None

        for attempt in range(attempts):
            try:
                response = await self._request(action.method, url, **request)
                if response.is_error:
                    raise TransportError(
                        f"HTTP {response.status_code}: {response.reason_phrase}",
                        url=url,
                        status_code=response.status_code,
                    )
                try:
                    data: Any = response.json()
                except ValueError:
                    data = response.text
                return {"status": response.status_code, "data": data}
            except TransportError as e:
                last_error = e
            except httpx.HTTPError as e:
                last_error = TransportError(f"Webhook request failed: {e}", url=url)

            if attempt < attempts - 1:
                delay = cfg.backoff_base ** attempt
                logger.warning(
                    "webhook_retry",
                    url=url,
                    attempt=attempt + 1,
                    delay_seconds=delay,
                    error=str(last_error),
                )
                await self._sleep(delay)

        raise last_error

    async def _request(self, method: str, url: str, **kwargs) -> httpx.Response:
        timeout = self.config.webhook.timeout_seconds
        if self._http_client is not None:
            return await self._http_client.request(method, url, timeout=timeout, **kwargs)
        async with httpx.AsyncClient() as client:
            return await client.request(method, url, timeout=timeout, **kwargs)

    async def _generate_with_ai(
        self,
        action: GenerateWithAIAction,
        ctx: ActionExecutionContext,
    ) -> Any:
        prompt = self.tokens.resolve(action.prompt, ctx.token_context)
        choices = action.options.choices

        system_prompt = self.config.llm.system_prompt
        if action.output_type == "classification" and choices:
            system_prompt += (
                f" You must respond with ONLY one of these exact values: "
                f"{', '.join(choices)}. No other text."
            )
        elif action.output_type == "json":
            system_prompt += " You must respond with valid JSON only, no markdown or explanation."

        if ctx.dry_run:
            return {
                "dryRun": True,
                "action": "generate_with_ai",
                "prompt": prompt,
                "outputType": action.output_type,
                "outputField": action.output_field,
            }

        if self.text_generator is None:
            raise ActionError("No text generation service configured", action_type=action.type)

        max_tokens = action.options.max_tokens or self.config.llm.default_max_tokens
        text = (await self.text_generator.generate(system_prompt, prompt, max_tokens)).strip()

        if action.output_type == "json":
            try:
                return json.loads(text)
            except json.JSONDecodeError:
                raise ActionError("AI response was not valid JSON", action_type=action.type)

        if action.output_type == "classification" and choices:
            normalized = text.lower()
            for choice in choices:
                if choice.lower() == normalized:
                    return choice
            for choice in choices:
                if choice.lower() in normalized:
                    return choice
            logger.warning("classification_fallback", response=text[:100], fallback=choices[0])
            return choices[0]

        return text

    # ==================== Control flow ====================

    async def _delay(self, action: DelayAction, ctx: ActionExecutionContext) -> dict[str, Any]:
        seconds = min(
            action.duration * UNIT_SECONDS[action.unit],
            self.config.limits.max_delay_seconds,
        )
        duration_ms = int(seconds * 1000)

        if ctx.dry_run:
            return {
                "dryRun": True,
                "action": "delay",
                "duration": action.duration,
                "unit": action.unit,
                "duration_ms": duration_ms,
            }

        await self._sleep(seconds)
        return {"delayed": True, "duration_ms": duration_ms}

    async def _conditional_branch(
        self,
        action: ConditionalBranchAction,
        ctx: ActionExecutionContext,
    ) -> dict[str, Any]:
        data = ctx.evaluation_context.as_dict()
        if ctx.token_context.previous_action is not None:
            data["previous_action"] = ctx.token_context.previous_action
        met = self.evaluator.evaluate_all(action.conditions, data)
        branch = "ifTrue" if met else "ifFalse"
        branch_actions = action.if_true if met else action.if_false

        results = await self.execute_sequence(branch_actions, ctx)
        outcome: dict[str, Any] = {
            "executed": True,
            "branch": branch,
            "actions": len(results),
        }
        if results:
            outcome["results"] = [r.to_dict() for r in results]
        if ctx.dry_run:
            outcome["dryRun"] = True

        failed = next((r for r in results if r.failed), None)
        if failed is not None:
            raise ActionError(
                f"{branch} action {failed.action_index} ({failed.action_type}) failed: {failed.error}",
                action_type=action.type,
            )
        return outcome

    # ==================== Data quality ====================

    async def _check_data_quality(
        self,
        action: CheckDataQualityAction,
        ctx: ActionExecutionContext,
    ) -> dict[str, Any]:
        tables = [self.tokens.resolve(t, ctx.token_context) for t in action.tables]
        if not tables:
            raise ActionError("At least one table is required", action_type=action.type)

        if ctx.dry_run:
            return {
                "dryRun": True,
                "action": "check_data_quality",
                "tables": tables,
                "thresholds": action.thresholds.to_wire(),
                "failureThreshold": action.failure_threshold,
            }

        if self.quality_source is None:
            raise ActionError("No quality score source configured", action_type=action.type)

        results: list[dict[str, Any]] = []
        issues_created: list[str] = []

        for table in tables:
            score = await self.quality_source.lookup(table)
            if score is None:
                results.append({"table": table, "found": False, "status": "unknown", "trusted": False})
                continue

            trusted = score.score >= action.failure_threshold
            results.append({
                "table": table,
                "found": True,
                "score": score.score,
                "status": quality_status(score.score, action.thresholds),
                "trusted": trusted,
                "source": score.source,
                "owner": score.owner,
                "lastProfiled": score.last_profiled,
            })

            if action.create_issue_on_failure and not trusted:
                issue = await self.repository.insert("issue", {
                    "title": f"Data quality below threshold: {table}",
                    "description": (
                        f"Quality score {score.score:.1f} is below the failure "
                        f"threshold of {action.failure_threshold:g}."
                    ),
                    "severity": "critical" if score.score < 50 else "high",
                    "status": "open",
                    "source": "automation",
                    "created_by": "automation",
                })
                if issue.get("id"):
                    issues_created.append(str(issue["id"]))

        found = [r for r in results if r["found"]]
        summary = {
            "total": len(results),
            "found": len(found),
            "trusted": sum(1 for r in found if r["trusted"]),
            "untrusted": sum(1 for r in found if not r["trusted"]),
            "notFound": len(results) - len(found),
            "excellent": sum(1 for r in found if r["status"] == "excellent"),
            "good": sum(1 for r in found if r["status"] == "good"),
            "fair": sum(1 for r in found if r["status"] == "fair"),
            "poor": sum(1 for r in found if r["status"] == "poor"),
            "averageScore": (
                round(sum(r["score"] for r in found) / len(found), 1) if found else None
            ),
        }

        logger.info("quality_check_complete", tables=len(tables), untrusted=summary["untrusted"])
        return {
            "results": results,
            "summary": summary,
            "report": self._quality_report(results, summary),
            "issuesCreated": issues_created,
        }

    def _quality_report(self, results: list[dict[str, Any]], summary: dict[str, Any]) -> str:
        lines = [
            "Data Quality Report",
            f"Generated: {self._clock().isoformat()}",
            "",
        ]
        for r in results:
            if not r["found"]:
                lines.append(f"[UNKNOWN] {r['table']}: no quality score available")
                continue
            label = "TRUSTED" if r["trusted"] else "UNTRUSTED"
            lines.append(f"[{label}] {r['table']}: {r['score']:.1f} ({r['status']})")

        lines.append("")
        lines.append(
            f"Summary: {summary['trusted']} trusted, {summary['untrusted']} untrusted, "
            f"{summary['notFound']} not found"
        )
        lines.append(
            f"Excellent: {summary['excellent']} | Good: {summary['good']} | "
            f"Fair: {summary['fair']} | Poor: {summary['poor']}"
        )
        if summary["averageScore"] is not None:
            lines.append(f"Average score: {summary['averageScore']}")
        return "\n".join(lines)
