"""Automation definitions and run records.

Definitions (automations, triggers, conditions, actions) are pydantic models
parsed from the stored JSON. The wire format keeps camelCase names
(``entityType``, ``ifTrue``, ``retryOnFailure``); attributes are snake_case and
both spellings are accepted on input.

Triggers and actions are closed discriminated unions on ``type``. Adding a
kind means adding a model here and a handler in ``rules.actions``.

Runs and action results are plain dataclasses produced by the engine.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Annotated, Any, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


EntityType = Literal["asset", "issue", "data_product", "quality_rule"]

ConditionOperator = Literal[
    "equals",
    "not_equals",
    "contains",
    "not_contains",
    "starts_with",
    "ends_with",
    "matches",
    "greater_than",
    "less_than",
    "greater_than_or_equals",
    "less_than_or_equals",
    "is_empty",
    "is_not_empty",
    "in",
    "not_in",
]


class DefinitionModel(BaseModel):
    """Base for stored definition payloads."""
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="ignore",
    )

    def to_wire(self) -> dict[str, Any]:
        """Dump using the stored camelCase names."""
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


# ==================== Conditions ====================

class Condition(DefinitionModel):
    """A single field/operator/value predicate."""
    field: str = ""
    operator: ConditionOperator = "equals"
    value: Any = None
    logic: Literal["and", "or"] = "and"

    @property
    def has_value(self) -> bool:
        """True when ``value`` was supplied, even as null."""
        return "value" in self.model_fields_set


# ==================== Triggers ====================

class ScheduleInterval(DefinitionModel):
    type: Literal["minutes", "hours", "days", "weeks", "months", "cron"] = "hours"
    value: Union[int, str] = 1
    at: Optional[str] = None  # HH:mm
    days_of_week: list[int] = Field(default_factory=list)
    day_of_month: Optional[int] = Field(default=None, ge=1, le=31)


class ScheduledTrigger(DefinitionModel):
    type: Literal["scheduled"] = "scheduled"
    interval: Optional[ScheduleInterval] = None


class RecordCreatedTrigger(DefinitionModel):
    type: Literal["record_created"] = "record_created"
    entity_type: EntityType = "asset"
    filter: Optional[Condition] = None


class RecordUpdatedTrigger(DefinitionModel):
    type: Literal["record_updated"] = "record_updated"
    entity_type: EntityType = "asset"
    watch_fields: list[str] = Field(default_factory=list)
    filter: Optional[Condition] = None


class RecordMatchesTrigger(DefinitionModel):
    type: Literal["record_matches"] = "record_matches"
    entity_type: EntityType = "asset"
    conditions: list[Condition] = Field(default_factory=list)
    check_interval: Optional[int] = Field(default=None, ge=1)  # minutes


class AgentCompletedTrigger(DefinitionModel):
    type: Literal["agent_completed"] = "agent_completed"
    agent_name: Optional[str] = None
    status: Literal["success", "failed", "any"] = "any"
    result_filter: Optional[Condition] = None


class WebhookTrigger(DefinitionModel):
    type: Literal["webhook"] = "webhook"
    webhook_id: str
    secret: Optional[str] = None


class ManualTrigger(DefinitionModel):
    type: Literal["manual"] = "manual"
    button_label: str = "Run automation"
    show_on: list[Literal["asset_detail", "issue_detail", "automation_list"]] = Field(
        default_factory=lambda: ["automation_list"]
    )
    require_confirmation: bool = False


Trigger = Annotated[
    Union[
        ScheduledTrigger,
        RecordCreatedTrigger,
        RecordUpdatedTrigger,
        RecordMatchesTrigger,
        AgentCompletedTrigger,
        WebhookTrigger,
        ManualTrigger,
    ],
    Field(discriminator="type"),
]

# Triggers whose runs are meaningless without at least one record.
RECORD_TRIGGER_TYPES = frozenset({"record_created", "record_updated", "record_matches"})


# ==================== Actions ====================

class FieldUpdate(DefinitionModel):
    field: str
    value: Any = None


class RelatedRecordQuery(DefinitionModel):
    entity_type: EntityType
    filter: list[Condition] = Field(default_factory=list)


class UpdateRecordAction(DefinitionModel):
    type: Literal["update_record"] = "update_record"
    target: Literal["trigger_record", "related_record"] = "trigger_record"
    related_record_query: Optional[RelatedRecordQuery] = None
    updates: list[FieldUpdate] = Field(default_factory=list)


class CreateRecordAction(DefinitionModel):
    type: Literal["create_record"] = "create_record"
    entity_type: EntityType
    data: dict[str, Any] = Field(default_factory=dict)


class NotificationTemplate(DefinitionModel):
    subject: Optional[str] = None
    body: str


class SendNotificationAction(DefinitionModel):
    type: Literal["send_notification"] = "send_notification"
    channel: Literal["email", "slack", "webhook"]
    recipients: list[str] = Field(default_factory=list)
    slack_channel: Optional[str] = None
    webhook_url: Optional[str] = None
    template: NotificationTemplate


class RunAgentAction(DefinitionModel):
    type: Literal["run_agent"] = "run_agent"
    agent_name: str
    context: dict[str, Any] = Field(default_factory=dict)
    wait_for_completion: bool = True


class ExecuteWebhookAction(DefinitionModel):
    type: Literal["execute_webhook"] = "execute_webhook"
    url: str
    method: Literal["GET", "POST", "PUT", "PATCH", "DELETE"] = "POST"
    headers: dict[str, str] = Field(default_factory=dict)
    body: Optional[dict[str, Any]] = None
    retry_on_failure: bool = False
    retry_count: Optional[int] = Field(default=None, ge=1, le=10)


class GenerationOptions(DefinitionModel):
    choices: list[str] = Field(default_factory=list)
    max_tokens: Optional[int] = Field(default=None, ge=1)


class GenerateWithAIAction(DefinitionModel):
    type: Literal["generate_with_ai"] = "generate_with_ai"
    prompt: str
    output_field: str = "result"
    output_type: Literal["text", "json", "classification"] = "text"
    options: GenerationOptions = Field(default_factory=GenerationOptions)


class DelayAction(DefinitionModel):
    type: Literal["delay"] = "delay"
    duration: float = Field(ge=0)
    unit: Literal["seconds", "minutes", "hours"] = "seconds"


class ConditionalBranchAction(DefinitionModel):
    type: Literal["conditional_branch"] = "conditional_branch"
    conditions: list[Condition] = Field(default_factory=list)
    if_true: list[Action] = Field(default_factory=list)
    if_false: list[Action] = Field(default_factory=list)


class QualityThresholds(DefinitionModel):
    excellent: float = 90
    good: float = 75
    fair: float = 60


class CheckDataQualityAction(DefinitionModel):
    type: Literal["check_data_quality"] = "check_data_quality"
    tables: list[str] = Field(default_factory=list)
    thresholds: QualityThresholds = Field(default_factory=QualityThresholds)
    create_issue_on_failure: bool = False
    failure_threshold: float = 60


Action = Annotated[
    Union[
        UpdateRecordAction,
        CreateRecordAction,
        SendNotificationAction,
        RunAgentAction,
        ExecuteWebhookAction,
        GenerateWithAIAction,
        DelayAction,
        ConditionalBranchAction,
        CheckDataQualityAction,
    ],
    Field(discriminator="type"),
]

ACTION_TYPES: tuple[str, ...] = (
    "update_record",
    "create_record",
    "send_notification",
    "run_agent",
    "execute_webhook",
    "generate_with_ai",
    "delay",
    "conditional_branch",
    "check_data_quality",
)

ConditionalBranchAction.model_rebuild()


# ==================== Automations ====================

class AutomationSettings(DefinitionModel):
    error_handling: Literal["stop", "continue", "notify"] = "notify"
    cooldown_minutes: Optional[float] = Field(default=None, ge=0)
    run_limit: Optional[int] = Field(default=None, ge=1)
    notify_webhook_url: Optional[str] = None


class Automation(DefinitionModel):
    """A stored trigger -> conditions -> actions workflow."""
    id: str
    name: str
    description: str = ""
    enabled: bool = True
    trigger: Trigger
    conditions: list[Condition] = Field(default_factory=list)
    actions: list[Action] = Field(default_factory=list)
    settings: AutomationSettings = Field(default_factory=AutomationSettings)
    created_by: str = "system"
    last_run_at: Optional[datetime] = None
    run_count: int = 0


# ==================== Runs ====================

class RunStatus(Enum):
    """Automation run status."""
    RUNNING = "running"
    SUCCESS = "success"
    FAILED = "failed"
    SKIPPED = "skipped"


class ActionStatus(Enum):
    """Outcome of a single action."""
    SUCCESS = "success"
    FAILED = "failed"


@dataclass(frozen=True)
class AutomationActionResult:
    """Immutable log entry for one executed action."""
    action_type: str
    action_index: int
    status: str
    result: Any = None
    error: Optional[str] = None
    duration_ms: int = 0

    @property
    def failed(self) -> bool:
        return self.status == ActionStatus.FAILED.value

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "actionType": self.action_type,
            "actionIndex": self.action_index,
            "status": self.status,
            "duration_ms": self.duration_ms,
        }
        if self.result is not None:
            data["result"] = self.result
        if self.error is not None:
            data["error"] = self.error
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> AutomationActionResult:
        return cls(
            action_type=data["actionType"],
            action_index=data["actionIndex"],
            status=data["status"],
            result=data.get("result"),
            error=data.get("error"),
            duration_ms=data.get("duration_ms", 0),
        )


@dataclass
class AutomationRun:
    """Audit record for one invocation of an automation."""
    id: str
    automation_id: str
    trigger_type: str
    status: str
    started_at: datetime
    trigger_data: Optional[dict[str, Any]] = None
    actions_executed: list[AutomationActionResult] = field(default_factory=list)
    records_processed: int = 0
    error_message: Optional[str] = None
    completed_at: Optional[datetime] = None
    duration_ms: Optional[int] = None
    dry_run: bool = False

    @property
    def is_terminal(self) -> bool:
        return self.status != RunStatus.RUNNING.value

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "automation_id": self.automation_id,
            "trigger_type": self.trigger_type,
            "trigger_data": self.trigger_data,
            "status": self.status,
            "actions_executed": [r.to_dict() for r in self.actions_executed],
            "records_processed": self.records_processed,
            "error_message": self.error_message,
            "started_at": self.started_at.isoformat(),
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "duration_ms": self.duration_ms,
            "dry_run": self.dry_run,
        }
