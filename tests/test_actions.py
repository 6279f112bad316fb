"""Tests for action execution."""

import json
import os
import sys

import httpx
import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', 'src'))

from catalog_automations.core.config import EngineConfig
from catalog_automations.core.models import (
    ACTION_TYPES,
    CheckDataQualityAction,
    Condition,
    ConditionalBranchAction,
    CreateRecordAction,
    DelayAction,
    ExecuteWebhookAction,
    FieldUpdate,
    GenerateWithAIAction,
    GenerationOptions,
    NotificationTemplate,
    QualityThresholds,
    RunAgentAction,
    SendNotificationAction,
    UpdateRecordAction,
)
from catalog_automations.integrations.agents import AgentRegistry, AgentRunResult
from catalog_automations.integrations.quality import StaticQualityScoreSource
from catalog_automations.integrations.repository import InMemoryRecordRepository
from catalog_automations.rules.actions import (
    ActionBudget,
    ActionExecutionContext,
    ActionExecutor,
    quality_status,
)
from catalog_automations.rules.evaluator import EvaluationContext
from catalog_automations.rules.tokens import TokenContext


class SleepRecorder:
    def __init__(self):
        self.calls = []

    async def __call__(self, seconds):
        self.calls.append(seconds)


class FakeNotifier:
    def __init__(self):
        self.sent = []

    async def post_json(self, url, payload):
        self.sent.append((url, payload))
        return 200


class FakeEmail:
    def __init__(self):
        self.sent = []

    async def send(self, recipients, subject, body):
        self.sent.append((recipients, subject, body))
        return {"messageId": "m-1"}


class FakeAgent:
    def __init__(self, success=True):
        self.success = success
        self.contexts = []

    async def run(self, context):
        self.contexts.append(context)
        return AgentRunResult(run_id="run-42", success=self.success, stats={"assets": 3})


class FakeTextGenerator:
    def __init__(self, response):
        self.response = response
        self.calls = []

    async def generate(self, system_prompt, user_prompt, max_tokens):
        self.calls.append((system_prompt, user_prompt, max_tokens))
        return self.response


def make_context(record=None, dry_run=False, trigger_data=None, env=None, budget=None):
    return ActionExecutionContext(
        token_context=TokenContext(
            record=record,
            trigger={"type": "manual", "data": trigger_data},
            automation={"id": "auto-1", "name": "Test automation"},
            env=env or {},
        ),
        evaluation_context=EvaluationContext(record=record, data=trigger_data or {}),
        dry_run=dry_run,
        budget=budget,
    )


@pytest.fixture
def repository():
    return InMemoryRecordRepository({
        "asset": [{"id": "a-1", "name": "ORDERS", "status": "new"}],
        "issue": [{"id": "i-1", "title": "Nulls in email", "status": "open"}],
    })


@pytest.fixture
def sleeper():
    return SleepRecorder()


@pytest.fixture
def notifier():
    return FakeNotifier()


@pytest.fixture
def executor(repository, sleeper, notifier):
    return ActionExecutor(repository=repository, notifier=notifier, sleep=sleeper)


class TestActionExecutor:
    """Test dispatch, chaining, and fail-fast behavior."""

    def test_every_action_type_has_a_handler(self, executor):
        assert set(executor.handled_types()) == set(ACTION_TYPES)

    @pytest.mark.asyncio
    async def test_result_fields(self, executor):
        action = CreateRecordAction(entity_type="issue", data={"title": "x"})
        result = await executor.execute(action, make_context(), 4)

        assert result.status == "success"
        assert result.action_type == "create_record"
        assert result.action_index == 4
        assert result.duration_ms >= 0
        assert result.error is None

    @pytest.mark.asyncio
    async def test_previous_action_chaining(self, executor, repository):
        actions = [
            CreateRecordAction(entity_type="issue", data={"title": "Review {{record.name}}"}),
            UpdateRecordAction(updates=[FieldUpdate(field="issue_id", value="{{previous_action.result.id}}")]),
        ]
        results = await executor.execute_sequence(actions, make_context(record={"id": "a-1"}))

        assert [r.status for r in results] == ["success", "success"]
        issue_id = results[0].result["id"]
        asset = await repository.get("asset", "a-1")
        assert asset["issue_id"] == issue_id

    @pytest.mark.asyncio
    async def test_sequence_stops_at_first_failure(self, executor, repository):
        actions = [
            CreateRecordAction(entity_type="issue", data={"title": "first"}),
            UpdateRecordAction(updates=[FieldUpdate(field="status", value="x")]),
            CreateRecordAction(entity_type="issue", data={"title": "third"}),
        ]
        results = await executor.execute_sequence(actions, make_context())

        assert len(results) == 2
        assert results[0].status == "success"
        assert results[1].status == "failed"
        assert results[1].action_index == 1
        titles = [row["title"] for row in await repository.select("issue")]
        assert "third" not in titles

    @pytest.mark.asyncio
    async def test_budget_exhausted_fails_action(self, executor):
        context = make_context(budget=ActionBudget(limit=1))
        action = CreateRecordAction(entity_type="issue", data={})

        assert (await executor.execute(action, context, 0)).status == "success"
        result = await executor.execute(action, context, 1)
        assert result.status == "failed"
        assert "Action limit of 1" in result.error


class TestRecordActions:
    """Test update_record and create_record."""

    @pytest.mark.asyncio
    async def test_update_trigger_record(self, executor, repository):
        action = UpdateRecordAction(updates=[
            FieldUpdate(field="status", value="reviewed by {{automation.name}}"),
        ])
        result = await executor.execute(action, make_context(record={"id": "a-1"}), 0)

        assert result.status == "success"
        assert result.result["updated"] is True
        assert (await repository.get("asset", "a-1"))["status"] == "reviewed by Test automation"

    @pytest.mark.asyncio
    async def test_update_entity_type_from_trigger_data(self, executor, repository):
        action = UpdateRecordAction(updates=[FieldUpdate(field="status", value="closed")])
        context = make_context(record={"id": "i-1"}, trigger_data={"entityType": "issue"})

        result = await executor.execute(action, context, 0)
        assert result.status == "success"
        assert (await repository.get("issue", "i-1"))["status"] == "closed"

    @pytest.mark.asyncio
    async def test_update_entity_type_from_trigger_definition(self, executor, repository):
        action = UpdateRecordAction(updates=[FieldUpdate(field="status", value="triaged")])
        context = make_context(record={"id": "i-1"})
        context.entity_type = "issue"

        await executor.execute(action, context, 0)
        assert (await repository.get("issue", "i-1"))["status"] == "triaged"

    @pytest.mark.asyncio
    async def test_update_without_target_fails(self, executor):
        action = UpdateRecordAction(updates=[FieldUpdate(field="status", value="x")])
        result = await executor.execute(action, make_context(), 0)

        assert result.status == "failed"
        assert result.error == "No target record ID found"

    @pytest.mark.asyncio
    async def test_related_record_not_implemented(self, executor):
        action = UpdateRecordAction.model_validate({
            "target": "related_record",
            "relatedRecordQuery": {"entityType": "issue", "filter": []},
            "updates": [{"field": "status", "value": "x"}],
        })
        result = await executor.execute(action, make_context(record={"id": "a-1"}), 0)

        assert result.status == "failed"
        assert "not yet implemented" in result.error

    @pytest.mark.asyncio
    async def test_update_unknown_record_fails(self, executor):
        action = UpdateRecordAction(updates=[FieldUpdate(field="status", value="x")])
        result = await executor.execute(action, make_context(record={"id": "ghost"}), 0)

        assert result.status == "failed"
        assert "not found" in result.error

    @pytest.mark.asyncio
    async def test_create_record(self, executor, repository):
        action = CreateRecordAction(
            entity_type="issue",
            data={"title": "Check {{record.name | lowercase}}", "tags": ["{{record.status}}"]},
        )
        result = await executor.execute(action, make_context(record={"name": "ORDERS", "status": "new"}), 0)

        assert result.status == "success"
        created = await repository.get("issue", result.result["id"])
        assert created["title"] == "Check orders"
        assert created["tags"] == ["new"]
        assert created["created_by"] == "automation"

    @pytest.mark.asyncio
    async def test_create_keeps_explicit_creator(self, executor, repository):
        action = CreateRecordAction(entity_type="issue", data={"created_by": "steward"})
        result = await executor.execute(action, make_context(), 0)
        assert result.result["data"]["created_by"] == "steward"

    @pytest.mark.asyncio
    async def test_dry_run_does_not_write(self, executor, repository):
        before = await repository.select("issue")
        action = CreateRecordAction(entity_type="issue", data={"title": "{{record.name}}"})
        result = await executor.execute(action, make_context(record={"name": "X"}, dry_run=True), 0)

        assert result.status == "success"
        assert result.result == {
            "dryRun": True,
            "action": "create_record",
            "entityType": "issue",
            "data": {"title": "X", "created_by": "automation"},
        }
        assert await repository.select("issue") == before


class TestNotificationAction:
    """Test send_notification channels."""

    @pytest.mark.asyncio
    async def test_webhook_channel(self, executor, notifier):
        action = SendNotificationAction(
            channel="webhook",
            webhook_url="https://hooks.example.com/{{automation.id}}",
            template=NotificationTemplate(subject="About {{record.name}}", body="{{record.name}} changed"),
        )
        result = await executor.execute(action, make_context(record={"name": "ORDERS"}), 0)

        assert result.status == "success"
        assert notifier.sent == [(
            "https://hooks.example.com/auto-1",
            {"text": "ORDERS changed", "subject": "About ORDERS"},
        )]

    @pytest.mark.asyncio
    async def test_webhook_channel_requires_url(self, executor, notifier):
        action = SendNotificationAction(channel="webhook", template=NotificationTemplate(body="hi"))
        result = await executor.execute(action, make_context(), 0)

        assert result.status == "failed"
        assert "Webhook URL is required" in result.error
        assert notifier.sent == []

    @pytest.mark.asyncio
    async def test_slack_uses_env_url(self, executor, notifier):
        action = SendNotificationAction(
            channel="slack",
            slack_channel="#dq",
            template=NotificationTemplate(body="score {{record.score}}"),
        )
        context = make_context(record={"score": 52.1}, env={"SLACK_WEBHOOK_URL": "https://slack.example/x"})
        result = await executor.execute(action, context, 0)

        assert result.status == "success"
        assert notifier.sent == [("https://slack.example/x", {"text": "score 52.1", "channel": "#dq"})]

    @pytest.mark.asyncio
    async def test_slack_without_url_fails(self, executor):
        action = SendNotificationAction(channel="slack", template=NotificationTemplate(body="x"))
        result = await executor.execute(action, make_context(), 0)

        assert result.status == "failed"
        assert "Slack webhook URL" in result.error

    @pytest.mark.asyncio
    async def test_email_without_transport_is_not_silent(self, executor):
        action = SendNotificationAction(
            channel="email",
            recipients=["owner@example.com"],
            template=NotificationTemplate(subject="s", body="b"),
        )
        result = await executor.execute(action, make_context(), 0)

        assert result.status == "failed"
        assert "Email transport not configured" in result.error

    @pytest.mark.asyncio
    async def test_email_dry_run_previews(self, executor):
        action = SendNotificationAction(
            channel="email",
            recipients=["{{record.owner}}"],
            template=NotificationTemplate(subject="s", body="b"),
        )
        result = await executor.execute(action, make_context(record={"owner": "ana@example.com"}, dry_run=True), 0)

        assert result.status == "success"
        assert result.result["dryRun"] is True
        assert result.result["recipients"] == ["ana@example.com"]

    @pytest.mark.asyncio
    async def test_email_with_transport(self, repository, notifier):
        email = FakeEmail()
        executor = ActionExecutor(repository=repository, notifier=notifier, email_transport=email)
        action = SendNotificationAction(
            channel="email",
            recipients=["owner@example.com"],
            template=NotificationTemplate(subject="Issue", body="Please review"),
        )
        result = await executor.execute(action, make_context(), 0)

        assert result.status == "success"
        assert result.result["delivery"] == {"messageId": "m-1"}
        assert email.sent == [(["owner@example.com"], "Issue", "Please review")]

    @pytest.mark.asyncio
    async def test_email_requires_recipients(self, executor):
        action = SendNotificationAction(channel="email", template=NotificationTemplate(body="b"))
        result = await executor.execute(action, make_context(dry_run=True), 0)
        assert result.status == "failed"


class TestRunAgentAction:
    """Test run_agent."""

    @pytest.mark.asyncio
    async def test_runs_agent_case_insensitive(self, repository):
        agent = FakeAgent()
        executor = ActionExecutor(
            repository=repository,
            agents=AgentRegistry({"Documentarist": agent}),
        )
        action = RunAgentAction(agent_name="documentarist", context={"assetId": "{{record.id}}"})
        result = await executor.execute(action, make_context(record={"id": "a-1"}), 0)

        assert result.status == "success"
        assert result.result == {
            "agentName": "documentarist",
            "runId": "run-42",
            "success": True,
            "stats": {"assets": 3},
        }
        assert agent.contexts == [{"assetId": "a-1", "triggeredBy": "automation"}]

    @pytest.mark.asyncio
    async def test_unknown_agent_fails(self, executor):
        result = await executor.execute(RunAgentAction(agent_name="ghost"), make_context(), 0)
        assert result.status == "failed"
        assert result.error == "Agent not found: ghost"

    @pytest.mark.asyncio
    async def test_dry_run_does_not_invoke(self, repository):
        agent = FakeAgent()
        executor = ActionExecutor(repository=repository, agents=AgentRegistry({"debugger": agent}))
        result = await executor.execute(RunAgentAction(agent_name="debugger"), make_context(dry_run=True), 0)

        assert result.result["dryRun"] is True
        assert agent.contexts == []


class TestWebhookAction:
    """Test execute_webhook with a mocked transport."""

    def make_executor(self, repository, sleeper, handler):
        client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        return ActionExecutor(repository=repository, http_client=client, sleep=sleeper)

    @pytest.mark.asyncio
    async def test_post_with_body(self, repository, sleeper):
        requests = []

        def handler(request):
            requests.append(request)
            return httpx.Response(200, json={"ok": True})

        executor = self.make_executor(repository, sleeper, handler)
        action = ExecuteWebhookAction(
            url="https://api.example.com/assets/{{record.id}}",
            headers={"X-Source": "{{automation.id}}"},
            body={"name": "{{record.name}}"},
        )
        result = await executor.execute(action, make_context(record={"id": "a-1", "name": "ORDERS"}), 0)

        assert result.status == "success"
        assert result.result == {"status": 200, "data": {"ok": True}}
        request = requests[0]
        assert request.method == "POST"
        assert str(request.url) == "https://api.example.com/assets/a-1"
        assert request.headers["content-type"] == "application/json"
        assert request.headers["x-source"] == "auto-1"
        assert json.loads(request.content) == {"name": "ORDERS"}

    @pytest.mark.asyncio
    async def test_get_sends_no_body(self, repository, sleeper):
        requests = []

        def handler(request):
            requests.append(request)
            return httpx.Response(200, text="pong")

        executor = self.make_executor(repository, sleeper, handler)
        action = ExecuteWebhookAction(url="https://api.example.com/ping", method="GET", body={"x": 1})
        result = await executor.execute(action, make_context(), 0)

        assert result.result == {"status": 200, "data": "pong"}
        assert requests[0].content == b""

    @pytest.mark.asyncio
    async def test_retries_with_backoff(self, repository, sleeper):
        responses = iter([503, 503, 200])

        def handler(request):
            return httpx.Response(next(responses), json={})

        executor = self.make_executor(repository, sleeper, handler)
        action = ExecuteWebhookAction(url="https://api.example.com/x", retry_on_failure=True, retry_count=3)
        result = await executor.execute(action, make_context(), 0)

        assert result.status == "success"
        assert sleeper.calls == [1.0, 2.0]

    @pytest.mark.asyncio
    async def test_exhausted_retries_surface_last_error(self, repository, sleeper):
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(500)

        executor = self.make_executor(repository, sleeper, handler)
        action = ExecuteWebhookAction(url="https://api.example.com/x", retry_on_failure=True, retry_count=2)
        result = await executor.execute(action, make_context(), 0)

        assert result.status == "failed"
        assert result.error == "HTTP 500: Internal Server Error"
        assert len(calls) == 2
        assert sleeper.calls == [1.0]

    @pytest.mark.asyncio
    async def test_default_retry_count(self, repository, sleeper):
        calls = []

        def handler(request):
            calls.append(request)
            raise httpx.ConnectError("refused", request=request)

        executor = self.make_executor(repository, sleeper, handler)
        action = ExecuteWebhookAction(url="https://api.example.com/x", retry_on_failure=True)
        result = await executor.execute(action, make_context(), 0)

        assert result.status == "failed"
        assert "Webhook request failed" in result.error
        assert len(calls) == EngineConfig().webhook.default_retry_count

    @pytest.mark.asyncio
    async def test_no_retry_without_flag(self, repository, sleeper):
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(502)

        executor = self.make_executor(repository, sleeper, handler)
        result = await executor.execute(ExecuteWebhookAction(url="https://api.example.com/x"), make_context(), 0)

        assert result.status == "failed"
        assert len(calls) == 1
        assert sleeper.calls == []


class TestGenerateWithAIAction:
    """Test generate_with_ai output handling."""

    CHOICES = ["critical", "high", "medium", "low"]

    def classify_action(self):
        return GenerateWithAIAction(
            prompt="Classify: {{record.title}}",
            output_type="classification",
            options=GenerationOptions(choices=self.CHOICES),
        )

    @pytest.mark.asyncio
    @pytest.mark.parametrize("response,expected", [
        ("  High \n", "high"),
        ("The severity is MEDIUM.", "medium"),
        ("no idea", "critical"),
    ])
    async def test_classification(self, repository, response, expected):
        generator = FakeTextGenerator(response)
        executor = ActionExecutor(repository=repository, text_generator=generator)

        result = await executor.execute(self.classify_action(), make_context(record={"title": "Nulls"}), 0)

        assert result.status == "success"
        assert result.result == expected
        system_prompt, user_prompt, max_tokens = generator.calls[0]
        assert "critical, high, medium, low" in system_prompt
        assert user_prompt == "Classify: Nulls"
        assert max_tokens == EngineConfig().llm.default_max_tokens

    @pytest.mark.asyncio
    async def test_json_output(self, repository):
        executor = ActionExecutor(repository=repository, text_generator=FakeTextGenerator('{"owner": "ana"}'))
        action = GenerateWithAIAction(prompt="p", output_type="json", options=GenerationOptions(max_tokens=64))

        result = await executor.execute(action, make_context(), 0)
        assert result.result == {"owner": "ana"}

    @pytest.mark.asyncio
    async def test_invalid_json_fails(self, repository):
        executor = ActionExecutor(repository=repository, text_generator=FakeTextGenerator("sure! here it is"))
        action = GenerateWithAIAction(prompt="p", output_type="json")

        result = await executor.execute(action, make_context(), 0)
        assert result.status == "failed"
        assert "not valid JSON" in result.error

    @pytest.mark.asyncio
    async def test_text_output_stripped(self, repository):
        generator = FakeTextGenerator("  A short summary.  ")
        executor = ActionExecutor(repository=repository, text_generator=generator)

        result = await executor.execute(GenerateWithAIAction(prompt="p"), make_context(), 0)
        assert result.result == "A short summary."

    @pytest.mark.asyncio
    async def test_without_generator_fails(self, executor):
        result = await executor.execute(GenerateWithAIAction(prompt="p"), make_context(), 0)
        assert result.status == "failed"


class TestDelayAction:
    """Test delay capping and sleeping."""

    @pytest.mark.asyncio
    async def test_delay_capped_at_five_minutes(self, executor, sleeper):
        result = await executor.execute(DelayAction(duration=600, unit="seconds"), make_context(), 0)

        assert result.status == "success"
        assert sleeper.calls == [300]
        assert result.result == {"delayed": True, "duration_ms": 300000}

    @pytest.mark.asyncio
    async def test_delay_units(self, executor, sleeper):
        await executor.execute(DelayAction(duration=2, unit="minutes"), make_context(), 0)
        await executor.execute(DelayAction(duration=1, unit="hours"), make_context(), 1)
        await executor.execute(DelayAction(duration=1.5), make_context(), 2)

        assert sleeper.calls == [120, 300, 1.5]

    @pytest.mark.asyncio
    async def test_dry_run_does_not_sleep(self, executor, sleeper):
        result = await executor.execute(DelayAction(duration=10), make_context(dry_run=True), 0)

        assert result.result["dryRun"] is True
        assert sleeper.calls == []


class TestConditionalBranchAction:
    """Test conditional_branch."""

    @pytest.mark.asyncio
    async def test_false_with_empty_branch(self, executor, repository):
        before = await repository.select("issue")
        action = ConditionalBranchAction(
            conditions=[Condition(field="status", operator="equals", value="closed")],
            if_true=[CreateRecordAction(entity_type="issue", data={})],
        )
        result = await executor.execute(action, make_context(record={"status": "open"}), 0)

        assert result.status == "success"
        assert result.result == {"executed": True, "branch": "ifFalse", "actions": 0}
        assert await repository.select("issue") == before

    @pytest.mark.asyncio
    async def test_true_branch_runs_nested_actions(self, executor, repository):
        action = ConditionalBranchAction.model_validate({
            "conditions": [{"field": "status", "operator": "equals", "value": "open"}],
            "ifTrue": [
                {"type": "create_record", "entityType": "issue", "data": {"title": "nested {{record.status}}"}},
            ],
            "ifFalse": [{"type": "delay", "duration": 1}],
        })
        result = await executor.execute(action, make_context(record={"status": "open"}), 0)

        assert result.status == "success"
        assert result.result["branch"] == "ifTrue"
        assert result.result["actions"] == 1
        nested = result.result["results"][0]
        assert nested["actionType"] == "create_record"
        assert nested["status"] == "success"
        titles = [row["title"] for row in await repository.select("issue")]
        assert "nested open" in titles

    @pytest.mark.asyncio
    async def test_nested_failure_fails_branch(self, executor):
        action = ConditionalBranchAction(
            if_true=[UpdateRecordAction(updates=[FieldUpdate(field="x", value=1)])],
        )
        result = await executor.execute(action, make_context(), 0)

        assert result.status == "failed"
        assert "ifTrue action 0 (update_record) failed" in result.error

    @pytest.mark.asyncio
    async def test_conditions_see_previous_action(self, executor):
        actions = [
            CreateRecordAction(entity_type="issue", data={"title": "t"}),
            ConditionalBranchAction(
                conditions=[Condition(field="previous_action.result.created", operator="equals", value=True)],
            ),
        ]
        results = await executor.execute_sequence(actions, make_context())
        assert results[1].result["branch"] == "ifTrue"

    @pytest.mark.asyncio
    async def test_nested_actions_count_against_budget(self, executor):
        action = ConditionalBranchAction(if_true=[
            CreateRecordAction(entity_type="issue", data={}),
            CreateRecordAction(entity_type="issue", data={}),
        ])
        result = await executor.execute(action, make_context(budget=ActionBudget(limit=2)), 0)

        assert result.status == "failed"
        assert "Action limit of 2" in result.error


class TestDataQualityAction:
    """Test check_data_quality."""

    TABLES = {
        "CUSTOMER_360": {"score": 94.2, "source": "snowflake", "owner": "data-platform"},
        "CUSTOMER_LEGACY": {"score": 52.1, "source": "oracle"},
        "LOAN_PORTFOLIO": {"score": 76.3, "source": "snowflake"},
    }

    @pytest.fixture
    def executor(self, repository):
        return ActionExecutor(
            repository=repository,
            quality_source=StaticQualityScoreSource(self.TABLES),
        )

    def test_quality_status_buckets(self):
        thresholds = QualityThresholds()
        assert quality_status(90, thresholds) == "excellent"
        assert quality_status(89.9, thresholds) == "good"
        assert quality_status(75, thresholds) == "good"
        assert quality_status(60, thresholds) == "fair"
        assert quality_status(59.9, thresholds) == "poor"

    @pytest.mark.asyncio
    async def test_report_and_issues(self, executor, repository):
        action = CheckDataQualityAction(
            tables=["CUSTOMER_360", "customer_legacy", "LOAN_PORTFOLIO", "UNKNOWN_TABLE"],
            create_issue_on_failure=True,
            failure_threshold=60,
        )
        result = await executor.execute(action, make_context(), 0)

        assert result.status == "success"
        outcome = result.result
        statuses = {r["table"]: r["status"] for r in outcome["results"]}
        assert statuses == {
            "CUSTOMER_360": "excellent",
            "customer_legacy": "poor",
            "LOAN_PORTFOLIO": "good",
            "UNKNOWN_TABLE": "unknown",
        }
        assert outcome["summary"]["trusted"] == 2
        assert outcome["summary"]["untrusted"] == 1
        assert outcome["summary"]["notFound"] == 1
        assert [outcome["summary"][k] for k in ("excellent", "good", "fair", "poor")] == [1, 1, 0, 1]
        assert "Excellent: 1 | Good: 1 | Fair: 0 | Poor: 1" in outcome["report"]
        assert "[UNTRUSTED] customer_legacy: 52.1 (poor)" in outcome["report"]
        assert "[UNKNOWN] UNKNOWN_TABLE" in outcome["report"]

        assert len(outcome["issuesCreated"]) == 1
        issue = await repository.get("issue", outcome["issuesCreated"][0])
        assert issue["severity"] == "high"
        assert "customer_legacy" in issue["title"]

    @pytest.mark.asyncio
    async def test_custom_thresholds_without_issues(self, executor, repository):
        before = await repository.select("issue")
        action = CheckDataQualityAction.model_validate({
            "tables": ["LOAN_PORTFOLIO"],
            "thresholds": {"excellent": 95, "good": 85, "fair": 70},
            "failureThreshold": 80,
        })
        result = await executor.execute(action, make_context(), 0)

        assert result.result["results"][0]["status"] == "fair"
        assert result.result["results"][0]["trusted"] is False
        assert result.result["issuesCreated"] == []
        assert await repository.select("issue") == before

    @pytest.mark.asyncio
    async def test_dry_run(self, executor):
        action = CheckDataQualityAction(tables=["CUSTOMER_360"], create_issue_on_failure=True)
        result = await executor.execute(action, make_context(dry_run=True), 0)
        assert result.result["dryRun"] is True
        assert result.result["tables"] == ["CUSTOMER_360"]
