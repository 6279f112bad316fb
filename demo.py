#!/usr/bin/env python3
"""
Demo script running the bundled automations against sample catalog data.
Run with: python3 demo.py
"""

import asyncio
import os
import sys

# Add src to path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), 'src'))

from catalog_automations.core.config import ConfigLoader
from catalog_automations.core.errors import RateLimitError
from catalog_automations.core.state import AutomationStore
from catalog_automations.integrations.quality import StaticQualityScoreSource
from catalog_automations.integrations.repository import InMemoryRecordRepository
from catalog_automations.rules.engine import AutomationEngine


SAMPLE_ASSETS = [
    {"id": "a-1", "name": "CUSTOMER_LEGACY", "quality_score": 52, "status": "active", "owner": "crm-team"},
    {"id": "a-2", "name": "DAILY_REVENUE", "quality_score": 88, "status": "active", "owner": "finance"},
    {"id": "a-3", "name": "OLD_ORDERS", "quality_score": 31, "status": "deprecated"},
    {"id": "a-4", "name": "BRANCH_PERFORMANCE", "quality_score": 58, "status": "active"},
]


class PrintingNotifier:
    """Prints webhook payloads instead of posting them."""

    async def post_json(self, url, payload):
        first_line = payload.get("text", "").splitlines()[0] if payload.get("text") else ""
        print(f"    -> POST {url}: {first_line}")
        return 200


class KeywordSeverityGenerator:
    """Stands in for the LLM: 'critical' if the prompt mentions revenue, else 'medium'."""

    async def generate(self, system_prompt, user_prompt, max_tokens):
        return "critical" if "revenue" in user_prompt.lower() else "medium"


async def demo():
    print("=" * 60)
    print("CATALOG AUTOMATIONS - DEMO")
    print("=" * 60)
    print()

    os.environ.setdefault("SLACK_WEBHOOK_URL", "https://hooks.example.com/demo")

    # 1. Configuration Loading
    print("[1] Configuration Loading")
    print("-" * 40)

    loader = ConfigLoader('./config')
    config = loader.load_engine_config()
    automations = loader.load_automations()
    scores = loader.load_quality_scores()
    print(f"  ✓ Engine config loaded (hash={config.config_hash()})")
    print(f"    - Max actions per run: {config.limits.max_actions_per_run}")
    print(f"    - Max delay: {config.limits.max_delay_seconds}s")
    print(f"  ✓ Loaded {len(automations)} automations")
    for automation in automations:
        print(f"    - {automation.id}: {automation.trigger.type} -> {len(automation.actions)} action(s)")
    print(f"  ✓ Loaded quality scores for {len(scores)} tables")
    print()

    store = AutomationStore(":memory:")
    await store.initialize()
    for automation in automations:
        await store.save_automation(automation)

    repository = InMemoryRecordRepository({"asset": SAMPLE_ASSETS})
    engine = AutomationEngine(
        store=store,
        repository=repository,
        config=config,
        text_generator=KeywordSeverityGenerator(),
        notifier=PrintingNotifier(),
        quality_source=StaticQualityScoreSource(scores),
    )

    # 2. Validation and preview
    print("[2] Validate + Preview")
    print("-" * 40)

    report = await engine.validate("flag-stale-assets")
    print(f"  ✓ flag-stale-assets valid={report.valid} missing_paths={report.missing_paths}")
    preview = await engine.preview("flag-stale-assets")
    print(f"  ✓ Preview: {preview.matching_records} matching record(s), estimated {preview.estimated_duration}")
    for record in preview.records:
        print(f"    - {record['name']} (score={record['quality_score']})")
    print()

    # 3. Dry run
    print("[3] Dry Run")
    print("-" * 40)

    run = await engine.execute("flag-stale-assets", dry_run=True)
    print(f"  ✓ Dry run {run.status}: {len(run.actions_executed)} action preview(s)")
    print(f"    - Repository untouched: {'review_status' not in await repository.get('asset', 'a-1')}")
    print()

    # 4. Record-matches run and cooldown
    print("[4] Record Matches Run")
    print("-" * 40)

    run = await engine.execute("flag-stale-assets")
    print(f"  ✓ Run {run.status}: {run.records_processed} record(s) in {run.duration_ms}ms")
    print(f"    - a-1 review_status: {(await repository.get('asset', 'a-1')).get('review_status')}")
    try:
        await engine.execute("flag-stale-assets")
    except RateLimitError as e:
        print(f"  ✓ Second run rejected: {e.message}")
    print()

    # 5. Record event dispatch
    print("[5] Record Event Dispatch")
    print("-" * 40)

    issue = await repository.insert("issue", {
        "title": "Revenue totals doubled",
        "description": "DAILY_REVENUE shows twice the expected totals since the last load",
    })
    outcomes = await engine.dispatch_record_event("issue", "created", issue)
    for outcome in outcomes:
        status = outcome.run.status if outcome.run else f"error: {outcome.error}"
        print(f"  ✓ {outcome.automation_id}: {status}")
    print(f"    - Issue severity: {(await repository.get('issue', issue['id'])).get('severity')}")
    print()

    # 6. Scheduled quality report
    print("[6] Scheduled Quality Report")
    print("-" * 40)

    run = await engine.execute_scheduled("nightly-quality-report")
    summary = run.actions_executed[0].result["summary"]
    print(f"  ✓ Run {run.status}: {summary['trusted']} trusted, {summary['untrusted']} untrusted")
    print(f"    - Average score: {summary['averageScore']}")
    history = await store.list_runs("nightly-quality-report")
    print(f"  ✓ Run history: {len(history)} run(s) recorded")
    print()

    await store.close()

    # Summary
    print("=" * 60)
    print("DEMO COMPLETE")
    print("=" * 60)
    print()
    print("To run the service:")
    print("  1. catalog-automations")
    print("  2. curl http://localhost:8080/health")
    print("  3. curl -X POST http://localhost:8080/automations/flag-stale-assets/execute")


if __name__ == "__main__":
    asyncio.run(demo())
