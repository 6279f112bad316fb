"""
Main entry point for the automation engine.

Loads configuration and automation definitions, then serves the HTTP
ingress (execute, preview, validate, run history, inbound webhooks).
"""

import asyncio
import os
import signal
import sys
from pathlib import Path
from typing import Optional

import httpx
import structlog
from aiohttp import web
from dotenv import load_dotenv

from .core.config import ConfigLoader, EngineConfig
from .core.errors import (
    AutomationError,
    AutomationNotFoundError,
    DefinitionError,
    RateLimitError,
    WebhookSignatureError,
)
from .core.state import AutomationStore
from .integrations.agents import AgentRegistry
from .integrations.llm import OllamaTextGenerator
from .integrations.quality import StaticQualityScoreSource
from .integrations.repository import InMemoryRecordRepository
from .rules.engine import AutomationEngine


logger = structlog.get_logger()

ENGINE_KEY = web.AppKey("engine", AutomationEngine)


def configure_logging() -> None:
    """Install the structlog processor chain; JSON output when LOG_FORMAT=json."""
    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            structlog.processors.JSONRenderer() if os.getenv("LOG_FORMAT") == "json"
            else structlog.dev.ConsoleRenderer(),
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


# ==================== HTTP ingress ====================

def _bad_request(message: str) -> web.Response:
    return web.json_response({"error": message, "type": "BadRequest"}, status=400)


def _error_response(error: AutomationError) -> web.Response:
    body = {"error": error.message, "type": type(error).__name__}

    if isinstance(error, AutomationNotFoundError):
        return web.json_response(body, status=404)
    if isinstance(error, RateLimitError):
        headers = {"Retry-After": str(error.retry_after)} if error.retry_after else None
        return web.json_response(body, status=429, headers=headers)
    if isinstance(error, WebhookSignatureError):
        return web.json_response(body, status=401)
    if isinstance(error, DefinitionError):
        return web.json_response(body, status=400)

    logger.error("request_failed", **error.to_dict())
    return web.json_response(body, status=500)


async def _health(request: web.Request) -> web.Response:
    return web.json_response({"status": "healthy"})


async def _execute(request: web.Request) -> web.Response:
    engine = request.app[ENGINE_KEY]
    try:
        payload = await request.json() if request.can_read_body else {}
    except ValueError:
        return _bad_request("Request body is not valid JSON")
    if not isinstance(payload, dict):
        return _bad_request("Request body must be a JSON object")
    if not isinstance(payload.get("triggerData") or {}, dict):
        return _bad_request("triggerData must be a JSON object")

    try:
        run = await engine.execute(
            request.match_info["automation_id"],
            trigger_data=payload.get("triggerData"),
            dry_run=bool(payload.get("dryRun", False)),
        )
    except AutomationError as e:
        return _error_response(e)
    return web.json_response(run.to_dict())


async def _preview(request: web.Request) -> web.Response:
    engine = request.app[ENGINE_KEY]
    try:
        preview = await engine.preview(request.match_info["automation_id"])
    except AutomationError as e:
        return _error_response(e)
    return web.json_response(preview.to_dict())


async def _validate(request: web.Request) -> web.Response:
    engine = request.app[ENGINE_KEY]
    try:
        report = await engine.validate(request.match_info["automation_id"])
    except AutomationError as e:
        return _error_response(e)
    return web.json_response(report.to_dict())


async def _runs(request: web.Request) -> web.Response:
    engine = request.app[ENGINE_KEY]
    automation_id = request.match_info["automation_id"]
    try:
        limit = int(request.query.get("limit", "50"))
    except ValueError:
        return _bad_request("limit must be an integer")

    if await engine.store.get_automation(automation_id) is None:
        return _error_response(AutomationNotFoundError(automation_id))

    runs = await engine.store.list_runs(automation_id, limit=limit)
    return web.json_response({"runs": [run.to_dict() for run in runs]})


async def _webhook(request: web.Request) -> web.Response:
    engine = request.app[ENGINE_KEY]
    body = await request.read()
    try:
        run = await engine.handle_webhook(
            request.match_info["webhook_id"],
            body,
            signature=request.headers.get("x-webhook-signature"),
        )
    except AutomationError as e:
        return _error_response(e)
    return web.json_response({"runId": run.id, "status": run.status})


def create_app(engine: AutomationEngine) -> web.Application:
    """Build the aiohttp application around an engine."""
    app = web.Application()
    app[ENGINE_KEY] = engine
    app.router.add_get("/health", _health)
    app.router.add_post("/automations/{automation_id}/execute", _execute)
    app.router.add_get("/automations/{automation_id}/preview", _preview)
    app.router.add_get("/automations/{automation_id}/validate", _validate)
    app.router.add_get("/automations/{automation_id}/runs", _runs)
    app.router.add_post("/webhooks/{webhook_id}", _webhook)
    return app


# ==================== Application ====================

class Application:
    """Main application container."""

    def __init__(self):
        self.config: Optional[EngineConfig] = None
        self.store: Optional[AutomationStore] = None
        self.engine: Optional[AutomationEngine] = None
        self._http_client: Optional[httpx.AsyncClient] = None
        self._runner: Optional[web.AppRunner] = None
        self._shutdown_event = asyncio.Event()

    async def start(self) -> None:
        """Start all components."""
        logger.info("application_starting")

        config_path = os.getenv("CONFIG_PATH", "./config/engine.yaml")
        loader = ConfigLoader(str(Path(config_path).parent))
        self.config = (
            loader.load_engine_config(config_path) if os.path.exists(config_path)
            else EngineConfig()
        )

        self.store = AutomationStore(os.getenv("DATABASE_PATH", self.config.database_path))
        await self.store.initialize()

        for automation in loader.load_automations(self.config.automations_directory):
            await self.store.save_automation(automation)

        quality_tables = (
            loader.load_quality_scores(self.config.quality_scores_path)
            if os.path.exists(self.config.quality_scores_path)
            else {}
        )

        self._http_client = httpx.AsyncClient()
        self.engine = AutomationEngine(
            store=self.store,
            repository=InMemoryRecordRepository(),
            config=self.config,
            agents=AgentRegistry(),
            text_generator=OllamaTextGenerator(self.config.llm, client=self._http_client),
            quality_source=StaticQualityScoreSource(quality_tables),
            http_client=self._http_client,
        )

        port = int(os.getenv("PORT", "8080"))
        self._runner = web.AppRunner(create_app(self.engine))
        await self._runner.setup()
        site = web.TCPSite(self._runner, "0.0.0.0", port)
        await site.start()

        logger.info(
            "application_started",
            port=port,
            config_hash=self.config.config_hash(),
            automations=len(await self.store.list_automations()),
        )

    async def stop(self) -> None:
        """Stop all components."""
        logger.info("application_stopping")

        if self._runner:
            await self._runner.cleanup()
        if self._http_client:
            await self._http_client.aclose()
        if self.store:
            await self.store.close()

        logger.info("application_stopped")

    async def run(self) -> None:
        """Run until shutdown signal."""
        await self._shutdown_event.wait()

    def request_shutdown(self) -> None:
        """Request graceful shutdown."""
        self._shutdown_event.set()


async def main() -> None:
    """Main entry point."""
    load_dotenv()
    configure_logging()
    app = Application()

    loop = asyncio.get_running_loop()

    def signal_handler():
        logger.info("shutdown_signal_received")
        app.request_shutdown()

    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, signal_handler)

    try:
        await app.start()
        await app.run()
    except Exception:
        logger.exception("application_error")
        sys.exit(1)
    finally:
        await app.stop()


def run() -> None:
    asyncio.run(main())


if __name__ == "__main__":
    run()
