"""Configuration loading and validation."""

import os
import json
import hashlib
from pathlib import Path
from typing import Any, Optional

import yaml
from pydantic import BaseModel, Field, ValidationError

from .errors import ConfigError
from .models import Automation


class LimitsConfig(BaseModel):
    """Per-run execution limits."""
    max_actions_per_run: int = Field(default=20, ge=1, le=200)
    max_preview_records: int = Field(default=10, ge=1, le=100)
    record_query_limit: int = Field(default=100, ge=1, le=1000)
    max_delay_seconds: int = Field(default=300, ge=0, le=300)  # hard ceiling: 5 minutes


class WebhookConfig(BaseModel):
    """Outbound webhook and notification HTTP settings."""
    timeout_seconds: float = Field(default=10.0, ge=1.0, le=120.0)
    default_retry_count: int = Field(default=3, ge=1, le=10)
    backoff_base: float = Field(default=2.0, ge=1.1, le=5.0)


class LLMConfig(BaseModel):
    """Text generation service configuration."""
    provider: str = Field(default="ollama")
    base_url: str = Field(default="http://localhost:11434")
    model: str = Field(default="llama3.2:3b")
    default_max_tokens: int = Field(default=256, ge=16)
    timeout_seconds: int = Field(default=60, ge=5)
    system_prompt: str = Field(
        default="You are a data quality assistant helping with automation tasks."
    )


class NotificationConfig(BaseModel):
    """Notification channel defaults."""
    slack_webhook_url: Optional[str] = Field(default=None)


class EngineConfig(BaseModel):
    """Main automation engine configuration."""
    name: str = Field(default="catalog-automations")
    version: str = Field(default="0.1.0")

    limits: LimitsConfig = Field(default_factory=LimitsConfig)
    webhook: WebhookConfig = Field(default_factory=WebhookConfig)
    llm: LLMConfig = Field(default_factory=LLMConfig)
    notifications: NotificationConfig = Field(default_factory=NotificationConfig)

    # Environment variables exposed to templates as {{env.NAME}}
    env_allowlist: list[str] = Field(default_factory=lambda: ["SLACK_WEBHOOK_URL"])

    # Paths
    database_path: str = Field(default="./data/automations.db")
    automations_directory: str = Field(default="./config/automations")
    quality_scores_path: str = Field(default="./config/quality_scores.yaml")

    def config_hash(self) -> str:
        """Generate hash of config for change detection."""
        return hashlib.sha256(
            self.model_dump_json().encode()
        ).hexdigest()[:16]

    def template_env(self) -> dict[str, str]:
        """Allow-listed environment values for token interpolation."""
        env = {name: os.environ.get(name, "") for name in self.env_allowlist}
        if not env.get("SLACK_WEBHOOK_URL") and self.notifications.slack_webhook_url:
            env["SLACK_WEBHOOK_URL"] = self.notifications.slack_webhook_url
        return env


class ConfigLoader:
    """Loads and validates YAML/JSON configurations."""

    def __init__(self, config_dir: str = "./config"):
        self.config_dir = Path(config_dir)

    def load_engine_config(self, path: Optional[str] = None) -> EngineConfig:
        """Load main engine configuration."""
        if path is None:
            path = self.config_dir / "engine.yaml"
        else:
            path = Path(path)

        data = self._load_file(path)
        try:
            return EngineConfig(**data)
        except ValidationError as e:
            raise ConfigError(f"Invalid engine config: {e}", config_path=str(path))

    def load_automations(self, directory: Optional[str] = None) -> list[Automation]:
        """Load all automation definitions from directory."""
        if directory is None:
            directory = self.config_dir / "automations"
        else:
            directory = Path(directory)

        automations = []
        if not directory.exists():
            return automations

        for pattern in ("**/*.yaml", "**/*.yml", "**/*.json"):
            for file_path in sorted(directory.glob(pattern)):
                automations.extend(self._load_automations_file(file_path))

        return automations

    def load_quality_scores(self, path: Optional[str] = None) -> dict[str, dict[str, Any]]:
        """Load a table -> quality score mapping."""
        path = Path(path) if path else self.config_dir / "quality_scores.yaml"
        data = self._load_file(path)
        tables = data.get("tables", data)
        if not isinstance(tables, dict):
            raise ConfigError("Quality scores must be a mapping of tables", config_path=str(path))
        return tables

    def _load_file(self, path: Path) -> dict[str, Any]:
        """Load YAML or JSON file."""
        if not path.exists():
            raise ConfigError(f"Config file not found: {path}", config_path=str(path))

        try:
            content = path.read_text()

            if path.suffix in (".yaml", ".yml"):
                return yaml.safe_load(content) or {}
            elif path.suffix == ".json":
                return json.loads(content)
            else:
                raise ConfigError(
                    f"Unsupported config format: {path.suffix}",
                    config_path=str(path)
                )
        except yaml.YAMLError as e:
            raise ConfigError(f"Invalid YAML: {e}", config_path=str(path))
        except json.JSONDecodeError as e:
            raise ConfigError(f"Invalid JSON: {e}", config_path=str(path))

    def _load_automations_file(self, path: Path) -> list[Automation]:
        """Load automations from a single file."""
        data = self._load_file(path)

        # Support both single automation and list of automations
        items = data.get("automations", [data] if "id" in data else [])

        automations = []
        for item in items:
            try:
                automations.append(Automation.model_validate(item))
            except ValidationError as e:
                raise ConfigError(
                    f"Invalid automation {item.get('id', '?')}: {e}",
                    config_path=str(path)
                )
        return automations

