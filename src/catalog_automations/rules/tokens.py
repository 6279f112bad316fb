"""
{{token}} interpolation for automation payloads.

A template holds zero or more ``{{ path | transform:arg }}`` spans; text
outside spans is copied as-is. Paths are dot-separated and resolved against a
TokenContext (``record``, ``trigger``, ``automation``, ``previous_action``,
``env``). Unresolved paths render as an empty string. A span that cannot be
evaluated is left in the output verbatim and the rest of the template is still
processed.
"""

import json
import re
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from typing import Any, Callable, Mapping, Optional, Union

import structlog

from ..core.errors import TokenError
from .paths import MISSING, navigate_path, stringify


logger = structlog.get_logger()

TOKEN_PATTERN = re.compile(r"\{\{([^}]+)\}\}")
PATH_PATTERN = re.compile(r"\{\{([^}|]+)")
SEGMENT_PATTERN = re.compile(r"^[\w$-]+$")

# Transform handler: (value, arg) -> value
TransformHandler = Callable[[Any, Optional[str]], Any]


@dataclass
class TokenContext:
    """Values a template may reference. One instance per execution attempt."""
    record: Optional[dict[str, Any]] = None
    trigger: dict[str, Any] = field(default_factory=dict)
    automation: dict[str, Any] = field(default_factory=dict)
    previous_action: Optional[dict[str, Any]] = None
    env: dict[str, str] = field(default_factory=dict)

    def as_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "trigger": self.trigger,
            "automation": self.automation,
            "env": self.env,
        }
        if self.record is not None:
            data["record"] = self.record
        if self.previous_action is not None:
            data["previous_action"] = self.previous_action
        return data


@dataclass
class TokenValidation:
    """Result of checking a template's paths against a context."""
    valid: bool
    missing_paths: list[str]


ContextLike = Union[TokenContext, Mapping[str, Any]]


class TokenInterpolator:
    """
    Resolves {{path | transform:arg}} spans.

    Built-in transforms: uppercase, lowercase, truncate:N, date:FORMAT,
    relative, default:VALUE, json, first, last, count.
    """

    def __init__(self, clock: Optional[Callable[[], datetime]] = None):
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._transforms: dict[str, TransformHandler] = {}
        self._register_builtin_transforms()

    def register_transform(self, name: str, handler: TransformHandler) -> None:
        """Register a custom transform."""
        self._transforms[name.lower()] = handler

    # ==================== Resolution ====================

    def resolve(self, template: str, context: ContextLike) -> str:
        """Replace every {{...}} span in ``template``."""
        if not isinstance(template, str) or not template:
            return template
        return self._resolve_with(template, self._context_data(context))

    def resolve_deep(self, value: Any, context: ContextLike) -> Any:
        """Resolve every string leaf of nested mappings and sequences."""
        return self._resolve_deep_with(value, self._context_data(context))

    def evaluate_expression(self, expression: str, context: ContextLike) -> Any:
        """Evaluate a single ``path | transform`` expression to a raw value."""
        return self._evaluate(expression.strip(), self._context_data(context))

    def _resolve_with(self, template: str, data: dict[str, Any]) -> str:
        def replace(match: re.Match) -> str:
            try:
                return stringify(self._evaluate(match.group(1).strip(), data))
            except Exception as e:
                logger.warning("token_parse_failed", token=match.group(0), error=str(e))
                return match.group(0)

        return TOKEN_PATTERN.sub(replace, template)

    def _resolve_deep_with(self, value: Any, data: dict[str, Any]) -> Any:
        if isinstance(value, str):
            return self._resolve_with(value, data) if value else value
        if isinstance(value, dict):
            return {k: self._resolve_deep_with(v, data) for k, v in value.items()}
        if isinstance(value, (list, tuple)):
            return [self._resolve_deep_with(v, data) for v in value]
        return value

    def _evaluate(self, expression: str, data: dict[str, Any]) -> Any:
        path, _, transform = expression.partition("|")
        value = navigate_path(data, self._parse_path(path.strip(), expression))

        transform = transform.strip()
        if not transform:
            return value

        name, _, arg = transform.partition(":")
        name = name.strip().lower()
        arg = self._strip_quotes(arg.strip()) if arg.strip() else None

        # Only default can turn an absent value into something
        if value is MISSING and name != "default":
            return value

        return self._apply_transform(name, value, arg)

    @staticmethod
    def _parse_path(path: str, expression: str) -> list[str]:
        segments = path.split(".")
        if not path or not all(SEGMENT_PATTERN.match(s) for s in segments):
            raise TokenError(f"Malformed token path: {path!r}", expression=expression)
        return segments

    @staticmethod
    def _strip_quotes(arg: str) -> str:
        if len(arg) >= 2 and arg[0] == arg[-1] and arg[0] in ("'", '"'):
            return arg[1:-1]
        return arg

    @staticmethod
    def _context_data(context: ContextLike) -> dict[str, Any]:
        if isinstance(context, TokenContext):
            return context.as_dict()
        return dict(context or {})

    # ==================== Introspection ====================

    def extract_paths(self, template: str) -> list[str]:
        """Unique paths referenced by ``template``, in order of appearance."""
        if not isinstance(template, str) or not template:
            return []

        paths: list[str] = []
        for match in PATH_PATTERN.finditer(template):
            path = match.group(1).strip()
            if path not in paths:
                paths.append(path)
        return paths

    def validate(self, template: str, context: ContextLike) -> TokenValidation:
        """Report which referenced paths are absent from ``context``."""
        data = self._context_data(context)
        missing = [
            path for path in self.extract_paths(template)
            if navigate_path(data, path.split(".")) is MISSING
        ]
        return TokenValidation(valid=not missing, missing_paths=missing)

    # ==================== Transforms ====================

    def _apply_transform(self, name: str, value: Any, arg: Optional[str]) -> Any:
        handler = self._transforms.get(name)
        if handler is None:
            logger.warning("unknown_token_transform", transform=name)
            return value
        return handler(value, arg)

    def _register_builtin_transforms(self) -> None:
        self.register_transform("uppercase", lambda v, _: stringify(v).upper())
        self.register_transform("lowercase", lambda v, _: stringify(v).lower())
        self.register_transform("truncate", self._truncate)
        self.register_transform("date", self._date)
        self.register_transform("relative", self._relative)
        self.register_transform("default", self._default)
        self.register_transform(
            "json",
            lambda v, _: json.dumps(v, separators=(",", ":"), default=str, ensure_ascii=False),
        )
        self.register_transform("first", lambda v, _: self._sequence_item(v, 0))
        self.register_transform("last", lambda v, _: self._sequence_item(v, -1))
        self.register_transform(
            "count", lambda v, _: len(v) if isinstance(v, (list, tuple)) else 1
        )

    @staticmethod
    def _truncate(value: Any, arg: Optional[str]) -> str:
        max_length = int(arg) if arg else 50
        text = stringify(value)
        if len(text) <= max_length:
            return text
        if max_length <= 3:
            return text[:max(max_length, 0)]
        return text[:max_length - 3] + "..."

    def _date(self, value: Any, arg: Optional[str]) -> Any:
        parsed = _to_datetime(value)
        if parsed is None:
            return value
        return format_date(parsed, arg or "YYYY-MM-DD")

    def _relative(self, value: Any, arg: Optional[str]) -> Any:
        parsed = _to_datetime(value)
        if parsed is None:
            return value
        return format_relative(parsed, self._clock())

    @staticmethod
    def _default(value: Any, arg: Optional[str]) -> Any:
        if value is MISSING or value is None or value == "":
            return arg or ""
        return value

    @staticmethod
    def _sequence_item(value: Any, index: int) -> Any:
        if isinstance(value, (list, tuple)):
            return value[index] if value else MISSING
        return value


def _to_datetime(value: Any) -> Optional[datetime]:
    if isinstance(value, datetime):
        return value
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day)
    if isinstance(value, str) and value.strip():
        try:
            return datetime.fromisoformat(value.strip())
        except ValueError:
            return None
    return None


def format_date(moment: datetime, fmt: str) -> str:
    """Format with YYYY MM DD HH mm ss tokens."""
    return (
        fmt.replace("YYYY", f"{moment.year:04d}")
        .replace("MM", f"{moment.month:02d}")
        .replace("DD", f"{moment.day:02d}")
        .replace("HH", f"{moment.hour:02d}")
        .replace("mm", f"{moment.minute:02d}")
        .replace("ss", f"{moment.second:02d}")
    )


def format_relative(moment: datetime, now: datetime) -> str:
    """Human relative time ("3 hours ago"); older than 30 days -> YYYY-MM-DD."""
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)

    seconds = int((now - moment).total_seconds())
    minutes = seconds // 60
    hours = minutes // 60
    days = hours // 24

    if seconds < 60:
        return "just now"
    if minutes < 60:
        return f"{minutes} minute{'' if minutes == 1 else 's'} ago"
    if hours < 24:
        return f"{hours} hour{'' if hours == 1 else 's'} ago"
    if days < 30:
        return f"{days} day{'' if days == 1 else 's'} ago"
    return format_date(moment, "YYYY-MM-DD")
