"""Per-automation cooldown and hourly run limits."""

import math
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

import structlog

from ..core.errors import CooldownActiveError, RunLimitExceededError
from ..core.models import Automation
from ..core.state import AutomationStore


logger = structlog.get_logger()

RUN_LIMIT_WINDOW = timedelta(hours=1)


class AutomationThrottle:
    """
    Rejects runs that would violate an automation's rate settings.

    - ``cooldownMinutes``: minimum gap since ``last_run_at``
    - ``runLimit``: maximum runs started in the trailing hour

    The check and the subsequent run creation are not atomic; two triggers
    arriving together can both pass.
    """

    def __init__(
        self,
        store: AutomationStore,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.store = store
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    async def check(self, automation: Automation) -> None:
        """
        Raises:
            CooldownActiveError: last run is more recent than the cooldown
            RunLimitExceededError: hourly run limit reached
        """
        settings = automation.settings
        now = self._clock()

        if settings.cooldown_minutes and automation.last_run_at is not None:
            cooldown = timedelta(minutes=settings.cooldown_minutes)
            last_run_at = automation.last_run_at
            if last_run_at.tzinfo is None:
                last_run_at = last_run_at.replace(tzinfo=timezone.utc)
            elapsed = now - last_run_at
            if elapsed < cooldown:
                retry_after = max(1, math.ceil((cooldown - elapsed).total_seconds()))
                logger.warning(
                    "automation_cooldown_active",
                    automation_id=automation.id,
                    retry_after=retry_after,
                )
                raise CooldownActiveError(
                    f"Automation is in cooldown. Try again in {retry_after} seconds.",
                    automation_id=automation.id,
                    retry_after=retry_after,
                )

        if settings.run_limit:
            recent = await self.store.count_runs_since(automation.id, now - RUN_LIMIT_WINDOW)
            if recent >= settings.run_limit:
                logger.warning(
                    "automation_run_limit_reached",
                    automation_id=automation.id,
                    runs_last_hour=recent,
                    run_limit=settings.run_limit,
                )
                raise RunLimitExceededError(
                    f"Automation has reached its limit of {settings.run_limit} runs per hour",
                    automation_id=automation.id,
                )
