"""Scheduler module: periodic progression jobs.

Runs the daily aura bonus sweep on a cron schedule.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import TYPE_CHECKING

from croniter import croniter

if TYPE_CHECKING:
    from .config import ProgressionConfig
    from .daily_bonus import DailyBonusClaimService


class Scheduler:
    """Central module for all periodic and scheduled tasks."""

    def __init__(
        self,
        config: ProgressionConfig,
        daily_bonus: DailyBonusClaimService,
        logger: logging.Logger | None = None,
    ) -> None:
        self._config = config
        self._daily_bonus = daily_bonus
        self._logger = logger or logging.getLogger("progression.scheduler")
        self._tasks: list[asyncio.Task] = []
        self.sweeps_run = 0
        self.bonuses_swept = 0

    def update_config(self, new_config: ProgressionConfig) -> None:
        """Hot-swap the config reference. The next loop iteration picks it up."""
        self._config = new_config

    async def start(self) -> None:
        """Start all scheduled tasks."""
        if self._config.daily_bonus.sweep_enabled:
            self._tasks.append(asyncio.create_task(self._daily_sweep_loop()))
            self._logger.info(
                "Daily bonus sweep started (cron: %s)", self._config.daily_bonus.sweep_cron,
            )

    async def stop(self) -> None:
        """Cancel all tasks."""
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks.clear()

    # ══════════════════════════════════════════════════════════
    #  Daily Bonus Sweep
    # ══════════════════════════════════════════════════════════

    def seconds_until_next_sweep(self, now: datetime | None = None) -> float:
        now = now or datetime.now(timezone.utc)
        next_fire = croniter(self._config.daily_bonus.sweep_cron, now).get_next(datetime)
        return max(0.0, (next_fire - now).total_seconds())

    async def _daily_sweep_loop(self) -> None:
        while True:
            await asyncio.sleep(self.seconds_until_next_sweep())
            try:
                await self.run_daily_sweep()
            except Exception:
                self._logger.exception("Daily bonus sweep failed")

    async def run_daily_sweep(self, now: datetime | None = None) -> int:
        awarded = await self._daily_bonus.sweep(now)
        self.sweeps_run += 1
        self.bonuses_swept += awarded
        return awarded
