"""Service orchestrator: ProgressionApp.

Follows the canonical kryten-py microservice pattern:
config → DB init → engines → connect → command handler → metrics → run.
"""

from __future__ import annotations

import asyncio
import logging
import time
from pathlib import Path
from typing import Any

from kryten import KrytenClient

from . import __version__
from .aura_engine import AuraResolver
from .command_handler import CommandHandler
from .config import ProgressionConfig, load_config
from .daily_bonus import DailyBonusClaimService
from .database import ProgressionDatabase
from .event_bus import (
    DailyBonusGranted,
    LevelChanged,
    ProgressionEventBus,
    SelectionRevoked,
    UnlocksChanged,
)
from .level_engine import LevelEngine
from .metrics_server import ProgressionMetricsServer
from .revalidator import SelectionRevalidator
from .scheduler import Scheduler
from .unlock_engine import UnlockGateEvaluator
from .utils import StudentLocks


class ProgressionApp:
    """Top-level application orchestrator."""

    def __init__(self, config_path: str) -> None:
        self.config_path = Path(config_path)
        self.logger = logging.getLogger("progression")

        # Components (initialized in start())
        self.config: ProgressionConfig | None = None
        self.client: KrytenClient | None = None
        self.db: ProgressionDatabase | None = None
        self.event_bus: ProgressionEventBus | None = None
        self.level_engine: LevelEngine | None = None
        self.unlock_engine: UnlockGateEvaluator | None = None
        self.aura_resolver: AuraResolver | None = None
        self.daily_bonus: DailyBonusClaimService | None = None
        self.revalidator: SelectionRevalidator | None = None
        self.command_handler: CommandHandler | None = None
        self.metrics_server: ProgressionMetricsServer | None = None
        self.scheduler: Scheduler | None = None

        # State
        self._running = False
        self._start_time: float | None = None
        self._counter_persistence_task: asyncio.Task | None = None

        # Counters (for metrics)
        self.commands_processed: int = 0
        self.unlock_purchases_total: int = 0
        self.points_spent_total: float = 0.0
        self.daily_claims_total: int = 0
        self.daily_points_total: int = 0
        self.selections_revoked_total: int = 0
        self.level_changes_total: int = 0

    @property
    def uptime_seconds(self) -> float:
        if self._start_time is None:
            return 0.0
        return time.time() - self._start_time

    # ------------------------------------------------------------------
    # Metrics counter persistence (NATS KV)
    # ------------------------------------------------------------------
    _COUNTERS_KV_BUCKET = "kryten_progression_state"
    _COUNTERS_KV_KEY = "counters"
    _COUNTERS_SAVE_INTERVAL = 300  # seconds
    _COUNTER_NAMES = [
        "commands_processed",
        "unlock_purchases_total",
        "points_spent_total",
        "daily_claims_total",
        "daily_points_total",
        "selections_revoked_total",
        "level_changes_total",
    ]

    async def _save_counters(self) -> None:
        """Persist volatile metrics counters to NATS KV."""
        data = {name: getattr(self, name) for name in self._COUNTER_NAMES}
        try:
            await self.client.kv_put(
                self._COUNTERS_KV_BUCKET,
                self._COUNTERS_KV_KEY,
                data,
                as_json=True,
            )
            self.logger.debug("Persisted metrics counters to KV")
        except Exception:
            self.logger.exception("Failed to persist metrics counters")

    async def _restore_counters(self) -> None:
        """Restore volatile metrics counters from NATS KV on startup."""
        try:
            data = await self.client.kv_get(
                self._COUNTERS_KV_BUCKET,
                self._COUNTERS_KV_KEY,
                default={},
                parse_json=True,
            )
            if not data:
                self.logger.info("No persisted counters found, starting fresh")
                return
            for name in self._COUNTER_NAMES:
                if name in data:
                    current = getattr(self, name)
                    setattr(self, name, type(current)(data[name]))
            self.logger.info("Restored metrics counters from KV: %s", data)
        except Exception:
            self.logger.exception("Failed to restore metrics counters from KV")

    async def _counter_persistence_loop(self) -> None:
        """Periodically save counters to KV."""
        try:
            while True:
                await asyncio.sleep(self._COUNTERS_SAVE_INTERVAL)
                await self._save_counters()
        except asyncio.CancelledError:
            pass

    # ------------------------------------------------------------------
    # Engine wiring
    # ------------------------------------------------------------------

    async def build_engines(self, config: ProgressionConfig) -> None:
        """Create the database, event bus and engines for ``config``."""
        self.config = config

        self.db = ProgressionDatabase(config.database.path, self.logger)
        await self.db.initialize()
        self.logger.info("Database initialized: %s", config.database.path)

        locks = StudentLocks()
        self.event_bus = ProgressionEventBus(self.logger)
        self.level_engine = LevelEngine(
            config=config,
            database=self.db,
            event_bus=self.event_bus,
            logger=self.logger,
        )
        self.unlock_engine = UnlockGateEvaluator(
            config=config,
            database=self.db,
            level_engine=self.level_engine,
            event_bus=self.event_bus,
            logger=self.logger,
            locks=locks,
        )
        self.aura_resolver = AuraResolver(self.unlock_engine, self.logger)
        self.daily_bonus = DailyBonusClaimService(
            config=config,
            database=self.db,
            gate=self.unlock_engine,
            aura=self.aura_resolver,
            level_engine=self.level_engine,
            logger=self.logger,
            locks=locks,
            event_bus=self.event_bus,
        )
        self.revalidator = SelectionRevalidator(
            gate=self.unlock_engine,
            database=self.db,
            event_bus=self.event_bus,
            logger=self.logger,
            enabled=config.revalidation.enabled,
        )

        self.event_bus.subscribe(UnlocksChanged, self._count_purchase)
        self.event_bus.subscribe(DailyBonusGranted, self._count_claim)
        self.event_bus.subscribe(SelectionRevoked, self._count_revocation)
        self.event_bus.subscribe(LevelChanged, self._count_level_change)

        if config.catalog.seed_on_start:
            await self.unlock_engine.seed_catalog(config.catalog)
        await self.level_engine.get_thresholds()

    async def _count_purchase(self, event: UnlocksChanged) -> None:
        self.unlock_purchases_total += 1
        self.points_spent_total += event.cost

    async def _count_claim(self, event: DailyBonusGranted) -> None:
        self.daily_claims_total += 1
        self.daily_points_total += event.points

    async def _count_revocation(self, event: SelectionRevoked) -> None:
        self.selections_revoked_total += 1
        self.logger.info(
            "Selection revoked for %s: %s '%s' (%s)",
            event.student_id, event.category, event.item_key, event.reason,
        )

    async def _count_level_change(self, event: LevelChanged) -> None:
        self.level_changes_total += 1

    def reload_config(self) -> ProgressionConfig:
        """Reload config from disk and hot-swap it into every engine."""
        new_config = load_config(str(self.config_path))
        for component in (
            self.level_engine, self.unlock_engine, self.daily_bonus, self.scheduler,
        ):
            if component is not None:
                component.update_config(new_config)
        if self.revalidator is not None:
            self.revalidator.enabled = new_config.revalidation.enabled
        self.config = new_config
        self.logger.info("Config reloaded from %s", self.config_path)
        return new_config

    async def student_snapshot(self, student_id: str) -> dict[str, Any]:
        """Confirmed state for a client view refresh."""
        await self.unlock_engine.evaluate_all(student_id)
        student, progress = await self.level_engine.get_progress(student_id)
        settings = await self.unlock_engine.get_settings(student_id)
        return {
            "settings": settings,
            "points_balance": student.points_balance,
            "lifetime_points": student.lifetime_points,
            "level": progress.level,
            "unlocks": await self.db.get_unlock_records(student_id),
        }

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Start the progression service, canonical kryten-py sequence."""
        self.logger.info("Starting kryten-progression...")
        self._start_time = time.time()

        # 1. Load and validate config
        config = load_config(str(self.config_path))
        self.logger.info("Config loaded: %d channel(s)", len(config.channels))

        # 2-3. Database and domain components
        await self.build_engines(config)
        await self.event_bus.start()

        # 4. Create KrytenClient and connect
        self.client = KrytenClient(self.config)
        await self.client.connect()
        self.logger.info("Connected to NATS")

        # 5. Restore persisted metrics counters from KV
        await self.client.get_or_create_kv_store(
            self._COUNTERS_KV_BUCKET,
            description="kryten-progression volatile metrics counters",
        )
        await self._restore_counters()
        self._counter_persistence_task = asyncio.create_task(
            self._counter_persistence_loop(),
        )

        # 6. Start metrics server
        metrics_port = self.config.metrics.port if self.config.metrics else 28290
        self.metrics_server = ProgressionMetricsServer(self, port=metrics_port)
        await self.metrics_server.start()
        self.logger.info("Metrics server started on port %d", metrics_port)

        # 7. Start command handler
        self.command_handler = CommandHandler(self, self.client, self.logger)
        await self.command_handler.connect()
        self.logger.info("Command handler ready on %s", self.command_handler.subject)

        # 8. Start scheduler
        self.scheduler = Scheduler(
            config=self.config,
            daily_bonus=self.daily_bonus,
            logger=self.logger,
        )
        await self.scheduler.start()

        # 9. Mark running
        self._running = True
        self.logger.info("kryten-progression started successfully (v%s)", __version__)

        # 10. Block on client event loop
        await self.client.run()

    async def stop(self) -> None:
        """Gracefully shut down all components in reverse order."""
        if not self._running:
            return
        self.logger.info("Shutting down kryten-progression...")
        self._running = False

        if self._counter_persistence_task:
            self._counter_persistence_task.cancel()
            try:
                await self._counter_persistence_task
            except asyncio.CancelledError:
                pass
        try:
            await self._save_counters()
            self.logger.info("Metrics counters saved on shutdown")
        except Exception:
            self.logger.exception("Failed to save counters on shutdown")

        if self.scheduler:
            await self.scheduler.stop()
        if self.metrics_server:
            await self.metrics_server.stop()
        if self.event_bus:
            await self.event_bus.stop()
        if self.client:
            await self.client.stop()

        self.logger.info("kryten-progression stopped.")
