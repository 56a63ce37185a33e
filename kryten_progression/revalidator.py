"""Selection revalidator: re-checks equipped items whenever gating inputs move.

Subscribes to level, unlock, catalog, curve and selection events and runs
the gate over the affected students' selections. Failing selections are
revoked by the evaluator, which publishes ``SelectionRevoked``.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from .event_bus import (
    CatalogChanged,
    LevelChanged,
    SelectionChanged,
    SettingsChanged,
    UnlocksChanged,
)
from .models import CosmeticCategory

if TYPE_CHECKING:
    from .database import ProgressionDatabase
    from .event_bus import ProgressionEventBus
    from .unlock_engine import UnlockGateEvaluator


class SelectionRevalidator:
    """Event-driven observer keeping selections gate-valid."""

    def __init__(
        self,
        gate: UnlockGateEvaluator,
        database: ProgressionDatabase,
        event_bus: ProgressionEventBus,
        logger: logging.Logger,
        enabled: bool = True,
    ) -> None:
        self._gate = gate
        self._db = database
        self._logger = logger
        self.enabled = enabled
        self.passes = 0

        event_bus.subscribe(LevelChanged, self._on_student_event)
        event_bus.subscribe(UnlocksChanged, self._on_student_event)
        event_bus.subscribe(SelectionChanged, self._on_student_event)
        event_bus.subscribe(CatalogChanged, self._on_catalog_changed)
        event_bus.subscribe(SettingsChanged, self._on_settings_changed)

    async def revalidate_student(self, student_id: str) -> int:
        """Evaluate all four categories for one student. Returns revocations."""
        self.passes += 1
        return len(await self._gate.evaluate_all(student_id))

    async def revalidate_everyone(self, category: CosmeticCategory | None = None) -> int:
        revoked = 0
        for row in await self._db.get_all_avatar_settings():
            if category is None:
                revoked += await self.revalidate_student(row["student_id"])
            else:
                self.passes += 1
                if await self._gate.evaluate_selection(row["student_id"], category):
                    revoked += 1
        if revoked:
            self._logger.info("Revalidation pass revoked %d selections", revoked)
        return revoked

    # ── Handlers ─────────────────────────────────────────────

    async def _on_student_event(self, event: LevelChanged | UnlocksChanged | SelectionChanged) -> None:
        if self.enabled:
            await self.revalidate_student(event.student_id)

    async def _on_catalog_changed(self, event: CatalogChanged) -> None:
        if self.enabled:
            await self.revalidate_everyone(CosmeticCategory.parse(event.category))

    async def _on_settings_changed(self, event: SettingsChanged) -> None:
        if self.enabled:
            await self.revalidate_everyone()
