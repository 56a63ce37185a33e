"""Progression event bus: queued change and revoke notifications.

Engines publish immutable event records; a single pump task delivers them to
subscribers in publish order. Handlers are async callables and a failing
handler is logged without stopping delivery to the others.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable

from .models import LevelSettings


# ══════════════════════════════════════════════════════════
#  Events
# ══════════════════════════════════════════════════════════

@dataclass(frozen=True)
class SettingsChanged:
    settings: LevelSettings


@dataclass(frozen=True)
class LevelChanged:
    student_id: str
    old_level: int
    new_level: int


@dataclass(frozen=True)
class UnlocksChanged:
    student_id: str
    category: str
    item_key: str
    cost: float = 0


@dataclass(frozen=True)
class CatalogChanged:
    category: str
    item_key: str | None = None


@dataclass(frozen=True)
class SelectionChanged:
    student_id: str
    fields: dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class DailyBonusGranted:
    student_id: str
    points: int
    avatar_name: str


@dataclass(frozen=True)
class SelectionRevoked:
    student_id: str
    category: str
    item_key: str
    reason: str


Handler = Callable[[Any], Awaitable[None]]


class ProgressionEventBus:
    """In-process publish/subscribe pipeline backed by an asyncio.Queue."""

    def __init__(self, logger: logging.Logger) -> None:
        self._logger = logger
        self._handlers: dict[type, list[Handler]] = {}
        self._queue: asyncio.Queue[Any] = asyncio.Queue()
        self._pump_task: asyncio.Task | None = None
        self.published = 0
        self.delivered = 0

    # ── Lifecycle ────────────────────────────────────────────

    async def start(self) -> None:
        """Start the delivery pump."""
        if self._pump_task is None:
            self._pump_task = asyncio.create_task(self._pump_loop())

    async def stop(self) -> None:
        """Stop the pump. Queued events are delivered first."""
        if self._pump_task:
            await self.drain()
            self._pump_task.cancel()
            try:
                await self._pump_task
            except asyncio.CancelledError:
                pass
            self._pump_task = None

    @property
    def running(self) -> bool:
        return self._pump_task is not None and not self._pump_task.done()

    # ── Public API ───────────────────────────────────────────

    def subscribe(self, event_type: type, handler: Handler) -> None:
        self._handlers.setdefault(event_type, []).append(handler)

    def publish(self, event: Any) -> None:
        """Queue an event for delivery. Never blocks."""
        self.published += 1
        self._queue.put_nowait(event)

    async def drain(self) -> None:
        """Wait until every queued event has been delivered.

        Without a running pump the queue is delivered inline.
        """
        if self.running:
            await self._queue.join()
            return
        while not self._queue.empty():
            event = self._queue.get_nowait()
            try:
                await self.dispatch(event)
            finally:
                self._queue.task_done()

    async def dispatch(self, event: Any) -> None:
        """Deliver one event to its subscribers right now."""
        for handler in list(self._handlers.get(type(event), ())):
            try:
                await handler(event)
            except Exception:
                self._logger.exception(
                    "Event handler %r failed for %s", handler, type(event).__name__,
                )
        self.delivered += 1

    # ── Internal ─────────────────────────────────────────────

    async def _pump_loop(self) -> None:
        while True:
            event = await self._queue.get()
            try:
                await self.dispatch(event)
            finally:
                self._queue.task_done()
