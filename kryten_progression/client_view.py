"""Client view model: optimistic equips over confirmed server state.

Equips may be shown locally before the server confirms them; spends and
claims are only reflected once a refreshed snapshot arrives. Each refresh
carries a generation token and a response older than the newest request
is discarded.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable

from .models import AvatarSettings, CosmeticCategory, NONE_SELECTION


@dataclass
class StudentView:
    """Volatile view state for a single student."""

    student_id: str
    confirmed: AvatarSettings | None = None
    points_balance: float = 0
    lifetime_points: float = 0
    level: int = 1
    unlocked: set[tuple[str, str]] = field(default_factory=set)

    # Pending local equips: {settings_field: item_key}
    proposed: dict[str, str] = field(default_factory=dict)

    # Generation of the snapshot currently applied
    generation: int = 0

    def selection(self, category: CosmeticCategory) -> str:
        """What the UI should show: proposed if pending, else confirmed."""
        column = category.settings_field
        if column in self.proposed:
            return self.proposed[column]
        if self.confirmed is None:
            return NONE_SELECTION
        return self.confirmed.selection(category)

    def propose(self, category: CosmeticCategory, item_key: str) -> None:
        self.proposed[category.settings_field] = item_key

    def discard_proposal(self, category: CosmeticCategory) -> None:
        self.proposed.pop(category.settings_field, None)

    @property
    def has_pending(self) -> bool:
        return bool(self.proposed)

    def apply_snapshot(self, snapshot: dict[str, Any], generation: int) -> None:
        """Replace confirmed state; proposals the server now agrees with are dropped."""
        settings = snapshot.get("settings")
        if settings is not None:
            self.confirmed = (
                settings if isinstance(settings, AvatarSettings)
                else AvatarSettings.from_row({"student_id": self.student_id, **settings})
            )
        self.points_balance = snapshot.get("points_balance", self.points_balance)
        self.lifetime_points = snapshot.get("lifetime_points", self.lifetime_points)
        self.level = snapshot.get("level", self.level)
        if "unlocks" in snapshot:
            self.unlocked = {(u["item_type"], u["item_key"]) for u in snapshot["unlocks"]}

        if self.confirmed is not None:
            for column, key in list(self.proposed.items()):
                if getattr(self.confirmed, column) == key:
                    del self.proposed[column]
        self.generation = generation


class ViewRefresher:
    """Fetches snapshots for a ``StudentView`` and drops stale responses."""

    def __init__(
        self,
        view: StudentView,
        fetch: Callable[[str], Awaitable[dict[str, Any]]],
        logger: logging.Logger,
    ) -> None:
        self._view = view
        self._fetch = fetch
        self._logger = logger
        self._issued = 0
        self.discarded = 0

    @property
    def view(self) -> StudentView:
        return self._view

    @property
    def latest_generation(self) -> int:
        return self._issued

    async def refresh(self) -> bool:
        """Fetch and apply a snapshot. Returns False if it arrived stale."""
        self._issued += 1
        token = self._issued
        snapshot = await self._fetch(self._view.student_id)
        if token != self._issued:
            self.discarded += 1
            self._logger.debug(
                "Discarded stale snapshot %d for %s (latest %d)",
                token, self._view.student_id, self._issued,
            )
            return False
        self._view.apply_snapshot(snapshot, token)
        return True

    async def equip(
        self,
        category: CosmeticCategory,
        item_key: str,
        commit: Callable[[str, dict[str, str]], Awaitable[Any]],
    ) -> bool:
        """Show an equip immediately, then confirm it with the server.

        On failure the proposal is rolled back and the error re-raised.
        Once the commit succeeds the server value is authoritative.
        """
        self._view.propose(category, item_key)
        try:
            await commit(self._view.student_id, {category.settings_field: item_key})
        except Exception:
            self._view.discard_proposal(category)
            raise
        self._view.discard_proposal(category)
        return await self.refresh()
