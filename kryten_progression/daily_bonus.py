"""Daily aura bonus: cooldown-gated, once-per-window point grant.

The window is anchored at the last grant, or at the time the current avatar
was equipped if it has never paid out. The amount comes from the equipped
avatar's aura ``daily_free_points``.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any, Iterable

from .errors import (
    ConcurrencyConflict,
    NoBonusConfigured,
    NotFound,
    NotReady,
    ProgressionError,
    RoleNotPermitted,
    ValidationError,
)
from .event_bus import DailyBonusGranted
from .models import AvatarSettings, CosmeticCategory, CosmeticItem, is_none_selection
from .utils import StudentLocks, format_timestamp, now_utc

if TYPE_CHECKING:
    from .aura_engine import AuraResolver
    from .config import ProgressionConfig
    from .database import ProgressionDatabase
    from .event_bus import ProgressionEventBus
    from .level_engine import LevelEngine
    from .unlock_engine import UnlockGateEvaluator


@dataclass(frozen=True)
class DailyClaim:
    student_id: str
    points_awarded: int
    avatar_name: str
    granted_at: datetime
    balance: float | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "student_id": self.student_id,
            "points_awarded": self.points_awarded,
            "avatar_name": self.avatar_name,
            "granted_at": format_timestamp(self.granted_at),
            "balance": self.balance,
        }


def format_remaining(delta: timedelta) -> str:
    """Human duration such as ``3h 12m`` or ``45s``."""
    seconds = max(0, int(delta.total_seconds()))
    hours, rem = divmod(seconds, 3600)
    minutes, secs = divmod(rem, 60)
    if hours:
        return f"{hours}h {minutes}m"
    if minutes:
        return f"{minutes}m"
    return f"{secs}s"


class DailyBonusClaimService:
    """Claims, status and scheduled sweep for the daily aura bonus."""

    def __init__(
        self,
        config: ProgressionConfig,
        database: ProgressionDatabase,
        gate: UnlockGateEvaluator,
        aura: AuraResolver,
        level_engine: LevelEngine,
        logger: logging.Logger,
        locks: StudentLocks | None = None,
        event_bus: ProgressionEventBus | None = None,
    ) -> None:
        self._config = config
        self._db = database
        self._gate = gate
        self._aura = aura
        self._levels = level_engine
        self._bus = event_bus
        self._logger = logger
        self._locks = locks or StudentLocks()

        self.claims_granted = 0
        self.claims_rejected = 0

    def update_config(self, new_config: ProgressionConfig) -> None:
        """Hot-swap the config reference."""
        self._config = new_config

    @property
    def window(self) -> timedelta:
        return timedelta(hours=self._config.daily_bonus.window_hours)

    # ══════════════════════════════════════════════════════════
    #  Readiness
    # ══════════════════════════════════════════════════════════

    def next_ready_at(self, settings: AvatarSettings) -> datetime | None:
        """When the next claim opens. ``None`` means claimable now."""
        anchor = settings.last_grant_at
        return anchor + self.window if anchor else None

    def is_ready(self, settings: AvatarSettings, now: datetime) -> bool:
        ready_at = self.next_ready_at(settings)
        return ready_at is None or now >= ready_at

    async def _bonus_source(
        self, student_id: str,
    ) -> tuple[AvatarSettings, CosmeticItem | None, int]:
        """Settings, gate-valid avatar and its daily amount."""
        row = await self._db.get_avatar_settings(student_id)
        if not row or is_none_selection(row.get("avatar_id")):
            raise NotFound("Equipped avatar", student_id)

        item = await self._gate.get_valid_selection(student_id, CosmeticCategory.AVATAR)
        if item is None:
            return AvatarSettings.from_row(row), None, 0
        points = self._aura.resolve(item.aura, 0).daily_bonus_points
        return AvatarSettings.from_row(row), item, points

    # ══════════════════════════════════════════════════════════
    #  Claim
    # ══════════════════════════════════════════════════════════

    def _check_role(self, role: str | None, allowed: Iterable[str]) -> None:
        allowed = {r.lower() for r in allowed}
        if not role or role.strip().lower() not in allowed:
            raise RoleNotPermitted(role, allowed)

    async def claim(
        self, student_id: str, role: str | None, now: datetime | None = None,
    ) -> DailyClaim:
        """Grant today's bonus once. Errors propagate and are never retried."""
        if not student_id:
            raise ValidationError("student_id is required")
        try:
            self._check_role(role, self._config.daily_bonus.allowed_roles)
            return await self._claim(student_id, now or now_utc())
        except ProgressionError:
            self.claims_rejected += 1
            raise

    async def _claim(self, student_id: str, now: datetime) -> DailyClaim:
        async with self._locks.get(student_id):
            settings, item, points = await self._bonus_source(student_id)
            if item is None:
                raise NoBonusConfigured("Avatar not eligible for a daily bonus.")
            if points <= 0:
                raise NoBonusConfigured("Daily bonus not configured for this avatar.")

            ready_at = self.next_ready_at(settings)
            if ready_at is not None and now < ready_at:
                raise NotReady(
                    f"Daily bonus not ready ({format_remaining(ready_at - now)} remaining).",
                    {"next_ready_at": format_timestamp(ready_at)},
                )

            result = await self._db.claim_daily_bonus(
                student_id,
                avatar_id=item.key,
                points=points,
                expected_anchor=settings.last_grant_at,
                window=self.window,
                now=now,
                reason=f"Avatar Aura Daily +{points} ({item.display_name})",
            )

        if result["status"] == "not_ready":
            raise NotReady("Daily bonus not ready.")
        if result["status"] == "conflict":
            raise ConcurrencyConflict(
                "Daily bonus state changed during claim; reload and try again.",
            )

        self.claims_granted += 1
        self._logger.info(
            "Daily bonus +%d for %s (%s)", points, student_id, item.display_name,
        )
        if self._bus is not None:
            self._bus.publish(DailyBonusGranted(student_id, points, item.display_name))
        await self._levels.check_level_change(student_id)
        return DailyClaim(
            student_id=student_id,
            points_awarded=points,
            avatar_name=item.display_name,
            granted_at=now,
            balance=result["balance"],
        )

    # ══════════════════════════════════════════════════════════
    #  Status
    # ══════════════════════════════════════════════════════════

    async def status(self, student_id: str, now: datetime | None = None) -> dict[str, Any]:
        now = now or now_utc()
        try:
            settings, item, points = await self._bonus_source(student_id)
        except NotFound:
            return {
                "student_id": student_id,
                "ready": False,
                "points": 0,
                "next_ready_at": None,
                "avatar_name": None,
            }
        ready_at = self.next_ready_at(settings)
        return {
            "student_id": student_id,
            "ready": points > 0 and (ready_at is None or now >= ready_at),
            "points": points,
            "next_ready_at": format_timestamp(ready_at),
            "avatar_name": item.display_name if item else None,
        }

    async def status_batch(
        self,
        student_ids: Iterable[str],
        role: str | None,
        now: datetime | None = None,
    ) -> dict[str, dict[str, Any]]:
        """Status for many students; restricted to staff roles."""
        self._check_role(role, self._config.daily_bonus.status_roles)
        now = now or now_utc()
        result: dict[str, dict[str, Any]] = {}
        for student_id in dict.fromkeys(student_ids):
            if student_id:
                result[student_id] = await self.status(student_id, now)
        return result

    # ══════════════════════════════════════════════════════════
    #  Sweep
    # ══════════════════════════════════════════════════════════

    async def sweep(self, now: datetime | None = None) -> int:
        """Grant the bonus to every student who is ready. Returns count."""
        now = now or now_utc()
        awarded = 0
        for row in await self._db.get_all_avatar_settings():
            student_id = row["student_id"]
            if is_none_selection(row.get("avatar_id")):
                continue
            if not self.is_ready(AvatarSettings.from_row(row), now):
                continue
            try:
                await self._claim(student_id, now)
                awarded += 1
            except (NotReady, NoBonusConfigured, NotFound):
                continue
            except ProgressionError as exc:
                self._logger.warning("Daily sweep skipped %s: %s", student_id, exc.message)
            except Exception:
                self._logger.exception("Daily sweep failed for %s", student_id)
        if awarded:
            self._logger.info("Daily sweep granted %d bonuses", awarded)
        return awarded
