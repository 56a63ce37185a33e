"""Level engine: threshold curve, level resolution and level bookkeeping.

Lifetime points map to a level 1..99 through an exponential curve. Each
level costs ``base_jump * (1 + difficulty_pct/100) ** (L-1)`` more than the
previous one; thresholds are rounded to the nearest ten.
"""

from __future__ import annotations

import logging
import math
from bisect import bisect_right
from dataclasses import dataclass
from functools import lru_cache
from typing import TYPE_CHECKING, Any

from .errors import ConfigurationError, NotFound, ValidationError
from .event_bus import LevelChanged, SettingsChanged
from .models import MAX_LEVEL, LevelSettings, LevelThreshold, StudentProgress
from .utils import as_finite_number

if TYPE_CHECKING:
    from .config import ProgressionConfig
    from .database import ProgressionDatabase
    from .event_bus import ProgressionEventBus

DEFAULT_SETTINGS = LevelSettings(base_jump=50, difficulty_pct=8)


# ══════════════════════════════════════════════════════════
#  Threshold Curve
# ══════════════════════════════════════════════════════════

def _round_half_up(value: float) -> int:
    return math.floor(value + 0.5)


def clamp_max_level(max_level: Any) -> int:
    number = as_finite_number(max_level)
    if number is None:
        return MAX_LEVEL
    return min(MAX_LEVEL, max(1, int(number)))


def normalize_settings(base_jump: Any, difficulty_pct: Any) -> LevelSettings:
    """Validate raw settings. Raises ``ConfigurationError`` when unusable."""
    jump = as_finite_number(base_jump)
    pct = as_finite_number(difficulty_pct)
    if jump is None or pct is None or jump < 0 or pct < 0:
        raise ConfigurationError(
            "Invalid level settings",
            {"base_jump": base_jump, "difficulty_pct": difficulty_pct},
        )
    return LevelSettings(base_jump=jump, difficulty_pct=pct)


@lru_cache(maxsize=64)
def _compute_thresholds(
    base_jump: float, difficulty_pct: float, max_level: int,
) -> tuple[LevelThreshold, ...]:
    table = [LevelThreshold(level=1, min_lifetime_points=0)]
    growth = 1 + difficulty_pct / 100
    total = 0.0
    for level in range(2, max_level + 1):
        try:
            total += base_jump * growth ** (level - 1)
        except OverflowError:
            total = math.inf
        if not math.isfinite(total):
            raise ConfigurationError(
                "Level curve overflows",
                {"base_jump": base_jump, "difficulty_pct": difficulty_pct, "level": level},
            )
        threshold = max(0, math.floor(_round_half_up(total / 10) * 10))
        table.append(LevelThreshold(level=level, min_lifetime_points=threshold))
    return tuple(table)


def build_thresholds(
    settings: LevelSettings, max_level: int = MAX_LEVEL,
) -> tuple[LevelThreshold, ...]:
    """Strict build: raises ``ConfigurationError`` for an unusable curve."""
    checked = normalize_settings(settings.base_jump, settings.difficulty_pct)
    return _compute_thresholds(checked.base_jump, checked.difficulty_pct, clamp_max_level(max_level))


def build_thresholds_or_default(
    settings: LevelSettings,
    max_level: int = MAX_LEVEL,
    logger: logging.Logger | None = None,
) -> tuple[LevelSettings, tuple[LevelThreshold, ...]]:
    """Build a table, falling back to the default curve for bad settings.

    Returns the settings actually used alongside the table.
    """
    try:
        return settings, build_thresholds(settings, max_level)
    except ConfigurationError as exc:
        if logger:
            logger.warning(
                "%s %s; using defaults base_jump=%s difficulty_pct=%s",
                exc.message, exc.details,
                DEFAULT_SETTINGS.base_jump, DEFAULT_SETTINGS.difficulty_pct,
            )
        return DEFAULT_SETTINGS, build_thresholds(DEFAULT_SETTINGS, max_level)


class LevelCurveCache:
    """Active settings and threshold table, shared by every reader.

    Cleared by ``invalidate()`` whenever a ``SettingsChanged`` event is seen.
    """

    def __init__(self, max_level: int = MAX_LEVEL) -> None:
        self.max_level = clamp_max_level(max_level)
        self._settings: LevelSettings | None = None
        self._table: tuple[LevelThreshold, ...] | None = None

    @property
    def loaded(self) -> bool:
        return self._table is not None

    @property
    def settings(self) -> LevelSettings | None:
        return self._settings

    @property
    def table(self) -> tuple[LevelThreshold, ...] | None:
        return self._table

    def load(
        self, settings: LevelSettings, logger: logging.Logger | None = None,
    ) -> tuple[LevelThreshold, ...]:
        self._settings, self._table = build_thresholds_or_default(
            settings, self.max_level, logger,
        )
        return self._table

    def invalidate(self) -> None:
        self._settings = None
        self._table = None


# ══════════════════════════════════════════════════════════
#  Level Resolution
# ══════════════════════════════════════════════════════════

@dataclass(frozen=True)
class LevelProgress:
    level: int
    current_level_min: int
    next_level_min: int | None
    progress: float

    def to_dict(self) -> dict[str, Any]:
        return {
            "level": self.level,
            "current_level_min": self.current_level_min,
            "next_level_min": self.next_level_min,
            "progress": self.progress,
        }


class LevelResolver:
    """Maps lifetime points to a level using a threshold table."""

    def __init__(self, table: tuple[LevelThreshold, ...]) -> None:
        if not table:
            raise ConfigurationError("Empty threshold table")
        self._table = table
        self._mins = [t.min_lifetime_points for t in table]

    def level_for(self, lifetime_points: Any) -> int:
        return self.resolve(lifetime_points).level

    def resolve(self, lifetime_points: Any) -> LevelProgress:
        points = as_finite_number(lifetime_points)
        if points is None:
            raise ValidationError(
                "Lifetime points must be a finite number",
                {"lifetime_points": lifetime_points},
            )
        points = max(0.0, points)

        index = max(1, bisect_right(self._mins, points)) - 1
        current = self._table[index]
        if index + 1 >= len(self._table):
            return LevelProgress(
                level=current.level,
                current_level_min=current.min_lifetime_points,
                next_level_min=None,
                progress=1.0,
            )
        nxt = self._table[index + 1]
        span = max(1, nxt.min_lifetime_points - current.min_lifetime_points)
        progress = min(1.0, max(0.0, (points - current.min_lifetime_points) / span))
        return LevelProgress(
            level=current.level,
            current_level_min=current.min_lifetime_points,
            next_level_min=nxt.min_lifetime_points,
            progress=progress,
        )


# ══════════════════════════════════════════════════════════
#  Level Engine
# ══════════════════════════════════════════════════════════

class LevelEngine:
    """Owns level settings, cached levels and the points ledger entry point."""

    def __init__(
        self,
        config: ProgressionConfig,
        database: ProgressionDatabase,
        event_bus: ProgressionEventBus | None,
        logger: logging.Logger,
    ) -> None:
        self._config = config
        self._db = database
        self._bus = event_bus
        self._logger = logger
        self._cache = LevelCurveCache(config.levels.max_level)
        if event_bus is not None:
            event_bus.subscribe(SettingsChanged, self._on_settings_changed)

    def update_config(self, new_config: ProgressionConfig) -> None:
        """Hot-swap the config reference. A new max level rebuilds the curve."""
        self._config = new_config
        if clamp_max_level(new_config.levels.max_level) != self._cache.max_level:
            self._cache = LevelCurveCache(new_config.levels.max_level)

    @property
    def cache(self) -> LevelCurveCache:
        return self._cache

    # ── Settings ─────────────────────────────────────────────

    async def get_level_settings(self) -> LevelSettings:
        if not self._cache.loaded:
            await self._load()
        return self._cache.settings

    async def get_thresholds(self) -> tuple[LevelThreshold, ...]:
        if not self._cache.loaded:
            await self._load()
        return self._cache.table

    async def get_resolver(self) -> LevelResolver:
        return LevelResolver(await self.get_thresholds())

    async def _load(self) -> None:
        row = await self._db.get_level_settings()
        if row:
            raw = LevelSettings(base_jump=row["base_jump"], difficulty_pct=row["difficulty_pct"])
        else:
            raw = LevelSettings(
                base_jump=self._config.levels.base_jump,
                difficulty_pct=self._config.levels.difficulty_pct,
            )
        self._cache.load(raw, self._logger)
        self._logger.debug("Level curve loaded: %s", self._cache.settings)

    async def _on_settings_changed(self, event: SettingsChanged) -> None:
        self._cache.invalidate()

    async def update_level_settings(
        self, base_jump: Any, difficulty_pct: Any, recalc: bool = False,
    ) -> dict[str, Any]:
        """Persist new curve settings; optionally recompute every cached level."""
        try:
            settings = normalize_settings(base_jump, difficulty_pct)
            build_thresholds(settings, self._cache.max_level)
        except ConfigurationError as exc:
            raise ValidationError(
                "base_jump and difficulty_pct must be finite, non-negative and "
                "produce a finite curve",
                exc.details,
            ) from exc

        await self._db.set_level_settings(settings.base_jump, settings.difficulty_pct)
        self._cache.invalidate()
        if self._bus is not None:
            self._bus.publish(SettingsChanged(settings))
        self._logger.info(
            "Level settings updated: base_jump=%s difficulty_pct=%s",
            settings.base_jump, settings.difficulty_pct,
        )

        changed = await self.recalculate_all_levels() if recalc else 0
        return {
            "base_jump": settings.base_jump,
            "difficulty_pct": settings.difficulty_pct,
            "recalculated": changed,
        }

    # ── Student levels ───────────────────────────────────────

    async def get_progress(self, student_id: str) -> tuple[StudentProgress, LevelProgress]:
        row = await self._db.get_student(student_id)
        if not row:
            raise NotFound("Student", student_id)
        student = StudentProgress.from_row(row)
        resolver = await self.get_resolver()
        return student, resolver.resolve(student.lifetime_points)

    async def effective_level(self, student_id: str) -> int:
        """Level derived from lifetime points; 1 for unknown students."""
        row = await self._db.get_student(student_id)
        if not row:
            return 1
        resolver = await self.get_resolver()
        return resolver.level_for(row.get("lifetime_points") or 0)

    async def check_level_change(self, student_id: str) -> LevelChanged | None:
        """Recompute and persist a student's cached level.

        Call this after any ledger change.
        """
        row = await self._db.get_student(student_id)
        if not row:
            return None
        resolver = await self.get_resolver()
        new_level = resolver.level_for(row.get("lifetime_points") or 0)
        old_level = int(row.get("level") or 1)
        if new_level == old_level:
            return None

        await self._db.update_student_levels({student_id: new_level})
        change = LevelChanged(student_id=student_id, old_level=old_level, new_level=new_level)
        if self._bus is not None:
            self._bus.publish(change)
        self._logger.info("Level change for %s: %d -> %d", student_id, old_level, new_level)
        return change

    async def recalculate_all_levels(self) -> int:
        """Recompute every student's cached level. Returns number changed."""
        resolver = await self.get_resolver()
        students = await self._db.get_all_students()
        updates: dict[str, int] = {}
        changes: list[LevelChanged] = []
        for row in students:
            new_level = resolver.level_for(row.get("lifetime_points") or 0)
            old_level = int(row.get("level") or 1)
            if new_level != old_level:
                updates[row["student_id"]] = new_level
                changes.append(LevelChanged(row["student_id"], old_level, new_level))

        await self._db.update_student_levels(updates)
        if self._bus is not None:
            for change in changes:
                self._bus.publish(change)
        self._logger.info(
            "Recalculated levels for %d students (%d changed)", len(students), len(updates),
        )
        return len(updates)

    async def record_points(
        self,
        student_id: str,
        delta: Any,
        reason: str | None = None,
        category: str = "manual",
    ) -> dict[str, Any]:
        """Append a ledger entry, then re-derive the student's level."""
        amount = as_finite_number(delta)
        if amount is None:
            raise ValidationError("delta must be a finite number", {"delta": delta})
        if not student_id:
            raise ValidationError("student_id is required")

        row = await self._db.append_ledger_entry(student_id, amount, reason, category)
        change = await self.check_level_change(student_id)
        return {
            "student_id": student_id,
            "lifetime_points": row["lifetime_points"],
            "points_balance": row["points_balance"],
            "level": change.new_level if change else int(row.get("level") or 1),
            "level_changed": change is not None,
        }
