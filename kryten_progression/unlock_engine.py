"""Unlock engine: level/purchase gating for cosmetic items.

One evaluator serves all four cosmetic categories. An item is usable when it
is enabled, the student's level reaches ``unlock_level`` and, for priced
items, an unlock record exists. Equipped items that stop passing their gate
are reset to ``"none"`` rather than raising.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import TYPE_CHECKING, Any, Iterable

from .errors import GateDenied, InsufficientBalance, NotFound, ValidationError
from .event_bus import CatalogChanged, SelectionChanged, SelectionRevoked, UnlocksChanged
from .models import (
    NONE_SELECTION,
    AvatarSettings,
    CosmeticCategory,
    CosmeticItem,
    UnlockRecord,
    is_none_selection,
)
from .utils import StudentLocks, now_utc

if TYPE_CHECKING:
    from .config import CatalogConfig, ProgressionConfig
    from .database import ProgressionDatabase
    from .event_bus import ProgressionEventBus
    from .level_engine import LevelEngine


class GateStatus(Enum):
    ALLOWED = "allowed"
    DISABLED = "disabled"
    LEVEL_TOO_LOW = "level_too_low"
    NOT_PURCHASED = "not_purchased"
    MISSING = "missing"


@dataclass(frozen=True)
class GateCheck:
    status: GateStatus
    reason: str = ""
    missing_level: int | None = None
    missing_points: float | None = None

    @property
    def allowed(self) -> bool:
        return self.status is GateStatus.ALLOWED

    def to_dict(self) -> dict[str, Any]:
        return {
            "allowed": self.allowed,
            "status": self.status.value,
            "reason": self.reason,
            "missing_level": self.missing_level,
            "missing_points": self.missing_points,
        }


@dataclass(frozen=True)
class PurchaseReceipt:
    category: str
    item_key: str
    charged: float
    balance: float | None
    already_unlocked: bool = False
    selected: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "category": self.category,
            "item_key": self.item_key,
            "charged": self.charged,
            "balance": self.balance,
            "already_unlocked": self.already_unlocked,
            "selected": self.selected,
        }


def check_gate(item: CosmeticItem, level: int, unlocked_keys: Iterable[str]) -> GateCheck:
    """Pure gate decision for one item."""
    if not item.enabled:
        return GateCheck(GateStatus.DISABLED, f"{item.display_name} is not available.")
    if level < item.unlock_level:
        return GateCheck(
            GateStatus.LEVEL_TOO_LOW,
            f"Requires level {item.unlock_level} (you are level {level}).",
            missing_level=item.unlock_level - level,
        )
    if not item.is_free and item.key not in set(unlocked_keys):
        return GateCheck(
            GateStatus.NOT_PURCHASED,
            f"Unlock for {item.unlock_points:,g} points.",
            missing_points=item.unlock_points,
        )
    return GateCheck(GateStatus.ALLOWED)


def _parse_category(value: Any) -> CosmeticCategory:
    try:
        return CosmeticCategory.parse(value)
    except ValueError:
        raise ValidationError(
            f"Unknown category: {value}",
            {"allowed": [c.value for c in CosmeticCategory]},
        ) from None


class UnlockGateEvaluator:
    """Gates, purchases and selections for every cosmetic category."""

    def __init__(
        self,
        config: ProgressionConfig,
        database: ProgressionDatabase,
        level_engine: LevelEngine,
        event_bus: ProgressionEventBus | None,
        logger: logging.Logger,
        locks: StudentLocks | None = None,
    ) -> None:
        self._config = config
        self._db = database
        self._levels = level_engine
        self._bus = event_bus
        self._logger = logger
        self._locks = locks or StudentLocks()

    def update_config(self, new_config: ProgressionConfig) -> None:
        """Hot-swap the config reference."""
        self._config = new_config

    def _publish(self, event: Any) -> None:
        if self._bus is not None:
            self._bus.publish(event)

    # ══════════════════════════════════════════════════════════
    #  Catalog
    # ══════════════════════════════════════════════════════════

    async def get_catalog(self, category: Any) -> list[CosmeticItem]:
        cat = _parse_category(category)
        rows = await self._db.get_catalog(cat.value)
        return [CosmeticItem.from_row(r) for r in rows]

    async def get_item(self, category: Any, item_key: str) -> CosmeticItem | None:
        cat = _parse_category(category)
        row = await self._db.get_catalog_item(cat.value, item_key)
        return CosmeticItem.from_row(row) if row else None

    async def upsert_item(self, item: CosmeticItem) -> None:
        await self._db.upsert_catalog_item(
            item.category.value,
            item.key,
            name=item.name,
            unlock_level=item.unlock_level,
            unlock_points=item.unlock_points,
            enabled=item.enabled,
            aura=item.aura.to_dict() if item.aura else None,
        )
        self._publish(CatalogChanged(item.category.value, item.key))

    async def set_item_enabled(self, category: Any, item_key: str, enabled: bool) -> None:
        cat = _parse_category(category)
        if not await self._db.set_catalog_item_enabled(cat.value, item_key, enabled):
            raise NotFound("Item", f"{cat.value}:{item_key}")
        self._logger.info(
            "Catalog item %s:%s %s", cat.value, item_key, "enabled" if enabled else "disabled",
        )
        self._publish(CatalogChanged(cat.value, item_key))

    async def seed_catalog(self, catalog: CatalogConfig) -> int:
        """Upsert configured seed items. Returns the number written."""
        sections = (
            (CosmeticCategory.AVATAR, catalog.avatars),
            (CosmeticCategory.EFFECT, catalog.effects),
            (CosmeticCategory.CORNER_BORDER, catalog.corner_borders),
            (CosmeticCategory.CARD_PLATE, catalog.card_plates),
        )
        count = 0
        for category, entries in sections:
            for entry in entries:
                aura = getattr(entry, "aura", None)
                await self._db.upsert_catalog_item(
                    category.value,
                    entry.key,
                    name=entry.name,
                    unlock_level=entry.unlock_level,
                    unlock_points=entry.unlock_points,
                    enabled=entry.enabled,
                    aura=aura.model_dump() if aura else None,
                )
                count += 1
        if count:
            self._logger.info("Seeded %d catalog items", count)
        return count

    # ══════════════════════════════════════════════════════════
    #  Gate Evaluation
    # ══════════════════════════════════════════════════════════

    async def get_settings(self, student_id: str) -> AvatarSettings:
        row = await self._db.get_avatar_settings(student_id)
        return AvatarSettings.from_row(row) if row else AvatarSettings(student_id=student_id)

    async def unlock_records(self, student_id: str) -> list[UnlockRecord]:
        rows = await self._db.get_unlock_records(student_id)
        return [UnlockRecord.from_row(student_id, row) for row in rows]

    async def unlocked_keys(self, student_id: str, category: CosmeticCategory) -> set[str]:
        return {r.item_key for r in await self.unlock_records(student_id) if r.item_type is category}

    async def check_item(self, student_id: str, category: Any, item_key: str) -> GateCheck:
        cat = _parse_category(category)
        item = await self.get_item(cat, item_key)
        if item is None:
            return GateCheck(GateStatus.MISSING, f"Unknown {cat.value}: {item_key}")
        level = await self._levels.effective_level(student_id)
        return check_gate(item, level, await self.unlocked_keys(student_id, cat))

    async def list_eligibility(
        self, student_id: str, category: Any,
    ) -> list[tuple[CosmeticItem, GateCheck]]:
        """Every catalog item of a category with its gate result for a student."""
        cat = _parse_category(category)
        items = await self.get_catalog(cat)
        level = await self._levels.effective_level(student_id)
        unlocked = await self.unlocked_keys(student_id, cat)
        return [(item, check_gate(item, level, unlocked)) for item in items]

    async def evaluate_selection(
        self, student_id: str, category: Any,
    ) -> SelectionRevoked | None:
        """Reset the equipped item to "none" if it no longer passes its gate.

        The reset is a compare-and-set on the evaluated key, so a selection
        made concurrently is left alone. Returns the revocation, if any.
        """
        cat = _parse_category(category)
        settings = await self.get_settings(student_id)
        key = settings.selection(cat)
        if is_none_selection(key):
            return None

        check = await self.check_item(student_id, cat, key)
        if check.allowed:
            return None

        revoked = await self._db.revoke_selection(student_id, cat.settings_field, key, now_utc())
        if not revoked:
            return None

        event = SelectionRevoked(
            student_id=student_id,
            category=cat.value,
            item_key=key,
            reason=check.status.value,
        )
        self._logger.info(
            "Revoked %s '%s' for %s (%s)", cat.value, key, student_id, check.status.value,
        )
        self._publish(event)
        return event

    async def evaluate_all(self, student_id: str) -> list[SelectionRevoked]:
        revoked = []
        for cat in CosmeticCategory:
            event = await self.evaluate_selection(student_id, cat)
            if event is not None:
                revoked.append(event)
        return revoked

    async def get_valid_selection(
        self, student_id: str, category: Any,
    ) -> CosmeticItem | None:
        """The equipped item if it passes its gate, revoking it otherwise."""
        cat = _parse_category(category)
        if await self.evaluate_selection(student_id, cat) is not None:
            return None
        key = (await self.get_settings(student_id)).selection(cat)
        if is_none_selection(key):
            return None
        return await self.get_item(cat, key)

    # ══════════════════════════════════════════════════════════
    #  Purchase
    # ══════════════════════════════════════════════════════════

    async def purchase(
        self,
        student_id: str,
        category: Any,
        item_key: str,
        now: datetime | None = None,
    ) -> PurchaseReceipt:
        """Unlock (and equip) an item, charging its point cost once."""
        cat = _parse_category(category)
        if not student_id or not item_key:
            raise ValidationError("student_id and item_key are required")
        now = now or now_utc()

        async with self._locks.get(student_id):
            item = await self.get_item(cat, item_key)
            if item is None:
                raise NotFound("Item", f"{cat.value}:{item_key}")
            if not item.enabled:
                raise GateDenied(f"{item.display_name} is not available.")

            student = await self._db.get_student(student_id)
            if not student:
                raise NotFound("Student", student_id)
            resolver = await self._levels.get_resolver()
            level = resolver.level_for(student.get("lifetime_points") or 0)
            if level < item.unlock_level:
                raise GateDenied(
                    f"Requires level {item.unlock_level}.",
                    {"level": level, "unlock_level": item.unlock_level},
                )

            if await self._db.has_unlock(student_id, cat.value, item.key):
                return PurchaseReceipt(
                    cat.value, item.key, 0, student.get("points_balance"),
                    already_unlocked=True,
                )

            if item.is_free:
                await self._db.set_avatar_selection(
                    student_id, {cat.settings_field: item.key}, now,
                )
                self._publish(SelectionChanged(student_id, {cat.settings_field: item.key}))
                return PurchaseReceipt(
                    cat.value, item.key, 0, student.get("points_balance"), selected=True,
                )

            thresholds = await self._levels.get_thresholds()
            min_lifetime = thresholds[item.unlock_level - 1].min_lifetime_points
            result = await self._db.purchase_unlock(
                student_id,
                cat.value,
                item.key,
                cost=item.unlock_points,
                min_lifetime_points=min_lifetime,
                selection_column=cat.settings_field,
                reason=f"Unlock {cat.value}: {item.display_name} (-{item.unlock_points:g})",
                now=now,
            )

        status = result["status"]
        if status == "already_unlocked":
            return PurchaseReceipt(
                cat.value, item.key, 0, result["balance"], already_unlocked=True,
            )
        if status == "insufficient_balance":
            raise InsufficientBalance(item.unlock_points, result["balance"])
        if status == "level_too_low":
            raise GateDenied(f"Requires level {item.unlock_level}.")
        if status == "no_student":
            raise NotFound("Student", student_id)

        self._logger.info(
            "%s unlocked %s '%s' for %s points", student_id, cat.value, item.key,
            item.unlock_points,
        )
        self._publish(UnlocksChanged(student_id, cat.value, item.key, item.unlock_points))
        self._publish(SelectionChanged(student_id, {cat.settings_field: item.key}))
        return PurchaseReceipt(
            cat.value, item.key, item.unlock_points, result["balance"], selected=True,
        )

    # ══════════════════════════════════════════════════════════
    #  Selection
    # ══════════════════════════════════════════════════════════

    async def set_selection(
        self,
        student_id: str,
        fields: dict[str, Any],
        now: datetime | None = None,
    ) -> AvatarSettings:
        """Write selection fields; each must be "none" or pass its gate.

        Changing the avatar restarts the daily bonus window. Returns the
        stored settings.
        """
        if not student_id:
            raise ValidationError("student_id is required")
        if not fields:
            raise ValidationError("No settings fields provided")

        resolved: dict[str, CosmeticCategory] = {}
        for name in fields:
            cat = CosmeticCategory.from_settings_field(name)
            if cat is None:
                raise ValidationError(
                    f"Unknown settings field: {name}",
                    {"allowed": [c.settings_field for c in CosmeticCategory]},
                )
            resolved[name] = cat

        async with self._locks.get(student_id):
            updates: dict[str, str] = {}
            for name, value in fields.items():
                cat = resolved[name]
                if value is not None and not isinstance(value, str):
                    raise ValidationError(f"{name} must be a string", {name: value})
                if is_none_selection(value):
                    updates[name] = NONE_SELECTION
                    continue
                key = value.strip()
                check = await self.check_item(student_id, cat, key)
                if check.status is GateStatus.MISSING:
                    raise NotFound("Item", f"{cat.value}:{key}")
                if not check.allowed:
                    raise GateDenied(check.reason, check.to_dict())
                updates[name] = key

            row = await self._db.set_avatar_selection(student_id, updates, now or now_utc())

        self._publish(SelectionChanged(student_id, updates))
        return AvatarSettings.from_row(row)
