"""Domain records shared by the engines.

Rows come out of the database as plain dicts (the kryten convention); these
frozen dataclasses are the typed view the engines work with.
"""

from __future__ import annotations

import json
import math
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any

from .utils import as_finite_number, parse_timestamp

NONE_SELECTION = "none"
MAX_LEVEL = 99


class CosmeticCategory(Enum):
    AVATAR = "avatar"
    EFFECT = "effect"
    CORNER_BORDER = "corner_border"
    CARD_PLATE = "card_plate"

    @property
    def settings_field(self) -> str:
        """Column of ``avatar_settings`` holding this category's selection."""
        return _SETTINGS_FIELDS[self]

    @classmethod
    def parse(cls, value: str | CosmeticCategory) -> CosmeticCategory:
        """Look up a category by value; raises ``ValueError`` if unknown."""
        if isinstance(value, cls):
            return value
        return cls(str(value).strip().lower())

    @classmethod
    def from_settings_field(cls, name: str) -> CosmeticCategory | None:
        for category, column in _SETTINGS_FIELDS.items():
            if column == name:
                return category
        return None


_SETTINGS_FIELDS: dict[CosmeticCategory, str] = {
    CosmeticCategory.AVATAR: "avatar_id",
    CosmeticCategory.EFFECT: "particle_style",
    CosmeticCategory.CORNER_BORDER: "corner_border_key",
    CosmeticCategory.CARD_PLATE: "card_plate_key",
}


def is_none_selection(value: str | None) -> bool:
    return value is None or str(value).strip() in ("", NONE_SELECTION)


@dataclass(frozen=True)
class LevelSettings:
    base_jump: float = 50
    difficulty_pct: float = 8


@dataclass(frozen=True)
class LevelThreshold:
    level: int
    min_lifetime_points: int


@dataclass(frozen=True)
class AuraProfile:
    """Bonus profile attached to an avatar. Defaults are the identity profile."""

    rule_keeper_multiplier: float = 1.0
    rule_breaker_multiplier: float = 1.0
    skill_pulse_multiplier: float = 1.0
    spotlight_multiplier: float = 1.0
    daily_free_points: float = 0.0

    @classmethod
    def from_mapping(cls, raw: dict[str, Any] | None) -> AuraProfile:
        """Build a profile, replacing invalid fields with their identity default."""
        if not raw:
            return IDENTITY_AURA
        values: dict[str, float] = {}
        for name, default in _AURA_DEFAULTS.items():
            number = as_finite_number(raw.get(name, default))
            values[name] = number if number is not None and number >= 0 else default
        return cls(**values)

    def to_dict(self) -> dict[str, float]:
        return {name: getattr(self, name) for name in _AURA_DEFAULTS}


_AURA_DEFAULTS: dict[str, float] = {
    "rule_keeper_multiplier": 1.0,
    "rule_breaker_multiplier": 1.0,
    "skill_pulse_multiplier": 1.0,
    "spotlight_multiplier": 1.0,
    "daily_free_points": 0.0,
}

IDENTITY_AURA = AuraProfile()


@dataclass(frozen=True)
class CosmeticItem:
    category: CosmeticCategory
    key: str
    name: str = ""
    unlock_level: int = 1
    unlock_points: float = 0
    enabled: bool = True
    aura: AuraProfile | None = None

    @property
    def display_name(self) -> str:
        return self.name or self.key

    @property
    def is_free(self) -> bool:
        return self.unlock_points <= 0

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> CosmeticItem:
        category = CosmeticCategory.parse(row["category"])
        aura = None
        if category is CosmeticCategory.AVATAR and row.get("aura"):
            raw = row["aura"]
            if isinstance(raw, str):
                try:
                    raw = json.loads(raw)
                except ValueError:
                    raw = None
            aura = AuraProfile.from_mapping(raw if isinstance(raw, dict) else None)
        unlock_level = as_finite_number(row.get("unlock_level"))
        unlock_points = as_finite_number(row.get("unlock_points"))
        return cls(
            category=category,
            key=str(row["item_key"]),
            name=str(row.get("name") or ""),
            unlock_level=max(1, math.floor(unlock_level)) if unlock_level is not None else 1,
            unlock_points=max(0.0, unlock_points) if unlock_points is not None else 0.0,
            enabled=bool(row.get("enabled", True)),
            aura=aura,
        )

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "category": self.category.value,
            "key": self.key,
            "name": self.display_name,
            "unlock_level": self.unlock_level,
            "unlock_points": self.unlock_points,
            "enabled": self.enabled,
        }
        if self.category is CosmeticCategory.AVATAR:
            data["aura"] = (self.aura or IDENTITY_AURA).to_dict()
        return data


@dataclass(frozen=True)
class UnlockRecord:
    student_id: str
    item_type: CosmeticCategory
    item_key: str
    unlocked_at: datetime | None = None

    @classmethod
    def from_row(cls, student_id: str, row: dict[str, Any]) -> UnlockRecord:
        return cls(
            student_id=student_id,
            item_type=CosmeticCategory.parse(row["item_type"]),
            item_key=str(row["item_key"]),
            unlocked_at=parse_timestamp(row.get("unlocked_at")),
        )


@dataclass(frozen=True)
class AvatarSettings:
    student_id: str
    avatar_id: str = NONE_SELECTION
    particle_style: str = NONE_SELECTION
    corner_border_key: str = NONE_SELECTION
    card_plate_key: str = NONE_SELECTION
    avatar_set_at: datetime | None = None
    avatar_daily_granted_at: datetime | None = None
    updated_at: datetime | None = None

    def selection(self, category: CosmeticCategory) -> str:
        return getattr(self, category.settings_field) or NONE_SELECTION

    @property
    def last_grant_at(self) -> datetime | None:
        """Anchor of the daily bonus window."""
        return self.avatar_daily_granted_at or self.avatar_set_at

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> AvatarSettings:
        return cls(
            student_id=str(row["student_id"]),
            avatar_id=row.get("avatar_id") or NONE_SELECTION,
            particle_style=row.get("particle_style") or NONE_SELECTION,
            corner_border_key=row.get("corner_border_key") or NONE_SELECTION,
            card_plate_key=row.get("card_plate_key") or NONE_SELECTION,
            avatar_set_at=parse_timestamp(row.get("avatar_set_at")),
            avatar_daily_granted_at=parse_timestamp(row.get("avatar_daily_granted_at")),
            updated_at=parse_timestamp(row.get("updated_at")),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "student_id": self.student_id,
            "avatar_id": self.avatar_id,
            "particle_style": self.particle_style,
            "corner_border_key": self.corner_border_key,
            "card_plate_key": self.card_plate_key,
            "avatar_set_at": self.avatar_set_at.isoformat() if self.avatar_set_at else None,
            "avatar_daily_granted_at": (
                self.avatar_daily_granted_at.isoformat() if self.avatar_daily_granted_at else None
            ),
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }


@dataclass(frozen=True)
class StudentProgress:
    student_id: str
    lifetime_points: float = 0
    points_balance: float = 0
    level: int = 1

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> StudentProgress:
        return cls(
            student_id=str(row["student_id"]),
            lifetime_points=row.get("lifetime_points") or 0,
            points_balance=row.get("points_balance") or 0,
            level=int(row.get("level") or 1),
        )
