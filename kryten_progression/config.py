"""Configuration system for kryten-progression.

Pydantic models with sensible defaults, loaded from YAML with ``${VAR}``
expansion. ``ProgressionConfig`` extends ``KrytenConfig`` so the NATS,
channel, service and metrics sections come from kryten-py.
"""

from __future__ import annotations

import os
import re
from pathlib import Path
from typing import Any

import yaml
from kryten import KrytenConfig
from pydantic import BaseModel, Field


# ═══════════════════════════════════════════════════════════════
#  Storage
# ═══════════════════════════════════════════════════════════════

class DatabaseConfig(BaseModel):
    path: str = "progression.db"


# ═══════════════════════════════════════════════════════════════
#  Level Curve
# ═══════════════════════════════════════════════════════════════

class LevelCurveConfig(BaseModel):
    """Initial curve settings. Admin changes are persisted in the database
    and take precedence once written."""
    base_jump: float = 50
    difficulty_pct: float = 8
    max_level: int = Field(default=99, ge=1, le=99)


# ═══════════════════════════════════════════════════════════════
#  Daily Aura Bonus
# ═══════════════════════════════════════════════════════════════

class DailyBonusConfig(BaseModel):
    window_hours: float = Field(default=24, gt=0)
    allowed_roles: list[str] = Field(default_factory=lambda: ["admin", "student"])
    status_roles: list[str] = Field(
        default_factory=lambda: ["admin", "coach", "classroom"],
        description="Roles allowed to read batch claim status",
    )
    sweep_enabled: bool = False
    sweep_cron: str = "0 * * * *"


# ═══════════════════════════════════════════════════════════════
#  Catalog Seed
# ═══════════════════════════════════════════════════════════════

class AuraProfileConfig(BaseModel):
    rule_keeper_multiplier: float = 1.0
    rule_breaker_multiplier: float = 1.0
    skill_pulse_multiplier: float = 1.0
    spotlight_multiplier: float = 1.0
    daily_free_points: float = 0.0


class CosmeticItemConfig(BaseModel):
    key: str
    name: str = ""
    unlock_level: int = Field(default=1, ge=1)
    unlock_points: float = Field(default=0, ge=0)
    enabled: bool = True


class AvatarItemConfig(CosmeticItemConfig):
    aura: AuraProfileConfig | None = None


class CatalogConfig(BaseModel):
    """Seed entries upserted into the catalog at startup.

    The admin surface owns the catalog afterwards; seeding never deletes.
    """
    seed_on_start: bool = True
    avatars: list[AvatarItemConfig] = Field(default_factory=list)
    effects: list[CosmeticItemConfig] = Field(default_factory=list)
    corner_borders: list[CosmeticItemConfig] = Field(default_factory=list)
    card_plates: list[CosmeticItemConfig] = Field(default_factory=list)


# ═══════════════════════════════════════════════════════════════
#  Service Surface
# ═══════════════════════════════════════════════════════════════

class CommandsConfig(BaseModel):
    subject: str = "kryten.progression.command"


class RevalidationConfig(BaseModel):
    enabled: bool = True


# NOTE: metrics is inherited from KrytenConfig (kryten.config.MetricsConfig)
#       which includes port, health_path, metrics_path


# ═══════════════════════════════════════════════════════════════
#  Top-Level Config
# ═══════════════════════════════════════════════════════════════

class ProgressionConfig(KrytenConfig):
    """Full progression config: KrytenConfig plus the engine sub-models."""

    database: DatabaseConfig = Field(default_factory=DatabaseConfig)
    levels: LevelCurveConfig = Field(default_factory=LevelCurveConfig)
    daily_bonus: DailyBonusConfig = Field(default_factory=DailyBonusConfig)
    catalog: CatalogConfig = Field(default_factory=CatalogConfig)
    revalidation: RevalidationConfig = Field(default_factory=RevalidationConfig)
    commands: CommandsConfig = Field(default_factory=CommandsConfig)


# ═══════════════════════════════════════════════════════════════
#  Config Loading
# ═══════════════════════════════════════════════════════════════

def _expand_env_vars(obj: Any) -> Any:
    """Recursively expand ${VAR} and ${VAR:-default} in string values."""
    if isinstance(obj, str):
        return re.sub(
            r"\$\{([^}:]+)(?::-(.*?))?\}",
            lambda m: os.environ.get(m.group(1), m.group(2) or ""),
            obj,
        )
    elif isinstance(obj, dict):
        return {k: _expand_env_vars(v) for k, v in obj.items()}
    elif isinstance(obj, list):
        return [_expand_env_vars(v) for v in obj]
    return obj


def load_config(config_path: str) -> ProgressionConfig:
    """Load and validate YAML config file into ProgressionConfig."""
    path = Path(config_path)
    if not path.exists():
        raise FileNotFoundError(f"Config file not found: {config_path}")

    with open(path, "r", encoding="utf-8") as f:
        raw = yaml.safe_load(f)

    if not isinstance(raw, dict):
        raise ValueError("Config file must contain a YAML mapping at the top level.")

    raw = _expand_env_vars(raw)
    return ProgressionConfig(**raw)
