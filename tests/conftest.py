"""Shared test fixtures for kryten-progression."""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import AsyncGenerator
from unittest.mock import AsyncMock, MagicMock

import pytest
import pytest_asyncio

from kryten_progression.aura_engine import AuraResolver
from kryten_progression.config import ProgressionConfig
from kryten_progression.daily_bonus import DailyBonusClaimService
from kryten_progression.database import ProgressionDatabase
from kryten_progression.event_bus import ProgressionEventBus
from kryten_progression.level_engine import LevelEngine
from kryten_progression.revalidator import SelectionRevalidator
from kryten_progression.unlock_engine import UnlockGateEvaluator
from kryten_progression.utils import StudentLocks

NOW = datetime(2026, 3, 1, 12, 0, 0, tzinfo=timezone.utc)


# ── Minimal config dict matching ProgressionConfig schema ────

def make_config_dict(**overrides) -> dict:
    """Build a valid config dict with sensible test defaults."""
    base = {
        "nats": {"servers": ["nats://localhost:4222"]},
        "channels": [{"domain": "cytu.be", "channel": "testchannel"}],
        "service": {"name": "progression"},
        "database": {"path": ":memory:"},
        "levels": {"base_jump": 50, "difficulty_pct": 8},
        "daily_bonus": {
            "window_hours": 24,
            "allowed_roles": ["admin", "student"],
            "status_roles": ["admin", "coach", "classroom"],
        },
        "catalog": {
            "seed_on_start": True,
            "avatars": [
                {"key": "fox", "name": "Fox", "unlock_level": 1},
                {
                    "key": "owl", "name": "Owl", "unlock_level": 3,
                    "aura": {"daily_free_points": 5, "rule_keeper_multiplier": 1.5},
                },
                {
                    "key": "dragon", "name": "Dragon", "unlock_level": 5, "unlock_points": 200,
                    "aura": {"daily_free_points": 10, "spotlight_multiplier": 2},
                },
            ],
            "effects": [
                {"key": "sparkles", "name": "Sparkles", "unlock_level": 5},
            ],
            "corner_borders": [
                {"key": "gold", "name": "Gold Corners", "unlock_level": 2, "unlock_points": 100},
            ],
            "card_plates": [
                {"key": "marble", "name": "Marble", "unlock_level": 1},
            ],
        },
    }
    base.update(overrides)
    return base


@pytest.fixture
def config_factory():
    """Build a ProgressionConfig with top-level section overrides."""
    def _make(**overrides) -> ProgressionConfig:
        return ProgressionConfig(**make_config_dict(**overrides))
    return _make


@pytest.fixture
def sample_config_dict() -> dict:
    """Return a config dict suitable for tests."""
    return make_config_dict()


@pytest.fixture
def sample_config(sample_config_dict: dict) -> ProgressionConfig:
    """Return a parsed ProgressionConfig."""
    return ProgressionConfig(**sample_config_dict)


@pytest.fixture
def tmp_db_path(tmp_path: Path) -> str:
    """Return a temporary SQLite database path."""
    return str(tmp_path / "test_progression.db")


@pytest_asyncio.fixture
async def database(tmp_db_path: str) -> AsyncGenerator[ProgressionDatabase, None]:
    """Provide an initialized database with temp file."""
    db = ProgressionDatabase(tmp_db_path, logging.getLogger("test"))
    await db.initialize()
    yield db


@pytest.fixture
def mock_client() -> MagicMock:
    """Return a mock KrytenClient with async methods."""
    client = MagicMock()
    client.connect = AsyncMock()
    client.run = AsyncMock()
    client.stop = AsyncMock()
    client.subscribe = AsyncMock()
    client.subscribe_request_reply = AsyncMock()
    client.kv_put = AsyncMock()
    client.kv_get = AsyncMock(return_value={})
    client.get_or_create_kv_store = AsyncMock()
    return client


# ── Engine fixtures ─────────────────────────────────────────

@pytest.fixture
def event_bus() -> ProgressionEventBus:
    """Event bus without a pump; tests deliver with ``drain()``."""
    return ProgressionEventBus(logging.getLogger("test.bus"))


@pytest.fixture
def locks() -> StudentLocks:
    return StudentLocks()


@pytest_asyncio.fixture
async def level_engine(
    sample_config: ProgressionConfig,
    database: ProgressionDatabase,
    event_bus: ProgressionEventBus,
) -> LevelEngine:
    return LevelEngine(sample_config, database, event_bus, logging.getLogger("test"))


@pytest_asyncio.fixture
async def unlock_engine(
    sample_config: ProgressionConfig,
    database: ProgressionDatabase,
    level_engine: LevelEngine,
    event_bus: ProgressionEventBus,
    locks: StudentLocks,
) -> UnlockGateEvaluator:
    """Gate evaluator with the sample catalog seeded."""
    engine = UnlockGateEvaluator(
        sample_config, database, level_engine, event_bus, logging.getLogger("test"), locks,
    )
    await engine.seed_catalog(sample_config.catalog)
    return engine


@pytest.fixture
def aura_resolver(unlock_engine: UnlockGateEvaluator) -> AuraResolver:
    return AuraResolver(unlock_engine, logging.getLogger("test"))


@pytest_asyncio.fixture
async def daily_bonus(
    sample_config: ProgressionConfig,
    database: ProgressionDatabase,
    unlock_engine: UnlockGateEvaluator,
    aura_resolver: AuraResolver,
    level_engine: LevelEngine,
    locks: StudentLocks,
    event_bus: ProgressionEventBus,
) -> DailyBonusClaimService:
    return DailyBonusClaimService(
        sample_config, database, unlock_engine, aura_resolver, level_engine,
        logging.getLogger("test"), locks, event_bus,
    )


@pytest.fixture
def revalidator(
    unlock_engine: UnlockGateEvaluator,
    database: ProgressionDatabase,
    event_bus: ProgressionEventBus,
) -> SelectionRevalidator:
    return SelectionRevalidator(unlock_engine, database, event_bus, logging.getLogger("test"))


# ── Helpers ─────────────────────────────────────────────────

async def seed_student(
    db: ProgressionDatabase,
    student_id: str,
    lifetime: float = 0,
    spent: float = 0,
) -> None:
    """Create a student with ``lifetime`` earned and ``spent`` deducted."""
    await db.get_or_create_student(student_id)
    if lifetime:
        await db.append_ledger_entry(student_id, lifetime, "seed", "test")
    if spent:
        await db.append_ledger_entry(student_id, -spent, "seed spend", "test")
