"""Tests for AuraResolver."""

from __future__ import annotations

import logging
import math

import pytest

from kryten_progression.aura_engine import AuraResolver
from kryten_progression.database import ProgressionDatabase
from kryten_progression.errors import ValidationError
from kryten_progression.level_engine import LevelEngine
from kryten_progression.models import AuraProfile
from kryten_progression.unlock_engine import UnlockGateEvaluator
from tests.conftest import seed_student


@pytest.fixture
def resolver() -> AuraResolver:
    return AuraResolver(None, logging.getLogger("test"))


class TestResolve:

    def test_identity_profile(self, resolver: AuraResolver):
        aura = resolver.resolve(None, 10)
        assert aura.rule_keeper_points == 10
        assert aura.rule_breaker_points == 10
        assert aura.skill_pulse_multiplier == 1
        assert aura.spotlight_multiplier == 1
        assert aura.daily_bonus_points == 0
        assert aura.has_modifier is False

    def test_multipliers_round_up(self, resolver: AuraResolver):
        profile = AuraProfile(rule_keeper_multiplier=1.5, skill_pulse_multiplier=1.2, daily_free_points=2.1)
        aura = resolver.resolve(profile, 5)
        assert aura.rule_keeper_points == 8
        assert aura.skill_pulse_multiplier == 2
        assert aura.daily_bonus_points == 3
        assert aura.has_modifier is True

    def test_small_multiplier_floors_at_one(self, resolver: AuraResolver):
        aura = resolver.resolve({"spotlight_multiplier": 0.5}, 0)
        assert aura.spotlight_multiplier == 1
        assert aura.has_modifier is False

    def test_invalid_fields_fall_back(self, resolver: AuraResolver):
        aura = resolver.resolve(
            {"rule_keeper_multiplier": -2, "rule_breaker_multiplier": "x", "daily_free_points": math.nan},
            4,
        )
        assert aura.rule_keeper_points == 4
        assert aura.rule_breaker_points == 4
        assert aura.daily_bonus_points == 0

    @pytest.mark.parametrize("bad", [-1, math.inf, "ten", None])
    def test_invalid_base_rejected(self, resolver: AuraResolver, bad):
        with pytest.raises(ValidationError):
            resolver.resolve(None, bad)


class TestAuraForStudent:

    async def test_no_avatar_is_identity(
        self, aura_resolver: AuraResolver, database: ProgressionDatabase,
    ):
        await seed_student(database, "s1")
        aura = await aura_resolver.aura_for_student("s1", 10)
        assert aura.has_modifier is False
        assert aura.avatar_id is None

    async def test_equipped_avatar_applies(
        self,
        aura_resolver: AuraResolver,
        unlock_engine: UnlockGateEvaluator,
        level_engine: LevelEngine,
        database: ProgressionDatabase,
    ):
        thresholds = await level_engine.get_thresholds()
        await seed_student(database, "s1", lifetime=thresholds[2].min_lifetime_points)
        await unlock_engine.set_selection("s1", {"avatar_id": "owl"})

        aura = await aura_resolver.aura_for_student("s1", 10)
        assert aura.avatar_id == "owl"
        assert aura.avatar_name == "Owl"
        assert aura.rule_keeper_points == 15
        assert aura.daily_bonus_points == 5

    async def test_applied_avatar_is_logged(
        self,
        aura_resolver: AuraResolver,
        unlock_engine: UnlockGateEvaluator,
        level_engine: LevelEngine,
        database: ProgressionDatabase,
        caplog,
    ):
        thresholds = await level_engine.get_thresholds()
        await seed_student(database, "s1", lifetime=thresholds[2].min_lifetime_points)
        await unlock_engine.set_selection("s1", {"avatar_id": "owl"})

        with caplog.at_level(logging.DEBUG, logger="test"):
            await aura_resolver.aura_for_student("s1", 10)
        assert any(
            "s1" in r.getMessage() and "owl" in r.getMessage() for r in caplog.records
        )


    async def test_failing_gate_contributes_identity(
        self,
        aura_resolver: AuraResolver,
        unlock_engine: UnlockGateEvaluator,
        level_engine: LevelEngine,
        database: ProgressionDatabase,
    ):
        thresholds = await level_engine.get_thresholds()
        await seed_student(database, "s1", lifetime=thresholds[2].min_lifetime_points)
        await unlock_engine.set_selection("s1", {"avatar_id": "owl"})
        await database.set_catalog_item_enabled("avatar", "owl", False)

        aura = await aura_resolver.aura_for_student("s1", 10)
        assert aura.has_modifier is False
        assert aura.rule_keeper_points == 10
