"""Tests for DailyBonusClaimService."""

from __future__ import annotations

import asyncio
from datetime import timedelta

import pytest

from kryten_progression.daily_bonus import DailyBonusClaimService, format_remaining
from kryten_progression.database import ProgressionDatabase
from kryten_progression.errors import (
    NoBonusConfigured,
    NotFound,
    NotReady,
    RoleNotPermitted,
)
from kryten_progression.unlock_engine import UnlockGateEvaluator
from tests.conftest import NOW, seed_student

DAY = timedelta(hours=24)


async def _equip_owl(
    unlock_engine: UnlockGateEvaluator, database: ProgressionDatabase, student_id: str = "s1",
) -> None:
    # Level 3 (110 lifetime points) unlocks the owl
    await seed_student(database, student_id, lifetime=110)
    await unlock_engine.set_selection(student_id, {"avatar_id": "owl"}, now=NOW)


class TestClaim:

    async def test_not_ready_inside_first_window(
        self,
        daily_bonus: DailyBonusClaimService,
        unlock_engine: UnlockGateEvaluator,
        database: ProgressionDatabase,
    ):
        await _equip_owl(unlock_engine, database)
        with pytest.raises(NotReady, match="remaining"):
            await daily_bonus.claim("s1", "student", NOW + timedelta(hours=1))

    async def test_claim_after_window(
        self,
        daily_bonus: DailyBonusClaimService,
        unlock_engine: UnlockGateEvaluator,
        database: ProgressionDatabase,
    ):
        await _equip_owl(unlock_engine, database)
        claim = await daily_bonus.claim("s1", "student", NOW + DAY)
        assert claim.points_awarded == 5
        assert claim.avatar_name == "Owl"
        assert claim.granted_at == NOW + DAY
        assert claim.balance == 115

        history = await database.get_recent_transactions("s1", 1)
        assert history[0]["category"] == "avatar_daily"
        assert history[0]["reason"] == "Avatar Aura Daily +5 (Owl)"

    async def test_once_per_window(
        self,
        daily_bonus: DailyBonusClaimService,
        unlock_engine: UnlockGateEvaluator,
        database: ProgressionDatabase,
    ):
        await _equip_owl(unlock_engine, database)
        await daily_bonus.claim("s1", "student", NOW + DAY)
        with pytest.raises(NotReady):
            await daily_bonus.claim("s1", "student", NOW + DAY + timedelta(hours=23))
        claim = await daily_bonus.claim("s1", "admin", NOW + 2 * DAY)
        assert claim.points_awarded == 5

    async def test_concurrent_claims_grant_once(
        self,
        daily_bonus: DailyBonusClaimService,
        unlock_engine: UnlockGateEvaluator,
        database: ProgressionDatabase,
    ):
        await _equip_owl(unlock_engine, database)
        results = await asyncio.gather(
            daily_bonus.claim("s1", "student", NOW + DAY),
            daily_bonus.claim("s1", "student", NOW + DAY),
            return_exceptions=True,
        )
        granted = [r for r in results if not isinstance(r, Exception)]
        failed = [r for r in results if isinstance(r, Exception)]
        assert len(granted) == 1
        assert len(failed) == 1 and isinstance(failed[0], NotReady)
        assert (await database.get_student("s1"))["points_balance"] == 115

    async def test_avatar_change_restarts_window(
        self,
        daily_bonus: DailyBonusClaimService,
        unlock_engine: UnlockGateEvaluator,
        database: ProgressionDatabase,
    ):
        await _equip_owl(unlock_engine, database)
        swap = NOW + timedelta(hours=20)
        await unlock_engine.set_selection("s1", {"avatar_id": "fox"}, now=swap)
        await unlock_engine.set_selection("s1", {"avatar_id": "owl"}, now=swap)
        with pytest.raises(NotReady):
            await daily_bonus.claim("s1", "student", NOW + DAY)
        claim = await daily_bonus.claim("s1", "student", swap + DAY)
        assert claim.points_awarded == 5

    async def test_role_not_permitted(self, daily_bonus: DailyBonusClaimService):
        with pytest.raises(RoleNotPermitted):
            await daily_bonus.claim("s1", "coach", NOW)
        with pytest.raises(RoleNotPermitted):
            await daily_bonus.claim("s1", None, NOW)
        assert daily_bonus.claims_rejected == 2

    async def test_no_avatar(self, daily_bonus: DailyBonusClaimService, database: ProgressionDatabase):
        await seed_student(database, "s1")
        with pytest.raises(NotFound):
            await daily_bonus.claim("s1", "student", NOW)

    async def test_avatar_without_bonus(
        self,
        daily_bonus: DailyBonusClaimService,
        unlock_engine: UnlockGateEvaluator,
        database: ProgressionDatabase,
    ):
        await seed_student(database, "s1")
        await unlock_engine.set_selection("s1", {"avatar_id": "fox"}, now=NOW)
        with pytest.raises(NoBonusConfigured):
            await daily_bonus.claim("s1", "student", NOW + DAY)

    async def test_ineligible_avatar_counts_as_unconfigured(
        self,
        daily_bonus: DailyBonusClaimService,
        unlock_engine: UnlockGateEvaluator,
        database: ProgressionDatabase,
    ):
        await _equip_owl(unlock_engine, database)
        await database.set_catalog_item_enabled("avatar", "owl", False)
        with pytest.raises(NoBonusConfigured):
            await daily_bonus.claim("s1", "student", NOW + DAY)


class TestStatus:

    async def test_status_reports_next_ready(
        self,
        daily_bonus: DailyBonusClaimService,
        unlock_engine: UnlockGateEvaluator,
        database: ProgressionDatabase,
    ):
        await _equip_owl(unlock_engine, database)
        status = await daily_bonus.status("s1", NOW + timedelta(hours=2))
        assert status["ready"] is False
        assert status["points"] == 5
        assert status["avatar_name"] == "Owl"
        assert status["next_ready_at"] == (NOW + DAY).isoformat()

        assert (await daily_bonus.status("s1", NOW + DAY))["ready"] is True

    async def test_status_without_avatar(self, daily_bonus: DailyBonusClaimService):
        status = await daily_bonus.status("ghost", NOW)
        assert status["ready"] is False
        assert status["avatar_name"] is None

    async def test_batch_requires_staff_role(
        self,
        daily_bonus: DailyBonusClaimService,
        unlock_engine: UnlockGateEvaluator,
        database: ProgressionDatabase,
    ):
        await _equip_owl(unlock_engine, database, "s1")
        with pytest.raises(RoleNotPermitted):
            await daily_bonus.status_batch(["s1"], "student", NOW)

        statuses = await daily_bonus.status_batch(["s1", "s2", "s1"], "Coach", NOW + DAY)
        assert list(statuses) == ["s1", "s2"]
        assert statuses["s1"]["ready"] is True
        assert statuses["s2"]["ready"] is False


class TestSweep:

    async def test_sweep_grants_ready_students(
        self,
        daily_bonus: DailyBonusClaimService,
        unlock_engine: UnlockGateEvaluator,
        database: ProgressionDatabase,
    ):
        await _equip_owl(unlock_engine, database, "s1")
        await _equip_owl(unlock_engine, database, "s2")
        await seed_student(database, "s3")
        await unlock_engine.set_selection("s3", {"avatar_id": "fox"}, now=NOW)

        assert await daily_bonus.sweep(NOW + timedelta(hours=1)) == 0
        assert await daily_bonus.sweep(NOW + DAY) == 2
        assert await daily_bonus.sweep(NOW + DAY) == 0
        assert daily_bonus.claims_granted == 2


def test_format_remaining():
    assert format_remaining(timedelta(hours=3, minutes=12)) == "3h 12m"
    assert format_remaining(timedelta(minutes=5)) == "5m"
    assert format_remaining(timedelta(seconds=42)) == "42s"
    assert format_remaining(timedelta(seconds=-5)) == "0s"
