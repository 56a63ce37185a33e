"""Tests for the client view model and refresher."""

from __future__ import annotations

import asyncio
import logging

import pytest

from kryten_progression.client_view import StudentView, ViewRefresher
from kryten_progression.errors import GateDenied
from kryten_progression.models import CosmeticCategory


def _snapshot(avatar: str = "fox", balance: float = 10, **extra) -> dict:
    snap = {
        "settings": {"avatar_id": avatar, "particle_style": "none"},
        "points_balance": balance,
        "lifetime_points": balance,
        "level": 2,
        "unlocks": [{"item_type": "avatar", "item_key": "dragon"}],
    }
    snap.update(extra)
    return snap


class TestStudentView:

    def test_empty_view_shows_none(self):
        view = StudentView("s1")
        assert view.selection(CosmeticCategory.AVATAR) == "none"
        assert not view.has_pending

    def test_proposal_overrides_confirmed(self):
        view = StudentView("s1")
        view.apply_snapshot(_snapshot("fox"), 1)
        view.propose(CosmeticCategory.AVATAR, "owl")
        assert view.selection(CosmeticCategory.AVATAR) == "owl"
        view.discard_proposal(CosmeticCategory.AVATAR)
        assert view.selection(CosmeticCategory.AVATAR) == "fox"

    def test_snapshot_confirms_matching_proposal(self):
        view = StudentView("s1")
        view.propose(CosmeticCategory.AVATAR, "owl")
        view.propose(CosmeticCategory.EFFECT, "sparkles")
        view.apply_snapshot(_snapshot("owl", balance=40), 3)

        assert view.proposed == {"particle_style": "sparkles"}
        assert view.confirmed.avatar_id == "owl"
        assert view.points_balance == 40
        assert view.level == 2
        assert view.unlocked == {("avatar", "dragon")}
        assert view.generation == 3


class TestViewRefresher:

    async def test_stale_response_discarded(self):
        release = asyncio.Event()
        calls = 0

        async def fetch(student_id: str) -> dict:
            nonlocal calls
            calls += 1
            if calls == 1:
                await release.wait()
                return _snapshot("fox", balance=1)
            release.set()
            return _snapshot("owl", balance=99)

        refresher = ViewRefresher(StudentView("s1"), fetch, logging.getLogger("test"))
        results = await asyncio.gather(refresher.refresh(), refresher.refresh())

        assert results == [False, True]
        assert refresher.discarded == 1
        assert refresher.view.points_balance == 99
        assert refresher.view.selection(CosmeticCategory.AVATAR) == "owl"
        assert refresher.view.generation == refresher.latest_generation == 2

    async def test_equip_confirmed(self):
        committed: list[dict] = []

        async def commit(student_id: str, fields: dict) -> None:
            committed.append(fields)

        async def fetch(student_id: str) -> dict:
            return _snapshot("owl")

        refresher = ViewRefresher(StudentView("s1"), fetch, logging.getLogger("test"))
        assert await refresher.equip(CosmeticCategory.AVATAR, "owl", commit) is True
        assert committed == [{"avatar_id": "owl"}]
        assert not refresher.view.has_pending
        assert refresher.view.selection(CosmeticCategory.AVATAR) == "owl"

    async def test_equip_rolled_back_on_error(self):
        async def commit(student_id: str, fields: dict) -> None:
            raise GateDenied("Requires level 5.")

        async def fetch(student_id: str) -> dict:
            return _snapshot("fox")

        refresher = ViewRefresher(StudentView("s1"), fetch, logging.getLogger("test"))
        await refresher.refresh()

        with pytest.raises(GateDenied):
            await refresher.equip(CosmeticCategory.EFFECT, "sparkles", commit)
        assert not refresher.view.has_pending
        assert refresher.view.selection(CosmeticCategory.EFFECT) == "none"

    async def test_equip_takes_server_value_after_commit(self):
        async def commit(student_id: str, fields: dict) -> None:
            return None

        async def fetch(student_id: str) -> dict:
            # the server kept the previous avatar
            return _snapshot("fox")

        refresher = ViewRefresher(StudentView("s1"), fetch, logging.getLogger("test"))
        assert await refresher.equip(CosmeticCategory.AVATAR, "owl", commit) is True
        assert not refresher.view.has_pending
        assert refresher.view.selection(CosmeticCategory.AVATAR) == "fox"
