"""Tests for kryten_progression.models module."""

from __future__ import annotations

import pytest

from kryten_progression.models import (
    IDENTITY_AURA,
    AuraProfile,
    AvatarSettings,
    CosmeticCategory,
    CosmeticItem,
    UnlockRecord,
    is_none_selection,
)


class TestCosmeticCategory:
    def test_parse(self):
        assert CosmeticCategory.parse(" Avatar ") is CosmeticCategory.AVATAR
        assert CosmeticCategory.parse(CosmeticCategory.EFFECT) is CosmeticCategory.EFFECT
        with pytest.raises(ValueError):
            CosmeticCategory.parse("hat")

    def test_settings_fields(self):
        assert CosmeticCategory.EFFECT.settings_field == "particle_style"
        assert CosmeticCategory.from_settings_field("card_plate_key") is CosmeticCategory.CARD_PLATE
        assert CosmeticCategory.from_settings_field("student_id") is None


def test_none_selection():
    assert is_none_selection(None)
    assert is_none_selection("")
    assert is_none_selection(" none ")
    assert not is_none_selection("fox")


class TestCosmeticItem:
    def test_from_row_avatar_with_aura(self):
        item = CosmeticItem.from_row({
            "category": "avatar",
            "item_key": "owl",
            "name": "",
            "unlock_level": 3,
            "unlock_points": 0,
            "enabled": 1,
            "aura": '{"daily_free_points": 5}',
        })
        assert item.display_name == "owl"
        assert item.is_free
        assert item.aura.daily_free_points == 5
        assert item.to_dict()["aura"]["rule_keeper_multiplier"] == 1.0

    def test_from_row_sanitizes(self):
        item = CosmeticItem.from_row({
            "category": "effect",
            "item_key": "glow",
            "unlock_level": -4,
            "unlock_points": "free",
            "aura": '{"daily_free_points": 5}',
        })
        assert item.unlock_level == 1
        assert item.unlock_points == 0
        assert item.aura is None
        assert "aura" not in item.to_dict()

    def test_bad_aura_json_is_identity(self):
        item = CosmeticItem.from_row({
            "category": "avatar", "item_key": "x", "aura": "{not json",
        })
        assert item.aura is IDENTITY_AURA


def test_aura_from_mapping_empty():
    assert AuraProfile.from_mapping(None) is IDENTITY_AURA
    assert AuraProfile.from_mapping({}) is IDENTITY_AURA


def test_avatar_settings_anchor():
    settings = AvatarSettings.from_row({
        "student_id": "s1",
        "avatar_id": "owl",
        "avatar_set_at": "2026-03-01T12:00:00+00:00",
        "avatar_daily_granted_at": None,
    })
    assert settings.particle_style == "none"
    assert settings.last_grant_at == settings.avatar_set_at
    assert settings.selection(CosmeticCategory.AVATAR) == "owl"


def test_unlock_record_from_row():
    record = UnlockRecord.from_row("s1", {
        "item_type": "corner_border",
        "item_key": "gold",
        "unlocked_at": "2026-03-01 12:00:00",
    })
    assert record.item_type is CosmeticCategory.CORNER_BORDER
    assert record.unlocked_at is not None and record.unlocked_at.tzinfo is not None
