"""Aura engine: derives point bonuses from the equipped avatar.

Avatars may carry an aura profile. Multipliers for rule-keeper and
rule-breaker events scale a caller-supplied base amount; skill-pulse and
spotlight multipliers are applied by the caller as whole-number factors.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, replace
from typing import TYPE_CHECKING, Any

from .errors import ValidationError
from .models import IDENTITY_AURA, AuraProfile, CosmeticCategory
from .utils import as_finite_number

if TYPE_CHECKING:
    from .unlock_engine import UnlockGateEvaluator


@dataclass(frozen=True)
class ResolvedAura:
    rule_keeper_points: int
    rule_breaker_points: int
    skill_pulse_multiplier: int
    spotlight_multiplier: int
    daily_bonus_points: int
    has_modifier: bool
    avatar_id: str | None = None
    avatar_name: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "rule_keeper_points": self.rule_keeper_points,
            "rule_breaker_points": self.rule_breaker_points,
            "skill_pulse_multiplier": self.skill_pulse_multiplier,
            "spotlight_multiplier": self.spotlight_multiplier,
            "daily_bonus_points": self.daily_bonus_points,
            "has_modifier": self.has_modifier,
            "avatar_id": self.avatar_id,
            "avatar_name": self.avatar_name,
        }


def _derive(profile: AuraProfile, base: float) -> tuple[int, int, int, int, int]:
    return (
        math.ceil(base * profile.rule_keeper_multiplier),
        math.ceil(base * profile.rule_breaker_multiplier),
        max(1, math.ceil(profile.skill_pulse_multiplier)),
        max(1, math.ceil(profile.spotlight_multiplier)),
        max(0, math.ceil(profile.daily_free_points)),
    )


class AuraResolver:
    """Resolves aura bonuses, optionally through the unlock gate."""

    def __init__(
        self,
        gate: UnlockGateEvaluator | None,
        logger: logging.Logger,
    ) -> None:
        self._gate = gate
        self._logger = logger

    def resolve(self, profile: AuraProfile | dict | None, base_rule_points: Any) -> ResolvedAura:
        """Pure resolution of a profile against a base amount.

        A missing or malformed profile behaves as the identity profile.
        """
        base = as_finite_number(base_rule_points)
        if base is None or base < 0:
            raise ValidationError(
                "base_rule_points must be a finite number >= 0",
                {"base_rule_points": base_rule_points},
            )
        if isinstance(profile, dict):
            profile = AuraProfile.from_mapping(profile)
        elif profile is None:
            profile = IDENTITY_AURA

        derived = _derive(profile, base)
        identity = _derive(IDENTITY_AURA, base)
        return ResolvedAura(*derived, has_modifier=derived != identity)

    async def aura_for_student(self, student_id: str, base_rule_points: Any) -> ResolvedAura:
        """Resolve using the student's equipped avatar, if it passes its gate."""
        if self._gate is None:
            return self.resolve(None, base_rule_points)

        item = await self._gate.get_valid_selection(student_id, CosmeticCategory.AVATAR)
        if item is None:
            return self.resolve(None, base_rule_points)

        resolved = self.resolve(item.aura, base_rule_points)
        if resolved.has_modifier:
            self._logger.debug("Aura for %s from avatar %s: %s", student_id, item.key, resolved)
        return replace(resolved, avatar_id=item.key, avatar_name=item.display_name)
