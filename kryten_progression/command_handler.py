"""Request-reply command handler on kryten.progression.command.

Provides a NATS request-reply API for the classroom front end, other
services and admin tooling.
"""

from __future__ import annotations

import logging
from dataclasses import asdict
from typing import TYPE_CHECKING, Any

import pydantic

from . import __version__
from .config import AvatarItemConfig, CosmeticItemConfig
from .errors import ProgressionError, ValidationError
from .models import AuraProfile, CosmeticCategory, CosmeticItem, StudentProgress
from .utils import as_finite_number

if TYPE_CHECKING:
    from kryten import KrytenClient

    from .main import ProgressionApp


def _require(request: dict[str, Any], *names: str) -> list[Any]:
    missing = [n for n in names if request.get(n) in (None, "")]
    if missing:
        raise ValidationError(f"{' and '.join(missing)} required", {"missing": missing})
    return [request[n] for n in names]


class CommandHandler:
    """Handles request-reply commands on kryten.progression.command."""

    def __init__(
        self,
        app: ProgressionApp,
        client: KrytenClient,
        logger: logging.Logger | None = None,
    ) -> None:
        self._app = app
        self._client = client
        self._logger = logger or logging.getLogger("progression.command")

    @property
    def subject(self) -> str:
        return self._app.config.commands.subject

    async def connect(self) -> None:
        """Subscribe to request-reply on the command subject."""
        await self._client.subscribe_request_reply(
            self.subject,
            self._handle_command,
        )

    async def _handle_command(self, request: dict[str, Any]) -> dict[str, Any]:
        """Route a command request to the appropriate handler."""
        command = request.get("command", "")
        handler = self._HANDLER_MAP.get(command)

        if not handler:
            return {
                "service": "progression",
                "command": command,
                "success": False,
                "error": f"Unknown command: {command}",
                "error_code": "unknown_command",
            }

        try:
            result = await handler(self, request)
            self._app.commands_processed += 1
            return {
                "service": "progression",
                "command": command,
                "success": True,
                "data": result,
            }
        except ProgressionError as e:
            self._logger.info("Command %s rejected: %s", command, e.message)
            return {
                "service": "progression",
                "command": command,
                "success": False,
                "error": e.message,
                "error_code": e.error_code,
                "details": e.details,
            }
        except Exception as e:
            self._logger.exception("Command handler error for %s", command)
            return {
                "service": "progression",
                "command": command,
                "success": False,
                "error": str(e),
                "error_code": "internal_error",
            }

    # ══════════════════════════════════════════════════════════
    #  System
    # ══════════════════════════════════════════════════════════

    async def _handle_ping(self, request: dict[str, Any]) -> dict[str, Any]:
        return {"pong": True, "version": __version__}

    async def _handle_health(self, request: dict[str, Any]) -> dict[str, Any]:
        bus = self._app.event_bus
        return {
            "status": "healthy",
            "database": "connected" if self._app.db else "disconnected",
            "event_bus": "running" if bus and bus.running else "stopped",
            "uptime_seconds": self._app.uptime_seconds,
        }

    # ══════════════════════════════════════════════════════════
    #  Levels
    # ══════════════════════════════════════════════════════════

    async def _handle_level_settings_get(self, request: dict[str, Any]) -> dict[str, Any]:
        settings = await self._app.level_engine.get_level_settings()
        return {
            "base_jump": settings.base_jump,
            "difficulty_pct": settings.difficulty_pct,
        }

    async def _handle_level_settings_set(self, request: dict[str, Any]) -> dict[str, Any]:
        base_jump, difficulty_pct = _require(request, "base_jump", "difficulty_pct")
        return await self._app.level_engine.update_level_settings(
            base_jump,
            difficulty_pct,
            recalc=bool(request.get("recalc_levels", False)),
        )

    async def _handle_thresholds_get(self, request: dict[str, Any]) -> dict[str, Any]:
        table = await self._app.level_engine.get_thresholds()
        return {
            "thresholds": [
                {"level": t.level, "min_lifetime_points": t.min_lifetime_points}
                for t in table
            ],
        }

    async def _handle_progress_get(self, request: dict[str, Any]) -> dict[str, Any]:
        (student_id,) = _require(request, "student_id")
        student, progress = await self._app.level_engine.get_progress(student_id)
        return {
            "student_id": student.student_id,
            "lifetime_points": student.lifetime_points,
            "points_balance": student.points_balance,
            **progress.to_dict(),
        }

    # ══════════════════════════════════════════════════════════
    #  Catalog & Unlocks
    # ══════════════════════════════════════════════════════════

    async def _handle_catalog_list(self, request: dict[str, Any]) -> dict[str, Any]:
        (category,) = _require(request, "category")
        gate = self._app.unlock_engine
        include_disabled = bool(request.get("include_disabled", False))
        student_id = request.get("student_id")

        if student_id:
            rows = await gate.list_eligibility(student_id, category)
            items = [
                {**item.to_dict(), "gate": check.to_dict()}
                for item, check in rows
                if include_disabled or item.enabled
            ]
        else:
            items = [
                item.to_dict()
                for item in await gate.get_catalog(category)
                if include_disabled or item.enabled
            ]
        return {"category": CosmeticCategory.parse(category).value, "items": items}

    async def _handle_catalog_item_set(self, request: dict[str, Any]) -> dict[str, Any]:
        category, raw = _require(request, "category", "item")
        try:
            cat = CosmeticCategory.parse(category)
        except ValueError:
            raise ValidationError(f"Unknown category: {category}") from None
        model = AvatarItemConfig if cat is CosmeticCategory.AVATAR else CosmeticItemConfig
        try:
            entry = model.model_validate(raw)
        except pydantic.ValidationError as exc:
            errors = exc.errors(include_url=False, include_context=False)
            raise ValidationError("Invalid catalog item", {"errors": errors}) from exc

        aura = getattr(entry, "aura", None)
        item = CosmeticItem(
            category=cat,
            key=entry.key,
            name=entry.name,
            unlock_level=entry.unlock_level,
            unlock_points=entry.unlock_points,
            enabled=entry.enabled,
            aura=AuraProfile.from_mapping(aura.model_dump()) if aura else None,
        )
        await self._app.unlock_engine.upsert_item(item)
        return item.to_dict()

    async def _handle_catalog_item_enable(self, request: dict[str, Any]) -> dict[str, Any]:
        category, key = _require(request, "category", "key")
        enabled = bool(request.get("enabled", True))
        await self._app.unlock_engine.set_item_enabled(category, key, enabled)
        return {"category": category, "key": key, "enabled": enabled}

    async def _handle_unlocks_list(self, request: dict[str, Any]) -> dict[str, Any]:
        (student_id,) = _require(request, "student_id")
        records = await self._app.db.get_unlock_records(student_id)
        return {"student_id": student_id, "unlocks": records}

    async def _handle_purchase(self, request: dict[str, Any]) -> dict[str, Any]:
        student_id, category, item_key = _require(request, "student_id", "category", "item_key")
        receipt = await self._app.unlock_engine.purchase(student_id, category, item_key)
        return receipt.to_dict()

    # ══════════════════════════════════════════════════════════
    #  Avatar Settings & Aura
    # ══════════════════════════════════════════════════════════

    async def _handle_avatar_settings_get(self, request: dict[str, Any]) -> dict[str, Any]:
        (student_id,) = _require(request, "student_id")
        await self._app.unlock_engine.evaluate_all(student_id)
        settings = await self._app.unlock_engine.get_settings(student_id)
        return settings.to_dict()

    async def _handle_avatar_settings_set(self, request: dict[str, Any]) -> dict[str, Any]:
        student_id, fields = _require(request, "student_id", "settings")
        if not isinstance(fields, dict):
            raise ValidationError("settings must be an object")
        settings = await self._app.unlock_engine.set_selection(student_id, fields)
        return settings.to_dict()

    async def _handle_aura_get(self, request: dict[str, Any]) -> dict[str, Any]:
        (student_id,) = _require(request, "student_id")
        aura = await self._app.aura_resolver.aura_for_student(
            student_id, request.get("base_rule_points", 0),
        )
        return aura.to_dict()

    async def _handle_selection_evaluate(self, request: dict[str, Any]) -> dict[str, Any]:
        (student_id,) = _require(request, "student_id")
        revoked = await self._app.unlock_engine.evaluate_all(student_id)
        return {
            "student_id": student_id,
            "revoked": [{"category": r.category, "item_key": r.item_key, "reason": r.reason} for r in revoked],
        }

    # ══════════════════════════════════════════════════════════
    #  Daily Bonus
    # ══════════════════════════════════════════════════════════

    async def _handle_daily_claim(self, request: dict[str, Any]) -> dict[str, Any]:
        (student_id,) = _require(request, "student_id")
        claim = await self._app.daily_bonus.claim(student_id, request.get("role"))
        return claim.to_dict()

    async def _handle_daily_status(self, request: dict[str, Any]) -> dict[str, Any]:
        (student_id,) = _require(request, "student_id")
        return await self._app.daily_bonus.status(student_id)

    async def _handle_daily_status_batch(self, request: dict[str, Any]) -> dict[str, Any]:
        (student_ids,) = _require(request, "student_ids")
        if not isinstance(student_ids, list):
            raise ValidationError("student_ids must be a list")
        statuses = await self._app.daily_bonus.status_batch(student_ids, request.get("role"))
        return {"statuses": statuses}

    # ══════════════════════════════════════════════════════════
    #  Ledger
    # ══════════════════════════════════════════════════════════

    async def _handle_ledger_append(self, request: dict[str, Any]) -> dict[str, Any]:
        student_id, delta = _require(request, "student_id", "delta")
        return await self._app.level_engine.record_points(
            student_id,
            delta,
            reason=request.get("reason"),
            category=request.get("category") or "manual",
        )

    async def _handle_ledger_history(self, request: dict[str, Any]) -> dict[str, Any]:
        (student_id,) = _require(request, "student_id")
        raw_limit = as_finite_number(request.get("limit", 20))
        if raw_limit is None:
            raise ValidationError("limit must be a number", {"limit": request.get("limit")})
        limit = min(100, max(1, int(raw_limit)))
        student = await self._app.db.get_student(student_id)
        return {
            "student": asdict(StudentProgress.from_row(student)) if student else None,
            "transactions": await self._app.db.get_recent_transactions(student_id, limit),
        }

    _HANDLER_MAP: dict[str, Any] = {
        "system.ping": _handle_ping,
        "system.health": _handle_health,
        "levels.settings.get": _handle_level_settings_get,
        "levels.settings.set": _handle_level_settings_set,
        "levels.thresholds.get": _handle_thresholds_get,
        "student.progress.get": _handle_progress_get,
        "catalog.list": _handle_catalog_list,
        "catalog.item.set": _handle_catalog_item_set,
        "catalog.item.enable": _handle_catalog_item_enable,
        "unlocks.list": _handle_unlocks_list,
        "unlocks.purchase": _handle_purchase,
        "avatar.settings.get": _handle_avatar_settings_get,
        "avatar.settings.set": _handle_avatar_settings_set,
        "aura.get": _handle_aura_get,
        "selection.evaluate": _handle_selection_evaluate,
        "daily.claim": _handle_daily_claim,
        "daily.status": _handle_daily_status,
        "daily.status_batch": _handle_daily_status_batch,
        "ledger.append": _handle_ledger_append,
        "ledger.history": _handle_ledger_history,
    }
