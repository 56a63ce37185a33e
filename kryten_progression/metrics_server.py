"""Prometheus metrics server for kryten-progression.

Subclasses BaseMetricsServer from kryten-py to expose
progression-specific metrics and health details.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from kryten import BaseMetricsServer

if TYPE_CHECKING:
    from .main import ProgressionApp


class ProgressionMetricsServer(BaseMetricsServer):
    """Progression-specific Prometheus metrics endpoint."""

    def __init__(self, app: ProgressionApp, port: int = 28290) -> None:
        super().__init__(
            service_name="progression",
            port=port,
            client=app.client,
            logger=app.logger,
        )
        self._app = app

    async def _collect_custom_metrics(self) -> list[str]:
        """Collect progression-specific Prometheus metrics."""
        lines: list[str] = []

        # ── Counters ─────────────────────────────────────────
        lines.append(f"progression_commands_processed_total {self._app.commands_processed}")
        lines.append(f"progression_unlock_purchases_total {self._app.unlock_purchases_total}")
        lines.append(f"progression_points_spent_total {self._app.points_spent_total:g}")
        lines.append(f"progression_daily_claims_total {self._app.daily_claims_total}")
        lines.append(f"progression_daily_points_total {self._app.daily_points_total}")
        lines.append(f"progression_selections_revoked_total {self._app.selections_revoked_total}")
        lines.append(f"progression_level_changes_total {self._app.level_changes_total}")

        if self._app.event_bus:
            lines.append(f"progression_events_published_total {self._app.event_bus.published}")

        # ── Level distribution ───────────────────────────────
        try:
            distribution = await self._app.db.get_level_distribution()
            for level, count in distribution.items():
                lines.append(f'progression_level_distribution{{level="{level}"}} {count}')
        except Exception:
            self._app.logger.debug("Level distribution unavailable", exc_info=True)

        # ── Curve gauges ─────────────────────────────────────
        if self._app.level_engine:
            settings = self._app.level_engine.cache.settings
            if settings is not None:
                lines.append(f"progression_curve_base_jump {settings.base_jump:g}")
                lines.append(f"progression_curve_difficulty_pct {settings.difficulty_pct:g}")

        return lines

    async def _get_health_details(self) -> dict:
        """Return health details for the /health endpoint."""
        return {
            "database": "connected" if self._app.db else "disconnected",
            "event_bus": "running" if self._app.event_bus and self._app.event_bus.running else "stopped",
            "uptime_seconds": self._app.uptime_seconds,
        }
