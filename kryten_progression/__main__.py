"""CLI entry point for kryten-progression."""
import argparse
import asyncio
import logging
import signal
import sys
from pathlib import Path

from .config import load_config
from .level_engine import build_thresholds_or_default
from .main import ProgressionApp
from .models import LevelSettings

CONFIG_SEARCH_PATHS = (
    "/etc/kryten/kryten-progression/config.yaml",
    "./config.yaml",
)


def setup_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Kryten Progression: levels, cosmetic unlocks and daily aura")
    parser.add_argument("--config", type=str, help="Path to config.yaml")
    parser.add_argument("--log-level", type=str, default="INFO", choices=["DEBUG", "INFO", "WARNING", "ERROR"])
    parser.add_argument("--validate-config", action="store_true", help="Validate config and exit without starting")
    parser.add_argument(
        "--thresholds", action="store_true",
        help="Print the level threshold table for the configured curve and exit",
    )
    return parser.parse_args(argv)


def resolve_config_path(explicit: str | None) -> str | None:
    """The explicit path, else the first existing default location."""
    if explicit:
        return explicit
    for candidate in CONFIG_SEARCH_PATHS:
        if Path(candidate).exists():
            return candidate
    return None


def format_threshold_table(base_jump: float, difficulty_pct: float, max_level: int = 99) -> list[str]:
    settings, table = build_thresholds_or_default(
        LevelSettings(base_jump, difficulty_pct), max_level, logging.getLogger("progression"),
    )
    lines = [f"# base_jump={settings.base_jump:g} difficulty_pct={settings.difficulty_pct:g}"]
    lines.extend(f"{t.level:>3}  {t.min_lifetime_points:>12,}" for t in table)
    return lines


async def main_async(argv: list[str] | None = None) -> None:
    args = parse_args(argv)
    setup_logging(args.log_level)
    logger = logging.getLogger("progression")

    config_path = resolve_config_path(args.config)
    if not config_path:
        logger.error("No config file found. Use --config or place config.yaml in CWD.")
        sys.exit(1)

    if args.validate_config or args.thresholds:
        try:
            config = load_config(config_path)
        except Exception as e:
            logger.error("Config validation failed: %s", e)
            sys.exit(1)
        if args.thresholds:
            levels = config.levels
            print("\n".join(format_threshold_table(levels.base_jump, levels.difficulty_pct, levels.max_level)))
        else:
            logger.info("Config is valid.")
        return

    app = ProgressionApp(config_path)

    # Signal handling (Unix only; Windows uses KeyboardInterrupt)
    loop = asyncio.get_running_loop()
    if sys.platform != "win32":
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, lambda: asyncio.ensure_future(app.stop()))

    try:
        await app.start()
    except KeyboardInterrupt:
        pass
    finally:
        await app.stop()


def main() -> None:
    """Sync entry point for pyproject.toml [project.scripts]."""
    asyncio.run(main_async())


if __name__ == "__main__":
    main()
