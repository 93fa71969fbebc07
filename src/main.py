"""HealthSync diagnostics entry point.

Run locally:
    python -m src.main status
    python -m src.main stats --task-id health-sync-background
    python -m src.main compat Xiaomi
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys

from src.config import Settings, get_settings
from src.healthsync.config_loader import get_sync_config
from src.healthsync.engine import HealthSyncEngine

logger = logging.getLogger("healthsync")


def configure_logging(settings: Settings) -> None:
    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)-8s %(name)s — %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
        stream=sys.stderr,
    )


def _print(payload: object) -> None:
    print(json.dumps(payload, indent=2, sort_keys=True))


async def _status(settings: Settings) -> int:
    async with HealthSyncEngine.from_settings(settings) as engine:
        statuses = await engine.get_sync_status()
    _print({key: status.to_dict() for key, status in sorted(statuses.items())})
    return 0


async def _stats(settings: Settings, task_id: str | None) -> int:
    async with HealthSyncEngine.from_settings(settings) as engine:
        stats = await engine.get_stats(task_id or settings.background_task_id)
    _print(stats.to_dict())
    return 0


def _compat(settings: Settings, manufacturer: str | None) -> int:
    name = manufacturer or settings.device_manufacturer
    if not name:
        logger.error("No manufacturer given and HEALTHSYNC_DEVICE_MANUFACTURER is not set")
        return 2
    _print(get_sync_config().device_profiles.check_compatibility(name).to_dict())
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="healthsync", description="HealthSync diagnostics")
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("status", help="Show continuation-token status per data type")

    stats = sub.add_parser("stats", help="Show background execution statistics")
    stats.add_argument("--task-id", default=None, help="Background task id")

    compat = sub.add_parser("compat", help="Show background-sync compatibility for a manufacturer")
    compat.add_argument("manufacturer", nargs="?", default=None)
    return parser


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    settings = get_settings()
    configure_logging(settings)
    logger.debug("Starting %s v%s [%s]", settings.app_name, settings.app_version, settings.environment)

    if args.command == "status":
        return asyncio.run(_status(settings))
    if args.command == "stats":
        return asyncio.run(_stats(settings, args.task_id))
    return _compat(settings, args.manufacturer)


if __name__ == "__main__":
    sys.exit(main())
