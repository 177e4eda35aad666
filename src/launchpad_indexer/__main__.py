"""Command-line entry point.

Exit status: 0 on a clean stop, 1 on a fatal indexer error or any other
unhandled failure, 2 on invalid configuration, 130 on keyboard interrupt.
"""

from __future__ import annotations

import argparse
import asyncio
import contextlib
import logging
import signal

from pydantic import ValidationError

from launchpad_indexer import __version__
from launchpad_indexer.config import Settings, get_settings
from launchpad_indexer.indexer.processor import FatalIndexerError
from launchpad_indexer.service import IndexerService
from launchpad_indexer.storage.database import DatabaseManager
from launchpad_indexer.storage.repos import CompetitionRepository, CursorRepository

logger = logging.getLogger("launchpad_indexer")

EXIT_OK = 0
EXIT_FATAL = 1
EXIT_CONFIG = 2
EXIT_INTERRUPTED = 130


def _parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="launchpad-indexer",
        description="Token launch protocol event indexer and competition scheduler",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument("--log-level", default=None, help="override LOG_LEVEL (DEBUG, INFO, ...)")

    sub = parser.add_subparsers(dest="command", required=True)
    sub.add_parser("run", help="index all sources; also schedule competitions if enabled")
    sub.add_parser("index", help="index all sources only")
    schedule = sub.add_parser("schedule", help="run the competition scheduler only")
    schedule.add_argument("--dry-run", action="store_true", help="log transactions instead of sending them")
    sub.add_parser("init-db", help="create all tables (use alembic for managed databases)")
    sub.add_parser("status", help="print the cursor and latest competition of every source")
    return parser.parse_args(argv)


def _configure_logging(settings: Settings | None, override: str | None) -> None:
    if override:
        level = getattr(logging, override.upper(), logging.INFO)
    else:
        level = settings.get_logging_level() if settings else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


async def _run_service(service: IndexerService) -> None:
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        with contextlib.suppress(NotImplementedError):
            loop.add_signal_handler(sig, service.request_stop)
    await service.run()


async def _init_db(settings: Settings) -> None:
    db = DatabaseManager.from_settings(settings.database)
    try:
        await db.init_schema_async()
    finally:
        await db.dispose_async()


async def _status(settings: Settings) -> None:
    db = DatabaseManager.from_settings(settings.database)
    try:
        async with db.get_async_session() as session:
            cursors = CursorRepository(session)
            competitions = CompetitionRepository(session)
            for source in settings.indexer.sources:
                cursor = await cursors.get(source.address)
                latest = await competitions.get_latest(source.address)
                print(
                    f"{source.address} "
                    f"last_indexed_block={cursor.last_indexed_block if cursor else '(not bootstrapped)'} "
                    f"competition={latest.competition_id if latest else '-'}"
                    f"{'' if latest is None else (' completed' if latest.is_completed else ' open')}"
                )
    finally:
        await db.dispose_async()


async def _amain(ns: argparse.Namespace, settings: Settings) -> None:
    if ns.command == "run":
        await _run_service(IndexerService(settings))
    elif ns.command == "index":
        await _run_service(IndexerService(settings, run_scheduler=False))
    elif ns.command == "schedule":
        await _run_service(
            IndexerService(
                settings,
                run_indexer=False,
                run_scheduler=True,
                dry_run=True if ns.dry_run else None,
            )
        )
    elif ns.command == "init-db":
        await _init_db(settings)
    elif ns.command == "status":
        await _status(settings)
    else:
        raise SystemExit(f"unknown command: {ns.command}")


def main(argv: list[str] | None = None) -> int:
    ns = _parse_args(argv)

    try:
        settings = get_settings()
        if getattr(ns, "dry_run", False):
            settings = settings.model_copy(update={"dry_run": True})
        settings.validate_requirements(command=ns.command)
    except (ValidationError, ValueError) as e:
        _configure_logging(None, ns.log_level)
        logger.critical("Invalid configuration: %s", e)
        return EXIT_CONFIG

    _configure_logging(settings, ns.log_level)
    logger.info("Configuration: %s", settings.redacted_summary())

    try:
        asyncio.run(_amain(ns, settings))
    except FatalIndexerError as e:
        logger.critical("Stopping on fatal error: %s", e)
        return EXIT_FATAL
    except KeyboardInterrupt:
        return EXIT_INTERRUPTED
    except Exception:
        logger.exception("Stopping on unexpected error")
        return EXIT_FATAL
    return EXIT_OK


if __name__ == "__main__":
    raise SystemExit(main())
