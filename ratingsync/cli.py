"""Command line entry point.

Usage:
    ratingsync populate [--max-pages N] [--batch-size N] [--delay S]
                        [--clear-first] [--no-cache] [--dry-run] [--validate-after]
    ratingsync audit
    ratingsync repair [--apply]

Exit status is 0 when the run completed and the store is healthy, 1 when
the run aborted or the store is critical.
"""

from __future__ import annotations

import asyncio
import json
import sys
from argparse import ArgumentParser, Namespace
from typing import Any, Sequence

from ratingsync import __version__
from ratingsync.cache.client import close_valkey_client, connect_distributed_backend
from ratingsync.cache.layer import CacheLayer
from ratingsync.core.config import settings
from ratingsync.core.logging import get_logger, setup_logging
from ratingsync.database.connection import (
    close_sqlalchemy_engine,
    create_all,
    get_session_factory,
    init_sqlalchemy_engine,
)
from ratingsync.domain.models import Severity
from ratingsync.ingestion.coordinator import (
    IngestionCoordinator,
    PopulationConfig,
    PopulationState,
)
from ratingsync.ingestion.provider import StockApiProvider
from ratingsync.services.integrity_auditor import IntegrityAuditor
from ratingsync.services.repair_engine import RepairEngine


logger = get_logger("cli")


def build_parser() -> ArgumentParser:
    parser = ArgumentParser(prog="ratingsync", description="Stock rating ingestion and integrity tools")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument("--database-url", help="Override DATABASE_URL")
    commands = parser.add_subparsers(dest="command", required=True)

    populate = commands.add_parser("populate", help="Ingest ratings from the upstream API")
    populate.add_argument("--max-pages", type=int, help="Stop after N pages (0 = unlimited)")
    populate.add_argument("--batch-size", type=int, help="Items per transaction")
    populate.add_argument("--delay", type=float, help="Seconds to wait between page fetches")
    populate.add_argument("--clear-first", action="store_true", help="Delete existing data first")
    populate.add_argument("--no-cache", action="store_true", help="Bypass the cache")
    populate.add_argument("--dry-run", action="store_true", help="Resolve everything, commit nothing")
    populate.add_argument("--validate-after", action="store_true", help="Audit (and repair) afterwards")

    commands.add_parser("audit", help="Run a full integrity audit")

    repair = commands.add_parser("repair", help="Repair integrity issues (dry run by default)")
    repair.add_argument("--apply", action="store_true", help="Write the repairs")
    return parser


def _print(payload: dict[str, Any]) -> None:
    print(json.dumps(payload, indent=2, default=str))


async def _open_cache(enabled: bool = True) -> CacheLayer | None:
    if not enabled:
        return None
    cache = CacheLayer(distributed=await connect_distributed_backend())
    await cache.start()
    return cache


async def cmd_populate(args: Namespace) -> int:
    config = PopulationConfig.from_settings(
        max_pages=args.max_pages,
        batch_size=args.batch_size,
        delay_between=args.delay,
        clear_first=args.clear_first,
        use_cache=not args.no_cache,
        dry_run=args.dry_run,
        validate_after=args.validate_after,
    )
    cache = await _open_cache(config.use_cache)
    try:
        async with StockApiProvider() as provider:
            coordinator = IngestionCoordinator(provider, await get_session_factory(), cache=cache)
            result = await coordinator.run(config)
    finally:
        if cache is not None:
            await cache.stop()

    _print(result.to_dict())
    if result.state is not PopulationState.COMPLETED:
        return 1
    final = result.post_repair_report or result.integrity_report
    if final is not None and final.status is Severity.CRITICAL:
        return 1
    return 0


async def cmd_audit(args: Namespace) -> int:
    report = await IntegrityAuditor(await get_session_factory()).audit()
    _print(report.model_dump(mode="json"))
    return 1 if report.status is Severity.CRITICAL else 0


async def cmd_repair(args: Namespace) -> int:
    cache = await _open_cache()
    try:
        engine = RepairEngine(await get_session_factory(), cache=cache)
        report = await engine.repair(dry_run=not args.apply)
    finally:
        if cache is not None:
            await cache.stop()
    _print(report.model_dump(mode="json"))
    return 1 if report.status is Severity.CRITICAL else 0


COMMANDS = {
    "populate": cmd_populate,
    "audit": cmd_audit,
    "repair": cmd_repair,
}


async def run(args: Namespace) -> int:
    await init_sqlalchemy_engine(args.database_url)
    try:
        await create_all()
        return await COMMANDS[args.command](args)
    finally:
        await close_valkey_client()
        await close_sqlalchemy_engine()


def main(argv: Sequence[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    setup_logging()
    logger.info(f"{settings.app_name} {__version__} ({settings.environment}): {args.command}")
    return asyncio.run(run(args))


if __name__ == "__main__":
    sys.exit(main())
