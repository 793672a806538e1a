"""
Command-line maintenance entry point.

Usage:
    # One consolidation cycle against the configured backends
    associative-memory consolidate

    # Run a cycle every 6 hours until interrupted
    associative-memory consolidate --interval 6

    # Entry and association counts
    associative-memory stats
"""

import argparse
import asyncio
import json
import logging
import sys

from .config import Settings
from .engine import MemoryEngine, create_memory_engine

logger = logging.getLogger(__name__)


async def run_consolidation(engine: MemoryEngine, interval_hours: float | None = None, max_cycles: int | None = None) -> int:
    """
    Run consolidation once, or every *interval_hours* until cancelled.

    Returns:
        Number of cycles that reported errors
    """
    cycles = 0
    failed = 0
    while True:
        result = await engine.consolidation.consolidate()
        cycles += 1
        if not result.success:
            failed += 1
            logger.warning(f"Consolidation cycle {cycles} finished with errors: {result.errors}")
        print(json.dumps(result.to_dict()))

        if interval_hours is None or (max_cycles is not None and cycles >= max_cycles):
            return failed
        logger.info(f"Next consolidation in {interval_hours:.1f}h")
        await asyncio.sleep(interval_hours * 3600)


async def show_stats(engine: MemoryEngine) -> dict:
    stats = {
        "entries": await engine.storage.count_entries(),
        "associations": await engine.associations.count_associations(),
        "storage_backend": engine.settings.storage_backend,
        "graph": "falkordb" if engine.settings.graph.enabled else "in-process",
    }
    print(json.dumps(stats))
    return stats


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="associative-memory", description="Associative memory engine maintenance")
    parser.add_argument("--log-level", default=None, help="Override MEM_LOG_LEVEL")
    sub = parser.add_subparsers(dest="command", required=True)

    consolidate = sub.add_parser("consolidate", help="Persist decay, prune, merge duplicates, clean associations")
    consolidate.add_argument(
        "--interval",
        type=float,
        default=None,
        metavar="HOURS",
        help="Repeat every HOURS hours instead of running once",
    )

    sub.add_parser("stats", help="Print entry and association counts")
    return parser


async def _run(args: argparse.Namespace, settings: Settings) -> int:
    engine = await create_memory_engine(settings)
    try:
        if args.command == "consolidate":
            failed = await run_consolidation(engine, interval_hours=args.interval)
            return 1 if failed else 0
        await show_stats(engine)
        return 0
    finally:
        await engine.close()


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    settings = Settings()
    logging.basicConfig(
        level=(args.log_level or settings.log_level).upper(),
        format="%(asctime)s - %(levelname)s - %(name)s - %(message)s",
    )
    if getattr(args, "interval", None) is not None and args.interval <= 0:
        parser.error("--interval must be positive")

    try:
        return asyncio.run(_run(args, settings))
    except KeyboardInterrupt:
        logger.info("Interrupted")
        return 130


if __name__ == "__main__":
    sys.exit(main())
