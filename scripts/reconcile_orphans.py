"""Find and remove attribute values whose entity instance no longer exists.

The delete triggers keep values in step with entity rows; this sweep repairs
rows left behind while a trigger was missing or disabled:

    uv run python scripts/reconcile_orphans.py --dry-run
    uv run python scripts/reconcile_orphans.py --entity-type contact --entity-type sale

Reads DATABASE_URL from the environment (or .env).
"""
import argparse
import asyncio
import logging
import sys
from pathlib import Path

# Resolve project root so imports work when run from any cwd
_ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(_ROOT))

from db.connection import dispose_engine, get_db
from db.models import ENTITY_TYPES
import db.repositories.consistency as consistency_repo

logging.basicConfig(level=logging.INFO, format="%(levelname)s %(message)s")
logger = logging.getLogger(__name__)


def _build_arg_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Reconcile orphaned custom attribute values",
    )
    parser.add_argument(
        "--entity-type",
        action="append",
        choices=ENTITY_TYPES,
        dest="entity_types",
        help="Limit the sweep to one entity type (repeatable; default: all)",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Report orphan counts without deleting anything",
    )
    return parser


async def main(entity_types=None, dry_run: bool = False) -> int:
    try:
        async with get_db() as db:
            counts = await consistency_repo.reconcile_orphans(
                db, entity_types, dry_run=dry_run
            )
    finally:
        await dispose_engine()

    verb = "found" if dry_run else "removed"
    for entity_type, count in counts.items():
        logger.info("  %s: %d orphaned value(s) %s", entity_type, count, verb)
    total = sum(counts.values())
    logger.info("Done. Total orphaned values %s: %d", verb, total)
    return total


if __name__ == "__main__":
    args = _build_arg_parser().parse_args()
    asyncio.run(main(args.entity_types, dry_run=args.dry_run))
