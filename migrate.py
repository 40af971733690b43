"""Batch maintenance for restroom documents.

    python migrate.py amenities   # convert legacy amenity lists/mappings to vote entries
    python migrate.py ratings     # backfill the four-category rating aggregate
    python migrate.py ratings --force   # recompute restrooms that already have one
"""
import argparse
import logging
import sys
from dataclasses import dataclass
from typing import Any, Mapping, Optional

from amenities import AmenityFormat, detect_amenity_format, normalize_amenities, utcnow
from database import get_db, transaction
from ratings import recompute_ratings

logger = logging.getLogger(__name__)


@dataclass
class MigrationReport:
    migrated: int = 0
    skipped: int = 0
    errors: int = 0

    @property
    def total(self) -> int:
        return self.migrated + self.skipped + self.errors

    def summary(self) -> str:
        return (
            f"migrated={self.migrated} skipped={self.skipped} "
            f"errors={self.errors} total={self.total}"
        )


def migrate_amenities(db) -> MigrationReport:
    """Rewrite restrooms whose amenities are not yet in the vote-entry shape."""
    report = MigrationReport()
    for doc in db["restroom"].find({}, {"_id": 1, "name": 1}):
        try:
            with transaction(db) as session:
                current = db["restroom"].find_one({"_id": doc["_id"]}, session=session)
                if current is None:
                    report.skipped += 1
                    continue
                raw = current.get("amenities")
                if isinstance(raw, Mapping) and (
                    not raw or detect_amenity_format(raw) is AmenityFormat.CURRENT
                ):
                    report.skipped += 1
                    continue
                now = utcnow()
                db["restroom"].update_one(
                    {"_id": doc["_id"]},
                    {
                        "$set": {
                            "amenities": normalize_amenities(raw, now=now),
                            "confirmed_amenities": [],
                            "updated_at": now,
                        }
                    },
                    session=session,
                )
            report.migrated += 1
            logger.info("Migrated amenities for %s", doc.get("name", doc["_id"]))
        except Exception:
            report.errors += 1
            logger.exception("Failed to migrate amenities for %s", doc.get("name", doc["_id"]))
    return report


def _has_category_ratings(doc: Mapping[str, Any]) -> bool:
    ratings = doc.get("ratings")
    return isinstance(ratings, Mapping) and "cleanliness" in ratings


def migrate_ratings(db, force: bool = False) -> MigrationReport:
    """
    Backfill the four-category rating aggregate from review documents.

    Restrooms that already carry category ratings are skipped unless
    ``force`` is set. A restroom with no review documents keeps its legacy
    ``cleanliness`` score and ``reviews`` count.
    """
    report = MigrationReport()
    for doc in db["restroom"].find({}, {"_id": 1, "name": 1, "ratings": 1}):
        if not force and _has_category_ratings(doc):
            report.skipped += 1
            logger.info("Skipping %s (already migrated)", doc.get("name", doc["_id"]))
            continue
        try:
            aggregate = recompute_ratings(db, str(doc["_id"]), keep_legacy=True)
            report.migrated += 1
            logger.info(
                "Recomputed %s: %s over %d reviews",
                doc.get("name", doc["_id"]), aggregate["rating"], aggregate["review_count"],
            )
        except Exception:
            report.errors += 1
            logger.exception("Failed to recompute ratings for %s", doc.get("name", doc["_id"]))
    return report


COMMANDS = {
    "amenities": migrate_amenities,
    "ratings": migrate_ratings,
}


def main(argv: Optional[list] = None, db=None) -> int:
    parser = argparse.ArgumentParser(description="Maintenance migrations for restroom documents.")
    parser.add_argument("command", choices=sorted(COMMANDS), help="Migration to run")
    parser.add_argument(
        "--force",
        action="store_true",
        help="ratings: also recompute restrooms that already have category ratings",
    )
    parser.add_argument("--log-level", default="INFO", help="Logging level (default: INFO)")
    args = parser.parse_args(argv)

    logging.basicConfig(level=args.log_level, format="%(levelname)s %(name)s: %(message)s")

    db = db if db is not None else get_db()
    if db is None:
        print("Error: DATABASE_URL is not set", file=sys.stderr)
        return 1

    if args.command == "ratings":
        report = migrate_ratings(db, force=args.force)
    else:
        report = COMMANDS[args.command](db)
    print(f"{args.command}: {report.summary()}")
    return 1 if report.errors else 0


if __name__ == "__main__":
    sys.exit(main())
