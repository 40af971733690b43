"""
Four-category restroom ratings.

A review scores cleanliness, supplies, accessibility and wait time from 1 to 5.
Restroom aggregates are maintained two ways:

* ``apply_review_incremental`` folds a new review into the running overall and
  cleanliness averages inside the transaction that stores the review
  (rounded to 1 decimal).
* ``recompute_ratings`` rescans every review of the restroom and rewrites all
  category averages (rounded to 2 decimals). It is the source of truth and is
  run after deletions and by the maintenance CLI.
"""
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple

from bson import ObjectId
from pymongo import DESCENDING, ReturnDocument

from amenities import utcnow
from database import as_object_id, transaction
from exceptions import (
    LocationNotFoundError,
    PermissionDeniedError,
    ReviewNotFoundError,
    ValidationError,
)
from numeric import average, round_half_up
from schemas import Review

logger = logging.getLogger(__name__)

RESTROOMS = "restroom"
REVIEWS = "review"

ANONYMOUS_USER_ID = "anonymous"
ANONYMOUS_USER_NAME = "Anonymous User"

INCREMENTAL_PRECISION = 1
RECOMPUTE_PRECISION = 2


@dataclass(frozen=True)
class RatingCategory:
    key: str
    label: str
    emoji: str
    description: str
    levels: Tuple[str, str, str, str, str]
    hint: Optional[str] = None


RATING_CATEGORIES: List[RatingCategory] = [
    RatingCategory(
        "cleanliness", "Cleanliness", "🧼", "How clean was it?",
        ("Disaster Zone 🤢", "Pretty Gross 😬", "Could Be Better 😐", "Pretty Clean 😊", "Spotless 🏆"),
    ),
    RatingCategory(
        "supplies", "Supplies", "🧻", "Were supplies stocked?",
        ("Barren 😭", "Low Stock 😟", "Adequate 👍", "Well Stocked 😄", "Fully Loaded 🎯"),
        hint="Toilet paper, soap, towels",
    ),
    RatingCategory(
        "accessibility", "Accessibility", "🚪", "How easy to find?",
        ("Lost Forever 😤", "Confusing 😕", "Average 🤷", "Easy to Find 😊", "Can't Miss It 🎯"),
        hint="Signage, entrance, location",
    ),
    RatingCategory(
        "wait_time", "Wait Time", "⏱️", "How long did you wait?",
        ("Forever 😫", "Long Wait 😓", "Moderate ⏳", "Quick 😊", "No Wait! 🚀"),
        hint="Line length, availability",
    ),
]

CATEGORY_KEYS = tuple(c.key for c in RATING_CATEGORIES)


def get_rating_category(key: str) -> Optional[RatingCategory]:
    return next((c for c in RATING_CATEGORIES if c.key == key), None)


def get_rating_label(key: str, value: int) -> str:
    category = get_rating_category(key)
    if category is None or not isinstance(value, int) or not 1 <= value <= 5:
        return ""
    return category.levels[value - 1]


def empty_ratings() -> Dict[str, float]:
    return {key: 0 for key in CATEGORY_KEYS}


# -------------------- Per-review helpers --------------------

def category_values(ratings: Optional[Mapping[str, Any]]) -> Dict[str, Optional[int]]:
    """Map each category to its score, or None when it was not rated (missing or 0)."""
    ratings = ratings or {}
    values = {}
    for key in CATEGORY_KEYS:
        value = ratings.get(key)
        values[key] = value if value else None
    return values


def count_filled_ratings(ratings: Optional[Mapping[str, Any]]) -> int:
    return sum(1 for v in category_values(ratings).values() if v is not None)


def has_all_ratings(ratings: Optional[Mapping[str, Any]]) -> bool:
    return count_filled_ratings(ratings) == len(CATEGORY_KEYS)


def calculate_average_rating(ratings: Optional[Mapping[str, Any]]) -> float:
    """Mean of the rated categories, rounded to 1 decimal; 0 when nothing is rated."""
    present = [v for v in category_values(ratings).values() if v is not None]
    if not present:
        return 0.0
    return round_half_up(average(present), 1)


def validate_review_ratings(ratings: Optional[Mapping[str, Any]]) -> Dict[str, int]:
    values = category_values(ratings)
    if any(v is None for v in values.values()):
        raise ValidationError("All 4 ratings are required")
    for key, value in values.items():
        if not isinstance(value, int) or isinstance(value, bool) or not 1 <= value <= 5:
            raise ValidationError(f"Rating for {key} must be between 1 and 5")
    return values


# -------------------- Incremental path --------------------

def _restroom_oid(restroom_id: str) -> ObjectId:
    oid = as_object_id(restroom_id)
    if oid is None:
        raise LocationNotFoundError(restroom_id)
    return oid


def _previous_review_count(restroom: Mapping[str, Any]) -> int:
    # Restrooms written before review_count existed kept the count in "reviews".
    count = restroom.get("review_count")
    if count is None:
        count = restroom.get("reviews")
    return count if isinstance(count, int) else 0


def apply_review_incremental(
    db,
    restroom_id: str,
    review: Mapping[str, Any],
    now: Optional[datetime] = None,
) -> Tuple[str, Dict[str, Any]]:
    """
    Store ``review`` and fold it into the restroom's running averages.

    ``review["average_rating"]`` must already be the review's own mean; only
    the overall rating and the cleanliness average are updated here. Returns
    the new review id and the updated aggregate fields.
    """
    oid = _restroom_oid(restroom_id)
    now = now or utcnow()

    with transaction(db) as session:
        restroom = db[RESTROOMS].find_one({"_id": oid}, session=session)
        if restroom is None:
            raise LocationNotFoundError(restroom_id)

        previous_count = _previous_review_count(restroom)
        previous_overall = restroom.get("rating") or 0
        previous_cleanliness = restroom.get("cleanliness") or 0

        new_count = previous_count + 1
        new_overall = (previous_overall * previous_count + review["average_rating"]) / new_count
        new_cleanliness = (
            previous_cleanliness * previous_count + review["ratings"]["cleanliness"]
        ) / new_count

        doc = dict(review)
        doc["restroom_id"] = str(oid)
        doc.setdefault("created_at", now)
        result = db[REVIEWS].insert_one(doc, session=session)

        aggregate = {
            "rating": round_half_up(new_overall, INCREMENTAL_PRECISION),
            "cleanliness": round_half_up(new_cleanliness, INCREMENTAL_PRECISION),
            "review_count": new_count,
        }
        db[RESTROOMS].update_one(
            {"_id": oid},
            {"$set": {**aggregate, "updated_at": now}},
            session=session,
        )

    logger.info(
        "Review %s added to %s: rating %.1f over %d reviews",
        result.inserted_id, restroom_id, aggregate["rating"], new_count,
    )
    return str(result.inserted_id), aggregate


def validate_and_submit_review(
    db,
    review_input,
    user_id: Optional[str] = None,
    user_name: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    """
    Validate a review submission and store it through the incremental path.

    ``review_input`` is a ``schemas.ReviewCreate`` (or a mapping of the same
    shape). Nothing is written when a rating is missing or out of range.
    """
    data = review_input.model_dump() if hasattr(review_input, "model_dump") else dict(review_input)
    ratings = validate_review_ratings(data.get("ratings"))
    restroom_id = str(_restroom_oid(data["restroom_id"]))

    review = Review(
        restroom_id=restroom_id,
        restroom_name=data.get("restroom_name") or "",
        user_id=user_id or ANONYMOUS_USER_ID,
        user_name=user_name or ANONYMOUS_USER_NAME,
        ratings=ratings,
        average_rating=calculate_average_rating(ratings),
        review_text=data.get("review_text") or "",
    ).model_dump()
    review_id, _ = apply_review_incremental(db, restroom_id, review, now=now)
    return {"success": True, "review_id": review_id}


# -------------------- Full recompute path --------------------

def aggregate_reviews(reviews: Iterable[Mapping[str, Any]]) -> Dict[str, Any]:
    """
    Category averages, overall rating and count over a complete review set.

    Each category is averaged over the reviews that rated it. Reviews from
    before the four-category form only carry a top-level ``cleanliness``.
    """
    totals = {key: 0 for key in CATEGORY_KEYS}
    counts = {key: 0 for key in CATEGORY_KEYS}
    review_count = 0

    for review in reviews:
        review_count += 1
        if isinstance(review.get("ratings"), Mapping):
            for key, value in category_values(review["ratings"]).items():
                if value is not None and value > 0:
                    totals[key] += value
                    counts[key] += 1
        elif review.get("cleanliness"):
            totals["cleanliness"] += review["cleanliness"]
            counts["cleanliness"] += 1

    if review_count == 0:
        return {"ratings": empty_ratings(), "rating": 0, "review_count": 0}

    averages = {
        key: totals[key] / counts[key] if counts[key] else 0.0
        for key in CATEGORY_KEYS
    }
    overall = average(v for v in averages.values() if v > 0)
    return {
        "ratings": {
            key: round_half_up(value, RECOMPUTE_PRECISION)
            for key, value in averages.items()
        },
        "rating": round_half_up(overall, RECOMPUTE_PRECISION),
        "review_count": review_count,
    }


def carry_legacy_ratings(aggregate: Mapping[str, Any], restroom: Mapping[str, Any]) -> Dict[str, Any]:
    """
    Fill an aggregate computed over no reviews from the restroom's old fields.

    Restrooms rated before reviews were stored one per document only have a
    top-level ``cleanliness`` score and a ``reviews`` count.
    """
    carried = {**aggregate, "ratings": dict(aggregate["ratings"])}
    if aggregate["review_count"]:
        return carried
    cleanliness = restroom.get("cleanliness") or 0
    if cleanliness > 0:
        carried["ratings"]["cleanliness"] = cleanliness
        carried["rating"] = cleanliness
    carried["review_count"] = _previous_review_count(restroom)
    return carried


def _recompute_in_session(
    db,
    oid: ObjectId,
    session,
    now: datetime,
    legacy: Optional[Mapping[str, Any]] = None,
) -> Dict[str, Any]:
    reviews = db[REVIEWS].find({"restroom_id": str(oid)}, session=session)
    aggregate = aggregate_reviews(reviews)
    if legacy is not None:
        aggregate = carry_legacy_ratings(aggregate, legacy)
    db[RESTROOMS].update_one(
        {"_id": oid},
        {
            "$set": {
                **aggregate,
                # keep the field read by the incremental path in step
                "cleanliness": aggregate["ratings"]["cleanliness"],
                "updated_at": now,
            }
        },
        session=session,
    )
    return aggregate


def recompute_ratings(
    db,
    restroom_id: str,
    now: Optional[datetime] = None,
    keep_legacy: bool = False,
) -> Dict[str, Any]:
    """
    Rebuild a restroom's rating aggregate from all of its reviews.

    With ``keep_legacy`` a restroom that has no review documents keeps its
    old ``cleanliness`` score and ``reviews`` count instead of being zeroed.
    """
    oid = _restroom_oid(restroom_id)
    now = now or utcnow()
    with transaction(db) as session:
        restroom = db[RESTROOMS].find_one({"_id": oid}, session=session)
        if restroom is None:
            raise LocationNotFoundError(restroom_id)
        aggregate = _recompute_in_session(
            db, oid, session, now, legacy=restroom if keep_legacy else None
        )
    logger.info(
        "Recomputed ratings for %s: %s over %d reviews",
        restroom_id, aggregate["rating"], aggregate["review_count"],
    )
    return aggregate


# -------------------- Review maintenance --------------------

def fetch_reviews(db, restroom_id: str, limit: int = 10) -> List[Dict[str, Any]]:
    oid = as_object_id(restroom_id)
    if oid is None:
        return []
    cursor = db[REVIEWS].find({"restroom_id": str(oid)}).sort("created_at", DESCENDING)
    if limit:
        cursor = cursor.limit(limit)
    return list(cursor)


def delete_review(
    db,
    review_id: str,
    user_id: str,
    is_admin: bool = False,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    """Delete a review and recompute its restroom's ratings in the same transaction."""
    oid = as_object_id(review_id)
    if oid is None:
        raise ReviewNotFoundError(review_id)
    now = now or utcnow()

    with transaction(db) as session:
        review = db[REVIEWS].find_one({"_id": oid}, session=session)
        if review is None:
            raise ReviewNotFoundError(review_id)
        if not is_admin and str(review.get("user_id")) != str(user_id):
            raise PermissionDeniedError()
        db[REVIEWS].delete_one({"_id": oid}, session=session)

        restroom_id = review.get("restroom_id")
        restroom_oid = as_object_id(restroom_id)
        aggregate = None
        if restroom_oid is not None and db[RESTROOMS].find_one(
            {"_id": restroom_oid}, {"_id": 1}, session=session
        ) is not None:
            aggregate = _recompute_in_session(db, restroom_oid, session, now)

    logger.info("Review %s deleted from %s", review_id, restroom_id)
    return {"restroom_id": restroom_id, "aggregate": aggregate}


def mark_review_helpful(db, review_id: str) -> int:
    oid = as_object_id(review_id)
    if oid is None:
        raise ReviewNotFoundError(review_id)
    doc = db[REVIEWS].find_one_and_update(
        {"_id": oid},
        {"$inc": {"helpful": 1}},
        return_document=ReturnDocument.AFTER,
    )
    if doc is None:
        raise ReviewNotFoundError(review_id)
    return doc["helpful"]
