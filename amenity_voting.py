"""Recording confirm/deny votes against a restroom's amenities."""
import logging
from datetime import datetime
from typing import Any, Dict, Optional

from pymongo.errors import DuplicateKeyError

from amenities import (
    DEFAULT_THRESHOLDS,
    AmenityThresholds,
    VoteValue,
    confirmed_amenity_ids,
    get_amenity,
    normalize_amenities,
    tally_vote,
    utcnow,
)
from database import as_object_id, transaction
from exceptions import DuplicateVoteError, LocationNotFoundError, ValidationError

logger = logging.getLogger(__name__)

RESTROOMS = "restroom"
VOTES = "amenity_vote"


def vote_key(restroom_id: str, user_id: str, amenity_id: str) -> Dict[str, str]:
    """Composite identity of a vote, used as the vote document's ``_id``."""
    return {"restroom_id": restroom_id, "user_id": user_id, "amenity_id": amenity_id}


def has_user_voted(db, restroom_id: str, amenity_id: str, user_id: str) -> bool:
    oid = as_object_id(restroom_id)
    if oid is None:
        return False
    key = vote_key(str(oid), user_id, amenity_id)
    return db[VOTES].find_one({"_id": key}) is not None


def apply_vote(
    db,
    restroom_id: str,
    amenity_id: str,
    user_id: str,
    vote: str,
    now: Optional[datetime] = None,
    thresholds: AmenityThresholds = DEFAULT_THRESHOLDS,
) -> Dict[str, Any]:
    """
    Record one user's vote on one amenity and return the amenity's new status entry.

    The duplicate check, the vote insert and the read-modify-write of the
    restroom's amenities map share a single transaction, so two concurrent
    votes on the same restroom cannot overwrite each other's counts.

    Raises:
        ValidationError: unknown amenity id or vote value.
        DuplicateVoteError: the user already voted on this amenity here.
        LocationNotFoundError: the restroom does not exist.
    """
    if get_amenity(amenity_id) is None:
        raise ValidationError(f"Unknown amenity: {amenity_id}")
    try:
        vote = VoteValue(vote)
    except ValueError:
        raise ValidationError("Vote must be 'confirm' or 'deny'") from None
    oid = as_object_id(restroom_id)
    if oid is None:
        raise LocationNotFoundError(restroom_id)
    # one canonical spelling so ids differing only in hex case share a vote key
    restroom_id = str(oid)

    now = now or utcnow()
    key = vote_key(restroom_id, user_id, amenity_id)

    with transaction(db) as session:
        if db[VOTES].find_one({"_id": key}, session=session) is not None:
            logger.warning("Duplicate vote by %s on %s/%s", user_id, restroom_id, amenity_id)
            raise DuplicateVoteError(restroom_id, amenity_id, user_id)

        restroom = db[RESTROOMS].find_one({"_id": oid}, session=session)
        if restroom is None:
            raise LocationNotFoundError(restroom_id)

        try:
            db[VOTES].insert_one(
                {"_id": key, **key, "vote": vote.value, "timestamp": now},
                session=session,
            )
        except DuplicateKeyError as exc:
            raise DuplicateVoteError(restroom_id, amenity_id, user_id) from exc

        amenities = dict(normalize_amenities(restroom.get("amenities"), now=now))
        entry = tally_vote(amenities.get(amenity_id), vote, now=now, thresholds=thresholds)
        amenities[amenity_id] = entry
        db[RESTROOMS].update_one(
            {"_id": oid},
            {
                "$set": {
                    "amenities": amenities,
                    "confirmed_amenities": confirmed_amenity_ids(amenities),
                    "updated_at": now,
                }
            },
            session=session,
        )

    logger.info(
        "Vote %s on %s/%s -> %s (%d%% of %d)",
        vote.value, restroom_id, amenity_id, entry["status"], entry["percentage"], entry["votes"],
    )
    return entry
