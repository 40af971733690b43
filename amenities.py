"""
Amenity catalog and the crowd-verification rules built on top of it.

Each restroom document carries an ``amenities`` mapping of amenity id to a
status entry (vote counts, confirm percentage, derived status) and a
``confirmed_amenities`` list of the ids currently confirmed. Everything in
this module is pure; the database side lives in ``amenity_voting``.
"""
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Iterable, List, Mapping, Optional

from numeric import percentage


class AmenityStatus(str, Enum):
    UNVERIFIED = "unverified"
    CONFIRMED = "confirmed"
    DISPUTED = "disputed"
    REMOVED = "removed"


class VoteValue(str, Enum):
    CONFIRM = "confirm"
    DENY = "deny"


@dataclass(frozen=True)
class AmenityThresholds:
    min_votes_required: int = 5
    confirm_percentage: float = 60
    remove_percentage: float = 40


DEFAULT_THRESHOLDS = AmenityThresholds()


@dataclass(frozen=True)
class Amenity:
    id: str
    name: str
    emoji: str
    category: str
    priority: int
    description: str


_CATALOG = [
    Amenity("toilet_paper", "Toilet Paper", "🧻", "essentials", 1, "Has toilet paper stocked"),
    Amenity("soap", "Soap", "🧼", "essentials", 2, "Has hand soap available"),
    Amenity("wheelchair_accessible", "Wheelchair Accessible", "♿", "accessibility", 3,
            "ADA compliant, wheelchair accessible"),
    Amenity("changing_table", "Changing Table", "🚼", "family", 4, "Has baby changing table"),
    Amenity("privacy_lock", "Working Lock", "🔒", "essentials", 5, "Door has working lock"),
    Amenity("paper_towels", "Paper Towels", "🧴", "hygiene", 6, "Paper towels for hand drying"),
    Amenity("hand_dryer", "Hand Dryer", "💨", "hygiene", 7, "Electric hand dryer available"),
    Amenity("multiple_stalls", "Multiple Stalls", "🚽", "capacity", 8, "2+ stalls available"),
    Amenity("gender_neutral", "Gender Neutral", "🚻", "accessibility", 9,
            "Gender neutral/all-gender restroom"),
    Amenity("regularly_cleaned", "Regularly Cleaned", "🧽", "cleanliness", 10,
            "Shows signs of regular cleaning"),
    Amenity("mirror", "Mirror", "🪞", "convenience", 11, "Has mirror for grooming"),
    Amenity("single_occupancy", "Single Occupancy", "🚪", "privacy", 12,
            "Private single-person restroom"),
    Amenity("family_restroom", "Family Restroom", "👨‍👩‍👧", "family", 13, "Dedicated family restroom"),
    Amenity("key_code_required", "Key/Code Required", "🔑", "access", 14,
            "Requires key or access code"),
    Amenity("hand_sanitizer", "Hand Sanitizer", "🧴", "hygiene", 15, "Hand sanitizer available"),
    Amenity("trash_can", "Trash Can", "🗑️", "cleanliness", 16, "Has trash receptacle"),
    Amenity("coat_hook", "Coat Hook", "🪝", "convenience", 17, "Hook for coats/bags"),
    Amenity("baby_seat", "Baby Seat", "💺", "family", 18, "Baby seat/holder available"),
    Amenity("phone_shelf", "Phone Shelf", "📱", "convenience", 19, "Shelf for phone/belongings"),
    Amenity("climate_controlled", "Climate Controlled", "🌡️", "comfort", 20, "Heated/cooled restroom"),
    Amenity("sound_masking", "Sound Masking", "🎵", "privacy", 21, "Music or white noise"),
    Amenity("bidet", "Bidet", "🚿", "luxury", 22, "Bidet available"),
    Amenity("outlets", "Power Outlets", "⚡", "convenience", 23, "Electrical outlets available"),
    Amenity("good_lighting", "Good Lighting", "💡", "safety", 24, "Well-lit interior"),
    Amenity("free_access", "Free (No Purchase)", "🆓", "access", 25, "No purchase required"),
]

AMENITIES: Dict[str, Amenity] = {a.id: a for a in _CATALOG}

# Ids used by restrooms created before the current catalog existed.
LEGACY_AMENITY_IDS = {
    "accessible": "wheelchair_accessible",
    "family": "family_restroom",
    "family_room": "family_restroom",
    "sinks": "soap",
    "toilets": "toilet_paper",
    "urinals": "multiple_stalls",
    "single_stall": "single_occupancy",
}


def get_all_amenities() -> List[Amenity]:
    return sorted(AMENITIES.values(), key=lambda a: a.priority)


def get_top_amenities(count: int = 5) -> List[Amenity]:
    return get_all_amenities()[:count]


def get_amenities_by_category(category: str) -> List[Amenity]:
    return [a for a in get_all_amenities() if a.category == category]


def get_amenity(amenity_id: str) -> Optional[Amenity]:
    return AMENITIES.get(amenity_id)


def map_legacy_amenity_id(amenity_id: str) -> str:
    return LEGACY_AMENITY_IDS.get(amenity_id, amenity_id)


# -------------------- Status rule --------------------

def derive_status(
    confirm_votes: int,
    deny_votes: int,
    thresholds: AmenityThresholds = DEFAULT_THRESHOLDS,
) -> AmenityStatus:
    """Consensus status for an amenity, from its vote counts alone."""
    total = confirm_votes + deny_votes
    if total < thresholds.min_votes_required:
        return AmenityStatus.UNVERIFIED
    confirmed_share = confirm_votes / total * 100
    if confirmed_share >= thresholds.confirm_percentage:
        return AmenityStatus.CONFIRMED
    if confirmed_share < thresholds.remove_percentage:
        return AmenityStatus.REMOVED
    return AmenityStatus.DISPUTED


# -------------------- Status entries --------------------

def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_status_entry(
    confirm_votes: int = 0,
    deny_votes: int = 0,
    now: Optional[datetime] = None,
    thresholds: AmenityThresholds = DEFAULT_THRESHOLDS,
) -> Dict[str, Any]:
    votes = confirm_votes + deny_votes
    return {
        "votes": votes,
        "confirm_votes": confirm_votes,
        "deny_votes": deny_votes,
        "percentage": percentage(confirm_votes, votes),
        "status": derive_status(confirm_votes, deny_votes, thresholds).value,
        "last_updated": now or utcnow(),
    }


def tally_vote(
    entry: Optional[Mapping[str, Any]],
    vote: VoteValue,
    now: Optional[datetime] = None,
    thresholds: AmenityThresholds = DEFAULT_THRESHOLDS,
) -> Dict[str, Any]:
    """Return a copy of ``entry`` with one more vote counted."""
    updated = dict(entry) if entry else new_status_entry(now=now, thresholds=thresholds)
    updated["votes"] = updated.get("votes", 0) + 1
    if VoteValue(vote) is VoteValue.CONFIRM:
        updated["confirm_votes"] = updated.get("confirm_votes", 0) + 1
    else:
        updated["deny_votes"] = updated.get("deny_votes", 0) + 1
    updated["percentage"] = percentage(updated["confirm_votes"], updated["votes"])
    updated["status"] = derive_status(
        updated["confirm_votes"], updated["deny_votes"], thresholds
    ).value
    updated["last_updated"] = now or utcnow()
    return updated


def confirmed_amenity_ids(amenities: Mapping[str, Mapping[str, Any]]) -> List[str]:
    return [
        amenity_id
        for amenity_id, entry in amenities.items()
        if entry.get("status") == AmenityStatus.CONFIRMED.value
    ]


def initialize_restroom_amenities(
    selected_amenity_ids: Iterable[str],
    now: Optional[datetime] = None,
    thresholds: AmenityThresholds = DEFAULT_THRESHOLDS,
) -> Dict[str, Any]:
    """
    Amenity fields for a newly submitted restroom.

    The submitter's selection counts as one confirm vote per amenity, which
    stays ``unverified`` until enough other people weigh in under the
    default thresholds.
    """
    amenities = {
        amenity_id: new_status_entry(confirm_votes=1, now=now, thresholds=thresholds)
        for amenity_id in selected_amenity_ids
    }
    return {"amenities": amenities, "confirmed_amenities": confirmed_amenity_ids(amenities)}


# -------------------- Legacy formats --------------------

class AmenityFormat(str, Enum):
    LEGACY_LIST = "legacy_list"
    LEGACY_MAPPING = "legacy_mapping"
    CURRENT = "current"


def detect_amenity_format(raw: Any) -> AmenityFormat:
    """
    Classify a stored ``amenities`` value.

    The oldest restrooms hold a plain list of ids, a later revision held a
    mapping of ids to flags, and the current shape maps ids to vote entries.
    """
    if raw is None or isinstance(raw, (list, tuple)):
        return AmenityFormat.LEGACY_LIST
    if not isinstance(raw, Mapping):
        raise TypeError(f"Unsupported amenities value: {type(raw).__name__}")
    first = next(iter(raw.values()), None)
    if isinstance(first, Mapping) and "votes" in first:
        return AmenityFormat.CURRENT
    return AmenityFormat.LEGACY_MAPPING


def normalize_amenities(raw: Any, now: Optional[datetime] = None) -> Dict[str, Any]:
    """Convert any stored amenities shape into the current vote-entry mapping."""
    fmt = detect_amenity_format(raw)
    if fmt is AmenityFormat.CURRENT:
        return raw
    if fmt is AmenityFormat.LEGACY_LIST:
        amenity_ids = list(raw or [])
    else:
        amenity_ids = list(raw.keys())
    now = now or utcnow()
    return {map_legacy_amenity_id(a): new_status_entry(now=now) for a in amenity_ids}
