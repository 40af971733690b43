"""Tests for review validation and both rating aggregation paths."""
from datetime import datetime, timedelta, timezone

import pytest
from bson import ObjectId

from exceptions import (
    LocationNotFoundError,
    PermissionDeniedError,
    ReviewNotFoundError,
    ValidationError,
)
from numeric import average, percentage, round_half_up
from ratings import (
    aggregate_reviews,
    apply_review_incremental,
    calculate_average_rating,
    count_filled_ratings,
    delete_review,
    fetch_reviews,
    get_rating_label,
    has_all_ratings,
    mark_review_helpful,
    recompute_ratings,
    validate_and_submit_review,
    validate_review_ratings,
)
from schemas import ReviewCreate

NOW = datetime(2025, 6, 1, 12, 0, tzinfo=timezone.utc)


def _ratings(cleanliness, supplies, accessibility, wait_time):
    return {
        "cleanliness": cleanliness,
        "supplies": supplies,
        "accessibility": accessibility,
        "wait_time": wait_time,
    }


def _restroom(db, restroom_id):
    return db["restroom"].find_one({"_id": ObjectId(restroom_id)})


def _submit(db, restroom_id, ratings, user_id=None, **kwargs):
    return validate_and_submit_review(
        db, {"restroom_id": restroom_id, "ratings": ratings}, user_id=user_id, **kwargs
    )


class TestHelpers:
    def test_round_half_up(self):
        assert round_half_up(2.25, 1) == 2.3
        assert round_half_up(2.5) == 3
        assert round_half_up(3.14159, 2) == 3.14

    def test_average_and_percentage(self):
        assert average([]) == 0.0
        assert average([1, 2, 3, 4]) == 2.5
        assert percentage(0, 0) == 0
        assert percentage(2, 3) == 67

    def test_calculate_average_rating_skips_unrated(self):
        assert calculate_average_rating(_ratings(4, 0, 3, 5)) == 4.0
        assert calculate_average_rating(_ratings(5, 4, 4, 4)) == 4.3
        assert calculate_average_rating(None) == 0.0

    def test_filled_ratings(self):
        assert count_filled_ratings(_ratings(4, 0, 3, None)) == 2
        assert has_all_ratings(_ratings(1, 2, 3, 4))
        assert not has_all_ratings({"cleanliness": 5})

    def test_rating_labels(self):
        assert get_rating_label("cleanliness", 5) == "Spotless 🏆"
        assert get_rating_label("wait_time", 1) == "Forever 😫"
        assert get_rating_label("wait_time", 0) == ""
        assert get_rating_label("smell", 3) == ""


class TestValidation:
    def test_missing_category_rejected_before_write(self, db, restroom_id):
        with pytest.raises(ValidationError, match="All 4 ratings are required"):
            _submit(db, restroom_id, _ratings(4, 0, 3, 5))
        assert db["review"].count_documents({}) == 0
        assert "review_count" not in _restroom(db, restroom_id)

    def test_missing_category_from_schema_input(self, db, restroom_id):
        payload = ReviewCreate(restroom_id=restroom_id, ratings=_ratings(4, 0, 3, 5))
        with pytest.raises(ValidationError):
            validate_and_submit_review(db, payload)
        assert db["review"].count_documents({}) == 0

    def test_out_of_range_rejected(self):
        with pytest.raises(ValidationError):
            validate_review_ratings(_ratings(4, 6, 3, 5))

    def test_unknown_restroom(self, db):
        with pytest.raises(LocationNotFoundError):
            _submit(db, str(ObjectId()), _ratings(4, 4, 4, 4))
        assert db["review"].count_documents({}) == 0


class TestIncremental:
    def test_two_review_scenario(self, db, restroom_id):
        _submit(db, restroom_id, _ratings(5, 5, 5, 5))
        restroom = _restroom(db, restroom_id)
        assert (restroom["rating"], restroom["cleanliness"], restroom["review_count"]) == (5.0, 5.0, 1)

        _submit(db, restroom_id, _ratings(3, 3, 3, 3))
        restroom = _restroom(db, restroom_id)
        assert (restroom["rating"], restroom["cleanliness"], restroom["review_count"]) == (4.0, 4.0, 2)

        aggregate = recompute_ratings(db, restroom_id)
        assert aggregate["rating"] == 4.0
        assert aggregate["ratings"]["cleanliness"] == 4.0
        assert aggregate["review_count"] == 2

    def test_review_document_shape(self, db, restroom_id):
        result = _submit(db, restroom_id, _ratings(5, 4, 4, 4), user_id="user-9", user_name="Pat")
        assert result["success"] is True

        review = db["review"].find_one({"_id": ObjectId(result["review_id"])})
        assert review["restroom_id"] == restroom_id
        assert review["user_id"] == "user-9"
        assert review["user_name"] == "Pat"
        assert review["average_rating"] == 4.3
        assert review["helpful"] == 0
        assert review["ratings"] == _ratings(5, 4, 4, 4)

    def test_anonymous_review(self, db, restroom_id):
        result = _submit(db, restroom_id, _ratings(2, 2, 2, 2))
        review = db["review"].find_one({"_id": ObjectId(result["review_id"])})
        assert review["user_id"] == "anonymous"
        assert review["user_name"] == "Anonymous User"

    def test_uses_legacy_review_count_field(self, db, make_restroom):
        restroom_id = make_restroom(rating=4.0, cleanliness=3.0, reviews=3)
        review = {"restroom_id": restroom_id, "ratings": _ratings(2, 2, 2, 2), "average_rating": 2.0}
        review_id, aggregate = apply_review_incremental(db, restroom_id, review, now=NOW)

        assert aggregate == {"rating": 3.5, "cleanliness": 2.8, "review_count": 4}
        assert db["review"].find_one({"_id": ObjectId(review_id)})["created_at"] == NOW

    def test_failed_aggregate_write_rolls_back_review(self, db, restroom_id, monkeypatch):
        def broken_update(*args, **kwargs):
            raise RuntimeError("write conflict")

        monkeypatch.setattr(db["restroom"], "update_one", broken_update)
        with pytest.raises(RuntimeError):
            _submit(db, restroom_id, _ratings(3, 3, 3, 3))
        assert db["review"].count_documents({}) == 0


class TestRecompute:
    def test_no_reviews_resets_aggregate(self, db, make_restroom):
        restroom_id = make_restroom(rating=4.2, review_count=7)
        aggregate = recompute_ratings(db, restroom_id)

        assert aggregate == {
            "ratings": {"cleanliness": 0, "supplies": 0, "accessibility": 0, "wait_time": 0},
            "rating": 0,
            "review_count": 0,
        }
        restroom = _restroom(db, restroom_id)
        assert restroom["rating"] == 0
        assert restroom["review_count"] == 0

    def test_categories_averaged_independently(self):
        aggregate = aggregate_reviews([
            {"ratings": _ratings(4, 0, 0, 0)},
            {"ratings": _ratings(2, 5, 0, 0)},
            {"cleanliness": 3},
        ])
        assert aggregate["ratings"] == {
            "cleanliness": 3.0,
            "supplies": 5.0,
            "accessibility": 0.0,
            "wait_time": 0.0,
        }
        # only rated categories count toward the overall
        assert aggregate["rating"] == 4.0
        assert aggregate["review_count"] == 3

    def test_rounds_to_two_decimals(self):
        aggregate = aggregate_reviews([
            {"ratings": _ratings(5, 4, 4, 4)},
            {"ratings": _ratings(4, 4, 4, 4)},
            {"ratings": _ratings(4, 4, 4, 3)},
        ])
        assert aggregate["ratings"]["cleanliness"] == 4.33
        assert aggregate["ratings"]["wait_time"] == 3.67
        assert aggregate["rating"] == 4.0

    def test_legacy_cleanliness_only_reviews(self, db, restroom_id):
        db["review"].insert_one({"restroom_id": restroom_id, "cleanliness": 2})
        db["review"].insert_one({"restroom_id": restroom_id, "cleanliness": 4})
        _submit(db, restroom_id, _ratings(3, 5, 5, 5))

        aggregate = recompute_ratings(db, restroom_id)
        assert aggregate["ratings"]["cleanliness"] == 3.0
        assert aggregate["ratings"]["supplies"] == 5.0
        assert aggregate["review_count"] == 3
        assert _restroom(db, restroom_id)["cleanliness"] == 3.0

    def test_unknown_restroom(self, db):
        with pytest.raises(LocationNotFoundError):
            recompute_ratings(db, str(ObjectId()))

    def test_incremental_converges_with_recompute(self, db, make_restroom):
        reviews = [
            _ratings(5, 4, 3, 5),
            _ratings(2, 3, 4, 4),
            _ratings(4, 4, 4, 4),
            _ratings(1, 2, 5, 3),
            _ratings(3, 5, 2, 4),
            _ratings(5, 5, 5, 5),
        ]
        incremental_id = make_restroom(name="Incremental")
        for ratings in reviews:
            _submit(db, incremental_id, ratings)
        incremental_rating = _restroom(db, incremental_id)["rating"]
        after_incremental = recompute_ratings(db, incremental_id)

        direct = aggregate_reviews({"ratings": r} for r in reviews)

        assert after_incremental == direct
        assert abs(incremental_rating - direct["rating"]) <= 0.05


class TestReviewMaintenance:
    def test_delete_review_recomputes(self, db, restroom_id):
        first = _submit(db, restroom_id, _ratings(5, 5, 5, 5), user_id="user-1")
        _submit(db, restroom_id, _ratings(1, 1, 1, 1), user_id="user-2")

        result = delete_review(db, first["review_id"], "user-1")

        assert result["restroom_id"] == restroom_id
        restroom = _restroom(db, restroom_id)
        assert restroom["rating"] == 1.0
        assert restroom["review_count"] == 1
        assert restroom["ratings"]["wait_time"] == 1.0

    def test_delete_review_requires_owner(self, db, restroom_id):
        review = _submit(db, restroom_id, _ratings(5, 5, 5, 5), user_id="user-1")
        with pytest.raises(PermissionDeniedError):
            delete_review(db, review["review_id"], "user-2")
        assert db["review"].count_documents({}) == 1

        delete_review(db, review["review_id"], "moderator", is_admin=True)
        assert db["review"].count_documents({}) == 0

    def test_delete_missing_review(self, db):
        with pytest.raises(ReviewNotFoundError):
            delete_review(db, str(ObjectId()), "user-1")
        with pytest.raises(ReviewNotFoundError):
            delete_review(db, "bogus", "user-1")

    def test_mark_helpful(self, db, restroom_id):
        review = _submit(db, restroom_id, _ratings(4, 4, 4, 4))
        assert mark_review_helpful(db, review["review_id"]) == 1
        assert mark_review_helpful(db, review["review_id"]) == 2
        with pytest.raises(ReviewNotFoundError):
            mark_review_helpful(db, str(ObjectId()))

    def test_fetch_reviews_newest_first(self, db, restroom_id, make_restroom):
        for day in range(3):
            _submit(db, restroom_id, _ratings(day + 1, 3, 3, 3), now=NOW + timedelta(days=day))
        _submit(db, make_restroom(name="Elsewhere"), _ratings(5, 5, 5, 5))

        reviews = fetch_reviews(db, restroom_id, limit=2)
        assert [r["ratings"]["cleanliness"] for r in reviews] == [3, 2]

    def test_restroom_id_case_is_canonicalised(self, db, restroom_id):
        result = _submit(db, restroom_id.upper(), _ratings(4, 4, 4, 4))

        review = db["review"].find_one({"_id": ObjectId(result["review_id"])})
        assert review["restroom_id"] == restroom_id
        assert recompute_ratings(db, restroom_id)["review_count"] == 1
        assert len(fetch_reviews(db, restroom_id.upper())) == 1
        assert fetch_reviews(db, "not-an-object-id") == []
