"""Domain errors raised by the voting and rating functions."""


class RestroomError(Exception):
    """Base class for errors surfaced to the user."""

    status_code = 400

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class DuplicateVoteError(RestroomError):
    status_code = 409

    def __init__(self, restroom_id: str, amenity_id: str, user_id: str):
        super().__init__("You have already voted on this amenity")
        self.restroom_id = restroom_id
        self.amenity_id = amenity_id
        self.user_id = user_id


class LocationNotFoundError(RestroomError):
    status_code = 404

    def __init__(self, restroom_id: str):
        super().__init__("Restroom not found")
        self.restroom_id = restroom_id


class ReviewNotFoundError(RestroomError):
    status_code = 404

    def __init__(self, review_id: str):
        super().__init__("Review not found")
        self.review_id = review_id


class ValidationError(RestroomError):
    """Rejected input, raised before anything is written."""


class PermissionDeniedError(RestroomError):
    status_code = 403

    def __init__(self, message: str = "Forbidden"):
        super().__init__(message)
