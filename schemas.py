"""
Database Schemas for the Restroom Finder API

Each Pydantic model that maps to a MongoDB collection is named after it: the
collection name is the lowercased class name (e.g., Restroom -> "restroom").
"""
from datetime import datetime
from typing import Dict, List, Literal, Optional

from pydantic import BaseModel, EmailStr, Field, field_validator


class User(BaseModel):
    username: str = Field(..., min_length=3, max_length=30)
    email: EmailStr
    password_hash: str = Field(..., description="Hashed password (bcrypt)")
    role: str = Field("user", description="user | admin")
    profile_image: Optional[str] = Field(None, description="URL to profile image")
    about: Optional[str] = Field(None, max_length=280)


class AmenityStatusEntry(BaseModel):
    votes: int = Field(0, ge=0)
    confirm_votes: int = Field(0, ge=0)
    deny_votes: int = Field(0, ge=0)
    percentage: int = Field(0, ge=0, le=100)
    status: Literal["unverified", "confirmed", "disputed", "removed"] = "unverified"
    last_updated: Optional[datetime] = None


class CategoryRatings(BaseModel):
    cleanliness: float = 0
    supplies: float = 0
    accessibility: float = 0
    wait_time: float = 0


class Restroom(BaseModel):
    name: str = Field(..., min_length=1, max_length=120)
    address: Optional[str] = Field(None, max_length=200)
    latitude: float = Field(..., ge=-90, le=90)
    longitude: float = Field(..., ge=-180, le=180)
    gender: Optional[str] = Field(None, max_length=30)
    is_private: bool = False
    image_url: Optional[str] = None
    amenities: Dict[str, AmenityStatusEntry] = Field(default_factory=dict)
    confirmed_amenities: List[str] = Field(default_factory=list)
    ratings: CategoryRatings = Field(default_factory=CategoryRatings)
    rating: float = Field(0, ge=0, le=5)
    cleanliness: float = Field(0, ge=0, le=5)
    review_count: int = Field(0, ge=0)
    submitted_by: str = "anonymous"


class RestroomCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=120)
    address: Optional[str] = Field(None, max_length=200)
    latitude: float = Field(..., ge=-90, le=90)
    longitude: float = Field(..., ge=-180, le=180)
    gender: Optional[str] = Field(None, max_length=30)
    is_private: bool = False
    image_url: Optional[str] = None
    amenities: List[str] = Field(default_factory=list, description="Amenity ids the submitter saw")


class ReviewRatings(BaseModel):
    """Scores for one review; 0 or missing means the category was not rated."""
    cleanliness: Optional[int] = Field(None, ge=1, le=5)
    supplies: Optional[int] = Field(None, ge=1, le=5)
    accessibility: Optional[int] = Field(None, ge=1, le=5)
    wait_time: Optional[int] = Field(None, ge=1, le=5)

    @field_validator("cleanliness", "supplies", "accessibility", "wait_time", mode="before")
    @classmethod
    def zero_means_unrated(cls, value):
        return None if value == 0 else value


class Review(BaseModel):
    restroom_id: str = Field(..., description="ObjectId as string")
    restroom_name: str = ""
    user_id: str = Field("anonymous", description="ObjectId as string, or 'anonymous'")
    user_name: str = "Anonymous User"
    ratings: ReviewRatings
    average_rating: float = Field(..., ge=0, le=5)
    review_text: str = Field("", max_length=2000)
    helpful: int = Field(0, ge=0)


class ReviewCreate(BaseModel):
    restroom_id: str = Field(..., description="ObjectId as string")
    restroom_name: Optional[str] = Field(None, max_length=120)
    ratings: ReviewRatings = Field(default_factory=ReviewRatings)
    review_text: Optional[str] = Field(None, max_length=2000)


class AmenityVoteRequest(BaseModel):
    vote: Literal["confirm", "deny"]


class AmenityVoteResponse(BaseModel):
    ok: bool = True
    amenity_id: str
    entry: AmenityStatusEntry


class RatingsAggregate(BaseModel):
    ratings: CategoryRatings
    rating: float
    review_count: int
