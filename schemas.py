"""
Database Schemas

Pydantic models describing what is accepted into each MongoDB collection.
Collection name is the lowercase class name:
- Tour -> "tour"
- User -> "user"
- Review -> "review"
- Booking -> "booking"

The *Update models carry the same per-field rules with every field optional,
for partial updates.
"""
import math
from datetime import datetime
from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict, EmailStr, Field, field_validator, model_validator

DEFAULT_RATING = 4.5
Role = Literal["user", "guide", "lead-guide", "admin"]
Difficulty = Literal["easy", "medium", "difficult"]


def round_rating(value: float) -> float:
    """Round to one decimal, halves going up: 4.6666 -> 4.7, 4.65 -> 4.7"""
    return math.floor(value * 10 + 0.5) / 10


def check_rating(value: Optional[float]) -> Optional[float]:
    if value is None:
        return value
    value = round_rating(value)
    if value < 1:
        raise ValueError("Rating must be above 1.0")
    if value > 5:
        raise ValueError("Rating must be below 5.0")
    return value


def _reject_nulls(model: BaseModel, fields) -> None:
    for name in fields:
        if name in model.model_fields_set and getattr(model, name) is None:
            raise ValueError(f"{name} cannot be empty")


# Tours

class StartLocation(BaseModel):
    """GeoJSON point; coordinates are [longitude, latitude]"""
    type: Literal["Point"] = "Point"
    coordinates: List[float] = Field(default_factory=list)
    address: Optional[str] = None
    description: Optional[str] = None


class Location(StartLocation):
    day: Optional[int] = None


class Tour(BaseModel):
    """
    Tours collection schema
    Collection name: "tour"
    `slug` and `created_at` are set by the service, ratings are maintained from reviews.
    """
    model_config = ConfigDict(str_strip_whitespace=True)

    name: str = Field(..., min_length=10, max_length=40, description="Unique tour name")
    duration: int = Field(..., gt=0, description="Duration in days")
    max_group_size: int = Field(..., gt=0)
    difficulty: Difficulty
    ratings_average: float = Field(DEFAULT_RATING)
    ratings_quantity: int = Field(0, ge=0)
    price: float = Field(..., ge=0)
    price_discount: Optional[float] = None
    summary: str = Field(..., min_length=1)
    description: Optional[str] = None
    image_cover: str = Field(..., min_length=1, description="File name of the cover image")
    images: List[str] = Field(default_factory=list)
    start_dates: List[datetime] = Field(default_factory=list)
    secret_tour: bool = False
    start_location: Optional[StartLocation] = None
    locations: List[Location] = Field(default_factory=list)
    guides: List[str] = Field(default_factory=list, description="User ids of guides")

    @field_validator("ratings_average")
    @classmethod
    def round_ratings_average(cls, value):
        return check_rating(value)


class TourUpdate(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    name: Optional[str] = Field(None, min_length=10, max_length=40)
    duration: Optional[int] = Field(None, gt=0)
    max_group_size: Optional[int] = Field(None, gt=0)
    difficulty: Optional[Difficulty] = None
    ratings_average: Optional[float] = None
    ratings_quantity: Optional[int] = Field(None, ge=0)
    price: Optional[float] = Field(None, ge=0)
    price_discount: Optional[float] = None
    summary: Optional[str] = Field(None, min_length=1)
    description: Optional[str] = None
    image_cover: Optional[str] = Field(None, min_length=1)
    images: Optional[List[str]] = None
    start_dates: Optional[List[datetime]] = None
    secret_tour: Optional[bool] = None
    start_location: Optional[StartLocation] = None
    locations: Optional[List[Location]] = None
    guides: Optional[List[str]] = None

    @field_validator("ratings_average")
    @classmethod
    def round_ratings_average(cls, value):
        return check_rating(value)

    @model_validator(mode="after")
    def required_fields_stay_set(self):
        _reject_nulls(self, ("name", "duration", "max_group_size", "difficulty", "price", "summary", "image_cover"))
        return self


# Users

class User(BaseModel):
    """
    Users collection schema
    Collection name: "user"
    Only the bcrypt hash of the password is stored; password_confirm is never persisted.
    """
    name: str = Field(..., min_length=1, description="Full name")
    email: EmailStr = Field(..., description="Email address (unique)")
    photo: str = Field("default.jpg")
    role: Role = Field("user")
    password: str = Field(..., min_length=8)
    password_confirm: str = Field(...)


class UserUpdate(BaseModel):
    """Fields an admin (or the user, for name/email) may change. Never the password."""
    name: Optional[str] = Field(None, min_length=1)
    email: Optional[EmailStr] = None
    photo: Optional[str] = None
    role: Optional[Role] = None

    @model_validator(mode="after")
    def required_fields_stay_set(self):
        _reject_nulls(self, ("name", "email", "photo", "role"))
        return self


# Reviews

class Review(BaseModel):
    """
    Reviews collection schema
    Collection name: "review"
    One review per (tour, user) pair, enforced by a unique index.
    """
    review: str = Field(..., min_length=1, description="Review text")
    rating: Optional[float] = Field(None, ge=1, le=5)

    @field_validator("review")
    @classmethod
    def review_not_blank(cls, value):
        if not value.strip():
            raise ValueError("Review cannot be empty.")
        return value


class ReviewUpdate(BaseModel):
    review: Optional[str] = Field(None, min_length=1)
    rating: Optional[float] = Field(None, ge=1, le=5)

    @model_validator(mode="after")
    def required_fields_stay_set(self):
        _reject_nulls(self, ("review",))
        return self


# Bookings

class Booking(BaseModel):
    """
    Bookings collection schema
    Collection name: "booking"
    """
    tour: str = Field(..., description="Tour id")
    user: str = Field(..., description="User id")
    price: float = Field(..., ge=0)
    paid: bool = True


class BookingUpdate(BaseModel):
    price: Optional[float] = Field(None, ge=0)
    paid: Optional[bool] = None
