from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    """Naive datetimes are taken to be UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class AuctionStatus(str, Enum):
    ACTIVE = "active"
    CLOSED = "closed"


class CamelModel(BaseModel):
    # snake_case in Python, camelCase on the wire
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# ===== RECORDS =====

class User(CamelModel):
    id: int
    username: str
    email: str
    full_name: str
    phone_number: Optional[str] = None
    profile_image: Optional[str] = None
    created_at: datetime
    updated_at: datetime


class Category(CamelModel):
    id: int
    name_en: str
    name_ar: str
    slug: str
    image_url: Optional[str] = None
    auction_count: int = 0


class Auction(CamelModel):
    id: int
    title: str
    title_ar: str
    description: str
    description_ar: str
    image_url: str
    starting_price: int
    current_price: int
    min_bid_increment: int
    category_id: int
    seller_id: int
    winner_id: Optional[int] = None
    start_time: datetime
    end_time: datetime
    featured: bool = False
    status: AuctionStatus = AuctionStatus.ACTIVE
    bid_count: int = 0
    created_at: datetime
    updated_at: datetime
    # bumped by the ledger on every write, used for compare-and-swap
    version: int = Field(default=0, exclude=True)

    @property
    def min_next_bid(self) -> int:
        return self.current_price + self.min_bid_increment


class Bid(CamelModel):
    id: int
    user_id: int
    auction_id: int
    amount: int
    created_at: datetime


class Favorite(CamelModel):
    id: int
    user_id: int
    auction_id: int
    created_at: datetime


# ===== REQUEST BODIES =====

class UserCreate(CamelModel):
    username: str = Field(min_length=1)
    email: str = Field(min_length=3, pattern=r"^[^@\s]+@[^@\s]+$")
    full_name: str = Field(min_length=2)
    phone_number: Optional[str] = None
    profile_image: Optional[str] = None


class UserUpdate(CamelModel):
    full_name: Optional[str] = Field(default=None, min_length=2)
    email: Optional[str] = Field(default=None, pattern=r"^[^@\s]+@[^@\s]+$")
    phone_number: Optional[str] = Field(default=None, min_length=9)
    profile_image: Optional[str] = None

    @model_validator(mode="after")
    def _required_fields_not_null(self):
        # omitted means unchanged; null is only allowed for the optional contact fields
        for name in ("full_name", "email"):
            if name in self.model_fields_set and getattr(self, name) is None:
                raise ValueError(f"{to_camel(name)} cannot be null")
        return self


class CategoryCreate(CamelModel):
    name_en: str
    name_ar: str
    slug: str = Field(min_length=1)
    image_url: Optional[str] = None


class AuctionCreate(CamelModel):
    title: str = Field(min_length=1)
    title_ar: str
    description: str
    description_ar: str
    image_url: str
    starting_price: int = Field(ge=0)
    current_price: Optional[int] = None
    min_bid_increment: int = Field(gt=0)
    category_id: int
    start_time: datetime
    end_time: datetime
    featured: bool = False

    @field_validator("start_time", "end_time")
    @classmethod
    def _normalize_time(cls, value: datetime) -> datetime:
        return as_utc(value)

    @model_validator(mode="after")
    def _check_consistency(self):
        if self.end_time <= self.start_time:
            raise ValueError("endTime must be after startTime")
        if self.current_price is None:
            self.current_price = self.starting_price
        elif self.current_price < self.starting_price:
            raise ValueError("currentPrice cannot be below startingPrice")
        return self


class BidCreate(CamelModel):
    auction_id: int
    amount: int = Field(gt=0)


class FavoriteCreate(CamelModel):
    auction_id: int
