"""Pydantic schemas for validated seed records.

Each model has a typed core and a single explicit ``extensions`` map that
carries any source keys the normalizer did not recognise.  Unknown top-level
fields are rejected so nothing is merged in untyped.
"""

from __future__ import annotations

import re
from datetime import datetime
from enum import Enum
from typing import Any, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


class EntityType(str, Enum):
    USER = "user"
    COMIC = "comic"
    CHAPTER = "chapter"

    @property
    def plural(self) -> str:
        return f"{self.value}s"


COMIC_STATUSES = ("Ongoing", "Hiatus", "Completed", "Dropped", "Season End", "Coming Soon")
_STATUS_BY_KEY = {s.lower().replace(" ", ""): s for s in COMIC_STATUSES}
_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


class SeedModel(BaseModel):
    model_config = ConfigDict(extra="forbid", str_strip_whitespace=True)

    extensions: dict[str, Any] = Field(default_factory=dict)


class UserSeed(SeedModel):
    email: str
    name: str = Field(..., min_length=1, max_length=100)
    image: Optional[str] = None
    role: Literal["user", "admin", "moderator"] = "user"
    password: Optional[str] = Field(default=None, min_length=1)
    email_verified: Optional[datetime] = None
    created_at: Optional[datetime] = None

    @field_validator("email")
    @classmethod
    def _check_email(cls, v: str) -> str:
        v = v.strip().lower()
        if not _EMAIL_RE.match(v):
            raise ValueError(f"invalid email address {v!r}")
        return v


class ComicSeed(SeedModel):
    title: str = Field(..., min_length=1)
    slug: str = Field(..., min_length=1)
    description: Optional[str] = None
    cover_image: Optional[str] = None
    images: list[str] = Field(default_factory=list)
    rating: Optional[float] = Field(default=None, ge=0, le=10)
    status: str = "Ongoing"
    serialization: Optional[str] = None
    url: Optional[str] = None
    type: Optional[str] = None
    author: Optional[str] = None
    artist: Optional[str] = None
    genres: list[str] = Field(default_factory=list)

    @field_validator("status")
    @classmethod
    def _canonical_status(cls, v: str) -> str:
        key = v.lower().replace(" ", "").replace("_", "").replace("-", "")
        if key not in _STATUS_BY_KEY:
            raise ValueError(f"unknown status {v!r}; expected one of {', '.join(COMIC_STATUSES)}")
        return _STATUS_BY_KEY[key]

    def all_images(self) -> list[str]:
        """Cover first, then gallery images, without repeats."""
        out = [self.cover_image] if self.cover_image else []
        out += [u for u in self.images if u not in out]
        return out


class ChapterSeed(SeedModel):
    comic_slug: str = Field(..., min_length=1)
    chapter_number: float = Field(..., ge=0)
    title: Optional[str] = None
    slug: Optional[str] = None
    release_date: Optional[datetime] = None
    views: int = Field(default=0, ge=0)
    url: Optional[str] = None
    images: list[str] = Field(default_factory=list)


SCHEMAS: dict[EntityType, type[SeedModel]] = {
    EntityType.USER: UserSeed,
    EntityType.COMIC: ComicSeed,
    EntityType.CHAPTER: ChapterSeed,
}
