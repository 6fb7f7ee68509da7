"""Normalization functions for seed JSON ingestion.

Source exports are loosely structured: the same field may arrive as a
string, a list, a nested object or not at all.  Every raw value is first
reduced to one of three shapes (Scalar, ScalarList, Absent) and only then
mapped onto the canonical field names the schemas expect.

All scalar helpers accept str | None and return the appropriate type or None.
"""

from __future__ import annotations

import re
import unicodedata
from dataclasses import dataclass, field
from typing import Any, Union

from comic_seed.schemas import EntityType


# ---------------------------------------------------------------------------
# Rule 1: trim
# ---------------------------------------------------------------------------

def trim(value: str | None) -> str | None:
    """Strip leading/trailing whitespace; treat empty string as None."""
    if value is None:
        return None
    v = value.strip()
    return v if v else None


# ---------------------------------------------------------------------------
# Rule 2: normalize_space
# ---------------------------------------------------------------------------

def normalize_space(value: str | None) -> str | None:
    """Collapse internal runs of whitespace to single spaces, then trim."""
    v = trim(value)
    if v is None:
        return None
    return re.sub(r"\s+", " ", v)


# ---------------------------------------------------------------------------
# Rule 3: normalize_email
# ---------------------------------------------------------------------------

def normalize_email(value: str | None) -> str | None:
    """Lowercase and trim an email address."""
    v = trim(value)
    if v is None:
        return None
    return v.lower()


# ---------------------------------------------------------------------------
# Rule 4: slug_name
# ---------------------------------------------------------------------------

def slug_name(value: str | None) -> str | None:
    """Lowercase alnum with '-' separators.

    Used for comic and chapter slugs when the source omits them.
    """
    v = trim(value)
    if v is None:
        return None
    v = unicodedata.normalize("NFKD", v)
    v = "".join(c for c in v if not unicodedata.combining(c))
    v = v.lower()
    v = re.sub(r"[^a-z0-9]+", "-", v)
    v = v.strip("-")
    return v if v else None


# ---------------------------------------------------------------------------
# Rule 5: parse_chapter_number
# ---------------------------------------------------------------------------

_CHAPTER_RE = re.compile(r"chapter\s*[-#:.]?\s*(\d+(?:\.\d+)?)", re.IGNORECASE)
_BARE_NUMBER_RE = re.compile(r"^\s*(\d+(?:\.\d+)?)\s*$")


def parse_chapter_number(value: str | None) -> float | None:
    """Extract a chapter number from '12', 'Chapter 12.5' or 'Ch. chapter-3'.

    >>> parse_chapter_number("Chapter 12.5 - The Return")
    12.5
    """
    v = trim(value)
    if v is None:
        return None
    m = _CHAPTER_RE.search(v) or _BARE_NUMBER_RE.match(v)
    if not m:
        return None
    return float(m.group(1))


# ---------------------------------------------------------------------------
# Field shapes
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Scalar:
    value: str

    def first(self) -> str | None:
        return self.value

    def as_list(self) -> list[str]:
        return [self.value]


@dataclass(frozen=True)
class ScalarList:
    values: tuple[str, ...] = field(default_factory=tuple)

    def first(self) -> str | None:
        return self.values[0] if self.values else None

    def as_list(self) -> list[str]:
        return list(self.values)


@dataclass(frozen=True)
class Absent:
    def first(self) -> str | None:
        return None

    def as_list(self) -> list[str]:
        return []


ABSENT = Absent()

FieldShape = Union[Scalar, ScalarList, Absent]

# Properties that identify an image when it arrives as an object.
IMAGE_IDENTIFIER_KEYS = ("url", "src", "path", "filename", "slug", "id", "name", "title")
# Properties that identify a person / lookup value (author, artist, genre).
NAME_IDENTIFIER_KEYS = ("name", "fullName", "title", "slug", "id")


def extract_identifier(obj: dict[str, Any], keys: tuple[str, ...]) -> str | None:
    """Return the first non-empty identifying property of a nested object."""
    for key in keys:
        v = obj.get(key)
        if isinstance(v, bool):
            continue
        if isinstance(v, (int, float)):
            return str(v)
        if isinstance(v, str) and trim(v):
            return normalize_space(v)
    for nested in ("person", "attributes"):
        inner = obj.get(nested)
        if isinstance(inner, dict):
            name = inner.get("name")
            if isinstance(name, str) and trim(name):
                return normalize_space(name)
    return None


def coerce_field(value: Any, keys: tuple[str, ...] = NAME_IDENTIFIER_KEYS) -> FieldShape:
    """Reduce an arbitrary JSON value to Scalar, ScalarList or Absent."""
    if value is None:
        return ABSENT
    if isinstance(value, bool):
        return Scalar("true" if value else "false")
    if isinstance(value, (int, float)):
        return Scalar(str(value))
    if isinstance(value, str):
        v = normalize_space(value)
        return Scalar(v) if v else ABSENT
    if isinstance(value, dict):
        ident = extract_identifier(value, keys)
        return Scalar(ident) if ident else ABSENT
    if isinstance(value, (list, tuple)):
        out: list[str] = []
        for item in value:
            out.extend(coerce_field(item, keys).as_list())
        return ScalarList(tuple(out)) if out else ABSENT
    return ABSENT


def split_list(value: Any) -> list[str]:
    """Genre-like fields: a list, a single object, or 'a, b; c' strings."""
    shape = coerce_field(value)
    out: list[str] = []
    for item in shape.as_list():
        for part in re.split(r"[,;|]", item):
            p = normalize_space(part)
            if p and p not in out:
                out.append(p)
    return out


def normalize_image_list(raw: dict[str, Any], field_names: tuple[str, ...]) -> list[str]:
    """Merge every image-bearing field into an ordered, de-duplicated URL list."""
    out: list[str] = []
    for name in field_names:
        if name not in raw:
            continue
        for url in coerce_field(raw[name], IMAGE_IDENTIFIER_KEYS).as_list():
            if url not in out:
                out.append(url)
    return out


# ---------------------------------------------------------------------------
# Record normalization
# ---------------------------------------------------------------------------

IMAGE_FIELDS = ("images", "image_urls", "image_urls_list", "image_list", "imageUrls")

_USER_FIELDS = {
    "email": ("email", "emailAddress", "email_address"),
    "name": ("name", "fullName", "full_name", "displayName", "username"),
    "image": ("image", "avatar", "avatarUrl", "avatar_url", "profileImage"),
    "role": ("role",),
    "password": ("password",),
    "email_verified": ("emailVerified", "email_verified"),
    "created_at": ("createdAt", "created_at"),
}

_COMIC_FIELDS = {
    "title": ("title", "name"),
    "slug": ("slug",),
    "description": ("description", "synopsis", "summary"),
    "cover_image": ("coverImage", "cover_image", "cover", "thumbnail", "image"),
    "rating": ("rating", "score"),
    "status": ("status",),
    "serialization": ("serialization", "serialisation", "publisher"),
    "url": ("url", "link", "href"),
    "type": ("type", "comicType", "comic_type", "category"),
    "author": ("author", "authors", "writer"),
    "artist": ("artist", "artists", "illustrator"),
    "genres": ("genres", "genre", "tags"),
}

_CHAPTER_FIELDS = {
    "comic": ("comic", "comicSlug", "comicslug", "comic_slug", "comicTitle"),
    "title": ("title", "name", "chapterTitle"),
    "chapter_number": ("chapterNumber", "chapter_number", "chapterNum", "number", "chapter"),
    "slug": ("slug",),
    "release_date": ("releaseDate", "release_date", "releasedAt", "publishedAt", "date"),
    "views": ("views", "viewCount"),
    "url": ("url", "link", "href"),
}


def _pick(raw: dict[str, Any], names: tuple[str, ...], used: set[str]) -> Any:
    """Return the first present, non-null value among aliases, marking all as used."""
    found = None
    for name in names:
        if name in raw:
            used.add(name)
            if found is None and raw[name] is not None:
                found = raw[name]
    return found


def _first(value: Any, keys: tuple[str, ...] = NAME_IDENTIFIER_KEYS) -> str | None:
    return coerce_field(value, keys).first()


def _extensions(raw: dict[str, Any], used: set[str]) -> dict[str, Any]:
    return {k: v for k, v in raw.items() if k not in used}


def _normalize_user(raw: dict[str, Any]) -> dict[str, Any]:
    used: set[str] = set()
    p = {k: _pick(raw, names, used) for k, names in _USER_FIELDS.items()}
    role = _first(p["role"])
    return {
        "email": normalize_email(_first(p["email"])),
        "name": _first(p["name"]),
        "image": _first(p["image"], IMAGE_IDENTIFIER_KEYS),
        "role": role.lower() if role else None,
        "password": p["password"] if isinstance(p["password"], str) else None,
        "email_verified": p["email_verified"],
        "created_at": p["created_at"],
        "extensions": _extensions(raw, used),
    }


def _normalize_comic(raw: dict[str, Any]) -> dict[str, Any]:
    used: set[str] = set()
    p = {k: _pick(raw, names, used) for k, names in _COMIC_FIELDS.items()}
    used.update(n for n in IMAGE_FIELDS if n in raw)
    title = _first(p["title"])
    slug = slug_name(_first(p["slug"])) or slug_name(title)
    return {
        "title": title,
        "slug": slug,
        "description": trim(p["description"]) if isinstance(p["description"], str) else None,
        "cover_image": _first(p["cover_image"], IMAGE_IDENTIFIER_KEYS),
        "images": normalize_image_list(raw, IMAGE_FIELDS),
        "rating": p["rating"],
        "status": _first(p["status"]),
        "serialization": _first(p["serialization"]),
        "url": _first(p["url"], IMAGE_IDENTIFIER_KEYS),
        "type": _first(p["type"]),
        "author": _first(p["author"]),
        "artist": _first(p["artist"]),
        "genres": split_list(p["genres"]),
        "extensions": _extensions(raw, used),
    }


def _comic_reference(value: Any) -> str | None:
    """A chapter's parent reference: prefer an explicit slug, else slug the title."""
    if isinstance(value, dict):
        slug = value.get("slug")
        if isinstance(slug, str) and trim(slug):
            return slug_name(slug)
        return slug_name(extract_identifier(value, ("title", "name")))
    return slug_name(_first(value))


def _normalize_chapter(raw: dict[str, Any]) -> dict[str, Any]:
    used: set[str] = set()
    p = {k: _pick(raw, names, used) for k, names in _CHAPTER_FIELDS.items()}
    used.update(n for n in IMAGE_FIELDS + ("image",) if n in raw)
    title = _first(p["title"])
    comic_slug = _comic_reference(p["comic"])

    number: Any = p["chapter_number"]
    if isinstance(number, str):
        number = parse_chapter_number(number)
    if number is None or isinstance(number, bool):
        number = parse_chapter_number(title)

    slug = slug_name(_first(p["slug"]))
    if slug is None and comic_slug:
        label = title or (f"chapter-{number:g}" if isinstance(number, (int, float)) else None)
        slug = slug_name(f"{comic_slug}-{label}") if label else None

    return {
        "comic_slug": comic_slug,
        "title": title,
        "chapter_number": number,
        "slug": slug,
        "release_date": p["release_date"],
        "views": p["views"],
        "url": _first(p["url"], IMAGE_IDENTIFIER_KEYS),
        "images": normalize_image_list(raw, IMAGE_FIELDS + ("image",)),
        "extensions": _extensions(raw, used),
    }


_NORMALIZERS = {
    EntityType.USER: _normalize_user,
    EntityType.COMIC: _normalize_comic,
    EntityType.CHAPTER: _normalize_chapter,
}


def normalize_record(entity_type: EntityType, raw: Any) -> dict[str, Any]:
    """Map a raw source item onto canonical field names for *entity_type*.

    Non-object items are passed through untouched so schema validation
    rejects them with a readable reason.
    """
    if not isinstance(raw, dict):
        return raw
    normalized = _NORMALIZERS[entity_type](raw)
    # Drop Nones so schema defaults apply.
    return {k: v for k, v in normalized.items() if v is not None}
