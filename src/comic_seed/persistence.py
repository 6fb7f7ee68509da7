"""comic_seed.persistence

Idempotent upsert of validated records keyed by natural key:

  user     email
  comic    slug
  chapter  (comic_id, chapter_number)   -- comic_id resolved from comic_slug

Every record is written inside its own savepoint so one failing record
rolls back alone.  Image-bearing entities get their image rows replaced
wholesale on every upsert, numbered from 1 in the order given.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Sequence

import bcrypt
import psycopg

from comic_seed.repository import SeedStore
from comic_seed.schemas import ChapterSeed, ComicSeed, EntityType, SeedModel, UserSeed
from comic_seed.shared import NaturalKeyResolutionError

log = logging.getLogger(__name__)

BCRYPT_MAX_BYTES = 72


class UpsertAction(str, Enum):
    CREATED = "created"
    UPDATED = "updated"
    SKIPPED = "skipped"
    ERROR = "error"


@dataclass
class UpsertResult:
    action: UpsertAction
    entity_id: int | None = None
    reason: str | None = None


def hash_password(password: str, rounds: int = 12) -> str:
    """bcrypt hash; input beyond bcrypt's 72-byte limit is truncated."""
    raw = password.encode("utf-8")[:BCRYPT_MAX_BYTES]
    return bcrypt.hashpw(raw, bcrypt.gensalt(rounds)).decode("ascii")


class PersistenceCoordinator:
    def __init__(
        self,
        store: SeedStore,
        default_password: str | None = None,
        bcrypt_rounds: int = 12,
    ) -> None:
        self.store = store
        self.default_password = default_password
        self.bcrypt_rounds = bcrypt_rounds
        self._default_hash: str | None = None
        self._seq = 0

    # ------------------------------------------------------------------ #
    # Natural keys                                                         #
    # ------------------------------------------------------------------ #

    def natural_key(self, entity_type: EntityType, record: SeedModel) -> dict[str, Any]:
        if isinstance(record, UserSeed):
            return {"email": record.email}
        if isinstance(record, ComicSeed):
            return {"slug": record.slug}
        if isinstance(record, ChapterSeed):
            comic_id = self.store.find_id("comic", {"slug": record.comic_slug})
            if comic_id is None:
                raise NaturalKeyResolutionError(
                    f"chapter {record.chapter_number:g}: parent comic {record.comic_slug!r} not found"
                )
            return {"comic_id": comic_id, "chapter_number": record.chapter_number}
        raise TypeError(f"unsupported record for {entity_type}: {type(record).__name__}")

    # ------------------------------------------------------------------ #
    # Upsert                                                               #
    # ------------------------------------------------------------------ #

    def upsert(
        self,
        entity_type: EntityType,
        record: SeedModel,
        resolved_image_paths: Sequence[str] = (),
    ) -> UpsertResult:
        """Insert or update one record; never raises for record-level failures.

        Connection-level errors (psycopg.OperationalError) propagate so the
        phase retry can take over.
        """
        self._seq += 1
        sp = f"rec_{entity_type.value}_{self._seq}"
        kind = entity_type.value
        try:
            with self.store.savepoint(sp):
                key = self.natural_key(entity_type, record)
                existing_id = self.store.find_id(kind, key)
                values = self._values(record, list(resolved_image_paths), is_new=existing_id is None)
                if existing_id is None:
                    entity_id = self.store.insert(kind, {**key, **values})
                    action = UpsertAction.CREATED
                else:
                    self.store.update(kind, existing_id, values)
                    entity_id = existing_id
                    action = UpsertAction.UPDATED
                self._write_children(record, entity_id, list(resolved_image_paths))
        except NaturalKeyResolutionError as exc:
            log.warning("Skipped %s: %s", kind, exc)
            return UpsertResult(UpsertAction.SKIPPED, reason=str(exc))
        except psycopg.OperationalError:
            raise
        except Exception as exc:
            log.warning("Failed to upsert %s: %s", kind, exc)
            return UpsertResult(UpsertAction.ERROR, reason=f"{kind}: {exc}")
        return UpsertResult(action, entity_id)

    # ------------------------------------------------------------------ #
    # Column values                                                        #
    # ------------------------------------------------------------------ #

    def _password_hash(self, record: UserSeed, is_new: bool) -> str | None:
        if record.password:
            return hash_password(record.password, self.bcrypt_rounds)
        if is_new and self.default_password:
            if self._default_hash is None:
                self._default_hash = hash_password(self.default_password, self.bcrypt_rounds)
            return self._default_hash
        return None

    def _lookup(self, table: str, name: str | None) -> int | None:
        return self.store.get_or_create_lookup(table, name) if name else None

    def _values(self, record: SeedModel, images: list[str], is_new: bool) -> dict[str, Any]:
        if isinstance(record, UserSeed):
            values: dict[str, Any] = {
                "name": record.name,
                "image": images[0] if images else record.image,
                "role": record.role,
                "email_verified": record.email_verified,
            }
            password_hash = self._password_hash(record, is_new)
            if password_hash:
                values["password_hash"] = password_hash
            if is_new and record.created_at:
                values["created_at"] = record.created_at
            return values

        if isinstance(record, ComicSeed):
            return {
                "title": record.title,
                "description": record.description,
                "cover_image": images[0] if images else record.cover_image,
                "url": record.url,
                "rating": record.rating,
                "status": record.status,
                "serialization": record.serialization,
                "type_id": self._lookup("comic_type", record.type),
                "author_id": self._lookup("author", record.author),
                "artist_id": self._lookup("artist", record.artist),
            }

        if isinstance(record, ChapterSeed):
            return {
                "title": record.title,
                "slug": record.slug,
                "url": record.url,
                "release_date": record.release_date,
                "views": record.views,
            }
        raise TypeError(f"unsupported record type {type(record).__name__}")

    def _write_children(self, record: SeedModel, entity_id: int, images: list[str]) -> None:
        if isinstance(record, ComicSeed):
            for genre in record.genres:
                self.store.link_genre(entity_id, self.store.get_or_create_lookup("genre", genre))
            self._replace_images("comic", entity_id, images)
        elif isinstance(record, ChapterSeed):
            self._replace_images("chapter", entity_id, images)

    def _replace_images(self, kind: str, parent_id: int, images: list[str]) -> None:
        self.store.delete_images(kind, parent_id)
        for ordinal, path in enumerate(images, start=1):
            self.store.insert_image(kind, parent_id, path, ordinal)
