"""comic_seed.repository

Relational store access for the seed run.

SeedStore is the narrow interface the persistence coordinator and the
orchestrator depend on; PostgresSeedStore implements it with raw SQL over a
single psycopg connection.  The caller owns the transaction: nothing here
commits except commit().
"""

from __future__ import annotations

import logging
from contextlib import contextmanager
from typing import Any, Iterator, Protocol

import psycopg
from psycopg import sql

log = logging.getLogger(__name__)

LOOKUP_TABLES = frozenset({"comic_type", "author", "artist", "genre"})

# kind -> (table, parent column, ordinal column)
IMAGE_TABLES = {
    "comic": ("comic_image", "comic_id", "image_number"),
    "chapter": ("chapter_image", "chapter_id", "page_number"),
}

_UPSERT_TABLES = {
    "user": ("app_user", ("email",)),
    "comic": ("comic", ("slug",)),
    "chapter": ("chapter", ("comic_id", "chapter_number")),
}


class SeedStore(Protocol):
    def find_id(self, kind: str, key: dict[str, Any]) -> int | None: ...

    def insert(self, kind: str, values: dict[str, Any]) -> int: ...

    def update(self, kind: str, row_id: int, values: dict[str, Any]) -> None: ...

    def get_or_create_lookup(self, table: str, name: str) -> int: ...

    def link_genre(self, comic_id: int, genre_id: int) -> None: ...

    def delete_images(self, kind: str, parent_id: int) -> int: ...

    def insert_image(self, kind: str, parent_id: int, path: str, ordinal: int) -> None: ...

    def savepoint(self, name: str) -> Any: ...

    def commit(self) -> None: ...

    def rollback(self) -> None: ...


class PostgresSeedStore:
    def __init__(self, conn: psycopg.Connection) -> None:
        self.conn = conn

    # ------------------------------------------------------------------ #
    # Natural-key upsert primitives                                        #
    # ------------------------------------------------------------------ #

    def find_id(self, kind: str, key: dict[str, Any]) -> int | None:
        table, key_cols = _UPSERT_TABLES[kind]
        where = sql.SQL(" AND ").join(
            sql.SQL("{} = {}").format(sql.Identifier(c), sql.Placeholder()) for c in key_cols
        )
        row = self.conn.execute(
            sql.SQL("SELECT id FROM {} WHERE {} ORDER BY id ASC LIMIT 1").format(
                sql.Identifier(table), where,
            ),
            tuple(key[c] for c in key_cols),
        ).fetchone()
        return int(row[0]) if row else None

    def insert(self, kind: str, values: dict[str, Any]) -> int:
        table, _ = _UPSERT_TABLES[kind]
        cols = list(values)
        row = self.conn.execute(
            sql.SQL("INSERT INTO {} ({}) VALUES ({}) RETURNING id").format(
                sql.Identifier(table),
                sql.SQL(", ").join(sql.Identifier(c) for c in cols),
                sql.SQL(", ").join([sql.Placeholder()] * len(cols)),
            ),
            tuple(values[c] for c in cols),
        ).fetchone()
        return int(row[0])

    def update(self, kind: str, row_id: int, values: dict[str, Any]) -> None:
        table, _ = _UPSERT_TABLES[kind]
        assignments = [
            sql.SQL("{} = {}").format(sql.Identifier(c), sql.Placeholder()) for c in values
        ]
        assignments.append(sql.SQL("updated_at = now()"))
        self.conn.execute(
            sql.SQL("UPDATE {} SET {} WHERE id = %s").format(
                sql.Identifier(table), sql.SQL(", ").join(assignments),
            ),
            (*values.values(), row_id),
        )

    # ------------------------------------------------------------------ #
    # Lookups                                                              #
    # ------------------------------------------------------------------ #

    def get_or_create_lookup(self, table: str, name: str) -> int:
        """Upsert a name into comic_type / author / artist / genre (DO NOTHING on conflict)."""
        if table not in LOOKUP_TABLES:
            raise ValueError(f"not a lookup table: {table!r}")
        ident = sql.Identifier(table)
        self.conn.execute(
            sql.SQL("INSERT INTO {} (name) VALUES (%s) ON CONFLICT (name) DO NOTHING").format(ident),
            (name,),
        )
        row = self.conn.execute(
            sql.SQL("SELECT id FROM {} WHERE name = %s").format(ident),
            (name,),
        ).fetchone()
        return int(row[0])

    def link_genre(self, comic_id: int, genre_id: int) -> None:
        self.conn.execute(
            """
            INSERT INTO comic_to_genre (comic_id, genre_id)
            VALUES (%s, %s)
            ON CONFLICT (comic_id, genre_id) DO NOTHING
            """,
            (comic_id, genre_id),
        )

    # ------------------------------------------------------------------ #
    # Image rows                                                           #
    # ------------------------------------------------------------------ #

    def delete_images(self, kind: str, parent_id: int) -> int:
        table, parent_col, _ = IMAGE_TABLES[kind]
        cur = self.conn.execute(
            sql.SQL("DELETE FROM {} WHERE {} = %s").format(
                sql.Identifier(table), sql.Identifier(parent_col),
            ),
            (parent_id,),
        )
        return cur.rowcount

    def insert_image(self, kind: str, parent_id: int, path: str, ordinal: int) -> None:
        table, parent_col, ordinal_col = IMAGE_TABLES[kind]
        self.conn.execute(
            sql.SQL("INSERT INTO {} ({}, image_url, {}) VALUES (%s, %s, %s)").format(
                sql.Identifier(table), sql.Identifier(parent_col), sql.Identifier(ordinal_col),
            ),
            (parent_id, path, ordinal),
        )

    # ------------------------------------------------------------------ #
    # Transaction control                                                  #
    # ------------------------------------------------------------------ #

    @contextmanager
    def savepoint(self, name: str) -> Iterator[None]:
        """SAVEPOINT / RELEASE around the block; ROLLBACK TO on any exception."""
        self.conn.execute(f"SAVEPOINT {name}")
        try:
            yield
        except BaseException:
            try:
                self.conn.execute(f"ROLLBACK TO SAVEPOINT {name}")
            except psycopg.Error as rb_exc:
                log.warning("ROLLBACK TO SAVEPOINT %s failed: %s", name, rb_exc)
            raise
        self.conn.execute(f"RELEASE SAVEPOINT {name}")

    def commit(self) -> None:
        self.conn.commit()

    def rollback(self) -> None:
        self.conn.rollback()

    def count(self, table: str) -> int:
        row = self.conn.execute(
            sql.SQL("SELECT count(*) FROM {}").format(sql.Identifier(table))
        ).fetchone()
        return int(row[0])
