"""Integration tests for PostgresSeedStore and PersistenceCoordinator.

These tests run against an ephemeral PostgreSQL database with the schema
applied via the db_conn fixture in conftest.py.
"""

from __future__ import annotations

import psycopg
import pytest

from comic_seed.persistence import PersistenceCoordinator, UpsertAction
from comic_seed.repository import PostgresSeedStore
from comic_seed.schemas import ChapterSeed, ComicSeed, EntityType, UserSeed


@pytest.fixture()
def store(db_conn) -> PostgresSeedStore:
    conn, _ = db_conn
    return PostgresSeedStore(conn)


def _count(conn, table: str) -> int:
    return conn.execute(f"SELECT count(*) FROM {table}").fetchone()[0]


class TestStorePrimitives:
    def test_insert_find_update(self, store, db_conn):
        conn, _ = db_conn
        user_id = store.insert("user", {"email": "a@example.com", "name": "Ann"})
        assert store.find_id("user", {"email": "a@example.com"}) == user_id
        store.update("user", user_id, {"name": "Ann B"})
        row = conn.execute("SELECT name, updated_at >= created_at FROM app_user WHERE id = %s", (user_id,)).fetchone()
        assert row == ("Ann B", True)
        assert store.find_id("user", {"email": "nobody@example.com"}) is None

    def test_lookup_is_get_or_create(self, store, db_conn):
        conn, _ = db_conn
        first = store.get_or_create_lookup("author", "Chugong")
        second = store.get_or_create_lookup("author", "Chugong")
        assert first == second
        assert _count(conn, "author") == 1

    def test_lookup_rejects_unknown_table(self, store):
        with pytest.raises(ValueError):
            store.get_or_create_lookup("app_user", "x")

    def test_image_rows_replace(self, store, db_conn):
        conn, _ = db_conn
        comic_id = store.insert("comic", {"slug": "x", "title": "X"})
        for n, path in enumerate(["/a.jpg", "/b.jpg"], start=1):
            store.insert_image("comic", comic_id, path, n)
        assert store.delete_images("comic", comic_id) == 2
        assert _count(conn, "comic_image") == 0

    def test_savepoint_rolls_back_block_only(self, store, db_conn):
        conn, _ = db_conn
        store.insert("user", {"email": "keep@example.com", "name": "Keep"})
        with pytest.raises(psycopg.errors.UniqueViolation):
            with store.savepoint("sp_test"):
                store.insert("user", {"email": "keep@example.com", "name": "Dup"})
        # Transaction is still usable after ROLLBACK TO SAVEPOINT.
        assert store.count("app_user") == 1


class TestCoordinatorAgainstPostgres:
    def test_comic_and_chapter_round(self, store, db_conn):
        conn, _ = db_conn
        coord = PersistenceCoordinator(store, default_password="changeme", bcrypt_rounds=4)
        comic = ComicSeed(
            title="Solo Leveling", slug="solo-leveling", status="Completed", rating=9.5,
            author="Chugong", genres=["Action", "Fantasy"],
        )
        res = coord.upsert(EntityType.COMIC, comic, ["/covers/1.jpg", "/covers/2.jpg"])
        assert res.action is UpsertAction.CREATED

        ch = ChapterSeed(comic_slug="solo-leveling", chapter_number=1.5, title="Interlude")
        assert coord.upsert(EntityType.CHAPTER, ch, ["/p/1.jpg"]).action is UpsertAction.CREATED
        assert coord.upsert(EntityType.CHAPTER, ch, ["/p/1.jpg"]).action is UpsertAction.UPDATED

        assert _count(conn, "comic_to_genre") == 2
        assert _count(conn, "comic_image") == 2
        assert _count(conn, "chapter") == 1
        assert _count(conn, "chapter_image") == 1
        row = conn.execute("SELECT cover_image, status FROM comic WHERE slug = 'solo-leveling'").fetchone()
        assert row == ("/covers/1.jpg", "Completed")

    def test_constraint_violation_is_isolated(self, store, db_conn):
        conn, _ = db_conn
        coord = PersistenceCoordinator(store, bcrypt_rounds=4)
        coord.upsert(EntityType.USER, UserSeed(email="a@example.com", name="A"))
        # Bypass validation to hit the role CHECK constraint.
        bad = UserSeed.model_construct(email="b@example.com", name="B", role="owner", extensions={})
        res = coord.upsert(EntityType.USER, bad)
        assert res.action is UpsertAction.ERROR
        coord.upsert(EntityType.USER, UserSeed(email="c@example.com", name="C"))
        emails = [r[0] for r in conn.execute("SELECT email FROM app_user ORDER BY email").fetchall()]
        assert emails == ["a@example.com", "c@example.com"]
