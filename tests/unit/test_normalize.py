"""Unit tests for comic_seed.normalize."""

import pytest

from comic_seed.normalize import (
    ABSENT,
    Scalar,
    ScalarList,
    coerce_field,
    extract_identifier,
    normalize_email,
    normalize_image_list,
    normalize_record,
    normalize_space,
    parse_chapter_number,
    slug_name,
    split_list,
    trim,
)
from comic_seed.schemas import EntityType


# ---------------------------------------------------------------------------
# scalar rules
# ---------------------------------------------------------------------------

class TestTrim:
    def test_strips_whitespace(self):
        assert trim("  hello  ") == "hello"

    def test_empty_string_returns_none(self):
        assert trim("") is None

    def test_none_returns_none(self):
        assert trim(None) is None


class TestNormalizeSpace:
    def test_collapses_runs(self):
        assert normalize_space("  Solo   Leveling\t ") == "Solo Leveling"


class TestNormalizeEmail:
    def test_lowercases(self):
        assert normalize_email(" Reader@Example.COM ") == "reader@example.com"


class TestSlugName:
    def test_basic(self):
        assert slug_name("Solo Leveling: Ragnarok") == "solo-leveling-ragnarok"

    def test_strips_accents(self):
        assert slug_name("Café Délice") == "cafe-delice"

    def test_only_symbols_returns_none(self):
        assert slug_name("!!!") is None


class TestParseChapterNumber:
    @pytest.mark.parametrize("text,expected", [
        ("Chapter 12", 12.0),
        ("chapter 12.5 - The Return", 12.5),
        ("Vol. 2 Chapter-7", 7.0),
        ("42", 42.0),
    ])
    def test_parses(self, text, expected):
        assert parse_chapter_number(text) == expected

    def test_unparseable(self):
        assert parse_chapter_number("Prologue") is None
        assert parse_chapter_number(None) is None


# ---------------------------------------------------------------------------
# field shapes
# ---------------------------------------------------------------------------

class TestCoerceField:
    def test_none_is_absent(self):
        assert coerce_field(None) is ABSENT

    def test_blank_string_is_absent(self):
        assert coerce_field("   ") is ABSENT

    def test_string_is_scalar(self):
        assert coerce_field(" Oda ") == Scalar("Oda")

    def test_number_is_scalar(self):
        assert coerce_field(7) == Scalar("7")

    def test_object_uses_identifier(self):
        assert coerce_field({"id": 3, "name": "Toriyama"}) == Scalar("Toriyama")

    def test_list_flattens(self):
        shape = coerce_field(["A", {"name": "B"}, None, ["C"]])
        assert shape == ScalarList(("A", "B", "C"))
        assert shape.first() == "A"

    def test_empty_list_is_absent(self):
        assert coerce_field([None, ""]) is ABSENT

    def test_absent_helpers(self):
        assert ABSENT.first() is None
        assert ABSENT.as_list() == []


class TestExtractIdentifier:
    def test_nested_person_name(self):
        assert extract_identifier({"person": {"name": "Kishimoto"}}, ("name",)) == "Kishimoto"

    def test_nested_attributes_name(self):
        assert extract_identifier({"attributes": {"name": "Action"}}, ("title",)) == "Action"

    def test_nothing_usable(self):
        assert extract_identifier({"foo": "bar"}, ("name",)) is None


class TestSplitList:
    def test_comma_string(self):
        assert split_list("Action, Fantasy;Drama") == ["Action", "Fantasy", "Drama"]

    def test_objects_and_duplicates(self):
        assert split_list([{"name": "Action"}, "Action", "Romance"]) == ["Action", "Romance"]


class TestNormalizeImageList:
    def test_merges_fields_in_order_without_repeats(self):
        raw = {
            "images": ["https://a/1.jpg", {"url": "https://a/2.jpg"}],
            "image_urls": ["https://a/2.jpg", {"src": "https://a/3.jpg"}],
        }
        assert normalize_image_list(raw, ("images", "image_urls")) == [
            "https://a/1.jpg", "https://a/2.jpg", "https://a/3.jpg",
        ]


# ---------------------------------------------------------------------------
# normalize_record
# ---------------------------------------------------------------------------

class TestNormalizeUser:
    def test_aliases_and_extensions(self):
        out = normalize_record(EntityType.USER, {
            "emailAddress": "Fan@Example.com",
            "fullName": "Big Fan",
            "avatar": {"url": "https://cdn/a.png"},
            "role": "ADMIN",
            "favouriteColour": "blue",
        })
        assert out["email"] == "fan@example.com"
        assert out["name"] == "Big Fan"
        assert out["image"] == "https://cdn/a.png"
        assert out["role"] == "admin"
        assert out["extensions"] == {"favouriteColour": "blue"}


class TestNormalizeComic:
    def test_derives_slug_and_collapses_people(self):
        out = normalize_record(EntityType.COMIC, {
            "title": "Tower of God",
            "authors": [{"name": "SIU"}, {"name": "Other"}],
            "artist": {"person": {"name": "SIU"}},
            "genres": "Action, Fantasy",
            "coverImage": "https://cdn/cover.jpg",
            "image_urls": ["https://cdn/1.jpg"],
            "status": "ongoing",
        })
        assert out["slug"] == "tower-of-god"
        assert out["author"] == "SIU"
        assert out["artist"] == "SIU"
        assert out["genres"] == ["Action", "Fantasy"]
        assert out["cover_image"] == "https://cdn/cover.jpg"
        assert out["images"] == ["https://cdn/1.jpg"]
        assert out["extensions"] == {}

    def test_explicit_slug_wins(self):
        out = normalize_record(EntityType.COMIC, {"title": "X", "slug": "Custom Slug"})
        assert out["slug"] == "custom-slug"


class TestNormalizeChapter:
    def test_number_parsed_from_name(self):
        out = normalize_record(EntityType.CHAPTER, {
            "name": "Chapter 3.5",
            "comic": {"title": "Tower of God", "slug": "tower-of-god"},
            "images": ["https://cdn/p1.jpg", "https://cdn/p2.jpg"],
        })
        assert out["chapter_number"] == 3.5
        assert out["comic_slug"] == "tower-of-god"
        assert out["slug"] == "tower-of-god-chapter-3-5"
        assert out["images"] == ["https://cdn/p1.jpg", "https://cdn/p2.jpg"]

    def test_comic_reference_from_slug_key(self):
        out = normalize_record(EntityType.CHAPTER, {"comicSlug": "Solo Leveling", "chapterNumber": 1})
        assert out["comic_slug"] == "solo-leveling"
        assert out["chapter_number"] == 1
        assert out["slug"] == "solo-leveling-chapter-1"

    def test_string_number(self):
        out = normalize_record(EntityType.CHAPTER, {"comic": "a", "chapterNumber": "Chapter 9"})
        assert out["chapter_number"] == 9.0


def test_non_object_item_passes_through():
    assert normalize_record(EntityType.USER, "not-a-record") == "not-a-record"
