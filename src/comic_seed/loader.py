"""comic_seed.loader

Reads raw JSON exports, normalizes each item and validates it against the
schema for its entity type.

Validation runs over the whole normalized batch first; when that fails the
batch is re-validated item by item so that one malformed record never
discards the rest ("salvage").  Every rejected record is logged with its
index and a readable reason, and optionally written to a RejectWriter.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Iterable

from pydantic import TypeAdapter, ValidationError

from comic_seed.normalize import normalize_record
from comic_seed.schemas import SCHEMAS, EntityType, SeedModel
from comic_seed.shared import RejectWriter

log = logging.getLogger(__name__)

SOURCE_PATTERNS: dict[EntityType, tuple[str, ...]] = {
    EntityType.USER: ("users.json",),
    EntityType.COMIC: ("comics.json", "comicsdata*.json"),
    EntityType.CHAPTER: ("chapters.json", "chaptersdata*.json"),
}

_WELL_KNOWN_KEYS = ("data", "items")

_batch_adapters: dict[type[SeedModel], TypeAdapter] = {}


@dataclass
class ValidationIssue:
    index: int
    reason: str
    source: str = ""


@dataclass
class LoadResult:
    entity_type: EntityType
    records: list[SeedModel] = field(default_factory=list)
    valid_count: int = 0
    invalid_count: int = 0
    errors: list[ValidationIssue] = field(default_factory=list)
    source_errors: list[str] = field(default_factory=list)

    @property
    def total(self) -> int:
        return self.valid_count + self.invalid_count


# ---------------------------------------------------------------------------
# Source discovery + extraction
# ---------------------------------------------------------------------------

def discover_sources(data_dir: Path, entity_type: EntityType) -> list[Path]:
    """Return the export files for *entity_type* under *data_dir*, in stable order."""
    found: list[Path] = []
    for pattern in SOURCE_PATTERNS[entity_type]:
        for path in sorted(data_dir.glob(pattern)):
            if path.is_file() and path not in found:
                found.append(path)
    return found


def extract_items(document: Any, entity_type: EntityType) -> list[Any]:
    """Find the first plausible array of items in a parsed JSON document.

    Tries, in order: the document itself, the keys ``data``, ``items`` and
    the entity's plural name, the largest array-valued property, and
    finally the whole document as a single item.
    """
    if isinstance(document, list):
        return document
    if not isinstance(document, dict):
        return [document]

    for key in _WELL_KNOWN_KEYS + (entity_type.plural, "results"):
        value = document.get(key)
        if isinstance(value, list):
            return value

    arrays = [v for v in document.values() if isinstance(v, list)]
    if arrays:
        return max(arrays, key=len)
    return [document]


def read_source(path: Path) -> Any:
    return json.loads(path.read_text(encoding="utf-8"))


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------

def format_validation_error(exc: ValidationError) -> str:
    parts = []
    for err in exc.errors():
        loc = ".".join(str(p) for p in err.get("loc", ())) or "record"
        parts.append(f"{loc}: {err.get('msg')}")
    return "; ".join(parts)


def _adapter_for(model: type[SeedModel]) -> TypeAdapter:
    adapter = _batch_adapters.get(model)
    if adapter is None:
        adapter = TypeAdapter(list[model])  # type: ignore[valid-type]
        _batch_adapters[model] = adapter
    return adapter


def validate_items(
    items: list[Any],
    entity_type: EntityType,
    source: str = "",
) -> tuple[list[SeedModel], list[ValidationIssue]]:
    """Validate a batch, salvaging item by item if whole-batch validation fails."""
    model = SCHEMAS[entity_type]
    normalized = [normalize_record(entity_type, item) for item in items]

    try:
        return _adapter_for(model).validate_python(normalized), []
    except ValidationError as exc:
        log.info(
            "%s: batch validation of %d %s failed (%d errors); salvaging per item",
            source or "<memory>", len(normalized), entity_type.plural, exc.error_count(),
        )

    records: list[SeedModel] = []
    issues: list[ValidationIssue] = []
    for idx, item in enumerate(normalized):
        try:
            records.append(model.model_validate(item))
        except ValidationError as exc:
            issues.append(ValidationIssue(idx, format_validation_error(exc), source))
    return records, issues


# ---------------------------------------------------------------------------
# load
# ---------------------------------------------------------------------------

def load(
    source_paths: Iterable[Path],
    entity_type: EntityType,
    rejects: RejectWriter | None = None,
) -> LoadResult:
    """Load, normalize and validate every item across *source_paths*.

    Guarantees ``valid_count + invalid_count`` equals the number of items
    extracted.  Unreadable sources are logged and recorded in
    ``source_errors``; they contribute no items.
    """
    result = LoadResult(entity_type=entity_type)

    for path in source_paths:
        path = Path(path)
        try:
            document = read_source(path)
        except (OSError, ValueError) as exc:
            log.warning("Skipping unreadable source %s: %s", path, exc)
            result.source_errors.append(f"{path}: {exc}")
            continue

        items = extract_items(document, entity_type)
        records, issues = validate_items(items, entity_type, source=str(path))
        for issue in issues:
            log.warning(
                "Rejected %s #%d from %s: %s",
                entity_type.value, issue.index, path.name, issue.reason,
            )
            if rejects is not None:
                rejects.write(entity_type.value, str(path), issue.index, items[issue.index], issue.reason)

        result.records.extend(records)
        result.errors.extend(issues)
        result.valid_count += len(records)
        result.invalid_count += len(issues)
        log.info(
            "Loaded %s: %d valid, %d invalid %s",
            path.name, len(records), len(issues), entity_type.plural,
        )

    return result
