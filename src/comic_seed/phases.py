"""comic_seed.phases

The three seed phases, run in dependency order by the orchestrator:

  users     avatars -> avatars/<url-hash><ext>
  comics    cover + gallery -> comics/covers/<comic-slug>/<url-hash><ext>
  chapters  pages -> comics/chapters/<comic-slug>/chapter-<number>/<ordinal><ext>

Within a phase, records are handled in chunks: every image of a chunk is
resolved through the downloader's worker pool first, then each record is
upserted with its resolved paths.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Iterator, Sequence, TypeVar

from comic_seed.downloader import DownloadResult, ImageDownloader, image_extension
from comic_seed.image_cache import ImageDedupCache
from comic_seed.loader import load
from comic_seed.normalize import slug_name
from comic_seed.persistence import PersistenceCoordinator
from comic_seed.schemas import ChapterSeed, ComicSeed, EntityType, UserSeed
from comic_seed.shared import PhaseBudgetExceeded, RejectWriter, SeedStats

log = logging.getLogger(__name__)

AVATAR_FOLDER = "avatars"
COMIC_COVER_FOLDER = "comics/covers"
CHAPTER_IMAGE_FOLDER = "comics/chapters"
COMIC_FALLBACK = "/placeholder-comic.jpg"
USER_FALLBACK = "/placeholder-user.jpg"
RECORD_CHUNK = 25

T = TypeVar("T")


@dataclass
class PhaseContext:
    coordinator: PersistenceCoordinator
    downloader: ImageDownloader
    cache: ImageDedupCache
    sources: dict[EntityType, list[Path]] = field(default_factory=dict)
    rejects: RejectWriter | None = None
    concurrency: int = 5
    comic_fallback: str = COMIC_FALLBACK
    user_fallback: str = USER_FALLBACK
    deadline: float | None = None
    clock: Callable[[], float] = time.monotonic

    def check_budget(self, phase: str) -> None:
        if self.deadline is not None and self.clock() > self.deadline:
            raise PhaseBudgetExceeded(f"phase {phase!r} exceeded its time budget")

    def prime(self, folder: str) -> int:
        """Pre-load existing files under *folder* before any download in it."""
        root = self.downloader.storage.local_root
        if root is None:
            return 0
        return self.cache.prime_from_directory(Path(root) / folder)


def _chunks(items: Sequence[T], size: int) -> Iterator[Sequence[T]]:
    for start in range(0, len(items), size):
        yield items[start:start + size]


def _tally_images(stats: SeedStats, results: Sequence[DownloadResult]) -> list[str]:
    paths = []
    for r in results:
        if r.fallback:
            stats.image_errors += 1
        else:
            stats.images_resolved += 1
        paths.append(r.local_path)
    return paths


def _load_phase(ctx: PhaseContext, entity_type: EntityType, stats: SeedStats) -> list:
    result = load(ctx.sources.get(entity_type, []), entity_type, ctx.rejects)
    stats.invalid += result.invalid_count
    stats.warnings.extend(result.source_errors)
    return result.records


# ---------------------------------------------------------------------------
# Users
# ---------------------------------------------------------------------------

def seed_users(ctx: PhaseContext, stats: SeedStats) -> None:
    records: list[UserSeed] = _load_phase(ctx, EntityType.USER, stats)
    ctx.prime(AVATAR_FOLDER)

    for chunk in _chunks(records, RECORD_CHUNK):
        ctx.check_budget("users")
        with_image = [r for r in chunk if r.image]
        results = ctx.downloader.download_many(
            [r.image for r in with_image], AVATAR_FOLDER,
            concurrency=ctx.concurrency, fallback_path=ctx.user_fallback,
        )
        resolved = dict(zip((id(r) for r in with_image), _tally_images(stats, results)))

        for record in chunk:
            images = [resolved[id(record)]] if id(record) in resolved else []
            res = ctx.coordinator.upsert(EntityType.USER, record, images)
            stats.record(res.action.value, res.reason)

    log.info("users: %d created, %d updated, %d errors", stats.created, stats.updated, stats.errors)


# ---------------------------------------------------------------------------
# Comics
# ---------------------------------------------------------------------------

def seed_comics(ctx: PhaseContext, stats: SeedStats) -> None:
    records: list[ComicSeed] = _load_phase(ctx, EntityType.COMIC, stats)
    ctx.prime(COMIC_COVER_FOLDER)

    for idx, record in enumerate(records, start=1):
        ctx.check_budget("comics")
        results = ctx.downloader.download_many(
            record.all_images(), f"{COMIC_COVER_FOLDER}/{record.slug}",
            concurrency=ctx.concurrency, fallback_path=ctx.comic_fallback,
        )
        images = _tally_images(stats, results)
        res = ctx.coordinator.upsert(EntityType.COMIC, record, images)
        stats.record(res.action.value, res.reason)
        if idx % 50 == 0:
            log.info("comics: %d/%d processed", idx, len(records))

    log.info("comics: %d created, %d updated, %d errors", stats.created, stats.updated, stats.errors)


# ---------------------------------------------------------------------------
# Chapters
# ---------------------------------------------------------------------------

def chapter_folder(record: ChapterSeed) -> str:
    """Page folder keyed on (comic, chapter number); titles may repeat within a comic."""
    number = slug_name(f"chapter-{record.chapter_number:g}")
    return f"{CHAPTER_IMAGE_FOLDER}/{record.comic_slug}/{number}"


def seed_chapters(ctx: PhaseContext, stats: SeedStats) -> None:
    records: list[ChapterSeed] = _load_phase(ctx, EntityType.CHAPTER, stats)
    ctx.prime(CHAPTER_IMAGE_FOLDER)
    store = ctx.coordinator.store

    for idx, record in enumerate(records, start=1):
        ctx.check_budget("chapters")
        if store.find_id("comic", {"slug": record.comic_slug}) is None:
            reason = f"chapter {record.chapter_number:g}: parent comic {record.comic_slug!r} not found"
            log.warning("Skipped chapter: %s", reason)
            stats.record("skipped", reason)
            continue

        filenames = [f"{n}{image_extension(url)}" for n, url in enumerate(record.images, start=1)]
        results = ctx.downloader.download_many(
            record.images, chapter_folder(record),
            concurrency=ctx.concurrency, filenames=filenames, fallback_path=ctx.comic_fallback,
        )
        images = _tally_images(stats, results)
        res = ctx.coordinator.upsert(EntityType.CHAPTER, record, images)
        stats.record(res.action.value, res.reason)
        if idx % 100 == 0:
            log.info("chapters: %d/%d processed", idx, len(records))

    log.info("chapters: %d created, %d updated, %d skipped", stats.created, stats.updated, stats.skipped)


# Dependency order: chapters need their comic rows.
PHASES: list[tuple[str, EntityType, Callable[[PhaseContext, SeedStats], None]]] = [
    ("users", EntityType.USER, seed_users),
    ("comics", EntityType.COMIC, seed_comics),
    ("chapters", EntityType.CHAPTER, seed_chapters),
]
