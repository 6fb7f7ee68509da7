"""comic_seed.downloader

Download-and-store pipeline for image references.

Per image:
  PENDING -> RESOLVED                       (cache hit, file already on disk,
                                             or a local-style path)
  PENDING -> FETCHING -> STORING -> RESOLVED
  FETCHING -> RETRY_WAIT -> FETCHING ...    (bounded by the retry policy)
  ... -> FALLBACK                           (retries exhausted, or a
                                             non-retryable status)

A fallback still counts as success: the owning record keeps the placeholder
path and the original error is reported alongside it.  The cache remembers
only the error, so each caller gets its own placeholder on a repeat.

Bodies are streamed and the timeout bounds the whole fetch, not each read.

download_many() runs fixed-size batches on a thread pool and waits for each
batch to finish before starting the next, so at most ``concurrency`` fetches
are ever in flight.  Results are returned in input order.
"""

from __future__ import annotations

import logging
import os
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Sequence
from urllib.parse import urlparse

import requests

from comic_seed.image_cache import ImageDedupCache, content_hash, url_key
from comic_seed.retry import RetryPolicy, UploadThrottle
from comic_seed.shared import NetworkError, StorageError
from comic_seed.storage import StorageProvider, UploadOptions, public_path

log = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 45.0
DEFAULT_CONCURRENCY = 5
DEFAULT_FETCH_ATTEMPTS = 3
DEFAULT_FALLBACK = "/placeholder-comic.jpg"
NON_RETRYABLE_STATUSES = frozenset({401, 403, 404, 410})
IMAGE_EXTENSIONS = (".jpg", ".jpeg", ".png", ".gif", ".webp", ".avif", ".bmp", ".svg")
USER_AGENT = "comic-seed/0.1 (+bulk image import)"
CHUNK_SIZE = 64 * 1024


class ImageStatus(str, Enum):
    PENDING = "pending"
    FETCHING = "fetching"
    RETRY_WAIT = "retry_wait"
    STORING = "storing"
    RESOLVED = "resolved"
    FALLBACK = "fallback"


@dataclass
class ImageReference:
    source_url: str
    content_hash: str | None = None
    local_path: str | None = None
    status: ImageStatus = ImageStatus.PENDING
    attempts: int = 0
    error: str | None = None


@dataclass
class DownloadResult:
    success: bool
    local_path: str | None
    error: str | None = None
    cached: bool = False
    source_url: str = ""
    fallback: bool = False
    deduplicated: bool = False
    passthrough: bool = False
    reference: ImageReference | None = field(default=None, repr=False)


@dataclass
class ImageStats:
    requested: int = 0
    fetched: int = 0
    bytes_fetched: int = 0
    stored: int = 0
    cache_hits: int = 0
    filesystem_hits: int = 0
    content_dedups: int = 0
    passthrough: int = 0
    fallbacks: int = 0
    retries: int = 0
    _lock: threading.Lock = field(default_factory=threading.Lock, init=False, repr=False, compare=False)

    def incr(self, name: str, n: int = 1) -> None:
        with self._lock:
            setattr(self, name, getattr(self, name) + n)

    def to_dict(self) -> dict[str, Any]:
        return {k: v for k, v in self.__dict__.items() if not k.startswith("_")}


# ---------------------------------------------------------------------------
# URL helpers
# ---------------------------------------------------------------------------

def is_local_path(url: str) -> bool:
    """True for scheme-less references such as '/images/a.jpg' or 'covers/a.png'."""
    if url.startswith("//"):
        return False
    return urlparse(url).scheme == ""


def image_extension(url: str) -> str:
    ext = os.path.splitext(urlparse(url).path)[1].lower()
    return ext if ext in IMAGE_EXTENSIONS else ".jpg"


def image_filename(url: str) -> str:
    """Stable filename for a remote image: 16 hex chars of sha256(url) + extension."""
    return url_key(url)[:16] + image_extension(url)


def is_retryable_image_error(exc: BaseException) -> bool:
    return isinstance(exc, (NetworkError, StorageError)) and getattr(exc, "retryable", True)


def image_retry_policy(max_attempts: int = DEFAULT_FETCH_ATTEMPTS) -> RetryPolicy:
    """Per-image policy: 1s, 2s, 4s ... between attempts; 4xx-not-found classes fail fast."""
    return RetryPolicy(max_attempts=max_attempts, base_delay=1.0, retryable=is_retryable_image_error)


def _build_session() -> requests.Session:
    session = requests.Session()
    session.headers.update({"User-Agent": USER_AGENT, "Accept": "image/*,*/*;q=0.8"})
    return session


# ---------------------------------------------------------------------------
# Downloader
# ---------------------------------------------------------------------------

class ImageDownloader:
    def __init__(
        self,
        storage: StorageProvider,
        cache: ImageDedupCache,
        session: Any = None,
        retry_policy: RetryPolicy | None = None,
        fallback_path: str = DEFAULT_FALLBACK,
        timeout: float = DEFAULT_TIMEOUT,
        concurrency: int = DEFAULT_CONCURRENCY,
        throttle: UploadThrottle | None = None,
        verify_local_paths: bool = False,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.storage = storage
        self.cache = cache
        self.session = session if session is not None else _build_session()
        self.retry_policy = retry_policy or image_retry_policy()
        self.fallback_path = fallback_path
        self.timeout = timeout
        self.concurrency = max(1, concurrency)
        self.throttle = throttle or UploadThrottle(0.1)
        self.verify_local_paths = verify_local_paths
        self._sleep = sleep
        self._clock = clock
        self.stats = ImageStats()

    # ------------------------------------------------------------------ #
    # Public API                                                           #
    # ------------------------------------------------------------------ #

    def download_one(
        self,
        url: str,
        target_dir: str,
        filename: str | None = None,
        fallback_path: str | None = None,
    ) -> DownloadResult:
        """Resolve one image reference to a stored path (or the fallback)."""
        url = (url or "").strip()
        ref = ImageReference(source_url=url)
        fallback = fallback_path or self.fallback_path
        self.stats.incr("requested")

        if not url:
            return self._fallback(ref, fallback, "empty image reference")

        if is_local_path(url):
            return self._passthrough(ref, fallback)

        if url.startswith("//"):
            url = "https:" + url
        if urlparse(url).scheme not in ("http", "https"):
            return self._fallback(ref, fallback, f"unsupported image scheme in {url[:60]!r}")

        lock_key = "url:" + url_key(url)
        try:
            with self.cache.lock_for(lock_key):
                return self._resolve_remote(ref, url, target_dir, filename, fallback)
        finally:
            if self.cache.is_processed(url):
                self.cache.discard_lock(lock_key)

    def download_many(
        self,
        urls: Sequence[str],
        target_dir: str,
        concurrency: int | None = None,
        filenames: Sequence[str] | None = None,
        fallback_path: str | None = None,
    ) -> list[DownloadResult]:
        """Resolve *urls* in fixed-size batches; result ``i`` belongs to ``urls[i]``."""
        if not urls:
            return []
        if filenames is not None and len(filenames) != len(urls):
            raise ValueError("filenames must match urls one-to-one")
        limit = max(1, concurrency or self.concurrency)

        results: list[DownloadResult | None] = [None] * len(urls)
        with ThreadPoolExecutor(max_workers=limit, thread_name_prefix="img") as pool:
            for start in range(0, len(urls), limit):
                batch = range(start, min(start + limit, len(urls)))
                futures = {
                    i: pool.submit(
                        self.download_one,
                        urls[i],
                        target_dir,
                        filenames[i] if filenames is not None else None,
                        fallback_path,
                    )
                    for i in batch
                }
                for i, fut in futures.items():
                    results[i] = fut.result()
        return results  # type: ignore[return-value]

    # ------------------------------------------------------------------ #
    # Internals                                                            #
    # ------------------------------------------------------------------ #

    def _resolve_remote(
        self,
        ref: ImageReference,
        url: str,
        target_dir: str,
        filename: str | None,
        fallback: str,
    ) -> DownloadResult:
        entry = self.cache.lookup(url)
        if entry is not None:
            self.stats.incr("cache_hits")
            if entry.error is not None:
                log.debug("cache hit %s -> failed earlier: %s", url, entry.error)
                ref.local_path = fallback
                ref.error = entry.error
                ref.status = ImageStatus.FALLBACK
                return DownloadResult(
                    success=True, local_path=fallback, error=entry.error,
                    cached=True, source_url=url, fallback=True, reference=ref,
                )
            log.debug("cache hit %s -> %s", url, entry.local_path)
            ref.local_path = entry.local_path
            ref.status = ImageStatus.RESOLVED
            return DownloadResult(
                success=True, local_path=entry.local_path, cached=True, source_url=url, reference=ref,
            )

        filename = filename or image_filename(url)
        existing = self._existing_file(target_dir, filename)
        if existing is not None:
            self.stats.incr("filesystem_hits")
            self.cache.mark_processed(url, existing)
            ref.local_path = existing
            ref.status = ImageStatus.RESOLVED
            return DownloadResult(
                success=True, local_path=existing, cached=True, source_url=url, reference=ref,
            )

        try:
            path, deduplicated = self.retry_policy.call(
                lambda: self._fetch_and_store(ref, url, target_dir, filename),
                description=f"fetch {url}",
                sleep=self._sleep,
                on_retry=lambda attempt, exc: self._on_retry(ref, exc),
            )
        except (NetworkError, StorageError) as exc:
            self.cache.mark_failed(url, str(exc))
            return self._fallback(ref, fallback, str(exc))

        self.cache.mark_processed(url, path)
        ref.local_path = path
        ref.status = ImageStatus.RESOLVED
        return DownloadResult(
            success=True, local_path=path, source_url=url,
            deduplicated=deduplicated, reference=ref,
        )

    def _existing_file(self, target_dir: str, filename: str) -> str | None:
        root = self.storage.local_root
        if root is None:
            return None
        disk_path = Path(root) / target_dir.strip("/") / filename
        if self.cache.exists_on_filesystem(disk_path):
            return public_path(target_dir, filename)
        return None

    def _passthrough(self, ref: ImageReference, fallback: str) -> DownloadResult:
        url = ref.source_url
        root = self.storage.local_root
        if self.verify_local_paths and root is not None:
            if not self.cache.exists_on_filesystem(Path(root) / url.lstrip("/")):
                return self._fallback(ref, fallback, f"local image not found: {url}")
        self.stats.incr("passthrough")
        ref.local_path = url
        ref.status = ImageStatus.RESOLVED
        return DownloadResult(success=True, local_path=url, source_url=url, passthrough=True, reference=ref)

    def _fallback(self, ref: ImageReference, fallback: str, error: str) -> DownloadResult:
        self.stats.incr("fallbacks")
        log.warning("image fallback for %s: %s", ref.source_url or "<empty>", error)
        ref.local_path = fallback
        ref.error = error
        ref.status = ImageStatus.FALLBACK
        return DownloadResult(
            success=True, local_path=fallback, error=error,
            source_url=ref.source_url, fallback=True, reference=ref,
        )

    def _on_retry(self, ref: ImageReference, exc: BaseException) -> None:
        self.stats.incr("retries")
        ref.status = ImageStatus.RETRY_WAIT
        ref.error = str(exc)

    def _fetch(self, url: str) -> bytes:
        deadline = self._clock() + self.timeout
        timed_out = f"timed out after {self.timeout}s fetching {url}"
        try:
            resp = self.session.get(url, timeout=self.timeout, stream=True)
        except requests.Timeout as exc:
            raise NetworkError(timed_out) from exc
        except requests.RequestException as exc:
            raise NetworkError(f"network error fetching {url}: {exc}") from exc

        try:
            status = resp.status_code
            if status in NON_RETRYABLE_STATUSES:
                raise NetworkError(f"HTTP {status} fetching {url}", retryable=False, status=status)
            if status >= 400:
                raise NetworkError(f"HTTP {status} fetching {url}", status=status)
            chunks: list[bytes] = []
            try:
                for chunk in resp.iter_content(chunk_size=CHUNK_SIZE):
                    if self._clock() > deadline:
                        raise NetworkError(timed_out)
                    chunks.append(chunk)
            except requests.Timeout as exc:
                raise NetworkError(timed_out) from exc
            except requests.RequestException as exc:
                raise NetworkError(f"network error reading {url}: {exc}") from exc
        finally:
            resp.close()

        data = b"".join(chunks)
        if not data:
            raise NetworkError(f"empty body fetching {url}", status=status)
        self.stats.incr("fetched")
        self.stats.incr("bytes_fetched", len(data))
        return data

    def _fetch_and_store(
        self,
        ref: ImageReference,
        url: str,
        target_dir: str,
        filename: str,
    ) -> tuple[str, bool]:
        ref.attempts += 1
        ref.status = ImageStatus.FETCHING
        data = self._fetch(url)
        digest = content_hash(data)
        ref.content_hash = digest
        ref.status = ImageStatus.STORING

        folder = target_dir.strip("/")
        root = self.storage.local_root
        if root is not None:
            self.cache.index_folder_content(
                folder, Path(root) / folder, lambda name: public_path(folder, name),
            )
        lock_key = f"content:{folder}:{digest}"
        with self.cache.lock_for(lock_key):
            existing = self.cache.find_content(folder, digest)
            if existing is not None:
                self.stats.incr("content_dedups")
                log.debug("content dedup %s -> %s", url, existing)
                self.cache.discard_lock(lock_key)
                return existing, True

            self.throttle.wait()
            result = self.storage.upload(
                data, UploadOptions(folder=folder, filename=filename, tags=("seed", folder.split("/")[0])),
            )
            if not result.success or not result.url:
                raise StorageError(result.error or f"upload of {filename} returned no url")
            self.stats.incr("stored")
            if root is not None:
                self.cache.record_file(Path(root) / folder / filename)
            self.cache.register_content(folder, digest, result.url)
            self.cache.discard_lock(lock_key)
            return result.url, False
