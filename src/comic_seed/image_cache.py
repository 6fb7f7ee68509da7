"""comic_seed.image_cache

Run-scoped image deduplication cache.

Three layers, all guarded by one mutex so the download worker pool can
share a single instance:

  (a) URL layer      sha256(url) -> resolved path, or the terminal error
  (b) filesystem     memoized existence checks, pre-loaded per target
                     directory by prime_from_directory()
  (c) content layer  (folder, sha256(bytes)) -> stored path, consulted after
                     a download to catch different URLs serving the same bytes;
                     files already on disk are hashed in lazily per folder

The cache is created by the orchestrator and passed to every phase and
worker; there is no module-level instance.
"""

from __future__ import annotations

import hashlib
import logging
import os
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable

log = logging.getLogger(__name__)


def url_key(url: str) -> str:
    return hashlib.sha256(url.encode("utf-8")).hexdigest()


def content_hash(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


@dataclass
class CacheEntry:
    local_path: str | None
    error: str | None = None


@dataclass
class CacheStats:
    url_hits: int = 0
    url_misses: int = 0
    fs_probes: int = 0
    fs_hits: int = 0
    content_hits: int = 0
    primed_files: int = 0
    indexed_files: int = 0

    def to_dict(self) -> dict[str, Any]:
        return dict(self.__dict__)


class ImageDedupCache:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._urls: dict[str, CacheEntry] = {}
        self._files: dict[str, bool] = {}
        self._primed: dict[str, int] = {}
        self._content: dict[tuple[str, str], str] = {}
        self._indexed: set[str] = set()
        self._key_locks: dict[str, threading.Lock] = {}
        self.stats = CacheStats()

    # ------------------------------------------------------------------ #
    # URL layer                                                            #
    # ------------------------------------------------------------------ #

    def is_processed(self, url: str) -> bool:
        with self._lock:
            return url_key(url) in self._urls

    def mark_processed(self, url: str, local_path: str) -> None:
        with self._lock:
            self._urls[url_key(url)] = CacheEntry(local_path)

    def mark_failed(self, url: str, error: str) -> None:
        """Remember a terminal failure; each caller applies its own fallback."""
        with self._lock:
            self._urls[url_key(url)] = CacheEntry(None, error)

    def get_local_path(self, url: str) -> str | None:
        entry = self.lookup(url)
        return entry.local_path if entry else None

    def get_error(self, url: str) -> str | None:
        entry = self.lookup(url)
        return entry.error if entry else None

    def lookup(self, url: str) -> CacheEntry | None:
        """Return the cached entry for *url*, counting the hit or miss."""
        with self._lock:
            entry = self._urls.get(url_key(url))
            if entry is None:
                self.stats.url_misses += 1
            else:
                self.stats.url_hits += 1
            return entry

    # ------------------------------------------------------------------ #
    # Filesystem layer                                                     #
    # ------------------------------------------------------------------ #

    @staticmethod
    def _norm(path: str | os.PathLike[str]) -> str:
        return os.path.abspath(os.path.normpath(os.fspath(path)))

    def _under_primed_dir(self, norm: str) -> bool:
        return any(norm == d or norm.startswith(d + os.sep) for d in self._primed)

    def exists_on_filesystem(self, path: str | os.PathLike[str]) -> bool:
        """Memoized existence check.

        Paths containing '..' are never accepted.  For a path under a primed
        directory the pre-loaded set is authoritative and no stat is made.
        """
        if ".." in Path(path).parts:
            return False
        norm = self._norm(path)
        with self._lock:
            known = self._files.get(norm)
            if known is not None:
                if known:
                    self.stats.fs_hits += 1
                return known
            if self._under_primed_dir(norm):
                return False
            self.stats.fs_probes += 1

        exists = os.path.isfile(norm)
        with self._lock:
            self._files[norm] = exists
            if exists:
                self.stats.fs_hits += 1
        return exists

    def record_file(self, path: str | os.PathLike[str]) -> None:
        with self._lock:
            self._files[self._norm(path)] = True

    def prime_from_directory(self, directory: str | os.PathLike[str]) -> int:
        """Walk *directory* once, recording every file in it as present.

        Returns the number of files found; repeated calls for the same
        directory return the original count without walking again.
        """
        root = self._norm(directory)
        with self._lock:
            if root in self._primed:
                return self._primed[root]

        found: list[str] = []
        if os.path.isdir(root):
            for dirpath, _dirnames, filenames in os.walk(root):
                found.extend(os.path.join(dirpath, name) for name in filenames)

        with self._lock:
            for f in found:
                self._files[f] = True
            self._primed[root] = len(found)
            self.stats.primed_files += len(found)
        log.debug("Primed %d existing files under %s", len(found), root)
        return len(found)

    def is_primed(self, directory: str | os.PathLike[str]) -> bool:
        with self._lock:
            return self._norm(directory) in self._primed

    # ------------------------------------------------------------------ #
    # Content layer                                                        #
    # ------------------------------------------------------------------ #

    def find_content(self, folder: str, digest: str) -> str | None:
        with self._lock:
            path = self._content.get((folder, digest))
            if path is not None:
                self.stats.content_hits += 1
            return path

    def register_content(self, folder: str, digest: str, local_path: str) -> str:
        """Record stored bytes; returns the path already registered, if any."""
        with self._lock:
            return self._content.setdefault((folder, digest), local_path)

    def index_folder_content(
        self,
        folder: str,
        directory: str | os.PathLike[str],
        path_for: Callable[[str], str],
    ) -> int:
        """Hash the files already in *directory* into the content layer for *folder*.

        Runs once per folder; later calls return 0.  *path_for* maps a file
        name to the path recorded for it.  Files are visited in name order so
        the same file wins on every run.
        """
        with self.lock_for(f"index:{folder}"):
            with self._lock:
                if folder in self._indexed:
                    return 0
            found = 0
            if os.path.isdir(directory):
                for entry in sorted(os.scandir(directory), key=lambda e: e.name):
                    if not entry.is_file() or entry.name.endswith(".part"):
                        continue
                    digest = content_hash(Path(entry.path).read_bytes())
                    with self._lock:
                        self._content.setdefault((folder, digest), path_for(entry.name))
                    found += 1
            with self._lock:
                self._indexed.add(folder)
                self.stats.indexed_files += found
        self.discard_lock(f"index:{folder}")
        if found:
            log.debug("Indexed %d existing files in %s", found, folder)
        return found

    # ------------------------------------------------------------------ #
    # Per-key locks                                                        #
    # ------------------------------------------------------------------ #

    def lock_for(self, key: str) -> threading.Lock:
        """Return the lock serialising work on *key* (a URL or content digest)."""
        with self._lock:
            lock = self._key_locks.get(key)
            if lock is None:
                lock = self._key_locks[key] = threading.Lock()
            return lock

    def discard_lock(self, key: str) -> None:
        """Forget the lock for *key* once its work is recorded in the cache."""
        with self._lock:
            self._key_locks.pop(key, None)

    @property
    def lock_count(self) -> int:
        with self._lock:
            return len(self._key_locks)

    def __len__(self) -> int:
        with self._lock:
            return len(self._urls)
