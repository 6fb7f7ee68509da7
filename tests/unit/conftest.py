"""Unit test fixtures.

No database or network access required.
"""

from __future__ import annotations

from typing import Any

import pytest

from comic_seed.downloader import ImageDownloader, is_retryable_image_error
from comic_seed.image_cache import ImageDedupCache
from comic_seed.retry import RetryPolicy, UploadThrottle
from comic_seed.storage import NullStorageProvider

from fakes import FakeSession, FakeStore


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture()
def fake_store() -> FakeStore:
    return FakeStore()


@pytest.fixture()
def sleeps() -> list[float]:
    return []


@pytest.fixture()
def make_downloader(sleeps):
    """Build an ImageDownloader over a FakeSession with zero real waiting."""

    def _make(
        session: FakeSession,
        storage: Any = None,
        cache: ImageDedupCache | None = None,
        max_attempts: int = 3,
        **kwargs: Any,
    ) -> ImageDownloader:
        return ImageDownloader(
            storage if storage is not None else NullStorageProvider(),
            cache if cache is not None else ImageDedupCache(),
            session=session,
            retry_policy=RetryPolicy(
                max_attempts=max_attempts, base_delay=1.0, retryable=is_retryable_image_error,
            ),
            throttle=UploadThrottle(0.0),
            sleep=sleeps.append,
            **kwargs,
        )

    return _make
