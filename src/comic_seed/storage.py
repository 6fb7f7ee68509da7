"""comic_seed.storage

Storage providers for downloaded image bytes.

The pipeline only sees the StorageProvider protocol; the concrete provider
(local disk, Google Cloud Storage, or a no-op for dry runs) is chosen once
at startup from configuration.
"""

from __future__ import annotations

import logging
import mimetypes
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Any, Protocol

from comic_seed.shared import ConfigurationError

if TYPE_CHECKING:
    from comic_seed.config import SeedSettings

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class UploadOptions:
    folder: str
    filename: str
    tags: tuple[str, ...] = ()


@dataclass
class UploadResult:
    url: str | None
    success: bool
    error: str | None = None
    public_id: str | None = None
    size: int = 0


def public_path(folder: str, filename: str) -> str:
    """Site-relative path served for a stored file: '/<folder>/<filename>'."""
    return "/" + "/".join(p.strip("/") for p in (folder, filename) if p.strip("/"))


def _content_type(filename: str) -> str:
    return mimetypes.guess_type(filename)[0] or "application/octet-stream"


class StorageProvider(Protocol):
    # Directory a local provider writes into, for filesystem probing; None for remote.
    local_root: Path | None

    def upload(self, data: bytes, options: UploadOptions) -> UploadResult:
        ...

    def delete(self, public_id: str) -> bool:
        ...


# ---------------------------------------------------------------------------
# Local disk
# ---------------------------------------------------------------------------

@dataclass
class LocalStorageProvider:
    """Write files below base_dir; the public URL is the path relative to it."""

    base_dir: Path

    @property
    def local_root(self) -> Path:
        return self.base_dir

    def path_for(self, folder: str, filename: str) -> Path:
        return self.base_dir / folder.strip("/") / filename

    def upload(self, data: bytes, options: UploadOptions) -> UploadResult:
        dest = self.path_for(options.folder, options.filename)
        tmp = dest.with_name(dest.name + ".part")
        try:
            dest.parent.mkdir(parents=True, exist_ok=True)
            tmp.write_bytes(data)
            os.replace(tmp, dest)
        except OSError as exc:
            if tmp.exists():
                tmp.unlink()
            return UploadResult(url=None, success=False, error=f"local write failed for {dest}: {exc}")
        public_id = f"{options.folder.strip('/')}/{options.filename}"
        return UploadResult(
            url=public_path(options.folder, options.filename),
            success=True,
            public_id=public_id,
            size=len(data),
        )

    def delete(self, public_id: str) -> bool:
        target = self.base_dir / public_id.lstrip("/")
        if ".." in Path(public_id).parts or not target.is_file():
            return False
        target.unlink()
        return True


# ---------------------------------------------------------------------------
# Google Cloud Storage
# ---------------------------------------------------------------------------

@dataclass
class GcsStorageProvider:
    """Upload image bytes to GCS. Bucket + prefix are set at construction."""

    bucket_name: str
    prefix: str = "seed"
    local_root: Path | None = None
    _bucket: Any = field(default=None, init=False, repr=False)

    def _get_bucket(self) -> Any:
        if self._bucket is None:
            from google.cloud import storage  # type: ignore[import-untyped]

            self._bucket = storage.Client().bucket(self.bucket_name)
        return self._bucket

    def _object_path(self, folder: str, filename: str) -> str:
        parts = [self.prefix.strip("/"), folder.strip("/"), filename]
        return "/".join(p for p in parts if p)

    def upload(self, data: bytes, options: UploadOptions) -> UploadResult:
        obj_path = self._object_path(options.folder, options.filename)
        try:
            blob = self._get_bucket().blob(obj_path)
            if options.tags:
                blob.metadata = {"tags": ",".join(options.tags)}
            blob.upload_from_string(data, content_type=_content_type(options.filename))
        except Exception as exc:  # noqa: BLE001
            return UploadResult(url=None, success=False, error=f"gcs upload failed for {obj_path}: {exc}")
        return UploadResult(
            url=f"https://storage.googleapis.com/{self.bucket_name}/{obj_path}",
            success=True,
            public_id=obj_path,
            size=len(data),
        )

    def delete(self, public_id: str) -> bool:
        blob = self._get_bucket().blob(public_id)
        if not blob.exists():
            return False
        blob.delete()
        return True


# ---------------------------------------------------------------------------
# No-op (dry run / unit tests)
# ---------------------------------------------------------------------------

@dataclass
class NullStorageProvider:
    """Accept every upload without writing anything."""

    local_root: Path | None = None
    uploads: list[str] = field(default_factory=list)

    def upload(self, data: bytes, options: UploadOptions) -> UploadResult:
        public_id = f"{options.folder.strip('/')}/{options.filename}"
        self.uploads.append(public_id)
        return UploadResult(url=f"null://{public_id}", success=True, public_id=public_id, size=len(data))

    def delete(self, public_id: str) -> bool:
        return public_id in self.uploads


def build_storage_provider(settings: SeedSettings, dry_run: bool = False) -> StorageProvider:
    """Select the provider named by UPLOAD_PROVIDER; dry runs never store."""
    if dry_run:
        log.info("Dry run: image uploads are discarded")
        return NullStorageProvider(local_root=settings.image_root)
    if settings.upload_provider == "local":
        return LocalStorageProvider(base_dir=settings.image_root)
    if settings.upload_provider == "gcs":
        if not settings.gcs_bucket:
            raise ConfigurationError("UPLOAD_PROVIDER=gcs requires GCS_BUCKET")
        return GcsStorageProvider(bucket_name=settings.gcs_bucket, prefix=settings.gcs_prefix)
    raise ConfigurationError(f"unknown upload provider {settings.upload_provider!r}")
