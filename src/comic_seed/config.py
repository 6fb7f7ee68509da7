"""Environment-driven settings for a seed run.

CLI flags override these values; see run_seed.main.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Mapping

from comic_seed.shared import ConfigurationError

UPLOAD_PROVIDERS = ("local", "gcs")


@dataclass(frozen=True)
class SeedSettings:
    database_url: str | None = None
    upload_provider: str = "local"
    image_root: Path = Path("./public")
    gcs_bucket: str | None = None
    gcs_prefix: str = "seed"
    default_password: str | None = None
    data_dir: Path = Path(".")
    concurrency: int = 5
    fetch_timeout: float = 45.0
    fetch_attempts: int = 3
    phase_attempts: int = 2
    phase_timeout: float | None = None
    upload_interval: float = 0.1
    bcrypt_rounds: int = 12

    @classmethod
    def from_env(cls, env: Mapping[str, str] | None = None) -> SeedSettings:
        env = os.environ if env is None else env

        def _get(name: str) -> str | None:
            v = env.get(name)
            return v.strip() if v and v.strip() else None

        def _num(name: str, cast, default):
            raw = _get(name)
            if raw is None:
                return default
            try:
                return cast(raw)
            except ValueError as exc:
                raise ConfigurationError(f"{name} must be a number, got {raw!r}") from exc

        return cls(
            database_url=_get("DATABASE_URL"),
            upload_provider=(_get("UPLOAD_PROVIDER") or "local").lower(),
            image_root=Path(_get("SEED_IMAGE_ROOT") or "./public"),
            gcs_bucket=_get("GCS_BUCKET"),
            gcs_prefix=_get("GCS_PREFIX") or "seed",
            default_password=env.get("SEED_DEFAULT_PASSWORD") or None,
            data_dir=Path(_get("SEED_DATA_DIR") or "."),
            concurrency=_num("SEED_IMAGE_CONCURRENCY", int, 5),
            fetch_timeout=_num("SEED_FETCH_TIMEOUT", float, 45.0),
            fetch_attempts=_num("SEED_FETCH_ATTEMPTS", int, 3),
            phase_attempts=_num("SEED_PHASE_ATTEMPTS", int, 2),
            phase_timeout=_num("SEED_PHASE_TIMEOUT", float, None),
            upload_interval=_num("SEED_UPLOAD_INTERVAL", float, 0.1),
            bcrypt_rounds=_num("SEED_BCRYPT_ROUNDS", int, 12),
        )

    def with_overrides(self, **changes) -> SeedSettings:
        """Apply CLI values that were actually given (None means 'not set')."""
        return replace(self, **{k: v for k, v in changes.items() if v is not None})

    def validate(self) -> SeedSettings:
        if not self.database_url:
            raise ConfigurationError("DATABASE_URL (or --db-dsn) is required")
        if self.upload_provider not in UPLOAD_PROVIDERS:
            raise ConfigurationError(
                f"UPLOAD_PROVIDER must be one of {', '.join(UPLOAD_PROVIDERS)}, "
                f"got {self.upload_provider!r}"
            )
        if self.upload_provider == "gcs" and not self.gcs_bucket:
            raise ConfigurationError("UPLOAD_PROVIDER=gcs requires GCS_BUCKET")
        if self.concurrency < 1:
            raise ConfigurationError("image concurrency must be at least 1")
        if self.fetch_attempts < 1 or self.phase_attempts < 1:
            raise ConfigurationError("attempt ceilings must be at least 1")
        if not 4 <= self.bcrypt_rounds <= 31:
            raise ConfigurationError("SEED_BCRYPT_ROUNDS must be between 4 and 31")
        return self
