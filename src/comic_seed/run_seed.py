"""comic_seed.run_seed

Command-line entry point for a seed run.

  python -m comic_seed.run_seed --db-dsn postgresql://... --data-dir ./data
  python -m comic_seed.run_seed --comics-only --dry-run --verbose

Exit status is 1 when configuration is invalid, the database is
unreachable, or any selected phase ended in an unrecovered error.
"""

from __future__ import annotations

import logging
import sys
import time
import uuid
from datetime import datetime
from pathlib import Path
from typing import Callable

import click
import psycopg

from comic_seed.config import SeedSettings
from comic_seed.downloader import ImageDownloader, image_retry_policy
from comic_seed.image_cache import ImageDedupCache
from comic_seed.loader import discover_sources
from comic_seed.orchestrator import PHASE_NAMES, RunConfig, SeedOrchestrator, build_seed_report
from comic_seed.persistence import PersistenceCoordinator
from comic_seed.phases import PhaseContext
from comic_seed.repository import PostgresSeedStore
from comic_seed.retry import RetryPolicy, UploadThrottle
from comic_seed.schemas import EntityType
from comic_seed.shared import ConfigurationError, RejectWriter, write_run_report
from comic_seed.storage import build_storage_provider

log = logging.getLogger(__name__)

DB_CONNECT_ATTEMPTS = 2


def connect_with_retry(
    dsn: str,
    attempts: int = DB_CONNECT_ATTEMPTS,
    sleep: Callable[[float], None] = time.sleep,
) -> psycopg.Connection:
    policy = RetryPolicy(
        max_attempts=attempts,
        base_delay=1.0,
        retryable=lambda exc: isinstance(exc, psycopg.OperationalError),
    )
    return policy.call(
        lambda: psycopg.connect(dsn, autocommit=False),
        description="database connect",
        sleep=sleep,
    )


def _select_phases(users_only: bool, comics_only: bool, chapters_only: bool, run_id: str) -> tuple[str, ...]:
    chosen = [name for name, flag in zip(PHASE_NAMES, (users_only, comics_only, chapters_only)) if flag]
    if len(chosen) > 1:
        click.echo(
            f"[{run_id}] FATAL: --users-only, --comics-only and --chapters-only are mutually exclusive",
            err=True,
        )
        sys.exit(1)
    return tuple(chosen) or PHASE_NAMES


@click.command()
@click.option("--db-dsn", default=None, help="PostgreSQL DSN (default: $DATABASE_URL)")
@click.option("--data-dir", default=None, type=click.Path(file_okay=False), help="Directory holding the JSON exports (default: $SEED_DATA_DIR or .)")
@click.option("--users-path", multiple=True, type=click.Path(dir_okay=False), help="Explicit users export; repeatable")
@click.option("--comics-path", multiple=True, type=click.Path(dir_okay=False), help="Explicit comics export; repeatable")
@click.option("--chapters-path", multiple=True, type=click.Path(dir_okay=False), help="Explicit chapters export; repeatable")
@click.option("--users-only", is_flag=True, default=False, help="Run only the users phase")
@click.option("--comics-only", is_flag=True, default=False, help="Run only the comics phase")
@click.option("--chapters-only", is_flag=True, default=False, help="Run only the chapters phase")
@click.option("--upload-provider", default=None, type=click.Choice(["local", "gcs"]), help="Storage provider (default: $UPLOAD_PROVIDER or local)")
@click.option("--image-root", default=None, type=click.Path(file_okay=False), help="[local] Root directory for stored images")
@click.option("--concurrency", default=None, type=int, help="Concurrent image downloads (default 5)")
@click.option("--verify-local-paths", is_flag=True, default=False, help="Fall back when a local-style image path does not exist under the image root")
@click.option("--dry-run", is_flag=True, default=False)
@click.option("--verbose", is_flag=True, default=False)
@click.option("--continue-on-error", is_flag=True, default=False, help="Record a failed phase and carry on with the next one")
@click.option("--run-id", default=None, help="Override UUID for log correlation")
@click.option("--rejects-path", default=None, type=click.Path(), help="CSV for records rejected by validation")
def main(
    db_dsn: str | None,
    data_dir: str | None,
    users_path: tuple[str, ...],
    comics_path: tuple[str, ...],
    chapters_path: tuple[str, ...],
    users_only: bool,
    comics_only: bool,
    chapters_only: bool,
    upload_provider: str | None,
    image_root: str | None,
    concurrency: int | None,
    verify_local_paths: bool,
    dry_run: bool,
    verbose: bool,
    continue_on_error: bool,
    run_id: str | None,
    rejects_path: str | None,
) -> None:
    """Seed users, comics and chapters from JSON exports."""
    run_id = run_id or str(uuid.uuid4())
    started_at = datetime.utcnow().isoformat()
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    click.echo(f"[{run_id}] Starting seed run (dry_run={dry_run})")
    phases = _select_phases(users_only, comics_only, chapters_only, run_id)

    try:
        settings = SeedSettings.from_env().with_overrides(
            database_url=db_dsn,
            data_dir=Path(data_dir) if data_dir else None,
            upload_provider=upload_provider,
            image_root=Path(image_root) if image_root else None,
            concurrency=concurrency,
        ).validate()
        storage = build_storage_provider(settings, dry_run=dry_run)
    except ConfigurationError as exc:
        click.echo(f"[{run_id}] FATAL: {exc}", err=True)
        sys.exit(1)

    explicit = {
        EntityType.USER: users_path,
        EntityType.COMIC: comics_path,
        EntityType.CHAPTER: chapters_path,
    }
    sources = {
        et: [Path(p) for p in paths] if paths else discover_sources(settings.data_dir, et)
        for et, paths in explicit.items()
    }
    for et, paths in sources.items():
        click.echo(f"[{run_id}] {et.plural}: {', '.join(str(p) for p in paths) or '(no sources)'}")

    try:
        conn = connect_with_retry(settings.database_url)  # type: ignore[arg-type]
    except psycopg.OperationalError as exc:
        click.echo(f"[{run_id}] FATAL: cannot connect to database: {exc}", err=True)
        sys.exit(1)

    rejects_file = Path(rejects_path or f"./artifacts/rejects/{run_id}.csv")
    rejects = RejectWriter(rejects_file)
    cache = ImageDedupCache()
    downloader = ImageDownloader(
        storage,
        cache,
        retry_policy=image_retry_policy(settings.fetch_attempts),
        timeout=settings.fetch_timeout,
        concurrency=settings.concurrency,
        throttle=UploadThrottle(settings.upload_interval),
        verify_local_paths=verify_local_paths,
    )
    try:
        store = PostgresSeedStore(conn)
        coordinator = PersistenceCoordinator(
            store,
            default_password=settings.default_password,
            bcrypt_rounds=settings.bcrypt_rounds,
        )
        context = PhaseContext(
            coordinator=coordinator,
            downloader=downloader,
            cache=cache,
            sources=sources,
            rejects=rejects,
            concurrency=settings.concurrency,
        )
        orchestrator = SeedOrchestrator(
            store,
            context,
            phase_attempts=settings.phase_attempts,
            phase_timeout=settings.phase_timeout,
        )
        summary = orchestrator.run(RunConfig(
            dry_run=dry_run,
            verbose=verbose,
            phases=phases,
            continue_on_error=continue_on_error,
        ))
    except Exception:
        conn.rollback()
        raise
    finally:
        conn.close()
        rejects.close()

    click.echo(build_seed_report(summary))
    report_path = write_run_report(
        run_id, started_at, dry_run,
        {et.plural: [str(p) for p in paths] for et, paths in sources.items()},
        summary.to_dict(),
    )
    click.echo(f"[{run_id}] Run report: {report_path}")
    if rejects.count:
        click.echo(f"[{run_id}] {rejects.count} rejected records written to {rejects_file}")

    if summary.exit_code:
        click.echo(
            f"[{run_id}] {len(summary.failed_phases)} phase(s) failed: "
            f"{', '.join(summary.failed_phases)}; exiting non-zero",
            err=True,
        )
        sys.exit(summary.exit_code)


if __name__ == "__main__":
    main()
