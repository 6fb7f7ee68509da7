"""comic_seed.orchestrator

Runs the selected phases strictly in order: users, comics, chapters.

Each phase attempt runs inside its own savepoint with fresh counters, so a
failed attempt leaves no rows behind before it is retried.  A phase that
exhausts its retries either aborts the run or, with continue_on_error, is
recorded as failed and the next phase starts.  Committed phases stay
committed; a dry run rolls everything back at the end.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable

from comic_seed.phases import PHASES, PhaseContext
from comic_seed.repository import SeedStore
from comic_seed.retry import RetryPolicy
from comic_seed.shared import PhaseBudgetExceeded, PhaseError, SeedStats

log = logging.getLogger(__name__)

PHASE_NAMES = tuple(name for name, _, _ in PHASES)
DEFAULT_PHASE_ATTEMPTS = 2


def _phase_retryable(exc: BaseException) -> bool:
    return not isinstance(exc, PhaseBudgetExceeded)


@dataclass
class RunConfig:
    dry_run: bool = False
    verbose: bool = False
    phases: tuple[str, ...] = PHASE_NAMES
    continue_on_error: bool = False


@dataclass
class RunSummary:
    dry_run: bool = False
    phases: dict[str, SeedStats] = field(default_factory=dict)
    failed_phases: dict[str, str] = field(default_factory=dict)
    aborted: bool = False
    images: dict[str, Any] = field(default_factory=dict)
    cache: dict[str, Any] = field(default_factory=dict)

    @property
    def exit_code(self) -> int:
        return 1 if self.failed_phases else 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "dry_run": self.dry_run,
            "aborted": self.aborted,
            "exit_code": self.exit_code,
            "phases": {name: stats.to_dict() for name, stats in self.phases.items()},
            "failed_phases": self.failed_phases,
            "images": self.images,
            "cache": self.cache,
        }


class SeedOrchestrator:
    def __init__(
        self,
        store: SeedStore,
        context: PhaseContext,
        phase_retry: RetryPolicy | None = None,
        phase_attempts: int = DEFAULT_PHASE_ATTEMPTS,
        phase_timeout: float | None = None,
        phases: list | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.store = store
        self.context = context
        self.phase_retry = phase_retry or RetryPolicy(
            max_attempts=phase_attempts, base_delay=1.0, retryable=_phase_retryable,
        )
        self.phase_timeout = phase_timeout
        self.phases = phases if phases is not None else PHASES
        self._sleep = sleep

    def run(self, config: RunConfig) -> RunSummary:
        summary = RunSummary(dry_run=config.dry_run)
        unknown = set(config.phases) - {name for name, _, _ in self.phases}
        if unknown:
            raise ValueError(f"unknown phase(s): {', '.join(sorted(unknown))}")

        for name, _entity_type, fn in self.phases:
            if name not in config.phases:
                continue
            log.info("Phase %s starting", name)
            try:
                stats = self._run_phase(name, fn)
            except PhaseError as exc:
                log.error("%s", exc)
                summary.failed_phases[name] = str(exc.cause)
                summary.phases[name] = SeedStats(errors=1, warnings=[str(exc)])
                if not config.continue_on_error:
                    summary.aborted = True
                    break
                continue
            summary.phases[name] = stats
            if not config.dry_run:
                self.store.commit()
            log.info("Phase %s finished: %s", name, stats.to_dict())

        if config.dry_run:
            self.store.rollback()
            log.info("Dry run: all database writes rolled back")
        else:
            self.store.commit()

        summary.images = self.context.downloader.stats.to_dict()
        summary.cache = self.context.cache.stats.to_dict()
        return summary

    def _run_phase(self, name: str, fn: Callable[[PhaseContext, SeedStats], None]) -> SeedStats:
        attempts = 0

        def attempt() -> SeedStats:
            nonlocal attempts
            attempts += 1
            stats = SeedStats()
            self.context.deadline = (
                self.context.clock() + self.phase_timeout if self.phase_timeout else None
            )
            try:
                with self.store.savepoint(f"phase_{name}_{attempts}"):
                    fn(self.context, stats)
            finally:
                self.context.deadline = None
            return stats

        try:
            return self.phase_retry.call(attempt, description=f"phase {name}", sleep=self._sleep)
        except Exception as exc:
            raise PhaseError(name, attempts, exc) from exc


# ---------------------------------------------------------------------------
# Report builder
# ---------------------------------------------------------------------------

def build_seed_report(summary: RunSummary) -> str:
    lines = [
        "=== Seed Run Report ===",
        f"dry_run          : {summary.dry_run}",
        f"aborted          : {summary.aborted}",
        "",
        "--- Entities ---",
        f"{'phase':<10} {'created':>8} {'updated':>8} {'skipped':>8} {'errors':>8} {'invalid':>8}",
    ]
    for name, stats in summary.phases.items():
        lines.append(
            f"{name:<10} {stats.created:>8} {stats.updated:>8} {stats.skipped:>8} "
            f"{stats.errors:>8} {stats.invalid:>8}"
        )
    if summary.images:
        lines += ["", "--- Images ---"]
        lines += [f"{k:<17}: {v}" for k, v in summary.images.items()]
    if summary.cache:
        lines += ["", "--- Cache ---"]
        lines += [f"{k:<17}: {v}" for k, v in summary.cache.items()]
    if summary.failed_phases:
        lines += ["", "--- Failed phases ---"]
        lines += [f"  {name}: {err}" for name, err in summary.failed_phases.items()]
    warnings = [w for stats in summary.phases.values() for w in stats.warnings]
    if warnings:
        lines += ["", "--- Warnings (first 10) ---"]
        lines += [f"  {w}" for w in warnings[:10]]
    return "\n".join(lines)
