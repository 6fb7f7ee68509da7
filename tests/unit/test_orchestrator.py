"""Unit tests for SeedOrchestrator: phase ordering, retry, failure policy, dry run."""

from __future__ import annotations

import pytest

from comic_seed.image_cache import ImageDedupCache
from comic_seed.orchestrator import (
    PHASE_NAMES,
    RunConfig,
    RunSummary,
    SeedOrchestrator,
    build_seed_report,
)
from comic_seed.persistence import PersistenceCoordinator
from comic_seed.phases import PhaseContext
from comic_seed.schemas import EntityType, UserSeed
from comic_seed.shared import PhaseBudgetExceeded, SeedStats

from fakes import FakeSession


@pytest.fixture()
def context(fake_store, make_downloader) -> PhaseContext:
    cache = ImageDedupCache()
    return PhaseContext(
        coordinator=PersistenceCoordinator(fake_store, bcrypt_rounds=4),
        downloader=make_downloader(FakeSession(), cache=cache),
        cache=cache,
    )


class Recorder:
    """Scripted phase bodies; each call appends the phase name to ``calls``."""

    def __init__(self) -> None:
        self.calls: list[str] = []

    def ok(self, name: str, email: str | None = None):
        def fn(ctx, stats):
            self.calls.append(name)
            if email:
                res = ctx.coordinator.upsert(EntityType.USER, UserSeed(email=email, name=name))
                stats.record(res.action.value)
        return fn

    def failing(self, name: str, times: int, exc: Exception | None = None, email: str | None = None):
        remaining = [times]

        def fn(ctx, stats):
            self.calls.append(name)
            if email:
                res = ctx.coordinator.upsert(EntityType.USER, UserSeed(email=email, name=name))
                stats.record(res.action.value)
            if remaining[0] > 0:
                remaining[0] -= 1
                raise exc or RuntimeError(f"{name} blew up")
        return fn


def _orchestrator(fake_store, context, phases, sleeps=None, **kwargs) -> SeedOrchestrator:
    return SeedOrchestrator(
        fake_store, context, phases=phases,
        sleep=(sleeps.append if sleeps is not None else (lambda s: None)), **kwargs,
    )


# ---------------------------------------------------------------------------
# Ordering and selection
# ---------------------------------------------------------------------------

class TestPhaseOrder:
    def test_default_phases(self):
        assert PHASE_NAMES == ("users", "comics", "chapters")

    def test_runs_in_declared_order(self, fake_store, context):
        rec = Recorder()
        phases = [
            ("users", EntityType.USER, rec.ok("users")),
            ("comics", EntityType.COMIC, rec.ok("comics")),
            ("chapters", EntityType.CHAPTER, rec.ok("chapters")),
        ]
        summary = _orchestrator(fake_store, context, phases).run(
            RunConfig(phases=("chapters", "users", "comics"))
        )
        assert rec.calls == ["users", "comics", "chapters"]
        assert list(summary.phases) == ["users", "comics", "chapters"]
        assert summary.exit_code == 0

    def test_selected_phase_only(self, fake_store, context):
        rec = Recorder()
        phases = [
            ("users", EntityType.USER, rec.ok("users")),
            ("comics", EntityType.COMIC, rec.ok("comics")),
        ]
        _orchestrator(fake_store, context, phases).run(RunConfig(phases=("comics",)))
        assert rec.calls == ["comics"]

    def test_unknown_phase_rejected(self, fake_store, context):
        with pytest.raises(ValueError, match="bogus"):
            _orchestrator(fake_store, context, []).run(RunConfig(phases=("bogus",)))


# ---------------------------------------------------------------------------
# Retry
# ---------------------------------------------------------------------------

class TestPhaseRetry:
    def test_failed_attempt_rolls_back_then_retries(self, fake_store, context):
        rec = Recorder()
        sleeps: list[float] = []
        phases = [("users", EntityType.USER, rec.failing("users", 1, email="a@example.com"))]
        summary = _orchestrator(fake_store, context, phases, sleeps=sleeps).run(RunConfig())

        assert rec.calls == ["users", "users"]
        assert sleeps == [1.0]
        assert summary.phases["users"].created == 1
        assert len(fake_store.tables["user"]) == 1
        assert fake_store.savepoints[0] == "phase_users_1"
        assert "phase_users_2" in fake_store.savepoints

    def test_budget_exceeded_is_not_retried(self, fake_store, context):
        rec = Recorder()
        phases = [("users", EntityType.USER, rec.failing("users", 5, PhaseBudgetExceeded("too slow")))]
        summary = _orchestrator(fake_store, context, phases).run(RunConfig())
        assert rec.calls == ["users"]
        assert "too slow" in summary.failed_phases["users"]

    def test_deadline_is_enforced_by_check_budget(self, fake_store, context):
        ticks = iter([0.0, 100.0])
        context.clock = lambda: next(ticks)

        def slow_phase(ctx, stats):
            ctx.check_budget("users")

        summary = _orchestrator(
            fake_store, context, [("users", EntityType.USER, slow_phase)], phase_timeout=5.0,
        ).run(RunConfig())
        assert "time budget" in summary.failed_phases["users"]
        assert context.deadline is None


# ---------------------------------------------------------------------------
# Failure policy
# ---------------------------------------------------------------------------

class TestFailurePolicy:
    def test_failure_aborts_remaining_phases(self, fake_store, context):
        rec = Recorder()
        phases = [
            ("users", EntityType.USER, rec.failing("users", 99)),
            ("comics", EntityType.COMIC, rec.ok("comics")),
        ]
        summary = _orchestrator(fake_store, context, phases, phase_attempts=2).run(RunConfig())
        assert rec.calls == ["users", "users"]
        assert summary.aborted
        assert summary.exit_code == 1
        assert "comics" not in summary.phases
        assert summary.phases["users"].errors == 1

    def test_continue_on_error_runs_next_phase(self, fake_store, context):
        rec = Recorder()
        phases = [
            ("users", EntityType.USER, rec.failing("users", 99)),
            ("comics", EntityType.COMIC, rec.ok("comics")),
        ]
        summary = _orchestrator(fake_store, context, phases, phase_attempts=1).run(
            RunConfig(continue_on_error=True)
        )
        assert rec.calls == ["users", "comics"]
        assert not summary.aborted
        assert summary.exit_code == 1
        assert list(summary.failed_phases) == ["users"]

    def test_committed_phase_survives_later_failure(self, fake_store, context):
        rec = Recorder()
        phases = [
            ("users", EntityType.USER, rec.ok("users", email="a@example.com")),
            ("comics", EntityType.COMIC, rec.failing("comics", 99, email="b@example.com")),
        ]
        _orchestrator(fake_store, context, phases, phase_attempts=1).run(RunConfig())
        assert fake_store.row("user", email="a@example.com") is not None
        assert fake_store.row("user", email="b@example.com") is None


# ---------------------------------------------------------------------------
# Transactions
# ---------------------------------------------------------------------------

class TestTransactions:
    def test_commits_after_each_phase(self, fake_store, context):
        rec = Recorder()
        phases = [
            ("users", EntityType.USER, rec.ok("users")),
            ("comics", EntityType.COMIC, rec.ok("comics")),
        ]
        _orchestrator(fake_store, context, phases).run(RunConfig())
        assert fake_store.commits == 3
        assert fake_store.rollbacks == 0

    def test_dry_run_rolls_everything_back(self, fake_store, context):
        rec = Recorder()
        phases = [("users", EntityType.USER, rec.ok("users", email="a@example.com"))]
        summary = _orchestrator(fake_store, context, phases).run(RunConfig(dry_run=True))
        assert summary.dry_run
        assert summary.phases["users"].created == 1
        assert fake_store.commits == 0
        assert fake_store.rollbacks == 1
        assert fake_store.tables["user"] == {}

    def test_summary_carries_image_and_cache_stats(self, fake_store, context):
        summary = _orchestrator(fake_store, context, []).run(RunConfig(phases=()))
        assert "requested" in summary.images
        assert "url_hits" in summary.cache


# ---------------------------------------------------------------------------
# Report
# ---------------------------------------------------------------------------

class TestBuildSeedReport:
    def test_report_lists_phases_and_failures(self):
        summary = RunSummary(
            phases={
                "users": SeedStats(created=3, updated=1),
                "comics": SeedStats(errors=1, warnings=["phase 'comics' failed"]),
            },
            failed_phases={"comics": "boom"},
            images={"requested": 4},
        )
        report = build_seed_report(summary)
        assert "=== Seed Run Report ===" in report
        assert "users" in report and "comics" in report
        assert "--- Failed phases ---" in report
        assert "comics: boom" in report
        assert "requested" in report
        assert "phase 'comics' failed" in report

    def test_to_dict_exit_code(self):
        assert RunSummary().to_dict()["exit_code"] == 0
        assert RunSummary(failed_phases={"users": "x"}).to_dict()["exit_code"] == 1
