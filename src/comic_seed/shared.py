"""comic_seed.shared

Shared utilities used by every seed phase.
Includes the exception taxonomy, RejectWriter, SeedStats and
report-writing support.
"""

from __future__ import annotations

import csv
import json
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------

class ConfigurationError(Exception):
    """Missing or malformed configuration; fatal before any phase starts."""


class NaturalKeyResolutionError(Exception):
    """A record's natural key (or its parent's) could not be resolved."""


class NetworkError(Exception):
    """An image fetch failed.  ``retryable`` is False for 4xx-not-found classes."""

    def __init__(self, message: str, retryable: bool = True, status: int | None = None) -> None:
        super().__init__(message)
        self.retryable = retryable
        self.status = status


class StorageError(Exception):
    """The storage provider rejected or failed an upload."""

    retryable = True


class PhaseBudgetExceeded(Exception):
    """A phase ran past its wall-clock budget."""


class PhaseError(Exception):
    """A phase failed after exhausting its operation-level retry."""

    def __init__(self, phase: str, attempts: int, cause: BaseException) -> None:
        super().__init__(f"phase {phase!r} failed after {attempts} attempt(s): {cause}")
        self.phase = phase
        self.attempts = attempts
        self.cause = cause


# ---------------------------------------------------------------------------
# RejectWriter
# ---------------------------------------------------------------------------

class RejectWriter:
    """Lazy-open CSV writer for records rejected by validation."""

    fieldnames = ["entity_type", "source", "index", "record", "_reject_reason"]

    def __init__(self, path: Path) -> None:
        self._path = path
        self._fh = None
        self._writer = None
        self.count = 0

    def write(self, entity_type: str, source: str, index: int, record: Any, reason: str) -> None:
        if self._fh is None:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            self._fh = open(self._path, "w", newline="", encoding="utf-8")
            self._writer = csv.DictWriter(self._fh, fieldnames=self.fieldnames)
            self._writer.writeheader()
        self._writer.writerow({
            "entity_type": entity_type,
            "source": source,
            "index": index,
            "record": json.dumps(record, default=str)[:2000],
            "_reject_reason": reason,
        })
        self._fh.flush()
        self.count += 1

    def close(self) -> None:
        if self._fh:
            self._fh.close()


# ---------------------------------------------------------------------------
# SeedStats
# ---------------------------------------------------------------------------

@dataclass
class SeedStats:
    """Per-entity-type outcome counters for one run."""

    created: int = 0
    updated: int = 0
    skipped: int = 0
    errors: int = 0
    invalid: int = 0
    images_resolved: int = 0
    image_errors: int = 0
    warnings: list[str] = field(default_factory=list)

    def record(self, action: str, reason: str | None = None) -> None:
        if action == "created":
            self.created += 1
        elif action == "updated":
            self.updated += 1
        elif action == "skipped":
            self.skipped += 1
        else:
            self.errors += 1
        if reason:
            self.warnings.append(reason)

    @property
    def processed(self) -> int:
        return self.created + self.updated + self.skipped + self.errors

    def to_dict(self) -> dict[str, Any]:
        d = {k: v for k, v in self.__dict__.items() if k != "warnings"}
        d["warnings"] = self.warnings[:50]
        return d


# ---------------------------------------------------------------------------
# Report writer
# ---------------------------------------------------------------------------

def write_run_report(
    run_id: str,
    started_at: str,
    dry_run: bool,
    sources: dict[str, Any],
    summary: dict[str, Any],
    report_dir: Path = Path("./artifacts/reports"),
) -> Path:
    report = {
        "run_id": run_id,
        "started_at": started_at,
        "finished_at": datetime.utcnow().isoformat(),
        "dry_run": dry_run,
        "sources": sources,
        "summary": summary,
    }
    report_path = report_dir / f"{run_id}.json"
    report_path.parent.mkdir(parents=True, exist_ok=True)
    report_path.write_text(json.dumps(report, indent=2, default=str))
    return report_path
