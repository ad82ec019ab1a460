"""Process-wide runtime flags shared across modules."""
from __future__ import annotations

from datetime import datetime

_scheduler_active = False
_last_job_runs: dict[str, dict[str, object]] = {}


def set_scheduler_active(active: bool) -> None:
    global _scheduler_active
    _scheduler_active = active


def is_scheduler_active() -> bool:
    return _scheduler_active


def record_job_run(job: str, *, at: datetime, ok: bool, detail: dict[str, object] | None = None) -> None:
    """Remember the outcome of the latest run of a background job."""

    _last_job_runs[job] = {"at": at.isoformat(), "ok": ok, **(detail or {})}


def last_job_runs() -> dict[str, dict[str, object]]:
    return dict(_last_job_runs)
