from __future__ import annotations
from dataclasses import dataclass, asdict
from datetime import datetime
from typing import Iterable, Optional, Any

from schema_engine.config import SECONDS_PER_ROW
from schema_engine.models import ItemResult, StepStatus, ValidationStatus, as_utc

def _get(item: Any, name: str):
    if isinstance(item, dict):
        return item.get(name)
    return getattr(item, name, None)

@dataclass
class RunSummary:
    created: int = 0
    updated: int = 0
    skipped: int = 0
    errors: int = 0
    html_success: int = 0
    schema_success: int = 0
    valid_count: int = 0
    invalid_count: int = 0
    completed_count: int = 0

    def to_dict(self) -> dict:
        return asdict(self)

@dataclass
class Estimate:
    completed: int
    estimated_ms_remaining: float
    avg_ms_per_row: float

    def to_dict(self) -> dict:
        d = asdict(self)
        d["remaining_label"] = format_duration(self.estimated_ms_remaining)
        d["avg_label"] = format_duration(self.avg_ms_per_row)
        return d

def summarize(items: Iterable[Any]) -> RunSummary:
    """Counters over the current run item states (accepts models or dicts)."""
    s = RunSummary()
    for it in items:
        result = _get(it, "result")
        if result == ItemResult.CREATED:
            s.created += 1
        elif result == ItemResult.UPDATED:
            s.updated += 1
        elif result == ItemResult.SKIPPED_DUPLICATE:
            s.skipped += 1
        elif result == ItemResult.ERROR:
            s.errors += 1
        if result != ItemResult.PENDING:
            s.completed_count += 1

        if _get(it, "html_status") == StepStatus.SUCCESS:
            s.html_success += 1
        if _get(it, "schema_status") == StepStatus.SUCCESS:
            s.schema_success += 1

        vstat = _get(it, "validation_status")
        if vstat == ValidationStatus.VALID:
            s.valid_count += 1
        elif vstat == ValidationStatus.INVALID:
            s.invalid_count += 1
    return s

def estimate_remaining(run: Any, items: Iterable[Any], start_time: datetime, now: datetime) -> Optional[Estimate]:
    """Linear projection of the time left, or None until a row has finished."""
    completed = sum(1 for it in items if _get(it, "result") != ItemResult.PENDING)
    if completed == 0 or start_time is None:
        return None
    # floor of 1 ms keeps the projection positive when no time has been measured yet
    elapsed_ms = max(1.0, (as_utc(now) - as_utc(start_time)).total_seconds() * 1000.0)
    avg = elapsed_ms / completed
    total = int(_get(run, "total_rows") or 0)
    remaining_rows = max(0, total - completed)
    return Estimate(completed=completed, estimated_ms_remaining=avg * remaining_rows, avg_ms_per_row=avg)

def initial_estimate(row_count: int, seconds_per_row: int = SECONDS_PER_ROW) -> Optional[float]:
    """Milliseconds a batch of `row_count` rows is expected to take before any row has run."""
    if not row_count:
        return None
    return float(row_count * seconds_per_row * 1000)

def format_duration(ms: Optional[float]) -> str:
    if ms is None:
        return "Unknown"
    seconds = int(ms // 1000)
    minutes, rem = divmod(seconds, 60)
    if minutes == 0:
        return f"{rem}s"
    return f"{minutes}m {rem}s"
