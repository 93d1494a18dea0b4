"""Operational metrics for the geometry processing queue.

Backs the administrator system-status page: queue snapshots, 24 hour success
rates, processing time trends, hourly throughput, an error breakdown parsed
from processing logs and per-algorithm volume.
"""

from __future__ import annotations

import datetime as dt
from collections import Counter
from typing import Any, Iterable, Sequence

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from splint_factory.config import get_settings
from splint_factory.geometry import processor_health
from splint_factory.models import GeometryProcessingQueue, NamedGeometry
from splint_factory.security.tokens import as_utc

STUCK_AFTER = dt.timedelta(minutes=10)
SNAPSHOT_LIMIT = 10
ERROR_SAMPLE_LIMIT = 50
TREND_STABLE_PERCENT = 5.0

# Checked in order; the first matching rule names the category.
_ERROR_RULES: tuple[tuple[str, tuple[str, ...]], ...] = (
    ("Mesh Export Failed", ("mesh export failed",)),
    ("Timeout", ("timeout",)),
    ("Network Error", ("ECONNREFUSED", "ETIMEDOUT")),
    ("Processing Error", ("Exception", "Error")),
)


def _utcnow() -> dt.datetime:
    return dt.datetime.now(dt.timezone.utc)


def average_processing_ms(
    spans: Iterable[tuple[dt.datetime | None, dt.datetime | None]],
) -> float | None:
    durations = [
        (as_utc(completed) - as_utc(started)).total_seconds() * 1000
        for started, completed in spans
        if started is not None and completed is not None
    ]
    if not durations:
        return None
    return sum(durations) / len(durations)


def processing_trend(current: float | None, previous: float | None) -> str | None:
    """Compare two averages: ``stable`` within 5 %, else ``faster``/``slower``."""

    if not current or not previous:
        return None
    diff = (current - previous) / previous * 100
    if abs(diff) < TREND_STABLE_PERCENT:
        return "stable"
    return "faster" if diff < 0 else "slower"


def hourly_throughput(
    completed_times: Iterable[dt.datetime], now: dt.datetime, hours: int = 24
) -> list[dict[str, int]]:
    """Bucket completions by hours ago; returned oldest bucket first."""

    buckets: Counter[int] = Counter()
    for completed in completed_times:
        hour = int((now - as_utc(completed)).total_seconds() // 3600)
        if 0 <= hour < hours:
            buckets[hour] += 1
    return [{"hour": hour, "count": buckets.get(hour, 0)} for hour in reversed(range(hours))]


def categorize_error(log: str | None) -> str:
    if not log:
        return "Unknown"
    for category, needles in _ERROR_RULES:
        if any(needle in log for needle in needles):
            return category
    return "Other"


def error_breakdown(logs: Iterable[str | None]) -> dict[str, int]:
    return dict(Counter(categorize_error(log) for log in logs))


def _snapshot(jobs: Sequence[GeometryProcessingQueue]) -> list[dict[str, Any]]:
    return [
        {
            "id": str(job.id),
            "object_id": job.object_id,
            "geometry_name": job.geometry.geometry_name if job.geometry else None,
            "created_at": job.created_at,
            "process_started_at": job.process_started_at,
            "process_completed_at": job.process_completed_at,
            "is_process_successful": job.is_process_successful,
        }
        for job in jobs
    ]


def collect_system_status(session: Session, *, now: dt.datetime | None = None) -> dict[str, Any]:
    """Gather every metric shown on the system-status page."""

    now = now or _utcnow()
    stuck_cutoff = now - STUCK_AFTER
    one_hour_ago = now - dt.timedelta(hours=1)
    one_day_ago = now - dt.timedelta(days=1)
    two_days_ago = now - dt.timedelta(days=2)
    one_week_ago = now - dt.timedelta(days=7)

    queue = GeometryProcessingQueue
    enabled = queue.is_enabled.is_(True)

    never_started = session.scalars(
        select(queue)
        .where(enabled, queue.process_started_at.is_(None), queue.process_completed_at.is_(None))
        .order_by(queue.created_at.asc())
        .limit(SNAPSHOT_LIMIT)
    ).all()
    stuck = session.scalars(
        select(queue)
        .where(enabled, queue.process_started_at < stuck_cutoff, queue.process_completed_at.is_(None))
        .order_by(queue.created_at.asc())
        .limit(SNAPSHOT_LIMIT)
    ).all()
    processing = session.scalars(
        select(queue)
        .where(enabled, queue.process_started_at >= stuck_cutoff, queue.process_completed_at.is_(None))
        .order_by(queue.process_started_at.desc())
        .limit(SNAPSHOT_LIMIT)
    ).all()
    recently_completed = session.scalars(
        select(queue)
        .where(enabled, queue.process_completed_at >= one_hour_ago)
        .order_by(queue.process_completed_at.desc())
        .limit(SNAPSHOT_LIMIT)
    ).all()

    failed_24h = session.scalar(
        select(func.count())
        .select_from(queue)
        .where(enabled, queue.process_completed_at >= one_day_ago, queue.is_process_successful.is_(False))
    ) or 0
    success_24h = session.scalar(
        select(func.count())
        .select_from(queue)
        .where(enabled, queue.process_completed_at >= one_day_ago, queue.is_process_successful.is_(True))
    ) or 0

    last_day_spans = session.execute(
        select(queue.process_started_at, queue.process_completed_at).where(
            enabled,
            queue.process_completed_at >= one_day_ago,
            queue.process_started_at.is_not(None),
        )
    ).all()
    previous_day_spans = session.execute(
        select(queue.process_started_at, queue.process_completed_at).where(
            enabled,
            queue.process_completed_at >= two_days_ago,
            queue.process_completed_at < one_day_ago,
            queue.process_started_at.is_not(None),
        )
    ).all()

    error_logs = session.scalars(
        select(queue.processing_log)
        .where(enabled, queue.process_completed_at >= one_day_ago, queue.is_process_successful.is_(False))
        .limit(ERROR_SAMPLE_LIMIT)
    ).all()

    by_algorithm = session.execute(
        select(
            NamedGeometry.algorithm_name,
            NamedGeometry.geometry_name,
            func.count(queue.id),
        )
        .join(NamedGeometry, NamedGeometry.id == queue.geometry_id)
        .where(enabled, queue.process_completed_at >= one_week_ago)
        .group_by(NamedGeometry.id, NamedGeometry.algorithm_name, NamedGeometry.geometry_name)
    ).all()

    avg_last = average_processing_ms((row[0], row[1]) for row in last_day_spans)
    avg_previous = average_processing_ms((row[0], row[1]) for row in previous_day_spans)
    completed_total = failed_24h + success_24h
    processor = processor_health.get_status(
        window_seconds=get_settings().processor_health_window_seconds
    )

    return {
        "timestamp": now,
        "queue": {
            "never_started": _snapshot(never_started),
            "stuck": _snapshot(stuck),
            "processing": _snapshot(processing),
            "recently_completed": _snapshot(recently_completed),
        },
        "last_24h": {
            "failed": failed_24h,
            "successful": success_24h,
            "success_rate": round(success_24h / completed_total * 100, 1)
            if completed_total
            else None,
        },
        "processing_time": {
            "average_ms_last_24h": avg_last,
            "average_ms_previous_24h": avg_previous,
            "trend": processing_trend(avg_last, avg_previous),
        },
        "throughput_per_hour": hourly_throughput(
            (row[1] for row in last_day_spans if row[1] is not None), now
        ),
        "error_breakdown": error_breakdown(error_logs),
        "algorithms": sorted(
            (
                {"algorithm": algorithm, "name": name, "count": count}
                for algorithm, name, count in by_algorithm
            ),
            key=lambda item: item["count"],
            reverse=True,
        ),
        "processor": processor.as_dict(),
    }


__all__ = [
    "average_processing_ms",
    "categorize_error",
    "collect_system_status",
    "error_breakdown",
    "hourly_throughput",
    "processing_trend",
]
