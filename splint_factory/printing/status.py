"""Derived lifecycle status for geometry jobs and print queue entries.

Neither record stores an enumerated state.  A print is ``ready`` until it has
a start time, ``printing`` until it has a completion time, then
``successful`` or ``failed`` according to ``is_print_successful``.  A finished
print is further refined by the operator's accept/reject decision.
"""

from __future__ import annotations

import datetime as dt
import enum
from typing import Protocol

# Progress strictly above this value counts as a finished print.
COMPLETION_PROGRESS_THRESHOLD = 99.0
ALREADY_DECIDED_MESSAGE = "Print has already been accepted or rejected"


class PrintStatus(str, enum.Enum):
    READY = "ready"
    PRINTING = "printing"
    SUCCESSFUL = "successful"
    FAILED = "failed"


class AcceptanceStatus(str, enum.Enum):
    PENDING = "pending"
    ACCEPTED = "accepted"
    REJECTED = "rejected"


class GeometryJobStatus(str, enum.Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    DISABLED = "disabled"


class AcceptanceError(ValueError):
    """Raised when an accept/reject decision is not allowed for an entry."""


class _PrintLike(Protocol):
    print_started_at: dt.datetime | None
    print_completed_at: dt.datetime | None
    is_print_successful: bool | None
    print_acceptance: bool | None
    progress: float | None


class _JobLike(Protocol):
    is_enabled: bool
    process_started_at: dt.datetime | None
    process_completed_at: dt.datetime | None
    is_process_successful: bool | None


def derive_print_status(entry: _PrintLike) -> PrintStatus:
    if entry.print_started_at is None:
        return PrintStatus.READY
    if entry.print_completed_at is None:
        return PrintStatus.PRINTING
    if entry.is_print_successful:
        return PrintStatus.SUCCESSFUL
    return PrintStatus.FAILED


def derive_acceptance(entry: _PrintLike) -> AcceptanceStatus | None:
    """Return the decision, ``PENDING`` if one can be made, or ``None`` otherwise."""

    if entry.print_acceptance is True:
        return AcceptanceStatus.ACCEPTED
    if entry.print_acceptance is False:
        return AcceptanceStatus.REJECTED
    if is_print_finished(entry):
        return AcceptanceStatus.PENDING
    return None


def is_print_finished(entry: _PrintLike) -> bool:
    if entry.print_completed_at is not None:
        return True
    return entry.progress is not None and entry.progress > COMPLETION_PROGRESS_THRESHOLD


def ensure_acceptance_allowed(entry: _PrintLike) -> None:
    """Raise :class:`AcceptanceError` unless a decision may be recorded now."""

    if not is_print_finished(entry):
        raise AcceptanceError(
            "Print must be completed (progress > 99%) before acceptance decision"
        )
    if entry.print_acceptance is not None:
        raise AcceptanceError(ALREADY_DECIDED_MESSAGE)


def derive_job_status(job: _JobLike) -> GeometryJobStatus:
    if not job.is_enabled:
        return GeometryJobStatus.DISABLED
    if job.process_started_at is None:
        return GeometryJobStatus.PENDING
    if job.process_completed_at is None:
        return GeometryJobStatus.PROCESSING
    if job.is_process_successful:
        return GeometryJobStatus.SUCCEEDED
    return GeometryJobStatus.FAILED


__all__ = [
    "ALREADY_DECIDED_MESSAGE",
    "AcceptanceError",
    "AcceptanceStatus",
    "COMPLETION_PROGRESS_THRESHOLD",
    "GeometryJobStatus",
    "PrintStatus",
    "derive_acceptance",
    "derive_job_status",
    "derive_print_status",
    "ensure_acceptance_allowed",
    "is_print_finished",
]
