"""
Canonical state of the active conversion job.

The store holds a single immutable JobState snapshot and replaces it in one
atomic write per update, so observers connected to its signals never see a
half-applied change. Terminal phases are sticky: once a job has completed,
failed or been cancelled, its status, progress and error no longer change.
"""

from __future__ import annotations

import dataclasses
import logging
import math
import time
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any

from PySide6.QtCore import QObject, Signal

from .phases import CanonicalPhase, ConversionKind, is_terminal, map_status
from .timer import DEFAULT_TICK_MS, ConversionTimer

logger = logging.getLogger(__name__)

DEFAULT_ERROR_MESSAGE = "Unknown error occurred"

# Highest progress a job may report before it is marked completed
MAX_RUNNING_PROGRESS = 99

CompletionCallback = Callable[["JobState"], None]


@dataclass(frozen=True)
class JobCounts:
    """Unit counters of a multi-unit job. ``processed`` is always completed + errored."""

    completed: int = 0
    errored: int = 0
    total: int = 0

    def __post_init__(self) -> None:
        for name in ("completed", "errored", "total"):
            if getattr(self, name) < 0:
                raise ValueError(f"{name} count cannot be negative")

    @property
    def processed(self) -> int:
        return self.completed + self.errored


def _empty_sections() -> Mapping[str, int]:
    return MappingProxyType({})


@dataclass(frozen=True)
class JobState:
    """Snapshot of the live conversion job."""

    job_id: str | None = None
    kind: ConversionKind | None = None
    status: CanonicalPhase = CanonicalPhase.IDLE
    progress: int = 0
    current_unit: str | None = None
    counts: JobCounts = field(default_factory=JobCounts)
    error: str | None = None
    start_time: float | None = None
    completion_time: float | None = None
    chunk_progress: int = 0

    # Website crawl tracking
    website_url: str | None = None
    path_filter: str | None = None
    discovered_urls: int = 0
    sitemap_urls: int = 0
    crawled_urls: int = 0
    section_counts: Mapping[str, int] = field(default_factory=_empty_sections)
    current_section: str | None = None
    average_unit_time: float | None = None
    estimated_time_remaining: float | None = None

    @property
    def is_terminal(self) -> bool:
        return is_terminal(self.status)

    @property
    def is_active(self) -> bool:
        return self.status is not CanonicalPhase.IDLE and not self.is_terminal


# Fields that batch_update() accepts; identity and timestamps are managed by the store
UPDATABLE_FIELDS = frozenset(
    f.name for f in dataclasses.fields(JobState) if f.name not in {"job_id", "kind", "start_time", "completion_time"}
)

# Fields frozen once the job reaches a terminal phase
_TERMINAL_LOCKED = ("status", "progress", "error")


def _coerce_percent(value: Any, upper: int) -> int | None:
    if isinstance(value, bool) or not isinstance(value, int | float):
        return None
    if not math.isfinite(value):
        return None
    return max(0, min(upper, int(round(value))))


class ConversionStateStore(QObject):
    """
    Subscribable container for the single live conversion job.

    ``batch_update`` is the only primitive that writes state; every other
    mutating operation is expressed in terms of it.

    Signals:
        stateChanged(object): New JobState, once per atomic write
        phaseChanged(object): New CanonicalPhase when the status changes
        progressChanged(int): New progress percentage when it changes
        errorOccurred(str): Error message when the job enters the error phase
        completed(object): Final JobState when the job completes
    """

    stateChanged = Signal(object)
    phaseChanged = Signal(object)
    progressChanged = Signal(int)
    errorOccurred = Signal(str)
    completed = Signal(object)

    def __init__(
        self,
        parent: QObject | None = None,
        *,
        timer: ConversionTimer | None = None,
        timer_interval_ms: int = DEFAULT_TICK_MS,
        clock: Callable[[], float] = time.time,
    ) -> None:
        super().__init__(parent)
        self._state = JobState()
        self._clock = clock
        self._timer = timer or ConversionTimer(self, interval_ms=timer_interval_ms)
        self._completion_callbacks: list[CompletionCallback] = []
        self.setObjectName("ConversionStateStore")

    # ------------------------------------------------------------------ read

    @property
    def state(self) -> JobState:
        return self._state

    @property
    def timer(self) -> ConversionTimer:
        return self._timer

    @property
    def status(self) -> CanonicalPhase:
        return self._state.status

    @property
    def progress(self) -> int:
        return self._state.progress

    @property
    def current_unit(self) -> str | None:
        return self._state.current_unit

    @property
    def error(self) -> str | None:
        return self._state.error

    @property
    def elapsed(self) -> str:
        return self._timer.elapsed

    @property
    def is_terminal(self) -> bool:
        return self._state.is_terminal

    # ----------------------------------------------------------------- start

    def start_file(self, target: str, job_id: str | None = None) -> JobState:
        """Begin tracking a single-file conversion."""
        return self._begin(
            ConversionKind.FILE,
            CanonicalPhase.CONVERTING,
            job_id,
            current_unit=target,
            counts=JobCounts(total=1),
        )

    def start_batch(self, targets: Iterable[str], job_id: str | None = None) -> JobState:
        """Begin tracking a batch conversion of several files."""
        targets = list(targets)
        return self._begin(
            ConversionKind.BATCH,
            CanonicalPhase.CONVERTING,
            job_id,
            counts=JobCounts(total=len(targets)),
        )

    def start_website(self, url: str, job_id: str | None = None, path_filter: str | None = None) -> JobState:
        """Begin tracking a multi-page website crawl."""
        return self._begin(
            ConversionKind.WEBSITE,
            CanonicalPhase.PREPARING,
            job_id,
            current_unit=url,
            website_url=url,
            path_filter=path_filter,
        )

    def _begin(
        self, kind: ConversionKind, status: CanonicalPhase, job_id: str | None, **fields: Any
    ) -> JobState:
        if self._state.is_active:
            logger.warning(f"Starting {kind.value} job while job {self._state.job_id} is still active; overwriting")

        self._timer.reset()
        new_state = JobState(job_id=job_id, kind=kind, status=status, start_time=self._clock(), **fields)
        self._publish(self._state, new_state)
        self._timer.start()
        logger.info(f"Started {kind.value} job {job_id}")
        return new_state

    # ---------------------------------------------------------------- update

    def batch_update(self, **fields: Any) -> JobState:
        """
        Apply several field changes in one atomic write.

        Status values are normalized through the phase mapper and unknown raw
        statuses are dropped. Progress is clamped to 0-99 until the job
        completes and never decreases. After a terminal phase the status,
        progress and error fields are left untouched.

        Args:
            **fields: JobState field names and their new values

        Returns:
            The resulting JobState

        Raises:
            TypeError: If a field is unknown or managed by the store
        """
        unknown = set(fields) - UPDATABLE_FIELDS
        if unknown:
            raise TypeError(f"Cannot update field(s): {', '.join(sorted(unknown))}")

        previous = self._state
        changes = dict(fields)

        if previous.is_terminal:
            locked = [name for name in _TERMINAL_LOCKED if name in changes]
            if locked:
                logger.debug(f"Job {previous.job_id} is {previous.status.value}; ignoring update of {locked}")
                for name in locked:
                    changes.pop(name)

        if "status" in changes:
            phase = map_status(changes["status"], previous.kind)
            if phase is None:
                logger.warning(f"Ignoring unrecognized status {changes['status']!r}")
                changes.pop("status")
            else:
                changes["status"] = phase

        if changes.get("error") and "status" not in changes:
            changes["status"] = CanonicalPhase.ERROR

        new_status = changes.get("status", previous.status)
        entering_terminal = not previous.is_terminal and is_terminal(new_status)

        if new_status is CanonicalPhase.ERROR:
            changes["error"] = changes.get("error") or previous.error or DEFAULT_ERROR_MESSAGE
        elif "error" in changes or previous.error is not None:
            changes["error"] = None

        if "progress" in changes:
            percent = _coerce_percent(changes["progress"], MAX_RUNNING_PROGRESS)
            if percent is None:
                logger.warning(f"Ignoring non-numeric progress {changes['progress']!r}")
                changes.pop("progress")
            else:
                changes["progress"] = max(percent, previous.progress)

        if entering_terminal and new_status is CanonicalPhase.COMPLETED:
            changes["progress"] = 100

        if "chunk_progress" in changes:
            chunk = _coerce_percent(changes["chunk_progress"], 100)
            if chunk is None:
                changes.pop("chunk_progress")
            else:
                changes["chunk_progress"] = chunk

        if "section_counts" in changes:
            changes["section_counts"] = MappingProxyType(dict(changes["section_counts"] or {}))

        if entering_terminal:
            changes["completion_time"] = self._clock()

        new_state = dataclasses.replace(previous, **changes)
        if new_state == previous:
            return previous

        if entering_terminal:
            self._timer.capture_and_stop()

        self._publish(previous, new_state)

        if entering_terminal:
            logger.info(f"Job {new_state.job_id} finished with status {new_state.status.value}")
            if new_state.status is CanonicalPhase.COMPLETED:
                self._notify_completion(new_state)

        return new_state

    def _publish(self, previous: JobState, new_state: JobState) -> None:
        self._state = new_state
        self.stateChanged.emit(new_state)
        if new_state.status is not previous.status:
            self.phaseChanged.emit(new_state.status)
        if new_state.progress != previous.progress:
            self.progressChanged.emit(new_state.progress)
        if new_state.status is CanonicalPhase.ERROR and previous.status is not CanonicalPhase.ERROR:
            self.errorOccurred.emit(new_state.error or DEFAULT_ERROR_MESSAGE)

    def _notify_completion(self, final_state: JobState) -> None:
        self.completed.emit(final_state)
        for callback in list(self._completion_callbacks):
            try:
                callback(final_state)
            except Exception:
                logger.exception("Completion callback failed")

    # ------------------------------------------------------------ shortcuts

    def set_status(self, status: CanonicalPhase | str) -> JobState:
        return self.batch_update(status=status)

    def set_progress(self, progress: float) -> JobState:
        return self.batch_update(progress=progress)

    def set_current_unit(self, unit: str | None) -> JobState:
        return self.batch_update(current_unit=unit)

    def set_chunk_progress(self, progress: float) -> JobState:
        return self.batch_update(chunk_progress=progress)

    def set_counts(self, counts: JobCounts) -> JobState:
        return self.batch_update(counts=counts)

    # -------------------------------------------------------------- terminal

    def complete(self) -> JobState:
        """Mark the job completed at 100%. Does nothing once terminal."""
        if self._state.is_terminal:
            logger.debug(f"complete() ignored, job already {self._state.status.value}")
            return self._state
        return self.batch_update(status=CanonicalPhase.COMPLETED)

    def set_error(self, message: str | None) -> JobState:
        """Mark the job failed with a message. Does nothing once terminal."""
        if self._state.is_terminal:
            logger.debug(f"set_error() ignored, job already {self._state.status.value}")
            return self._state
        return self.batch_update(status=CanonicalPhase.ERROR, error=message or DEFAULT_ERROR_MESSAGE)

    def cancel(self) -> JobState:
        """Mark the job cancelled. Does nothing once terminal."""
        if self._state.is_terminal:
            return self._state
        return self.batch_update(status=CanonicalPhase.CANCELLED)

    def reset(self) -> JobState:
        """Return to the idle state with zeroed counters and timer."""
        self._timer.reset()
        previous = self._state
        if previous != JobState():
            self._publish(previous, JobState())
        return self._state

    def on_complete(self, callback: CompletionCallback) -> Callable[[], None]:
        """
        Register a callback invoked with the final state on every completion.

        Args:
            callback: Callable receiving the completed JobState

        Returns:
            A function that removes the callback again
        """
        self._completion_callbacks.append(callback)

        def remove() -> None:
            if callback in self._completion_callbacks:
                self._completion_callbacks.remove(callback)

        return remove
