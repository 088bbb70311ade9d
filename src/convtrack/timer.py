"""
Elapsed-time tracking for the active conversion job.

The timer owns the only periodic tick in the tracking core. It is started and
stopped by the state store and exposes the elapsed time as an ``hh:mm:ss``
string for display.
"""

from __future__ import annotations

import logging
from time import monotonic

from PySide6.QtCore import QObject, QTimer, Signal, Slot

logger = logging.getLogger(__name__)

DEFAULT_TICK_MS = 1000


def format_elapsed(seconds: float | None) -> str:
    """
    Format a duration in seconds as ``hh:mm:ss``.

    Args:
        seconds: Duration in seconds (None or negative is treated as zero)

    Returns:
        Zero-padded hours, minutes and seconds
    """
    if not seconds or seconds < 0:
        return "00:00:00"
    total = int(seconds)
    hours, remainder = divmod(total, 3600)
    minutes, secs = divmod(remainder, 60)
    return f"{hours:02d}:{minutes:02d}:{secs:02d}"


class ConversionTimer(QObject):
    """
    Wall-clock timer for a single conversion job.

    Signals:
        elapsedChanged(str): Formatted elapsed time, emitted on every tick and on stop/reset
        runningChanged(bool): Emitted when the timer starts or stops
    """

    elapsedChanged = Signal(str)
    runningChanged = Signal(bool)

    def __init__(self, parent: QObject | None = None, *, interval_ms: int = DEFAULT_TICK_MS) -> None:
        super().__init__(parent)
        self._started_at: float | None = None
        self._seconds = 0.0
        self._final_time: str | None = None

        self._tick_timer = QTimer(self)
        self._tick_timer.setInterval(max(1, int(interval_ms)))
        self._tick_timer.timeout.connect(self._tick)

        self.setObjectName("ConversionTimer")

    @property
    def is_running(self) -> bool:
        return self._started_at is not None

    @property
    def seconds(self) -> float:
        """Elapsed seconds, live while running."""
        if self._started_at is not None:
            return monotonic() - self._started_at
        return self._seconds

    @property
    def elapsed(self) -> str:
        return format_elapsed(self.seconds)

    @property
    def final_time(self) -> str | None:
        """Elapsed time frozen by capture_and_stop(), or None."""
        return self._final_time

    @property
    def interval_ms(self) -> int:
        return self._tick_timer.interval()

    @Slot()
    def start(self) -> None:
        """Start ticking. Does nothing if already running."""
        if self.is_running:
            logger.debug("Timer already running, ignoring start")
            return

        self._started_at = monotonic() - self._seconds
        self._final_time = None
        self._tick_timer.start()
        self.runningChanged.emit(True)

    @Slot()
    def stop(self) -> None:
        """Stop ticking and keep the elapsed time."""
        if not self.is_running:
            return

        self._seconds = self.seconds
        self._started_at = None
        self._tick_timer.stop()
        self.elapsedChanged.emit(self.elapsed)
        self.runningChanged.emit(False)

    @Slot()
    def capture_and_stop(self) -> str:
        """
        Stop the timer and freeze the final elapsed time.

        Returns:
            The formatted final time
        """
        self.stop()
        self._final_time = self.elapsed
        return self._final_time

    @Slot()
    def reset(self) -> None:
        """Cancel any pending tick and zero the elapsed time."""
        was_running = self.is_running
        self._tick_timer.stop()
        self._started_at = None
        self._seconds = 0.0
        self._final_time = None
        self.elapsedChanged.emit(self.elapsed)
        if was_running:
            self.runningChanged.emit(False)

    @Slot()
    def _tick(self) -> None:
        if not self.is_running:
            return
        self.elapsedChanged.emit(self.elapsed)
