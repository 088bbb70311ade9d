"""
Polling fallback for engines that do not push progress events.

Some engines (transcription backends in particular) only answer status
queries. StatusPoller asks such an engine for the job status on a fixed
interval until it reports a terminal phase or the caller's cancellation
token fires.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from typing import Any

from PySide6.QtCore import QObject, QTimer, Signal, Slot

from .engine import CancellationToken, ConversionEngine
from .phases import CanonicalPhase, is_terminal, map_status
from .state import DEFAULT_ERROR_MESSAGE, ConversionStateStore

logger = logging.getLogger(__name__)

DEFAULT_POLL_INTERVAL_MS = 1000
DEFAULT_MAX_FAILURES = 3


class StatusPoller(QObject):
    """
    Poll-until-terminal task driven by a QTimer.

    Signals:
        finished(object): The terminal CanonicalPhase once reached
        stopped(): Polling ended without a terminal phase (cancelled or stopped)
    """

    finished = Signal(object)
    stopped = Signal()

    def __init__(
        self,
        engine: ConversionEngine,
        job_id: str,
        store: ConversionStateStore,
        *,
        interval_ms: int = DEFAULT_POLL_INTERVAL_MS,
        cancel_token: CancellationToken | None = None,
        max_failures: int = DEFAULT_MAX_FAILURES,
        parent: QObject | None = None,
    ) -> None:
        super().__init__(parent)
        self._engine = engine
        self._job_id = job_id
        self._store = store
        self._token = cancel_token or CancellationToken()
        self._max_failures = max(1, max_failures)
        self._failures = 0
        self._polls = 0

        self._timer = QTimer(self)
        self._timer.setInterval(max(1, int(interval_ms)))
        self._timer.timeout.connect(self.poll_once)

        self.setObjectName(f"StatusPoller-{job_id}")

    @property
    def job_id(self) -> str:
        return self._job_id

    @property
    def cancel_token(self) -> CancellationToken:
        return self._token

    @property
    def poll_count(self) -> int:
        return self._polls

    def is_running(self) -> bool:
        return self._timer.isActive()

    @Slot()
    def start(self) -> None:
        if self._timer.isActive():
            return
        logger.debug(f"Polling job {self._job_id} every {self._timer.interval()} ms")
        self._timer.start()

    @Slot()
    def stop(self) -> None:
        """Stop polling immediately."""
        if not self._timer.isActive():
            return
        self._timer.stop()
        self.stopped.emit()

    @Slot()
    def poll_once(self) -> CanonicalPhase | None:
        """
        Run one polling iteration.

        Returns:
            The phase reported by the engine, or None if nothing usable came back
        """
        if self._token.is_cancelled():
            logger.info(f"Polling for job {self._job_id} cancelled")
            self.stop()
            return None

        if self._store.state.job_id != self._job_id or self._store.is_terminal:
            # The job ended or was replaced through another path
            self.stop()
            return None

        self._polls += 1
        try:
            status = self._engine.query_status(self._job_id)
        except Exception as e:
            self._failures += 1
            logger.warning(
                f"Status query {self._failures}/{self._max_failures} for job {self._job_id} failed: {e}"
            )
            if self._failures >= self._max_failures:
                self._finish(CanonicalPhase.ERROR, f"Lost contact with conversion engine: {e}")
            return None

        self._failures = 0
        return self._apply(status)

    def _apply(self, status: Any) -> CanonicalPhase | None:
        if not isinstance(status, Mapping):
            logger.warning(f"Ignoring malformed status for job {self._job_id}: {status!r}")
            return None

        phase = map_status(status.get("status"), self._store.state.kind)
        if is_terminal(phase):
            self._finish(phase, status.get("error"))
            return phase

        fields: dict[str, Any] = {}
        if phase is not None:
            fields["status"] = phase
        if status.get("progress") is not None:
            fields["progress"] = status["progress"]
        if fields:
            self._store.batch_update(**fields)
        return phase

    def _finish(self, phase: CanonicalPhase, error: str | None = None) -> None:
        self._timer.stop()
        if phase is CanonicalPhase.COMPLETED:
            self._store.complete()
        elif phase is CanonicalPhase.ERROR:
            self._store.set_error(error or DEFAULT_ERROR_MESSAGE)
        else:
            self._store.cancel()
        self.finished.emit(phase)
