"""
Conversion engine contract and request worker.

Engines do the actual conversion out of process and report back through the
event transport. Issuing a request may block until the engine acknowledges
or finishes it, so requests run on a QThread worker and their outcome is
delivered back to the owning thread through queued signals.
"""

from __future__ import annotations

import dataclasses
import logging
import threading
from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Protocol, runtime_checkable

from PySide6.QtCore import QObject, QThread, Signal, Slot

from .errors import CancellationError
from .phases import ConversionKind

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class EngineRequest:
    """A conversion request handed to an engine."""

    job_id: str
    kind: ConversionKind
    targets: tuple[str, ...]
    options: Mapping[str, Any] = dataclasses.field(default_factory=dict)

    @property
    def target(self) -> str:
        """First (or only) target of the request."""
        return self.targets[0]


@dataclass
class EngineResult:
    """
    Outcome of an engine request.

    A successful result only means the engine accepted or finished the
    request; the job itself ends through the event channels or polling.
    """

    success: bool = True
    output_path: Path | None = None
    error_message: str | None = None
    data: dict[str, Any] = dataclasses.field(default_factory=dict)

    @classmethod
    def from_value(cls, value: Any) -> EngineResult:
        """Normalize whatever an engine returned into an EngineResult."""
        if isinstance(value, EngineResult):
            return value
        if value is None:
            return cls(success=True)
        if isinstance(value, Mapping):
            output = value.get("output_path") or value.get("outputPath")
            return cls(
                success=bool(value.get("success", True)),
                output_path=Path(output) if output else None,
                error_message=value.get("error"),
                data=dict(value),
            )
        return cls(success=bool(value))


@runtime_checkable
class ConversionEngine(Protocol):
    """
    External conversion engine.

    Engines with ``supports_push_events = False`` do not publish progress
    events and are followed by polling query_status() instead.
    """

    supports_push_events: bool

    def submit(self, request: EngineRequest) -> EngineResult | Mapping[str, Any] | None: ...

    def cancel(self, job_id: str) -> None: ...

    def query_status(self, job_id: str) -> Mapping[str, Any]: ...


class CancellationToken:
    """
    Simple cancellation token for cooperative cancellation.

    Long-running operations check the token periodically and stop on their
    own; nothing is interrupted forcibly.
    """

    def __init__(self) -> None:
        self._cancelled = threading.Event()

    def cancel(self) -> None:
        """Request cancellation of the operation."""
        self._cancelled.set()

    def is_cancelled(self) -> bool:
        return self._cancelled.is_set()

    def check_cancelled(self) -> None:
        """
        Raise if cancellation has been requested.

        Raises:
            CancellationError: If cancellation has been requested
        """
        if self.is_cancelled():
            raise CancellationError("Operation was cancelled")


def run_request(engine: ConversionEngine, request: EngineRequest) -> EngineResult:
    """Submit a request synchronously and normalize the engine's answer."""
    logger.info(f"Submitting {request.kind.value} job {request.job_id} to {type(engine).__name__}")
    return EngineResult.from_value(engine.submit(request))


class EngineRequestWorker(QThread):
    """
    QThread that submits one request to an engine.

    Exactly one of the terminal signals is emitted per run.

    Signals:
        requestFinished(str, object): Job id and EngineResult
        requestFailed(str, str, str): Job id, error type and message
        requestCancelled(str): Job id, when the token was cancelled before the engine answered
    """

    requestFinished = Signal(str, object)
    requestFailed = Signal(str, str, str)
    requestCancelled = Signal(str)

    def __init__(
        self,
        engine: ConversionEngine,
        request: EngineRequest,
        cancel_token: CancellationToken | None = None,
        parent: QObject | None = None,
    ) -> None:
        super().__init__(parent)
        self.engine = engine
        self.request = request
        self.cancel_token = cancel_token or CancellationToken()
        self.setObjectName(f"EngineRequestWorker-{request.job_id}")

    @Slot()
    def cancel(self) -> None:
        """Request cancellation; the engine call itself is not interrupted."""
        logger.info(f"Cancellation requested for engine request {self.request.job_id}")
        self.cancel_token.cancel()

    def run(self) -> None:
        job_id = self.request.job_id
        try:
            self.cancel_token.check_cancelled()
            result = run_request(self.engine, self.request)

            if self.cancel_token.is_cancelled():
                logger.info(f"Engine request {job_id} returned after cancellation")
                self.requestCancelled.emit(job_id)
            else:
                self.requestFinished.emit(job_id, result)

        except CancellationError:
            self.requestCancelled.emit(job_id)
        except Exception as e:
            # Use thread-safe logging without traceback formatting
            logger.error(f"Engine request {job_id} failed: {type(e).__name__}")
            self.requestFailed.emit(job_id, e.__class__.__name__, str(e))
