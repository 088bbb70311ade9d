"""
Public entry point for starting and following conversion jobs.

JobOrchestrator owns the state store, progress aggregator and event registry
for one UI context. Each convert_* call starts the store, binds the event
channels, hands the request to the engine and returns a JobHandle that
resolves exactly once when the store reaches a terminal phase.
"""

from __future__ import annotations

import dataclasses
import logging
import random
import string
import time
import uuid
from collections.abc import Callable, Iterable, Mapping
from typing import Any
from urllib.parse import urlsplit, urlunsplit

from PySide6.QtCore import QEventLoop, QObject, Qt, QTimer, Signal, Slot

from .config import DEFAULT_CONFIG
from .config_manager import ConfigManager
from .engine import CancellationToken, ConversionEngine, EngineRequest, EngineRequestWorker, EngineResult, run_request
from .error_handler import get_error_handler
from .errors import ConversionError, EngineError, ErrorCode, RegistrationError, ValidationError
from .phases import CanonicalPhase, ConversionKind
from .polling import StatusPoller
from .progress import ProgressAggregator
from .registry import ItemCompleteCallback, JobRegistry, ProgressCallback
from .state import DEFAULT_ERROR_MESSAGE, ConversionStateStore, JobState
from .transport import EventTransport

logger = logging.getLogger(__name__)

_BASE36 = string.digits + string.ascii_lowercase


def generate_job_id() -> str:
    """
    Generate a job id unique within the session.

    Uses a random UUID; when the platform has no randomness source it falls
    back to a millisecond timestamp with a random base-36 suffix.
    """
    try:
        return str(uuid.uuid4())
    except NotImplementedError:
        suffix = "".join(random.choices(_BASE36, k=9))
        return f"{int(time.time() * 1000)}-{suffix}"


def normalize_url(url: str) -> str:
    """
    Normalize a website URL for use as a job identifier.

    Args:
        url: Absolute http(s) URL

    Returns:
        Lower-cased URL without trailing slashes on its path

    Raises:
        ValidationError: If the URL is empty or not an absolute http(s) URL
    """
    if not isinstance(url, str) or not url.strip():
        raise ValidationError(ErrorCode.REQUIRED_FIELD_MISSING, "A website URL is required", field="url")

    parts = urlsplit(url.strip().lower())
    if parts.scheme not in ("http", "https") or not parts.netloc:
        raise ValidationError(ErrorCode.INVALID_URL, f"Not a valid website URL: {url}", field="url")

    return urlunsplit((parts.scheme, parts.netloc, parts.path.rstrip("/"), parts.query, parts.fragment))


class JobHandle(QObject):
    """
    Caller-facing handle of one conversion job.

    Signals:
        finished(object): Final JobState when the job completed
        failed(str): Error message when the job failed
        cancelled(): The job was cancelled or superseded
        resolved(object): Final JobState, emitted after whichever of the above applies
    """

    finished = Signal(object)
    failed = Signal(str)
    cancelled = Signal()
    resolved = Signal(object)

    def __init__(self, job_id: str, kind: ConversionKind, parent: QObject | None = None) -> None:
        super().__init__(parent)
        self.job_id = job_id
        self.kind = kind
        self.engine_result: EngineResult | None = None
        self._state: JobState | None = None
        self._done = False
        self.setObjectName(f"JobHandle-{job_id}")

    def is_done(self) -> bool:
        return self._done

    def result(self) -> JobState | None:
        """Final state of a completed job, None otherwise."""
        if self._done and self._state is not None and self._state.status is CanonicalPhase.COMPLETED:
            return self._state
        return None

    def error(self) -> str | None:
        return self._state.error if self._state is not None else None

    def status(self) -> CanonicalPhase | None:
        """Last known phase of the job."""
        return self._state.status if self._state is not None else None

    def wait(self, timeout_ms: int = 0) -> bool:
        """
        Block in a local event loop until the handle resolves.

        Args:
            timeout_ms: Give up after this many milliseconds (0 waits indefinitely)

        Returns:
            True if the handle resolved, False on timeout
        """
        if self._done:
            return True

        loop = QEventLoop()
        self.resolved.connect(loop.quit)
        if timeout_ms > 0:
            QTimer.singleShot(timeout_ms, loop.quit)
        loop.exec()
        self.resolved.disconnect(loop.quit)
        return self._done

    def _track(self, state: JobState) -> None:
        if not self._done:
            self._state = state

    def _resolve(self, state: JobState) -> None:
        if self._done:
            return
        self._done = True
        self._state = state

        if state.status is CanonicalPhase.COMPLETED:
            self.finished.emit(state)
        elif state.status is CanonicalPhase.ERROR:
            self.failed.emit(state.error or DEFAULT_ERROR_MESSAGE)
        else:
            self.cancelled.emit()
        self.resolved.emit(state)


class JobOrchestrator(QObject):
    """
    Starts conversion jobs and follows them to a terminal phase.

    One orchestrator tracks one live job at a time; starting another job
    tears down the previous job's registration and supersedes its handle.

    Signals:
        jobStarted(str): Job id, after the store started and channels were bound
        jobFinished(str, object): Job id and final JobState
    """

    jobStarted = Signal(str)
    jobFinished = Signal(str, object)

    def __init__(
        self,
        engine: ConversionEngine,
        transport: EventTransport,
        config: Mapping[str, Any] | ConfigManager | None = None,
        parent: QObject | None = None,
        *,
        clock: Callable[[], float] = time.time,
    ) -> None:
        """
        Initialize the orchestrator and the context objects it owns.

        Args:
            engine: Conversion engine requests are handed to
            transport: Event transport the engine publishes on
            config: Settings overriding DEFAULT_CONFIG, or a ConfigManager to read them from
            parent: Parent QObject for lifetime management
            clock: Wall clock used for job timestamps and ETA
        """
        super().__init__(parent)
        if isinstance(config, ConfigManager):
            config = config.load_all()
        self._config: dict[str, Any] = {**DEFAULT_CONFIG, **(config or {})}

        self._engine = engine
        self._store = ConversionStateStore(self, timer_interval_ms=int(self._config["timer_interval_ms"]), clock=clock)
        self._aggregator = ProgressAggregator(self._store, clock=clock)
        self._registry = JobRegistry(
            transport,
            self._store,
            self._aggregator,
            validate_payloads=bool(self._config["validate_payloads"]),
        )

        self._handle: JobHandle | None = None
        self._cancel_token: CancellationToken | None = None
        self._poller: StatusPoller | None = None
        self._workers: dict[str, EngineRequestWorker] = {}
        self._disposed = False

        self._deadline = QTimer(self)
        self._deadline.setSingleShot(True)
        self._deadline.timeout.connect(self._on_deadline)

        self._store.stateChanged.connect(self._on_state_changed)
        self.setObjectName("JobOrchestrator")

    @property
    def store(self) -> ConversionStateStore:
        return self._store

    @property
    def registry(self) -> JobRegistry:
        return self._registry

    @property
    def aggregator(self) -> ProgressAggregator:
        return self._aggregator

    @property
    def config(self) -> Mapping[str, Any]:
        return self._config

    @property
    def current_handle(self) -> JobHandle | None:
        return self._handle

    def is_running(self) -> bool:
        return self._handle is not None and not self._handle.is_done()

    # --------------------------------------------------------------- convert

    def convert_file(
        self,
        target: str,
        options: Mapping[str, Any] | None = None,
        on_progress: ProgressCallback | None = None,
    ) -> JobHandle:
        """
        Start converting a single file.

        Raises:
            ValidationError: If no target is given
            RegistrationError: If the event channels could not be bound
        """
        if not target:
            raise ValidationError(ErrorCode.REQUIRED_FIELD_MISSING, "A file to convert is required", field="target")

        return self._launch(
            ConversionKind.FILE,
            (target,),
            options,
            start=lambda job_id: self._store.start_file(target, job_id),
            identifier=target,
            on_progress=on_progress,
        )

    def convert_batch(
        self,
        targets: Iterable[str],
        options: Mapping[str, Any] | None = None,
        on_progress: ProgressCallback | None = None,
        on_item_complete: ItemCompleteCallback | None = None,
    ) -> JobHandle:
        """
        Start converting several files as one job.

        Per-file results arrive as progress events and are counted; the job
        itself ends with the complete or error event.

        Raises:
            ValidationError: If the list of targets is empty
            RegistrationError: If the event channels could not be bound
        """
        targets = tuple(t for t in targets if t)
        if not targets:
            raise ValidationError(ErrorCode.INVALID_INPUT, "Select at least one file to convert", field="targets")

        return self._launch(
            ConversionKind.BATCH,
            targets,
            options,
            start=lambda job_id: self._store.start_batch(targets, job_id),
            identifier=None,
            members=targets,
            on_progress=on_progress,
            on_item_complete=on_item_complete,
        )

    def convert_website(
        self,
        url: str,
        options: Mapping[str, Any] | None = None,
        on_progress: ProgressCallback | None = None,
    ) -> JobHandle:
        """
        Start crawling and converting a website.

        The URL is normalized before it is used as the job identifier, and the
        configured crawl limits apply unless the options override them.

        Raises:
            ValidationError: If the URL is missing or invalid
            RegistrationError: If the event channels could not be bound
        """
        normalized = normalize_url(url)
        merged = {
            "max_depth": self._config["max_depth"],
            "max_pages": self._config["max_pages"],
            **(options or {}),
        }
        path_filter = merged.get("path_filter")

        return self._launch(
            ConversionKind.WEBSITE,
            (normalized,),
            merged,
            start=lambda job_id: self._store.start_website(normalized, job_id, path_filter),
            identifier=normalized,
            on_progress=on_progress,
        )

    def _launch(
        self,
        kind: ConversionKind,
        targets: tuple[str, ...],
        options: Mapping[str, Any] | None,
        *,
        start: Callable[[str], JobState],
        identifier: str | None,
        members: Iterable[str] | None = None,
        on_progress: ProgressCallback | None = None,
        on_item_complete: ItemCompleteCallback | None = None,
    ) -> JobHandle:
        if self._disposed:
            raise RuntimeError("JobOrchestrator has been disposed")

        self._supersede_current()

        job_id = generate_job_id()
        handle = JobHandle(job_id, kind, self)
        self._handle = handle
        self._cancel_token = CancellationToken()
        start(job_id)

        try:
            self._registry.register_handlers(
                job_id,
                identifier or job_id,
                on_progress=on_progress,
                on_item_complete=on_item_complete,
                members=members,
            )
        except RegistrationError as e:
            self._fail(e, {"job_id": job_id, "stage": "register"})
            raise

        self.jobStarted.emit(job_id)

        deadline_ms = int(self._config["completion_deadline_ms"])
        if deadline_ms > 0:
            self._deadline.start(deadline_ms)

        request = EngineRequest(job_id=job_id, kind=kind, targets=targets, options=dict(options or {}))
        if self._config["run_in_thread"]:
            self._submit_in_thread(request)
        else:
            self._submit_inline(request)
        return handle

    # ---------------------------------------------------------------- engine

    def _submit_inline(self, request: EngineRequest) -> None:
        try:
            result = run_request(self._engine, request)
        except Exception as e:
            if self._is_current(request.job_id):
                self._fail(e, {"job_id": request.job_id, "stage": "submit"})
            return
        self._on_request_finished(request.job_id, result)

    def _submit_in_thread(self, request: EngineRequest) -> None:
        worker = EngineRequestWorker(self._engine, request, self._cancel_token, parent=self)
        worker.requestFinished.connect(self._on_request_finished, Qt.ConnectionType.QueuedConnection)
        worker.requestFailed.connect(self._on_request_failed, Qt.ConnectionType.QueuedConnection)
        worker.requestCancelled.connect(self._on_request_cancelled, Qt.ConnectionType.QueuedConnection)
        self._workers[request.job_id] = worker
        worker.start()

    @Slot(str, object)
    def _on_request_finished(self, job_id: str, result: EngineResult) -> None:
        self._release_worker(job_id)
        if self._handle is not None and self._handle.job_id == job_id:
            self._handle.engine_result = result
        if not self._is_current(job_id):
            logger.debug(f"Engine result for job {job_id} arrived after it ended")
            return

        if not result.success:
            error = ConversionError(result.error_message or DEFAULT_ERROR_MESSAGE, context={"job_id": job_id})
            self._fail(error, {"job_id": job_id, "stage": "result"})
            return

        if not self._engine.supports_push_events and not self._store.is_terminal:
            self._start_polling(job_id)

    @Slot(str, str, str)
    def _on_request_failed(self, job_id: str, error_type: str, message: str) -> None:
        self._release_worker(job_id)
        if not self._is_current(job_id):
            return
        error = EngineError(message or DEFAULT_ERROR_MESSAGE, technical_message=f"{error_type}: {message}")
        self._fail(error, {"job_id": job_id, "stage": "submit"})

    @Slot(str)
    def _on_request_cancelled(self, job_id: str) -> None:
        self._release_worker(job_id)
        if self._is_current(job_id):
            self._store.cancel()

    def _release_worker(self, job_id: str) -> None:
        worker = self._workers.pop(job_id, None)
        if worker is None:
            return
        if worker.isRunning():
            worker.wait(1000)
        worker.deleteLater()

    def _start_polling(self, job_id: str) -> None:
        self._stop_polling()
        self._poller = StatusPoller(
            self._engine,
            job_id,
            self._store,
            interval_ms=int(self._config["poll_interval_ms"]),
            cancel_token=self._cancel_token,
            max_failures=int(self._config["max_poll_failures"]),
            parent=self,
        )
        self._poller.start()

    def _stop_polling(self) -> None:
        if self._poller is None:
            return
        self._poller.stop()
        self._poller.deleteLater()
        self._poller = None

    # -------------------------------------------------------------- lifecycle

    def _is_current(self, job_id: str) -> bool:
        return self._handle is not None and self._handle.job_id == job_id and not self._handle.is_done()

    def _fail(self, exception: Exception, context: dict[str, Any]) -> None:
        handler = get_error_handler()
        app_error = handler.handle(exception, context)
        self._store.set_error(handler.to_user_message(app_error))

    @Slot(object)
    def _on_state_changed(self, state: JobState) -> None:
        handle = self._handle
        if handle is None or state.job_id != handle.job_id:
            return

        handle._track(state)
        if state.is_terminal and not handle.is_done():
            self._teardown(handle.job_id)
            handle._resolve(state)
            self.jobFinished.emit(handle.job_id, state)

    @Slot()
    def _on_deadline(self) -> None:
        if self._handle is None or self._store.is_terminal:
            return
        logger.warning(f"Completion deadline reached for job {self._handle.job_id}; marking it completed")
        self._store.complete()

    def _teardown(self, job_id: str) -> None:
        self._deadline.stop()
        self._stop_polling()
        self._registry.remove_handlers(job_id)

    def _supersede_current(self) -> None:
        handle = self._handle
        if handle is None:
            return
        if self._cancel_token is not None:
            self._cancel_token.cancel()
        self._teardown(handle.job_id)
        if not handle.is_done():
            logger.warning(f"Job {handle.job_id} superseded before it finished")
            handle._resolve(
                dataclasses.replace(
                    self._store.state, job_id=handle.job_id, kind=handle.kind, status=CanonicalPhase.CANCELLED
                )
            )
        self._handle = None

    def cancel(self) -> bool:
        """
        Cancel the running job.

        Cancellation is cooperative: the store moves to CANCELLED and the
        engine is asked to stop, but it may keep running on its own.

        Returns:
            True if a running job was cancelled
        """
        handle = self._handle
        if handle is None or handle.is_done():
            return False

        logger.info(f"Cancelling job {handle.job_id}")
        if self._cancel_token is not None:
            self._cancel_token.cancel()
        self._store.cancel()

        try:
            self._engine.cancel(handle.job_id)
        except Exception as e:
            logger.warning(f"Engine did not accept cancellation of job {handle.job_id}: {e}")
        return True

    def reset(self) -> None:
        """Tear down the current job and return the store to idle."""
        self._supersede_current()
        self._store.reset()

    def dispose(self, timeout_ms: int = 3000) -> None:
        """
        End the orchestrator's life: cancel work, unbind every channel and
        wait for request workers to exit.
        """
        if self._disposed:
            return
        self._disposed = True

        self._supersede_current()
        self._registry.remove_all_handlers()
        self._store.timer.stop()

        for job_id, worker in list(self._workers.items()):
            if not worker.wait(timeout_ms):
                logger.warning(f"Engine request {job_id} did not finish within {timeout_ms}ms during dispose")
            self._release_worker(job_id)
        logger.debug("JobOrchestrator disposed")
