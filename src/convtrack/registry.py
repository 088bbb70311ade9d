"""
Event handler registry for conversion jobs.

The registry binds the four engine event channels to a job, routes each
incoming event to the job it belongs to and applies its effect to the state
store. A registration exists exactly as long as its channel subscriptions
are active: binding is all-or-nothing, and the terminal complete/error
events tear it down exactly once.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass, field
from typing import Any

from .errors import RegistrationError
from .phases import CanonicalPhase, ConversionKind, is_terminal, map_status
from .progress import ProgressAggregator
from .state import DEFAULT_ERROR_MESSAGE, ConversionStateStore
from .transport import Channel, EventTransport, Subscription, validate_payload

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[float, Mapping[str, Any]], None]
ItemCompleteCallback = Callable[[Mapping[str, Any]], None]

_WEBSITE_KEYS = ("sitemap_urls", "crawled_urls", "section", "processed")


@dataclass
class Registration:
    """Channel subscriptions bound to one job."""

    job_id: str
    identifier: str
    members: frozenset[str] = frozenset()
    subscriptions: dict[Channel, Subscription] = field(default_factory=dict)

    def matches_unit(self, unit: str) -> bool:
        return unit == self.identifier or unit in self.members


class JobRegistry:
    """
    Binds engine event channels to jobs and applies their effects.

    Events are matched by embedded job id, then by file/URL identifier, and
    uncorrelated events only reach the job currently shown by the store.
    Anything else is treated as belonging to a stale job and dropped.
    """

    def __init__(
        self,
        transport: EventTransport,
        store: ConversionStateStore,
        aggregator: ProgressAggregator | None = None,
        *,
        validate_payloads: bool = True,
    ) -> None:
        self._transport = transport
        self._store = store
        self._aggregator = aggregator or ProgressAggregator(store)
        self._validate = validate_payloads
        self._registrations: dict[str, Registration] = {}

    # ------------------------------------------------------------ lifecycle

    def register_handlers(
        self,
        job_id: str,
        identifier: str,
        on_progress: ProgressCallback | None = None,
        on_item_complete: ItemCompleteCallback | None = None,
        members: Iterable[str] | None = None,
    ) -> Registration:
        """
        Subscribe to the four event channels on behalf of a job.

        Args:
            job_id: Job the events belong to
            identifier: File path or URL used to correlate events without an id
            on_progress: Called with (progress, payload) for every matched progress event
            on_item_complete: Called with the payload when a unit or the job completes
            members: Batch unit identifiers that also correlate with this job

        Returns:
            The active Registration

        Raises:
            RegistrationError: If a channel could not be subscribed; channels
                bound before the failure are unbound again
        """
        if job_id in self._registrations:
            logger.warning(f"Job {job_id} is already registered, replacing its handlers")
            self.remove_handlers(job_id)

        registration = Registration(job_id=job_id, identifier=identifier, members=frozenset(members or ()))
        handlers: dict[Channel, Callable[[Any], None]] = {
            Channel.PROGRESS: lambda payload: self._on_progress(registration, payload, on_progress, on_item_complete),
            Channel.STATUS: lambda payload: self._on_status(registration, payload),
            Channel.COMPLETE: lambda payload: self._on_complete(registration, payload, on_item_complete),
            Channel.ERROR: lambda payload: self._on_error(registration, payload),
        }

        for channel, handler in handlers.items():
            try:
                registration.subscriptions[channel] = self._transport.subscribe(
                    channel, self._guarded(registration, channel, handler)
                )
            except Exception as e:
                logger.error(f"Failed to subscribe job {job_id} to '{channel.value}': {e}")
                self._unsubscribe_all(registration)
                raise RegistrationError(job_id, channel.value, technical_message=f"{type(e).__name__}: {e}") from e

        self._registrations[job_id] = registration
        logger.debug(f"Registered handlers for job {job_id} ({identifier})")
        return registration

    def remove_handlers(self, job_id: str) -> bool:
        """
        Unsubscribe a job from all channels and forget its registration.

        Returns:
            True if a registration was removed, False if none existed
        """
        registration = self._registrations.pop(job_id, None)
        if registration is None:
            return False
        self._unsubscribe_all(registration)
        logger.debug(f"Removed handlers for job {job_id}")
        return True

    def remove_all_handlers(self) -> None:
        for job_id in list(self._registrations):
            self.remove_handlers(job_id)

    def _unsubscribe_all(self, registration: Registration) -> None:
        for channel, subscription in list(registration.subscriptions.items()):
            try:
                subscription.unsubscribe()
            except Exception:
                logger.exception(f"Failed to unsubscribe job {registration.job_id} from '{channel.value}'")
        registration.subscriptions.clear()

    def get_registration(self, job_id: str) -> Registration | None:
        return self._registrations.get(job_id)

    def is_active(self, job_id: str) -> bool:
        return job_id in self._registrations

    def get_active_jobs(self) -> list[str]:
        return list(self._registrations)

    # -------------------------------------------------------------- routing

    def _is_current(self, registration: Registration) -> bool:
        return self._registrations.get(registration.job_id) is registration

    def _matches(self, registration: Registration, payload: Mapping[str, Any]) -> bool:
        if not self._is_current(registration):
            return False
        if self._store.state.job_id != registration.job_id:
            return False

        event_id = payload.get("id")
        if event_id:
            return event_id == registration.job_id

        unit = payload.get("file") or payload.get("url")
        if unit:
            return registration.matches_unit(unit)

        return True

    def _guarded(
        self, registration: Registration, channel: Channel, handler: Callable[[Any], None]
    ) -> Callable[[Any], None]:
        """Wrap a channel handler so a malformed payload never reaches the transport's dispatch loop."""

        def dispatch(payload: Any) -> None:
            try:
                handler(payload)
            except Exception:
                logger.exception(f"Dropping '{channel.value}' event for job {registration.job_id} after handler failure")

        return dispatch

    def _accept(self, channel: Channel, registration: Registration, payload: Any) -> bool:
        if not self._is_current(registration):
            return False

        if self._validate:
            problem = validate_payload(channel, payload)
            if problem is not None:
                logger.warning(f"Dropping malformed '{channel.value}' event for job {registration.job_id}: {problem}")
                return False
        elif not isinstance(payload, Mapping):
            logger.warning(f"Dropping '{channel.value}' event without payload for job {registration.job_id}")
            return False

        if not self._matches(registration, payload):
            logger.debug(f"Dropping unmatched '{channel.value}' event for job {registration.job_id}")
            return False
        return True

    # ------------------------------------------------------------- handlers

    def _on_progress(
        self,
        registration: Registration,
        payload: Any,
        on_progress: ProgressCallback | None,
        on_item_complete: ItemCompleteCallback | None,
    ) -> None:
        if not self._accept(Channel.PROGRESS, registration, payload):
            return

        kind = self._store.state.kind
        unit = payload.get("file") or payload.get("url")
        phase = map_status(payload.get("status"), kind)

        if kind is ConversionKind.BATCH and unit and is_terminal(phase):
            # Per-file result inside a batch, not the end of the job
            self._aggregator.record_unit_result(unit, phase is CanonicalPhase.COMPLETED)
            self._invoke(on_item_complete, payload)
        else:
            fields: dict[str, Any] = {}
            if kind is ConversionKind.WEBSITE and any(key in payload for key in _WEBSITE_KEYS):
                fields.update(self._aggregator.website_fields(payload))

            # Percent derived from crawl counts wins over a reported one
            if payload.get("progress") is not None and "progress" not in fields:
                fields["progress"] = payload["progress"]
            if payload.get("chunk_progress") is not None:
                fields["chunk_progress"] = payload["chunk_progress"]
            if unit:
                fields["current_unit"] = unit
            if phase is not None and not is_terminal(phase):
                fields["status"] = phase
            elif payload.get("status") and phase is None:
                logger.debug(f"Unrecognized progress status {payload['status']!r} for job {registration.job_id}")
            if fields:
                self._store.batch_update(**fields)

        if on_progress is not None:
            self._invoke(on_progress, payload.get("progress") or 0, payload)

    def _on_status(self, registration: Registration, payload: Any) -> None:
        if not self._accept(Channel.STATUS, registration, payload):
            return

        raw_status = payload.get("status")
        if not raw_status:
            logger.warning(f"Dropping 'status' event without a status for job {registration.job_id}")
            return

        phase = map_status(raw_status, self._store.state.kind)
        if phase is None:
            logger.debug(f"Ignoring unrecognized status {raw_status!r} for job {registration.job_id}")
            return

        if phase is CanonicalPhase.COMPLETED:
            self._store.complete()
        elif phase is CanonicalPhase.ERROR:
            self._store.set_error(payload.get("error") or DEFAULT_ERROR_MESSAGE)
        elif phase is CanonicalPhase.CANCELLED:
            self._store.cancel()
        else:
            fields: dict[str, Any] = {"status": phase}
            unit = payload.get("file") or payload.get("url")
            if unit:
                fields["current_unit"] = unit
            self._store.batch_update(**fields)

    def _on_complete(
        self, registration: Registration, payload: Any, on_item_complete: ItemCompleteCallback | None
    ) -> None:
        if not self._accept(Channel.COMPLETE, registration, payload):
            return

        logger.info(f"Completion event received for job {registration.job_id}")
        try:
            self._store.complete()
            self._invoke(on_item_complete, payload)
        finally:
            self.remove_handlers(registration.job_id)

    def _on_error(self, registration: Registration, payload: Any) -> None:
        if not self._accept(Channel.ERROR, registration, payload):
            return

        message = payload.get("error") or DEFAULT_ERROR_MESSAGE
        logger.error(f"Error event received for job {registration.job_id}: {message}")
        try:
            self._store.set_error(message)
        finally:
            self.remove_handlers(registration.job_id)

    def _invoke(self, callback: Callable[..., None] | None, *args: Any) -> None:
        if callback is None:
            return
        try:
            callback(*args)
        except Exception:
            logger.exception("Conversion callback raised; continuing event dispatch")
