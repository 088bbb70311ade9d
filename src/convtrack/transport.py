"""
Event channel contract between conversion engines and the tracking core.

Engines report on four channels (progress, status, complete, error), each
carrying a single dict payload. Subscribing to a channel returns a
Subscription handle, so teardown is a matter of unsubscribing every handle
that was handed out.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable, Mapping
from enum import Enum
from typing import Any, Protocol

import jsonschema
from PySide6.QtCore import QObject, Signal, Slot

logger = logging.getLogger(__name__)

EventCallback = Callable[[Any], None]


class Channel(str, Enum):
    """Event channels emitted by conversion engines."""

    PROGRESS = "progress"
    STATUS = "status"
    COMPLETE = "complete"
    ERROR = "error"


_OPTIONAL_STRING = {"type": ["string", "null"]}

# JSON Schemas (draft-07) for channel payloads
EVENT_SCHEMAS: dict[Channel, dict[str, Any]] = {
    Channel.PROGRESS: {
        "$schema": "http://json-schema.org/draft-07/schema#",
        "title": "Conversion progress event",
        "type": "object",
        "properties": {
            "id": _OPTIONAL_STRING,
            "file": _OPTIONAL_STRING,
            "url": _OPTIONAL_STRING,
            "status": _OPTIONAL_STRING,
            "progress": {"type": "number"},
            "sitemap_urls": {"type": "integer", "minimum": 0},
            "crawled_urls": {"type": "integer", "minimum": 0},
            "section": {"type": "string"},
            "section_count": {"type": "integer", "minimum": 0},
            "processed": {"type": "integer", "minimum": 0},
            "total": {"type": "integer", "minimum": 0},
            "chunk_progress": {"type": "number"},
        },
    },
    Channel.STATUS: {
        "$schema": "http://json-schema.org/draft-07/schema#",
        "title": "Conversion status event",
        "type": "object",
        "required": ["status"],
        "properties": {
            "id": _OPTIONAL_STRING,
            "status": {"type": "string"},
            "file": _OPTIONAL_STRING,
            "url": _OPTIONAL_STRING,
            "error": _OPTIONAL_STRING,
        },
    },
    Channel.COMPLETE: {
        "$schema": "http://json-schema.org/draft-07/schema#",
        "title": "Conversion complete event",
        "type": "object",
        "properties": {"id": _OPTIONAL_STRING},
    },
    Channel.ERROR: {
        "$schema": "http://json-schema.org/draft-07/schema#",
        "title": "Conversion error event",
        "type": "object",
        "properties": {"id": _OPTIONAL_STRING, "error": _OPTIONAL_STRING},
    },
}

_VALIDATORS = {channel: jsonschema.Draft7Validator(schema) for channel, schema in EVENT_SCHEMAS.items()}


def validate_payload(channel: Channel | str, payload: Any) -> str | None:
    """
    Check a payload against its channel schema.

    Args:
        channel: Channel the payload arrived on
        payload: Event payload

    Returns:
        None if the payload is valid, otherwise a description of the problem
    """
    if payload is None:
        return "payload is missing"
    if not isinstance(payload, Mapping):
        return f"payload must be an object, got {type(payload).__name__}"

    error = jsonschema.exceptions.best_match(_VALIDATORS[Channel(channel)].iter_errors(dict(payload)))
    if error is None:
        return None
    location = ".".join(str(part) for part in error.absolute_path)
    return f"{location}: {error.message}" if location else error.message


class Subscription:
    """
    Handle for one channel subscription.

    Calling unsubscribe() more than once is harmless.
    """

    def __init__(
        self,
        channel: Channel,
        callback: EventCallback,
        on_unsubscribe: Callable[[Subscription], None],
    ) -> None:
        self.channel = channel
        self.callback = callback
        self._on_unsubscribe = on_unsubscribe
        self._active = True

    @property
    def active(self) -> bool:
        return self._active

    def unsubscribe(self) -> None:
        if not self._active:
            return
        self._active = False
        self._on_unsubscribe(self)

    def __repr__(self) -> str:
        state = "active" if self._active else "closed"
        return f"Subscription(channel={self.channel.value}, {state})"


class EventTransport(Protocol):
    """Anything that can hand out channel subscriptions."""

    def subscribe(self, channel: Channel, callback: EventCallback) -> Subscription: ...


class SignalTransport(QObject):
    """
    In-process transport built on a Qt signal.

    publish() may be called from any thread. Delivery happens on the thread
    that owns the transport: directly when published from that thread,
    otherwise queued in publish order.

    Signals:
        eventPublished(str, object): Channel name and payload of every delivered event
    """

    eventPublished = Signal(str, object)
    _deliver = Signal(str, object)

    def __init__(self, parent: QObject | None = None) -> None:
        super().__init__(parent)
        self._lock = threading.Lock()
        self._subscriptions: dict[Channel, list[Subscription]] = {channel: [] for channel in Channel}
        self._deliver.connect(self._dispatch)
        self.setObjectName("SignalTransport")

    def subscribe(self, channel: Channel | str, callback: EventCallback) -> Subscription:
        channel = Channel(channel)
        subscription = Subscription(channel, callback, self._remove)
        with self._lock:
            self._subscriptions[channel].append(subscription)
        return subscription

    def _remove(self, subscription: Subscription) -> None:
        with self._lock:
            subscribers = self._subscriptions[subscription.channel]
            if subscription in subscribers:
                subscribers.remove(subscription)

    def subscription_count(self, channel: Channel | str | None = None) -> int:
        """Number of active subscriptions on one channel, or on all channels."""
        with self._lock:
            if channel is not None:
                return len(self._subscriptions[Channel(channel)])
            return sum(len(subs) for subs in self._subscriptions.values())

    def publish(self, channel: Channel | str, payload: Any) -> None:
        """Send an event to every subscriber of the channel."""
        self._deliver.emit(Channel(channel).value, payload)

    @Slot(str, object)
    def _dispatch(self, channel_name: str, payload: Any) -> None:
        channel = Channel(channel_name)
        with self._lock:
            subscribers = list(self._subscriptions[channel])

        for subscription in subscribers:
            # A subscriber earlier in this loop may have torn others down
            if not subscription.active:
                continue
            try:
                subscription.callback(payload)
            except Exception:
                logger.exception(f"Subscriber on '{channel.value}' raised while handling an event")

        self.eventPublished.emit(channel.value, payload)


class CallbackPairTransport:
    """
    Adapts an API exposing on_*/off_* callback pairs to subscription handles.

    The wrapped object must provide ``on_conversion_progress`` and
    ``off_conversion_progress`` (and the same for status, complete and error).
    Unsubscribing passes the exact callback given to the matching ``on_*``.
    """

    METHOD_NAMES: dict[Channel, tuple[str, str]] = {
        Channel.PROGRESS: ("on_conversion_progress", "off_conversion_progress"),
        Channel.STATUS: ("on_conversion_status", "off_conversion_status"),
        Channel.COMPLETE: ("on_conversion_complete", "off_conversion_complete"),
        Channel.ERROR: ("on_conversion_error", "off_conversion_error"),
    }

    def __init__(self, api: Any) -> None:
        self._api = api

    def subscribe(self, channel: Channel | str, callback: EventCallback) -> Subscription:
        channel = Channel(channel)
        on_name, off_name = self.METHOD_NAMES[channel]
        getattr(self._api, on_name)(callback)

        def detach(subscription: Subscription) -> None:
            getattr(self._api, off_name)(subscription.callback)

        return Subscription(channel, callback, detach)
