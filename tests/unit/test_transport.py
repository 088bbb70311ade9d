"""
Tests for the event transport contract.
"""

import threading
from unittest.mock import MagicMock

import pytest

from convtrack.transport import CallbackPairTransport, Channel, SignalTransport, validate_payload


class TestValidatePayload:
    """Test per-channel payload schemas."""

    @pytest.mark.parametrize(
        "channel,payload",
        [
            (Channel.PROGRESS, {"file": "report.docx", "progress": 30}),
            (Channel.PROGRESS, {"id": "job-1", "sitemap_urls": 12}),
            (Channel.PROGRESS, {}),
            (Channel.STATUS, {"status": "crawling_pages"}),
            (Channel.COMPLETE, {"id": "job-1", "result": {"pages": 3}}),
            (Channel.ERROR, {"error": "timeout"}),
        ],
    )
    def test_valid(self, channel, payload):
        assert validate_payload(channel, payload) is None

    @pytest.mark.parametrize(
        "channel,payload",
        [
            (Channel.PROGRESS, None),
            (Channel.PROGRESS, "30%"),
            (Channel.PROGRESS, {"progress": "thirty"}),
            (Channel.PROGRESS, {"sitemap_urls": -1}),
            (Channel.STATUS, {"file": "report.docx"}),
            (Channel.ERROR, {"error": 500}),
        ],
    )
    def test_invalid(self, channel, payload):
        assert validate_payload(channel, payload) is not None

    def test_accepts_channel_name(self):
        assert validate_payload("status", {"status": "done"}) is None


class TestSignalTransport:
    """Test the in-process signal transport."""

    def test_publish_reaches_subscribers(self, qtbot):
        transport = SignalTransport()
        callback = MagicMock()
        transport.subscribe(Channel.PROGRESS, callback)

        transport.publish(Channel.PROGRESS, {"progress": 10})

        callback.assert_called_once_with({"progress": 10})

    def test_channels_are_isolated(self, qtbot):
        transport = SignalTransport()
        callback = MagicMock()
        transport.subscribe(Channel.STATUS, callback)

        transport.publish(Channel.PROGRESS, {"progress": 10})

        callback.assert_not_called()

    def test_unsubscribe_is_idempotent(self, qtbot):
        transport = SignalTransport()
        callback = MagicMock()
        subscription = transport.subscribe(Channel.ERROR, callback)
        assert transport.subscription_count(Channel.ERROR) == 1

        subscription.unsubscribe()
        subscription.unsubscribe()
        transport.publish(Channel.ERROR, {"error": "boom"})

        assert not subscription.active
        assert transport.subscription_count() == 0
        callback.assert_not_called()

    def test_subscriber_exception_does_not_stop_dispatch(self, qtbot):
        transport = SignalTransport()
        failing = MagicMock(side_effect=RuntimeError("boom"))
        working = MagicMock()
        transport.subscribe(Channel.PROGRESS, failing)
        transport.subscribe(Channel.PROGRESS, working)

        transport.publish(Channel.PROGRESS, {"progress": 1})

        working.assert_called_once()

    def test_unsubscribed_during_dispatch_is_skipped(self, qtbot):
        transport = SignalTransport()
        second = MagicMock()
        holder = {}

        def first(payload):
            holder["second"].unsubscribe()

        transport.subscribe(Channel.COMPLETE, first)
        holder["second"] = transport.subscribe(Channel.COMPLETE, second)

        transport.publish(Channel.COMPLETE, {})

        second.assert_not_called()

    def test_publish_from_worker_thread_is_queued(self, qtbot):
        transport = SignalTransport()
        received = []
        transport.subscribe(Channel.PROGRESS, lambda payload: received.append((payload, threading.get_ident())))

        worker = threading.Thread(target=lambda: transport.publish(Channel.PROGRESS, {"progress": 5}))
        with qtbot.waitSignal(transport.eventPublished, timeout=2000):
            worker.start()
            worker.join()

        assert received == [({"progress": 5}, threading.get_ident())]

    def test_event_published_signal(self, qtbot):
        transport = SignalTransport()
        with qtbot.waitSignal(transport.eventPublished) as blocker:
            transport.publish("status", {"status": "done"})
        assert blocker.args == ["status", {"status": "done"}]


class FakeCallbackApi:
    """API exposing on_*/off_* pairs that must receive the same callback."""

    def __init__(self):
        self.listeners = {}

    def __getattr__(self, name):
        action, _, channel = name.partition("_")
        if action not in ("on", "off"):
            raise AttributeError(name)

        def register(callback):
            listeners = self.listeners.setdefault(channel, [])
            if action == "on":
                listeners.append(callback)
            else:
                listeners.remove(callback)

        return register


class TestCallbackPairTransport:
    def test_subscribe_and_unsubscribe_use_same_callback(self):
        api = FakeCallbackApi()
        transport = CallbackPairTransport(api)
        callback = MagicMock()

        subscription = transport.subscribe(Channel.PROGRESS, callback)
        assert api.listeners["conversion_progress"] == [callback]

        subscription.unsubscribe()
        subscription.unsubscribe()
        assert api.listeners["conversion_progress"] == []

    def test_failing_on_method_propagates(self):
        api = MagicMock()
        api.on_conversion_error.side_effect = RuntimeError("not connected")

        with pytest.raises(RuntimeError):
            CallbackPairTransport(api).subscribe(Channel.ERROR, MagicMock())
