"""
Tests for the job orchestrator.

Tests cover:
- End-to-end scenarios for file, batch and website jobs
- Engine failures, rejected requests and registration failures
- Threaded requests and the polling fallback
- Cancellation, superseding, reset, deadline and dispose
"""

import re
from unittest.mock import MagicMock, patch

import pytest

from convtrack.config_manager import ConfigManager
from convtrack.error_handler import get_error_handler
from convtrack.errors import RegistrationError, ValidationError
from convtrack.orchestrator import JobOrchestrator, generate_job_id, normalize_url
from convtrack.phases import CanonicalPhase, ConversionKind
from convtrack.simulation import SimulatedEngine
from convtrack.state import JobCounts
from convtrack.transport import Channel, SignalTransport


class ManualEngine:
    """Engine that accepts requests and leaves event publishing to the test."""

    supports_push_events = True

    def __init__(self):
        self.requests = []
        self.cancelled = []

    def submit(self, request):
        self.requests.append(request)

    def cancel(self, job_id):
        self.cancelled.append(job_id)

    def query_status(self, job_id):
        return {"status": "converting"}


class FailingStatusTransport(SignalTransport):
    def subscribe(self, channel, callback):
        if Channel(channel) is Channel.STATUS:
            raise RuntimeError("channel unavailable")
        return super().subscribe(channel, callback)


@pytest.fixture
def transport(qtbot):
    return SignalTransport()


@pytest.fixture
def engine():
    return ManualEngine()


def make_orchestrator(engine, transport, **config):
    return JobOrchestrator(engine, transport, {"run_in_thread": False, **config})


class TestFileJobs:
    """Test single-file conversions."""

    def test_happy_path(self, qtbot, engine, transport):
        orchestrator = make_orchestrator(engine, transport)
        handle = orchestrator.convert_file("report.docx")

        store = orchestrator.store
        assert store.status is CanonicalPhase.CONVERTING
        assert store.progress == 0
        assert engine.requests[0].targets == ("report.docx",)
        assert engine.requests[0].job_id == handle.job_id

        transport.publish(Channel.PROGRESS, {"file": "report.docx", "progress": 30})
        transport.publish(Channel.PROGRESS, {"progress": 90})
        assert store.progress == 90

        with qtbot.waitSignals([handle.finished, handle.resolved, orchestrator.jobFinished]):
            transport.publish(Channel.COMPLETE, {"id": handle.job_id})

        assert handle.is_done()
        assert handle.status() is CanonicalPhase.COMPLETED
        assert handle.result().progress == 100
        assert handle.error() is None
        assert orchestrator.registry.get_active_jobs() == []
        assert transport.subscription_count() == 0
        assert not orchestrator.is_running()

    def test_started_signal(self, qtbot, engine, transport):
        orchestrator = make_orchestrator(engine, transport)
        with qtbot.waitSignal(orchestrator.jobStarted) as blocker:
            handle = orchestrator.convert_file("report.docx")
        assert blocker.args == [handle.job_id]

    def test_simulated_engine_inline(self, qtbot, transport):
        engine = SimulatedEngine(transport)
        orchestrator = make_orchestrator(engine, transport)

        handle = orchestrator.convert_file("report.docx")

        assert handle.is_done()
        assert handle.status() is CanonicalPhase.COMPLETED
        assert handle.engine_result is not None and handle.engine_result.success

    def test_progress_callback(self, qtbot, engine, transport):
        on_progress = MagicMock()
        orchestrator = make_orchestrator(engine, transport)
        orchestrator.convert_file("report.docx", on_progress=on_progress)

        transport.publish(Channel.PROGRESS, {"progress": 45})

        on_progress.assert_called_once_with(45, {"progress": 45})

    def test_empty_target_rejected(self, engine, transport, qtbot):
        orchestrator = make_orchestrator(engine, transport)
        with pytest.raises(ValidationError):
            orchestrator.convert_file("")
        assert engine.requests == []


class TestFailures:
    """Test how engine and wiring failures end a job."""

    def test_error_event(self, qtbot, engine, transport):
        orchestrator = make_orchestrator(engine, transport)
        handle = orchestrator.convert_file("report.docx")

        with qtbot.waitSignal(handle.failed) as blocker:
            transport.publish(Channel.ERROR, {"error": "corrupt document"})

        assert blocker.args == ["corrupt document"]
        assert orchestrator.store.error == "corrupt document"
        assert transport.subscription_count() == 0

    def test_simulated_failure(self, qtbot, transport):
        orchestrator = make_orchestrator(SimulatedEngine(transport), transport)
        handle = orchestrator.convert_file("report.docx", {"fail_with": "converter crashed"})

        assert handle.status() is CanonicalPhase.ERROR
        assert handle.error() == "converter crashed"

    def test_rejected_request(self, qtbot, transport):
        orchestrator = make_orchestrator(SimulatedEngine(transport), transport)
        handle = orchestrator.convert_file("report.docx", {"reject_with": "unsupported format"})

        assert handle.status() is CanonicalPhase.ERROR
        assert handle.error().startswith("unsupported format")
        assert transport.subscription_count() == 0

    def test_engine_exception(self, qtbot, transport):
        engine = MagicMock()
        engine.supports_push_events = True
        engine.submit.side_effect = ConnectionError("engine offline")
        orchestrator = make_orchestrator(engine, transport)

        with qtbot.waitSignal(get_error_handler().errorOccurred) as blocker:
            handle = orchestrator.convert_file("report.docx")

        assert blocker.args[0].context["job_id"] == handle.job_id
        assert handle.status() is CanonicalPhase.ERROR
        assert handle.error().startswith("engine offline")
        assert orchestrator.registry.get_active_jobs() == []

    def test_registration_failure(self, qtbot, engine):
        transport = FailingStatusTransport()
        orchestrator = make_orchestrator(engine, transport)

        with pytest.raises(RegistrationError) as exc_info:
            orchestrator.convert_file("report.docx")

        assert exc_info.value.channel == "status"
        assert transport.subscription_count() == 0
        assert orchestrator.store.status is CanonicalPhase.ERROR
        assert orchestrator.current_handle.status() is CanonicalPhase.ERROR
        assert engine.requests == []


class TestBatchJobs:
    def test_simulated_batch(self, qtbot, transport):
        files = ["a.pdf", "b.pdf", "c.pdf"]
        on_item_complete = MagicMock()
        orchestrator = make_orchestrator(SimulatedEngine(transport), transport)

        handle = orchestrator.convert_batch(files, on_item_complete=on_item_complete)

        assert handle.kind is ConversionKind.BATCH
        assert handle.status() is CanonicalPhase.COMPLETED
        assert handle.result().counts == JobCounts(completed=3, total=3)
        # Three per-file results plus the job completion
        assert on_item_complete.call_count == 4

    def test_empty_batch_rejected(self, qtbot, engine, transport):
        orchestrator = make_orchestrator(engine, transport)
        with pytest.raises(ValidationError):
            orchestrator.convert_batch([])


class TestWebsiteJobs:
    """Test website crawls."""

    def test_crawl_error_scenario(self, qtbot, engine, transport):
        orchestrator = make_orchestrator(engine, transport)
        handle = orchestrator.convert_website("https://example.com")
        store = orchestrator.store

        assert store.status is CanonicalPhase.PREPARING

        transport.publish(Channel.STATUS, {"status": "crawling_pages"})
        assert store.status is CanonicalPhase.CONVERTING

        transport.publish(Channel.ERROR, {"error": "timeout"})

        assert store.status is CanonicalPhase.ERROR
        assert store.error == "timeout"
        assert not store.timer.is_running
        assert orchestrator.registry.get_active_jobs() == []
        assert handle.is_done()

    def test_options_merged_with_crawl_defaults(self, qtbot, engine, transport):
        orchestrator = make_orchestrator(engine, transport)
        orchestrator.convert_website("HTTPS://Example.com/Docs/", {"max_pages": 10, "path_filter": "/docs"})

        request = engine.requests[0]
        assert request.target == "https://example.com/docs"
        assert request.options["max_depth"] == 2
        assert request.options["max_pages"] == 10
        assert orchestrator.store.state.path_filter == "/docs"

    def test_simulated_crawl(self, qtbot, transport):
        orchestrator = make_orchestrator(SimulatedEngine(transport), transport)
        handle = orchestrator.convert_website("https://example.com", {"pages": 4})

        state = handle.result()
        assert state is not None
        assert state.discovered_urls == 4
        assert state.counts.processed == 4
        assert dict(state.section_counts) == {"docs": 2, "blog": 2}

    def test_invalid_url_rejected(self, qtbot, engine, transport):
        orchestrator = make_orchestrator(engine, transport)
        with pytest.raises(ValidationError):
            orchestrator.convert_website("not a url")


class TestThreadingAndPolling:
    def test_threaded_request(self, qtbot, transport):
        orchestrator = JobOrchestrator(SimulatedEngine(transport), transport, {"run_in_thread": True})

        handle = orchestrator.convert_file("report.docx")
        with qtbot.waitSignal(handle.resolved, timeout=5000):
            pass

        assert handle.status() is CanonicalPhase.COMPLETED
        orchestrator.dispose()

    def test_handle_wait(self, qtbot, transport):
        orchestrator = JobOrchestrator(SimulatedEngine(transport), transport, {"run_in_thread": True})

        handle = orchestrator.convert_website("https://example.com", {"pages": 2})

        assert handle.wait(5000)
        assert handle.status() is CanonicalPhase.COMPLETED
        orchestrator.dispose()

    def test_polling_fallback(self, qtbot, transport):
        engine = SimulatedEngine(transport, supports_push_events=False)
        orchestrator = make_orchestrator(engine, transport, poll_interval_ms=5)

        handle = orchestrator.convert_file("talk.mp3")
        assert not handle.is_done()

        with qtbot.waitSignal(handle.finished, timeout=5000):
            pass

        assert handle.result().progress == 100

    def test_polling_failure(self, qtbot, transport):
        engine = SimulatedEngine(transport, supports_push_events=False)
        orchestrator = make_orchestrator(engine, transport, poll_interval_ms=5)

        handle = orchestrator.convert_file("talk.mp3", {"fail_with": "unsupported codec"})
        with qtbot.waitSignal(handle.failed, timeout=5000) as blocker:
            pass

        assert blocker.args == ["unsupported codec"]


class TestLifecycle:
    """Test cancellation, superseding and teardown."""

    def test_cancel(self, qtbot, engine, transport):
        orchestrator = make_orchestrator(engine, transport)
        handle = orchestrator.convert_file("report.docx")

        with qtbot.waitSignal(handle.cancelled):
            assert orchestrator.cancel()

        assert engine.cancelled == [handle.job_id]
        assert orchestrator.store.status is CanonicalPhase.CANCELLED
        assert transport.subscription_count() == 0
        assert not orchestrator.cancel()

        transport.publish(Channel.COMPLETE, {"id": handle.job_id})
        assert orchestrator.store.status is CanonicalPhase.CANCELLED

    def test_cancel_tolerates_engine_error(self, qtbot, engine, transport):
        engine.cancel = MagicMock(side_effect=RuntimeError("already gone"))
        orchestrator = make_orchestrator(engine, transport)
        orchestrator.convert_file("report.docx")

        assert orchestrator.cancel()
        assert orchestrator.store.status is CanonicalPhase.CANCELLED

    def test_new_job_supersedes_previous(self, qtbot, engine, transport):
        orchestrator = make_orchestrator(engine, transport)
        first = orchestrator.convert_file("a.docx")
        second = orchestrator.convert_file("b.docx")

        assert first.is_done()
        assert first.status() is CanonicalPhase.CANCELLED
        assert orchestrator.registry.get_active_jobs() == [second.job_id]
        assert transport.subscription_count() == 4

        transport.publish(Channel.COMPLETE, {"id": first.job_id})
        assert orchestrator.store.status is CanonicalPhase.CONVERTING
        assert orchestrator.store.current_unit == "b.docx"

    def test_reset(self, qtbot, engine, transport):
        orchestrator = make_orchestrator(engine, transport)
        orchestrator.convert_file("report.docx")

        orchestrator.reset()

        assert orchestrator.store.status is CanonicalPhase.IDLE
        assert orchestrator.store.state.job_id is None
        assert transport.subscription_count() == 0

    def test_completion_deadline(self, qtbot, engine, transport):
        orchestrator = make_orchestrator(engine, transport, completion_deadline_ms=20)
        handle = orchestrator.convert_file("report.docx")

        with qtbot.waitSignal(handle.finished, timeout=2000):
            pass

        assert orchestrator.store.progress == 100

    def test_deadline_disabled_by_default(self, qtbot, engine, transport):
        orchestrator = make_orchestrator(engine, transport)
        handle = orchestrator.convert_file("report.docx")

        qtbot.wait(50)

        assert not handle.is_done()

    def test_dispose(self, qtbot, engine, transport):
        orchestrator = make_orchestrator(engine, transport)
        handle = orchestrator.convert_file("report.docx")

        orchestrator.dispose()
        orchestrator.dispose()

        assert handle.is_done()
        assert transport.subscription_count() == 0
        with pytest.raises(RuntimeError):
            orchestrator.convert_file("again.docx")

    def test_independent_orchestrators(self, qtbot, transport):
        engine_a, engine_b = ManualEngine(), ManualEngine()
        first = make_orchestrator(engine_a, transport)
        second = make_orchestrator(engine_b, transport)

        handle_a = first.convert_file("a.docx")
        second.convert_file("b.docx")
        transport.publish(Channel.COMPLETE, {"id": handle_a.job_id})

        assert first.store.status is CanonicalPhase.COMPLETED
        assert second.store.status is CanonicalPhase.CONVERTING


class TestConfiguration:
    def test_reads_config_manager(self, qtbot, engine, transport):
        manager = MagicMock(spec=ConfigManager)
        manager.load_all.return_value = {"run_in_thread": False, "max_depth": 5}

        orchestrator = JobOrchestrator(engine, transport, manager)
        orchestrator.convert_website("https://example.com")

        assert orchestrator.config["max_depth"] == 5
        assert orchestrator.config["max_pages"] == 50
        assert engine.requests[0].options["max_depth"] == 5


class TestHelpers:
    @pytest.mark.parametrize(
        "raw,expected",
        [
            ("https://example.com", "https://example.com"),
            ("https://Example.com/", "https://example.com"),
            ("http://example.com/docs///", "http://example.com/docs"),
            ("https://example.com/a?page=2", "https://example.com/a?page=2"),
        ],
    )
    def test_normalize_url(self, raw, expected):
        assert normalize_url(raw) == expected

    @pytest.mark.parametrize("raw", ["", "example.com", "ftp://example.com", "https://"])
    def test_normalize_url_rejects(self, raw):
        with pytest.raises(ValidationError):
            normalize_url(raw)

    def test_generate_job_id_unique(self):
        assert len({generate_job_id() for _ in range(100)}) == 100

    def test_generate_job_id_fallback(self):
        with patch("convtrack.orchestrator.uuid.uuid4", side_effect=NotImplementedError):
            job_id = generate_job_id()
        assert re.fullmatch(r"\d+-[0-9a-z]{9}", job_id)
