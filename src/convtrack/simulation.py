"""
In-process conversion engine that replays realistic event streams.

SimulatedEngine publishes the same progress, status, complete and error
events a real out-of-process engine would, which makes it useful for demos
and for exercising the tracking core end to end. With push events disabled
it behaves like a transcription backend that only answers status queries.
"""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Mapping
from typing import Any

from .engine import EngineRequest, EngineResult
from .phases import ConversionKind
from .transport import Channel, SignalTransport

logger = logging.getLogger(__name__)

# Status sequence reported to pollers, one entry per query
POLL_SEQUENCE: tuple[dict[str, Any], ...] = (
    {"status": "uploading", "progress": 0},
    {"status": "transcribing", "progress": 25},
    {"status": "transcribing", "progress": 60},
    {"status": "merging", "progress": 90},
    {"status": "completed", "progress": 100},
)


class SimulatedEngine:
    """
    Fake conversion engine publishing to a SignalTransport.

    Recognized request options:
        fail_with: Publish an error event with this message instead of completing
        reject_with: Return a failed EngineResult with this message without publishing
        step_delay: Seconds to sleep between events
        pages: Number of pages a website crawl converts (default 5)
    """

    def __init__(self, transport: SignalTransport, *, supports_push_events: bool = True) -> None:
        self.transport = transport
        self.supports_push_events = supports_push_events
        self.submitted: list[EngineRequest] = []
        self.cancelled: list[str] = []
        self._cancel_events: dict[str, threading.Event] = {}
        self._poll_steps: dict[str, int] = {}
        self._poll_failures: dict[str, str] = {}
        self._lock = threading.Lock()

    # -------------------------------------------------------------- contract

    def submit(self, request: EngineRequest) -> EngineResult:
        with self._lock:
            self.submitted.append(request)
            self._cancel_events[request.job_id] = threading.Event()

        options = request.options
        if options.get("reject_with"):
            return EngineResult(success=False, error_message=str(options["reject_with"]))

        if not self.supports_push_events:
            with self._lock:
                self._poll_steps[request.job_id] = 0
                if options.get("fail_with"):
                    self._poll_failures[request.job_id] = str(options["fail_with"])
            return EngineResult(success=True, data={"accepted": True})

        if request.kind is ConversionKind.WEBSITE:
            events = self._website_events(request)
        elif request.kind is ConversionKind.BATCH:
            events = self._batch_events(request)
        else:
            events = self._file_events(request)

        if options.get("fail_with"):
            # Keep the opening progress and fail part way through
            events = events[: max(1, len(events) // 2)]
            events.append((Channel.ERROR, {"id": request.job_id, "error": str(options["fail_with"])}))

        self._replay(request.job_id, events, float(options.get("step_delay", 0)))
        return EngineResult(success=True, output_path=None, data={"events": len(events)})

    def cancel(self, job_id: str) -> None:
        logger.info(f"Simulated engine cancelling job {job_id}")
        with self._lock:
            self.cancelled.append(job_id)
            event = self._cancel_events.get(job_id)
        if event is not None:
            event.set()

    def query_status(self, job_id: str) -> Mapping[str, Any]:
        with self._lock:
            if job_id not in self._poll_steps:
                return {"status": "error", "error": f"Unknown job {job_id}"}
            step = self._poll_steps[job_id]
            self._poll_steps[job_id] = step + 1
            failure = self._poll_failures.get(job_id)

        if failure and step >= 2:
            return {"status": "error", "error": failure}
        return dict(POLL_SEQUENCE[min(step, len(POLL_SEQUENCE) - 1)])

    # ---------------------------------------------------------------- events

    def _replay(self, job_id: str, events: list[tuple[Channel, dict[str, Any]]], delay: float) -> None:
        cancel_event = self._cancel_events[job_id]
        for channel, payload in events:
            if cancel_event.is_set():
                logger.info(f"Simulated job {job_id} stopped after cancellation")
                return
            self.transport.publish(channel, payload)
            if delay > 0:
                time.sleep(delay)

    @staticmethod
    def _file_events(request: EngineRequest) -> list[tuple[Channel, dict[str, Any]]]:
        target = request.target
        return [
            (Channel.STATUS, {"id": request.job_id, "status": "converting", "file": target}),
            (Channel.PROGRESS, {"file": target, "progress": 30}),
            (Channel.PROGRESS, {"id": request.job_id, "progress": 90}),
            (Channel.COMPLETE, {"id": request.job_id, "result": {"output_path": f"{target}.md"}}),
        ]

    @staticmethod
    def _batch_events(request: EngineRequest) -> list[tuple[Channel, dict[str, Any]]]:
        events: list[tuple[Channel, dict[str, Any]]] = []
        for target in request.targets:
            events.append((Channel.PROGRESS, {"file": target, "status": "converting"}))
            events.append((Channel.PROGRESS, {"file": target, "status": "completed"}))
        events.append((Channel.COMPLETE, {"id": request.job_id}))
        return events

    @staticmethod
    def _website_events(request: EngineRequest) -> list[tuple[Channel, dict[str, Any]]]:
        job_id = request.job_id
        base = request.target
        pages = max(1, int(request.options.get("pages", 5)))
        sitemap = pages - pages // 2
        crawled = pages - sitemap

        events: list[tuple[Channel, dict[str, Any]]] = [
            (Channel.STATUS, {"id": job_id, "status": "finding_sitemap"}),
            (Channel.PROGRESS, {"id": job_id, "status": "parsing_sitemap", "sitemap_urls": sitemap}),
            (Channel.STATUS, {"id": job_id, "status": "crawling_pages"}),
            (Channel.PROGRESS, {"id": job_id, "crawled_urls": crawled}),
        ]
        for index in range(pages):
            url = f"{base}/page-{index + 1}"
            section = "docs" if index % 2 == 0 else "blog"
            events.append(
                (
                    Channel.PROGRESS,
                    {
                        "id": job_id,
                        "status": "processing_pages",
                        "url": url,
                        "section": section,
                        "section_count": 1,
                        "processed": index + 1,
                        "total": pages,
                    },
                )
            )
        events.append((Channel.STATUS, {"id": job_id, "status": "generating_index"}))
        events.append((Channel.COMPLETE, {"id": job_id, "result": {"pages": pages}}))
        return events
