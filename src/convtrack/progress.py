"""
Progress and ETA aggregation for multi-unit jobs.

Batches and website crawls report their progress as incrementally arriving
counts. The aggregator turns those counts into a percentage, an estimated
time remaining and per-section counters, and writes each result into the
state store in a single atomic update.
"""

from __future__ import annotations

import logging
import math
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from typing import Any

from .state import MAX_RUNNING_PROGRESS, ConversionStateStore, JobCounts, JobState

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class WebsiteProgress:
    """Derived progress of a website crawl."""

    percent: int
    eta: float | None
    average_unit_time: float | None


def _percent(done: int, total: int) -> int:
    if total <= 0:
        return 0
    return max(0, min(MAX_RUNNING_PROGRESS, round(done / total * 100)))


def _require_count(name: str, value: Any) -> int:
    if isinstance(value, bool) or not isinstance(value, int | float):
        raise ValueError(f"{name} must be a number, got {value!r}")
    if not math.isfinite(value) or value < 0:
        raise ValueError(f"{name} must be a finite, non-negative count")
    return int(value)


class ProgressAggregator:
    """
    Computes derived progress for batch and website jobs.

    The compute_* methods and website_fields are pure; the remaining methods
    read the current store state, derive the new values and apply them with
    one batch_update.
    """

    def __init__(self, store: ConversionStateStore, clock: Callable[[], float] = time.time) -> None:
        self._store = store
        self._clock = clock

    @staticmethod
    def compute_file_progress(counts: JobCounts) -> int:
        """
        Percentage of processed units, capped below 100.

        Processed can reach total before the final bookkeeping step finishes,
        so 100 is only ever set by completing the job.
        """
        return _percent(counts.processed, counts.total)

    def compute_website_progress(
        self,
        discovered: int,
        processed: int,
        start_time: float | None,
        now: float | None = None,
    ) -> WebsiteProgress:
        """
        Derive percent complete and ETA of a crawl.

        Args:
            discovered: Total URLs known so far
            processed: URLs already converted
            start_time: Epoch seconds when the crawl started
            now: Current epoch seconds (defaults to the aggregator clock)

        Returns:
            WebsiteProgress with the ETA in seconds, or None before the first page
        """
        percent = _percent(processed, discovered)
        if processed <= 0 or start_time is None:
            return WebsiteProgress(percent=percent, eta=None, average_unit_time=None)

        elapsed = max(0.0, (self._clock() if now is None else now) - start_time)
        average = elapsed / processed
        remaining = max(discovered - processed, 0)
        return WebsiteProgress(percent=percent, eta=average * remaining, average_unit_time=average)

    # --------------------------------------------------------- batch / file

    def set_total(self, total: int) -> JobState:
        total = _require_count("total", total)
        counts = JobCounts(
            completed=self._store.state.counts.completed,
            errored=self._store.state.counts.errored,
            total=total,
        )
        return self._store.batch_update(counts=counts, progress=self.compute_file_progress(counts))

    def record_unit_result(self, unit: str | None, success: bool) -> JobState:
        """Count one finished unit and update progress and current unit together."""
        current = self._store.state.counts
        counts = JobCounts(
            completed=current.completed + (1 if success else 0),
            errored=current.errored + (0 if success else 1),
            total=max(current.total, current.processed + 1),
        )
        fields: dict[str, Any] = {"counts": counts, "progress": self.compute_file_progress(counts)}
        if unit:
            fields["current_unit"] = unit
        logger.debug(f"Unit {unit!r} finished (success={success}), {counts.processed}/{counts.total}")
        return self._store.batch_update(**fields)

    # -------------------------------------------------------------- website

    def add_sitemap_urls(self, count: int) -> JobState:
        """Add URLs found in a sitemap to the running totals."""
        return self._store.batch_update(**self.website_fields({"sitemap_urls": count}))

    def add_crawled_urls(self, count: int) -> JobState:
        """Add URLs found by link-following to the running totals."""
        return self._store.batch_update(**self.website_fields({"crawled_urls": count}))

    def add_section_count(self, section: str, count: int) -> JobState:
        """Add to the URL count of a site section and make it the current section."""
        return self._store.batch_update(**self.website_fields({"section": section, "section_count": count}))

    def update_website_progress(
        self,
        processed: int,
        total: int | None = None,
        current_url: str | None = None,
    ) -> JobState:
        """
        Record crawl progress and recompute percent and ETA.

        Args:
            processed: Pages converted so far
            total: Pages to convert; defaults to the discovered URL count
            current_url: Page currently being converted
        """
        state = self._store.state
        fields = self._crawl_fields(state, processed, total, current_url, state.discovered_urls)
        return self._store.batch_update(**fields)

    def _crawl_fields(
        self,
        state: JobState,
        processed: Any,
        total: Any,
        current_url: str | None,
        discovered: int,
    ) -> dict[str, Any]:
        processed = _require_count("processed", processed)
        if total is None:
            total = max(discovered, state.counts.total)
        total = max(_require_count("total", total), processed)

        derived = self.compute_website_progress(total, processed, state.start_time)
        errored = min(state.counts.errored, processed)
        fields: dict[str, Any] = {
            "counts": JobCounts(completed=processed - errored, errored=errored, total=total),
            "progress": derived.percent,
            "estimated_time_remaining": derived.eta,
        }
        if derived.average_unit_time is not None:
            fields["average_unit_time"] = derived.average_unit_time
        if current_url:
            fields["current_unit"] = current_url
        return fields

    def website_fields(self, payload: Mapping[str, Any], state: JobState | None = None) -> dict[str, Any]:
        """
        Derive the store fields for the website keys of a progress payload.

        Recognized keys are ``sitemap_urls``, ``crawled_urls``, ``section`` with
        ``section_count``, and ``processed`` with optional ``total`` and ``url``.
        Nothing is written; callers merge the result into their own update.

        Args:
            payload: Progress event payload
            state: State to derive from (defaults to the current store state)

        Returns:
            Field values for ConversionStateStore.batch_update, empty if the
            payload carries no website keys

        Raises:
            ValueError: If a count is not a non-negative number
        """
        state = state or self._store.state
        fields: dict[str, Any] = {}
        discovered = state.discovered_urls

        if "sitemap_urls" in payload:
            count = _require_count("sitemap_urls", payload["sitemap_urls"])
            discovered += count
            fields["sitemap_urls"] = state.sitemap_urls + count
        if "crawled_urls" in payload:
            count = _require_count("crawled_urls", payload["crawled_urls"])
            discovered += count
            fields["crawled_urls"] = state.crawled_urls + count
        if discovered != state.discovered_urls:
            fields["discovered_urls"] = discovered

        if payload.get("section"):
            section = str(payload["section"])
            count = _require_count("section_count", payload.get("section_count", 1))
            sections = dict(state.section_counts)
            sections[section] = sections.get(section, 0) + count
            fields["section_counts"] = sections
            fields["current_section"] = section

        if "processed" in payload:
            fields.update(
                self._crawl_fields(state, payload["processed"], payload.get("total"), payload.get("url"), discovered)
            )
        return fields

    def apply_website_payload(self, payload: Mapping[str, Any]) -> bool:
        """
        Apply the website-specific keys of a progress payload in one update.

        Returns:
            True if any key was applied
        """
        fields = self.website_fields(payload)
        if not fields:
            return False
        self._store.batch_update(**fields)
        return True
