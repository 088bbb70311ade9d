"""
Tests for the canonical phase mapping.
"""

import pytest

from convtrack.phases import (
    TERMINAL_PHASES,
    WEBSITE_STATUSES,
    CanonicalPhase,
    ConversionKind,
    is_terminal,
    map_status,
)


class TestMapStatus:
    """Test raw status normalization."""

    @pytest.mark.parametrize(
        "raw,expected",
        [
            ("converting", CanonicalPhase.CONVERTING),
            ("processing", CanonicalPhase.CONVERTING),
            ("completed", CanonicalPhase.COMPLETED),
            ("done", CanonicalPhase.COMPLETED),
            ("failed", CanonicalPhase.ERROR),
            ("canceled", CanonicalPhase.CANCELLED),
            ("initializing_workers", CanonicalPhase.INITIALIZING),
            ("cleaning_up", CanonicalPhase.CLEANING_UP),
        ],
    )
    def test_common_vocabulary(self, raw, expected):
        """Test statuses every converter kind shares."""
        assert map_status(raw) is expected
        assert map_status(raw, ConversionKind.FILE) is expected

    def test_website_crawling_maps_to_converting(self):
        """Test that crawling pages counts as conversion work."""
        assert map_status("crawling_pages", ConversionKind.WEBSITE) is CanonicalPhase.CONVERTING
        assert map_status("finding_sitemap", ConversionKind.WEBSITE) is CanonicalPhase.PREPARING

    def test_website_vocabulary_not_applied_to_files(self):
        """Test that per-kind tables do not leak into each other."""
        assert map_status("crawling_pages", ConversionKind.FILE) is None
        assert map_status("transcribing", ConversionKind.WEBSITE) is None

    def test_any_vocabulary_without_kind(self):
        """Test that no kind accepts every vocabulary."""
        for raw in WEBSITE_STATUSES:
            assert map_status(raw) is not None
        assert map_status("transcribing") is CanonicalPhase.CONVERTING

    def test_normalizes_spelling(self):
        """Test case, whitespace and separator normalization."""
        assert map_status("  Crawling-Pages ", ConversionKind.WEBSITE) is CanonicalPhase.CONVERTING
        assert map_status("IN PROGRESS") is CanonicalPhase.CONVERTING

    @pytest.mark.parametrize("raw", ["", "   ", "teleporting", None, 42, {"status": "done"}])
    def test_unknown_returns_none(self, raw):
        """Test that unknown or non-string statuses are not mapped."""
        assert map_status(raw) is None

    def test_canonical_phase_passes_through(self):
        """Test that already-canonical phases are returned unchanged."""
        assert map_status(CanonicalPhase.PREPARING, ConversionKind.BATCH) is CanonicalPhase.PREPARING


class TestTerminalPhases:
    """Test terminal phase detection."""

    def test_terminal_set(self):
        assert TERMINAL_PHASES == {CanonicalPhase.COMPLETED, CanonicalPhase.ERROR, CanonicalPhase.CANCELLED}

    def test_is_terminal(self):
        assert is_terminal(CanonicalPhase.ERROR)
        assert not is_terminal(CanonicalPhase.CONVERTING)
        assert not is_terminal(None)
