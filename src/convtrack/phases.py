"""
Canonical conversion phases and raw status normalization.

Every converter kind reports progress with its own status vocabulary. This
module defines the single canonical phase enumeration used by the state store
and the tables that map each raw vocabulary onto it.
"""

from __future__ import annotations

from enum import Enum
from types import MappingProxyType
from typing import Any


class CanonicalPhase(Enum):
    """
    Normalized lifecycle phase of the active conversion job.

    The values match the status strings used on the wire so a phase can be
    round-tripped through an event payload.
    """

    IDLE = "idle"  # No job, ready to start
    INITIALIZING = "initializing"
    PREPARING = "preparing"
    CONVERTING = "converting"
    COMPLETED = "completed"
    ERROR = "error"
    CANCELLED = "cancelled"
    CLEANING_UP = "cleaning_up"


class ConversionKind(Enum):
    """Kind of conversion tracked by a job."""

    FILE = "file"
    BATCH = "batch"
    WEBSITE = "website"


TERMINAL_PHASES = frozenset({CanonicalPhase.COMPLETED, CanonicalPhase.ERROR, CanonicalPhase.CANCELLED})

# Statuses shared by every converter kind
COMMON_STATUSES = MappingProxyType(
    {
        "idle": CanonicalPhase.IDLE,
        "initializing": CanonicalPhase.INITIALIZING,
        "initializing_workers": CanonicalPhase.INITIALIZING,
        "starting": CanonicalPhase.INITIALIZING,
        "preparing": CanonicalPhase.PREPARING,
        "selecting_output": CanonicalPhase.PREPARING,
        "queued": CanonicalPhase.PREPARING,
        "processing": CanonicalPhase.CONVERTING,
        "converting": CanonicalPhase.CONVERTING,
        "in_progress": CanonicalPhase.CONVERTING,
        "cleaning_up": CanonicalPhase.CLEANING_UP,
        "completed": CanonicalPhase.COMPLETED,
        "complete": CanonicalPhase.COMPLETED,
        "done": CanonicalPhase.COMPLETED,
        "success": CanonicalPhase.COMPLETED,
        "failed": CanonicalPhase.ERROR,
        "error": CanonicalPhase.ERROR,
        "cancelled": CanonicalPhase.CANCELLED,
        "canceled": CanonicalPhase.CANCELLED,
        "stopped": CanonicalPhase.CANCELLED,
    }
)

# Document and spreadsheet converters
FILE_STATUSES = MappingProxyType(
    {
        "reading": CanonicalPhase.PREPARING,
        "extracting": CanonicalPhase.CONVERTING,
        "chunking": CanonicalPhase.CONVERTING,
        "writing": CanonicalPhase.CONVERTING,
    }
)

BATCH_STATUSES = MappingProxyType(
    {
        "preparing_batch": CanonicalPhase.PREPARING,
        "processing_item": CanonicalPhase.CONVERTING,
        "item_complete": CanonicalPhase.CONVERTING,
        "finalizing": CanonicalPhase.CLEANING_UP,
    }
)

# Website crawl sub-phases: discovery is preparation, crawling onward is conversion
WEBSITE_STATUSES = MappingProxyType(
    {
        "finding_sitemap": CanonicalPhase.PREPARING,
        "parsing_sitemap": CanonicalPhase.PREPARING,
        "crawling_pages": CanonicalPhase.CONVERTING,
        "processing_pages": CanonicalPhase.CONVERTING,
        "section": CanonicalPhase.CONVERTING,
        "generating_index": CanonicalPhase.CONVERTING,
    }
)

# Audio transcription backends, usually reached through polling
TRANSCRIPTION_STATUSES = MappingProxyType(
    {
        "uploading": CanonicalPhase.PREPARING,
        "chunking_audio": CanonicalPhase.PREPARING,
        "transcribing": CanonicalPhase.CONVERTING,
        "merging": CanonicalPhase.CLEANING_UP,
    }
)

_KIND_TABLES: dict[ConversionKind | None, dict[str, CanonicalPhase]] = {
    None: {
        **COMMON_STATUSES,
        **FILE_STATUSES,
        **BATCH_STATUSES,
        **WEBSITE_STATUSES,
        **TRANSCRIPTION_STATUSES,
    },
    ConversionKind.FILE: {**COMMON_STATUSES, **FILE_STATUSES, **TRANSCRIPTION_STATUSES},
    ConversionKind.BATCH: {**COMMON_STATUSES, **FILE_STATUSES, **BATCH_STATUSES, **TRANSCRIPTION_STATUSES},
    ConversionKind.WEBSITE: {**COMMON_STATUSES, **WEBSITE_STATUSES},
}


def map_status(raw: Any, kind: ConversionKind | None = None) -> CanonicalPhase | None:
    """
    Map a raw worker status onto a canonical phase.

    Args:
        raw: Status as reported by a converter (string or CanonicalPhase)
        kind: Conversion kind whose vocabulary applies; None accepts any vocabulary

    Returns:
        The canonical phase, or None if the status is not recognized. Callers
        must keep the current phase when None is returned.
    """
    if isinstance(raw, CanonicalPhase):
        return raw
    if not isinstance(raw, str):
        return None

    key = raw.strip().lower().replace("-", "_").replace(" ", "_")
    if not key:
        return None
    return _KIND_TABLES[kind].get(key)


def is_terminal(phase: CanonicalPhase | None) -> bool:
    """Check whether a phase is terminal (completed, error or cancelled)."""
    return phase in TERMINAL_PHASES
