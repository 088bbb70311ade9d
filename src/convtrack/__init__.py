"""
Conversion job lifecycle and progress tracking.

This package turns fire-and-forget conversion requests (single files,
batches and website crawls) into one observable job state, fed by the
progress, status, complete and error events of an out-of-process engine.
"""

from .engine import CancellationToken, ConversionEngine, EngineRequest, EngineResult
from .errors import BaseAppError, ConversionError, EngineError, RegistrationError, ValidationError
from .orchestrator import JobHandle, JobOrchestrator, generate_job_id, normalize_url
from .phases import CanonicalPhase, ConversionKind, map_status
from .progress import ProgressAggregator
from .registry import JobRegistry
from .state import ConversionStateStore, JobCounts, JobState
from .timer import ConversionTimer
from .transport import CallbackPairTransport, Channel, SignalTransport

__version__ = "0.1.0"

__all__ = [
    "BaseAppError",
    "CallbackPairTransport",
    "CancellationToken",
    "CanonicalPhase",
    "Channel",
    "ConversionEngine",
    "ConversionError",
    "ConversionKind",
    "ConversionStateStore",
    "ConversionTimer",
    "EngineError",
    "EngineRequest",
    "EngineResult",
    "JobCounts",
    "JobHandle",
    "JobOrchestrator",
    "JobRegistry",
    "JobState",
    "ProgressAggregator",
    "RegistrationError",
    "SignalTransport",
    "ValidationError",
    "generate_job_id",
    "map_status",
    "normalize_url",
]
