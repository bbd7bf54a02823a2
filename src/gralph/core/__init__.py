"""Loop engine: task gate, prompt rendering, completion detection, iteration driver."""

from gralph.core.errors import BackendFailure, CoreError, CoreIoError, InvalidInputError
from gralph.core.loop import LoopEngine, LoopRequest, QueueProgressSink
from gralph.core.models import LoopOutcome, LoopStatus, ProgressEvent, ProgressSink

__all__ = [
    "BackendFailure",
    "CoreError",
    "CoreIoError",
    "InvalidInputError",
    "LoopEngine",
    "LoopOutcome",
    "LoopRequest",
    "LoopStatus",
    "ProgressEvent",
    "ProgressSink",
    "QueueProgressSink",
]
