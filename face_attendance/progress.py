"""
Progress events emitted while a verification or registration attempt runs.

Sinks are best-effort observers: the pipeline never waits on them and a
failing sink never affects the attempt.
"""
import logging
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Optional, Protocol

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ProgressEvent:
    attempt_id: str
    identity_id: Optional[str]
    state: str
    status: str
    message: str
    frame_index: Optional[int] = None
    total_frames: Optional[int] = None
    valid_so_far: Optional[int] = None
    details: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class ProgressSink(Protocol):
    def emit(self, event: ProgressEvent) -> None:
        ...


class NullProgressSink:
    """Discards every event."""

    def emit(self, event: ProgressEvent) -> None:
        pass


class RecordingProgressSink:
    """Keeps every event in memory, in emission order."""

    def __init__(self):
        self.events: List[ProgressEvent] = []

    def emit(self, event: ProgressEvent) -> None:
        self.events.append(event)


def emit_safely(sink: Optional[ProgressSink], event: ProgressEvent) -> None:
    """Deliver an event, swallowing sink failures."""
    if sink is None:
        return
    try:
        sink.emit(event)
    except Exception as e:
        logger.debug(f"Progress sink dropped event {event.status}: {e}")
