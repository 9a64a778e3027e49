"""Domain events for the scan and transcode workflow.

Events flow through the EventBus so the dispatcher and scanner stay unaware of
whoever is presenting progress (CLI progress bar, web layer, tests).

See `infrastructure/event_bus.py` for the pub/sub mechanism.
"""

from typing import Optional
from pydantic import BaseModel
from .models import MediaItem, MediaState, DispatchSummary


class Event(BaseModel):
    """Base class for all domain events."""

    pass

class ItemEvent(Event):
    """Base class for events related to a single catalog item."""

    item: MediaItem


class ScanStarted(Event):
    scope: str


class ScanFinished(Event):
    """Emitted once the scan status has been closed."""

    scope: str
    files_found: int
    errors: int = 0


class ItemStateChanged(ItemEvent):
    previous_state: MediaState


class TranscodeStarted(ItemEvent):
    index: int
    total: int


class TranscodeProgressUpdated(ItemEvent):
    """Emitted when the ffmpeg progress percentage increases."""

    progress_percent: int


class ItemTranscoded(ItemEvent):
    output_path: Optional[str] = None
    input_size: Optional[int] = None
    output_size: Optional[int] = None


class ItemAborted(ItemEvent):
    reason: str


class DispatchFinished(Event):
    summary: DispatchSummary
