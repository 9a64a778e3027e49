from enum import Enum
from typing import Dict, List, Optional, Any
from pydantic import BaseModel, Field

class MediaState(str, Enum):
    FOUND = "found"
    QUEUED = "queued"
    TRANSCODING = "transcoding"
    TRANSCODED = "transcoded"
    ABORTED = "aborted"
    DISCARDED = "discarded"  # user chose not to transcode

class MediaType(str, Enum):
    VIDEO = "Video"
    IMAGE = "Image"

class TranscodePreset(str, Enum):
    H265_CRF23 = "h265_crf23"
    H265_CRF26 = "h265_crf26"
    H265_CRF28 = "h265_crf28"
    H264_CRF23 = "h264_crf23"

# Source state -> allowed target states
ALLOWED_TRANSITIONS: Dict[MediaState, frozenset] = {
    MediaState.FOUND: frozenset({MediaState.QUEUED, MediaState.DISCARDED}),
    MediaState.QUEUED: frozenset({MediaState.TRANSCODING, MediaState.DISCARDED}),
    MediaState.TRANSCODING: frozenset({MediaState.TRANSCODED, MediaState.ABORTED}),
    MediaState.ABORTED: frozenset({MediaState.QUEUED, MediaState.DISCARDED, MediaState.FOUND}),
    MediaState.TRANSCODED: frozenset(),
    MediaState.DISCARDED: frozenset(),
}

def can_transition(current: MediaState, target: MediaState) -> bool:
    return target in ALLOWED_TRANSITIONS[current]

class MediaItem(BaseModel):
    id: Optional[int] = None
    file_id: int
    owner_id: str
    name: str
    path: str
    size: int = Field(ge=0)
    state: MediaState = MediaState.FOUND
    created_at: int = 0
    updated_at: int = 0
    transcode_preset: Optional[TranscodePreset] = None
    abort_reason: Optional[str] = None
    transcode_progress: Optional[int] = Field(default=None, ge=0, le=100)

    def to_record(self) -> Dict[str, Any]:
        """Serializes the item in the shape the web layer expects."""
        return {
            "id": self.id,
            "fileId": self.file_id,
            "ownerId": self.owner_id,
            "name": self.name,
            "path": self.path,
            "size": self.size,
            "state": self.state.value,
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
            "transcodePreset": self.transcode_preset.value if self.transcode_preset else None,
            "abortReason": self.abort_reason,
            "transcodeProgress": self.transcode_progress,
        }

class DiscoveredFile(BaseModel):
    file_id: int
    name: str
    path: str
    size: int
    media_type: MediaType
    extension: str
    owner_id: str
    mtime: Optional[float] = None
    is_external: bool = False

class ScanResult(BaseModel):
    files: List[DiscoveredFile] = Field(default_factory=list)
    errors: List[str] = Field(default_factory=list)

class ScanStatus(BaseModel):
    scope: str = "global"
    is_scanning: bool = False
    started_at: Optional[int] = None
    completed_at: Optional[int] = None
    files_found: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "is_scanning": self.is_scanning,
            "started_at": self.started_at,
            "completed_at": self.completed_at,
            "files_found": self.files_found,
        }

class QueueStatus(BaseModel):
    is_transcoding: bool = False
    current_index: int = 0
    total_items: int = 0
    current_file: Optional[str] = None
    started_at: Optional[int] = None
    completed_at: Optional[int] = None
    # Derived from the catalog on every read, never stored
    queued_items: int = 0
    transcoding_items: int = 0
    transcoded_items: int = 0
    aborted_items: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "is_transcoding": self.is_transcoding,
            "current_index": self.current_index,
            "total_items": self.total_items,
            "current_file": self.current_file,
            "queued_items": self.queued_items,
            "transcoding_items": self.transcoding_items,
            "transcoded_items": self.transcoded_items,
            "aborted_items": self.aborted_items,
        }

class TranscodeResult(BaseModel):
    success: bool
    error_kind: Optional[str] = None
    error_message: Optional[str] = None
    output_path: Optional[str] = None
    input_size: Optional[int] = None
    output_size: Optional[int] = None
    used_fallback_copy: bool = False

class DispatchSummary(BaseModel):
    skipped: bool = False
    processed: int = 0
    transcoded: List[int] = Field(default_factory=list)
    aborted: Dict[int, str] = Field(default_factory=dict)
    skipped_items: List[int] = Field(default_factory=list)
