import re
from typing import List, Optional
from pydantic import BaseModel, Field, field_validator

CONCURRENT_LIMIT_MIN = 1
CONCURRENT_LIMIT_MAX = 10
GIB = 1024 * 1024 * 1024

class GeneralConfig(BaseModel):
    catalog_path: str = Field(default="downtranscoder.db")
    log_path: Optional[str] = Field(default="/tmp/downtranscoder/downtranscoder.log")
    output_dir: Optional[str] = None  # used when the input has no writable local directory
    temp_dir: Optional[str] = None  # fallback copies; system temp dir when unset
    ffmpeg_bin: str = "ffmpeg"
    ffprobe_bin: str = "ffprobe"
    process_timeout_s: Optional[float] = Field(default=None, gt=0)
    debug: bool = False

class ScanConfig(BaseModel):
    trigger_size_gb: float = Field(default=10, ge=0)
    scan_paths: List[str] = Field(default_factory=list)
    include_external_storage: bool = True

    @field_validator("scan_paths")
    @classmethod
    def strip_scan_paths(cls, v: List[str]) -> List[str]:
        cleaned = [str(p).strip().strip("/") for p in v if p is not None]
        return [p for p in cleaned if p]

    @property
    def trigger_size_bytes(self) -> int:
        return int(self.trigger_size_gb * GIB)

class VideoConfig(BaseModel):
    codec: str = "H265"
    crf: int = Field(default=23, ge=0, le=63)
    max_width: int = Field(default=3840, ge=0)
    max_height: int = Field(default=2160, ge=0)
    max_threads: Optional[int] = Field(default=None, ge=1)  # None = let ffmpeg decide

    @field_validator("codec")
    @classmethod
    def normalize_codec(cls, v: str) -> str:
        return str(v).strip().upper()

class ImageConfig(BaseModel):
    quality: int = Field(default=85, ge=1, le=100)
    max_width: int = Field(default=1920, ge=0)
    max_height: int = Field(default=1080, ge=0)

class QueueConfig(BaseModel):
    concurrent_limit: int = CONCURRENT_LIMIT_MIN
    auto_delete_originals: bool = False

    @field_validator("concurrent_limit", mode="before")
    @classmethod
    def clamp_concurrent_limit(cls, v) -> int:
        try:
            value = int(v)
        except (TypeError, ValueError):
            return CONCURRENT_LIMIT_MIN
        return max(CONCURRENT_LIMIT_MIN, min(CONCURRENT_LIMIT_MAX, value))

class ScheduleConfig(BaseModel):
    enabled: bool = False
    start: str = "02:00"

    @field_validator("start")
    @classmethod
    def validate_start(cls, v: str) -> str:
        if not re.fullmatch(r"([01]\d|2[0-3]):[0-5]\d", v.strip()):
            raise ValueError(f"Invalid schedule start '{v}'. Use HH:MM (24h).")
        return v.strip()

class AppConfig(BaseModel):
    general: GeneralConfig = Field(default_factory=GeneralConfig)
    scan: ScanConfig = Field(default_factory=ScanConfig)
    video: VideoConfig = Field(default_factory=VideoConfig)
    image: ImageConfig = Field(default_factory=ImageConfig)
    queue: QueueConfig = Field(default_factory=QueueConfig)
    schedule: ScheduleConfig = Field(default_factory=ScheduleConfig)
