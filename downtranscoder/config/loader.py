import json
import logging
import yaml
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional
from .models import AppConfig

logger = logging.getLogger(__name__)

def load_config(config_path: Path) -> AppConfig:
    """Loads YAML config and parses it into AppConfig Pydantic model."""
    if not config_path.exists():
        raise FileNotFoundError(f"Config file not found: {config_path}")

    with open(config_path, 'r') as f:
        data = yaml.safe_load(f) or {}

    # A flat file of string settings is accepted as well as the sectioned layout
    if data and not any(isinstance(v, dict) for v in data.values()):
        return config_from_settings({k: str(v) if not isinstance(v, list) else json.dumps(v) for k, v in data.items()})

    return AppConfig(**data)

def _as_bool(value: Optional[str], default: bool) -> bool:
    if value is None:
        return default
    return str(value).strip().lower() in ("true", "1", "yes", "on")

def _as_int(value: Optional[str], default: int) -> int:
    if value is None or str(value).strip() == "":
        return default
    try:
        return int(float(value))
    except ValueError:
        logger.warning(f"Invalid integer setting '{value}', using {default}")
        return default

def _as_float(value: Optional[str], default: float) -> float:
    if value is None or str(value).strip() == "":
        return default
    try:
        return float(value)
    except ValueError:
        logger.warning(f"Invalid number setting '{value}', using {default}")
        return default

def _as_path_list(value: Optional[str]) -> List[str]:
    if not value:
        return []
    try:
        parsed = json.loads(value)
    except ValueError:
        logger.warning(f"scan_paths is not valid JSON, ignoring: {value}")
        return []
    if not isinstance(parsed, list):
        return []
    return [str(p) for p in parsed if p is not None]

def config_from_settings(settings: Mapping[str, str]) -> AppConfig:
    """Builds AppConfig from the flat string key/value settings store.

    Keys and defaults follow the admin settings page: trigger_size_gb, video_codec,
    video_crf, max_video_width, max_video_height, max_ffmpeg_threads, image_quality,
    max_image_width, max_image_height, auto_delete_originals, concurrent_limit,
    enable_schedule, schedule_start, scan_paths (JSON list), include_external_storage.
    """
    get = settings.get
    max_threads = _as_int(get("max_ffmpeg_threads"), 0)

    data: Dict[str, Any] = {
        "scan": {
            "trigger_size_gb": _as_float(get("trigger_size_gb"), 10.0),
            "scan_paths": _as_path_list(get("scan_paths")),
            "include_external_storage": _as_bool(get("include_external_storage"), True),
        },
        "video": {
            "codec": get("video_codec") or "H265",
            "crf": _as_int(get("video_crf"), 23),
            "max_width": _as_int(get("max_video_width"), 3840),
            "max_height": _as_int(get("max_video_height"), 2160),
            "max_threads": max_threads if max_threads > 0 else None,
        },
        "image": {
            "quality": _as_int(get("image_quality"), 85),
            "max_width": _as_int(get("max_image_width"), 1920),
            "max_height": _as_int(get("max_image_height"), 1080),
        },
        "queue": {
            "concurrent_limit": _as_int(get("concurrent_limit"), 1),
            "auto_delete_originals": _as_bool(get("auto_delete_originals"), False),
        },
        "schedule": {
            "enabled": _as_bool(get("enable_schedule"), False),
            "start": get("schedule_start") or "02:00",
        },
    }
    return AppConfig(**data)
