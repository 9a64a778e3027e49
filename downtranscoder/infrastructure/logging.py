import logging
from pathlib import Path
from typing import Optional

def setup_logging(log_path: Optional[Path] = None, debug: bool = False) -> logging.Logger:
    """
    Setup logging configuration for DownTranscoder.

    Creates the log file's parent directory when needed.
    Returns configured logger instance.

    Args:
        log_path: Path to the log file. Without one, records go to stderr.
        debug: If True, enable DEBUG level logging (per-file scan decisions, ffmpeg commands)
    """
    handlers: list = []
    if log_path is not None:
        log_file = Path(log_path)
        log_file.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(log_file))
    else:
        handlers.append(logging.StreamHandler())

    # Configure logging level
    level = logging.DEBUG if debug else logging.INFO

    logging.basicConfig(
        level=level,
        format='%(asctime)s - %(levelname)s - %(message)s',
        handlers=handlers,
        force=True  # Override any existing configuration
    )

    logger = logging.getLogger(__name__)
    logger.info(f"Logging initialized: {log_path or 'stderr'} (debug={'ON' if debug else 'OFF'})")

    return logger
