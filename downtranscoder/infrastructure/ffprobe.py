import subprocess
import logging
from pathlib import Path
from typing import Any, Optional

class FFprobeAdapter:
    """Wrapper around ffprobe to read the container duration."""

    def __init__(self, ffprobe_bin: str = "ffprobe"):
        self.ffprobe_bin = ffprobe_bin
        self.logger = logging.getLogger(__name__)

    @staticmethod
    def _to_float(value: Any) -> float:
        try:
            return float(value)
        except (TypeError, ValueError):
            return 0.0

    def _build_command(self, file_path: Path) -> list:
        return [
            self.ffprobe_bin,
            "-v", "error",
            "-show_entries", "format=duration",
            "-of", "default=noprint_wrappers=1:nokey=1",
            str(file_path),
        ]

    def get_duration(self, file_path: Path) -> Optional[float]:
        """Returns the duration in seconds, or None when it cannot be determined.

        A missing duration only disables progress reporting, so every failure
        mode (ffprobe absent, non-zero exit, "N/A" output) maps to None.
        """
        try:
            result = subprocess.run(self._build_command(file_path), capture_output=True, text=True)
        except OSError as e:
            self.logger.warning(f"ffprobe could not be started for {file_path.name}: {e}")
            return None

        if result.returncode != 0:
            self.logger.warning(f"ffprobe failed for {file_path.name}: {result.stderr.strip()}")
            return None

        lines = result.stdout.strip().splitlines()
        duration = self._to_float(lines[0].strip()) if lines else 0.0
        if duration <= 0:
            return None
        return duration
