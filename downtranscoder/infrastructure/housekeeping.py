import logging
import tempfile
from pathlib import Path
from typing import Optional
from downtranscoder.infrastructure.ffmpeg import FALLBACK_PREFIX

class HousekeepingService:
    """Service for cleaning up leftovers of interrupted runs."""

    def __init__(self):
        self.logger = logging.getLogger(__name__)

    def cleanup_fallback_copies(self, temp_dir: Optional[Path] = None) -> int:
        """Removes temporary input copies left behind by a killed process.

        Only call this while no dispatch is running; an active run's copy has
        the same prefix.
        """
        directory = Path(temp_dir or tempfile.gettempdir())
        removed = 0
        for path in directory.glob(f"{FALLBACK_PREFIX}*"):
            if not path.is_file():
                continue
            try:
                path.unlink()
                removed += 1
            except OSError:
                pass
        if removed:
            self.logger.info(f"Removed {removed} stale temporary copies from {directory}")
        return removed
