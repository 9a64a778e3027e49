import time
from typing import Optional
from downtranscoder.domain.models import QueueStatus, ScanStatus
from downtranscoder.infrastructure.database import Database

GLOBAL_SCOPE = "global"

def _now() -> int:
    return int(time.time())

class StatusStore:
    """Typed scan and queue status records.

    Begin operations are compare-and-swap updates executed inside one
    immediate transaction, so two callers (threads or processes sharing the
    catalog file) can never both see themselves as the active scan or batch.
    """

    def __init__(self, db: Database):
        self.db = db

    # -- scan --------------------------------------------------------------

    def try_begin_scan(self, scope: str = GLOBAL_SCOPE) -> bool:
        """Marks ``scope`` as scanning unless any scan is already running."""
        now = _now()
        with self.db.transaction() as conn:
            running = conn.execute("SELECT 1 FROM scan_status WHERE is_scanning = 1 LIMIT 1").fetchone()
            if running is not None:
                return False
            conn.execute(
                "INSERT INTO scan_status (scope, is_scanning, started_at, files_found) VALUES (?, 1, ?, 0) "
                "ON CONFLICT(scope) DO UPDATE SET is_scanning = 1, started_at = excluded.started_at, files_found = 0",
                (scope, now),
            )
        return True

    def finish_scan(self, scope: str = GLOBAL_SCOPE, files_found: int = 0) -> None:
        self.db.execute(
            "UPDATE scan_status SET is_scanning = 0, completed_at = ?, files_found = ? WHERE scope = ?",
            (_now(), files_found, scope),
        )

    def get_scan_status(self, scope: str = GLOBAL_SCOPE) -> ScanStatus:
        rows = self.db.query(
            "SELECT scope, is_scanning, started_at, completed_at, files_found FROM scan_status WHERE scope = ?",
            (scope,),
        )
        if not rows:
            return ScanStatus(scope=scope)
        row = rows[0]
        return ScanStatus(
            scope=row["scope"],
            is_scanning=bool(row["is_scanning"]),
            started_at=row["started_at"],
            completed_at=row["completed_at"],
            files_found=row["files_found"],
        )

    def any_scan_running(self) -> bool:
        return bool(self.db.query("SELECT 1 FROM scan_status WHERE is_scanning = 1 LIMIT 1"))

    # -- queue -------------------------------------------------------------

    def try_begin_transcoding(self, total_items: int = 0) -> bool:
        cursor = self.db.execute(
            "UPDATE queue_status SET is_transcoding = 1, current_index = 0, total_items = ?, "
            "current_file = NULL, started_at = ?, completed_at = NULL WHERE id = 1 AND is_transcoding = 0",
            (total_items, _now()),
        )
        return cursor.rowcount == 1

    def update_progress(self, current_index: int, total_items: int, current_file: Optional[str]) -> None:
        self.db.execute(
            "UPDATE queue_status SET current_index = ?, total_items = ?, current_file = ? WHERE id = 1",
            (current_index, total_items, current_file),
        )

    def finish_transcoding(self) -> None:
        self.db.execute(
            "UPDATE queue_status SET is_transcoding = 0, current_file = NULL, completed_at = ? WHERE id = 1",
            (_now(),),
        )

    def get_queue_status(self) -> QueueStatus:
        """Stored queue fields only; item counts are filled in by the dispatcher."""
        row = self.db.query(
            "SELECT is_transcoding, current_index, total_items, current_file, started_at, completed_at "
            "FROM queue_status WHERE id = 1"
        )[0]
        return QueueStatus(
            is_transcoding=bool(row["is_transcoding"]),
            current_index=row["current_index"],
            total_items=row["total_items"],
            current_file=row["current_file"],
            started_at=row["started_at"],
            completed_at=row["completed_at"],
        )

    # -- reset -------------------------------------------------------------

    def clear(self) -> None:
        """Drops all scan flags and resets the queue record."""
        with self.db.transaction() as conn:
            conn.execute("UPDATE scan_status SET is_scanning = 0")
            conn.execute(
                "UPDATE queue_status SET is_transcoding = 0, current_index = 0, total_items = 0, "
                "current_file = NULL WHERE id = 1"
            )
