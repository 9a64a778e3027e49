import sqlite3
import time
from typing import Dict, List, Optional
from downtranscoder.domain.models import (
    DiscoveredFile,
    MediaItem,
    MediaState,
    TranscodePreset,
)
from downtranscoder.infrastructure.database import Database

# Size is frozen once an item has gone through ffmpeg
_SIZE_FROZEN_STATES = (MediaState.TRANSCODING.value, MediaState.TRANSCODED.value)

_COLUMNS = (
    "id, file_id, owner_id, name, path, size, state, created_at, updated_at, "
    "transcode_preset, abort_reason, transcode_progress"
)


def _now() -> int:
    return int(time.time())


class MediaCatalog:
    """Repository of tracked media items.

    Every mutation is a single-row update; callers polling status may observe
    intermediate states while a dispatch batch is running.
    """

    def __init__(self, db: Database):
        self.db = db

    @staticmethod
    def _to_item(row: sqlite3.Row) -> MediaItem:
        preset = row["transcode_preset"]
        try:
            parsed_preset = TranscodePreset(preset) if preset else None
        except ValueError:
            parsed_preset = None
        return MediaItem(
            id=row["id"],
            file_id=row["file_id"],
            owner_id=row["owner_id"],
            name=row["name"],
            path=row["path"],
            size=row["size"],
            state=MediaState(row["state"]),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
            transcode_preset=parsed_preset,
            abort_reason=row["abort_reason"],
            transcode_progress=row["transcode_progress"],
        )

    # -- queries -----------------------------------------------------------

    def find_by_id(self, item_id: int) -> Optional[MediaItem]:
        rows = self.db.query(f"SELECT {_COLUMNS} FROM media_items WHERE id = ?", (item_id,))
        return self._to_item(rows[0]) if rows else None

    def find_by_file(self, file_id: int, owner_id: str) -> Optional[MediaItem]:
        rows = self.db.query(
            f"SELECT {_COLUMNS} FROM media_items WHERE file_id = ? AND owner_id = ?",
            (file_id, owner_id),
        )
        return self._to_item(rows[0]) if rows else None

    def find_by_state(self, state: MediaState, owner_id: Optional[str] = None) -> List[MediaItem]:
        """Items in ``state``, oldest first (insertion order)."""
        sql = f"SELECT {_COLUMNS} FROM media_items WHERE state = ?"
        params: tuple = (state.value,)
        if owner_id is not None:
            sql += " AND owner_id = ?"
            params += (owner_id,)
        sql += " ORDER BY id ASC"
        return [self._to_item(r) for r in self.db.query(sql, params)]

    def find_all(self, owner_id: Optional[str] = None) -> List[MediaItem]:
        """All items, most recently updated first."""
        sql = f"SELECT {_COLUMNS} FROM media_items"
        params: tuple = ()
        if owner_id is not None:
            sql += " WHERE owner_id = ?"
            params = (owner_id,)
        sql += " ORDER BY updated_at DESC, id DESC"
        return [self._to_item(r) for r in self.db.query(sql, params)]

    def count_by_state(self) -> Dict[MediaState, int]:
        counts = {state: 0 for state in MediaState}
        for row in self.db.query("SELECT state, COUNT(*) AS n FROM media_items GROUP BY state"):
            counts[MediaState(row["state"])] = row["n"]
        return counts

    # -- writes ------------------------------------------------------------

    def upsert(self, file: DiscoveredFile) -> MediaItem:
        """Inserts a discovered file as ``found`` or refreshes the existing row."""
        now = _now()
        with self.db.transaction() as conn:
            row = conn.execute(
                "SELECT id, state FROM media_items WHERE file_id = ? AND owner_id = ?",
                (file.file_id, file.owner_id),
            ).fetchone()
            if row is None:
                cursor = conn.execute(
                    "INSERT INTO media_items (file_id, owner_id, name, path, size, state, created_at, updated_at) "
                    "VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
                    (file.file_id, file.owner_id, file.name, file.path, file.size,
                     MediaState.FOUND.value, now, now),
                )
                item_id = cursor.lastrowid
            else:
                item_id = row["id"]
                if row["state"] in _SIZE_FROZEN_STATES:
                    conn.execute(
                        "UPDATE media_items SET name = ?, path = ?, updated_at = ? WHERE id = ?",
                        (file.name, file.path, now, item_id),
                    )
                else:
                    conn.execute(
                        "UPDATE media_items SET name = ?, path = ?, size = ?, updated_at = ? WHERE id = ?",
                        (file.name, file.path, file.size, now, item_id),
                    )
        return self.find_by_id(item_id)

    def insert(self, item: MediaItem) -> MediaItem:
        now = _now()
        cursor = self.db.execute(
            "INSERT INTO media_items (file_id, owner_id, name, path, size, state, created_at, updated_at, "
            "transcode_preset, abort_reason, transcode_progress) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
            (
                item.file_id, item.owner_id, item.name, item.path, item.size, item.state.value,
                item.created_at or now, item.updated_at or now,
                item.transcode_preset.value if item.transcode_preset else None,
                item.abort_reason if item.state == MediaState.ABORTED else None,
                item.transcode_progress if item.state == MediaState.TRANSCODING else None,
            ),
        )
        return self.find_by_id(cursor.lastrowid)

    def update_state(
        self,
        item_id: int,
        state: MediaState,
        abort_reason: Optional[str] = None,
        expected_state: Optional[MediaState] = None,
    ) -> Optional[MediaItem]:
        """Writes a new state, keeping the abort reason / progress invariant.

        With ``expected_state`` the write only happens if the row is still in
        that state; returns None when it was not applied.
        """
        if state == MediaState.ABORTED:
            reason = abort_reason or "Transcoding was aborted"
        else:
            reason = None
        progress = 0 if state == MediaState.TRANSCODING else None

        sql = "UPDATE media_items SET state = ?, abort_reason = ?, transcode_progress = ?, updated_at = ? WHERE id = ?"
        params: tuple = (state.value, reason, progress, _now(), item_id)
        if expected_state is not None:
            sql += " AND state = ?"
            params += (expected_state.value,)
        cursor = self.db.execute(sql, params)
        if cursor.rowcount == 0:
            return None
        return self.find_by_id(item_id)

    def update_preset(self, item_id: int, preset: Optional[TranscodePreset]) -> Optional[MediaItem]:
        self.db.execute(
            "UPDATE media_items SET transcode_preset = ?, updated_at = ? WHERE id = ?",
            (preset.value if preset else None, _now(), item_id),
        )
        return self.find_by_id(item_id)

    def update_file_id(self, item_id: int, file_id: int) -> bool:
        """Moves a row to a new file id; False if another row of the owner already has it."""
        try:
            cursor = self.db.execute(
                "UPDATE media_items SET file_id = ?, updated_at = ? WHERE id = ?",
                (file_id, _now(), item_id),
            )
        except sqlite3.IntegrityError:
            return False
        return cursor.rowcount > 0

    def update_progress(self, item_id: int, percent: int) -> bool:
        """Stores progress; ignored unless the item is still transcoding."""
        cursor = self.db.execute(
            "UPDATE media_items SET transcode_progress = ?, updated_at = ? WHERE id = ? AND state = ?",
            (max(0, min(100, int(percent))), _now(), item_id, MediaState.TRANSCODING.value),
        )
        return cursor.rowcount > 0

    def delete(self, item_id: int) -> bool:
        return self.db.execute("DELETE FROM media_items WHERE id = ?", (item_id,)).rowcount > 0

    def delete_by_state(self, state: MediaState, owner_id: Optional[str] = None) -> int:
        sql = "DELETE FROM media_items WHERE state = ?"
        params: tuple = (state.value,)
        if owner_id is not None:
            sql += " AND owner_id = ?"
            params += (owner_id,)
        return self.db.execute(sql, params).rowcount

    def delete_updated_before(self, state: MediaState, cutoff: int, owner_id: Optional[str] = None) -> int:
        sql = "DELETE FROM media_items WHERE state = ? AND updated_at < ?"
        params: tuple = (state.value, cutoff)
        if owner_id is not None:
            sql += " AND owner_id = ?"
            params += (owner_id,)
        return self.db.execute(sql, params).rowcount

    def delete_all(self, owner_id: Optional[str] = None) -> int:
        if owner_id is None:
            return self.db.execute("DELETE FROM media_items").rowcount
        return self.db.execute("DELETE FROM media_items WHERE owner_id = ?", (owner_id,)).rowcount
