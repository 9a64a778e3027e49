"""File store access used by the scanner and the dispatcher.

`FileStore` is the contract the core needs from whatever hosts the files
(a sync server, a NAS share, a plain directory tree). `LocalFileStore` is the
implementation over a local directory with one sub-directory per owner:

    <root>/<owner_id>/...

File identity is the inode number, which stays stable across renames within
the same filesystem. A directory on a different device than its owner's root
(a mount point) is reported as external storage.
"""

import os
import logging
import threading
from pathlib import Path
from typing import BinaryIO, Dict, List, Optional, Tuple, Protocol
from pydantic import BaseModel


class StoreEntry(BaseModel):
    file_id: int
    name: str
    path: str  # store path: "<owner_id>/<relative path>"
    size: int = 0
    mtime: Optional[float] = None
    owner_id: str
    is_dir: bool = False
    is_external: bool = False


class FileStore(Protocol):
    def list_owners(self) -> List[str]: ...

    def owner_root(self, owner_id: str) -> Optional[StoreEntry]: ...

    def get_by_path(self, path: str) -> Optional[StoreEntry]: ...

    def list_directory(self, entry: StoreEntry) -> List[StoreEntry]: ...

    def get_by_id(self, file_id: int, owner_id: Optional[str] = None) -> Optional[StoreEntry]: ...

    def open_read(self, entry: StoreEntry) -> BinaryIO: ...

    def local_path(self, entry: StoreEntry) -> Optional[Path]: ...

    def delete(self, entry: StoreEntry) -> None: ...


class LocalFileStore:
    """FileStore over ``<root>/<owner_id>/...`` on the local filesystem."""

    def __init__(self, root: Path):
        self.root = Path(root)
        self.logger = logging.getLogger(__name__)
        self._id_index: Dict[Tuple[str, int], Path] = {}
        self._index_lock = threading.Lock()

    def _owner_dir(self, owner_id: str) -> Path:
        return self.root / owner_id

    def _store_path(self, owner_id: str, fs_path: Path) -> str:
        rel = fs_path.relative_to(self._owner_dir(owner_id))
        rel_text = rel.as_posix()
        return owner_id if rel_text == "." else f"{owner_id}/{rel_text}"

    def _fs_path(self, entry: StoreEntry) -> Path:
        return self.root / entry.path

    def _entry(self, owner_id: str, fs_path: Path) -> StoreEntry:
        st = fs_path.stat()
        is_dir = fs_path.is_dir()
        owner_dev = self._owner_dir(owner_id).stat().st_dev
        entry = StoreEntry(
            file_id=st.st_ino,
            name=fs_path.name if fs_path != self._owner_dir(owner_id) else owner_id,
            path=self._store_path(owner_id, fs_path),
            size=0 if is_dir else st.st_size,
            mtime=st.st_mtime,
            owner_id=owner_id,
            is_dir=is_dir,
            is_external=st.st_dev != owner_dev,
        )
        if not is_dir:
            with self._index_lock:
                self._id_index[(owner_id, st.st_ino)] = fs_path
        return entry

    def list_owners(self) -> List[str]:
        # Let OSError propagate: without owners there is nothing to scan
        return sorted(p.name for p in self.root.iterdir() if p.is_dir() and not p.name.startswith("."))

    def owner_root(self, owner_id: str) -> Optional[StoreEntry]:
        owner_dir = self._owner_dir(owner_id)
        if not owner_dir.is_dir():
            return None
        return self._entry(owner_id, owner_dir)

    def get_by_path(self, path: str) -> Optional[StoreEntry]:
        cleaned = path.strip().strip("/")
        if not cleaned:
            return None
        owner_id = cleaned.split("/", 1)[0]
        fs_path = self.root / cleaned
        if not self._owner_dir(owner_id).is_dir() or not fs_path.exists():
            return None
        return self._entry(owner_id, fs_path)

    def list_directory(self, entry: StoreEntry) -> List[StoreEntry]:
        directory = self._fs_path(entry)
        entries: List[StoreEntry] = []
        # Deterministic traversal order
        for child in sorted(directory.iterdir(), key=lambda p: p.name):
            if child.is_symlink() and not child.exists():
                continue
            try:
                entries.append(self._entry(entry.owner_id, child))
            except OSError as e:
                self.logger.warning(f"Cannot stat {child}: {e}")
        return entries

    def get_by_id(self, file_id: int, owner_id: Optional[str] = None) -> Optional[StoreEntry]:
        with self._index_lock:
            candidates = [
                (owner, path) for (owner, ino), path in self._id_index.items()
                if ino == file_id and (owner_id is None or owner == owner_id)
            ]
        for owner, path in candidates:
            try:
                if path.is_file() and path.stat().st_ino == file_id:
                    return self._entry(owner, path)
            except OSError:
                continue

        # Not indexed (new process or file moved): walk the owner trees
        owners = [owner_id] if owner_id is not None else self.list_owners()
        for owner in owners:
            owner_dir = self._owner_dir(owner)
            if not owner_dir.is_dir():
                continue
            for dirpath, _dirs, files in os.walk(owner_dir):
                for name in files:
                    candidate = Path(dirpath) / name
                    try:
                        if candidate.stat().st_ino == file_id:
                            return self._entry(owner, candidate)
                    except OSError:
                        continue
        return None

    def open_read(self, entry: StoreEntry) -> BinaryIO:
        return open(self._fs_path(entry), "rb")

    def local_path(self, entry: StoreEntry) -> Optional[Path]:
        path = self._fs_path(entry)
        return path if path.exists() else None

    def delete(self, entry: StoreEntry) -> None:
        path = self._fs_path(entry)
        path.unlink()
        with self._index_lock:
            self._id_index.pop((entry.owner_id, entry.file_id), None)
