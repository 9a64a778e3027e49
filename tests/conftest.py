import io
import pytest
from pathlib import PurePosixPath
from typing import Dict, List, Optional
from downtranscoder.config.models import AppConfig, GIB
from downtranscoder.domain.models import TranscodeResult
from downtranscoder.infrastructure.catalog import MediaCatalog
from downtranscoder.infrastructure.database import Database
from downtranscoder.infrastructure.event_bus import EventBus
from downtranscoder.infrastructure.file_store import StoreEntry
from downtranscoder.infrastructure.status_store import StatusStore
from downtranscoder.pipeline.state_service import MediaStateService

# ============================================================================
# Fakes
# ============================================================================

class FakeFileStore:
    """In-memory FileStore. Paths are "<owner>/<relative path>"."""

    def __init__(self):
        self.entries: Dict[str, StoreEntry] = {}
        self.contents: Dict[str, bytes] = {}
        self.failing_dirs = set()
        self.owners_error: Optional[Exception] = None
        self.deleted: List[str] = []
        self._next_id = 1000

    def _new_id(self) -> int:
        self._next_id += 1
        return self._next_id

    def add_dir(self, path: str, is_external: bool = False) -> StoreEntry:
        path = path.strip("/")
        if path in self.entries:
            return self.entries[path]
        parts = path.split("/")
        if len(parts) > 1:
            self.add_dir("/".join(parts[:-1]))
        entry = StoreEntry(
            file_id=self._new_id(),
            name=parts[-1],
            path=path,
            owner_id=parts[0],
            is_dir=True,
            is_external=is_external,
        )
        self.entries[path] = entry
        return entry

    def add_file(self, path: str, size: int, file_id: Optional[int] = None, content: bytes = b"") -> StoreEntry:
        path = path.strip("/")
        parent = str(PurePosixPath(path).parent)
        parent_entry = self.add_dir(parent)
        entry = StoreEntry(
            file_id=file_id if file_id is not None else self._new_id(),
            name=PurePosixPath(path).name,
            path=path,
            size=size,
            mtime=1700000000.0,
            owner_id=path.split("/", 1)[0],
            is_external=parent_entry.is_external,
        )
        self.entries[path] = entry
        self.contents[path] = content
        return entry

    def remove(self, path: str) -> None:
        self.entries.pop(path, None)
        self.contents.pop(path, None)

    # -- FileStore protocol --

    def list_owners(self) -> List[str]:
        if self.owners_error is not None:
            raise self.owners_error
        return sorted({e.owner_id for e in self.entries.values()})

    def owner_root(self, owner_id: str) -> Optional[StoreEntry]:
        return self.entries.get(owner_id)

    def get_by_path(self, path: str) -> Optional[StoreEntry]:
        return self.entries.get(path.strip("/"))

    def list_directory(self, entry: StoreEntry) -> List[StoreEntry]:
        if entry.path in self.failing_dirs:
            raise PermissionError(f"Permission denied: {entry.path}")
        children = [
            e for p, e in self.entries.items()
            if str(PurePosixPath(p).parent) == entry.path and p != entry.path
        ]
        return sorted(children, key=lambda e: e.name)

    def get_by_id(self, file_id: int, owner_id: Optional[str] = None) -> Optional[StoreEntry]:
        for entry in self.entries.values():
            if entry.file_id == file_id and not entry.is_dir and (owner_id is None or entry.owner_id == owner_id):
                return entry
        return None

    def open_read(self, entry: StoreEntry):
        return io.BytesIO(self.contents.get(entry.path, b""))

    def local_path(self, entry: StoreEntry):
        return None

    def delete(self, entry: StoreEntry) -> None:
        self.remove(entry.path)
        self.deleted.append(entry.path)


class FakeTranscoder:
    """Stands in for FFmpegTranscoder; reports 10, 50, 100 and succeeds unless told otherwise."""

    def __init__(self):
        self.requests = []
        self.results: Dict[str, object] = {}
        self.on_run = None
        self._progress_callback = None

    def set_progress_callback(self, callback) -> None:
        self._progress_callback = callback

    def run(self, request):
        self.requests.append(request)
        if self.on_run is not None:
            self.on_run(request)
        outcome = self.results.get(request.name)
        if isinstance(outcome, Exception):
            raise outcome
        if outcome is not None:
            return outcome
        for percent in (10, 50, 100):
            if self._progress_callback is not None:
                self._progress_callback(percent)
        return TranscodeResult(
            success=True,
            output_path=str(request.output_path),
            input_size=request.expected_size,
            output_size=(request.expected_size or 0) // 4,
        )

# ============================================================================
# Configuration Fixtures
# ============================================================================

@pytest.fixture
def app_config(tmp_path):
    """AppConfig with a 10 GB trigger and outputs under tmp_path."""
    return AppConfig(
        general={
            "catalog_path": str(tmp_path / "catalog.db"),
            "log_path": None,
            "output_dir": str(tmp_path / "out"),
            "temp_dir": str(tmp_path),
        },
        scan={"trigger_size_gb": 10},
        queue={"concurrent_limit": 1},
    )

@pytest.fixture
def ten_gb():
    return 10 * GIB

# ============================================================================
# Storage Fixtures
# ============================================================================

@pytest.fixture
def db():
    database = Database()
    yield database
    database.close()

@pytest.fixture
def event_bus():
    return EventBus()

@pytest.fixture
def catalog(db):
    return MediaCatalog(db)

@pytest.fixture
def status_store(db):
    return StatusStore(db)

@pytest.fixture
def state_service(catalog, event_bus):
    return MediaStateService(catalog, event_bus)

@pytest.fixture
def fake_store():
    return FakeFileStore()

@pytest.fixture
def fake_transcoder():
    return FakeTranscoder()

@pytest.fixture
def collected_events(event_bus):
    """Subscribes to every published event type used by the workflow."""
    from downtranscoder.domain import events as ev

    received = []
    for event_type in (
        ev.ScanStarted, ev.ScanFinished, ev.ItemStateChanged, ev.TranscodeStarted,
        ev.TranscodeProgressUpdated, ev.ItemTranscoded, ev.ItemAborted, ev.DispatchFinished,
    ):
        event_bus.subscribe(event_type, received.append)
    return received
