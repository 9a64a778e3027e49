"""Discovery of oversized media files.

Walks the file store under the configured scan paths (or every owner's whole
tree), keeps files strictly larger than the trigger size with a recognized
video or image extension, and upserts them into the catalog as `found`.

Only one scan runs at a time; the guard is an atomic compare-and-swap in the
status store. Individual folders or files that cannot be read are logged and
skipped. Only a failure to enumerate owners ends the scan with an error.
"""

import logging
from pathlib import PurePosixPath
from typing import List, Optional
from downtranscoder.config.models import AppConfig
from downtranscoder.domain.models import DiscoveredFile, MediaType, ScanResult, ScanStatus
from downtranscoder.domain.errors import OwnerEnumerationError, ScanInProgress
from downtranscoder.domain.events import ScanStarted, ScanFinished
from downtranscoder.infrastructure.event_bus import EventBus
from downtranscoder.infrastructure.file_store import FileStore, StoreEntry
from downtranscoder.infrastructure.status_store import GLOBAL_SCOPE, StatusStore
from downtranscoder.pipeline.state_service import MediaStateService

VIDEO_EXTENSIONS = frozenset({
    "mp4", "mkv", "avi", "mov", "wmv", "flv", "webm", "m4v", "mpg", "mpeg", "ts", "vob",
})
IMAGE_EXTENSIONS = frozenset({"jpg", "jpeg", "png", "gif", "bmp", "tiff", "webp"})
# Infix of files written by the dispatcher; never cataloged as input
OUTPUT_MARKER = ".transcoded."


def classify_extension(name: str) -> Optional[MediaType]:
    extension = PurePosixPath(name).suffix.lower().lstrip(".")
    if extension in VIDEO_EXTENSIONS:
        return MediaType.VIDEO
    if extension in IMAGE_EXTENSIONS:
        return MediaType.IMAGE
    return None


class MediaScanner:
    """Scans the file store for large media files and records them in the catalog.

    Args:
        config: AppConfig; the `scan` section drives thresholds and roots.
        file_store: FileStore to walk.
        state_service: MediaStateService used to clear and upsert catalog rows.
        status_store: StatusStore holding the single-flight scan record.
        event_bus: EventBus for ScanStarted / ScanFinished.
    """

    def __init__(
        self,
        config: AppConfig,
        file_store: FileStore,
        state_service: MediaStateService,
        status_store: StatusStore,
        event_bus: Optional[EventBus] = None,
    ):
        self.config = config
        self.file_store = file_store
        self.state_service = state_service
        self.status_store = status_store
        self.event_bus = event_bus or EventBus()
        self.logger = logging.getLogger(__name__)

    def get_scan_status(self, scope: str = GLOBAL_SCOPE) -> ScanStatus:
        return self.status_store.get_scan_status(scope)

    def scan(self, owner_id: Optional[str] = None) -> ScanResult:
        """Runs one scan of all owners, or of ``owner_id`` only.

        Raises ScanInProgress when another scan holds the flag, and
        OwnerEnumerationError when the owner list cannot be read.
        """
        scope = owner_id or GLOBAL_SCOPE
        if not self.status_store.try_begin_scan(scope):
            self.logger.info(f"Scan refused for scope '{scope}': another scan is in progress")
            raise ScanInProgress()

        result = ScanResult()
        self.event_bus.publish(ScanStarted(scope=scope))
        try:
            cleared = self.state_service.clear_found(owner_id)
            self.logger.info(f"Cleared {cleared} items in 'found' state before scan")

            scan_cfg = self.config.scan
            self.logger.info(
                f"SCAN_START: scope={scope}, trigger={scan_cfg.trigger_size_gb} GB "
                f"({scan_cfg.trigger_size_bytes} bytes), include_external={scan_cfg.include_external_storage}"
            )

            for root in self._resolve_roots(owner_id, result):
                self._walk(root, result)

            self._persist(result)
        finally:
            self.status_store.finish_scan(scope, files_found=len(result.files))
            self.event_bus.publish(ScanFinished(scope=scope, files_found=len(result.files), errors=len(result.errors)))

        self.logger.info(f"SCAN_END: scope={scope}, found={len(result.files)}, errors={len(result.errors)}")
        return result

    def _resolve_roots(self, owner_id: Optional[str], result: ScanResult) -> List[StoreEntry]:
        scan_paths = self.config.scan.scan_paths
        roots: List[StoreEntry] = []

        if scan_paths:
            for path in scan_paths:
                if owner_id is not None and path.split("/", 1)[0] != owner_id:
                    continue
                try:
                    entry = self.file_store.get_by_path(path)
                except Exception as e:
                    self._record_error(result, f"Error resolving scan path {path}: {e}")
                    continue
                if entry is None:
                    self.logger.warning(f"Path not found: {path}")
                    continue
                if not entry.is_dir:
                    self.logger.warning(f"Path is not a folder: {path}")
                    continue
                roots.append(entry)
            return roots

        if owner_id is not None:
            owners = [owner_id]
        else:
            self.logger.info("No scan paths configured, scanning all owners")
            try:
                owners = self.file_store.list_owners()
            except Exception as e:
                self.logger.error(f"Cannot enumerate owners: {e}")
                raise OwnerEnumerationError(f"Cannot enumerate owners: {e}") from e

        for owner in owners:
            try:
                root = self.file_store.owner_root(owner)
            except Exception as e:
                self._record_error(result, f"Cannot open root folder of {owner}: {e}")
                continue
            if root is None:
                self.logger.warning(f"No root folder for owner {owner}")
                continue
            roots.append(root)
        return roots

    def _walk(self, root: StoreEntry, result: ScanResult) -> None:
        include_external = self.config.scan.include_external_storage
        stack = [root]
        while stack:
            folder = stack.pop()
            if folder.is_external:
                if not include_external:
                    self.logger.info(f"Skipping external storage: {folder.path}")
                    continue
                self.logger.debug(f"External storage: {folder.path}")

            try:
                children = self.file_store.list_directory(folder)
            except Exception as e:
                self._record_error(result, f"Error scanning folder {folder.path}: {e}")
                continue

            subfolders = []
            for child in children:
                if child.is_dir:
                    subfolders.append(child)
                    continue
                discovered = self._analyze(child)
                if discovered is not None:
                    result.files.append(discovered)
            # Reversed so the stack pops folders in listing order
            stack.extend(reversed(subfolders))

    def _analyze(self, entry: StoreEntry) -> Optional[DiscoveredFile]:
        trigger = self.config.scan.trigger_size_bytes
        if entry.size <= trigger:
            return None
        if OUTPUT_MARKER in entry.name:
            self.logger.debug(f"Skipping transcoded output '{entry.name}'")
            return None

        media_type = classify_extension(entry.name)
        if media_type is None:
            self.logger.debug(f"'{entry.name}' is large but not a supported media type")
            return None

        size_gb = entry.size / (1024 * 1024 * 1024)
        self.logger.info(f"MATCH: {media_type.value} '{entry.name}' ({size_gb:.2f} GB)"
                         + (" [EXTERNAL]" if entry.is_external else ""))
        return DiscoveredFile(
            file_id=entry.file_id,
            name=entry.name,
            path=entry.path,
            size=entry.size,
            media_type=media_type,
            extension=PurePosixPath(entry.name).suffix.lower().lstrip("."),
            owner_id=entry.owner_id,
            mtime=entry.mtime,
            is_external=entry.is_external,
        )

    def _persist(self, result: ScanResult) -> None:
        added = 0
        for discovered in result.files:
            try:
                self.state_service.add_or_update(discovered)
                added += 1
            except Exception as e:
                self._record_error(result, f"Failed to add '{discovered.name}' to the catalog: {e}")
        self.logger.info(f"Catalog updated: {added} items, {len(result.files) - added} errors")

    def _record_error(self, result: ScanResult, message: str) -> None:
        self.logger.error(message)
        result.errors.append(message)
