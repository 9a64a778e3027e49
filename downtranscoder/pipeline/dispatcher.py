"""Queue dispatcher: moves queued items through ffmpeg.

A dispatch claims up to ``queue.concurrent_limit`` queued items (oldest first)
and runs them one after another. The limit bounds the batch size only; no two
ffmpeg processes are started by the same dispatcher at once.

Per-item failures end with the item in `aborted` and a reason in the summary.
Only ProcessStartError (ffmpeg installed but not startable) is raised to the
caller, because every following item would fail the same way.
"""

import os
import logging
import tempfile
import threading
from pathlib import Path
from typing import Optional, Tuple
from downtranscoder.config.models import AppConfig
from downtranscoder.domain.models import (
    DispatchSummary,
    MediaItem,
    MediaState,
    MediaType,
    QueueStatus,
    TranscodeResult,
)
from downtranscoder.domain.errors import (
    AccessDenied,
    InputNotFound,
    InvalidStateTransition,
    ProcessStartError,
    TranscodeCancelled,
)
from downtranscoder.domain.events import (
    DispatchFinished,
    ItemAborted,
    ItemTranscoded,
    TranscodeProgressUpdated,
    TranscodeStarted,
)
from downtranscoder.infrastructure.catalog import MediaCatalog
from downtranscoder.infrastructure.event_bus import EventBus
from downtranscoder.infrastructure.ffmpeg import FFmpegTranscoder, TranscodeRequest
from downtranscoder.infrastructure.file_store import FileStore, StoreEntry
from downtranscoder.infrastructure.status_store import StatusStore
from downtranscoder.pipeline.scanner import OUTPUT_MARKER, classify_extension
from downtranscoder.pipeline.state_service import MediaStateService


class Dispatcher:
    """Runs queued catalog items through the transcoder.

    Args:
        config: AppConfig (queue limit, auto-delete, output dir).
        catalog: MediaCatalog holding the items.
        state_service: MediaStateService for every state change.
        status_store: StatusStore holding the single-flight queue record.
        file_store: FileStore used to resolve and delete inputs.
        transcoder: FFmpegTranscoder; its progress callback is owned by the dispatcher.
        event_bus: EventBus for per-item and batch events.
    """

    def __init__(
        self,
        config: AppConfig,
        catalog: MediaCatalog,
        state_service: MediaStateService,
        status_store: StatusStore,
        file_store: FileStore,
        transcoder: FFmpegTranscoder,
        event_bus: Optional[EventBus] = None,
    ):
        self.config = config
        self.catalog = catalog
        self.state_service = state_service
        self.status_store = status_store
        self.file_store = file_store
        self.transcoder = transcoder
        self.event_bus = event_bus or EventBus()
        self.logger = logging.getLogger(__name__)

        self._lock = threading.Lock()
        self._current_item_id: Optional[int] = None
        self._cancel_event: Optional[threading.Event] = None
        self.transcoder.set_progress_callback(self._on_progress)

    # -- batch entry points -----------------------------------------------

    def dispatch(self) -> DispatchSummary:
        """Processes the next batch of queued items.

        Returns ``DispatchSummary(skipped=True)`` when another dispatch holds
        the queue flag.
        """
        if not self.status_store.try_begin_transcoding():
            self.logger.info("Dispatch skipped: transcoding already in progress")
            return DispatchSummary(skipped=True)

        summary = DispatchSummary()
        try:
            self.state_service.cleanup_old_discarded()

            limit = self.config.queue.concurrent_limit
            batch = self.catalog.find_by_state(MediaState.QUEUED)[:limit]
            total = len(batch)
            self.status_store.update_progress(0, total, None)
            if not batch:
                self.logger.info("No queued items to transcode")
            else:
                self.logger.info(f"Starting batch of {total} item(s) (limit {limit})")

            for index, item in enumerate(batch, start=1):
                self._process(item, index, total, summary)
        finally:
            self.status_store.finish_transcoding()
            self.event_bus.publish(DispatchFinished(summary=summary))

        self.logger.info(
            f"Batch finished: processed={summary.processed}, transcoded={len(summary.transcoded)}, "
            f"aborted={len(summary.aborted)}, skipped={len(summary.skipped_items)}"
        )
        return summary

    def dispatch_single(self, item_id: int) -> DispatchSummary:
        """Processes one item right away, ignoring queue order.

        The item has to be `queued` or already `transcoding`; anything else
        raises InvalidStateTransition.
        """
        item = self.state_service.get_item(item_id)
        if item.state not in (MediaState.QUEUED, MediaState.TRANSCODING):
            raise InvalidStateTransition(item_id, item.state.value, MediaState.TRANSCODING.value)

        if not self.status_store.try_begin_transcoding(total_items=1):
            self.logger.info(f"Dispatch of item {item_id} skipped: transcoding already in progress")
            return DispatchSummary(skipped=True)

        summary = DispatchSummary()
        try:
            self._process(item, 1, 1, summary, allow_in_flight=True)
        finally:
            self.status_store.finish_transcoding()
            self.event_bus.publish(DispatchFinished(summary=summary))
        return summary

    # -- user actions -----------------------------------------------------

    def abort(self, item_id: int, reason: Optional[str] = None, user_id: Optional[str] = None) -> MediaItem:
        """Aborts a transcoding item and stops ffmpeg if it is the one running."""
        reason = reason or TranscodeCancelled().reason
        item = self.state_service.update_state(item_id, MediaState.ABORTED, reason, user_id=user_id)
        with self._lock:
            if self._current_item_id == item_id and self._cancel_event is not None:
                self.logger.info(f"Stopping ffmpeg for item {item_id}")
                self._cancel_event.set()
        self.event_bus.publish(ItemAborted(item=item, reason=item.abort_reason))
        return item

    def delete_original(self, item_id: int, user_id: Optional[str] = None) -> bool:
        """Deletes the source file of a transcoded item and drops its row.

        Returns False, changing nothing, for a missing item, any state other
        than `transcoded`, or a source file that is already gone.
        """
        item = self.catalog.find_by_id(item_id)
        if item is None:
            return False
        if user_id is not None and item.owner_id != user_id:
            raise AccessDenied(item_id)
        if item.state != MediaState.TRANSCODED:
            self.logger.warning(f"Refusing to delete original of item {item_id} in state '{item.state.value}'")
            return False

        entry = self.file_store.get_by_id(item.file_id, item.owner_id)
        if entry is None:
            self.logger.warning(f"Original of item {item_id} ({item.name}) no longer exists")
            return False
        try:
            self.file_store.delete(entry)
        except OSError as e:
            self.logger.error(f"Failed to delete original {entry.path}: {e}")
            return False

        self.catalog.delete(item_id)
        self.logger.info(f"Deleted original {entry.path} and removed item {item_id}")
        return True

    def get_queue_status(self) -> QueueStatus:
        status = self.status_store.get_queue_status()
        counts = self.catalog.count_by_state()
        return status.model_copy(update={
            "queued_items": counts[MediaState.QUEUED],
            "transcoding_items": counts[MediaState.TRANSCODING],
            "transcoded_items": counts[MediaState.TRANSCODED],
            "aborted_items": counts[MediaState.ABORTED],
        })

    # -- per-item processing ----------------------------------------------

    def _process(
        self,
        item: MediaItem,
        index: int,
        total: int,
        summary: DispatchSummary,
        allow_in_flight: bool = False,
    ) -> None:
        self.status_store.update_progress(index, total, item.name)

        current = self.catalog.find_by_id(item.id)
        if current is None:
            self.logger.info(f"Item {item.id} disappeared before processing, skipping")
            summary.skipped_items.append(item.id)
            return
        if not (allow_in_flight and current.state == MediaState.TRANSCODING):
            try:
                current = self.state_service.update_state(item.id, MediaState.TRANSCODING)
            except InvalidStateTransition as e:
                self.logger.info(f"Skipping item {item.id}: {e.reason}")
                summary.skipped_items.append(item.id)
                return

        cancel_event = threading.Event()
        with self._lock:
            self._current_item_id = current.id
            self._cancel_event = cancel_event

        summary.processed += 1
        self.event_bus.publish(TranscodeStarted(item=current, index=index, total=total))
        self.logger.info(f"[{index}/{total}] Transcoding {current.name} (item {current.id})")

        try:
            result = self._transcode(current, cancel_event)
        except ProcessStartError as e:
            self._finish(current, TranscodeResult(success=False, error_kind=e.kind, error_message=e.reason), summary)
            raise
        except Exception as e:
            self.logger.exception(f"Unexpected error while transcoding item {current.id}")
            result = TranscodeResult(success=False, error_kind="error", error_message=f"Unexpected error: {e}")
        finally:
            with self._lock:
                self._current_item_id = None
                self._cancel_event = None

        self._finish(current, result, summary)

    def _transcode(self, item: MediaItem, cancel_event: threading.Event) -> TranscodeResult:
        entry = self.file_store.get_by_id(item.file_id, item.owner_id)
        if entry is None:
            error = InputNotFound(item.name, item.file_id)
            self.logger.warning(f"Item {item.id}: {error.reason}")
            return TranscodeResult(success=False, error_kind=error.kind, error_message=error.reason)

        try:
            local_path = self.file_store.local_path(entry)
        except OSError as e:
            self.logger.info(f"No local path for {entry.path}: {e}")
            local_path = None

        output_path, beside_input = self._output_path(item, local_path)
        request = TranscodeRequest(
            name=entry.name,
            media_type=classify_extension(entry.name) or MediaType.VIDEO,
            output_path=output_path,
            local_path=local_path,
            expected_size=item.size,
            open_stream=lambda: self.file_store.open_read(entry),
            preset=item.transcode_preset,
            cancel_event=cancel_event,
            is_cancelled=lambda: self._left_transcoding(item.id),
        )
        result = self.transcoder.run(request)

        if result.success and beside_input and not result.used_fallback_copy:
            self._replace_original(item, entry, local_path, output_path, result)
        return result

    def _output_path(self, item: MediaItem, local_path: Optional[Path]) -> Tuple[Path, bool]:
        """Returns (output path, whether it sits beside the local input)."""
        extension = Path(item.name).suffix.lstrip(".").lower() or "mp4"
        if local_path is not None and os.access(local_path.parent, os.W_OK):
            return local_path.with_name(f"{local_path.name}{OUTPUT_MARKER}{extension}"), True

        base = Path(self.config.general.output_dir or tempfile.gettempdir())
        return base / f"{item.file_id}{OUTPUT_MARKER}{extension}", False

    def _replace_original(
        self,
        item: MediaItem,
        entry: StoreEntry,
        local_path: Path,
        output_path: Path,
        result: TranscodeResult,
    ) -> None:
        if not self.config.queue.auto_delete_originals:
            return
        try:
            os.replace(output_path, local_path)
        except OSError as e:
            self.logger.error(f"Could not replace original {entry.path}, output kept at {output_path}: {e}")
            return
        result.output_path = str(local_path)
        self.logger.info(f"Replaced original {entry.path} with transcoded output")
        self._rekey(item, entry)

    def _rekey(self, item: MediaItem, entry: StoreEntry) -> None:
        """Points the row at the file now living at the original path.

        The replace gives the path a new file id; without this the next scan
        would catalog the shrunk file again as `found`.
        """
        replaced = self.file_store.get_by_path(entry.path)
        if replaced is None or replaced.file_id == item.file_id:
            return
        if not self.catalog.update_file_id(item.id, replaced.file_id):
            self.logger.warning(f"Could not move item {item.id} to file id {replaced.file_id}")

    def _left_transcoding(self, item_id: int) -> bool:
        current = self.catalog.find_by_id(item_id)
        return current is None or current.state != MediaState.TRANSCODING

    def _finish(self, item: MediaItem, result: TranscodeResult, summary: DispatchSummary) -> None:
        current = self.catalog.find_by_id(item.id)
        if current is None:
            self.logger.warning(f"Item {item.id} was removed while transcoding")
            return
        if current.state != MediaState.TRANSCODING:
            # Aborted by the user while ffmpeg was running; keep their decision
            self.logger.info(f"Item {item.id} left 'transcoding' during the run ({current.state.value})")
            if current.state == MediaState.ABORTED:
                summary.aborted[item.id] = current.abort_reason
            return

        if result.success:
            try:
                updated = self.state_service.update_state(item.id, MediaState.TRANSCODED)
            except InvalidStateTransition as e:
                self.logger.info(f"Item {item.id} not marked transcoded: {e.reason}")
                return
            summary.transcoded.append(item.id)
            self.event_bus.publish(ItemTranscoded(
                item=updated,
                output_path=result.output_path,
                input_size=result.input_size,
                output_size=result.output_size,
            ))
            return

        reason = result.error_message or "Transcoding failed"
        try:
            updated = self.state_service.update_state(item.id, MediaState.ABORTED, reason)
        except InvalidStateTransition as e:
            self.logger.info(f"Item {item.id} not marked aborted: {e.reason}")
            return
        summary.aborted[item.id] = reason
        self.event_bus.publish(ItemAborted(item=updated, reason=reason))

    def _on_progress(self, percent: int) -> None:
        with self._lock:
            item_id = self._current_item_id
        if item_id is None:
            return
        if not self.catalog.update_progress(item_id, percent):
            return
        item = self.catalog.find_by_id(item_id)
        if item is not None:
            self.event_bus.publish(TranscodeProgressUpdated(item=item, progress_percent=percent))
