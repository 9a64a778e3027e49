"""State transitions and user-driven edits of catalog items.

All state changes go through `MediaStateService.update_state`, which enforces
the transition table and, via the catalog, the invariant that an item carries
an abort reason exactly when it is aborted.
"""

import logging
import time
from typing import List, Optional
from downtranscoder.domain.models import (
    DiscoveredFile,
    MediaItem,
    MediaState,
    TranscodePreset,
    can_transition,
)
from downtranscoder.domain.errors import AccessDenied, InvalidStateTransition, ItemNotFound
from downtranscoder.domain.events import ItemStateChanged
from downtranscoder.infrastructure.catalog import MediaCatalog
from downtranscoder.infrastructure.event_bus import EventBus

DISCARDED_RETENTION_DAYS = 30


class MediaStateService:
    def __init__(self, catalog: MediaCatalog, event_bus: Optional[EventBus] = None):
        self.catalog = catalog
        self.event_bus = event_bus or EventBus()
        self.logger = logging.getLogger(__name__)

    def get_item(self, item_id: int, user_id: Optional[str] = None) -> MediaItem:
        item = self.catalog.find_by_id(item_id)
        if item is None:
            raise ItemNotFound(item_id)
        if user_id is not None and item.owner_id != user_id:
            raise AccessDenied(item_id)
        return item

    def items(self, owner_id: Optional[str] = None, state: Optional[MediaState] = None) -> List[MediaItem]:
        if state is not None:
            return self.catalog.find_by_state(state, owner_id)
        return self.catalog.find_all(owner_id)

    def add_or_update(self, file: DiscoveredFile) -> MediaItem:
        return self.catalog.upsert(file)

    def update_state(
        self,
        item_id: int,
        state: MediaState,
        abort_reason: Optional[str] = None,
        user_id: Optional[str] = None,
    ) -> MediaItem:
        """Moves an item to ``state``.

        Raises ItemNotFound, AccessDenied (ownership mismatch when ``user_id``
        is given) or InvalidStateTransition. A same-state update only bumps
        ``updated_at``.
        """
        item = self.get_item(item_id, user_id)
        previous = item.state
        if previous != state and not can_transition(previous, state):
            raise InvalidStateTransition(item_id, previous.value, state.value)

        if previous == state and state == MediaState.ABORTED and abort_reason is None:
            abort_reason = item.abort_reason

        # Conditional write: a concurrent change between read and write is a failed transition
        updated = self.catalog.update_state(item_id, state, abort_reason, expected_state=previous)
        if updated is None:
            current = self.get_item(item_id)
            raise InvalidStateTransition(item_id, current.state.value, state.value)

        if previous != state:
            self.logger.info(f"Item {item_id} ({item.name}): {previous.value} -> {state.value}")
            self.event_bus.publish(ItemStateChanged(item=updated, previous_state=previous))
        return updated

    def update_preset(
        self,
        item_id: int,
        preset: Optional[TranscodePreset],
        user_id: Optional[str] = None,
    ) -> MediaItem:
        self.get_item(item_id, user_id)
        return self.catalog.update_preset(item_id, preset)

    def queue_all_found(self, owner_id: Optional[str] = None) -> List[MediaItem]:
        """Promotes every `found` item (optionally of one owner) to `queued`."""
        queued: List[MediaItem] = []
        for item in self.catalog.find_by_state(MediaState.FOUND, owner_id):
            try:
                queued.append(self.update_state(item.id, MediaState.QUEUED))
            except InvalidStateTransition as e:
                self.logger.warning(e.reason)
        return queued

    def clear_found(self, owner_id: Optional[str] = None) -> int:
        return self.catalog.delete_by_state(MediaState.FOUND, owner_id)

    def cleanup_old_discarded(self, owner_id: Optional[str] = None, max_age_days: int = DISCARDED_RETENTION_DAYS) -> int:
        cutoff = int(time.time()) - max_age_days * 24 * 60 * 60
        removed = self.catalog.delete_updated_before(MediaState.DISCARDED, cutoff, owner_id)
        if removed:
            self.logger.info(f"Removed {removed} discarded items older than {max_age_days} days")
        return removed

    def reset_all(self, owner_id: Optional[str] = None) -> int:
        removed = self.catalog.delete_all(owner_id)
        self.logger.info(f"Reset: removed {removed} media items" + (f" for {owner_id}" if owner_id else ""))
        return removed
