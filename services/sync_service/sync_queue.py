"""Durable FIFO queue of pending record uploads."""

import logging
import threading
import uuid
from dataclasses import replace
from datetime import datetime
from typing import List, Optional

from shared.local_store import LocalStore, LocalStorageError
from shared.models import QueueItem, QueueStatus, utc_now

logger = logging.getLogger(__name__)

SYNC_QUEUE_KEY = "sync-queue"
MAX_RETRY_ATTEMPTS = 3


class SyncQueue:
    """
    Ordered, at-least-once queue of upload jobs.

    Every mutation is written through to the local store before the call
    returns, so a crash loses at most an attempt-count increment, never an
    item. If the store is unavailable the queue keeps operating in memory
    and ``degraded`` is set until the next successful write.
    """

    def __init__(self, store: LocalStore, max_attempts: int = MAX_RETRY_ATTEMPTS):
        """
        Initialize the queue and load any items persisted by a previous run.

        Args:
            store: Local durable store
            max_attempts: Failed attempts after which an item is evicted
        """
        self.store = store
        self.max_attempts = max_attempts
        self.degraded = False
        self._lock = threading.Lock()
        self._items: List[QueueItem] = self._load()

    def enqueue(
        self,
        record_id: str,
        json_content: str,
        binary_content: Optional[bytes] = None,
        created_at: Optional[datetime] = None,
        updated_at: Optional[datetime] = None
    ) -> str:
        """
        Add an upload job for a record.

        A snapshot is the whole record, so any older job still pending for
        the same record is dropped: the queue holds at most one job per
        record and an older copy can never be uploaded over a newer one.

        Returns:
            The new queue item ID
        """
        item = QueueItem(
            id=f"sync_{record_id}_{uuid.uuid4().hex}",
            record_id=record_id,
            json_content=json_content,
            binary_content=binary_content,
            enqueued_at=utc_now(),
            attempts=0,
            created_at=created_at,
            updated_at=updated_at,
        )

        with self._lock:
            superseded = self._drop_record(record_id)
            self._items.append(item)
            self._persist()

        if superseded:
            logger.info(f"Replaced {superseded} pending sync(s) of record {record_id}")
        logger.info(f"Added record {record_id} to sync queue as {item.id}")
        return item.id

    def list_pending(self) -> List[QueueItem]:
        """Return copies of all queued items, oldest first."""
        with self._lock:
            return sorted((replace(item) for item in self._items), key=lambda i: i.enqueued_at)

    def get(self, item_id: str) -> Optional[QueueItem]:
        with self._lock:
            item = self._find(item_id)
            return replace(item) if item else None

    def remove(self, item_id: str) -> bool:
        """
        Remove an item.

        Returns:
            True if the item was queued, False otherwise
        """
        with self._lock:
            item = self._find(item_id)
            if item is None:
                return False
            self._items.remove(item)
            self._persist()
            return True

    def remove_record(self, record_id: str) -> int:
        """
        Remove every pending job for a record, after a newer copy was uploaded.

        Returns:
            Number of items removed
        """
        with self._lock:
            removed = self._drop_record(record_id)
            if removed:
                self._persist()

        if removed:
            logger.info(f"Dropped {removed} stale pending sync(s) of record {record_id}")
        return removed

    def increment_attempts(self, item_id: str) -> Optional[int]:
        """
        Record a failed upload attempt.

        Returns:
            The new attempt count, or None if the item is not queued
        """
        with self._lock:
            item = self._find(item_id)
            if item is None:
                return None
            item.attempts += 1
            self._persist()
            return item.attempts

    def is_exhausted(self, item: QueueItem) -> bool:
        """Check whether an item has used up its retry budget."""
        return item.attempts >= self.max_attempts

    def status(self) -> QueueStatus:
        with self._lock:
            if not self._items:
                return QueueStatus(queue_length=0)
            return QueueStatus(
                queue_length=len(self._items),
                oldest_timestamp=min(item.enqueued_at for item in self._items)
            )

    def clear(self) -> int:
        """
        Drop every queued item.

        Returns:
            Number of items discarded
        """
        with self._lock:
            count = len(self._items)
            self._items = []
            self._persist()

        if count:
            logger.warning(f"Sync queue cleared, {count} unsynced items discarded")
        return count

    def __len__(self) -> int:
        with self._lock:
            return len(self._items)

    def _find(self, item_id: str) -> Optional[QueueItem]:
        for item in self._items:
            if item.id == item_id:
                return item
        return None

    def _drop_record(self, record_id: str) -> int:
        kept = [item for item in self._items if item.record_id != record_id]
        dropped = len(self._items) - len(kept)
        self._items = kept
        return dropped

    def _load(self) -> List[QueueItem]:
        try:
            raw_items = self.store.get(SYNC_QUEUE_KEY, [])
        except LocalStorageError as e:
            logger.error(f"Could not load sync queue, starting empty: {e}")
            self.degraded = True
            return []

        if not isinstance(raw_items, list):
            logger.error(f"Persisted sync queue is not a list, starting empty: {type(raw_items).__name__}")
            self.degraded = True
            return []

        items = []
        for data in raw_items:
            try:
                items.append(QueueItem.from_dict(data))
            except (KeyError, TypeError, ValueError) as e:
                logger.error(f"Skipping unreadable sync queue entry: {e!r}")
                self.degraded = True

        if items:
            logger.info(f"Loaded {len(items)} pending items from sync queue")
        return items

    def _persist(self) -> None:
        try:
            self.store.put(SYNC_QUEUE_KEY, [item.to_dict() for item in self._items])
            self.degraded = False
        except LocalStorageError as e:
            logger.error(f"Sync queue not persisted, continuing in memory: {e}")
            self.degraded = True
