"""Debounced autosave of the record being edited."""

import asyncio
import logging
from typing import Any, Optional

from shared.local_store import LocalStore, LocalStorageError
from shared.models import RecordSnapshot

logger = logging.getLogger(__name__)

CURRENT_RECORD_KEY = "current-record"
AUTOSAVE_DELAY_SECONDS = 2.0


class AutosaveScheduler:
    """
    Persists the latest snapshot once edits have been quiet for ``delay`` seconds.

    Each change re-arms the timer, so a record under continuous editing is
    not written until the edits stop. The timer runs on ``loop`` (anything
    with ``call_later``), the running asyncio loop by default.
    """

    def __init__(self, store: LocalStore, delay: float = AUTOSAVE_DELAY_SECONDS, loop: Optional[Any] = None):
        self.store = store
        self.delay = delay
        self.last_error: Optional[LocalStorageError] = None
        self._loop = loop
        self._handle = None
        self._pending: Optional[RecordSnapshot] = None

    @property
    def pending(self) -> bool:
        return self._handle is not None

    def notify_changed(self, snapshot: RecordSnapshot) -> bool:
        """
        Schedule a write of ``snapshot``, cancelling any write still pending.

        Returns:
            False if no record session is active, True otherwise
        """
        if not snapshot.record_id:
            return False

        self._cancel()
        self._pending = snapshot
        loop = self._loop or asyncio.get_running_loop()
        self._handle = loop.call_later(self.delay, self._fire)
        return True

    def close(self) -> None:
        """Cancel a pending write without performing it."""
        self._cancel()
        self._pending = None

    def _cancel(self) -> None:
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None

    def _fire(self) -> None:
        snapshot = self._pending
        self._handle = None
        self._pending = None
        if snapshot is None:
            return

        try:
            self.store.put(CURRENT_RECORD_KEY, snapshot.to_dict())
        except LocalStorageError as e:
            logger.error(f"Auto-save failed for record {snapshot.record_id}: {e}")
            self.last_error = e
            return

        self.last_error = None
        logger.debug(f"Auto-saved record {snapshot.record_id}")


def restore_current_record(store: LocalStore) -> Optional[RecordSnapshot]:
    """Load the record saved by the last session, if any."""
    try:
        data = store.get(CURRENT_RECORD_KEY)
    except LocalStorageError as e:
        logger.error(f"Failed to restore record from storage: {e}")
        return None

    if not data:
        return None
    return RecordSnapshot.from_dict(data)
