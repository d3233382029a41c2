"""Sync orchestration logic."""

import logging
from typing import Optional

from shared.local_store import LocalStore, LocalStorageError
from shared.models import ConnectivityState, DrainResult, RecordSnapshot, SaveResult, SyncStatus
from services.drive_client.auth import DriveAuthenticator
from services.drive_client.drive_client import DriveClient
from services.drive_client.errors import AuthRequiredError, RemoteStorageError
from services.sync_service.autosave import CURRENT_RECORD_KEY
from services.sync_service.connectivity import ConnectivityMonitor
from services.sync_service.notifications import NotificationService, StatusBroadcaster
from services.sync_service.sync_queue import SyncQueue

logger = logging.getLogger(__name__)


class SyncOrchestrator:
    """Decides between direct upload, queueing, retry and eviction for record saves."""

    def __init__(
        self,
        drive_client: DriveClient,
        sync_queue: SyncQueue,
        connectivity: ConnectivityMonitor,
        authenticator: DriveAuthenticator,
        store: LocalStore,
        status: Optional[StatusBroadcaster] = None,
        notification_service: Optional[NotificationService] = None
    ):
        """
        Initialize the sync orchestrator.

        Registers a drain on every offline -> online transition of ``connectivity``.

        Args:
            drive_client: Remote storage client
            sync_queue: Durable queue of pending uploads
            connectivity: Network reachability monitor
            authenticator: Drive authentication state
            store: Local durable store holding the current record
            status: Status signal for the UI
            notification_service: Alerts for records dropped after exhausting retries
        """
        self.drive_client = drive_client
        self.sync_queue = sync_queue
        self.connectivity = connectivity
        self.authenticator = authenticator
        self.store = store
        self.status = status or StatusBroadcaster()
        self.notification_service = notification_service or NotificationService()
        self.last_drain: Optional[DrainResult] = None
        self._draining = False

        self.connectivity.on_online(self._on_online)

    def connectivity_state(self) -> ConnectivityState:
        return ConnectivityState(
            is_online=self.connectivity.is_online(),
            is_authenticated=self.authenticator.is_authenticated()
        )

    def can_upload(self) -> bool:
        """Check whether a direct upload should be attempted."""
        state = self.connectivity_state()
        return state.is_online and state.is_authenticated

    async def save(self, snapshot: RecordSnapshot) -> SaveResult:
        """
        Save a record: upload directly when possible, otherwise queue it.

        JSON and chart are one unit of work on both paths. A failure of
        either artifact queues the whole record.

        Args:
            snapshot: Record produced by the form layer

        Returns:
            SaveResult describing where the record ended up

        Raises:
            ValueError: If the snapshot has no record ID
        """
        if not snapshot.record_id:
            raise ValueError("Cannot save a record without a record ID")

        logger.info(f"Saving record {snapshot.record_id}")
        self.status.publish(SyncStatus.SAVING, "Saving...", len(self.sync_queue))
        durable = self._store_current_record(snapshot)
        auth_error = False

        if self.can_upload():
            try:
                files = await self.drive_client.upsert_record_files(
                    snapshot.record_id,
                    snapshot.json_content,
                    snapshot.binary_content,
                    snapshot.created_at,
                    snapshot.updated_at
                )
            except AuthRequiredError as e:
                logger.warning(f"Direct upload of record {snapshot.record_id} needs sign-in: {e}")
                auth_error = True
            except RemoteStorageError as e:
                logger.warning(f"Direct upload of record {snapshot.record_id} failed, queueing: {e}")
            else:
                # Older queued copies of this record must not be replayed over it
                self.sync_queue.remove_record(snapshot.record_id)
                self.status.publish(SyncStatus.SAVED, "Saved to Google Drive", len(self.sync_queue))
                return SaveResult(
                    record_id=snapshot.record_id,
                    uploaded=True,
                    durable=durable,
                    files=files
                )
        else:
            logger.info(
                f"Queueing record {snapshot.record_id} "
                f"(online={self.connectivity.is_online()}, "
                f"authenticated={self.authenticator.is_authenticated()})"
            )

        item_id = self.sync_queue.enqueue(
            snapshot.record_id,
            snapshot.json_content,
            snapshot.binary_content,
            snapshot.created_at,
            snapshot.updated_at
        )
        durable = durable and not self.sync_queue.degraded
        queue_length = len(self.sync_queue)

        if auth_error:
            self.status.publish(SyncStatus.ERROR, "Sign in to Google Drive to back up records", queue_length)
        elif not durable:
            self.status.publish(SyncStatus.ERROR, "Saved in memory only, local storage unavailable", queue_length)
        else:
            self.status.publish(SyncStatus.SAVED, "Saved on this device, waiting to sync", queue_length)

        return SaveResult(
            record_id=snapshot.record_id,
            uploaded=False,
            queue_item_id=item_id,
            auth_error=auth_error,
            durable=durable
        )

    async def drain(self) -> DrainResult:
        """
        Attempt to deliver every queued item, oldest first.

        Only one drain runs at a time; a call made while another is in
        progress returns immediately with ``skipped`` set.

        Returns:
            DrainResult with succeeded / failed / total counts
        """
        if self._draining:
            logger.info("Drain already in progress, skipping")
            return DrainResult(pending=len(self.sync_queue), skipped=True)

        self._draining = True
        try:
            result = await self._drain()
        finally:
            self._draining = False

        self.last_drain = result
        return result

    async def reset(self) -> int:
        """
        Drop all local sync state (logout).

        Returns:
            Number of unsynced queue items discarded
        """
        discarded = self.sync_queue.clear()
        try:
            self.store.clear()
        except LocalStorageError as e:
            logger.error(f"Failed to clear storage during logout: {e}")

        self.last_drain = None
        self.status.publish(SyncStatus.IDLE)
        return discarded

    def _store_current_record(self, snapshot: RecordSnapshot) -> bool:
        try:
            self.store.put(CURRENT_RECORD_KEY, snapshot.to_dict())
        except LocalStorageError as e:
            logger.error(f"Failed to save record {snapshot.record_id} locally: {e}")
            return False
        return True

    async def _on_online(self) -> None:
        logger.info("Connectivity restored, draining sync queue")
        await self.drain()

    async def _drain(self) -> DrainResult:
        pending = self.sync_queue.list_pending()
        if not pending:
            return DrainResult()

        if not self.can_upload():
            logger.info(
                f"Skipping drain of {len(pending)} items "
                f"(online={self.connectivity.is_online()}, "
                f"authenticated={self.authenticator.is_authenticated()})"
            )
            return DrainResult(
                pending=len(pending),
                auth_error=not self.authenticator.is_authenticated(),
                skipped=True
            )

        logger.info(f"Processing {len(pending)} queued syncs...")
        self.status.publish(SyncStatus.SAVING, f"Syncing {len(pending)} records...", len(pending))
        result = DrainResult(total=len(pending))

        for item in pending:
            if self.sync_queue.get(item.id) is None:
                logger.info(f"Skipping {item.id}, replaced by a newer save of record {item.record_id}")
                continue

            if self.sync_queue.is_exhausted(item):
                logger.error(
                    f"Max retry attempts exceeded for record {item.record_id}, "
                    f"removing {item.id} from queue"
                )
                self.sync_queue.remove(item.id)
                result.failed += 1
                await self.notification_service.send_permanent_failure_notification(
                    record_id=item.record_id,
                    item_id=item.id,
                    attempts=item.attempts,
                    context={"enqueued_at": item.enqueued_at.isoformat()}
                )
                continue

            try:
                await self.drive_client.upsert_record_files(
                    item.record_id,
                    item.json_content,
                    item.binary_content,
                    item.created_at,
                    item.updated_at
                )
            except AuthRequiredError as e:
                # Not the item's fault: leave it and everything after it untouched
                logger.warning(f"Drain stopped, sign-in required: {e}")
                result.auth_error = True
                break
            except RemoteStorageError as e:
                attempts = self.sync_queue.increment_attempts(item.id)
                logger.warning(
                    f"Error syncing record {item.record_id} "
                    f"(attempt {attempts}/{self.sync_queue.max_attempts}): {e}"
                )
                continue

            self.sync_queue.remove(item.id)
            result.succeeded += 1
            logger.info(f"Successfully synced record {item.record_id} to Google Drive")

        result.pending = len(self.sync_queue)
        logger.info(
            f"Drain completed: {result.succeeded} succeeded, {result.failed} failed, "
            f"{result.pending} still pending"
        )

        if result.auth_error:
            self.status.publish(SyncStatus.ERROR, "Sign in to Google Drive to finish syncing", result.pending)
        elif result.failed:
            self.status.publish(
                SyncStatus.ERROR,
                f"{result.failed} records could not be backed up",
                result.pending
            )
        elif result.pending:
            self.status.publish(SyncStatus.SAVED, f"{result.pending} records waiting to sync", result.pending)
        else:
            self.status.publish(SyncStatus.SAVED, "All records synced", 0)

        return result
