"""Local durable key/value store for the offline sync engine."""

import json
import logging
import threading
from typing import Any, Optional

from sqlalchemy import create_engine, select, delete
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from shared.db_models import Base, LocalEntry
from shared.config import get_database_url, get_storage_namespace

logger = logging.getLogger(__name__)


class LocalStorageError(Exception):
    """Raised when the local durable store cannot be read or written."""


class LocalStore:
    """Persists JSON values under an application-scoped namespace.

    Values survive process restarts. Writes are serialized so there is
    exactly one outstanding writer; reads go straight to the database.
    """

    def __init__(self, database_url: Optional[str] = None, namespace: Optional[str] = None):
        """
        Initialize the store.

        Args:
            database_url: SQLAlchemy URL, defaults to ``DATABASE_URL``
            namespace: Key namespace, defaults to ``STORAGE_NAMESPACE``
        """
        self.database_url = database_url or get_database_url()
        self.namespace = namespace or get_storage_namespace()

        engine_kwargs = {"pool_pre_ping": True}
        if self.database_url.startswith("sqlite"):
            engine_kwargs["connect_args"] = {"check_same_thread": False}
            if ":memory:" in self.database_url or self.database_url == "sqlite://":
                # Every session must see the same in-memory database
                engine_kwargs["poolclass"] = StaticPool

        self.engine = create_engine(self.database_url, **engine_kwargs)
        self.SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=self.engine)
        self._write_lock = threading.Lock()

    def create_tables(self):
        """Create all tables in the database."""
        Base.metadata.create_all(bind=self.engine)

    def get_session(self) -> Session:
        """Get a new database session."""
        return self.SessionLocal()

    def put(self, key: str, value: Any) -> None:
        """
        Store a JSON-serializable value under ``key``, replacing any previous value.

        Raises:
            LocalStorageError: If the value cannot be serialized or written
        """
        try:
            payload = json.dumps(value)
        except (TypeError, ValueError) as e:
            raise LocalStorageError(f"Value for {key} is not serializable: {e}") from e

        with self._write_lock:
            try:
                with self.get_session() as session:
                    entry = session.get(LocalEntry, (self.namespace, key))
                    if entry:
                        entry.value = payload
                    else:
                        session.add(LocalEntry(namespace=self.namespace, key=key, value=payload))
                    session.commit()
            except SQLAlchemyError as e:
                logger.error(f"Failed to write local entry {key}: {e}")
                raise LocalStorageError(f"Failed to write {key}: {e}") from e

    def get(self, key: str, default: Any = None) -> Any:
        """
        Load the value stored under ``key``.

        Returns:
            The stored value, or ``default`` when absent

        Raises:
            LocalStorageError: If the entry cannot be read or decoded
        """
        try:
            with self.get_session() as session:
                stmt = select(LocalEntry.value).where(
                    LocalEntry.namespace == self.namespace,
                    LocalEntry.key == key
                )
                payload = session.execute(stmt).scalar_one_or_none()
        except SQLAlchemyError as e:
            logger.error(f"Failed to read local entry {key}: {e}")
            raise LocalStorageError(f"Failed to read {key}: {e}") from e

        if payload is None:
            return default

        try:
            return json.loads(payload)
        except ValueError as e:
            raise LocalStorageError(f"Entry {key} is corrupt: {e}") from e

    def delete(self, key: str) -> bool:
        """
        Delete the entry under ``key``.

        Returns:
            True if an entry was deleted, False if none existed
        """
        with self._write_lock:
            try:
                with self.get_session() as session:
                    result = session.execute(
                        delete(LocalEntry).where(
                            LocalEntry.namespace == self.namespace,
                            LocalEntry.key == key
                        )
                    )
                    session.commit()
                    return result.rowcount > 0
            except SQLAlchemyError as e:
                logger.error(f"Failed to delete local entry {key}: {e}")
                raise LocalStorageError(f"Failed to delete {key}: {e}") from e

    def clear(self) -> int:
        """
        Delete every entry in this store's namespace.

        Returns:
            Number of entries deleted
        """
        with self._write_lock:
            try:
                with self.get_session() as session:
                    result = session.execute(
                        delete(LocalEntry).where(LocalEntry.namespace == self.namespace)
                    )
                    session.commit()
            except SQLAlchemyError as e:
                logger.error(f"Failed to clear local store: {e}")
                raise LocalStorageError(f"Failed to clear namespace {self.namespace}: {e}") from e

        logger.info(f"Cleared {result.rowcount} local entries from namespace {self.namespace}")
        return result.rowcount
