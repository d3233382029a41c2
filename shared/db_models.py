"""SQLAlchemy database models for the local durable store."""

from sqlalchemy import Column, String, Text, DateTime
from sqlalchemy.orm import declarative_base
from sqlalchemy.sql import func


Base = declarative_base()


class LocalEntry(Base):
    """Model for local_entries table.

    One row per (namespace, key). ``value`` holds a JSON document.
    """
    __tablename__ = 'local_entries'

    namespace = Column(String(255), primary_key=True)
    key = Column(String(255), primary_key=True)
    value = Column(Text, nullable=False)
    updated_at = Column(DateTime, nullable=False, server_default=func.now(), onupdate=func.now())
