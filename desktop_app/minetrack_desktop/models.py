from __future__ import annotations

import datetime as dt

from sqlalchemy import JSON, Column, DateTime, Integer, String, Text
from sqlalchemy.orm import declarative_base

Base = declarative_base()


def utcnow() -> dt.datetime:
    return dt.datetime.now(dt.timezone.utc)


class StoredValue(Base):
    """A JSON document stored under a stable key (token, user, caches, checkpoint)."""

    __tablename__ = "stored_values"

    key = Column(String(100), primary_key=True)
    value = Column(Text, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False)


class PendingAction(Base):
    """An operation start/stop recorded while offline, replayed in id order."""

    __tablename__ = "pending_actions"

    id = Column(Integer, primary_key=True, autoincrement=True)
    kind = Column(String(10), nullable=False)  # start | stop
    local_id = Column(String(64), nullable=True, index=True)
    payload = Column(JSON, nullable=False, default=dict)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)


class IdMapping(Base):
    __tablename__ = "id_mappings"

    local_id = Column(String(64), primary_key=True)
    server_id = Column(String(64), nullable=False)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
