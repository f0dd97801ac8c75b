"""Durable FIFO log of operation actions recorded while offline."""

from __future__ import annotations

import datetime as dt
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from sqlalchemy import delete, func, select
from sqlalchemy.orm import sessionmaker

from .database import db_session
from .models import IdMapping, PendingAction
from .utils import is_local_id

ACTION_KINDS = ("start", "stop")


@dataclass(frozen=True, slots=True)
class QueuedAction:
    """Snapshot of a pending action; replay order is ``id`` order."""

    id: int
    kind: str
    payload: Dict[str, Any] = field(default_factory=dict)
    local_id: Optional[str] = None
    created_at: Optional[dt.datetime] = None

    @property
    def operation_id(self) -> Optional[str]:
        """Operation a queued stop refers to (local or server id)."""
        if self.kind == "stop":
            return self.payload.get("operationId")
        return self.local_id


def _snapshot(record: PendingAction) -> QueuedAction:
    return QueuedAction(
        id=record.id,
        kind=record.kind,
        payload=dict(record.payload or {}),
        local_id=record.local_id,
        created_at=record.created_at,
    )


class LocalActionQueue:
    """Append-only queue of start/stop actions plus the local id to server id table.

    Nothing is removed until :meth:`acknowledge` is called, so a crash in the
    middle of a drain replays the unacknowledged actions on the next pass.
    Appends never wait for a drain: the drain works on a snapshot.
    """

    def __init__(self, session_factory: sessionmaker) -> None:
        self._session_factory = session_factory

    def append(self, kind: str, payload: Dict[str, Any], *, local_id: Optional[str] = None) -> int:
        if kind not in ACTION_KINDS:
            raise ValueError(f"Unknown action kind: {kind}")
        with db_session(self._session_factory) as session:
            record = PendingAction(kind=kind, payload=dict(payload), local_id=local_id)
            session.add(record)
            session.flush()
            return record.id

    def drain_in_order(self) -> List[QueuedAction]:
        with db_session(self._session_factory) as session:
            records = session.scalars(select(PendingAction).order_by(PendingAction.id)).all()
            return [_snapshot(record) for record in records]

    def peek_all(self) -> List[QueuedAction]:
        return self.drain_in_order()

    def acknowledge(self, action_id: int) -> None:
        with db_session(self._session_factory) as session:
            session.execute(delete(PendingAction).where(PendingAction.id == action_id))

    def has_pending_start(self, local_id: str) -> bool:
        with db_session(self._session_factory) as session:
            count = session.scalar(
                select(func.count(PendingAction.id)).where(
                    PendingAction.kind == "start", PendingAction.local_id == local_id
                )
            )
            return bool(count)

    def __len__(self) -> int:
        with db_session(self._session_factory) as session:
            return int(session.scalar(select(func.count(PendingAction.id))) or 0)

    # ------------------------------------------------------------------
    # Id mapping
    # ------------------------------------------------------------------
    def record_mapping(self, local_id: str, server_id: str) -> None:
        with db_session(self._session_factory) as session:
            mapping = session.get(IdMapping, local_id)
            if mapping:
                mapping.server_id = server_id
            else:
                session.add(IdMapping(local_id=local_id, server_id=server_id))

    def resolve(self, operation_id: Optional[str]) -> Optional[str]:
        """Return the server id for ``operation_id``; ``None`` while a local id is unresolved."""
        if not operation_id:
            return None
        if not is_local_id(operation_id):
            return operation_id
        with db_session(self._session_factory) as session:
            mapping = session.get(IdMapping, operation_id)
            return mapping.server_id if mapping else None

    def mappings(self) -> Dict[str, str]:
        with db_session(self._session_factory) as session:
            return {row.local_id: row.server_id for row in session.scalars(select(IdMapping)).all()}

    def clear(self) -> None:
        with db_session(self._session_factory) as session:
            session.execute(delete(PendingAction))
            session.execute(delete(IdMapping))


__all__ = ["ACTION_KINDS", "LocalActionQueue", "QueuedAction"]
