from __future__ import annotations

import json
import logging
from typing import Any, Optional

from sqlalchemy.orm import sessionmaker

from .database import db_session
from .models import StoredValue

logger = logging.getLogger(__name__)

AUTH_TOKEN_KEY = "authToken"
USER_KEY = "user"
CACHED_ACTIVITIES_KEY = "cachedActivities"
CACHED_MATERIALS_KEY = "cachedMaterials"
CACHED_EQUIPMENT_KEY = "cachedEquipment"
ACTIVE_OPERATION_KEY = "activeOperation"


class LocalStore:
    """Key/value storage for JSON documents that must survive a restart."""

    def __init__(self, session_factory: sessionmaker) -> None:
        self._session_factory = session_factory

    def get(self, key: str, default: Any = None) -> Any:
        with db_session(self._session_factory) as session:
            record = session.get(StoredValue, key)
            raw = record.value if record else None
        if raw is None:
            return default
        try:
            return json.loads(raw)
        except json.JSONDecodeError:
            logger.warning("Discarding unreadable stored value for %s", key)
            return default

    def set(self, key: str, value: Any) -> None:
        encoded = json.dumps(value)
        with db_session(self._session_factory) as session:
            record = session.get(StoredValue, key)
            if record:
                record.value = encoded
            else:
                session.add(StoredValue(key=key, value=encoded))

    def remove(self, *keys: str) -> None:
        with db_session(self._session_factory) as session:
            for key in keys:
                record = session.get(StoredValue, key)
                if record:
                    session.delete(record)

    def get_str(self, key: str) -> Optional[str]:
        value = self.get(key)
        return value if isinstance(value, str) else None


__all__ = [
    "ACTIVE_OPERATION_KEY",
    "AUTH_TOKEN_KEY",
    "CACHED_ACTIVITIES_KEY",
    "CACHED_EQUIPMENT_KEY",
    "CACHED_MATERIALS_KEY",
    "LocalStore",
    "USER_KEY",
]
