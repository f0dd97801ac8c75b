from __future__ import annotations

import logging
from threading import RLock
from typing import Any, Dict, Optional

from pydantic import ValidationError as SchemaValidationError

from .lifecycle import TrackerState
from .schemas import ActiveOperationState, User
from .storage import ACTIVE_OPERATION_KEY, AUTH_TOKEN_KEY, USER_KEY, LocalStore

logger = logging.getLogger(__name__)


class AppState:
    """Session state shared by the tracker and the synchronizer.

    Mutation only happens through the methods below; the active slot is
    checkpointed to the local store every time it changes.
    """

    def __init__(self, store: LocalStore) -> None:
        self._lock = RLock()
        self.store = store
        self.token: Optional[str] = None
        self.user: Optional[User] = None
        self._tracker = TrackerState()

    # ------------------------------------------------------------------
    # Tracker slot
    # ------------------------------------------------------------------
    @property
    def tracker(self) -> TrackerState:
        with self._lock:
            return self._tracker

    @property
    def active(self) -> Optional[ActiveOperationState]:
        return self.tracker.active

    def apply(self, next_state: TrackerState) -> TrackerState:
        with self._lock:
            previous = self._tracker
            self._tracker = next_state
            if previous.active != next_state.active:
                self._checkpoint(next_state.active)
            return previous

    def _checkpoint(self, active: Optional[ActiveOperationState]) -> None:
        if active is None:
            self.store.remove(ACTIVE_OPERATION_KEY)
        else:
            self.store.set(ACTIVE_OPERATION_KEY, active.model_dump(mode="json", by_alias=True))

    def load_checkpoint(self) -> Optional[ActiveOperationState]:
        raw = self.store.get(ACTIVE_OPERATION_KEY)
        if not raw:
            return None
        try:
            return ActiveOperationState.model_validate(raw)
        except SchemaValidationError:
            logger.warning("Discarding unreadable active operation checkpoint")
            self.store.remove(ACTIVE_OPERATION_KEY)
            return None

    # ------------------------------------------------------------------
    # Authentication
    # ------------------------------------------------------------------
    @property
    def is_authenticated(self) -> bool:
        with self._lock:
            return bool(self.token and self.user)

    def set_auth(self, token: str, user: User) -> None:
        self.store.set(AUTH_TOKEN_KEY, token)
        self.store.set(USER_KEY, user.to_wire())
        with self._lock:
            self.token = token
            self.user = user

    def check_auth(self) -> bool:
        """Restore token and user from storage; return whether a session exists."""
        token = self.store.get_str(AUTH_TOKEN_KEY)
        raw_user = self.store.get(USER_KEY)
        user: Optional[User] = None
        if token and raw_user:
            try:
                user = User.model_validate(raw_user)
            except SchemaValidationError:
                logger.warning("Stored user record is unreadable; signing out")
        with self._lock:
            self.token = token if user else None
            self.user = user
        return user is not None

    def logout(self) -> None:
        self.store.remove(AUTH_TOKEN_KEY, USER_KEY, ACTIVE_OPERATION_KEY)
        with self._lock:
            self.token = None
            self.user = None
            self._tracker = TrackerState()

    def snapshot(self) -> Dict[str, Any]:
        with self._lock:
            active = self._tracker.active
            return {
                "authenticated": bool(self.token and self.user),
                "user": self.user.name if self.user else None,
                "phase": self._tracker.phase.value,
                "active_operation_id": active.operation_id if active else None,
                "repeat_count": active.repeat_count if active else 0,
                "session_total_seconds": self._tracker.session_total_seconds,
            }


__all__ = ["AppState"]
