from __future__ import annotations

import logging
from typing import Optional

from sqlalchemy.engine import Engine

from .action_queue import LocalActionQueue
from .api_client import ApiClient
from .config import AppConfig, load_config
from .connectivity import ConnectivityOracle
from .database import create_session_factory, create_storage_engine
from .history import OperationHistory
from .reference_cache import ReferenceData, ReferenceDataCache
from .schemas import User
from .state import AppState
from .storage import LocalStore
from .synchronizer import OperationSynchronizer, SyncReport
from .tracker import OperationTracker

logger = logging.getLogger(__name__)


class TrackerSession:
    """Wires storage, API client, synchronizer and tracker for one user session."""

    def __init__(self, config: AppConfig, *, engine: Optional[Engine] = None,
                 api_client: Optional[ApiClient] = None,
                 connectivity: Optional[ConnectivityOracle] = None) -> None:
        self.config = config
        session_factory = create_session_factory(engine or create_storage_engine(config.storage_path))
        self.store = LocalStore(session_factory)
        self.queue = LocalActionQueue(session_factory)
        self.api_client = api_client or ApiClient(config.api_base_url, timeout=config.request_timeout)
        self.connectivity = connectivity or ConnectivityOracle(config.api_base_url, timeout=config.probe_timeout)
        self.state = AppState(self.store)
        self.reference_cache = ReferenceDataCache(self.api_client, self.store)
        self.synchronizer = OperationSynchronizer(self.api_client, self.queue, self.state, self.reference_cache)
        self.tracker = OperationTracker(
            self.state,
            self.api_client,
            self.synchronizer,
            self.connectivity,
            reference_cache=self.reference_cache,
        )
        self.history = OperationHistory(self.api_client)
        self.reference_data = ReferenceData(from_cache=True)

    @classmethod
    def from_config(cls, config: Optional[AppConfig] = None) -> "TrackerSession":
        return cls(config or load_config())

    # ------------------------------------------------------------------
    def restore(self) -> bool:
        """Reload token, user and the active operation checkpoint from storage."""
        authenticated = self.state.check_auth()
        self.api_client.token = self.state.token
        if authenticated:
            self.tracker.restore()
        return authenticated

    def login(self, email: str, password: str) -> User:
        token, user = self.api_client.login(email, password)
        self._authenticate(token, user)
        return user

    def register(self, name: str, email: str, password: str) -> User:
        token, user = self.api_client.register(name, email, password)
        self._authenticate(token, user)
        return user

    def _authenticate(self, token: str, user: User) -> None:
        self.state.set_auth(token, user)
        self.api_client.token = token
        logger.info("Signed in as %s", user.email)
        self.resume()

    def logout(self) -> None:
        self.state.logout()
        self.api_client.token = None

    def resume(self) -> Optional[SyncReport]:
        """Login/foreground hook: refresh lookup data, flush the queue, adopt server state."""
        if not self.state.is_authenticated:
            return None
        online = self.connectivity.is_online()
        self.reference_data = self.reference_cache.load(online)
        if not online:
            logger.info("Offline; %d queued actions wait for the next sync", len(self.queue))
            return None
        return self.synchronizer.resume()


__all__ = ["TrackerSession"]
