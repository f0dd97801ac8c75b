"""Executes the effects produced by :mod:`lifecycle` against the network and the queue."""

from __future__ import annotations

import datetime as dt
import logging
from contextlib import contextmanager
from threading import Lock
from typing import Iterator, Optional, Sequence

from .api_client import ApiClient, TransientNetworkError
from .connectivity import ConnectivityOracle
from .errors import ConflictError
from .lifecycle import (
    ActiveStateLoaded,
    CallRemoteStart,
    CallRemoteStop,
    Effect,
    Event,
    FlushQueue,
    QueueStart,
    QueueStop,
    RepeatIncremented,
    RepeatRequested,
    StartAborted,
    StartConfirmed,
    StartRequested,
    StopAborted,
    StopConfirmed,
    StopRequested,
    Transition,
    transition,
)
from .reference_cache import ReferenceDataCache
from .schemas import (
    Activity,
    ActiveOperationState,
    Equipment,
    Operation,
    OperationDetails,
    OperationStartRequest,
)
from .state import AppState
from .synchronizer import OperationSynchronizer
from .utils import Clock, utcnow

logger = logging.getLogger(__name__)


class OperationTracker:
    """Start, stop and repeat operations for the single active slot.

    Connectivity is probed fresh before every mutating action. Online, the
    queue is flushed before the remote call so that earlier offline actions
    keep their order. A request that times out or cannot connect is queued
    instead; a request the server rejects surfaces to the caller and the
    slot reverts.
    """

    def __init__(self, state: AppState, api_client: ApiClient, synchronizer: OperationSynchronizer,
                 connectivity: ConnectivityOracle, reference_cache: Optional[ReferenceDataCache] = None,
                 clock: Clock = utcnow) -> None:
        self.state = state
        self.api_client = api_client
        self.synchronizer = synchronizer
        self.connectivity = connectivity
        self.reference_cache = reference_cache
        self.clock = clock
        self._request_lock = Lock()

    # ------------------------------------------------------------------
    # Read-only views (safe from the 1 Hz tick)
    # ------------------------------------------------------------------
    @property
    def active(self) -> Optional[ActiveOperationState]:
        return self.state.active

    @property
    def session_total_seconds(self) -> int:
        return self.state.tracker.session_total_seconds

    def elapsed_seconds(self, now: Optional[dt.datetime] = None) -> int:
        active = self.state.active
        if active is None:
            return 0
        return active.elapsed_seconds(now or self.clock())

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------
    def start(self, equipment: Equipment, activity: Activity,
              details: Optional[OperationDetails] = None) -> ActiveOperationState:
        request = OperationStartRequest.build(equipment.id, activity.id, details)
        with self._exclusive():
            self._preflight(StartRequested(equipment, activity, request, online=False))
            online = self.connectivity.is_online()
            result = self._dispatch(StartRequested(equipment, activity, request, online=online))
            return self._run_start(result.effects)

    def stop(self, distance: Optional[float] = None, operation_id: Optional[str] = None) -> Operation:
        with self._exclusive():
            self._preflight(StopRequested(online=False, requested_at=self.clock(), distance=distance,
                                          operation_id=operation_id))
            online = self.connectivity.is_online()
            result = self._dispatch(StopRequested(online=online, requested_at=self.clock(), distance=distance,
                                                  operation_id=operation_id))
            return self._run_stop(result.effects)

    def repeat_with_same_parameters(self, reference: Operation) -> ActiveOperationState:
        """Count another occurrence of the active operation, or start it when nothing is active."""
        with self._exclusive():
            active = self.state.active
            if active is not None and active.matches(reference.parameters):
                self._dispatch(RepeatRequested(reference, online=False))
                logger.info("Repeat count of %s is now %d", active.operation_id, self.state.active.repeat_count)
                return self.state.active

            equipment = self._lookup_equipment(reference)
            activity = self._lookup_activity(reference)
            self._preflight(RepeatRequested(reference, online=False, equipment=equipment, activity=activity))
            online = self.connectivity.is_online()
            result = self._dispatch(RepeatRequested(reference, online=online, equipment=equipment, activity=activity))
            return self._run_start(result.effects)

    def increment_repeat_count(self, operation_id: Optional[str]) -> None:
        self._dispatch(RepeatIncremented(operation_id))

    def restore(self) -> Optional[ActiveOperationState]:
        """Reload the checkpointed active operation after a restart."""
        checkpoint = self.state.load_checkpoint()
        if checkpoint is not None:
            self._dispatch(ActiveStateLoaded(checkpoint))
        return checkpoint

    # ------------------------------------------------------------------
    # Effect execution
    # ------------------------------------------------------------------
    def _run_start(self, effects: Sequence[Effect]) -> ActiveOperationState:
        operation: Optional[Operation] = None
        backlog = 0
        try:
            for effect in effects:
                if isinstance(effect, FlushQueue):
                    backlog = self.synchronizer.sync_to_server().remaining
                elif isinstance(effect, CallRemoteStart) and backlog:
                    logger.info("%d queued actions still pending; queuing the start behind them", backlog)
                    operation = self._queue_start(effect.request)
                elif isinstance(effect, CallRemoteStart):
                    operation = self._remote_start(effect.request)
                elif isinstance(effect, QueueStart):
                    operation = self._queue_start(effect.request)
            if operation is None:
                raise RuntimeError("Start effects did not produce an operation")
        except Exception as exc:
            self._dispatch(StartAborted(str(exc)))
            raise
        self._dispatch(StartConfirmed(operation, started_at=self.clock()))
        return self.state.active

    def _remote_start(self, request: OperationStartRequest) -> Operation:
        try:
            return self.api_client.start_operation(request)
        except TransientNetworkError as exc:
            logger.warning("Start request failed (%s); queuing it for the next sync", exc)
            return self._queue_start(request)

    def _queue_start(self, request: OperationStartRequest) -> Operation:
        now = self.clock()
        payload = request.to_wire()
        payload["localStartTime"] = now.isoformat()
        local_id = self.synchronizer.save_operation_locally("start", payload)
        return Operation.model_validate({**request.to_wire(), "_id": local_id, "startTime": now, "isLocal": True})

    def _run_stop(self, effects: Sequence[Effect]) -> Operation:
        stopping = self.state.active
        stopped: Optional[Operation] = None
        backlog = 0
        try:
            for effect in effects:
                if isinstance(effect, FlushQueue):
                    backlog = self.synchronizer.sync_to_server().remaining
                elif isinstance(effect, CallRemoteStop):
                    stopped = self._remote_stop(effect, backlog)
                elif isinstance(effect, QueueStop):
                    self._queue_stop(effect.operation_id, effect.distance, effect.ended_at)
        except Exception as exc:
            self._dispatch(StopAborted(str(exc)))
            raise
        ended_at = self.clock()
        current = self.state.active or stopping
        self._dispatch(StopConfirmed(ended_at))
        if stopped is not None and stopped.end_time is not None:
            return stopped
        return current.operation.model_copy(update={"end_time": ended_at})

    def _remote_stop(self, effect: CallRemoteStop, backlog: int = 0) -> Optional[Operation]:
        server_id = self.synchronizer.queue.resolve(effect.operation_id)
        if server_id is None:
            if self.synchronizer.queue.has_pending_start(effect.operation_id):
                self._queue_stop(effect.operation_id, effect.distance, self.clock())
            else:
                logger.info("Operation %s never reached the server; removing it locally", effect.operation_id)
            return None
        if backlog:
            logger.info("%d queued actions still pending; queuing the stop behind them", backlog)
            self._queue_stop(server_id, effect.distance, self.clock())
            return None
        try:
            return self.api_client.stop_operation(server_id, effect.distance)
        except TransientNetworkError as exc:
            logger.warning("Stop request failed (%s); queuing it for the next sync", exc)
            self._queue_stop(server_id, effect.distance, self.clock())
            return None

    def _queue_stop(self, operation_id: str, distance: Optional[float], ended_at: dt.datetime) -> None:
        payload = {"operationId": operation_id, "localEndTime": ended_at.isoformat()}
        if distance is not None:
            payload["distance"] = distance
        self.synchronizer.save_operation_locally("stop", payload)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------
    def _dispatch(self, event: Event) -> Transition:
        result = transition(self.state.tracker, event)
        self.state.apply(result.state)
        return result

    def _preflight(self, event: Event) -> None:
        """Evaluate a transition without applying it so that rejections happen before any I/O."""
        transition(self.state.tracker, event)

    @contextmanager
    def _exclusive(self) -> Iterator[None]:
        if not self._request_lock.acquire(blocking=False):
            raise ConflictError("Another start or stop request is still in progress")
        try:
            yield
        finally:
            self._request_lock.release()

    def _lookup_equipment(self, reference: Operation) -> Optional[Equipment]:
        if isinstance(reference.equipment, Equipment):
            return reference.equipment
        if self.reference_cache is None:
            return None
        return self.reference_cache.find_equipment(reference.equipment_id)

    def _lookup_activity(self, reference: Operation) -> Optional[Activity]:
        if isinstance(reference.activity, Activity):
            return reference.activity
        if self.reference_cache is None:
            return None
        return self.reference_cache.find_activity(reference.activity_id)


__all__ = ["OperationTracker"]
