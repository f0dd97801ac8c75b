"""Reconciles locally queued operation actions with the server of record."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from threading import Lock
from typing import Any, Dict, List, Optional, Set

from pydantic import ValidationError as SchemaValidationError

from .action_queue import LocalActionQueue, QueuedAction
from .api_client import ApiClient, ApiError, ServerError, ServerRejectedError, TransientNetworkError
from .errors import ConflictError
from .lifecycle import ActiveStateLoaded, transition
from .reference_cache import ReferenceDataCache
from .schemas import ActiveOperationState, Equipment, Operation, OperationStartRequest
from .state import AppState
from .utils import generate_local_id

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class SyncFailure:
    action_id: int
    kind: str
    operation_id: Optional[str]
    message: str


@dataclass(slots=True)
class SyncReport:
    synced: List[int] = field(default_factory=list)
    dropped: List[int] = field(default_factory=list)
    errors: List[SyncFailure] = field(default_factory=list)
    remaining: int = 0
    halted_by: Optional[str] = None

    @property
    def ok(self) -> bool:
        return not self.errors and self.halted_by is None and self.remaining == 0


class OperationSynchronizer:
    """Bridge between local intent and the remote operation service.

    The queue is drained strictly in append order, one action at a time. A
    transient failure (timeout, connection loss, 5xx) halts the pass and
    keeps the action for the next trigger; a 4xx drops the action so that a
    single bad record can never block the queue.
    """

    def __init__(self, api_client: ApiClient, queue: LocalActionQueue, state: AppState,
                 reference_cache: Optional[ReferenceDataCache] = None) -> None:
        self.api_client = api_client
        self.queue = queue
        self.state = state
        self.reference_cache = reference_cache
        self._drain_lock = Lock()

    # ------------------------------------------------------------------
    def save_operation_locally(self, kind: str, payload: Dict[str, Any]) -> Optional[str]:
        """Queue an action; start actions get a local placeholder id which is returned."""
        if kind == "start":
            local_id = generate_local_id()
            self.queue.append("start", payload, local_id=local_id)
            logger.info("Queued offline start %s", local_id)
            return local_id
        if kind == "stop":
            if not payload.get("operationId"):
                raise ValueError("A queued stop needs an operationId")
            self.queue.append("stop", payload)
            logger.info("Queued offline stop for %s", payload["operationId"])
            return None
        raise ValueError(f"Unknown action kind: {kind}")

    # ------------------------------------------------------------------
    def sync_to_server(self) -> SyncReport:
        if not self._drain_lock.acquire(blocking=False):
            return SyncReport(remaining=len(self.queue), halted_by="A sync pass is already running")
        try:
            report = self._drain()
        finally:
            self._drain_lock.release()
        report.remaining = len(self.queue)
        if report.synced or report.dropped or report.halted_by:
            logger.info(
                "Sync pass: %d synced, %d dropped, %d remaining%s",
                len(report.synced),
                len(report.dropped),
                report.remaining,
                f" (halted: {report.halted_by})" if report.halted_by else "",
            )
        return report

    def _drain(self) -> SyncReport:
        report = SyncReport()
        dropped_starts: Set[str] = set()
        for action in self.queue.drain_in_order():
            try:
                if action.kind == "start":
                    self._replay_start(action)
                else:
                    self._replay_stop(action, dropped_starts)
            except (TransientNetworkError, ServerError) as exc:
                report.halted_by = str(exc)
                break
            except (ServerRejectedError, SchemaValidationError, ValueError) as exc:
                self._drop(action, str(exc), report)
                if action.kind == "start" and action.local_id:
                    dropped_starts.add(action.local_id)
                continue
            self.queue.acknowledge(action.id)
            report.synced.append(action.id)
        return report

    def _replay_start(self, action: QueuedAction) -> None:
        request = OperationStartRequest.model_validate(action.payload)
        operation = self.api_client.start_operation(request)
        if not operation.id:
            raise ValueError("The server did not assign an id to the synced operation")
        if action.local_id:
            self.queue.record_mapping(action.local_id, operation.id)
            self._rebind_active(action.local_id, operation)

    def _replay_stop(self, action: QueuedAction, dropped_starts: Set[str]) -> None:
        operation_id = action.operation_id
        server_id = self.queue.resolve(operation_id)
        if server_id is None:
            if operation_id in dropped_starts:
                raise ValueError(f"The start of {operation_id} was rejected by the server")
            raise ValueError(f"Operation {operation_id} was never synced")
        self.api_client.stop_operation(server_id, action.payload.get("distance"))

    def _drop(self, action: QueuedAction, message: str, report: SyncReport) -> None:
        logger.error("Dropping queued %s %s: %s", action.kind, action.operation_id, message)
        self.queue.acknowledge(action.id)
        report.dropped.append(action.id)
        report.errors.append(SyncFailure(action.id, action.kind, action.operation_id, message))

    def _rebind_active(self, local_id: str, operation: Operation) -> None:
        tracker = self.state.tracker
        active = tracker.active
        if active is None or active.operation_id != local_id:
            return
        self.state.apply(replace(tracker, active=active.model_copy(update={"operation": operation})))

    # ------------------------------------------------------------------
    def sync_active_operations(self) -> None:
        """Adopt the server's current operation; leave local state alone on failure."""
        try:
            operation = self.api_client.get_current_operation()
        except ApiError as exc:
            logger.warning("Could not fetch the current operation, keeping local state: %s", exc)
            return

        active = self._to_active_state(operation) if operation else None
        try:
            result = transition(self.state.tracker, ActiveStateLoaded(active))
        except ConflictError as exc:
            logger.info("Skipping server state while a request is in flight: %s", exc)
            return
        self.state.apply(result.state)

    def resume(self) -> SyncReport:
        """Flush pending actions, then pull the authoritative current operation."""
        report = self.sync_to_server()
        if report.remaining:
            logger.info("Queue not empty after flush; keeping local active state until it drains")
            return report
        self.sync_active_operations()
        return report

    def _to_active_state(self, operation: Operation) -> ActiveOperationState:
        current = self.state.active
        repeat_count = 1
        if current is not None and current.operation_id == operation.id:
            repeat_count = current.repeat_count
        return ActiveOperationState(
            equipment=self._resolve_equipment(operation),
            operation=operation,
            started_at=operation.start_time,
            repeat_count=repeat_count,
        )

    def _resolve_equipment(self, operation: Operation) -> Equipment:
        if isinstance(operation.equipment, Equipment):
            return operation.equipment
        current = self.state.active
        if current is not None and current.equipment.id == operation.equipment_id:
            return current.equipment
        if self.reference_cache is not None:
            cached = self.reference_cache.find_equipment(operation.equipment_id)
            if cached is not None:
                return cached
        return Equipment(id=operation.equipment_id, name="Equipment", category="loading")


__all__ = ["OperationSynchronizer", "SyncFailure", "SyncReport"]
