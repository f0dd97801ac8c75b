"""Pure state machine for the single active operation slot.

``transition(state, event)`` returns the next state and the effects an outer
driver has to execute (network calls, queue writes). Nothing in this module
performs I/O, so every transition can be tested without a server or a clock.

Phases::

    IDLE -> STARTING -> ACTIVE -> STOPPING -> IDLE
"""

from __future__ import annotations

import datetime as dt
from dataclasses import dataclass, replace
from enum import Enum
from typing import NamedTuple, Optional, Tuple, Union

from .errors import ConflictError, OperationNotActiveError, ValidationError
from .schemas import Activity, ActiveOperationState, Equipment, Operation, OperationStartRequest


class Phase(str, Enum):
    IDLE = "idle"
    STARTING = "starting"
    ACTIVE = "active"
    STOPPING = "stopping"


@dataclass(frozen=True, slots=True)
class PendingStart:
    equipment: Equipment
    request: OperationStartRequest


@dataclass(frozen=True, slots=True)
class TrackerState:
    phase: Phase = Phase.IDLE
    active: Optional[ActiveOperationState] = None
    pending: Optional[PendingStart] = None
    session_total_seconds: int = 0

    @property
    def is_busy(self) -> bool:
        return self.phase in (Phase.STARTING, Phase.STOPPING)


# ----------------------------------------------------------------------
# Events
# ----------------------------------------------------------------------
@dataclass(frozen=True, slots=True)
class StartRequested:
    equipment: Equipment
    activity: Activity
    request: OperationStartRequest
    online: bool


@dataclass(frozen=True, slots=True)
class StartConfirmed:
    operation: Operation
    started_at: dt.datetime


@dataclass(frozen=True, slots=True)
class StartAborted:
    reason: str = ""


@dataclass(frozen=True, slots=True)
class StopRequested:
    online: bool
    requested_at: dt.datetime
    distance: Optional[float] = None
    operation_id: Optional[str] = None


@dataclass(frozen=True, slots=True)
class StopConfirmed:
    ended_at: dt.datetime


@dataclass(frozen=True, slots=True)
class StopAborted:
    reason: str = ""


@dataclass(frozen=True, slots=True)
class RepeatRequested:
    reference: Operation
    online: bool
    equipment: Optional[Equipment] = None
    activity: Optional[Activity] = None


@dataclass(frozen=True, slots=True)
class RepeatIncremented:
    operation_id: Optional[str]


@dataclass(frozen=True, slots=True)
class ActiveStateLoaded:
    """Replace the slot wholesale (server state on resume, or a restored checkpoint)."""

    active: Optional[ActiveOperationState]


Event = Union[
    StartRequested,
    StartConfirmed,
    StartAborted,
    StopRequested,
    StopConfirmed,
    StopAborted,
    RepeatRequested,
    RepeatIncremented,
    ActiveStateLoaded,
]


# ----------------------------------------------------------------------
# Effects
# ----------------------------------------------------------------------
@dataclass(frozen=True, slots=True)
class FlushQueue:
    pass


@dataclass(frozen=True, slots=True)
class CallRemoteStart:
    request: OperationStartRequest


@dataclass(frozen=True, slots=True)
class QueueStart:
    request: OperationStartRequest


@dataclass(frozen=True, slots=True)
class CallRemoteStop:
    operation_id: str
    distance: Optional[float] = None


@dataclass(frozen=True, slots=True)
class QueueStop:
    operation_id: str
    ended_at: dt.datetime
    distance: Optional[float] = None


Effect = Union[FlushQueue, CallRemoteStart, QueueStart, CallRemoteStop, QueueStop]


class Transition(NamedTuple):
    state: TrackerState
    effects: Tuple[Effect, ...] = ()


# ----------------------------------------------------------------------
def validate_start(equipment: Equipment, activity: Activity, request: OperationStartRequest) -> None:
    if request.equipment != equipment.id:
        raise ValidationError("The request does not refer to the selected equipment")
    if request.activity != activity.id:
        raise ValidationError("The request does not refer to the selected activity")
    if not activity.is_valid_for(equipment):
        raise ValidationError(
            f"Activity '{activity.name}' cannot be performed by {equipment.category} equipment"
        )
    if activity.requires_material and not request.material:
        raise ValidationError(f"Activity '{activity.name}' requires a material")


def _reject_if_busy(state: TrackerState) -> None:
    if state.is_busy:
        raise ConflictError("Another start or stop request is still in progress")


def _start(state: TrackerState, event: StartRequested) -> Transition:
    _reject_if_busy(state)
    if state.active is not None:
        if state.active.equipment.id != event.equipment.id:
            raise ConflictError(
                f"An operation is active on {state.active.equipment.name or state.active.equipment.id}; "
                "stop it before switching equipment"
            )
        raise ConflictError("An operation is already active; stop it first")
    validate_start(event.equipment, event.activity, event.request)

    next_state = replace(
        state,
        phase=Phase.STARTING,
        pending=PendingStart(equipment=event.equipment, request=event.request),
    )
    if event.online:
        return Transition(next_state, (FlushQueue(), CallRemoteStart(event.request)))
    return Transition(next_state, (QueueStart(event.request),))


def _confirm_start(state: TrackerState, event: StartConfirmed) -> Transition:
    if state.phase is not Phase.STARTING or state.pending is None:
        raise ConflictError("No start request is in progress")
    active = ActiveOperationState(
        equipment=state.pending.equipment,
        operation=event.operation,
        started_at=event.started_at,
        repeat_count=1,
    )
    return Transition(replace(state, phase=Phase.ACTIVE, active=active, pending=None))


def _stop(state: TrackerState, event: StopRequested) -> Transition:
    _reject_if_busy(state)
    active = state.active
    if state.phase is not Phase.ACTIVE or active is None:
        raise OperationNotActiveError("There is no active operation to stop")
    if event.operation_id is not None and event.operation_id != active.operation_id:
        raise OperationNotActiveError(f"Operation {event.operation_id} is not active")
    if active.operation.is_stopped or not active.operation_id:
        raise OperationNotActiveError("The active operation has already been stopped")

    next_state = replace(state, phase=Phase.STOPPING)
    if event.online:
        return Transition(next_state, (FlushQueue(), CallRemoteStop(active.operation_id, event.distance)))
    return Transition(
        next_state,
        (QueueStop(active.operation_id, ended_at=event.requested_at, distance=event.distance),),
    )


def _confirm_stop(state: TrackerState, event: StopConfirmed) -> Transition:
    if state.phase is not Phase.STOPPING or state.active is None:
        raise ConflictError("No stop request is in progress")
    elapsed = state.active.elapsed_seconds(event.ended_at)
    return Transition(
        replace(
            state,
            phase=Phase.IDLE,
            active=None,
            session_total_seconds=state.session_total_seconds + elapsed,
        )
    )


def _increment(state: TrackerState) -> TrackerState:
    active = state.active.model_copy(update={"repeat_count": state.active.repeat_count + 1})
    return replace(state, active=active)


def _repeat(state: TrackerState, event: RepeatRequested) -> Transition:
    _reject_if_busy(state)
    if state.active is not None:
        if state.active.matches(event.reference.parameters):
            return Transition(_increment(state))
        raise ConflictError("A different operation is active; stop it before repeating another one")
    if event.equipment is None:
        raise ValidationError(f"Unknown equipment {event.reference.equipment_id}")
    if event.activity is None:
        raise ValidationError(f"Unknown activity {event.reference.activity_id}")
    request = OperationStartRequest.from_operation(event.reference)
    return _start(state, StartRequested(event.equipment, event.activity, request, event.online))


def transition(state: TrackerState, event: Event) -> Transition:
    if isinstance(event, StartRequested):
        return _start(state, event)
    if isinstance(event, StartConfirmed):
        return _confirm_start(state, event)
    if isinstance(event, StartAborted):
        if state.phase is not Phase.STARTING:
            return Transition(state)
        return Transition(replace(state, phase=Phase.IDLE, pending=None, active=None))
    if isinstance(event, StopRequested):
        return _stop(state, event)
    if isinstance(event, StopConfirmed):
        return _confirm_stop(state, event)
    if isinstance(event, StopAborted):
        if state.phase is not Phase.STOPPING:
            return Transition(state)
        return Transition(replace(state, phase=Phase.ACTIVE))
    if isinstance(event, RepeatRequested):
        return _repeat(state, event)
    if isinstance(event, RepeatIncremented):
        if state.active is None or state.active.operation_id != event.operation_id:
            return Transition(state)
        return Transition(_increment(state))
    if isinstance(event, ActiveStateLoaded):
        _reject_if_busy(state)
        phase = Phase.ACTIVE if event.active is not None else Phase.IDLE
        return Transition(replace(state, phase=phase, active=event.active, pending=None))
    raise TypeError(f"Unsupported event: {event!r}")


__all__ = [
    "ActiveStateLoaded",
    "CallRemoteStart",
    "CallRemoteStop",
    "Effect",
    "Event",
    "FlushQueue",
    "Phase",
    "QueueStart",
    "QueueStop",
    "RepeatIncremented",
    "RepeatRequested",
    "StartAborted",
    "StartConfirmed",
    "StartRequested",
    "StopAborted",
    "StopConfirmed",
    "StopRequested",
    "TrackerState",
    "Transition",
    "transition",
    "validate_start",
]
