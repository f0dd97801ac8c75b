"""Stopped operations: listing, grouping for the repeat shortcuts, detail edits."""

from __future__ import annotations

import datetime as dt
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import Iterable, List, Optional

from .api_client import ApiClient
from .errors import ValidationError
from .schemas import ActiveOperationState, Operation
from .utils import is_local_id


@dataclass(slots=True)
class DayGroup:
    day: dt.date
    groups: List[List[Operation]] = field(default_factory=list)


def stopped_operations(operations: Iterable[Operation]) -> List[Operation]:
    """Only stopped operations, most recently ended first."""
    stopped = [operation for operation in operations if operation.end_time is not None]
    stopped.sort(key=lambda operation: operation.end_time, reverse=True)
    return stopped


def group_stopped_operations(operations: Iterable[Operation],
                             active: Optional[ActiveOperationState] = None,
                             tz: Optional[dt.tzinfo] = None) -> List[DayGroup]:
    """Group by end date (newest first), then by (equipment, activity, material).

    Groups whose parameters match the active operation are left out: repeating
    them would only bump the active repeat count.
    """
    by_day: "OrderedDict[dt.date, OrderedDict[tuple, List[Operation]]]" = OrderedDict()
    for operation in stopped_operations(operations):
        equipment_id, activity_id, _ = operation.parameters
        if not equipment_id or not activity_id:
            continue
        day = operation.end_time.astimezone(tz).date()
        groups = by_day.setdefault(day, OrderedDict())
        groups.setdefault(operation.parameters, []).append(operation)

    result: List[DayGroup] = []
    for day in sorted(by_day, reverse=True):
        kept = [ops for key, ops in by_day[day].items() if active is None or not active.matches(key)]
        if kept:
            result.append(DayGroup(day=day, groups=kept))
    return result


def repetition_count(operations: Iterable[Operation], operation: Operation) -> int:
    """Number of stopped operations sharing the (equipment, activity, material) triple."""
    return sum(
        1 for candidate in operations
        if candidate.end_time is not None and candidate.parameters == operation.parameters
    )


def active_repetition_total(operations: Iterable[Operation], active: Optional[ActiveOperationState]) -> int:
    """Stopped repetitions plus the local repeat count of the active slot."""
    if active is None:
        return 0
    return repetition_count(operations, active.operation) + active.repeat_count


class OperationHistory:
    def __init__(self, api_client: ApiClient) -> None:
        self.api_client = api_client

    def fetch_stopped(self) -> List[Operation]:
        return stopped_operations(self.api_client.list_operations())

    def update_details(self, operation: Operation, activity_details: str) -> Operation:
        if not operation.id or is_local_id(operation.id):
            raise ValidationError("This operation has not been synced yet and cannot be edited")
        if not operation.is_stopped:
            raise ValidationError("Only stopped operations can be edited")
        updated = self.api_client.update_operation_details(operation.id, activity_details)
        return updated or operation.model_copy(update={"activity_details": activity_details})


__all__ = [
    "DayGroup",
    "OperationHistory",
    "active_repetition_total",
    "group_stopped_operations",
    "repetition_count",
    "stopped_operations",
]
