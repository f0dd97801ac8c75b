from __future__ import annotations

import datetime as dt
from typing import Any, Dict, List, Optional, Tuple, Union

from typing_extensions import Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator


def _ensure_utc(value: dt.datetime) -> dt.datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=dt.timezone.utc)
    return value.astimezone(dt.timezone.utc)


class WireModel(BaseModel):
    """Base for models exchanged with the backend (camelCase aliases, extra keys ignored)."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    def to_wire(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class User(WireModel):
    id: str = Field(alias="_id")
    name: str
    email: str
    role: Optional[Literal["operator", "administrator"]] = None


class Equipment(WireModel):
    id: str = Field(alias="_id")
    name: str = ""
    category: Literal["loading", "transport"]
    capacity: Optional[float] = None
    status: Literal["active", "inactive", "maintenance"] = "active"


class ActivityDetails(WireModel):
    stopped_reason: List[str] = Field(default_factory=list)
    waiting_reason: List[str] = Field(default_factory=list)
    custom_reason: List[str] = Field(default_factory=list)


class Activity(WireModel):
    id: str = Field(alias="_id")
    name: str
    activity_type: Literal["loading", "transport", "general"] = Field(default="general", alias="activityType")
    activity_details: Optional[ActivityDetails] = Field(default=None, alias="activityDetails")

    @property
    def requires_material(self) -> bool:
        return self.activity_type == "loading"

    def is_valid_for(self, equipment: Equipment) -> bool:
        return self.activity_type == "general" or self.activity_type == equipment.category

    def detail_reasons(self) -> List[str]:
        if self.activity_details is None:
            return []
        details = self.activity_details
        return [*details.stopped_reason, *details.waiting_reason, *details.custom_reason]


class CustomField(WireModel):
    name: str
    value: Any = None


class MaterialProperties(WireModel):
    density: Optional[float] = None
    volume: Optional[float] = None
    grade_percentage: Optional[float] = Field(default=None, alias="gradePercentage")
    moisture_content: Optional[float] = Field(default=None, alias="moistureContent")
    custom_fields: List[CustomField] = Field(default_factory=list, alias="customFields")


class Material(WireModel):
    id: str = Field(alias="_id")
    name: str
    type: Literal["ore", "mineral", "waste", "processed", "other"] = "other"
    properties: Optional[MaterialProperties] = None


def reference_id(value: Union[str, WireModel, None]) -> Optional[str]:
    """Return the id of a reference that is either an id string or an embedded record."""
    if value is None:
        return None
    if isinstance(value, str):
        return value
    return getattr(value, "id", None)


class Operation(WireModel):
    id: Optional[str] = Field(default=None, alias="_id")
    equipment: Union[Equipment, str]
    operator: Optional[Union[User, str]] = None
    activity: Union[Activity, str]
    material: Optional[Union[Material, str]] = None
    truck_being_loaded: Optional[Union[Equipment, str]] = Field(default=None, alias="truckBeingLoaded")
    mining_front: Optional[str] = Field(default=None, alias="miningFront")
    destination: Optional[str] = None
    distance: Optional[float] = None
    activity_details: Optional[str] = Field(default=None, alias="activityDetails")
    start_time: dt.datetime = Field(alias="startTime")
    end_time: Optional[dt.datetime] = Field(default=None, alias="endTime")
    is_local: bool = Field(default=False, alias="isLocal")

    @field_validator("start_time", "end_time")
    @classmethod
    def _normalize_time(cls, value: Optional[dt.datetime]) -> Optional[dt.datetime]:
        return _ensure_utc(value) if value is not None else None

    @property
    def equipment_id(self) -> Optional[str]:
        return reference_id(self.equipment)

    @property
    def activity_id(self) -> Optional[str]:
        return reference_id(self.activity)

    @property
    def material_id(self) -> Optional[str]:
        return reference_id(self.material)

    @property
    def truck_id(self) -> Optional[str]:
        return reference_id(self.truck_being_loaded)

    @property
    def is_stopped(self) -> bool:
        return self.end_time is not None

    @property
    def parameters(self) -> Tuple[Optional[str], Optional[str], Optional[str]]:
        return (self.equipment_id, self.activity_id, self.material_id)


class OperationDetails(WireModel):
    """Optional fields captured by the start form."""

    material: Optional[str] = None
    truck_being_loaded: Optional[str] = Field(default=None, alias="truckBeingLoaded")
    mining_front: Optional[str] = Field(default=None, alias="miningFront")
    destination: Optional[str] = None
    activity_details: Optional[str] = Field(default=None, alias="activityDetails")

    @field_validator("material", "truck_being_loaded", "mining_front", "destination", "activity_details")
    @classmethod
    def _blank_to_none(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return None
        value = value.strip()
        return value or None


class OperationStartRequest(WireModel):
    equipment: str
    activity: str
    material: Optional[str] = None
    truck_being_loaded: Optional[str] = Field(default=None, alias="truckBeingLoaded")
    mining_front: Optional[str] = Field(default=None, alias="miningFront")
    destination: Optional[str] = None
    activity_details: Optional[str] = Field(default=None, alias="activityDetails")

    @classmethod
    def build(cls, equipment_id: str, activity_id: str,
              details: Optional[OperationDetails] = None) -> "OperationStartRequest":
        details = details or OperationDetails()
        return cls(
            equipment=equipment_id,
            activity=activity_id,
            material=details.material,
            truck_being_loaded=details.truck_being_loaded,
            mining_front=details.mining_front,
            destination=details.destination,
            activity_details=details.activity_details,
        )

    @classmethod
    def from_operation(cls, operation: Operation) -> "OperationStartRequest":
        return cls(
            equipment=operation.equipment_id,
            activity=operation.activity_id,
            material=operation.material_id,
            truck_being_loaded=operation.truck_id,
            mining_front=operation.mining_front,
            destination=operation.destination,
            activity_details=operation.activity_details,
        )

    @property
    def parameters(self) -> Tuple[str, str, Optional[str]]:
        return (self.equipment, self.activity, self.material)


class OperationStopRequest(WireModel):
    distance: Optional[float] = None


class ActiveOperationState(BaseModel):
    """The single active operation of a session."""

    model_config = ConfigDict(frozen=True)

    equipment: Equipment
    operation: Operation
    started_at: dt.datetime
    repeat_count: int = Field(default=1, ge=1)

    @field_validator("started_at")
    @classmethod
    def _normalize_started_at(cls, value: dt.datetime) -> dt.datetime:
        return _ensure_utc(value)

    @property
    def operation_id(self) -> Optional[str]:
        return self.operation.id

    def matches(self, parameters: Tuple[Optional[str], Optional[str], Optional[str]]) -> bool:
        return self.operation.parameters == tuple(parameters)

    def elapsed_seconds(self, now: dt.datetime) -> int:
        return max(0, int((_ensure_utc(now) - self.started_at).total_seconds()))


__all__ = [
    "Activity",
    "ActivityDetails",
    "ActiveOperationState",
    "Equipment",
    "Material",
    "MaterialProperties",
    "Operation",
    "OperationDetails",
    "OperationStartRequest",
    "OperationStopRequest",
    "User",
    "reference_id",
]
