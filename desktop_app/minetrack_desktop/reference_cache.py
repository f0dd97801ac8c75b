from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import List, Optional, Sequence, Type, TypeVar

from pydantic import ValidationError as SchemaValidationError

from .api_client import ApiClient, ApiError
from .schemas import Activity, Equipment, Material, WireModel
from .storage import CACHED_ACTIVITIES_KEY, CACHED_EQUIPMENT_KEY, CACHED_MATERIALS_KEY, LocalStore

logger = logging.getLogger(__name__)

ModelT = TypeVar("ModelT", bound=WireModel)


@dataclass(slots=True)
class ReferenceData:
    activities: List[Activity] = field(default_factory=list)
    materials: List[Material] = field(default_factory=list)
    equipment: List[Equipment] = field(default_factory=list)
    from_cache: bool = False


class ReferenceDataCache:
    """Read-through cache for the lookup lists needed by the start form.

    The server stays the source of truth; the cache is only a fallback so
    that operations can be started while offline.
    """

    def __init__(self, api_client: ApiClient, store: LocalStore) -> None:
        self.api_client = api_client
        self.store = store

    # ------------------------------------------------------------------
    def get_cached_activities(self) -> List[Activity]:
        return self._read(CACHED_ACTIVITIES_KEY, Activity)

    def get_cached_materials(self) -> List[Material]:
        return self._read(CACHED_MATERIALS_KEY, Material)

    def get_cached_equipment(self) -> List[Equipment]:
        return self._read(CACHED_EQUIPMENT_KEY, Equipment)

    def get_cached(self) -> ReferenceData:
        return ReferenceData(
            activities=self.get_cached_activities(),
            materials=self.get_cached_materials(),
            equipment=self.get_cached_equipment(),
            from_cache=True,
        )

    def refresh_from_server(self) -> ReferenceData:
        """Fetch all lookup lists and write them through to the cache."""
        activities = self.api_client.list_activities()
        materials = self.api_client.list_materials()
        equipment = self.api_client.list_equipment()
        self._write(CACHED_ACTIVITIES_KEY, activities)
        self._write(CACHED_MATERIALS_KEY, materials)
        self._write(CACHED_EQUIPMENT_KEY, equipment)
        return ReferenceData(activities=activities, materials=materials, equipment=equipment)

    def load(self, online: bool) -> ReferenceData:
        if not online:
            return self.get_cached()
        try:
            return self.refresh_from_server()
        except ApiError as exc:
            logger.warning("Falling back to cached reference data: %s", exc)
            return self.get_cached()

    # ------------------------------------------------------------------
    def find_equipment(self, equipment_id: Optional[str]) -> Optional[Equipment]:
        return _find(self.get_cached_equipment(), equipment_id)

    def find_activity(self, activity_id: Optional[str]) -> Optional[Activity]:
        return _find(self.get_cached_activities(), activity_id)

    def find_material(self, material_id: Optional[str]) -> Optional[Material]:
        return _find(self.get_cached_materials(), material_id)

    def activities_for(self, equipment: Equipment) -> List[Activity]:
        return [activity for activity in self.get_cached_activities() if activity.is_valid_for(equipment)]

    def transport_equipment(self) -> List[Equipment]:
        return [item for item in self.get_cached_equipment() if item.category == "transport"]

    # ------------------------------------------------------------------
    def _read(self, key: str, model: Type[ModelT]) -> List[ModelT]:
        items: List[ModelT] = []
        for raw in self.store.get(key, []) or []:
            try:
                items.append(model.model_validate(raw))
            except SchemaValidationError:
                logger.warning("Skipping malformed cached entry under %s", key)
        return items

    def _write(self, key: str, items: Sequence[WireModel]) -> None:
        self.store.set(key, [item.to_wire() for item in items])


def _find(items: Sequence[ModelT], item_id: Optional[str]) -> Optional[ModelT]:
    if not item_id:
        return None
    return next((item for item in items if item.id == item_id), None)


__all__ = ["ReferenceData", "ReferenceDataCache"]
