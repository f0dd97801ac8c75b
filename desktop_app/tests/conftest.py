from __future__ import annotations

import datetime as dt
from pathlib import Path
from typing import Generator, List, Optional

import pytest
from sqlalchemy.orm import sessionmaker

from minetrack_desktop.action_queue import LocalActionQueue
from minetrack_desktop.api_client import ServerRejectedError
from minetrack_desktop.database import create_session_factory, create_storage_engine
from minetrack_desktop.reference_cache import ReferenceDataCache
from minetrack_desktop.schemas import Activity, Equipment, Material, Operation, OperationStartRequest, User
from minetrack_desktop.state import AppState
from minetrack_desktop.storage import LocalStore
from minetrack_desktop.synchronizer import OperationSynchronizer
from minetrack_desktop.tracker import OperationTracker

START = dt.datetime(2024, 3, 4, 12, 0, tzinfo=dt.timezone.utc)


class FakeClock:
    def __init__(self, start: dt.datetime = START):
        self.now = start

    def __call__(self) -> dt.datetime:
        return self.now

    def advance(self, seconds: int) -> None:
        self.now = self.now + dt.timedelta(seconds=seconds)


class FakeConnectivity:
    def __init__(self, online: bool = True):
        self.online = online
        self.probes = 0

    def is_online(self) -> bool:
        self.probes += 1
        return self.online


class FakeOperationService:
    """In-memory stand-in for the remote operation service."""

    def __init__(self, clock: FakeClock):
        self.clock = clock
        self.token: Optional[str] = None
        self.calls: List[tuple] = []
        self.operations: dict[str, Operation] = {}
        self.failures: List[Exception] = []
        self.equipment: List[Equipment] = []
        self.activities: List[Activity] = []
        self.materials: List[Material] = []
        self._next_id = 1

    def fail_with(self, *errors: Exception) -> None:
        self.failures.extend(errors)

    def _maybe_fail(self) -> None:
        if self.failures:
            raise self.failures.pop(0)

    def call_names(self) -> List[str]:
        return [call[0] for call in self.calls]

    def start_operation(self, request: OperationStartRequest) -> Operation:
        self.calls.append(("start", request.parameters))
        self._maybe_fail()
        operation = Operation(
            id=f"srv-{self._next_id}",
            equipment=request.equipment,
            activity=request.activity,
            material=request.material,
            truck_being_loaded=request.truck_being_loaded,
            operator="op-1",
            start_time=self.clock(),
        )
        self._next_id += 1
        self.operations[operation.id] = operation
        return operation

    def stop_operation(self, operation_id: str, distance: Optional[float] = None) -> Operation:
        self.calls.append(("stop", operation_id))
        self._maybe_fail()
        operation = self.operations.get(operation_id)
        if operation is None or operation.is_stopped:
            raise ServerRejectedError(f"Operation {operation_id} not found or already stopped")
        stopped = operation.model_copy(update={"end_time": self.clock(), "distance": distance})
        self.operations[operation_id] = stopped
        return stopped

    def get_current_operation(self) -> Optional[Operation]:
        self.calls.append(("current",))
        self._maybe_fail()
        return next((op for op in self.operations.values() if not op.is_stopped), None)

    def list_operations(self) -> List[Operation]:
        self.calls.append(("list",))
        self._maybe_fail()
        return list(self.operations.values())

    def update_operation_details(self, operation_id: str, activity_details: str) -> Operation:
        self.calls.append(("update", operation_id))
        self._maybe_fail()
        updated = self.operations[operation_id].model_copy(update={"activity_details": activity_details})
        self.operations[operation_id] = updated
        return updated

    def list_equipment(self) -> List[Equipment]:
        self.calls.append(("equipment",))
        self._maybe_fail()
        return list(self.equipment)

    def list_activities(self) -> List[Activity]:
        self.calls.append(("activities",))
        self._maybe_fail()
        return list(self.activities)

    def list_materials(self) -> List[Material]:
        self.calls.append(("materials",))
        self._maybe_fail()
        return list(self.materials)

    def login(self, email: str, password: str) -> tuple[str, User]:
        self.calls.append(("login", email))
        self._maybe_fail()
        return "token-123", User(id="op-1", name="Operator", email=email, role="operator")


@pytest.fixture()
def excavator() -> Equipment:
    return Equipment(id="E1", name="Excavadora 1", category="loading", capacity=12)


@pytest.fixture()
def second_excavator() -> Equipment:
    return Equipment(id="E2", name="Excavadora 2", category="loading")


@pytest.fixture()
def truck() -> Equipment:
    return Equipment(id="T1", name="Camion 1", category="transport", capacity=40)


@pytest.fixture()
def carga() -> Activity:
    return Activity(id="A-carga", name="Carga", activity_type="loading")


@pytest.fixture()
def espera() -> Activity:
    return Activity(
        id="A-espera",
        name="Espera",
        activity_type="general",
        activity_details={"stopped_reason": [], "waiting_reason": ["Sin camion"], "custom_reason": []},
    )


@pytest.fixture()
def transporte() -> Activity:
    return Activity(id="A-transporte", name="Transporte", activity_type="transport")


@pytest.fixture()
def mineral() -> Material:
    return Material(id="M1", name="Mineral", type="ore")


@pytest.fixture()
def db_path(tmp_path: Path) -> Path:
    return tmp_path / "minetrack.db"


@pytest.fixture()
def session_factory(db_path: Path) -> Generator[sessionmaker, None, None]:
    engine = create_storage_engine(db_path)
    yield create_session_factory(engine)
    engine.dispose()


@pytest.fixture()
def store(session_factory: sessionmaker) -> LocalStore:
    return LocalStore(session_factory)


@pytest.fixture()
def queue(session_factory: sessionmaker) -> LocalActionQueue:
    return LocalActionQueue(session_factory)


@pytest.fixture()
def app_state(store: LocalStore) -> AppState:
    return AppState(store)


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def connectivity() -> FakeConnectivity:
    return FakeConnectivity(online=True)


@pytest.fixture()
def api(clock: FakeClock, excavator, second_excavator, truck, carga, espera, transporte, mineral) -> FakeOperationService:
    service = FakeOperationService(clock)
    service.equipment = [excavator, second_excavator, truck]
    service.activities = [carga, espera, transporte]
    service.materials = [mineral]
    return service


@pytest.fixture()
def reference_cache(api: FakeOperationService, store: LocalStore) -> ReferenceDataCache:
    cache = ReferenceDataCache(api, store)
    cache.refresh_from_server()
    api.calls.clear()
    return cache


@pytest.fixture()
def synchronizer(api, queue, app_state, reference_cache) -> OperationSynchronizer:
    return OperationSynchronizer(api, queue, app_state, reference_cache)


@pytest.fixture()
def tracker(app_state, api, synchronizer, connectivity, reference_cache, clock) -> OperationTracker:
    return OperationTracker(app_state, api, synchronizer, connectivity, reference_cache=reference_cache, clock=clock)
