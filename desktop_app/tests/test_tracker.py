import itertools

import pytest

from minetrack_desktop.api_client import RequestTimeoutError, ServerError, ServerRejectedError
from minetrack_desktop.errors import ConflictError, OperationNotActiveError, ValidationError
from minetrack_desktop.lifecycle import Phase
from minetrack_desktop.schemas import Operation, OperationDetails
from minetrack_desktop.utils import is_local_id


def test_start_and_stop_online(tracker, api, app_state, excavator, carga, mineral, clock):
    active = tracker.start(excavator, carga, OperationDetails(material=mineral.id))

    operation = api.operations[active.operation_id]
    assert operation.equipment_id == "E1"
    assert operation.activity_id == "A-carga"
    assert operation.material_id == "M1"
    assert operation.end_time is None
    assert active.repeat_count == 1
    assert app_state.tracker.phase is Phase.ACTIVE

    clock.advance(90)
    stopped = tracker.stop()

    assert stopped.id == active.operation_id
    assert stopped.end_time is not None
    assert api.operations[active.operation_id].end_time is not None
    assert tracker.active is None
    assert tracker.session_total_seconds == 90


def test_never_more_than_one_active_operation(tracker, api, excavator, second_excavator, carga, espera, mineral,
                                              app_state):
    actions = [
        lambda: tracker.start(excavator, carga, OperationDetails(material=mineral.id)),
        lambda: tracker.start(second_excavator, espera),
        lambda: tracker.stop(),
    ]
    for step, action in enumerate(itertools.islice(itertools.cycle(actions), 12)):
        try:
            action()
        except (ConflictError, OperationNotActiveError):
            pass
        open_records = [op for op in api.operations.values() if not op.is_stopped]
        assert len(open_records) <= 1
        if step % 3 == 2:
            assert app_state.active is None
            assert open_records == []
        else:
            active = app_state.active
            assert app_state.tracker.phase is Phase.ACTIVE
            assert active.equipment.id == "E1"
            assert [op.id for op in open_records] == [active.operation_id]


def test_stop_succeeds_only_once(tracker, excavator, carga, mineral):
    active = tracker.start(excavator, carga, OperationDetails(material=mineral.id))

    tracker.stop(operation_id=active.operation_id)

    with pytest.raises(OperationNotActiveError):
        tracker.stop(operation_id=active.operation_id)


def test_switching_equipment_is_a_conflict(tracker, api, excavator, second_excavator, carga, espera, mineral):
    tracker.start(excavator, carga, OperationDetails(material=mineral.id))

    with pytest.raises(ConflictError, match="switching equipment"):
        tracker.start(second_excavator, espera)

    assert api.call_names() == ["start"]
    assert tracker.active.equipment.id == "E1"


def test_validation_happens_before_any_io(tracker, api, connectivity, excavator, carga):
    with pytest.raises(ValidationError, match="requires a material"):
        tracker.start(excavator, carga)

    assert connectivity.probes == 0
    assert api.calls == []
    assert tracker.active is None


def test_offline_start_syncs_into_exactly_one_record(tracker, api, connectivity, synchronizer, queue,
                                                    excavator, carga, mineral):
    connectivity.online = False
    active = tracker.start(excavator, carga, OperationDetails(material=mineral.id, mining_front="Norte"))

    assert is_local_id(active.operation_id)
    assert active.operation.is_local
    assert api.calls == []
    assert len(queue) == 1

    connectivity.online = True
    synchronizer.resume()
    synchronizer.resume()

    assert list(api.operations) == ["srv-1"]
    record = api.operations["srv-1"]
    assert record.parameters == ("E1", "A-carga", "M1")
    assert tracker.active.operation_id == "srv-1"


def test_offline_start_then_offline_stop_replays_in_order(tracker, api, connectivity, synchronizer,
                                                         excavator, carga, mineral):
    connectivity.online = False
    active = tracker.start(excavator, carga, OperationDetails(material=mineral.id))
    tracker.stop(distance=3)

    assert tracker.active is None
    connectivity.online = True
    report = synchronizer.sync_to_server()

    assert report.ok
    assert api.calls == [("start", ("E1", "A-carga", "M1")), ("stop", "srv-1")]
    assert synchronizer.queue.resolve(active.operation_id) == "srv-1"
    assert api.operations["srv-1"].distance == 3


def test_online_stop_of_local_operation_flushes_first(tracker, api, connectivity, excavator, carga, mineral):
    connectivity.online = False
    tracker.start(excavator, carga, OperationDetails(material=mineral.id))
    connectivity.online = True

    stopped = tracker.stop()

    assert api.calls == [("start", ("E1", "A-carga", "M1")), ("stop", "srv-1")]
    assert stopped.id == "srv-1"
    assert stopped.is_stopped


def test_online_stop_of_local_operation_while_start_is_stuck(tracker, api, connectivity, queue,
                                                            excavator, carga, mineral):
    connectivity.online = False
    active = tracker.start(excavator, carga, OperationDetails(material=mineral.id))
    connectivity.online = True
    api.fail_with(RequestTimeoutError("Request timeout - server is not responding"))

    tracker.stop()

    assert tracker.active is None
    assert [action.kind for action in queue.peek_all()] == ["start", "stop"]
    assert queue.peek_all()[1].operation_id == active.operation_id


def test_online_start_waits_behind_a_stuck_queue(tracker, api, connectivity, synchronizer, queue,
                                                excavator, second_excavator, carga, mineral):
    connectivity.online = False
    tracker.start(excavator, carga, OperationDetails(material=mineral.id))
    tracker.stop()
    connectivity.online = True
    api.fail_with(ServerError("HTTP error! status: 502"))

    active = tracker.start(second_excavator, carga, OperationDetails(material=mineral.id))

    assert is_local_id(active.operation_id)
    assert [action.kind for action in queue.peek_all()] == ["start", "stop", "start"]
    assert api.operations == {}

    assert synchronizer.sync_to_server().ok
    assert api.calls == [
        ("start", ("E1", "A-carga", "M1")),
        ("start", ("E1", "A-carga", "M1")),
        ("stop", "srv-1"),
        ("start", ("E2", "A-carga", "M1")),
    ]
    assert [op.id for op in api.operations.values() if not op.is_stopped] == ["srv-2"]
    assert tracker.active.operation_id == "srv-2"


def test_online_stop_waits_behind_a_stuck_queue(tracker, api, synchronizer, queue, excavator, carga, mineral):
    active = tracker.start(excavator, carga, OperationDetails(material=mineral.id))
    synchronizer.save_operation_locally("stop", {"operationId": "srv-old"})
    api.calls.clear()
    api.fail_with(RequestTimeoutError("Request timeout - server is not responding"))

    tracker.stop(distance=2.0)

    assert tracker.active is None
    assert api.calls == [("stop", "srv-old")]
    assert [action.operation_id for action in queue.peek_all()] == ["srv-old", active.operation_id]

    synchronizer.sync_to_server()

    assert api.calls[1:] == [("stop", "srv-old"), ("stop", active.operation_id)]
    assert api.operations[active.operation_id].distance == 2.0


def test_repeat_of_active_operation_makes_no_network_call(tracker, api, connectivity, excavator, carga, mineral):
    active = tracker.start(excavator, carga, OperationDetails(material=mineral.id))
    api.calls.clear()
    probes = connectivity.probes
    reference = Operation(id="srv-old", equipment="E1", activity="A-carga", material="M1",
                          start_time=active.operation.start_time, end_time=active.operation.start_time)

    repeated = tracker.repeat_with_same_parameters(reference)

    assert repeated.repeat_count == 2
    assert repeated.operation_id == active.operation_id
    assert api.calls == []
    assert connectivity.probes == probes


def test_repeat_when_idle_starts_from_reference(tracker, api, excavator, carga):
    reference = Operation(id="srv-old", equipment="E1", activity="A-carga", material="M1", destination="Botadero",
                          start_time="2024-03-01T10:00:00Z", end_time="2024-03-01T10:20:00Z")

    active = tracker.repeat_with_same_parameters(reference)

    assert api.calls == [("start", ("E1", "A-carga", "M1"))]
    assert active.operation.parameters == ("E1", "A-carga", "M1")
    assert active.repeat_count == 1


def test_repeat_with_unknown_equipment_is_rejected(tracker, api):
    reference = Operation(equipment="E-unknown", activity="A-carga", start_time="2024-03-01T10:00:00Z")

    with pytest.raises(ValidationError):
        tracker.repeat_with_same_parameters(reference)
    assert api.calls == []


def test_increment_repeat_count(tracker, excavator, carga, mineral):
    active = tracker.start(excavator, carga, OperationDetails(material=mineral.id))

    tracker.increment_repeat_count("someone-else")
    tracker.increment_repeat_count(active.operation_id)

    assert tracker.active.repeat_count == 2


def test_timeout_on_start_queues_the_action(tracker, api, queue, excavator, carga, mineral):
    api.fail_with(RequestTimeoutError("Request timeout - server is not responding"))

    active = tracker.start(excavator, carga, OperationDetails(material=mineral.id))

    assert is_local_id(active.operation_id)
    assert len(queue) == 1
    assert api.operations == {}


@pytest.mark.parametrize("error", [ServerRejectedError("Equipment is in maintenance"), ServerError("Bad gateway")])
def test_server_answer_on_start_is_not_queued(tracker, api, queue, app_state, excavator, carga, mineral, error):
    api.fail_with(error)

    with pytest.raises(type(error)):
        tracker.start(excavator, carga, OperationDetails(material=mineral.id))

    assert len(queue) == 0
    assert app_state.active is None
    assert app_state.tracker.phase is Phase.IDLE


def test_rejected_stop_keeps_operation_active(tracker, api, app_state, excavator, carga, mineral):
    active = tracker.start(excavator, carga, OperationDetails(material=mineral.id))
    api.fail_with(ServerRejectedError("Operation already stopped"))

    with pytest.raises(ServerRejectedError):
        tracker.stop()

    assert app_state.tracker.phase is Phase.ACTIVE
    assert tracker.active.operation_id == active.operation_id


def test_timeout_on_stop_queues_the_stop(tracker, api, queue, excavator, carga, mineral):
    active = tracker.start(excavator, carga, OperationDetails(material=mineral.id))
    api.fail_with(RequestTimeoutError("Request timeout - server is not responding"))

    tracker.stop(distance=1.0)

    (action,) = queue.peek_all()
    assert action.kind == "stop"
    assert action.operation_id == active.operation_id
    assert action.payload["distance"] == 1.0
    assert tracker.active is None


def test_concurrent_request_is_rejected(tracker, excavator, carga, mineral):
    def reentrant_probe():
        with pytest.raises(ConflictError, match="in progress"):
            tracker.stop()
        return True

    tracker.connectivity.is_online = reentrant_probe

    tracker.start(excavator, carga, OperationDetails(material=mineral.id))


def test_active_operation_is_checkpointed_and_restored(tracker, app_state, store, excavator, carga, mineral):
    active = tracker.start(excavator, carga, OperationDetails(material=mineral.id))
    tracker.increment_repeat_count(active.operation_id)

    from minetrack_desktop.state import AppState
    from minetrack_desktop.tracker import OperationTracker

    fresh_state = AppState(store)
    fresh = OperationTracker(fresh_state, tracker.api_client, tracker.synchronizer, tracker.connectivity)
    restored = fresh.restore()

    assert restored.operation_id == active.operation_id
    assert restored.repeat_count == 2
    assert fresh_state.tracker.phase is Phase.ACTIVE

    tracker.stop()
    assert AppState(store).load_checkpoint() is None
