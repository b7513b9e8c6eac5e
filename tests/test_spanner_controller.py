# tests/test_spanner_controller.py
import json
import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from datetime import timedelta
from unittest.mock import MagicMock

import pytest

from decision.rebalance_guard import RebalanceGuard
from decision.scaling_policy import NoChange, SetNodes
from gcp.spanner_controller import ApplyError, ScalingOutcome, SpannerController
from history.models import PersistenceError, generate_instance_key
from history.sqlite_store import SQLiteHistoryStore

PROJECT_ID = "test-project-id"
INSTANCE_ID = "test-instance-id"
KEY = generate_instance_key(PROJECT_ID, INSTANCE_ID)


def test_no_change_never_reaches_spanner(controller, instance_admin, store):
    result = controller.scale_instance(NoChange(PROJECT_ID, INSTANCE_ID))

    assert result.outcome == ScalingOutcome.NO_CHANGE
    assert instance_admin.get_calls == []
    assert store.latest_scaling_event(KEY) is None


def test_set_nodes_scales_and_records_event(controller, instance_admin, store, clock):
    result = controller.scale_instance(SetNodes(PROJECT_ID, INSTANCE_ID, 5))

    assert result.applied
    assert (result.nodes_before, result.nodes_after) == (3, 5)
    assert instance_admin.set_calls == [(PROJECT_ID, INSTANCE_ID, 5)]

    event = store.latest_scaling_event(KEY)
    assert (event.nodes_before, event.nodes_after) == (3, 5)
    assert event.event_timestamp == clock()
    assert json.loads(event.action)["nodes"] == 5
    assert store.scaling_events(KEY) == [event]
    assert store.exists_instance(KEY)


def test_already_at_target_is_a_no_op(controller, instance_admin, store):
    result = controller.scale_instance(SetNodes(PROJECT_ID, INSTANCE_ID, 3))

    assert result.outcome == ScalingOutcome.NO_CHANGE
    assert instance_admin.set_calls == []
    assert store.latest_scaling_event(KEY) is None


def test_recent_event_denies_scale_up(controller, instance_admin, store, clock):
    controller.scale_instance(SetNodes(PROJECT_ID, INSTANCE_ID, 5))
    clock.advance(minutes=2)

    result = controller.scale_instance(SetNodes(PROJECT_ID, INSTANCE_ID, 7))

    assert result.outcome == ScalingOutcome.DENIED
    assert instance_admin.nodes[(PROJECT_ID, INSTANCE_ID)] == 5
    assert len(store.scaling_events(KEY)) == 1


def test_scale_up_allowed_after_window(controller, instance_admin, store, clock):
    controller.scale_instance(SetNodes(PROJECT_ID, INSTANCE_ID, 5))
    clock.advance(minutes=5, seconds=1)

    result = controller.scale_instance(SetNodes(PROJECT_ID, INSTANCE_ID, 7))

    assert result.applied
    assert store.latest_scaling_event(KEY).nodes_after == 7


def test_read_failure_raises_apply_error(controller, instance_admin, store):
    instance_admin.fail_get = RuntimeError("permission denied")

    with pytest.raises(ApplyError):
        controller.scale_instance(SetNodes(PROJECT_ID, INSTANCE_ID, 5))

    assert instance_admin.set_calls == []
    assert store.latest_scaling_event(KEY) is None


def test_update_failure_writes_no_history(controller, instance_admin, store):
    instance_admin.fail_set = TimeoutError("operation did not complete")

    with pytest.raises(ApplyError):
        controller.scale_instance(SetNodes(PROJECT_ID, INSTANCE_ID, 5))

    assert store.latest_scaling_event(KEY) is None


def test_persistence_failure_after_update_is_critical(instance_admin, guard, clock, caplog):
    store = MagicMock()
    store.latest_scaling_event.return_value = None
    store.save_scaling_event.side_effect = PersistenceError("disk full")
    controller = SpannerController(instance_admin, store, guard, clock=clock)
    # The guard reads from the same store
    guard.store = store

    with caplog.at_level(logging.CRITICAL):
        with pytest.raises(PersistenceError):
            controller.scale_instance(SetNodes(PROJECT_ID, INSTANCE_ID, 5))

    assert instance_admin.nodes[(PROJECT_ID, INSTANCE_ID)] == 5
    assert any("STATE DIVERGENCE" in r.message for r in caplog.records if r.levelno == logging.CRITICAL)


def test_dry_run_does_not_touch_spanner(instance_admin, store, guard, clock):
    controller = SpannerController(instance_admin, store, guard, dry_run=True, clock=clock)

    result = controller.scale_instance(SetNodes(PROJECT_ID, INSTANCE_ID, 5))

    assert result.outcome == ScalingOutcome.DRY_RUN
    assert instance_admin.set_calls == []
    assert store.latest_scaling_event(KEY) is None


@pytest.mark.parametrize("windows", [timedelta(0), timedelta(minutes=5)])
def test_concurrent_applies_record_exactly_one_event(instance_admin, store, clock, windows):
    instance_admin.delay = 0.2
    guard = RebalanceGuard(store, windows, windows, clock=clock)
    controller = SpannerController(instance_admin, store, guard, clock=clock)
    action = SetNodes(PROJECT_ID, INSTANCE_ID, 5)

    with ThreadPoolExecutor(max_workers=2) as pool:
        results = list(pool.map(lambda _: controller.scale_instance(action), range(2)))

    assert sorted(r.outcome.value for r in results)[0] == "applied"
    assert sum(r.applied for r in results) == 1
    assert len(store.scaling_events(KEY)) == 1
    assert len(instance_admin.set_calls) == 1


def test_different_instances_scale_in_parallel(instance_admin, store, guard, clock):
    other = "other-instance-id"
    instance_admin.nodes[(PROJECT_ID, other)] = 1
    barrier = threading.Barrier(2, timeout=5)
    original_set = instance_admin.set_node_count

    def set_node_count(project_id, instance_id, nodes):
        # Both updates must be in flight at the same time to pass the barrier
        barrier.wait()
        return original_set(project_id, instance_id, nodes)

    instance_admin.set_node_count = set_node_count
    controller = SpannerController(instance_admin, store, guard, clock=clock)

    with ThreadPoolExecutor(max_workers=2) as pool:
        futures = [
            pool.submit(controller.scale_instance, SetNodes(PROJECT_ID, INSTANCE_ID, 5)),
            pool.submit(controller.scale_instance, SetNodes(PROJECT_ID, other, 2)),
        ]
        results = [f.result() for f in futures]

    assert all(r.applied for r in results)


def test_controllers_sharing_a_database_record_exactly_one_event(tmp_path, instance_admin):
    # Two autoscaler processes: separate controllers and stores over one SQLite file
    db_path = str(tmp_path / "history.db")
    instance_admin.delay = 0.2
    controllers = []
    for _ in range(2):
        store = SQLiteHistoryStore(db_path)
        guard = RebalanceGuard(store, timedelta(minutes=5), timedelta(minutes=30))
        controllers.append(SpannerController(instance_admin, store, guard))
    barrier = threading.Barrier(2, timeout=5)
    action = SetNodes(PROJECT_ID, INSTANCE_ID, 5)

    def apply(controller):
        barrier.wait()
        return controller.scale_instance(action)

    with ThreadPoolExecutor(max_workers=2) as pool:
        results = list(pool.map(apply, controllers))

    assert sorted(r.outcome.value for r in results) == ["applied", "no_change"]
    assert len(SQLiteHistoryStore(db_path).scaling_events(KEY)) == 1
    assert len(instance_admin.set_calls) == 1


def test_lease_held_elsewhere_raises_apply_error(instance_admin, store, guard, clock):
    store.acquire_instance_lock(KEY, "other-process", clock(), timedelta(minutes=17))
    controller = SpannerController(instance_admin, store, guard, clock=clock, lease_wait=0.1)

    with pytest.raises(ApplyError, match="another autoscaler process"):
        controller.scale_instance(SetNodes(PROJECT_ID, INSTANCE_ID, 5))

    assert instance_admin.get_calls == []
    assert store.instance_locks[KEY][0] == "other-process"


def test_expired_lease_is_taken_over(instance_admin, store, guard, clock):
    store.acquire_instance_lock(KEY, "crashed-process", clock(), timedelta(minutes=17))
    clock.advance(minutes=18)
    controller = SpannerController(instance_admin, store, guard, clock=clock, lease_wait=0)

    assert controller.scale_instance(SetNodes(PROJECT_ID, INSTANCE_ID, 5)).applied
    assert KEY not in store.instance_locks


def test_lease_released_when_apply_fails(controller, instance_admin, store):
    instance_admin.fail_set = RuntimeError("deadline exceeded")

    with pytest.raises(ApplyError):
        controller.scale_instance(SetNodes(PROJECT_ID, INSTANCE_ID, 5))

    assert store.instance_locks == {}
