# tests/conftest.py
import threading
import time
from datetime import datetime, timedelta, timezone

import pytest

from backend.config import InstanceInformation
from decision.rebalance_guard import RebalanceGuard
from gcp.spanner_controller import SpannerController
from history.in_memory import InMemoryHistoryStore
from metrics.fetch_live_metrics import InstanceMetrics

PROJECT_ID = "test-project-id"
INSTANCE_ID = "test-instance-id"


class FakeInstanceAdmin:
    """Stands in for the Spanner instance admin API."""

    def __init__(self, nodes=None, delay=0.0):
        self.nodes = dict(nodes or {})
        self.delay = delay
        self.fail_get = None
        self.fail_set = None
        self.get_calls = []
        self.set_calls = []
        self._lock = threading.Lock()

    def get_node_count(self, project_id, instance_id):
        with self._lock:
            self.get_calls.append((project_id, instance_id))
        if self.fail_get:
            raise self.fail_get
        return self.nodes[(project_id, instance_id)]

    def set_node_count(self, project_id, instance_id, nodes):
        with self._lock:
            self.set_calls.append((project_id, instance_id, nodes))
        if self.delay:
            time.sleep(self.delay)
        if self.fail_set:
            raise self.fail_set
        self.nodes[(project_id, instance_id)] = nodes
        return nodes


class MutableClock:
    def __init__(self, now=None):
        self.now = now or datetime(2020, 10, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)


@pytest.fixture
def make_instance():
    def _make(**overrides):
        values = {
            "project_id": PROJECT_ID,
            "instance_id": INSTANCE_ID,
            "min_nodes": 1,
            "max_nodes": 10,
            "target_cpu_utilisation": 0.65,
            "min_cpu_utilisation": 0.55,
            "max_cpu_utilisation": 0.75,
        }
        values.update(overrides)
        return InstanceInformation(**values)
    return _make


@pytest.fixture
def make_metrics():
    def _make(**overrides):
        values = {
            "timestamp": datetime(2020, 10, 1, 12, 0, tzinfo=timezone.utc),
            "project_id": PROJECT_ID,
            "instance_id": INSTANCE_ID,
            "mean_cpu_utilisation": 0.6,
            "mean_smoothed_cpu_utilisation": 0.6,
            "mean_storage_utilisation": 0.1,
            "mean_nodes": 2.0,
            "mean_sessions": 1000.0,
            "max_used_bytes": 1_000_000_000,
            "max_limit_bytes": 4_000_000_000,
        }
        values.update(overrides)
        return InstanceMetrics(**values)
    return _make


@pytest.fixture
def store():
    return InMemoryHistoryStore()


@pytest.fixture
def clock():
    return MutableClock()


@pytest.fixture
def instance_admin():
    return FakeInstanceAdmin({(PROJECT_ID, INSTANCE_ID): 3})


@pytest.fixture
def guard(store, clock):
    return RebalanceGuard(store, timedelta(minutes=5), timedelta(minutes=30), clock=clock)


@pytest.fixture
def controller(instance_admin, store, guard, clock):
    return SpannerController(instance_admin, store, guard, clock=clock)
