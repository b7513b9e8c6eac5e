# gcp/spanner_controller.py

import logging
import threading
import time
import uuid
from dataclasses import asdict, dataclass
from datetime import timedelta
from enum import Enum

from decision.rebalance_guard import RebalanceGuard
from decision.scaling_policy import NoChange, ScalingAction, SetNodes
from history.models import (
    InstanceRecord,
    PersistenceError,
    ScalingEvent,
    generate_instance_key,
    utc_now,
)


DEFAULT_LEASE_DURATION = timedelta(minutes=17)
LEASE_POLL_INTERVAL = 0.05


class ApplyError(Exception):
    """Reading or changing the node count of an instance failed or timed out."""


class ScalingOutcome(str, Enum):
    APPLIED = "applied"
    NO_CHANGE = "no_change"
    DENIED = "denied"
    DRY_RUN = "dry_run"


@dataclass(frozen=True)
class ScalingResult:
    outcome: ScalingOutcome
    project_id: str
    instance_id: str
    nodes_before: int | None = None
    nodes_after: int | None = None
    reason: str = ""

    @property
    def applied(self) -> bool:
        return self.outcome == ScalingOutcome.APPLIED

    def to_dict(self) -> dict:
        data = asdict(self)
        data["outcome"] = self.outcome.value
        return data


class SpannerController:
    """
    The single place where Spanner node counts are changed.

    Applies for the same instance are serialised by a per-instance lock held
    across read, guard check, idempotence check, update and history write.
    Different instances proceed in parallel.

    The lock is a thread lock within the process plus a lease in the history
    store, so controllers in other processes sharing the same store wait
    their turn too. The lease must outlive a full apply.
    """

    def __init__(
        self,
        instance_admin,
        store,
        guard: RebalanceGuard,
        dry_run: bool = False,
        clock=utc_now,
        lease_duration: timedelta = DEFAULT_LEASE_DURATION,
        lease_wait: float | None = None,
    ):
        self.instance_admin = instance_admin
        self.store = store
        self.guard = guard
        self.dry_run = dry_run
        self.clock = clock
        self.lease_duration = lease_duration
        # Seconds to wait for another owner's lease, defaults to one lease length
        self.lease_wait = lease_duration.total_seconds() if lease_wait is None else lease_wait
        self.owner = str(uuid.uuid4())
        self._locks: dict[uuid.UUID, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    def _instance_lock(self, instance_key: uuid.UUID) -> threading.Lock:
        with self._locks_guard:
            return self._locks.setdefault(instance_key, threading.Lock())

    def _acquire_lease(self, instance_key: uuid.UUID, name: str) -> None:
        deadline = time.monotonic() + self.lease_wait
        while not self.store.acquire_instance_lock(instance_key, self.owner, self.clock(), self.lease_duration):
            if time.monotonic() >= deadline:
                raise ApplyError(f"{name}: instance is being scaled by another autoscaler process")
            time.sleep(LEASE_POLL_INTERVAL)

    def _release_lease(self, instance_key: uuid.UUID, name: str) -> None:
        try:
            self.store.release_instance_lock(instance_key, self.owner)
        except PersistenceError as e:
            logging.warning(f"{name}: Could not release instance lease, it expires on its own: {e}")

    def scale_instance(self, action: ScalingAction) -> ScalingResult:
        """
        Scale an instance to the number of nodes in the action.

        Returns:
            ScalingResult describing what happened (applied, no change,
            denied by the rebalance guard, or dry run)

        Raises:
            ApplyError: if the node count cannot be read or updated, or another
                process holds the instance lease for too long
            PersistenceError: if the history cannot be read, or the scaling
                event cannot be written after Spanner was changed
        """
        name = f"{action.project_id}/{action.instance_id}"

        if isinstance(action, NoChange):
            logging.info(f"{name}: No scaling action taken.")
            return ScalingResult(ScalingOutcome.NO_CHANGE, action.project_id, action.instance_id,
                                 reason="no change recommended")

        instance_key = generate_instance_key(action.project_id, action.instance_id)
        with self._instance_lock(instance_key):
            self._acquire_lease(instance_key, name)
            try:
                return self._set_nodes(action, instance_key, name)
            finally:
                self._release_lease(instance_key, name)

    def _set_nodes(self, action: SetNodes, instance_key: uuid.UUID, name: str) -> ScalingResult:
        try:
            current_nodes = self.instance_admin.get_node_count(action.project_id, action.instance_id)
        except Exception as e:
            logging.error(f"{name}: Failed to read current node count: {e}")
            raise ApplyError(f"{name}: failed to read current node count: {e}") from e

        def result(outcome, nodes_after=None, reason=""):
            return ScalingResult(outcome, action.project_id, action.instance_id,
                                 nodes_before=current_nodes, nodes_after=nodes_after, reason=reason)

        # Ensure that no actions are taken if a recent scaling event has taken place
        if not self.guard.permits(instance_key, action.nodes, current_nodes, name=name):
            return result(ScalingOutcome.DENIED, current_nodes, "rebalance window active")

        if current_nodes == action.nodes:
            logging.info(
                f"{name}: Current node count the same as recommendation ({current_nodes} nodes). "
                "No scaling action taken."
            )
            return result(ScalingOutcome.NO_CHANGE, current_nodes, "already at target")

        if self.dry_run:
            logging.info(f"[DRY RUN] {name}: Would scale from {current_nodes} to {action.nodes} nodes")
            return result(ScalingOutcome.DRY_RUN, action.nodes, "dry run")

        try:
            updated_nodes = self.instance_admin.set_node_count(action.project_id, action.instance_id, action.nodes)
        except Exception as e:
            logging.error(f"{name}: Error updating Spanner nodes: {e}")
            raise ApplyError(f"{name}: failed to set node count to {action.nodes}: {e}") from e

        event = ScalingEvent(
            instance_key=instance_key,
            scaling_event_id=uuid.uuid4(),
            event_timestamp=self.clock(),
            action=action.to_json(),
            nodes_before=current_nodes,
            nodes_after=updated_nodes,
        )
        try:
            self.store.save_scaling_event(
                InstanceRecord(instance_key, action.project_id, action.instance_id), event
            )
        except PersistenceError as e:
            logging.critical(
                f"{name}: STATE DIVERGENCE - Spanner scaled from {current_nodes} to {updated_nodes} nodes "
                f"but the scaling event could not be recorded; rebalance windows will not apply: {e}"
            )
            raise

        logging.info(f"✅ {name}: Scaled from {current_nodes} to {updated_nodes} nodes")
        return result(ScalingOutcome.APPLIED, updated_nodes, "scaled")
