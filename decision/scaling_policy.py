# decision/scaling_policy.py

import json
import logging
import math
from dataclasses import asdict, dataclass

from backend.config import CronSchedule, InstanceInformation
from metrics.fetch_live_metrics import InstanceMetrics

# Storage a single node can serve, in bytes
STORAGE_BYTES_PER_NODE = 2_000_000_000
# Sessions a single node can serve
SESSIONS_PER_NODE = 10_000


class PolicyError(Exception):
    """Metrics for an instance cannot be turned into a recommendation."""


@dataclass(frozen=True)
class SetNodes:
    project_id: str
    instance_id: str
    nodes: int

    def to_json(self) -> str:
        return json.dumps({"type": "SetNodes", **asdict(self)})


@dataclass(frozen=True)
class NoChange:
    project_id: str
    instance_id: str

    def to_json(self) -> str:
        return json.dumps({"type": "NoChange", **asdict(self)})


ScalingAction = SetNodes | NoChange


def min_session_nodes(mean_sessions: float) -> int:
    """Minimum number of nodes required for session utilisation."""
    return math.ceil(mean_sessions / SESSIONS_PER_NODE)


def min_storage_nodes(used_bytes: float, max_storage_utilisation: float) -> int:
    """Minimum number of nodes required for storage utilisation."""
    return math.ceil(used_bytes / (STORAGE_BYTES_PER_NODE * max_storage_utilisation))


def clamp_nodes(nodes: int, instance: InstanceInformation) -> int:
    return max(instance.min_nodes, min(nodes, instance.max_nodes))


class BalancedScalingStrategy:
    """
    Keep an instance between an upper and lower CPU utilisation band, never
    dropping below the nodes needed for its sessions and storage.
    """

    def __init__(self, instance: InstanceInformation):
        self.instance = instance

    def minimum_nodes(self, metrics: InstanceMetrics) -> int:
        if self.instance.max_storage_utilisation <= 0:
            raise PolicyError(f"{metrics.name}: max_storage_utilisation must be positive")
        if math.isnan(metrics.mean_sessions) or metrics.mean_sessions < 0:
            raise PolicyError(f"{metrics.name}: Unexpected session count: {metrics.mean_sessions}")

        return max(
            self.instance.min_nodes,
            min_session_nodes(metrics.mean_sessions),
            min_storage_nodes(metrics.max_used_bytes, self.instance.max_storage_utilisation),
        )

    def scaling_recommendation(self, metrics: InstanceMetrics) -> ScalingAction:
        """
        Recommend a scaling action given a set of instance metrics.

        Raises:
            PolicyError: if node or CPU values are missing, zero or out of range
        """
        instance = self.instance
        cpu = metrics.mean_cpu_utilisation

        if math.isnan(metrics.mean_nodes) or metrics.mean_nodes <= 0:
            raise PolicyError(f"{metrics.name}: Unexpected mean node count: {metrics.mean_nodes}")
        if math.isnan(cpu) or cpu < 0:
            raise PolicyError(f"{metrics.name}: Unexpected CPU utilisation value: {cpu}")

        minimum_nodes = self.minimum_nodes(metrics)
        logging.info(f"{metrics.name}: Calculated minimum nodes to be {minimum_nodes}.")

        cpu_per_node = cpu / metrics.mean_nodes

        if cpu > instance.max_cpu_utilisation:
            target_nodes = max(math.ceil(instance.target_cpu_utilisation / cpu_per_node), minimum_nodes)
            logging.info(
                f"{metrics.name}: Current CPU utilisation {cpu} greater than maximum CPU allowed "
                f"{instance.max_cpu_utilisation}."
            )
        elif instance.min_cpu_utilisation <= cpu <= instance.max_cpu_utilisation:
            logging.info(
                f"{metrics.name}: Current CPU utilisation {cpu} within permitted window of "
                f"{instance.min_cpu_utilisation} - {instance.max_cpu_utilisation}. No change to target nodes."
            )
            return NoChange(metrics.project_id, metrics.instance_id)
        else:
            floor_nodes = math.floor(cpu / cpu_per_node) if cpu_per_node > 0 else 0
            target_nodes = max(floor_nodes, minimum_nodes)
            logging.info(
                f"{metrics.name}: Current CPU utilisation {cpu} less than minimum CPU allowed of "
                f"{instance.min_cpu_utilisation}."
            )

        clamped = clamp_nodes(target_nodes, instance)
        if clamped != target_nodes:
            logging.warning(
                f"{metrics.name}: Target of {target_nodes} nodes outside {instance.min_nodes} - "
                f"{instance.max_nodes}, using {clamped}."
            )
        logging.info(f"{metrics.name}: Setting new target nodes to be {clamped}.")
        return SetNodes(metrics.project_id, metrics.instance_id, clamped)


class CronScalingStrategy:
    """Scale an instance to fixed node counts on one or more cron schedules."""

    def __init__(self, instance: InstanceInformation, schedules: list[CronSchedule]):
        self.instance = instance
        self.schedules = list(schedules)

    def scaling_recommendation(self, schedule: CronSchedule) -> SetNodes | None:
        """Return the action for a fired schedule, or None when it is outside the instance bounds."""
        instance = self.instance
        if instance.min_nodes <= schedule.nodes <= instance.max_nodes:
            logging.info(
                f"{instance.name}: Cron scheduler {schedule.cron_expression} scaling to {schedule.nodes} nodes."
            )
            return SetNodes(instance.project_id, instance.instance_id, schedule.nodes)

        logging.info(
            f"{instance.name}: Cron scheduler {schedule.cron_expression} requested {schedule.nodes} nodes, "
            f"not between {instance.min_nodes} and {instance.max_nodes}. No action taken."
        )
        return None
