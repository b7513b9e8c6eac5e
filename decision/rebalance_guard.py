# decision/rebalance_guard.py

import logging
import uuid
from datetime import timedelta

from history.models import utc_now


class RebalanceGuard:
    """
    Cooldown between scaling events, derived from the latest recorded
    ScalingEvent for the instance.

    Scale-up and scale-down use independent windows. A window is inclusive:
    an event exactly ``window`` ago still blocks.
    """

    def __init__(self, store, scale_up_rebalance: timedelta, scale_down_rebalance: timedelta, clock=utc_now):
        self.store = store
        self.scale_up_rebalance = scale_up_rebalance
        self.scale_down_rebalance = scale_down_rebalance
        self.clock = clock

    def permits(self, instance_key: uuid.UUID, target_nodes: int, current_nodes: int, name: str = "") -> bool:
        last_event = self.store.latest_scaling_event(instance_key)
        if last_event is None:
            return True

        elapsed = self.clock() - last_event.event_timestamp

        if target_nodes > current_nodes and elapsed <= self.scale_up_rebalance:
            logging.info(
                f"{name}: Last scaling event was at {last_event.event_timestamp.isoformat()}, "
                f"less than {self.scale_up_rebalance} ago. No scale up action taken."
            )
            return False

        if target_nodes < current_nodes and elapsed <= self.scale_down_rebalance:
            logging.info(
                f"{name}: Last scaling event was at {last_event.event_timestamp.isoformat()}, "
                f"less than {self.scale_down_rebalance} ago. No scale down action taken."
            )
            return False

        return True
