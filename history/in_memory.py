# history/in_memory.py

import threading
import uuid
from datetime import datetime, timedelta

from history.models import InstanceRecord, PollingEvent, ScalingEvent


class InMemoryHistoryStore:
    """Process-local history. Debounce state is lost on restart."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self.instances: dict[uuid.UUID, InstanceRecord] = {}
        self.polling_events: list[PollingEvent] = []
        self._scaling_events: list[ScalingEvent] = []
        # instance_key -> (owner, expires_at)
        self.instance_locks: dict[uuid.UUID, tuple[str, datetime]] = {}

    def exists_instance(self, instance_key: uuid.UUID) -> bool:
        with self._lock:
            return instance_key in self.instances

    def create_instance(self, instance: InstanceRecord) -> None:
        with self._lock:
            self.instances.setdefault(instance.instance_key, instance)

    def save_polling_event(self, instance: InstanceRecord, event: PollingEvent) -> None:
        with self._lock:
            self.instances.setdefault(instance.instance_key, instance)
            self.polling_events.append(event)

    def save_scaling_event(self, instance: InstanceRecord, event: ScalingEvent) -> None:
        with self._lock:
            self.instances.setdefault(instance.instance_key, instance)
            self._scaling_events.append(event)

    def latest_scaling_event(self, instance_key: uuid.UUID) -> ScalingEvent | None:
        events = self.scaling_events(instance_key)
        return events[-1] if events else None

    def scaling_events(self, instance_key: uuid.UUID) -> list[ScalingEvent]:
        with self._lock:
            events = [e for e in self._scaling_events if e.instance_key == instance_key]
        return sorted(events, key=lambda e: e.event_timestamp)

    def acquire_instance_lock(self, instance_key: uuid.UUID, owner: str, now: datetime, lease: timedelta) -> bool:
        with self._lock:
            held = self.instance_locks.get(instance_key)
            if held is not None and held[0] != owner and held[1] > now:
                return False
            self.instance_locks[instance_key] = (owner, now + lease)
            return True

    def release_instance_lock(self, instance_key: uuid.UUID, owner: str) -> None:
        with self._lock:
            held = self.instance_locks.get(instance_key)
            if held is not None and held[0] == owner:
                del self.instance_locks[instance_key]
