# history/store.py

import uuid
from datetime import datetime, timedelta
from typing import Protocol

from history.in_memory import InMemoryHistoryStore
from history.models import InstanceRecord, PollingEvent, ScalingEvent
from history.sqlite_store import SQLiteHistoryStore


class HistoryStore(Protocol):
    def exists_instance(self, instance_key: uuid.UUID) -> bool: ...

    def create_instance(self, instance: InstanceRecord) -> None: ...

    def save_polling_event(self, instance: InstanceRecord, event: PollingEvent) -> None: ...

    def save_scaling_event(self, instance: InstanceRecord, event: ScalingEvent) -> None: ...

    def latest_scaling_event(self, instance_key: uuid.UUID) -> ScalingEvent | None: ...

    def acquire_instance_lock(self, instance_key: uuid.UUID, owner: str, now: datetime, lease: timedelta) -> bool: ...

    def release_instance_lock(self, instance_key: uuid.UUID, owner: str) -> None: ...


def create_store(backend: str, db_path: str) -> HistoryStore:
    if backend == "sqlite":
        return SQLiteHistoryStore(db_path)
    return InMemoryHistoryStore()
