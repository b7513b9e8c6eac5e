# history/models.py

import hashlib
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone


class PersistenceError(Exception):
    """Raised when a history record cannot be written or read."""


def generate_instance_key(project_id: str, instance_id: str) -> uuid.UUID:
    """
    Name-based (MD5, version 3) UUID for a Spanner instance.

    The same project/instance pair always maps to the same key, whichever
    configuration entry it was reached from.
    """
    digest = hashlib.md5(f"{project_id}/{instance_id}".encode("utf-8")).digest()
    return uuid.UUID(bytes=digest, version=3)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def format_timestamp(ts: datetime) -> str:
    # Fixed width so that lexical order is chronological order
    return ts.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%fZ")


def parse_timestamp(value: str) -> datetime:
    return datetime.strptime(value, "%Y-%m-%dT%H:%M:%S.%fZ").replace(tzinfo=timezone.utc)


@dataclass(frozen=True)
class InstanceRecord:
    instance_key: uuid.UUID
    project_id: str
    instance_name: str


@dataclass(frozen=True)
class PollingEvent:
    instance_key: uuid.UUID
    polling_event_id: uuid.UUID
    event_timestamp: datetime
    metrics: str


@dataclass(frozen=True)
class ScalingEvent:
    instance_key: uuid.UUID
    scaling_event_id: uuid.UUID
    event_timestamp: datetime
    action: str
    nodes_before: int | None
    nodes_after: int
