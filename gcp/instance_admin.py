# gcp/instance_admin.py

import logging
import threading

from google.cloud.spanner_admin_instance_v1 import InstanceAdminClient
from google.cloud.spanner_admin_instance_v1.types import Instance
from google.protobuf import field_mask_pb2


def instance_path(project_id: str, instance_id: str) -> str:
    return f"projects/{project_id}/instances/{instance_id}"


class SpannerInstanceAdmin:
    """
    Read and change the node count of Spanner instances.

    Every call is bounded: ``request_timeout`` for RPCs and
    ``operation_timeout`` for the long-running update to complete.
    """

    def __init__(self, request_timeout: float = 60.0, operation_timeout: float = 900.0, client=None):
        self.request_timeout = request_timeout
        self.operation_timeout = operation_timeout
        self._client = client
        self._client_lock = threading.Lock()

    def client(self) -> InstanceAdminClient:
        """Instance admin client (lazy-loaded, cached after first call)."""
        with self._client_lock:
            if self._client is None:
                self._client = InstanceAdminClient()
            return self._client

    def get_node_count(self, project_id: str, instance_id: str) -> int:
        instance = self.client().get_instance(
            name=instance_path(project_id, instance_id),
            timeout=self.request_timeout,
        )
        return instance.node_count

    def set_node_count(self, project_id: str, instance_id: str, nodes: int) -> int:
        """Update the node count and block until the operation finishes. Returns the new node count."""
        logging.info(f"{project_id}/{instance_id}: Scaling Spanner instance to {nodes} nodes.")
        operation = self.client().update_instance(
            instance=Instance(name=instance_path(project_id, instance_id), node_count=nodes),
            field_mask=field_mask_pb2.FieldMask(paths=["node_count"]),
            timeout=self.request_timeout,
        )
        updated = operation.result(timeout=self.operation_timeout)
        logging.info(f"{project_id}/{instance_id}: Spanner instance scaled to {updated.node_count} nodes.")
        return updated.node_count
