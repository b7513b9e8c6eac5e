# metrics/fetch_live_metrics.py

import json
import logging
import math
import re
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta, timezone

import google.auth
import google.auth.exceptions
import google.auth.transport.requests
import requests

MONITORING_URL = "https://monitoring.googleapis.com/v3/projects/{project_id}/timeSeries:query"
MONITORING_SCOPES = [
    "https://www.googleapis.com/auth/monitoring",
    "https://www.googleapis.com/auth/monitoring.read",
]

# (metric, aligner); the order of this list is the order of the values in each joined point
METRICS = [
    ("instance/cpu/utilization", "mean"),
    ("instance/node_count", "mean"),
    ("instance/session_count", "mean"),
    ("instance/storage/utilization", "mean"),
    ("instance/cpu/smoothed_utilization", "mean"),
    ("instance/storage/limit_bytes", "max"),
    ("instance/storage/used_bytes", "max"),
]

_FRACTION = re.compile(r"\.(\d+)")


class MetricsFetchError(Exception):
    """Cloud Monitoring could not be queried or returned an unusable response."""


@dataclass(frozen=True)
class InstanceMetrics:
    """State of a Spanner instance over one aggregation window."""

    timestamp: datetime
    project_id: str
    instance_id: str
    mean_cpu_utilisation: float
    mean_smoothed_cpu_utilisation: float
    mean_storage_utilisation: float
    mean_nodes: float
    mean_sessions: float
    max_used_bytes: int
    max_limit_bytes: int

    @property
    def name(self) -> str:
        return f"{self.project_id}/{self.instance_id}"

    def to_dict(self) -> dict:
        data = asdict(self)
        data["timestamp"] = self.timestamp.isoformat()
        # NaN is not valid JSON
        for key, value in data.items():
            if isinstance(value, float) and math.isnan(value):
                data[key] = None
        return data

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), sort_keys=True)


def build_metrics_query(aggregation: timedelta) -> str:
    """MQL joining every Spanner instance metric, aggregated over ``aggregation``."""
    window = f"{int(aggregation.total_seconds())}s"
    tables = [
        f"spanner_instance::spanner.googleapis.com/{metric}"
        f" | group_by {window}, {aligner}(val()) | every {window}"
        " | group_by [resource.project_id, resource.instance_id]"
        for metric, aligner in METRICS
    ]
    return "{ " + "; ".join(tables) + " } | join"


def parse_rfc3339(value: str) -> datetime:
    """Parse Cloud Monitoring timestamps, which may carry nanosecond precision."""
    value = value.replace("Z", "+00:00")
    value = _FRACTION.sub(lambda m: "." + m.group(1)[:6].ljust(6, "0"), value, count=1)
    ts = datetime.fromisoformat(value)
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts


def _double(value: dict) -> float:
    raw = value.get("doubleValue", value.get("int64Value"))
    return float(raw) if raw is not None else math.nan


def _int64(value: dict) -> int:
    # int64 values are JSON strings in the REST API
    raw = value.get("int64Value", value.get("doubleValue"))
    return int(float(raw)) if raw is not None else 0


def parse_time_series(series: dict) -> InstanceMetrics:
    labels = [label.get("stringValue", "") for label in series["labelValues"]]
    point = series["pointData"][0]
    values = point["values"]
    if len(values) < len(METRICS):
        raise ValueError(f"expected {len(METRICS)} values per point, got {len(values)}")

    return InstanceMetrics(
        timestamp=parse_rfc3339(point["timeInterval"]["endTime"]),
        project_id=labels[0],
        instance_id=labels[-1],
        mean_cpu_utilisation=_double(values[0]),
        mean_nodes=_double(values[1]),
        mean_sessions=_double(values[2]),
        mean_storage_utilisation=_double(values[3]),
        mean_smoothed_cpu_utilisation=_double(values[4]),
        max_limit_bytes=_int64(values[5]),
        max_used_bytes=_int64(values[6]),
    )


class SpannerMetricsRetriever:
    """
    Retrieve the latest Spanner metrics for every instance visible to a
    monitoring project.

    Credentials default to the application-default credentials and are
    refreshed before each query whenever they are no longer valid.
    """

    def __init__(
        self,
        project_id: str,
        aggregation: timedelta,
        timeout: float = 60.0,
        credentials=None,
    ):
        self.project_id = project_id
        self.aggregation = aggregation
        self.timeout = timeout
        self.query = build_metrics_query(aggregation)
        self._credentials = credentials

    def _access_token(self) -> str:
        try:
            if self._credentials is None:
                self._credentials, _ = google.auth.default(scopes=MONITORING_SCOPES)
            if not self._credentials.valid:
                self._credentials.refresh(google.auth.transport.requests.Request())
        except google.auth.exceptions.GoogleAuthError as e:
            raise MetricsFetchError(f"Could not obtain monitoring credentials: {e}") from e
        return self._credentials.token

    def _query_page(self, page_token: str | None) -> dict:
        body = {"query": self.query}
        if page_token:
            body["pageToken"] = page_token

        try:
            r = requests.post(
                MONITORING_URL.format(project_id=self.project_id),
                json=body,
                headers={"Authorization": f"Bearer {self._access_token()}"},
                timeout=self.timeout,
            )
        except requests.RequestException as e:
            raise MetricsFetchError(f"Cloud Monitoring request failed: {e}") from e

        if not r.ok:
            raise MetricsFetchError(
                f"Cloud Monitoring returned HTTP {r.status_code}: {r.text}"
            )

        try:
            return r.json()
        except ValueError as e:
            raise MetricsFetchError(f"Cloud Monitoring returned invalid JSON: {e}") from e

    def latest_metrics(self) -> list[InstanceMetrics]:
        """
        Query Cloud Monitoring for the latest statistics for all instances.

        Returns:
            one InstanceMetrics per instance that reported data

        Raises:
            MetricsFetchError: on transport, auth or parsing failures
        """
        results = []
        page_token = None
        while True:
            page = self._query_page(page_token)
            for series in page.get("timeSeriesData", []):
                try:
                    results.append(parse_time_series(series))
                except (KeyError, IndexError, TypeError, ValueError) as e:
                    raise MetricsFetchError(f"Unexpected time series in response: {e}") from e
            page_token = page.get("nextPageToken")
            if not page_token:
                break

        logging.info(f"Fetched metrics for {len(results)} Spanner instance(s) in project {self.project_id}")
        return results
