# tests/test_fetch_live_metrics.py
import json
from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock

import pytest
import requests

from metrics.fetch_live_metrics import (
    MetricsFetchError,
    SpannerMetricsRetriever,
    build_metrics_query,
    parse_rfc3339,
)


def series(instance_id="test-instance-id", cpu=0.9, nodes=2.0, end="2020-10-01T12:05:00.123456789Z"):
    return {
        "labelValues": [{"stringValue": "test-project-id"}, {"stringValue": instance_id}],
        "pointData": [
            {
                "values": [
                    {"doubleValue": cpu},
                    {"doubleValue": nodes},
                    {"doubleValue": 1000.0},
                    {"doubleValue": 0.12},
                    {"doubleValue": 0.85},
                    {"int64Value": "4000000000"},
                    {"int64Value": "1000000000"},
                ],
                "timeInterval": {"startTime": "2020-10-01T12:00:00Z", "endTime": end},
            }
        ],
    }


def response(body=None, status=200, text=""):
    r = MagicMock()
    r.ok = status < 400
    r.status_code = status
    r.text = text or json.dumps(body)
    r.json.return_value = body
    return r


@pytest.fixture
def credentials():
    creds = MagicMock()
    creds.valid = True
    creds.token = "token-123"
    return creds


@pytest.fixture
def retriever(credentials):
    return SpannerMetricsRetriever("monitoring-project", timedelta(minutes=5), timeout=5, credentials=credentials)


@pytest.fixture
def post(monkeypatch):
    mock = MagicMock()
    monkeypatch.setattr(requests, "post", mock)
    return mock


def test_latest_metrics_parses_joined_series(retriever, post):
    post.return_value = response({"timeSeriesData": [series(), series("second", cpu=0.3, nodes=4.0)]})

    metrics = retriever.latest_metrics()

    assert [m.instance_id for m in metrics] == ["test-instance-id", "second"]
    first = metrics[0]
    assert first.project_id == "test-project-id"
    assert first.mean_cpu_utilisation == 0.9
    assert first.mean_nodes == 2.0
    assert first.mean_sessions == 1000.0
    assert first.mean_storage_utilisation == 0.12
    assert first.mean_smoothed_cpu_utilisation == 0.85
    assert first.max_limit_bytes == 4_000_000_000
    assert first.max_used_bytes == 1_000_000_000
    assert first.timestamp == datetime(2020, 10, 1, 12, 5, 0, 123456, tzinfo=timezone.utc)


def test_query_is_sent_with_bearer_token(retriever, post):
    post.return_value = response({})

    assert retriever.latest_metrics() == []

    args, kwargs = post.call_args
    assert args[0] == "https://monitoring.googleapis.com/v3/projects/monitoring-project/timeSeries:query"
    assert kwargs["headers"]["Authorization"] == "Bearer token-123"
    assert kwargs["json"]["query"] == retriever.query
    assert kwargs["timeout"] == 5


def test_expired_credentials_are_refreshed(retriever, credentials, post):
    credentials.valid = False
    post.return_value = response({})

    retriever.latest_metrics()

    credentials.refresh.assert_called_once()


def test_valid_credentials_are_reused(retriever, credentials, post):
    post.return_value = response({})

    retriever.latest_metrics()

    credentials.refresh.assert_not_called()


def test_follows_next_page_token(retriever, post):
    post.side_effect = [
        response({"timeSeriesData": [series()], "nextPageToken": "page-2"}),
        response({"timeSeriesData": [series("second")]}),
    ]

    metrics = retriever.latest_metrics()

    assert len(metrics) == 2
    assert post.call_args_list[1].kwargs["json"]["pageToken"] == "page-2"


def test_http_error_includes_body(retriever, post):
    post.return_value = response(status=403, text='{"error": "permission denied"}')

    with pytest.raises(MetricsFetchError, match="permission denied"):
        retriever.latest_metrics()


def test_transport_error_is_wrapped(retriever, post):
    post.side_effect = requests.ConnectionError("unreachable")

    with pytest.raises(MetricsFetchError):
        retriever.latest_metrics()


def test_malformed_series_is_a_fetch_error(retriever, post):
    post.return_value = response({"timeSeriesData": [{"labelValues": []}]})

    with pytest.raises(MetricsFetchError):
        retriever.latest_metrics()


def test_query_uses_aggregation_window():
    query = build_metrics_query(timedelta(minutes=2))

    assert "group_by 120s" in query
    assert "every 120s" in query
    assert query.count("spanner_instance::") == 7
    assert query.endswith("| join")


def test_missing_values_serialise_as_null(retriever, post):
    broken = series()
    broken["pointData"][0]["values"][0] = {}
    post.return_value = response({"timeSeriesData": [broken]})

    data = json.loads(retriever.latest_metrics()[0].to_json())

    assert data["mean_cpu_utilisation"] is None
    assert data["timestamp"] == "2020-10-01T12:05:00.123456+00:00"


def test_parse_rfc3339_without_fraction():
    assert parse_rfc3339("2020-10-01T12:05:00Z") == datetime(2020, 10, 1, 12, 5, tzinfo=timezone.utc)
