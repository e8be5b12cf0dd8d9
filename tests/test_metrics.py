"""Tests for the CloudWatch metrics client."""

from __future__ import annotations

from unittest.mock import MagicMock, patch

from intakeflow.services.metrics import MetricsClient


class TestMetricsRecording:
    """Verify that the record_* methods buffer the right data."""

    def test_record_call_success_appends_two_data_points(self):
        client = MetricsClient(enabled=False)
        client.record_call_success("extract_fields", latency_ms=123.4)
        # Should buffer RequestCount + Latency
        assert client.pending == 2
        names = {m["MetricName"] for m in client._buffer}
        assert names == {"Collaborator/RequestCount", "Collaborator/Latency"}

    def test_record_call_failure_appends_count_and_error(self):
        client = MetricsClient(enabled=False)
        client.record_call_failure("deliver_record", error_type="timeout")
        # No latency since default 0
        assert len(client._buffer) == 2
        names = {m["MetricName"] for m in client._buffer}
        assert names == {"Collaborator/RequestCount", "Collaborator/ErrorCount"}

    def test_record_call_failure_with_latency_appends_three_data_points(self):
        client = MetricsClient(enabled=False)
        client.record_call_failure("reserve_slot", error_type="SlotConflictError", latency_ms=5.0)
        assert len(client._buffer) == 3

    def test_success_dimensions_include_call_kind_and_status(self):
        client = MetricsClient(enabled=False)
        client.record_call_success("list_slots", latency_ms=50.0)
        count_metric = next(
            m for m in client._buffer
            if m["MetricName"] == "Collaborator/RequestCount"
        )
        dim_map = {d["Name"]: d["Value"] for d in count_metric["Dimensions"]}
        assert dim_map["CallKind"] == "list_slots"
        assert dim_map["Status"] == "success"

    def test_outcome_dimensions(self):
        client = MetricsClient(enabled=False)
        client.record_outcome("lawn_intake", "escalated")
        (metric,) = client._buffer
        assert metric["MetricName"] == "Flow/Outcome"
        dim_map = {d["Name"]: d["Value"] for d in metric["Dimensions"]}
        assert dim_map == {"FlowId": "lawn_intake", "Outcome": "escalated"}


class TestMetricsFlush:
    """Verify flush behaviour with and without CloudWatch enabled."""

    def test_flush_when_disabled_does_not_call_boto3(self):
        client = MetricsClient(enabled=False)
        client.record_call_success("list_slots", latency_ms=100.0)
        with patch.object(client, "_get_cw_client") as mock_get:
            assert client.flush() == 0
            mock_get.assert_not_called()
        assert client.pending == 0

    def test_flush_when_enabled_calls_put_metric_data(self):
        with patch.object(MetricsClient, "_start_flush_thread"):
            client = MetricsClient(enabled=True)

        mock_cw = MagicMock()
        client._cw_client = mock_cw  # inject mock

        client.record_call_success("extract_fields", latency_ms=100.0)
        sent = client.flush()

        assert sent == 2
        mock_cw.put_metric_data.assert_called_once()
        call_args = mock_cw.put_metric_data.call_args
        assert call_args[1]["Namespace"] == "IntakeFlow"
        assert len(call_args[1]["MetricData"]) == 2

    def test_flush_failure_is_logged_not_raised(self):
        with patch.object(MetricsClient, "_start_flush_thread"):
            client = MetricsClient(enabled=True)
        mock_cw = MagicMock()
        mock_cw.put_metric_data.side_effect = RuntimeError("throttled")
        client._cw_client = mock_cw

        client.record_outcome("lawn_intake", "completed")
        assert client.flush() == 0

    def test_flush_empty_buffer_returns_zero(self):
        with patch.object(MetricsClient, "_start_flush_thread"):
            client = MetricsClient(enabled=True)
        assert client.flush() == 0
