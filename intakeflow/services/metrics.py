"""CloudWatch custom metrics emitter with background batching.

Publishes per-call metrics (count, latency, errors) for every collaborator
the conversation service dispatches to (field extraction, record delivery,
scheduling), plus one count per terminal flow outcome.

Design
------
* Metrics are collected in a thread-safe in-memory buffer.
* A daemon thread flushes the buffer to CloudWatch every
  ``FLUSH_INTERVAL_SECONDS`` (default 60 s).
* When disabled (``Settings.metrics_enabled`` is false), metrics are logged
  at DEBUG level but **not** pushed to CloudWatch.
* Each ``put_metric_data`` call sends up to 1 000 metric data points
  (the CloudWatch API limit per request).

Usage
-----
>>> metrics = MetricsClient(enabled=False)
>>> metrics.record_call_success("extract_fields", latency_ms=123.4)
>>> metrics.record_call_failure("deliver_record", error_type="timeout")
>>> metrics.record_outcome("lawn_intake", "completed")
"""

from __future__ import annotations

import atexit
import logging
import threading
import time
from datetime import UTC, datetime
from typing import Any

logger = logging.getLogger(__name__)

NAMESPACE = "IntakeFlow"
FLUSH_INTERVAL_SECONDS = 60
MAX_BATCH_SIZE = 1_000  # CloudWatch API limit per PutMetricData call


class MetricsClient:
    """Batched CloudWatch metrics publisher."""

    def __init__(self, enabled: bool = False, *, namespace: str = NAMESPACE) -> None:
        self._enabled = enabled
        self._namespace = namespace
        self._buffer: list[dict[str, Any]] = []
        self._lock = threading.Lock()
        self._cw_client = None  # lazy-init

        if self._enabled:
            self._start_flush_thread()

    @property
    def enabled(self) -> bool:
        return self._enabled

    @property
    def pending(self) -> int:
        """Number of data points waiting for the next flush."""
        with self._lock:
            return len(self._buffer)

    # ── Lazy CloudWatch client ────────────────────────────────────────

    def _get_cw_client(self):
        """Create the boto3 CloudWatch client on first use."""
        if self._cw_client is None:
            import boto3

            self._cw_client = boto3.client("cloudwatch")
        return self._cw_client

    # ── Public API ────────────────────────────────────────────────────

    def record_call_success(self, call_kind: str, latency_ms: float) -> None:
        """Record a collaborator call that returned in time."""
        now = datetime.now(UTC)
        dims = [{"Name": "CallKind", "Value": call_kind}]

        self._append(
            {
                "MetricName": "Collaborator/RequestCount",
                "Dimensions": dims + [{"Name": "Status", "Value": "success"}],
                "Timestamp": now,
                "Value": 1,
                "Unit": "Count",
            }
        )
        self._append(
            {
                "MetricName": "Collaborator/Latency",
                "Dimensions": dims,
                "Timestamp": now,
                "Value": latency_ms,
                "Unit": "Milliseconds",
            }
        )
        logger.debug("Metric: %s success latency=%.1fms", call_kind, latency_ms)

    def record_call_failure(
        self,
        call_kind: str,
        error_type: str,
        latency_ms: float = 0,
    ) -> None:
        """Record a collaborator call that failed or timed out."""
        now = datetime.now(UTC)
        dims = [{"Name": "CallKind", "Value": call_kind}]

        self._append(
            {
                "MetricName": "Collaborator/RequestCount",
                "Dimensions": dims + [{"Name": "Status", "Value": "failure"}],
                "Timestamp": now,
                "Value": 1,
                "Unit": "Count",
            }
        )
        self._append(
            {
                "MetricName": "Collaborator/ErrorCount",
                "Dimensions": dims + [{"Name": "ErrorType", "Value": error_type}],
                "Timestamp": now,
                "Value": 1,
                "Unit": "Count",
            }
        )
        if latency_ms > 0:
            self._append(
                {
                    "MetricName": "Collaborator/Latency",
                    "Dimensions": dims,
                    "Timestamp": now,
                    "Value": latency_ms,
                    "Unit": "Milliseconds",
                }
            )
        logger.debug(
            "Metric: %s failure error=%s latency=%.1fms", call_kind, error_type, latency_ms,
        )

    def record_outcome(self, flow_id: str, outcome: str) -> None:
        """Count a terminal session outcome (``completed`` / ``escalated``)."""
        self._append(
            {
                "MetricName": "Flow/Outcome",
                "Dimensions": [
                    {"Name": "FlowId", "Value": flow_id},
                    {"Name": "Outcome", "Value": outcome},
                ],
                "Timestamp": datetime.now(UTC),
                "Value": 1,
                "Unit": "Count",
            }
        )
        logger.debug("Metric: flow %s outcome=%s", flow_id, outcome)

    def flush(self) -> int:
        """Send buffered metrics to CloudWatch.  Returns count sent."""
        with self._lock:
            if not self._buffer:
                return 0
            batch = self._buffer[:]
            self._buffer.clear()

        if not self._enabled:
            logger.debug("Metrics flush skipped (not enabled): %d items", len(batch))
            return 0

        sent = 0
        try:
            cw = self._get_cw_client()
            for i in range(0, len(batch), MAX_BATCH_SIZE):
                chunk = batch[i : i + MAX_BATCH_SIZE]
                cw.put_metric_data(Namespace=self._namespace, MetricData=chunk)
                sent += len(chunk)
            logger.info("Flushed %d metrics to CloudWatch", sent)
        except Exception:
            logger.exception("Failed to flush metrics to CloudWatch")
        return sent

    # ── Internal ──────────────────────────────────────────────────────

    def _append(self, metric_data: dict[str, Any]) -> None:
        with self._lock:
            self._buffer.append(metric_data)

    def _start_flush_thread(self) -> None:
        """Start a daemon thread that flushes metrics periodically."""

        def _loop():
            while True:
                time.sleep(FLUSH_INTERVAL_SECONDS)
                try:
                    self.flush()
                except Exception:
                    logger.exception("Metrics flush thread error")

        t = threading.Thread(target=_loop, daemon=True, name="metrics-flush")
        t.start()
        atexit.register(self.flush)
        logger.info(
            "Metrics flush thread started (interval=%ds)", FLUSH_INTERVAL_SECONDS,
        )
