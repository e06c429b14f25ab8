"""CloudWatch custom metrics emitter with background batching.

Publishes per-call metrics (count, latency, errors) for every external
collaborator the pipeline talks to (Anthropic, fastembed, Supabase,
WhatsApp), plus a counter for pipeline stages that degraded instead of
failing (e.g. a turn answered without retrieved context).

Data points are buffered in memory and pushed by a daemon thread every
``flush_interval`` seconds, at most ``MAX_BATCH_SIZE`` per call.  Unless
``METRICS_ENABLED=true`` nothing leaves the process; the buffer is only
logged at DEBUG level.

Usage
-----
>>> from src.services.metrics import metrics
>>> with metrics.track("supabase", "GET /messages"):
...     client.request("GET", "/messages")
>>> metrics.record_degradation("retrieval", "embedding_failed")
"""

from __future__ import annotations

import atexit
import logging
import os
import threading
import time
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import UTC, datetime
from typing import Any

logger = logging.getLogger(__name__)

NAMESPACE = "AutoResponder"
FLUSH_INTERVAL_SECONDS = 60
MAX_BATCH_SIZE = 1_000  # CloudWatch API limit per PutMetricData call


def _dim(name: str, value: str) -> dict[str, str]:
    return {"Name": name, "Value": value}


def _datum(
    name: str,
    dimensions: list[dict[str, str]],
    value: float,
    unit: str,
    timestamp: datetime,
) -> dict[str, Any]:
    return {
        "MetricName": name,
        "Dimensions": dimensions,
        "Timestamp": timestamp,
        "Value": value,
        "Unit": unit,
    }


class MetricsClient:
    """Buffers metric data points and ships them to CloudWatch in batches."""

    def __init__(
        self,
        *,
        enabled: bool | None = None,
        namespace: str = NAMESPACE,
        flush_interval: float = FLUSH_INTERVAL_SECONDS,
    ) -> None:
        if enabled is None:
            enabled = os.getenv("METRICS_ENABLED", "false").lower() == "true"
        self._enabled = enabled
        self._namespace = namespace
        self._flush_interval = flush_interval
        self._buffer: list[dict[str, Any]] = []
        self._lock = threading.Lock()
        self._stop = threading.Event()
        self._cw_client = None

        if self._enabled:
            self._start_flush_thread()

    def _get_cw_client(self):
        if self._cw_client is None:
            import boto3

            self._cw_client = boto3.client("cloudwatch")
        return self._cw_client

    # ── Recording ────────────────────────────────────────────────────

    def _record_call(
        self,
        service: str,
        operation: str,
        *,
        status: str,
        latency_ms: float,
        error_type: str | None = None,
    ) -> None:
        now = datetime.now(UTC)
        service_dim = _dim("Service", service)
        points = [
            _datum("ExternalAPI/RequestCount", [service_dim, _dim("Status", status)], 1, "Count", now),
        ]
        if error_type is not None:
            points.append(
                _datum("ExternalAPI/ErrorCount", [service_dim, _dim("ErrorType", error_type)], 1, "Count", now)
            )
        if latency_ms > 0:
            points.append(
                _datum(
                    "ExternalAPI/Latency",
                    [service_dim, _dim("Operation", operation)],
                    latency_ms, "Milliseconds", now,
                )
            )
        with self._lock:
            self._buffer.extend(points)
        logger.debug(
            "Metric: %s %s %s%s latency=%.1fms",
            service, operation, status,
            f" error={error_type}" if error_type else "",
            latency_ms,
        )

    def record_success(self, service: str, operation: str, latency_ms: float) -> None:
        self._record_call(service, operation, status="success", latency_ms=latency_ms)

    def record_failure(
        self,
        service: str,
        operation: str,
        error_type: str,
        latency_ms: float = 0,
    ) -> None:
        self._record_call(
            service, operation, status="failure", latency_ms=latency_ms, error_type=error_type,
        )

    def record_degradation(self, stage: str, reason: str) -> None:
        """Count a pipeline stage that fell back instead of failing the turn."""
        point = _datum(
            "Pipeline/DegradedCount",
            [_dim("Stage", stage), _dim("Reason", reason)],
            1, "Count", datetime.now(UTC),
        )
        with self._lock:
            self._buffer.append(point)
        logger.debug("Metric: %s degraded reason=%s", stage, reason)

    @contextmanager
    def track(self, service: str, operation: str) -> Iterator[None]:
        """Time the wrapped call and record it as a success or failure.

        Exceptions are recorded and re-raised unchanged.
        """
        t0 = time.perf_counter()
        try:
            yield
        except Exception as exc:
            self.record_failure(
                service, operation,
                error_type=type(exc).__name__,
                latency_ms=(time.perf_counter() - t0) * 1000,
            )
            raise
        self.record_success(service, operation, latency_ms=(time.perf_counter() - t0) * 1000)

    # ── Shipping ─────────────────────────────────────────────────────

    def flush(self) -> int:
        """Drain the buffer to CloudWatch.  Returns the number of points sent."""
        with self._lock:
            batch, self._buffer = self._buffer, []
        if not batch:
            return 0
        if not self._enabled:
            logger.debug("Metrics disabled; dropped %d buffered points", len(batch))
            return 0

        sent = 0
        try:
            cw = self._get_cw_client()
            for start in range(0, len(batch), MAX_BATCH_SIZE):
                chunk = batch[start : start + MAX_BATCH_SIZE]
                cw.put_metric_data(Namespace=self._namespace, MetricData=chunk)
                sent += len(chunk)
        except Exception:
            logger.exception("CloudWatch put_metric_data failed after %d points", sent)
        else:
            logger.info("Sent %d metric points to CloudWatch", sent)
        return sent

    def close(self) -> None:
        """Stop the background thread and ship whatever is left."""
        self._stop.set()
        self.flush()

    def _start_flush_thread(self) -> None:
        def _loop():
            while not self._stop.wait(self._flush_interval):
                try:
                    self.flush()
                except Exception:
                    logger.exception("Metrics flush thread error")

        threading.Thread(target=_loop, daemon=True, name="metrics-flush").start()
        atexit.register(self.close)
        logger.info("Metrics flush thread started (every %ss)", self._flush_interval)


# ── Module-level singleton ──────────────────────────────────────────
metrics = MetricsClient()
