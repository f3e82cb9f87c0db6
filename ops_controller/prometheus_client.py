"""
Prometheus metrics adapter.

Implements MetricsQueryService over the Prometheus HTTP API and runs the four
per-app health checks the hybrid detector relies on:

- error rate (5xx / total) above 5%
- P99 latency above 2s
- pod restarts in the last 15 minutes (3 or more)
- memory usage above 90% of the limit

An unreachable backend is "no data", never an exception to the caller.
Connection-refused log lines are rate-limited to one per 30 seconds.
"""

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import httpx

from .collaborators import MetricSample, MetricsQueryService
from .config import MetricsConfig
from .errors import TransientExternalError
from .models import Anomaly, AnomalySource, MonitoredApp, Severity

logger = logging.getLogger("prometheus_client")


@dataclass
class MetricsCheckResult:
    anomalies: List[Anomaly] = field(default_factory=list)
    checked_apps: int = 0
    failed_apps: List[str] = field(default_factory=list)


def error_rate_severity(rate: float) -> Severity:
    if rate >= 0.5:
        return Severity.CRITICAL
    if rate >= 0.2:
        return Severity.HIGH
    if rate >= 0.1:
        return Severity.MEDIUM
    return Severity.LOW


def latency_severity(seconds: float) -> Severity:
    if seconds >= 10:
        return Severity.CRITICAL
    if seconds >= 5:
        return Severity.HIGH
    if seconds >= 3:
        return Severity.MEDIUM
    return Severity.LOW


class PrometheusClient(MetricsQueryService):
    """
    Thin async client over /api/v1/query and /api/v1/query_range.

    transport is injectable so tests can use httpx.MockTransport.
    """

    def __init__(self, config: Optional[MetricsConfig] = None,
                 transport: Optional[httpx.AsyncBaseTransport] = None):
        self.config = config or MetricsConfig()
        self._transport = transport
        self._last_connection_log = 0.0
        self.last_error: Optional[str] = None

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self.config.base_url,
            timeout=self.config.timeout,
            transport=self._transport,
        )

    def _log_connection_error(self, message: str) -> None:
        now = time.monotonic()
        if now - self._last_connection_log >= self.config.connection_log_interval:
            self._last_connection_log = now
            logger.warning(f"Prometheus unreachable at {self.config.base_url}: {message}")

    # -------------------------------------------------------------------------
    # MetricsQueryService
    # -------------------------------------------------------------------------

    async def is_available(self) -> bool:
        async with self._client() as client:
            try:
                response = await client.get("/-/healthy")
                return response.status_code == 200
            except httpx.HTTPError as e:
                self._log_connection_error(str(e))
                return False

    async def query(self, promql: str) -> Optional[MetricSample]:
        """Instant query. Empty result means 0; failure means None."""
        async with self._client() as client:
            try:
                response = await client.get("/api/v1/query", params={"query": promql})
            except httpx.ConnectError as e:
                self.last_error = str(e)
                self._log_connection_error(str(e))
                return None
            except httpx.HTTPError as e:
                self.last_error = str(e)
                logger.error(f"Prometheus query failed: {e}")
                return None

        if response.status_code != 200:
            self.last_error = f"HTTP {response.status_code}"
            logger.error(f"Prometheus query returned HTTP {response.status_code}")
            return None

        body = response.json()
        results = body.get("data", {}).get("result", [])
        if body.get("status") != "success" or not results:
            return MetricSample(value=0.0)

        first = results[0]
        timestamp, raw_value = first.get("value", [None, "0"])
        return MetricSample(value=_to_float(raw_value), labels=first.get("metric", {}), timestamp=timestamp)

    async def query_range(self, promql: str, start: float, end: float,
                          step: str = "15s") -> List[MetricSample]:
        params = {"query": promql, "start": start, "end": end, "step": step}
        async with self._client() as client:
            try:
                response = await client.get("/api/v1/query_range", params=params)
            except httpx.HTTPError as e:
                self.last_error = str(e)
                self._log_connection_error(str(e))
                return []

        if response.status_code != 200:
            self.last_error = f"HTTP {response.status_code}"
            return []

        samples = []
        for series in response.json().get("data", {}).get("result", []):
            labels = series.get("metric", {})
            for timestamp, raw_value in series.get("values", []):
                samples.append(MetricSample(value=_to_float(raw_value), labels=labels, timestamp=timestamp))
        return samples

    # -------------------------------------------------------------------------
    # Per-App Checks
    # -------------------------------------------------------------------------

    async def check_metrics(self, apps: List[MonitoredApp]) -> MetricsCheckResult:
        """
        Run all four checks for every app.

        Raises TransientExternalError only when every app failed to query,
        which is how the detector loop recognises an unreachable backend.
        """
        result = MetricsCheckResult()
        for app in apps:
            samples = {
                "error_rate": await self.query(self._error_rate_query(app)),
                "latency": await self.query(self._latency_query(app)),
                "restarts": await self.query(self._restart_query(app)),
                "memory": await self.query(self._memory_query(app)),
            }
            if all(s is None for s in samples.values()):
                result.failed_apps.append(app.name)
                continue

            result.checked_apps += 1
            for anomaly in self._evaluate(app, samples):
                result.anomalies.append(anomaly)

        if apps and len(result.failed_apps) == len(apps):
            raise TransientExternalError(
                f"Metrics backend unreachable: {self.last_error or 'no response'}",
                collaborator="prometheus",
            )
        return result

    def _evaluate(self, app: MonitoredApp, samples: Dict[str, Optional[MetricSample]]) -> List[Anomaly]:
        anomalies = []
        cfg = self.config

        error_rate = samples["error_rate"]
        if error_rate is not None and error_rate.value > cfg.error_rate_threshold:
            anomalies.append(self._anomaly(
                app, "high_error_rate", error_rate_severity(error_rate.value),
                f"Error rate {error_rate.value * 100:.1f}% exceeds 5% threshold",
                error_rate.value, cfg.error_rate_threshold,
            ))

        latency = samples["latency"]
        if latency is not None and latency.value > cfg.latency_threshold:
            anomalies.append(self._anomaly(
                app, "high_latency", latency_severity(latency.value),
                f"P99 latency {latency.value:.2f}s exceeds 2s threshold",
                latency.value, cfg.latency_threshold,
            ))

        restarts = samples["restarts"]
        if restarts is not None and restarts.value >= cfg.restart_threshold:
            count = int(restarts.value)
            anomalies.append(self._anomaly(
                app, "pod_restart", Severity.CRITICAL if count >= 5 else Severity.HIGH,
                f"{count} pod restarts in the last 15 minutes",
                restarts.value, cfg.restart_threshold,
            ))

        memory = samples["memory"]
        if memory is not None and memory.value > cfg.memory_threshold:
            anomalies.append(self._anomaly(
                app, "memory_pressure", Severity.CRITICAL if memory.value >= 0.95 else Severity.HIGH,
                f"Memory usage {memory.value * 100:.1f}% of limit",
                memory.value, cfg.memory_threshold,
            ))

        return anomalies

    @staticmethod
    def _anomaly(app: MonitoredApp, anomaly_type: str, severity: Severity, description: str,
                 value: float, threshold: float) -> Anomaly:
        return Anomaly(
            type=anomaly_type,
            severity=severity,
            description=description,
            confidence=1.0,
            source=AnomalySource.METRICS,
            app_name=app.name,
            namespace=app.namespace,
            metric_value=value,
            threshold=threshold,
        )

    # -------------------------------------------------------------------------
    # PromQL
    # -------------------------------------------------------------------------

    @staticmethod
    def _selector(app: MonitoredApp, namespace_label: str = "namespace") -> str:
        return f'{namespace_label}="{app.namespace}", pod=~"{app.name}.*"'

    def _error_rate_query(self, app: MonitoredApp) -> str:
        sel = self._selector(app, "source_namespace")
        return (
            f'sum(rate(http_requests_total{{{sel}, status=~"5.."}}[1m])) / '
            f"sum(rate(http_requests_total{{{sel}}}[1m]))"
        )

    def _latency_query(self, app: MonitoredApp) -> str:
        sel = self._selector(app, "source_namespace")
        return (
            f"histogram_quantile(0.99, sum(rate("
            f"http_request_duration_seconds_bucket{{{sel}}}[1m])) by (le))"
        )

    def _restart_query(self, app: MonitoredApp) -> str:
        return f"sum(increase(kube_pod_container_status_restarts_total{{{self._selector(app)}}}[15m]))"

    def _memory_query(self, app: MonitoredApp) -> str:
        sel = self._selector(app)
        return (
            f"sum(container_memory_usage_bytes{{{sel}}}) / "
            f"sum(container_spec_memory_limit_bytes{{{sel}}})"
        )


def _to_float(raw: Any) -> float:
    try:
        value = float(raw)
    except (TypeError, ValueError):
        return 0.0
    # Division by zero in PromQL yields NaN
    return 0.0 if value != value else value
