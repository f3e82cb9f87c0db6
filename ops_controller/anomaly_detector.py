"""
Hybrid Anomaly Detector

Two independent polling loops over every active monitored app:

- metrics loop (default 15s): four threshold checks per app via the metrics
  adapter; precise and cheap
- vision loop (default 30s): latest dashboard frame per app analysed by the
  reasoning service; slower but catches what thresholds miss

Both modalities are normalised to Anomaly, filtered by minimum severity (and
for vision, minimum confidence), then passed through the detection state
manager. Only anomalies that pass are recorded and emitted as
anomaly:detected.

Each loop counts its own consecutive failures and disables itself after 5 in
a row without touching the sibling loop. When both are disabled the detector
stops.
"""

import asyncio
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from .collaborators import FrameFetcher, ReasoningService
from .config import DetectorConfig
from .detection_state import DetectionStateManager
from .errors import TransientExternalError
from .events import EventChannel, EventType
from .models import Anomaly, AnomalySource, MonitoredApp, Severity, utcnow
from .prometheus_client import PrometheusClient
from .repositories import MonitoredAppRepository

logger = logging.getLogger("anomaly_detector")

VISION_CONTEXT = (
    "Monitoring check: analyse the dashboard of {app} in namespace {namespace} "
    "for error spikes, latency regressions, restarts or resource exhaustion."
)


class HybridAnomalyDetector:
    """Metrics + vision anomaly detection feeding the detection state manager."""

    def __init__(
        self,
        detection_state: DetectionStateManager,
        monitored_apps: MonitoredAppRepository,
        config: Optional[DetectorConfig] = None,
        metrics_client: Optional[PrometheusClient] = None,
        frame_fetcher: Optional[FrameFetcher] = None,
        reasoning: Optional[ReasoningService] = None,
        events: Optional[EventChannel] = None,
    ):
        self.config = config or DetectorConfig()
        self.detection_state = detection_state
        self.monitored_apps = monitored_apps
        self.metrics_client = metrics_client
        self.frame_fetcher = frame_fetcher
        self.reasoning = reasoning
        self.events = events or EventChannel("detector")

        self._running = False
        self._enabled: Dict[AnomalySource, bool] = {AnomalySource.METRICS: False, AnomalySource.VISION: False}
        self._errors: Dict[AnomalySource, int] = {AnomalySource.METRICS: 0, AnomalySource.VISION: 0}
        self._last_check: Dict[AnomalySource, Optional[datetime]] = {
            AnomalySource.METRICS: None,
            AnomalySource.VISION: None,
        }
        self._tasks: Dict[AnomalySource, asyncio.Task] = {}

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    @property
    def running(self) -> bool:
        return self._running

    async def start(self) -> None:
        if self._running:
            logger.warning("Hybrid detector already running")
            return

        logger.info(
            f"Starting hybrid anomaly detection (mode={self.config.mode}, "
            f"metrics={self.config.metrics_interval}s, vision={self.config.vision_interval}s)"
        )
        self._running = True
        for source in self._errors:
            self._errors[source] = 0

        if self.config.mode in ("prometheus", "hybrid"):
            if self.metrics_client is None:
                logger.warning("No metrics client configured - metrics polling disabled")
            elif await self.metrics_client.is_available():
                self._enabled[AnomalySource.METRICS] = True
                self._tasks[AnomalySource.METRICS] = asyncio.create_task(self._metrics_loop())
                logger.info("Metrics polling started")
            else:
                logger.warning("Metrics backend not available - metrics polling disabled")

        if self.config.mode in ("vision", "hybrid"):
            if self.frame_fetcher and self.reasoning:
                self._enabled[AnomalySource.VISION] = True
                self._tasks[AnomalySource.VISION] = asyncio.create_task(self._vision_loop())
                logger.info("Vision polling started")
            else:
                logger.warning("Frame fetcher/reasoning not configured - vision polling disabled")

        await self.events.emit(EventType.DETECTION_STARTED, mode=self.config.mode)

    async def stop(self) -> None:
        current = asyncio.current_task()
        for source, task in list(self._tasks.items()):
            self._enabled[source] = False
            if task is current:
                continue
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._tasks.clear()

        if self._running:
            self._running = False
            logger.info("Stopped hybrid anomaly detection")
            await self.events.emit(EventType.DETECTION_STOPPED)

    async def update_config(self, config: DetectorConfig) -> None:
        """Swap configuration, restarting the loops if they were running."""
        was_running = self._running
        if was_running:
            await self.stop()
        self.config = config
        if was_running:
            await self.start()
        logger.info(f"Updated hybrid detection configuration: mode={config.mode}")

    async def _metrics_loop(self) -> None:
        while self._running and self._enabled[AnomalySource.METRICS]:
            await self.run_metrics_check()
            await asyncio.sleep(self.config.metrics_interval)

    async def _vision_loop(self) -> None:
        await asyncio.sleep(self.config.vision_initial_delay)
        while self._running and self._enabled[AnomalySource.VISION]:
            await self.run_vision_check()
            await asyncio.sleep(self.config.vision_interval)

    # -------------------------------------------------------------------------
    # Checks
    # -------------------------------------------------------------------------

    async def run_metrics_check(self) -> List[Anomaly]:
        """One metrics tick. Returns the anomalies that were emitted."""
        try:
            apps = await self.monitored_apps.list_active()
            if not apps:
                logger.debug("No monitored apps - skipping metrics check")
                return []

            result = await self.metrics_client.check_metrics(apps)
            self._last_check[AnomalySource.METRICS] = utcnow()
            await self.events.emit(
                EventType.METRICS_CHECKED,
                checked_apps=result.checked_apps,
                anomaly_count=len(result.anomalies),
            )
            await self._mark_healthy(AnomalySource.METRICS)
            return await self._process(result.anomalies, apps)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            await self._handle_error(e, AnomalySource.METRICS)
            return []

    async def run_vision_check(self) -> List[Anomaly]:
        """One vision tick. Returns the anomalies that were emitted."""
        try:
            if not await self.frame_fetcher.is_available():
                logger.debug("Vision service not available - skipping vision check")
                return []

            apps = await self.monitored_apps.list_active()
            found: List[Anomaly] = []
            for app in apps:
                frame = await self.frame_fetcher.get_latest_frame(app.name, app.namespace)
                if frame is None:
                    continue
                result = await self.reasoning.analyze_frames(
                    [frame],
                    context=VISION_CONTEXT.format(app=app.name, namespace=app.namespace),
                )
                if not result.success or result.data is None:
                    raise TransientExternalError(result.error or "Vision analysis failed", collaborator="reasoning")
                found.extend(self._normalize_vision(app, result.data))

            self._last_check[AnomalySource.VISION] = utcnow()
            await self._mark_healthy(AnomalySource.VISION)
            return await self._process(found, apps)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            await self._handle_error(e, AnomalySource.VISION)
            return []

    def _normalize_vision(self, app: MonitoredApp, analysis: Dict[str, Any]) -> List[Anomaly]:
        anomalies = []
        for raw in analysis.get("anomalies") or []:
            try:
                severity = Severity(str(raw.get("severity", "")).lower())
            except ValueError:
                logger.warning(f"Ignoring vision anomaly with unknown severity: {raw.get('severity')}")
                continue
            anomalies.append(Anomaly(
                type=raw.get("type", "visual_anomaly"),
                severity=severity,
                description=raw.get("description", ""),
                confidence=float(raw.get("confidence", 0.0)),
                source=AnomalySource.VISION,
                app_name=app.name,
                namespace=app.namespace,
                details={"frame_analysis": analysis},
            ))
        return anomalies

    # -------------------------------------------------------------------------
    # Filtering & Emission
    # -------------------------------------------------------------------------

    def meets_min_severity(self, severity: Severity) -> bool:
        return Severity(severity).at_least(Severity(self.config.min_severity))

    async def _process(self, anomalies: List[Anomaly], apps: List[MonitoredApp]) -> List[Anomaly]:
        if not anomalies:
            return []

        emitted = []
        for anomaly in anomalies:
            if not self.meets_min_severity(anomaly.severity):
                logger.info(
                    f"Skipping {anomaly.type} for {anomaly.app_name}: severity {anomaly.severity.value} "
                    f"below {self.config.min_severity}"
                )
                continue

            if anomaly.source == AnomalySource.VISION and anomaly.confidence < self.config.min_confidence:
                logger.debug(f"Skipping vision anomaly {anomaly.type}: confidence {anomaly.confidence:.2f}")
                continue

            should_trigger, reason = self.detection_state.should_trigger_incident(
                anomaly.type, anomaly.severity.value, anomaly.description, anomaly.app_name,
            )
            if not should_trigger:
                logger.info(f"Skipping {anomaly.type} for {anomaly.app_name}: {reason}")
                continue

            self.detection_state.record_anomaly(anomaly.type, anomaly.description)
            app = next(
                (a for a in apps if a.name == anomaly.app_name and a.namespace == anomaly.namespace),
                None,
            )
            logger.info(
                f"{anomaly.source.value} anomaly detected: {anomaly.type} "
                f"({anomaly.severity.value}) on {anomaly.app_name}"
            )
            await self.events.emit(
                EventType.ANOMALY_DETECTED,
                source=anomaly.source.value,
                anomaly=anomaly,
                app=app,
                timestamp=utcnow().isoformat(),
                frame_analysis=anomaly.details.get("frame_analysis"),
            )
            emitted.append(anomaly)
        return emitted

    # -------------------------------------------------------------------------
    # Health
    # -------------------------------------------------------------------------

    async def _mark_healthy(self, source: AnomalySource) -> None:
        self._errors[source] = 0
        await self.events.emit(EventType.DETECTION_HEALTHY, source=source.value)

    async def _handle_error(self, error: Exception, source: AnomalySource) -> None:
        self._errors[source] += 1
        count = self._errors[source]
        logger.error(f"{source.value} check error ({count} consecutive): {error}")

        if count >= self.config.max_consecutive_errors and self._enabled[source]:
            logger.error(f"Too many {source.value} errors - disabling {source.value} polling")
            self._enabled[source] = False

        await self.events.emit(
            EventType.DETECTION_ERROR,
            source=source.value,
            error=str(error),
            consecutive_errors=count,
        )

        if self._running and not any(self._enabled.values()):
            await self.stop()

    def get_status(self) -> Dict[str, Any]:
        return {
            "running": self._running,
            "mode": self.config.mode,
            "metrics_enabled": self._enabled[AnomalySource.METRICS],
            "vision_enabled": self._enabled[AnomalySource.VISION],
            "consecutive_metrics_errors": self._errors[AnomalySource.METRICS],
            "consecutive_vision_errors": self._errors[AnomalySource.VISION],
            "last_metrics_check": _iso(self._last_check[AnomalySource.METRICS]),
            "last_vision_check": _iso(self._last_check[AnomalySource.VISION]),
            "monitored_apps": self.monitored_apps.count(),
            "detection_state": self.detection_state.get_state(),
        }


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None
