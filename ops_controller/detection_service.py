"""
Detection Service

Glue between the hybrid anomaly detector and the investigation orchestrator:

    anomaly:detected -> incident (deduplicated) -> investigation task

Also owns startup recovery: development cycles left mid-pipeline and
incidents whose investigation owner is gone are resumed with fresh
orchestrator instances.
"""

import asyncio
import logging
from datetime import timedelta
from typing import Any, Callable, Dict, List, Optional

from .anomaly_detector import HybridAnomalyDetector
from .development import DevelopmentOrchestrator
from .errors import ResourceLimitError
from .events import EventChannel, EventType, RunEvent
from .investigation import InvestigationOrchestrator, claim_incident
from .models import (
    Anomaly,
    DevelopmentCycle,
    Incident,
    MonitoredApp,
    OODAPhase,
    new_id,
    utcnow,
)
from .registry import ControlPlaneRegistry

logger = logging.getLogger("detection_service")

ANOMALY_TYPE_LABELS: Dict[str, str] = {
    "error_spike": "Error Rate Spike Detected",
    "high_error_rate": "Error Rate Spike Detected",
    "latency_increase": "Latency Increase Detected",
    "high_latency": "Latency Increase Detected",
    "resource_exhaustion": "Resource Exhaustion Detected",
    "memory_pressure": "Memory Pressure Detected",
    "cpu_pressure": "CPU Pressure Detected",
    "pod_restart": "Pod Restarts Detected",
    "deployment_event": "Deployment Issue Detected",
    "traffic_anomaly": "Traffic Anomaly Detected",
}

DEFAULT_LABEL = "Anomaly Detected"
DEDUP_WINDOW = timedelta(minutes=30)


def type_label(anomaly_type: str) -> str:
    return ANOMALY_TYPE_LABELS.get(anomaly_type, DEFAULT_LABEL)


def incident_title(anomaly: Anomaly, prefix: str) -> str:
    """'[checkout-svc] Error Rate Spike Detected: Error rate 42.0% exceeds ...'"""
    description = anomaly.description
    if len(description) > 50:
        description = description[:47] + "..."
    return f"[{prefix}] {type_label(anomaly.type)}: {description}"


class DetectionService:
    """Turns detected anomalies into incidents and runs their investigations."""

    def __init__(
        self,
        registry: ControlPlaneRegistry,
        detector: HybridAnomalyDetector,
        investigation_factory: Callable[[], InvestigationOrchestrator],
        development_factory: Optional[Callable[[], DevelopmentOrchestrator]] = None,
        namespace: str = "development",
    ):
        self.registry = registry
        self.repos = registry.repositories
        self.detector = detector
        self.investigation_factory = investigation_factory
        self.development_factory = development_factory
        self.namespace = namespace
        self.events = EventChannel("detection-service", registry.event_sink)

        self._running = False
        self._incidents_created = 0

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    @property
    def running(self) -> bool:
        return self._running

    async def start(self) -> None:
        if self._running:
            logger.warning("Detection service already running")
            return
        self._running = True
        self.detector.events.on(EventType.ANOMALY_DETECTED, self._on_anomaly)
        self.registry.detection_state.start()
        await self.detector.start()
        logger.info("Detection service started")

    async def stop(self) -> None:
        if not self._running:
            return
        self._running = False
        self.detector.events.off(EventType.ANOMALY_DETECTED, self._on_anomaly)
        await self.detector.stop()
        logger.info("Detection service stopped")

    async def _on_anomaly(self, event: RunEvent) -> None:
        anomaly = event.payload.get("anomaly")
        if not isinstance(anomaly, Anomaly):
            logger.warning(f"Ignoring anomaly event without an anomaly: {event.payload}")
            return
        try:
            await self.handle_anomaly(anomaly, event.payload.get("app"))
        except Exception as e:
            logger.error(f"Failed to handle anomaly {anomaly.type}: {e}")

    # -------------------------------------------------------------------------
    # Anomaly -> Incident
    # -------------------------------------------------------------------------

    async def handle_anomaly(self, anomaly: Anomaly, app: Optional[MonitoredApp] = None) -> Optional[Incident]:
        """
        Create (or fold into an existing) incident and start its investigation.

        Returns the new incident, or None when the anomaly was folded into an
        unresolved incident for the same app and type.
        """
        namespace = (app.namespace if app else None) or anomaly.namespace or self.namespace
        app_name = (app.name if app else None) or anomaly.app_name
        logger.info(
            f"Processing {anomaly.source.value} anomaly {anomaly.type} ({anomaly.severity.value}) "
            f"for {app_name or 'unknown app'} in {namespace}"
        )

        existing = await self._find_unresolved(anomaly.type, namespace, app_name)
        if existing is not None:
            existing.description = (
                f"{existing.description}\n\n[{utcnow().isoformat()}] Re-detected: {anomaly.description} "
                f"(Confidence: {round(anomaly.confidence * 100)}%)"
            )
            await self.repos.incidents.save(existing)
            logger.info(f"Anomaly {anomaly.type} folded into unresolved incident {existing.id}")
            return None

        incident = await self.create_incident(anomaly, app, namespace)
        self.registry.detection_state.record_anomaly(anomaly.type, anomaly.description, incident.id)
        self.registry.detection_state.start_investigation(incident.id)
        await self.events.emit(EventType.INCIDENT_CREATED, incident=incident.to_dict(), anomaly=anomaly.to_dict())

        self._launch_investigation(incident, resume=False)
        return incident

    async def create_incident(self, anomaly: Anomaly, app: Optional[MonitoredApp], namespace: str) -> Incident:
        app_name = (app.name if app else None) or anomaly.app_name
        incident = Incident(
            id=new_id(),
            title=incident_title(anomaly, app_name or anomaly.source.value),
            severity=anomaly.severity,
            namespace=namespace,
            description=(
                f"Automatically detected: {anomaly.description}\n\n"
                f"Confidence: {round(anomaly.confidence * 100)}%\n"
                f"App: {app_name or 'Unknown'}\nNamespace: {namespace}"
            ),
            source=anomaly.source.value,
            monitored_app_id=app.id if app else None,
            app_name=app_name,
            linked_development_cycle_id=app.development_cycle_id if app else None,
        )
        await self.repos.incidents.create(incident)
        await self.repos.timeline.append(incident.id, "incident", "Incident created", incident.title,
                                         {"anomaly": anomaly.to_dict()})
        self._incidents_created += 1
        logger.info(f"Incident {incident.id} created: {incident.title}")
        return incident

    async def _find_unresolved(self, anomaly_type: str, namespace: str, app_name: Optional[str]) -> Optional[Incident]:
        label = type_label(anomaly_type)
        since = utcnow() - DEDUP_WINDOW

        def matches(incident: Incident) -> bool:
            return (
                incident.namespace == namespace
                and incident.created_at >= since
                and not incident.is_terminal()
                and incident.ooda_phase != OODAPhase.FAILED
                and label in incident.title
                and (not app_name or f"[{app_name}]" in incident.title)
            )

        found = await self.repos.incidents.list(matches)
        return found[0] if found else None

    # -------------------------------------------------------------------------
    # Tasks
    # -------------------------------------------------------------------------

    def _launch_investigation(self, incident: Incident, resume: bool) -> asyncio.Task:
        orchestrator = self.investigation_factory()
        task = asyncio.create_task(self._investigate(orchestrator, incident, resume))
        self.registry.track_task(incident.id, task)
        return task

    async def _investigate(self, orchestrator: InvestigationOrchestrator, incident: Incident, resume: bool) -> None:
        try:
            if resume:
                await orchestrator.resume(incident, stale_after=0)
            else:
                await orchestrator.investigate(incident)
        except Exception as e:
            logger.error(f"Incident {incident.id}: investigation task crashed: {e}")

    def _launch_cycle(self, cycle: DevelopmentCycle) -> asyncio.Task:
        orchestrator = self.development_factory()
        task = asyncio.create_task(self._resume_cycle(orchestrator, cycle))
        self.registry.track_task(cycle.id, task)
        return task

    async def _resume_cycle(self, orchestrator: DevelopmentOrchestrator, cycle: DevelopmentCycle) -> None:
        try:
            await orchestrator.resume(cycle)
        except ResourceLimitError as e:
            logger.warning(f"Cycle {cycle.id}: not resumed: {e}")
        except Exception as e:
            logger.error(f"Cycle {cycle.id}: resume task crashed: {e}")

    # -------------------------------------------------------------------------
    # Startup Recovery
    # -------------------------------------------------------------------------

    async def recover_interrupted_work(self) -> Dict[str, List[str]]:
        """
        Resume every non-terminal cycle and every reclaimable incident.

        Runs once at process start, so previous owners are known to be gone
        and incidents are reclaimed with a zero stale threshold.
        """
        resumed_cycles: List[str] = []
        if self.development_factory is not None:
            for cycle in await self.repos.cycles.list(lambda c: not c.is_terminal()):
                if self.registry.is_running(cycle.id):
                    continue
                logger.info(f"Cycle {cycle.id}: recovering from {cycle.phase.value}")
                self._launch_cycle(cycle)
                resumed_cycles.append(cycle.id)

        resumed_incidents: List[str] = []
        for incident in await self.repos.incidents.list(self._recoverable):
            if self.registry.is_running(incident.id):
                continue
            if not claim_incident(incident, self.registry.instance_id, 0):
                continue
            logger.info(f"Incident {incident.id}: recovering investigation from {incident.ooda_phase.value}")
            self._launch_investigation(incident, resume=True)
            resumed_incidents.append(incident.id)

        logger.info(
            f"Recovery: resumed {len(resumed_cycles)} cycles and {len(resumed_incidents)} investigations"
        )
        return {"cycles": resumed_cycles, "incidents": resumed_incidents}

    @staticmethod
    def _recoverable(incident: Incident) -> bool:
        """Interrupted mid-loop, or saved but never past IDLE."""
        if incident.is_terminal():
            return False
        if incident.ooda_phase != OODAPhase.IDLE and incident.ooda_phase not in OODAPhase.active_states():
            return False
        return not (incident.error and incident.error.get("type") == "CancellationError")

    def get_status(self) -> Dict[str, Any]:
        return {
            "running": self._running,
            "incidents_created": self._incidents_created,
            "active_investigations": self.registry.active_investigation_ids(),
            "detector": self.detector.get_status(),
        }
