"""
Investigation Orchestrator

Drives one incident through the OODA loop extended with a verify step:

    IDLE -> OBSERVING -> ORIENTING -> DECIDING -> ACTING -> VERIFYING -> DONE
                                                    ^           |
                                                    +-----------+  (next rung)
    FAILED is reachable from every non-terminal phase.

OBSERVING   evidence from pluggable collectors, up to a collection budget
ORIENTING   confidence-ranked hypotheses from the reasoning service
DECIDING    top hypothesis above the confidence threshold picks the starting
            rung of the escalation ladder (restart -> scale -> rollback -> code_fix)
ACTING      one remediation through the platform executor (or a code
            evolution), bounded by action count and per-type cooldown
VERIFYING   delayed health re-check with retries; failure climbs one rung

CONSTRAINTS:
- One orchestrator instance per incident run; listeners die with the run
- Cancellation is observed between phases and before internal waits, never
  mid-action
- Transient collaborator errors retry per phase (cumulative per incident)
- Every failure ends as phase FAILED with a structured error; nothing escapes
  investigate() / resume()
"""

import asyncio
import logging
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set, TypeVar

import pydantic
from pydantic import BaseModel, Field

from .collaborators import (
    ActionRequest,
    ActionResult,
    FrameFetcher,
    HealthStatus,
    PlatformExecutor,
    ReasoningResult,
    ReasoningService,
    require_success,
)
from .config import InvestigationConfig
from .errors import CancellationError, OpsControllerError, TerminalFailure, ValidationError
from .events import EventChannel, EventType, Handler
from .models import (
    ActionRecord,
    ActionStatus,
    ActionType,
    EvolutionStatus,
    Evidence,
    Hypothesis,
    HypothesisStatus,
    Incident,
    IncidentStatus,
    MonitoredApp,
    OODAPhase,
    Postmortem,
    utcnow,
)
from .prometheus_client import PrometheusClient
from .registry import ControlPlaneRegistry
from .repositories import LearnedPattern

logger = logging.getLogger("investigation")

T = TypeVar("T")

ESCALATION_LADDER: List[ActionType] = [
    ActionType.RESTART,
    ActionType.SCALE,
    ActionType.ROLLBACK,
    ActionType.CODE_FIX,
]

VALID_TRANSITIONS: Dict[OODAPhase, Set[OODAPhase]] = {
    OODAPhase.IDLE: {OODAPhase.OBSERVING, OODAPhase.FAILED},
    OODAPhase.OBSERVING: {OODAPhase.ORIENTING, OODAPhase.FAILED},
    OODAPhase.ORIENTING: {OODAPhase.DECIDING, OODAPhase.FAILED},
    OODAPhase.DECIDING: {OODAPhase.ACTING, OODAPhase.OBSERVING, OODAPhase.FAILED},
    OODAPhase.ACTING: {OODAPhase.VERIFYING, OODAPhase.FAILED},
    OODAPhase.VERIFYING: {OODAPhase.DONE, OODAPhase.ACTING, OODAPhase.FAILED},
    OODAPhase.DONE: set(),
    OODAPhase.FAILED: set(),
}


def determine_action_type(suggested_action: Optional[str]) -> ActionType:
    """Map a free-text suggested action onto the ladder (first rung if unknown)."""
    action = (suggested_action or "").lower()
    if "code_fix" in action or "code fix" in action or "fix code" in action:
        return ActionType.CODE_FIX
    if "rollback" in action or "undo" in action:
        return ActionType.ROLLBACK
    if "restart" in action or "reboot" in action:
        return ActionType.RESTART
    if "scale" in action:
        return ActionType.SCALE
    return ESCALATION_LADDER[0]


def claim_incident(incident: Incident, instance_id: str, stale_after: float,
                   now: Optional[datetime] = None) -> bool:
    """
    True if instance_id may own the incident's investigation.

    Free, already ours, or the owner's heartbeat is at least stale_after
    seconds old. stale_after=0 reclaims unconditionally (process restart).
    """
    if incident.owner_instance_id is None or incident.owner_instance_id == instance_id:
        return True
    if stale_after <= 0 or incident.heartbeat_at is None:
        return True
    now = now or utcnow()
    return (now - incident.heartbeat_at).total_seconds() >= stale_after


# -----------------------------------------------------------------------------
# Reasoning Payloads
# -----------------------------------------------------------------------------

class HypothesisPayload(BaseModel):
    root_cause: str = Field(..., min_length=1)
    confidence: float = Field(..., ge=0.0, le=1.0)
    supporting_evidence: List[str] = Field(default_factory=list)
    contradicting_evidence: List[str] = Field(default_factory=list)
    suggested_action: Optional[str] = None
    reasoning: str = ""


class HypothesisSetPayload(BaseModel):
    hypotheses: List[HypothesisPayload] = Field(default_factory=list)


class PostmortemPayload(BaseModel):
    summary: str = ""
    root_cause: str = ""
    lessons: List[str] = Field(default_factory=list)


# -----------------------------------------------------------------------------
# Evidence Collectors
# -----------------------------------------------------------------------------

class EvidenceCollector:
    """One source of evidence for the OBSERVING phase."""
    name = "collector"

    async def collect(self, incident: Incident, app_name: Optional[str]) -> List[Evidence]:
        raise NotImplementedError


class IncidentContextCollector(EvidenceCollector):
    name = "incident"

    async def collect(self, incident: Incident, app_name: Optional[str]) -> List[Evidence]:
        return [Evidence(
            incident_id=incident.id,
            type="event",
            source=incident.source,
            content={
                "description": incident.description or incident.title,
                "severity": incident.severity.value,
                "app": app_name,
            },
        )]


class HealthCollector(EvidenceCollector):
    name = "health"

    def __init__(self, executor: PlatformExecutor):
        self.executor = executor

    async def collect(self, incident: Incident, app_name: Optional[str]) -> List[Evidence]:
        if not app_name:
            return []
        health = await self.executor.check_health(incident.namespace, app_name)
        rate = f", error rate {health.error_rate * 100:.1f}%" if health.error_rate is not None else ""
        return [Evidence(
            incident_id=incident.id,
            type="metric",
            source="platform",
            content={
                "description": f"Health check for {app_name}: {'healthy' if health.healthy else 'unhealthy'}{rate}",
                "healthy": health.healthy,
                "error_rate": health.error_rate,
                "details": health.details,
            },
            confidence=1.0,
        )]


class MetricsCollector(EvidenceCollector):
    name = "metrics"

    def __init__(self, metrics_client: PrometheusClient):
        self.metrics_client = metrics_client

    async def collect(self, incident: Incident, app_name: Optional[str]) -> List[Evidence]:
        if not app_name:
            return []
        result = await self.metrics_client.check_metrics([MonitoredApp(name=app_name, namespace=incident.namespace)])
        if not result.anomalies:
            return [Evidence(
                incident_id=incident.id, type="metric", source="prometheus",
                content={"description": f"All metric checks within thresholds for {app_name}"},
                confidence=1.0,
            )]
        return [
            Evidence(
                incident_id=incident.id, type="metric", source="prometheus",
                content={
                    "description": a.description,
                    "anomaly_type": a.type,
                    "value": a.metric_value,
                    "threshold": a.threshold,
                },
                confidence=a.confidence,
            )
            for a in result.anomalies
        ]


class FrameCollector(EvidenceCollector):
    name = "vision"

    def __init__(self, frame_fetcher: FrameFetcher, reasoning: ReasoningService):
        self.frame_fetcher = frame_fetcher
        self.reasoning = reasoning

    async def collect(self, incident: Incident, app_name: Optional[str]) -> List[Evidence]:
        if not app_name:
            return []
        frame = await self.frame_fetcher.get_latest_frame(app_name, incident.namespace)
        if frame is None:
            return []
        data = require_success(
            await self.reasoning.analyze_frames([frame], context=f"Incident: {incident.title}"),
            "Frame analysis",
        )
        return [
            Evidence(
                incident_id=incident.id, type="frame", source="vision",
                content={"description": a.get("description", ""), "anomaly_type": a.get("type")},
                confidence=a.get("confidence"),
            )
            for a in data.get("anomalies") or []
        ]


# -----------------------------------------------------------------------------
# Orchestrator
# -----------------------------------------------------------------------------

class InvestigationOrchestrator:
    """Runs one incident investigation. Create a fresh instance per run."""

    def __init__(
        self,
        registry: ControlPlaneRegistry,
        reasoning: ReasoningService,
        executor: PlatformExecutor,
        evolution_engine: Optional[Any] = None,
        collectors: Optional[List[EvidenceCollector]] = None,
        config: Optional[InvestigationConfig] = None,
    ):
        self.registry = registry
        self.repos = registry.repositories
        self.reasoning = reasoning
        self.executor = executor
        self.evolution_engine = evolution_engine
        self.collectors = collectors or [IncidentContextCollector(), HealthCollector(executor)]
        self.config = config or registry.config.investigation
        self.events = EventChannel("unassigned", registry.event_sink)

        self.incident: Optional[Incident] = None
        self.token = None
        self.evidence: List[Evidence] = []
        self.hypotheses: List[Hypothesis] = []
        self.selected: Optional[Hypothesis] = None
        self.app_name: Optional[str] = None
        self.baseline_error_rate: Optional[float] = None
        self.pending_evolution_id: Optional[str] = None
        self.last_action: Optional[ActionRecord] = None
        self.last_verification: Optional[Dict[str, Any]] = None
        self._heartbeat_task: Optional[asyncio.Task] = None

    def on(self, event_type: Optional[EventType], handler: Handler) -> None:
        self.events.on(event_type, handler)

    @property
    def phase(self) -> OODAPhase:
        return self.incident.ooda_phase if self.incident else OODAPhase.IDLE

    # -------------------------------------------------------------------------
    # Entry Points
    # -------------------------------------------------------------------------

    async def investigate(self, incident: Incident) -> Incident:
        """Start a fresh investigation. Always returns the final incident."""
        if self._already_running(incident):
            return incident
        return await self._run(incident, resuming=False)

    async def resume(self, incident: Incident, stale_after: Optional[float] = None) -> Incident:
        """
        Continue from the last persisted phase with stored evidence/hypotheses.

        Refuses (returning the incident untouched) when this process is already
        running it or another live instance still owns it. stale_after defaults to the configured stale threshold.
        """
        if incident.ooda_phase in OODAPhase.terminal_states():
            logger.info(f"Incident {incident.id}: already {incident.ooda_phase.value}, nothing to resume")
            return incident
        if self._already_running(incident):
            return incident
        if stale_after is None:
            stale_after = self.config.stale_threshold
        if not claim_incident(incident, self.registry.instance_id, stale_after):
            logger.warning(f"Incident {incident.id}: owned by live instance {incident.owner_instance_id}")
            return incident
        return await self._run(incident, resuming=True)

    def _already_running(self, incident: Incident) -> bool:
        """One live run per incident per process; a second request is refused."""
        if self.registry.is_running(incident.id):
            logger.warning(f"Incident {incident.id}: investigation already running in this process")
            return True
        return False

    def cancel(self, reason: str = "Cancelled by user") -> bool:
        if self.incident is None:
            return False
        return self.registry.cancel(self.incident.id, reason)

    async def _run(self, incident: Incident, resuming: bool) -> Incident:
        self.incident = incident
        self.events.run_id = incident.id
        self.token = self.registry.register_investigation(incident.id, self)

        now = utcnow()
        incident.owner_instance_id = self.registry.instance_id
        incident.heartbeat_at = now
        if incident.investigation_started_at is None or not resuming:
            incident.investigation_started_at = now
        incident.status = IncidentStatus.INVESTIGATING
        incident.error = None
        await self.repos.incidents.save(incident)

        self.registry.detection_state.start_investigation(incident.id)
        self._heartbeat_task = asyncio.create_task(self._heartbeat_loop())
        logger.info(f"Incident {incident.id}: {'resuming' if resuming else 'starting'} investigation")
        await self.events.emit(EventType.INVESTIGATION_STARTED, incident_id=incident.id, resumed=resuming)

        try:
            await self._resolve_target()
            if resuming:
                await self._load_persisted_state()
            if self.incident.ooda_phase == OODAPhase.IDLE or not resuming:
                self.incident.ooda_phase = OODAPhase.IDLE
                await self._transition(OODAPhase.OBSERVING)
            await self._loop()
        except CancellationError as e:
            await self._cancelled(e)
        except TerminalFailure as e:
            await self._failed(e)
        except OpsControllerError as e:
            await self._failed(TerminalFailure(str(e), phase=self.phase.value, raw_error=str(e)))
        except Exception as e:
            logger.exception(f"Incident {incident.id}: unexpected error in {self.phase.value}")
            await self._failed(TerminalFailure(f"Unexpected error: {e}", phase=self.phase.value, raw_error=repr(e)))
        finally:
            await self._stop_heartbeat()
            self.registry.detection_state.complete_investigation(incident.id, self.app_name)
            self.registry.unregister(incident.id)
            self.events.close()

        return self.incident

    async def _loop(self) -> None:
        handlers: Dict[OODAPhase, Callable[[], Awaitable[OODAPhase]]] = {
            OODAPhase.OBSERVING: self._observe,
            OODAPhase.ORIENTING: self._orient,
            OODAPhase.DECIDING: self._decide,
            OODAPhase.ACTING: self._act,
            OODAPhase.VERIFYING: self._verify,
        }
        while self.incident.ooda_phase not in OODAPhase.terminal_states():
            phase = self.incident.ooda_phase
            self.token.raise_if_cancelled(phase.value)
            next_phase = await handlers[phase]()
            if next_phase == OODAPhase.DONE:
                await self._resolved()
            await self._transition(next_phase)

        await self.events.emit(
            EventType.INVESTIGATION_COMPLETED,
            incident_id=self.incident.id,
            status=self.incident.status.value,
            action=self.last_action.to_dict() if self.last_action else None,
        )

    # -------------------------------------------------------------------------
    # State
    # -------------------------------------------------------------------------

    async def _transition(self, to_phase: OODAPhase) -> None:
        from_phase = self.incident.ooda_phase
        if to_phase not in VALID_TRANSITIONS[from_phase]:
            raise TerminalFailure(
                f"Invalid transition {from_phase.value} -> {to_phase.value}", phase=from_phase.value,
            )
        self.incident.ooda_phase = to_phase
        await self.repos.incidents.save(self.incident)
        await self.repos.timeline.append(
            self.incident.id, "phase", f"Phase: {to_phase.value}", f"{from_phase.value} -> {to_phase.value}",
        )
        logger.info(f"Incident {self.incident.id}: {from_phase.value} -> {to_phase.value}")
        await self.events.emit(EventType.PHASE_CHANGED, from_phase=from_phase.value, to_phase=to_phase.value)

    async def _resolve_target(self) -> None:
        self.app_name = self.incident.app_name
        if self.incident.monitored_app_id:
            app = await self.repos.monitored_apps.get(self.incident.monitored_app_id)
            if app is not None:
                self.app_name = self.app_name or app.name
                self.incident.namespace = app.namespace
                if app.development_cycle_id and not self.incident.linked_development_cycle_id:
                    self.incident.linked_development_cycle_id = app.development_cycle_id
            else:
                logger.warning(f"Incident {self.incident.id}: monitored app {self.incident.monitored_app_id} not found")
        if self.app_name and not self.incident.linked_development_cycle_id:
            app = await self.repos.monitored_apps.get_by_name(self.app_name, self.incident.namespace)
            if app is not None and app.development_cycle_id:
                self.incident.linked_development_cycle_id = app.development_cycle_id
        self.incident.app_name = self.app_name

    async def _load_persisted_state(self) -> None:
        incident_id = self.incident.id
        self.evidence = await self.repos.evidence.list_for_incident(incident_id)
        self.hypotheses = sorted(
            await self.repos.hypotheses.list_for_incident(incident_id),
            key=lambda h: h.confidence, reverse=True,
        )
        self.selected = next((h for h in self.hypotheses if h.status == HypothesisStatus.CONFIRMED), None)
        actions = sorted(await self.repos.actions.list_for_incident(incident_id), key=lambda a: a.executed_at)
        self.last_action = actions[-1] if actions else None
        self.baseline_error_rate = self._error_rate_from_evidence()
        pending = [e for e in await self.repos.evolutions.find_by_incident(incident_id) if e.is_pending()]
        self.pending_evolution_id = pending[0].id if pending else None
        logger.info(
            f"Incident {incident_id}: restored {len(self.evidence)} evidence, "
            f"{len(self.hypotheses)} hypotheses, {len(actions)} actions"
        )

    async def _with_retries(self, phase: OODAPhase, operation: Callable[[], Awaitable[T]]) -> T:
        """Run a collaborator call, retrying transient errors within the phase budget."""
        while True:
            self.token.raise_if_cancelled(phase.value)
            try:
                return await operation()
            except (ValidationError, CancellationError, TerminalFailure):
                raise
            except Exception as e:
                retries = self.incident.phase_retries.get(phase.value, 0)
                if retries >= self.config.max_phase_retries:
                    raise TerminalFailure(
                        f"{phase.value} failed after {retries} retries: {e}",
                        phase=phase.value,
                        retry_counts=self.incident.phase_retries,
                        last_action=self.last_action.to_dict() if self.last_action else None,
                        last_verification=self.last_verification,
                        raw_error=str(e),
                    ) from e
                self.incident.phase_retries[phase.value] = retries + 1
                await self.repos.incidents.save(self.incident)
                logger.warning(f"Incident {self.incident.id}: {phase.value} transient error, retry {retries + 1}: {e}")
                await self.token.sleep(self.config.phase_retry_delay, phase.value)

    # -------------------------------------------------------------------------
    # OBSERVING
    # -------------------------------------------------------------------------

    async def _observe(self) -> OODAPhase:
        budget = self.config.max_evidence - len(self.evidence)
        for collector in self.collectors:
            if budget <= 0:
                logger.info(f"Incident {self.incident.id}: evidence budget reached")
                break
            self.token.raise_if_cancelled(OODAPhase.OBSERVING.value)
            try:
                collected = await collector.collect(self.incident, self.app_name)
            except CancellationError:
                raise
            except Exception as e:
                logger.warning(f"Incident {self.incident.id}: {collector.name} collector failed: {e}")
                continue

            for evidence in collected[:budget]:
                await self.repos.evidence.create(evidence)
                self.evidence.append(evidence)
                await self.events.emit(EventType.EVIDENCE_COLLECTED, evidence=evidence.to_dict())
            budget -= min(len(collected), budget)

        if self.baseline_error_rate is None:
            self.baseline_error_rate = self._error_rate_from_evidence()
        logger.info(f"Incident {self.incident.id}: {len(self.evidence)} evidence items")
        return OODAPhase.ORIENTING

    def _error_rate_from_evidence(self) -> Optional[float]:
        for evidence in self.evidence:
            rate = evidence.content.get("error_rate")
            if rate is not None:
                return float(rate)
        return None

    # -------------------------------------------------------------------------
    # ORIENTING
    # -------------------------------------------------------------------------

    async def _orient(self) -> OODAPhase:
        previous = [h.to_dict() for h in self.hypotheses]
        evidence = [e.to_dict() for e in self.evidence]

        async def generate() -> ReasoningResult:
            result = await self.reasoning.generate_hypotheses(
                evidence,
                previous_hypotheses=previous,
                allowed_actions=[a.value for a in ESCALATION_LADDER],
                thought_signature=self.incident.thought_signature,
            )
            require_success(result, "Hypothesis generation")
            return result

        result = await self._with_retries(OODAPhase.ORIENTING, generate)
        if result.thought_signature:
            self.incident.thought_signature = result.thought_signature

        try:
            payload = HypothesisSetPayload.model_validate(result.data)
        except pydantic.ValidationError as e:
            raise ValidationError(f"Invalid hypotheses from reasoning service: {e}") from e
        if not payload.hypotheses:
            raise TerminalFailure("Reasoning service returned no hypotheses", phase=OODAPhase.ORIENTING.value)

        boosts = await self._pattern_boosts()
        for item in payload.hypotheses:
            confidence = item.confidence
            action = determine_action_type(item.suggested_action).value
            if action in boosts:
                confidence = min(1.0, confidence + boosts[action])
            hypothesis = Hypothesis(
                incident_id=self.incident.id,
                title=item.root_cause,
                confidence=confidence,
                supporting_evidence=item.supporting_evidence,
                contradicting_evidence=item.contradicting_evidence,
                suggested_action=item.suggested_action,
                reasoning=item.reasoning,
            )
            await self.repos.hypotheses.create(hypothesis)
            self.hypotheses.append(hypothesis)
            await self.events.emit(EventType.HYPOTHESIS_GENERATED, hypothesis=hypothesis.to_dict())

        self.hypotheses.sort(key=lambda h: h.confidence, reverse=True)
        return OODAPhase.DECIDING

    async def _pattern_boosts(self) -> Dict[str, float]:
        text = f"{self.incident.title} {self.incident.description}"
        boosts: Dict[str, float] = {}
        for pattern in await self.repos.patterns.find_matching(text):
            boost = min(0.15, 0.05 * pattern.occurrences)
            boosts[pattern.resolution_action] = max(boosts.get(pattern.resolution_action, 0.0), boost)
        if boosts:
            logger.info(f"Incident {self.incident.id}: learned pattern boosts {boosts}")
        return boosts

    # -------------------------------------------------------------------------
    # DECIDING
    # -------------------------------------------------------------------------

    async def _decide(self) -> OODAPhase:
        threshold = self.config.confidence_threshold
        candidates = [h for h in self.hypotheses if h.status != HypothesisStatus.REJECTED]
        top = candidates[0] if candidates else None

        if top is None or top.confidence < threshold:
            best = f"{top.confidence:.2f}" if top else "none"
            retries = self.incident.phase_retries.get(OODAPhase.DECIDING.value, 0)
            if retries >= self.config.max_phase_retries:
                raise TerminalFailure(
                    f"No hypothesis above confidence threshold {threshold:.2f} (best {best})",
                    phase=OODAPhase.DECIDING.value,
                    retry_counts=self.incident.phase_retries,
                )
            self.incident.phase_retries[OODAPhase.DECIDING.value] = retries + 1
            logger.warning(f"Incident {self.incident.id}: best hypothesis {best} below {threshold:.2f}, re-observing")
            return OODAPhase.OBSERVING

        for hypothesis in candidates:
            if hypothesis is top:
                continue
            if hypothesis.status == HypothesisStatus.CONFIRMED:
                hypothesis.status = HypothesisStatus.PROPOSED
                await self.repos.hypotheses.save(hypothesis)
        top.status = HypothesisStatus.CONFIRMED
        await self.repos.hypotheses.save(top)
        self.selected = top

        rung = ESCALATION_LADDER.index(determine_action_type(top.suggested_action))
        self.incident.escalation_level = max(self.incident.escalation_level, rung)
        logger.info(
            f"Incident {self.incident.id}: selected '{top.title}' ({top.confidence:.2f}), "
            f"starting at {ESCALATION_LADDER[self.incident.escalation_level].value}"
        )
        return OODAPhase.ACTING

    # -------------------------------------------------------------------------
    # ACTING
    # -------------------------------------------------------------------------

    def _failure(self, message: str, phase: OODAPhase) -> TerminalFailure:
        return TerminalFailure(
            message,
            phase=phase.value,
            retry_counts=self.incident.phase_retries,
            last_action=self.last_action.to_dict() if self.last_action else None,
            last_verification=self.last_verification,
        )

    async def _act(self) -> OODAPhase:
        if not self.app_name:
            raise self._failure("No remediation target for incident", OODAPhase.ACTING)

        while True:
            self.token.raise_if_cancelled(OODAPhase.ACTING.value)
            actions = await self.repos.actions.list_for_incident(self.incident.id)
            if len(actions) >= self.config.max_actions_per_incident:
                raise self._failure(
                    f"Action limit reached ({self.config.max_actions_per_incident})", OODAPhase.ACTING,
                )
            if self.incident.escalation_level >= len(ESCALATION_LADDER):
                raise self._failure("Escalation ladder exhausted", OODAPhase.ACTING)

            action_type = ESCALATION_LADDER[self.incident.escalation_level]
            if self._in_cooldown(actions, action_type):
                logger.warning(f"Incident {self.incident.id}: {action_type.value} on {self.app_name} in cooldown")
                await self._escalate(f"{action_type.value} in cooldown")
                continue

            result = await self._execute(action_type)
            record = ActionRecord(
                incident_id=self.incident.id,
                action_type=action_type,
                target=f"{self.incident.namespace}/{self.app_name}",
                parameters=self._parameters(action_type),
                status=ActionStatus.COMPLETED if result.success else ActionStatus.FAILED,
                result=result.message,
                dry_run=result.dry_run,
                hypothesis_id=self.selected.id if self.selected else None,
                details=result.details,
            )
            await self.repos.actions.create(record)
            self.last_action = record
            await self.repos.timeline.append(
                self.incident.id, "action", f"Action: {action_type.value}", result.message,
                {"success": result.success, "dry_run": result.dry_run},
            )
            await self.events.emit(EventType.ACTION_EXECUTED, action=record.to_dict())

            if result.success:
                self.incident.status = IncidentStatus.MITIGATING
                return OODAPhase.VERIFYING
            await self._escalate(f"{action_type.value} failed: {result.message}")

    def _in_cooldown(self, actions: List[ActionRecord], action_type: ActionType) -> bool:
        target = f"{self.incident.namespace}/{self.app_name}"
        now = utcnow()
        for action in actions:
            if action.action_type == action_type and action.target == target and action.status == ActionStatus.COMPLETED:
                if (now - action.executed_at).total_seconds() < self.config.action_cooldown:
                    return True
        return False

    async def _escalate(self, reason: str) -> None:
        self.incident.escalation_level += 1
        await self.repos.incidents.save(self.incident)
        next_rung = (
            ESCALATION_LADDER[self.incident.escalation_level].value
            if self.incident.escalation_level < len(ESCALATION_LADDER) else None
        )
        logger.info(f"Incident {self.incident.id}: escalating ({reason}) -> {next_rung}")
        await self.events.emit(
            EventType.ESCALATION_STEP, level=self.incident.escalation_level, next_action=next_rung, reason=reason,
        )

    @staticmethod
    def _parameters(action_type: ActionType) -> Dict[str, Any]:
        if action_type == ActionType.SCALE:
            return {"replicas": 3}
        return {}

    async def _execute(self, action_type: ActionType) -> ActionResult:
        if action_type == ActionType.CODE_FIX:
            return await self._trigger_code_evolution()

        request = ActionRequest(
            action_type=action_type.value,
            namespace=self.incident.namespace,
            deployment=self.app_name,
            parameters=self._parameters(action_type),
            dry_run=self.config.dry_run,
            reason=self.selected.title if self.selected else self.incident.title,
            incident_id=self.incident.id,
        )
        try:
            return await self._with_retries(OODAPhase.ACTING, lambda: self.executor.execute(request))
        except TerminalFailure as e:
            return ActionResult(success=False, message=str(e))

    async def _trigger_code_evolution(self) -> ActionResult:
        target = f"{self.incident.namespace}/{self.app_name}"
        cycle_id = self.incident.linked_development_cycle_id
        if not cycle_id:
            return ActionResult(False, f"No development cycle found for {target}. Manual code fix required.")
        if self.evolution_engine is None:
            return ActionResult(False, "Code evolution is not configured")
        if self.config.dry_run:
            return ActionResult(True, f"Dry run: would request code evolution for cycle {cycle_id}", dry_run=True)

        engine = self.evolution_engine
        ok, message, evolution = await engine.request_evolution(
            cycle_id, self._fix_description(), incident_id=self.incident.id,
        )
        if not ok:
            return ActionResult(False, message)

        await engine.link_to_incident(evolution.id, self.incident.id)
        self.registry.detection_state.register_pending_evolution(self.app_name, evolution.id)
        self.pending_evolution_id = evolution.id

        if not engine.config.auto_approve:
            return ActionResult(
                True, f"Code evolution triggered (awaiting manual approval): {evolution.id}",
                details={"evolution_id": evolution.id},
            )

        ok, message, _ = await engine.run_full_evolution_cycle(evolution.id)
        if not ok:
            refreshed = await engine.get_evolution(evolution.id)
            if refreshed is not None and refreshed.is_pending():
                return ActionResult(
                    True, f"Code evolution triggered (awaiting manual approval): {evolution.id}",
                    details={"evolution_id": evolution.id, "reason": message},
                )
            return ActionResult(False, f"Code evolution failed: {message}", details={"evolution_id": evolution.id})

        ok, message, details = await engine.trigger_rebuild_and_redeploy(evolution.id)
        if ok:
            return ActionResult(True, f"Code evolution applied and redeployed: {evolution.id}",
                                details={"evolution_id": evolution.id, **details})
        return ActionResult(True, f"Code evolution applied but rebuild failed: {message}",
                            details={"evolution_id": evolution.id})

    def _fix_description(self) -> str:
        parts = []
        if self.selected:
            parts.append(f"Root cause: {self.selected.title}")
            if self.selected.reasoning:
                parts.append(f"Reasoning: {self.selected.reasoning}")
        else:
            parts.append(f"Incident: {self.incident.title}")

        logs = [e.description for e in self.evidence if e.type == "log"][:10]
        if logs:
            parts.append("Error messages from logs:\n" + "\n".join(f"- {line}" for line in logs))
        metrics = [e.description for e in self.evidence if e.type == "metric"][:3]
        if metrics:
            parts.append("Metric evidence:\n" + "\n".join(f"- {line}" for line in metrics))
        parts.append(
            "Fix the code so the failing requests succeed; error handling must return "
            "proper responses instead of throwing."
        )
        return "\n\n".join(parts)

    # -------------------------------------------------------------------------
    # VERIFYING
    # -------------------------------------------------------------------------

    async def _verify(self) -> OODAPhase:
        phase = OODAPhase.VERIFYING.value
        action = self.last_action

        if action is not None and action.dry_run:
            self.last_verification = {"success": True, "dry_run": True, "message": "Dry run: nothing to verify"}
            await self.events.emit(EventType.VERIFICATION_COMPLETED, **self.last_verification)
            return OODAPhase.DONE

        await self.token.sleep(self.config.verification_wait, phase)

        evolution_result = await self._wait_for_evolution()
        if evolution_result is not None and not evolution_result["success"]:
            return await self._verification_failed(evolution_result)

        attempts = 0
        health: Optional[HealthStatus] = None
        while attempts < self.config.max_verification_attempts:
            attempts += 1
            try:
                health = await self.executor.check_health(self.incident.namespace, self.app_name)
            except CancellationError:
                raise
            except Exception as e:
                logger.warning(f"Incident {self.incident.id}: health check failed: {e}")
                health = HealthStatus(healthy=False, details={"error": str(e)})
            if health.healthy:
                break
            if attempts < self.config.max_verification_attempts:
                await self.token.sleep(self.config.verification_retry_delay, phase)

        result = {
            "success": bool(health and health.healthy),
            "attempts": attempts,
            "error_rate": health.error_rate if health else None,
            "details": health.details if health else {},
            "action": action.action_type.value if action else None,
        }
        if evolution_result is not None:
            result["evolution"] = evolution_result
        if not result["success"]:
            return await self._verification_failed(result)

        self.last_verification = result
        await self.events.emit(EventType.VERIFICATION_COMPLETED, **result)

        if self._temporary_fix(action):
            logger.info(
                f"Incident {self.incident.id}: {action.action_type.value} masked a code defect "
                f"(baseline error rate {self.baseline_error_rate:.3f}), escalating to code fix"
            )
            self.incident.escalation_level = ESCALATION_LADDER.index(ActionType.CODE_FIX)
            await self.events.emit(
                EventType.ESCALATION_STEP, level=self.incident.escalation_level,
                next_action=ActionType.CODE_FIX.value, reason="temporary fix",
            )
            return OODAPhase.ACTING
        return OODAPhase.DONE

    def _temporary_fix(self, action: Optional[ActionRecord]) -> bool:
        return (
            action is not None
            and action.action_type in (ActionType.RESTART, ActionType.SCALE)
            and self.incident.linked_development_cycle_id is not None
            and self.evolution_engine is not None
            and (self.baseline_error_rate or 0) > 0
        )

    async def _verification_failed(self, result: Dict[str, Any]) -> OODAPhase:
        result["success"] = False
        self.last_verification = result
        await self.events.emit(EventType.VERIFICATION_COMPLETED, **result)
        await self._escalate("verification failed")
        return OODAPhase.ACTING

    async def _wait_for_evolution(self) -> Optional[Dict[str, Any]]:
        """Block until the incident's evolution is terminal (bounded)."""
        if self.pending_evolution_id is None or self.evolution_engine is None:
            return None

        evolution_id = self.pending_evolution_id
        waited = 0.0
        while True:
            evolution = await self.evolution_engine.get_evolution(evolution_id)
            if evolution is None:
                return {"success": False, "evolution_id": evolution_id, "message": "Evolution not found"}
            if evolution.status in EvolutionStatus.terminal_states():
                self.pending_evolution_id = None
                if evolution.status == EvolutionStatus.APPLIED:
                    return {"success": True, "evolution_id": evolution_id, "status": evolution.status.value}
                return {
                    "success": False,
                    "evolution_id": evolution_id,
                    "status": evolution.status.value,
                    "message": evolution.error or f"Evolution {evolution.status.value}",
                }
            if waited >= self.config.evolution_wait_timeout:
                return {
                    "success": False,
                    "evolution_id": evolution_id,
                    "status": evolution.status.value,
                    "message": f"Timed out after {self.config.evolution_wait_timeout:.0f}s waiting for evolution",
                }
            await self.token.sleep(self.config.evolution_poll_interval, OODAPhase.VERIFYING.value)
            waited += max(self.config.evolution_poll_interval, 0.001)

    # -------------------------------------------------------------------------
    # Terminal Outcomes
    # -------------------------------------------------------------------------

    async def _resolved(self) -> None:
        if self.last_action is not None and self.last_action.dry_run:
            self.incident.status = IncidentStatus.ACTIVE
        else:
            self.incident.status = IncidentStatus.RESOLVED
            self.incident.resolved_at = utcnow()
            await self._learn_pattern()
            await self._write_postmortem()
        self.incident.owner_instance_id = None

    async def _failed(self, failure: TerminalFailure) -> None:
        logger.error(f"Incident {self.incident.id}: investigation failed in {failure.phase}: {failure}")
        if failure.last_action is None and self.last_action is not None:
            failure.last_action = self.last_action.to_dict()
        if failure.last_verification is None:
            failure.last_verification = self.last_verification
        if not failure.retry_counts:
            failure.retry_counts = dict(self.incident.phase_retries)

        self.incident.error = failure.to_dict()
        self.incident.owner_instance_id = None
        from_phase = self.incident.ooda_phase
        if from_phase not in OODAPhase.terminal_states():
            self.incident.ooda_phase = OODAPhase.FAILED
            await self.events.emit(
                EventType.PHASE_CHANGED, from_phase=from_phase.value, to_phase=OODAPhase.FAILED.value,
            )
        if self.incident.status == IncidentStatus.MITIGATING:
            self.incident.status = IncidentStatus.INVESTIGATING
        await self.repos.incidents.save(self.incident)
        await self.repos.timeline.append(self.incident.id, "phase", "Investigation failed", str(failure))
        await self.events.emit(EventType.INVESTIGATION_FAILED, incident_id=self.incident.id, error=failure.to_dict())

    async def _cancelled(self, error: CancellationError) -> None:
        logger.info(f"Incident {self.incident.id}: {error}")
        self.incident.error = {**error.to_dict(), "reason": self.token.reason, "phase": error.phase}
        self.incident.owner_instance_id = None
        self.incident.status = IncidentStatus.ACTIVE
        await self.repos.incidents.save(self.incident)
        await self.events.emit(
            EventType.INVESTIGATION_CANCELLED, incident_id=self.incident.id, reason=self.token.reason,
        )

    async def _write_postmortem(self) -> None:
        actions = await self.repos.actions.list_for_incident(self.incident.id)
        try:
            result = await self.reasoning.generate_postmortem(
                self.incident.to_dict(),
                [e.to_dict() for e in self.evidence],
                [h.to_dict() for h in self.hypotheses],
                [a.to_dict() for a in actions],
            )
            payload = PostmortemPayload.model_validate(require_success(result, "Postmortem"))
        except (OpsControllerError, pydantic.ValidationError) as e:
            logger.warning(f"Incident {self.incident.id}: postmortem generation failed: {e}")
            return

        timeline = [entry.title for entry in await self.repos.timeline.for_entity(self.incident.id)]
        await self.repos.postmortems.create(Postmortem(
            incident_id=self.incident.id,
            summary=payload.summary,
            root_cause=payload.root_cause or (self.selected.title if self.selected else ""),
            timeline=timeline,
            lessons=payload.lessons,
        ))

    async def _learn_pattern(self) -> None:
        if self.last_action is None:
            return
        action = self.last_action.action_type.value
        keywords = [w for w in self.incident.title.lower().replace("[", " ").replace("]", " ").split() if len(w) > 4][:5]
        if not keywords:
            return
        for pattern in await self.repos.patterns.find_matching(" ".join(keywords)):
            if pattern.resolution_action == action:
                pattern.occurrences += 1
                await self.repos.patterns.save(pattern)
                return
        await self.repos.patterns.create(LearnedPattern(
            name=self.incident.title[:80], trigger_keywords=keywords, resolution_action=action,
        ))

    # -------------------------------------------------------------------------
    # Heartbeat
    # -------------------------------------------------------------------------

    async def _heartbeat_loop(self) -> None:
        while True:
            await asyncio.sleep(self.config.heartbeat_interval)
            try:
                now = utcnow()
                self.incident.heartbeat_at = now
                await self.repos.incidents.update(self.incident.id, heartbeat_at=now)
            except Exception as e:
                logger.error(f"Incident {self.incident.id}: heartbeat failed: {e}")

    async def _stop_heartbeat(self) -> None:
        if self._heartbeat_task:
            self._heartbeat_task.cancel()
            try:
                await self._heartbeat_task
            except asyncio.CancelledError:
                pass
            self._heartbeat_task = None
