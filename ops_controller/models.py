"""
Data model for the ops controller.

Entities:
- Incident (+ Evidence, Hypothesis, ActionRecord, TimelineEntry, Postmortem)
- DevelopmentCycle (+ GeneratedFile)
- Evolution (+ ProposedChange, EvolutionAnalysis, FileVersion)
- MonitoredApp and Anomaly for the detection side

Enums follow the str-Enum convention so values serialize directly. Every
persisted entity round-trips through to_dict() / from_dict().
"""

import uuid
from dataclasses import dataclass, field, asdict
from datetime import datetime, timezone
from enum import Enum
from typing import Optional, Dict, Any, List, Set


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _parse_dt(value: Any) -> Optional[datetime]:
    if value is None or isinstance(value, datetime):
        return value
    return datetime.fromisoformat(value)


# -----------------------------------------------------------------------------
# Enums
# -----------------------------------------------------------------------------

class Severity(str, Enum):
    """Incident and anomaly severity."""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return SEVERITY_RANK[self]

    def at_least(self, other: "Severity") -> bool:
        return self.rank >= Severity(other).rank


SEVERITY_RANK: Dict[Severity, int] = {
    Severity.LOW: 1,
    Severity.MEDIUM: 2,
    Severity.HIGH: 3,
    Severity.CRITICAL: 4,
}


class IncidentStatus(str, Enum):
    ACTIVE = "active"
    INVESTIGATING = "investigating"
    MITIGATING = "mitigating"
    RESOLVED = "resolved"
    CLOSED = "closed"

    @classmethod
    def terminal_states(cls) -> Set["IncidentStatus"]:
        return {cls.RESOLVED, cls.CLOSED}


class OODAPhase(str, Enum):
    """Investigation state machine phases."""
    IDLE = "IDLE"
    OBSERVING = "OBSERVING"
    ORIENTING = "ORIENTING"
    DECIDING = "DECIDING"
    ACTING = "ACTING"
    VERIFYING = "VERIFYING"
    DONE = "DONE"
    FAILED = "FAILED"

    @classmethod
    def terminal_states(cls) -> Set["OODAPhase"]:
        return {cls.DONE, cls.FAILED}

    @classmethod
    def active_states(cls) -> Set["OODAPhase"]:
        return {cls.OBSERVING, cls.ORIENTING, cls.DECIDING, cls.ACTING, cls.VERIFYING}


class DevelopmentPhase(str, Enum):
    """Development pipeline phases, in order."""
    IDLE = "IDLE"
    ANALYZING = "ANALYZING"
    DESIGNING = "DESIGNING"
    CODING = "CODING"
    TESTING = "TESTING"
    BUILDING = "BUILDING"
    DEPLOYING = "DEPLOYING"
    VERIFYING = "VERIFYING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"

    @classmethod
    def terminal_states(cls) -> Set["DevelopmentPhase"]:
        return {cls.COMPLETED, cls.FAILED}

    @classmethod
    def pipeline(cls) -> List["DevelopmentPhase"]:
        return [
            cls.ANALYZING, cls.DESIGNING, cls.CODING, cls.TESTING,
            cls.BUILDING, cls.DEPLOYING, cls.VERIFYING, cls.COMPLETED,
        ]


class EvolutionStatus(str, Enum):
    PENDING = "pending"
    ANALYZING = "analyzing"
    GENERATING = "generating"
    REVIEW = "review"
    APPROVED = "approved"
    APPLIED = "applied"
    REJECTED = "rejected"
    REVERTED = "reverted"
    FAILED = "failed"

    @classmethod
    def terminal_states(cls) -> Set["EvolutionStatus"]:
        return {cls.APPLIED, cls.REJECTED, cls.REVERTED, cls.FAILED}

    @classmethod
    def pending_states(cls) -> Set["EvolutionStatus"]:
        """States that count against the per-cycle pending limit."""
        return {cls.PENDING, cls.ANALYZING, cls.GENERATING, cls.REVIEW, cls.APPROVED}


class ActionType(str, Enum):
    RESTART = "restart"
    SCALE = "scale"
    ROLLBACK = "rollback"
    CODE_FIX = "code_fix"
    MANUAL = "manual"


class ActionStatus(str, Enum):
    PENDING = "pending"
    EXECUTING = "executing"
    COMPLETED = "completed"
    FAILED = "failed"


class HypothesisStatus(str, Enum):
    PROPOSED = "proposed"
    CONFIRMED = "confirmed"
    REJECTED = "rejected"


class ChangeType(str, Enum):
    CREATE = "create"
    MODIFY = "modify"
    DELETE = "delete"


class ImpactLevel(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class AnomalySource(str, Enum):
    METRICS = "prometheus"
    VISION = "vision"


# -----------------------------------------------------------------------------
# Incident Side
# -----------------------------------------------------------------------------

@dataclass
class Incident:
    """
    An incident under (or awaiting) investigation.

    Ownership fields (owner_instance_id, heartbeat_at, investigation_started_at)
    are written only by the instance currently running the investigation.
    """
    id: str
    title: str
    severity: Severity
    namespace: str = "default"
    status: IncidentStatus = IncidentStatus.ACTIVE
    ooda_phase: OODAPhase = OODAPhase.IDLE
    description: str = ""
    source: str = "manual"
    monitored_app_id: Optional[str] = None
    app_name: Optional[str] = None
    linked_development_cycle_id: Optional[str] = None
    # Investigation ownership
    owner_instance_id: Optional[str] = None
    heartbeat_at: Optional[datetime] = None
    investigation_started_at: Optional[datetime] = None
    # Run state
    phase_retries: Dict[str, int] = field(default_factory=dict)
    escalation_level: int = 0
    thought_signature: Optional[str] = None
    error: Optional[Dict[str, Any]] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: Optional[datetime] = None
    resolved_at: Optional[datetime] = None

    def is_terminal(self) -> bool:
        return self.status in IncidentStatus.terminal_states()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "severity": self.severity.value,
            "namespace": self.namespace,
            "status": self.status.value,
            "ooda_phase": self.ooda_phase.value,
            "description": self.description,
            "source": self.source,
            "monitored_app_id": self.monitored_app_id,
            "app_name": self.app_name,
            "linked_development_cycle_id": self.linked_development_cycle_id,
            "owner_instance_id": self.owner_instance_id,
            "heartbeat_at": _iso(self.heartbeat_at),
            "investigation_started_at": _iso(self.investigation_started_at),
            "phase_retries": dict(self.phase_retries),
            "escalation_level": self.escalation_level,
            "thought_signature": self.thought_signature,
            "error": self.error,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
            "resolved_at": _iso(self.resolved_at),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Incident":
        return cls(
            id=data["id"],
            title=data["title"],
            severity=Severity(data["severity"]),
            namespace=data.get("namespace", "default"),
            status=IncidentStatus(data.get("status", "active")),
            ooda_phase=OODAPhase(data.get("ooda_phase", "IDLE")),
            description=data.get("description", ""),
            source=data.get("source", "manual"),
            monitored_app_id=data.get("monitored_app_id"),
            app_name=data.get("app_name"),
            linked_development_cycle_id=data.get("linked_development_cycle_id"),
            owner_instance_id=data.get("owner_instance_id"),
            heartbeat_at=_parse_dt(data.get("heartbeat_at")),
            investigation_started_at=_parse_dt(data.get("investigation_started_at")),
            phase_retries=dict(data.get("phase_retries") or {}),
            escalation_level=data.get("escalation_level", 0),
            thought_signature=data.get("thought_signature"),
            error=data.get("error"),
            created_at=_parse_dt(data.get("created_at")) or utcnow(),
            updated_at=_parse_dt(data.get("updated_at")),
            resolved_at=_parse_dt(data.get("resolved_at")),
        )


@dataclass
class Evidence:
    incident_id: str
    type: str  # metric | log | frame | event
    source: str
    content: Dict[str, Any] = field(default_factory=dict)
    confidence: Optional[float] = None
    id: str = field(default_factory=new_id)
    timestamp: datetime = field(default_factory=utcnow)

    @property
    def description(self) -> str:
        return str(self.content.get("description", f"Evidence: {self.type}"))

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["timestamp"] = _iso(self.timestamp)
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Evidence":
        return cls(
            incident_id=data["incident_id"],
            type=data["type"],
            source=data.get("source", ""),
            content=dict(data.get("content") or {}),
            confidence=data.get("confidence"),
            id=data["id"],
            timestamp=_parse_dt(data.get("timestamp")) or utcnow(),
        )


@dataclass
class Hypothesis:
    incident_id: str
    title: str
    confidence: float
    supporting_evidence: List[str] = field(default_factory=list)
    contradicting_evidence: List[str] = field(default_factory=list)
    suggested_action: Optional[str] = None
    reasoning: str = ""
    status: HypothesisStatus = HypothesisStatus.PROPOSED
    id: str = field(default_factory=new_id)
    created_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["status"] = self.status.value
        data["created_at"] = _iso(self.created_at)
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Hypothesis":
        return cls(
            incident_id=data["incident_id"],
            title=data["title"],
            confidence=float(data["confidence"]),
            supporting_evidence=list(data.get("supporting_evidence") or []),
            contradicting_evidence=list(data.get("contradicting_evidence") or []),
            suggested_action=data.get("suggested_action"),
            reasoning=data.get("reasoning", ""),
            status=HypothesisStatus(data.get("status", "proposed")),
            id=data["id"],
            created_at=_parse_dt(data.get("created_at")) or utcnow(),
        )


@dataclass
class ActionRecord:
    """A remediation action taken (or attempted) for an incident."""
    incident_id: str
    action_type: ActionType
    target: str
    parameters: Dict[str, Any] = field(default_factory=dict)
    status: ActionStatus = ActionStatus.PENDING
    result: str = ""
    dry_run: bool = False
    hypothesis_id: Optional[str] = None
    details: Dict[str, Any] = field(default_factory=dict)
    id: str = field(default_factory=new_id)
    executed_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["action_type"] = self.action_type.value
        data["status"] = self.status.value
        data["executed_at"] = _iso(self.executed_at)
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ActionRecord":
        return cls(
            incident_id=data["incident_id"],
            action_type=ActionType(data["action_type"]),
            target=data["target"],
            parameters=dict(data.get("parameters") or {}),
            status=ActionStatus(data.get("status", "pending")),
            result=data.get("result", ""),
            dry_run=data.get("dry_run", False),
            hypothesis_id=data.get("hypothesis_id"),
            details=dict(data.get("details") or {}),
            id=data["id"],
            executed_at=_parse_dt(data.get("executed_at")) or utcnow(),
        )


@dataclass
class TimelineEntry:
    entity_id: str
    kind: str
    title: str
    description: str = ""
    data: Dict[str, Any] = field(default_factory=dict)
    id: str = field(default_factory=new_id)
    created_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["created_at"] = _iso(self.created_at)
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TimelineEntry":
        return cls(
            entity_id=data["entity_id"],
            kind=data["kind"],
            title=data["title"],
            description=data.get("description", ""),
            data=dict(data.get("data") or {}),
            id=data["id"],
            created_at=_parse_dt(data.get("created_at")) or utcnow(),
        )


@dataclass
class Postmortem:
    incident_id: str
    summary: str
    root_cause: str = ""
    timeline: List[str] = field(default_factory=list)
    lessons: List[str] = field(default_factory=list)
    id: str = field(default_factory=new_id)
    created_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["created_at"] = _iso(self.created_at)
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Postmortem":
        return cls(
            incident_id=data["incident_id"],
            summary=data["summary"],
            root_cause=data.get("root_cause", ""),
            timeline=list(data.get("timeline") or []),
            lessons=list(data.get("lessons") or []),
            id=data["id"],
            created_at=_parse_dt(data.get("created_at")) or utcnow(),
        )


# -----------------------------------------------------------------------------
# Development Side
# -----------------------------------------------------------------------------

@dataclass
class DevelopmentCycle:
    """
    One requirement-to-deployment run.

    phase_retries accumulates across resumes since the cycle was created.
    """
    id: str
    requirement: str
    phase: DevelopmentPhase = DevelopmentPhase.IDLE
    service_type: str = "backend"
    storage_mode: str = "memory"
    analyzed_requirement: Optional[Dict[str, Any]] = None
    architecture: Optional[Dict[str, Any]] = None
    generated_code: Optional[Dict[str, Any]] = None
    test_results: Optional[Dict[str, Any]] = None
    build_result: Optional[Dict[str, Any]] = None
    deployment: Optional[Dict[str, Any]] = None
    verification: Optional[Dict[str, Any]] = None
    iterations: int = 0
    max_iterations: int = 5
    phase_retries: Dict[str, int] = field(default_factory=dict)
    thought_signature: Optional[str] = None
    error: Optional[Dict[str, Any]] = None
    owner_instance_id: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    def is_terminal(self) -> bool:
        return self.phase in DevelopmentPhase.terminal_states()

    @property
    def deployment_name(self) -> Optional[str]:
        if self.deployment:
            return self.deployment.get("deployment_name")
        return None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "requirement": self.requirement,
            "phase": self.phase.value,
            "service_type": self.service_type,
            "storage_mode": self.storage_mode,
            "analyzed_requirement": self.analyzed_requirement,
            "architecture": self.architecture,
            "generated_code": self.generated_code,
            "test_results": self.test_results,
            "build_result": self.build_result,
            "deployment": self.deployment,
            "verification": self.verification,
            "iterations": self.iterations,
            "max_iterations": self.max_iterations,
            "phase_retries": dict(self.phase_retries),
            "thought_signature": self.thought_signature,
            "error": self.error,
            "owner_instance_id": self.owner_instance_id,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
            "completed_at": _iso(self.completed_at),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "DevelopmentCycle":
        return cls(
            id=data["id"],
            requirement=data["requirement"],
            phase=DevelopmentPhase(data.get("phase", "IDLE")),
            service_type=data.get("service_type", "backend"),
            storage_mode=data.get("storage_mode", "memory"),
            analyzed_requirement=data.get("analyzed_requirement"),
            architecture=data.get("architecture"),
            generated_code=data.get("generated_code"),
            test_results=data.get("test_results"),
            build_result=data.get("build_result"),
            deployment=data.get("deployment"),
            verification=data.get("verification"),
            iterations=data.get("iterations", 0),
            max_iterations=data.get("max_iterations", 5),
            phase_retries=dict(data.get("phase_retries") or {}),
            thought_signature=data.get("thought_signature"),
            error=data.get("error"),
            owner_instance_id=data.get("owner_instance_id"),
            created_at=_parse_dt(data.get("created_at")) or utcnow(),
            updated_at=_parse_dt(data.get("updated_at")),
            completed_at=_parse_dt(data.get("completed_at")),
        )


@dataclass
class GeneratedFile:
    development_cycle_id: str
    path: str
    content: str
    language: str = "typescript"
    purpose: str = ""
    id: str = field(default_factory=new_id)
    updated_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["updated_at"] = _iso(self.updated_at)
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "GeneratedFile":
        return cls(
            development_cycle_id=data["development_cycle_id"],
            path=data["path"],
            content=data["content"],
            language=data.get("language", "typescript"),
            purpose=data.get("purpose", ""),
            id=data["id"],
            updated_at=_parse_dt(data.get("updated_at")) or utcnow(),
        )


# -----------------------------------------------------------------------------
# Evolution Side
# -----------------------------------------------------------------------------

@dataclass
class ProposedChange:
    path: str
    change_type: ChangeType
    new_content: Optional[str] = None
    old_content: Optional[str] = None
    description: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "path": self.path,
            "change_type": self.change_type.value,
            "new_content": self.new_content,
            "old_content": self.old_content,
            "description": self.description,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ProposedChange":
        return cls(
            path=data["path"],
            change_type=ChangeType(data["change_type"]),
            new_content=data.get("new_content"),
            old_content=data.get("old_content"),
            description=data.get("description", ""),
        )


@dataclass
class EvolutionAnalysis:
    affected_files: List[str] = field(default_factory=list)
    impact_level: ImpactLevel = ImpactLevel.LOW
    risks: List[str] = field(default_factory=list)
    summary: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "affected_files": list(self.affected_files),
            "impact_level": self.impact_level.value,
            "risks": list(self.risks),
            "summary": self.summary,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "EvolutionAnalysis":
        return cls(
            affected_files=list(data.get("affected_files") or []),
            impact_level=ImpactLevel(data.get("impact_level", "low")),
            risks=list(data.get("risks") or []),
            summary=data.get("summary", ""),
        )


@dataclass
class Evolution:
    id: str
    development_cycle_id: str
    prompt: str
    scope: List[str] = field(default_factory=list)
    status: EvolutionStatus = EvolutionStatus.PENDING
    analysis_result: Optional[EvolutionAnalysis] = None
    proposed_changes: List[ProposedChange] = field(default_factory=list)
    files_affected: int = 0
    triggered_by_incident_id: Optional[str] = None
    approved_by: Optional[str] = None
    error: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: Optional[datetime] = None
    applied_at: Optional[datetime] = None
    reverted_at: Optional[datetime] = None

    def is_pending(self) -> bool:
        return self.status in EvolutionStatus.pending_states()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "development_cycle_id": self.development_cycle_id,
            "prompt": self.prompt,
            "scope": list(self.scope),
            "status": self.status.value,
            "analysis_result": self.analysis_result.to_dict() if self.analysis_result else None,
            "proposed_changes": [c.to_dict() for c in self.proposed_changes],
            "files_affected": self.files_affected,
            "triggered_by_incident_id": self.triggered_by_incident_id,
            "approved_by": self.approved_by,
            "error": self.error,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
            "applied_at": _iso(self.applied_at),
            "reverted_at": _iso(self.reverted_at),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Evolution":
        analysis = data.get("analysis_result")
        return cls(
            id=data["id"],
            development_cycle_id=data["development_cycle_id"],
            prompt=data["prompt"],
            scope=list(data.get("scope") or []),
            status=EvolutionStatus(data.get("status", "pending")),
            analysis_result=EvolutionAnalysis.from_dict(analysis) if analysis else None,
            proposed_changes=[ProposedChange.from_dict(c) for c in data.get("proposed_changes") or []],
            files_affected=data.get("files_affected", 0),
            triggered_by_incident_id=data.get("triggered_by_incident_id"),
            approved_by=data.get("approved_by"),
            error=data.get("error"),
            created_at=_parse_dt(data.get("created_at")) or utcnow(),
            updated_at=_parse_dt(data.get("updated_at")),
            applied_at=_parse_dt(data.get("applied_at")),
            reverted_at=_parse_dt(data.get("reverted_at")),
        )


@dataclass
class FileVersion:
    """
    Snapshot of one file at one point in its history.

    content is None when the file did not exist at snapshot time.
    """
    development_cycle_id: str
    path: str
    version: int
    content: Optional[str]
    change_type: str
    evolution_id: Optional[str] = None
    reason: str = ""
    id: str = field(default_factory=new_id)
    created_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["created_at"] = _iso(self.created_at)
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "FileVersion":
        return cls(
            development_cycle_id=data["development_cycle_id"],
            path=data["path"],
            version=int(data["version"]),
            content=data.get("content"),
            change_type=data["change_type"],
            evolution_id=data.get("evolution_id"),
            reason=data.get("reason", ""),
            id=data["id"],
            created_at=_parse_dt(data.get("created_at")) or utcnow(),
        )


# -----------------------------------------------------------------------------
# Detection Side
# -----------------------------------------------------------------------------

@dataclass
class MonitoredApp:
    name: str
    namespace: str = "default"
    development_cycle_id: Optional[str] = None
    service_url: Optional[str] = None
    is_active: bool = True
    id: str = field(default_factory=new_id)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "MonitoredApp":
        return cls(
            name=data["name"],
            namespace=data.get("namespace", "default"),
            development_cycle_id=data.get("development_cycle_id"),
            service_url=data.get("service_url"),
            is_active=data.get("is_active", True),
            id=data["id"],
        )


@dataclass
class Anomaly:
    """A normalized signal from either detection modality."""
    type: str
    severity: Severity
    description: str
    confidence: float = 1.0
    source: AnomalySource = AnomalySource.METRICS
    app_name: Optional[str] = None
    namespace: Optional[str] = None
    metric_value: Optional[float] = None
    threshold: Optional[float] = None
    details: Dict[str, Any] = field(default_factory=dict)
    detected_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.type,
            "severity": self.severity.value,
            "description": self.description,
            "confidence": self.confidence,
            "source": self.source.value,
            "app_name": self.app_name,
            "namespace": self.namespace,
            "metric_value": self.metric_value,
            "threshold": self.threshold,
            "details": self.details,
            "detected_at": _iso(self.detected_at),
        }
