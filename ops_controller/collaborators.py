"""
External collaborator contracts.

The core depends only on these interfaces, never on a particular AI vendor,
cluster API, build tool or metrics backend. Each base class raises
NotImplementedError; deployments plug in concrete adapters and tests plug in
fakes.

Collaborators:
- ReasoningService: AI calls, each returning a ReasoningResult
- PlatformExecutor: remediation actions and target health
- MetricsQueryService: instant/range queries (see prometheus_client.py)
- FrameFetcher: latest dashboard frame per app (see vision_fetcher.py)
- BuildDeployExecutor: image build, deploy, health check, image deletion
- SourceControl: optional commit of reverts
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

from .errors import TransientExternalError, ValidationError
from .models import utcnow


# -----------------------------------------------------------------------------
# Result Types
# -----------------------------------------------------------------------------

@dataclass
class ReasoningResult:
    """
    Success-with-data or a typed error from the reasoning service.

    thought_signature is opaque: callers thread it into the next call of the
    same run and never inspect it.
    """
    success: bool
    data: Optional[Dict[str, Any]] = None
    error: Optional[str] = None
    error_type: Optional[str] = None  # timeout | invalid_response | unavailable
    thought_signature: Optional[str] = None

    @classmethod
    def ok(cls, data: Dict[str, Any], thought_signature: Optional[str] = None) -> "ReasoningResult":
        return cls(success=True, data=data, thought_signature=thought_signature)

    @classmethod
    def fail(cls, error: str, error_type: str = "unavailable") -> "ReasoningResult":
        return cls(success=False, error=error, error_type=error_type)


def require_success(result: ReasoningResult, what: str) -> Dict[str, Any]:
    """Unwrap a reasoning result or raise the matching domain error."""
    if result.success and result.data is not None:
        return result.data
    if result.error_type == "invalid_response":
        raise ValidationError(f"{what}: {result.error or 'invalid response'}")
    raise TransientExternalError(f"{what}: {result.error or 'no data'}", collaborator="reasoning")


@dataclass
class ActionRequest:
    action_type: str
    namespace: str
    deployment: str
    parameters: Dict[str, Any] = field(default_factory=dict)
    dry_run: bool = False
    reason: str = ""
    incident_id: Optional[str] = None


@dataclass
class ActionResult:
    success: bool
    message: str
    dry_run: bool = False
    details: Dict[str, Any] = field(default_factory=dict)
    duration: float = 0.0
    timestamp: datetime = field(default_factory=utcnow)


@dataclass
class HealthStatus:
    healthy: bool
    error_rate: Optional[float] = None
    details: Dict[str, Any] = field(default_factory=dict)


@dataclass
class MetricSample:
    value: float
    labels: Dict[str, str] = field(default_factory=dict)
    timestamp: Optional[float] = None


@dataclass
class Frame:
    data: bytes
    timestamp: datetime = field(default_factory=utcnow)
    mime_type: str = "image/jpeg"


@dataclass
class BuildResult:
    success: bool
    image_tag: Optional[str] = None
    logs: List[str] = field(default_factory=list)
    test_results: Optional[Dict[str, Any]] = None
    error: Optional[str] = None
    duration: float = 0.0

    @property
    def raw_output(self) -> str:
        parts = list(self.logs)
        if self.error:
            parts.append(self.error)
        return "\n".join(parts)


@dataclass
class DeployResult:
    success: bool
    deployment_name: Optional[str] = None
    namespace: Optional[str] = None
    service_url: Optional[str] = None
    error: Optional[str] = None


# -----------------------------------------------------------------------------
# Interfaces
# -----------------------------------------------------------------------------

class ReasoningService:
    """AI reasoning and code generation."""

    async def analyze_requirement(self, requirement: str,
                                  thought_signature: Optional[str] = None) -> ReasoningResult:
        raise NotImplementedError

    async def design_architecture(self, analyzed_requirement: Dict[str, Any],
                                  thought_signature: Optional[str] = None) -> ReasoningResult:
        raise NotImplementedError

    async def generate_code(self, requirement: Dict[str, Any], architecture: Dict[str, Any],
                            previous_errors: Optional[List[str]] = None,
                            thought_signature: Optional[str] = None) -> ReasoningResult:
        """data: {"files": [{"path", "content", "language", "purpose"}]}"""
        raise NotImplementedError

    async def fix_code(self, path: str, content: str, errors: List[Dict[str, Any]],
                       thought_signature: Optional[str] = None) -> ReasoningResult:
        """data: {"changed": bool, "content": str}"""
        raise NotImplementedError

    async def generate_tests(self, files: List[Dict[str, Any]],
                             thought_signature: Optional[str] = None) -> ReasoningResult:
        """data: {"files": [...]}"""
        raise NotImplementedError

    async def analyze_frames(self, frames: List[Frame], context: str = "") -> ReasoningResult:
        """data: {"healthy": bool, "anomalies": [{"type", "severity", "confidence", "description"}]}"""
        raise NotImplementedError

    async def generate_hypotheses(self, evidence: List[Dict[str, Any]],
                                  previous_hypotheses: Optional[List[Dict[str, Any]]] = None,
                                  allowed_actions: Optional[List[str]] = None,
                                  thought_signature: Optional[str] = None) -> ReasoningResult:
        """data: {"hypotheses": [{"root_cause", "confidence", "supporting_evidence",
        "contradicting_evidence", "suggested_action", "reasoning"}]}"""
        raise NotImplementedError

    async def generate_postmortem(self, incident: Dict[str, Any], evidence: List[Dict[str, Any]],
                                  hypotheses: List[Dict[str, Any]],
                                  actions: List[Dict[str, Any]]) -> ReasoningResult:
        raise NotImplementedError

    async def analyze_evolution(self, prompt: str, files: List[Dict[str, Any]],
                                scope: Optional[List[str]] = None) -> ReasoningResult:
        """data: {"affected_files", "impact_level", "risks", "summary"}"""
        raise NotImplementedError

    async def generate_evolution_changes(self, prompt: str, analysis: Dict[str, Any],
                                         files: List[Dict[str, Any]]) -> ReasoningResult:
        """data: {"changes": [{"path", "change_type", "new_content", "description"}]}"""
        raise NotImplementedError


class PlatformExecutor:
    """Runtime platform (cluster) operations for remediation."""

    async def list_targets(self, namespace: str) -> List[str]:
        raise NotImplementedError

    async def execute(self, request: ActionRequest) -> ActionResult:
        """Must honour request.dry_run: report what would happen, change nothing."""
        raise NotImplementedError

    async def check_health(self, namespace: str, deployment: str) -> HealthStatus:
        raise NotImplementedError


class MetricsQueryService:
    """Instant and range metric queries. Unavailability means no data."""

    async def is_available(self) -> bool:
        raise NotImplementedError

    async def query(self, promql: str) -> Optional[MetricSample]:
        raise NotImplementedError

    async def query_range(self, promql: str, start: float, end: float,
                          step: str = "15s") -> List[MetricSample]:
        raise NotImplementedError


class FrameFetcher:
    """Source of dashboard frames for the vision modality."""

    async def is_available(self) -> bool:
        raise NotImplementedError

    async def get_latest_frame(self, app_name: str, namespace: str) -> Optional[Frame]:
        raise NotImplementedError


class BuildDeployExecutor:
    """Container build and deployment."""

    async def build(self, files: List[Dict[str, Any]], app_name: str) -> BuildResult:
        raise NotImplementedError

    async def deploy(self, app_name: str, namespace: str, image_tag: str) -> DeployResult:
        raise NotImplementedError

    async def check_health(self, app_name: str, namespace: str) -> HealthStatus:
        raise NotImplementedError

    async def delete_image(self, image_tag: str) -> bool:
        raise NotImplementedError


class SourceControl:
    """Optional source-control mirror for evolution reverts."""

    async def commit(self, message: str, files: Dict[str, Optional[str]]) -> bool:
        """files maps path -> content (None deletes the path)."""
        raise NotImplementedError
