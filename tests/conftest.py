"""
Pytest configuration for ops controller tests.

This module provides:
1. Fake collaborators (reasoning, platform executor, build/deploy executor)
2. A zero-wait control-plane config and registry
3. A manual clock for the detection state manager
"""

import inspect
from collections import defaultdict
from typing import Any, Dict, List

import pytest

from ops_controller.collaborators import (
    ActionResult,
    BuildDeployExecutor,
    BuildResult,
    DeployResult,
    HealthStatus,
    PlatformExecutor,
    ReasoningResult,
    ReasoningService,
)
from ops_controller.config import ControlPlaneConfig, config_from_dict
from ops_controller.models import Incident, Severity, new_id
from ops_controller.registry import ControlPlaneRegistry


def _next(queue: List[Any], default: Any = None) -> Any:
    """Pop from a response queue, repeating the last entry once it is alone."""
    if not queue:
        return default
    if len(queue) > 1:
        return queue.pop(0)
    return queue[0]


# -----------------------------------------------------------------------------
# Fake Collaborators
# -----------------------------------------------------------------------------
def default_reasoning_responses() -> Dict[str, Any]:
    return {
        "analyze_requirement": ReasoningResult.ok(
            {"title": "Todo API", "description": "CRUD API for todo items", "acceptance_criteria": ["list todos"]},
            thought_signature="sig-1",
        ),
        "design_architecture": ReasoningResult.ok({"components": ["api", "store"], "framework": "express"}),
        "generate_code": ReasoningResult.ok({"files": [
            {"path": "src/index.ts", "content": "export const app = 1;\n", "language": "typescript"},
            {"path": "package.json", "content": "{\"name\": \"todo-api\"}\n", "language": "json"},
        ]}),
        "fix_code": lambda **kw: ReasoningResult.ok({"changed": True, "content": kw["content"] + "// fixed\n"}),
        "generate_tests": ReasoningResult.ok({"files": [
            {"path": "src/index.test.ts", "content": "test('app', () => {});\n"},
        ]}),
        "analyze_frames": ReasoningResult.ok({"healthy": True, "anomalies": []}),
        "generate_hypotheses": ReasoningResult.ok({"hypotheses": [
            {
                "root_cause": "Memory leak in request handler",
                "confidence": 0.9,
                "supporting_evidence": ["memory climbing"],
                "suggested_action": "restart",
                "reasoning": "Restart clears leaked memory",
            },
        ]}),
        "generate_postmortem": ReasoningResult.ok({
            "summary": "Service recovered after remediation",
            "root_cause": "Memory leak",
            "lessons": ["Add memory alerts"],
        }),
        "analyze_evolution": ReasoningResult.ok({
            "affected_files": ["src/index.ts"],
            "impact_level": "low",
            "risks": [],
            "summary": "Guard the handler",
        }),
        "generate_evolution_changes": ReasoningResult.ok({"changes": [
            {
                "path": "src/index.ts",
                "change_type": "modify",
                "new_content": "export const app = 2;\n",
                "description": "Guard the handler",
            },
        ]}),
    }


class FakeReasoning(ReasoningService):
    """
    Scriptable reasoning service.

    Each response may be a ReasoningResult, an exception to raise, a callable
    taking the call's keyword arguments, or a list used as a queue.
    """

    def __init__(self, **responses: Any):
        self.responses = default_reasoning_responses()
        self.responses.update(responses)
        self.calls: Dict[str, List[Dict[str, Any]]] = defaultdict(list)

    def set(self, method: str, *responses: Any) -> None:
        self.responses[method] = list(responses) if len(responses) > 1 else responses[0]

    async def _respond(self, method: str, **kwargs: Any) -> ReasoningResult:
        self.calls[method].append(kwargs)
        response = self.responses[method]
        if isinstance(response, list):
            response = _next(response)
        if callable(response):
            response = response(**kwargs)
            if inspect.isawaitable(response):
                response = await response
        if isinstance(response, Exception):
            raise response
        return response

    async def analyze_requirement(self, requirement, thought_signature=None):
        return await self._respond("analyze_requirement", requirement=requirement,
                                   thought_signature=thought_signature)

    async def design_architecture(self, analyzed_requirement, thought_signature=None):
        return await self._respond("design_architecture", analyzed_requirement=analyzed_requirement,
                                   thought_signature=thought_signature)

    async def generate_code(self, requirement, architecture, previous_errors=None, thought_signature=None):
        return await self._respond("generate_code", requirement=requirement, architecture=architecture,
                                   previous_errors=previous_errors, thought_signature=thought_signature)

    async def fix_code(self, path, content, errors, thought_signature=None):
        return await self._respond("fix_code", path=path, content=content, errors=errors,
                                   thought_signature=thought_signature)

    async def generate_tests(self, files, thought_signature=None):
        return await self._respond("generate_tests", files=files, thought_signature=thought_signature)

    async def analyze_frames(self, frames, context=""):
        return await self._respond("analyze_frames", frames=frames, context=context)

    async def generate_hypotheses(self, evidence, previous_hypotheses=None, allowed_actions=None,
                                  thought_signature=None):
        return await self._respond("generate_hypotheses", evidence=evidence,
                                   previous_hypotheses=previous_hypotheses, allowed_actions=allowed_actions,
                                   thought_signature=thought_signature)

    async def generate_postmortem(self, incident, evidence, hypotheses, actions):
        return await self._respond("generate_postmortem", incident=incident, evidence=evidence,
                                   hypotheses=hypotheses, actions=actions)

    async def analyze_evolution(self, prompt, files, scope=None):
        return await self._respond("analyze_evolution", prompt=prompt, files=files, scope=scope)

    async def generate_evolution_changes(self, prompt, analysis, files):
        return await self._respond("generate_evolution_changes", prompt=prompt, analysis=analysis, files=files)


class FakeExecutor(PlatformExecutor):
    """Platform executor with queued action results and health statuses."""

    def __init__(self):
        self.action_results: List[Any] = []
        self.health: List[Any] = []
        self.requests = []
        self.health_checks = 0

    async def list_targets(self, namespace):
        return ["checkout-svc"]

    async def execute(self, request):
        self.requests.append(request)
        result = _next(self.action_results)
        if isinstance(result, Exception):
            raise result
        if result is None:
            return ActionResult(True, f"{request.action_type} {request.deployment} ok", dry_run=request.dry_run)
        return result

    async def check_health(self, namespace, deployment):
        self.health_checks += 1
        status = _next(self.health, HealthStatus(healthy=True, error_rate=0.0))
        if isinstance(status, Exception):
            raise status
        return status


class FakeBuilder(BuildDeployExecutor):
    """Build/deploy executor with queued results."""

    def __init__(self):
        self.build_results: List[BuildResult] = []
        self.deploy_results: List[DeployResult] = []
        self.health: List[HealthStatus] = []
        self.builds: List[Dict[str, Any]] = []
        self.deploys: List[Dict[str, Any]] = []
        self.deleted: List[str] = []

    async def build(self, files, app_name):
        self.builds.append({"files": files, "app_name": app_name})
        return _next(self.build_results, BuildResult(success=True, image_tag=f"registry.local/{app_name}:1"))

    async def deploy(self, app_name, namespace, image_tag):
        self.deploys.append({"app_name": app_name, "namespace": namespace, "image_tag": image_tag})
        result = _next(self.deploy_results)
        if result is None:
            return DeployResult(
                success=True,
                deployment_name=app_name,
                namespace=namespace,
                service_url=f"http://{app_name}.{namespace}.svc",
            )
        return result

    async def check_health(self, app_name, namespace):
        return _next(self.health, HealthStatus(healthy=True, error_rate=0.0))

    async def delete_image(self, image_tag):
        self.deleted.append(image_tag)
        return True


class FakeClock:
    """Manual monotonic clock in seconds."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


# -----------------------------------------------------------------------------
# Helpers
# -----------------------------------------------------------------------------
def fast_config(**sections: Dict[str, Any]) -> ControlPlaneConfig:
    """Config with every wait set to zero; sections override per key."""
    data: Dict[str, Dict[str, Any]] = {
        "investigation": {
            "verification_wait": 0,
            "verification_retry_delay": 0,
            "phase_retry_delay": 0,
            "heartbeat_interval": 3600,
            "evolution_poll_interval": 0,
            "evolution_wait_timeout": 0.01,
        },
        "detector": {"vision_initial_delay": 0},
        "metrics": {"base_url": "http://prometheus.test"},
    }
    for name, values in sections.items():
        data.setdefault(name, {}).update(values)
    return config_from_dict(data)


def make_incident(**overrides: Any) -> Incident:
    values = {
        "id": new_id(),
        "title": "[checkout-svc] Error Rate Spike Detected: Error rate 25.0% exceeds 5% threshold",
        "severity": Severity.HIGH,
        "namespace": "development",
        "description": "Automatically detected: Error rate 25.0% exceeds 5% threshold",
        "source": "prometheus",
        "app_name": "checkout-svc",
    }
    values.update(overrides)
    return Incident(**values)


# -----------------------------------------------------------------------------
# Common Fixtures
# -----------------------------------------------------------------------------
@pytest.fixture
def config() -> ControlPlaneConfig:
    return fast_config()


@pytest.fixture
def registry(config) -> ControlPlaneRegistry:
    return ControlPlaneRegistry(config, instance_id="instance-test")


@pytest.fixture
def reasoning() -> FakeReasoning:
    return FakeReasoning()


@pytest.fixture
def executor() -> FakeExecutor:
    return FakeExecutor()


@pytest.fixture
def builder() -> FakeBuilder:
    return FakeBuilder()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


def pytest_configure(config):
    """Configure pytest session."""
    config.addinivalue_line(
        "markers", "recovery: startup recovery and durable state tests"
    )
