"""
Unit Tests for the Development Orchestrator

Test coverage for:
- Full pipeline phase order and monitoring registration
- Self-repair loop: success, unparseable output, no progress, attempt cap
- Per-phase retry ceilings and regeneration with previous errors
- Capacity limit, cancellation, iteration cap
- Resume without redoing persisted phases, including across a restart
- One live run per cycle
- Rebuild and redeploy of an already-coded cycle
"""

import pytest

from ops_controller.collaborators import BuildResult, DeployResult, HealthStatus, ReasoningResult
from ops_controller.development import (
    DevelopmentOrchestrator,
    retry_target,
    sanitize_name,
    unique_app_name,
)
from ops_controller.errors import ResourceLimitError, TerminalFailure
from ops_controller.events import EventType
from ops_controller.models import DevelopmentCycle, DevelopmentPhase, new_id
from ops_controller.registry import ControlPlaneRegistry
from ops_controller.repositories import Repositories
from tests.conftest import fast_config

TS_ERROR = "src/index.ts(1,1): error TS2304: Cannot find name 'express'."


def make_orchestrator(registry, reasoning, builder) -> DevelopmentOrchestrator:
    return DevelopmentOrchestrator(registry, reasoning, builder)


def record_phases(orchestrator):
    phases = []
    orchestrator.on(EventType.CYCLE_PHASE_CHANGED, lambda e: phases.append(e.payload["to_phase"]))
    return phases


def registry_with(**development) -> ControlPlaneRegistry:
    return ControlPlaneRegistry(fast_config(development=development), instance_id="instance-test")


async def seed_coded_cycle(registry, phase=DevelopmentPhase.BUILDING) -> DevelopmentCycle:
    cycle = DevelopmentCycle(
        id=new_id(),
        requirement="Build a todo API",
        phase=phase,
        analyzed_requirement={"title": "Todo API"},
        architecture={"framework": "express"},
        iterations=1,
    )
    await registry.repositories.cycles.create(cycle)
    await registry.repositories.generated_files.upsert(cycle.id, "src/index.ts", "export const app = 1;\n")
    return cycle


class TestNaming:

    def test_sanitize_name(self):
        assert sanitize_name("My Todo API!!") == "my-todo-api"
        assert sanitize_name("--a__b--") == "a-b"
        assert len(sanitize_name("x" * 100)) == 63

    def test_unique_app_name(self):
        assert unique_app_name("Todo API", "abcdef1234") == "todo-api-abcdef12"
        assert unique_app_name(None, "abcdef1234") == "app-abcdef12"
        assert unique_app_name("!!!", "abcdef1234") == "app-abcdef12"
        assert len(unique_app_name("a" * 80, "abcdef1234")) == 49

    def test_retry_target(self):
        assert retry_target(DevelopmentPhase.ANALYZING) == DevelopmentPhase.ANALYZING
        assert retry_target(DevelopmentPhase.DESIGNING) == DevelopmentPhase.DESIGNING
        assert retry_target(DevelopmentPhase.BUILDING) == DevelopmentPhase.CODING
        assert retry_target(DevelopmentPhase.VERIFYING) == DevelopmentPhase.CODING


class TestPipeline:

    @pytest.mark.asyncio
    async def test_happy_path(self, registry, reasoning, builder):
        orchestrator = make_orchestrator(registry, reasoning, builder)
        phases = record_phases(orchestrator)

        cycle = await orchestrator.develop("Build a todo API")

        assert phases == [
            "ANALYZING", "DESIGNING", "CODING", "TESTING", "BUILDING", "DEPLOYING", "VERIFYING", "COMPLETED",
        ]
        assert cycle.phase == DevelopmentPhase.COMPLETED
        assert cycle.completed_at is not None
        assert cycle.thought_signature == "sig-1"
        assert cycle.owner_instance_id is None
        assert registry.is_running(cycle.id) is False

        app_name = unique_app_name("Todo API", cycle.id)
        assert builder.deploys[0]["app_name"] == app_name
        assert cycle.deployment["deployment_name"] == app_name
        assert cycle.deployment["service_url"] == f"http://{app_name}.development.svc"

    @pytest.mark.asyncio
    async def test_artifacts_and_monitoring(self, registry, reasoning, builder):
        cycle = await make_orchestrator(registry, reasoning, builder).develop("Build a todo API")

        repos = registry.repositories
        files = await repos.generated_files.list_for_cycle(cycle.id)
        assert sorted(f.path for f in files) == ["package.json", "src/index.test.ts", "src/index.ts"]
        assert cycle.test_results == {"success": True, "generated": 1}
        assert cycle.build_result["repair_attempts"] == 0

        app = await repos.monitored_apps.get_by_name(cycle.deployment_name, "development")
        assert app is not None
        assert app.development_cycle_id == cycle.id

    @pytest.mark.asyncio
    async def test_thought_signature_threaded(self, registry, reasoning, builder):
        await make_orchestrator(registry, reasoning, builder).develop("Build a todo API")

        assert reasoning.calls["analyze_requirement"][0]["thought_signature"] is None
        assert reasoning.calls["design_architecture"][0]["thought_signature"] == "sig-1"
        assert reasoning.calls["generate_code"][0]["thought_signature"] == "sig-1"

    @pytest.mark.asyncio
    async def test_test_generation_failure_is_not_fatal(self, registry, reasoning, builder):
        reasoning.set("generate_tests", ReasoningResult.fail("quota exceeded"))

        cycle = await make_orchestrator(registry, reasoning, builder).develop("Build a todo API")

        assert cycle.phase == DevelopmentPhase.COMPLETED
        assert cycle.test_results["success"] is False
        assert len(await registry.repositories.generated_files.list_for_cycle(cycle.id)) == 2


class TestSelfRepair:

    @pytest.mark.asyncio
    async def test_repair_then_success(self, registry, reasoning, builder):
        builder.build_results = [
            BuildResult(success=False, error=TS_ERROR),
            BuildResult(success=True, image_tag="registry.local/todo:2"),
        ]
        orchestrator = make_orchestrator(registry, reasoning, builder)
        repairs = []
        orchestrator.on(EventType.REPAIR_ATTEMPTED, repairs.append)

        cycle = await orchestrator.develop("Build a todo API")

        assert cycle.phase == DevelopmentPhase.COMPLETED
        assert cycle.build_result["repair_attempts"] == 1
        assert cycle.build_result["image_tag"] == "registry.local/todo:2"
        assert repairs[0].payload["files_with_errors"] == ["src/index.ts"]
        assert repairs[0].payload["files_changed"] == 1
        fix_call = reasoning.calls["fix_code"][0]
        assert fix_call["path"] == "src/index.ts"
        assert fix_call["errors"][0]["code"] == "TS2304"
        fixed = await registry.repositories.generated_files.get_by_path(cycle.id, "src/index.ts")
        assert fixed.content.endswith("// fixed\n")

    @pytest.mark.asyncio
    async def test_unparseable_output_aborts_without_fixes(self, registry, reasoning, builder):
        cycle = await seed_coded_cycle(registry)
        builder.build_results = [BuildResult(success=False, logs=["Step 3/7"], error="Killed")]
        orchestrator = make_orchestrator(registry, reasoning, builder)

        with pytest.raises(TerminalFailure) as exc:
            await orchestrator.build_with_repair(cycle, "todo-api")

        assert "no parseable errors" in str(exc.value)
        assert exc.value.raw_error == "Step 3/7\nKilled"
        assert reasoning.calls["fix_code"] == []
        assert len(builder.builds) == 1

    @pytest.mark.asyncio
    async def test_unparseable_output_fails_cycle_without_build_retries(self, reasoning, builder):
        registry = registry_with(phase_retries={"BUILDING": 0})
        builder.build_results = [BuildResult(success=False, error="Killed")]

        cycle = await make_orchestrator(registry, reasoning, builder).develop("Build a todo API")

        assert cycle.phase == DevelopmentPhase.FAILED
        assert cycle.error["phase"] == "BUILDING"
        assert cycle.error["recoverable"] is False
        assert cycle.build_result["success"] is False
        assert reasoning.calls["fix_code"] == []

    @pytest.mark.asyncio
    async def test_no_progress_aborts(self, registry, reasoning, builder):
        cycle = await seed_coded_cycle(registry)
        builder.build_results = [BuildResult(success=False, error=TS_ERROR)]
        reasoning.set("fix_code", ReasoningResult.ok({"changed": False, "content": ""}))

        with pytest.raises(TerminalFailure) as exc:
            await make_orchestrator(registry, reasoning, builder).build_with_repair(cycle, "todo-api")

        assert str(exc.value) == "Self-repair made no progress on attempt 1"
        assert len(builder.builds) == 1

    @pytest.mark.asyncio
    async def test_repair_attempt_cap(self, reasoning, builder):
        registry = registry_with(max_repair_attempts=2)
        cycle = await seed_coded_cycle(registry)
        builder.build_results = [BuildResult(success=False, error=TS_ERROR)]

        with pytest.raises(TerminalFailure) as exc:
            await make_orchestrator(registry, reasoning, builder).build_with_repair(cycle, "todo-api")

        assert "after 2 repair attempts" in str(exc.value)
        assert len(reasoning.calls["fix_code"]) == 2
        assert len(builder.builds) == 3

    @pytest.mark.asyncio
    async def test_error_in_unknown_file_is_skipped(self, registry, reasoning, builder):
        cycle = await seed_coded_cycle(registry)
        builder.build_results = [
            BuildResult(success=False, error="lib/vendor.ts(2,2): error TS1005: ';' expected."),
        ]

        with pytest.raises(TerminalFailure):
            await make_orchestrator(registry, reasoning, builder).build_with_repair(cycle, "todo-api")

        assert reasoning.calls["fix_code"] == []


class TestRetries:

    @pytest.mark.asyncio
    async def test_deploy_failure_regenerates_with_errors(self, registry, reasoning, builder):
        builder.deploy_results = [DeployResult(success=False, error="image pull backoff"), None]

        cycle = await make_orchestrator(registry, reasoning, builder).develop("Build a todo API")

        assert cycle.phase == DevelopmentPhase.COMPLETED
        assert cycle.iterations == 2
        assert cycle.phase_retries == {"DEPLOYING": 1}
        assert reasoning.calls["generate_code"][0]["previous_errors"] is None
        assert reasoning.calls["generate_code"][1]["previous_errors"] == [
            "[DEPLOYING] Deployment failed: image pull backoff",
        ]
        assert cycle.error is None

    @pytest.mark.asyncio
    async def test_analyzing_retries_then_fails(self, registry, reasoning, builder):
        reasoning.set("analyze_requirement", ReasoningResult.fail("upstream timeout", "timeout"))
        orchestrator = make_orchestrator(registry, reasoning, builder)
        failed = []
        orchestrator.on(EventType.CYCLE_FAILED, failed.append)

        cycle = await orchestrator.develop("Build a todo API")

        assert cycle.phase == DevelopmentPhase.FAILED
        assert len(reasoning.calls["analyze_requirement"]) == 4
        assert cycle.error["phase"] == "ANALYZING"
        assert cycle.error["retry_counts"] == {"ANALYZING": 3}
        assert failed[0].payload["cycle_id"] == cycle.id

    @pytest.mark.asyncio
    async def test_invalid_code_payload_retries_coding(self, registry, reasoning, builder):
        reasoning.set(
            "generate_code",
            ReasoningResult.ok({"files": []}),
            ReasoningResult.ok({"files": [{"path": "src/index.ts", "content": "ok\n"}]}),
        )

        cycle = await make_orchestrator(registry, reasoning, builder).develop("Build a todo API")

        assert cycle.phase == DevelopmentPhase.COMPLETED
        assert cycle.phase_retries == {"CODING": 1}

    @pytest.mark.asyncio
    async def test_iteration_cap_fails_cycle(self, reasoning, builder):
        registry = registry_with(max_iterations=1)
        builder.health = [HealthStatus(healthy=False, details={"error": "503 from /health"})]

        cycle = await make_orchestrator(registry, reasoning, builder).develop("Build a todo API")

        assert cycle.phase == DevelopmentPhase.FAILED
        assert cycle.error["message"] == "Maximum code generation iterations (1) reached"
        assert cycle.error["phase"] == "CODING"
        assert cycle.verification["error"] == "503 from /health"
        assert len(reasoning.calls["generate_code"]) == 1


class TestLimitsAndCancellation:

    @pytest.mark.asyncio
    async def test_capacity_rejected_up_front(self, reasoning, builder):
        registry = registry_with(max_concurrent_cycles=1)
        registry.register_cycle("cycle-running", object())

        with pytest.raises(ResourceLimitError):
            await make_orchestrator(registry, reasoning, builder).develop("Build a todo API")

        assert registry.repositories.cycles.count() == 0
        assert reasoning.calls["analyze_requirement"] == []

    @pytest.mark.asyncio
    async def test_cancel_after_code_generation(self, registry, reasoning, builder):
        orchestrator = make_orchestrator(registry, reasoning, builder)
        orchestrator.on(EventType.CODE_GENERATED, lambda e: orchestrator.cancel(reason="operator stop"))
        cancelled = []
        orchestrator.on(EventType.CYCLE_CANCELLED, cancelled.append)

        cycle = await orchestrator.develop("Build a todo API")

        assert cycle.phase == DevelopmentPhase.FAILED
        assert cycle.error["type"] == "CancellationError"
        assert cycle.error["phase"] == "TESTING"
        assert cycle.error["reason"] == "operator stop"
        assert cycle.error["recoverable"] is False
        assert builder.builds == []
        assert cancelled[0].payload["reason"] == "operator stop"

    @pytest.mark.asyncio
    async def test_cancel_unknown_cycle(self, registry, reasoning, builder):
        assert make_orchestrator(registry, reasoning, builder).cancel("missing") is False


@pytest.mark.recovery
class TestResume:

    @pytest.mark.asyncio
    async def test_resume_from_building_skips_generation(self, registry, reasoning, builder):
        cycle = await seed_coded_cycle(registry)
        orchestrator = make_orchestrator(registry, reasoning, builder)
        phases = record_phases(orchestrator)

        result = await orchestrator.resume(cycle)

        assert result.phase == DevelopmentPhase.COMPLETED
        assert phases == ["DEPLOYING", "VERIFYING", "COMPLETED"]
        assert reasoning.calls["analyze_requirement"] == []
        assert reasoning.calls["generate_code"] == []
        assert len(builder.builds) == 1

    @pytest.mark.asyncio
    async def test_resume_terminal_is_noop(self, registry, reasoning, builder):
        cycle = await seed_coded_cycle(registry, phase=DevelopmentPhase.COMPLETED)

        result = await make_orchestrator(registry, reasoning, builder).resume(cycle)

        assert result.phase == DevelopmentPhase.COMPLETED
        assert builder.builds == []

    @pytest.mark.asyncio
    async def test_resume_after_restart_keeps_generated_code(self, tmp_path, reasoning, builder):
        before = ControlPlaneRegistry(fast_config(), repositories=Repositories.durable(tmp_path),
                                      instance_id="instance-old")
        cycle = await seed_coded_cycle(before)

        after = ControlPlaneRegistry(fast_config(), repositories=Repositories.durable(tmp_path),
                                     instance_id="instance-new")
        stored = await after.repositories.cycles.get(cycle.id)
        result = await make_orchestrator(after, reasoning, builder).resume(stored)

        assert result.phase == DevelopmentPhase.COMPLETED
        assert reasoning.calls["generate_code"] == []
        assert [f["path"] for f in builder.builds[0]["files"]] == ["src/index.ts"]
        assert result.phase_retries.get("BUILDING", 0) == 0

    @pytest.mark.asyncio
    async def test_resume_refused_while_running(self, registry, reasoning, builder):
        cycle = await seed_coded_cycle(registry)
        live = object()
        registry.register_cycle(cycle.id, live)

        result = await make_orchestrator(registry, reasoning, builder).resume(cycle)

        assert result.phase == DevelopmentPhase.BUILDING
        assert builder.builds == []
        assert registry.get_cycle_orchestrator(cycle.id) is live


class TestRebuild:

    @pytest.mark.asyncio
    async def test_rebuild_and_redeploy(self, registry, reasoning, builder):
        cycle = await make_orchestrator(registry, reasoning, builder).develop("Build a todo API")
        builder.build_results = [BuildResult(success=True, image_tag="registry.local/todo:2")]

        ok, message, details = await make_orchestrator(registry, reasoning, builder).rebuild_and_redeploy_cycle(cycle.id)

        assert ok is True
        assert message == "Rebuild and redeploy completed"
        assert details["image_tag"] == "registry.local/todo:2"
        assert details["deployment_name"] == cycle.deployment_name
        stored = await registry.repositories.cycles.get(cycle.id)
        assert stored.deployment["image_tag"] == "registry.local/todo:2"

    @pytest.mark.asyncio
    async def test_rebuild_unhealthy(self, registry, reasoning, builder):
        cycle = await seed_coded_cycle(registry, phase=DevelopmentPhase.COMPLETED)
        builder.health = [HealthStatus(healthy=False)]

        ok, message, details = await make_orchestrator(registry, reasoning, builder).rebuild_and_redeploy_cycle(cycle.id)

        assert ok is False
        assert message == "Health check failed after redeploy"
        assert details["image_tag"] == f"registry.local/{unique_app_name('Todo API', cycle.id)}:1"

    @pytest.mark.asyncio
    async def test_rebuild_missing_cycle(self, registry, reasoning, builder):
        result = await make_orchestrator(registry, reasoning, builder).rebuild_and_redeploy_cycle("missing")

        assert result == (False, "Cycle not found", {})

    @pytest.mark.asyncio
    async def test_rebuild_events_and_concurrent_updates(self, registry, reasoning, builder):
        cycle = await seed_coded_cycle(registry, phase=DevelopmentPhase.COMPLETED)
        published = []
        registry.event_sink.subscribe(published.append)
        builder.build_results = [BuildResult(success=False, error=TS_ERROR), BuildResult(success=True, image_tag="t:2")]
        original_build = builder.build

        async def build_while_verified(files, app_name):
            await registry.repositories.cycles.update(cycle.id, verification={"healthy": True})
            return await original_build(files, app_name)

        builder.build = build_while_verified
        rebuilder = make_orchestrator(registry, reasoning, builder)

        ok, _, _ = await rebuilder.rebuild_and_redeploy_cycle(cycle.id)

        assert ok is True
        repairs = [e for e in published if e.event_type == EventType.REPAIR_ATTEMPTED]
        assert [e.run_id for e in repairs] == [cycle.id]
        assert rebuilder.events.run_id == "unassigned"
        stored = await registry.repositories.cycles.get(cycle.id)
        assert stored.verification == {"healthy": True}
        assert stored.deployment["image_tag"] == "t:2"
