"""
Unit Tests for the Investigation Orchestrator

Test coverage for:
- OODA + VERIFY phase order on a clean resolution
- Escalation ladder on failed verification
- Transient collaborator retries and terminal failure
- Low-confidence re-observation bounded by the phase retry limit
- Dry run, cancellation, action limit
- Resume from persisted state and ownership claims, including across a restart
- One live run per incident
- Temporary-fix escalation to a code evolution
"""

import asyncio
from datetime import timedelta

import pytest

from ops_controller.collaborators import ActionResult, HealthStatus, ReasoningResult
from ops_controller.config import EvolutionConfig
from ops_controller.errors import TransientExternalError
from ops_controller.events import EventType
from ops_controller.evolution_engine import CodeEvolutionEngine
from ops_controller.investigation import (
    ESCALATION_LADDER,
    InvestigationOrchestrator,
    claim_incident,
    determine_action_type,
)
from ops_controller.models import (
    ActionRecord,
    ActionStatus,
    ActionType,
    DevelopmentCycle,
    DevelopmentPhase,
    EvolutionStatus,
    Hypothesis,
    HypothesisStatus,
    IncidentStatus,
    OODAPhase,
    new_id,
    utcnow,
)
from ops_controller.registry import ControlPlaneRegistry
from ops_controller.repositories import Repositories
from tests.conftest import FakeExecutor, fast_config, make_incident


def make_orchestrator(registry, reasoning, executor, evolution_engine=None) -> InvestigationOrchestrator:
    return InvestigationOrchestrator(registry, reasoning, executor, evolution_engine=evolution_engine)


def record_phases(orchestrator):
    phases = []
    orchestrator.on(EventType.PHASE_CHANGED, lambda e: phases.append(e.payload["to_phase"]))
    return phases


async def create(registry, **overrides):
    incident = make_incident(**overrides)
    await registry.repositories.incidents.create(incident)
    return incident


class TestHelpers:

    def test_determine_action_type(self):
        assert determine_action_type("Restart the pods") == ActionType.RESTART
        assert determine_action_type("scale out to 3 replicas") == ActionType.SCALE
        assert determine_action_type("rollback to previous image") == ActionType.ROLLBACK
        assert determine_action_type("code_fix: guard null body") == ActionType.CODE_FIX
        assert determine_action_type(None) == ESCALATION_LADDER[0]

    def test_claim_incident(self):
        now = utcnow()
        incident = make_incident(owner_instance_id="instance-a", heartbeat_at=now - timedelta(seconds=30))

        assert claim_incident(incident, "instance-a", 60, now) is True
        assert claim_incident(incident, "instance-b", 60, now) is False
        assert claim_incident(incident, "instance-b", 20, now) is True
        assert claim_incident(incident, "instance-b", 0, now) is True
        assert claim_incident(make_incident(), "instance-b", 60, now) is True


class TestResolution:

    @pytest.mark.asyncio
    async def test_phase_order(self, registry, reasoning, executor):
        incident = await create(registry)
        orchestrator = make_orchestrator(registry, reasoning, executor)
        phases = record_phases(orchestrator)

        result = await orchestrator.investigate(incident)

        assert phases == ["OBSERVING", "ORIENTING", "DECIDING", "ACTING", "VERIFYING", "DONE"]
        assert result.status == IncidentStatus.RESOLVED
        assert result.ooda_phase == OODAPhase.DONE
        assert result.owner_instance_id is None
        assert [r.action_type for r in executor.requests] == ["restart"]
        assert executor.requests[0].deployment == "checkout-svc"

    @pytest.mark.asyncio
    async def test_resolution_side_effects(self, registry, reasoning, executor):
        incident = await create(registry)
        orchestrator = make_orchestrator(registry, reasoning, executor)

        await orchestrator.investigate(incident)

        repos = registry.repositories
        stored = await repos.incidents.get(incident.id)
        assert stored.status == IncidentStatus.RESOLVED
        assert stored.resolved_at is not None
        assert len(await repos.postmortems.list()) == 1
        hypotheses = await repos.hypotheses.list_for_incident(incident.id)
        assert hypotheses[0].status == HypothesisStatus.CONFIRMED
        assert len(await repos.patterns.list()) == 1
        assert registry.is_running(incident.id) is False
        assert registry.detection_state.is_investigating(incident.id) is False
        assert registry.detection_state.should_trigger_incident(
            "high_error_rate", "high", "new", "checkout-svc",
        )[0] is False

    @pytest.mark.asyncio
    async def test_events_do_not_leak_between_runs(self, registry, reasoning, executor):
        first = make_orchestrator(registry, reasoning, executor)
        seen = []
        first.on(None, seen.append)
        await first.investigate(await create(registry))
        count = len(seen)

        await make_orchestrator(registry, reasoning, executor).investigate(await create(registry, app_name="billing-svc"))

        assert count > 0
        assert len(seen) == count


class TestEscalation:

    @pytest.mark.asyncio
    async def test_failed_verification_climbs_ladder(self, registry, reasoning, executor):
        registry.config.investigation.max_verification_attempts = 1
        executor.health = [
            HealthStatus(healthy=True, error_rate=0.0),
            HealthStatus(healthy=False, error_rate=0.4),
            HealthStatus(healthy=True, error_rate=0.0),
        ]
        incident = await create(registry)
        orchestrator = make_orchestrator(registry, reasoning, executor)
        phases = record_phases(orchestrator)

        result = await orchestrator.investigate(incident)

        assert [r.action_type for r in executor.requests] == ["restart", "scale"]
        assert executor.requests[1].parameters == {"replicas": 3}
        assert result.escalation_level == 1
        assert result.status == IncidentStatus.RESOLVED
        assert phases[-4:] == ["VERIFYING", "ACTING", "VERIFYING", "DONE"]

    @pytest.mark.asyncio
    async def test_suggested_action_picks_starting_rung(self, registry, reasoning, executor):
        reasoning.set("generate_hypotheses", ReasoningResult.ok({"hypotheses": [
            {"root_cause": "Bad deploy", "confidence": 0.95, "suggested_action": "rollback"},
        ]}))
        incident = await create(registry)

        await make_orchestrator(registry, reasoning, executor).investigate(incident)

        assert [r.action_type for r in executor.requests] == ["rollback"]

    @pytest.mark.asyncio
    async def test_action_limit(self, registry, reasoning, executor):
        registry.config.investigation.max_actions_per_incident = 1
        registry.config.investigation.max_verification_attempts = 1
        executor.health = [HealthStatus(healthy=False, error_rate=0.5)]
        incident = await create(registry)
        orchestrator = make_orchestrator(registry, reasoning, executor)
        failed = []
        orchestrator.on(EventType.INVESTIGATION_FAILED, failed.append)

        result = await orchestrator.investigate(incident)

        assert result.ooda_phase == OODAPhase.FAILED
        assert result.error["message"] == "Action limit reached (1)"
        assert result.error["phase"] == "ACTING"
        assert result.error["last_action"]["action_type"] == "restart"
        assert result.error["last_verification"]["success"] is False
        assert len(failed) == 1


class TestRetries:

    @pytest.mark.asyncio
    async def test_transient_action_error_is_retried(self, registry, reasoning, executor):
        executor.action_results = [TransientExternalError("API server timeout", collaborator="platform"), None]
        incident = await create(registry)

        result = await make_orchestrator(registry, reasoning, executor).investigate(incident)

        assert result.status == IncidentStatus.RESOLVED
        assert result.phase_retries == {"ACTING": 1}
        assert len(executor.requests) == 2

    @pytest.mark.asyncio
    async def test_reasoning_outage_fails_after_retries(self, registry, reasoning, executor):
        reasoning.set("generate_hypotheses", ReasoningResult.fail("upstream timeout", "timeout"))
        incident = await create(registry)

        result = await make_orchestrator(registry, reasoning, executor).investigate(incident)

        assert result.ooda_phase == OODAPhase.FAILED
        assert result.error["phase"] == "ORIENTING"
        assert result.error["retry_counts"] == {"ORIENTING": 2}
        assert len(reasoning.calls["generate_hypotheses"]) == 3
        assert executor.requests == []

    @pytest.mark.asyncio
    async def test_invalid_hypotheses_fail_without_retry(self, registry, reasoning, executor):
        reasoning.set("generate_hypotheses", ReasoningResult.ok({"hypotheses": [
            {"root_cause": "", "confidence": 1.7},
        ]}))
        incident = await create(registry)

        result = await make_orchestrator(registry, reasoning, executor).investigate(incident)

        assert result.ooda_phase == OODAPhase.FAILED
        assert result.error["phase"] == "ORIENTING"
        assert len(reasoning.calls["generate_hypotheses"]) == 1

    @pytest.mark.asyncio
    async def test_low_confidence_reobserves_then_fails(self, registry, reasoning, executor):
        reasoning.set("generate_hypotheses", ReasoningResult.ok({"hypotheses": [
            {"root_cause": "Unclear", "confidence": 0.3, "suggested_action": "restart"},
        ]}))
        incident = await create(registry)
        orchestrator = make_orchestrator(registry, reasoning, executor)
        phases = record_phases(orchestrator)

        result = await orchestrator.investigate(incident)

        assert result.ooda_phase == OODAPhase.FAILED
        assert phases.count("OBSERVING") == 3
        assert len(reasoning.calls["generate_hypotheses"]) == 3
        assert "No hypothesis above confidence threshold" in result.error["message"]
        assert executor.requests == []


class TestDryRunAndCancellation:

    @pytest.mark.asyncio
    async def test_dry_run_leaves_incident_active(self, reasoning, executor):
        registry = ControlPlaneRegistry(fast_config(investigation={"dry_run": True}))
        incident = await create(registry)

        result = await make_orchestrator(registry, reasoning, executor).investigate(incident)

        assert result.ooda_phase == OODAPhase.DONE
        assert result.status == IncidentStatus.ACTIVE
        assert executor.requests[0].dry_run is True
        assert await registry.repositories.postmortems.list() == []

    @pytest.mark.asyncio
    async def test_cancel_between_phases(self, registry, reasoning, executor):
        incident = await create(registry)
        orchestrator = make_orchestrator(registry, reasoning, executor)
        orchestrator.on(EventType.HYPOTHESIS_GENERATED, lambda e: orchestrator.cancel("operator stop"))
        cancelled = []
        orchestrator.on(EventType.INVESTIGATION_CANCELLED, cancelled.append)

        result = await orchestrator.investigate(incident)

        assert result.status == IncidentStatus.ACTIVE
        assert result.error["type"] == "CancellationError"
        assert result.error["reason"] == "operator stop"
        assert result.error["phase"] == "DECIDING"
        assert executor.requests == []
        assert cancelled[0].payload["reason"] == "operator stop"
        assert registry.is_running(incident.id) is False


class TestResume:

    @pytest.mark.asyncio
    async def test_resume_from_verifying_uses_persisted_state(self, registry, reasoning, executor):
        repos = registry.repositories
        incident = await create(registry, ooda_phase=OODAPhase.VERIFYING, status=IncidentStatus.MITIGATING)
        hypothesis = Hypothesis(incident_id=incident.id, title="Memory leak", confidence=0.9,
                                suggested_action="restart", status=HypothesisStatus.CONFIRMED)
        await repos.hypotheses.create(hypothesis)
        await repos.actions.create(ActionRecord(
            incident_id=incident.id, action_type=ActionType.RESTART, target="development/checkout-svc",
            status=ActionStatus.COMPLETED, result="restarted",
        ))
        orchestrator = make_orchestrator(registry, reasoning, executor)
        phases = record_phases(orchestrator)

        result = await orchestrator.resume(incident)

        assert phases == ["DONE"]
        assert result.status == IncidentStatus.RESOLVED
        assert reasoning.calls["generate_hypotheses"] == []
        assert executor.requests == []
        assert orchestrator.selected.id == hypothesis.id

    @pytest.mark.asyncio
    async def test_resume_refuses_live_owner(self, registry, reasoning, executor):
        incident = await create(
            registry, ooda_phase=OODAPhase.ORIENTING,
            owner_instance_id="instance-other", heartbeat_at=utcnow(),
        )

        result = await make_orchestrator(registry, reasoning, executor).resume(incident)

        assert result.ooda_phase == OODAPhase.ORIENTING
        assert result.owner_instance_id == "instance-other"
        assert reasoning.calls["generate_hypotheses"] == []

    @pytest.mark.asyncio
    async def test_resume_reclaims_stale_owner(self, registry, reasoning, executor):
        incident = await create(
            registry, ooda_phase=OODAPhase.ORIENTING,
            owner_instance_id="instance-dead", heartbeat_at=utcnow() - timedelta(minutes=5),
        )

        result = await make_orchestrator(registry, reasoning, executor).resume(incident)

        assert result.status == IncidentStatus.RESOLVED
        assert len(reasoning.calls["generate_hypotheses"]) == 1

    @pytest.mark.asyncio
    async def test_resume_terminal_is_noop(self, registry, reasoning, executor):
        incident = await create(registry, ooda_phase=OODAPhase.DONE, status=IncidentStatus.RESOLVED)

        result = await make_orchestrator(registry, reasoning, executor).resume(incident)

        assert result.ooda_phase == OODAPhase.DONE
        assert executor.health_checks == 0

    @pytest.mark.asyncio
    async def test_resume_never_started_runs_full_loop(self, registry, reasoning, executor):
        incident = await create(registry)
        orchestrator = make_orchestrator(registry, reasoning, executor)
        phases = record_phases(orchestrator)

        result = await orchestrator.resume(incident, stale_after=0)

        assert phases[0] == "OBSERVING"
        assert result.status == IncidentStatus.RESOLVED

    @pytest.mark.asyncio
    async def test_second_run_refused_while_first_in_flight(self, registry, reasoning):
        gate = asyncio.Event()

        class GatedExecutor(FakeExecutor):
            async def execute(self, request):
                self.requests.append(request)
                await gate.wait()
                return ActionResult(True, f"{request.action_type} {request.deployment} ok")

        executor = GatedExecutor()
        incident = await create(registry)
        first = make_orchestrator(registry, reasoning, executor)
        running = asyncio.create_task(first.investigate(incident))
        for _ in range(1000):
            if executor.requests:
                break
            await asyncio.sleep(0)

        stored = await registry.repositories.incidents.get(incident.id)
        second = make_orchestrator(registry, reasoning, executor)
        assert await second.resume(stored) is stored
        assert await second.investigate(stored) is stored
        assert second.cancel() is False
        assert registry.get_investigation(incident.id) is first

        gate.set()
        result = await running

        assert result.status == IncidentStatus.RESOLVED
        assert len(executor.requests) == 1
        assert registry.is_running(incident.id) is False

    @pytest.mark.asyncio
    async def test_resume_after_restart_uses_stored_state(self, tmp_path, reasoning, executor):
        before = ControlPlaneRegistry(fast_config(), repositories=Repositories.durable(tmp_path),
                                      instance_id="instance-old")
        incident = await create(before, ooda_phase=OODAPhase.VERIFYING, status=IncidentStatus.MITIGATING,
                                owner_instance_id="instance-old", heartbeat_at=utcnow())
        hypothesis = Hypothesis(incident_id=incident.id, title="Memory leak", confidence=0.9,
                                suggested_action="restart", status=HypothesisStatus.CONFIRMED)
        await before.repositories.hypotheses.create(hypothesis)
        await before.repositories.actions.create(ActionRecord(
            incident_id=incident.id, action_type=ActionType.RESTART, target="development/checkout-svc",
            status=ActionStatus.COMPLETED, result="restarted",
        ))

        after = ControlPlaneRegistry(fast_config(), repositories=Repositories.durable(tmp_path),
                                     instance_id="instance-new")
        stored = await after.repositories.incidents.get(incident.id)
        orchestrator = make_orchestrator(after, reasoning, executor)
        phases = record_phases(orchestrator)
        result = await orchestrator.resume(stored, stale_after=0)

        assert phases == ["DONE"]
        assert result.status == IncidentStatus.RESOLVED
        assert reasoning.calls["generate_hypotheses"] == []
        assert executor.requests == []
        assert orchestrator.selected.id == hypothesis.id
        assert len(await after.repositories.actions.list_for_incident(incident.id)) == 1


class TestCodeFix:

    async def seed_cycle(self, registry):
        repos = registry.repositories
        cycle = DevelopmentCycle(
            id=new_id(), requirement="Checkout service", phase=DevelopmentPhase.COMPLETED,
            deployment={"deployment_name": "checkout-svc", "namespace": "development"},
        )
        await repos.cycles.create(cycle)
        await repos.generated_files.upsert(cycle.id, "src/index.ts", "export const app = 1;\n")
        return cycle

    def engine(self, registry, reasoning, **config):
        class Rebuilder:
            async def rebuild_and_redeploy_cycle(self, cycle_id):
                return True, "Rebuild and redeploy completed", {"image_tag": "checkout-svc:2"}

        return CodeEvolutionEngine(
            registry.repositories, reasoning, registry.detection_state,
            config=EvolutionConfig(**config), rebuilder=Rebuilder(),
        )

    @pytest.mark.asyncio
    async def test_code_fix_applies_evolution(self, registry, reasoning, executor):
        cycle = await self.seed_cycle(registry)
        reasoning.set("generate_hypotheses", ReasoningResult.ok({"hypotheses": [
            {"root_cause": "Unhandled null body", "confidence": 0.92, "suggested_action": "code_fix"},
        ]}))
        engine = self.engine(registry, reasoning, auto_approve=True)
        incident = await create(registry, linked_development_cycle_id=cycle.id)

        result = await make_orchestrator(registry, reasoning, executor, engine).investigate(incident)

        assert result.status == IncidentStatus.RESOLVED
        assert executor.requests == []
        evolutions = await engine.find_by_incident_id(incident.id)
        assert [e.status for e in evolutions] == [EvolutionStatus.APPLIED]
        assert registry.detection_state.has_pending_evolution("checkout-svc") is False
        files = await registry.repositories.generated_files.list_for_cycle(cycle.id)
        assert files[0].content == "export const app = 2;\n"

    @pytest.mark.asyncio
    async def test_code_fix_without_cycle_escalates_to_exhaustion(self, registry, reasoning, executor):
        reasoning.set("generate_hypotheses", ReasoningResult.ok({"hypotheses": [
            {"root_cause": "Unhandled null body", "confidence": 0.92, "suggested_action": "code_fix"},
        ]}))
        engine = self.engine(registry, reasoning, auto_approve=True)
        incident = await create(registry)

        result = await make_orchestrator(registry, reasoning, executor, engine).investigate(incident)

        assert result.ooda_phase == OODAPhase.FAILED
        assert result.error["message"] == "Escalation ladder exhausted"
        assert "Manual code fix required" in result.error["last_action"]["result"]

    @pytest.mark.asyncio
    async def test_temporary_fix_escalates_to_code_fix(self, registry, reasoning, executor):
        cycle = await self.seed_cycle(registry)
        executor.health = [
            HealthStatus(healthy=False, error_rate=0.3),
            HealthStatus(healthy=True, error_rate=0.0),
        ]
        engine = self.engine(registry, reasoning, auto_approve=True)
        incident = await create(registry, linked_development_cycle_id=cycle.id)

        result = await make_orchestrator(registry, reasoning, executor, engine).investigate(incident)

        assert result.status == IncidentStatus.RESOLVED
        assert [r.action_type for r in executor.requests] == ["restart"]
        actions = await registry.repositories.actions.list_for_incident(incident.id)
        assert sorted(a.action_type.value for a in actions) == ["code_fix", "restart"]
        assert result.escalation_level == ESCALATION_LADDER.index(ActionType.CODE_FIX)
