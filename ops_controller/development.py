"""
Development Orchestrator

Drives a requirement through the development pipeline:

    ANALYZING -> DESIGNING -> CODING -> TESTING -> BUILDING -> DEPLOYING -> VERIFYING -> COMPLETED

Each phase delegates to the reasoning service or the build/deploy executor.
A failed phase retries up to its own ceiling (counted since the cycle was
created). ANALYZING and DESIGNING retry themselves; every later phase goes
back to CODING with the failed phase's errors carried into regeneration.

BUILDING runs the self-repair loop:
    build -> parse errors per file -> fix each file -> rebuild
bounded by max_repair_attempts, aborting at once when nothing is parseable
or a repair pass changes no file.

CONSTRAINTS:
- One orchestrator instance per cycle run; listeners die with the run
- Cancellation is observed at the start of every phase and before waits
- Resuming never redoes a phase whose artifacts are already persisted
- Cancelled cycles end FAILED with a cancellation error so startup recovery
  does not pick them up again
"""

import logging
import re
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set, Tuple

import pydantic
from pydantic import BaseModel, ConfigDict, Field

from .build_errors import group_by_file, parse_build_errors, summarize_errors
from .collaborators import BuildDeployExecutor, BuildResult, ReasoningService, require_success
from .config import DevelopmentConfig
from .errors import (
    CancellationError,
    OpsControllerError,
    ResourceLimitError,
    TerminalFailure,
    TransientExternalError,
    ValidationError,
)
from .events import CancellationToken, EventChannel, EventType, Handler
from .models import DevelopmentCycle, DevelopmentPhase, GeneratedFile, MonitoredApp, new_id, utcnow
from .registry import ControlPlaneRegistry

logger = logging.getLogger("development")

VALID_TRANSITIONS: Dict[DevelopmentPhase, Set[DevelopmentPhase]] = {
    DevelopmentPhase.IDLE: {DevelopmentPhase.ANALYZING, DevelopmentPhase.FAILED},
    DevelopmentPhase.ANALYZING: {DevelopmentPhase.DESIGNING, DevelopmentPhase.ANALYZING, DevelopmentPhase.FAILED},
    DevelopmentPhase.DESIGNING: {DevelopmentPhase.CODING, DevelopmentPhase.DESIGNING, DevelopmentPhase.FAILED},
    DevelopmentPhase.CODING: {DevelopmentPhase.TESTING, DevelopmentPhase.CODING, DevelopmentPhase.FAILED},
    DevelopmentPhase.TESTING: {DevelopmentPhase.BUILDING, DevelopmentPhase.CODING, DevelopmentPhase.FAILED},
    DevelopmentPhase.BUILDING: {DevelopmentPhase.DEPLOYING, DevelopmentPhase.CODING, DevelopmentPhase.FAILED},
    DevelopmentPhase.DEPLOYING: {DevelopmentPhase.VERIFYING, DevelopmentPhase.CODING, DevelopmentPhase.FAILED},
    DevelopmentPhase.VERIFYING: {DevelopmentPhase.COMPLETED, DevelopmentPhase.CODING, DevelopmentPhase.FAILED},
    DevelopmentPhase.COMPLETED: set(),
    DevelopmentPhase.FAILED: set(),
}

SELF_RETRY_PHASES = {DevelopmentPhase.ANALYZING, DevelopmentPhase.DESIGNING}
MAX_PREVIOUS_ERRORS = 30


def retry_target(phase: DevelopmentPhase) -> DevelopmentPhase:
    """Where a failed phase goes when it still has retries left."""
    if phase in SELF_RETRY_PHASES:
        return phase
    return DevelopmentPhase.CODING


def sanitize_name(name: str) -> str:
    name = re.sub(r"[^a-z0-9-]", "-", name.lower())
    name = re.sub(r"-+", "-", name).strip("-")
    return name[:63]


def unique_app_name(title: Optional[str], cycle_id: str) -> str:
    """Deployment-safe name: sanitised title (40 chars max) plus the cycle id prefix."""
    base = sanitize_name(title or "app")[:40].strip("-") or "app"
    return f"{base}-{cycle_id[:8]}"


# -----------------------------------------------------------------------------
# Reasoning Payloads
# -----------------------------------------------------------------------------

class AnalyzedRequirementPayload(BaseModel):
    model_config = ConfigDict(extra="allow")

    title: str = Field(..., min_length=1)
    description: str = ""
    acceptance_criteria: List[str] = Field(default_factory=list)


class FilePayload(BaseModel):
    path: str = Field(..., min_length=1)
    content: str = Field(..., min_length=1)
    language: str = "typescript"
    purpose: str = ""


class CodeSetPayload(BaseModel):
    files: List[FilePayload] = Field(..., min_length=1)


class TestSetPayload(BaseModel):
    files: List[FilePayload] = Field(default_factory=list)


class FixPayload(BaseModel):
    changed: bool = False
    content: str = ""


def _validate(model_cls, data: Any, what: str):
    try:
        return model_cls.model_validate(data)
    except pydantic.ValidationError as e:
        raise ValidationError(f"Invalid {what} from reasoning service: {e}") from e


def _file_dicts(files: List[GeneratedFile]) -> List[Dict[str, Any]]:
    return [
        {"path": f.path, "content": f.content, "language": f.language, "purpose": f.purpose}
        for f in files
    ]


# -----------------------------------------------------------------------------
# Orchestrator
# -----------------------------------------------------------------------------

class DevelopmentOrchestrator:
    """Runs one development cycle. Create a fresh instance per run."""

    def __init__(
        self,
        registry: ControlPlaneRegistry,
        reasoning: ReasoningService,
        builder: BuildDeployExecutor,
        config: Optional[DevelopmentConfig] = None,
    ):
        self.registry = registry
        self.repos = registry.repositories
        self.reasoning = reasoning
        self.builder = builder
        self.config = config or registry.config.development
        self.events = EventChannel("unassigned", registry.event_sink)

        self.cycle: Optional[DevelopmentCycle] = None
        self.token: Optional[CancellationToken] = None

    def on(self, event_type: Optional[EventType], handler: Handler) -> None:
        self.events.on(event_type, handler)

    # -------------------------------------------------------------------------
    # Entry Points
    # -------------------------------------------------------------------------

    async def develop(self, requirement: str, options: Optional[Dict[str, Any]] = None) -> DevelopmentCycle:
        """
        Start a new cycle and run it to a terminal phase.

        options: service_type, storage_mode, cycle_id. Raises ResourceLimitError
        (before creating anything) when the concurrent-cycle cap is reached;
        every later failure ends in the returned cycle's FAILED phase.
        """
        self._check_capacity()
        options = options or {}
        cycle = DevelopmentCycle(
            id=options.get("cycle_id") or new_id(),
            requirement=requirement,
            service_type=options.get("service_type", "backend"),
            storage_mode=options.get("storage_mode", "memory"),
            max_iterations=self.config.max_iterations,
        )
        await self.repos.cycles.create(cycle)
        logger.info(f"Cycle {cycle.id}: starting development cycle")
        return await self._run(cycle, resuming=False)

    async def resume(self, cycle: DevelopmentCycle) -> DevelopmentCycle:
        """
        Continue an interrupted cycle from its last persisted phase.

        A cycle already running in this process is returned untouched.
        """
        if cycle.is_terminal():
            logger.info(f"Cycle {cycle.id}: already {cycle.phase.value}, nothing to resume")
            return cycle
        if self.registry.is_running(cycle.id):
            logger.warning(f"Cycle {cycle.id}: already running in this process")
            return cycle
        self._check_capacity()
        logger.info(f"Cycle {cycle.id}: resuming from {cycle.phase.value} (retries {cycle.phase_retries})")
        return await self._run(cycle, resuming=True)

    def cancel(self, cycle_id: Optional[str] = None, reason: str = "Cancelled by user") -> bool:
        cycle_id = cycle_id or (self.cycle.id if self.cycle else None)
        if cycle_id is None:
            return False
        if not self.registry.cancel(cycle_id, reason):
            logger.warning(f"Cycle {cycle_id}: cannot cancel, not running")
            return False
        return True

    async def get_active_cycles(self) -> List[DevelopmentCycle]:
        cycles = []
        for cycle_id in self.registry.active_cycle_ids():
            cycle = await self.repos.cycles.get(cycle_id)
            if cycle is not None:
                cycles.append(cycle)
        return cycles

    async def get_cycle(self, cycle_id: str) -> Optional[DevelopmentCycle]:
        return await self.repos.cycles.get(cycle_id)

    def _check_capacity(self) -> None:
        active = len(self.registry.active_cycle_ids())
        if active >= self.config.max_concurrent_cycles:
            raise ResourceLimitError(
                f"Maximum concurrent cycles ({self.config.max_concurrent_cycles}) reached",
                limit=self.config.max_concurrent_cycles,
            )

    async def _run(self, cycle: DevelopmentCycle, resuming: bool) -> DevelopmentCycle:
        self.cycle = cycle
        self.events.run_id = cycle.id
        self.token = self.registry.register_cycle(cycle.id, self)
        cycle.owner_instance_id = self.registry.instance_id
        await self._save()
        await self.events.emit(EventType.CYCLE_STARTED, cycle_id=cycle.id, resumed=resuming)

        try:
            if cycle.phase == DevelopmentPhase.IDLE:
                await self._transition(DevelopmentPhase.ANALYZING)
            await self._loop()
        except CancellationError as e:
            await self._cancelled(e)
        except TerminalFailure as e:
            await self._failed(e)
        except OpsControllerError as e:
            await self._failed(TerminalFailure(
                str(e), phase=cycle.phase.value, retry_counts=cycle.phase_retries, raw_error=str(e),
            ))
        except Exception as e:
            logger.exception(f"Cycle {cycle.id}: unexpected error in {cycle.phase.value}")
            await self._failed(TerminalFailure(
                f"Unexpected error: {e}", phase=cycle.phase.value,
                retry_counts=cycle.phase_retries, raw_error=repr(e),
            ))
        finally:
            self.cycle.owner_instance_id = None
            await self._save()
            self.registry.unregister(cycle.id)
            self.events.close()

        return self.cycle

    async def _loop(self) -> None:
        handlers: Dict[DevelopmentPhase, Callable[[], Awaitable[DevelopmentPhase]]] = {
            DevelopmentPhase.ANALYZING: self._analyze,
            DevelopmentPhase.DESIGNING: self._design,
            DevelopmentPhase.CODING: self._code,
            DevelopmentPhase.TESTING: self._test,
            DevelopmentPhase.BUILDING: self._build,
            DevelopmentPhase.DEPLOYING: self._deploy,
            DevelopmentPhase.VERIFYING: self._verify,
        }
        while not self.cycle.is_terminal():
            phase = self.cycle.phase
            self.token.raise_if_cancelled(phase.value)
            try:
                next_phase = await handlers[phase]()
            except (CancellationError, ResourceLimitError):
                raise
            except Exception as e:
                await self._phase_failed(phase, e)
                continue
            await self._transition(next_phase)

    # -------------------------------------------------------------------------
    # State
    # -------------------------------------------------------------------------

    async def _save(self) -> None:
        self.cycle.updated_at = utcnow()
        await self.repos.cycles.save(self.cycle)

    async def _transition(self, to_phase: DevelopmentPhase) -> None:
        from_phase = self.cycle.phase
        if to_phase not in VALID_TRANSITIONS[from_phase]:
            raise TerminalFailure(
                f"Invalid transition from {from_phase.value} to {to_phase.value}", phase=from_phase.value,
            )
        self.cycle.phase = to_phase
        if to_phase == DevelopmentPhase.COMPLETED:
            self.cycle.completed_at = utcnow()
            self.cycle.error = None
        await self._save()
        await self.repos.timeline.append(
            self.cycle.id, "phase", f"Phase: {to_phase.value}", f"{from_phase.value} -> {to_phase.value}",
        )
        logger.info(f"Cycle {self.cycle.id}: {from_phase.value} -> {to_phase.value}")
        await self.events.emit(EventType.CYCLE_PHASE_CHANGED, from_phase=from_phase.value, to_phase=to_phase.value)

        if to_phase == DevelopmentPhase.COMPLETED:
            duration = (self.cycle.completed_at - self.cycle.created_at).total_seconds()
            await self.events.emit(EventType.CYCLE_COMPLETED, cycle=self.cycle.to_dict(), duration=duration)

    async def _phase_failed(self, phase: DevelopmentPhase, error: Exception) -> None:
        """Retry the phase (or go back to CODING) if its ceiling allows, else fail the cycle."""
        retries = self.cycle.phase_retries.get(phase.value, 0)
        max_retries = self.config.max_retries_for(phase.value)
        logger.error(f"Cycle {self.cycle.id}: phase {phase.value} failed ({retries}/{max_retries} retries): {error}")

        if retries >= max_retries:
            raise TerminalFailure(
                f"Phase {phase.value} failed after {retries} retries: {error}",
                phase=phase.value,
                retry_counts=self.cycle.phase_retries,
                raw_error=getattr(error, "raw_error", None) or str(error),
            )

        self.cycle.phase_retries[phase.value] = retries + 1
        self.cycle.error = {"phase": phase.value, "message": str(error), "recoverable": True}
        target = retry_target(phase)
        logger.info(f"Cycle {self.cycle.id}: retrying {phase.value} via {target.value}")
        await self._transition(target)

    async def _failed(self, failure: TerminalFailure) -> None:
        if not failure.retry_counts:
            failure.retry_counts = dict(self.cycle.phase_retries)
        self.cycle.error = {**failure.to_dict(), "recoverable": False}
        from_phase = self.cycle.phase
        if not self.cycle.is_terminal():
            self.cycle.phase = DevelopmentPhase.FAILED
        await self._save()
        await self.repos.timeline.append(self.cycle.id, "phase", "Cycle failed", str(failure))
        logger.error(f"Cycle {self.cycle.id}: failed in {failure.phase}: {failure}")
        await self.events.emit(
            EventType.CYCLE_PHASE_CHANGED, from_phase=from_phase.value, to_phase=self.cycle.phase.value,
        )
        await self.events.emit(EventType.CYCLE_FAILED, cycle_id=self.cycle.id, error=self.cycle.error)

    async def _cancelled(self, error: CancellationError) -> None:
        reason = self.token.reason or "Cancelled by user"
        from_phase = self.cycle.phase
        self.cycle.error = {**error.to_dict(), "phase": error.phase, "reason": reason, "recoverable": False}
        self.cycle.phase = DevelopmentPhase.FAILED
        await self._save()
        logger.info(f"Cycle {self.cycle.id}: cancelled during {from_phase.value} ({reason})")
        await self.events.emit(
            EventType.CYCLE_PHASE_CHANGED, from_phase=from_phase.value, to_phase=DevelopmentPhase.FAILED.value,
        )
        await self.events.emit(EventType.CYCLE_CANCELLED, cycle_id=self.cycle.id, reason=reason)

    def _app_name(self, cycle: DevelopmentCycle) -> str:
        if cycle.deployment_name:
            return cycle.deployment_name
        title = (cycle.analyzed_requirement or {}).get("title") or cycle.requirement
        return unique_app_name(title, cycle.id)

    def _thread(self, thought_signature: Optional[str]) -> None:
        if thought_signature:
            self.cycle.thought_signature = thought_signature

    # -------------------------------------------------------------------------
    # Phases
    # -------------------------------------------------------------------------

    async def _analyze(self) -> DevelopmentPhase:
        result = await self.reasoning.analyze_requirement(
            self.cycle.requirement, thought_signature=self.cycle.thought_signature,
        )
        payload = _validate(AnalyzedRequirementPayload, require_success(result, "Requirement analysis"),
                            "requirement analysis")
        self._thread(result.thought_signature)
        self.cycle.analyzed_requirement = payload.model_dump()
        await self._save()
        logger.info(f"Cycle {self.cycle.id}: requirement analyzed ({payload.title})")
        return DevelopmentPhase.DESIGNING

    async def _design(self) -> DevelopmentPhase:
        if not self.cycle.analyzed_requirement:
            raise ValidationError("No analyzed requirement available")
        result = await self.reasoning.design_architecture(
            self.cycle.analyzed_requirement, thought_signature=self.cycle.thought_signature,
        )
        data = require_success(result, "Architecture design")
        if not isinstance(data, dict) or not data:
            raise ValidationError("Architecture design returned an empty design")
        self._thread(result.thought_signature)
        self.cycle.architecture = data
        await self._save()
        logger.info(f"Cycle {self.cycle.id}: architecture designed")
        return DevelopmentPhase.CODING

    async def _code(self) -> DevelopmentPhase:
        if not self.cycle.architecture:
            raise ValidationError("No architecture design available")
        if self.cycle.iterations >= self.cycle.max_iterations:
            raise ResourceLimitError(
                f"Maximum code generation iterations ({self.cycle.max_iterations}) reached",
                limit=self.cycle.max_iterations,
            )

        previous_errors = self._previous_errors()
        self.cycle.iterations += 1
        await self._save()

        result = await self.reasoning.generate_code(
            self.cycle.analyzed_requirement or {"description": self.cycle.requirement},
            self.cycle.architecture,
            previous_errors=previous_errors or None,
            thought_signature=self.cycle.thought_signature,
        )
        payload = _validate(CodeSetPayload, require_success(result, "Code generation"), "generated code")
        self._thread(result.thought_signature)

        keep = {f.path for f in payload.files}
        for existing in await self.repos.generated_files.list_for_cycle(self.cycle.id):
            if existing.path not in keep:
                await self.repos.generated_files.remove_path(self.cycle.id, existing.path)
        for f in payload.files:
            await self.repos.generated_files.upsert(self.cycle.id, f.path, f.content, f.language, f.purpose)

        self.cycle.generated_code = {
            "file_count": len(payload.files),
            "paths": sorted(keep),
            "iteration": self.cycle.iterations,
        }
        self.cycle.build_result = None
        self.cycle.verification = None
        await self._save()
        logger.info(
            f"Cycle {self.cycle.id}: generated {len(payload.files)} files "
            f"(iteration {self.cycle.iterations}, {len(previous_errors)} previous errors)"
        )
        await self.events.emit(EventType.CODE_GENERATED, file_count=len(payload.files), iteration=self.cycle.iterations)
        return DevelopmentPhase.TESTING

    def _previous_errors(self) -> List[str]:
        """Errors from the last failed attempt, for the regeneration request."""
        errors: List[str] = []
        build = self.cycle.build_result or {}
        if build and not build.get("success", True):
            errors.extend(build.get("errors") or [])
        verification = self.cycle.verification or {}
        if verification and not verification.get("success", True):
            errors.append(f"[VERIFY] {verification.get('error', 'verification failed')}")
        error = self.cycle.error or {}
        if error.get("recoverable") and error.get("message"):
            errors.append(f"[{error.get('phase')}] {error['message']}")
        return errors[:MAX_PREVIOUS_ERRORS]

    async def _test(self) -> DevelopmentPhase:
        files = await self.repos.generated_files.list_for_cycle(self.cycle.id)
        if not files:
            raise ValidationError("No generated code available")

        try:
            result = await self.reasoning.generate_tests(
                _file_dicts(files), thought_signature=self.cycle.thought_signature,
            )
            payload = _validate(TestSetPayload, require_success(result, "Test generation"), "generated tests")
        except OpsControllerError as e:
            logger.warning(f"Cycle {self.cycle.id}: test generation failed, continuing to build: {e}")
            self.cycle.test_results = {"success": False, "generated": 0, "error": str(e)}
            await self._save()
            return DevelopmentPhase.BUILDING

        self._thread(result.thought_signature)
        for f in payload.files:
            await self.repos.generated_files.upsert(self.cycle.id, f.path, f.content, f.language, f.purpose or "test")
        self.cycle.test_results = {"success": True, "generated": len(payload.files)}
        await self._save()
        logger.info(f"Cycle {self.cycle.id}: {len(payload.files)} test files generated")
        return DevelopmentPhase.BUILDING

    async def _build(self) -> DevelopmentPhase:
        app_name = self._app_name(self.cycle)
        try:
            result, repairs = await self.build_with_repair(self.cycle, app_name, self.token)
        except TerminalFailure as e:
            self.cycle.build_result = {
                "success": False,
                "error": str(e),
                "errors": summarize_errors(e.raw_error or ""),
            }
            await self._save()
            raise

        self.cycle.build_result = {
            "success": True,
            "image_tag": result.image_tag or "latest",
            "repair_attempts": repairs,
            "duration": result.duration,
            "completed_at": utcnow().isoformat(),
        }
        if result.test_results is not None:
            self.cycle.test_results = result.test_results
        await self._save()
        await self.events.emit(EventType.BUILD_COMPLETED, image_tag=result.image_tag, repair_attempts=repairs)
        return DevelopmentPhase.DEPLOYING

    async def _deploy(self) -> DevelopmentPhase:
        if not self.cycle.build_result or not self.cycle.build_result.get("success"):
            raise ValidationError("No successful build available")
        app_name = self._app_name(self.cycle)
        namespace = self.config.namespace
        image_tag = self.cycle.build_result.get("image_tag") or "latest"

        result = await self.builder.deploy(app_name, namespace, image_tag)
        if not result.success:
            raise TransientExternalError(f"Deployment failed: {result.error or 'Unknown error'}",
                                         collaborator="build_deploy")

        self.cycle.deployment = {
            "deployment_name": result.deployment_name or app_name,
            "namespace": result.namespace or namespace,
            "service_url": result.service_url,
            "image_tag": image_tag,
            "deployed_at": utcnow().isoformat(),
        }
        await self._save()
        logger.info(f"Cycle {self.cycle.id}: deployed {app_name} to {namespace}")
        await self.events.emit(EventType.DEPLOYMENT_COMPLETED, deployment=self.cycle.deployment)
        return DevelopmentPhase.VERIFYING

    async def _verify(self) -> DevelopmentPhase:
        if not self.cycle.deployment:
            raise ValidationError("No deployment available")
        name = self.cycle.deployment["deployment_name"]
        namespace = self.cycle.deployment["namespace"]

        health = await self.builder.check_health(name, namespace)
        self.cycle.verification = {
            "success": health.healthy,
            "error_rate": health.error_rate,
            "details": health.details,
            "checked_at": utcnow().isoformat(),
        }
        if not health.healthy:
            self.cycle.verification["error"] = health.details.get("error", f"{name} is unhealthy")
            await self._save()
            raise TransientExternalError(f"Verification failed: {self.cycle.verification['error']}",
                                         collaborator="build_deploy")

        await self._register_for_monitoring(self.cycle)
        return DevelopmentPhase.COMPLETED

    async def _register_for_monitoring(self, cycle: DevelopmentCycle) -> MonitoredApp:
        deployment = cycle.deployment or {}
        name = deployment.get("deployment_name") or self._app_name(cycle)
        namespace = deployment.get("namespace") or self.config.namespace
        app = await self.repos.monitored_apps.get_by_name(name, namespace)
        if app is None:
            app = await self.repos.monitored_apps.create(MonitoredApp(
                name=name,
                namespace=namespace,
                development_cycle_id=cycle.id,
                service_url=deployment.get("service_url"),
            ))
        else:
            app.development_cycle_id = cycle.id
            app.service_url = deployment.get("service_url")
            app.is_active = True
            await self.repos.monitored_apps.save(app)
        logger.info(f"Cycle {cycle.id}: registered {namespace}/{name} for monitoring")
        return app

    # -------------------------------------------------------------------------
    # Self-Repair Loop
    # -------------------------------------------------------------------------

    async def build_with_repair(
        self,
        cycle: DevelopmentCycle,
        app_name: str,
        token: Optional[CancellationToken] = None,
        events: Optional[EventChannel] = None,
    ) -> Tuple[BuildResult, int]:
        """
        Build, repairing per-file errors between attempts.

        Repair events go to events, else to this orchestrator's run channel.

        Returns (successful build, repair passes used). Raises TerminalFailure
        carrying the raw build output when the loop gives up.
        """
        phase = DevelopmentPhase.BUILDING.value
        repairs = 0
        while True:
            if token is not None:
                token.raise_if_cancelled(phase)

            files = await self.repos.generated_files.list_for_cycle(cycle.id)
            if not files:
                raise ValidationError("No generated code available")

            result = await self.builder.build(_file_dicts(files), app_name)
            if result.success:
                logger.info(f"Cycle {cycle.id}: build succeeded ({result.image_tag}) after {repairs} repairs")
                return result, repairs

            output = result.raw_output
            grouped = group_by_file(parse_build_errors(output))
            if not grouped:
                raise TerminalFailure(
                    f"Build failed with no parseable errors: {result.error or 'Unknown error'}",
                    phase=phase, raw_error=output,
                )
            if repairs >= self.config.max_repair_attempts:
                raise TerminalFailure(
                    f"Build still failing after {repairs} repair attempts "
                    f"({sum(len(e) for e in grouped.values())} errors in {len(grouped)} files)",
                    phase=phase, raw_error=output,
                )

            repairs += 1
            by_path = {f.path: f for f in files}
            changed = 0
            for path, errors in grouped.items():
                if token is not None:
                    token.raise_if_cancelled(phase)
                target = by_path.get(path) or next(
                    (f for p, f in by_path.items() if p.endswith(path) or path.endswith(p)), None,
                )
                if target is None:
                    logger.warning(f"Cycle {cycle.id}: build error in unknown file {path}")
                    continue

                fix = await self.reasoning.fix_code(
                    target.path, target.content, [e.to_dict() for e in errors],
                    thought_signature=cycle.thought_signature,
                )
                if not fix.success:
                    logger.warning(f"Cycle {cycle.id}: fix for {target.path} failed: {fix.error}")
                    continue
                try:
                    payload = FixPayload.model_validate(fix.data or {})
                except pydantic.ValidationError as e:
                    logger.warning(f"Cycle {cycle.id}: invalid fix for {target.path}: {e}")
                    continue
                if payload.changed and payload.content.strip() and payload.content != target.content:
                    await self.repos.generated_files.upsert(
                        cycle.id, target.path, payload.content, target.language, target.purpose,
                    )
                    changed += 1

            logger.info(
                f"Cycle {cycle.id}: repair attempt {repairs}/{self.config.max_repair_attempts} "
                f"changed {changed} of {len(grouped)} files"
            )
            await (events or self.events).emit(
                EventType.REPAIR_ATTEMPTED,
                attempt=repairs,
                files_with_errors=list(grouped),
                files_changed=changed,
            )
            if changed == 0:
                raise TerminalFailure(
                    f"Self-repair made no progress on attempt {repairs}", phase=phase, raw_error=output,
                )

    # -------------------------------------------------------------------------
    # Rebuild (evolution path)
    # -------------------------------------------------------------------------

    async def rebuild_and_redeploy_cycle(self, cycle_id: str) -> Tuple[bool, str, Dict[str, Any]]:
        """Re-run BUILD -> DEPLOY -> VERIFY for an already-coded cycle."""
        cycle = await self.repos.cycles.get(cycle_id)
        if cycle is None:
            return False, "Cycle not found", {}
        if not await self.repos.generated_files.list_for_cycle(cycle_id):
            return False, "No generated files found for cycle", {}

        app_name = self._app_name(cycle)
        namespace = (cycle.deployment or {}).get("namespace") or self.config.namespace
        logger.info(f"Cycle {cycle_id}: rebuilding and redeploying {app_name}")

        events = EventChannel(cycle_id, self.registry.event_sink)
        try:
            result, repairs = await self.build_with_repair(cycle, app_name, events=events)
        except OpsControllerError as e:
            logger.error(f"Cycle {cycle_id}: rebuild failed: {e}")
            return False, f"Build failed: {e}", {}

        image_tag = result.image_tag or "latest"
        deploy = await self.builder.deploy(app_name, namespace, image_tag)
        if not deploy.success:
            return False, f"Deployment failed: {deploy.error or 'Unknown error'}", {"image_tag": image_tag}

        health = await self.builder.check_health(deploy.deployment_name or app_name, deploy.namespace or namespace)
        if not health.healthy:
            return False, "Health check failed after redeploy", {"image_tag": image_tag}

        details = {
            "deployment_name": deploy.deployment_name or app_name,
            "namespace": deploy.namespace or namespace,
            "service_url": deploy.service_url,
            "image_tag": image_tag,
            "redeployed_at": utcnow().isoformat(),
        }
        # Fresh copy: only deployment and build_result are written here.
        current = await self.repos.cycles.get(cycle_id) or cycle
        current.deployment = details
        current.build_result = {"success": True, "image_tag": image_tag, "repair_attempts": repairs}
        await self.repos.cycles.save(current)
        logger.info(f"Cycle {cycle_id}: rebuild and redeploy completed ({image_tag})")
        return True, "Rebuild and redeploy completed", details
