"""
Code Evolution Engine

Turns a natural-language change request against a generated application into
a bounded, reviewable, reversible set of file edits.

State machine:
    pending -> analyzing -> generating -> review -> approved -> applied
                                                 -> rejected
    applied -> reverted
    failed is reachable from analyzing, generating and apply

CONSTRAINTS:
- At most max_pending_evolutions pending per development cycle
- More than max_files_per_evolution affected files routes to human review,
  even when auto-approve is on
- Analysis runs under a hard timeout (default 120s)
- Every create/modify change must carry non-empty content before anything is
  applied; one blank change fails the whole evolution with no mutation
- Apply snapshots each touched file first; revert restores those exact bytes
- Any terminal outcome clears the app's pending-evolution cooldown
"""

import asyncio
import logging
import re
from typing import Any, Dict, List, Optional, Tuple

import pydantic
from pydantic import BaseModel, Field

from .collaborators import ReasoningService, SourceControl
from .config import EvolutionConfig
from .detection_state import DetectionStateManager
from .errors import ValidationError
from .events import EventSink, EventType, RunEvent
from .models import (
    ChangeType,
    Evolution,
    EvolutionAnalysis,
    EvolutionStatus,
    ImpactLevel,
    ProposedChange,
    new_id,
    utcnow,
)
from .repositories import Repositories

logger = logging.getLogger("evolution_engine")

SNAPSHOT = "snapshot"
REVERT = "revert"

VALID_TRANSITIONS: Dict[EvolutionStatus, set] = {
    EvolutionStatus.PENDING: {EvolutionStatus.ANALYZING, EvolutionStatus.REJECTED, EvolutionStatus.FAILED},
    EvolutionStatus.ANALYZING: {EvolutionStatus.GENERATING, EvolutionStatus.REVIEW, EvolutionStatus.FAILED},
    EvolutionStatus.GENERATING: {EvolutionStatus.REVIEW, EvolutionStatus.FAILED},
    EvolutionStatus.REVIEW: {
        EvolutionStatus.GENERATING, EvolutionStatus.APPROVED,
        EvolutionStatus.REJECTED, EvolutionStatus.FAILED,
    },
    EvolutionStatus.APPROVED: {
        EvolutionStatus.GENERATING, EvolutionStatus.APPLIED,
        EvolutionStatus.REJECTED, EvolutionStatus.FAILED,
    },
    EvolutionStatus.APPLIED: {EvolutionStatus.REVERTED},
    EvolutionStatus.REJECTED: set(),
    EvolutionStatus.REVERTED: set(),
    EvolutionStatus.FAILED: set(),
}

LANGUAGE_BY_EXTENSION = {
    "ts": "typescript",
    "tsx": "typescript",
    "js": "javascript",
    "jsx": "javascript",
    "py": "python",
    "json": "json",
    "yaml": "yaml",
    "yml": "yaml",
    "dockerfile": "dockerfile",
    "md": "markdown",
    "sh": "shell",
    "css": "css",
    "html": "html",
}


# -----------------------------------------------------------------------------
# Reasoning Payloads
# -----------------------------------------------------------------------------

class AnalysisPayload(BaseModel):
    affected_files: List[str] = Field(default_factory=list)
    impact_level: ImpactLevel = ImpactLevel.LOW
    risks: List[str] = Field(default_factory=list)
    summary: str = ""


class ChangePayload(BaseModel):
    path: str = Field(..., min_length=1)
    change_type: ChangeType
    new_content: Optional[str] = None
    old_content: Optional[str] = None
    description: str = ""


class ChangeSetPayload(BaseModel):
    changes: List[ChangePayload] = Field(default_factory=list)


def _validate(model_cls, data: Any, what: str):
    try:
        return model_cls.model_validate(data or {})
    except pydantic.ValidationError as e:
        raise ValidationError(f"Invalid {what} from reasoning service: {e}") from e


def detect_language(path: str) -> str:
    name = path.rsplit("/", 1)[-1].lower()
    ext = name.rsplit(".", 1)[-1] if "." in name else name
    return LANGUAGE_BY_EXTENSION.get(ext, "typescript")


def sanitize_app_name(requirement: str) -> str:
    return re.sub(r"[^a-zA-Z0-9-]", "-", requirement[:50]).lower()


class CodeEvolutionEngine:
    """
    Evolution request / analyze / generate / apply / revert.

    Public operations return (success, message, evolution) tuples.
    """

    def __init__(
        self,
        repositories: Repositories,
        reasoning: ReasoningService,
        detection_state: DetectionStateManager,
        config: Optional[EvolutionConfig] = None,
        source_control: Optional[SourceControl] = None,
        event_sink: Optional[EventSink] = None,
        rebuilder: Optional[Any] = None,
    ):
        self.repos = repositories
        self.reasoning = reasoning
        self.detection_state = detection_state
        self.config = config or EvolutionConfig()
        self.source_control = source_control
        self.event_sink = event_sink
        # Anything with rebuild_and_redeploy_cycle(cycle_id); set once the
        # development orchestrator exists.
        self.rebuilder = rebuilder

    # -------------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------------

    async def _set_status(self, evolution: Evolution, status: EvolutionStatus, **changes: Any) -> Evolution:
        if status != evolution.status and status not in VALID_TRANSITIONS[evolution.status]:
            raise ValidationError(
                f"Invalid evolution transition: {evolution.status.value} -> {status.value}"
            )
        previous = evolution.status
        evolution.status = status
        for key, value in changes.items():
            setattr(evolution, key, value)
        await self.repos.evolutions.save(evolution)

        if previous != status:
            logger.info(f"Evolution {evolution.id}: {previous.value} -> {status.value}")
            if self.event_sink is not None:
                await self.event_sink.publish(RunEvent(
                    event_type=EventType.EVOLUTION_STATUS_CHANGED,
                    run_id=evolution.id,
                    payload={
                        "from_status": previous.value,
                        "to_status": status.value,
                        "development_cycle_id": evolution.development_cycle_id,
                        "incident_id": evolution.triggered_by_incident_id,
                    },
                ))
        if status in EvolutionStatus.terminal_states():
            await self._clear_cooldown(evolution)
        return evolution

    async def _fail(self, evolution: Evolution, message: str) -> Tuple[bool, str, Evolution]:
        logger.error(f"Evolution {evolution.id} failed: {message}")
        await self._set_status(evolution, EvolutionStatus.FAILED, error=message)
        return False, message, evolution

    async def app_name_for_cycle(self, cycle_id: str) -> Optional[str]:
        cycle = await self.repos.cycles.get(cycle_id)
        if cycle is None:
            return None
        return cycle.deployment_name or sanitize_app_name(cycle.requirement)

    async def _clear_cooldown(self, evolution: Evolution) -> None:
        app_name = await self.app_name_for_cycle(evolution.development_cycle_id)
        if app_name:
            self.detection_state.clear_pending_evolution(app_name)
            logger.info(f"Evolution {evolution.id}: cleared cooldown for '{app_name}' ({evolution.status.value})")

    async def _file_context(self, cycle_id: str, paths: Optional[List[str]] = None) -> List[Dict[str, Any]]:
        files = await self.repos.generated_files.list_for_cycle(cycle_id)
        if paths is not None:
            files = [f for f in files if any(f.path in p or p in f.path for p in paths)]
        return [
            {"path": f.path, "language": f.language, "purpose": f.purpose, "content": f.content}
            for f in files
        ]

    # -------------------------------------------------------------------------
    # Request / Analyze / Generate
    # -------------------------------------------------------------------------

    async def request_evolution(
        self,
        development_cycle_id: str,
        prompt: str,
        scope: Optional[List[str]] = None,
        incident_id: Optional[str] = None,
    ) -> Tuple[bool, str, Optional[Evolution]]:
        logger.info(f"Evolution requested for cycle {development_cycle_id}: {prompt[:100]}")

        if await self.repos.cycles.get(development_cycle_id) is None:
            return False, f"Development cycle not found: {development_cycle_id}", None

        pending = [e for e in await self.repos.evolutions.list_for_cycle(development_cycle_id) if e.is_pending()]
        if len(pending) >= self.config.max_pending_evolutions:
            return False, (
                f"Maximum pending evolutions ({self.config.max_pending_evolutions}) reached. "
                f"Please complete or cancel existing evolutions first."
            ), None

        evolution = Evolution(
            id=new_id(),
            development_cycle_id=development_cycle_id,
            prompt=prompt,
            scope=list(scope or []),
            triggered_by_incident_id=incident_id,
        )
        await self.repos.evolutions.create(evolution)
        await self.repos.timeline.append(
            development_cycle_id, "evolution", "Evolution requested", prompt[:200],
            {"evolution_id": evolution.id, "incident_id": incident_id},
        )
        logger.info(f"Evolution {evolution.id} created")
        return True, "Evolution request created", evolution

    async def analyze_evolution(self, evolution_id: str) -> Tuple[bool, str, Optional[Evolution]]:
        """Estimate affected files and impact; too many files routes to review."""
        evolution = await self.repos.evolutions.get(evolution_id)
        if evolution is None:
            return False, "Evolution not found", None

        try:
            await self._set_status(evolution, EvolutionStatus.ANALYZING)
        except ValidationError as e:
            return False, str(e), evolution
        files = await self._file_context(evolution.development_cycle_id)

        try:
            result = await asyncio.wait_for(
                self.reasoning.analyze_evolution(evolution.prompt, files, evolution.scope or None),
                timeout=self.config.analysis_timeout,
            )
        except asyncio.TimeoutError:
            return await self._fail(
                evolution, f"Evolution analysis timed out after {self.config.analysis_timeout:.0f} seconds"
            )
        except Exception as e:
            return await self._fail(evolution, f"Analysis error: {e}")

        if not result.success:
            return await self._fail(evolution, result.error or "Analysis failed")

        try:
            payload = _validate(AnalysisPayload, result.data, "evolution analysis")
        except ValidationError as e:
            return await self._fail(evolution, str(e))

        analysis = EvolutionAnalysis(
            affected_files=payload.affected_files,
            impact_level=payload.impact_level,
            risks=payload.risks,
            summary=payload.summary,
        )
        files_affected = len(analysis.affected_files)
        exceeds_limit = files_affected > self.config.max_files_per_evolution
        next_status = (
            EvolutionStatus.REVIEW
            if exceeds_limit and self.config.require_confirmation_above_limit
            else EvolutionStatus.GENERATING
        )
        await self._set_status(evolution, next_status, analysis_result=analysis, files_affected=files_affected)

        logger.info(
            f"Evolution {evolution.id}: analysis complete, {files_affected} files, "
            f"impact {analysis.impact_level.value}, exceeds limit: {exceeds_limit}"
        )
        if exceeds_limit:
            return True, (
                f"{files_affected} files affected exceeds limit of "
                f"{self.config.max_files_per_evolution}; review required"
            ), evolution
        return True, "Analysis complete", evolution

    def requires_review(self, evolution: Evolution) -> bool:
        return (
            self.config.require_confirmation_above_limit
            and evolution.files_affected > self.config.max_files_per_evolution
        )

    async def generate_changes(self, evolution_id: str) -> Tuple[bool, str, Optional[Evolution]]:
        evolution = await self.repos.evolutions.get(evolution_id)
        if evolution is None:
            return False, "Evolution not found", None
        if evolution.analysis_result is None:
            return False, "Evolution has not been analyzed yet", evolution

        try:
            await self._set_status(evolution, EvolutionStatus.GENERATING)
        except ValidationError as e:
            return False, str(e), evolution

        affected = evolution.analysis_result.affected_files
        files = await self._file_context(evolution.development_cycle_id, affected)

        try:
            result = await self.reasoning.generate_evolution_changes(
                evolution.prompt, evolution.analysis_result.to_dict(), files,
            )
        except Exception as e:
            return await self._fail(evolution, f"Generation error: {e}")

        if not result.success:
            return await self._fail(evolution, result.error or "Generation failed")

        try:
            payload = _validate(ChangeSetPayload, result.data, "evolution changes")
        except ValidationError as e:
            return await self._fail(evolution, str(e))

        known_paths = [f["path"] for f in await self._file_context(evolution.development_cycle_id)]
        changes = []
        for change in payload.changes:
            matches_known = any(change.path in p or p in change.path for p in known_paths)
            if change.change_type != ChangeType.CREATE and not matches_known:
                logger.warning(
                    f"Evolution {evolution.id}: dropping {change.change_type.value} "
                    f"on unknown path {change.path}"
                )
                continue
            changes.append(ProposedChange(
                path=change.path,
                change_type=change.change_type,
                new_content=change.new_content,
                old_content=change.old_content,
                description=change.description,
            ))

        files_affected = max(len(changes), evolution.files_affected)
        await self._set_status(evolution, EvolutionStatus.REVIEW, proposed_changes=changes,
                               files_affected=files_affected)
        logger.info(f"Evolution {evolution.id}: {len(changes)} changes generated")
        return True, f"{len(changes)} changes generated", evolution

    # -------------------------------------------------------------------------
    # Apply / Revert
    # -------------------------------------------------------------------------

    def _missing_content(self, evolution: Evolution) -> Optional[str]:
        for change in evolution.proposed_changes:
            if change.change_type in (ChangeType.CREATE, ChangeType.MODIFY) and not change.new_content:
                return (
                    f"Missing newContent for {change.change_type.value} change on {change.path}. "
                    f"AI response may have been truncated."
                )
        return None

    async def apply_evolution(self, evolution_id: str,
                              approved_by: str = "system") -> Tuple[bool, str, Optional[Evolution]]:
        """
        Apply the proposed changes.

        Returns success False with status left at review when human approval
        is required (auto-approve off, or too many files).
        """
        evolution = await self.repos.evolutions.get(evolution_id)
        if evolution is None:
            return False, "Evolution not found", None
        if not evolution.proposed_changes:
            return False, "No proposed changes to apply", evolution

        if evolution.status == EvolutionStatus.REVIEW:
            if not self.config.auto_approve or self.requires_review(evolution):
                logger.info(f"Evolution {evolution.id}: awaiting human approval")
                return False, "Evolution requires human approval before applying", evolution
            reason = "incident-triggered" if evolution.triggered_by_incident_id else "autonomous"
            logger.info(f"Evolution {evolution.id}: auto-approved ({reason})")
            await self._set_status(evolution, EvolutionStatus.APPROVED, approved_by=approved_by)

        if evolution.status != EvolutionStatus.APPROVED:
            return False, f"Cannot apply evolution in {evolution.status.value} status", evolution

        missing = self._missing_content(evolution)
        if missing:
            return await self._fail(evolution, missing)

        cycle_id = evolution.development_cycle_id
        files_updated = 0
        try:
            for change in evolution.proposed_changes:
                existing = await self.repos.generated_files.get_by_path(cycle_id, change.path)
                if change.change_type == ChangeType.MODIFY and existing is None:
                    logger.warning(f"Evolution {evolution.id}: skipped modify, no file at {change.path}")
                    continue
                if change.change_type == ChangeType.DELETE and existing is None:
                    continue

                await self.repos.file_versions.record(
                    cycle_id, change.path, existing.content if existing else None, SNAPSHOT,
                    evolution_id=evolution.id, reason=f"Before evolution: {evolution.prompt[:50]}",
                )
                if change.change_type == ChangeType.DELETE:
                    await self.repos.generated_files.remove_path(cycle_id, change.path)
                    new_content = None
                else:
                    await self.repos.generated_files.upsert(
                        cycle_id, change.path, change.new_content,
                        language=existing.language if existing else detect_language(change.path),
                        purpose=existing.purpose if existing else change.description,
                    )
                    new_content = change.new_content
                await self.repos.file_versions.record(
                    cycle_id, change.path, new_content, change.change_type.value,
                    evolution_id=evolution.id, reason=change.description,
                )
                files_updated += 1
        except Exception as e:
            logger.error(f"Evolution {evolution.id}: apply failed mid-way, restoring snapshots: {e}")
            await self._restore_snapshots(evolution, f"Apply failed: {e}")
            return await self._fail(evolution, f"Failed to apply evolution: {e}")

        await self._set_status(evolution, EvolutionStatus.APPLIED, applied_at=utcnow())
        await self.repos.timeline.append(
            cycle_id, "evolution", "Evolution applied", f"{files_updated} files updated",
            {"evolution_id": evolution.id},
        )
        return True, f"Evolution applied: {files_updated} files updated", evolution

    async def _restore_snapshots(self, evolution: Evolution, reason: str) -> List[str]:
        """Put every file touched by the evolution back to its pre-apply content."""
        cycle_id = evolution.development_cycle_id
        versions = await self.repos.file_versions.for_evolution(evolution.id)
        earliest: Dict[str, Any] = {}
        for version in versions:
            if version.change_type != SNAPSHOT:
                continue
            if version.path not in earliest or version.version < earliest[version.path].version:
                earliest[version.path] = version

        restored = []
        for path, snapshot in earliest.items():
            if snapshot.content is None:
                await self.repos.generated_files.remove_path(cycle_id, path)
            else:
                await self.repos.generated_files.upsert(cycle_id, path, snapshot.content,
                                                        language=detect_language(path))
            await self.repos.file_versions.record(
                cycle_id, path, snapshot.content, REVERT, evolution_id=evolution.id, reason=reason,
            )
            restored.append(path)
        return restored

    async def revert_evolution(self, evolution_id: str, reason: str) -> Tuple[bool, str, Optional[Evolution]]:
        evolution = await self.repos.evolutions.get(evolution_id)
        if evolution is None:
            return False, "Evolution not found", None
        if evolution.status != EvolutionStatus.APPLIED:
            return False, f"Cannot revert evolution in {evolution.status.value} status", evolution

        restored = await self._restore_snapshots(evolution, f"Reverted evolution: {reason}")
        await self._set_status(evolution, EvolutionStatus.REVERTED, reverted_at=utcnow(), error=reason)
        await self.repos.timeline.append(
            evolution.development_cycle_id, "evolution", "Evolution reverted", reason,
            {"evolution_id": evolution.id, "files": restored},
        )
        logger.info(f"Evolution {evolution.id}: reverted {len(restored)} files ({reason})")
        return True, f"Evolution reverted: {len(restored)} files restored", evolution

    async def auto_revert_on_failure(self, evolution_id: str,
                                     deployment_error: str) -> Tuple[bool, str, Optional[Evolution]]:
        """Revert after a failed post-evolution deployment, mirroring to source control."""
        if not self.config.auto_revert_on_failure:
            logger.info(f"Evolution {evolution_id}: auto-revert disabled, skipping")
            return True, "Auto-revert disabled", None

        success, message, evolution = await self.revert_evolution(
            evolution_id, f"Deployment failed: {deployment_error}"
        )
        if not success or self.source_control is None:
            return success, message, evolution

        files: Dict[str, Optional[str]] = {}
        for version in await self.repos.file_versions.for_evolution(evolution_id):
            if version.change_type == REVERT:
                files[version.path] = version.content
        if not files:
            return success, message, evolution

        commit_message = (
            f"revert: Auto-revert evolution {evolution_id[:8]}\n\n"
            f"Reason: Deployment failed - {deployment_error}\n"
            f"Files reverted: {len(files)}"
        )
        try:
            committed = await self.source_control.commit(commit_message, files)
        except Exception as e:
            logger.warning(f"Evolution {evolution_id}: source control revert failed, database revert kept: {e}")
            return success, f"{message} (source control commit failed: {e})", evolution

        if committed:
            logger.info(f"Evolution {evolution_id}: revert committed to source control")
        return success, message, evolution

    # -------------------------------------------------------------------------
    # Composite
    # -------------------------------------------------------------------------

    async def run_full_evolution_cycle(self, evolution_id: str) -> Tuple[bool, str, Optional[Evolution]]:
        """analyze -> generate -> apply, stopping at the first failing step."""
        logger.info(f"Evolution {evolution_id}: running full evolution cycle")

        success, message, evolution = await self.analyze_evolution(evolution_id)
        if not success:
            return False, f"Analysis failed: {message}", evolution
        if evolution.status == EvolutionStatus.REVIEW:
            return False, f"Analysis failed: {message}", evolution

        success, message, evolution = await self.generate_changes(evolution_id)
        if not success:
            return False, f"Generation failed: {message}", evolution

        success, message, evolution = await self.apply_evolution(evolution_id, approved_by="auto-incident-system")
        if not success:
            return False, f"Apply failed: {message}", evolution

        logger.info(f"Evolution {evolution_id}: full evolution cycle completed")
        return True, message, evolution

    async def trigger_rebuild_and_redeploy(self, evolution_id: str) -> Tuple[bool, str, Dict[str, Any]]:
        """Rebuild and redeploy the cycle; a failed deploy auto-reverts the evolution."""
        evolution = await self.repos.evolutions.get(evolution_id)
        if evolution is None:
            return False, "Evolution not found", {}
        if evolution.status != EvolutionStatus.APPLIED:
            return False, (
                f"Cannot rebuild: evolution status is {evolution.status.value}, must be 'applied'"
            ), {}
        if self.rebuilder is None:
            return False, "No rebuild handler configured", {}

        success, message, details = await self.rebuilder.rebuild_and_redeploy_cycle(evolution.development_cycle_id)
        if success:
            logger.info(f"Evolution {evolution_id}: code evolved, rebuilt and redeployed")
            return True, "Code evolved, rebuilt, and redeployed successfully", details

        logger.error(f"Evolution {evolution_id}: rebuild/redeploy failed: {message}")
        await self.auto_revert_on_failure(evolution_id, message)
        return False, message, details

    # -------------------------------------------------------------------------
    # Review & Queries
    # -------------------------------------------------------------------------

    async def approve_evolution(self, evolution_id: str, approved_by: str) -> Tuple[bool, str, Optional[Evolution]]:
        evolution = await self.repos.evolutions.get(evolution_id)
        if evolution is None:
            return False, "Evolution not found", None
        if evolution.status != EvolutionStatus.REVIEW:
            return False, f"Cannot approve evolution in {evolution.status.value} status", evolution
        await self._set_status(evolution, EvolutionStatus.APPROVED, approved_by=approved_by)
        logger.info(f"Evolution {evolution_id}: approved by {approved_by}")
        return True, "Evolution approved", evolution

    async def reject_evolution(self, evolution_id: str, rejected_by: str,
                               notes: str = "") -> Tuple[bool, str, Optional[Evolution]]:
        evolution = await self.repos.evolutions.get(evolution_id)
        if evolution is None:
            return False, "Evolution not found", None
        if EvolutionStatus.REJECTED not in VALID_TRANSITIONS[evolution.status]:
            return False, f"Cannot reject evolution in {evolution.status.value} status", evolution
        await self._set_status(evolution, EvolutionStatus.REJECTED,
                               error=f"Rejected by {rejected_by}" + (f": {notes}" if notes else ""))
        logger.info(f"Evolution {evolution_id}: rejected by {rejected_by}")
        return True, "Evolution rejected", evolution

    async def get_evolution(self, evolution_id: str) -> Optional[Evolution]:
        return await self.repos.evolutions.get(evolution_id)

    async def get_evolutions_for_cycle(self, development_cycle_id: str) -> List[Evolution]:
        return await self.repos.evolutions.list_for_cycle(development_cycle_id)

    async def link_to_incident(self, evolution_id: str, incident_id: str) -> Optional[Evolution]:
        logger.info(f"Evolution {evolution_id}: linked to incident {incident_id}")
        return await self.repos.evolutions.update(evolution_id, triggered_by_incident_id=incident_id)

    async def find_by_incident_id(self, incident_id: str) -> List[Evolution]:
        return await self.repos.evolutions.find_by_incident(incident_id)
