"""
Error taxonomy for the ops controller.

Every failure inside an orchestrator is expressed as one of these types and
then translated into the owning entity's terminal state plus a structured
failure event. Nothing here is raised across the public boundary of
investigate() / develop() / resume().

Categories:
- TransientExternalError: collaborator timeout or hiccup, retried per phase
- ValidationError: malformed AI output, never applied
- ResourceLimitError: rejected before any work begins
- CancellationError: cooperative stop, reported as "cancelled"
- TerminalFailure: retry ceiling exceeded or no-progress repair
"""

from typing import Any, Dict, Optional


class OpsControllerError(Exception):
    """Base class for all ops controller errors."""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.__class__.__name__,
            "message": str(self),
        }


class TransientExternalError(OpsControllerError):
    """A collaborator call failed in a way that may succeed on retry."""

    def __init__(self, message: str, collaborator: str = "unknown"):
        super().__init__(message)
        self.collaborator = collaborator

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data["collaborator"] = self.collaborator
        return data


class ValidationError(OpsControllerError):
    """A payload (usually from the reasoning service) failed validation."""


class ResourceLimitError(OpsControllerError):
    """A configured limit was reached; the request was rejected up front."""

    def __init__(self, message: str, limit: Optional[int] = None):
        super().__init__(message)
        self.limit = limit


class CancellationError(OpsControllerError):
    """A run observed its cancellation token at a yield point."""

    def __init__(self, run_id: str, phase: Optional[str] = None):
        super().__init__(f"Run {run_id} cancelled" + (f" during {phase}" if phase else ""))
        self.run_id = run_id
        self.phase = phase


class TerminalFailure(OpsControllerError):
    """
    A failure that ends the owning incident/cycle/evolution.

    Carries enough context for a postmortem: the phase where it happened,
    retry counters, the last action taken and the last verification result.
    """

    def __init__(
        self,
        message: str,
        phase: Optional[str] = None,
        retry_counts: Optional[Dict[str, int]] = None,
        last_action: Optional[Dict[str, Any]] = None,
        last_verification: Optional[Dict[str, Any]] = None,
        raw_error: Optional[str] = None,
    ):
        super().__init__(message)
        self.phase = phase
        self.retry_counts = dict(retry_counts or {})
        self.last_action = last_action
        self.last_verification = last_verification
        self.raw_error = raw_error

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data.update({
            "phase": self.phase,
            "retry_counts": self.retry_counts,
            "last_action": self.last_action,
            "last_verification": self.last_verification,
            "raw_error": self.raw_error,
        })
        return data
