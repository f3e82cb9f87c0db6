"""
Control-plane registry.

Holds the process-wide mutable state that the orchestrators and the detection
service share: the detection state manager, the event sink, the repositories,
and the maps of runs currently executing in this process. One registry is
created at startup and passed by reference into every entry point; tests
create as many isolated registries as they like.
"""

import asyncio
import logging
import uuid
from typing import Any, Dict, List, Optional

from .config import ControlPlaneConfig
from .detection_state import DetectionStateManager
from .events import CancellationToken, EventSink
from .repositories import Repositories

logger = logging.getLogger("registry")


class ControlPlaneRegistry:
    """Shared state for one control-plane instance."""

    def __init__(
        self,
        config: Optional[ControlPlaneConfig] = None,
        repositories: Optional[Repositories] = None,
        detection_state: Optional[DetectionStateManager] = None,
        event_sink: Optional[EventSink] = None,
        instance_id: Optional[str] = None,
    ):
        self.config = config or ControlPlaneConfig()
        self.repositories = repositories or Repositories()
        self.detection_state = detection_state or DetectionStateManager(self.config.detection)
        self.event_sink = event_sink or EventSink()
        self.instance_id = instance_id or f"instance-{uuid.uuid4().hex[:12]}"

        self._investigations: Dict[str, Any] = {}
        self._cycles: Dict[str, Any] = {}
        self._tokens: Dict[str, CancellationToken] = {}
        self._tasks: Dict[str, asyncio.Task] = {}

    # -------------------------------------------------------------------------
    # Runs
    # -------------------------------------------------------------------------

    def register_investigation(self, incident_id: str, orchestrator: Any) -> CancellationToken:
        self._investigations[incident_id] = orchestrator
        return self._token_for(incident_id)

    def register_cycle(self, cycle_id: str, orchestrator: Any) -> CancellationToken:
        self._cycles[cycle_id] = orchestrator
        return self._token_for(cycle_id)

    def unregister(self, run_id: str) -> None:
        self._investigations.pop(run_id, None)
        self._cycles.pop(run_id, None)
        self._tokens.pop(run_id, None)
        self._tasks.pop(run_id, None)

    def get_investigation(self, incident_id: str) -> Optional[Any]:
        return self._investigations.get(incident_id)

    def get_cycle_orchestrator(self, cycle_id: str) -> Optional[Any]:
        return self._cycles.get(cycle_id)

    def active_investigation_ids(self) -> List[str]:
        return list(self._investigations)

    def active_cycle_ids(self) -> List[str]:
        return list(self._cycles)

    def is_running(self, run_id: str) -> bool:
        return run_id in self._investigations or run_id in self._cycles

    def _token_for(self, run_id: str) -> CancellationToken:
        token = self._tokens.get(run_id)
        if token is None:
            token = CancellationToken(run_id)
            self._tokens[run_id] = token
        return token

    # -------------------------------------------------------------------------
    # Tasks & Cancellation
    # -------------------------------------------------------------------------

    def track_task(self, run_id: str, task: asyncio.Task) -> None:
        self._tasks[run_id] = task

    def get_task(self, run_id: str) -> Optional[asyncio.Task]:
        return self._tasks.get(run_id)

    def cancel(self, run_id: str, reason: str = "Cancelled by user") -> bool:
        token = self._tokens.get(run_id)
        if token is None:
            return False
        token.cancel(reason)
        return True

    async def shutdown(self) -> None:
        """Cancel every run and wait for their tasks to finish."""
        for run_id in list(self._tokens):
            self.cancel(run_id, "Shutdown")
        tasks = [t for t in self._tasks.values() if not t.done()]
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        await self.detection_state.stop()
        logger.info(f"Registry {self.instance_id} shut down")

    def get_status(self) -> Dict[str, Any]:
        return {
            "instance_id": self.instance_id,
            "active_investigations": self.active_investigation_ids(),
            "active_cycles": self.active_cycle_ids(),
            "detection_state": self.detection_state.get_state(),
        }
