"""
Run events, per-run event channels and cooperative cancellation.

Each investigation or development run owns one EventChannel. Listeners are
registered on that channel and are discarded with it when the run ends, so
nothing leaks between runs. Every emitted event is also forwarded to the
process-wide EventSink, which is the only thing transport code needs to know
about.

Handlers may be plain functions or coroutines. A failing handler is logged
and skipped; it never aborts the run that emitted the event.
"""

import asyncio
import inspect
import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from .errors import CancellationError
from .models import utcnow

logger = logging.getLogger("events")


class EventType(str, Enum):
    """Every event the core emits."""
    # Investigation
    INVESTIGATION_STARTED = "investigation:started"
    INVESTIGATION_COMPLETED = "investigation:completed"
    INVESTIGATION_FAILED = "investigation:failed"
    INVESTIGATION_CANCELLED = "investigation:cancelled"
    PHASE_CHANGED = "phase:changed"
    EVIDENCE_COLLECTED = "observation:collected"
    HYPOTHESIS_GENERATED = "hypothesis:generated"
    ACTION_EXECUTED = "action:executed"
    VERIFICATION_COMPLETED = "verification:completed"
    ESCALATION_STEP = "escalation:step"

    # Development
    CYCLE_STARTED = "cycle:started"
    CYCLE_PHASE_CHANGED = "cycle:phase_changed"
    CYCLE_COMPLETED = "cycle:completed"
    CYCLE_FAILED = "cycle:failed"
    CYCLE_CANCELLED = "cycle:cancelled"
    CODE_GENERATED = "code:generated"
    BUILD_COMPLETED = "build:completed"
    REPAIR_ATTEMPTED = "repair:attempted"
    DEPLOYMENT_COMPLETED = "deployment:completed"

    # Evolution
    EVOLUTION_STATUS_CHANGED = "evolution:status_changed"

    # Detection
    DETECTION_STARTED = "detection:started"
    DETECTION_STOPPED = "detection:stopped"
    ANOMALY_DETECTED = "anomaly:detected"
    DETECTION_ERROR = "detection:error"
    DETECTION_HEALTHY = "detection:healthy"
    METRICS_CHECKED = "metrics:checked"
    INCIDENT_CREATED = "incident:created"


@dataclass
class RunEvent:
    """One event emitted by a run (or by a detector)."""
    event_type: EventType
    run_id: str
    payload: Dict[str, Any] = field(default_factory=dict)
    sequence: int = 0
    created_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.event_type.value,
            "run_id": self.run_id,
            "payload": self.payload,
            "sequence": self.sequence,
            "created_at": self.created_at.isoformat(),
        }


Handler = Callable[[RunEvent], Any]


async def _dispatch(handler: Handler, event: RunEvent) -> None:
    try:
        result = handler(event)
        if inspect.isawaitable(result):
            await result
    except Exception as e:
        logger.error(f"Event handler failed for {event.event_type.value}: {e}")


# -----------------------------------------------------------------------------
# Event Sink
# -----------------------------------------------------------------------------

class EventSink:
    """
    Process-wide publish point.

    The default implementation keeps a bounded in-memory history and fans out
    to subscribers; transport layers (websocket, notifications) subscribe here.
    """

    def __init__(self, max_history: int = 1000):
        self._subscribers: List[Handler] = []
        self._history: List[RunEvent] = []
        self._max_history = max_history

    def subscribe(self, handler: Handler) -> Callable[[], None]:
        self._subscribers.append(handler)

        def unsubscribe() -> None:
            if handler in self._subscribers:
                self._subscribers.remove(handler)

        return unsubscribe

    async def publish(self, event: RunEvent) -> None:
        self._history.append(event)
        if len(self._history) > self._max_history:
            self._history = self._history[-self._max_history:]
        for handler in list(self._subscribers):
            await _dispatch(handler, event)

    def recent(self, run_id: Optional[str] = None, limit: int = 100) -> List[RunEvent]:
        events = [e for e in self._history if run_id is None or e.run_id == run_id]
        return events[-limit:]


# -----------------------------------------------------------------------------
# Per-Run Channel
# -----------------------------------------------------------------------------

class EventChannel:
    """
    Listener set scoped to a single run.

    Events are delivered in emission order; sequence numbers are per channel.
    """

    def __init__(self, run_id: str, sink: Optional[EventSink] = None):
        self.run_id = run_id
        self._sink = sink
        self._listeners: Dict[Optional[EventType], List[Handler]] = {}
        self._sequence = 0
        self._closed = False

    def on(self, event_type: Optional[EventType], handler: Handler) -> None:
        """Register a listener. event_type None receives every event."""
        self._listeners.setdefault(event_type, []).append(handler)

    def off(self, event_type: Optional[EventType], handler: Handler) -> None:
        handlers = self._listeners.get(event_type, [])
        if handler in handlers:
            handlers.remove(handler)

    async def emit(self, event_type: EventType, **payload: Any) -> RunEvent:
        self._sequence += 1
        event = RunEvent(
            event_type=event_type,
            run_id=self.run_id,
            payload=payload,
            sequence=self._sequence,
        )
        if self._closed:
            logger.debug(f"Run {self.run_id}: event {event_type.value} after close")
            return event

        for handler in list(self._listeners.get(event_type, [])) + list(self._listeners.get(None, [])):
            await _dispatch(handler, event)

        if self._sink is not None:
            await self._sink.publish(event)
        return event

    def close(self) -> None:
        """Drop every listener; called when the run finishes."""
        self._listeners.clear()
        self._closed = True

    @property
    def closed(self) -> bool:
        return self._closed


# -----------------------------------------------------------------------------
# Cancellation
# -----------------------------------------------------------------------------

class CancellationToken:
    """
    Structured, cooperative cancellation for one run.

    Checked at phase boundaries and before internal waits. An in-flight
    collaborator call is never interrupted.
    """

    def __init__(self, run_id: str):
        self.run_id = run_id
        self.reason: Optional[str] = None
        self._event = asyncio.Event()

    def cancel(self, reason: str = "Cancelled by user") -> None:
        if not self._event.is_set():
            self.reason = reason
            self._event.set()
            logger.info(f"Run {self.run_id}: cancellation requested ({reason})")

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self, phase: Optional[str] = None) -> None:
        if self._event.is_set():
            raise CancellationError(self.run_id, phase)

    async def sleep(self, seconds: float, phase: Optional[str] = None) -> None:
        """Wait, waking early (and raising) if the run is cancelled."""
        self.raise_if_cancelled(phase)
        if seconds <= 0:
            return
        try:
            await asyncio.wait_for(self._event.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            return
        raise CancellationError(self.run_id, phase)
