"""
Detection & Cooldown State Manager

Decides whether a raw anomaly becomes a new incident and bounds incident
storms. Process-wide and in-memory; nothing here is persisted.

Suppression checks run strictly in this order, and the first match is the
reason surfaced to operators:
1. Global cap on concurrent investigations
2. Per-app post-investigation cooldown
3. Per-app pending code evolution
4. Fingerprint cooldown on (type, truncated description)

Every map entry self-expires. A periodic sweep (default 60s) removes expired
entries so memory stays bounded regardless of anomaly volume. Pending-evolution
records expire after 30 minutes even if nobody clears them.
"""

import asyncio
import logging
import math
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional, Set, Tuple

from .config import DetectionStateConfig

logger = logging.getLogger("detection_state")


@dataclass
class AnomalyFingerprint:
    type: str
    timestamp: float
    incident_id: Optional[str] = None


@dataclass
class AppInvestigationRecord:
    last_investigated_at: float
    cooldown_until: float
    incident_id: Optional[str] = None


@dataclass
class PendingEvolution:
    evolution_id: str
    started_at: float


class DetectionStateManager:
    """
    Deduplication and rate limiting for anomaly-driven incidents.

    All timestamps come from the injected clock (seconds, monotonic by
    default) so tests can move time without sleeping.
    """

    def __init__(
        self,
        config: Optional[DetectionStateConfig] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.config = config or DetectionStateConfig()
        self._clock = clock
        self._recent_anomalies: Dict[str, AnomalyFingerprint] = {}
        self._active_investigations: Set[str] = set()
        self._app_history: Dict[str, AppInvestigationRecord] = {}
        self._pending_evolutions: Dict[str, PendingEvolution] = {}
        self._sweep_task: Optional[asyncio.Task] = None

    # -------------------------------------------------------------------------
    # Fingerprints
    # -------------------------------------------------------------------------

    def fingerprint(self, anomaly_type: str, description: str) -> str:
        normalized = description.lower()[:self.config.description_length]
        return f"{anomaly_type}:{normalized}"

    def record_anomaly(self, anomaly_type: str, description: str,
                       incident_id: Optional[str] = None) -> None:
        key = self.fingerprint(anomaly_type, description)
        self._recent_anomalies[key] = AnomalyFingerprint(
            type=anomaly_type,
            timestamp=self._clock(),
            incident_id=incident_id,
        )
        logger.debug(f"Recorded anomaly fingerprint {key} (incident: {incident_id})")

    # -------------------------------------------------------------------------
    # Decision
    # -------------------------------------------------------------------------

    def should_trigger_incident(
        self,
        anomaly_type: str,
        severity: str,
        description: str,
        app_name: Optional[str] = None,
    ) -> Tuple[bool, Optional[str]]:
        """
        Returns (should_trigger, reason). reason is None when triggering.
        """
        now = self._clock()

        limit = self.config.max_concurrent_investigations
        if len(self._active_investigations) >= limit:
            return False, f"Max concurrent investigations ({limit}) reached"

        if app_name:
            record = self._app_history.get(app_name)
            if record and now < record.cooldown_until:
                remaining = math.ceil(record.cooldown_until - now)
                return False, (
                    f'App "{app_name}" recently investigated '
                    f"({remaining}s post-investigation cooldown remaining)"
                )

            pending = self.get_pending_evolution(app_name)
            if pending:
                return False, f'App "{app_name}" has pending code evolution ({pending.evolution_id})'

        existing = self._recent_anomalies.get(self.fingerprint(anomaly_type, description))
        if existing:
            elapsed = now - existing.timestamp
            if elapsed < self.config.cooldown:
                return False, f"Similar anomaly detected {int(elapsed)}s ago (cooldown active)"

        return True, None

    # -------------------------------------------------------------------------
    # Investigations
    # -------------------------------------------------------------------------

    def start_investigation(self, incident_id: str) -> None:
        self._active_investigations.add(incident_id)
        logger.info(
            f"Investigation started: {incident_id} "
            f"({len(self._active_investigations)}/{self.config.max_concurrent_investigations} active)"
        )

    def complete_investigation(
        self,
        incident_id: str,
        app_name: Optional[str] = None,
        cooldown: Optional[float] = None,
    ) -> None:
        """Release the concurrency slot and start the app's cooldown."""
        self._active_investigations.discard(incident_id)

        if app_name:
            now = self._clock()
            duration = self.config.post_investigation_cooldown if cooldown is None else cooldown
            self._app_history[app_name] = AppInvestigationRecord(
                last_investigated_at=now,
                cooldown_until=now + duration,
                incident_id=incident_id,
            )
            logger.info(f"Investigation completed: {incident_id}, app '{app_name}' cooling down for {duration:.0f}s")
        else:
            logger.info(f"Investigation completed: {incident_id}")

    def is_investigating(self, incident_id: str) -> bool:
        return incident_id in self._active_investigations

    @property
    def active_investigation_count(self) -> int:
        return len(self._active_investigations)

    # -------------------------------------------------------------------------
    # Pending Evolutions
    # -------------------------------------------------------------------------

    def register_pending_evolution(self, app_name: str, evolution_id: str) -> None:
        self._pending_evolutions[app_name] = PendingEvolution(
            evolution_id=evolution_id,
            started_at=self._clock(),
        )
        logger.info(f"Pending evolution registered for '{app_name}': {evolution_id}")

    def clear_pending_evolution(self, app_name: str) -> bool:
        removed = self._pending_evolutions.pop(app_name, None)
        if removed:
            logger.info(f"Pending evolution cleared for '{app_name}': {removed.evolution_id}")
        return removed is not None

    def get_pending_evolution(self, app_name: str) -> Optional[PendingEvolution]:
        pending = self._pending_evolutions.get(app_name)
        if pending is None:
            return None
        if self._clock() - pending.started_at >= self.config.pending_evolution_expiry:
            del self._pending_evolutions[app_name]
            logger.warning(f"Pending evolution for '{app_name}' expired ({pending.evolution_id})")
            return None
        return pending

    def has_pending_evolution(self, app_name: str) -> bool:
        return self.get_pending_evolution(app_name) is not None

    # -------------------------------------------------------------------------
    # Sweep
    # -------------------------------------------------------------------------

    def sweep(self) -> Dict[str, int]:
        """Remove every expired entry. Returns removal counts."""
        now = self._clock()

        expired_fingerprints = [
            key for key, fp in self._recent_anomalies.items()
            if now - fp.timestamp >= self.config.fingerprint_ttl
        ]
        for key in expired_fingerprints:
            del self._recent_anomalies[key]

        expired_apps = [
            app for app, record in self._app_history.items()
            if now >= record.cooldown_until
        ]
        for app in expired_apps:
            del self._app_history[app]

        expired_evolutions = [
            app for app, pending in self._pending_evolutions.items()
            if now - pending.started_at >= self.config.pending_evolution_expiry
        ]
        for app in expired_evolutions:
            del self._pending_evolutions[app]

        removed = {
            "fingerprints": len(expired_fingerprints),
            "app_cooldowns": len(expired_apps),
            "pending_evolutions": len(expired_evolutions),
        }
        if any(removed.values()):
            logger.debug(f"Detection state sweep removed {removed}")
        return removed

    async def _sweep_loop(self) -> None:
        while True:
            await asyncio.sleep(self.config.sweep_interval)
            try:
                self.sweep()
            except Exception as e:
                logger.error(f"Detection state sweep failed: {e}")

    def start(self) -> None:
        """Start the periodic sweep (needs a running event loop)."""
        if self._sweep_task is None or self._sweep_task.done():
            self._sweep_task = asyncio.create_task(self._sweep_loop())

    async def stop(self) -> None:
        if self._sweep_task:
            self._sweep_task.cancel()
            try:
                await self._sweep_task
            except asyncio.CancelledError:
                pass
            self._sweep_task = None

    # -------------------------------------------------------------------------
    # Introspection
    # -------------------------------------------------------------------------

    def get_state(self) -> Dict[str, Any]:
        return {
            "recent_anomalies": len(self._recent_anomalies),
            "active_investigations": len(self._active_investigations),
            "apps_in_cooldown": len(self._app_history),
            "pending_evolutions": len(self._pending_evolutions),
            "config": {
                "cooldown": self.config.cooldown,
                "max_concurrent_investigations": self.config.max_concurrent_investigations,
                "fingerprint_ttl": self.config.fingerprint_ttl,
                "post_investigation_cooldown": self.config.post_investigation_cooldown,
            },
        }

    def clear(self) -> None:
        self._recent_anomalies.clear()
        self._active_investigations.clear()
        self._app_history.clear()
        self._pending_evolutions.clear()
        logger.info("Detection state cleared")
