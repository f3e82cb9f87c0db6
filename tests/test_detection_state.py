"""
Unit Tests for the Detection & Cooldown State Manager

Test coverage for:
- Fingerprint cooldown (case-insensitive, truncated descriptions)
- Global concurrent investigation cap
- Per-app post-investigation cooldown
- Pending evolution suppression and 30 minute expiry
- Suppression order
- Periodic sweep
"""

import asyncio

import pytest

from ops_controller.config import DetectionStateConfig
from ops_controller.detection_state import DetectionStateManager
from tests.conftest import FakeClock


@pytest.fixture
def state(clock) -> DetectionStateManager:
    return DetectionStateManager(DetectionStateConfig(), clock=clock)


# -----------------------------------------------------------------------------
# Fingerprints
# -----------------------------------------------------------------------------
class TestFingerprintCooldown:
    """Identical anomalies are suppressed for the cooldown window."""

    def test_first_anomaly_triggers(self, state):
        assert state.should_trigger_incident("high_error_rate", "high", "Error rate 25%") == (True, None)

    def test_repeat_within_cooldown_is_suppressed(self, state, clock):
        state.record_anomaly("high_error_rate", "Error rate 25%")
        clock.advance(120)

        should, reason = state.should_trigger_incident("high_error_rate", "high", "Error rate 25%")

        assert should is False
        assert reason == "Similar anomaly detected 120s ago (cooldown active)"

    def test_repeat_after_cooldown_triggers(self, state, clock):
        state.record_anomaly("high_error_rate", "Error rate 25%")
        clock.advance(300)

        assert state.should_trigger_incident("high_error_rate", "high", "Error rate 25%")[0] is True

    def test_fingerprint_ignores_case_and_tail(self, state):
        first = "A" * 100 + " first tail"
        second = "a" * 100 + " other tail"

        assert state.fingerprint("pod_restart", first) == state.fingerprint("pod_restart", second)

    def test_different_type_is_not_suppressed(self, state):
        state.record_anomaly("high_error_rate", "checkout degraded")

        assert state.should_trigger_incident("high_latency", "high", "checkout degraded")[0] is True


# -----------------------------------------------------------------------------
# Investigations
# -----------------------------------------------------------------------------
class TestInvestigationLimits:
    """Concurrency cap and per-app cooldown."""

    def test_concurrent_cap(self, state):
        for incident_id in ("i-1", "i-2", "i-3"):
            state.start_investigation(incident_id)

        should, reason = state.should_trigger_incident("high_error_rate", "high", "anything", "checkout-svc")

        assert should is False
        assert reason == "Max concurrent investigations (3) reached"

    def test_complete_releases_slot(self, state):
        for incident_id in ("i-1", "i-2", "i-3"):
            state.start_investigation(incident_id)
        state.complete_investigation("i-2")

        assert state.active_investigation_count == 2
        assert state.is_investigating("i-2") is False
        assert state.should_trigger_incident("high_error_rate", "high", "anything")[0] is True

    def test_post_investigation_cooldown_is_per_app(self, state, clock):
        state.start_investigation("i-1")
        state.complete_investigation("i-1", "checkout-svc")
        clock.advance(100)

        should, reason = state.should_trigger_incident("high_error_rate", "high", "boom", "checkout-svc")
        assert should is False
        assert reason == 'App "checkout-svc" recently investigated (200s post-investigation cooldown remaining)'

        assert state.should_trigger_incident("high_error_rate", "high", "boom", "billing-svc")[0] is True

    def test_custom_cooldown_duration(self, state, clock):
        state.complete_investigation("i-1", "checkout-svc", cooldown=10)
        clock.advance(10)

        assert state.should_trigger_incident("high_error_rate", "high", "boom", "checkout-svc")[0] is True


# -----------------------------------------------------------------------------
# Pending Evolutions
# -----------------------------------------------------------------------------
class TestPendingEvolutions:
    """A pending code evolution silences its app until cleared or expired."""

    def test_pending_evolution_blocks_app(self, state):
        state.register_pending_evolution("checkout-svc", "evo-1")

        should, reason = state.should_trigger_incident("high_error_rate", "high", "boom", "checkout-svc")

        assert should is False
        assert reason == 'App "checkout-svc" has pending code evolution (evo-1)'

    def test_clear_pending_evolution(self, state):
        state.register_pending_evolution("checkout-svc", "evo-1")

        assert state.clear_pending_evolution("checkout-svc") is True
        assert state.clear_pending_evolution("checkout-svc") is False
        assert state.should_trigger_incident("high_error_rate", "high", "boom", "checkout-svc")[0] is True

    def test_pending_evolution_expires_after_30_minutes(self, state, clock):
        state.register_pending_evolution("checkout-svc", "evo-1")

        clock.advance(29 * 60 + 59)
        assert state.has_pending_evolution("checkout-svc") is True

        clock.advance(1)
        assert state.has_pending_evolution("checkout-svc") is False
        assert state.should_trigger_incident("high_error_rate", "high", "boom", "checkout-svc")[0] is True


# -----------------------------------------------------------------------------
# Suppression Order
# -----------------------------------------------------------------------------
class TestSuppressionOrder:
    """The first matching rule is the reported reason."""

    def test_cap_reported_before_app_cooldown(self, state):
        state.complete_investigation("old", "checkout-svc")
        for incident_id in ("i-1", "i-2", "i-3"):
            state.start_investigation(incident_id)

        _, reason = state.should_trigger_incident("high_error_rate", "high", "boom", "checkout-svc")

        assert reason.startswith("Max concurrent investigations")

    def test_app_cooldown_reported_before_pending_evolution(self, state):
        state.complete_investigation("old", "checkout-svc")
        state.register_pending_evolution("checkout-svc", "evo-1")

        _, reason = state.should_trigger_incident("high_error_rate", "high", "boom", "checkout-svc")

        assert "recently investigated" in reason

    def test_pending_evolution_reported_before_fingerprint(self, state):
        state.record_anomaly("high_error_rate", "boom")
        state.register_pending_evolution("checkout-svc", "evo-1")

        _, reason = state.should_trigger_incident("high_error_rate", "high", "boom", "checkout-svc")

        assert "pending code evolution" in reason


# -----------------------------------------------------------------------------
# Sweep
# -----------------------------------------------------------------------------
class TestSweep:
    """Expired entries are removed so memory stays bounded."""

    def test_sweep_removes_only_expired_entries(self, state, clock):
        state.record_anomaly("high_error_rate", "old")
        state.complete_investigation("i-1", "checkout-svc")
        state.register_pending_evolution("billing-svc", "evo-1")
        clock.advance(600)
        state.record_anomaly("high_error_rate", "fresh")

        removed = state.sweep()

        assert removed == {"fingerprints": 1, "app_cooldowns": 1, "pending_evolutions": 0}
        snapshot = state.get_state()
        assert snapshot["recent_anomalies"] == 1
        assert snapshot["apps_in_cooldown"] == 0
        assert snapshot["pending_evolutions"] == 1

    def test_sweep_expires_pending_evolutions(self, state, clock):
        state.register_pending_evolution("billing-svc", "evo-1")
        clock.advance(1800)

        assert state.sweep()["pending_evolutions"] == 1

    @pytest.mark.asyncio
    async def test_periodic_sweep_task(self):
        clock = FakeClock()
        state = DetectionStateManager(DetectionStateConfig(sweep_interval=0.01), clock=clock)
        state.record_anomaly("high_error_rate", "boom")
        clock.advance(600)

        state.start()
        await asyncio.sleep(0.05)
        await state.stop()

        assert state.get_state()["recent_anomalies"] == 0

    def test_clear(self, state):
        state.record_anomaly("high_error_rate", "boom")
        state.start_investigation("i-1")

        state.clear()

        assert state.get_state()["recent_anomalies"] == 0
        assert state.active_investigation_count == 0
