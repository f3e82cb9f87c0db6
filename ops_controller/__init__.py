"""
Ops Controller

Autonomous operations control plane for self-generated applications.

- Detection: hybrid anomaly detection (metrics + vision) feeding a
  deduplicating, rate-limiting detection state manager
- Investigation: OODA loop with a verify step and an escalation ladder
  (restart -> scale -> rollback -> code fix)
- Development: requirement-to-deployment pipeline with per-phase retry,
  a build self-repair loop and crash recovery
- Evolution: reviewable, revertible AI-proposed code changes

CONSTRAINTS:
- Collaborators (reasoning service, platform executor, build/deploy
  executor, metrics backend) are interfaces; nothing here is bound to a vendor
- Every run owns its listener set and cancellation token
- Failures end in the owning entity's terminal state, never as an escaped fault
"""

__version__ = "0.1.0"
