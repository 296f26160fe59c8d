"""Orchestration layer - gating state machine and the student progression flow."""

from anchor_gate.orchestration.state_machine import (
    AttemptCapPolicy,
    GatingStateMachine,
    GatingStatus,
    MaxAttemptsPolicy,
    can_start,
    derive_status,
)
from anchor_gate.orchestration.progression import (
    AttemptSession,
    ProgressionService,
    SubmissionOutcome,
)

__all__ = [
    "AttemptCapPolicy",
    "GatingStateMachine",
    "GatingStatus",
    "MaxAttemptsPolicy",
    "can_start",
    "derive_status",
    "AttemptSession",
    "ProgressionService",
    "SubmissionOutcome",
]
