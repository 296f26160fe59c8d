"""
Attempt Analytics - per-student and per-checkpoint summaries of the ledger.
"""

from anchor_gate.engines.analytics.attempt_analytics import (
    AttemptAnalytics,
    CheckpointSummary,
    StudentCheckpointRow,
    StudentSummary,
)

__all__ = [
    "AttemptAnalytics",
    "CheckpointSummary",
    "StudentCheckpointRow",
    "StudentSummary",
]
