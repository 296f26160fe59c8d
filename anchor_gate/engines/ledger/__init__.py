"""
Attempt Ledger - durable, race-free attempt records per (student, checkpoint).
"""

from anchor_gate.engines.ledger.attempt_ledger import AttemptLedger

__all__ = ["AttemptLedger"]
