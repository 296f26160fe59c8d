"""
Checkpoint Registry - author-side management of anchor tags and quiz groups.
"""

from anchor_gate.engines.checkpoints.checkpoint_service import CheckpointService

__all__ = ["CheckpointService"]
