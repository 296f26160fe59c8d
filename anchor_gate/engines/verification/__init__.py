"""
Quiz Verification Engine - scores quiz batches against stored options and an
external knowledge source.

Objective questions (multiple choice, multi-select, true/false) are graded
locally. Open-ended and scenario questions are judged by the knowledge source,
with per-question timeouts and whole-batch degradation when it is unavailable.
"""

from anchor_gate.engines.verification.grader import Grader
from anchor_gate.engines.verification.knowledge_lookup import (
    HttpKnowledgeLookup,
    KnowledgeLookup,
    KnowledgeVerdict,
    UnavailableKnowledgeLookup,
)
from anchor_gate.engines.verification.quiz_verifier import QuizVerifier

__all__ = [
    "Grader",
    "HttpKnowledgeLookup",
    "KnowledgeLookup",
    "KnowledgeVerdict",
    "UnavailableKnowledgeLookup",
    "QuizVerifier",
]
