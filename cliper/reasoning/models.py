"""
Cliper Reasoning Models
-----------------------
Pydantic schemas exchanged between the reasoning provider and the
decision controller.
"""

import time
import uuid
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, Field, field_validator

from cliper.core.types import clamp


class ReasoningResult(BaseModel):
    """
    Structured assessment of an incoming update.
    Produced by a ``ReasoningProvider``; consumed by ``DecisionController``.
    """
    summary_of_change: str = Field(
        ...,
        description="One-line restatement of what the update changes or asserts.",
    )
    confidence: float = Field(
        0.5,
        description="How sure the provider is that it understood the update (0-1).",
    )
    ambiguity: float = Field(
        0.5,
        description="How much of the update is unresolved or open to interpretation (0-1).",
    )
    questions_to_ask: List[str] = Field(
        default_factory=list,
        description="Follow-up questions that would resolve the ambiguity.",
    )
    suggested_effects: List[str] = Field(
        default_factory=list,
        description="Descriptive phrases for what storing the update would change.",
    )

    @field_validator("confidence", "ambiguity", mode="before")
    @classmethod
    def _clamp_unit(cls, value) -> float:
        return clamp(float(value), 0.0, 1.0)


class DecisionAction(str, Enum):
    STORE_MEMORY = "storeMemory"
    ASK_CLARIFYING_QUESTIONS = "askClarifyingQuestions"
    NO_ACTION = "noAction"


class Decision(BaseModel):
    action: DecisionAction
    reasons: List[str] = Field(default_factory=list)
    follow_up_questions: List[str] = Field(default_factory=list)
    memory_notes: Optional[str] = None
    threshold: float = 0.7
    clarity_score: float = 0.0


class DecisionLogEntry(BaseModel):
    """One controller decision, kept in the rolling history window."""
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    timestamp: float = Field(default_factory=time.time)
    reasoning: ReasoningResult
    decision: Decision
    explanation: str = ""
