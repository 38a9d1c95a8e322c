"""
Cliper Reasoning
----------------
Update assessment (``ReasoningProvider``) and the adaptive decision
controller that acts on it.
"""

from cliper.reasoning.controller import ControllerState, DecisionController
from cliper.reasoning.models import Decision, DecisionAction, DecisionLogEntry, ReasoningResult
from cliper.reasoning.provider import LocalHeuristicReasoner, ReasoningProvider, build_reasoner

__all__ = [
    "ControllerState",
    "DecisionController",
    "Decision",
    "DecisionAction",
    "DecisionLogEntry",
    "ReasoningResult",
    "LocalHeuristicReasoner",
    "ReasoningProvider",
    "build_reasoner",
]
