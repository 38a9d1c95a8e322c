"""
Reasoning Providers
===================
Abstract capability that turns a raw update into a ``ReasoningResult``.

The local heuristic reasoner is the only built-in provider; external
semantic engines plug in through ``register_provider`` and are selected
with ``reasoning.provider`` in the configuration.
"""

from __future__ import annotations

import logging
import re
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional, Type

from cliper.core.config import ReasoningConfig
from cliper.ingestion.distill import split_segments
from cliper.ingestion.validation import UNRESOLVED_PRONOUN_PATTERN, find_pii
from cliper.reasoning.models import ReasoningResult

logger = logging.getLogger("Cliper.Reasoning")

HEDGE_PATTERN = re.compile(
    r"\b(maybe|perhaps|might|probably|possibly|not sure|i think|i guess|sort of|kind of)\b",
    re.IGNORECASE,
)
DETAIL_PATTERN = re.compile(r"\d|\b[A-Z][a-z]+\b")
FIRST_PERSON_PATTERN = re.compile(r"^\s*(i|i'm|i've|my|we|our)\b", re.IGNORECASE)

MAX_SUMMARY_CHARS = 200


class ReasoningProvider(ABC):
    """Base class for reasoning providers."""

    name: str = "base"

    @abstractmethod
    def summarize(self, input: str, context: Optional[Dict[str, Any]] = None) -> ReasoningResult:
        """Assess ``input`` against optional memory ``context``."""
        ...


class LocalHeuristicReasoner(ReasoningProvider):
    """
    Rule-based assessment with no model calls.

    Confidence rises with concrete detail and first-person statements and
    falls with hedging and questions. Ambiguity rises with unresolved
    pronouns, hedging, questions and very short input.
    """

    name = "local"

    def summarize(self, input: str, context: Optional[Dict[str, Any]] = None) -> ReasoningResult:
        text = (input or "").strip()
        if not text:
            return ReasoningResult(summary_of_change="", confidence=0.0, ambiguity=1.0)

        segments = split_segments(text, max_segments=1)
        summary = (segments[0] if segments else text)[:MAX_SUMMARY_CHARS]
        words = text.split()
        pronouns = list(dict.fromkeys(m.lower() for m in UNRESOLVED_PRONOUN_PATTERN.findall(text)))
        hedges = HEDGE_PATTERN.findall(text)
        is_question = text.endswith("?")

        confidence = 0.6
        if DETAIL_PATTERN.search(text[1:]):
            confidence += 0.15
        if FIRST_PERSON_PATTERN.match(text):
            confidence += 0.1
        if is_question:
            confidence -= 0.2
        confidence -= min(0.3, 0.15 * len(hedges))

        ambiguity = 0.1
        if pronouns:
            ambiguity += 0.25
        if hedges:
            ambiguity += 0.2
        if is_question:
            ambiguity += 0.2
        if len(words) < 4:
            ambiguity += 0.15

        questions: List[str] = []
        for pronoun in pronouns:
            questions.append(f"Who or what does '{pronoun}' refer to?")
        if hedges:
            questions.append("How sure are you about this?")
        if len(words) < 4:
            questions.append("Can you add a bit more detail?")

        effects: List[str] = []
        if not is_question:
            effects.append(f"Remember: {summary}")
        if find_pii(text):
            effects.append("Contains sensitive details that may be filtered")
        related = (context or {}).get("memories") or []
        if related:
            effects.append(f"Relates to {len(related)} existing memories")

        return ReasoningResult(
            summary_of_change=summary,
            confidence=confidence,
            ambiguity=ambiguity,
            questions_to_ask=questions,
            suggested_effects=effects,
        )


_PROVIDERS: Dict[str, Type[ReasoningProvider]] = {
    LocalHeuristicReasoner.name: LocalHeuristicReasoner,
}


def register_provider(name: str, provider_cls: Type[ReasoningProvider]) -> None:
    _PROVIDERS[name.strip().lower()] = provider_cls


def available_providers() -> List[str]:
    return sorted(_PROVIDERS)


def build_reasoner(config: Optional[ReasoningConfig] = None) -> ReasoningProvider:
    """Instantiate the configured provider, falling back to the local reasoner."""
    name = ((config.provider if config else None) or "local").strip().lower()
    provider_cls = _PROVIDERS.get(name)
    if provider_cls is None:
        logger.warning(
            "Unknown reasoning provider '%s'; expected one of %s. Using 'local'.",
            name,
            available_providers(),
        )
        provider_cls = LocalHeuristicReasoner
    return provider_cls()
