"""
Cliper Candidate Validation
---------------------------
Screens candidate memories before they are stored and checks them against
existing memories for contradiction.

Rejections are silent drops: the candidate is not stored and a warning is
logged. PII screening is a best-effort heuristic, not a security boundary.
"""

import re
import logging
from abc import ABC, abstractmethod
from typing import List, Optional, Sequence

from pydantic import BaseModel

from cliper.core.types import Memory, MemoryDomain
from cliper.ingestion.distill import MemoryCandidate

logger = logging.getLogger("Cliper.Ingestion.Validation")

# --- PII / secret patterns ---

CARD_NUMBER_PATTERN = re.compile(r"\b(?:\d[ -]*?){13,16}\b")
EMAIL_PATTERN = re.compile(r"\b[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}\b")
API_KEY_PATTERN = re.compile(r"(?:sk-|api_|key-)[a-zA-Z0-9]{20,}", re.IGNORECASE)
CREDENTIAL_PATTERN = re.compile(r"(password|passwd|secret|token)\s*[:=]\s*\S+", re.IGNORECASE)

PII_PATTERNS = [
    ("card_number", CARD_NUMBER_PATTERN),
    ("email", EMAIL_PATTERN),
    ("api_key", API_KEY_PATTERN),
    ("credential", CREDENTIAL_PATTERN),
]

# Bare third-person referents with no antecedent in the fragment
UNRESOLVED_PRONOUNS = ("it", "they", "he", "she", "his", "her", "its")
UNRESOLVED_PRONOUN_PATTERN = re.compile(
    r"\b(?:" + "|".join(UNRESOLVED_PRONOUNS) + r")\b", re.IGNORECASE
)


class ValidationResult(BaseModel):
    accepted: bool
    reason: str = ""


class ConsistencyResult(BaseModel):
    is_contradictory: bool = False
    reasoning: str = ""
    conflicting_id: Optional[str] = None


def find_pii(content: str) -> List[str]:
    """Names of the PII patterns that match ``content``."""
    return [name for name, pattern in PII_PATTERNS if pattern.search(content)]


def has_unresolved_pronoun(content: str) -> bool:
    """
    True when a listed pronoun appears as a whole word anywhere in ``content``.

    Word boundaries rather than surrounding spaces, so a pronoun at the start
    or end of the fragment or next to punctuation ("He works at Acme",
    "I met her.") counts, while words that merely contain one ("Italy",
    "theory") do not.
    """
    return UNRESOLVED_PRONOUN_PATTERN.search(content) is not None


def validate_memory(candidate: MemoryCandidate, *, pii_filter_enabled: bool = True) -> ValidationResult:
    content = (candidate.content or "").strip()
    if not content or candidate.domain is None or not (candidate.entity or "").strip():
        logger.warning("Rejected candidate: missing content, domain or entity")
        return ValidationResult(accepted=False, reason="missing_fields")

    if pii_filter_enabled:
        matches = find_pii(content)
        if matches:
            logger.warning("Rejected candidate: PII filter matched %s", ", ".join(matches))
            return ValidationResult(accepted=False, reason="pii")

    if has_unresolved_pronoun(content):
        logger.warning("Rejected candidate: unresolved pronoun in %r", content[:60])
        return ValidationResult(accepted=False, reason="unresolved_pronoun")

    return ValidationResult(accepted=True)


class ConsistencyChecker(ABC):
    """Contradiction check against existing memories."""

    @abstractmethod
    def check(
        self,
        content: str,
        domain: MemoryDomain,
        existing: Sequence[Memory],
    ) -> ConsistencyResult:
        """Return whether ``content`` contradicts any of ``existing``."""


class LocalConsistencyChecker(ConsistencyChecker):
    """Offline checker: no semantic comparison is available, so nothing contradicts."""

    def check(
        self,
        content: str,
        domain: MemoryDomain,
        existing: Sequence[Memory],
    ) -> ConsistencyResult:
        return ConsistencyResult(
            is_contradictory=False,
            reasoning="Local mode: no cloud validation performed.",
        )
