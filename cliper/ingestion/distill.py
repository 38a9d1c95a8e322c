"""
Cliper Local Distillation
-------------------------
Zero-dependency, always-available fallbacks for turning raw input into
candidate memories, summarizing memories into insights, and attributing
speakers in a timed transcript.

They use sentence splitting, not semantic extraction. Hosts wanting
higher-quality extraction replace them with an external
text-understanding provider.
"""

import re
import logging
from collections import Counter
from typing import Any, Dict, List, Optional, Sequence

from pydantic import BaseModel, Field

from cliper.core.types import Memory, MemoryDomain, MemoryType, TranscriptSegment

logger = logging.getLogger("Cliper.Ingestion.Distill")

SENTENCE_SPLIT = re.compile(r"(?<=[.!?])\s+")

LOCAL_CONFIDENCE = 0.55
LOCAL_SALIENCE = 0.5
LOCAL_JUSTIFICATION = "Local extraction (cloud disabled)"
DEFAULT_MAX_SEGMENTS = 3
SPEAKER_SWITCH_GAP_SECONDS = 1.2


class MemoryCandidate(BaseModel):
    """A fragment proposed for storage, before validation."""
    content: str
    domain: Optional[MemoryDomain] = MemoryDomain.GENERAL
    type: MemoryType = MemoryType.RAW
    entity: Optional[str] = "user"
    confidence: float = Field(default=LOCAL_CONFIDENCE, ge=0.0, le=1.0)
    salience: float = Field(default=LOCAL_SALIENCE, ge=0.0, le=1.0)
    justification: str = LOCAL_JUSTIFICATION


class InsightCandidate(BaseModel):
    content: str
    entity: str
    domain: MemoryDomain
    justification: str = "Local heuristic summary"
    source_ids: List[str] = Field(default_factory=list)


def split_segments(text: str, max_segments: int = DEFAULT_MAX_SEGMENTS) -> List[str]:
    segments = [part.strip() for part in SENTENCE_SPLIT.split(text or "")]
    return [part for part in segments if part][:max_segments]


def distill_locally(text: str, max_segments: int = DEFAULT_MAX_SEGMENTS) -> List[MemoryCandidate]:
    """Split raw text into at most ``max_segments`` low-confidence raw candidates."""
    candidates = [MemoryCandidate(content=segment) for segment in split_segments(text, max_segments)]
    logger.debug("Distilled %d candidate(s) from %d chars", len(candidates), len(text or ""))
    return candidates


def summarize_memories_locally(memories: Sequence[Memory], limit: int = 3) -> List[InsightCandidate]:
    """
    Group a sample of memories by domain and describe each group.

    Returns at most ``limit`` insights, largest groups first. Each insight
    names the most frequent entities and keeps the ids it was built from.
    """
    groups: Dict[MemoryDomain, List[Memory]] = {}
    for memory in memories:
        if memory.type == MemoryType.INSIGHT:
            continue
        groups.setdefault(memory.domain, []).append(memory)

    ordered = sorted(groups.items(), key=lambda pair: len(pair[1]), reverse=True)
    insights: List[InsightCandidate] = []
    for domain, members in ordered[:limit]:
        entities = Counter(m.entity for m in members if m.entity and m.entity != "unspecified")
        top = [name for name, _ in entities.most_common(3)]
        focus = ", ".join(top) if top else "general context"
        insights.append(
            InsightCandidate(
                content=(
                    f"Recurring {domain.value} theme across {len(members)} memories, "
                    f"centered on {focus}."
                ),
                entity=top[0] if top else "user",
                domain=domain,
                source_ids=[m.id for m in members],
            )
        )
    return insights


def _chunk_bounds(chunk: Dict[str, Any]) -> tuple:
    stamp = chunk.get("timestamp") or [0.0, 0.0]
    if isinstance(stamp, (int, float)):
        return float(stamp), float(stamp)
    start = float(stamp[0] or 0.0)
    end = float(stamp[1]) if len(stamp) > 1 and stamp[1] is not None else start
    return start, end


def diarize_transcription_locally(
    chunks: Sequence[Dict[str, Any]],
    gap_seconds: float = SPEAKER_SWITCH_GAP_SECONDS,
) -> List[TranscriptSegment]:
    """
    Attribute speakers by pause length.

    A silence longer than ``gap_seconds`` between chunks is treated as a turn
    change; consecutive chunks from the same speaker are merged.
    """
    segments: List[TranscriptSegment] = []
    speaker_index = 1
    previous_end: Optional[float] = None

    for chunk in chunks:
        text = str(chunk.get("text", "")).strip()
        if not text:
            continue
        start, end = _chunk_bounds(chunk)
        if previous_end is not None and start - previous_end > gap_seconds:
            speaker_index = 2 if speaker_index == 1 else 1
        speaker = f"Speaker {speaker_index}"

        if segments and segments[-1].speaker == speaker:
            last = segments[-1]
            segments[-1] = last.model_copy(
                update={"text": f"{last.text} {text}", "end": max(last.end, end)}
            )
        else:
            segments.append(TranscriptSegment(speaker=speaker, text=text, start=start, end=end))
        previous_end = end

    return segments
