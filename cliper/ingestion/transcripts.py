"""
Meeting transcript ingestion.

A transcript is stored once as a low-salience raw memory and then mined
for up to three summaries (overview, decisions, action items), each filed
under the meeting's folder so retrieval can scope to ``work/meetings``.
"""

import re
import logging
from typing import List, Optional, Sequence

from cliper.core.types import (
    Memory,
    MemoryDomain,
    MemoryType,
    RecallPriority,
    Speaker,
    TranscriptionLog,
    TranscriptSegment,
)
from cliper.ingestion.distill import split_segments

logger = logging.getLogger("Cliper.Ingestion.Transcripts")

DECISION_LINE = re.compile(r"\b(decided|agreed|approved|chose)\b", re.IGNORECASE)
ACTION_LINE = re.compile(r"\b(action item|next step|todo|follow up|assign)", re.IGNORECASE)
MAX_SUMMARY_LINES = 3
MAX_SUMMARY_CHARS = 320


def _lines(text: str, segments: Sequence[TranscriptSegment]) -> List[str]:
    if segments:
        return [seg.text.strip() for seg in segments if seg.text.strip()]
    return [line.strip() for line in re.split(r"[\n.!?]+", text) if line.strip()]


def _summarize_lines(lines: List[str]) -> Optional[str]:
    if not lines:
        return None
    return "; ".join(lines[:MAX_SUMMARY_LINES])[:MAX_SUMMARY_CHARS]


def ingest_transcription(
    store,
    text: str,
    *,
    segments: Optional[Sequence[TranscriptSegment]] = None,
    meeting_id: Optional[str] = None,
    duration_seconds: float = 0.0,
) -> TranscriptionLog:
    """Persist a transcript log plus its derived memories; returns the log."""
    segments = list(segments or [])
    log = TranscriptionLog(text=text, segments=segments, duration_seconds=duration_seconds)
    if meeting_id:
        log = log.model_copy(update={"meeting_id": meeting_id})
    store.save_transcription_log(log)

    base_meta = {"meeting_id": log.meeting_id, "origin": "transcript"}
    stored: List[Memory] = []

    stored.append(
        store.add_memory(
            text,
            domain=MemoryDomain.WORK,
            type=MemoryType.RAW,
            entity="meeting",
            speaker=Speaker.EXTERNAL,
            salience=0.35,
            trust_score=0.98,
            recall_priority=RecallPriority.LOW,
            justification="Meeting transcript",
            metadata={
                **base_meta,
                "folder": f"work/meetings/transcripts/{log.meeting_id}",
                "table": "transcripts",
            },
        )
    )

    overview = " ".join(split_segments(text, 3))
    if overview:
        stored.append(
            store.add_memory(
                overview[:MAX_SUMMARY_CHARS],
                domain=MemoryDomain.WORK,
                type=MemoryType.SUMMARY,
                entity="meeting",
                salience=0.7,
                justification="Meeting overview",
                metadata={
                    **base_meta,
                    "folder": f"work/meetings/summaries/{log.meeting_id}",
                    "summary_type": "overview",
                },
            )
        )

    lines = _lines(text, segments)
    for summary_type, pattern, salience in (
        ("decisions", DECISION_LINE, 0.65),
        ("actions", ACTION_LINE, 0.68),
    ):
        summary = _summarize_lines([line for line in lines if pattern.search(line)])
        if summary is None:
            continue
        stored.append(
            store.add_memory(
                summary,
                domain=MemoryDomain.WORK,
                type=MemoryType.DECISION if summary_type == "decisions" else MemoryType.TASK,
                entity="meeting",
                salience=salience,
                justification=f"Meeting {summary_type}",
                metadata={
                    **base_meta,
                    "folder": f"work/meetings/summaries/{log.meeting_id}",
                    "summary_type": summary_type,
                },
            )
        )

    logger.info("Ingested transcript %s (%d memories)", log.meeting_id, len(stored))
    return log
