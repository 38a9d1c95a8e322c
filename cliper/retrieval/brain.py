"""
Cliper Brain Consultation
-------------------------
The query entry point. Special intents short-circuit first; otherwise the
query is decomposed, scoped to folders, matched against the active cluster
and ranked under the current load budget. Every call writes exactly one
decision log entry; no cloud provider is ever called.
"""

import logging
import time
from typing import Any, Callable, Dict, List, Optional, Sequence

from cliper.core.config import RetrievalConfig
from cliper.core.types import BrainReply, DecisionLog, Memory, SystemStatus
from cliper.retrieval.intents import IntentOutcome, detect_intent
from cliper.retrieval.query import decompose_query, resolve_folder_scopes
from cliper.retrieval.ranker import (
    candidate_budget,
    collect_candidates,
    rank_candidates,
    scope_pool,
    searchable,
)

logger = logging.getLogger("Cliper.Retrieval")

LOCAL_REASON = "Local provider selected (no API key / cloud disabled)."
LOCAL_EXPLANATION = "Local provider responded without cloud inference."
MATCHED_HEADER = "Local-only mode: responding with cached context from {count} memories."
EMPTY_REPLY = "Local-only mode: no cached memories matched; consider adding more context."


def _log_intent(store, message: str, outcome: IntentOutcome, started: float, now: float) -> None:
    store.save_decision_log(
        DecisionLog(
            timestamp=now,
            query=message,
            memory_retrieval_used=False,
            memories_considered=0,
            memories_injected=len(outcome.citations),
            injected_ids=list(outcome.citations),
            decision_reason=outcome.decision_reason,
            retrieval_latency_ms=(time.perf_counter() - started) * 1000.0,
            cognitive_load=0.0,
            assumptions=list(outcome.assumptions),
            cloud_called=False,
        )
    )


def compose_reply(candidates: Sequence[Memory]) -> str:
    if not candidates:
        return EMPTY_REPLY
    header = MATCHED_HEADER.format(count=len(candidates))
    body = "\n".join(f"• {m.content}" for m in candidates)
    return f"{header}\n\n{body}"


def consult_brain(
    history: Optional[List[Dict[str, Any]]],
    message: str,
    memories: Optional[Sequence[Memory]],
    *,
    store,
    config: Optional[RetrievalConfig] = None,
    is_observer: bool = False,
    system_status: SystemStatus = SystemStatus.NOMINAL,
    now_fn: Callable[[], float] = time.time,
) -> BrainReply:
    """
    Answer ``message`` from local memory.

    ``history`` is the prior conversation as ``{"role", "content"}`` dicts.
    The local path answers from memory alone and does not read it.
    ``memories`` defaults to the store's collection. Observers never
    trigger the write intents.
    """
    config = config or RetrievalConfig()
    started = time.perf_counter()
    now = now_fn()

    if not is_observer:
        outcome = detect_intent(message, store, now)
        if outcome is not None:
            _log_intent(store, message, outcome, started, now)
            return BrainReply(
                reply=outcome.reply,
                explanation=outcome.explanation,
                citations=outcome.citations,
                assumptions=outcome.assumptions,
            )

    pool = list(memories) if memories is not None else store.get_memories()
    active_cluster = store.get_settings().active_cluster or config.active_cluster
    search_space = searchable(pool, active_cluster)
    scoped = scope_pool(search_space, resolve_folder_scopes(message), store)
    if scoped.source == "folder_lookup":
        scoped.memories = searchable(scoped.memories, active_cluster)

    terms = decompose_query(message, config.max_query_terms)
    candidates = collect_candidates(scoped.memories, terms)
    budget = candidate_budget(system_status, config)
    selected, overflow = rank_candidates(candidates, budget)

    latency_ms = (time.perf_counter() - started) * 1000.0
    store.save_decision_log(
        DecisionLog(
            timestamp=now,
            query=message,
            memory_retrieval_used=bool(selected),
            memories_considered=len(search_space),
            memories_injected=len(selected),
            injected_ids=[m.id for m in selected],
            decision_reason=LOCAL_REASON,
            retrieval_latency_ms=latency_ms,
            cognitive_load=len(selected) / 10.0,
            assumptions=[],
            cloud_called=False,
        )
    )
    store.track_memory_access([m.id for m in selected], "retrieval")
    store.register_memory_ignored([m.id for m in overflow], "ranked_out")

    logger.debug(
        "Retrieval: terms=%s scopes=%s source=%s pool=%d candidates=%d selected=%d budget=%d",
        terms, scoped.scopes, scoped.source, len(search_space), len(candidates), len(selected), budget,
    )
    return BrainReply(
        reply=compose_reply(selected),
        explanation=LOCAL_EXPLANATION,
        citations=[m.id for m in selected],
        assumptions=[],
    )
