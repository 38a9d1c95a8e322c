"""
Candidate selection and ranking for retrieval.

Ranking score is ``salience x trust_score``. Pinning only admits a memory to
the candidate set; it still competes on score for the budget. Python's sort
is stable, so ties keep collection order (newest first).
"""

import logging
from dataclasses import dataclass, field
from typing import List, Optional, Sequence, Tuple

from cliper.core.config import RetrievalConfig
from cliper.core.types import Memory, MemoryStatus, SystemStatus
from cliper.retrieval.query import in_scopes

logger = logging.getLogger("Cliper.Retrieval.Ranker")


@dataclass
class ScopedPool:
    memories: List[Memory]
    scopes: List[str] = field(default_factory=list)
    source: str = "unscoped"  # scoped | folder_lookup | unscoped


def candidate_budget(status: SystemStatus, config: RetrievalConfig) -> int:
    """Retrieval depth shrinks under load; latency does not."""
    if status == SystemStatus.NOMINAL:
        return config.nominal_budget
    return config.degraded_budget


def scope_pool(memories: Sequence[Memory], scopes: List[str], store=None) -> ScopedPool:
    """
    Restrict ``memories`` to the folder scopes. An empty restriction falls
    back to a direct folder lookup in ``store``, then to the unscoped pool.
    """
    if not scopes:
        return ScopedPool(list(memories))
    scoped = [m for m in memories if in_scopes(m.folder, scopes)]
    if scoped:
        return ScopedPool(scoped, scopes, "scoped")
    if store is not None:
        seen = set()
        looked_up: List[Memory] = []
        for scope in scopes:
            for memory in store.get_memories_in_folder(scope):
                if memory.id not in seen:
                    seen.add(memory.id)
                    looked_up.append(memory)
        if looked_up:
            return ScopedPool(looked_up, scopes, "folder_lookup")
    return ScopedPool(list(memories), scopes, "unscoped")


def cluster_value(active_cluster: Optional[object]) -> str:
    return getattr(active_cluster, "value", active_cluster) or "main"


def searchable(memories: Sequence[Memory], active_cluster: str) -> List[Memory]:
    return [
        m for m in memories
        if m.cluster.value == cluster_value(active_cluster) and m.status == MemoryStatus.ACTIVE
    ]


def matches(memory: Memory, terms: Sequence[str]) -> bool:
    content = memory.content.lower()
    return any(term in content for term in terms)


def collect_candidates(memories: Sequence[Memory], terms: Sequence[str]) -> List[Memory]:
    return [m for m in memories if m.is_pinned or matches(m, terms)]


def rank_candidates(
    candidates: Sequence[Memory],
    budget: int,
) -> Tuple[List[Memory], List[Memory]]:
    """Return ``(selected, overflow)`` after ordering and truncating to ``budget``."""
    ordered = sorted(candidates, key=lambda m: -m.rank_score)
    return ordered[:budget], ordered[budget:]
