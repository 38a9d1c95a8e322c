"""
Cliper Maintenance Phases
-------------------------
Housekeeping executed by the queue worker when a ``maintenance`` or
``insight_gen`` item is processed.

A maintenance cycle runs these phases in order:
1. TIERING   : move long-inactive memories to cold storage
2. LOG TTL   : drop decision logs older than the configured TTL
3. DECAY     : weaken memory strength and identity confidence by inactivity

Insight synthesis is a separate item so a slow summary never delays
tiering.
"""

import time
import logging
from typing import Callable, Dict, List

from cliper.core.config import MaintenanceConfig
from cliper.core.types import Memory, MemoryStatus, MemoryType, Speaker
from cliper.ingestion.distill import summarize_memories_locally

logger = logging.getLogger("Cliper.Maintenance")

INSIGHT_PROVENANCE = "autonomous-metacognition"


def is_cold_storage_candidate(memory: Memory, cutoff: float) -> bool:
    """Active, unprotected, and not touched since ``cutoff``."""
    return (
        memory.status == MemoryStatus.ACTIVE
        and not memory.is_pinned
        and not memory.is_locked
        and not memory.is_pending_approval
        and memory.last_accessed_at < cutoff
    )


class MaintenanceRunner:
    """Runs maintenance phases against a record store."""

    def __init__(
        self,
        store,
        config: MaintenanceConfig,
        *,
        now_fn: Callable[[], float] = time.time,
    ):
        self.store = store
        self.config = config
        self._now_fn = now_fn

    def run_cycle(self) -> dict:
        t0 = time.time()
        results = {
            "tiering": self.run_tiering_sweep(),
            "log_ttl": self.purge_decision_logs(),
            "decay": self.decay(),
        }
        results["elapsed_seconds"] = round(time.time() - t0, 3)
        logger.info("Maintenance cycle completed: %s", results)
        return results

    def run_tiering_sweep(self) -> dict:
        settings = self.store.get_settings()
        cutoff = self._now_fn() - settings.cold_storage_after_days * 86400.0
        memories = self.store.get_memories()
        moved: List[str] = []
        for memory in memories:
            if not is_cold_storage_candidate(memory, cutoff):
                continue
            self.store.update_memory(memory.id, {"status": MemoryStatus.COLD_STORAGE})
            moved.append(memory.id)
        result = {"scanned": len(memories), "moved": len(moved), "moved_ids": moved}
        logger.info("Phase TIERING: scanned=%d moved=%d", len(memories), len(moved))
        return result

    def purge_decision_logs(self) -> dict:
        ttl_days = self.store.get_settings().decision_log_ttl_days
        removed = self.store.purge_old_decision_logs(ttl_days)
        result = {"ttl_days": ttl_days, "removed": removed}
        logger.info("Phase LOG TTL: %s", result)
        return result

    def decay(self) -> dict:
        result = {
            "memories": self.store.decay_memory_strength(),
            "people": self.store.decay_identity_confidence(),
        }
        logger.info("Phase DECAY: %s", result)
        return result

    def synthesize_insights(self) -> dict:
        """Summarize a bounded sample of recent active memories into insight memories."""
        settings = self.store.get_settings()
        sample = [
            m for m in self.store.get_memories()
            if m.status == MemoryStatus.ACTIVE
            and m.cluster == settings.active_cluster
            and m.type != MemoryType.INSIGHT
        ][: self.config.insight_sample_size]

        existing = {
            m.content for m in self.store.get_memories() if m.type == MemoryType.INSIGHT
        }
        created: List[str] = []
        for insight in summarize_memories_locally(sample, self.config.max_insights_per_run):
            if insight.content in existing:
                continue
            memory = self.store.add_memory(
                insight.content,
                domain=insight.domain,
                type=MemoryType.INSIGHT,
                entity=insight.entity,
                speaker=Speaker.UNKNOWN,
                confidence=0.6,
                salience=0.55,
                justification=insight.justification,
                distilled_by=INSIGHT_PROVENANCE,
                metadata={"origin": "insight", "source_ids": insight.source_ids},
            )
            created.append(memory.id)

        result: Dict[str, object] = {"sampled": len(sample), "created": len(created), "ids": created}
        logger.info("Phase INSIGHTS: sampled=%d created=%d", len(sample), len(created))
        return result
