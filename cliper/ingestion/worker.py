"""
Serialized queue worker for ingestion and maintenance items.

One recurring tick processes at most one queue item, system-wide. An
asyncio lock is the in-progress guard: a tick that finds the lock held
returns immediately instead of waiting. Processing is also suppressed
while the engine reports a safe-mode boot condition.

Item lifecycle::

    pending -> processing -> removed            (success)
                          -> failed, retry+1    (exception)
    failed (retry < max) -> processing ...
    failed (retry = max) -> abandoned_at set, never picked again
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from dataclasses import asdict, dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional

from cliper.core.config import CliperConfig
from cliper.core.errors import QueueItemError
from cliper.core.types import (
    QUEUE,
    DecisionLog,
    QueueItem,
    QueueItemStatus,
    QueueItemType,
    Speaker,
)
from cliper.ingestion.distill import MemoryCandidate, diarize_transcription_locally, distill_locally
from cliper.ingestion.transcripts import ingest_transcription
from cliper.ingestion.validation import (
    ConsistencyChecker,
    LocalConsistencyChecker,
    validate_memory,
)
from cliper.maintenance.tiering import MaintenanceRunner
from cliper.store.record_store import RecordStore, StoreEvent

logger = logging.getLogger("Cliper.Ingestion.Worker")

LOCAL_DISTILLER = "local-heuristic"

ItemHandler = Callable[[QueueItem], Dict[str, Any]]


@dataclass
class TickResult:
    processed: bool
    reason: str
    item_id: Optional[str] = None
    item_type: Optional[str] = None
    error: Optional[str] = None
    result: Optional[Dict[str, Any]] = None
    store_mutated: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class QueueWorker:
    """
    Drains the ingestion queue one item per tick.

    Guarantees at-most-one item in flight from this worker instance.
    """

    def __init__(
        self,
        *,
        store: RecordStore,
        config: CliperConfig,
        consistency_checker: Optional[ConsistencyChecker] = None,
        safe_mode_fn: Callable[[], bool] = lambda: False,
        distill_fn: Callable[[str], List[MemoryCandidate]] = distill_locally,
        now_fn: Callable[[], float] = time.time,
        sleep_fn: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self._store = store
        self._config = config
        self._checker = consistency_checker or LocalConsistencyChecker()
        self._safe_mode_fn = safe_mode_fn
        self._distill_fn = distill_fn
        self._now_fn = now_fn
        self._sleep_fn = sleep_fn
        self._maintenance = MaintenanceRunner(store, config.maintenance, now_fn=now_fn)
        self._handlers: Dict[QueueItemType, ItemHandler] = {
            QueueItemType.TEXT: self._handle_text,
            QueueItemType.IMAGE: self._handle_text,
            QueueItemType.MAINTENANCE: self._handle_maintenance,
            QueueItemType.INSIGHT_GEN: self._handle_insights,
            QueueItemType.DIARIZATION: self._handle_diarization,
        }

        self._task: Optional[asyncio.Task] = None
        self._running = False
        self._tick_lock = asyncio.Lock()
        self._processed_count = 0
        self._failure_count = 0
        self._abandoned_count = 0
        self._last_item_id: Optional[str] = None
        self._last_error: Optional[str] = None
        self._last_tick_at: Optional[float] = None

    @property
    def max_retries(self) -> int:
        return self._config.queue.max_retries

    @property
    def status(self) -> Dict[str, Any]:
        return {
            "running": self._running,
            "inflight": self._tick_lock.locked(),
            "tick_seconds": self._config.queue.tick_seconds,
            "max_retries": self.max_retries,
            "processed_count": self._processed_count,
            "failure_count": self._failure_count,
            "abandoned_count": self._abandoned_count,
            "last_item_id": self._last_item_id,
            "last_error": self._last_error,
            "last_tick_at": self._last_tick_at,
        }

    def register_handler(self, item_type: QueueItemType, handler: ItemHandler) -> None:
        self._handlers[QueueItemType(item_type)] = handler

    async def start(self) -> bool:
        if self._running:
            return False
        self._running = True
        self._task = asyncio.create_task(self._run_loop(), name="cliper-queue-worker")
        logger.info("Queue worker started (tick=%.1fs)", self._config.queue.tick_seconds)
        return True

    async def stop(self) -> bool:
        if not self._running and self._task is None:
            return False
        self._running = False
        task = self._task
        self._task = None
        if task is not None:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        logger.info("Queue worker stopped")
        return True

    async def tick(self) -> TickResult:
        if self._tick_lock.locked():
            return TickResult(processed=False, reason="already_running")
        if self._safe_mode_fn():
            return TickResult(processed=False, reason="safe_mode")

        async with self._tick_lock:
            self._last_tick_at = self._now_fn()
            item = self._store.next_queue_item(self.max_retries)
            if item is None:
                return TickResult(processed=False, reason="idle")
            return self._process(item)

    async def drain(self, max_items: int = 100) -> List[TickResult]:
        """Tick until the queue has nothing eligible (or ``max_items`` ticks ran)."""
        results: List[TickResult] = []
        for _ in range(max_items):
            result = await self.tick()
            if not result.processed and result.reason != "failed":
                break
            results.append(result)
        return results

    def _process(self, item: QueueItem) -> TickResult:
        self._last_item_id = item.id
        self._store.update_queue_item(item.id, status=QueueItemStatus.PROCESSING)
        handler = self._handlers.get(item.type, self._handle_text)
        try:
            result = handler(item)
        except Exception as exc:
            return self._record_failure(item, exc)

        self._store.remove_from_queue(item.id)
        self._store.notify(StoreEvent(QUEUE, "processed", item.id))
        self._processed_count += 1
        self._last_error = None
        logger.info("Processed %s item %s", item.type.value, item.id)
        return TickResult(
            processed=True,
            reason="completed",
            item_id=item.id,
            item_type=item.type.value,
            result=result,
            store_mutated=True,
        )

    def _record_failure(self, item: QueueItem, exc: Exception) -> TickResult:
        retry_count = item.retry_count + 1
        changes: Dict[str, Any] = {
            "status": QueueItemStatus.FAILED,
            "retry_count": retry_count,
            "error": str(exc),
        }
        self._failure_count += 1
        self._last_error = str(exc)
        if retry_count >= self.max_retries:
            changes["abandoned_at"] = self._now_fn()
            self._abandoned_count += 1
            logger.warning(
                "Queue item %s abandoned after %d attempts: %s", item.id, retry_count, exc
            )
        else:
            logger.error(
                "Queue item %s failed (attempt %d/%d): %s",
                item.id,
                retry_count,
                self.max_retries,
                exc,
            )
        self._store.update_queue_item(item.id, **changes)
        return TickResult(
            processed=False,
            reason="failed",
            item_id=item.id,
            item_type=item.type.value,
            error=str(exc),
            store_mutated=True,
        )

    async def _run_loop(self) -> None:
        while self._running:
            try:
                await self.tick()
            except Exception as e:
                logger.error("Queue worker tick error: %s", e, exc_info=True)
            try:
                await self._sleep_fn(self._config.queue.tick_seconds)
            except asyncio.CancelledError:
                break

    # --- Item handlers ---

    def _handle_text(self, item: QueueItem) -> Dict[str, Any]:
        t0 = time.perf_counter()
        settings = self._store.get_settings()
        candidates = self._distill_fn(item.content)
        existing = self._store.get_memories()
        stored_ids: List[str] = []
        rejected = 0
        contradictory = 0
        images = [item.image_base64] if item.image_base64 else []

        for candidate in candidates:
            verdict = validate_memory(candidate, pii_filter_enabled=settings.pii_filter_enabled)
            if not verdict.accepted:
                rejected += 1
                continue
            consistency = self._checker.check(candidate.content, candidate.domain, existing)
            memory = self._store.add_memory(
                candidate.content,
                domain=candidate.domain,
                type=candidate.type,
                entity=candidate.entity,
                speaker=Speaker.USER,
                confidence=candidate.confidence,
                salience=candidate.salience,
                justification=candidate.justification,
                distilled_by=LOCAL_DISTILLER,
                is_pending_approval=not settings.auto_approve_facts,
                images=images,
                metadata={"origin": "queue", "queue_item_id": item.id},
            )
            if consistency.is_contradictory:
                if consistency.conflicting_id:
                    memory = self._store.flag_contradiction(
                        memory.id, consistency.conflicting_id, consistency.reasoning
                    )
                    contradictory += 1
                else:
                    logger.warning(
                        "Contradiction reported for %s without a conflicting id; kept active",
                        memory.id,
                    )
            stored_ids.append(memory.id)
            existing.insert(0, memory)

        if not candidates and images:
            memory = self._store.add_memory(
                "Image capture",
                entity="user",
                speaker=Speaker.USER,
                confidence=0.55,
                salience=0.5,
                justification="Image attached without text",
                distilled_by=LOCAL_DISTILLER,
                images=images,
                metadata={"origin": "queue", "queue_item_id": item.id},
            )
            stored_ids.append(memory.id)

        latency_ms = (time.perf_counter() - t0) * 1000.0
        self._store.save_decision_log(
            DecisionLog(
                timestamp=self._now_fn(),
                query=item.content[:120],
                memories_considered=len(candidates),
                memories_injected=len(stored_ids),
                injected_ids=stored_ids,
                decision_reason=(
                    f"Ingestion: {len(stored_ids)} stored, {rejected} rejected, "
                    f"{contradictory} contradictory."
                ),
                retrieval_latency_ms=round(latency_ms, 3),
                cognitive_load=len(candidates) / 10,
            )
        )
        return {
            "candidates": len(candidates),
            "stored": len(stored_ids),
            "rejected": rejected,
            "contradictory": contradictory,
            "memory_ids": stored_ids,
        }

    def _handle_maintenance(self, item: QueueItem) -> Dict[str, Any]:
        result = self._maintenance.run_cycle()
        self._store.update_settings(last_maintenance_at=self._now_fn())
        follow_up = self._store.add_to_queue("Insight Synthesis Task", QueueItemType.INSIGHT_GEN)
        result["insight_item_id"] = follow_up.id
        return result

    def _handle_insights(self, item: QueueItem) -> Dict[str, Any]:
        return self._maintenance.synthesize_insights()

    def _handle_diarization(self, item: QueueItem) -> Dict[str, Any]:
        payload = json.loads(item.content)
        if isinstance(payload, list):
            payload = {"chunks": payload}
        if not isinstance(payload, dict) or not isinstance(payload.get("chunks"), list):
            raise QueueItemError("Diarization item must carry a list of transcript chunks")

        segments = diarize_transcription_locally(payload["chunks"])
        text = payload.get("text") or " ".join(seg.text for seg in segments)
        if not text.strip():
            raise QueueItemError("Diarization item has no transcript text")
        log = ingest_transcription(
            self._store,
            text,
            segments=segments,
            meeting_id=payload.get("meeting_id"),
            duration_seconds=float(payload.get("duration_seconds") or 0.0),
        )
        return {"meeting_id": log.meeting_id, "segments": len(segments)}
