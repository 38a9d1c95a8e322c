"""
Cliper Engine
-------------
Facade that owns the record store, the queue worker, the maintenance
scheduler, the reasoning provider and the decision controller, and
tracks the system load status they all consult.

Usage:
    engine = CliperEngine(CliperConfig.from_env())
    await engine.initialize()

    engine.add_to_queue("Meeting with Dana moved to Thursday")
    reply = await engine.consult_brain("When is the meeting with Dana?")

    await engine.shutdown()
"""

import asyncio
import logging
import time
from typing import Any, Awaitable, Callable, Dict, List, Optional

from cliper.core.config import CliperConfig
from cliper.core.errors import StorageError
from cliper.core.types import (
    BrainReply,
    DecisionLog,
    MemoryDomain,
    MemoryType,
    QueueItem,
    QueueItemStatus,
    QueueItemType,
    Speaker,
    SystemHealth,
    SystemStatus,
)
from cliper.ingestion.distill import MemoryCandidate
from cliper.ingestion.validation import ConsistencyChecker, validate_memory
from cliper.ingestion.worker import QueueWorker
from cliper.maintenance.scheduler import MaintenanceScheduler
from cliper.maintenance.tiering import MaintenanceRunner
from cliper.reasoning.controller import ControllerState, DecisionController
from cliper.reasoning.models import DecisionAction
from cliper.reasoning.provider import ReasoningProvider, build_reasoner
from cliper.retrieval.brain import consult_brain
from cliper.retrieval.query import decompose_query
from cliper.retrieval.ranker import collect_candidates, searchable
from cliper.store.record_store import RecordStore, StoreEvent

logger = logging.getLogger("Cliper.Engine")

STORAGE_PRESSURE_LIMIT = 90.0
LATENCY_LIMIT_MS = 2000.0
LATENCY_WINDOW = 5
ANOMALY_SCORE_LIMIT = 0.6
ANOMALY_COUNT_LIMIT = 3
UPDATE_CONTEXT_LIMIT = 5


class CliperEngine:
    def __init__(
        self,
        config: Optional[CliperConfig] = None,
        *,
        reasoner: Optional[ReasoningProvider] = None,
        consistency_checker: Optional[ConsistencyChecker] = None,
        now_fn: Callable[[], float] = time.time,
        sleep_fn: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.config = config or CliperConfig.from_env()
        self._reasoner = reasoner
        self._consistency_checker = consistency_checker
        self._now_fn = now_fn
        self._sleep_fn = sleep_fn

        self._store: Optional[RecordStore] = None
        self._worker: Optional[QueueWorker] = None
        self._scheduler: Optional[MaintenanceScheduler] = None
        self._controller: Optional[DecisionController] = None

        self._boot_errors: List[str] = []
        self._safe_mode = False
        self._status = SystemStatus.NOMINAL
        self._mutation_count = 0
        self._initialized = False
        self._background = False

    async def initialize(self, *, start_background: bool = True) -> List[str]:
        """
        Open the store, run the boot check and wire the subsystems.
        Returns the boot check messages.
        """
        if self._initialized:
            return list(self._boot_errors)

        logger.info("Initializing Cliper engine...")
        t0 = time.time()
        if self.config.storage.backend == "sqlite":
            try:
                self.config.ensure_directories()
            except OSError as e:
                logger.error("Cannot create data directories: %s", e)

        self._store = RecordStore.open(self.config, now_fn=self._now_fn)
        self._store.subscribe(self._on_store_event)
        self.run_system_boot_check()

        self._reasoner = self._reasoner or build_reasoner(self.config.reasoning)
        self._controller = DecisionController(
            self.config.decision,
            ControllerState.from_store(self._store),
            store=self._store,
            now_fn=self._now_fn,
        )
        self._worker = QueueWorker(
            store=self._store,
            config=self.config,
            consistency_checker=self._consistency_checker,
            safe_mode_fn=lambda: self._safe_mode,
            now_fn=self._now_fn,
            sleep_fn=self._sleep_fn,
        )
        self._scheduler = MaintenanceScheduler(
            store=self._store,
            config=self.config.maintenance,
            now_fn=self._now_fn,
            sleep_fn=self._sleep_fn,
        )
        self._initialized = True

        if start_background:
            await self.start()

        logger.info(
            "Cliper initialized: %d memories, status=%s, durable=%s in %.2fs",
            len(self._store.get_memories()),
            self._status.value,
            self._store.is_durable,
            time.time() - t0,
        )
        return list(self._boot_errors)

    async def start(self) -> None:
        self._check_initialized()
        await self._worker.start()
        await self._scheduler.start()
        self._background = True

    async def shutdown(self) -> None:
        """Stop the background loops and close the store."""
        if self._worker:
            await self._worker.stop()
        if self._scheduler:
            await self._scheduler.stop()
        if self._store:
            self._store.unsubscribe(self._on_store_event)
            self._store.close()
        self._background = False
        self._initialized = False
        logger.info("Cliper shut down")

    # ──────────────────────────────────────────────────────────────
    # Subsystems
    # ──────────────────────────────────────────────────────────────

    @property
    def store(self) -> RecordStore:
        self._check_initialized()
        return self._store

    @property
    def worker(self) -> QueueWorker:
        self._check_initialized()
        return self._worker

    @property
    def scheduler(self) -> MaintenanceScheduler:
        self._check_initialized()
        return self._scheduler

    @property
    def controller(self) -> DecisionController:
        self._check_initialized()
        return self._controller

    @property
    def reasoner(self) -> ReasoningProvider:
        self._check_initialized()
        return self._reasoner

    @property
    def safe_mode(self) -> bool:
        return self._safe_mode

    @property
    def system_status(self) -> SystemStatus:
        return self._status

    def _on_store_event(self, event: StoreEvent) -> None:
        self._mutation_count += 1
        logger.debug("Store event: %s %s %s", event.action, event.collection, event.record_id or "")

    # ──────────────────────────────────────────────────────────────
    # Health
    # ──────────────────────────────────────────────────────────────

    def run_system_boot_check(self) -> List[str]:
        """Run the store boot check and enter safe mode on storage faults."""
        self._check_initialized_store()
        issues = self._store.run_system_boot_check(max_retries=self.config.queue.max_retries)
        self._boot_errors = issues
        storage_fault = self._store.fallback_active or any("unreachable" in issue for issue in issues)
        if storage_fault and not self._safe_mode:
            logger.error("Entering safe mode: %s", "; ".join(issues))
        self._safe_mode = storage_fault
        for issue in issues:
            logger.warning("Boot check: %s", issue)
        self.health()
        return list(issues)

    def exit_safe_mode(self) -> None:
        """Operator override: resume queue processing despite boot faults."""
        if self._safe_mode:
            logger.warning("Safe mode cleared by operator")
        self._safe_mode = False
        self.health()

    def health(self) -> SystemHealth:
        """
        Recompute the load status.

        Degraded when storage pressure exceeds 90%, the mean latency of the
        last five decision logs exceeds 2000 ms, or more than three logged
        anomalies scored above 0.6. Safe mode overrides both.
        """
        self._check_initialized_store()
        store = self._store
        usage = store.storage_usage()
        logs = store.get_decision_logs()
        recent = logs[:LATENCY_WINDOW]
        avg_latency = sum(log.retrieval_latency_ms for log in recent) / len(recent) if recent else 0.0
        anomalies = sum(
            1 for log in logs
            if log.anomaly_score is not None and log.anomaly_score > ANOMALY_SCORE_LIMIT
        )

        if self._safe_mode:
            status = SystemStatus.SAFE_MODE
        elif (
            usage.percent > STORAGE_PRESSURE_LIMIT
            or avg_latency > LATENCY_LIMIT_MS
            or anomalies > ANOMALY_COUNT_LIMIT
        ):
            status = SystemStatus.DEGRADED
        else:
            status = SystemStatus.NOMINAL
        if status != self._status:
            logger.warning("System status %s -> %s", self._status.value, status.value)
        self._status = status

        queue = store.get_queue()
        max_retries = self.config.queue.max_retries
        return SystemHealth(
            status=status,
            storage_pressure=usage.percent,
            avg_latency_ms=round(avg_latency, 2),
            anomaly_count=anomalies,
            queue_depth=len(queue),
            failed_items=sum(1 for item in queue if item.status == QueueItemStatus.FAILED),
            abandoned_items=len(store.abandoned_queue_items(max_retries)),
            durable_storage=store.is_durable,
            boot_errors=list(self._boot_errors),
            last_check=self._now_fn(),
        )

    def status(self) -> Dict[str, Any]:
        self._check_initialized()
        return {
            "health": self.health().model_dump(mode="json"),
            "worker": self._worker.status,
            "scheduler": self._scheduler.status,
            "reasoner": self._reasoner.name,
            "background": self._background,
            "store_mutations": self._mutation_count,
        }

    # ──────────────────────────────────────────────────────────────
    # Operations
    # ──────────────────────────────────────────────────────────────

    def record_activity(self) -> None:
        self._check_initialized()
        self._scheduler.record_activity()

    def add_to_queue(
        self,
        content: str,
        item_type: QueueItemType = QueueItemType.TEXT,
        *,
        image_base64: Optional[str] = None,
    ) -> QueueItem:
        self._check_initialized()
        self.record_activity()
        return self._store.add_to_queue(content, item_type, image_base64=image_base64)

    async def consult_brain(
        self,
        message: str,
        history: Optional[List[Dict[str, Any]]] = None,
        *,
        is_observer: bool = False,
    ) -> BrainReply:
        self._check_initialized()
        self.record_activity()
        status = self.health().status
        return consult_brain(
            history or [],
            message,
            None,
            store=self._store,
            config=self.config.retrieval,
            is_observer=is_observer,
            system_status=status,
            now_fn=self._now_fn,
        )

    async def process_update(self, message: str) -> Dict[str, Any]:
        """Assess a conversational update and act on the controller's decision."""
        self._check_initialized()
        self.record_activity()
        t0 = time.perf_counter()
        store = self._store
        settings = store.get_settings()

        terms = decompose_query(message, self.config.retrieval.max_query_terms)
        related = collect_candidates(searchable(store.get_memories(), settings.active_cluster), terms)
        context = {"memories": [m.model_dump(mode="json") for m in related[:UPDATE_CONTEXT_LIMIT]]}
        reasoning = self._reasoner.summarize(message, context)
        decision = self._controller.decide(reasoning)

        memory_id: Optional[str] = None
        rejected: Optional[str] = None
        if decision.action == DecisionAction.STORE_MEMORY:
            candidate = MemoryCandidate(
                content=reasoning.summary_of_change,
                domain=MemoryDomain.GENERAL,
                type=MemoryType.FACT,
                entity="user",
                confidence=reasoning.confidence,
            )
            verdict = validate_memory(candidate, pii_filter_enabled=settings.pii_filter_enabled)
            if verdict.accepted:
                memory = store.add_memory(
                    candidate.content,
                    domain=candidate.domain,
                    type=candidate.type,
                    entity=candidate.entity,
                    speaker=Speaker.USER,
                    confidence=reasoning.confidence,
                    salience=0.6,
                    justification="Stored by decision controller",
                    distilled_by=self._reasoner.name,
                    is_pending_approval=not settings.auto_approve_facts,
                    metadata={"origin": "update", "notes": decision.memory_notes},
                )
                memory_id = memory.id
            else:
                rejected = verdict.reason

        store.save_decision_log(
            DecisionLog(
                timestamp=self._now_fn(),
                query=message,
                memory_retrieval_used=bool(related),
                memories_considered=len(related),
                memories_injected=1 if memory_id else 0,
                injected_ids=[memory_id] if memory_id else [],
                decision_reason=f"Decision controller: {decision.action.value}"
                + (f" (rejected: {rejected})" if rejected else ""),
                retrieval_latency_ms=(time.perf_counter() - t0) * 1000.0,
                cognitive_load=reasoning.ambiguity,
                assumptions=[],
                cloud_called=False,
            )
        )
        return {
            "reasoning": reasoning.model_dump(mode="json"),
            "decision": decision.model_dump(mode="json"),
            "explanation": self._controller.last_explanation,
            "memory_id": memory_id,
            "rejected_reason": rejected,
        }

    async def drain_queue(self, max_items: int = 100) -> List[Dict[str, Any]]:
        self._check_initialized()
        return [result.to_dict() for result in await self._worker.drain(max_items)]

    def run_maintenance(self) -> Dict[str, Any]:
        """Run one maintenance cycle in-process, bypassing the queue."""
        self._check_initialized()
        runner = MaintenanceRunner(self._store, self.config.maintenance, now_fn=self._now_fn)
        result = runner.run_cycle()
        self._store.update_settings(last_maintenance_at=self._now_fn())
        return result

    def export_state(self) -> Dict[str, Any]:
        self._check_initialized()
        return self._store.export_state()

    def import_state(self, document: Dict[str, Any]) -> Dict[str, int]:
        self._check_initialized()
        counts = self._store.import_state(document)
        if counts is None:
            raise StorageError("Import failed; existing records were kept")
        self._controller.state = ControllerState.from_store(self._store)
        return counts

    def factory_reset(self) -> None:
        self._check_initialized()
        self._store.factory_reset()
        self._controller.state = ControllerState()
        self._boot_errors = []
        self.health()

    def _check_initialized_store(self) -> None:
        if self._store is None:
            raise RuntimeError("CliperEngine not initialized. Call await engine.initialize() first.")

    def _check_initialized(self) -> None:
        if not self._initialized:
            raise RuntimeError("CliperEngine not initialized. Call await engine.initialize() first.")
