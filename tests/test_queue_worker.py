"""Tests for the serialized queue worker."""

import asyncio
import json
from unittest.mock import patch

import pytest

from cliper.core.config import CliperConfig, QueueConfig, StorageConfig
from cliper.core.types import (
    MemoryStatus,
    MemoryType,
    QueueItemStatus,
    QueueItemType,
)
from cliper.ingestion.validation import ConsistencyChecker, ConsistencyResult
from cliper.ingestion.worker import QueueWorker
from cliper.store.backends import InMemoryBackend
from cliper.store.record_store import RecordStore


class _Clock:
    def __init__(self, now: float = 1_700_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


class _ContradictingChecker(ConsistencyChecker):
    def __init__(self, conflicting_id):
        self.conflicting_id = conflicting_id

    def check(self, content, domain, existing):
        return ConsistencyResult(
            is_contradictory=True,
            reasoning="dates disagree",
            conflicting_id=self.conflicting_id,
        )


def _config(max_retries: int = 3) -> CliperConfig:
    return CliperConfig(
        storage=StorageConfig(backend="memory"),
        queue=QueueConfig(tick_seconds=0.01, max_retries=max_retries),
    )


def _worker(store=None, **kwargs):
    store = store or RecordStore(InMemoryBackend(), now_fn=_Clock())
    kwargs.setdefault("config", _config())
    kwargs.setdefault("now_fn", _Clock())
    return QueueWorker(store=store, **kwargs), store


class TestTick:
    @pytest.mark.asyncio
    async def test_idle_when_queue_empty(self):
        worker, _ = _worker()
        result = await worker.tick()
        assert result.processed is False
        assert result.reason == "idle"

    @pytest.mark.asyncio
    async def test_text_item_becomes_memories(self):
        worker, store = _worker()
        item = store.add_to_queue("Dana leads Atlas. The launch is in May.")

        result = await worker.tick()

        assert result.processed is True
        assert result.item_id == item.id
        assert result.result["stored"] == 2
        assert store.get_queue() == []
        contents = {m.content for m in store.get_memories()}
        assert contents == {"Dana leads Atlas.", "The launch is in May."}
        log = store.get_decision_logs()[0]
        assert log.memories_injected == 2
        assert log.cloud_called is False

    @pytest.mark.asyncio
    async def test_rejected_candidates_are_dropped(self):
        worker, store = _worker()
        store.add_to_queue("Mail dana@example.com. Dana leads Atlas.")
        result = await worker.tick()
        assert result.result["rejected"] == 1
        assert [m.content for m in store.get_memories()] == ["Dana leads Atlas."]

    @pytest.mark.asyncio
    async def test_pending_approval_follows_settings(self):
        worker, store = _worker()
        store.update_settings(auto_approve_facts=False)
        store.add_to_queue("Dana leads Atlas.")
        await worker.tick()
        assert store.get_memories()[0].is_pending_approval is True

    @pytest.mark.asyncio
    async def test_image_without_text(self):
        worker, store = _worker()
        store.add_to_queue("", QueueItemType.IMAGE, image_base64="aGVsbG8=")
        await worker.tick()
        memory = store.get_memories()[0]
        assert memory.content == "Image capture"
        assert memory.images == ["aGVsbG8="]

    @pytest.mark.asyncio
    async def test_contradiction_is_flagged(self):
        store = RecordStore(InMemoryBackend())
        older = store.add_memory("The review is on Monday")
        worker, _ = _worker(store, consistency_checker=_ContradictingChecker(older.id))
        store.add_to_queue("The review is on Friday.")

        result = await worker.tick()

        assert result.result["contradictory"] == 1
        flagged = store.get_memories()[0]
        assert flagged.status == MemoryStatus.CONTRADICTORY
        assert flagged.metadata["contradicts_id"] == older.id

    @pytest.mark.asyncio
    async def test_safe_mode_suppresses_processing(self):
        worker, store = _worker(safe_mode_fn=lambda: True)
        store.add_to_queue("Dana leads Atlas.")
        result = await worker.tick()
        assert result.reason == "safe_mode"
        assert len(store.get_queue()) == 1

    @pytest.mark.asyncio
    async def test_overlapping_tick_returns_immediately(self):
        worker, store = _worker()
        store.add_to_queue("Dana leads Atlas.")
        async with worker._tick_lock:
            result = await worker.tick()
        assert result.reason == "already_running"
        assert len(store.get_queue()) == 1


class TestRetries:
    @pytest.mark.asyncio
    async def test_failure_increments_then_abandons(self):
        worker, store = _worker(config=_config(max_retries=2))

        def explode(item):
            raise RuntimeError("handler crashed")

        worker.register_handler(QueueItemType.TEXT, explode)
        item = store.add_to_queue("boom")

        first = await worker.tick()
        assert first.reason == "failed"
        failed = store.get_queue()[0]
        assert failed.status == QueueItemStatus.FAILED
        assert failed.retry_count == 1
        assert failed.error == "handler crashed"
        assert failed.abandoned_at is None

        await worker.tick()
        abandoned = store.get_queue()[0]
        assert abandoned.retry_count == 2
        assert abandoned.abandoned_at is not None
        assert [i.id for i in store.abandoned_queue_items(2)] == [item.id]

        third = await worker.tick()
        assert third.reason == "idle"
        assert worker.status["abandoned_count"] == 1

    @pytest.mark.asyncio
    async def test_drain_processes_in_order(self):
        worker, store = _worker()
        seen = []

        def record(item):
            seen.append(item.content)
            return {}

        worker.register_handler(QueueItemType.TEXT, record)
        for content in ("first", "second", "third"):
            store.add_to_queue(content)

        results = await worker.drain()
        assert seen == ["first", "second", "third"]
        assert len(results) == 3
        assert store.get_queue() == []


class TestMaintenanceItems:
    @pytest.mark.asyncio
    async def test_maintenance_enqueues_insight_follow_up(self):
        worker, store = _worker()
        store.add_to_queue("Neural System Optimization", QueueItemType.MAINTENANCE)
        result = await worker.tick()
        assert set(result.result) >= {"tiering", "log_ttl", "decay", "insight_item_id"}
        queued = store.get_queue()
        assert [i.type for i in queued] == [QueueItemType.INSIGHT_GEN]

    @pytest.mark.asyncio
    async def test_completed_maintenance_stamps_last_run(self):
        clock = _Clock()
        worker, store = _worker(now_fn=clock)
        store.add_to_queue("Neural System Optimization", QueueItemType.MAINTENANCE)
        assert store.get_settings().last_maintenance_at is None
        await worker.tick()
        assert store.get_settings().last_maintenance_at == clock.now

    @pytest.mark.asyncio
    async def test_failed_maintenance_leaves_last_run_unstamped(self):
        worker, store = _worker()
        store.add_to_queue("Neural System Optimization", QueueItemType.MAINTENANCE)
        with patch.object(worker._maintenance, "run_cycle", side_effect=RuntimeError("sweep crashed")):
            result = await worker.tick()
        assert result.reason == "failed"
        assert store.get_settings().last_maintenance_at is None
        assert not store.has_queued(QueueItemType.INSIGHT_GEN)

    @pytest.mark.asyncio
    async def test_insight_item_creates_insights(self):
        worker, store = _worker()
        store.add_memory("Dana leads Atlas", entity="Dana")
        store.add_memory("Atlas ships in May", entity="Atlas")
        store.add_to_queue("Insight Synthesis Task", QueueItemType.INSIGHT_GEN)
        result = await worker.tick()
        assert result.result["created"] == 1
        insight = next(m for m in store.get_memories() if m.type == MemoryType.INSIGHT)
        assert insight.distilled_by == "autonomous-metacognition"

    @pytest.mark.asyncio
    async def test_diarization_item_ingests_transcript(self):
        worker, store = _worker()
        payload = {
            "meeting_id": "weekly",
            "chunks": [
                {"text": "We decided to ship in May.", "timestamp": [0.0, 2.0]},
                {"text": "Action item: Dana writes notes.", "timestamp": [5.0, 7.0]},
            ],
        }
        store.add_to_queue(json.dumps(payload), QueueItemType.DIARIZATION)
        result = await worker.tick()
        assert result.result == {"meeting_id": "weekly", "segments": 2}
        assert store.get_transcription_logs()[0].meeting_id == "weekly"

    @pytest.mark.asyncio
    async def test_malformed_diarization_fails(self):
        worker, store = _worker()
        store.add_to_queue(json.dumps({"chunks": "nope"}), QueueItemType.DIARIZATION)
        result = await worker.tick()
        assert result.reason == "failed"
        assert "transcript chunks" in result.error


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_start_stop(self):
        worker, store = _worker()
        store.add_to_queue("Dana leads Atlas.")
        assert await worker.start() is True
        assert await worker.start() is False
        for _ in range(50):
            if not store.get_queue():
                break
            await asyncio.sleep(0.01)
        assert await worker.stop() is True
        assert store.get_queue() == []
        assert worker.status["running"] is False
