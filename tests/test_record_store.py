"""Tests for cliper.store: record collections, typed helpers, boot check, export/import."""

import types

import pytest

from cliper.core.errors import ImportFormatError, LockedMemoryError, RecordNotFoundError, StorageError
from cliper.core.types import (
    MEMORIES,
    DecisionLog,
    MemoryCluster,
    MemoryStatus,
    PendingPersonDecision,
    PlaceStatus,
    QueueItemStatus,
    QueueItemType,
)
from cliper.store.backends import InMemoryBackend, SQLiteBackend
from cliper.store.record_store import EXPORT_FORMAT, RecordStore, StoreEvent


class _Clock:
    def __init__(self, now: float = 1_700_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class _BrokenBackend(InMemoryBackend):
    durable = True

    def probe(self) -> None:
        raise StorageError("disk unplugged")


class _FullDiskBackend(InMemoryBackend):
    def replace_all(self, collections) -> None:
        raise StorageError("disk full")


def _store(**kwargs) -> RecordStore:
    kwargs.setdefault("now_fn", _Clock())
    return RecordStore(InMemoryBackend(), **kwargs)


def _config(tmp_path, backend="sqlite", db_path=None):
    return types.SimpleNamespace(
        storage=types.SimpleNamespace(
            backend=backend,
            path=str(db_path or tmp_path / "cliper.db"),
            quota_kb=5000.0,
            pressure_warning_percent=90.0,
        ),
        maintenance=types.SimpleNamespace(
            decision_log_cap=50,
            event_log_cap=200,
            decision_log_ttl_days=1.0,
            cold_storage_after_days=30.0,
        ),
        retrieval=types.SimpleNamespace(active_cluster="main"),
        privacy=types.SimpleNamespace(pii_filter_enabled=True, encryption_at_rest=False),
    )


class TestBackends:
    @pytest.mark.parametrize("make", ["memory", "sqlite"])
    def test_ordered_upsert_and_replace(self, tmp_path, make):
        backend = InMemoryBackend() if make == "memory" else SQLiteBackend(tmp_path / "b.db")
        backend.upsert("c", "a", "1")
        backend.upsert("c", "b", "2")
        backend.upsert("c", "z", "0", front=True)
        backend.upsert("c", "a", "1b")
        assert backend.load("c") == [("z", "0"), ("a", "1b"), ("b", "2")]

        backend.replace("c", [("x", "9")])
        assert backend.load("c") == [("x", "9")]
        assert backend.delete("c", "x") is True
        assert backend.delete("c", "x") is False
        backend.close()

    def test_sqlite_persists_across_connections(self, tmp_path):
        path = tmp_path / "persist.db"
        first = SQLiteBackend(path)
        first.upsert("memories", "m1", "{}")
        first.close()

        second = SQLiteBackend(path)
        assert second.load("memories") == [("m1", "{}")]
        second.close()

    def test_usage_bytes(self):
        backend = InMemoryBackend()
        backend.upsert("c", "ab", "cde")
        assert backend.usage_bytes() == 5


class TestMemories:
    def test_add_memory_defaults(self):
        store = _store()
        mem = store.add_memory("Dana prefers morning meetings")
        assert mem.confidence_history == [0.9]
        assert abs(mem.strength - 0.72) < 1e-9
        assert mem.cluster == MemoryCluster.MAIN
        assert store.get_memories()[0].id == mem.id

    def test_newest_first(self):
        store = _store()
        first = store.add_memory("first")
        second = store.add_memory("second")
        assert [m.id for m in store.get_memories()] == [second.id, first.id]

    def test_memory_joins_active_cluster(self):
        store = _store()
        store.update_settings(active_cluster=MemoryCluster.EXPERIMENTAL)
        assert store.add_memory("trial").cluster == MemoryCluster.EXPERIMENTAL

    def test_update_records_confidence_history(self):
        store = _store()
        mem = store.add_memory("x", confidence=0.5)
        updated = store.update_memory(mem.id, {"confidence": 0.8})
        assert updated.confidence_history == [0.5, 0.8]
        assert updated.strength > mem.strength

    def test_update_ignores_immutable_fields(self):
        store = _store()
        mem = store.add_memory("x")
        updated = store.update_memory(mem.id, {"id": "other", "created_at": 1.0, "content": "y"})
        assert updated.id == mem.id
        assert updated.created_at == mem.created_at
        assert updated.content == "y"

    def test_update_ignores_access_count_decrease(self):
        store = _store()
        mem = store.add_memory("x")
        store.track_memory_access([mem.id])
        updated = store.update_memory(mem.id, {"access_count": 0})
        assert updated.access_count == 2

    def test_locked_memory_refuses_content_change(self):
        store = _store()
        mem = store.add_memory("original")
        store.set_memory_locked(mem.id, True)
        with pytest.raises(LockedMemoryError) as excinfo:
            store.update_memory(mem.id, {"content": "changed"})
        assert excinfo.value.fields == ["content"]
        assert store.get_memory(mem.id).content == "original"

        forced = store.update_memory(mem.id, {"content": "changed"}, force=True)
        assert forced.content == "changed"

    def test_locked_memory_allows_toggles(self):
        store = _store()
        mem = store.add_memory("x")
        store.set_memory_locked(mem.id, True)
        assert store.set_memory_pinned(mem.id, True).is_pinned is True

    def test_contradictory_requires_reference(self):
        store = _store()
        mem = store.add_memory("x")
        with pytest.raises(ValueError):
            store.update_memory(mem.id, {"status": MemoryStatus.CONTRADICTORY})

        other = store.add_memory("y")
        flagged = store.flag_contradiction(mem.id, other.id, "dates disagree")
        assert flagged.status == MemoryStatus.CONTRADICTORY
        assert flagged.metadata["contradicts_id"] == other.id

    def test_correction_weakens_strength(self):
        store = _store()
        mem = store.add_memory("x")
        updated = store.update_memory(mem.id, {"justification": "User correction"})
        assert updated.strength < mem.strength
        assert store.get_memory_events()[0].reason == "update"

    def test_missing_memory_raises(self):
        with pytest.raises(RecordNotFoundError):
            _store().update_memory("missing", {"content": "x"})

    def test_folder_lookup_is_prefix_and_case_insensitive(self):
        store = _store()
        store.add_memory("a", metadata={"folder": "Work/Projects/atlas"})
        store.add_memory("b", metadata={"folder": "self/preferences"})
        assert [m.content for m in store.get_memories_in_folder("work/projects")] == ["a"]
        assert store.get_memories_in_folder("") == []

    def test_access_tracking_and_ignored(self):
        clock = _Clock()
        store = _store(now_fn=clock)
        mem = store.add_memory("x")
        clock.advance(60)
        assert store.track_memory_access([mem.id, "unknown"]) == 1
        accessed = store.get_memory(mem.id)
        assert accessed.access_count == 2
        assert accessed.last_accessed_at == clock.now
        assert abs(accessed.strength - (mem.strength + 0.05)) < 1e-9

        store.register_memory_ignored([mem.id], "ranked_out")
        assert abs(store.get_memory(mem.id).strength - (accessed.strength - 0.01)) < 1e-9
        reasons = [event.reason for event in store.get_memory_events()]
        assert reasons[:2] == ["ranked_out", "access:retrieval"]

    def test_decay_memory_strength(self):
        clock = _Clock()
        store = _store(now_fn=clock)
        mem = store.add_memory("x")
        clock.advance(20 * 86400)
        assert store.decay_memory_strength() == 1
        assert store.get_memory(mem.id).strength < mem.strength

    def test_corrupt_collection_reads_as_empty(self):
        backend = InMemoryBackend()
        backend.upsert(MEMORIES, "bad", "{not json")
        store = RecordStore(backend)
        assert store.get_memories() == []


class TestQueue:
    def test_next_item_order_and_retry_policy(self):
        store = _store()
        first = store.add_to_queue("one")
        second = store.add_to_queue("two")
        assert store.next_queue_item().id == first.id

        store.update_queue_item(first.id, status=QueueItemStatus.FAILED, retry_count=1)
        assert store.next_queue_item().id == first.id

        store.update_queue_item(first.id, retry_count=3)
        assert store.next_queue_item(max_retries=3).id == second.id
        assert [i.id for i in store.abandoned_queue_items(3)] == [first.id]

    def test_abandoned_item_never_repicked(self):
        store = _store()
        item = store.add_to_queue("one")
        store.update_queue_item(item.id, status=QueueItemStatus.FAILED, retry_count=1, abandoned_at=5.0)
        assert store.next_queue_item(max_retries=10) is None

    def test_has_queued_ignores_failed(self):
        store = _store()
        item = store.add_to_queue("m", QueueItemType.MAINTENANCE)
        assert store.has_queued(QueueItemType.MAINTENANCE) is True
        store.update_queue_item(item.id, status=QueueItemStatus.FAILED)
        assert store.has_queued(QueueItemType.MAINTENANCE) is False

    def test_update_unknown_item(self):
        assert _store().update_queue_item("nope", status=QueueItemStatus.FAILED) is None


class TestDecisionLogs:
    def test_newest_first_and_capped(self):
        store = _store(decision_log_cap=3)
        for i in range(5):
            store.save_decision_log(DecisionLog(query=f"q{i}"))
        assert [log.query for log in store.get_decision_logs()] == ["q4", "q3", "q2"]

    def test_purge_by_ttl(self):
        clock = _Clock()
        store = _store(now_fn=clock)
        store.save_decision_log(DecisionLog(query="old", timestamp=clock.now - 2 * 86400))
        store.save_decision_log(DecisionLog(query="new", timestamp=clock.now))
        assert store.purge_old_decision_logs(1.0) == 1
        assert [log.query for log in store.get_decision_logs()] == ["new"]


class TestPeopleAndOthers:
    def test_update_person_creates_then_appends(self):
        store = _store()
        created = store.update_person("Maya", "likes climbing", "Friend")
        assert created.identity_confidence == 0.55
        again = store.update_person("maya", "moved to Lisbon")
        assert again.id == created.id
        assert [f.content for f in again.facts] == ["likes climbing", "moved to Lisbon"]
        assert again.identity_confidence > created.identity_confidence

    def test_merge_people_dedups_facts(self):
        store = _store()
        a = store.update_person("Sam", "plays chess")
        b = store.update_person("Samuel", "Plays chess")
        store.add_fact_to_person(b.id, "lives in Oslo")
        merged = store.merge_people(a.id, b.id)
        assert len(merged.facts) == 2
        assert store.get_person(a.id) is None

    def test_identity_bounds(self):
        store = _store()
        person = store.update_person("Lee", "fact")
        for _ in range(10):
            person = store.weaken_identity(person.id, sharp=True)
        assert person.identity_confidence == 0.05

    def test_split_identity_dampens_source_and_adds_person(self):
        store = _store()
        sam = store.update_person("Sam", "plays chess")
        other = store.split_identity(sam.id, "Sam Okafor", "works at the bakery", "different Sam")

        assert other.id != sam.id
        assert other.identity_confidence == 0.45
        assert other.consent_given is True
        assert [f.content for f in other.facts] == ["works at the bakery"]
        assert store.get_person(sam.id).identity_confidence == pytest.approx(0.43)
        assert len(store.get_people()) == 2

        newest, dampened = store.get_identity_events()[:2]
        assert (newest.person_id, newest.delta, newest.reason) == (other.id, 0.45, "different Sam")
        assert dampened.person_id == sam.id
        assert dampened.delta == pytest.approx(-0.12)
        assert dampened.reason == "different Sam (source dampened)"

    def test_split_identity_without_source_still_creates_person(self):
        store = _store()
        person = store.split_identity("gone", "Robin", "met at the conference")
        assert store.get_people() == [person]
        assert len(store.get_identity_events()) == 1

    def test_pending_person_decision_lifecycle(self):
        store = _store()
        assert store.get_pending_person_decision() is None
        sam = store.update_person("Sam", "plays chess")
        store.save_pending_person_decision(
            PendingPersonDecision(name="Sam", fact="moved to Porto", matched_person_id=sam.id)
        )
        pending = store.get_pending_person_decision()
        assert pending.matched_person_id == sam.id
        assert pending.fact == "moved to Porto"
        assert store.get_pending_project_decision() is None
        store.clear_pending_person_decision()
        assert store.get_pending_person_decision() is None

    def test_reminder_upsert_reschedules_same_task(self):
        store = _store()
        first = store.upsert_reminder("Call Mom", 100.0)
        store.complete_reminder(first.id)
        second = store.upsert_reminder("  call   mom ", 200.0)
        assert second.id == first.id
        assert second.due_time == 200.0
        assert second.completed is False
        assert len(store.get_reminders()) == 1

    def test_place_status(self):
        store = _store()
        place = store.add_place()
        assert place.name == "Unnamed Place"
        assert store.set_place_status(place.id, PlaceStatus.VISITED).status == PlaceStatus.VISITED
        with pytest.raises(RecordNotFoundError):
            store.set_place_status("missing", PlaceStatus.VISITED)

    def test_settings_default_and_update(self):
        store = _store()
        assert store.get_settings().pii_filter_enabled is True
        store.update_settings(pii_filter_enabled=False)
        assert store.get_settings().pii_filter_enabled is False


class TestObservers:
    def test_events_are_delivered(self):
        store = _store()
        events = []
        store.subscribe(events.append)
        mem = store.add_memory("x")
        store.delete_memory(mem.id)
        assert StoreEvent(MEMORIES, "upsert", mem.id) in events
        assert StoreEvent(MEMORIES, "delete", mem.id) in events

        store.unsubscribe(events.append)
        store.add_memory("y")
        assert len(events) == 2

    def test_failing_observer_does_not_break_writes(self):
        store = _store()

        def broken(event):
            raise RuntimeError("boom")

        store.subscribe(broken)
        assert store.add_memory("x").content == "x"


class TestBootCheck:
    def test_clean_boot(self, tmp_path):
        store = RecordStore.open(_config(tmp_path))
        assert store.is_durable is True
        assert store.run_system_boot_check() == []
        store.close()

    def test_unusable_path_falls_back(self, tmp_path):
        blocker = tmp_path / "blocker"
        blocker.write_text("not a directory")
        store = RecordStore.open(_config(tmp_path, db_path=blocker / "cliper.db"))
        assert store.fallback_active is True
        issues = store.run_system_boot_check()
        assert "Volatile storage subsystem is unreachable." in issues
        assert any("non-durable" in issue for issue in issues)

    def test_probe_failure_switches_to_fallback(self):
        store = RecordStore(_BrokenBackend())
        issues = store.run_system_boot_check()
        assert "Volatile storage subsystem is unreachable." in issues
        assert store.fallback_active is True
        assert store.is_durable is False
        assert store.add_memory("still works").content == "still works"

    def test_reports_pressure_abandoned_and_encryption(self):
        store = _store(quota_kb=0.1)
        item = store.add_to_queue("x" * 400)
        store.update_queue_item(item.id, status=QueueItemStatus.FAILED, retry_count=3)
        store.update_settings(encryption_at_rest=True)
        issues = store.run_system_boot_check(max_retries=3)
        assert any(issue.startswith("Storage pressure") for issue in issues)
        assert any("abandoned" in issue for issue in issues)
        assert any("Encryption at rest" in issue for issue in issues)


class TestExportImport:
    def test_round_trip_replaces_state(self):
        source = _store()
        mem = source.add_memory("keep me")
        source.update_person("Ana", "likes tea")
        document = source.export_state()
        assert document["format"] == EXPORT_FORMAT

        target = _store()
        target.add_memory("will be replaced")
        counts = target.import_state(document)
        assert counts[MEMORIES] == 1
        assert [m.id for m in target.get_memories()] == [mem.id]
        assert target.find_person("ana") is not None

    @pytest.mark.parametrize(
        "document",
        [
            {"format": "other"},
            {"format": EXPORT_FORMAT, "version": 99, "collections": {}},
            {"format": EXPORT_FORMAT, "version": 1, "collections": []},
            {"format": EXPORT_FORMAT, "version": 1, "collections": {"memories": [{"content": "x"}]}},
        ],
    )
    def test_rejects_bad_documents(self, document):
        store = _store()
        existing = store.add_memory("untouched")
        with pytest.raises(ImportFormatError):
            store.import_state(document)
        assert [m.id for m in store.get_memories()] == [existing.id]

    def test_failed_write_keeps_existing_records(self):
        store = RecordStore(_FullDiskBackend(), now_fn=_Clock())
        mem = store.add_memory("keep me")
        person = store.update_person("Ana", "likes tea")
        document = store.export_state()

        assert store.import_state(document) is None
        assert [m.id for m in store.get_memories()] == [mem.id]
        assert [p.id for p in store.get_people()] == [person.id]

    def test_sqlite_import_is_one_transaction(self, tmp_path):
        store = RecordStore(SQLiteBackend(tmp_path / "import.db"), now_fn=_Clock())
        mem = store.add_memory("keep me")
        person = store.update_person("Ana", "likes tea")
        document = store.export_state()
        # duplicate primary key makes the insert fail halfway through
        document["collections"]["people"] = document["collections"]["people"] * 2

        assert store.import_state(document) is None
        assert [m.id for m in store.get_memories()] == [mem.id]
        assert [p.id for p in store.get_people()] == [person.id]
        store.close()

    def test_factory_reset(self):
        store = _store()
        store.add_memory("x")
        store.add_to_queue("y")
        store.factory_reset()
        assert store.get_memories() == []
        assert store.get_queue() == []
