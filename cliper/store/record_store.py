"""
Cliper Record Store
-------------------
Typed access to every persisted collection (memories, queue, decision
logs, people, reminders, places, transcripts, devices, settings, bias).

Contract:
- ``get``/``put`` read and replace a whole collection; ``put`` is a single
  backend transaction, so a collection is never partially written.
- ``upsert``/``remove`` address one record by id.
- Storage faults on write are logged and reported as ``False``; they never
  raise into the caller. Corrupt reads return the caller's default.
- Observers registered with ``subscribe`` receive a ``StoreEvent`` for every
  successful mutation.
"""

import json
import re
import time
import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, Type, TypeVar

from pydantic import BaseModel

from cliper.core.errors import (
    ImportFormatError,
    LockedMemoryError,
    RecordNotFoundError,
    StorageError,
)
from cliper.core.types import (
    ALL_COLLECTIONS,
    BIAS_STATE,
    DECISION_LOGS,
    IDENTITY_EVENTS,
    MAX_STRENGTH,
    MEMORIES,
    MEMORY_EVENTS,
    MIN_STRENGTH,
    PENDING_PERSON,
    PENDING_PROJECT,
    PEOPLE,
    PLACES,
    QUEUE,
    REMINDERS,
    SETTINGS,
    SMART_DEVICES,
    TRANSCRIPTION_LOGS,
    BiasState,
    DecisionLog,
    IdentityEvent,
    Memory,
    MemoryEvent,
    MemoryStatus,
    PendingPersonDecision,
    PendingProjectDecision,
    Person,
    PersonFact,
    Place,
    PlaceStatus,
    QueueItem,
    QueueItemStatus,
    QueueItemType,
    Reminder,
    RuntimeSettings,
    SmartDevice,
    StorageUsage,
    TranscriptionLog,
    clamp,
)
from cliper.store.backends import InMemoryBackend, SQLiteBackend

logger = logging.getLogger("Cliper.Store")

T = TypeVar("T", bound=BaseModel)

EXPORT_FORMAT = "cliper-export"
EXPORT_VERSION = 1

# Fields that never change after creation
IMMUTABLE_MEMORY_FIELDS = ("id", "cluster", "created_at")
# Fields a lock protects
LOCKED_MEMORY_FIELDS = ("content", "domain", "type", "entity", "speaker", "images")

CORRECTION_PATTERN = re.compile(r"correction|contradict|fix|revise|update", re.IGNORECASE)

STRENGTH_ACCESS_BOOST = 0.05
STRENGTH_IGNORED_PENALTY = 0.01
STRENGTH_CORRECTION_PENALTY = 0.04
STRENGTH_CONFIDENCE_BOOST = 0.02

IDENTITY_UPDATE_BOOST = 0.04
IDENTITY_FACT_BOOST = 0.05
IDENTITY_REINFORCE = 0.06
IDENTITY_WEAKEN = 0.08
IDENTITY_WEAKEN_SHARP = 0.25
IDENTITY_MERGE_BONUS = 0.1
IDENTITY_SPLIT_PENALTY = 0.12
IDENTITY_SPLIT_START = 0.45

COLLECTION_MODELS: Dict[str, Type[BaseModel]] = {
    MEMORIES: Memory,
    PEOPLE: Person,
    REMINDERS: Reminder,
    PLACES: Place,
    QUEUE: QueueItem,
    DECISION_LOGS: DecisionLog,
    TRANSCRIPTION_LOGS: TranscriptionLog,
    SMART_DEVICES: SmartDevice,
    SETTINGS: RuntimeSettings,
    BIAS_STATE: BiasState,
    PENDING_PROJECT: PendingProjectDecision,
    PENDING_PERSON: PendingPersonDecision,
    MEMORY_EVENTS: MemoryEvent,
    IDENTITY_EVENTS: IdentityEvent,
}


def _normalize_task(task: str) -> str:
    return re.sub(r"\s+", " ", task.strip().lower())


@dataclass(frozen=True)
class StoreEvent:
    collection: str
    action: str
    record_id: Optional[str] = None


StoreObserver = Callable[[StoreEvent], None]


class RecordStore:
    """Collection-oriented record store over a byte-level backend."""

    def __init__(
        self,
        backend,
        *,
        quota_kb: float = 5000.0,
        pressure_warning_percent: float = 90.0,
        decision_log_cap: int = 50,
        event_log_cap: int = 200,
        default_settings: Optional[RuntimeSettings] = None,
        now_fn: Callable[[], float] = time.time,
    ):
        self._backend = backend
        self._quota_kb = quota_kb
        self._pressure_warning_percent = pressure_warning_percent
        self._decision_log_cap = decision_log_cap
        self._event_log_cap = event_log_cap
        self._default_settings = default_settings or RuntimeSettings()
        self._now_fn = now_fn
        self._observers: List[StoreObserver] = []
        self._fallback_active = False
        self._boot_errors: List[str] = []

    @classmethod
    def open(cls, config, *, now_fn: Callable[[], float] = time.time) -> "RecordStore":
        """Open the configured backend, falling back to memory if it is unusable."""
        boot_errors: List[str] = []
        fallback = False
        if config.storage.backend == "memory":
            backend = InMemoryBackend()
        else:
            try:
                backend = SQLiteBackend(config.storage.path)
                backend.probe()
            except (StorageError, OSError) as e:
                logger.error("Durable storage unavailable (%s); using in-process fallback", e)
                backend = InMemoryBackend()
                fallback = True
                boot_errors.append("Volatile storage subsystem is unreachable.")

        store = cls(
            backend,
            quota_kb=config.storage.quota_kb,
            pressure_warning_percent=config.storage.pressure_warning_percent,
            decision_log_cap=config.maintenance.decision_log_cap,
            event_log_cap=config.maintenance.event_log_cap,
            default_settings=RuntimeSettings(
                active_cluster=config.retrieval.active_cluster,
                pii_filter_enabled=config.privacy.pii_filter_enabled,
                encryption_at_rest=config.privacy.encryption_at_rest,
                decision_log_ttl_days=config.maintenance.decision_log_ttl_days,
                cold_storage_after_days=config.maintenance.cold_storage_after_days,
            ),
            now_fn=now_fn,
        )
        store._fallback_active = fallback
        store._boot_errors = boot_errors
        return store

    # ──────────────────────────────────────────────────────────────
    # Observers
    # ──────────────────────────────────────────────────────────────

    def subscribe(self, observer: StoreObserver) -> None:
        if observer not in self._observers:
            self._observers.append(observer)

    def unsubscribe(self, observer: StoreObserver) -> None:
        if observer in self._observers:
            self._observers.remove(observer)

    def notify(self, event: StoreEvent) -> None:
        for observer in list(self._observers):
            try:
                observer(event)
            except Exception as e:
                logger.warning("Store observer %r failed on %s: %s", observer, event, e)

    # ──────────────────────────────────────────────────────────────
    # Generic collection access
    # ──────────────────────────────────────────────────────────────

    @property
    def is_durable(self) -> bool:
        return bool(self._backend.durable)

    @property
    def fallback_active(self) -> bool:
        return self._fallback_active

    def get(self, collection: str, model: Type[T], default: Optional[List[T]] = None) -> List[T]:
        fallback = list(default) if default is not None else []
        try:
            rows = self._backend.load(collection)
        except StorageError as e:
            logger.error("Failed to read collection %s: %s", collection, e)
            return fallback
        try:
            return [model.model_validate_json(body) for _, body in rows]
        except ValueError as e:
            logger.error("Corrupt data in collection %s, using default: %s", collection, e)
            return fallback

    def get_one(self, collection: str, model: Type[T], record_id: str) -> Optional[T]:
        for record in self.get(collection, model):
            if getattr(record, "id", None) == record_id:
                return record
        return None

    def put(self, collection: str, records: Sequence[BaseModel]) -> bool:
        try:
            items = [(record.id, record.model_dump_json()) for record in records]
        except (TypeError, ValueError) as e:
            logger.error("Failed to serialize collection %s: %s", collection, e)
            return False
        try:
            self._backend.replace(collection, items)
        except StorageError as e:
            logger.error("Failed to write collection %s: %s", collection, e)
            return False
        self.notify(StoreEvent(collection, "replace"))
        return True

    def upsert(self, collection: str, record: BaseModel, *, front: bool = False) -> bool:
        try:
            body = record.model_dump_json()
        except (TypeError, ValueError) as e:
            logger.error("Failed to serialize %s record: %s", collection, e)
            return False
        try:
            self._backend.upsert(collection, record.id, body, front=front)
        except StorageError as e:
            logger.error("Failed to write %s/%s: %s", collection, record.id, e)
            return False
        self.notify(StoreEvent(collection, "upsert", record.id))
        return True

    def remove(self, collection: str, record_id: str) -> bool:
        try:
            removed = self._backend.delete(collection, record_id)
        except StorageError as e:
            logger.error("Failed to delete %s/%s: %s", collection, record_id, e)
            return False
        if removed:
            self.notify(StoreEvent(collection, "delete", record_id))
        return removed

    def _append_capped(self, collection: str, record: BaseModel, cap: int) -> None:
        """Prepend a record and trim the collection to its newest ``cap`` entries."""
        self.upsert(collection, record, front=True)
        model = type(record)
        records = self.get(collection, model)
        if len(records) > cap:
            self.put(collection, records[:cap])

    # ──────────────────────────────────────────────────────────────
    # Memories
    # ──────────────────────────────────────────────────────────────

    def get_memories(self) -> List[Memory]:
        return self.get(MEMORIES, Memory)

    def get_memory(self, memory_id: str) -> Optional[Memory]:
        return self.get_one(MEMORIES, Memory, memory_id)

    def _require_memory(self, memory_id: str) -> Memory:
        memory = self.get_memory(memory_id)
        if memory is None:
            raise RecordNotFoundError(MEMORIES, memory_id)
        return memory

    def add_memory(self, content: str, **fields: Any) -> Memory:
        """Create a memory with engine defaults and store it at the head of the collection."""
        now = self._now_fn()
        salience = clamp(float(fields.pop("salience", 0.8)), 0.0, 1.0)
        confidence = clamp(float(fields.pop("confidence", 0.9)), 0.0, 1.0)
        data: Dict[str, Any] = {
            "content": content,
            "salience": salience,
            "confidence": confidence,
            "confidence_history": [confidence],
            "strength": clamp(0.6 + salience * 0.15, MIN_STRENGTH, MAX_STRENGTH),
            "cluster": self.get_settings().active_cluster,
            "created_at": now,
            "updated_at": now,
            "last_accessed_at": now,
            "access_count": 1,
        }
        data.update(fields)
        memory = Memory.model_validate(data)
        self.upsert(MEMORIES, memory, front=True)
        logger.debug("Stored memory %s (%s/%s)", memory.id, memory.domain.value, memory.type.value)
        return memory

    def update_memory(self, memory_id: str, updates: Dict[str, Any], *, force: bool = False) -> Memory:
        """Merge ``updates`` into a stored memory.

        Locked memories refuse changes to their content fields unless
        ``force`` is set. Creation-time fields and a shrinking access count
        are ignored with a warning.
        """
        memory = self._require_memory(memory_id)
        changes = dict(updates)

        for key in IMMUTABLE_MEMORY_FIELDS:
            if key in changes:
                if changes[key] != getattr(memory, key):
                    logger.warning("Ignoring change to immutable field %s on memory %s", key, memory_id)
                changes.pop(key)
        if "access_count" in changes and int(changes["access_count"]) < memory.access_count:
            logger.warning("Ignoring access_count decrease on memory %s", memory_id)
            changes.pop("access_count")

        if memory.is_locked and not force:
            blocked = [
                key for key in LOCKED_MEMORY_FIELDS
                if key in changes and changes[key] != getattr(memory, key)
            ]
            if blocked:
                raise LockedMemoryError(memory_id, blocked)

        validation_reason = str(changes.pop("validation_reason", "") or "")
        data = memory.model_dump()
        data.update(changes)
        data["updated_at"] = self._now_fn()

        previous_confidence = memory.confidence
        if "confidence" in changes:
            new_confidence = clamp(float(changes["confidence"]), 0.0, 1.0)
            if new_confidence != previous_confidence:
                data["confidence_history"] = list(memory.confidence_history) + [new_confidence]
            data["confidence"] = new_confidence

        updated = Memory.model_validate(data)
        if updated.status == MemoryStatus.CONTRADICTORY and not updated.metadata.get("contradicts_id"):
            raise ValueError("contradictory status requires metadata.contradicts_id")

        correction_text = f"{changes.get('justification', '')} {validation_reason}"
        delta = 0.0
        if CORRECTION_PATTERN.search(correction_text) or updated.confidence < previous_confidence - 0.05:
            delta = -STRENGTH_CORRECTION_PENALTY
        elif updated.confidence > previous_confidence + 0.05:
            delta = STRENGTH_CONFIDENCE_BOOST
        if delta:
            updated = self._apply_strength(updated, delta, "update")

        self.upsert(MEMORIES, updated)
        return updated

    def approve_memory(self, memory_id: str) -> Memory:
        return self.update_memory(memory_id, {"is_pending_approval": False})

    def set_memory_pinned(self, memory_id: str, pinned: bool) -> Memory:
        return self.update_memory(memory_id, {"is_pinned": bool(pinned)})

    def set_memory_locked(self, memory_id: str, locked: bool) -> Memory:
        return self.update_memory(memory_id, {"is_locked": bool(locked)}, force=True)

    def flag_contradiction(self, memory_id: str, conflicting_id: str, reasoning: str) -> Memory:
        memory = self._require_memory(memory_id)
        metadata = dict(memory.metadata)
        metadata["contradicts_id"] = conflicting_id
        return self.update_memory(
            memory_id,
            {
                "status": MemoryStatus.CONTRADICTORY,
                "justification": f"Contradiction detected: {reasoning}",
                "metadata": metadata,
            },
            force=True,
        )

    def delete_memory(self, memory_id: str) -> bool:
        return self.remove(MEMORIES, memory_id)

    def get_memories_in_folder(self, folder_prefix: str) -> List[Memory]:
        prefix = folder_prefix.strip().lower()
        if not prefix:
            return []
        return [m for m in self.get_memories() if m.folder.lower().startswith(prefix)]

    def track_memory_access(self, memory_ids: Iterable[str], reason: str = "retrieval") -> int:
        """Increment access counters and reinforce strength for each id."""
        wanted = set(memory_ids)
        if not wanted:
            return 0
        now = self._now_fn()
        touched = 0
        for memory in self.get_memories():
            if memory.id not in wanted:
                continue
            memory = memory.model_copy(
                update={"access_count": memory.access_count + 1, "last_accessed_at": now}
            )
            memory = self._apply_strength(memory, STRENGTH_ACCESS_BOOST, f"access:{reason}")
            self.upsert(MEMORIES, memory)
            touched += 1
        return touched

    def register_memory_ignored(self, memory_ids: Iterable[str], reason: str = "ignored") -> int:
        wanted = set(memory_ids)
        if not wanted:
            return 0
        touched = 0
        for memory in self.get_memories():
            if memory.id not in wanted:
                continue
            memory = self._apply_strength(memory, -STRENGTH_IGNORED_PENALTY, reason)
            self.upsert(MEMORIES, memory)
            touched += 1
        return touched

    def _apply_strength(self, memory: Memory, delta: float, reason: str) -> Memory:
        strength = clamp(memory.strength + delta, MIN_STRENGTH, MAX_STRENGTH)
        applied = strength - memory.strength
        if applied == 0:
            return memory
        self._append_capped(
            MEMORY_EVENTS,
            MemoryEvent(
                memory_id=memory.id,
                delta=round(applied, 4),
                strength=strength,
                reason=reason,
                timestamp=self._now_fn(),
            ),
            self._event_log_cap,
        )
        return memory.model_copy(update={"strength": strength})

    def decay_memory_strength(self) -> int:
        """Weaken memories by days since last access; steeper after two weeks."""
        now = self._now_fn()
        changed = 0
        for memory in self.get_memories():
            days = max(0.0, (now - memory.last_accessed_at) / 86400.0)
            decay = days * 0.002
            if days > 14:
                decay += (days - 14) * 0.003
            if decay < 0.001:
                continue
            target = clamp(memory.strength - decay, MIN_STRENGTH, MAX_STRENGTH)
            if target == memory.strength:
                continue
            updated = self._apply_strength(memory, target - memory.strength, "decay")
            self.upsert(MEMORIES, updated)
            changed += 1
        return changed

    def get_memory_events(self) -> List[MemoryEvent]:
        return self.get(MEMORY_EVENTS, MemoryEvent)

    # ──────────────────────────────────────────────────────────────
    # Queue
    # ──────────────────────────────────────────────────────────────

    def get_queue(self) -> List[QueueItem]:
        return self.get(QUEUE, QueueItem)

    def add_to_queue(
        self,
        content: str,
        item_type: QueueItemType = QueueItemType.TEXT,
        *,
        image_base64: Optional[str] = None,
    ) -> QueueItem:
        item = QueueItem(
            content=content,
            type=QueueItemType(item_type),
            timestamp=self._now_fn(),
            image_base64=image_base64,
        )
        self.upsert(QUEUE, item)
        logger.debug("Enqueued %s item %s", item.type.value, item.id)
        return item

    def next_queue_item(self, max_retries: int = 3) -> Optional[QueueItem]:
        """First item that is pending, or failed with retries left, in queue order."""
        for item in self.get_queue():
            if item.status == QueueItemStatus.PENDING:
                return item
            if (
                item.status == QueueItemStatus.FAILED
                and item.retry_count < max_retries
                and item.abandoned_at is None
            ):
                return item
        return None

    def update_queue_item(self, item_id: str, **changes: Any) -> Optional[QueueItem]:
        item = self.get_one(QUEUE, QueueItem, item_id)
        if item is None:
            return None
        data = item.model_dump()
        data.update(changes)
        updated = QueueItem.model_validate(data)
        self.upsert(QUEUE, updated)
        return updated

    def remove_from_queue(self, item_id: str) -> bool:
        return self.remove(QUEUE, item_id)

    def abandoned_queue_items(self, max_retries: int = 3) -> List[QueueItem]:
        return [
            item for item in self.get_queue()
            if item.abandoned_at is not None
            or (item.status == QueueItemStatus.FAILED and item.retry_count >= max_retries)
        ]

    def has_queued(self, item_type: QueueItemType) -> bool:
        return any(
            item.type == item_type and item.status != QueueItemStatus.FAILED
            for item in self.get_queue()
        )

    # ──────────────────────────────────────────────────────────────
    # Decision logs
    # ──────────────────────────────────────────────────────────────

    def get_decision_logs(self) -> List[DecisionLog]:
        return self.get(DECISION_LOGS, DecisionLog)

    def save_decision_log(self, log: DecisionLog) -> None:
        self._append_capped(DECISION_LOGS, log, self._decision_log_cap)

    def purge_old_decision_logs(self, ttl_days: Optional[float] = None) -> int:
        if ttl_days is None:
            ttl_days = self.get_settings().decision_log_ttl_days
        cutoff = self._now_fn() - ttl_days * 86400.0
        logs = self.get_decision_logs()
        kept = [log for log in logs if log.timestamp >= cutoff]
        removed = len(logs) - len(kept)
        if removed:
            self.put(DECISION_LOGS, kept)
        return removed

    # ──────────────────────────────────────────────────────────────
    # People
    # ──────────────────────────────────────────────────────────────

    def get_people(self) -> List[Person]:
        return self.get(PEOPLE, Person)

    def get_person(self, person_id: str) -> Optional[Person]:
        return self.get_one(PEOPLE, Person, person_id)

    def find_person(self, name: str) -> Optional[Person]:
        wanted = name.strip().lower()
        for person in self.get_people():
            if person.name.strip().lower() == wanted:
                return person
        return None

    def _require_person(self, person_id: str) -> Person:
        person = self.get_person(person_id)
        if person is None:
            raise RecordNotFoundError(PEOPLE, person_id)
        return person

    def update_person(self, name: str, fact: str, relation: str = "Contact") -> Person:
        """Attach a fact to the named person, creating the person on first mention."""
        now = self._now_fn()
        person = self.find_person(name)
        if person is not None:
            facts = list(person.facts) + [PersonFact(content=fact, timestamp=now)]
            person = person.model_copy(update={"facts": facts, "last_updated": now})
            person = self._apply_identity(person, IDENTITY_UPDATE_BOOST, "mention")
            self.upsert(PEOPLE, person)
            return person

        person = Person(
            name=name.strip(),
            relation=relation,
            facts=[PersonFact(content=fact, timestamp=now)],
            last_updated=now,
            identity_confidence=0.55,
            last_identity_update=now,
        )
        self.upsert(PEOPLE, person, front=True)
        return person

    def add_fact_to_person(self, person_id: str, fact: str) -> Person:
        person = self._require_person(person_id)
        now = self._now_fn()
        facts = list(person.facts) + [PersonFact(content=fact, timestamp=now)]
        person = person.model_copy(update={"facts": facts, "last_updated": now})
        person = self._apply_identity(person, IDENTITY_FACT_BOOST, "fact_added")
        self.upsert(PEOPLE, person)
        return person

    def remove_fact_from_person(self, person_id: str, fact_id: str) -> Person:
        person = self._require_person(person_id)
        facts = [fact for fact in person.facts if fact.id != fact_id]
        person = person.model_copy(update={"facts": facts, "last_updated": self._now_fn()})
        self.upsert(PEOPLE, person)
        return person

    def set_person_consent(self, person_id: str, consent: bool) -> Person:
        person = self._require_person(person_id).model_copy(update={"consent_given": bool(consent)})
        self.upsert(PEOPLE, person)
        return person

    def reinforce_identity(self, person_id: str, reason: str = "reinforced") -> Person:
        person = self._apply_identity(self._require_person(person_id), IDENTITY_REINFORCE, reason)
        self.upsert(PEOPLE, person)
        return person

    def weaken_identity(self, person_id: str, reason: str = "weakened", *, sharp: bool = False) -> Person:
        delta = -(IDENTITY_WEAKEN_SHARP if sharp else IDENTITY_WEAKEN)
        person = self._apply_identity(self._require_person(person_id), delta, reason)
        self.upsert(PEOPLE, person)
        return person

    def merge_people(self, source_id: str, target_id: str) -> Person:
        """Fold ``source`` into ``target``; facts are de-duplicated by content."""
        source = self._require_person(source_id)
        target = self._require_person(target_id)
        seen = {fact.content.strip().lower() for fact in target.facts}
        facts = list(target.facts)
        for fact in source.facts:
            key = fact.content.strip().lower()
            if key not in seen:
                seen.add(key)
                facts.append(fact)
        merged_confidence = (source.identity_confidence + target.identity_confidence) / 2
        now = self._now_fn()
        merged = target.model_copy(
            update={
                "facts": facts,
                "consent_given": target.consent_given or source.consent_given,
                "last_updated": now,
                "identity_confidence": merged_confidence,
            }
        )
        merged = self._apply_identity(merged, IDENTITY_MERGE_BONUS, f"merged:{source.id}")
        self.upsert(PEOPLE, merged)
        self.remove(PEOPLE, source.id)
        return merged

    def split_identity(self, source_id: str, new_name: str, fact: str, reason: str = "split") -> Person:
        """
        Treat ``new_name`` as a different person from ``source_id``.

        The source loses some identity confidence (when it still exists) and
        a new person starts at a tentative confidence holding ``fact``.
        """
        source = self.get_person(source_id)
        if source is not None:
            dampened = self._apply_identity(source, -IDENTITY_SPLIT_PENALTY, f"{reason} (source dampened)")
            self.upsert(PEOPLE, dampened)

        now = self._now_fn()
        person = Person(
            name=new_name.strip(),
            facts=[PersonFact(content=fact, timestamp=now)],
            consent_given=True,
            last_updated=now,
            identity_confidence=IDENTITY_SPLIT_START,
            last_identity_update=now,
        )
        self.upsert(PEOPLE, person)
        self._append_capped(
            IDENTITY_EVENTS,
            IdentityEvent(
                person_id=person.id,
                delta=person.identity_confidence,
                identity_confidence=person.identity_confidence,
                reason=reason,
                timestamp=now,
            ),
            self._event_log_cap,
        )
        logger.info("Split %s from %s as new person %s", new_name, source_id, person.id)
        return person

    def delete_person(self, person_id: str) -> bool:
        return self.remove(PEOPLE, person_id)

    def _apply_identity(self, person: Person, delta: float, reason: str) -> Person:
        now = self._now_fn()
        value = Person.model_validate(
            {**person.model_dump(), "identity_confidence": person.identity_confidence + delta}
        ).identity_confidence
        applied = value - person.identity_confidence
        if applied:
            self._append_capped(
                IDENTITY_EVENTS,
                IdentityEvent(
                    person_id=person.id,
                    delta=round(applied, 4),
                    identity_confidence=value,
                    reason=reason,
                    timestamp=now,
                ),
                self._event_log_cap,
            )
        return person.model_copy(update={"identity_confidence": value, "last_identity_update": now})

    def decay_identity_confidence(self) -> int:
        now = self._now_fn()
        changed = 0
        for person in self.get_people():
            days = max(0.0, (now - person.last_identity_update) / 86400.0)
            decay = days * 0.002
            if days > 30:
                decay += (days - 30) * 0.004
            if decay < 0.001:
                continue
            updated = self._apply_identity(person, -decay, "decay")
            if updated.identity_confidence != person.identity_confidence:
                self.upsert(PEOPLE, updated)
                changed += 1
        return changed

    def get_identity_events(self) -> List[IdentityEvent]:
        return self.get(IDENTITY_EVENTS, IdentityEvent)

    # ──────────────────────────────────────────────────────────────
    # Reminders, places, transcripts, devices
    # ──────────────────────────────────────────────────────────────

    def get_reminders(self) -> List[Reminder]:
        return self.get(REMINDERS, Reminder)

    def upsert_reminder(self, task: str, due_time: float, *, memory_id: Optional[str] = None) -> Reminder:
        """Reschedule the reminder with the same task, or create a new one."""
        key = _normalize_task(task)
        for reminder in self.get_reminders():
            if _normalize_task(reminder.task) == key:
                updated = reminder.model_copy(
                    update={
                        "due_time": due_time,
                        "completed": False,
                        "memory_id": memory_id or reminder.memory_id,
                    }
                )
                self.upsert(REMINDERS, updated)
                return updated
        reminder = Reminder(
            task=task.strip(),
            due_time=due_time,
            memory_id=memory_id,
            created_at=self._now_fn(),
        )
        self.upsert(REMINDERS, reminder, front=True)
        return reminder

    def complete_reminder(self, reminder_id: str) -> Reminder:
        reminder = self.get_one(REMINDERS, Reminder, reminder_id)
        if reminder is None:
            raise RecordNotFoundError(REMINDERS, reminder_id)
        reminder = reminder.model_copy(update={"completed": True})
        self.upsert(REMINDERS, reminder)
        return reminder

    def reschedule_reminder(self, reminder_id: str, due_time: float) -> Reminder:
        reminder = self.get_one(REMINDERS, Reminder, reminder_id)
        if reminder is None:
            raise RecordNotFoundError(REMINDERS, reminder_id)
        reminder = reminder.model_copy(update={"due_time": due_time, "completed": False})
        self.upsert(REMINDERS, reminder)
        return reminder

    def delete_reminder(self, reminder_id: str) -> bool:
        return self.remove(REMINDERS, reminder_id)

    def get_places(self) -> List[Place]:
        return self.get(PLACES, Place)

    def add_place(self, name: str = "", category: str = "", notes: str = "") -> Place:
        place = Place(
            name=name.strip() or "Unnamed Place",
            category=category.strip() or "General",
            notes=notes,
            created_at=self._now_fn(),
        )
        self.upsert(PLACES, place, front=True)
        return place

    def set_place_status(self, place_id: str, status: PlaceStatus) -> Place:
        place = self.get_one(PLACES, Place, place_id)
        if place is None:
            raise RecordNotFoundError(PLACES, place_id)
        place = place.model_copy(update={"status": PlaceStatus(status)})
        self.upsert(PLACES, place)
        return place

    def delete_place(self, place_id: str) -> bool:
        return self.remove(PLACES, place_id)

    def get_transcription_logs(self) -> List[TranscriptionLog]:
        return self.get(TRANSCRIPTION_LOGS, TranscriptionLog)

    def save_transcription_log(self, log: TranscriptionLog) -> None:
        self.upsert(TRANSCRIPTION_LOGS, log, front=True)

    def delete_transcription_log(self, log_id: str) -> bool:
        return self.remove(TRANSCRIPTION_LOGS, log_id)

    def get_smart_devices(self) -> List[SmartDevice]:
        return self.get(SMART_DEVICES, SmartDevice)

    def add_smart_device(self, name: str, kind: str = "light", room: str = "Living Room") -> SmartDevice:
        device = SmartDevice(name=name, kind=kind, room=room)
        self.upsert(SMART_DEVICES, device)
        return device

    def update_device_state(self, device_id: str, state: Dict[str, Any]) -> SmartDevice:
        device = self.get_one(SMART_DEVICES, SmartDevice, device_id)
        if device is None:
            raise RecordNotFoundError(SMART_DEVICES, device_id)
        device = device.model_copy(update={"state": {**device.state, **state}})
        self.upsert(SMART_DEVICES, device)
        return device

    def delete_smart_device(self, device_id: str) -> bool:
        return self.remove(SMART_DEVICES, device_id)

    # ──────────────────────────────────────────────────────────────
    # Settings, pending clarifications, bias snapshot
    # ──────────────────────────────────────────────────────────────

    def get_settings(self) -> RuntimeSettings:
        stored = self.get(SETTINGS, RuntimeSettings)
        if stored:
            return stored[0]
        return self._default_settings.model_copy()

    def save_settings(self, settings: RuntimeSettings) -> bool:
        return self.put(SETTINGS, [settings])

    def update_settings(self, **changes: Any) -> RuntimeSettings:
        settings = RuntimeSettings.model_validate({**self.get_settings().model_dump(), **changes})
        self.save_settings(settings)
        return settings

    def get_pending_project_decision(self) -> Optional[PendingProjectDecision]:
        pending = self.get(PENDING_PROJECT, PendingProjectDecision)
        return pending[0] if pending else None

    def save_pending_project_decision(self, pending: PendingProjectDecision) -> bool:
        return self.put(PENDING_PROJECT, [pending])

    def clear_pending_project_decision(self) -> bool:
        return self.put(PENDING_PROJECT, [])

    def get_pending_person_decision(self) -> Optional[PendingPersonDecision]:
        pending = self.get(PENDING_PERSON, PendingPersonDecision)
        return pending[0] if pending else None

    def save_pending_person_decision(self, pending: PendingPersonDecision) -> bool:
        return self.put(PENDING_PERSON, [pending])

    def clear_pending_person_decision(self) -> bool:
        return self.put(PENDING_PERSON, [])

    def get_bias_snapshot(self) -> Optional[BiasState]:
        snapshots = self.get(BIAS_STATE, BiasState)
        return snapshots[0] if snapshots else None

    def save_bias_snapshot(self, bias: BiasState) -> bool:
        return self.put(BIAS_STATE, [bias])

    # ──────────────────────────────────────────────────────────────
    # Health, boot check, export/import, reset
    # ──────────────────────────────────────────────────────────────

    def storage_usage(self) -> StorageUsage:
        try:
            used_kb = self._backend.usage_bytes() / 1024.0
        except StorageError as e:
            logger.error("Failed to measure storage usage: %s", e)
            used_kb = 0.0
        percent = (used_kb / self._quota_kb) * 100.0 if self._quota_kb > 0 else 0.0
        return StorageUsage(used_kb=round(used_kb, 2), limit_kb=self._quota_kb, percent=round(percent, 2))

    def _switch_to_fallback(self, reason: str) -> None:
        if self._fallback_active:
            return
        logger.error("Switching record store to in-process fallback: %s", reason)
        self._backend = InMemoryBackend()
        self._fallback_active = True

    def run_system_boot_check(self, *, max_retries: int = 3) -> List[str]:
        """Probe the medium and collect human-readable warnings. Never raises."""
        issues: List[str] = list(self._boot_errors)
        try:
            self._backend.probe()
        except StorageError as e:
            issues.append("Volatile storage subsystem is unreachable.")
            self._boot_errors.append("Volatile storage subsystem is unreachable.")
            self._switch_to_fallback(str(e))

        try:
            if self._fallback_active:
                issues.append("Running on non-durable in-process storage; changes will be lost on exit.")

            usage = self.storage_usage()
            if usage.percent >= self._pressure_warning_percent:
                issues.append(
                    f"Storage pressure at {usage.percent:.0f}% of {usage.limit_kb:.0f} KB quota."
                )

            if self.get_settings().encryption_at_rest:
                issues.append(
                    "Encryption at rest is enabled but not implemented; records are stored in plaintext."
                )

            abandoned = self.abandoned_queue_items(max_retries)
            if abandoned:
                issues.append(f"{len(abandoned)} queue item(s) exhausted their retries and were abandoned.")
        except Exception as e:
            logger.exception("Boot check failed")
            issues.append(f"Boot check incomplete: {e}")

        return list(dict.fromkeys(issues))

    def export_state(self) -> Dict[str, Any]:
        collections: Dict[str, List[Any]] = {}
        for name in ALL_COLLECTIONS:
            try:
                rows = self._backend.load(name)
            except StorageError as e:
                raise StorageError(f"Export failed reading {name}: {e}") from e
            collections[name] = [json.loads(body) for _, body in rows]
        return {
            "format": EXPORT_FORMAT,
            "version": EXPORT_VERSION,
            "exported_at": self._now_fn(),
            "collections": collections,
        }

    def import_state(self, document: Dict[str, Any]) -> Optional[Dict[str, int]]:
        """Replace every collection with the contents of an export document.

        Returns per-collection record counts, or None when the medium refused
        the write; the previous contents are then left untouched. A malformed
        document raises ``ImportFormatError`` before anything is written.
        """
        if not isinstance(document, dict) or document.get("format") != EXPORT_FORMAT:
            raise ImportFormatError("Not a Cliper export document")
        version = document.get("version")
        if not isinstance(version, int) or version > EXPORT_VERSION:
            raise ImportFormatError(f"Unsupported export version: {version!r}")
        collections = document.get("collections")
        if not isinstance(collections, dict):
            raise ImportFormatError("Export document has no collections")

        prepared: Dict[str, List[tuple]] = {}
        for name, records in collections.items():
            if name not in ALL_COLLECTIONS:
                logger.warning("Skipping unknown collection %s in import", name)
                continue
            if not isinstance(records, list):
                raise ImportFormatError(f"Collection {name} is not a list")
            model = COLLECTION_MODELS.get(name)
            rows = []
            for raw in records:
                if not isinstance(raw, dict) or "id" not in raw:
                    raise ImportFormatError(f"Collection {name} contains a record without an id")
                if model is not None:
                    try:
                        record = model.model_validate(raw)
                    except ValueError as e:
                        raise ImportFormatError(f"Invalid record in {name}: {e}") from e
                    rows.append((record.id, record.model_dump_json()))
                else:
                    rows.append((str(raw["id"]), json.dumps(raw)))
            prepared[name] = rows

        try:
            self._backend.replace_all(prepared)
        except StorageError as e:
            logger.error("Import failed; existing records kept: %s", e)
            return None
        counts = {name: len(rows) for name, rows in prepared.items()}
        self.notify(StoreEvent("*", "import"))
        logger.info("Imported %d collections", len(counts))
        return counts

    def factory_reset(self) -> None:
        self._backend.clear()
        self.notify(StoreEvent("*", "reset"))
        logger.warning("Factory reset: all collections cleared")

    def close(self) -> None:
        self._backend.close()
