"""
Cliper Core Types
-----------------
Pydantic models and enums for the Cliper memory engine.

Every persisted record kind lives in its own logical collection; the
collection names are defined here so the store, the worker and the
exporter agree on the layout.
"""

import uuid
import time
from enum import Enum
from typing import Optional, Dict, Any, List
from pydantic import BaseModel, Field, field_validator


# Collection names
MEMORIES = "memories"
PEOPLE = "people"
REMINDERS = "reminders"
PLACES = "places"
QUEUE = "queue"
DECISION_LOGS = "decision_logs"
TRANSCRIPTION_LOGS = "transcription_logs"
SMART_DEVICES = "smart_devices"
SETTINGS = "settings"
BIAS_STATE = "bias_state"
DECISION_HISTORY = "decision_history"
PENDING_PROJECT = "pending_project_decision"
PENDING_PERSON = "pending_person_decision"
MEMORY_EVENTS = "memory_events"
IDENTITY_EVENTS = "identity_events"

ALL_COLLECTIONS = (
    MEMORIES,
    PEOPLE,
    REMINDERS,
    PLACES,
    QUEUE,
    DECISION_LOGS,
    TRANSCRIPTION_LOGS,
    SMART_DEVICES,
    SETTINGS,
    BIAS_STATE,
    DECISION_HISTORY,
    PENDING_PROJECT,
    PENDING_PERSON,
    MEMORY_EVENTS,
    IDENTITY_EVENTS,
)


def _new_id() -> str:
    return str(uuid.uuid4())


def clamp(value: float, low: float, high: float) -> float:
    return max(low, min(high, value))


class MemoryDomain(str, Enum):
    WORK = "work"
    PERSONAL = "personal"
    HOME = "home"
    HEALTH = "health"
    FINANCE = "finance"
    SYSTEM = "system"
    GENERAL = "general"


class MemoryType(str, Enum):
    FACT = "fact"
    DECISION = "decision"
    PREFERENCE = "preference"
    CONSTRAINT = "constraint"
    TASK = "task"
    ISSUE = "issue"
    RAW = "raw"
    SUMMARY = "summary"
    EVENT = "event"
    INSIGHT = "insight"


class Speaker(str, Enum):
    USER = "user"
    EXTERNAL = "external"
    UNKNOWN = "unknown"


class MemoryStatus(str, Enum):
    ACTIVE = "active"
    COMPLETED = "completed"
    ARCHIVED = "archived"
    DECAYING = "decaying"
    DEPRECATED = "deprecated"
    SUPERSEDED = "superseded"
    COLD_STORAGE = "cold_storage"
    CONTRADICTORY = "contradictory"


class RecallPriority(str, Enum):
    HIGH = "high"
    NORMAL = "normal"
    LOW = "low"


class MemoryCluster(str, Enum):
    MAIN = "main"
    EXPERIMENTAL = "experimental"


class SystemStatus(str, Enum):
    NOMINAL = "nominal"
    DEGRADED = "degraded"
    SAFE_MODE = "safe_mode"


MIN_STRENGTH = 0.05
MAX_STRENGTH = 1.25


class Memory(BaseModel):
    id: str = Field(default_factory=_new_id)
    content: str
    domain: MemoryDomain = MemoryDomain.GENERAL
    type: MemoryType = MemoryType.RAW
    entity: str = "unspecified"
    speaker: Speaker = Speaker.UNKNOWN

    # Scores
    confidence: float = 0.9
    confidence_history: List[float] = Field(default_factory=list)
    salience: float = 0.8
    trust_score: float = 1.0
    strength: float = 0.72

    # Lifecycle
    status: MemoryStatus = MemoryStatus.ACTIVE
    recall_priority: RecallPriority = RecallPriority.NORMAL
    supersedes: Optional[str] = None
    created_at: float = Field(default_factory=time.time)
    last_accessed_at: float = Field(default_factory=time.time)
    updated_at: float = Field(default_factory=time.time)
    access_count: int = 1

    # User toggles
    is_locked: bool = False
    is_pending_approval: bool = False
    is_pinned: bool = False

    # Provenance
    justification: str = "Session Insight"
    cluster: MemoryCluster = MemoryCluster.MAIN
    distilled_by: str = "cliper-core"
    images: List[str] = Field(default_factory=list)

    # folder, table, topic, origin, contradicts_id, ...
    metadata: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("confidence", "salience", mode="before")
    @classmethod
    def _clamp_unit(cls, value: Any) -> float:
        return clamp(float(value), 0.0, 1.0)

    @field_validator("trust_score", mode="before")
    @classmethod
    def _non_negative(cls, value: Any) -> float:
        return max(0.0, float(value))

    @field_validator("strength", mode="before")
    @classmethod
    def _clamp_strength(cls, value: Any) -> float:
        return clamp(float(value), MIN_STRENGTH, MAX_STRENGTH)

    @field_validator("access_count", mode="before")
    @classmethod
    def _non_negative_count(cls, value: Any) -> int:
        return max(0, int(value))

    @property
    def folder(self) -> str:
        return str(self.metadata.get("folder") or "")

    @property
    def rank_score(self) -> float:
        return self.salience * self.trust_score


class QueueItemType(str, Enum):
    TEXT = "text"
    IMAGE = "image"
    MAINTENANCE = "maintenance"
    INSIGHT_GEN = "insight_gen"
    DIARIZATION = "diarization"


class QueueItemStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    FAILED = "failed"


class QueueItem(BaseModel):
    id: str = Field(default_factory=_new_id)
    content: str
    type: QueueItemType = QueueItemType.TEXT
    status: QueueItemStatus = QueueItemStatus.PENDING
    timestamp: float = Field(default_factory=time.time)
    retry_count: int = 0
    error: Optional[str] = None
    image_base64: Optional[str] = None
    # Set once retries are exhausted; the item stays failed and is never re-picked
    abandoned_at: Optional[float] = None


class DecisionLog(BaseModel):
    id: str = Field(default_factory=_new_id)
    timestamp: float = Field(default_factory=time.time)
    query: str = ""
    memory_retrieval_used: bool = False
    memories_considered: int = 0
    memories_injected: int = 0
    injected_ids: List[str] = Field(default_factory=list)
    decision_reason: str = ""
    retrieval_latency_ms: float = 0.0
    cognitive_load: float = 0.0
    assumptions: List[str] = Field(default_factory=list)
    anomaly_score: Optional[float] = None
    cloud_called: bool = False


class BiasState(BaseModel):
    id: str = "bias"
    clarity_threshold_bias: float = 0.0
    ambiguity_tolerance_bias: float = 0.0
    questioning_bias: float = 0.0
    last_updated: float = Field(default_factory=time.time)
    notes: List[str] = Field(default_factory=list)


class PersonFact(BaseModel):
    id: str = Field(default_factory=_new_id)
    content: str
    timestamp: float = Field(default_factory=time.time)


IDENTITY_FLOOR = 0.05
IDENTITY_CEILING = 0.98


class Person(BaseModel):
    id: str = Field(default_factory=_new_id)
    name: str
    relation: str = "Contact"
    facts: List[PersonFact] = Field(default_factory=list)
    consent_given: bool = False
    last_updated: float = Field(default_factory=time.time)
    identity_confidence: float = 0.55
    last_identity_update: float = Field(default_factory=time.time)

    @field_validator("identity_confidence", mode="before")
    @classmethod
    def _clamp_identity(cls, value: Any) -> float:
        return clamp(float(value), IDENTITY_FLOOR, IDENTITY_CEILING)


class Reminder(BaseModel):
    id: str = Field(default_factory=_new_id)
    task: str
    due_time: float
    completed: bool = False
    memory_id: Optional[str] = None
    created_at: float = Field(default_factory=time.time)


class PlaceStatus(str, Enum):
    BUCKET_LIST = "bucket_list"
    VISITED = "visited"


class Place(BaseModel):
    id: str = Field(default_factory=_new_id)
    name: str = "Unnamed Place"
    category: str = "General"
    status: PlaceStatus = PlaceStatus.BUCKET_LIST
    notes: str = ""
    created_at: float = Field(default_factory=time.time)


class TranscriptSegment(BaseModel):
    speaker: str
    text: str
    start: float = 0.0
    end: float = 0.0


class TranscriptionLog(BaseModel):
    id: str = Field(default_factory=_new_id)
    meeting_id: str = Field(default_factory=_new_id)
    text: str
    segments: List[TranscriptSegment] = Field(default_factory=list)
    duration_seconds: float = 0.0
    timestamp: float = Field(default_factory=time.time)


class SmartDevice(BaseModel):
    id: str = Field(default_factory=_new_id)
    name: str
    kind: str = "light"
    room: str = "Living Room"
    state: Dict[str, Any] = Field(default_factory=dict)


class PendingProjectDecision(BaseModel):
    id: str = "pending_project"
    project_name: str
    slug: str
    existing_memory_id: str
    asked_at: float = Field(default_factory=time.time)


class PendingPersonDecision(BaseModel):
    """A fact about a name that may or may not be an already-known person."""
    id: str = "pending_person"
    name: str
    fact: str
    matched_person_id: Optional[str] = None
    candidates: List[Dict[str, Any]] = Field(default_factory=list)
    last_prompt: Optional[str] = None
    asked_at: float = Field(default_factory=time.time)


class MemoryEvent(BaseModel):
    """Strength adjustment audit entry."""
    id: str = Field(default_factory=_new_id)
    memory_id: str
    delta: float
    strength: float
    reason: str
    timestamp: float = Field(default_factory=time.time)


class IdentityEvent(BaseModel):
    """Identity confidence adjustment audit entry."""
    id: str = Field(default_factory=_new_id)
    person_id: str
    delta: float
    identity_confidence: float
    reason: str
    timestamp: float = Field(default_factory=time.time)


class RuntimeSettings(BaseModel):
    """User-editable settings persisted in the store."""
    id: str = "settings"
    active_cluster: MemoryCluster = MemoryCluster.MAIN
    pii_filter_enabled: bool = True
    encryption_at_rest: bool = False
    auto_approve_facts: bool = True
    decision_log_ttl_days: float = 1.0
    cold_storage_after_days: float = 30.0
    last_maintenance_at: Optional[float] = None


class StorageUsage(BaseModel):
    used_kb: float
    limit_kb: float
    percent: float


class SystemHealth(BaseModel):
    status: SystemStatus = SystemStatus.NOMINAL
    storage_pressure: float = 0.0
    avg_latency_ms: float = 0.0
    anomaly_count: int = 0
    queue_depth: int = 0
    failed_items: int = 0
    abandoned_items: int = 0
    durable_storage: bool = True
    boot_errors: List[str] = Field(default_factory=list)
    last_check: float = Field(default_factory=time.time)


class BrainReply(BaseModel):
    reply: str
    explanation: str
    citations: List[str] = Field(default_factory=list)
    assumptions: List[str] = Field(default_factory=list)
