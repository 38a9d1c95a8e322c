"""
Special-cased conversational intents.

These are checked before ranked retrieval, in priority order:

1. answer to a pending "same project or new project?" question
2. declaration of a named project
3. reminder request
4. first-person preference
5. fact about a named friend

Each handler returns an ``IntentOutcome`` when it recognises the message
and None otherwise. Handlers write their records directly; the caller
records the single audit entry.
"""

import re
import logging
import time
from dataclasses import dataclass, field
from typing import Callable, List, Optional, Tuple

from cliper.core.types import (
    Memory,
    MemoryDomain,
    MemoryType,
    PendingProjectDecision,
    RecallPriority,
    Speaker,
)
from cliper.retrieval.query import FRIENDS_FOLDER, PREFERENCES_FOLDER, REMINDERS_FOLDER, slugify
from cliper.retrieval.time_parser import parse_due_time

logger = logging.getLogger("Cliper.Retrieval.Intents")

PROJECT_TABLE = "projects"
DEFAULT_REMINDER_DELAY = 3600.0

PENDING_PROJECT_TTL_SECONDS = 600.0

# A clarification answer is the whole message, e.g. "same", "it's the same one",
# "a different project please". Longer messages fall through to other intents.
_ANSWER_PREFIX = r"^\s*(?:(?:yes|yeah|no|nope)[,.!]?\s+)?(?:(?:it[\u2019']?s|it\s+is|this\s+is)\s+)?(?:the\s+|a\s+)?"
_ANSWER_SUFFIX = r"(?:[,\s]+please)?\s*[.!]*\s*$"
SAME_ANSWER = re.compile(
    _ANSWER_PREFIX
    + r"(?:(?:same|existing|that)(?:\s+(?:one|project))?|continu(?:e|ing)(?:\s+(?:it|that(?:\s+one)?))?)"
    + _ANSWER_SUFFIX,
    re.IGNORECASE,
)
NEW_ANSWER = re.compile(
    _ANSWER_PREFIX + r"(?:new|different|another|separate)(?:\s+(?:one|project))?" + _ANSWER_SUFFIX,
    re.IGNORECASE,
)

PROJECT_DECLARATION = re.compile(
    r"\b(?:"
    r"(?:start(?:ing|ed)?|begin(?:ning)?|kick(?:ing)?\s+off|working\s+on|launch(?:ing)?)"
    r"\s+(?:a\s+|an\s+|the\s+|my\s+|our\s+)?(?:new\s+|ongoing\s+)?project"
    r"|(?:new|ongoing)\s+project"
    r")\s+(?:called\s+|named\s+)?[\"']?(?P<name>[A-Za-z0-9][\w-]*)",
    re.IGNORECASE,
)

REMINDER_REQUEST = re.compile(r"\bremind\s+me\s+(?:to\s+|about\s+)?(?P<body>.+)$", re.IGNORECASE)

PREFERENCE_STATEMENT = re.compile(
    r"^\s*i\s+(?:really\s+|truly\s+|generally\s+|usually\s+)?"
    r"(?P<verb>prefer|like|love|enjoy|hate|dislike)\s+(?P<object>[^?]+?)[.!]*\s*$",
    re.IGNORECASE,
)

FRIEND_FACT = re.compile(
    r"\bmy\s+friend\s+(?P<name>[A-Za-z][\w'-]*)\s+"
    r"(?P<fact>(?:is|has|had|likes|loves|works|worked|lives|lived|was|prefers|hates|enjoys"
    r"|studies|plays|moved|just|recently|wants|needs)\b[^?]*?)[.!]*\s*$",
    re.IGNORECASE,
)


@dataclass
class IntentOutcome:
    intent: str
    reply: str
    explanation: str
    decision_reason: str
    citations: List[str] = field(default_factory=list)
    assumptions: List[str] = field(default_factory=list)


def _project_records(store, key: str) -> List[Memory]:
    return [
        m for m in store.get_memories()
        if m.metadata.get("table") == PROJECT_TABLE and m.metadata.get("project_key") == key
    ]


def _create_project(store, name: str, slug: str, key: str) -> Memory:
    return store.add_memory(
        f"Project {name} is an ongoing project.",
        domain=MemoryDomain.WORK,
        type=MemoryType.FACT,
        entity=name,
        speaker=Speaker.USER,
        confidence=0.9,
        salience=0.75,
        recall_priority=RecallPriority.HIGH,
        justification="Project declared by user",
        metadata={
            "folder": f"work/projects/{slug}",
            "table": PROJECT_TABLE,
            "topic": name,
            "origin": "project",
            "project_key": key,
            "project_slug": slug,
        },
    )


def resolve_project_clarification(message: str, store, now: float) -> Optional[IntentOutcome]:
    pending = store.get_pending_project_decision()
    if pending is None:
        return None
    if now - pending.asked_at > PENDING_PROJECT_TTL_SECONDS:
        logger.info("Pending project question for %s expired", pending.project_name)
        store.clear_pending_project_decision()
        return None
    same = bool(SAME_ANSWER.match(message))
    new = bool(NEW_ANSWER.match(message))
    if same == new:
        return None

    store.clear_pending_project_decision()
    if same:
        store.track_memory_access([pending.existing_memory_id], "project_reuse")
        return IntentOutcome(
            intent="project_clarification",
            reply=f"Got it. Continuing with your existing project {pending.project_name}.",
            explanation="Clarification answered: same project.",
            decision_reason="Pending project clarification resolved: reused existing project.",
            citations=[pending.existing_memory_id],
        )

    existing = len(_project_records(store, pending.slug))
    slug = f"{pending.slug}-{existing + 1}"
    memory = _create_project(store, pending.project_name, slug, pending.slug)
    return IntentOutcome(
        intent="project_clarification",
        reply=f"Understood. I started a separate project {pending.project_name} ({slug}).",
        explanation="Clarification answered: new project.",
        decision_reason="Pending project clarification resolved: created new project.",
        citations=[memory.id],
    )


def declare_project(message: str, store, now: float) -> Optional[IntentOutcome]:
    m = PROJECT_DECLARATION.search(message)
    if m is None:
        return None
    name = m.group("name").strip("\"'")
    key = slugify(name)
    if not key:
        return None

    existing = _project_records(store, key)
    if existing:
        store.save_pending_project_decision(
            PendingProjectDecision(
                project_name=name,
                slug=key,
                existing_memory_id=existing[0].id,
                asked_at=now,
            )
        )
        return IntentOutcome(
            intent="project_declaration",
            reply=f"You already have a project named {name}. Is this the same project or a new project?",
            explanation="Project name collision; asked for clarification instead of merging.",
            decision_reason="Project name collision: pending clarification saved.",
            citations=[existing[0].id],
        )

    memory = _create_project(store, name, key, key)
    return IntentOutcome(
        intent="project_declaration",
        reply=f"Noted. I'm tracking your project {name}.",
        explanation="New project folder created.",
        decision_reason="Project declared: project record created.",
        citations=[memory.id],
    )


def _split_reminder(body: str, now: float) -> Tuple[str, float, List[str]]:
    due = parse_due_time(body, reference_time=now)
    assumptions: List[str] = []
    if due is None:
        task = body
        due_time = now + DEFAULT_REMINDER_DELAY
        assumptions.append("No time given; reminder set for one hour from now.")
    else:
        task = body.replace(due.phrase, " ")
        due_time = due.due
    task = re.sub(r"\s+", " ", task).strip(" .,!;")
    return task, due_time, assumptions


def create_reminder(message: str, store, now: float) -> Optional[IntentOutcome]:
    m = REMINDER_REQUEST.search(message)
    if m is None:
        return None
    task, due_time, assumptions = _split_reminder(m.group("body"), now)
    if not task:
        return None

    due_label = time.strftime("%Y-%m-%d %H:%M UTC", time.gmtime(due_time))
    content = f"Reminder: {task} (due {due_label})"
    previous = next(
        (r for r in store.get_reminders() if r.task.strip().lower() == task.lower()),
        None,
    )
    memory = store.get_memory(previous.memory_id) if previous and previous.memory_id else None
    if memory is not None:
        memory = store.update_memory(memory.id, {"content": content}, force=True)
    else:
        memory = store.add_memory(
            content,
            domain=MemoryDomain.PERSONAL,
            type=MemoryType.TASK,
            entity="user",
            speaker=Speaker.USER,
            confidence=0.95,
            salience=0.8,
            recall_priority=RecallPriority.HIGH,
            justification="Reminder requested by user",
            metadata={"folder": REMINDERS_FOLDER, "table": "reminders", "origin": "reminder"},
        )
    reminder = store.upsert_reminder(task, due_time, memory_id=memory.id)
    store.update_memory(
        memory.id,
        {"metadata": {**memory.metadata, "reminder_id": reminder.id, "due_time": due_time}},
        force=True,
    )
    return IntentOutcome(
        intent="reminder",
        reply=f"I'll remind you to {task} at {due_label}.",
        explanation="Reminder request parsed into a due time.",
        decision_reason="Reminder created.",
        citations=[memory.id],
        assumptions=assumptions,
    )


def _third_person(verb: str) -> str:
    return verb.lower() + "s"


def record_preference(message: str, store, now: float) -> Optional[IntentOutcome]:
    m = PREFERENCE_STATEMENT.match(message)
    if m is None:
        return None
    verb = m.group("verb").lower()
    obj = m.group("object").strip()
    memory = store.add_memory(
        f"User {_third_person(verb)} {obj}",
        domain=MemoryDomain.PERSONAL,
        type=MemoryType.PREFERENCE,
        entity="user",
        speaker=Speaker.USER,
        confidence=0.9,
        salience=0.75,
        justification="Stated directly by user",
        metadata={"folder": PREFERENCES_FOLDER, "origin": "preference", "topic": obj},
    )
    return IntentOutcome(
        intent="preference",
        reply=f"Noted: you {verb} {obj}.",
        explanation="First-person preference stored.",
        decision_reason="Preference statement stored.",
        citations=[memory.id],
    )


def record_friend_fact(message: str, store, now: float) -> Optional[IntentOutcome]:
    if "?" in message:
        return None
    m = FRIEND_FACT.search(message)
    if m is None:
        return None
    name = m.group("name").strip().title()
    fact = m.group("fact").strip()
    person = store.update_person(name, fact, relation="Friend")
    memory = store.add_memory(
        f"{name} {fact}",
        domain=MemoryDomain.PERSONAL,
        type=MemoryType.FACT,
        entity=name,
        speaker=Speaker.USER,
        confidence=0.85,
        salience=0.7,
        justification="Stated by user about a friend",
        metadata={
            "folder": f"{FRIENDS_FOLDER}/{slugify(name)}",
            "origin": "friend_fact",
            "person_id": person.id,
        },
    )
    return IntentOutcome(
        intent="friend_fact",
        reply=f"Got it, I'll remember that {name} {fact}.",
        explanation="Fact about a named friend stored.",
        decision_reason="Friend fact stored.",
        citations=[memory.id],
    )


INTENT_HANDLERS: List[Callable[[str, object, float], Optional[IntentOutcome]]] = [
    resolve_project_clarification,
    declare_project,
    create_reminder,
    record_preference,
    record_friend_fact,
]


def detect_intent(message: str, store, now: float) -> Optional[IntentOutcome]:
    for handler in INTENT_HANDLERS:
        outcome = handler(message, store, now)
        if outcome is not None:
            logger.info("Intent %s handled", outcome.intent)
            return outcome
    return None
