"""Tests for the conversational intents checked before retrieval."""

from datetime import datetime, timezone

from cliper.core.types import MemoryType
from cliper.retrieval.intents import (
    DEFAULT_REMINDER_DELAY,
    PENDING_PROJECT_TTL_SECONDS,
    PROJECT_TABLE,
    detect_intent,
)
from cliper.store.backends import InMemoryBackend
from cliper.store.record_store import RecordStore

NOW = datetime(2026, 3, 11, 10, 0, tzinfo=timezone.utc).timestamp()


def _store() -> RecordStore:
    return RecordStore(InMemoryBackend(), now_fn=lambda: NOW)


def _projects(store):
    return [m for m in store.get_memories() if m.metadata.get("table") == PROJECT_TABLE]


class TestProjects:
    def test_declaration_creates_project(self):
        store = _store()
        outcome = detect_intent("I'm starting a new project called Atlas", store, NOW)
        assert outcome.intent == "project_declaration"
        assert outcome.reply == "Noted. I'm tracking your project Atlas."
        project = _projects(store)[0]
        assert project.folder == "work/projects/atlas"
        assert project.type == MemoryType.FACT
        assert project.metadata["project_key"] == "atlas"
        assert outcome.citations == [project.id]

    def test_collision_asks_instead_of_merging(self):
        store = _store()
        detect_intent("I'm starting a new project called Atlas", store, NOW)
        outcome = detect_intent("We're kicking off a project named Atlas", store, NOW)
        assert outcome.reply == (
            "You already have a project named Atlas. Is this the same project or a new project?"
        )
        assert len(_projects(store)) == 1
        pending = store.get_pending_project_decision()
        assert pending.slug == "atlas"

    def test_same_answer_reuses_existing(self):
        store = _store()
        detect_intent("I'm starting a new project called Atlas", store, NOW)
        detect_intent("Starting project Atlas", store, NOW)
        existing = _projects(store)[0]

        outcome = detect_intent("It's the same one", store, NOW)

        assert outcome.intent == "project_clarification"
        assert outcome.reply == "Got it. Continuing with your existing project Atlas."
        assert outcome.citations == [existing.id]
        assert store.get_pending_project_decision() is None
        assert len(_projects(store)) == 1
        assert store.get_memory(existing.id).access_count == 2

    def test_new_answer_creates_suffixed_project(self):
        store = _store()
        detect_intent("I'm starting a new project called Atlas", store, NOW)
        detect_intent("Starting project Atlas", store, NOW)

        outcome = detect_intent("A different one please", store, NOW)

        slugs = sorted(m.metadata["project_slug"] for m in _projects(store))
        assert slugs == ["atlas", "atlas-2"]
        assert "atlas-2" in outcome.reply
        assert store.get_pending_project_decision() is None

    def test_ambiguous_answer_keeps_pending(self):
        store = _store()
        detect_intent("I'm starting a new project called Atlas", store, NOW)
        detect_intent("Starting project Atlas", store, NOW)
        assert detect_intent("same or new, not sure", store, NOW) is None
        assert store.get_pending_project_decision() is not None

    def test_unrelated_question_does_not_answer_pending(self):
        store = _store()
        detect_intent("I'm starting a new project called Atlas", store, NOW)
        detect_intent("Starting project Atlas", store, NOW)

        assert detect_intent("Is there anything new about the bike?", store, NOW) is None
        assert detect_intent("Should I continue reading the same book tonight?", store, NOW) is None

        assert len(_projects(store)) == 1
        assert store.get_pending_project_decision() is not None

    def test_short_answers_are_recognised(self):
        for answer in ("same", "Same project.", "yes, the existing one", "new", "A new project!"):
            store = _store()
            detect_intent("I'm starting a new project called Atlas", store, NOW)
            detect_intent("Starting project Atlas", store, NOW)
            outcome = detect_intent(answer, store, NOW)
            assert outcome is not None and outcome.intent == "project_clarification", answer

    def test_pending_question_expires(self):
        store = _store()
        detect_intent("I'm starting a new project called Atlas", store, NOW)
        detect_intent("Starting project Atlas", store, NOW)

        later = NOW + PENDING_PROJECT_TTL_SECONDS + 1
        assert detect_intent("new", store, later) is None
        assert store.get_pending_project_decision() is None
        assert len(_projects(store)) == 1


class TestReminders:
    def test_reminder_with_time(self):
        store = _store()
        outcome = detect_intent("Remind me to call Mom tomorrow at 9am", store, NOW)
        assert outcome.intent == "reminder"
        assert outcome.reply == "I'll remind you to call Mom at 2026-03-12 09:00 UTC."
        assert outcome.assumptions == []

        reminder = store.get_reminders()[0]
        assert reminder.task == "call Mom"
        assert reminder.due_time == datetime(2026, 3, 12, 9, 0, tzinfo=timezone.utc).timestamp()
        memory = store.get_memory(reminder.memory_id)
        assert memory.type == MemoryType.TASK
        assert memory.folder == "self/reminders"
        assert memory.metadata["reminder_id"] == reminder.id

    def test_reminder_without_time_defaults_to_an_hour(self):
        store = _store()
        outcome = detect_intent("remind me to water the plants", store, NOW)
        assert outcome.assumptions == ["No time given; reminder set for one hour from now."]
        assert store.get_reminders()[0].due_time == NOW + DEFAULT_REMINDER_DELAY

    def test_repeated_reminder_reschedules(self):
        store = _store()
        detect_intent("remind me to water the plants in 2 hours", store, NOW)
        detect_intent("remind me to water the plants tomorrow", store, NOW)
        reminders = store.get_reminders()
        assert len(reminders) == 1
        assert reminders[0].due_time == datetime(2026, 3, 12, 9, 0, tzinfo=timezone.utc).timestamp()
        tasks = [m for m in store.get_memories() if m.type == MemoryType.TASK]
        assert len(tasks) == 1
        assert "2026-03-12 09:00 UTC" in tasks[0].content


class TestPreferencesAndFriends:
    def test_preference(self):
        store = _store()
        outcome = detect_intent("I really prefer green tea.", store, NOW)
        assert outcome.intent == "preference"
        memory = store.get_memories()[0]
        assert memory.content == "User prefers green tea"
        assert memory.type == MemoryType.PREFERENCE
        assert memory.folder == "self/preferences"

    def test_preference_question_is_not_a_statement(self):
        assert detect_intent("I like tea?", _store(), NOW) is None

    def test_friend_fact(self):
        store = _store()
        outcome = detect_intent("My friend maya just moved to Lisbon.", store, NOW)
        assert outcome.intent == "friend_fact"
        person = store.find_person("Maya")
        assert person.relation == "Friend"
        assert person.facts[0].content == "just moved to Lisbon"
        memory = store.get_memories()[0]
        assert memory.content == "Maya just moved to Lisbon"
        assert memory.folder == "friends/maya"
        assert memory.metadata["person_id"] == person.id

    def test_friend_question_is_not_a_fact(self):
        store = _store()
        assert detect_intent("Is my friend Maya still in Lisbon?", store, NOW) is None
        assert store.get_people() == []

    def test_plain_question_has_no_intent(self):
        assert detect_intent("when is the Atlas launch?", _store(), NOW) is None
