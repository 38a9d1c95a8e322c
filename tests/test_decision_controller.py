"""Tests for the decision controller and its bias drift."""

import pytest

from cliper.core.config import DecisionConfig
from cliper.core.types import DECISION_HISTORY, BiasState
from cliper.reasoning.controller import (
    ControllerState,
    DecisionController,
    FeedbackSignals,
    collect_feedback,
    is_similar,
)
from cliper.reasoning.models import (
    Decision,
    DecisionAction,
    DecisionLogEntry,
    ReasoningResult,
)
from cliper.store.backends import InMemoryBackend
from cliper.store.record_store import RecordStore

NOW = 1_700_000_000.0


def _reasoning(summary, confidence=0.9, ambiguity=0.1, questions=None):
    return ReasoningResult(
        summary_of_change=summary,
        confidence=confidence,
        ambiguity=ambiguity,
        questions_to_ask=questions or [],
    )


def _entry(summary, action, confidence=0.9, ambiguity=0.1, follow_up=None):
    return DecisionLogEntry(
        timestamp=NOW,
        reasoning=_reasoning(summary, confidence, ambiguity),
        decision=Decision(action=action, follow_up_questions=follow_up or []),
    )


def _controller(config=None, store=None, bias=None):
    state = ControllerState(bias=bias or BiasState(last_updated=NOW))
    return DecisionController(config or DecisionConfig(), state, store=store, now_fn=lambda: NOW)


class TestDecisionRule:
    def test_clear_update_is_stored(self):
        controller = _controller()
        decision = controller.decide(_reasoning("Dana leads Atlas"))
        assert decision.action == DecisionAction.STORE_MEMORY
        assert decision.reasons[1] == "No conflicting history found."
        assert decision.threshold == pytest.approx(0.7)
        assert decision.clarity_score == pytest.approx(0.81)

    def test_ambiguous_update_asks(self):
        controller = _controller()
        decision = controller.decide(_reasoning("she moved it", 0.5, 0.6, ["Who is she?"]))
        assert decision.action == DecisionAction.ASK_CLARIFYING_QUESTIONS
        assert decision.follow_up_questions == ["Who is she?"]

    def test_unclear_without_questions_is_no_action(self):
        controller = _controller()
        decision = controller.decide(_reasoning("something vague", 0.5, 0.6))
        assert decision.action == DecisionAction.NO_ACTION
        assert decision.reasons[1] == "Waiting for a clearer signal."

    def test_similar_history_adds_support(self):
        controller = _controller()
        controller.decide(_reasoning("Dana leads Atlas"))
        decision = controller.decide(_reasoning("Dana leads Atlas", 0.65, 0.0))
        assert decision.action == DecisionAction.STORE_MEMORY
        assert decision.reasons[1] == "Recent similar decision reduced uncertainty."

    def test_repeated_question_is_not_asked_twice(self):
        controller = _controller()
        first = controller.decide(_reasoning("she moved it", 0.5, 0.6, ["Who is she?"]))
        assert first.action == DecisionAction.ASK_CLARIFYING_QUESTIONS
        second = controller.decide(_reasoning("she moved it", 0.5, 0.6, ["Who is she?"]))
        assert second.action == DecisionAction.NO_ACTION
        assert second.reasons[1] == "Past decisions already considered similar information."

    def test_explanation_mentions_thresholds(self):
        controller = _controller()
        controller.decide(_reasoning("Dana leads Atlas"))
        assert controller.last_explanation == (
            "Information is stable enough to persist; avoiding redundant questions. "
            "Threshold 0.70 (ask below 0.70); recent adjustments: none."
        )

    def test_history_is_capped(self):
        controller = _controller(DecisionConfig(history_cap=3))
        for i in range(5):
            controller.decide(_reasoning(f"fact number {i}"))
        assert [e.reasoning.summary_of_change for e in controller.state.history] == [
            "fact number 2", "fact number 3", "fact number 4",
        ]


class TestFeedback:
    def test_similarity(self):
        assert is_similar("Dana leads Atlas", "dana leads atlas now") is True
        assert is_similar("", "anything") is False
        assert is_similar("Atlas", "Budget") is False

    def test_store_without_improvement_is_correction(self):
        window = [
            _entry("Dana leads Atlas", DecisionAction.STORE_MEMORY, 0.9),
            _entry("Dana leads Atlas", DecisionAction.STORE_MEMORY, 0.8),
        ]
        assert collect_feedback(window).corrections == 1

    def test_improved_store_is_reinforcement(self):
        window = [
            _entry("Dana leads Atlas", DecisionAction.STORE_MEMORY, 0.8),
            _entry("Dana leads Atlas", DecisionAction.STORE_MEMORY, 0.9),
        ]
        signals = collect_feedback(window)
        assert signals.reinforcements == 1
        assert signals.corrections == 0

    def test_correction_language_wins(self):
        window = [
            _entry("Dana leads Atlas", DecisionAction.STORE_MEMORY, 0.8),
            _entry("Actually Dana leads Atlas", DecisionAction.STORE_MEMORY, 0.9),
        ]
        assert collect_feedback(window).corrections == 1

    def test_repeated_no_action_is_stable(self):
        window = [
            _entry("weather chat", DecisionAction.NO_ACTION),
            _entry("weather chat", DecisionAction.NO_ACTION),
        ]
        assert collect_feedback(window).stable == 1

    def test_answered_and_unanswered_questions(self):
        window = [
            _entry("she moved it", DecisionAction.ASK_CLARIFYING_QUESTIONS),
            _entry("she moved it to Lisbon", DecisionAction.STORE_MEMORY),
            _entry("the thing", DecisionAction.ASK_CLARIFYING_QUESTIONS),
        ]
        signals = collect_feedback(window)
        assert signals.answered == 1
        assert signals.unanswered == 1


class TestBiasDrift:
    def test_bias_is_clamped(self):
        controller = _controller()
        bias, notes = controller._apply_feedback(
            BiasState(last_updated=NOW), FeedbackSignals(corrections=100, unanswered=100)
        )
        assert bias.clarity_threshold_bias == pytest.approx(0.15)
        assert bias.ambiguity_tolerance_bias == pytest.approx(-0.15)
        assert bias.questioning_bias == pytest.approx(-0.15)
        assert len(notes) == 2

    def test_decay_toward_zero(self):
        controller = _controller()
        bias = BiasState(
            clarity_threshold_bias=0.1,
            questioning_bias=-0.01,
            last_updated=NOW - 600,
        )
        decayed = controller._decay(bias, NOW)
        assert decayed.clarity_threshold_bias == pytest.approx(0.08)
        assert decayed.questioning_bias == pytest.approx(0.0)

    def test_decay_is_capped_per_decision(self):
        controller = _controller()
        bias = BiasState(clarity_threshold_bias=0.15, last_updated=NOW - 6000)
        assert controller._decay(bias, NOW).clarity_threshold_bias == pytest.approx(0.10)

    def test_thresholds_are_bounded(self):
        config = DecisionConfig(base_threshold=0.55)
        controller = _controller(config, bias=BiasState(clarity_threshold_bias=-0.15, last_updated=NOW))
        store_threshold, _ = controller.thresholds()
        assert store_threshold == pytest.approx(0.5)

    def test_correction_raises_threshold(self):
        controller = _controller()
        controller.decide(_reasoning("Dana leads Atlas", 0.9, 0.1))
        controller.decide(_reasoning("Dana leads Atlas", 0.85, 0.1))
        controller.decide(_reasoning("Budget is approved", 0.9, 0.1))
        assert controller.thresholds()[0] == pytest.approx(0.73)
        assert "1 corrections raised the clarity threshold" in controller.state.bias.notes


class TestPersistence:
    def test_state_survives_reload(self):
        store = RecordStore(InMemoryBackend(), now_fn=lambda: NOW)
        controller = _controller(store=store)
        controller.decide(_reasoning("Dana leads Atlas"))

        assert store.get_bias_snapshot() is not None
        assert len(store.get(DECISION_HISTORY, DecisionLogEntry)) == 1

        reloaded = DecisionController(DecisionConfig(), store=store, now_fn=lambda: NOW)
        assert len(reloaded.state.history) == 1
        assert reloaded.recent_similar("dana leads atlas") is not None
