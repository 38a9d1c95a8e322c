"""
Cliper Decision Controller
--------------------------
Decides whether an assessed update is stored, needs clarification, or is
left alone, and drifts its own thresholds from recent outcomes.

Per decision:
1. Decay each bias toward zero in proportion to the minutes elapsed since
   the last update (capped per decision).
2. Read feedback from the last ``feedback_window`` decisions and nudge the
   biases, then clamp each to ``±bias_limit``.
3. Apply the decision rule and append the result to the history.

State is an explicit ``ControllerState`` so controllers can be built per
cluster and tested in isolation.
"""

import re
import logging
import time
from dataclasses import dataclass, field
from typing import Callable, List, Optional, Tuple

from cliper.core.config import DecisionConfig
from cliper.core.types import DECISION_HISTORY, BiasState, clamp
from cliper.reasoning.models import (
    Decision,
    DecisionAction,
    DecisionLogEntry,
    ReasoningResult,
)

logger = logging.getLogger("Cliper.Reasoning.Controller")

CORRECTION_LANGUAGE = re.compile(
    r"\b(correction|actually|wrong|fix(?:ed)?|revise[ds]?|update[ds]?|instead|not anymore|no longer)\b",
    re.IGNORECASE,
)
MAX_BIAS_NOTES = 10

# Per-occurrence nudges: (clarity_threshold, ambiguity_tolerance, questioning)
CORRECTION_NUDGE = (0.03, -0.02, 0.0)
REINFORCEMENT_NUDGE = (-0.02, 0.02, 0.0)
UNANSWERED_NUDGE = (0.0, 0.0, -0.03)
ANSWERED_NUDGE = (0.0, 0.01, 0.02)
STABLE_NUDGE = (-0.01, 0.01, 0.0)


def is_similar(a: str, b: str) -> bool:
    """Case-insensitive substring match in either direction; empty text never matches."""
    a = (a or "").strip().lower()
    b = (b or "").strip().lower()
    if not a or not b:
        return False
    return a in b or b in a


def has_correction_language(text: str) -> bool:
    return bool(CORRECTION_LANGUAGE.search(text or ""))


@dataclass
class FeedbackSignals:
    corrections: int = 0
    reinforcements: int = 0
    unanswered: int = 0
    answered: int = 0
    stable: int = 0


def collect_feedback(window: List[DecisionLogEntry]) -> FeedbackSignals:
    """Count the feedback signals present in ``window`` (oldest first)."""
    signals = FeedbackSignals()
    for j, later in enumerate(window):
        later_summary = later.reasoning.summary_of_change
        for earlier in reversed(window[:j]):
            if not is_similar(earlier.reasoning.summary_of_change, later_summary):
                continue
            earlier_action = earlier.decision.action
            later_action = later.decision.action
            if earlier_action == DecisionAction.STORE_MEMORY and later_action == DecisionAction.STORE_MEMORY:
                improved = (
                    later.reasoning.confidence > earlier.reasoning.confidence
                    or later.reasoning.ambiguity < earlier.reasoning.ambiguity
                )
                if has_correction_language(later_summary) or not improved:
                    signals.corrections += 1
                else:
                    signals.reinforcements += 1
            elif (
                earlier_action == later_action
                and later_action != DecisionAction.ASK_CLARIFYING_QUESTIONS
                and not has_correction_language(later_summary)
            ):
                signals.stable += 1
            break

    for i, entry in enumerate(window):
        if entry.decision.action != DecisionAction.ASK_CLARIFYING_QUESTIONS:
            continue
        followed_up = any(
            later.decision.action == DecisionAction.STORE_MEMORY
            and is_similar(entry.reasoning.summary_of_change, later.reasoning.summary_of_change)
            for later in window[i + 1:]
        )
        if followed_up:
            signals.answered += 1
        else:
            signals.unanswered += 1
    return signals


@dataclass
class ControllerState:
    """Bias terms plus the rolling decision history they are derived from."""
    bias: BiasState = field(default_factory=BiasState)
    history: List[DecisionLogEntry] = field(default_factory=list)

    @classmethod
    def from_store(cls, store) -> "ControllerState":
        bias = store.get_bias_snapshot() or BiasState()
        history = store.get(DECISION_HISTORY, DecisionLogEntry)
        return cls(bias=bias, history=sorted(history, key=lambda e: e.timestamp))


class DecisionController:
    def __init__(
        self,
        config: Optional[DecisionConfig] = None,
        state: Optional[ControllerState] = None,
        *,
        store=None,
        now_fn: Callable[[], float] = time.time,
    ) -> None:
        self.config = config or DecisionConfig()
        self.store = store
        self._now_fn = now_fn
        if state is None:
            state = ControllerState.from_store(store) if store is not None else ControllerState()
        self.state = state

    # ──────────────────────────────────────────────────────────────
    # Bias drift
    # ──────────────────────────────────────────────────────────────

    def _decay(self, bias: BiasState, now: float) -> BiasState:
        elapsed_minutes = max(0.0, now - bias.last_updated) / 60.0
        amount = min(self.config.decay_per_minute * elapsed_minutes, self.config.max_decay_per_tick)
        if amount <= 0:
            return bias

        def toward_zero(value: float) -> float:
            step = min(abs(value), amount)
            return value - step if value > 0 else value + step

        return bias.model_copy(
            update={
                "clarity_threshold_bias": toward_zero(bias.clarity_threshold_bias),
                "ambiguity_tolerance_bias": toward_zero(bias.ambiguity_tolerance_bias),
                "questioning_bias": toward_zero(bias.questioning_bias),
            }
        )

    def _apply_feedback(self, bias: BiasState, signals: FeedbackSignals) -> Tuple[BiasState, List[str]]:
        clarity = bias.clarity_threshold_bias
        tolerance = bias.ambiguity_tolerance_bias
        questioning = bias.questioning_bias
        notes: List[str] = []

        for count, nudge, label in (
            (signals.corrections, CORRECTION_NUDGE, "corrections raised the clarity threshold"),
            (signals.reinforcements, REINFORCEMENT_NUDGE, "reinforcements relaxed the clarity threshold"),
            (signals.unanswered, UNANSWERED_NUDGE, "unanswered clarifications lowered questioning"),
            (signals.answered, ANSWERED_NUDGE, "answered clarifications raised questioning"),
            (signals.stable, STABLE_NUDGE, "stable repeats raised ambiguity tolerance"),
        ):
            if not count:
                continue
            clarity += nudge[0] * count
            tolerance += nudge[1] * count
            questioning += nudge[2] * count
            notes.append(f"{count} {label}")

        limit = self.config.bias_limit
        updated = bias.model_copy(
            update={
                "clarity_threshold_bias": clamp(clarity, -limit, limit),
                "ambiguity_tolerance_bias": clamp(tolerance, -limit, limit),
                "questioning_bias": clamp(questioning, -limit, limit),
            }
        )
        return updated, notes

    def recent_similar(self, summary: str) -> Optional[DecisionLogEntry]:
        """Most recent similar decision among the last ``similar_lookback`` entries."""
        for entry in reversed(self.state.history[-self.config.similar_lookback:]):
            if is_similar(summary, entry.reasoning.summary_of_change):
                return entry
        return None

    def thresholds(self) -> Tuple[float, float]:
        """``(store_threshold, ask_threshold)`` under the current biases."""
        bias = self.state.bias
        cfg = self.config
        store_threshold = clamp(cfg.base_threshold + bias.clarity_threshold_bias, cfg.threshold_floor, cfg.threshold_ceiling)
        ask_threshold = clamp(cfg.base_threshold + bias.questioning_bias, cfg.threshold_floor, cfg.threshold_ceiling)
        return store_threshold, ask_threshold

    # ──────────────────────────────────────────────────────────────
    # Decision
    # ──────────────────────────────────────────────────────────────

    def decide(self, reasoning: ReasoningResult) -> Decision:
        now = self._now_fn()
        bias = self._decay(self.state.bias, now)
        window = self.state.history[-self.config.feedback_window:]
        bias, notes = self._apply_feedback(bias, collect_feedback(window))
        bias = bias.model_copy(
            update={"last_updated": now, "notes": (list(bias.notes) + notes)[-MAX_BIAS_NOTES:]}
        )
        self.state.bias = bias

        store_threshold, ask_threshold = self.thresholds()
        past = self.recent_similar(reasoning.summary_of_change)
        effective_ambiguity = max(0.0, reasoning.ambiguity - bias.ambiguity_tolerance_bias)
        clarity = reasoning.confidence * (1 - effective_ambiguity)
        support = self.config.similar_bonus if past else 0.0

        if clarity + support >= store_threshold:
            decision = Decision(
                action=DecisionAction.STORE_MEMORY,
                reasons=[
                    f"Clarity score suggests the update is well understood "
                    f"({reasoning.confidence:.2f} confidence, {reasoning.ambiguity:.2f} ambiguity).",
                    "Recent similar decision reduced uncertainty." if past else "No conflicting history found.",
                ],
                memory_notes="; ".join(reasoning.suggested_effects) or None,
                threshold=store_threshold,
                clarity_score=clarity,
            )
            base = "Information is stable enough to persist; avoiding redundant questions."
        elif (
            reasoning.questions_to_ask
            and clarity < ask_threshold
            and not (past and past.decision.follow_up_questions)
        ):
            decision = Decision(
                action=DecisionAction.ASK_CLARIFYING_QUESTIONS,
                reasons=[
                    f"Ambiguity remains ({reasoning.ambiguity:.2f}) and clarity score is low, "
                    "so more details are needed.",
                    "No recent confirmations exist, so clarification is worthwhile.",
                ],
                follow_up_questions=list(reasoning.questions_to_ask),
                threshold=ask_threshold,
                clarity_score=clarity,
            )
            base = "Seek clarity before storing to prevent noisy memories."
        else:
            decision = Decision(
                action=DecisionAction.NO_ACTION,
                reasons=[
                    "Confidence and ambiguity do not justify storage yet.",
                    "Past decisions already considered similar information." if past else "Waiting for a clearer signal.",
                ],
                threshold=store_threshold,
                clarity_score=clarity,
            )
            base = "Conserve cognitive effort until stronger evidence arrives."

        recent_notes = "; ".join(bias.notes[-3:]) or "none"
        explanation = (
            f"{base} Threshold {store_threshold:.2f} (ask below {ask_threshold:.2f}); "
            f"recent adjustments: {recent_notes}."
        )
        self.state.history.append(
            DecisionLogEntry(timestamp=now, reasoning=reasoning, decision=decision, explanation=explanation)
        )
        self.state.history = self.state.history[-self.config.history_cap:]
        self._persist()

        logger.info(
            "Decision %s (clarity=%.2f support=%.2f threshold=%.2f)",
            decision.action.value, clarity, support, store_threshold,
        )
        return decision

    def _persist(self) -> None:
        if self.store is None:
            return
        self.store.save_bias_snapshot(self.state.bias)
        self.store.put(DECISION_HISTORY, self.state.history)

    @property
    def last_explanation(self) -> Optional[str]:
        return self.state.history[-1].explanation if self.state.history else None
