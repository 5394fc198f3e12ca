"""Conversation state: the durable per-session ledger the decision engine reads and updates."""

import logging
from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType

logger = logging.getLogger("compass.state")


class InvalidStateError(ValueError):
    """A persisted record does not fit the state schema (unknown phase, bad shape)."""


class Phase(str, Enum):
    INTAKE = "intake"
    DIAGNOSTIC = "diagnostic"
    DEPTH_INQUIRY = "depth_inquiry"
    HYPOTHESIS = "hypothesis"
    CROSS_MAPPING = "cross_mapping"
    BLOCKER_CHECK = "blocker_check"
    CLOSING = "closing"
    COMPLETE = "complete"


PHASE_ORDER = list(Phase)


def phase_index(phase: Phase) -> int:
    return PHASE_ORDER.index(phase)


def next_phase(phase: Phase) -> Phase:
    """The phase after `phase`; COMPLETE is its own successor."""
    idx = min(phase_index(phase) + 1, len(PHASE_ORDER) - 1)
    return PHASE_ORDER[idx]


class ConstraintCategory(str, Enum):
    STRATEGY = "strategy"
    EXECUTION = "execution"
    ENERGY = "energy"


class ClosingStage(str, Enum):
    NOT_STARTED = "not_started"
    REFLECT_DONE = "reflect_done"
    ACTION_COMMIT_DONE = "action_commit_done"


class ClosingTrack(str, Enum):
    SELF_DIRECTED = "self_directed"
    ASSISTED = "assisted"


def clamp_score(value: float) -> float:
    return max(0.0, min(1.0, float(value)))


@dataclass(frozen=True)
class Scores:
    clarity: float = 0.0
    confidence: float = 0.5
    capacity: float = 0.5

    def adjusted(self, clarity: float = 0.0, confidence: float = 0.0, capacity: float = 0.0) -> "Scores":
        return Scores(
            clarity=clamp_score(self.clarity + clarity),
            confidence=clamp_score(self.confidence + confidence),
            capacity=clamp_score(self.capacity + capacity),
        )


@dataclass(frozen=True)
class ClosingSequence:
    stage: ClosingStage = ClosingStage.NOT_STARTED
    track: ClosingTrack | None = None
    turns_in_closing: int = 0


@dataclass(frozen=True)
class LowEffortTracking:
    consecutive: int = 0
    pushback_level: int = 0  # 0 = never pushed back; only ever goes up


@dataclass(frozen=True)
class ConversationState:
    phase: Phase = Phase.INTAKE
    turns_total: int = 0
    turns_in_phase: int = 0
    scores: Scores = field(default_factory=Scores)
    constraint_category: ConstraintCategory | None = None
    hypothesis: ConstraintCategory | None = None
    hypothesis_confidence: float = 0.0
    resistance_tracking: int = 0
    tactical_drift: int = 0
    tactical_redirects: int = 0
    low_effort: LowEffortTracking = field(default_factory=LowEffortTracking)
    surface_category: ConstraintCategory | None = None
    root_signals: tuple = ()
    cross_map_attempts: tuple = ()
    variety_tracker: tuple = ()
    closing_sequence: ClosingSequence = field(default_factory=ClosingSequence)
    module0_context: MappingProxyType = field(default_factory=lambda: MappingProxyType({}))
    component_flags: dict = field(default_factory=dict)


# Fields only the decision engine may write. Component flags belong to the component engine,
# module0_context to nobody after session start.
DECISION_OWNED_FIELDS = frozenset(
    f for f in ConversationState.__dataclass_fields__ if f not in ("component_flags", "module0_context")
)


def init_conversation_state(module0_context: dict | None = None) -> ConversationState:
    """Fresh state for a new session. The intake facts are frozen here for good."""
    return ConversationState(module0_context=MappingProxyType(dict(module0_context or {})))


# ---------------------------------------------------------------------------
# Serialization
# ---------------------------------------------------------------------------


def state_to_dict(state: ConversationState) -> dict:
    """Plain JSON-ready dict of the state."""
    closing = state.closing_sequence
    return {
        "phase": state.phase.value,
        "turns_total": state.turns_total,
        "turns_in_phase": state.turns_in_phase,
        "scores": {
            "clarity": state.scores.clarity,
            "confidence": state.scores.confidence,
            "capacity": state.scores.capacity,
        },
        "constraint_category": _enum_value(state.constraint_category),
        "hypothesis": _enum_value(state.hypothesis),
        "hypothesis_confidence": state.hypothesis_confidence,
        "resistance_tracking": state.resistance_tracking,
        "tactical_drift": state.tactical_drift,
        "tactical_redirects": state.tactical_redirects,
        "low_effort": {
            "consecutive": state.low_effort.consecutive,
            "pushback_level": state.low_effort.pushback_level,
        },
        "surface_category": _enum_value(state.surface_category),
        "root_signals": [c.value for c in state.root_signals],
        "cross_map_attempts": list(state.cross_map_attempts),
        "variety_tracker": [str(getattr(a, "value", a)) for a in state.variety_tracker],
        "closing_sequence": {
            "stage": closing.stage.value,
            "track": _enum_value(closing.track),
            "turns_in_closing": closing.turns_in_closing,
        },
        "module0_context": dict(state.module0_context),
        "component_flags": dict(state.component_flags),
    }


def state_from_dict(data: dict) -> ConversationState:
    """Rebuild state from a persisted dict.

    Missing keys fall back to the defaults of a fresh state so older records
    keep loading. Values that are present but outside the schema (an unknown
    phase, a category that does not exist) raise InvalidStateError.
    """
    if not isinstance(data, dict):
        raise InvalidStateError(f"State record must be a dict, got {type(data).__name__}")

    defaults = ConversationState()
    try:
        phase = Phase(data.get("phase", defaults.phase.value))
    except ValueError:
        logger.error("Persisted state has unknown phase %r", data.get("phase"))
        raise InvalidStateError(f"Unknown phase: {data.get('phase')!r}")

    scores_data = data.get("scores") or {}
    low_effort_data = data.get("low_effort") or {}
    closing_data = data.get("closing_sequence") or {}

    try:
        closing = ClosingSequence(
            stage=ClosingStage(closing_data.get("stage", ClosingStage.NOT_STARTED.value)),
            track=ClosingTrack(closing_data["track"]) if closing_data.get("track") else None,
            turns_in_closing=int(closing_data.get("turns_in_closing", 0)),
        )
        return ConversationState(
            phase=phase,
            turns_total=int(data.get("turns_total", 0)),
            turns_in_phase=int(data.get("turns_in_phase", 0)),
            scores=Scores(
                clarity=clamp_score(scores_data.get("clarity", defaults.scores.clarity)),
                confidence=clamp_score(scores_data.get("confidence", defaults.scores.confidence)),
                capacity=clamp_score(scores_data.get("capacity", defaults.scores.capacity)),
            ),
            constraint_category=_category(data.get("constraint_category")),
            hypothesis=_category(data.get("hypothesis")),
            hypothesis_confidence=clamp_score(data.get("hypothesis_confidence", 0.0)),
            resistance_tracking=int(data.get("resistance_tracking", 0)),
            tactical_drift=int(data.get("tactical_drift", 0)),
            tactical_redirects=int(data.get("tactical_redirects", 0)),
            low_effort=LowEffortTracking(
                consecutive=int(low_effort_data.get("consecutive", 0)),
                pushback_level=int(low_effort_data.get("pushback_level", 0)),
            ),
            surface_category=_category(data.get("surface_category")),
            root_signals=tuple(_category(c) for c in data.get("root_signals", [])),
            cross_map_attempts=tuple(data.get("cross_map_attempts", [])),
            variety_tracker=tuple(data.get("variety_tracker", [])),
            closing_sequence=closing,
            module0_context=MappingProxyType(dict(data.get("module0_context") or {})),
            component_flags=dict(data.get("component_flags") or {}),
        )
    except (TypeError, ValueError) as e:
        if isinstance(e, InvalidStateError):
            raise
        raise InvalidStateError(f"Malformed state record: {e}") from e


def _category(value) -> ConstraintCategory | None:
    if value in (None, ""):
        return None
    try:
        return ConstraintCategory(value)
    except ValueError:
        raise InvalidStateError(f"Unknown constraint category: {value!r}")


def _enum_value(value):
    return value.value if value is not None else None
