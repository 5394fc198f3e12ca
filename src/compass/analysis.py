"""Per-turn analysis signals and the effective state they produce.

The analysis record comes from an external model call and is never trusted:
every field is checked on the way in and anything missing or malformed is
read as "no signal". The schema is versioned so older or newer producers
degrade to neutral values instead of failing the turn.
"""

import logging
import math
from dataclasses import dataclass, replace

from .config import HYPOTHESIS_MIN_CONFIDENCE, HYPOTHESIS_SWITCH_MARGIN
from .state import ConstraintCategory, ConversationState, LowEffortTracking, clamp_score

logger = logging.getLogger("compass.analysis")

ANALYSIS_SCHEMA_VERSION = "2"

EXPLICIT_REQUESTS = ("summary", "next_steps", "save_progress")


@dataclass(frozen=True)
class UnifiedAnalysis:
    schema_version: str = ANALYSIS_SCHEMA_VERSION
    low_effort: bool = False
    hypothesis_rejected: bool = False
    hypothesis_affirmed: bool = False
    tactical_question: bool = False
    overwhelm: bool = False
    hesitation: bool = False
    financial_constraint: bool = False
    ready_to_commit: bool = False
    exit_intent: bool = False
    blocker_mentions: tuple = ()
    clarity_delta: float = 0.0
    confidence_delta: float = 0.0
    capacity_delta: float = 0.0
    constraint_category: ConstraintCategory | None = None
    constraint_confidence: float = 0.0
    surface_category: ConstraintCategory | None = None
    root_signal: ConstraintCategory | None = None
    explicit_request: str | None = None
    evidence: str = ""


NEUTRAL_ANALYSIS = UnifiedAnalysis()

_BOOL_FIELDS = (
    "low_effort",
    "hypothesis_rejected",
    "hypothesis_affirmed",
    "tactical_question",
    "overwhelm",
    "hesitation",
    "financial_constraint",
    "ready_to_commit",
    "exit_intent",
)
_DELTA_FIELDS = ("clarity_delta", "confidence_delta", "capacity_delta")
_CATEGORY_FIELDS = ("constraint_category", "surface_category", "root_signal")


def parse_analysis(raw) -> UnifiedAnalysis:
    """Build a UnifiedAnalysis from an untrusted dict. Never raises."""
    if not isinstance(raw, dict):
        logger.debug("Analysis payload is %s, using neutral analysis", type(raw).__name__)
        return NEUTRAL_ANALYSIS

    version = str(raw.get("schema_version", ANALYSIS_SCHEMA_VERSION))
    if version != ANALYSIS_SCHEMA_VERSION:
        logger.debug("Analysis schema %s (current %s), reading known fields only", version, ANALYSIS_SCHEMA_VERSION)

    values = {"schema_version": version}

    for name in _BOOL_FIELDS:
        value = raw.get(name, False)
        if isinstance(value, bool):
            values[name] = value
        else:
            logger.debug("Analysis field %s malformed (%r), treating as no signal", name, value)

    for name in _DELTA_FIELDS:
        number = _number(raw.get(name, 0.0))
        if number is None:
            logger.debug("Analysis field %s malformed (%r), treating as 0", name, raw.get(name))
            continue
        values[name] = max(-1.0, min(1.0, number))

    for name in _CATEGORY_FIELDS:
        value = raw.get(name)
        if value is None:
            continue
        try:
            values[name] = ConstraintCategory(value)
        except ValueError:
            logger.debug("Analysis field %s has unknown category %r", name, value)

    confidence = _number(raw.get("constraint_confidence", 0.0))
    if confidence is not None:
        values["constraint_confidence"] = clamp_score(confidence)

    blockers = raw.get("blocker_mentions", [])
    if isinstance(blockers, (list, tuple)):
        values["blocker_mentions"] = tuple(b.strip() for b in blockers if isinstance(b, str) and b.strip())

    request = raw.get("explicit_request")
    if request in EXPLICIT_REQUESTS:
        values["explicit_request"] = request

    evidence = raw.get("evidence", "")
    if isinstance(evidence, str):
        values["evidence"] = evidence

    return UnifiedAnalysis(**values)


def _number(value) -> float | None:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    if not math.isfinite(value):
        return None
    return float(value)


# ---------------------------------------------------------------------------
# Effective state
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class EffectiveState:
    """State as this turn's decision should see it, before anything is committed."""

    state: ConversationState
    analysis: UnifiedAnalysis
    hypothesis_changed: bool = False

    @property
    def has_blockers(self) -> bool:
        return bool(self.analysis.blocker_mentions)

    @property
    def ready_to_close(self) -> bool:
        return self.analysis.ready_to_commit and not self.analysis.hesitation


def update_sticky_hypothesis(
    current: ConstraintCategory | None,
    current_confidence: float,
    analysis: UnifiedAnalysis,
) -> tuple:
    """Return (hypothesis, confidence, changed).

    A competing category only replaces an established hypothesis when it
    beats it by HYPOTHESIS_SWITCH_MARGIN, so one ambiguous message cannot
    flip the diagnosis back and forth.
    """
    proposed = analysis.constraint_category
    if proposed is None:
        return current, current_confidence, False

    new_confidence = analysis.constraint_confidence
    if proposed == current:
        return current, max(current_confidence, new_confidence), False
    if current is None or current_confidence < HYPOTHESIS_MIN_CONFIDENCE:
        return proposed, new_confidence, True
    if new_confidence >= current_confidence + HYPOTHESIS_SWITCH_MARGIN:
        logger.info(
            "Hypothesis switch %s -> %s (%.2f -> %.2f)",
            current.value, proposed.value, current_confidence, new_confidence,
        )
        return proposed, new_confidence, True
    return current, current_confidence, False


def resolve_effective_state(state: ConversationState, analysis: UnifiedAnalysis) -> EffectiveState:
    """Fold this turn's analysis into a working copy of the state."""
    hypothesis, confidence, changed = update_sticky_hypothesis(
        state.hypothesis, state.hypothesis_confidence, analysis
    )
    if analysis.hypothesis_rejected and not changed:
        confidence = clamp_score(confidence - HYPOTHESIS_SWITCH_MARGIN)

    if analysis.hypothesis_affirmed or changed:
        resistance = 0
    elif analysis.hypothesis_rejected:
        resistance = state.resistance_tracking + 1
    else:
        resistance = state.resistance_tracking

    root_signals = state.root_signals
    if analysis.root_signal is not None and analysis.root_signal not in root_signals:
        root_signals = root_signals + (analysis.root_signal,)

    working = replace(
        state,
        scores=state.scores.adjusted(
            clarity=analysis.clarity_delta,
            confidence=analysis.confidence_delta,
            capacity=analysis.capacity_delta,
        ),
        hypothesis=hypothesis,
        hypothesis_confidence=confidence,
        resistance_tracking=resistance,
        tactical_drift=state.tactical_drift + 1 if analysis.tactical_question else 0,
        low_effort=LowEffortTracking(
            consecutive=state.low_effort.consecutive + 1 if analysis.low_effort else 0,
            pushback_level=state.low_effort.pushback_level,
        ),
        surface_category=analysis.surface_category or state.surface_category,
        root_signals=root_signals,
    )
    return EffectiveState(state=working, analysis=analysis, hypothesis_changed=changed)
