"""Decision engine: picks one conversational action and at most one phase step per turn.

Rules run in a fixed priority order and the first one that fires wins:

    post-completion  >  turn limit  >  exit intent  >  overrides  >  closing script  >  phase default

The clarity gates are not a rule of their own: they veto a phase step inside
the phase default, so every override still outranks them.
`decide` is pure. It reads a ConversationState and the turn's analysis and
returns a Decision holding every field change for the turn; nothing is
written until the coordinator calls `apply_decision` and commits.
"""

import logging
from dataclasses import dataclass, field, replace
from enum import Enum

from . import config
from .analysis import NEUTRAL_ANALYSIS, EffectiveState, UnifiedAnalysis, parse_analysis, resolve_effective_state
from .cross_mapping import detect_upstream_constraint, pair_key, should_attempt_cross_mapping
from .state import (
    DECISION_OWNED_FIELDS,
    ClosingStage,
    ClosingTrack,
    ConstraintCategory,
    ConversationState,
    LowEffortTracking,
    Phase,
    clamp_score,
    phase_index,
)
from .variety import record_action, should_skip_reflection

logger = logging.getLogger("compass.decision")


class Action(str, Enum):
    GATHER_CONTEXT = "gather_context"
    EXPLORE_BACKGROUND = "explore_background"
    ASK_DIAGNOSTIC_QUESTION = "ask_diagnostic_question"
    REFLECT_BACK = "reflect_back"
    DEPTH_INQUIRY = "depth_inquiry"
    PROBE_EXAMPLE = "probe_example"
    PRESENT_HYPOTHESIS = "present_hypothesis"
    VALIDATE_HYPOTHESIS = "validate_hypothesis"
    CONFIRM_ROOT_CONSTRAINT = "confirm_root_constraint"
    TRACE_UPSTREAM = "trace_upstream"
    CHECK_BLOCKERS = "check_blockers"
    EXPLORE_BLOCKER = "explore_blocker"
    # Overrides
    HYPOTHESIS_PIVOT = "hypothesis_pivot"
    CROSS_MAP_REDIRECT = "cross_map_redirect"
    TACTICAL_REDIRECT = "tactical_redirect"
    LOW_EFFORT_PUSHBACK = "low_effort_pushback"
    CONTAIN = "contain"
    TURN_LIMIT_CLOSE = "turn_limit_close"
    GRACEFUL_EXIT = "graceful_exit"
    LOW_ENGAGEMENT_EXIT = "low_engagement_exit"
    # Closing script
    CLOSING_SELF_DIRECTED_REFLECT = "closing_self_directed_reflect"
    CLOSING_ASSISTED_REFLECT = "closing_assisted_reflect"
    CLOSING_SELF_DIRECTED_ACTION = "closing_self_directed_action"
    CLOSING_ASSISTED_COMMIT = "closing_assisted_commit"
    CLOSING_BLOCKER_CHECK = "closing_blocker_check"
    POST_COMPLETION = "post_completion"


# Canonical action and designated alternate for each phase.
PHASE_ACTIONS = {
    Phase.INTAKE: (Action.GATHER_CONTEXT, Action.EXPLORE_BACKGROUND),
    Phase.DIAGNOSTIC: (Action.ASK_DIAGNOSTIC_QUESTION, Action.REFLECT_BACK),
    Phase.DEPTH_INQUIRY: (Action.DEPTH_INQUIRY, Action.PROBE_EXAMPLE),
    Phase.HYPOTHESIS: (Action.PRESENT_HYPOTHESIS, Action.VALIDATE_HYPOTHESIS),
    Phase.CROSS_MAPPING: (Action.CONFIRM_ROOT_CONSTRAINT, Action.TRACE_UPSTREAM),
    Phase.BLOCKER_CHECK: (Action.CHECK_BLOCKERS, Action.EXPLORE_BLOCKER),
    Phase.CLOSING: (Action.CLOSING_ASSISTED_REFLECT, None),
    Phase.COMPLETE: (Action.POST_COMPLETION, None),
}

# Held in place by a failing gate: keep digging for clarity.
GATE_HOLD_ACTIONS = (Action.DEPTH_INQUIRY, Action.PROBE_EXAMPLE)


@dataclass
class Decision:
    action: Action
    overlay_id: str
    phase_from: Phase
    phase_to: Phase | None = None
    updates: dict = field(default_factory=dict)
    reasoning: str = ""
    redirect_to: ConstraintCategory | None = None
    effective: EffectiveState | None = None

    @property
    def phase(self) -> Phase:
        """Phase the session is in once this decision is applied."""
        return self.phase_to or self.phase_from


@dataclass
class _Choice:
    action: Action
    reasoning: str
    overlay_id: str | None = None
    phase_to: Phase | None = None
    updates: dict = field(default_factory=dict)
    redirect_to: ConstraintCategory | None = None


# ===================================================================
# Public API
# ===================================================================


def decide(state: ConversationState, analysis: UnifiedAnalysis) -> Decision:
    """Select this turn's action. Always returns a Decision."""
    if not isinstance(analysis, UnifiedAnalysis):
        analysis = parse_analysis(analysis)
    try:
        decision = _decide(state, analysis)
    except Exception:
        logger.exception("Decision engine failed on turn %d, using phase default", state.turns_total + 1)
        return _fallback_decision(state)

    logger.info(
        "Decision turn %d: action=%s phase=%s->%s reason=%s",
        state.turns_total + 1,
        decision.action.value,
        decision.phase_from.value,
        decision.phase.value,
        decision.reasoning,
    )
    return decision


def apply_decision(state: ConversationState, decision: Decision) -> ConversationState:
    """Return the state with the decision's updates applied."""
    foreign = set(decision.updates) - DECISION_OWNED_FIELDS
    if foreign:
        raise ValueError(f"Decision writes fields it does not own: {sorted(foreign)}")
    return replace(state, **decision.updates)


# ===================================================================
# Rule evaluation
# ===================================================================


def _decide(state: ConversationState, analysis: UnifiedAnalysis) -> Decision:
    # Absorbing terminal state: nothing moves except the turn counter
    if state.phase == Phase.COMPLETE:
        return Decision(
            action=Action.POST_COMPLETION,
            overlay_id=Action.POST_COMPLETION.value,
            phase_from=state.phase,
            updates={"turns_total": state.turns_total + 1},
            reasoning="Conversation complete",
            effective=EffectiveState(state=state, analysis=analysis),
        )

    effective = resolve_effective_state(state, analysis)
    for rule in _PRIORITY_RULES:
        choice = rule(state, effective)
        if choice is not None:
            return _assemble(state, effective, choice)

    # _default_phase_action always answers, so this is unreachable
    raise RuntimeError("No decision rule fired")


def _turn_limit(state, eff):
    if state.turns_total + 1 >= config.MAX_CONVERSATION_TURNS:
        return _Choice(
            Action.TURN_LIMIT_CLOSE,
            f"Turn limit {config.MAX_CONVERSATION_TURNS} reached",
            phase_to=Phase.COMPLETE,
        )
    return None


def _exit_intent(state, eff):
    if eff.analysis.exit_intent:
        return _Choice(Action.GRACEFUL_EXIT, "User is ending the conversation", phase_to=Phase.COMPLETE)
    return None


def _hypothesis_pivot(state, eff):
    resistance = max(state.resistance_tracking, eff.state.resistance_tracking)
    if resistance < config.RESISTANCE_THRESHOLD:
        return None
    return _Choice(
        Action.HYPOTHESIS_PIVOT,
        f"Resistance {resistance} >= {config.RESISTANCE_THRESHOLD}",
        updates={
            "resistance_tracking": 0,
            "hypothesis_confidence": clamp_score(
                eff.state.hypothesis_confidence - config.PIVOT_CONFIDENCE_PENALTY
            ),
        },
    )


def _cross_map_redirect(state, eff):
    if not should_attempt_cross_mapping(eff.state):
        return None
    root = detect_upstream_constraint(eff.state)
    key = pair_key(eff.state.surface_category, root)
    return _Choice(
        Action.CROSS_MAP_REDIRECT,
        f"Surface/root mismatch {key}",
        updates={"cross_map_attempts": eff.state.cross_map_attempts + (key,)},
        redirect_to=root,
    )


def _low_engagement_exit(state, eff):
    consecutive = eff.state.low_effort.consecutive
    if consecutive < config.LOW_ENGAGEMENT_EXIT_THRESHOLD:
        return None
    return _Choice(
        Action.LOW_ENGAGEMENT_EXIT,
        f"{consecutive} low-effort turns in a row, offering a way out",
        phase_to=Phase.COMPLETE,
    )


def _tactical_redirect(state, eff):
    s = eff.state
    # Never interrupt the closing script
    if s.phase == Phase.CLOSING:
        return None
    if s.tactical_drift < config.TACTICAL_DRIFT_THRESHOLD:
        return None
    if s.tactical_redirects >= config.TACTICAL_REDIRECT_LIMIT:
        return None
    return _Choice(
        Action.TACTICAL_REDIRECT,
        f"{s.tactical_drift} tactical turns in a row",
        updates={"tactical_drift": 0, "tactical_redirects": s.tactical_redirects + 1},
    )


def _low_effort_pushback(state, eff):
    tracking = eff.state.low_effort
    if tracking.consecutive < config.LOW_EFFORT_THRESHOLD:
        return None
    if tracking.pushback_level >= config.MAX_PUSHBACK_LEVEL:
        return None
    level = tracking.pushback_level + 1
    return _Choice(
        Action.LOW_EFFORT_PUSHBACK,
        f"{tracking.consecutive} low-effort turns, pushback level {level}",
        overlay_id=f"low_effort_pushback_{level}",
        updates={"low_effort": LowEffortTracking(consecutive=0, pushback_level=level)},
    )


def _containment(state, eff):
    if eff.analysis.overwhelm:
        return _Choice(Action.CONTAIN, "User overwhelmed")
    return None


def _closing_sequence(state, eff):
    if eff.state.phase == Phase.CLOSING:
        return _closing_step(eff)
    return None


def _default_phase_action(state, eff):
    s = eff.state
    hold = _gate_hold(eff)
    if hold is not None:
        reasoning, (canonical, alternate) = hold
        return _Choice(_vary(s.variety_tracker, canonical, alternate), reasoning)

    target, updates, reasoning = _advancement(eff)

    # Entering closing runs the first closing turn right away
    if target == Phase.CLOSING:
        choice = _closing_step(eff)
        choice.phase_to = Phase.CLOSING
        choice.updates.update(updates)
        choice.reasoning = f"{reasoning}; {choice.reasoning}"
        return choice

    phase = target or s.phase
    canonical, alternate = PHASE_ACTIONS[phase]
    return _Choice(_vary(s.variety_tracker, canonical, alternate), reasoning, phase_to=target, updates=updates)


def _vary(variety_tracker, canonical: Action, alternate: Action | None) -> Action:
    """Swap to the alternate when the canonical move was just used."""
    if alternate is not None and should_skip_reflection(variety_tracker, canonical):
        last = variety_tracker[-1] if variety_tracker else None
        if last != alternate:
            return alternate
    return canonical


_PRIORITY_RULES = (
    _turn_limit,
    _exit_intent,
    _hypothesis_pivot,
    _cross_map_redirect,
    _low_engagement_exit,
    _tactical_redirect,
    _low_effort_pushback,
    _containment,
    _closing_sequence,
    _default_phase_action,
)


# ===================================================================
# Phase logic
# ===================================================================


def _hypothesis_established(s: ConversationState) -> bool:
    return s.hypothesis is not None and s.hypothesis_confidence >= config.HYPOTHESIS_MIN_CONFIDENCE


def _depth_ready(s: ConversationState) -> bool:
    return s.turns_in_phase >= 1 and _hypothesis_established(s)


def _hypothesis_gate(s: ConversationState) -> bool:
    return s.scores.clarity >= config.HYPOTHESIS_CLARITY_THRESHOLD


def _closing_gate(s: ConversationState) -> bool:
    return s.constraint_category is not None and s.scores.clarity >= config.CLOSING_CLARITY_THRESHOLD


def _blockers_cleared(eff: EffectiveState) -> bool:
    return not eff.has_blockers and not eff.analysis.hesitation


def _gate_hold(eff: EffectiveState) -> tuple | None:
    """Return (reasoning, (canonical, alternate)) when a clarity gate vetoes the next phase step."""
    s = eff.state
    if s.phase == Phase.DEPTH_INQUIRY and _depth_ready(s) and not _hypothesis_gate(s):
        return (
            f"Hypothesis gate: clarity {s.scores.clarity:.2f} < {config.HYPOTHESIS_CLARITY_THRESHOLD}",
            PHASE_ACTIONS[Phase.DEPTH_INQUIRY],
        )
    if s.phase == Phase.BLOCKER_CHECK and _blockers_cleared(eff) and not _closing_gate(s):
        return (
            f"Closing gate: category={_value(s.constraint_category)} clarity {s.scores.clarity:.2f}",
            GATE_HOLD_ACTIONS,
        )
    return None


def _advancement(eff: EffectiveState) -> tuple:
    """Return (target phase or None, extra updates, reasoning)."""
    s = eff.state
    if s.phase == Phase.INTAKE and s.turns_in_phase >= config.INTAKE_TURNS:
        return Phase.DIAGNOSTIC, {}, "Intake complete"
    if s.phase == Phase.DIAGNOSTIC and s.turns_in_phase >= 1 and _hypothesis_established(s):
        return Phase.DEPTH_INQUIRY, {}, f"Working hypothesis {s.hypothesis.value} ({s.hypothesis_confidence:.2f})"
    if s.phase == Phase.DEPTH_INQUIRY and _depth_ready(s) and _hypothesis_gate(s):
        return Phase.HYPOTHESIS, {}, "Clear enough to name the constraint"
    if s.phase == Phase.HYPOTHESIS and eff.analysis.hypothesis_affirmed and s.hypothesis is not None:
        updates = {}
        if s.constraint_category is None:
            updates["constraint_category"] = s.hypothesis
        return Phase.CROSS_MAPPING, updates, f"User affirmed {s.hypothesis.value}"
    if s.phase == Phase.CROSS_MAPPING:
        return Phase.BLOCKER_CHECK, {}, "Root constraint confirmed"
    if s.phase == Phase.BLOCKER_CHECK and _blockers_cleared(eff) and _closing_gate(s):
        return Phase.CLOSING, {}, "No open blockers"
    return None, {}, f"Continue {s.phase.value}"


def _closing_step(eff: EffectiveState) -> _Choice:
    s = eff.state
    sequence = s.closing_sequence

    if sequence.stage == ClosingStage.NOT_STARTED:
        if eff.analysis.financial_constraint or s.scores.capacity < config.LOW_CAPACITY_THRESHOLD:
            track, action = ClosingTrack.SELF_DIRECTED, Action.CLOSING_SELF_DIRECTED_REFLECT
        else:
            track, action = ClosingTrack.ASSISTED, Action.CLOSING_ASSISTED_REFLECT
        return _Choice(
            action,
            f"Closing turn 1, {track.value} track",
            updates={"closing_sequence": replace(sequence, stage=ClosingStage.REFLECT_DONE, track=track)},
        )

    if sequence.stage == ClosingStage.REFLECT_DONE:
        if eff.has_blockers or eff.analysis.hesitation:
            action = Action.CLOSING_BLOCKER_CHECK
        elif sequence.track == ClosingTrack.SELF_DIRECTED:
            action = Action.CLOSING_SELF_DIRECTED_ACTION
        else:
            action = Action.CLOSING_ASSISTED_COMMIT
        return _Choice(
            action,
            "Closing turn 2",
            phase_to=Phase.COMPLETE,
            updates={"closing_sequence": replace(sequence, stage=ClosingStage.ACTION_COMMIT_DONE)},
        )

    return _Choice(Action.POST_COMPLETION, "Closing script already finished", phase_to=Phase.COMPLETE)


# ===================================================================
# Assembly
# ===================================================================


def _assemble(state: ConversationState, eff: EffectiveState, choice: _Choice) -> Decision:
    phase_to = choice.phase_to if choice.phase_to not in (None, state.phase) else None
    if phase_to is not None and phase_index(phase_to) < phase_index(state.phase):
        logger.error("Refusing phase regression %s -> %s", state.phase.value, phase_to.value)
        phase_to = None

    s = eff.state
    updates = {
        "scores": s.scores,
        "hypothesis": s.hypothesis,
        "hypothesis_confidence": s.hypothesis_confidence,
        "resistance_tracking": s.resistance_tracking,
        "tactical_drift": s.tactical_drift,
        "low_effort": s.low_effort,
        "surface_category": s.surface_category,
        "root_signals": s.root_signals,
    }
    updates.update(choice.updates)

    # A diagnosis, once made, stays
    if state.constraint_category is not None:
        updates.pop("constraint_category", None)

    closing = updates.get("closing_sequence", state.closing_sequence)
    if state.phase == Phase.CLOSING or phase_to == Phase.CLOSING:
        closing = replace(closing, turns_in_closing=closing.turns_in_closing + 1)
    updates["closing_sequence"] = closing

    updates["variety_tracker"] = record_action(state.variety_tracker, choice.action)
    updates["phase"] = phase_to or state.phase
    updates["turns_in_phase"] = 0 if phase_to else state.turns_in_phase + 1
    updates["turns_total"] = state.turns_total + 1

    return Decision(
        action=choice.action,
        overlay_id=choice.overlay_id or choice.action.value,
        phase_from=state.phase,
        phase_to=phase_to,
        updates=updates,
        reasoning=choice.reasoning,
        redirect_to=choice.redirect_to,
        effective=eff,
    )


def _fallback_decision(state: ConversationState) -> Decision:
    canonical, _ = PHASE_ACTIONS.get(state.phase, (Action.ASK_DIAGNOSTIC_QUESTION, None))
    return Decision(
        action=canonical,
        overlay_id=canonical.value,
        phase_from=state.phase,
        updates={"turns_total": state.turns_total + 1},
        reasoning="Fallback after engine error",
        effective=EffectiveState(state=state, analysis=NEUTRAL_ANALYSIS),
    )


def _value(category):
    return category.value if category is not None else None
