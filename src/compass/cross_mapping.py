"""Cross-mapping: spotting surface complaints that point at a deeper root constraint.

A founder who complains about missed deadlines (execution) after saying they
are not sure which market to go after (strategy) is usually describing a
strategy problem. These functions only look at state; the decision engine
records each attempted pair in `cross_map_attempts` so a redirect never
fires twice for the same surface/root pair.
"""

from .state import ConstraintCategory, ConversationState, Phase, phase_index

# Where each surface symptom most often traces back to.
UPSTREAM = {
    ConstraintCategory.EXECUTION: ConstraintCategory.STRATEGY,
    ConstraintCategory.STRATEGY: ConstraintCategory.ENERGY,
    ConstraintCategory.ENERGY: ConstraintCategory.EXECUTION,
}

# Intake key holding the constraint the user named for themselves.
STATED_CONSTRAINT_KEY = "stated_constraint"


def pair_key(surface: ConstraintCategory, root: ConstraintCategory) -> str:
    return f"{surface.value}->{root.value}"


def _earlier_root_signals(state: ConversationState) -> list:
    signals = list(state.root_signals)
    stated = state.module0_context.get(STATED_CONSTRAINT_KEY)
    if stated:
        try:
            category = ConstraintCategory(stated)
        except ValueError:
            category = None
        if category is not None and category not in signals:
            signals.insert(0, category)
    return signals


def detect_upstream_constraint(state: ConversationState) -> ConstraintCategory | None:
    """Root category the current surface complaint likely masks, if any."""
    surface = state.surface_category
    if surface is None:
        return None
    upstream = UPSTREAM[surface]
    if upstream in _earlier_root_signals(state):
        return upstream
    return None


def should_attempt_cross_mapping(state: ConversationState) -> bool:
    if phase_index(state.phase) >= phase_index(Phase.CLOSING):
        return False
    root = detect_upstream_constraint(state)
    if root is None:
        return False
    return pair_key(state.surface_category, root) not in state.cross_map_attempts
