"""Response variety: keep the advisor from making the same move twice in a row."""

from .config import VARIETY_HISTORY, VARIETY_WINDOW

REFLECTIVE = "reflective"

# Actions that count as the same kind of move for repetition purposes.
ACTION_CATEGORIES = {
    "reflect_back": REFLECTIVE,
    "closing_self_directed_reflect": REFLECTIVE,
    "closing_assisted_reflect": REFLECTIVE,
    "validate_hypothesis": REFLECTIVE,
}


def action_category(action) -> str | None:
    return ACTION_CATEGORIES.get(str(getattr(action, "value", action)))


def should_skip_reflection(variety_tracker, candidate_action, window: int = VARIETY_WINDOW) -> bool:
    """True if the candidate (or a move of the same category) was used in the last `window` turns."""
    recent = [str(getattr(a, "value", a)) for a in list(variety_tracker)[-window:]]
    candidate = str(getattr(candidate_action, "value", candidate_action))
    if candidate in recent:
        return True
    category = action_category(candidate)
    if category is None:
        return False
    return any(action_category(a) == category for a in recent)


def record_action(variety_tracker, action, history: int = VARIETY_HISTORY) -> tuple:
    """Append `action` and keep only the last `history` entries."""
    value = str(getattr(action, "value", action))
    return (tuple(variety_tracker) + (value,))[-history:]
