"""Condition language for component rules.

Conditions are small frozen dataclasses combined into trees and checked by
one evaluator. Fields are named through the ContextField enum, so a typo
fails at import time instead of silently reading None at runtime.
"""

from dataclasses import dataclass
from enum import Enum

from .state import ConstraintCategory, Phase


class ContextField(str, Enum):
    TURNS_TOTAL = "turns_total"
    PHASE = "phase"
    ACTION = "action"
    CONSTRAINT_CATEGORY = "constraint_category"
    HYPOTHESIS_CONFIDENCE = "hypothesis_confidence"
    CLARITY = "clarity"
    CONFIDENCE = "confidence"
    CAPACITY = "capacity"
    CLOSING_TRACK = "closing_track"
    HESITATION = "hesitation"
    READY_TO_CLOSE = "ready_to_close"
    HAS_BLOCKERS = "has_blockers"
    EXPLICIT_REQUEST = "explicit_request"


@dataclass(frozen=True)
class EvaluationContext:
    """Flat read-only view rules are evaluated against. One attribute per ContextField."""

    turns_total: int
    phase: Phase
    action: str
    constraint_category: ConstraintCategory | None
    hypothesis_confidence: float
    clarity: float
    confidence: float
    capacity: float
    closing_track: str | None
    hesitation: bool
    ready_to_close: bool
    has_blockers: bool
    explicit_request: str | None

    def get(self, context_field: ContextField):
        return getattr(self, context_field.value)


# ---------------------------------------------------------------------------
# Condition types
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Always:
    pass


@dataclass(frozen=True)
class Eq:
    field: ContextField
    value: object


@dataclass(frozen=True)
class In:
    field: ContextField
    values: tuple


@dataclass(frozen=True)
class AtLeast:
    field: ContextField
    threshold: float


@dataclass(frozen=True)
class AtMost:
    field: ContextField
    threshold: float


@dataclass(frozen=True)
class IsSet:
    field: ContextField


@dataclass(frozen=True)
class Not:
    condition: object


@dataclass(frozen=True)
class All:
    conditions: tuple


@dataclass(frozen=True)
class AnyOf:
    conditions: tuple


def all_of(*conditions) -> All:
    return All(tuple(conditions))


def any_of(*conditions) -> AnyOf:
    return AnyOf(tuple(conditions))


def is_true(context_field: ContextField) -> Eq:
    return Eq(context_field, True)


def evaluate_condition(condition, ctx: EvaluationContext) -> bool:
    if isinstance(condition, Always):
        return True
    if isinstance(condition, Eq):
        return ctx.get(condition.field) == condition.value
    if isinstance(condition, In):
        return ctx.get(condition.field) in condition.values
    if isinstance(condition, AtLeast):
        value = ctx.get(condition.field)
        return value is not None and value >= condition.threshold
    if isinstance(condition, AtMost):
        value = ctx.get(condition.field)
        return value is not None and value <= condition.threshold
    if isinstance(condition, IsSet):
        return ctx.get(condition.field) is not None
    if isinstance(condition, Not):
        return not evaluate_condition(condition.condition, ctx)
    if isinstance(condition, All):
        return all(evaluate_condition(c, ctx) for c in condition.conditions)
    if isinstance(condition, AnyOf):
        return any(evaluate_condition(c, ctx) for c in condition.conditions)
    raise TypeError(f"Unknown condition type: {type(condition).__name__}")
