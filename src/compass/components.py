"""Component rule engine: decides which UI cards accompany a turn.

Rules propose at most one candidate per component type (highest priority
whose condition holds). Policies then get a hard veto: a vetoed candidate
is dropped and lower-priority rules for that type are not retried. The
engine only ever writes its own one-shot flags.
"""

import logging
from dataclasses import dataclass, field
from enum import Enum

from .analysis import EffectiveState
from .conditions import (
    AtLeast,
    Always,
    ContextField,
    Eq,
    EvaluationContext,
    In,
    IsSet,
    Not,
    all_of,
    any_of,
    evaluate_condition,
    is_true,
)
from .config import EMAIL_CAPTURE_MIN_CONFIDENCE, EMAIL_CAPTURE_TURN_WINDOW
from .decision_engine import Action, Decision
from .state import ConstraintCategory, ConversationState, Phase

logger = logging.getLogger("compass.components")


class TriggerPoint(str, Enum):
    TURN_COMPLETED = "turn_completed"
    CLOSING_COMPLETE = "closing_complete"
    EXPLICIT_REQUEST = "explicit_request"


class ComponentType(str, Enum):
    COLLECT_EMAIL = "collect_email"
    VIEW_SUMMARY = "view_summary"
    SAVE_PROGRESS = "save_progress"


@dataclass(frozen=True)
class ComponentRule:
    id: str
    trigger: TriggerPoint
    component: ComponentType
    condition: object
    priority: int
    variant: str | None = None


@dataclass(frozen=True)
class ComponentPolicy:
    component: ComponentType
    one_shot_flag: str | None = None
    turn_window: tuple | None = None
    phases: tuple | None = None
    requires: object = Always()


@dataclass(frozen=True)
class RenderedComponent:
    type: str
    text: str
    metadata: dict

    def to_dict(self) -> dict:
        return {"type": self.type, "text": self.text, "metadata": dict(self.metadata)}


@dataclass
class ComponentContext:
    """What the engine sees for one turn.

    `state` is the state after the decision was applied. `component_flags` is
    a private copy the engine may write; the coordinator merges it back at
    commit time.
    """

    state: ConversationState
    effective: EffectiveState
    decision: Decision | None = None
    component_flags: dict = field(default_factory=dict)

    @classmethod
    def for_turn(cls, state: ConversationState, decision: Decision) -> "ComponentContext":
        return cls(
            state=state,
            effective=decision.effective or EffectiveState(state=state, analysis=None),
            decision=decision,
            component_flags=dict(state.component_flags),
        )

    def evaluation_view(self) -> EvaluationContext:
        s = self.state
        analysis = self.effective.analysis
        track = s.closing_sequence.track
        return EvaluationContext(
            turns_total=s.turns_total,
            phase=s.phase,
            action=self.decision.action.value if self.decision else "",
            constraint_category=s.constraint_category,
            hypothesis_confidence=s.hypothesis_confidence,
            clarity=s.scores.clarity,
            confidence=s.scores.confidence,
            capacity=s.scores.capacity,
            closing_track=track.value if track is not None else None,
            hesitation=bool(analysis and analysis.hesitation),
            ready_to_close=bool(analysis and self.effective.ready_to_close),
            has_blockers=bool(analysis and self.effective.has_blockers),
            explicit_request=analysis.explicit_request if analysis else None,
        )


# ===================================================================
# Registry + engine
# ===================================================================


class ComponentRegistry:
    """Rules, policies and renderers, built once and handed to the engine."""

    def __init__(self, rules=(), policies=(), renderers=None):
        self._rules = tuple(sorted(rules, key=lambda r: -r.priority))
        self._policies = {p.component: p for p in policies}
        self._renderers = dict(renderers or {})

    def rules_for(self, trigger: TriggerPoint) -> tuple:
        return tuple(r for r in self._rules if r.trigger == trigger)

    def policy_for(self, component: ComponentType) -> ComponentPolicy | None:
        return self._policies.get(component)

    def renderer_for(self, component: ComponentType):
        return self._renderers.get(component)


def check_policy(policy: ComponentPolicy, view: EvaluationContext, component_flags: dict) -> tuple:
    """Return (allowed, reason). Every constraint must hold."""
    if policy.one_shot_flag and component_flags.get(policy.one_shot_flag):
        return False, f"{policy.one_shot_flag} already set"
    if policy.turn_window is not None:
        low, high = policy.turn_window
        if not low <= view.turns_total <= high:
            return False, f"turn {view.turns_total} outside {low}-{high}"
    if policy.phases is not None and view.phase not in policy.phases:
        return False, f"phase {view.phase.value} not allowed"
    if not evaluate_condition(policy.requires, view):
        return False, "requirements not met"
    return True, "ok"


class ComponentEngine:
    def __init__(self, registry: ComponentRegistry):
        self.registry = registry

    def evaluate(self, trigger: TriggerPoint, context: ComponentContext) -> list:
        view = context.evaluation_view()

        # First matching rule per component type, in priority order
        candidates = {}
        for rule in self.registry.rules_for(trigger):
            if rule.component in candidates:
                continue
            if evaluate_condition(rule.condition, view):
                candidates[rule.component] = rule

        rendered = []
        for component, rule in candidates.items():
            policy = self.registry.policy_for(component)
            if policy is not None:
                allowed, reason = check_policy(policy, view, context.component_flags)
                if not allowed:
                    logger.info("Component %s (rule %s) vetoed: %s", component.value, rule.id, reason)
                    continue
            renderer = self.registry.renderer_for(component)
            if renderer is None:
                logger.warning("No renderer registered for %s", component.value)
                continue
            rendered.append(renderer(context, rule))
            if policy is not None and policy.one_shot_flag:
                context.component_flags[policy.one_shot_flag] = True
            logger.info("Component %s rendered via rule %s", component.value, rule.id)

        return rendered


def evaluate_components(trigger: TriggerPoint, context: ComponentContext, registry: ComponentRegistry) -> list:
    return ComponentEngine(registry).evaluate(trigger, context)


def select_trigger_point(decision: Decision) -> TriggerPoint:
    """Trigger point for the turn that produced `decision`."""
    if decision.phase_to == Phase.COMPLETE:
        return TriggerPoint.CLOSING_COMPLETE
    analysis = decision.effective.analysis if decision.effective else None
    if analysis is not None and analysis.explicit_request:
        return TriggerPoint.EXPLICIT_REQUEST
    return TriggerPoint.TURN_COMPLETED


# ===================================================================
# Renderers
# ===================================================================

CONSTRAINT_VALUE_PROPS = {
    ConstraintCategory.STRATEGY: {
        "headline": "Your clarity roadmap is ready",
        "benefit": "See what has been keeping you stuck and the path forward",
        "label": "Clarity & Direction",
        "sections": ["Positioning Insights", "Recommended Path Forward"],
        "uncovered": "clarity on what has been keeping you scattered",
    },
    ConstraintCategory.EXECUTION: {
        "headline": "Your systems blueprint is ready",
        "benefit": "See what to systematize first and how to stop being the bottleneck",
        "label": "Systems & Leverage",
        "sections": ["System Priorities", "Quick Wins to Start"],
        "uncovered": "the bottleneck that has been limiting your growth",
    },
    ConstraintCategory.ENERGY: {
        "headline": "Your energy reset summary is ready",
        "benefit": "See the patterns draining you and how to protect your capacity",
        "label": "Energy & Capacity",
        "sections": ["Patterns Identified", "Capacity to Protect"],
        "uncovered": "the pattern that has been draining your energy",
    },
}

SUMMARY_ACTION_LABELS = {
    "aligned": "View My Summary",
    "soft": "View Summary",
}

SAVE_PROGRESS_VARIANTS = {
    "practical": {
        "headline": "Here's what we uncovered",
        "subhead": "I've captured the key points so you don't lose them.",
        "primary_cta": "Save to email",
        "secondary_cta": "View now",
    },
    "gentle": {
        "headline": "No pressure, just saving your progress",
        "subhead": "Whenever you're ready, your insights will be here.",
        "primary_cta": "Send to my email",
        "secondary_cta": "Take a look",
    },
    "turn_limit": {
        "headline": "We covered a lot of ground today",
        "subhead": "I'll send you a summary of what we uncovered so you don't lose these insights.",
        "primary_cta": "Email me my summary",
        "secondary_cta": "No thanks",
    },
}


def render_collect_email(context: ComponentContext, rule: ComponentRule) -> RenderedComponent:
    # Client-side card only
    return RenderedComponent(
        type=ComponentType.COLLECT_EMAIL.value,
        text="",
        metadata={"turn": context.state.turns_total},
    )


def render_view_summary(context: ComponentContext, rule: ComponentRule) -> RenderedComponent:
    variant = rule.variant or "soft"
    constraint = context.state.constraint_category or ConstraintCategory.STRATEGY
    props = CONSTRAINT_VALUE_PROPS[constraint]
    return RenderedComponent(
        type=ComponentType.VIEW_SUMMARY.value,
        text="",
        metadata={
            "action": "view_summary",
            "action_label": SUMMARY_ACTION_LABELS.get(variant, "View Your Summary"),
            "variant": variant,
            "headline": props["headline"],
            "subheadline": props["benefit"],
            "constraint": constraint.value,
            "constraint_label": props["label"],
            "sections": ["What We Uncovered", "The Real Challenge"] + props["sections"],
            "turns_total": context.state.turns_total,
        },
    )


def render_save_progress(context: ComponentContext, rule: ComponentRule) -> RenderedComponent:
    variant = rule.variant if rule.variant in SAVE_PROGRESS_VARIANTS else "practical"
    content = SAVE_PROGRESS_VARIANTS[variant]
    constraint = context.state.constraint_category

    text = f"{content['headline']}.\n\n"
    if constraint is not None:
        text += f"Today you uncovered {CONSTRAINT_VALUE_PROPS[constraint]['uncovered']}.\n\n"
    text += f"{content['subhead']}\n\n[{content['primary_cta']}]  [{content['secondary_cta']}]"

    return RenderedComponent(
        type=ComponentType.SAVE_PROGRESS.value,
        text=text,
        metadata={
            "variant": variant,
            "primary_cta": content["primary_cta"],
            "secondary_cta": content["secondary_cta"],
            "constraint": constraint.value if constraint is not None else None,
        },
    )


# ===================================================================
# Default configuration
# ===================================================================

_EARLY_EXITS = (Action.GRACEFUL_EXIT.value, Action.LOW_ENGAGEMENT_EXIT.value)
_NOT_CUT_SHORT = Not(In(ContextField.ACTION, (Action.TURN_LIMIT_CLOSE.value,) + _EARLY_EXITS))

DEFAULT_RULES = (
    ComponentRule(
        id="summary_explicit_request",
        trigger=TriggerPoint.EXPLICIT_REQUEST,
        component=ComponentType.VIEW_SUMMARY,
        condition=In(ContextField.EXPLICIT_REQUEST, ("summary", "next_steps")),
        priority=200,
        variant="aligned",
    ),
    ComponentRule(
        id="save_progress_explicit_request",
        trigger=TriggerPoint.EXPLICIT_REQUEST,
        component=ComponentType.SAVE_PROGRESS,
        condition=Eq(ContextField.EXPLICIT_REQUEST, "save_progress"),
        priority=190,
        variant="practical",
    ),
    ComponentRule(
        id="save_progress_turn_limit",
        trigger=TriggerPoint.CLOSING_COMPLETE,
        component=ComponentType.SAVE_PROGRESS,
        condition=Eq(ContextField.ACTION, Action.TURN_LIMIT_CLOSE.value),
        priority=120,
        variant="turn_limit",
    ),
    ComponentRule(
        id="save_progress_early_exit",
        trigger=TriggerPoint.CLOSING_COMPLETE,
        component=ComponentType.SAVE_PROGRESS,
        condition=In(ContextField.ACTION, _EARLY_EXITS),
        priority=115,
        variant="gentle",
    ),
    ComponentRule(
        id="summary_aligned_close",
        trigger=TriggerPoint.CLOSING_COMPLETE,
        component=ComponentType.VIEW_SUMMARY,
        condition=all_of(is_true(ContextField.READY_TO_CLOSE), _NOT_CUT_SHORT),
        priority=100,
        variant="aligned",
    ),
    ComponentRule(
        id="summary_soft_close",
        trigger=TriggerPoint.CLOSING_COMPLETE,
        component=ComponentType.VIEW_SUMMARY,
        condition=all_of(Not(is_true(ContextField.HESITATION)), _NOT_CUT_SHORT),
        priority=90,
        variant="soft",
    ),
    ComponentRule(
        id="save_progress_hesitant_close",
        trigger=TriggerPoint.CLOSING_COMPLETE,
        component=ComponentType.SAVE_PROGRESS,
        condition=is_true(ContextField.HESITATION),
        priority=85,
        variant="gentle",
    ),
    ComponentRule(
        id="email_capture_engaged",
        trigger=TriggerPoint.TURN_COMPLETED,
        component=ComponentType.COLLECT_EMAIL,
        condition=any_of(
            AtLeast(ContextField.HYPOTHESIS_CONFIDENCE, EMAIL_CAPTURE_MIN_CONFIDENCE),
            AtLeast(ContextField.CLARITY, EMAIL_CAPTURE_MIN_CONFIDENCE),
        ),
        priority=50,
    ),
)

DEFAULT_POLICIES = (
    ComponentPolicy(
        component=ComponentType.COLLECT_EMAIL,
        one_shot_flag="email_capture_shown",
        turn_window=EMAIL_CAPTURE_TURN_WINDOW,
        phases=(
            Phase.INTAKE,
            Phase.DIAGNOSTIC,
            Phase.DEPTH_INQUIRY,
            Phase.HYPOTHESIS,
            Phase.CROSS_MAPPING,
            Phase.BLOCKER_CHECK,
        ),
    ),
    ComponentPolicy(
        component=ComponentType.VIEW_SUMMARY,
        one_shot_flag="summary_shown",
        phases=(Phase.BLOCKER_CHECK, Phase.CLOSING, Phase.COMPLETE),
        requires=IsSet(ContextField.CONSTRAINT_CATEGORY),
    ),
    ComponentPolicy(
        component=ComponentType.SAVE_PROGRESS,
        one_shot_flag="save_progress_shown",
        phases=(Phase.CLOSING, Phase.COMPLETE),
    ),
)

DEFAULT_RENDERERS = {
    ComponentType.COLLECT_EMAIL: render_collect_email,
    ComponentType.VIEW_SUMMARY: render_view_summary,
    ComponentType.SAVE_PROGRESS: render_save_progress,
}


def default_registry() -> ComponentRegistry:
    return ComponentRegistry(DEFAULT_RULES, DEFAULT_POLICIES, DEFAULT_RENDERERS)
