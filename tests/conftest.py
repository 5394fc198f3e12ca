"""Root conftest: state and analysis factories shared across the suite."""

from dataclasses import replace

import pytest

from compass.analysis import UnifiedAnalysis
from compass.state import ConversationState, Phase, Scores, init_conversation_state


def _fresh_state(module0_context=None, **overrides) -> ConversationState:
    """Build a ConversationState with the canonical defaults from state.py."""
    state = init_conversation_state(
        module0_context if module0_context is not None else {"business": "Design studio", "stage": "growing"}
    )
    return replace(state, **overrides)


def _analysis(**overrides) -> UnifiedAnalysis:
    """UnifiedAnalysis with neutral defaults and the given signals switched on."""
    return UnifiedAnalysis(**overrides)


def _scores(clarity=0.0, confidence=0.5, capacity=0.5) -> Scores:
    return Scores(clarity=clarity, confidence=confidence, capacity=capacity)


@pytest.fixture
def fresh_state():
    """Provide a fresh intake-phase state for each test."""
    return _fresh_state()


@pytest.fixture
def diagnostic_state():
    return _fresh_state(phase=Phase.DIAGNOSTIC)
