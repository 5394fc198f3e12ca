"""Unit-level conftest: mocks for the Anthropic client and a temp session store."""

import json
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import pytest

from compass.components import ComponentEngine, default_registry
from compass.persistence import SessionStore


# ---------------------------------------------------------------------------
# Anthropic mock helpers
# ---------------------------------------------------------------------------


def _make_anthropic_response(text=""):
    """Factory for Anthropic API message responses."""
    content = []
    if text:
        content.append(SimpleNamespace(type="text", text=text))
    return SimpleNamespace(
        content=content,
        usage=SimpleNamespace(input_tokens=100, output_tokens=50),
        stop_reason="end_turn",
    )


def _analysis_response(**signals):
    """Analysis call response carrying the given signals as JSON."""
    return _make_anthropic_response(json.dumps(signals))


@pytest.fixture
def mock_anthropic_client():
    """Mock AsyncAnthropic client with configurable responses."""
    client = MagicMock()
    client.messages.create = AsyncMock(return_value=_make_anthropic_response("Default response"))
    return client


# ---------------------------------------------------------------------------
# Persistence + engine fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def session_store(tmp_path):
    """SessionStore rooted in a per-test temp directory."""
    return SessionStore(root=tmp_path / "sessions")


@pytest.fixture
def component_engine():
    return ComponentEngine(default_registry())
