"""Pytest fixtures wiring the fakes in `tests.fakes` into an engine."""

import pytest

from astra.core.engine import AssistantEngine, ModelTiers
from astra.core.state import AssistantState
from tests.fakes import CENTRAL, FIXED_NOW, FakeAI, FakeWebModule, RecordingNotifier


@pytest.fixture
def fake_ai():
    return FakeAI()


@pytest.fixture
def web():
    return FakeWebModule()


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def state():
    return AssistantState()


@pytest.fixture
def engine(state, fake_ai, web, notifier):
    return AssistantEngine(
        state=state,
        ai=fake_ai,
        web_module=web,
        notifier=notifier,
        api_key="test-key",
        tz=CENTRAL,
        clock=lambda: FIXED_NOW,
        models=ModelTiers(router="router-m", simple_text="simple-m", complex_text="complex-m", image="image-m"),
        max_retries=2,
    )
