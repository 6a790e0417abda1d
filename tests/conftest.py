from __future__ import annotations

from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Callable

import pytest

from ai_orchestrator.analytics import AnalyticsEngine
from ai_orchestrator.runner.runner import ModelNotFoundError, ModelRunner
from ai_orchestrator.storage import SessionStore

START = datetime(2025, 1, 15, 12, 0, 0, tzinfo=timezone.utc)


class FrozenClock:
    def __init__(self, moment: datetime = START) -> None:
        self.moment = moment

    def __call__(self) -> datetime:
        return self.moment

    def advance(self, **kwargs: float) -> datetime:
        self.moment += timedelta(**kwargs)
        return self.moment


def build_factory(**runners: ModelRunner) -> Callable[[str], ModelRunner]:
    def factory(command: str) -> ModelRunner:
        try:
            return runners[command]
        except KeyError:
            raise ModelNotFoundError(f"Command '{command}' not found on PATH") from None

    return factory


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock()


@pytest.fixture
def session_root(tmp_path: Path) -> Path:
    return tmp_path / "sessions"


@pytest.fixture
def store(session_root: Path, clock: FrozenClock) -> SessionStore:
    return SessionStore(session_root, lock_timeout=2.0, clock=clock)


@pytest.fixture
def analytics(store: SessionStore) -> AnalyticsEngine:
    return AnalyticsEngine(store)


@pytest.fixture
def make_factory() -> Callable[..., Callable[[str], ModelRunner]]:
    return build_factory
