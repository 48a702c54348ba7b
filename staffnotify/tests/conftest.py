from __future__ import annotations

from datetime import datetime, timezone

import pytest

from staffnotify.persistence.db import build_engine, build_session_factory, init_models
from staffnotify.services.telemetry import reset_telemetry
from staffnotify.tests.utils.fakes import FakeClock


@pytest.fixture(autouse=True)
def reset_telemetry_between_tests() -> None:
    # Counters are process-global; keep assertions on them isolated per test.
    reset_telemetry()
    yield
    reset_telemetry()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock(datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc))


@pytest.fixture
async def sqlite_session_factory():
    # Fresh in-memory database per test; StaticPool keeps every session on one connection.
    engine = build_engine("sqlite+aiosqlite:///:memory:")
    await init_models(engine)
    yield build_session_factory(engine)
    await engine.dispose()
