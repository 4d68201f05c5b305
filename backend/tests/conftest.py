"""Shared fixtures for the backend API tests."""

import os
import sys
from datetime import UTC, datetime

import pytest

backend_dir = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
project_root = os.path.dirname(backend_dir)
for path in (backend_dir, project_root):
    if path not in sys.path:
        sys.path.insert(0, path)

from api import get_controller, router  # noqa: E402
from fastapi import FastAPI  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402

from core.dispatch import DecisionEngine, EngineSettings  # noqa: E402
from core.dispatch.block_model import expand_hourly_prices  # noqa: E402
from core.dispatch.models import BatteryState, CycleInput  # noqa: E402
from core.dispatch.settings import GovernorSettings, StrategySettings  # noqa: E402
from core.dispatch.strategies import BudgetAllocation  # noqa: E402

CYCLE_START = datetime(2025, 11, 15, 0, 0, tzinfo=UTC)


class StubController:
    """Stands in for DispatchController: a real engine fed canned prices."""

    def __init__(self, engine: DecisionEngine, prices: list[float]):
        self.engine = engine
        self.prices = prices
        self.fail_with: Exception | None = None

    def run_cycle(self):
        if self.fail_with is not None:
            raise self.fail_with
        cycle_input = CycleInput(
            price_points=expand_hourly_prices(CYCLE_START, self.prices, interval_minutes=15),
            battery_state=BatteryState(50.0),
            prices_as_of=CYCLE_START,
            price_version="test-v1",
        )
        return self.engine.run_cycle(cycle_input, now=CYCLE_START)


@pytest.fixture
def engine():
    settings = EngineSettings(
        strategy=StrategySettings(force_charge_hours=0.25, force_discharge_hours=0),
        governor=GovernorSettings(min_consecutive_blocks=1),
    )
    engine = DecisionEngine(settings)
    engine.register_builtins([BudgetAllocation(settings.strategy)])
    return engine


@pytest.fixture
def controller(engine):
    return StubController(engine, [0.1, 0.5, 0.5, 0.5])


@pytest.fixture
def client(controller):
    app = FastAPI()
    app.include_router(router)
    app.dependency_overrides[get_controller] = lambda: controller
    return TestClient(app)
