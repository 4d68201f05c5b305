"""Shared test fixtures for the dispatch engine tests."""

import logging
import os
import sys
from dataclasses import replace
from datetime import UTC, datetime, timedelta

import pytest

# Add the project root to Python path
project_root = os.path.abspath(os.path.join(os.path.dirname(__file__), "../../.."))
if project_root not in sys.path:
    sys.path.insert(0, project_root)

# Configure logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

from core.dispatch.block_model import build_blocks  # noqa: E402
from core.dispatch.models import (  # noqa: E402
    OperationMode,
    PricePoint,
    StrategyDecision,
)
from core.dispatch.settings import BatterySettings  # noqa: E402

START = datetime(2025, 11, 15, 0, 0, tzinfo=UTC)


def price_points(prices, start=START, minutes=15, export_prices=None):
    """Contiguous price points of equal duration."""
    step = timedelta(minutes=minutes)
    return [
        PricePoint(
            start_time=start + i * step,
            duration=step,
            price=price,
            export_price=export_prices[i] if export_prices else None,
        )
        for i, price in enumerate(prices)
    ]


def make_blocks(prices, start=START, minutes=15, solar=None, consumption=None):
    """Blocks from a price list, with optional per-block solar/consumption kWh."""
    blocks = build_blocks(price_points(prices, start, minutes), block_minutes=minutes)
    return [
        replace(
            block,
            solar_kwh=solar[i] if solar is not None else None,
            consumption_kwh=consumption[i] if consumption is not None else None,
        )
        for i, block in enumerate(blocks)
    ]


def make_decision(block, mode, priority=50, confidence=None, profit=None, name="test"):
    return StrategyDecision(
        block_start=block.start_time,
        duration_minutes=block.duration_minutes,
        mode=mode,
        priority=priority,
        reason=f"{name} says {mode.value}",
        confidence=confidence,
        expected_profit=profit,
        decision_id=f"{name}:{block.index}",
        strategy_name=name,
    )


@pytest.fixture
def start_time():
    return START


@pytest.fixture
def battery_settings():
    """Default 10 kWh battery, 5 kW both ways, 10-100% SOC."""
    return BatterySettings()


@pytest.fixture
def block_factory():
    return make_blocks


@pytest.fixture
def decision_factory():
    return make_decision


@pytest.fixture
def modes():
    """Short aliases for operation modes."""
    return {
        "SU": OperationMode.SELF_USE,
        "FC": OperationMode.FORCE_CHARGE,
        "FD": OperationMode.FORCE_DISCHARGE,
        "BU": OperationMode.BACKUP,
        "NC": OperationMode.NO_CHARGE_NO_DISCHARGE,
    }
