"""Built-in strategies."""

__all__ = [
    "BudgetAllocation",
    "PeakDischargeLookahead",
    "PriceThresholdArbitrage",
    "SolarAwareDeferral",
    "Strategy",
    "default_strategies",
]

from ..settings import StrategySettings
from .base import Strategy
from .budget_allocation import BudgetAllocation
from .peak_discharge import PeakDischargeLookahead
from .price_threshold import PriceThresholdArbitrage
from .solar_deferral import SolarAwareDeferral


def default_strategies(settings: StrategySettings | None = None) -> list[Strategy]:
    """Built-ins in registration order (earliest wins complete ties)."""
    return [
        PeakDischargeLookahead(settings),
        SolarAwareDeferral(settings),
        PriceThresholdArbitrage(settings),
        BudgetAllocation(settings),
    ]
