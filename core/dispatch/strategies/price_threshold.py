"""Price-threshold arbitrage.

Charge in the cheapest blocks below a low percentile, discharge in the most
expensive blocks above a high percentile, each side capped to a block budget.
On volatile days the percentiles move toward the extremes so only the real
outliers are traded.
"""

import logging
from datetime import datetime

import numpy as np

from ..battery_simulator import arbitrage_margin
from ..day_profile import DayProfile
from ..models import BatteryState, OperationMode, ScheduleBlock, StrategyDecision
from ..settings import BatterySettings
from ..time_utils import blocks_for_hours
from .base import Strategy

logger = logging.getLogger(__name__)


class PriceThresholdArbitrage(Strategy):
    name = "price-threshold-arbitrage"
    version = "1.0.0"
    default_priority = 60

    def _thresholds(self, prices: np.ndarray, day_profile: DayProfile) -> tuple[float, float]:
        if day_profile.is_volatile:
            low_q = self.settings.volatile_charge_percentile
            high_q = self.settings.volatile_discharge_percentile
        else:
            low_q = self.settings.charge_percentile
            high_q = self.settings.discharge_percentile
        return float(np.percentile(prices, low_q)), float(np.percentile(prices, high_q))

    def plan(
        self,
        all_blocks: list[ScheduleBlock],
        battery: BatterySettings,
        day_profile: DayProfile,
    ) -> tuple[set[datetime], set[datetime], float, float, float]:
        """Select charge and discharge blocks for the horizon.

        Returns:
            Tuple of (charge starts, discharge starts, low threshold,
            high threshold, margin per kWh between the chosen sides)
        """
        prices = np.array([b.price for b in all_blocks], dtype=float)
        low, high = self._thresholds(prices, day_profile)
        block_minutes = max(b.duration_minutes for b in all_blocks)

        charge_budget = blocks_for_hours(self.settings.force_charge_hours, block_minutes)
        discharge_budget = blocks_for_hours(
            self.settings.force_discharge_hours, block_minutes
        )

        charge = sorted(
            (b for b in all_blocks if b.price <= low),
            key=lambda b: (b.price, b.start_time),
        )[:charge_budget]
        charge_starts = {b.start_time for b in charge}
        discharge = [
            b
            for b in sorted(
                (b for b in all_blocks if b.price >= high),
                key=lambda b: (-b.price, b.start_time),
            )
            if b.start_time not in charge_starts
        ][:discharge_budget]

        charge_price = float(np.mean([b.price for b in charge])) if charge else low
        discharge_price = (
            float(np.mean([b.price for b in discharge])) if discharge else high
        )
        margin = arbitrage_margin(charge_price, discharge_price, battery)

        if margin <= self.settings.min_spread:
            return set(), set(), low, high, margin

        return charge_starts, {b.start_time for b in discharge}, low, high, margin

    def evaluate(
        self,
        block: ScheduleBlock,
        all_blocks: list[ScheduleBlock],
        battery_state: BatteryState,
        battery: BatterySettings,
        day_profile: DayProfile,
    ) -> StrategyDecision:
        charge, discharge, low, high, margin = self.plan(all_blocks, battery, day_profile)

        if not charge and not discharge:
            return self.neutral(
                block,
                f"Spread too small: margin {margin:.3f}/kWh <= {self.settings.min_spread:.3f}",
            )

        scale = max(abs(day_profile.mean_price), 0.01)
        confidence = 0.5 + 0.5 * (margin - self.settings.min_spread) / scale

        if block.start_time in charge:
            energy = battery.max_charge_rate_kw * block.duration_hours * battery.efficiency
            return self.decide(
                block,
                OperationMode.FORCE_CHARGE,
                f"Price {block.price:.3f} at or below charge threshold {low:.3f}",
                confidence=confidence,
                expected_profit=round(energy * margin, 4),
            )

        if block.start_time in discharge:
            energy = battery.max_discharge_rate_kw * block.duration_hours
            return self.decide(
                block,
                OperationMode.FORCE_DISCHARGE,
                f"Price {block.price:.3f} at or above discharge threshold {high:.3f}",
                confidence=confidence,
                expected_profit=round(energy * margin, 4),
            )

        return self.neutral(
            block, f"Price {block.price:.3f} between thresholds {low:.3f}-{high:.3f}"
        )
