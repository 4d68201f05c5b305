"""Peak discharge with lookahead.

Discharge into the most expensive blocks before the next solar window, but
only as far as the battery simulator shows SOC staying above a safety floor
until the sun can refill it.
"""

import logging
from datetime import datetime

from ..battery_simulator import arbitrage_margin, simulate
from ..day_profile import DayProfile
from ..models import BatteryState, OperationMode, ScheduleBlock, StrategyDecision
from ..settings import BatterySettings
from ..time_utils import blocks_for_hours
from .base import Strategy

logger = logging.getLogger(__name__)

SOC_TOLERANCE = 1e-6


class PeakDischargeLookahead(Strategy):
    name = "peak-discharge-lookahead"
    version = "1.0.0"
    default_priority = 80

    def segment_until_solar(self, all_blocks: list[ScheduleBlock]) -> list[ScheduleBlock]:
        """Blocks from the horizon start up to the start of the next solar window."""
        threshold = self.settings.solar_block_threshold_kwh

        def sunny(b: ScheduleBlock) -> bool:
            return b.solar_kwh is not None and b.solar_kwh >= threshold

        for i in range(1, len(all_blocks)):
            if sunny(all_blocks[i]) and not sunny(all_blocks[i - 1]):
                return all_blocks[:i]
        return list(all_blocks)

    def plan(
        self,
        all_blocks: list[ScheduleBlock],
        battery_state: BatteryState,
        battery: BatterySettings,
    ) -> tuple[set[datetime], float, float]:
        """Greedily pick discharge blocks, most expensive first.

        Returns:
            Tuple of (chosen block starts, cheapest price in segment, safety floor)
        """
        segment = self.segment_until_solar(all_blocks)
        floor = max(battery.min_soc, self.settings.reserve_soc)
        min_price = min(b.price for b in segment)
        block_minutes = max(b.duration_minutes for b in segment)
        budget = blocks_for_hours(self.settings.force_discharge_hours, block_minutes)

        candidates = sorted(
            (
                b
                for b in segment
                if b.price - min_price >= self.settings.peak_min_spread
                and arbitrage_margin(min_price, b.price, battery) > 0
            ),
            key=lambda b: (-b.price, b.start_time),
        )

        chosen: set[datetime] = set()
        for candidate in candidates:
            if len(chosen) >= budget:
                break
            trial = chosen | {candidate.start_time}
            modes = [
                OperationMode.FORCE_DISCHARGE
                if b.start_time in trial
                else OperationMode.SELF_USE
                for b in segment
            ]
            result = simulate(
                battery_state,
                battery,
                modes,
                segment,
                fallback_load_kw=self.settings.average_household_load_kw,
            )
            if result.violations or result.min_soc_reached < floor - SOC_TOLERANCE:
                # Every further candidate drains the same energy
                break
            chosen = trial

        return chosen, min_price, floor

    def evaluate(
        self,
        block: ScheduleBlock,
        all_blocks: list[ScheduleBlock],
        battery_state: BatteryState,
        battery: BatterySettings,
        day_profile: DayProfile,
    ) -> StrategyDecision:
        if battery_state.soc_percent <= max(battery.min_soc, self.settings.reserve_soc):
            return self.neutral(block, "SOC at or below safety floor")

        chosen, min_price, floor = self.plan(all_blocks, battery_state, battery)
        if block.start_time not in chosen:
            return self.neutral(block, "Not a selected peak discharge block")

        spread = day_profile.max_price - day_profile.min_price
        confidence = (block.price - min_price) / spread if spread > 0 else 0.5
        energy = battery.max_discharge_rate_kw * block.duration_hours
        return self.decide(
            block,
            OperationMode.FORCE_DISCHARGE,
            f"Peak price {block.price:.3f}, SOC stays above {floor:.0f}% until next solar window",
            confidence=confidence,
            expected_profit=round(energy * arbitrage_margin(min_price, block.price, battery), 4),
        )
