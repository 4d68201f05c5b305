"""Solar-aware deferral.

Grid charging shortly before a sunny window wastes money: the window would
have filled the battery for free. This strategy holds cheap blocks near an
upcoming (or ongoing) solar window in SelfUse when the expected surplus is
large enough relative to the free battery capacity. Expensive blocks are
left to the other strategies.
"""

import logging
from datetime import timedelta

from ..day_profile import DayProfile
from ..models import BatteryState, OperationMode, ScheduleBlock, StrategyDecision
from ..settings import BatterySettings
from .base import Strategy, find_solar_windows

logger = logging.getLogger(__name__)


class SolarAwareDeferral(Strategy):
    name = "solar-aware-deferral"
    version = "1.0.0"
    default_priority = 70

    def _surplus(self, window: list[ScheduleBlock]) -> float:
        fallback = self.settings.average_household_load_kw
        return sum(
            max(
                0.0,
                (b.solar_kwh or 0.0)
                - (
                    b.consumption_kwh
                    if b.consumption_kwh is not None
                    else fallback * b.duration_hours
                ),
            )
            for b in window
        )

    def evaluate(
        self,
        block: ScheduleBlock,
        all_blocks: list[ScheduleBlock],
        battery_state: BatteryState,
        battery: BatterySettings,
        day_profile: DayProfile,
    ) -> StrategyDecision:
        windows = find_solar_windows(all_blocks, self.settings.solar_block_threshold_kwh)
        if not windows:
            return self.neutral(block, "No solar window in forecast")

        lead = timedelta(hours=self.settings.deferral_hours)
        window = next(
            (
                w
                for w in windows
                if w[0].start_time - lead <= block.start_time < w[-1].end_time
            ),
            None,
        )
        if window is None:
            return self.neutral(block, "Not near a solar window")

        if block.price > day_profile.median_price:
            return self.neutral(block, "Block too expensive for grid charging anyway")

        headroom = battery.soc_to_kwh(battery.max_soc - battery_state.soc_percent)
        if headroom <= 0.01:
            return self.neutral(block, "Battery already full")

        surplus = self._surplus(window)
        coverage = surplus / headroom
        if coverage < self.settings.min_solar_coverage:
            return self.neutral(
                block,
                f"Solar surplus {surplus:.1f} kWh covers only {coverage:.0%} of "
                f"{headroom:.1f} kWh headroom",
            )

        return self.decide(
            block,
            OperationMode.SELF_USE,
            f"Deferring grid charge: {surplus:.1f} kWh solar surplus expected from "
            f"{window[0].start_time.strftime('%H:%M')}",
            confidence=min(1.0, coverage),
        )
