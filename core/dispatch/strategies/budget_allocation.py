"""Budget allocation.

A fixed daily quota of force-charge blocks goes to the cheapest blocks of each
calendar day, and a force-discharge quota to the most expensive remaining
ones. Ties are broken chronologically.
"""

import logging
from datetime import datetime

from ..day_profile import DayProfile
from ..models import BatteryState, OperationMode, ScheduleBlock, StrategyDecision
from ..settings import BatterySettings
from ..time_utils import blocks_for_hours, group_by_date
from .base import Strategy

logger = logging.getLogger(__name__)


class BudgetAllocation(Strategy):
    name = "budget-allocation"
    version = "1.0.0"
    default_priority = 50

    def allocate(
        self, day_blocks: list[ScheduleBlock]
    ) -> tuple[list[datetime], list[datetime]]:
        """Rank one day's blocks into charge and discharge quotas."""
        block_minutes = max(b.duration_minutes for b in day_blocks)
        charge_quota = blocks_for_hours(self.settings.force_charge_hours, block_minutes)
        discharge_quota = blocks_for_hours(
            self.settings.force_discharge_hours, block_minutes
        )

        charge = sorted(day_blocks, key=lambda b: (b.price, b.start_time))[:charge_quota]
        charge_starts = [b.start_time for b in charge]
        ceiling = max((b.price for b in charge), default=float("-inf"))

        discharge = [
            b
            for b in sorted(day_blocks, key=lambda b: (-b.price, b.start_time))
            if b.start_time not in charge_starts and b.price > ceiling
        ][:discharge_quota]

        return charge_starts, [b.start_time for b in discharge]

    def evaluate(
        self,
        block: ScheduleBlock,
        all_blocks: list[ScheduleBlock],
        battery_state: BatteryState,
        battery: BatterySettings,
        day_profile: DayProfile,
    ) -> StrategyDecision:
        day_blocks = group_by_date(all_blocks).get(block.start_time.date(), [block])
        charge, discharge = self.allocate(day_blocks)
        day = block.start_time.date().isoformat()

        if block.start_time in charge:
            rank = charge.index(block.start_time) + 1
            return self.decide(
                block,
                OperationMode.FORCE_CHARGE,
                f"Budget: cheapest block {rank}/{len(charge)} on {day}",
                confidence=1.0 - (rank - 1) / max(len(charge), 1) * 0.5,
            )

        if block.start_time in discharge:
            rank = discharge.index(block.start_time) + 1
            return self.decide(
                block,
                OperationMode.FORCE_DISCHARGE,
                f"Budget: most expensive block {rank}/{len(discharge)} on {day}",
                confidence=1.0 - (rank - 1) / max(len(discharge), 1) * 0.5,
            )

        return self.neutral(block, f"Outside daily force budget for {day}")
