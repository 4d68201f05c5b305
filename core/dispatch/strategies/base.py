"""Strategy interface shared by built-in strategies and the HTTP plugin adapter."""

import logging
from abc import ABC, abstractmethod

from ..day_profile import DayProfile
from ..models import BatteryState, OperationMode, ScheduleBlock, StrategyDecision
from ..settings import BatterySettings, StrategySettings

logger = logging.getLogger(__name__)


class Strategy(ABC):
    """One independent decision source.

    ``evaluate`` is called once per block per cycle and must always return a
    decision. When a strategy has nothing useful to say about a block it
    returns ``neutral()``: SelfUse at priority 0 with zero confidence, which
    never beats a real recommendation.
    """

    name: str = "strategy"
    version: str = "1.0.0"
    default_priority: int = 50

    def __init__(self, settings: StrategySettings | None = None):
        self.settings = settings or StrategySettings()

    @abstractmethod
    def evaluate(
        self,
        block: ScheduleBlock,
        all_blocks: list[ScheduleBlock],
        battery_state: BatteryState,
        battery: BatterySettings,
        day_profile: DayProfile,
    ) -> StrategyDecision:
        """Recommend a mode for one block."""

    def neutral(self, block: ScheduleBlock, reason: str) -> StrategyDecision:
        return StrategyDecision(
            block_start=block.start_time,
            duration_minutes=block.duration_minutes,
            mode=OperationMode.SELF_USE,
            priority=0,
            reason=reason,
            confidence=0.0,
            decision_id=f"{self.name}:neutral:{block.start_time.isoformat()}",
            strategy_name=self.name,
        )

    def decide(
        self,
        block: ScheduleBlock,
        mode: OperationMode,
        reason: str,
        confidence: float | None = None,
        expected_profit: float | None = None,
    ) -> StrategyDecision:
        if confidence is not None:
            confidence = round(max(0.0, min(1.0, confidence)), 3)
        return StrategyDecision(
            block_start=block.start_time,
            duration_minutes=block.duration_minutes,
            mode=mode,
            priority=self.default_priority,
            reason=reason,
            confidence=confidence,
            expected_profit=expected_profit,
            decision_id=f"{self.name}:{mode.value}:{block.start_time.isoformat()}",
            strategy_name=self.name,
        )

    def __repr__(self) -> str:
        return f"{type(self).__name__}(name={self.name!r}, version={self.version!r})"


def find_solar_windows(
    blocks: list[ScheduleBlock], threshold_kwh: float
) -> list[list[ScheduleBlock]]:
    """Split blocks into runs whose solar forecast reaches the threshold."""
    windows: list[list[ScheduleBlock]] = []
    current: list[ScheduleBlock] = []
    for block in blocks:
        if block.solar_kwh is not None and block.solar_kwh >= threshold_kwh:
            current.append(block)
        elif current:
            windows.append(current)
            current = []
    if current:
        windows.append(current)
    return windows
