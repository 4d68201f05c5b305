"""
Data models for the dispatch engine.

Everything here belongs to a single planning cycle. Blocks, decisions and
schedules are frozen: a new cycle supersedes them wholesale instead of
mutating them.

"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum

logger = logging.getLogger(__name__)

__all__ = [
    "BatteryState",
    "CycleInput",
    "ForecastPoint",
    "HistoricalHints",
    "InverterCommand",
    "OperationMode",
    "PricePoint",
    "Schedule",
    "ScheduleBlock",
    "ScheduleEntry",
    "StrategyDecision",
    "SystemHealth",
]


class OperationMode(Enum):
    """Inverter operation modes. Exactly one is active per block."""

    SELF_USE = "SelfUse"
    FORCE_CHARGE = "ForceCharge"
    FORCE_DISCHARGE = "ForceDischarge"
    BACKUP = "BackUpMode"  # hold SOC
    NO_CHARGE_NO_DISCHARGE = "NoChargeNoDischarge"  # serve load from grid

    @classmethod
    def parse(cls, value: str) -> "OperationMode":
        """Parse a PascalCase wire name or an enum member name."""
        for mode in cls:
            if value in (mode.value, mode.name):
                return mode
        raise ValueError(f"Unknown operation mode: {value!r}")


class SystemHealth(Enum):
    """Derived tri-state health, recomputed every cycle."""

    HEALTHY = "Healthy"
    DEGRADED = "Degraded"
    SAFE_MODE = "SafeMode"


@dataclass(frozen=True)
class PricePoint:
    """Spot price for one source interval. Price may be negative."""

    start_time: datetime
    duration: timedelta
    price: float
    export_price: float | None = None

    @property
    def end_time(self) -> datetime:
        return self.start_time + self.duration


@dataclass(frozen=True)
class ForecastPoint:
    """Forecast energy (kWh) over one source interval."""

    start_time: datetime
    duration: timedelta
    energy_kwh: float

    @property
    def end_time(self) -> datetime:
        return self.start_time + self.duration


@dataclass(frozen=True)
class ScheduleBlock:
    """Atomic planning unit produced by the block model."""

    index: int
    start_time: datetime
    duration: timedelta
    price_point: PricePoint
    solar_kwh: float | None = None
    consumption_kwh: float | None = None
    deviation_note: str | None = None

    @property
    def end_time(self) -> datetime:
        return self.start_time + self.duration

    @property
    def duration_minutes(self) -> int:
        return int(self.duration.total_seconds() // 60)

    @property
    def duration_hours(self) -> float:
        return self.duration.total_seconds() / 3600.0

    @property
    def price(self) -> float:
        return self.price_point.price

    @property
    def export_price(self) -> float:
        """Export price, falling back to the import price."""
        if self.price_point.export_price is None:
            return self.price_point.price
        return self.price_point.export_price


@dataclass(frozen=True)
class BatteryState:
    """Simulation cursor: state of charge in percent."""

    soc_percent: float


@dataclass(frozen=True)
class StrategyDecision:
    """One strategy's recommendation for one block."""

    block_start: datetime
    duration_minutes: int
    mode: OperationMode
    priority: int
    reason: str
    confidence: float | None = None
    expected_profit: float | None = None
    decision_id: str | None = None
    strategy_name: str | None = None

    def __post_init__(self):
        if not 0 <= self.priority <= 100:
            raise ValueError(f"Priority must be in 0-100, got {self.priority}")
        if self.confidence is not None and not 0.0 <= self.confidence <= 1.0:
            raise ValueError(f"Confidence must be in 0-1, got {self.confidence}")

    @classmethod
    def fallback(
        cls,
        block: ScheduleBlock,
        strategy_name: str,
        reason: str,
        decision_id: str | None = None,
    ) -> "StrategyDecision":
        """SelfUse at priority 0, substituted for a failed or missing decision."""
        return cls(
            block_start=block.start_time,
            duration_minutes=block.duration_minutes,
            mode=OperationMode.SELF_USE,
            priority=0,
            reason=reason,
            confidence=0.0,
            decision_id=decision_id or f"fallback:{strategy_name}",
            strategy_name=strategy_name,
        )

    def matches(self, block: ScheduleBlock) -> bool:
        return (
            self.block_start == block.start_time
            and self.duration_minutes == block.duration_minutes
        )


@dataclass(frozen=True)
class ScheduleEntry:
    """One row of the final schedule handed to the executor."""

    block_start: datetime
    duration_minutes: int
    mode: OperationMode
    reason: str
    priority: int
    strategy_name: str | None
    decision_id: str | None
    confidence: float | None = None
    expected_profit: float | None = None

    @property
    def block_end(self) -> datetime:
        return self.block_start + timedelta(minutes=self.duration_minutes)

    @classmethod
    def from_decision(cls, decision: StrategyDecision) -> "ScheduleEntry":
        return cls(
            block_start=decision.block_start,
            duration_minutes=decision.duration_minutes,
            mode=decision.mode,
            reason=decision.reason,
            priority=decision.priority,
            strategy_name=decision.strategy_name,
            decision_id=decision.decision_id,
            confidence=decision.confidence,
            expected_profit=decision.expected_profit,
        )

    def to_decision(self) -> StrategyDecision:
        return StrategyDecision(
            block_start=self.block_start,
            duration_minutes=self.duration_minutes,
            mode=self.mode,
            priority=self.priority,
            reason=self.reason,
            confidence=self.confidence,
            expected_profit=self.expected_profit,
            decision_id=self.decision_id,
            strategy_name=self.strategy_name,
        )


@dataclass(frozen=True)
class Schedule:
    """Complete, ordered schedule published at the end of a planning cycle."""

    entries: tuple[ScheduleEntry, ...]
    created_at: datetime
    cycle_id: int
    health: SystemHealth = SystemHealth.HEALTHY
    price_version: str | None = None

    def entry_at(self, moment: datetime) -> ScheduleEntry | None:
        """Get the entry whose block contains the given moment."""
        for entry in self.entries:
            if entry.block_start <= moment < entry.block_end:
                return entry
        return None

    @property
    def horizon_end(self) -> datetime | None:
        if not self.entries:
            return None
        return self.entries[-1].block_end

    def mode_counts(self) -> dict[str, int]:
        counts: dict[str, int] = {}
        for entry in self.entries:
            counts[entry.mode.value] = counts.get(entry.mode.value, 0) + 1
        return counts

    def to_rows(self) -> list[dict]:
        """Executor contract: ordered rows, never re-derived downstream."""
        return [
            {
                "block_start": entry.block_start.isoformat(),
                "duration_minutes": entry.duration_minutes,
                "mode": entry.mode.value,
                "reason": entry.reason,
                "priority": entry.priority,
                "strategy_name": entry.strategy_name,
                "decision_id": entry.decision_id,
            }
            for entry in self.entries
        ]


@dataclass(frozen=True)
class InverterCommand:
    """A single mode change the governor allowed through."""

    inverter_id: str
    mode: OperationMode
    issued_at: datetime
    reason: str
    decision_id: str | None = None
    strategy_name: str | None = None


@dataclass
class HistoricalHints:
    """Consumption history forwarded to plugins as hints."""

    consumption_today_kwh: float | None = None
    grid_import_today_kwh: float | None = None
    hourly_consumption_profile: list[float] | None = None

    def to_dict(self) -> dict:
        return {
            "consumption_today_kwh": self.consumption_today_kwh,
            "grid_import_today_kwh": self.grid_import_today_kwh,
            "hourly_consumption_profile": self.hourly_consumption_profile,
        }


@dataclass
class CycleInput:
    """Snapshot of external data consumed by one planning cycle."""

    price_points: list[PricePoint]
    battery_state: BatteryState
    prices_as_of: datetime | None = None
    price_version: str | None = None
    connectivity_ok: bool = True
    solar_forecast: list[ForecastPoint] = field(default_factory=list)
    consumption_forecast: list[ForecastPoint] = field(default_factory=list)
    historical: HistoricalHints = field(default_factory=HistoricalHints)
