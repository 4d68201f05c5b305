"""
Forward battery simulator.

Given a starting SOC, a battery model and a tentative mode per block, predicts
the SOC trajectory and the realized energy flows. Strategies use it for
"what-if" exploration and the engine uses it to validate a merged plan.

PHYSICAL MODEL:
- ForceCharge draws max_charge_rate_kw for the whole block, solar surplus first,
  and stores it after round-trip efficiency (applied on the charging leg only).
- ForceDischarge delivers max_discharge_rate_kw, serving load before export.
- BackUpMode and NoChargeNoDischarge leave the battery untouched.
- SelfUse charges from solar surplus and discharges to cover the net load,
  bounded by the rate limits and the strategy SOC range.
- Wear is billed on discharged energy, once per kWh cycled.

A forced transfer that had to be clamped to an SOC bound is reported as a
SimulationViolation. That is not an error: callers decide whether a violation
invalidates the plan. SelfUse is bounded by construction and never violates.

All functions here are pure and hold no module state, so strategies can call
them concurrently and repeatedly.
"""

import logging
from dataclasses import dataclass

from .models import BatteryState, OperationMode, ScheduleBlock
from .settings import AVERAGE_HOUSEHOLD_LOAD_KW, BatterySettings

logger = logging.getLogger(__name__)

# Transfers closer than this to the request are not violations
ENERGY_EPSILON_KWH = 1e-6


@dataclass(frozen=True)
class BlockFlow:
    """Realized energy flows for one simulated block (kWh)."""

    block_index: int
    mode: OperationMode
    soc_start: float
    soc_end: float
    charged_kwh: float = 0.0  # energy drawn into the battery before losses
    stored_kwh: float = 0.0  # energy added to the battery after losses
    discharged_kwh: float = 0.0
    grid_import_kwh: float = 0.0
    grid_export_kwh: float = 0.0
    cost: float = 0.0


@dataclass(frozen=True)
class SimulationViolation:
    """A forced transfer that was clamped to an SOC bound."""

    block_index: int
    mode: OperationMode
    requested_kwh: float
    realized_kwh: float
    bound: str

    @property
    def shortfall_kwh(self) -> float:
        return self.requested_kwh - self.realized_kwh

    def describe(self) -> str:
        return (
            f"Block {self.block_index}: {self.mode.value} requested "
            f"{self.requested_kwh:.3f} kWh but only {self.realized_kwh:.3f} kWh "
            f"fit before {self.bound}"
        )


@dataclass(frozen=True)
class SimulationResult:
    """Outcome of simulating a mode sequence.

    Attributes:
        trajectory: SOC before the first block followed by SOC after each block
        flows: Realized energy flows per block
        violations: Forced transfers that were clamped
    """

    trajectory: tuple[float, ...]
    flows: tuple[BlockFlow, ...]
    violations: tuple[SimulationViolation, ...]

    @property
    def is_feasible(self) -> bool:
        return not self.violations

    @property
    def final_soc(self) -> float:
        return self.trajectory[-1]

    @property
    def min_soc_reached(self) -> float:
        return min(self.trajectory)

    @property
    def total_cost(self) -> float:
        return sum(flow.cost for flow in self.flows)


def degradation_cost(energy_kwh: float, battery: BatterySettings) -> float:
    """Wear cost of cycling the given energy through the battery.

    Billed once per kWh cycled; the simulator applies it to discharged energy.
    """
    return energy_kwh * battery.wear_cost_per_kwh


def charge_cost(stored_kwh: float, price: float, battery: BatterySettings) -> float:
    """Grid cost of storing energy, including the efficiency loss."""
    return stored_kwh / battery.efficiency * price


def discharge_revenue(energy_kwh: float, price: float) -> float:
    """Value of energy delivered from the battery at a price."""
    return energy_kwh * price


def arbitrage_margin(
    charge_price: float, discharge_price: float, battery: BatterySettings
) -> float:
    """Net value per kWh bought at charge_price and sold at discharge_price."""
    return discharge_price * battery.efficiency - charge_price - battery.wear_cost_per_kwh


def _clamp(value: float, low: float, high: float) -> float:
    return max(low, min(high, value))


def step(
    state: BatteryState,
    mode: OperationMode,
    block: ScheduleBlock,
    battery: BatterySettings,
    allow_hardware_floor: bool = False,
    fallback_load_kw: float = AVERAGE_HOUSEHOLD_LOAD_KW,
) -> tuple[BatteryState, BlockFlow, SimulationViolation | None]:
    """Simulate a single block.

    Args:
        state: SOC at block start
        mode: Mode active for the whole block
        block: The block, carrying duration, price and optional forecasts
        battery: Battery model
        allow_hardware_floor: Let ForceDischarge go down to hardware_min_soc
        fallback_load_kw: Household load used when the block has no forecast

    Returns:
        Tuple of (new state, realized flows, violation or None)
    """
    soc = _clamp(state.soc_percent, battery.hardware_min_soc, battery.max_soc)
    hours = block.duration_hours
    solar = block.solar_kwh or 0.0
    load = (
        block.consumption_kwh
        if block.consumption_kwh is not None
        else fallback_load_kw * hours
    )
    net_load = load - solar
    surplus = max(0.0, -net_load)
    deficit = max(0.0, net_load)

    charged = stored = discharged = 0.0
    grid_import = deficit
    grid_export = surplus
    violation = None

    headroom_kwh = max(0.0, battery.soc_to_kwh(battery.max_soc - soc))

    if mode == OperationMode.FORCE_CHARGE:
        requested_stored = battery.max_charge_rate_kw * hours * battery.efficiency
        stored = min(requested_stored, headroom_kwh)
        charged = stored / battery.efficiency
        from_surplus = min(surplus, charged)
        grid_import = deficit + (charged - from_surplus)
        grid_export = surplus - from_surplus
        if requested_stored - stored > ENERGY_EPSILON_KWH:
            violation = SimulationViolation(
                block.index, mode, requested_stored, stored, "max_soc"
            )

    elif mode == OperationMode.FORCE_DISCHARGE:
        floor = battery.hardware_min_soc if allow_hardware_floor else battery.min_soc
        requested = battery.max_discharge_rate_kw * hours
        available = max(0.0, battery.soc_to_kwh(soc - floor))
        discharged = min(requested, available)
        grid_import = max(0.0, deficit - discharged)
        grid_export = surplus + max(0.0, discharged - deficit)
        if requested - discharged > ENERGY_EPSILON_KWH:
            bound = "hardware_min_soc" if allow_hardware_floor else "min_soc"
            violation = SimulationViolation(
                block.index, mode, requested, discharged, bound
            )

    elif mode == OperationMode.SELF_USE:
        if surplus > 0:
            charged = min(
                surplus,
                battery.max_charge_rate_kw * hours,
                headroom_kwh / battery.efficiency,
            )
            stored = charged * battery.efficiency
            grid_export = surplus - charged
        elif deficit > 0:
            available = max(0.0, battery.soc_to_kwh(soc - battery.min_soc))
            discharged = min(deficit, battery.max_discharge_rate_kw * hours, available)
            grid_import = deficit - discharged

    # BACKUP and NO_CHARGE_NO_DISCHARGE transfer nothing

    new_soc = _clamp(
        soc + battery.kwh_to_soc(stored - discharged),
        battery.hardware_min_soc,
        battery.max_soc,
    )
    cost = (
        grid_import * block.price
        - grid_export * block.export_price
        + degradation_cost(discharged, battery)
    )

    flow = BlockFlow(
        block_index=block.index,
        mode=mode,
        soc_start=soc,
        soc_end=new_soc,
        charged_kwh=charged,
        stored_kwh=stored,
        discharged_kwh=discharged,
        grid_import_kwh=grid_import,
        grid_export_kwh=grid_export,
        cost=cost,
    )
    return BatteryState(soc_percent=new_soc), flow, violation


def simulate(
    initial_state: BatteryState,
    battery: BatterySettings,
    modes: list[OperationMode],
    blocks: list[ScheduleBlock],
    allow_hardware_floor: bool = False,
    fallback_load_kw: float = AVERAGE_HOUSEHOLD_LOAD_KW,
) -> SimulationResult:
    """Simulate a mode sequence over consecutive blocks.

    Args:
        initial_state: SOC before the first block
        battery: Battery model for the whole run
        modes: One mode per block
        blocks: Blocks to simulate, in order
        allow_hardware_floor: Let ForceDischarge go down to hardware_min_soc
        fallback_load_kw: Household load used when a block has no forecast

    Returns:
        SimulationResult with trajectory, flows and violations

    Raises:
        ValueError: If modes and blocks differ in length
    """
    if len(modes) != len(blocks):
        raise ValueError(
            f"Mode sequence length {len(modes)} does not match {len(blocks)} blocks"
        )

    state = BatteryState(
        _clamp(initial_state.soc_percent, battery.hardware_min_soc, battery.max_soc)
    )
    trajectory = [state.soc_percent]
    flows = []
    violations = []

    for mode, block in zip(modes, blocks, strict=True):
        state, flow, violation = step(
            state, mode, block, battery, allow_hardware_floor, fallback_load_kw
        )
        trajectory.append(state.soc_percent)
        flows.append(flow)
        if violation is not None:
            violations.append(violation)

    return SimulationResult(
        trajectory=tuple(trajectory), flows=tuple(flows), violations=tuple(violations)
    )
