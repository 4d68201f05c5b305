"""
Decision engine: runs one planning cycle end to end.

prices/forecasts -> block model -> day profile -> strategies (built-in and
external) -> merger -> plan debounce -> published schedule -> governor ->
inverter commands.

Only InputError aborts a cycle, and even then the last valid schedule keeps
governing execution. Every other failure below the cycle boundary is
recovered locally and recorded in the audit trail.
"""

import logging
from collections.abc import Callable
from dataclasses import dataclass, field, replace
from datetime import datetime
from threading import Lock

from .audit import AuditCategory, AuditTrail
from .battery_simulator import SimulationResult, simulate
from .block_model import attach_forecasts, build_blocks, drop_elapsed_blocks
from .day_profile import analyze_day
from .decision_merger import DecisionMerger, EvaluationContext
from .exceptions import InputError, InsufficientDataError
from .health import determine_system_health
from .models import (
    CycleInput,
    InverterCommand,
    OperationMode,
    Schedule,
    ScheduleBlock,
    ScheduleEntry,
    StrategyDecision,
    SystemHealth,
)
from .plugin_gateway import PluginGateway
from .safety_governor import GovernorOutcome, SafetyGovernor
from .settings import EngineSettings
from .strategies import Strategy, default_strategies
from .strategy_registry import StrategyRegistry
from .time_utils import ensure_aware, now_utc

logger = logging.getLogger(__name__)

SAFE_MODE_NAME = "SafeMode"

CommandSink = Callable[[InverterCommand], None]


@dataclass
class CycleReport:
    """What happened in one planning cycle."""

    cycle_id: int
    started_at: datetime
    health: SystemHealth = SystemHealth.HEALTHY
    published: bool = False
    error: str | None = None
    schedule: Schedule | None = None
    simulation: SimulationResult | None = None
    outcomes: list[GovernorOutcome] = field(default_factory=list)
    commands: list[InverterCommand] = field(default_factory=list)

    @property
    def aborted(self) -> bool:
        return self.error is not None


class DecisionEngine:
    """Owns the registry, governor and last valid schedule across cycles."""

    def __init__(
        self,
        settings: EngineSettings | None = None,
        registry: StrategyRegistry | None = None,
        audit: AuditTrail | None = None,
        command_sink: CommandSink | None = None,
    ):
        self.settings = settings or EngineSettings()
        self.audit = audit or AuditTrail()
        self.registry = registry or StrategyRegistry(
            max_failures=self.settings.plugins.max_failures
        )
        self.gateway = PluginGateway(self.registry, self.settings.plugins)
        self.merger = DecisionMerger(self.registry, self.audit, self.settings.plugins)
        self.governor = SafetyGovernor(
            self.settings.governor, self.settings.battery, self.audit
        )
        self.command_sink = command_sink

        self._schedule: Schedule | None = None
        self._last_report: CycleReport | None = None
        self._last_context: EvaluationContext | None = None
        self._cycle_count = 0
        self._cycle_lock = Lock()

    @property
    def current_schedule(self) -> Schedule | None:
        """The last valid schedule, kept when a cycle aborts."""
        return self._schedule

    @property
    def last_report(self) -> CycleReport | None:
        return self._last_report

    def register_builtins(self, strategies: list[Strategy] | None = None) -> None:
        """Register built-in strategies in order. Defaults to all four built-ins."""
        for strategy in strategies or default_strategies(self.settings.strategy):
            self.registry.register_builtin(strategy)

    # Planning

    def prepare_blocks(self, cycle_input: CycleInput, now: datetime) -> list[ScheduleBlock]:
        """Build the remaining horizon from the cycle's price and forecast data.

        Raises:
            InputError: If the data is malformed or nothing of the horizon remains
        """
        blocks = build_blocks(
            cycle_input.price_points, self.settings.cycle.block_minutes
        )
        blocks = attach_forecasts(
            blocks, cycle_input.solar_forecast, cycle_input.consumption_forecast
        )
        blocks = drop_elapsed_blocks(blocks, now)
        if not blocks:
            raise InsufficientDataError(
                message=f"All price data ends before {now.isoformat()}"
            )
        return blocks

    def _safe_mode_decisions(self, blocks: list[ScheduleBlock]) -> list[StrategyDecision]:
        return [
            StrategyDecision.fallback(
                block,
                SAFE_MODE_NAME,
                "Safe mode: data stale or sources unreachable",
                decision_id=f"safemode:{block.start_time.isoformat()}",
            )
            for block in blocks
        ]

    def plan(
        self, cycle_input: CycleInput, now: datetime, cycle_id: int = 0
    ) -> tuple[Schedule, SimulationResult | None]:
        """Produce a complete schedule for the remaining horizon.

        Raises:
            InputError: If the price data cannot be planned on
        """
        battery = replace(self.settings.battery)
        blocks = self.prepare_blocks(cycle_input, now)
        health = determine_system_health(
            cycle_input.prices_as_of,
            now,
            cycle_input.connectivity_ok,
            self.settings.health,
        )

        if health == SystemHealth.SAFE_MODE:
            decisions = self._safe_mode_decisions(blocks)
            simulation = None
        else:
            profile = analyze_day(blocks, self.settings.strategy)
            context = EvaluationContext(
                all_blocks=blocks,
                battery_state=cycle_input.battery_state,
                battery=battery,
                day_profile=profile,
            )
            self._last_context = context
            self.gateway.begin_cycle(cycle_input.historical)

            merged = self.merger.merge(blocks, context)
            decisions = self.governor.debounce(merged)
            simulation = self._validate(decisions, blocks, context)

        schedule = Schedule(
            entries=tuple(ScheduleEntry.from_decision(d) for d in decisions),
            created_at=now,
            cycle_id=cycle_id,
            health=health,
            price_version=cycle_input.price_version,
        )
        return schedule, simulation

    def _validate(
        self,
        decisions: list[StrategyDecision],
        blocks: list[ScheduleBlock],
        context: EvaluationContext,
    ) -> SimulationResult:
        """Forward SOC pass over the merged plan. Violations are audited only."""
        result = simulate(
            context.battery_state,
            context.battery,
            [d.mode for d in decisions],
            blocks,
            fallback_load_kw=self.settings.strategy.average_household_load_kw,
        )
        for violation in result.violations:
            block = blocks[violation.block_index]
            self.audit.record(
                AuditCategory.SIMULATION_VIOLATION,
                violation.describe(),
                strategy_name=decisions[violation.block_index].strategy_name,
                block_start=block.start_time,
                constraint=violation.bound,
                context={
                    "requested_kwh": violation.requested_kwh,
                    "realized_kwh": violation.realized_kwh,
                    "shortfall_kwh": violation.shortfall_kwh,
                },
            )
        return result

    # Execution

    def _deliver(self, outcome: GovernorOutcome, previous_mode, previous_change) -> bool:
        if outcome.command is None or self.command_sink is None:
            return outcome.command is not None
        try:
            self.command_sink(outcome.command)
            return True
        except Exception as e:
            logger.error(f"Failed to deliver command to {outcome.inverter_id}: {e}")
            self.governor.revert(outcome.inverter_id, previous_mode, previous_change)
            self.audit.record(
                AuditCategory.COMMAND_FAILED,
                f"Command {outcome.command.mode.value} for {outcome.inverter_id} "
                f"not delivered: {e}",
                strategy_name=outcome.command.strategy_name,
                inverter_id=outcome.inverter_id,
                context={"decision_id": outcome.command.decision_id},
            )
            return False

    def execute(
        self, schedule: Schedule | None, soc_percent: float, now: datetime
    ) -> tuple[list[GovernorOutcome], list[InverterCommand]]:
        """Offer the schedule entry active at ``now`` to every commanded inverter."""
        outcomes: list[GovernorOutcome] = []
        commands: list[InverterCommand] = []
        entry = schedule.entry_at(now) if schedule is not None else None

        for inverter in self.settings.inverters:
            if not inverter.receives_commands:
                continue
            state = self.governor.state(inverter.id)
            previous_mode, previous_change = state.current_mode, state.last_change_at

            if entry is None:
                outcome = self.governor.retry_pending(inverter.id, soc_percent, now)
                if outcome is None:
                    continue
            else:
                outcome = self.governor.apply(
                    inverter.id, entry.to_decision(), soc_percent, now
                )

            outcomes.append(outcome)
            if self._deliver(outcome, previous_mode, previous_change):
                commands.append(outcome.command)

        return outcomes, commands

    def run_cycle(self, cycle_input: CycleInput, now: datetime | None = None) -> CycleReport:
        """Run one full planning cycle. Cycles never overlap."""
        now = ensure_aware(now or now_utc(), "Cycle time")

        with self._cycle_lock:
            self._cycle_count += 1
            report = CycleReport(cycle_id=self._cycle_count, started_at=now)

            try:
                schedule, simulation = self.plan(cycle_input, now, self._cycle_count)
            except InputError as e:
                report.error = str(e)
                report.health = determine_system_health(
                    cycle_input.prices_as_of,
                    now,
                    cycle_input.connectivity_ok,
                    self.settings.health,
                )
                self.audit.record(
                    AuditCategory.INPUT_ERROR,
                    f"Cycle {self._cycle_count} aborted, keeping previous schedule: {e}",
                    context=dict(e.context),
                )
                logger.error(f"Planning cycle {self._cycle_count} aborted: {e}")
            else:
                self._schedule = schedule
                report.schedule = schedule
                report.simulation = simulation
                report.health = schedule.health
                report.published = True
                logger.info(
                    f"Cycle {self._cycle_count}: published {len(schedule.entries)} blocks "
                    f"({schedule.mode_counts()}), health {schedule.health.value}"
                )

            report.outcomes, report.commands = self.execute(
                self._schedule, cycle_input.battery_state.soc_percent, now
            )
            self._last_report = report
            return report

    def probe_plugin(self, name: str) -> bool:
        """Probe a disabled plugin against the last cycle's first block.

        Raises:
            KeyError: If no plugin with that name is registered
        """
        self.registry.get(name)
        context = self._last_context
        if context is None:
            logger.warning(f"Cannot probe {name}: no cycle has run yet")
            return False
        return self.gateway.probe(
            name,
            context.all_blocks[0],
            context.all_blocks,
            context.battery_state,
            context.battery,
            context.day_profile,
        )

    def current_mode(self, inverter_id: str) -> OperationMode:
        return self.governor.state(inverter_id).current_mode
