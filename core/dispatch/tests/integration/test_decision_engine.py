"""
End-to-end planning cycle tests.

Each test drives DecisionEngine.run_cycle with explicit times so schedules,
governor state and audit records are deterministic.
"""

from datetime import UTC, datetime, timedelta

import pytest

from core.dispatch.audit import AuditCategory
from core.dispatch.block_model import expand_hourly_prices
from core.dispatch.decision_engine import SAFE_MODE_NAME, DecisionEngine
from core.dispatch.models import (
    BatteryState,
    CycleInput,
    OperationMode,
    SystemHealth,
)
from core.dispatch.safety_governor import GovernorStatus
from core.dispatch.settings import (
    EngineSettings,
    GovernorSettings,
    InverterConfig,
    StrategySettings,
)
from core.dispatch.strategies import BudgetAllocation, Strategy

START = datetime(2025, 11, 15, 0, 0, tzinfo=UTC)

# Realistic winter day: cheap night, morning and evening peaks (hourly)
WINTER_DAY = [
    0.42, 0.38, 0.35, 0.33, 0.36, 0.45, 0.78, 1.12,
    1.25, 1.05, 0.88, 0.79, 0.72, 0.70, 0.75, 0.92,
    1.35, 1.85, 2.10, 1.65, 1.20, 0.85, 0.62, 0.48,
]  # fmt: skip


def cycle_input(prices, soc=50.0, as_of=START, minutes=15, **kwargs):
    return CycleInput(
        price_points=expand_hourly_prices(START, prices, interval_minutes=minutes),
        battery_state=BatteryState(soc),
        prices_as_of=as_of,
        price_version=kwargs.pop("price_version", "v1"),
        **kwargs,
    )


def budget_settings(min_consecutive_blocks=1, **engine_kwargs):
    """One charge block per day, no discharge budget."""
    return EngineSettings(
        strategy=StrategySettings(force_charge_hours=0.25, force_discharge_hours=0),
        governor=GovernorSettings(min_consecutive_blocks=min_consecutive_blocks),
        **engine_kwargs,
    )


def budget_engine(settings=None, command_sink=None):
    settings = settings or budget_settings()
    engine = DecisionEngine(settings, command_sink=command_sink)
    engine.register_builtins([BudgetAllocation(settings.strategy)])
    return engine


class ScriptedStrategy(Strategy):
    """Recommends whatever mode the test sets, for every block."""

    name = "scripted"
    default_priority = 90

    def __init__(self, mode=OperationMode.SELF_USE):
        super().__init__()
        self.mode = mode

    def evaluate(self, block, all_blocks, battery_state, battery, day_profile):
        return self.decide(block, self.mode, f"Scripted {self.mode.value}")


class TestBudgetScenario:
    def test_cheapest_block_force_charges(self):
        commands = []
        engine = budget_engine(command_sink=commands.append)

        report = engine.run_cycle(cycle_input([0.1, 0.5, 0.5, 0.5]), now=START)

        assert report.published
        assert [e.mode for e in report.schedule.entries] == [
            OperationMode.FORCE_CHARGE,
            OperationMode.SELF_USE,
            OperationMode.SELF_USE,
            OperationMode.SELF_USE,
        ]
        assert report.schedule.entries[0].strategy_name == "budget-allocation"
        assert len(report.commands) == 1
        assert report.commands[0].inverter_id == "inverter"
        assert report.commands[0].mode == OperationMode.FORCE_CHARGE
        assert commands == report.commands
        assert engine.current_mode("inverter") == OperationMode.FORCE_CHARGE

    def test_simulation_follows_plan(self):
        engine = budget_engine()

        report = engine.run_cycle(cycle_input([0.1, 0.5, 0.5, 0.5]), now=START)

        assert report.simulation.trajectory[0] == 50.0
        assert report.simulation.trajectory[1] > 50.0
        assert report.simulation.is_feasible

    def test_near_full_battery_rejects_charge(self):
        commands = []
        engine = budget_engine(command_sink=commands.append)

        report = engine.run_cycle(cycle_input([0.1, 0.5, 0.5, 0.5], soc=95.0), now=START)

        # The plan still says ForceCharge; only execution is refused
        assert report.schedule.entries[0].mode == OperationMode.FORCE_CHARGE
        assert report.outcomes[0].status == GovernorStatus.REJECTED_SOC
        assert report.commands == []
        assert commands == []
        assert engine.current_mode("inverter") == OperationMode.SELF_USE
        rejected = engine.audit.records(AuditCategory.SAFETY_REJECTED)
        assert len(rejected) == 1
        assert rejected[0].strategy_name == "budget-allocation"
        assert rejected[0].block_start == START

    def test_default_debounce_coalesces_single_charge_block(self):
        engine = budget_engine(budget_settings(min_consecutive_blocks=2))

        report = engine.run_cycle(cycle_input([0.1, 0.5, 0.5, 0.5]), now=START)

        assert all(e.mode == OperationMode.SELF_USE for e in report.schedule.entries)
        assert report.commands == []
        assert engine.audit.count(AuditCategory.DEBOUNCE) == 1


class TestFullDay:
    @pytest.fixture
    def day_input(self):
        return cycle_input(WINTER_DAY, minutes=60)

    def make_engine(self):
        engine = DecisionEngine()
        engine.register_builtins()
        return engine

    def test_one_contiguous_entry_per_block(self, day_input):
        report = self.make_engine().run_cycle(day_input, now=START)
        entries = report.schedule.entries

        assert len(entries) == 96
        assert entries[0].block_start == START
        assert entries[-1].block_end == START + timedelta(hours=24)
        for current, following in zip(entries, entries[1:], strict=False):
            assert current.block_end == following.block_start
            assert current.duration_minutes == 15
        assert all(e.strategy_name for e in entries)

    def test_plan_is_deterministic(self, day_input):
        first = self.make_engine().run_cycle(day_input, now=START).schedule
        second = self.make_engine().run_cycle(day_input, now=START).schedule

        assert first.to_rows() == second.to_rows()

    def test_uses_the_price_spread(self, day_input):
        schedule = self.make_engine().run_cycle(day_input, now=START).schedule
        counts = schedule.mode_counts()

        assert counts.get("ForceCharge", 0) > 0
        assert counts.get("ForceDischarge", 0) > 0

        evening_peak = schedule.entry_at(START + timedelta(hours=18, minutes=5))
        assert evening_peak.mode != OperationMode.FORCE_CHARGE

    def test_schedule_metadata(self, day_input):
        report = self.make_engine().run_cycle(day_input, now=START)

        assert report.cycle_id == 1
        assert report.schedule.cycle_id == 1
        assert report.schedule.price_version == "v1"
        assert report.schedule.health == SystemHealth.HEALTHY


class TestInputErrors:
    def test_gap_keeps_previous_schedule(self):
        engine = budget_engine()
        first = engine.run_cycle(cycle_input([0.1, 0.5, 0.5, 0.5]), now=START)

        broken = cycle_input([0.1, 0.5, 0.5, 0.5])
        del broken.price_points[1]
        report = engine.run_cycle(broken, now=START + timedelta(minutes=5))

        assert report.aborted
        assert not report.published
        assert "Gap" in report.error
        assert engine.current_schedule is first.schedule
        assert engine.audit.count(AuditCategory.INPUT_ERROR) == 1
        # Execution continues on the last valid schedule
        assert report.outcomes[0].status == GovernorStatus.UNCHANGED

    def test_empty_prices_abort(self):
        engine = budget_engine()

        report = engine.run_cycle(cycle_input([]), now=START)

        assert report.aborted
        assert engine.current_schedule is None
        assert report.outcomes == []

    def test_elapsed_blocks_dropped(self):
        engine = budget_engine()

        report = engine.run_cycle(
            cycle_input([0.5] * 8), now=START + timedelta(hours=1, minutes=1)
        )

        entries = report.schedule.entries
        assert len(entries) == 4
        assert entries[0].block_start == START + timedelta(hours=1)

    def test_horizon_fully_elapsed(self):
        engine = budget_engine()

        report = engine.run_cycle(cycle_input([0.5] * 4), now=START + timedelta(hours=3))

        assert report.aborted
        assert engine.audit.count(AuditCategory.INPUT_ERROR) == 1


class TestHealth:
    def test_lost_connectivity_publishes_safe_mode(self):
        engine = budget_engine()

        report = engine.run_cycle(
            cycle_input([0.1, 0.5, 0.5, 0.5], connectivity_ok=False), now=START
        )

        assert report.health == SystemHealth.SAFE_MODE
        assert report.published
        assert all(e.mode == OperationMode.SELF_USE for e in report.schedule.entries)
        assert {e.strategy_name for e in report.schedule.entries} == {SAFE_MODE_NAME}
        assert report.simulation is None

    def test_hard_stale_prices_publish_safe_mode(self):
        engine = budget_engine()
        now = START + timedelta(minutes=1)

        report = engine.run_cycle(
            cycle_input([0.1, 0.5, 0.5, 0.5], as_of=now - timedelta(hours=7)), now=now
        )

        assert report.health == SystemHealth.SAFE_MODE
        assert report.schedule.mode_counts() == {"SelfUse": 4}

    def test_soft_stale_prices_still_plan(self):
        engine = budget_engine()
        now = START + timedelta(minutes=1)

        report = engine.run_cycle(
            cycle_input([0.1, 0.5, 0.5, 0.5], as_of=now - timedelta(hours=3)), now=now
        )

        assert report.health == SystemHealth.DEGRADED
        assert report.schedule.entries[0].mode == OperationMode.FORCE_CHARGE

    def test_safe_mode_returns_to_self_use(self):
        engine = budget_engine()
        engine.run_cycle(cycle_input([0.1, 0.5, 0.5, 0.5]), now=START)
        assert engine.current_mode("inverter") == OperationMode.FORCE_CHARGE

        later = START + timedelta(minutes=10)
        report = engine.run_cycle(
            cycle_input([0.1, 0.5, 0.5, 0.5], connectivity_ok=False), now=later
        )

        assert report.outcomes[0].status == GovernorStatus.CHANGED
        assert engine.current_mode("inverter") == OperationMode.SELF_USE


class TestExecution:
    def test_dwell_defers_then_applies(self):
        strategy = ScriptedStrategy(OperationMode.FORCE_CHARGE)
        engine = DecisionEngine()
        engine.register_builtins([strategy])
        prices = [0.5] * 8

        first = engine.run_cycle(cycle_input(prices), now=START)
        assert first.outcomes[0].status == GovernorStatus.CHANGED

        strategy.mode = OperationMode.FORCE_DISCHARGE
        second = engine.run_cycle(cycle_input(prices), now=START + timedelta(seconds=60))
        assert second.outcomes[0].status == GovernorStatus.DEFERRED_DWELL
        assert engine.current_mode("inverter") == OperationMode.FORCE_CHARGE
        assert engine.audit.count(AuditCategory.DWELL_DEFERRED) == 1

        third = engine.run_cycle(cycle_input(prices), now=START + timedelta(seconds=301))
        assert third.outcomes[0].status == GovernorStatus.CHANGED
        assert third.commands[0].mode == OperationMode.FORCE_DISCHARGE

    def test_commands_follow_inverter_roles(self):
        settings = budget_settings(
            inverters=[
                InverterConfig(id="main", role="master"),
                InverterConfig(id="follower", role="slave"),
                InverterConfig(id="garage", role="independent"),
            ]
        )
        engine = budget_engine(settings)

        report = engine.run_cycle(cycle_input([0.1, 0.5, 0.5, 0.5]), now=START)

        assert [c.inverter_id for c in report.commands] == ["main", "garage"]
        assert engine.current_mode("follower") == OperationMode.SELF_USE

    def test_failed_delivery_reverts_and_retries(self):
        delivered = []
        failures = [RuntimeError("executor offline")]

        def flaky_sink(command):
            if failures:
                raise failures.pop()
            delivered.append(command)

        engine = budget_engine(command_sink=flaky_sink)
        prices = [0.1, 0.1, 0.5, 0.5]

        first = engine.run_cycle(cycle_input(prices), now=START)

        assert first.commands == []
        assert engine.current_mode("inverter") == OperationMode.SELF_USE
        assert engine.audit.count(AuditCategory.COMMAND_FAILED) == 1

        second = engine.run_cycle(cycle_input(prices), now=START + timedelta(seconds=60))

        assert [c.mode for c in second.commands] == [OperationMode.FORCE_CHARGE]
        assert delivered == second.commands
