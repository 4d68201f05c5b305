"""Tests for plan debouncing and execution guards."""

from datetime import timedelta

import pytest

from core.dispatch.audit import AuditCategory, AuditTrail
from core.dispatch.models import OperationMode
from core.dispatch.safety_governor import GovernorStatus, SafetyGovernor
from core.dispatch.settings import BatterySettings, GovernorSettings


@pytest.fixture
def audit():
    return AuditTrail()


@pytest.fixture
def governor(audit):
    return SafetyGovernor(GovernorSettings(), BatterySettings(), audit)


@pytest.fixture
def plan(block_factory, decision_factory, modes):
    """Build a decision list from mode aliases, one 15-minute block each."""

    def build(aliases):
        blocks = block_factory([0.2] * len(aliases))
        return [
            decision_factory(block, modes[alias], name=f"s{i}")
            for i, (block, alias) in enumerate(zip(blocks, aliases, strict=True))
        ]

    return build


def mode_aliases(decisions):
    names = {
        OperationMode.SELF_USE: "SU",
        OperationMode.FORCE_CHARGE: "FC",
        OperationMode.FORCE_DISCHARGE: "FD",
    }
    return [names[d.mode] for d in decisions]


class TestDebounce:
    def test_leading_single_block_takes_next_run(self, governor, plan, audit):
        result = governor.debounce(plan(["FC", "SU", "SU", "FD", "FD"]))

        assert mode_aliases(result) == ["SU", "SU", "SU", "FD", "FD"]
        assert audit.count(AuditCategory.DEBOUNCE) == 1

    def test_longer_neighbour_wins(self, governor, plan):
        result = governor.debounce(plan(["SU", "SU", "FC", "SU", "SU", "SU"]))
        assert mode_aliases(result) == ["SU"] * 6

    def test_preceding_run_wins_tie(self, governor, plan):
        result = governor.debounce(plan(["FC", "FC", "SU", "FD", "FD"]))
        assert mode_aliases(result) == ["FC", "FC", "FC", "FD", "FD"]

    def test_trailing_single_block_takes_previous_run(self, governor, plan):
        result = governor.debounce(plan(["SU", "SU", "FD"]))
        assert mode_aliases(result) == ["SU", "SU", "SU"]

    def test_long_runs_untouched(self, governor, plan, audit):
        decisions = plan(["FC", "FC", "SU", "SU"])

        assert governor.debounce(decisions) == decisions
        assert audit.count(AuditCategory.DEBOUNCE) == 0

    def test_single_block_plan_untouched(self, governor, plan):
        decisions = plan(["FC"])
        assert governor.debounce(decisions) == decisions

    def test_disabled_with_minimum_of_one(self, audit, plan):
        governor = SafetyGovernor(
            GovernorSettings(min_consecutive_blocks=1), BatterySettings(), audit
        )
        decisions = plan(["FC", "SU", "FD"])

        assert governor.debounce(decisions) == decisions

    def test_debounced_decision_keeps_its_block(self, governor, plan):
        decisions = plan(["FC", "SU", "SU"])

        result = governor.debounce(decisions)

        assert result[0].block_start == decisions[0].block_start
        assert result[0].strategy_name == decisions[1].strategy_name
        assert result[0].reason.startswith("Debounced: ForceCharge")
        assert result[0].decision_id == "debounce:s0:0"

    def test_input_not_mutated(self, governor, plan):
        decisions = plan(["FC", "SU", "SU"])
        governor.debounce(decisions)
        assert decisions[0].mode == OperationMode.FORCE_CHARGE


class TestApply:
    def test_same_mode_is_noop(self, governor, plan, start_time):
        outcome = governor.apply("inv", plan(["SU"])[0], 50.0, start_time)

        assert outcome.status == GovernorStatus.UNCHANGED
        assert outcome.command is None

    def test_change_emits_one_command(self, governor, plan, start_time):
        decision = plan(["FC"])[0]

        outcome = governor.apply("inv", decision, 50.0, start_time)

        assert outcome.status == GovernorStatus.CHANGED
        assert outcome.command.mode == OperationMode.FORCE_CHARGE
        assert outcome.command.decision_id == decision.decision_id
        state = governor.state("inv")
        assert state.current_mode == OperationMode.FORCE_CHARGE
        assert state.last_change_at == start_time
        assert state.commands_issued == 1

    def test_force_charge_rejected_near_full(self, governor, plan, start_time, audit):
        outcome = governor.apply("inv", plan(["FC"])[0], 95.0, start_time)

        assert outcome.status == GovernorStatus.REJECTED_SOC
        assert outcome.held_mode == OperationMode.SELF_USE
        assert outcome.command is None
        assert outcome.violation.constraint == "max_soc"
        assert governor.state("inv").current_mode == OperationMode.SELF_USE
        records = audit.records(AuditCategory.SAFETY_REJECTED)
        assert len(records) == 1
        assert records[0].inverter_id == "inv"
        assert records[0].constraint == "max_soc"
        assert records[0].context["soc_percent"] == 95.0

    def test_force_charge_allowed_below_headroom(self, governor, plan, start_time):
        outcome = governor.apply("inv", plan(["FC"])[0], 94.0, start_time)
        assert outcome.status == GovernorStatus.CHANGED

    def test_force_discharge_rejected_at_min_soc(self, governor, plan, start_time):
        outcome = governor.apply("inv", plan(["FD"])[0], 10.0, start_time)

        assert outcome.status == GovernorStatus.REJECTED_SOC
        assert outcome.violation.constraint == "min_soc"

    def test_force_discharge_allowed_above_min_soc(self, governor, plan, start_time):
        outcome = governor.apply("inv", plan(["FD"])[0], 10.5, start_time)
        assert outcome.status == GovernorStatus.CHANGED

    def test_dwell_defers_change(self, governor, plan, start_time, audit):
        charge, discharge = plan(["FC", "FD"])
        governor.apply("inv", charge, 50.0, start_time)

        outcome = governor.apply("inv", discharge, 50.0, start_time + timedelta(seconds=60))

        assert outcome.status == GovernorStatus.DEFERRED_DWELL
        assert outcome.held_mode == OperationMode.FORCE_CHARGE
        state = governor.state("inv")
        assert state.pending_mode == OperationMode.FORCE_DISCHARGE
        assert state.current_mode == OperationMode.FORCE_CHARGE
        assert audit.count(AuditCategory.DWELL_DEFERRED) == 1

    def test_deferred_change_retried_after_dwell(self, governor, plan, start_time):
        charge, discharge = plan(["FC", "FD"])
        governor.apply("inv", charge, 50.0, start_time)
        governor.apply("inv", discharge, 50.0, start_time + timedelta(seconds=60))

        still_waiting = governor.retry_pending("inv", 50.0, start_time + timedelta(seconds=120))
        assert still_waiting.status == GovernorStatus.DEFERRED_DWELL

        outcome = governor.retry_pending("inv", 50.0, start_time + timedelta(seconds=301))

        assert outcome.status == GovernorStatus.CHANGED
        assert outcome.command.mode == OperationMode.FORCE_DISCHARGE
        assert governor.state("inv").pending_mode is None

    def test_nothing_pending(self, governor, start_time):
        assert governor.retry_pending("inv", 50.0, start_time) is None

    def test_inverters_are_independent(self, governor, plan, start_time):
        charge = plan(["FC"])[0]

        governor.apply("a", charge, 50.0, start_time)
        outcome = governor.apply("b", charge, 50.0, start_time + timedelta(seconds=10))

        assert outcome.status == GovernorStatus.CHANGED
        assert len(governor.states()) == 2

    def test_revert_restores_previous_mode(self, governor, plan, start_time):
        governor.apply("inv", plan(["FC"])[0], 50.0, start_time)

        governor.revert("inv", OperationMode.SELF_USE, None)

        state = governor.state("inv")
        assert state.current_mode == OperationMode.SELF_USE
        assert state.last_change_at is None
        assert state.commands_issued == 0
