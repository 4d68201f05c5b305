"""Tests for the forward battery simulator."""

import pytest

from core.dispatch.battery_simulator import (
    arbitrage_margin,
    charge_cost,
    degradation_cost,
    discharge_revenue,
    simulate,
    step,
)
from core.dispatch.models import BatteryState, OperationMode


class TestStep:
    def test_force_charge_from_half(self, battery_settings, block_factory):
        block = block_factory([0.1])[0]

        state, flow, violation = step(
            BatteryState(50.0), OperationMode.FORCE_CHARGE, block, battery_settings
        )

        # 5 kW for 15 min = 1.25 kWh drawn, 1.1875 kWh stored
        assert violation is None
        assert flow.charged_kwh == pytest.approx(1.25)
        assert flow.stored_kwh == pytest.approx(1.1875)
        assert state.soc_percent == pytest.approx(61.875)
        # 0.125 kWh default household load on top of the charge
        assert flow.grid_import_kwh == pytest.approx(1.375)

    def test_force_charge_clamped_at_max_soc(self, battery_settings, block_factory):
        block = block_factory([0.1])[0]

        state, flow, violation = step(
            BatteryState(99.0), OperationMode.FORCE_CHARGE, block, battery_settings
        )

        assert state.soc_percent == pytest.approx(100.0)
        assert flow.stored_kwh == pytest.approx(0.1)
        assert violation is not None
        assert violation.bound == "max_soc"
        assert violation.requested_kwh == pytest.approx(1.1875)
        assert violation.realized_kwh == pytest.approx(0.1)

    def test_force_discharge_from_half(self, battery_settings, block_factory):
        block = block_factory([1.0])[0]

        state, flow, violation = step(
            BatteryState(50.0), OperationMode.FORCE_DISCHARGE, block, battery_settings
        )

        assert violation is None
        assert flow.discharged_kwh == pytest.approx(1.25)
        assert state.soc_percent == pytest.approx(37.5)
        assert flow.grid_import_kwh == pytest.approx(0.0)
        assert flow.grid_export_kwh == pytest.approx(1.125)

    def test_force_discharge_clamped_at_min_soc(self, battery_settings, block_factory):
        block = block_factory([1.0])[0]

        state, flow, violation = step(
            BatteryState(11.0), OperationMode.FORCE_DISCHARGE, block, battery_settings
        )

        assert state.soc_percent == pytest.approx(10.0)
        assert flow.discharged_kwh == pytest.approx(0.1)
        assert violation.bound == "min_soc"

    def test_hardware_floor_allows_deeper_discharge(self, battery_settings, block_factory):
        block = block_factory([1.0])[0]

        state, flow, violation = step(
            BatteryState(11.0),
            OperationMode.FORCE_DISCHARGE,
            block,
            battery_settings,
            allow_hardware_floor=True,
        )

        assert state.soc_percent == pytest.approx(5.0)
        assert flow.discharged_kwh == pytest.approx(0.6)
        assert violation.bound == "hardware_min_soc"

    def test_self_use_stores_solar_surplus(self, battery_settings, block_factory):
        block = block_factory([0.2], solar=[1.0], consumption=[0.2])[0]

        state, flow, violation = step(
            BatteryState(50.0), OperationMode.SELF_USE, block, battery_settings
        )

        assert violation is None
        assert flow.charged_kwh == pytest.approx(0.8)
        assert state.soc_percent == pytest.approx(57.6)
        assert flow.grid_export_kwh == pytest.approx(0.0)

    def test_self_use_at_min_soc_imports(self, battery_settings, block_factory):
        block = block_factory([0.2], consumption=[0.4])[0]

        state, flow, violation = step(
            BatteryState(10.0), OperationMode.SELF_USE, block, battery_settings
        )

        assert violation is None
        assert state.soc_percent == pytest.approx(10.0)
        assert flow.grid_import_kwh == pytest.approx(0.4)

    def test_self_use_full_battery_never_violates(self, battery_settings, block_factory):
        block = block_factory([0.2], solar=[2.0], consumption=[0.1])[0]

        state, flow, violation = step(
            BatteryState(100.0), OperationMode.SELF_USE, block, battery_settings
        )

        assert violation is None
        assert state.soc_percent == pytest.approx(100.0)
        assert flow.grid_export_kwh == pytest.approx(1.9)

    @pytest.mark.parametrize(
        "mode", [OperationMode.BACKUP, OperationMode.NO_CHARGE_NO_DISCHARGE]
    )
    def test_holding_modes_leave_soc(self, mode, battery_settings, block_factory):
        block = block_factory([0.2], consumption=[0.3])[0]

        state, flow, violation = step(BatteryState(42.0), mode, block, battery_settings)

        assert violation is None
        assert state.soc_percent == pytest.approx(42.0)
        assert flow.grid_import_kwh == pytest.approx(0.3)

    def test_cost_includes_wear(self, battery_settings, block_factory):
        block = block_factory([1.0], consumption=[1.25])[0]

        _, flow, _ = step(
            BatteryState(50.0), OperationMode.FORCE_DISCHARGE, block, battery_settings
        )

        # Load fully covered, only wear on 1.25 kWh
        assert flow.cost == pytest.approx(1.25 * 0.125)

    def test_charging_carries_no_wear(self, battery_settings, block_factory):
        block = block_factory([0.4], consumption=[0.0])[0]

        _, flow, _ = step(
            BatteryState(50.0), OperationMode.FORCE_CHARGE, block, battery_settings
        )

        # One cycle is billed once, when the energy leaves the battery
        assert flow.charged_kwh > 0
        assert flow.discharged_kwh == 0
        assert flow.cost == pytest.approx(
            flow.grid_import_kwh * 0.4 - flow.grid_export_kwh * block.export_price
        )


class TestSimulate:
    def test_trajectory_includes_initial_soc(self, battery_settings, block_factory):
        blocks = block_factory([0.1, 0.1, 1.0])
        modes = [
            OperationMode.FORCE_CHARGE,
            OperationMode.BACKUP,
            OperationMode.FORCE_DISCHARGE,
        ]

        result = simulate(BatteryState(50.0), battery_settings, modes, blocks)

        assert len(result.trajectory) == 4
        assert len(result.flows) == 3
        assert result.trajectory[0] == pytest.approx(50.0)
        assert result.trajectory[1] == pytest.approx(61.875)
        assert result.trajectory[2] == pytest.approx(61.875)
        assert result.final_soc == pytest.approx(49.375)
        assert result.is_feasible

    def test_violations_collected(self, battery_settings, block_factory):
        blocks = block_factory([1.0] * 4)
        modes = [OperationMode.FORCE_DISCHARGE] * 4

        result = simulate(BatteryState(20.0), battery_settings, modes, blocks)

        assert not result.is_feasible
        assert result.min_soc_reached == pytest.approx(10.0)
        # 1 kWh above min_soc, 1.25 kWh requested per block
        assert [v.block_index for v in result.violations] == [0, 1, 2, 3]
        assert result.violations[0].realized_kwh == pytest.approx(1.0)

    def test_initial_soc_clamped_to_hardware_range(self, battery_settings, block_factory):
        blocks = block_factory([0.2])

        result = simulate(
            BatteryState(2.0), battery_settings, [OperationMode.BACKUP], blocks
        )

        assert result.trajectory[0] == pytest.approx(5.0)

    def test_length_mismatch(self, battery_settings, block_factory):
        with pytest.raises(ValueError):
            simulate(
                BatteryState(50.0),
                battery_settings,
                [OperationMode.SELF_USE],
                block_factory([0.1, 0.2]),
            )

    def test_simulation_is_pure(self, battery_settings, block_factory):
        blocks = block_factory([0.1, 0.5, 1.0])
        modes = [
            OperationMode.FORCE_CHARGE,
            OperationMode.SELF_USE,
            OperationMode.FORCE_DISCHARGE,
        ]

        first = simulate(BatteryState(30.0), battery_settings, modes, blocks)
        second = simulate(BatteryState(30.0), battery_settings, modes, blocks)

        assert first == second
        assert first.total_cost == pytest.approx(sum(f.cost for f in first.flows))


class TestEconomics:
    def test_arbitrage_margin(self, battery_settings):
        assert arbitrage_margin(0.1, 1.0, battery_settings) == pytest.approx(0.725)

    def test_degradation_cost(self, battery_settings):
        assert degradation_cost(2.0, battery_settings) == pytest.approx(0.25)

    def test_charge_cost_includes_losses(self, battery_settings):
        assert charge_cost(0.95, 1.0, battery_settings) == pytest.approx(1.0)

    def test_discharge_revenue(self):
        assert discharge_revenue(2.0, 0.5) == pytest.approx(1.0)
