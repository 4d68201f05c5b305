"""Tests for conversion of engine objects to camelCase API responses.

This is separate from the core tests to keep the architecture boundary: the
core never knows about API field names.
"""

from datetime import UTC, datetime, timedelta

import pytest
from api_dataclasses import (
    APIAuditRecord,
    APIPluginRegistration,
    APISchedule,
    APIStrategyHandle,
)

from core.dispatch.audit import AuditCategory, AuditTrail
from core.dispatch.models import (
    OperationMode,
    Schedule,
    ScheduleEntry,
    SystemHealth,
)
from core.dispatch.plugin_gateway import PluginGateway
from core.dispatch.strategies import PriceThresholdArbitrage
from core.dispatch.strategy_registry import StrategyRegistry

START = datetime(2025, 11, 15, 0, 0, tzinfo=UTC)


class TestPluginRegistration:
    def test_to_internal(self):
        registration = APIPluginRegistration(
            name="forecaster", callbackUrl="http://f.local/run", priority=65
        )

        assert registration.to_internal() == {
            "name": "forecaster",
            "callback_url": "http://f.local/run",
            "priority": 65,
            "version": "1.0.0",
            "description": "",
        }

    def test_missing_callback(self):
        with pytest.raises(TypeError):
            APIPluginRegistration(name="forecaster")


class TestStrategyHandle:
    @pytest.fixture
    def registry(self):
        return StrategyRegistry()

    def test_builtin_handle(self, registry):
        handle = registry.register_builtin(PriceThresholdArbitrage())

        api = APIStrategyHandle.from_internal(handle)

        assert api.pluginId == "builtin:price-threshold-arbitrage"
        assert api.pluginType == "builtin"
        assert api.priority == 60
        assert api.callbackUrl is None
        assert api.lastMode is None

    def test_external_handle_with_failures(self, registry):
        gateway = PluginGateway(registry)
        gateway.register("forecaster", "http://f.local/run", priority=40)
        registry.record_failure("forecaster", RuntimeError("boom"))

        api = APIStrategyHandle.from_internal(registry.get("forecaster"))

        assert api.pluginId == "http:forecaster"
        assert api.status == "degraded"
        assert api.consecutiveFailures == 1
        assert api.totalCalls == 1
        assert api.lastError == "boom"
        assert api.lastFailureAt is not None


def test_schedule_conversion():
    entries = tuple(
        ScheduleEntry(
            block_start=START + timedelta(minutes=15 * i),
            duration_minutes=15,
            mode=mode,
            reason="test",
            priority=50,
            strategy_name="budget-allocation",
            decision_id=f"d{i}",
            expected_profit=0.4 if mode == OperationMode.FORCE_DISCHARGE else None,
        )
        for i, mode in enumerate(
            [OperationMode.FORCE_CHARGE, OperationMode.SELF_USE, OperationMode.FORCE_DISCHARGE]
        )
    )
    schedule = Schedule(
        entries=entries,
        created_at=START,
        cycle_id=7,
        health=SystemHealth.DEGRADED,
        price_version="v3",
    )

    api = APISchedule.from_internal(schedule)

    assert api.cycleId == 7
    assert api.health == "Degraded"
    assert api.horizonEnd == (START + timedelta(minutes=45)).isoformat()
    assert api.modeCounts == {"ForceCharge": 1, "SelfUse": 1, "ForceDischarge": 1}
    assert api.entries[2]["mode"] == "ForceDischarge"
    assert api.entries[2]["expectedProfit"] == 0.4
    assert api.entries[0]["blockEnd"] == api.entries[1]["blockStart"]


def test_audit_record_conversion():
    record = AuditTrail().record(
        AuditCategory.DWELL_DEFERRED,
        "deferred",
        inverter_id="inverter",
        block_start=START,
        constraint="min_mode_change_interval",
        context={"remaining_seconds": 120.0},
    )

    api = APIAuditRecord.from_internal(record)

    assert api.category == "DWELL_DEFERRED"
    assert api.blockStart == START.isoformat()
    assert api.constraint == "min_mode_change_interval"
    assert api.context == {"remaining_seconds": 120.0}
