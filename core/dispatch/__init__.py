"""Battery dispatch decision engine package."""

# Define public API - only include what users should directly access
__all__ = [
    "AuditTrail",
    "BatterySettings",
    "BatteryState",
    "CycleInput",
    "DecisionEngine",  # Main facade
    "EngineSettings",
    "OperationMode",
    "PluginGateway",
    "PricePoint",
    "Schedule",
    "StrategyRegistry",
    "SystemHealth",
]

from .audit import AuditTrail  # noqa: I001
from .models import (
    BatteryState,
    CycleInput,
    OperationMode,
    PricePoint,
    Schedule,
    SystemHealth,
)
from .settings import BatterySettings, EngineSettings
from .strategy_registry import StrategyRegistry
from .plugin_gateway import PluginGateway

# Import main facade class (the primary entry point to the system)
from .decision_engine import DecisionEngine
