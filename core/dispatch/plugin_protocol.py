"""Wire format spoken with external strategy plugins.

Request (POST to the plugin callback, JSON):

    {
      "block": {"block_start": "...", "duration_minutes": 15, "price": 0.42,
                "export_price": 0.42},
      "all_blocks": [... remaining blocks, starting with the evaluated one ...],
      "battery": {"soc_percent": 55.0, "capacity_kwh": 10.0, ...},
      "forecast": {"solar_kwh": 0.3, "consumption_kwh": 0.1, "mean_price": ...},
      "historical": {"consumption_today_kwh": 7.2, ...}
    }

Response (JSON):

    {"block_start": "...", "duration_minutes": 15, "mode": "ForceCharge",
     "reason": "...", "confidence": 0.8, "expected_profit": 1.2,
     "strategy_name": "...", "decision_id": "..."}

The response must echo the evaluated block's start and duration. Any
``priority`` in the response is advisory: zero marks a neutral decision,
anything else is replaced by the priority the plugin was registered with.
"""

import logging
from datetime import datetime

from .day_profile import DayProfile
from .exceptions import PluginProtocolError
from .models import (
    BatteryState,
    HistoricalHints,
    OperationMode,
    ScheduleBlock,
    StrategyDecision,
)
from .settings import BatterySettings

logger = logging.getLogger(__name__)

REQUIRED_RESPONSE_FIELDS = ("block_start", "duration_minutes", "mode", "reason")


def encode_block(block: ScheduleBlock) -> dict:
    return {
        "block_start": block.start_time.isoformat(),
        "duration_minutes": block.duration_minutes,
        "price": block.price,
        "export_price": block.export_price,
        "solar_kwh": block.solar_kwh,
        "consumption_kwh": block.consumption_kwh,
    }


def encode_request(
    block: ScheduleBlock,
    all_blocks: list[ScheduleBlock],
    battery_state: BatteryState,
    battery: BatterySettings,
    day_profile: DayProfile,
    historical: HistoricalHints | None = None,
) -> dict:
    """Build the JSON request for one block."""
    remaining = [b for b in all_blocks if b.start_time >= block.start_time]
    forecast = {"solar_kwh": block.solar_kwh, "consumption_kwh": block.consumption_kwh}
    forecast.update(day_profile.summary())

    return {
        "block": encode_block(block),
        "all_blocks": [encode_block(b) for b in remaining],
        "battery": {
            "soc_percent": battery_state.soc_percent,
            "capacity_kwh": battery.capacity_kwh,
            "max_charge_rate_kw": battery.max_charge_rate_kw,
            "max_discharge_rate_kw": battery.max_discharge_rate_kw,
            "efficiency": battery.efficiency,
            "hardware_min_soc": battery.hardware_min_soc,
            "min_soc": battery.min_soc,
            "max_soc": battery.max_soc,
            "wear_cost_per_kwh": battery.wear_cost_per_kwh,
        },
        "forecast": forecast,
        "historical": (historical or HistoricalHints()).to_dict(),
    }


def _parse_time(value, strategy_name: str, block: ScheduleBlock) -> datetime:
    if not isinstance(value, str):
        raise PluginProtocolError(
            strategy_name, block.start_time, f"block_start must be a string, got {value!r}"
        )
    try:
        return datetime.fromisoformat(value)
    except ValueError as e:
        raise PluginProtocolError(
            strategy_name, block.start_time, f"Unparseable block_start {value!r}"
        ) from e


def _optional_float(payload: dict, key: str, strategy_name: str, block: ScheduleBlock):
    value = payload.get(key)
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, int | float):
        raise PluginProtocolError(
            strategy_name, block.start_time, f"{key} must be a number, got {value!r}"
        )
    return float(value)


def decode_response(
    payload, block: ScheduleBlock, strategy_name: str, priority: int
) -> StrategyDecision:
    """Validate a plugin response and turn it into a decision.

    Args:
        payload: Parsed JSON body
        block: The block that was evaluated
        strategy_name: Registered plugin name
        priority: Registered plugin priority

    Raises:
        PluginProtocolError: If the response is malformed or names another block
    """
    if not isinstance(payload, dict):
        raise PluginProtocolError(
            strategy_name, block.start_time, "Response body is not a JSON object"
        )

    missing = [f for f in REQUIRED_RESPONSE_FIELDS if f not in payload]
    if missing:
        raise PluginProtocolError(
            strategy_name, block.start_time, f"Response missing fields: {missing}"
        )

    block_start = _parse_time(payload["block_start"], strategy_name, block)
    if block_start.tzinfo is None or block_start != block.start_time:
        raise PluginProtocolError(
            strategy_name,
            block.start_time,
            f"Response echoes block {payload['block_start']}, "
            f"expected {block.start_time.isoformat()}",
        )
    if payload["duration_minutes"] != block.duration_minutes:
        raise PluginProtocolError(
            strategy_name,
            block.start_time,
            f"Response echoes duration {payload['duration_minutes']!r}, "
            f"expected {block.duration_minutes}",
        )

    try:
        mode = OperationMode.parse(payload["mode"])
    except (TypeError, ValueError) as e:
        raise PluginProtocolError(
            strategy_name, block.start_time, f"Unknown mode {payload['mode']!r}"
        ) from e

    confidence = _optional_float(payload, "confidence", strategy_name, block)
    if confidence is not None and not 0.0 <= confidence <= 1.0:
        raise PluginProtocolError(
            strategy_name, block.start_time, f"Confidence {confidence} outside 0-1"
        )
    expected_profit = _optional_float(payload, "expected_profit", strategy_name, block)

    neutral = payload.get("priority") == 0
    return StrategyDecision(
        block_start=block.start_time,
        duration_minutes=block.duration_minutes,
        mode=mode,
        priority=0 if neutral else priority,
        reason=str(payload["reason"]),
        confidence=confidence,
        expected_profit=expected_profit,
        decision_id=(
            str(payload["decision_id"]) if payload.get("decision_id") is not None else None
        ),
        strategy_name=strategy_name,
    )
