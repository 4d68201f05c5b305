"""Price/forecast snapshot source for the dispatch service.

The engine does not forecast anything itself. This feed pulls one JSON
snapshot from whatever service produces prices, forecasts and telemetry:

    {
      "as_of": "2025-11-15T13:00:00+01:00",
      "version": "nordpool-2025-11-15T13:00",
      "prices": [{"start": "...", "duration_minutes": 60, "price": 0.42,
                  "export_price": 0.30}],
      "solar": [{"start": "...", "duration_minutes": 30, "energy_kwh": 0.8}],
      "consumption": [{"start": "...", "duration_minutes": 60, "energy_kwh": 0.5}],
      "battery": {"soc_percent": 54.0},
      "historical": {"consumption_today_kwh": 7.2, "grid_import_today_kwh": 3.1}
    }
"""

from datetime import datetime, timedelta

import requests
from loguru import logger

from core.dispatch.models import (
    BatteryState,
    CycleInput,
    ForecastPoint,
    HistoricalHints,
    PricePoint,
)


def _parse_prices(items: list[dict]) -> list[PricePoint]:
    return [
        PricePoint(
            start_time=datetime.fromisoformat(item["start"]),
            duration=timedelta(minutes=item["duration_minutes"]),
            price=float(item["price"]),
            export_price=(
                float(item["export_price"])
                if item.get("export_price") is not None
                else None
            ),
        )
        for item in items
    ]


def _parse_forecast(items: list[dict]) -> list[ForecastPoint]:
    return [
        ForecastPoint(
            start_time=datetime.fromisoformat(item["start"]),
            duration=timedelta(minutes=item["duration_minutes"]),
            energy_kwh=float(item["energy_kwh"]),
        )
        for item in items
    ]


def parse_snapshot(data: dict, connectivity_ok: bool = True) -> CycleInput:
    """Convert a snapshot JSON object into a CycleInput.

    Raises:
        KeyError, ValueError: If required fields are missing or malformed
    """
    historical = data.get("historical") or {}
    return CycleInput(
        price_points=_parse_prices(data.get("prices", [])),
        battery_state=BatteryState(float(data["battery"]["soc_percent"])),
        prices_as_of=(
            datetime.fromisoformat(data["as_of"]) if data.get("as_of") else None
        ),
        price_version=data.get("version") or data.get("as_of"),
        connectivity_ok=connectivity_ok,
        solar_forecast=_parse_forecast(data.get("solar", [])),
        consumption_forecast=_parse_forecast(data.get("consumption", [])),
        historical=HistoricalHints(
            consumption_today_kwh=historical.get("consumption_today_kwh"),
            grid_import_today_kwh=historical.get("grid_import_today_kwh"),
            hourly_consumption_profile=historical.get("hourly_consumption_profile"),
        ),
    )


class PriceFeed:
    """Fetches snapshots and remembers the last good one."""

    def __init__(self, url: str, timeout: float = 10.0, token: str | None = None):
        self.url = url
        self.timeout = timeout
        self.headers = {"Content-Type": "application/json"}
        if token:
            self.headers["Authorization"] = f"Bearer {token}"
        self._last_snapshot: dict | None = None

    def version(self) -> str | None:
        """Version of the last good snapshot, None before the first fetch."""
        if self._last_snapshot is None:
            return None
        return self._last_snapshot.get("version") or self._last_snapshot.get("as_of")

    def fetch(self) -> CycleInput:
        """Fetch the current snapshot.

        When the source is unreachable the last good snapshot is reused with
        connectivity marked down, so the engine can enter safe mode.
        """
        try:
            response = requests.get(self.url, headers=self.headers, timeout=self.timeout)
            response.raise_for_status()
            data = response.json()
            snapshot = parse_snapshot(data)
            self._last_snapshot = data
            return snapshot
        except (requests.RequestException, KeyError, ValueError) as e:
            logger.warning(f"Price feed {self.url} unavailable: {e}")
            if self._last_snapshot is None:
                return CycleInput(
                    price_points=[],
                    battery_state=BatteryState(0.0),
                    connectivity_ok=False,
                )
            return parse_snapshot(self._last_snapshot, connectivity_ok=False)
