"""SystemHealth derivation from freshness and connectivity signals."""

import logging
from datetime import datetime

from .models import SystemHealth
from .settings import HealthSettings

logger = logging.getLogger(__name__)


def determine_system_health(
    prices_as_of: datetime | None,
    now: datetime,
    connectivity_ok: bool,
    settings: HealthSettings | None = None,
) -> SystemHealth:
    """Derive the health state for the current cycle.

    Args:
        prices_as_of: When the price data was produced, None if unknown
        now: Current time
        connectivity_ok: Whether the price/telemetry sources were reachable
        settings: Soft and hard staleness thresholds

    Returns:
        SAFE_MODE without connectivity, without an as-of timestamp or when the
        data is older than the hard threshold; DEGRADED past the soft
        threshold; HEALTHY otherwise
    """
    settings = settings or HealthSettings()

    if not connectivity_ok:
        logger.warning("No connectivity to data sources, entering safe mode")
        return SystemHealth.SAFE_MODE

    if prices_as_of is None:
        logger.warning("Price data has no as-of timestamp, entering safe mode")
        return SystemHealth.SAFE_MODE

    age_minutes = (now - prices_as_of).total_seconds() / 60.0
    if age_minutes > settings.hard_stale_minutes:
        logger.warning(
            f"Price data is {age_minutes:.0f} min old "
            f"(hard limit {settings.hard_stale_minutes} min), entering safe mode"
        )
        return SystemHealth.SAFE_MODE
    if age_minutes > settings.soft_stale_minutes:
        logger.info(
            f"Price data is {age_minutes:.0f} min old "
            f"(soft limit {settings.soft_stale_minutes} min), degraded"
        )
        return SystemHealth.DEGRADED
    return SystemHealth.HEALTHY
