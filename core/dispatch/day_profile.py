"""Day profile analysis: scalar statistics strategies use to adapt thresholds.

Strategies should resolve their thresholds relative to the character of the
day (flat, volatile, negative prices) instead of hardcoded constants, so the
same strategy works in flat-rate and highly volatile markets.
"""

import logging
from dataclasses import asdict, dataclass
from datetime import datetime
from enum import Enum

import numpy as np

from .exceptions import InsufficientDataError
from .models import ScheduleBlock
from .settings import StrategySettings

logger = logging.getLogger(__name__)

# Below this absolute mean the relative metrics are meaningless
MEAN_PRICE_EPSILON = 0.01
TOMORROW_EXPENSIVE_RATIO = 1.2
TOMORROW_CHEAP_RATIO = 0.8
HIGH_SOLAR_RATIO = 1.1
LOW_SOLAR_RATIO = 0.9


class PriceOutlook(Enum):
    """How later days in the horizon compare with the first day."""

    TOMORROW_EXPENSIVE = "tomorrow_expensive"
    TOMORROW_CHEAP = "tomorrow_cheap"
    TOMORROW_SIMILAR = "tomorrow_similar"
    UNKNOWN = "unknown"


@dataclass(frozen=True)
class DayProfile:
    """Statistics over a block slice."""

    block_count: int
    mean_price: float
    std_dev: float
    cv: float
    min_price: float
    max_price: float
    median_price: float
    p25_price: float
    p75_price: float
    spread_ratio: float
    negative_price_fraction: float
    estimated_consumption_kwh: float
    solar_total_kwh: float
    solar_ratio: float
    is_volatile: bool
    is_flat: bool
    has_negative_prices: bool
    tomorrow_price_ratio: float | None
    outlook: PriceOutlook

    @property
    def price_spread(self) -> float:
        return self.max_price - self.min_price

    @property
    def is_high_solar(self) -> bool:
        return self.solar_ratio > HIGH_SOLAR_RATIO

    @property
    def is_low_solar(self) -> bool:
        return self.solar_ratio < LOW_SOLAR_RATIO

    def percentile(self, blocks: list[ScheduleBlock], q: float) -> float:
        """Price percentile over an arbitrary block slice."""
        return float(np.percentile([b.price for b in blocks], q))

    def summary(self) -> dict:
        """Plain dict forwarded to external plugins as the forecast summary."""
        data = asdict(self)
        data["outlook"] = self.outlook.value
        return data


def estimate_daily_consumption(
    hourly_profile: list[float] | None, fallback_load_kw: float
) -> float:
    """Estimate daily consumption from an hourly profile or an average load."""
    if hourly_profile:
        return float(sum(hourly_profile))
    return fallback_load_kw * 24.0


def _relative(value: float, mean: float) -> float:
    if abs(mean) < MEAN_PRICE_EPSILON:
        return 0.0
    return value / abs(mean)


def _outlook(blocks: list[ScheduleBlock]) -> tuple[float | None, PriceOutlook]:
    first_date = blocks[0].start_time.date()
    today = [b.price for b in blocks if b.start_time.date() == first_date]
    later = [b.price for b in blocks if b.start_time.date() > first_date]
    if not later:
        return None, PriceOutlook.UNKNOWN

    today_mean = float(np.mean(today))
    if abs(today_mean) < MEAN_PRICE_EPSILON:
        return None, PriceOutlook.UNKNOWN

    ratio = float(np.mean(later)) / today_mean
    if ratio > TOMORROW_EXPENSIVE_RATIO:
        return ratio, PriceOutlook.TOMORROW_EXPENSIVE
    if ratio < TOMORROW_CHEAP_RATIO:
        return ratio, PriceOutlook.TOMORROW_CHEAP
    return ratio, PriceOutlook.TOMORROW_SIMILAR


def analyze_day(
    blocks: list[ScheduleBlock],
    settings: StrategySettings | None = None,
    now: datetime | None = None,
) -> DayProfile:
    """Derive price, consumption and solar statistics for a block slice.

    Args:
        blocks: Block slice to analyze (typically the remaining horizon)
        settings: Thresholds for the categorical flags and the fallback load
        now: If given, blocks that ended before this moment are ignored

    Returns:
        DayProfile for the slice

    Raises:
        InsufficientDataError: If the slice is empty
    """
    settings = settings or StrategySettings()
    if now is not None:
        blocks = [b for b in blocks if b.end_time > now]
    if not blocks:
        raise InsufficientDataError(message="Cannot profile an empty block slice")

    prices = np.array([b.price for b in blocks], dtype=float)
    mean = float(prices.mean())
    std = float(prices.std())  # population std
    cv = _relative(std, mean)
    min_price = float(prices.min())
    max_price = float(prices.max())

    consumption = sum(
        b.consumption_kwh
        if b.consumption_kwh is not None
        else settings.average_household_load_kw * b.duration_hours
        for b in blocks
    )
    solar = sum(b.solar_kwh or 0.0 for b in blocks)
    solar_ratio = solar / consumption if consumption > 0 else 0.0

    ratio, outlook = _outlook(blocks)

    profile = DayProfile(
        block_count=len(blocks),
        mean_price=mean,
        std_dev=std,
        cv=cv,
        min_price=min_price,
        max_price=max_price,
        median_price=float(np.median(prices)),
        p25_price=float(np.percentile(prices, 25)),
        p75_price=float(np.percentile(prices, 75)),
        spread_ratio=_relative(max_price - min_price, mean),
        negative_price_fraction=float((prices < 0).sum()) / len(prices),
        estimated_consumption_kwh=float(consumption),
        solar_total_kwh=float(solar),
        solar_ratio=float(solar_ratio),
        is_volatile=cv > settings.volatility_cv_threshold,
        is_flat=cv < settings.flat_cv_threshold,
        has_negative_prices=bool((prices < 0).any()),
        tomorrow_price_ratio=ratio,
        outlook=outlook,
    )

    logger.debug(
        f"Day profile: {profile.block_count} blocks, mean={mean:.3f}, cv={cv:.2f}, "
        f"volatile={profile.is_volatile}, outlook={outlook.value}"
    )
    return profile
