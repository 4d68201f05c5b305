"""Block model: normalizes price and forecast series into scheduling blocks.

Source series may come at any granularity (hourly day-ahead prices, 15-minute
intraday prices, half-hourly solar forecasts). Planning always happens on a
contiguous sequence of fixed-duration blocks that covers only the horizon
actually available. Prices are never interpolated: a sub-block inherits the
price of the interval it was cut from.
"""

import logging
from dataclasses import replace
from datetime import datetime, timedelta

from .exceptions import InsufficientDataError, InvalidPriceDataError
from .models import ForecastPoint, PricePoint, ScheduleBlock
from .time_utils import DEFAULT_BLOCK_MINUTES, duration_minutes, ensure_aware

logger = logging.getLogger(__name__)


def validate_price_points(price_points: list[PricePoint]) -> None:
    """Check that price points are aware, positive, sorted and contiguous.

    Raises:
        InvalidPriceDataError: On the first point that breaks the horizon
    """
    previous = None
    for index, point in enumerate(price_points):
        try:
            ensure_aware(point.start_time, "Price point start")
        except ValueError as e:
            raise InvalidPriceDataError(index, str(e)) from e

        if point.duration <= timedelta(0):
            raise InvalidPriceDataError(
                index, f"Price point {index} has non-positive duration {point.duration}"
            )

        if previous is not None:
            if point.start_time < previous.end_time:
                raise InvalidPriceDataError(
                    index,
                    f"Price point {index} at {point.start_time.isoformat()} overlaps "
                    f"or is out of order (previous ends {previous.end_time.isoformat()})",
                )
            if point.start_time > previous.end_time:
                raise InvalidPriceDataError(
                    index,
                    f"Gap in price data between {previous.end_time.isoformat()} "
                    f"and {point.start_time.isoformat()}",
                )
        previous = point


def build_blocks(
    price_points: list[PricePoint], block_minutes: int = DEFAULT_BLOCK_MINUTES
) -> list[ScheduleBlock]:
    """Split a price series into contiguous scheduling blocks.

    A source interval of k x block_minutes becomes k blocks sharing its price.
    An interval shorter than a block is kept as-is with a deviation note, and
    a longer interval that is not a multiple leaves one noted remainder block.

    Args:
        price_points: Contiguous, non-overlapping, ascending price points
        block_minutes: Target block duration

    Returns:
        Blocks covering exactly the input span, indexed from 0

    Raises:
        InvalidPriceDataError: If the series is malformed
        InsufficientDataError: If less than one full block of data is available
    """
    if not price_points:
        raise InsufficientDataError(0, block_minutes)

    validate_price_points(price_points)

    span = price_points[-1].end_time - price_points[0].start_time
    if duration_minutes(span) < block_minutes:
        raise InsufficientDataError(duration_minutes(span), block_minutes)

    target = timedelta(minutes=block_minutes)
    blocks: list[ScheduleBlock] = []

    for point in price_points:
        cursor = point.start_time
        remaining = point.duration

        while remaining >= target:
            blocks.append(
                ScheduleBlock(
                    index=len(blocks),
                    start_time=cursor,
                    duration=target,
                    price_point=point,
                )
            )
            cursor += target
            remaining -= target

        if remaining > timedelta(0):
            if point.duration < target:
                note = (
                    f"Source interval of {duration_minutes(point.duration):.0f} min "
                    f"kept as-is (shorter than {block_minutes} min)"
                )
            else:
                note = (
                    f"Remainder of {duration_minutes(remaining):.0f} min from a "
                    f"{duration_minutes(point.duration):.0f} min source interval"
                )
            blocks.append(
                ScheduleBlock(
                    index=len(blocks),
                    start_time=cursor,
                    duration=remaining,
                    price_point=point,
                    deviation_note=note,
                )
            )

    deviations = sum(1 for b in blocks if b.deviation_note)
    logger.debug(
        f"Built {len(blocks)} blocks from {len(price_points)} price points "
        f"({deviations} with deviation notes)"
    )
    return blocks


def _distribute(block: ScheduleBlock, points: list[ForecastPoint]) -> float | None:
    """Energy of the forecast points overlapping a block, split by overlap."""
    total = None
    for point in points:
        if point.end_time <= block.start_time:
            continue
        if point.start_time >= block.end_time:
            break
        overlap = min(point.end_time, block.end_time) - max(
            point.start_time, block.start_time
        )
        if overlap <= timedelta(0) or point.duration <= timedelta(0):
            continue
        share = overlap / point.duration
        total = (total or 0.0) + point.energy_kwh * share
    return total


def attach_forecasts(
    blocks: list[ScheduleBlock],
    solar: list[ForecastPoint] | None = None,
    consumption: list[ForecastPoint] | None = None,
) -> list[ScheduleBlock]:
    """Return new blocks carrying solar and consumption energy per block.

    Forecast energy is distributed proportionally to the overlap between each
    forecast interval and the block. Blocks without any overlapping forecast
    keep None so strategies can fall back to their own estimates.
    """
    solar = sorted(solar or [], key=lambda p: p.start_time)
    consumption = sorted(consumption or [], key=lambda p: p.start_time)

    result = []
    for block in blocks:
        result.append(
            replace(
                block,
                solar_kwh=_distribute(block, solar) if solar else block.solar_kwh,
                consumption_kwh=(
                    _distribute(block, consumption)
                    if consumption
                    else block.consumption_kwh
                ),
            )
        )
    return result


def expand_hourly_prices(
    start: datetime,
    prices: list[float],
    export_prices: list[float] | None = None,
    interval_minutes: int = 60,
) -> list[PricePoint]:
    """Build contiguous price points from a flat list of interval prices.

    Example:
        >>> points = expand_hourly_prices(midnight, [0.5, 0.7])
        >>> len(build_blocks(points))
        8
    """
    ensure_aware(start, "Price series start")
    if export_prices is not None and len(export_prices) != len(prices):
        raise InvalidPriceDataError(
            message=(
                f"Export price count {len(export_prices)} does not match "
                f"price count {len(prices)}"
            )
        )

    step = timedelta(minutes=interval_minutes)
    return [
        PricePoint(
            start_time=start + i * step,
            duration=step,
            price=price,
            export_price=export_prices[i] if export_prices is not None else None,
        )
        for i, price in enumerate(prices)
    ]


def drop_elapsed_blocks(
    blocks: list[ScheduleBlock], now: datetime
) -> list[ScheduleBlock]:
    """Drop blocks that have already ended and re-index the rest from 0."""
    remaining = [b for b in blocks if b.end_time > now]
    return [replace(b, index=i) for i, b in enumerate(remaining)]
