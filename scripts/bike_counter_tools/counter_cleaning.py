"""Clean irregular daily bicycle counts into gap-free, smoothed series.

This module is the in-memory core shared by the bike counter tools. It takes
already-loaded rows (one per station, date and direction) or a single
trip-count series and returns one CounterSeries per location with:

- Same-day records summed (direction-split counts collapse to one value).
- Implausibly low days corrected against the surrounding week.
- Missing calendar days filled from week-scale averages (single-series
  source only; tabular station exports are treated as already regular).
- A trailing rolling average attached to every day for charting.

Nothing here reads files or talks to the network. Every call builds fresh
objects from its inputs, so results never share state between calls.

Interior days of long gaps carry a random perturbation. Pass a seed (or a
``numpy.random.Generator``) as ``rng`` when output must be reproducible.
"""

from __future__ import annotations

import datetime as dt
import logging
import math
from collections.abc import Iterable, Iterator, Mapping, Sequence
from dataclasses import dataclass, replace
from typing import Any, Final

import numpy as np
import pandas as pd

# =============================================================================
# CONFIGURATION
# =============================================================================

# Default column names of the station CSV export.
LOCATION_COLUMN: Final[str] = "location_name"
DATE_COLUMN: Final[str] = "dt"
VOLUME_COLUMN: Final[str] = "daily_volume"

# Default field names of the bike-share activity records.
TIMESTAMP_FIELD: Final[str] = "datetime"
COUNT_FIELD: Final[str] = "trips"
BIKESHARE_LABEL: Final[str] = "Bike Share Toronto"

# Calendar part of every accepted date or timestamp.
ISO_DATE_FORMAT: Final[str] = "%Y-%m-%d"

# Locations whose label contains this marker are no longer counting.
RETIRED_MARKER: Final[str] = "retired"

# Outliers: a day below OUTLIER_RATIO x the neighbouring week is replaced.
OUTLIER_WINDOW: Final[int] = 7
OUTLIER_MIN_HISTORY: Final[int] = 7
OUTLIER_RATIO: Final[float] = 0.3

# Gap filling.
GAP_CONTEXT_DAYS: Final[int] = 7
SHORT_GAP_MAX_DAYS: Final[int] = 7
LONG_GAP_RAMP_DAYS: Final[int] = 7
SEASONAL_AMPLITUDE: Final[float] = 0.1
SEASONAL_PERIOD_DAYS: Final[int] = 30
NOISE_LOW: Final[float] = 0.9
NOISE_HIGH: Final[float] = 1.1

# Used when no recorded day surrounds a gap.
DEFAULT_FILL_VOLUME: Final[int] = 3000
# Used for a missing day that no detected gap covers (should never happen).
UNMATCHED_GAP_VOLUME: Final[int] = 3000

ROLLING_WINDOW_DAYS: Final[int] = 14

ONE_DAY: Final[dt.timedelta] = dt.timedelta(days=1)

# =============================================================================
# DATA STRUCTURES
# =============================================================================


@dataclass(frozen=True)
class DataPoint:
    """One day of counts for one location."""

    date: dt.date
    volume: int
    was_outlier: bool = False
    original_outlier_value: int | None = None
    is_interpolated: bool = False
    rolling_average: float | None = None
    daily_volume: int | None = None

    @property
    def timestamp(self) -> int:
        """Milliseconds since the epoch at UTC midnight of ``date``."""
        midnight = dt.datetime.combine(self.date, dt.time.min, tzinfo=dt.timezone.utc)
        return int(midnight.timestamp() * 1000)


@dataclass(frozen=True)
class Gap:
    """Inclusive run of consecutive missing days."""

    start_date: dt.date
    end_date: dt.date
    size: int

    def contains(self, day: dt.date) -> bool:
        return self.start_date <= day <= self.end_date


@dataclass(frozen=True)
class CounterSeries:
    """Cleaned daily series for a single counting location."""

    location: str
    data: tuple[DataPoint, ...]
    is_operational: bool
    total_count: int

    @property
    def start_date(self) -> dt.date | None:
        return self.data[0].date if self.data else None

    @property
    def end_date(self) -> dt.date | None:
        return self.data[-1].date if self.data else None


# =============================================================================
# HELPERS
# =============================================================================


def round_half_up(value: float) -> int:
    """Round to the nearest integer, halves going up (2.5 -> 3, -2.5 -> -2)."""
    return int(math.floor(value + 0.5))


def mean_volume(points: Sequence[DataPoint]) -> float:
    """Return the mean volume of ``points`` (caller guarantees non-empty)."""
    return sum(p.volume for p in points) / len(points)


def is_operational_label(label: str) -> bool:
    """Return False when the location label marks the counter as retired."""
    return RETIRED_MARKER not in str(label).lower()


def parse_day(value: Any) -> dt.date | None:
    """Parse an ISO date or datetime into a calendar day; None if unusable.

    Anything after a ``T`` separator is discarded, so
    ``"2024-05-01T23:00:00-04:00"`` maps to 2024-05-01 exactly as written.
    The remainder must be YYYY-MM-DD; text like ``"June"`` or ``"2024"`` is
    rejected.
    """
    if value is None:
        return None
    if not isinstance(value, str) and pd.isna(value):
        return None
    if isinstance(value, dt.datetime):
        return value.date()
    if isinstance(value, dt.date):
        return value
    s = str(value).strip()
    if not s:
        return None
    s = s.split("T")[0]
    ts = pd.to_datetime(s, format=ISO_DATE_FORMAT, errors="coerce")
    if pd.isna(ts):
        return None
    return ts.date()


def parse_volume(value: Any) -> int | None:
    """Return a non-negative integer count, or None for missing/non-numeric."""
    if value is None or isinstance(value, bool):
        return None
    if not isinstance(value, str) and pd.isna(value):
        return None
    s = str(value).strip()
    if not s:
        return None
    try:
        number = float(s.replace(",", ""))
    except ValueError:
        return None
    if not math.isfinite(number) or number < 0:
        return None
    return int(number)


def iter_calendar_days(start: dt.date, end: dt.date) -> Iterator[dt.date]:
    """Yield every calendar day from ``start`` to ``end`` inclusive."""
    day = start
    while day <= end:
        yield day
        day += ONE_DAY


# =============================================================================
# SERIES NORMALIZER
# =============================================================================


def _rows_to_records(
    rows: Iterable[Mapping[str, Any]] | pd.DataFrame,
) -> list[Mapping[str, Any]]:
    if isinstance(rows, pd.DataFrame):
        return rows.to_dict("records")
    return list(rows)


def normalize_rows(
    rows: Iterable[Mapping[str, Any]] | pd.DataFrame,
    location_col: str = LOCATION_COLUMN,
    date_col: str = DATE_COLUMN,
    volume_col: str = VOLUME_COLUMN,
) -> dict[str, list[DataPoint]]:
    """Group raw rows into one date-ascending DataPoint list per location.

    Rows with no location, an unparseable date, or a missing, non-numeric
    or negative volume are dropped. Rows sharing (location, date) are summed
    because station exports report each travel direction separately.

    Args:
        rows: Mappings (or a DataFrame) exposing the three columns below.
        location_col: Station label column.
        date_col: ISO calendar date column.
        volume_col: Directional volume column (string or number).

    Returns:
        Mapping of location label to DataPoints, sorted by location.
    """
    records = _rows_to_records(rows)
    kept: list[tuple[str, dt.date, int]] = []
    for row in records:
        location = row.get(location_col)
        if location is None or (not isinstance(location, str) and pd.isna(location)):
            continue
        location = str(location).strip()
        day = parse_day(row.get(date_col))
        volume = parse_volume(row.get(volume_col))
        if not location or day is None or volume is None:
            continue
        kept.append((location, day, volume))

    dropped = len(records) - len(kept)
    if dropped:
        logging.info("Dropped %d of %d rows missing a location, date or volume.", dropped, len(records))

    if not kept:
        return {}

    frame = pd.DataFrame(kept, columns=["location", "date", "volume"])
    summed = frame.groupby(["location", "date"], as_index=False, sort=True)["volume"].sum()

    out: dict[str, list[DataPoint]] = {}
    for location, group in summed.groupby("location", sort=True):
        out[str(location)] = [
            DataPoint(date=day, volume=int(volume))
            for day, volume in zip(group["date"], group["volume"], strict=True)
        ]
    return out


def points_from_records(
    records: Iterable[Mapping[str, Any]] | pd.DataFrame,
    timestamp_field: str = TIMESTAMP_FIELD,
    count_field: str = COUNT_FIELD,
) -> list[DataPoint]:
    """Build one date-ascending series from (timestamp, count) records.

    Unusable records are dropped and same-day counts are summed, as in
    normalize_rows, but there is no location to group or filter on.
    """
    records = _rows_to_records(records)
    kept: list[tuple[dt.date, int]] = []
    for record in records:
        day = parse_day(record.get(timestamp_field))
        volume = parse_volume(record.get(count_field))
        if day is None or volume is None:
            continue
        kept.append((day, volume))

    dropped = len(records) - len(kept)
    if dropped:
        logging.info("Dropped %d of %d records missing a timestamp or count.", dropped, len(records))

    if not kept:
        return []

    frame = pd.DataFrame(kept, columns=["date", "volume"])
    summed = frame.groupby("date", as_index=False, sort=True)["volume"].sum()
    return [
        DataPoint(date=day, volume=int(volume))
        for day, volume in zip(summed["date"], summed["volume"], strict=True)
    ]


# =============================================================================
# OUTLIER CORRECTOR
# =============================================================================


def correct_outliers(points: Sequence[DataPoint]) -> list[DataPoint]:
    """Replace implausibly low days with the mean of the preceding week.

    A single left-to-right pass over a working copy of ``points``. For every
    index from OUTLIER_MIN_HISTORY on, the day is compared with the mean of
    the (up to) 7 previous entries of the working copy and with the mean of
    the (up to) 7 entries starting at the day itself. Corrections are
    written back to the working copy, so they feed the backward window of
    later days. The input sequence is never modified.
    """
    working = list(points)
    for i in range(OUTLIER_MIN_HISTORY, len(working)):
        current = working[i]

        previous = working[max(0, i - OUTLIER_WINDOW) : i]
        prev_avg = mean_volume(previous) if previous else float(current.volume)
        following = working[i : i + OUTLIER_WINDOW]
        next_avg = mean_volume(following)

        if current.volume < prev_avg * OUTLIER_RATIO or current.volume < next_avg * OUTLIER_RATIO:
            corrected = round_half_up(prev_avg)
            logging.debug(
                "Outlier on %s: volume=%d prev_avg=%.1f next_avg=%.1f -> %d",
                current.date,
                current.volume,
                prev_avg,
                next_avg,
                corrected,
            )
            working[i] = replace(
                current,
                volume=corrected,
                was_outlier=True,
                original_outlier_value=current.volume,
            )
    return working


# =============================================================================
# GAP DETECTOR
# =============================================================================


def detect_gaps(points: Sequence[DataPoint], start: dt.date, end: dt.date) -> list[Gap]:
    """Find maximal runs of days in [start, end] with no DataPoint.

    A run that touches either end of the range is still a closed gap.
    """
    present = {p.date for p in points}
    gaps: list[Gap] = []
    gap_start: dt.date | None = None

    for day in iter_calendar_days(start, end):
        if day not in present:
            if gap_start is None:
                gap_start = day
        elif gap_start is not None:
            gaps.append(_make_gap(gap_start, day - ONE_DAY))
            gap_start = None

    if gap_start is not None:
        gaps.append(_make_gap(gap_start, end))
    return gaps


def _make_gap(start: dt.date, end: dt.date) -> Gap:
    return Gap(start_date=start, end_date=end, size=(end - start).days + 1)


# =============================================================================
# GAP INTERPOLATOR
# =============================================================================


def _context_average(day_volumes: Mapping[dt.date, int], days: Iterable[dt.date]) -> float:
    found = [day_volumes[d] for d in days if d in day_volumes]
    if not found:
        return float(DEFAULT_FILL_VOLUME)
    return sum(found) / len(found)


def gap_context_averages(
    gap: Gap, day_volumes: Mapping[dt.date, int]
) -> tuple[float, float]:
    """Return (before_avg, after_avg): recorded means of the weeks around ``gap``."""
    before_days = (gap.start_date - k * ONE_DAY for k in range(1, GAP_CONTEXT_DAYS + 1))
    after_days = (gap.end_date + k * ONE_DAY for k in range(1, GAP_CONTEXT_DAYS + 1))
    return (
        _context_average(day_volumes, before_days),
        _context_average(day_volumes, after_days),
    )


def interpolate_gap_value(
    missing_date: dt.date,
    gap: Gap,
    day_volumes: Mapping[dt.date, int],
    rng: np.random.Generator,
) -> int:
    """Estimate the volume of one missing day inside ``gap``.

    Short gaps (<= SHORT_GAP_MAX_DAYS) are a straight line between the week
    before and the week after. Long gaps ramp from the week before to the
    midpoint over their first LONG_GAP_RAMP_DAYS days and from the midpoint
    to the week after over their last days; interior days sit on the
    midpoint with a monthly seasonal swing and a +/-10% random factor.
    """
    position = (missing_date - gap.start_date).days
    before_avg, after_avg = gap_context_averages(gap, day_volumes)

    if gap.size <= SHORT_GAP_MAX_DAYS:
        progress = (position + 1) / (gap.size + 1)
        return round_half_up(before_avg + (after_avg - before_avg) * progress)

    midpoint = (before_avg + after_avg) / 2
    if position < LONG_GAP_RAMP_DAYS:
        progress = position / LONG_GAP_RAMP_DAYS
        return round_half_up(before_avg + (midpoint - before_avg) * progress)
    if position > gap.size - LONG_GAP_RAMP_DAYS:
        progress = (position - (gap.size - LONG_GAP_RAMP_DAYS)) / LONG_GAP_RAMP_DAYS
        return round_half_up(midpoint + (after_avg - midpoint) * progress)

    seasonal = 1 + SEASONAL_AMPLITUDE * math.sin(2 * math.pi * position / SEASONAL_PERIOD_DAYS)
    noise = rng.uniform(NOISE_LOW, NOISE_HIGH)
    return round_half_up(midpoint * seasonal * noise)


def fill_missing_dates(
    points: Sequence[DataPoint],
    rng: np.random.Generator | int | None = None,
) -> list[DataPoint]:
    """Return a contiguous daily series spanning the first to the last point.

    Recorded days keep their volume and flags; missing days are estimated
    with interpolate_gap_value and marked ``is_interpolated``.

    Args:
        points: Date-ascending DataPoints with unique dates.
        rng: Generator or seed for the interior-gap noise. None draws fresh
            OS entropy, so long-gap interiors differ between runs.
    """
    if not points:
        return []

    generator = np.random.default_rng(rng)
    start, end = points[0].date, points[-1].date
    by_date = {p.date: p for p in points}
    day_volumes = {d: p.volume for d, p in by_date.items()}
    gaps = detect_gaps(points, start, end)
    if gaps:
        logging.debug(
            "Filling %d gaps (%d days) between %s and %s",
            len(gaps),
            sum(g.size for g in gaps),
            start,
            end,
        )

    filled: list[DataPoint] = []
    for day in iter_calendar_days(start, end):
        existing = by_date.get(day)
        if existing is not None:
            filled.append(existing)
            continue

        gap = next((g for g in gaps if g.contains(day)), None)
        if gap is None:
            logging.warning("No gap covers missing day %s; using %d", day, UNMATCHED_GAP_VOLUME)
            volume = UNMATCHED_GAP_VOLUME
        else:
            volume = interpolate_gap_value(day, gap, day_volumes, generator)
        filled.append(DataPoint(date=day, volume=volume, is_interpolated=True))
    return filled


# =============================================================================
# ROLLING SMOOTHER
# =============================================================================


def apply_rolling_average(
    points: Sequence[DataPoint], window: int = ROLLING_WINDOW_DAYS
) -> list[DataPoint]:
    """Attach a trailing ``window``-day mean (one decimal) to every point.

    The window shrinks to the available points at the start of the series.
    ``daily_volume`` keeps the volume the average was computed from.
    """
    if window < 1:
        raise ValueError(f"window must be >= 1, got {window}")
    if not points:
        return []

    volumes = pd.Series([p.volume for p in points], dtype="float64")
    means = volumes.rolling(window=window, min_periods=1).mean()

    return [
        replace(p, rolling_average=round_half_up(avg * 10) / 10, daily_volume=p.volume)
        for p, avg in zip(points, means.tolist(), strict=True)
    ]


# =============================================================================
# PIPELINE
# =============================================================================


def build_counter_series(
    location: str,
    points: Sequence[DataPoint],
    fill_gaps: bool,
    window: int = ROLLING_WINDOW_DAYS,
    rng: np.random.Generator | int | None = None,
) -> CounterSeries:
    """Run outlier correction, optional gap filling and smoothing for one location."""
    cleaned = correct_outliers(points)
    if fill_gaps:
        cleaned = fill_missing_dates(cleaned, rng)
    total = sum(p.volume for p in cleaned)
    smoothed = apply_rolling_average(cleaned, window)

    n_outliers = sum(1 for p in cleaned if p.was_outlier)
    n_filled = sum(1 for p in cleaned if p.is_interpolated)
    logging.info(
        "%s: %d days, %d outliers corrected, %d days filled, total=%d",
        location,
        len(smoothed),
        n_outliers,
        n_filled,
        total,
    )
    return CounterSeries(
        location=location,
        data=tuple(smoothed),
        is_operational=is_operational_label(location),
        total_count=total,
    )


def normalize_tabular(
    rows: Iterable[Mapping[str, Any]] | pd.DataFrame,
    window: int = ROLLING_WINDOW_DAYS,
    location_col: str = LOCATION_COLUMN,
    date_col: str = DATE_COLUMN,
    volume_col: str = VOLUME_COLUMN,
) -> list[CounterSeries]:
    """Clean a station export into one CounterSeries per location.

    Station exports are not gap-filled: missing days stay missing and the
    rolling window runs over the recorded days only.
    """
    grouped = normalize_rows(rows, location_col, date_col, volume_col)
    return [
        build_counter_series(location, points, fill_gaps=False, window=window)
        for location, points in grouped.items()
    ]


def normalize_single_series(
    records: Iterable[Mapping[str, Any]] | pd.DataFrame | None,
    label: str = BIKESHARE_LABEL,
    window: int = ROLLING_WINDOW_DAYS,
    rng: np.random.Generator | int | None = None,
    timestamp_field: str = TIMESTAMP_FIELD,
    count_field: str = COUNT_FIELD,
) -> CounterSeries:
    """Clean a single trip-count series (e.g. bike-share activity) and fill its gaps.

    Args:
        records: Mappings exposing an ISO-8601 timestamp and a trip count.
        label: Location label of the resulting series.
        window: Rolling-average window in days.
        rng: Generator or seed for long-gap interior noise.
        timestamp_field: Record key holding the timestamp.
        count_field: Record key holding the trip count.

    Returns:
        A gap-free CounterSeries; empty (total 0) when no record is usable.
    """
    points = points_from_records(
        records if records is not None else [], timestamp_field, count_field
    )
    if not points:
        logging.warning("No usable records for %s", label)
    return build_counter_series(label, points, fill_gaps=True, window=window, rng=rng)


# =============================================================================
# PRESENTATION HELPERS
# =============================================================================


def filter_by_year(series_list: Iterable[CounterSeries], year: int) -> list[CounterSeries]:
    """Keep only the days of ``year``; counters left empty are dropped.

    ``total_count`` of each returned series is the sum over the kept days.
    """
    out: list[CounterSeries] = []
    for series in series_list:
        kept = tuple(p for p in series.data if p.date.year == year)
        if not kept:
            continue
        out.append(replace(series, data=kept, total_count=sum(p.volume for p in kept)))
    return out


def available_years(series: CounterSeries) -> list[int]:
    """Distinct years covered by ``series``, most recent first."""
    return sorted({p.date.year for p in series.data}, reverse=True)


def order_counters(
    series_list: Iterable[CounterSeries], featured: str | None = BIKESHARE_LABEL
) -> list[CounterSeries]:
    """Sort for display: featured label, operational counters, then retired ones."""

    def sort_key(series: CounterSeries) -> tuple[int, int, str]:
        return (
            0 if featured is not None and series.location == featured else 1,
            0 if series.is_operational else 1,
            series.location.lower(),
        )

    return sorted(series_list, key=sort_key)


SERIES_FRAME_COLUMNS: Final[list[str]] = [
    "location",
    "date",
    "volume",
    "daily_volume",
    "rolling_average",
    "was_outlier",
    "original_outlier_value",
    "is_interpolated",
]


def series_to_frame(series: CounterSeries) -> pd.DataFrame:
    """One row per day of ``series`` with values and provenance flags."""
    rows = [
        {
            "location": series.location,
            "date": p.date,
            "volume": p.volume,
            "daily_volume": p.daily_volume,
            "rolling_average": p.rolling_average,
            "was_outlier": p.was_outlier,
            "original_outlier_value": p.original_outlier_value,
            "is_interpolated": p.is_interpolated,
        }
        for p in series.data
    ]
    return pd.DataFrame(rows, columns=SERIES_FRAME_COLUMNS)


def series_list_to_frame(series_list: Iterable[CounterSeries]) -> pd.DataFrame:
    frames = [series_to_frame(s) for s in series_list]
    if not frames:
        return pd.DataFrame(columns=SERIES_FRAME_COLUMNS)
    return pd.concat(frames, ignore_index=True)
