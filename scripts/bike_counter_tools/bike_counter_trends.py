"""Export cleaned daily bicycle counts and trend plots per counting location.

Reads a station CSV export (one row per location, date and travel direction)
and, optionally, the bike-share daily activity API, then runs both through
``counter_cleaning`` and writes analysis-ready outputs.

Inputs
------
- Station CSV with columns ``location_name``, ``dt`` (YYYY-MM-DD) and
  ``daily_volume``. Eastbound/westbound rows for the same day are summed.
- Bike-share activity JSON: ``{"data": [{"datetime": ..., "trips": ...}]}``.

Outputs (folder: OUTPUT_DIR/<location_slug>/)
---------------------------------------------
- daily_counts.csv (one row per day: volume, rolling average, flags)
- plots/daily_trend.png (daily counts plus the rolling average)
- OUTPUT_DIR/_combined/all_counters_daily.csv
- OUTPUT_DIR/_combined/counter_summary.csv

Notes
-----
- Station series are NOT gap-filled; only the bike-share series is.
- Interior days of long bike-share gaps include random noise. Set --seed for
  repeatable exports.
- A failed API call is logged and the run continues with the CSV only.
"""

from __future__ import annotations

import argparse
import datetime as dt
import logging
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Final

import matplotlib.dates as mdates
import matplotlib.pyplot as plt
import pandas as pd
import requests

from scripts.bike_counter_tools import counter_cleaning as cc
from scripts.utils.logging_helper import LEVEL_NAMES, setup_logging

# =============================================================================
# CONFIGURATION
# =============================================================================

DEFAULT_INPUT_CSV: Final[str] = r"Path\To\Your\cycling_counts.csv"
DEFAULT_OUTPUT_DIR: Final[str] = r"Path\To\Your\Output_Folder"

BIKESHARE_API_URL: Final[str] = "https://api.raccoon.bike/activity"
BIKESHARE_SYSTEM: Final[str] = "bike_share_toronto"
BIKESHARE_START: Final[dt.date] = dt.date(2020, 1, 1)
REQUEST_TIMEOUT_SECONDS: Final[float] = 30.0

# Optional single-year export (None = all years).
YEAR_FILTER: Final[int | None] = None

ROLLING_WINDOW_DAYS: Final[int] = cc.ROLLING_WINDOW_DAYS

# Seed for long-gap interior noise (None = different on every run).
FILL_SEED: Final[int | None] = None

GENERATE_PLOTS: Final[bool] = True

LOG_LEVEL: Final[str] = "INFO"

COMBINED_DIRNAME: Final[str] = "_combined"

PLOT_STYLE: Final[dict[str, Any]] = {
    "figsize": (12, 5),
    "point_color": "#8884d8",
    "point_alpha": 0.3,
    "line_color": "#82ca9d",
    "line_width": 2.5,
    "filled_color": "#f0a030",
    "grid": True,
    "rotation": 45,
    "dpi": 150,
}

# =============================================================================
# DATA STRUCTURES
# =============================================================================


@dataclass(frozen=True)
class Config:
    """Runtime configuration."""

    input_csv: Path
    output_dir: Path
    year: int | None
    window: int
    seed: int | None
    include_api: bool
    make_plots: bool


# =============================================================================
# INPUT
# =============================================================================


def load_counter_csv(path: Path) -> pd.DataFrame:
    """Read the station export with every column kept as text."""
    try:
        df = pd.read_csv(path, dtype=str, encoding="utf-8-sig")
    except FileNotFoundError as e:
        raise FileNotFoundError(f"Counter CSV not found: {path}") from e
    except Exception as e:
        raise RuntimeError(f"Failed to read counter CSV {path}: {e}") from e

    missing = [
        c for c in (cc.LOCATION_COLUMN, cc.DATE_COLUMN, cc.VOLUME_COLUMN) if c not in df.columns
    ]
    if missing:
        logging.warning("Counter CSV %s is missing columns: %s", path.name, ", ".join(missing))
    return df


def format_api_hour(day: dt.date) -> str:
    """Format a day as the API's YYYYMMDDHH (hour 00)."""
    return f"{day:%Y%m%d}00"


def build_bikeshare_url(
    start: dt.date,
    end: dt.date,
    system: str = BIKESHARE_SYSTEM,
    base_url: str = BIKESHARE_API_URL,
) -> str:
    """Build the daily-frequency activity URL for [start, end]."""
    return (
        f"{base_url}?system={system}&start={format_api_hour(start)}"
        f"&end={format_api_hour(end)}&frequency=d"
    )


def fetch_bikeshare_records(
    url: str, timeout: float = REQUEST_TIMEOUT_SECONDS
) -> list[dict[str, Any]]:
    """Fetch daily trip records; any request or payload failure returns []."""
    logging.info("Fetching bike-share activity: %s", url)
    try:
        response = requests.get(url, timeout=timeout)
        response.raise_for_status()
        payload = response.json()
    except (requests.RequestException, ValueError):
        logging.exception("Failed to fetch bike-share activity from %s", url)
        return []

    records = payload.get("data") if isinstance(payload, dict) else None
    if not isinstance(records, list):
        logging.warning("Bike-share payload has no 'data' list; ignoring it.")
        return []
    logging.info("Bike-share records received: %d", len(records))
    return records


# =============================================================================
# PROCESSING
# =============================================================================


def collect_counters(
    station_rows: pd.DataFrame,
    bikeshare_records: list[dict[str, Any]] | None,
    cfg: Config,
) -> list[cc.CounterSeries]:
    """Clean every source, order the counters for display and apply the year filter."""
    counters = cc.normalize_tabular(station_rows, window=cfg.window)
    if bikeshare_records is not None:
        counters.append(
            cc.normalize_single_series(bikeshare_records, window=cfg.window, rng=cfg.seed)
        )

    counters = cc.order_counters(counters)
    if cfg.year is not None:
        counters = cc.filter_by_year(counters, cfg.year)
        logging.info("Counters with data in %d: %d", cfg.year, len(counters))
    return counters


def location_slug(location: str) -> str:
    """Folder-safe version of a location label."""
    slug = re.sub(r"[^A-Za-z0-9]+", "_", location).strip("_").lower()
    return slug or "unnamed"


def summarize_counters(counters: list[cc.CounterSeries]) -> pd.DataFrame:
    """One row per counter with its span, totals and flag counts."""
    rows = []
    for s in counters:
        rows.append(
            {
                "location": s.location,
                "is_operational": s.is_operational,
                "start_date": s.start_date,
                "end_date": s.end_date,
                "days": len(s.data),
                "total_count": s.total_count,
                "outliers_corrected": sum(1 for p in s.data if p.was_outlier),
                "days_interpolated": sum(1 for p in s.data if p.is_interpolated),
                "years": ";".join(str(y) for y in cc.available_years(s)),
            }
        )
    return pd.DataFrame(
        rows,
        columns=[
            "location",
            "is_operational",
            "start_date",
            "end_date",
            "days",
            "total_count",
            "outliers_corrected",
            "days_interpolated",
            "years",
        ],
    )


# =============================================================================
# PLOTTING + EXPORT
# =============================================================================


def plot_counter(series: cc.CounterSeries, counter_dir: Path) -> Path | None:
    """Plot daily counts and the rolling average for one counter."""
    df = cc.series_to_frame(series)
    if df.empty:
        return None

    out_path = counter_dir / "plots" / "daily_trend.png"
    out_path.parent.mkdir(parents=True, exist_ok=True)

    x = pd.to_datetime(df["date"])
    filled = df["is_interpolated"].astype(bool)

    plt.figure(figsize=PLOT_STYLE["figsize"])
    plt.scatter(
        x[~filled],
        df.loc[~filled, "volume"],
        s=8,
        color=PLOT_STYLE["point_color"],
        alpha=PLOT_STYLE["point_alpha"],
        label="Daily count",
    )
    if filled.any():
        plt.scatter(
            x[filled],
            df.loc[filled, "volume"],
            s=8,
            color=PLOT_STYLE["filled_color"],
            alpha=PLOT_STYLE["point_alpha"],
            label="Estimated day",
        )
    plt.plot(
        x,
        df["rolling_average"],
        color=PLOT_STYLE["line_color"],
        linewidth=PLOT_STYLE["line_width"],
        label="Rolling average",
    )

    status = "" if series.is_operational else " (retired)"
    plt.title(f"Daily Bicycle Counts – {series.location}{status}")
    plt.xlabel("Date")
    plt.ylabel("Bicycles per day")
    plt.grid(PLOT_STYLE["grid"])
    plt.gca().xaxis.set_major_formatter(mdates.DateFormatter("%b-%y"))
    plt.xticks(rotation=PLOT_STYLE["rotation"])
    plt.legend()
    plt.tight_layout()
    plt.savefig(out_path, dpi=PLOT_STYLE["dpi"])
    plt.close()
    return out_path


def export_counter(series: cc.CounterSeries, output_dir: Path, make_plots: bool = True) -> Path:
    """Write the per-counter CSV (and plot) into its own folder."""
    counter_dir = output_dir / location_slug(series.location)
    counter_dir.mkdir(parents=True, exist_ok=True)

    cc.series_to_frame(series).to_csv(counter_dir / "daily_counts.csv", index=False)
    if make_plots:
        plot_counter(series, counter_dir)

    logging.info("Exported %s -> %s", series.location, counter_dir)
    return counter_dir


def export_combined(counters: list[cc.CounterSeries], output_dir: Path) -> Path:
    """Write all counters' days and the per-counter summary into _combined/."""
    combined_dir = output_dir / COMBINED_DIRNAME
    combined_dir.mkdir(parents=True, exist_ok=True)
    cc.series_list_to_frame(counters).to_csv(combined_dir / "all_counters_daily.csv", index=False)
    summarize_counters(counters).to_csv(combined_dir / "counter_summary.csv", index=False)
    return combined_dir


# =============================================================================
# ARGUMENTS
# =============================================================================


def build_arg_parser() -> argparse.ArgumentParser:
    """Create the CLI argument parser."""
    p = argparse.ArgumentParser(
        description="Clean daily bicycle counter data and export tables/plots."
    )
    p.add_argument("-i", "--input", default=DEFAULT_INPUT_CSV, help="Path to the station CSV.")
    p.add_argument("-o", "--output", default=DEFAULT_OUTPUT_DIR, help="Output folder.")
    p.add_argument(
        "-y", "--year", type=int, default=YEAR_FILTER, help="Export a single year only."
    )
    p.add_argument(
        "-w",
        "--window",
        type=int,
        default=ROLLING_WINDOW_DAYS,
        help="Rolling-average window in days.",
    )
    p.add_argument(
        "--seed", type=int, default=FILL_SEED, help="Seed for long-gap interior estimates."
    )
    p.add_argument(
        "--skip-api", action="store_true", help="Do not fetch bike-share activity."
    )
    p.add_argument(
        "--no-plots",
        dest="make_plots",
        action="store_false",
        default=GENERATE_PLOTS,
        help="Skip PNG plot generation.",
    )
    p.add_argument("--log-level", default=LOG_LEVEL, help="Logging level (e.g. INFO, DEBUG).")
    return p


# =============================================================================
# MAIN
# =============================================================================


def main(argv: list[str] | None = None) -> None:
    """Entrypoint.

    Args:
        argv: Optional explicit argv list (e.g., [] for notebooks). If None, uses sys.argv.
    """
    parser = build_arg_parser()
    args, unknown = parser.parse_known_args(argv)
    if args.log_level.strip().upper() not in LEVEL_NAMES:
        parser.error(
            f"--log-level must be one of {', '.join(LEVEL_NAMES)}, got {args.log_level!r}"
        )
    setup_logging(args.log_level)
    if unknown:
        logging.warning("Ignoring unknown CLI args (likely from IPython): %s", unknown)

    if args.window < 1:
        parser.error(f"--window must be >= 1, got {args.window}")

    cfg = Config(
        input_csv=Path(args.input).expanduser(),
        output_dir=Path(args.output).expanduser(),
        year=args.year,
        window=args.window,
        seed=args.seed,
        include_api=not args.skip_api,
        make_plots=args.make_plots,
    )

    logging.info("Reading: %s", cfg.input_csv)
    station_rows = load_counter_csv(cfg.input_csv)
    logging.info("Rows read: %d", len(station_rows))

    bikeshare_records = None
    if cfg.include_api:
        url = build_bikeshare_url(BIKESHARE_START, dt.date.today())
        bikeshare_records = fetch_bikeshare_records(url)

    counters = collect_counters(station_rows, bikeshare_records, cfg)
    if not counters:
        logging.warning("No counters with usable data; nothing to export.")
        return

    cfg.output_dir.mkdir(parents=True, exist_ok=True)
    for series in counters:
        export_counter(series, cfg.output_dir, make_plots=cfg.make_plots)
    combined_dir = export_combined(counters, cfg.output_dir)

    logging.info(
        "Done. %d counters exported to %s (combined: %s)",
        len(counters),
        cfg.output_dir,
        combined_dir,
    )


if __name__ == "__main__":
    main()
