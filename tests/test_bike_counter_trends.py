import datetime as dt
from pathlib import Path
from unittest.mock import patch

import matplotlib

matplotlib.use("Agg")

import pandas as pd  # noqa: E402
import pytest  # noqa: E402
import requests  # noqa: E402

from scripts.bike_counter_tools import bike_counter_trends  # noqa: E402
from scripts.utils.logging_helper import setup_logging  # noqa: E402

FIXTURE_PATH = Path("tests/fixtures/cycling_counts.csv")


class FakeResponse:
    """Minimal stand-in for requests.Response."""

    def __init__(self, payload, status_code: int = 200) -> None:
        self._payload = payload
        self.status_code = status_code

    def raise_for_status(self) -> None:
        if self.status_code >= 400:
            raise requests.HTTPError(f"{self.status_code} error")

    def json(self):
        if isinstance(self._payload, Exception):
            raise self._payload
        return self._payload


def api_records() -> list[dict]:
    """Bike-share days with a 3-day hole (Jun 8-10)."""
    days = [dt.date(2024, 6, 1) + dt.timedelta(days=k) for k in range(14) if k not in (7, 8, 9)]
    return [{"datetime": f"{d.isoformat()}T00:00:00", "trips": 5000} for d in days]


def test_load_counter_csv_reads_all_rows_as_text() -> None:
    df = bike_counter_trends.load_counter_csv(FIXTURE_PATH)

    assert len(df) == 26
    assert {"location_name", "dt", "daily_volume"} <= set(df.columns)
    assert df["daily_volume"].dropna().map(type).eq(str).all()


def test_load_counter_csv_missing_file(tmp_path) -> None:
    with pytest.raises(FileNotFoundError):
        bike_counter_trends.load_counter_csv(tmp_path / "nope.csv")


def test_build_bikeshare_url() -> None:
    url = bike_counter_trends.build_bikeshare_url(dt.date(2020, 1, 1), dt.date(2025, 3, 9))
    assert url == (
        "https://api.raccoon.bike/activity?system=bike_share_toronto"
        "&start=2020010100&end=2025030900&frequency=d"
    )


def test_fetch_bikeshare_records_success(monkeypatch) -> None:
    calls = []

    def fake_get(url, timeout):
        calls.append((url, timeout))
        return FakeResponse({"data": api_records()})

    monkeypatch.setattr(bike_counter_trends.requests, "get", fake_get)
    records = bike_counter_trends.fetch_bikeshare_records("http://example.test", timeout=5)

    assert len(records) == 11
    assert calls == [("http://example.test", 5)]


@pytest.mark.parametrize(
    "outcome",
    [
        requests.ConnectionError("offline"),
        FakeResponse({}, status_code=503),
        FakeResponse(ValueError("bad json")),
        FakeResponse({"data": "not a list"}),
        FakeResponse(["unexpected"]),
    ],
)
def test_fetch_bikeshare_records_failures_return_empty(monkeypatch, outcome) -> None:
    def fake_get(url, timeout):
        if isinstance(outcome, Exception):
            raise outcome
        return outcome

    monkeypatch.setattr(bike_counter_trends.requests, "get", fake_get)
    assert bike_counter_trends.fetch_bikeshare_records("http://example.test") == []


def test_location_slug() -> None:
    assert bike_counter_trends.location_slug("Bloor St - Retired") == "bloor_st_retired"
    assert bike_counter_trends.location_slug("Bike Share Toronto") == "bike_share_toronto"
    assert bike_counter_trends.location_slug("***") == "unnamed"


def test_main_exports_all_counters(tmp_path) -> None:
    with patch.object(
        bike_counter_trends, "fetch_bikeshare_records", return_value=api_records()
    ) as mock_fetch:
        bike_counter_trends.main(["-i", str(FIXTURE_PATH), "-o", str(tmp_path), "--seed", "7"])

    mock_fetch.assert_called_once()

    for slug in ("bike_share_toronto", "bloor_st", "bloor_st_retired"):
        counter_dir = tmp_path / slug
        assert (counter_dir / "daily_counts.csv").exists(), f"missing CSV for {slug}"
        assert (counter_dir / "plots" / "daily_trend.png").exists(), f"missing plot for {slug}"

    bikeshare = pd.read_csv(tmp_path / "bike_share_toronto" / "daily_counts.csv")
    assert len(bikeshare) == 14
    assert bikeshare["is_interpolated"].sum() == 3
    assert (bikeshare["volume"] == 5000).all()

    bloor = pd.read_csv(tmp_path / "bloor_st" / "daily_counts.csv")
    flagged = bloor[bloor["was_outlier"]]
    assert flagged["date"].tolist() == ["2024-06-09"]
    assert flagged["original_outlier_value"].tolist() == [10]

    summary = pd.read_csv(tmp_path / "_combined" / "counter_summary.csv")
    assert summary["location"].tolist() == ["Bike Share Toronto", "Bloor St", "Bloor St - Retired"]
    assert summary.set_index("location").loc["Bloor St", "total_count"] == 1000

    combined = pd.read_csv(tmp_path / "_combined" / "all_counters_daily.csv")
    assert len(combined) == 14 + 10 + 3


def test_main_skip_api_and_year_filter(tmp_path) -> None:
    with patch.object(bike_counter_trends, "fetch_bikeshare_records") as mock_fetch:
        bike_counter_trends.main(
            ["-i", str(FIXTURE_PATH), "-o", str(tmp_path), "--skip-api", "--year", "2023", "--no-plots"]
        )

    mock_fetch.assert_not_called()
    assert (tmp_path / "bloor_st_retired" / "daily_counts.csv").exists()
    assert not (tmp_path / "bloor_st_retired" / "plots").exists()
    assert not (tmp_path / "bloor_st").exists()
    assert not (tmp_path / "bike_share_toronto").exists()

    retired = pd.read_csv(tmp_path / "bloor_st_retired" / "daily_counts.csv")
    assert retired["date"].tolist() == ["2023-12-30", "2023-12-31"]


def test_main_api_failure_keeps_station_exports(tmp_path) -> None:
    with patch.object(bike_counter_trends, "fetch_bikeshare_records", return_value=[]):
        bike_counter_trends.main(["-i", str(FIXTURE_PATH), "-o", str(tmp_path), "--no-plots"])

    assert (tmp_path / "bloor_st" / "daily_counts.csv").exists()
    summary = pd.read_csv(tmp_path / "_combined" / "counter_summary.csv")
    row = summary.set_index("location").loc["Bike Share Toronto"]
    assert row["days"] == 0
    assert row["total_count"] == 0


def test_main_rejects_unknown_log_level(tmp_path, capsys) -> None:
    with pytest.raises(SystemExit) as excinfo:
        bike_counter_trends.main(
            ["-i", str(FIXTURE_PATH), "-o", str(tmp_path), "--skip-api", "--log-level", "foo"]
        )

    assert excinfo.value.code == 2
    assert "--log-level must be one of" in capsys.readouterr().err
    assert not (tmp_path / "_combined").exists()


def test_main_accepts_lowercase_log_level(tmp_path) -> None:
    bike_counter_trends.main(
        ["-i", str(FIXTURE_PATH), "-o", str(tmp_path), "--skip-api", "--no-plots", "--log-level", "debug"]
    )
    assert (tmp_path / "_combined" / "counter_summary.csv").exists()


def test_setup_logging_rejects_unknown_level_name() -> None:
    with pytest.raises(ValueError, match="Unknown log level"):
        setup_logging("foo")
