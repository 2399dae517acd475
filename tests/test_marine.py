"""Tests for the marine conditions module."""

from datetime import UTC, datetime
from unittest.mock import MagicMock, patch

import pytest
import requests

from cfdmarine.config import StationsConfig
from cfdmarine.marine import (
    ERDDAP_STEPS,
    MarineConditions,
    UpstreamError,
    c_to_f,
    degrees_to_cardinal,
    ms_to_knots,
    normalize_erddap_row,
    parse_realtime2,
    split_tides,
    summarize_observation,
    with_retry,
)

NOW = datetime(2026, 5, 1, 13, 0, tzinfo=UTC)

HEADER = (
    "#YY  MM DD hh mm WDIR WSPD GST  WVHT   DPD   APD MWD   PRES  ATMP  WTMP  DEWP  VIS PTDY  TIDE\n"
    "#yr  mo dy hr mn degT m/s  m/s     m   sec   sec degT   hPa  degC  degC  degC  nmi  hPa    ft\n"
)
FRESH_ROW = "2026 05 01 12 30 180  5.0  7.0   1.0   8    MM  90 1015.0  20.0  18.0   MM   MM   MM    MM\n"
OLDER_ROW = "2026 05 01 12 00 170  4.0  6.0   0.9   7    MM  85 1015.0  19.0  18.0   MM   MM   MM    MM\n"
STALE_ROW = "2020 01 01 00 00 180  5.0  7.0   1.0   8    MM  90 1015.0  20.0  18.0   MM   MM   MM    MM\n"

CF_COLUMNS = [
    "time",
    "sea_surface_wave_significant_height",
    "sea_surface_wave_period_at_variance_spectral_density_maximum",
    "sea_surface_wave_from_direction",
]


def fake_response(text: str = "", json_data: object = None, status: int = 200) -> MagicMock:
    response = MagicMock()
    response.ok = 200 <= status < 300
    response.status_code = status
    response.text = text
    if json_data is None:
        response.json.side_effect = ValueError("no json")
    else:
        response.json.return_value = json_data
    return response


def router(routes: dict[str, object]):
    """requests.get side effect answering by URL substring."""

    def _get(url, params=None, headers=None, timeout=None):
        for fragment, answer in routes.items():
            key = url if params is None else url + "?" + "&".join(f"{k}={v}" for k, v in params.items())
            if fragment in key:
                if isinstance(answer, Exception):
                    raise answer
                return answer
        return fake_response(status=404)

    return _get


@pytest.fixture
def marine() -> MarineConditions:
    return MarineConditions(StationsConfig(), clock=lambda: NOW, retry_delay=0)


class TestConversions:
    """Tests for unit conversions."""

    def test_ms_to_knots(self) -> None:
        assert ms_to_knots(5.0) == 10
        assert ms_to_knots(None) is None

    def test_c_to_f(self) -> None:
        assert c_to_f(100) == 212
        assert c_to_f(None) is None

    @pytest.mark.parametrize(
        "degrees,expected",
        [(0, "N"), (11, "N"), (12, "NNE"), (90, "E"), (180, "S"), (350, "N"), (None, "N/A")],
    )
    def test_degrees_to_cardinal(self, degrees, expected: str) -> None:
        assert degrees_to_cardinal(degrees) == expected


class TestParseRealtime2:
    """Tests for parse_realtime2."""

    def test_newest_row(self) -> None:
        obs = parse_realtime2(HEADER + FRESH_ROW + OLDER_ROW)

        assert obs.updated == datetime(2026, 5, 1, 12, 30, tzinfo=UTC)
        assert obs.get("WDIR") == 180
        assert obs.get("WVHT") == 1.0
        assert obs.get("APD") is None

    def test_no_rows(self) -> None:
        with pytest.raises(UpstreamError, match="No data rows"):
            parse_realtime2(HEADER)

    def test_summarize(self) -> None:
        summary = summarize_observation(parse_realtime2(HEADER + FRESH_ROW))

        assert summary["windDir"] == "S"
        assert summary["windSpeedKnots"] == 10
        assert summary["windGustKnots"] == 14
        assert summary["waveHeightFt"] == 3.3
        assert summary["waterTempF"] == 64
        assert summary["airTempF"] == 68
        assert summary["updated"] == "2026-05-01T12:30:00+00:00"


class TestWithRetry:
    """Tests for with_retry."""

    def test_retries_once(self) -> None:
        calls = []

        def flaky() -> str:
            calls.append(1)
            if len(calls) == 1:
                raise UpstreamError("HTTP 503")
            return "ok"

        assert with_retry(flaky, delay=0) == "ok"
        assert len(calls) == 2

    def test_gives_up(self) -> None:
        def broken() -> str:
            raise UpstreamError("HTTP 500")

        with pytest.raises(UpstreamError, match="500"):
            with_retry(broken, tries=2, delay=0)


class TestStationWaves:
    """Tests for single-station and fallback wave lookups."""

    def test_station_waves_default_station(self, marine: MarineConditions) -> None:
        with patch("cfdmarine.marine.requests.get", side_effect=router({"CHLV2": fake_response(HEADER + FRESH_ROW)})):
            result = marine.station_waves()

        assert result["station"] == "CHLV2"
        assert result["wave_ft"] == pytest.approx(3.28084)
        assert result["period_s"] == 8

    def test_station_waves_upstream_error(self, marine: MarineConditions) -> None:
        with patch("cfdmarine.marine.requests.get", side_effect=requests.ConnectionError("down")):
            with pytest.raises(UpstreamError, match="fetch failed"):
                marine.station_waves("44099")

    def test_fallback_skips_stale_station(self, marine: MarineConditions) -> None:
        routes = {
            "44087": fake_response(HEADER + STALE_ROW),
            "44072": fake_response(HEADER + FRESH_ROW),
        }
        with patch("cfdmarine.marine.requests.get", side_effect=router(routes)):
            result = marine.waves_with_fallback()

        assert result["ok"] is True
        assert result["source"] == "NDBC 44072 (York Spit)"
        assert result["dir_deg"] == 90

    def test_fallback_all_failed(self, marine: MarineConditions) -> None:
        routes = {"44087": fake_response(status=503), "44072": fake_response(HEADER + STALE_ROW)}
        with patch("cfdmarine.marine.requests.get", side_effect=router(routes)):
            result = marine.waves_with_fallback()

        assert result["ok"] is False
        assert result["reason"] == (
            "NDBC 44087 (Thimble Shoal): HTTP 503 • NDBC 44072 (York Spit): stale or missing values"
        )


class TestErddap:
    """Tests for the ERDDAP wave chain."""

    def test_normalize_row(self) -> None:
        reading = normalize_erddap_row(CF_COLUMNS, ["2026-05-01T12:00:00Z", 2.0, 9.0, 45.0], ERDDAP_STEPS[0].columns)

        assert reading["updated"] == datetime(2026, 5, 1, 12, 0, tzinfo=UTC)
        assert reading["wave_ft"] == pytest.approx(6.56168)
        assert reading["period_s"] == 9.0
        assert reading["dir_deg"] == 45.0

    def test_falls_through_to_next_dataset(self, marine: MarineConditions) -> None:
        table = {"table": {"columnNames": CF_COLUMNS, "rows": [["2026-05-01T12:00:00Z", 1.0, 8.0, 90.0]]}}
        routes = {
            "edu_ucsd_cdip_240": fake_response(status=500),
            "gov-ndbc-44087": fake_response(json_data=table),
        }
        with patch("cfdmarine.marine.requests.get", side_effect=router(routes)) as mock_get:
            result = marine.erddap_waves()

        assert result["ok"] is True
        assert result["source"] == "NDBC 44087 (station dataset)"
        assert result["updated"] == "2026-05-01T12:00:00+00:00"
        # CDIP tried twice (retry) on both hosts before moving on
        assert mock_get.call_count == 5

    def test_nothing_usable(self, marine: MarineConditions) -> None:
        with patch("cfdmarine.marine.requests.get", side_effect=router({})):
            result = marine.erddap_waves()

        assert result["ok"] is False
        assert result["reason"] == "ndbcStdMet 44072: HTTP 404"


class TestTides:
    """Tests for tide predictions."""

    PREDICTIONS = [
        {"t": "2026-04-30 20:00", "v": "0.4", "type": "L"},
        {"t": "2026-05-01 02:00", "v": "2.8", "type": "H"},
        {"t": "2026-05-01 08:00", "v": "0.3", "type": "L"},
        {"t": "2026-05-01 14:00", "v": "2.9", "type": "H"},
        {"t": "2026-05-01 20:00", "v": "0.2", "type": "L"},
        {"t": "2026-05-02 02:00", "v": "3.0", "type": "H"},
    ]

    def test_split_tides_uses_local_time(self) -> None:
        """13:00 UTC is 09:00 in Norfolk."""
        last_two, next_two = split_tides(self.PREDICTIONS, NOW)
        assert [p["t"] for p in last_two] == ["2026-05-01 02:00", "2026-05-01 08:00"]
        assert [p["t"] for p in next_two] == ["2026-05-01 14:00", "2026-05-01 20:00"]

    def test_predictions(self, marine: MarineConditions) -> None:
        routes = {"product=predictions": fake_response(json_data={"predictions": self.PREDICTIONS})}
        with patch("cfdmarine.marine.requests.get", side_effect=router(routes)):
            result = marine.tide_predictions()

        assert result == {"data": self.PREDICTIONS, "reason": None}

    def test_predictions_error(self, marine: MarineConditions) -> None:
        with patch("cfdmarine.marine.requests.get", side_effect=router({})):
            result = marine.tide_predictions()

        assert result == {"data": [], "reason": "Tide predictions API error."}

    def test_predictions_empty(self, marine: MarineConditions) -> None:
        routes = {"product=predictions": fake_response(json_data={"error": {"message": "nope"}})}
        with patch("cfdmarine.marine.requests.get", side_effect=router(routes)):
            result = marine.tide_predictions()

        assert result["data"] == []
        assert "No tide predictions" in result["reason"]


class TestConditions:
    """Tests for the combined conditions payloads."""

    def routes(self) -> dict[str, object]:
        return {
            "product=predictions": fake_response(json_data={"predictions": TestTides.PREDICTIONS}),
            "product=water_temperature": fake_response(json_data={"data": [{"t": "2026-05-01 08:54", "v": "64.2"}]}),
            "product=wind": fake_response(json_data={"data": [{"t": "2026-05-01 08:54", "s": "10.0", "d": "90"}]}),
            "api.weather.gov": fake_response(
                json_data={"properties": {"temperature": {"value": 20.0}, "timestamp": "2026-05-01T12:54:00+00:00"}}
            ),
            "CHBV2": fake_response(HEADER + FRESH_ROW),
            "44099": fake_response(HEADER + FRESH_ROW),
        }

    def test_live_conditions(self, marine: MarineConditions) -> None:
        with patch("cfdmarine.marine.requests.get", side_effect=router(self.routes())):
            result = marine.live_conditions()

        assert result["station"] == {"id": "8638610", "name": "Sewells Point, VA"}
        assert result["waterTemp"]["data"]["value"] == 64.2
        assert result["wind"]["data"]["dir"] == "E"
        assert result["wind"]["data"]["speed_mph"] == pytest.approx(11.5078)
        assert result["airTemp"]["data"]["value"] == 68
        assert len(result["tides"]["last2"]) == 2
        assert len(result["tides"]["next2"]) == 2

    def test_live_conditions_partial_failure(self, marine: MarineConditions) -> None:
        """A dead upstream becomes a reason instead of an error."""
        routes = self.routes()
        routes["api.weather.gov"] = requests.Timeout("slow")
        with patch("cfdmarine.marine.requests.get", side_effect=router(routes)):
            result = marine.live_conditions()

        assert result["airTemp"] == {"data": None, "reason": "Air temperature API error."}
        assert result["waterTemp"]["reason"] is None

    def test_marine_summary(self, marine: MarineConditions) -> None:
        with patch("cfdmarine.marine.requests.get", side_effect=router(self.routes())):
            result = marine.marine_summary()

        assert result["serverTimeEST"] == "05/01/2026, 09:00:00 AM"
        assert result["windData"]["stationName"].endswith("(NOAA CHBV2)")
        assert result["windData"]["windSpeedKnots"] == 10
        assert result["buoyData"]["waveHeightFt"] == 3.3
        assert result["tideData"]["predictions"] == TestTides.PREDICTIONS
        assert result["tideReason"] is None
