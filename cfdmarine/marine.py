"""Marine conditions from NOAA NDBC, CO-OPS, NWS and IOOS ERDDAP.

Every upstream call goes through requests with one retry. Failures become
UpstreamError; the public functions turn those into "reason" strings so a
single dead upstream never breaks the whole conditions view.
"""

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from zoneinfo import ZoneInfo

import requests

from .config import StationsConfig
from .network import DEFAULT_USER_AGENT

logger = logging.getLogger(__name__)

NDBC_REALTIME_URL = "https://www.ndbc.noaa.gov/data/realtime2/{station}.txt"
COOPS_URL = "https://api.tidesandcurrents.noaa.gov/api/prod/datagetter"
NWS_LATEST_URL = "https://api.weather.gov/stations/{station}/observations/latest"

LOCAL_TZ = ZoneInfo("America/New_York")

CARDINALS = ("N", "NNE", "NE", "ENE", "E", "ESE", "SE", "SSE", "S", "SSW", "SW", "WSW", "W", "WNW", "NW", "NNW")

MISSING = "MM"


class UpstreamError(Exception):
    """Raised when an upstream data provider fails or returns unusable data."""

    pass


# Unit conversions

def ms_to_knots(ms: float | None) -> int | None:
    return round(ms * 1.94384) if ms is not None else None


def m_to_ft(m: float | None) -> float | None:
    return m * 3.28084 if m is not None else None


def c_to_f(c: float | None) -> float | None:
    return c * 9 / 5 + 32 if c is not None else None


def knots_to_mph(knots: float | None) -> float | None:
    return knots * 1.15078 if knots is not None else None


def degrees_to_cardinal(degrees: float | None) -> str:
    """16-point compass name for a bearing; "N/A" when unknown."""
    if degrees is None:
        return "N/A"
    return CARDINALS[round(degrees / 22.5) % 16]


def _number(value: object) -> float | None:
    if value is None or value == "" or value == MISSING:
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


# HTTP

def _get(url: str, params: dict | None, timeout: float, accept: str | None) -> requests.Response:
    headers = {"User-Agent": DEFAULT_USER_AGENT}
    if accept:
        headers["Accept"] = accept
    try:
        response = requests.get(url, params=params, headers=headers, timeout=timeout)
    except requests.RequestException as e:
        raise UpstreamError(f"fetch failed: {e}")
    if not response.ok:
        raise UpstreamError(f"HTTP {response.status_code}")
    return response


def with_retry(fn: Callable[[], object], tries: int = 2, delay: float = 0.4) -> object:
    """Call fn, retrying on UpstreamError with a growing pause."""
    last_error: UpstreamError | None = None
    for attempt in range(tries):
        try:
            return fn()
        except UpstreamError as e:
            last_error = e
            if attempt < tries - 1:
                time.sleep(delay * (attempt + 1))
    raise last_error


def fetch_text(url: str, params: dict | None = None, timeout: float = 12) -> str:
    return _get(url, params, timeout, None).text


def fetch_json(url: str, params: dict | None = None, timeout: float = 12) -> object:
    response = _get(url, params, timeout, "application/json")
    try:
        return response.json()
    except ValueError as e:
        raise UpstreamError(f"invalid JSON: {e}")


# NDBC realtime2

@dataclass(frozen=True)
class NdbcObservation:
    """Latest row of an NDBC realtime2 file.

    values maps column names (WDIR, WSPD, GST, WVHT, DPD, MWD, ATMP, WTMP...)
    to numbers; "MM" columns are None.
    """

    updated: datetime | None
    values: dict[str, float | None] = field(default_factory=dict)

    def get(self, column: str) -> float | None:
        return self.values.get(column)


def parse_realtime2(text: str) -> NdbcObservation:
    """Parse the newest data row of an NDBC realtime2 text file.

    The first header line names the columns; the first non-comment line is
    the newest observation.

    Raises:
        UpstreamError: If the file has no header or no data rows.
    """
    lines = [line for line in text.splitlines() if line.strip()]
    header_line = next((line for line in lines if line.startswith("#")), None)
    data_line = next((line for line in lines if not line.startswith("#")), None)
    if header_line is None or data_line is None:
        raise UpstreamError("No data rows found")

    columns = header_line.lstrip("#").split()
    fields = data_line.split()
    if len(fields) < 5 or len(columns) < 5:
        raise UpstreamError("Unexpected realtime2 format")

    raw = dict(zip(columns, fields))
    values = {name: _number(value) for name, value in raw.items()}

    try:
        year = int(raw.get("YY") or raw.get("YYYY"))
        updated = datetime(year, int(raw["MM"]), int(raw["DD"]), int(raw["hh"]), int(raw["mm"]), tzinfo=UTC)
    except (KeyError, TypeError, ValueError):
        updated = None

    return NdbcObservation(updated=updated, values=values)


def summarize_observation(obs: NdbcObservation) -> dict:
    """Crew-facing units for a station observation."""
    wave_ft = m_to_ft(obs.get("WVHT"))
    water_f = c_to_f(obs.get("WTMP"))
    air_f = c_to_f(obs.get("ATMP"))
    return {
        "windDirDeg": obs.get("WDIR"),
        "windDir": degrees_to_cardinal(obs.get("WDIR")),
        "windSpeedKnots": ms_to_knots(obs.get("WSPD")),
        "windGustKnots": ms_to_knots(obs.get("GST")),
        "waveHeightFt": round(wave_ft, 1) if wave_ft is not None else None,
        "dominantPeriodSec": obs.get("DPD"),
        "waterTempF": round(water_f) if water_f is not None else None,
        "airTempF": round(air_f) if air_f is not None else None,
        "updated": obs.updated.isoformat() if obs.updated else None,
    }


def _wave_fields(obs: NdbcObservation) -> dict:
    return {
        "updated": obs.updated.isoformat() if obs.updated else None,
        "wave_ft": m_to_ft(obs.get("WVHT")),
        "period_s": obs.get("DPD"),
        "dir_deg": obs.get("MWD"),
    }


@dataclass(frozen=True)
class ErddapStep:
    """One dataset tried by the ERDDAP wave chain."""

    label: str
    path: str
    query: str
    columns: dict[str, str]  # time/height/period/direction -> ERDDAP column name


_CF_QUERY = (
    "?time,sea_surface_wave_significant_height,"
    "sea_surface_wave_period_at_variance_spectral_density_maximum,"
    "sea_surface_wave_from_direction&orderByMax(%22time%22)"
)
_CF_COLUMNS = {
    "time": "time",
    "height": "sea_surface_wave_significant_height",
    "period": "sea_surface_wave_period_at_variance_spectral_density_maximum",
    "direction": "sea_surface_wave_from_direction",
}
_STDMET_COLUMNS = {"time": "time", "height": "WVHT", "period": "DPD", "direction": "MWD"}


def _stdmet_query(station: str) -> str:
    return f"?station%2Ctime%2CWVHT%2CDPD%2CMWD&station=%22{station}%22&orderByMax(%22time%22)"


ERDDAP_STEPS = (
    ErddapStep("CDIP 240 (Thimble Shoal)", "/tabledap/edu_ucsd_cdip_240.json", _CF_QUERY, _CF_COLUMNS),
    ErddapStep("NDBC 44087 (station dataset)", "/tabledap/gov-ndbc-44087.json", _CF_QUERY, _CF_COLUMNS),
    ErddapStep("ndbcStdMet 44087", "/tabledap/ndbcStdMet.json", _stdmet_query("44087"), _STDMET_COLUMNS),
    ErddapStep("NDBC 44072 (York Spit station dataset)", "/tabledap/gov-ndbc-44072.json", _CF_QUERY, _CF_COLUMNS),
    ErddapStep("ndbcStdMet 44072", "/tabledap/ndbcStdMet.json", _stdmet_query("44072"), _STDMET_COLUMNS),
)


def normalize_erddap_row(column_names: list[str], row: list, columns: dict[str, str]) -> dict:
    """Map an ERDDAP table row to {updated, wave_ft, period_s, dir_deg}."""
    def value(key: str) -> object:
        name = columns.get(key)
        if name in column_names:
            return row[column_names.index(name)]
        return None

    updated = None
    raw_time = value("time")
    if raw_time:
        try:
            updated = datetime.fromisoformat(str(raw_time).replace("Z", "+00:00"))
        except ValueError:
            updated = None

    return {
        "updated": updated,
        "wave_ft": m_to_ft(_number(value("height"))),
        "period_s": _number(value("period")),
        "dir_deg": _number(value("direction")),
    }


def split_tides(predictions: list[dict], now: datetime) -> tuple[list[dict], list[dict]]:
    """Split hi/lo tide predictions into the last two before now and the next two after.

    Prediction times ("t", "YYYY-MM-DD HH:MM") are station-local; now is
    compared in the same zone.
    """
    local_now = now.astimezone(LOCAL_TZ).replace(tzinfo=None)
    past, upcoming = [], []
    for prediction in predictions:
        try:
            at = datetime.strptime(prediction.get("t", ""), "%Y-%m-%d %H:%M")
        except ValueError:
            continue
        (past if at < local_now else upcoming).append(prediction)
    return past[-2:], upcoming[:2]


class MarineConditions:
    """Upstream lookups for the marine functions, configured with station ids."""

    def __init__(
        self,
        stations: StationsConfig,
        clock: Callable[[], datetime] | None = None,
        retry_delay: float = 0.4,
    ) -> None:
        self.stations = stations
        self._clock = clock or (lambda: datetime.now(UTC))
        self._retry_delay = retry_delay

    def _is_fresh(self, updated: datetime | None) -> bool:
        if updated is None:
            return False
        return self._clock() - updated <= timedelta(hours=self.stations.freshness_hours)

    def _text(self, url: str, params: dict | None = None) -> str:
        return with_retry(
            lambda: fetch_text(url, params, self.stations.request_timeout), delay=self._retry_delay
        )

    def _json(self, url: str, params: dict | None = None) -> object:
        return with_retry(
            lambda: fetch_json(url, params, self.stations.request_timeout), delay=self._retry_delay
        )

    def observation(self, station: str) -> NdbcObservation:
        """Latest NDBC realtime2 observation of a station.

        Raises:
            UpstreamError: If the station file cannot be fetched or parsed.
        """
        return parse_realtime2(self._text(NDBC_REALTIME_URL.format(station=station.upper())))

    def station_waves(self, station: str | None = None) -> dict:
        """Wave height and dominant period of one NDBC station."""
        station = (station or self.stations.default_ndbc_station).upper()
        obs = self.observation(station)
        wave_ft = m_to_ft(obs.get("WVHT"))
        return {
            "station": station,
            "updated": obs.updated.isoformat() if obs.updated else None,
            "wave_ft": wave_ft,
            "period_s": obs.get("DPD"),
        }

    def waves_with_fallback(self) -> dict:
        """First fresh reading from the configured NDBC wave stations.

        A reading is usable when it is fresh and has a height or a period.
        """
        reasons = []
        for station in self.stations.wave_fallbacks:
            try:
                obs = self.observation(station.id)
            except UpstreamError as e:
                reasons.append(f"{station.label}: {e}")
                continue
            fields = _wave_fields(obs)
            if self._is_fresh(obs.updated) and (fields["wave_ft"] is not None or fields["period_s"] is not None):
                return {"ok": True, "source": station.label, **fields}
            reasons.append(f"{station.label}: stale or missing values")

        logger.info("No NDBC wave station usable: %s", "; ".join(reasons))
        return {"ok": False, "reason": " • ".join(reasons)}

    def erddap_waves(self, steps: tuple[ErddapStep, ...] = ERDDAP_STEPS) -> dict:
        """First fresh wave reading from the ERDDAP dataset chain, trying each host per step."""
        last_reason = None
        for step in steps:
            for host in self.stations.erddap_hosts:
                try:
                    payload = self._json(host + step.path + step.query)
                except UpstreamError as e:
                    last_reason = f"{step.label}: {e}"
                    continue

                table = payload.get("table") if isinstance(payload, dict) else None
                column_names = (table or {}).get("columnNames") or []
                rows = (table or {}).get("rows") or []
                if not column_names or not rows:
                    last_reason = "No rows"
                    continue

                reading = normalize_erddap_row(column_names, rows[0], step.columns)
                if self._is_fresh(reading["updated"]) and (
                    reading["wave_ft"] is not None or reading["period_s"] is not None
                ):
                    reading["updated"] = reading["updated"].isoformat()
                    return {"ok": True, "source": step.label, **reading}
                last_reason = f"{step.label}: stale or missing values"

        return {"ok": False, "reason": last_reason or "All sources unavailable"}

    def tide_predictions(self, begin: datetime | None = None, hours: int = 48) -> dict:
        """CO-OPS hi/lo tide predictions as {data, reason}."""
        begin = (begin or self._clock()).astimezone(LOCAL_TZ)
        params = {
            "product": "predictions",
            "application": "NOS.COOPS.TAC.WL",
            "station": self.stations.tide_station,
            "datum": "MLLW",
            "time_zone": "lst_ldt",
            "units": "english",
            "interval": "hilo",
            "format": "json",
            "begin_date": begin.strftime("%Y%m%d"),
            "range": str(hours),
        }
        try:
            payload = self._json(COOPS_URL, params)
        except UpstreamError:
            return {"data": [], "reason": "Tide predictions API error."}
        predictions = payload.get("predictions") if isinstance(payload, dict) else None
        if not predictions:
            return {"data": [], "reason": "No tide predictions returned (station may not provide predictions)."}
        return {"data": predictions, "reason": None}

    def _coops_latest(self, product: str) -> dict | None:
        params = {
            "product": product,
            "application": "NOS.COOPS.TAC.MET",
            "station": self.stations.tide_station,
            "time_zone": "lst_ldt",
            "units": "english",
            "format": "json",
            "date": "latest",
        }
        payload = self._json(COOPS_URL, params)
        data = payload.get("data") if isinstance(payload, dict) else None
        return data[0] if data else None

    def water_temperature(self) -> dict:
        try:
            latest = self._coops_latest("water_temperature")
        except UpstreamError:
            return {"data": None, "reason": "Water temperature API error."}
        if latest is None:
            return {"data": None, "reason": "No water temperature returned (station may not provide it or no recent obs)."}
        value = _number(latest.get("v"))
        if value is None:
            return {"data": None, "reason": "No recent water temperature observation."}
        return {"data": {"value": value, "time": latest.get("t")}, "reason": None}

    def wind(self) -> dict:
        try:
            latest = self._coops_latest("wind")
        except UpstreamError:
            return {"data": None, "reason": "Wind API error."}
        if latest is None:
            return {"data": None, "reason": "No wind data returned (station may not provide it or no recent obs)."}
        direction = _number(latest.get("d"))
        return {
            "data": {
                "speed_mph": knots_to_mph(_number(latest.get("s"))),
                "dir_deg": direction,
                "dir": degrees_to_cardinal(direction),
                "time": latest.get("t"),
            },
            "reason": None,
        }

    def air_temperature(self) -> dict:
        try:
            payload = self._json(NWS_LATEST_URL.format(station=self.stations.nws_station))
        except UpstreamError:
            return {"data": None, "reason": "Air temperature API error."}
        properties = payload.get("properties") if isinstance(payload, dict) else None
        properties = properties or {}
        celsius = _number((properties.get("temperature") or {}).get("value"))
        if celsius is None:
            return {"data": None, "reason": "No recent air temperature observation."}
        return {"data": {"value": c_to_f(celsius), "time": properties.get("timestamp")}, "reason": None}

    def live_conditions(self) -> dict:
        """Water/air temperature, wind and the surrounding tides for the tide station."""
        now = self._clock()
        tides = self.tide_predictions(begin=now - timedelta(hours=24), hours=72)
        last_two, next_two = split_tides(tides["data"], now)
        return {
            "station": {"id": self.stations.tide_station, "name": self.stations.tide_station_name},
            "waterTemp": self.water_temperature(),
            "wind": self.wind(),
            "airTemp": self.air_temperature(),
            "tides": {"last2": last_two, "next2": next_two, "reason": tides["reason"]},
            "generatedAt": now.isoformat(),
        }

    def marine_summary(self) -> dict:
        """Wind station, wave buoy and tide predictions in one payload.

        Raises:
            UpstreamError: If the wind or wave station cannot be read.
        """
        now = self._clock()
        wind = summarize_observation(self.observation(self.stations.wind_station))
        waves = summarize_observation(self.observation(self.stations.wave_station))
        tides = self.tide_predictions()
        return {
            "serverTimeEST": now.astimezone(LOCAL_TZ).strftime("%m/%d/%Y, %I:%M:%S %p"),
            "windData": {"stationName": self.stations.wind_station_name, **wind},
            "buoyData": {"stationName": self.stations.wave_station_name, **waves},
            "tideStationName": self.stations.tide_station_name,
            "tideData": {"predictions": tides["data"]},
            "tideReason": tides["reason"],
        }

