"""Configuration loader with type-safe dataclasses."""

import os
from dataclasses import dataclass, field
from pathlib import Path
from urllib.parse import urlparse

import yaml


class ConfigError(Exception):
    """Raised when configuration is invalid or cannot be loaded."""

    pass


# App-shell paths pre-cached into the core bucket on install.
DEFAULT_CORE_ASSETS = (
    "/",
    "/index.html",
    "/app.css",
    "/manifest.json",
    "/assets/icons/icon-180.png",
    "/assets/icons/icon-192.png",
    "/assets/icons/icon-512.png",
    "/pages/dashboard.html",
    "/pages/hrbt-wave.html",
    "/pages/contacts.html",
    "/pages/bridges-locks.html",
    "/pages/gar.html",
    "/pages/maintenance.html",
    "/pages/maintenance-boat.html",
    "/pages/maintenance-admin.html",
    "/pages/maintenance-new.html",
)

# Identity/analytics providers the worker never intercepts.
DEFAULT_EXCLUDED_HOSTS = (
    "google.com",
    "gstatic.com",
    "googleapis.com",
    "googleusercontent.com",
    "appspot.com",
)

DEFAULT_PROXY_HOSTS = (
    "erddap.marine.usf.edu",
    "erddap.sensors.ioos.us",
    "www.ndbc.noaa.gov",
)

DEFAULT_ERDDAP_HOSTS = (
    "https://erddap.sensors.ioos.us/erddap",
    "https://erddap.ioos.us/erddap",
)


def _get_default_data_dir() -> Path:
    """Return ~/.local/share/cfdmarine, the XDG-style user data directory."""
    return Path.home() / ".local" / "share" / "cfdmarine"


DEFAULT_DB_PATH = str(_get_default_data_dir() / "cfdmarine.db")
DEFAULT_CACHE_PATH = str(_get_default_data_dir() / "buckets.db")
DEFAULT_RESOURCES_PATH = str(_get_default_data_dir() / "resources")


def _validate_origin(origin: str, section: str) -> None:
    parsed = urlparse(origin)
    if parsed.scheme not in ("http", "https") or not parsed.netloc:
        raise ConfigError(f"{section} origin must be an http(s) URL, got '{origin}'")
    if parsed.path not in ("", "/"):
        raise ConfigError(f"{section} origin must not contain a path, got '{origin}'")


@dataclass(frozen=True)
class WorkerConfig:
    """Configuration for the offline cache worker.

    app_version tags every bucket name. When left unset it is derived from
    the app-shell contents at startup (see cfdmarine.pwa).
    """

    origin: str = "http://localhost:8080"
    app_version: str | None = None
    html_timeout_ms: int = 1500
    core_assets: tuple[str, ...] = DEFAULT_CORE_ASSETS
    excluded_hosts: tuple[str, ...] = DEFAULT_EXCLUDED_HOSTS
    api_prefix: str = "/api/"
    cache_path: str = DEFAULT_CACHE_PATH
    background_workers: int = 4
    notification_icon: str = "/assets/icons/icon-192.png"
    notification_badge: str = "/assets/icons/icon-192.png"
    default_notification_title: str = "New maintenance issue"
    default_notification_url: str = "/pages/maintenance.html"

    def __post_init__(self) -> None:
        _validate_origin(self.origin, "Worker")
        if self.app_version is not None and not self.app_version.strip():
            raise ConfigError("Worker app_version cannot be blank")
        if self.html_timeout_ms < 1:
            raise ConfigError(f"Worker html_timeout_ms must be at least 1 (got {self.html_timeout_ms})")
        if not self.api_prefix.startswith("/"):
            raise ConfigError(f"Worker api_prefix must start with '/' (got '{self.api_prefix}')")
        for path in self.core_assets:
            if not path.startswith("/"):
                raise ConfigError(f"Core asset paths must start with '/' (got '{path}')")
        if self.background_workers < 1:
            raise ConfigError("Worker background_workers must be at least 1")
        if not self.default_notification_url.startswith("/"):
            raise ConfigError("Worker default_notification_url must be an in-app path")

    @property
    def html_timeout(self) -> float:
        """Timeout for the html network race, in seconds."""
        return self.html_timeout_ms / 1000.0


@dataclass(frozen=True)
class GatewayConfig:
    """Configuration for the local gateway that hosts the worker."""

    enabled: bool = True
    port: int = 8081
    bind_host: str = "127.0.0.1"  # "" or "0.0.0.0" to serve the crew LAN
    request_timeout: int = 30  # seconds for upstream fetches

    def __post_init__(self) -> None:
        if self.port < 1 or self.port > 65535:
            raise ConfigError(f"Gateway port must be between 1 and 65535, got {self.port}")
        if self.request_timeout < 1:
            raise ConfigError("Gateway request_timeout must be at least 1 second")


@dataclass(frozen=True)
class ApiConfig:
    """Configuration for the app server (static shell + JSON functions)."""

    enabled: bool = True
    port: int = 8080
    web_root: str = "./public"
    admin_key: str | None = None  # Required for admin-only actions when set
    proxy_allowed_hosts: tuple[str, ...] = DEFAULT_PROXY_HOSTS

    def __post_init__(self) -> None:
        if self.port < 1 or self.port > 65535:
            raise ConfigError(f"API port must be between 1 and 65535, got {self.port}")
        if not self.web_root:
            raise ConfigError("API web_root cannot be empty")


@dataclass(frozen=True)
class DatabaseConfig:
    """Configuration for the SQLite database holding GAR records and push subscriptions."""

    path: str = DEFAULT_DB_PATH


@dataclass(frozen=True)
class WaveStation:
    """An NDBC station used in the wave fallback chain."""

    id: str
    label: str

    def __post_init__(self) -> None:
        if not self.id:
            raise ConfigError("Wave station id cannot be empty")


@dataclass(frozen=True)
class StationsConfig:
    """Upstream station identifiers for marine conditions."""

    tide_station: str = "8638610"
    tide_station_name: str = "Sewells Point, VA"
    wind_station: str = "CHBV2"
    wind_station_name: str = "Chesapeake Bay Bridge-Tunnel, VA (NOAA CHBV2)"
    wave_station: str = "44099"
    wave_station_name: str = "Cape Henry, VA (NOAA 44099)"
    nws_station: str = "KORF"
    default_ndbc_station: str = "CHLV2"
    wave_fallbacks: tuple[WaveStation, ...] = (
        WaveStation("44087", "NDBC 44087 (Thimble Shoal)"),
        WaveStation("44072", "NDBC 44072 (York Spit)"),
    )
    erddap_hosts: tuple[str, ...] = DEFAULT_ERDDAP_HOSTS
    freshness_hours: int = 6
    request_timeout: int = 12  # seconds

    def __post_init__(self) -> None:
        for name in ("tide_station", "wind_station", "wave_station", "nws_station", "default_ndbc_station"):
            if not getattr(self, name):
                raise ConfigError(f"Stations {name} cannot be empty")
        if self.freshness_hours < 1:
            raise ConfigError("Stations freshness_hours must be at least 1")
        if self.request_timeout < 1:
            raise ConfigError("Stations request_timeout must be at least 1 second")


@dataclass(frozen=True)
class ResourcesConfig:
    """Configuration for the uploaded-resources blob store."""

    path: str = DEFAULT_RESOURCES_PATH
    max_upload_bytes: int = 20 * 1024 * 1024

    def __post_init__(self) -> None:
        if self.max_upload_bytes < 1:
            raise ConfigError("Resources max_upload_bytes must be positive")


@dataclass(frozen=True)
class PushConfig:
    """Configuration for push subscription management and broadcast."""

    public_key: str | None = None
    allow_private_endpoints: bool = True  # gateways usually live on the crew LAN
    max_retries: int = 2
    retry_delay: int = 1  # seconds, doubled on each retry

    def __post_init__(self) -> None:
        if self.max_retries < 0:
            raise ConfigError("Push max_retries must be non-negative")
        if self.retry_delay < 0:
            raise ConfigError("Push retry_delay must be non-negative")


@dataclass(frozen=True)
class Config:
    """Main configuration container."""

    worker: WorkerConfig = field(default_factory=WorkerConfig)
    gateway: GatewayConfig = field(default_factory=GatewayConfig)
    api: ApiConfig = field(default_factory=ApiConfig)
    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    stations: StationsConfig = field(default_factory=StationsConfig)
    resources: ResourcesConfig = field(default_factory=ResourcesConfig)
    push: PushConfig = field(default_factory=PushConfig)

    def __post_init__(self) -> None:
        if self.api.enabled and self.gateway.enabled and self.api.port == self.gateway.port:
            raise ConfigError(f"API and gateway cannot share port {self.api.port}")


def _section(data: dict, name: str) -> dict | None:
    value = data.get(name)
    if value is not None and not isinstance(value, dict):
        raise ConfigError(f"'{name}' section must be a dictionary")
    return value


def _str_tuple(value: object, name: str) -> tuple[str, ...]:
    if not isinstance(value, list):
        raise ConfigError(f"'{name}' must be a list")
    return tuple(str(v) for v in value)


def _parse_worker_config(data: dict | None) -> WorkerConfig:
    """Parse worker configuration section."""
    if data is None:
        return WorkerConfig()

    app_version = data.get("app_version")
    kwargs: dict = {
        "origin": str(data.get("origin", "http://localhost:8080")).rstrip("/"),
        "app_version": str(app_version) if app_version is not None else None,
        "html_timeout_ms": int(data.get("html_timeout_ms", 1500)),
        "api_prefix": str(data.get("api_prefix", "/api/")),
        "cache_path": str(data.get("cache_path", DEFAULT_CACHE_PATH)),
        "background_workers": int(data.get("background_workers", 4)),
    }
    if "core_assets" in data:
        kwargs["core_assets"] = _str_tuple(data["core_assets"], "worker.core_assets")
    if "excluded_hosts" in data:
        kwargs["excluded_hosts"] = tuple(h.lower() for h in _str_tuple(data["excluded_hosts"], "worker.excluded_hosts"))

    notifications = data.get("notifications") or {}
    if not isinstance(notifications, dict):
        raise ConfigError("'worker.notifications' must be a dictionary")
    for key, attr in (
        ("icon", "notification_icon"),
        ("badge", "notification_badge"),
        ("default_title", "default_notification_title"),
        ("default_url", "default_notification_url"),
    ):
        if key in notifications:
            kwargs[attr] = str(notifications[key])

    return WorkerConfig(**kwargs)


def _parse_gateway_config(data: dict | None) -> GatewayConfig:
    """Parse gateway configuration section."""
    if data is None:
        return GatewayConfig()

    return GatewayConfig(
        enabled=bool(data.get("enabled", True)),
        port=int(data.get("port", 8081)),
        bind_host=str(data.get("bind_host", "127.0.0.1")),
        request_timeout=int(data.get("request_timeout", 30)),
    )


def _parse_api_config(data: dict | None) -> ApiConfig:
    """Parse API configuration section."""
    if data is None:
        return ApiConfig()

    admin_key = data.get("admin_key")
    if admin_key is not None:
        admin_key = str(admin_key)

    kwargs: dict = {
        "enabled": bool(data.get("enabled", True)),
        "port": int(data.get("port", 8080)),
        "web_root": str(data.get("web_root", "./public")),
        "admin_key": admin_key,
    }
    if "proxy_allowed_hosts" in data:
        kwargs["proxy_allowed_hosts"] = _str_tuple(data["proxy_allowed_hosts"], "api.proxy_allowed_hosts")
    return ApiConfig(**kwargs)


def _parse_database_config(data: dict | None) -> DatabaseConfig:
    """Parse database configuration section."""
    if data is None:
        return DatabaseConfig()
    return DatabaseConfig(path=str(data.get("path", DEFAULT_DB_PATH)))


def _parse_wave_station(data: dict, index: int) -> WaveStation:
    if not isinstance(data, dict):
        raise ConfigError(f"Wave fallback entry {index} must be a dictionary")
    station_id = data.get("id")
    if station_id is None:
        raise ConfigError(f"Wave fallback entry {index} is missing 'id' field")
    return WaveStation(id=str(station_id), label=str(data.get("label", f"NDBC {station_id}")))


def _parse_stations_config(data: dict | None) -> StationsConfig:
    """Parse stations configuration section."""
    if data is None:
        return StationsConfig()

    defaults = StationsConfig()
    kwargs: dict = {
        name: str(data.get(name, getattr(defaults, name)))
        for name in (
            "tide_station",
            "tide_station_name",
            "wind_station",
            "wind_station_name",
            "wave_station",
            "wave_station_name",
            "nws_station",
            "default_ndbc_station",
        )
    }
    kwargs["freshness_hours"] = int(data.get("freshness_hours", 6))
    kwargs["request_timeout"] = int(data.get("request_timeout", 12))

    if "wave_fallbacks" in data:
        fallbacks = data["wave_fallbacks"]
        if not isinstance(fallbacks, list):
            raise ConfigError("'stations.wave_fallbacks' must be a list")
        kwargs["wave_fallbacks"] = tuple(_parse_wave_station(entry, i) for i, entry in enumerate(fallbacks))
    if "erddap_hosts" in data:
        kwargs["erddap_hosts"] = tuple(h.rstrip("/") for h in _str_tuple(data["erddap_hosts"], "stations.erddap_hosts"))

    return StationsConfig(**kwargs)


def _parse_resources_config(data: dict | None) -> ResourcesConfig:
    """Parse resources configuration section."""
    if data is None:
        return ResourcesConfig()
    return ResourcesConfig(
        path=str(data.get("path", DEFAULT_RESOURCES_PATH)),
        max_upload_bytes=int(data.get("max_upload_bytes", 20 * 1024 * 1024)),
    )


def _parse_push_config(data: dict | None) -> PushConfig:
    """Parse push configuration section."""
    if data is None:
        return PushConfig()

    public_key = data.get("public_key")
    return PushConfig(
        public_key=str(public_key) if public_key is not None else None,
        allow_private_endpoints=bool(data.get("allow_private_endpoints", True)),
        max_retries=int(data.get("max_retries", 2)),
        retry_delay=int(data.get("retry_delay", 1)),
    )


def _apply_env_overrides(config_data: dict) -> dict:
    """Apply environment variable overrides to configuration.

    Supported overrides:
    - CFDMARINE_APP_VERSION: Override worker.app_version
    - CFDMARINE_API_PORT: Override api.port
    - CFDMARINE_GATEWAY_PORT: Override gateway.port
    - CFDMARINE_DB_PATH: Override database.path
    - CFDMARINE_ADMIN_KEY: Override api.admin_key
    - CFDMARINE_VAPID_PUBLIC_KEY: Override push.public_key
    """
    overrides = (
        ("CFDMARINE_APP_VERSION", "worker", "app_version", str),
        ("CFDMARINE_API_PORT", "api", "port", int),
        ("CFDMARINE_GATEWAY_PORT", "gateway", "port", int),
        ("CFDMARINE_DB_PATH", "database", "path", str),
        ("CFDMARINE_ADMIN_KEY", "api", "admin_key", str),
        ("CFDMARINE_VAPID_PUBLIC_KEY", "push", "public_key", str),
    )
    for env_name, section, key, convert in overrides:
        value = os.environ.get(env_name)
        if value is None:
            continue
        if config_data.get(section) is None:
            config_data[section] = {}
        try:
            config_data[section][key] = convert(value)
        except ValueError:
            raise ConfigError(f"Invalid value for {env_name}: {value!r}")

    return config_data


def load_config(config_path: str) -> Config:
    """Load and validate configuration from a YAML file.

    Args:
        config_path: Path to the YAML configuration file.

    Returns:
        Validated Config object.

    Raises:
        ConfigError: If the file cannot be read or configuration is invalid.
    """
    path = Path(config_path)

    if not path.exists():
        raise ConfigError(f"Configuration file not found: {config_path}")

    try:
        with open(path, encoding="utf-8") as f:
            data = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ConfigError(f"Failed to parse YAML configuration: {e}")
    except OSError as e:
        raise ConfigError(f"Failed to read configuration file: {e}")

    if data is None:
        data = {}

    if not isinstance(data, dict):
        raise ConfigError("Configuration must be a YAML dictionary")

    for name in ("worker", "gateway", "api", "database", "stations", "resources", "push"):
        _section(data, name)

    data = _apply_env_overrides(data)

    try:
        return Config(
            worker=_parse_worker_config(data.get("worker")),
            gateway=_parse_gateway_config(data.get("gateway")),
            api=_parse_api_config(data.get("api")),
            database=_parse_database_config(data.get("database")),
            stations=_parse_stations_config(data.get("stations")),
            resources=_parse_resources_config(data.get("resources")),
            push=_parse_push_config(data.get("push")),
        )
    except (TypeError, ValueError) as e:
        raise ConfigError(f"Invalid configuration value: {e}")
