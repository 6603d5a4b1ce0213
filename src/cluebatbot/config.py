"""Application configuration loaded via python-decouple with typed helpers."""

from __future__ import annotations

from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path
from typing import Final, Protocol, cast

from decouple import (
    Config as DecoupleConfig,
    RepositoryEmpty,
    RepositoryEnv,
)

from .errors import ConfigurationError
from .models import TenantConfig, dumps_tenants, loads_tenants
from .utils import generate_instance_id

_DOTENV_PATH: Final[Path] = Path(".env")

DEFAULT_CREDS_FILE: Final[str] = "./cluebatbot-config.json"
EXAMPLE_CONFIG_FILE: Final[str] = "example.json"
LEADER_KEY: Final[str] = "cluster-id-master"


def _build_decouple_config() -> DecoupleConfig:
    # Missing .env (CI, containers) falls back to os.environ only
    try:
        return DecoupleConfig(RepositoryEnv(str(_DOTENV_PATH)))
    except FileNotFoundError:
        return DecoupleConfig(RepositoryEmpty())


_decouple_config: Final[DecoupleConfig] = _build_decouple_config()


@dataclass(slots=True, frozen=True)
class StoreSettings:
    """Shared state store connectivity."""

    backend: str  # "redis" | "memory"
    redis_host: str  # host:port
    redis_db: int
    socket_timeout_seconds: float

    @property
    def redis_url(self) -> str:
        return f"redis://{self.redis_host}/{self.redis_db}"


@dataclass(slots=True, frozen=True)
class LeaderSettings:
    """Fleet leadership election."""

    mode: str  # "lease" | "overwrite"
    key: str
    lease_ttl_seconds: int
    retry_interval_seconds: float


@dataclass(slots=True, frozen=True)
class LatencySettings:
    threshold_ms: int
    period: int
    history_limit: int


@dataclass(slots=True, frozen=True)
class SessionSettings:
    """Per-tenant session behavior."""

    restart_delay_seconds: float
    idle_timeout_seconds: float  # 0 disables
    dedup_capacity: int
    slack_api_url: str
    ping_interval_seconds: float
    reconnect_max_delay_seconds: float


@dataclass(slots=True, frozen=True)
class Settings:
    """Top-level application settings."""

    environment: str
    instance_id: str
    # True when the orchestrator supplied MY_POD_NAME
    running_in_cluster: bool
    write_example_config: bool
    creds_file: str
    debug: bool
    debug_latency_tick: bool
    store: StoreSettings
    leader: LeaderSettings
    latency: LatencySettings
    session: SessionSettings
    # Logging
    log_level: str
    log_json_enabled: bool
    log_rich_enabled: bool


def _bool(value: str, *, default: bool) -> bool:
    normalized = value.strip().lower()
    if normalized in {"1", "true", "t", "yes", "y"}:
        return True
    if normalized in {"0", "false", "f", "no", "n"}:
        return False
    return default


def _int(value: str, *, default: int) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def _float(value: str, *, default: float) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        return default


def _choice(value: str, choices: set[str], *, default: str) -> str:
    v = (value or "").strip().lower()
    return v if v in choices else default


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return cached application settings."""
    environment = _decouple_config("APP_ENVIRONMENT", default="development")

    pod_name = _decouple_config("MY_POD_NAME", default="").strip()

    store_settings = StoreSettings(
        backend=_choice(_decouple_config("STATE_BACKEND", default="redis"), {"redis", "memory"}, default="redis"),
        redis_host=_decouple_config("REDIS_HOST", default="").strip() or "localhost:6379",
        redis_db=_int(_decouple_config("REDIS_DB", default="0"), default=0),
        socket_timeout_seconds=_float(_decouple_config("REDIS_SOCKET_TIMEOUT_SECONDS", default="5"), default=5.0),
    )

    leader_settings = LeaderSettings(
        mode=_choice(_decouple_config("LEADER_MODE", default="lease"), {"lease", "overwrite"}, default="lease"),
        key=_decouple_config("LEADER_KEY", default=LEADER_KEY).strip() or LEADER_KEY,
        lease_ttl_seconds=max(1, _int(_decouple_config("LEADER_LEASE_TTL_SECONDS", default="30"), default=30)),
        retry_interval_seconds=_float(_decouple_config("LEADER_RETRY_INTERVAL_SECONDS", default="60"), default=60.0),
    )

    latency_settings = LatencySettings(
        threshold_ms=_int(_decouple_config("LATENCY_THRESHOLD_MS", default="2000"), default=2000),
        period=max(1, _int(_decouple_config("LATENCY_PERIOD", default="10"), default=10)),
        history_limit=max(1, _int(_decouple_config("LATENCY_HISTORY_LIMIT", default="10000"), default=10000)),
    )

    session_settings = SessionSettings(
        restart_delay_seconds=_float(_decouple_config("SESSION_RESTART_DELAY_SECONDS", default="5"), default=5.0),
        idle_timeout_seconds=_float(_decouple_config("SESSION_IDLE_TIMEOUT_SECONDS", default="0"), default=0.0),
        dedup_capacity=max(1, _int(_decouple_config("DEDUP_CAPACITY", default="512"), default=512)),
        slack_api_url=_decouple_config("SLACK_API_URL", default="https://slack.com/api/").strip(),
        ping_interval_seconds=_float(_decouple_config("SLACK_PING_INTERVAL_SECONDS", default="30"), default=30.0),
        reconnect_max_delay_seconds=_float(_decouple_config("SLACK_RECONNECT_MAX_DELAY_SECONDS", default="60"), default=60.0),
    )

    return Settings(
        environment=environment,
        instance_id=pod_name or generate_instance_id(),
        running_in_cluster=bool(pod_name),
        write_example_config=_bool(_decouple_config("WRITE_EXAMPLE_CONFIG", default="false"), default=False),
        creds_file=_decouple_config("CREDS_FILE", default=DEFAULT_CREDS_FILE),
        debug=_bool(_decouple_config("CSLACK_DEBUG", default="false"), default=False),
        debug_latency_tick=_bool(_decouple_config("DEBUG_LATENCY_TICK", default="false"), default=False),
        store=store_settings,
        leader=leader_settings,
        latency=latency_settings,
        session=session_settings,
        log_level=_decouple_config("LOG_LEVEL", default="INFO"),
        log_json_enabled=_bool(_decouple_config("LOG_JSON_ENABLED", default="false"), default=False),
        log_rich_enabled=_bool(_decouple_config("LOG_RICH_ENABLED", default="true"), default=True),
    )


class _CacheClearable(Protocol):
    def cache_clear(self) -> None: ...


def clear_settings_cache() -> None:
    """Clear the lru_cache for get_settings in a type-checker-friendly way."""
    cache_clear = getattr(cast(_CacheClearable, get_settings), "cache_clear", None)
    if callable(cache_clear):
        cache_clear()


def load_tenant_configs(path: str | Path) -> list[TenantConfig]:
    """Read the tenant credentials file. Any problem is a ConfigurationError."""
    file_path = Path(path).expanduser()
    try:
        text = file_path.read_text(encoding="utf-8")
    except OSError as exc:
        raise ConfigurationError(f"failed to open the creds file {file_path}: {exc}") from exc
    try:
        tenants = loads_tenants(text)
    except ValueError as exc:
        raise ConfigurationError(f"failed to read tenant configuration from {file_path}: {exc}") from exc
    if not tenants:
        raise ConfigurationError(f"no tenants configured in {file_path}")
    names = [tenant.name for tenant in tenants]
    if len(set(names)) != len(names):
        raise ConfigurationError(f"duplicate tenant names in {file_path}")
    return tenants


def example_tenant_configs() -> list[TenantConfig]:
    return [
        TenantConfig(
            name="example-server1-human-name",
            api_key="apikey1",
            control_channel_id="control channel D111111",
            owner_id="owner id U1111111",
            latency_counter=0,
            latency_samples=(0, 1),
        ),
        TenantConfig(
            name="example-server2-human-name",
            api_key="apikey2",
            control_channel_id="control channel D222222",
            owner_id="owner id U2222222",
            latency_counter=0,
            latency_samples=(0, 1),
        ),
    ]


def write_example_config(path: str | Path = EXAMPLE_CONFIG_FILE) -> Path:
    """Write a two-tenant example configuration and return its path."""
    file_path = Path(path)
    try:
        file_path.write_text(dumps_tenants(example_tenant_configs()), encoding="utf-8")
    except OSError as exc:
        raise ConfigurationError(f"failed to write example config {file_path}: {exc}") from exc
    return file_path
