from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path

import yaml

LOG_LEVELS = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}


@dataclass(slots=True)
class WorkerPoolConfig:
    min: int = 1
    max: int = 10
    max_restarts: int = 3


@dataclass(slots=True)
class CacheConfig:
    location: str
    username: str | None = None
    password: str | None = None
    ssl: bool = False

    @property
    def url(self) -> str:
        if "://" in self.location:
            return self.location
        scheme = "rediss" if self.ssl else "redis"
        return f"{scheme}://{self.location}"


@dataclass(slots=True)
class AuthConfig:
    basic: str | None = None
    bearer: str | None = None


@dataclass(slots=True)
class LLMClientConfig:
    engine: str
    base_url: str
    model: str | None = None
    timeout: int = 30000
    headers: dict[str, str] = field(default_factory=dict)
    auth: AuthConfig | None = None


@dataclass(slots=True)
class NotifyConfig:
    channel: str = "discord"


@dataclass(slots=True)
class LoggingConfig:
    path: Path | None = None
    level: str = "INFO"


@dataclass(slots=True)
class AppConfig:
    workers: WorkerPoolConfig
    cache: CacheConfig
    llm_clients: dict[str, LLMClientConfig]
    notify: NotifyConfig = field(default_factory=NotifyConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)


@dataclass(slots=True)
class WorkerSettings:
    """Everything a worker process needs; must stay picklable."""

    worker_id: str
    cache: CacheConfig
    llm_clients: dict[str, LLMClientConfig]
    notify_channel: str
    log_path: Path | None = None
    log_level: str = "INFO"


def _require(mapping: dict, key: str, section: str) -> object:
    if key not in mapping:
        raise ValueError(f"Missing `{section}.{key}` in config")
    return mapping[key]


def _mapping(raw: dict, key: str) -> dict:
    value = raw.get(key, {})
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise ValueError(f"`{key}` must be a mapping")
    return value


def _optional_str(value: object) -> str | None:
    if value is None or value == "":
        return None
    return str(value)


def parse_llm_client(raw: object, section: str) -> LLMClientConfig:
    if not isinstance(raw, dict):
        raise ValueError(f"`{section}` must be a mapping")
    headers_raw = raw.get("headers") or {}
    if not isinstance(headers_raw, dict):
        raise ValueError(f"`{section}.headers` must be a mapping")
    auth_raw = raw.get("auth")
    auth: AuthConfig | None = None
    if auth_raw is not None:
        if not isinstance(auth_raw, dict):
            raise ValueError(f"`{section}.auth` must be a mapping")
        auth = AuthConfig(
            basic=_optional_str(auth_raw.get("basic")),
            bearer=_optional_str(auth_raw.get("bearer")),
        )

    client = LLMClientConfig(
        engine=str(_require(raw, "engine", section)).strip().lower(),
        base_url=str(_require(raw, "base_url", section)).rstrip("/"),
        model=_optional_str(raw.get("model")),
        timeout=int(raw.get("timeout", 30000)),
        headers={str(key): str(value) for key, value in headers_raw.items()},
        auth=auth,
    )
    if not client.engine:
        raise ValueError(f"`{section}.engine` must not be empty")
    if not client.base_url:
        raise ValueError(f"`{section}.base_url` must not be empty")
    if client.timeout < 1:
        raise ValueError(f"`{section}.timeout` must be >= 1")
    return client


def load_config(path: str | Path) -> AppConfig:
    config_path = Path(path).expanduser().resolve()
    raw = yaml.safe_load(config_path.read_text(encoding="utf-8")) or {}
    if not isinstance(raw, dict):
        raise ValueError("Config root must be a mapping")

    workers_raw = _mapping(raw, "workers")
    cache_raw = _require(raw, "cache", "root")
    clients_raw = _require(raw, "llm_clients", "root")
    notify_raw = _mapping(raw, "notify")
    logging_raw = _mapping(raw, "logging")

    if not isinstance(cache_raw, dict):
        raise ValueError("`cache` must be a mapping")
    if not isinstance(clients_raw, dict) or not clients_raw:
        raise ValueError("`llm_clients` must be a non-empty mapping")

    workers = WorkerPoolConfig(
        min=int(workers_raw.get("min", 1)),
        max=int(workers_raw.get("max", 10)),
        max_restarts=int(workers_raw.get("max_restarts", 3)),
    )
    if workers.min < 1:
        raise ValueError("`workers.min` must be >= 1")
    if workers.max < workers.min:
        raise ValueError("`workers.max` must be >= `workers.min`")
    if workers.max_restarts < 0:
        raise ValueError("`workers.max_restarts` must be >= 0")

    cache = CacheConfig(
        location=str(_require(cache_raw, "location", "cache")),
        username=_optional_str(cache_raw.get("username")),
        password=_optional_str(cache_raw.get("password")),
        ssl=bool(cache_raw.get("ssl", False)),
    )

    llm_clients = {
        str(name): parse_llm_client(item, f"llm_clients.{name}") for name, item in clients_raw.items()
    }

    notify = NotifyConfig(channel=str(notify_raw.get("channel", "discord")))
    if not notify.channel:
        raise ValueError("`notify.channel` must not be empty")

    log_path: Path | None = None
    if logging_raw.get("path"):
        log_path = Path(str(logging_raw["path"])).expanduser()
        if not log_path.is_absolute():
            log_path = config_path.parent / log_path
    level = str(logging_raw.get("level", "INFO")).upper()
    if level not in LOG_LEVELS:
        raise ValueError(f"`logging.level` must be one of {sorted(LOG_LEVELS)}")

    return AppConfig(
        workers=workers,
        cache=cache,
        llm_clients=llm_clients,
        notify=notify,
        logging=LoggingConfig(path=log_path, level=level),
    )


def worker_settings(config: AppConfig, worker_id: str) -> WorkerSettings:
    return WorkerSettings(
        worker_id=worker_id,
        cache=config.cache,
        llm_clients=dict(config.llm_clients),
        notify_channel=config.notify.channel,
        log_path=config.logging.path,
        log_level=config.logging.level,
    )
