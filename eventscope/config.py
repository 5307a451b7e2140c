"""Configuration: frozen dataclass built from defaults, YAML, then env vars."""

import copy
import logging
import os
from dataclasses import dataclass, fields
from datetime import timedelta

import yaml

logger = logging.getLogger(__name__)

STORAGE_DIRECT = "direct"
STORAGE_BUFFERED = "buffered"
STORAGE_REDIS = "redis"
STORAGE_BACKENDS = (STORAGE_DIRECT, STORAGE_BUFFERED, STORAGE_REDIS)


def _parse_bool(value: str) -> bool:
    return value.strip().lower() in ("true", "1", "yes")


def _parse_list(value: str) -> tuple:
    return tuple(item.strip() for item in value.split(",") if item.strip())


@dataclass(frozen=True)
class Config:
    enabled: bool = True
    storage: str = STORAGE_DIRECT
    database_path: str = "./eventscope.sqlite3"
    redis_url: str | None = None
    key_prefix: str = "eventscope"
    retention_days: int = 7
    flush_batch_size: int = 100
    flush_interval: float = 5.0
    max_retries: int = 3
    retry_backoff: float = 0.1
    sweep_interval: int = 3600
    sweep_batch_size: int = 1000
    per_page: int = 25
    sensitive_keys: tuple = ()
    ignore_paths: tuple = ("/eventscope", "/assets", "/static")
    host: str = "0.0.0.0"
    port: int = 5000

    @property
    def retention_horizon(self) -> timedelta:
        return timedelta(days=self.retention_days)


DEFAULTS = {f.name: f.default for f in fields(Config)}

# Environment variable -> (field name, parser)
ENV_OVERRIDES = {
    "EVENTSCOPE_ENABLED": ("enabled", _parse_bool),
    "EVENTSCOPE_STORAGE": ("storage", str),
    "EVENTSCOPE_DATABASE_PATH": ("database_path", str),
    "EVENTSCOPE_REDIS_URL": ("redis_url", str),
    "EVENTSCOPE_KEY_PREFIX": ("key_prefix", str),
    "EVENTSCOPE_RETENTION_DAYS": ("retention_days", int),
    "EVENTSCOPE_FLUSH_BATCH_SIZE": ("flush_batch_size", int),
    "EVENTSCOPE_FLUSH_INTERVAL": ("flush_interval", float),
    "EVENTSCOPE_MAX_RETRIES": ("max_retries", int),
    "EVENTSCOPE_SWEEP_INTERVAL": ("sweep_interval", int),
    "EVENTSCOPE_SENSITIVE_KEYS": ("sensitive_keys", _parse_list),
    "EVENTSCOPE_HOST": ("host", str),
    "EVENTSCOPE_PORT": ("port", int),
}


def _deep_merge(base: dict, override: dict) -> dict:
    """Recursively merge override dict into base dict."""
    result = copy.deepcopy(base)
    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = _deep_merge(result[key], value)
        else:
            result[key] = copy.deepcopy(value)
    return result


def _read_yaml(path: str) -> dict:
    try:
        with open(path, "r") as f:
            data = yaml.safe_load(f)
    except FileNotFoundError:
        logger.info("Config file %s not found, using defaults", path)
        return {}
    except yaml.YAMLError:
        logger.warning("Invalid YAML in %s, using defaults", path)
        return {}

    if not isinstance(data, dict):
        return {}
    # Accept both a flat mapping and one nested under an "eventscope" key
    nested = data.get("eventscope")
    return nested if isinstance(nested, dict) else data


def load_config(path: str | None = None, env=None) -> Config:
    """Build Config from defaults, an optional YAML file, then environment variables.

    Pass env for testability; when None, os.environ is read.
    """
    env = os.environ if env is None else env
    path = path or env.get("EVENTSCOPE_CONFIG")

    values = copy.deepcopy(DEFAULTS)
    if path:
        known = {k: v for k, v in _read_yaml(path).items() if k in DEFAULTS}
        values = _deep_merge(values, known)

    if "EVENTSCOPE_REDIS_URL" not in env and env.get("REDIS_URL"):
        values["redis_url"] = env["REDIS_URL"]
    for var, (name, parse) in ENV_OVERRIDES.items():
        raw = env.get(var)
        if raw is not None:
            values[name] = parse(raw)

    for name in ("sensitive_keys", "ignore_paths"):
        values[name] = tuple(values[name] or ())

    if values["storage"] not in STORAGE_BACKENDS:
        logger.warning("Unknown storage backend %r, falling back to %r",
                       values["storage"], STORAGE_DIRECT)
        values["storage"] = STORAGE_DIRECT

    return Config(**values)
