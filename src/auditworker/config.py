from __future__ import annotations

import json
import os
from dataclasses import dataclass
from typing import Any

import yaml

from .storage import get_setting, set_setting


class ConfigError(ValueError):
    pass


@dataclass(frozen=True)
class AppConfig:
    name: str
    timezone: str


@dataclass(frozen=True)
class StorageConfig:
    bucket: str
    region: str
    endpoint_url: str
    conditional_writes: bool


@dataclass(frozen=True)
class QueuesConfig:
    audits: str
    mystique: str


@dataclass(frozen=True)
class EnrichmentConfig:
    timeout_seconds: int
    batch_size: int
    presign_expires_seconds: int


@dataclass(frozen=True)
class ProvidersConfig:
    web_search: list[str]


@dataclass(frozen=True)
class LinkSearchConfig:
    base_url: str
    timeout_seconds: int
    max_results: int


@dataclass(frozen=True)
class Config:
    app: AppConfig
    storage: StorageConfig
    queues: QueuesConfig
    enrichment: EnrichmentConfig
    providers: ProvidersConfig
    link_search: LinkSearchConfig


DEFAULT_CONFIG: dict[str, Any] = {
    "app": {
        "name": "auditworker",
        "timezone": "UTC",
    },
    "storage": {
        "bucket": "spacecat-importer",
        "region": "us-east-1",
        "endpoint_url": "",
        "conditional_writes": True,
    },
    "queues": {
        "audits": "audit-jobs",
        "mystique": "spacecat-to-mystique",
    },
    "enrichment": {
        "timeout_seconds": 600,
        "batch_size": 10,
        "presign_expires_seconds": 86400,
    },
    "providers": {
        "web_search": [
            "all",
            "chatgpt",
            "gemini",
            "google_ai_overviews",
            "ai_mode",
            "perplexity",
            "copilot",
        ],
    },
    "link_search": {
        "base_url": "",
        "timeout_seconds": 20,
        "max_results": 5,
    },
}

CONFIG_KEY = "config.runtime"


def get_state_db_path() -> str:
    data_dir = os.environ.get("AW_DATA_DIR", "/data")
    return os.path.join(data_dir, "state.sqlite3")


def bootstrap_runtime_config(conn) -> dict[str, Any]:
    cfg = get_setting(conn, CONFIG_KEY, None)
    if cfg is None:
        set_setting(conn, CONFIG_KEY, _initial_config())
        cfg = get_setting(conn, CONFIG_KEY, None)
    if not isinstance(cfg, dict):
        raise ConfigError("config.runtime must be a JSON object")
    return cfg


def get_runtime_config(conn) -> dict[str, Any]:
    cfg = bootstrap_runtime_config(conn)
    errors = validate_runtime_config(cfg)
    if errors:
        raise ConfigError("Invalid config.runtime: " + "; ".join(errors))
    return cfg


def set_runtime_config(conn, cfg: dict[str, Any]) -> None:
    errors = validate_runtime_config(cfg)
    if errors:
        raise ConfigError("Invalid config.runtime: " + "; ".join(errors))
    set_setting(conn, CONFIG_KEY, _deep_copy(cfg))


def load_runtime_config(conn) -> Config:
    cfg = get_runtime_config(conn)
    return _build_config(cfg)


def load_config_file(path: str) -> dict[str, Any]:
    """Read a YAML seed file and overlay it on the defaults.

    Only keys present in the file are overridden, so a seed may carry just the
    bucket and queue names for an environment.
    """
    try:
        with open(path, "r", encoding="utf-8") as handle:
            data = yaml.safe_load(handle) or {}
    except OSError as exc:
        raise ConfigError(f"cannot read config file {path}: {exc}") from exc
    except yaml.YAMLError as exc:
        raise ConfigError(f"invalid YAML in {path}: {exc}") from exc
    if not isinstance(data, dict):
        raise ConfigError(f"{path} must contain a mapping")
    merged = _merge(_deep_copy(DEFAULT_CONFIG), data)
    errors = validate_runtime_config(merged)
    if errors:
        raise ConfigError("Invalid config file: " + "; ".join(errors))
    return merged


def validate_runtime_config(cfg: dict[str, Any]) -> list[str]:
    errors: list[str] = []
    _validate_dict(cfg, DEFAULT_CONFIG, "config.runtime", errors)
    if not errors:
        _validate_ranges(cfg, errors)
    return errors


def _initial_config() -> dict[str, Any]:
    path = os.environ.get("AW_CONFIG_PATH", "").strip()
    if path and os.path.exists(path):
        return load_config_file(path)
    return _deep_copy(DEFAULT_CONFIG)


def _validate_ranges(cfg: dict[str, Any], errors: list[str]) -> None:
    enrichment = cfg["enrichment"]
    if enrichment["timeout_seconds"] <= 0:
        errors.append("config.runtime.enrichment.timeout_seconds must be positive")
    if enrichment["batch_size"] <= 0:
        errors.append("config.runtime.enrichment.batch_size must be positive")
    if not cfg["storage"]["bucket"]:
        errors.append("config.runtime.storage.bucket must not be empty")


def _validate_dict(value: dict[str, Any], schema: dict[str, Any], path: str, errors: list[str]) -> None:
    if not isinstance(value, dict):
        errors.append(f"{path} must be an object")
        return
    for key in schema.keys():
        if key not in value:
            errors.append(f"missing {path}.{key}")
    for key in value.keys():
        if key not in schema:
            errors.append(f"unknown {path}.{key}")
    for key, default in schema.items():
        if key not in value:
            continue
        _validate_value(value[key], default, f"{path}.{key}", errors)


def _validate_value(value: Any, default: Any, path: str, errors: list[str]) -> None:
    if isinstance(default, dict):
        if not isinstance(value, dict):
            errors.append(f"{path} must be an object")
            return
        _validate_dict(value, default, path, errors)
        return
    if isinstance(default, list):
        if not isinstance(value, list):
            errors.append(f"{path} must be a list")
            return
        for item in value:
            if not isinstance(item, str):
                errors.append(f"{path} must be a list of strings")
                break
        return
    if isinstance(default, bool):
        if not isinstance(value, bool):
            errors.append(f"{path} must be a boolean")
        return
    if isinstance(default, int):
        if not isinstance(value, int) or isinstance(value, bool):
            errors.append(f"{path} must be an integer")
        return
    if isinstance(default, str):
        if not isinstance(value, str):
            errors.append(f"{path} must be a string")
        return


def _build_config(cfg: dict[str, Any]) -> Config:
    app_cfg = cfg.get("app") or {}
    storage_cfg = cfg.get("storage") or {}
    queues_cfg = cfg.get("queues") or {}
    enrichment_cfg = cfg.get("enrichment") or {}
    providers_cfg = cfg.get("providers") or {}
    link_cfg = cfg.get("link_search") or {}

    app = AppConfig(
        name=str(app_cfg.get("name")),
        timezone=str(app_cfg.get("timezone")),
    )

    storage = StorageConfig(
        bucket=str(storage_cfg.get("bucket")),
        region=str(storage_cfg.get("region")),
        endpoint_url=str(storage_cfg.get("endpoint_url") or ""),
        conditional_writes=bool(storage_cfg.get("conditional_writes")),
    )

    queues = QueuesConfig(
        audits=str(queues_cfg.get("audits")),
        mystique=str(queues_cfg.get("mystique")),
    )

    enrichment = EnrichmentConfig(
        timeout_seconds=int(enrichment_cfg.get("timeout_seconds")),
        batch_size=int(enrichment_cfg.get("batch_size")),
        presign_expires_seconds=int(enrichment_cfg.get("presign_expires_seconds")),
    )

    providers = ProvidersConfig(web_search=list(providers_cfg.get("web_search")))

    link_search = LinkSearchConfig(
        base_url=str(link_cfg.get("base_url") or ""),
        timeout_seconds=int(link_cfg.get("timeout_seconds")),
        max_results=int(link_cfg.get("max_results")),
    )

    return Config(
        app=app,
        storage=storage,
        queues=queues,
        enrichment=enrichment,
        providers=providers,
        link_search=link_search,
    )


def _merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(base.get(key), dict):
            _merge(base[key], value)
        else:
            base[key] = value
    return base


def _deep_copy(value: dict[str, Any]) -> dict[str, Any]:
    return json.loads(json.dumps(value))
