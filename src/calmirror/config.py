from __future__ import annotations
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict
import yaml

from .errors import ConfigError

SOURCE_TYPES = ("google", "ics")


@dataclass
class SourceConfig:
    type: str
    calendar_id: str
    url: str


@dataclass
class MirrorConfig:
    base_url: str
    id_length: int


@dataclass
class AppConfig:
    poll_interval_seconds: int
    window_days: int
    allow_empty_source: bool
    request_timeout_seconds: float
    source: SourceConfig
    mirror: MirrorConfig


def load_config(path: str) -> AppConfig:
    p = Path(path)
    try:
        data: Dict[str, Any] = yaml.safe_load(p.read_text(encoding="utf-8")) or {}
    except OSError as exc:
        raise ConfigError(f"Cannot read config file {path}") from exc
    except yaml.YAMLError as exc:
        raise ConfigError(f"Config file {path} is not valid YAML") from exc
    if not isinstance(data, dict):
        raise ConfigError(f"Config file {path} must contain a mapping")

    source = data.get("source") or {}
    mirror = data.get("mirror") or {}

    try:
        cfg = AppConfig(
            poll_interval_seconds=int(data.get("poll_interval_seconds", 60)),
            window_days=int(data.get("window_days", 7)),
            allow_empty_source=_flag(data, "allow_empty_source", False, path),
            request_timeout_seconds=float(data.get("request_timeout_seconds", 30)),
            source=SourceConfig(
                type=str(source.get("type", "google")),
                calendar_id=str(source.get("calendar_id", "primary")),
                url=str(source.get("url", "")),
            ),
            mirror=MirrorConfig(
                base_url=str(mirror.get("base_url", "")),
                id_length=int(mirror.get("id_length", 32)),
            ),
        )
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"Invalid value in {path}: {exc}") from exc

    _validate(cfg, path)
    return cfg


def _flag(data: Dict[str, Any], key: str, default: bool, path: str) -> bool:
    value = data.get(key, default)
    if not isinstance(value, bool):
        raise ConfigError(f"{path}: {key} must be true or false, got {value!r}")
    return value


def _validate(cfg: AppConfig, path: str) -> None:
    if cfg.source.type not in SOURCE_TYPES:
        raise ConfigError(f"{path}: source.type must be one of {', '.join(SOURCE_TYPES)}")
    if cfg.source.type == "ics" and not cfg.source.url:
        raise ConfigError(f"{path}: source.url is required for an ics source")
    if not cfg.mirror.base_url:
        raise ConfigError(f"{path}: mirror.base_url is required")
    if cfg.poll_interval_seconds <= 0:
        raise ConfigError(f"{path}: poll_interval_seconds must be positive")
    if cfg.window_days <= 0:
        raise ConfigError(f"{path}: window_days must be positive")
    if cfg.mirror.id_length < 8:
        raise ConfigError(f"{path}: mirror.id_length must be at least 8")
