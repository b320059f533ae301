#!/usr/bin/env python3
"""
config.py — Settings collaborator + application configuration.

Loads from distox.yaml if present, with environment variable overrides.
Environment variables use the pattern: DISTOX_<SECTION>_<KEY> (uppercase).

The library never reads configuration itself; the application shell builds
an :class:`AppConfig` and hands the pieces to the services it constructs.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Optional

import yaml

DEFAULT_CONFIG_PATH = Path("distox.yaml")


class ShotDirection(str, Enum):
    FORWARD = "forward"
    BACKWARD = "backward"


@dataclass
class Settings:
    """User settings read by the link and measurement services."""
    auto_connect: bool = False
    shot_direction: ShotDirection = ShotDirection.FORWARD
    smart_mode: bool = True
    last_device_address: Optional[str] = None
    last_device_name: Optional[str] = None


@dataclass
class SerialConfig:
    port: str = ""          # empty = auto-detect
    baud: int = 9600
    timeout: float = 0.5    # read timeout of the reader thread (s)
    connect_timeout: float = 10.0


@dataclass
class LoggingConfig:
    level: str = "info"
    format: str = "%(asctime)s %(name)s %(levelname)s %(message)s"


@dataclass
class AppConfig:
    settings: Settings = field(default_factory=Settings)
    serial: SerialConfig = field(default_factory=SerialConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)


def _as_bool(v: str) -> bool:
    return v.strip().lower() in ("1", "true", "yes", "on")


def _apply_env_overrides(config: AppConfig) -> None:
    """Override config values from environment variables."""
    mapping = {
        "DISTOX_SETTINGS_AUTO_CONNECT": lambda v: setattr(config.settings, "auto_connect", _as_bool(v)),
        "DISTOX_SETTINGS_SHOT_DIRECTION": lambda v: setattr(config.settings, "shot_direction", ShotDirection(v.lower())),
        "DISTOX_SETTINGS_SMART_MODE": lambda v: setattr(config.settings, "smart_mode", _as_bool(v)),
        "DISTOX_SETTINGS_LAST_DEVICE_ADDRESS": lambda v: setattr(config.settings, "last_device_address", v),
        "DISTOX_SETTINGS_LAST_DEVICE_NAME": lambda v: setattr(config.settings, "last_device_name", v),
        "DISTOX_SERIAL_PORT": lambda v: setattr(config.serial, "port", v),
        "DISTOX_SERIAL_BAUD": lambda v: setattr(config.serial, "baud", int(v)),
        "DISTOX_SERIAL_TIMEOUT": lambda v: setattr(config.serial, "timeout", float(v)),
        "DISTOX_SERIAL_CONNECT_TIMEOUT": lambda v: setattr(config.serial, "connect_timeout", float(v)),
        "DISTOX_LOG_LEVEL": lambda v: setattr(config.logging, "level", v),
        "DISTOX_LOG_FORMAT": lambda v: setattr(config.logging, "format", v),
    }
    for env_key, setter in mapping.items():
        val = os.environ.get(env_key)
        if val is not None:
            setter(val)


def _merge(section, values: dict) -> None:
    for k, v in (values or {}).items():
        if hasattr(section, k):
            setattr(section, k, v)


def load_config(config_path: str | Path | None = None) -> AppConfig:
    """Load configuration from YAML file + environment overrides."""
    config = AppConfig()
    config_path = Path(config_path) if config_path is not None else DEFAULT_CONFIG_PATH

    if config_path.exists():
        with open(config_path) as f:
            raw = yaml.safe_load(f) or {}
        _merge(config.settings, raw.get("settings"))
        _merge(config.serial, raw.get("serial"))
        _merge(config.logging, raw.get("logging"))
        if not isinstance(config.settings.shot_direction, ShotDirection):
            config.settings.shot_direction = ShotDirection(str(config.settings.shot_direction).lower())

    # Environment overrides always win
    _apply_env_overrides(config)
    return config


def setup_logging(cfg: LoggingConfig) -> None:
    """Configure the root logger for an application shell."""
    logging.basicConfig(level=getattr(logging, cfg.level.upper(), logging.INFO),
                        format=cfg.format)
