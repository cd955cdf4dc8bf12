"""Configuration for a Beacon instance.

Values are layered: dataclass defaults, then a JSON config file, then
BEACON_* environment variables, then explicit keyword overrides.
"""
from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass, field, fields

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = os.path.join(".beacon", "config.json")

# Environment variable -> config field
ENV_FIELDS = {
    "BEACON_URL": "url",
    "BEACON_APP_KEY": "app_key",
    "BEACON_DEVICE_ID": "device_id",
    "BEACON_STORAGE_PATH": "storage_path",
    "BEACON_DEBUG": "debug",
}


@dataclass
class Config:
    url: str = ""
    app_key: str | None = None
    device_id: str | None = None
    app_version: str = "0.0"
    country_code: str | None = None
    city: str | None = None
    ip_address: str | None = None
    debug: bool = False
    enabled: bool = True                # False keeps queuing but never delivers

    # Heartbeat and delivery
    interval: float = 0.5               # seconds between ticks
    queue_size: int = 1000
    fail_timeout: int = 60              # seconds to wait after a failed delivery
    session_update: int = 60            # seconds between session extensions
    max_events: int = 10
    force_post: bool = False
    post_threshold: int = 2000          # encoded length at which GET becomes POST
    timeout: float | None = None        # socket timeout for one delivery

    # Persistence
    storage_path: str = "beacon_data"
    persist: bool = True

    # Consent
    require_consent: bool = False
    consent_sync_window: float = 1.0

    metrics: dict = field(default_factory=dict)

    def __post_init__(self) -> None:
        self.url = strip_trailing_slash(self.url or "")
        if self.queue_size < 1:
            raise ValueError(f"queue_size must be positive, got {self.queue_size}")
        if self.max_events < 1:
            raise ValueError(f"max_events must be positive, got {self.max_events}")
        if self.interval <= 0:
            raise ValueError(f"interval must be positive, got {self.interval}")

    @classmethod
    def from_sources(cls, path: str | None = None, env: dict | None = None,
                     **overrides) -> "Config":
        """Build a Config from a JSON file, the environment and overrides."""
        values: dict = {}
        known = {f.name for f in fields(cls)}

        if path:
            for key, value in load_config(path).items():
                if key == "telemetry":
                    values["enabled"] = bool(value)
                elif key in known:
                    values[key] = value
                else:
                    logger.debug("Ignoring unknown config key %s", key)

        env = os.environ if env is None else env
        for var, name in ENV_FIELDS.items():
            raw = env.get(var)
            if raw is None or raw == "":
                continue
            values[name] = _parse_flag(raw) if name == "debug" else raw
        if env.get("BEACON_TELEMETRY", "").lower() == "off":
            values["enabled"] = False

        values.update({k: v for k, v in overrides.items() if v is not None})
        return cls(**values)


def strip_trailing_slash(url: str) -> str:
    if url.endswith("/"):
        return url[:-1]
    return url


def _parse_flag(raw: str) -> bool:
    return raw.strip().lower() in ("1", "true", "yes", "on")


def load_config(config_path: str) -> dict:
    """Load config from file, returning empty dict if not found."""
    if not os.path.exists(config_path):
        return {}
    try:
        with open(config_path, "r", encoding="utf-8") as f:
            data = json.load(f)
    except (OSError, json.JSONDecodeError) as e:
        logger.debug("Failed to load config %s: %s", config_path, e)
        return {}
    return data if isinstance(data, dict) else {}


def save_config(config_path: str, cfg: dict) -> None:
    """Save config to file."""
    directory = os.path.dirname(config_path)
    if directory:
        os.makedirs(directory, exist_ok=True)
    with open(config_path, "w", encoding="utf-8") as f:
        json.dump(cfg, f, indent=2)
