"""Settings loading: config file first, then environment variables."""

from __future__ import annotations

import json
import logging
import os
from collections.abc import Mapping
from dataclasses import asdict, dataclass, fields
from pathlib import Path

from xsense_cloud._constants import (
    API_HOST,
    CONFIG_FILE,
    MQTT_HOST,
    MQTT_REGION,
    REQUEST_TIMEOUT,
)

_LOGGER = logging.getLogger(__name__)

_ENV_OVERRIDES = {
    "XSENSE_USERNAME": "username",
    "XSENSE_PASSWORD": "password",
    "XSENSE_PROTOCOL": "protocol",
}


@dataclass
class Settings:
    """Everything a :class:`~xsense_cloud.client.Client` needs to run."""

    username: str
    password: str
    protocol: str = "cognito"
    polling_interval: int = 15
    """Minutes between device list refreshes, for bridges that poll."""
    api_host: str = API_HOST
    broker_host: str = MQTT_HOST
    broker_region: str = MQTT_REGION
    request_timeout: float = REQUEST_TIMEOUT
    single_flight_refresh: bool = False

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> Settings:
        """Build settings from a mapping, ignoring unknown keys."""
        known = {f.name for f in fields(cls)}
        values = {k: v for k, v in data.items() if k in known and v is not None}
        missing = [name for name in ("username", "password") if not values.get(name)]
        if missing:
            raise ValueError(f"Missing required setting(s): {', '.join(missing)}")
        return cls(**values)  # type: ignore[arg-type]


def load_settings(
    path: Path | None = None, environ: Mapping[str, str] | None = None
) -> Settings:
    """Load settings from *path* (default ``~/.config/xsense-cloud/config.json``).

    A missing file is fine; ``XSENSE_USERNAME``, ``XSENSE_PASSWORD`` and
    ``XSENSE_PROTOCOL`` override whatever the file says.

    Raises:
        ValueError: No username or password after both sources are merged,
            or the file is not a JSON object.
    """
    path = path or CONFIG_FILE
    environ = os.environ if environ is None else environ

    data: dict[str, object] = {}
    if path.exists():
        loaded = json.loads(path.read_text())
        if not isinstance(loaded, dict):
            raise ValueError(f"{path} must contain a JSON object")
        data.update(loaded)
        _LOGGER.debug("Loaded settings from %s", path)

    for var, key in _ENV_OVERRIDES.items():
        if environ.get(var):
            data[key] = environ[var]

    return Settings.from_dict(data)


def save_settings(settings: Settings, path: Path | None = None) -> Path:
    """Persist *settings* as JSON, readable by the owner only."""
    path = path or CONFIG_FILE
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(asdict(settings), indent=2))
    path.chmod(0o600)
    return path
