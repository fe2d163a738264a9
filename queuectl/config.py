import logging
from pathlib import Path
from typing import Dict, Optional, Union

from .errors import StorageCorruption, ValidationError
from .store import atomic_json_write, load_json, resolve_data_dir

logger = logging.getLogger(__name__)

CONFIG_FILE = "config.json"

Number = Union[int, float]

DEFAULT_CONFIG: Dict[str, Number] = {
    "max_retries": 3,
    "backoff_base": 2,
    "worker_poll_interval": 1.0,        # seconds
    "graceful_shutdown_timeout": 30.0,  # seconds
    "job_timeout": 300.0,               # seconds
    "lock_timeout": 5.0,                # seconds
}

ALLOWED_CONFIG_KEYS = set(DEFAULT_CONFIG.keys())

INTEGER_KEYS = {"max_retries"}
# Keys that may be zero; all others must be strictly positive.
ZERO_ALLOWED_KEYS = {"max_retries", "graceful_shutdown_timeout"}


def coerce_value(key: str, value: Union[str, Number]) -> Number:
    """Validate `value` for `key` and return it as int or float."""
    if key not in ALLOWED_CONFIG_KEYS:
        raise ValidationError(f"Unknown config key {key!r}. Allowed keys: {', '.join(sorted(ALLOWED_CONFIG_KEYS))}")
    if isinstance(value, bool):
        raise ValidationError(f"{key} must be a number")
    try:
        number = float(value)
    except (TypeError, ValueError):
        raise ValidationError(f"{key} must be a number, got {value!r}")
    if number != number or number in (float("inf"), float("-inf")):
        raise ValidationError(f"{key} must be a finite number")

    if key in ZERO_ALLOWED_KEYS:
        if number < 0:
            raise ValidationError(f"{key} must be >= 0")
    elif number <= 0:
        raise ValidationError(f"{key} must be > 0")

    if key in INTEGER_KEYS:
        if not number.is_integer():
            raise ValidationError(f"{key} must be an integer")
        return int(number)
    return int(number) if isinstance(value, int) else number


class ConfigStore:
    """Numeric tunables for one data directory, persisted on every change."""

    def __init__(self, data_dir: Optional[str] = None):
        self.path: Path = resolve_data_dir(data_dir) / CONFIG_FILE
        self._values = self._read()

    def _read(self) -> Dict[str, Number]:
        raw = load_json(self.path, {})
        if not isinstance(raw, dict):
            raise StorageCorruption(f"{self.path} must hold an object")
        values = dict(DEFAULT_CONFIG)
        for key, value in raw.items():
            if key not in ALLOWED_CONFIG_KEYS:
                logger.warning("Ignoring unknown config key %r in %s", key, self.path)
                continue
            try:
                values[key] = coerce_value(key, value)
            except ValidationError as e:
                raise StorageCorruption(f"{self.path}: {e}")
        return values

    def get(self, key: str) -> Number:
        if key not in ALLOWED_CONFIG_KEYS:
            raise ValidationError(f"Unknown config key {key!r}. Allowed keys: {', '.join(sorted(ALLOWED_CONFIG_KEYS))}")
        return self._values[key]

    def all(self) -> Dict[str, Number]:
        return dict(self._values)

    def set(self, key: str, value: Union[str, Number]) -> Number:
        number = coerce_value(key, value)
        # Pick up changes made by other processes since we loaded.
        self._values = self._read()
        self._values[key] = number
        atomic_json_write(self.path, self._values)
        logger.debug("Config %s set to %s", key, number)
        return number

    def reset(self) -> None:
        self._values = dict(DEFAULT_CONFIG)
        atomic_json_write(self.path, self._values)
