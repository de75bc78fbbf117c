import logging
from pathlib import Path

from dotenv import dotenv_values

logger = logging.getLogger(__name__)

_DISABLED_VALUES = {"0", "false", "no", "off", "n"}


def read_env(path) -> dict[str, str]:
    """Parse a KEY=VALUE env file. A missing or unreadable file is empty."""
    if not path or not Path(path).is_file():
        return {}
    try:
        values = dotenv_values(path)
    except (OSError, UnicodeDecodeError) as e:
        logger.warning(f"Could not read env file {path}: {e}")
        return {}
    return {k: v for k, v in values.items() if v is not None}


def is_zero_downtime_enabled(path) -> bool:
    value = read_env(path).get("ZERO_DOWNTIME")
    if value is None:
        return True
    return value.strip().lower() not in _DISABLED_VALUES


def container_port(path, default: int | None) -> int | None:
    value = read_env(path).get("PORT", "").strip()
    if value.isdigit():
        return int(value)
    return default
