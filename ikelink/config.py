"""
Configuration constants for ikelink.

All protocol constants, paths, and tunable parameters are centralized here.
"""

from __future__ import annotations

import os
from pathlib import Path
from dataclasses import dataclass, field
from typing import Optional, Tuple

import yaml

from .exceptions import InvalidParamsError


# ---------------- Retransmission ----------------

RETRANS_TIMEOUT_MS_MIN = 500
RETRANS_TIMEOUT_MS_MAX = 30 * 60 * 1000  # 30 minutes
RETRANS_MAX_ATTEMPTS_MAX = 10
RETRANS_TIMEOUT_MS_LIST_DEFAULT: Tuple[int, ...] = (500, 1000, 2000, 4000, 8000)


# ---------------- Dead Peer Detection / NAT-T Keepalive ----------------

DPD_DELAY_SEC_MIN = 20
DPD_DELAY_SEC_MAX = 1800  # 30 minutes
DPD_DELAY_SEC_DEFAULT = 120
DPD_DELAY_SEC_DISABLED = 2**31 - 1

NATT_KEEPALIVE_DELAY_SEC_MIN = 10
NATT_KEEPALIVE_DELAY_SEC_MAX = 3600
NATT_KEEPALIVE_DELAY_SEC_DEFAULT = 10


# ---------------- Liveness Metrics ----------------

MAX_ELAPSED_MILLIS = 2**31 - 1  # Samples beyond a signed 32-bit range are dropped


# ---------------- Dispatch ----------------

DISPATCH_TIMEOUT = 10.0  # Seconds a blocking handoff may wait for a session
HANDLER_JOIN_TIMEOUT = 2.0


# ---------------- File Paths ----------------

CONFIG_DIR = os.path.join(os.path.expanduser("~"), ".ikelink")
CONFIG_FILE = os.path.join(CONFIG_DIR, "config.yaml")
LOG_DIR = os.path.join(CONFIG_DIR, "logs")


# ---------------- Logging Configuration ----------------

LOG_FILE = os.path.join(LOG_DIR, "ikelink.log")
LOG_MAX_BYTES = 10 * 1024 * 1024  # 10MB per log file
LOG_BACKUP_COUNT = 5


@dataclass
class SessionParams:
    """Per-session timing parameters."""

    retransmission_timeouts_ms: Tuple[int, ...] = RETRANS_TIMEOUT_MS_LIST_DEFAULT
    dpd_delay_sec: int = DPD_DELAY_SEC_DEFAULT
    natt_keepalive_delay_sec: int = NATT_KEEPALIVE_DELAY_SEC_DEFAULT

    def __post_init__(self):
        self.retransmission_timeouts_ms = tuple(self.retransmission_timeouts_ms)

    @property
    def dpd_enabled(self) -> bool:
        return self.dpd_delay_sec != DPD_DELAY_SEC_DISABLED

    def validate(self) -> "SessionParams":
        """
        Check every value against its allowed range.

        Returns:
            self, to allow chaining

        Raises:
            InvalidParamsError: if any value is out of range
        """
        timeouts = self.retransmission_timeouts_ms
        if not timeouts or len(timeouts) > RETRANS_MAX_ATTEMPTS_MAX:
            raise InvalidParamsError(
                f"Retransmission timeout list must hold 1-{RETRANS_MAX_ATTEMPTS_MAX} entries",
                "retransmission_timeouts_ms",
            )
        for t in timeouts:
            if t < RETRANS_TIMEOUT_MS_MIN or t > RETRANS_TIMEOUT_MS_MAX:
                raise InvalidParamsError(
                    f"Invalid retransmission timeout {t}ms", "retransmission_timeouts_ms"
                )

        if self.dpd_enabled and not (
            DPD_DELAY_SEC_MIN <= self.dpd_delay_sec <= DPD_DELAY_SEC_MAX
        ):
            raise InvalidParamsError(
                f"Invalid DPD delay {self.dpd_delay_sec}s", "dpd_delay_sec"
            )

        if not (
            NATT_KEEPALIVE_DELAY_SEC_MIN
            <= self.natt_keepalive_delay_sec
            <= NATT_KEEPALIVE_DELAY_SEC_MAX
        ):
            raise InvalidParamsError(
                f"Invalid NATT keepalive delay {self.natt_keepalive_delay_sec}s",
                "natt_keepalive_delay_sec",
            )
        return self


@dataclass
class RuntimeConfig:
    """Runtime configuration that can be modified at startup."""

    log_to_file: bool = True
    log_level: str = "INFO"
    session: SessionParams = field(default_factory=SessionParams)

    def __post_init__(self):
        """Ensure directories exist."""
        if self.log_to_file:
            Path(LOG_DIR).mkdir(parents=True, exist_ok=True)


def load_config_file(path: Optional[str] = None) -> dict:
    """
    Load configuration from YAML file.

    Args:
        path: Path to config file (defaults to CONFIG_FILE)

    Returns:
        Configuration dict (empty if file doesn't exist)
    """
    config_path = path or CONFIG_FILE

    if not os.path.exists(config_path):
        return {}

    try:
        with open(config_path, "r") as f:
            data = yaml.safe_load(f)
            return data if isinstance(data, dict) else {}
    except (OSError, yaml.YAMLError):
        return {}


def save_default_config(path: Optional[str] = None) -> bool:
    """
    Save default configuration file.

    Args:
        path: Path to config file (defaults to CONFIG_FILE)

    Returns:
        True if saved successfully
    """
    config_path = path or CONFIG_FILE

    default_config = {
        "logging": {
            "to_file": True,
            "level": "INFO",
        },
        "session": {
            "retransmission_timeouts_ms": list(RETRANS_TIMEOUT_MS_LIST_DEFAULT),
            "dpd_delay_sec": DPD_DELAY_SEC_DEFAULT,
            "natt_keepalive_delay_sec": NATT_KEEPALIVE_DELAY_SEC_DEFAULT,
        },
    }

    try:
        Path(config_path).parent.mkdir(parents=True, exist_ok=True)
        with open(config_path, "w") as f:
            f.write("# ikelink configuration\n")
            yaml.safe_dump(default_config, f, default_flow_style=False, sort_keys=False)
        return True
    except OSError:
        return False


def _section(file_config: dict, name: str) -> dict:
    """Return a config section, treating an empty key as an empty section."""
    section = file_config.get(name) or {}
    if not isinstance(section, dict):
        raise InvalidParamsError(f"Config section '{name}' must be a mapping", name)
    return section


def _int_value(value, field_name: str) -> int:
    if isinstance(value, bool):
        raise InvalidParamsError(f"{field_name} must be an integer, got {value!r}", field_name)
    try:
        return int(value)
    except (TypeError, ValueError):
        raise InvalidParamsError(f"{field_name} must be an integer, got {value!r}", field_name)


def apply_config_file(runtime_config: RuntimeConfig, file_config: dict) -> None:
    """
    Apply file configuration to runtime config.

    File config values are used as defaults, CLI args take precedence.

    Raises:
        InvalidParamsError: if a value has the wrong type
    """
    # Logging settings
    logging_config = _section(file_config, "logging")
    if "to_file" in logging_config:
        runtime_config.log_to_file = bool(logging_config["to_file"])
    if "level" in logging_config:
        runtime_config.log_level = str(logging_config["level"])

    # Session timing
    session_config = _section(file_config, "session")
    params = runtime_config.session
    if "retransmission_timeouts_ms" in session_config:
        timeouts = session_config["retransmission_timeouts_ms"]
        if not isinstance(timeouts, list):
            raise InvalidParamsError(
                f"retransmission_timeouts_ms must be a list, got {timeouts!r}",
                "retransmission_timeouts_ms",
            )
        params.retransmission_timeouts_ms = tuple(
            _int_value(t, "retransmission_timeouts_ms") for t in timeouts
        )
    for name in ("dpd_delay_sec", "natt_keepalive_delay_sec"):
        if name in session_config:
            setattr(params, name, _int_value(session_config[name], name))
