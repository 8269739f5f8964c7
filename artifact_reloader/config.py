"""Configuration management for artifact-reloader.

This module loads configuration from defaults, a TOML config file, environment
variables and CLI arguments, and aggregates it into a :class:`Config`
dataclass, the single source of truth for settings.

Priority Order:
    1. CLI Arguments
    2. Environment Variables (``RELOADER_*``)
    3. Config File (table ``[artifact-reloader]``)
    4. Defaults

Config files are searched at ``./artifact-reloader.toml``, then
``$XDG_CONFIG_HOME/artifact-reloader/config.toml`` (``%APPDATA%`` on Windows,
``~/.config`` otherwise). The first file found wins.

Validation Invariants:
    * The target directory exists and the target file exists inside it.
    * Intervals and timeouts are non-negative (strictly positive where zero
      would make a loop spin).
    * In-process watching and external supervision are mutually exclusive.
    * The orchestrator needs either a plain command or a container runtime.
"""

from __future__ import annotations

import logging
import os
import shlex
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

import tomli

from artifact_reloader.exceptions import ConfigurationError
from artifact_reloader.process import detect_runtime

logger = logging.getLogger(__name__)
logger.addHandler(logging.NullHandler())

__all__ = ["Config", "load_config", "running_in_container"]

CONFIG_SECTION = "artifact-reloader"
RELOAD_MODES = ("auto", "in-process", "self-restart")

DEFAULTS: Dict[str, Any] = {
    "watch_enabled": False,
    "supervised": False,
    "target_directory": None,
    "target_filename": None,
    "debounce_window_ms": 500,
    "poll_interval_s": 2.0,
    "grace_period_s": 5.0,
    "startup_timeout_s": 10.0,
    "max_start_attempts": 3,
    "restart_backoff_s": 1.0,
    "settle_delay_s": 1.0,
    "lease_timeout_s": 1.0,
    "reload_mode": "auto",
    "process_name": "artifact-server",
    "image": "artifact-server:latest",
    "command": None,
    "runtime": None,
    "mount_point": "/app/artifacts",
    "verbose": False,
    "log_level": "INFO",
    "log_file": None,
}

ENV_MAP: Dict[str, str] = {
    "RELOADER_WATCH_ENABLED": "watch_enabled",
    "RELOADER_SUPERVISED": "supervised",
    "RELOADER_TARGET_DIRECTORY": "target_directory",
    "RELOADER_TARGET_FILENAME": "target_filename",
    "RELOADER_DEBOUNCE_WINDOW_MS": "debounce_window_ms",
    "RELOADER_POLL_INTERVAL_S": "poll_interval_s",
    "RELOADER_GRACE_PERIOD_S": "grace_period_s",
    "RELOADER_STARTUP_TIMEOUT_S": "startup_timeout_s",
    "RELOADER_MAX_START_ATTEMPTS": "max_start_attempts",
    "RELOADER_RESTART_BACKOFF_S": "restart_backoff_s",
    "RELOADER_SETTLE_DELAY_S": "settle_delay_s",
    "RELOADER_LEASE_TIMEOUT_S": "lease_timeout_s",
    "RELOADER_RELOAD_MODE": "reload_mode",
    "RELOADER_PROCESS_NAME": "process_name",
    "RELOADER_IMAGE": "image",
    "RELOADER_COMMAND": "command",
    "RELOADER_RUNTIME": "runtime",
    "RELOADER_MOUNT_POINT": "mount_point",
    "RELOADER_VERBOSE": "verbose",
    "RELOADER_LOG_LEVEL": "log_level",
    "RELOADER_LOG_FILE": "log_file",
}

TRUE_VALUES = ("true", "1", "yes", "on")


@dataclass
class Config:
    """Application configuration.

    Attributes:
        watch_enabled (bool): Run the detector and reloader inside this process.
        supervised (bool): This process is restarted by an external supervisor.
        target_directory (str): Absolute path of the directory holding the artifact.
        target_filename (str): Artifact file name inside ``target_directory``.
        debounce_window_ms (int): Quiet period after the last notification.
        poll_interval_s (float): Polling fallback period (CLI: watch interval).
        grace_period_s (float): Graceful stop deadline before a forced kill.
        startup_timeout_s (float): Deadline for a managed process to show liveness.
        max_start_attempts (int): Consecutive start failures tolerated.
        restart_backoff_s (float): Base retry delay, doubled per failure.
        settle_delay_s (float): Wait before acting on a change.
        lease_timeout_s (float): Bounded wait for the reload lease.
        reload_mode (str): ``auto``, ``in-process`` or ``self-restart``.
        process_name (str): Managed-process identity (container name).
        image (str): Container image reference.
        command (Optional[List[str]]): Plain command used instead of a container.
        runtime (Optional[str]): Container runtime executable.
        mount_point (str): Read-only bind target inside the container.
        verbose (bool): Raise log detail to DEBUG.
        log_level (str): Logging level name.
        log_file (Optional[str]): Optional rotating log file.
    """

    watch_enabled: bool
    supervised: bool
    target_directory: str
    target_filename: str
    debounce_window_ms: int
    poll_interval_s: float
    grace_period_s: float
    startup_timeout_s: float
    max_start_attempts: int
    restart_backoff_s: float
    settle_delay_s: float
    lease_timeout_s: float
    reload_mode: str
    process_name: str
    image: str
    command: Optional[List[str]]
    runtime: Optional[str]
    mount_point: str
    verbose: bool
    log_level: str
    log_file: Optional[str]

    @property
    def target_path(self) -> Path:
        return Path(self.target_directory) / self.target_filename

    @property
    def debounce_seconds(self) -> float:
        return self.debounce_window_ms / 1000.0


def running_in_container() -> bool:
    """Best-effort check for running inside a container."""
    if os.environ.get("RELOADER_RUNNING_IN_CONTAINER", "").lower() in TRUE_VALUES:
        return True
    if os.environ.get("container"):
        # Set by podman and systemd-nspawn
        return True
    return os.path.exists("/.dockerenv")


def _get_config_file_paths() -> List[str]:
    """Return candidate config file paths in priority order."""
    paths = [f"{CONFIG_SECTION}.toml"]

    xdg_config_home = os.environ.get("XDG_CONFIG_HOME")
    if xdg_config_home:
        base = os.path.expanduser(xdg_config_home)
    elif os.name == "nt" and os.environ.get("APPDATA"):
        base = os.path.expanduser(os.environ["APPDATA"])
    else:
        base = os.path.join(os.path.expanduser("~"), ".config")
    paths.append(os.path.join(base, CONFIG_SECTION, "config.toml"))
    return paths


def _read_config_file() -> Dict[str, Any]:
    for path in _get_config_file_paths():
        if not os.path.isfile(path):
            continue
        logger.debug(f"Loading config from {path}")
        try:
            with open(path, "rb") as f:
                document = tomli.load(f)
        except (tomli.TOMLDecodeError, UnicodeDecodeError, OSError) as e:
            logger.error(f"Failed to parse config file {path}: {e}")
            return {}
        section = document.get(CONFIG_SECTION, {})
        if not isinstance(section, dict):
            logger.error(f"[{CONFIG_SECTION}] in {path} is not a table; ignoring")
            return {}
        # Accept both "debounce-window-ms" and "debounce_window_ms"
        return {key.replace("-", "_"): value for key, value in section.items()}
    return {}


def _to_bool(key: str, value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        return value.strip().lower() in TRUE_VALUES
    if isinstance(value, int):
        return value != 0
    raise ConfigurationError(f"Invalid boolean for {key}: {value!r}", key)


def _to_number(key: str, value: Any, cast: Callable[[Any], Any], minimum: float, strict: bool = False) -> Any:
    try:
        number = cast(value)
    except (TypeError, ValueError) as e:
        raise ConfigurationError(f"Invalid {cast.__name__} for {key}: {value!r}", key) from e
    if number < minimum or (strict and number == minimum):
        bound = f"greater than {minimum}" if strict else f"at least {minimum}"
        raise ConfigurationError(f"{key} must be {bound}, got {number}", key)
    return number


def _to_command(value: Any) -> Optional[List[str]]:
    if value is None or value == "":
        return None
    if isinstance(value, str):
        return shlex.split(value)
    return [str(part) for part in value]


def load_config(args: Dict[str, Any], require_runtime: bool = False) -> Config:
    """Load and validate configuration with strict priority.

    Args:
        args (Dict[str, Any]): Parsed CLI arguments, typically
            ``vars(parser.parse_args())``. ``None`` values are ignored so
            lower-priority sources can take effect.
        require_runtime (bool): Fail when no plain command is configured and
            no container runtime is installed. The orchestrator CLI sets this.

    Returns:
        Config: The fully resolved and validated configuration.

    Raises:
        ConfigurationError: On any invalid or missing value.

    Example:
        >>> config = load_config({"target_directory": "/srv/a", "target_filename": "model.bin"})
        >>> config.debounce_window_ms
        500
    """
    values: Dict[str, Any] = dict(DEFAULTS)

    for key, value in _read_config_file().items():
        if key in values and value is not None and value != "":
            values[key] = value

    for env_var, key in ENV_MAP.items():
        value = os.getenv(env_var)
        if value is not None and value != "":
            values[key] = value

    for key, value in args.items():
        if value is not None and key in values:
            values[key] = value

    for key in ("watch_enabled", "supervised", "verbose"):
        values[key] = _to_bool(key, values[key])

    values["debounce_window_ms"] = _to_number("debounce_window_ms", values["debounce_window_ms"], int, 0)
    values["poll_interval_s"] = _to_number("poll_interval_s", values["poll_interval_s"], float, 0, strict=True)
    values["grace_period_s"] = _to_number("grace_period_s", values["grace_period_s"], float, 0, strict=True)
    values["startup_timeout_s"] = _to_number("startup_timeout_s", values["startup_timeout_s"], float, 0, strict=True)
    values["max_start_attempts"] = _to_number("max_start_attempts", values["max_start_attempts"], int, 1)
    if values["max_start_attempts"] > 100:
        raise ConfigurationError(
            f"max_start_attempts must be at most 100, got {values['max_start_attempts']}", "max_start_attempts"
        )
    for key in ("restart_backoff_s", "settle_delay_s", "lease_timeout_s"):
        values[key] = _to_number(key, values[key], float, 0)

    values["reload_mode"] = str(values["reload_mode"]).strip().lower()
    if values["reload_mode"] not in RELOAD_MODES:
        raise ConfigurationError(
            f"Invalid reload_mode: {values['reload_mode']} (expected one of {', '.join(RELOAD_MODES)})",
            "reload_mode",
        )

    if values["watch_enabled"] and values["supervised"]:
        raise ConfigurationError(
            "watch_enabled cannot be combined with supervised: the external supervisor owns restarts",
            "watch_enabled",
        )

    if values["verbose"]:
        values["log_level"] = "DEBUG"
    values["log_level"] = str(values["log_level"]).upper()
    if not isinstance(getattr(logging, values["log_level"], None), int):
        raise ConfigurationError(f"Invalid log level: {values['log_level']}", "log_level")

    values["command"] = _to_command(values["command"])
    _validate_target(values)

    if values["log_file"]:
        values["log_file"] = os.path.abspath(os.path.expanduser(str(values["log_file"])))

    if require_runtime and not values["command"]:
        runtime = detect_runtime(values["runtime"])
        if runtime is None:
            wanted = values["runtime"] or " or ".join(("podman", "docker"))
            raise ConfigurationError(f"Container runtime not found: {wanted}. Please install one of them.", "runtime")
        values["runtime"] = runtime

    config_fields = {f.name for f in fields(Config)}
    return Config(**{k: v for k, v in values.items() if k in config_fields})


def _validate_target(values: Dict[str, Any]) -> None:
    directory = values["target_directory"]
    filename = values["target_filename"]
    if not directory:
        raise ConfigurationError(
            "Target directory is required. Use -p/--path or set RELOADER_TARGET_DIRECTORY", "target_directory"
        )
    if not filename:
        raise ConfigurationError(
            "Target filename is required. Use -f/--file or set RELOADER_TARGET_FILENAME", "target_filename"
        )
    if os.path.basename(str(filename)) != str(filename):
        raise ConfigurationError(f"Target filename must not contain a directory: {filename}", "target_filename")

    resolved = Path(os.path.expanduser(str(directory))).resolve()
    if not resolved.is_dir():
        raise ConfigurationError(f"Target directory does not exist: {resolved}", "target_directory")
    artifact = resolved / str(filename)
    if not artifact.is_file():
        raise ConfigurationError(f"Target file not found: {artifact}", "target_filename")

    values["target_directory"] = str(resolved)
    values["target_filename"] = str(filename)
