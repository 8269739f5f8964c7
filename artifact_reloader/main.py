"""Main entry point for artifact-reloader.

This module is the orchestrator CLI: it watches the artifact from outside the
server and restarts the server (a container, or a plain command) whenever the
artifact's content changes.

Key Responsibilities:
    - CLI Argument Parsing: ``-p/--path``, ``-f/--file``, ``-n/--name``,
      ``-i/--image`` and friends, each mirrored by a ``RELOADER_*`` variable.
    - Signal Handling: SIGINT/SIGTERM set a stop event for a graceful shutdown.
    - Logging: console (stderr) plus optional rotating file (10MB, 5 backups).
    - Statistics: a periodic summary of detector, coordinator and process counters.
    - Shutdown Invariants: the managed process is stopped from the ``finally``
      block and, as a fallback, from an ``atexit`` hook.

Exit Codes:
    0: clean shutdown
    1: fatal error (restart budget exhausted, watch directory unusable)
    2: configuration error
"""

from __future__ import annotations

import argparse
import atexit
import logging
import os
import signal
import sys
import threading
import time
from logging.handlers import RotatingFileHandler
from types import FrameType
from typing import Any, Dict, List, Optional

from artifact_reloader import __version__
from artifact_reloader.config import ENV_MAP, load_config
from artifact_reloader.coordinator import ReloadCoordinator
from artifact_reloader.exceptions import ConfigurationError, WatchError
from artifact_reloader.fingerprint import ContentFingerprinter
from artifact_reloader.orchestrator import ExternalProcessOrchestrator, ProcessRestartReloader
from artifact_reloader.process import CommandLauncher, ContainerLauncher, ManagedProcess, ProcessLauncher
from artifact_reloader.watcher import ChangeDetector

try:
    import resource
except ImportError:
    resource = None  # type: ignore

# Logging configuration constants
LOG_FORMAT = '[%(asctime)s] [%(levelname)s] %(name)s: %(message)s'
LOG_DATE_FORMAT = '%Y-%m-%dT%H:%M:%S'

STATISTICS_INTERVAL = 300.0
SUPERVISION_INTERVAL = 1.0

EXIT_OK = 0
EXIT_FATAL = 1
EXIT_CONFIG = 2

logger = logging.getLogger(__name__)
logger.addHandler(logging.NullHandler())


def setup_logging(log_level: str, log_file: Optional[str]) -> None:
    """Configure the logging system.

    Console output goes to stderr: stdout is inherited by the managed process
    and carries its message channel.

    Args:
        log_level (str): The logging level (e.g., "DEBUG", "INFO").
        log_file (Optional[str]): Optional path to a log file, rotated at 10MB
            with 5 backups.

    Raises:
        ValueError: If the provided log_level is not a valid logging level.

    Example:
        >>> setup_logging("INFO", "/var/log/artifact-reloader.log")
    """
    numeric_level = getattr(logging, log_level.upper(), None)
    if not isinstance(numeric_level, int):
        raise ValueError(f"Invalid log level: {log_level}")

    formatter = logging.Formatter(LOG_FORMAT, datefmt=LOG_DATE_FORMAT)

    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setFormatter(formatter)
    handlers: List[logging.Handler] = [console_handler]

    if log_file:
        try:
            log_dir = os.path.dirname(log_file)
            if log_dir:
                os.makedirs(log_dir, exist_ok=True)
            file_handler = RotatingFileHandler(log_file, maxBytes=10 * 1024 * 1024, backupCount=5)
            file_handler.setFormatter(formatter)
            handlers.append(file_handler)
        except OSError as e:
            # Logging is not set up yet
            sys.stderr.write(f"Warning: Failed to setup log file '{log_file}': {e}\n")

    logging.basicConfig(level=numeric_level, handlers=handlers, force=True)


def _format_uptime(seconds: float) -> str:
    m, s = divmod(int(seconds), 60)
    h, m = divmod(m, 60)
    return f"{h:02d}:{m:02d}:{s:02d}"


def log_statistics(
    detector: Optional[ChangeDetector],
    coordinator: Optional[ReloadCoordinator],
    orchestrator: Optional[ExternalProcessOrchestrator],
) -> None:
    """Log one summary line of watcher, reload and process counters.

    Resource figures (max RSS) are included where the ``resource`` module is
    available (Unix).
    """
    parts: List[str] = [f"PID={os.getpid()}", f"Threads={threading.active_count()}"]

    if resource:
        try:
            max_rss = resource.getrusage(resource.RUSAGE_SELF).ru_maxrss
            # KB on Linux, bytes on macOS
            max_rss_mb = max_rss / (1024 * 1024) if sys.platform == "darwin" else max_rss / 1024
            parts.append(f"Max RSS={max_rss_mb:.2f}MB")
        except (OSError, ValueError) as e:
            logger.debug(f"Failed to get resource usage: {e}")

    if detector:
        stats = detector.get_statistics()
        parts.append(
            f"Notifications={stats['notifications']}, Checks={stats['evaluations']}, "
            f"Changes={stats['events_emitted']}, Unchanged={stats['unchanged']}"
        )
        if not stats["notifications_available"]:
            parts.append("Mode=polling")
        parts.append(f"Uptime={_format_uptime(stats['uptime'])}")

    if coordinator:
        stats = coordinator.get_statistics()
        parts.append(
            f"Reloads={stats['reloads_started']} (ok={stats['reloads_succeeded']}, "
            f"failed={stats['reloads_failed']}, follow-ups={stats['follow_ups']}), "
            f"Dropped={stats['events_dropped']}"
        )

    if orchestrator:
        for identity, stats in orchestrator.get_statistics().items():
            parts.append(
                f"{identity}={stats['state']} (starts={stats['starts']}, restarts={stats['restarts']}, "
                f"crashes={stats['crashes']})"
            )

    logger.info(f"Statistics: {', '.join(parts)}")


def build_parser() -> argparse.ArgumentParser:
    env_lines = "\n".join(f"  {env_var:<30} {key}" for env_var, key in ENV_MAP.items())
    parser = argparse.ArgumentParser(
        prog="artifact-reloader",
        description="Watch an artifact and restart the server that loads it whenever its content changes.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=(
            "Environment variables (overridden by flags):\n"
            f"{env_lines}\n\n"
            "Examples:\n"
            "  artifact-reloader -p ./build -f model.bin\n"
            "  artifact-reloader -p ./build -f model.bin -n my-server -i my-server:dev -v\n"
            "  artifact-reloader -p ./build -f model.bin -c 'python serve.py {artifact_path}'\n"
        ),
    )
    parser.add_argument("-p", "--path", dest="target_directory", default=None, help="Directory containing the artifact.")
    parser.add_argument("-f", "--file", dest="target_filename", default=None, help="Artifact file name to watch.")
    parser.add_argument(
        "-n", "--name", dest="process_name", default=None, help="Managed process (container) name. Default: artifact-server"
    )
    parser.add_argument("-i", "--image", dest="image", default=None, help="Container image. Default: artifact-server:latest")
    parser.add_argument(
        "-c", "--command", dest="command", default=None,
        help="Run this command instead of a container ({artifact_path}, {directory}, {filename} are substituted).",
    )
    parser.add_argument("-r", "--runtime", dest="runtime", default=None, help="Container runtime (podman or docker).")
    parser.add_argument(
        "-w", "--watch-interval", dest="poll_interval_s", type=float, default=None,
        help="Polling interval in seconds. Default: 2",
    )
    parser.add_argument(
        "--debounce-ms", dest="debounce_window_ms", type=int, default=None, help="Debounce window in ms. Default: 500"
    )
    parser.add_argument(
        "--grace-period", dest="grace_period_s", type=float, default=None,
        help="Seconds to wait for a graceful stop before killing. Default: 5",
    )
    parser.add_argument(
        "-v", "--verbose", dest="verbose", action="store_const", const=True, default=None, help="Enable verbose logging."
    )
    parser.add_argument("--log-file", dest="log_file", default=None, help="Path to a rotating log file.")
    parser.add_argument("--log-level", dest="log_level", default=None, help="DEBUG, INFO, WARNING or ERROR. Default: INFO")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    return parser


def build_launcher(config: Any) -> ProcessLauncher:
    """Return the launcher for the configured command or container image."""
    if config.command:
        return CommandLauncher(config.command, env={"RELOADER_VERBOSE": "true"} if config.verbose else None)
    return ContainerLauncher(config.runtime, config.image, mount_point=config.mount_point, verbose=config.verbose)


def main(argv: Optional[List[str]] = None) -> int:
    """Run the orchestrator until interrupted.

    Returns:
        int: The process exit status (see module docstring).

    Example:
        $ artifact-reloader -p ./build -f model.bin -n model-server -i model-server:latest
    """
    parser = build_parser()
    args = parser.parse_args(argv)

    # Bootstrap logging to capture config loading events
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format=LOG_FORMAT,
        datefmt=LOG_DATE_FORMAT,
        stream=sys.stderr,
        force=True,
    )

    cli_args: Dict[str, Any] = {k: v for k, v in vars(args).items() if v is not None}
    try:
        config = load_config(cli_args, require_runtime=True)
        setup_logging(config.log_level, config.log_file)
    except (ConfigurationError, ValueError) as e:
        sys.stderr.write(f"Error: {e}\n\n")
        parser.print_usage(sys.stderr)
        return EXIT_CONFIG

    logger.info(f"Starting artifact-reloader v{__version__} (PID: {os.getpid()})...")
    logger.debug(f"Configuration loaded: {config}")

    launcher = build_launcher(config)
    orchestrator = ExternalProcessOrchestrator(
        grace_period=config.grace_period_s,
        startup_timeout=config.startup_timeout_s,
        max_start_attempts=config.max_start_attempts,
        restart_backoff=config.restart_backoff_s,
    )
    orchestrator.register(
        ManagedProcess(config.process_name, launcher, config.target_directory, config.target_filename)
    )
    fingerprinter = ContentFingerprinter()
    coordinator = ReloadCoordinator(
        ProcessRestartReloader(orchestrator, config.process_name, settle_delay=config.settle_delay_s),
        lease_timeout=config.lease_timeout_s,
        fingerprint_source=fingerprinter.compute,
    )
    detector = ChangeDetector(
        config.target_directory,
        config.target_filename,
        on_change=coordinator.handle_change,
        debounce_seconds=config.debounce_seconds,
        poll_interval=config.poll_interval_s,
        fingerprinter=fingerprinter,
    )

    logger.info(f"Watching: {config.target_path}")
    logger.info(f"Managed process: {config.process_name} ({launcher.describe()})")

    stop_event = threading.Event()
    stats_timer: Optional[threading.Timer] = None
    cleaned_up = False

    def cleanup() -> None:
        """Stop timers, the detector and every managed process. Runs once."""
        nonlocal stats_timer, cleaned_up
        if cleaned_up:
            return
        cleaned_up = True
        if stats_timer:
            stats_timer.cancel()
            stats_timer = None
        try:
            detector.stop()
        except Exception as e:
            logger.error(f"Error stopping detector in cleanup: {e}")
        orchestrator.shutdown()
        log_statistics(detector, coordinator, orchestrator)

    atexit.register(cleanup)
    orchestrator.install_cleanup_hook()

    def signal_handler(sig: int, frame: Optional[FrameType]) -> None:
        sig_name = signal.Signals(sig).name
        logger.info(f"Received signal {sig_name}, shutting down...")
        stop_event.set()
        orchestrator.request_shutdown()

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    def run_statistics_log() -> None:
        nonlocal stats_timer
        if stop_event.is_set():
            return
        try:
            log_statistics(detector, coordinator, orchestrator)
        except Exception as e:
            logger.error(f"Error logging statistics: {e}")
        finally:
            if not stop_event.is_set():
                stats_timer = threading.Timer(STATISTICS_INTERVAL, run_statistics_log)
                stats_timer.daemon = True
                stats_timer.start()

    exit_code = EXIT_OK
    started = time.monotonic()
    try:
        detector.start()

        stats_timer = threading.Timer(STATISTICS_INTERVAL, run_statistics_log)
        stats_timer.daemon = True
        stats_timer.start()

        exit_code = orchestrator.run(stop_event, poll_interval=SUPERVISION_INTERVAL)
    except WatchError as e:
        logger.critical(f"Cannot watch artifact: {e}")
        exit_code = EXIT_FATAL
    except KeyboardInterrupt:
        logger.info("KeyboardInterrupt received, stopping...")
    except Exception as e:
        logger.critical(f"Fatal error: {e}", exc_info=True)
        exit_code = EXIT_FATAL
    finally:
        cleanup()
        atexit.unregister(cleanup)
        orchestrator.remove_cleanup_hook()

    logger.info(f"artifact-reloader exiting with status {exit_code} after {_format_uptime(time.monotonic() - started)}")
    return exit_code


if __name__ == "__main__":
    sys.exit(main())
