"""Exception hierarchy for artifact-reloader.

Only configuration errors and an exhausted restart budget are meant to reach
the command line. Everything else is raised and absorbed inside the component
that owns the failure.
"""

from __future__ import annotations

from typing import Optional

__all__ = [
    "ReloaderError",
    "ConfigurationError",
    "WatchError",
    "ProcessStartError",
    "RestartBudgetExhausted",
]


class ReloaderError(Exception):
    """Base class for all artifact-reloader errors."""


class ConfigurationError(ReloaderError, ValueError):
    """Raised when configuration values are missing or invalid.

    Subclasses ``ValueError`` so callers that validate with ``except ValueError``
    keep working.
    """

    def __init__(self, message: str, key: Optional[str] = None) -> None:
        super().__init__(message)
        self.key = key


class WatchError(ReloaderError):
    """Raised when the watch directory cannot be observed at all."""


class ProcessStartError(ReloaderError):
    """A single start attempt of a managed process failed.

    Attributes:
        identity (str): Identity of the managed process.
        returncode (Optional[int]): Exit status if the process exited during startup.
    """

    def __init__(self, identity: str, message: str, returncode: Optional[int] = None) -> None:
        super().__init__(f"{identity}: {message}")
        self.identity = identity
        self.returncode = returncode


class RestartBudgetExhausted(ReloaderError):
    """The bounded retry budget for a managed process ran out."""

    def __init__(self, identity: str, attempts: int) -> None:
        super().__init__(f"{identity}: gave up after {attempts} start attempts")
        self.identity = identity
        self.attempts = attempts
