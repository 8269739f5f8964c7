"""Data model shared by the watcher and the reload strategies."""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

__all__ = ["WatchTarget", "ChangeEvent"]


@dataclass
class WatchTarget:
    """One monitored artifact.

    Attributes:
        directory (Path): Directory being observed.
        filename (str): Name of the artifact inside ``directory``.
        extension (str): Suffix filter for raw notifications (e.g. ``.dll``).
        fingerprint (Optional[str]): Last confirmed content fingerprint.
        last_change_time (Optional[float]): Wall-clock time of the last confirmed change.
    """

    directory: Path
    filename: str
    extension: str = ""
    fingerprint: Optional[str] = None
    last_change_time: Optional[float] = None

    def __post_init__(self) -> None:
        self.directory = Path(self.directory).absolute()
        if not self.extension:
            self.extension = Path(self.filename).suffix

    @property
    def path(self) -> Path:
        """Absolute path of the artifact."""
        return self.directory / self.filename

    def matches(self, candidate: str) -> bool:
        """Return True if ``candidate`` names this target's artifact."""
        return Path(candidate).absolute() == self.path


@dataclass(frozen=True)
class ChangeEvent:
    """A confirmed content change. Produced once, consumed once."""

    path: Path
    fingerprint: str
    previous_fingerprint: Optional[str]
    timestamp: float = field(default_factory=time.time)
