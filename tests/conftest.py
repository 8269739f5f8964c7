import os
from pathlib import Path
import tempfile
import time
from typing import Callable, Generator, List
from unittest.mock import MagicMock, patch

import pytest

from artifact_reloader.models import ChangeEvent


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """Fixture for a temporary directory using tempfile.TemporaryDirectory.

    Ensures automatic cleanup after test execution.
    """
    with tempfile.TemporaryDirectory() as tmpdirname:
        yield Path(tmpdirname).resolve()


@pytest.fixture
def artifact_file(temp_dir: Path) -> Path:
    """Fixture for a populated artifact file."""
    f = temp_dir / "model.bin"
    f.write_bytes(b"v1")
    return f


@pytest.fixture
def mock_observer() -> Generator[MagicMock, None, None]:
    """Fixture for mocking the watchdog Observer."""
    with patch("artifact_reloader.watcher.Observer") as mock:
        mock.return_value.is_alive.return_value = True
        yield mock


@pytest.fixture
def mock_sleep(monkeypatch: pytest.MonkeyPatch) -> MagicMock:
    """Mock time.sleep to skip delays."""
    mock = MagicMock()
    monkeypatch.setattr("time.sleep", mock)
    return mock


@pytest.fixture
def mock_signal() -> Generator[MagicMock, None, None]:
    """Fixture for mocking signal.signal."""
    with patch("signal.signal") as mock:
        yield mock


@pytest.fixture
def clean_env(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    """Remove RELOADER_* variables and point config lookup at empty locations."""
    for key in list(os.environ):
        if key.startswith("RELOADER_") or key == "container":
            monkeypatch.delenv(key, raising=False)
    empty = tmp_path / "empty_config"
    empty.mkdir(exist_ok=True)
    monkeypatch.setenv("XDG_CONFIG_HOME", str(empty))
    monkeypatch.chdir(empty)


@pytest.fixture
def events() -> List[ChangeEvent]:
    """Collector list for emitted change events."""
    return []


@pytest.fixture
def wait_for() -> Callable[..., bool]:
    """Poll a predicate until it holds or the timeout expires."""
    def _wait(predicate: Callable[[], bool], timeout: float = 5.0, interval: float = 0.02) -> bool:
        deadline = time.monotonic() + timeout
        while time.monotonic() < deadline:
            if predicate():
                return True
            time.sleep(interval)
        return predicate()
    return _wait

