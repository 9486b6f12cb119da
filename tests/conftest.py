"""Shared test fixtures for the PAR2Protect test suite."""

import os
import sys
import shutil
import tempfile
from typing import Callable, Dict, List, Optional, Union

import pytest

# Add project root to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from core.config import ConfigManager
from core.database import Database
from core.process_runner import ProcessResult, ProcessRunner, RunningProcess


# ============================================================================
# Fake subprocess runner
# ============================================================================

FAKE_PID = 4242

DAMAGED_OUTPUT = """\
Verifying source files:

Target: "a.txt" - found.
Target: "b.txt" - damaged. Found 3 of 4 data blocks.
Target: "c.txt" - missing.

Repair is required.
1 file(s) exist but are damaged.
1 file(s) are missing.
Repair is possible.
"""

Response = Union[ProcessResult, Callable[[List[str], Optional[str]], ProcessResult]]


def _verb(command: List[str]) -> str:
    for verb in ("create", "verify", "repair"):
        if verb in command:
            return verb
    return ""


def _archive_path(command: List[str]) -> Optional[str]:
    for arg in command:
        if arg.startswith("-a"):
            return arg[2:]
    return None


class FakeRunner(ProcessRunner):
    """ProcessRunner that never spawns par2.

    `create` writes an index and a volume file next to the -a archive and
    exits 0; `verify` reports every target found; `repair` reports
    completion. Tests override per verb through `responses`.
    """

    def __init__(self, temp_dir: str):
        super().__init__(temp_dir=temp_dir, grace_period=0.2, poll_interval=0.01)
        self.calls: List[Dict] = []
        self.responses: Dict[str, Response] = {}
        self.processes: List[RunningProcess] = []
        self.cancelled_pids: List[int] = []

    def run(self, command, operation_id=None, cwd=None, timeout=None, on_start=None) -> ProcessResult:
        command = list(command)
        verb = _verb(command)
        self.calls.append({"verb": verb, "command": command, "cwd": cwd,
                           "operation_id": operation_id, "timeout": timeout})
        if on_start is not None:
            on_start(FAKE_PID)

        response = self.responses.get(verb)
        if callable(response):
            return response(command, cwd)
        if response is not None:
            return response

        if verb == "create":
            archive = _archive_path(command)
            base = archive[:-len(".par2")]
            with open(archive, "wb") as f:
                f.write(b"PAR2\0PKT" * 8)
            with open(base + ".vol00+01.par2", "wb") as f:
                f.write(b"PAR2\0PKT" * 32)
            return ProcessResult(exit_code=0, stdout="Done", pid=FAKE_PID, duration=0.01)
        if verb == "verify":
            return ProcessResult(exit_code=0, stdout='Target: "file.txt" - found.\nAll files are correct, repair is not required.',
                                 pid=FAKE_PID, duration=0.01)
        if verb == "repair":
            return ProcessResult(exit_code=0, stdout="Repair complete.", pid=FAKE_PID, duration=0.01)
        return ProcessResult(exit_code=3, stderr="unknown command", pid=FAKE_PID)

    def list_processes(self) -> List[RunningProcess]:
        return list(self.processes)

    def cancel(self, pid, grace_period=None) -> bool:
        self.cancelled_pids.append(pid)
        return any(p.pid == pid for p in self.processes)


# ============================================================================
# Filesystem fixtures
# ============================================================================

@pytest.fixture
def temp_dir():
    """Provide a temporary directory, cleaned up after test."""
    d = tempfile.mkdtemp(prefix="par2protect_test_")
    yield d
    shutil.rmtree(d, ignore_errors=True)


@pytest.fixture
def data_dir(temp_dir):
    """Provide a directory of user data to protect."""
    d = os.path.join(temp_dir, "data")
    os.makedirs(d)
    return d


def create_test_file(path, content="test content", size_bytes=None):
    """Create a test file with given content or specific size.

    Args:
        path: Full path to create file at.
        content: Text content to write (ignored if size_bytes set).
        size_bytes: If set, create file of exactly this size.

    Returns:
        The path of the created file.
    """
    os.makedirs(os.path.dirname(path), exist_ok=True)
    if size_bytes is not None:
        with open(path, 'wb') as f:
            f.write(b'\x00' * size_bytes)
    else:
        with open(path, 'w') as f:
            f.write(content)
    return path


# ============================================================================
# Config and storage fixtures
# ============================================================================

@pytest.fixture
def config(temp_dir):
    """Provide a ConfigManager pointing every path into the temp directory."""
    cfg = ConfigManager(os.path.join(temp_dir, "settings.json"))
    cfg.load_dict({
        "database": {
            "path": os.path.join(temp_dir, "db", "par2protect.db"),
            "retry_delay": 0.01,
        },
        "logging": {"logs_folder": os.path.join(temp_dir, "logs")},
        "protection": {
            "temp_dir": os.path.join(temp_dir, "scratch"),
            "par2_binary": "par2",
            "ionice_binary": "ionice",
        },
        "resource_limits": {"io_priority": "none"},
        "queue": {"poll_interval": 0.05},
    })
    return cfg


@pytest.fixture
def db(config):
    """Provide an initialized Database."""
    database = Database.from_config(config.database)
    database.initialize()
    yield database
    database.close()


@pytest.fixture
def fake_runner(temp_dir):
    return FakeRunner(os.path.join(temp_dir, "scratch"))


@pytest.fixture
def engine(config, fake_runner):
    """Provide a fully wired engine backed by the fake runner."""
    from services.protection_service import build_engine
    eng = build_engine(config, runner=fake_runner)
    yield eng
    eng.close()
