"""
Subprocess runner for par2 invocations.
Runs commands with output captured to scratch files, tracks child pids,
and provides signal-based cancellation and process discovery.
"""

import logging
import os
import signal
import subprocess
import threading
import time
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Dict, List, Optional, Sequence, Tuple

from core.errors import ErrorKind, Par2ProtectError
from core.operation_queue import is_valid_operation_id
from core.par2_commands import is_par2_command_line, parse_progress

logger = logging.getLogger(__name__)

SCRATCH_PREFIX = "par2protect_"
# Set in the environment of every par2 run so a restarted daemon can match processes to operations
OPERATION_ENV_VAR = "PAR2PROTECT_OPERATION_ID"


@dataclass
class ProcessResult:
    """Outcome of one subprocess invocation."""
    exit_code: int
    stdout: str = ""
    stderr: str = ""
    pid: Optional[int] = None
    timed_out: bool = False
    duration: float = 0.0

    @property
    def output(self) -> str:
        """Combined stdout and stderr, as par2 splits messages across both."""
        if self.stdout and self.stderr:
            return f"{self.stdout}\n{self.stderr}"
        return self.stdout or self.stderr

    def to_dict(self) -> Dict:
        return {
            "exit_code": self.exit_code,
            "pid": self.pid,
            "timed_out": self.timed_out,
            "duration": round(self.duration, 3),
        }


@dataclass
class RunningProcess:
    """A live par2 process as seen in the process table."""
    pid: int
    command_line: str
    cpu: float = 0.0
    memory: float = 0.0
    operation_id: Optional[str] = None
    progress: Optional[float] = None

    def to_dict(self) -> Dict:
        return {
            "pid": self.pid,
            "operation_id": self.operation_id,
            "command_line": self.command_line,
            "cpu": self.cpu,
            "memory": self.memory,
            "progress": self.progress,
        }


class ProcessRunner:
    """Runs par2 commands and manages their processes.

    Each run streams stdout/stderr to ``<temp_dir>/par2protect_<id>.out``
    and ``.err`` so progress can be read while the process is running.
    """

    def __init__(self, temp_dir: str = "/tmp/par2protect", grace_period: float = 5.0,
                 poll_interval: float = 0.1):
        self.temp_dir = Path(temp_dir)
        self.grace_period = grace_period
        self.poll_interval = poll_interval
        self._lock = threading.Lock()
        self._children: Dict[int, subprocess.Popen] = {}
        self._operation_pids: Dict[str, int] = {}

    # ------------------------------------------------------------------
    # Running
    # ------------------------------------------------------------------

    def scratch_paths(self, run_id: str) -> Tuple[Path, Path]:
        """Return the (stdout, stderr) scratch file paths for a run."""
        base = self.temp_dir / f"{SCRATCH_PREFIX}{run_id}"
        return base.with_suffix(".out"), base.with_suffix(".err")

    def run(self, command: Sequence[str], operation_id: Optional[str] = None,
            cwd: Optional[str] = None, timeout: Optional[float] = None,
            on_start: Optional[Callable[[int], None]] = None) -> ProcessResult:
        """Run a command to completion and capture its output.

        Args:
            command: argv list.
            operation_id: Operation driving the run; names the scratch files
                and is exported to the child as PAR2PROTECT_OPERATION_ID.
            cwd: Working directory for the process.
            timeout: Seconds before the process is cancelled (None/0 = unbounded).
            on_start: Called with the pid once the process has started.

        Raises:
            Par2ProtectError: EXECUTION when the command cannot be started.
        """
        run_id = operation_id or uuid.uuid4().hex
        self.temp_dir.mkdir(parents=True, exist_ok=True)
        out_path, err_path = self.scratch_paths(run_id)
        started = time.monotonic()
        timed_out = False
        env = dict(os.environ)
        if operation_id:
            env[OPERATION_ENV_VAR] = operation_id

        try:
            with open(out_path, "w", encoding="utf-8") as out_file, \
                    open(err_path, "w", encoding="utf-8") as err_file:
                try:
                    proc = subprocess.Popen(
                        list(command),
                        stdout=out_file,
                        stderr=err_file,
                        stdin=subprocess.DEVNULL,
                        cwd=cwd,
                        env=env,
                    )
                except (OSError, subprocess.SubprocessError) as e:
                    raise Par2ProtectError(
                        ErrorKind.EXECUTION,
                        f"Failed to start {command[0]}: {e}",
                        {"command": list(command), "cwd": cwd},
                    )

                self._register(proc, operation_id)
                logger.debug(f"Started pid {proc.pid}: {' '.join(command)}")
                try:
                    if on_start is not None:
                        on_start(proc.pid)
                    try:
                        proc.wait(timeout=timeout or None)
                    except subprocess.TimeoutExpired:
                        timed_out = True
                        logger.warning(f"Process {proc.pid} exceeded {timeout}s, cancelling")
                        self.cancel(proc.pid)
                        proc.wait()
                finally:
                    self._unregister(proc.pid, operation_id)

            stdout = self._read_text(out_path)
            stderr = self._read_text(err_path)
        finally:
            self._remove_files(out_path, err_path)

        return ProcessResult(
            exit_code=proc.returncode,
            stdout=stdout,
            stderr=stderr,
            pid=proc.pid,
            timed_out=timed_out,
            duration=time.monotonic() - started,
        )

    def _register(self, proc: subprocess.Popen, operation_id: Optional[str]) -> None:
        with self._lock:
            self._children[proc.pid] = proc
            if operation_id:
                self._operation_pids[operation_id] = proc.pid

    def _unregister(self, pid: int, operation_id: Optional[str]) -> None:
        with self._lock:
            self._children.pop(pid, None)
            if operation_id and self._operation_pids.get(operation_id) == pid:
                del self._operation_pids[operation_id]

    def pid_for(self, operation_id: str) -> Optional[int]:
        """Return the pid of this runner's live child for an operation."""
        with self._lock:
            return self._operation_pids.get(operation_id)

    @property
    def child_pids(self) -> List[int]:
        with self._lock:
            return list(self._children)

    # ------------------------------------------------------------------
    # Liveness and cancellation
    # ------------------------------------------------------------------

    def is_alive(self, pid: Optional[int]) -> bool:
        """Check whether a process is alive.

        Own children are polled directly; other pids are checked with
        signal 0 and treated as dead when they are zombies.
        """
        if not pid or pid <= 0:
            return False
        with self._lock:
            proc = self._children.get(pid)
        if proc is not None:
            return proc.poll() is None
        try:
            os.kill(pid, 0)
        except ProcessLookupError:
            return False
        except PermissionError:
            # Exists but owned by someone else
            return not self._is_zombie(pid)
        return not self._is_zombie(pid)

    @staticmethod
    def _is_zombie(pid: int) -> bool:
        try:
            with open(f"/proc/{pid}/stat", "r") as f:
                stat = f.read()
        except OSError:
            return False
        # State is the first field after the parenthesised command name
        tail = stat.rsplit(")", 1)[-1].split()
        return bool(tail) and tail[0] in ("Z", "X")

    def cancel(self, pid: int, grace_period: Optional[float] = None) -> bool:
        """Terminate a process: SIGTERM, wait, then SIGKILL.

        Returns True when a live process was signalled. A process that
        survives SIGKILL is logged, never raised.
        """
        if not self.is_alive(pid):
            return False
        grace = self.grace_period if grace_period is None else grace_period

        try:
            os.kill(pid, signal.SIGTERM)
        except ProcessLookupError:
            return False
        except PermissionError as e:
            logger.warning(f"Not permitted to signal pid {pid}: {e}")
            return False
        logger.info(f"Sent SIGTERM to pid {pid}")

        deadline = time.monotonic() + grace
        while time.monotonic() < deadline:
            if not self.is_alive(pid):
                return True
            time.sleep(self.poll_interval)

        try:
            os.kill(pid, signal.SIGKILL)
            logger.info(f"Sent SIGKILL to pid {pid}")
        except ProcessLookupError:
            return True

        time.sleep(0.1)
        if self.is_alive(pid):
            logger.warning(f"Process {pid} still alive after SIGKILL")
        return True

    # ------------------------------------------------------------------
    # Discovery
    # ------------------------------------------------------------------

    def list_processes(self) -> List[RunningProcess]:
        """List live par2 processes from the process table."""
        try:
            processes = self._list_from_ps()
        except (subprocess.SubprocessError, FileNotFoundError, OSError) as e:
            logger.debug(f"ps unavailable ({e}), scanning /proc")
            processes = self._list_from_proc()
        own_pid = os.getpid()
        matched = [p for p in processes if p.pid != own_pid and is_par2_command_line(p.command_line)]
        for process in matched:
            process.operation_id = operation_marker(process.pid)
        return matched

    def _list_from_ps(self) -> List[RunningProcess]:
        result = subprocess.run(
            ["ps", "-ww", "-eo", "pid=,pcpu=,pmem=,args="],
            capture_output=True,
            text=True,
            timeout=10,
        )
        if result.returncode != 0:
            raise subprocess.SubprocessError(result.stderr.strip() or f"ps exited {result.returncode}")
        return parse_ps_output(result.stdout)

    def _list_from_proc(self) -> List[RunningProcess]:
        processes = []
        proc_root = Path("/proc")
        if not proc_root.is_dir():
            return processes
        for entry in proc_root.iterdir():
            if not entry.name.isdigit():
                continue
            try:
                raw = (entry / "cmdline").read_bytes()
            except OSError:
                continue
            command_line = raw.replace(b"\0", b" ").decode("utf-8", "replace").strip()
            if command_line:
                processes.append(_running_process(int(entry.name), command_line))
        return processes

    # ------------------------------------------------------------------
    # Scratch files
    # ------------------------------------------------------------------

    def read_progress(self, operation_id: str) -> Optional[float]:
        """Return the last percentage written to an operation's stdout."""
        out_path, _ = self.scratch_paths(operation_id)
        try:
            with open(out_path, "r", encoding="utf-8", errors="replace") as f:
                f.seek(0, os.SEEK_END)
                size = f.tell()
                f.seek(max(0, size - 4096))
                tail = f.read()
        except OSError:
            return None
        return parse_progress(tail)

    def cleanup_scratch(self, operation_id: str) -> int:
        """Remove scratch files belonging to one operation. Returns count removed."""
        return self._remove_files(*self.scratch_paths(operation_id))

    @staticmethod
    def _read_text(path: Path) -> str:
        try:
            return path.read_text(encoding="utf-8", errors="replace")
        except OSError:
            return ""

    @staticmethod
    def _remove_files(*paths: Path) -> int:
        removed = 0
        for path in paths:
            try:
                path.unlink()
                removed += 1
            except FileNotFoundError:
                pass
            except OSError as e:
                logger.warning(f"Could not remove scratch file {path}: {e}")
        return removed


def operation_marker(pid: int, proc_root: str = "/proc") -> Optional[str]:
    """Operation id exported to a process by ProcessRunner.run, if readable."""
    try:
        with open(os.path.join(proc_root, str(pid), "environ"), "rb") as f:
            raw = f.read()
    except OSError:
        return None
    prefix = OPERATION_ENV_VAR.encode() + b"="
    for entry in raw.split(b"\0"):
        if entry.startswith(prefix):
            value = entry[len(prefix):].decode("ascii", "replace")
            return value if is_valid_operation_id(value) else None
    return None


def _running_process(pid: int, command_line: str, cpu: float = 0.0, memory: float = 0.0) -> RunningProcess:
    return RunningProcess(pid=pid, command_line=command_line, cpu=cpu, memory=memory)


def parse_ps_output(output: str) -> List[RunningProcess]:
    """Parse `ps -ww -eo pid=,pcpu=,pmem=,args=` output."""
    processes = []
    for line in output.splitlines():
        parts = line.strip().split(None, 3)
        if len(parts) < 4:
            continue
        try:
            pid = int(parts[0])
            cpu = float(parts[1])
            memory = float(parts[2])
        except ValueError:
            continue
        processes.append(_running_process(pid, parts[3], cpu, memory))
    return processes
