"""
System utilities for PAR2Protect.
Handles the daemon instance lock and host resource readings.
"""

import os
import atexit
import fcntl
import logging
from typing import Dict, Optional, Tuple


class SingleInstanceLock:
    """
    Prevent multiple PAR2Protect daemons from running simultaneously.

    Uses flock to ensure only one instance can run at a time.
    The lock is automatically released when the process exits or crashes.
    """

    def __init__(self, lock_file: str):
        self.lock_file = lock_file
        self.lock_fd = None
        self.locked = False

    def acquire(self) -> bool:
        """
        Acquire the lock.

        Returns:
            True if lock acquired successfully, False if another instance is running.
        """
        try:
            lock_dir = os.path.dirname(self.lock_file)
            if lock_dir:
                os.makedirs(lock_dir, exist_ok=True)
            self.lock_fd = open(self.lock_file, 'w')
            fcntl.flock(self.lock_fd, fcntl.LOCK_EX | fcntl.LOCK_NB)

            # Write PID for debugging
            self.lock_fd.write(str(os.getpid()))
            self.lock_fd.flush()
            self.locked = True

            atexit.register(self.release)
            return True

        except (IOError, OSError):
            # Lock is held by another process
            if self.lock_fd:
                self.lock_fd.close()
                self.lock_fd = None
            return False

    def release(self):
        """Release the lock and clean up."""
        if not self.locked:
            return

        try:
            if self.lock_fd:
                fcntl.flock(self.lock_fd, fcntl.LOCK_UN)
                self.lock_fd.close()
                self.lock_fd = None

            if os.path.exists(self.lock_file):
                os.remove(self.lock_file)

            self.locked = False
        except OSError as e:
            logging.debug(f"Could not clean up lock file {self.lock_file}: {e}")


def convert_bytes_to_readable_size(size_bytes: int) -> Tuple[float, str]:
    """Convert bytes to human-readable format."""
    if size_bytes >= (1024 ** 4):
        return size_bytes / (1024 ** 4), 'TB'
    if size_bytes >= (1024 ** 3):
        return size_bytes / (1024 ** 3), 'GB'
    if size_bytes >= (1024 ** 2):
        return size_bytes / (1024 ** 2), 'MB'
    return size_bytes / 1024, 'KB'


def format_bytes(size_bytes: int) -> str:
    size, unit = convert_bytes_to_readable_size(size_bytes)
    return f"{size:.2f} {unit}"


def read_meminfo(path: str = "/proc/meminfo") -> Dict[str, int]:
    """Return MemTotal/MemAvailable in bytes, or an empty dict off Linux."""
    values = {}
    try:
        with open(path, 'r') as f:
            for line in f:
                key, _, rest = line.partition(':')
                if key in ('MemTotal', 'MemAvailable'):
                    # Reported in kB
                    values[key] = int(rest.split()[0]) * 1024
    except (OSError, ValueError, IndexError) as e:
        logging.debug(f"Could not read {path}: {e}")
        return {}
    return values


def get_system_resources(disk_path: Optional[str] = None) -> Dict:
    """Host load, CPU count, memory and optional disk usage."""
    resources: Dict = {"cpu_count": os.cpu_count() or 1}

    try:
        load1, load5, load15 = os.getloadavg()
        resources["load_average"] = [round(load1, 2), round(load5, 2), round(load15, 2)]
        resources["cpu_usage_percent"] = round(min(100.0, load1 / resources["cpu_count"] * 100), 1)
    except OSError:
        resources["load_average"] = None
        resources["cpu_usage_percent"] = None

    meminfo = read_meminfo()
    if 'MemTotal' in meminfo:
        total = meminfo['MemTotal']
        available = meminfo.get('MemAvailable', 0)
        resources["memory_total"] = total
        resources["memory_available"] = available
        resources["memory_usage_percent"] = round((total - available) / total * 100, 1) if total else None
    else:
        resources["memory_total"] = None
        resources["memory_available"] = None
        resources["memory_usage_percent"] = None

    if disk_path and os.path.exists(disk_path):
        stat = os.statvfs(disk_path)
        total = stat.f_blocks * stat.f_frsize
        free = stat.f_bavail * stat.f_frsize
        resources["disk"] = {
            "path": disk_path,
            "total": total,
            "free": free,
            "used_percent": round((total - free) / total * 100, 1) if total else None,
        }

    return resources
