"""
Resource limit translation for par2 invocations.
Turns configured CPU, memory, hashing and I/O priority settings into
command-line arguments and an optional ionice wrapper.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)

# ionice best-effort class (-c 2) priority levels; lower is more urgent
IO_PRIORITY_LEVELS = {
    "high": 0,
    "normal": 4,
    "low": 7,
}
DEFAULT_IO_LEVEL = 4
DEFAULT_IONICE_BINARY = "/usr/bin/ionice"


@dataclass
class ResourceLimits:
    """Argument fragments derived from resource settings.

    Attributes:
        prefix: Wrapper command prepended to the argv (e.g. ionice).
        args: par2 flags appended after the verb.
    """
    prefix: List[str] = field(default_factory=list)
    args: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {"prefix": list(self.prefix), "args": list(self.args)}


def _positive_number(value: Any) -> Optional[int]:
    """Return value as a positive int, or None when it isn't one."""
    if isinstance(value, bool) or value is None:
        return None
    if isinstance(value, str):
        value = value.strip()
        if not value.isdigit():
            return None
        value = int(value)
    if isinstance(value, float):
        if not value.is_integer():
            return None
        value = int(value)
    if isinstance(value, int) and value > 0:
        return value
    return None


def _get(settings: Any, key: str) -> Any:
    if isinstance(settings, dict):
        return settings.get(key)
    return getattr(settings, key, None)


def build_resource_limits(settings: Any, overrides: Optional[Dict[str, Any]] = None,
                          ionice_binary: str = DEFAULT_IONICE_BINARY) -> ResourceLimits:
    """Build resource-limit arguments from settings.

    Args:
        settings: A ResourceLimitConfig or a dict with the same keys.
        overrides: Per-call values taking precedence over settings.
        ionice_binary: Path of the ionice executable used for the wrapper.

    Returns:
        ResourceLimits with the wrapper prefix and par2 flags.
    """
    merged = {
        key: _get(settings, key)
        for key in ("max_cpu_usage", "max_memory_usage", "parallel_file_hashing", "io_priority")
    }
    if overrides:
        merged.update({k: v for k, v in overrides.items() if k in merged})

    limits = ResourceLimits()

    threads = _positive_number(merged["max_cpu_usage"])
    if threads is not None:
        limits.args.append(f"-t{threads}")

    memory = _positive_number(merged["max_memory_usage"])
    if memory is not None:
        limits.args.append(f"-m{memory}")

    hashing = merged["parallel_file_hashing"]
    if hashing is True:
        limits.args.append("-T")
    else:
        hashing_count = _positive_number(hashing)
        if hashing_count is not None:
            limits.args.append(f"-T{hashing_count}")

    io_priority = merged["io_priority"]
    if io_priority is not None and str(io_priority).strip() not in ("", "none"):
        name = str(io_priority).strip().lower()
        if name in IO_PRIORITY_LEVELS:
            level = IO_PRIORITY_LEVELS[name]
        else:
            logger.warning(f"Invalid io_priority '{io_priority}', using normal priority")
            level = DEFAULT_IO_LEVEL
        limits.prefix = [ionice_binary, "-c", "2", "-n", str(level)]

    return limits


def apply_resource_limits(base_command: List[str], limits: ResourceLimits) -> List[str]:
    """Compose the final argv: wrapper prefix, binary and verb, then limit flags.

    base_command is expected to start with the par2 binary and its verb
    (e.g. ``["par2", "create", ...]``); limit flags are inserted directly
    after the verb so they precede any ``--`` file separator.
    """
    if len(base_command) < 2:
        return list(limits.prefix) + list(base_command) + list(limits.args)
    return list(limits.prefix) + base_command[:2] + list(limits.args) + base_command[2:]
