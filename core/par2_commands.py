"""
par2cmdline command construction and output interpretation.
Builders return argv lists; parsers classify exit codes and captured output.
"""

import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional, Sequence

DEFAULT_PAR2_BINARY = "/usr/local/bin/par2"

# Process command-line signature used to recognise par2 invocations
PAR2_SIGNATURE = "par2"
PAR2_VERBS = ("create", "verify", "repair", "c", "v", "r")

# par2cmdline exit codes
EXIT_SUCCESS = 0
EXIT_REPAIR_POSSIBLE = 1
EXIT_REPAIR_NOT_POSSIBLE = 2

_TARGET_RE = re.compile(r'^Target:\s+"(?P<name>.+)"\s+-\s+(?P<state>found|damaged|missing)\b', re.MULTILINE)
_PROGRESS_RE = re.compile(r'(\d{1,3}(?:\.\d+)?)%')


class VerifyOutcome(str, Enum):
    """Result of a par2 verify run."""
    VERIFIED = "VERIFIED"
    DAMAGED = "DAMAGED"
    MISSING = "MISSING"
    ERROR = "ERROR"


class RepairOutcome(str, Enum):
    """Result of a par2 repair run."""
    REPAIRED = "REPAIRED"
    NOT_POSSIBLE = "NOT_POSSIBLE"
    NOT_POSSIBLE_MISSING = "NOT_POSSIBLE_MISSING"
    ERROR = "ERROR"


@dataclass
class VerifyCounts:
    """Per-target tallies parsed from verify output."""
    found: int = 0
    damaged: int = 0
    missing: int = 0
    damaged_files: List[str] = field(default_factory=list)
    missing_files: List[str] = field(default_factory=list)

    @property
    def total(self) -> int:
        return self.found + self.damaged + self.missing

    def to_dict(self) -> Dict:
        return {
            "found": self.found,
            "damaged": self.damaged,
            "missing": self.missing,
            "damaged_files": list(self.damaged_files),
            "missing_files": list(self.missing_files),
        }


def build_create_command(parity_file: str, base_path: str, source_files: Sequence[str],
                         redundancy: int, par2_binary: str = DEFAULT_PAR2_BINARY,
                         quiet: bool = False) -> List[str]:
    """Build `par2 create` for the given sources.

    Source files must come after the options and the archive name, behind
    a `--` separator so names starting with a dash are not read as flags.
    """
    if not source_files:
        raise ValueError("At least one source file is required for par2 create")
    if not 1 <= int(redundancy) <= 100:
        raise ValueError(f"Redundancy must be between 1 and 100, got {redundancy}")
    command = [par2_binary, "create"]
    if quiet:
        command.append("-q")
    command.extend([f"-r{int(redundancy)}", f"-B{base_path}", f"-a{parity_file}", "--"])
    command.extend(source_files)
    return command


def build_verify_command(parity_file: str, base_path: str,
                         par2_binary: str = DEFAULT_PAR2_BINARY) -> List[str]:
    """Build `par2 verify`. Output is kept verbose so target lines can be counted."""
    return [par2_binary, "verify", f"-B{base_path}", parity_file]


def build_repair_command(parity_file: str, base_path: str,
                         par2_binary: str = DEFAULT_PAR2_BINARY) -> List[str]:
    """Build `par2 repair`."""
    return [par2_binary, "repair", f"-B{base_path}", parity_file]


def parse_verify_counts(output: str) -> VerifyCounts:
    """Count found/damaged/missing targets in par2 verify output."""
    counts = VerifyCounts()
    for match in _TARGET_RE.finditer(output or ""):
        state = match.group("state")
        name = match.group("name")
        if state == "found":
            counts.found += 1
        elif state == "damaged":
            counts.damaged += 1
            counts.damaged_files.append(name)
        else:
            counts.missing += 1
            counts.missing_files.append(name)
    return counts


def classify_verify(exit_code: int, output: str) -> VerifyOutcome:
    """Map a verify exit code and output to an outcome.

    Exit 0 is authoritative. Otherwise target counts decide, falling back
    to keyword matching for output without target lines.
    """
    if exit_code == EXIT_SUCCESS:
        return VerifyOutcome.VERIFIED
    counts = parse_verify_counts(output)
    if counts.damaged:
        return VerifyOutcome.DAMAGED
    if counts.missing:
        return VerifyOutcome.MISSING
    lowered = (output or "").lower()
    if "damaged" in lowered:
        return VerifyOutcome.DAMAGED
    if "missing" in lowered:
        return VerifyOutcome.MISSING
    return VerifyOutcome.ERROR


def classify_repair(exit_code: int, output: str) -> RepairOutcome:
    """Map a repair exit code and output to an outcome."""
    lowered = (output or "").lower()
    if exit_code == EXIT_SUCCESS or "repair complete" in lowered:
        return RepairOutcome.REPAIRED
    if "repair is not possible" in lowered or "repair not possible" in lowered:
        if "too many" in lowered or "not enough recovery blocks" in lowered:
            return RepairOutcome.NOT_POSSIBLE_MISSING
        return RepairOutcome.NOT_POSSIBLE
    return RepairOutcome.ERROR


def files_already_exist(output: str) -> bool:
    """True when `par2 create` refused because parity files already exist."""
    lowered = (output or "").lower()
    return "already exist" in lowered


def parse_progress(output: str) -> Optional[float]:
    """Return the last percentage printed in par2 output, if any."""
    if not output:
        return None
    # par2 redraws progress with carriage returns
    matches = _PROGRESS_RE.findall(output.replace("\r", "\n"))
    if not matches:
        return None
    value = float(matches[-1])
    return min(value, 100.0)


def is_par2_command_line(command_line: str) -> bool:
    """True when a process command line looks like a par2 invocation."""
    if not command_line:
        return False
    parts = command_line.split()
    for index, part in enumerate(parts):
        executable = part.rsplit("/", 1)[-1]
        if executable in ("par2create", "par2verify", "par2repair"):
            return True
        if executable in (PAR2_SIGNATURE, "par2cmdline") and index + 1 < len(parts):
            if parts[index + 1] in PAR2_VERBS:
                return True
    return False
