"""
Parity directory layout and safe removal.
Directories keep parity in ``<dir>/.parity``; files keep it in the
``.parity`` directory next to them.
"""

import glob
import logging
import os
from typing import Iterable, List, Optional, Tuple

from core.catalog import ItemMode, PARITY_DIR_NAME
from core.errors import ErrorKind, Par2ProtectError, validation_error

logger = logging.getLogger(__name__)

# Scratch directory inside .parity for a replacement parity set
STAGING_PREFIX = ".staging_"


def parity_dir_for(path: str, mode: ItemMode) -> str:
    """The .parity directory that holds parity for a path."""
    path = os.path.normpath(path)
    if ItemMode(mode) == ItemMode.DIRECTORY:
        return os.path.join(path, PARITY_DIR_NAME)
    return os.path.join(os.path.dirname(path), PARITY_DIR_NAME)


def base_path_for(path: str, mode: ItemMode) -> str:
    """The par2 -B base path: the directory itself, or a file's parent."""
    path = os.path.normpath(path)
    if ItemMode(mode) == ItemMode.DIRECTORY:
        return path
    return os.path.dirname(path)


def parity_name_for(path: str) -> str:
    """Base name of the parity set; a file keeps its extension (a.txt -> a.txt.par2)."""
    return os.path.basename(os.path.normpath(path))


def parity_file_for(path: str, mode: ItemMode) -> str:
    """Path of the main .par2 index file for a protected path."""
    return os.path.join(parity_dir_for(path, mode), parity_name_for(path) + ".par2")


def normalize_file_types(file_types: Optional[Iterable[str]]) -> Optional[List[str]]:
    """Lower-case, dot-less, sorted extension list; None means every file.

    Raises:
        Par2ProtectError: VALIDATION for an empty selection or a value
            that is not a plain extension.
    """
    if file_types is None:
        return None
    if isinstance(file_types, str):
        file_types = file_types.split(",")
    normalized = set()
    for raw in file_types:
        if not isinstance(raw, str):
            raise validation_error("File types must be strings", file_types=list(file_types))
        extension = raw.strip().lstrip(".").lower()
        if not extension or "/" in extension:
            raise validation_error(f"Invalid file type: {raw!r}", file_types=list(file_types))
        normalized.add(extension)
    if not normalized:
        raise validation_error("No file types selected for protection")
    return sorted(normalized)


def matches_file_types(file_path: str, file_types: Optional[List[str]]) -> bool:
    if not file_types:
        return True
    return os.path.splitext(file_path)[1].lstrip(".").lower() in file_types


def collect_source_files(path: str, mode: ItemMode, file_types: Optional[List[str]] = None) -> List[str]:
    """Regular files to protect, excluding anything under a .parity directory.

    ``file_types`` restricts a directory to files with those extensions.
    """
    path = os.path.normpath(path)
    if ItemMode(mode) == ItemMode.FILE:
        return [path] if os.path.isfile(path) else []

    files = []
    for root, dirnames, filenames in os.walk(path):
        dirnames[:] = sorted(d for d in dirnames if d != PARITY_DIR_NAME)
        for name in sorted(filenames):
            full = os.path.join(root, name)
            if os.path.isfile(full) and not os.path.islink(full) and matches_file_types(full, file_types):
                files.append(full)
    return files


def content_signature(files: List[str]) -> Tuple[int, float]:
    """(total size, newest mtime) of a file list; unreadable files are skipped."""
    total_size = 0
    newest_mtime = 0.0
    for file_path in files:
        try:
            stat = os.stat(file_path)
        except OSError as e:
            logger.debug(f"Could not stat {file_path}: {e}")
            continue
        total_size += stat.st_size
        newest_mtime = max(newest_mtime, stat.st_mtime)
    return total_size, newest_mtime


def item_par2_files(parity_location: str, name: str) -> List[str]:
    """The index and volume files of one parity set."""
    escaped = glob.escape(os.path.join(parity_location, name))
    matches = set(glob.glob(escaped + ".par2")) | set(glob.glob(escaped + ".vol*.par2"))
    return sorted(matches)


def parity_size(parity_location: str, name: str) -> int:
    total = 0
    for file_path in item_par2_files(parity_location, name):
        try:
            total += os.path.getsize(file_path)
        except OSError:
            continue
    return total


def parity_artifacts_present(parity_location: str, name: str) -> bool:
    return os.path.isfile(os.path.join(parity_location, name + ".par2"))


def validate_parity_location(parity_location: str, expected: Optional[str] = None) -> str:
    """Check a parity location before anything under it is deleted.

    The normalised path must end in ``/.parity``, must not be a symlink
    and, when ``expected`` is given, must equal it.

    Returns:
        The normalised location.

    Raises:
        Par2ProtectError: CONSISTENCY when any check fails.
    """
    if not parity_location or not os.path.isabs(parity_location):
        raise Par2ProtectError(ErrorKind.CONSISTENCY, "Parity location must be an absolute path",
                               {"parity_location": parity_location})
    normalized = os.path.normpath(parity_location)
    if os.path.basename(normalized) != PARITY_DIR_NAME or normalized == "/" + PARITY_DIR_NAME:
        raise Par2ProtectError(ErrorKind.CONSISTENCY,
                               f"Refusing to delete parity location not ending in /{PARITY_DIR_NAME}",
                               {"parity_location": parity_location})
    if os.path.islink(normalized):
        raise Par2ProtectError(ErrorKind.CONSISTENCY, "Refusing to delete symlinked parity location",
                               {"parity_location": parity_location})
    if expected is not None and normalized != os.path.normpath(expected):
        raise Par2ProtectError(ErrorKind.CONSISTENCY,
                               "Parity location does not belong to the protected path",
                               {"parity_location": parity_location, "expected": expected})
    return normalized


def _remove_or_raise(action, target: str, parity_location: str) -> None:
    try:
        action(target)
    except OSError as e:
        raise Par2ProtectError(ErrorKind.EXECUTION, f"Failed to delete {target}: {e}",
                               {"parity_location": parity_location, "target": target})


def remove_parity_location(parity_location: str, expected: Optional[str] = None) -> List[str]:
    """Delete a whole .parity directory bottom-up.

    Files go first, then subdirectories, then the directory itself. The
    first failure aborts the removal.

    Returns:
        Paths removed, in deletion order.
    """
    location = validate_parity_location(parity_location, expected)
    removed: List[str] = []
    if not os.path.exists(location):
        logger.info(f"Parity location already gone: {location}")
        return removed
    if not os.path.isdir(location):
        raise Par2ProtectError(ErrorKind.CONSISTENCY, "Parity location is not a directory",
                               {"parity_location": location})

    for root, dirnames, filenames in os.walk(location, topdown=False):
        for name in filenames:
            target = os.path.join(root, name)
            _remove_or_raise(os.remove, target, location)
            removed.append(target)
        for name in dirnames:
            target = os.path.join(root, name)
            # Symlinked subdirectories are unlinked, never descended into
            if os.path.islink(target):
                _remove_or_raise(os.remove, target, location)
            else:
                _remove_or_raise(os.rmdir, target, location)
            removed.append(target)
    _remove_or_raise(os.rmdir, location, location)
    removed.append(location)
    logger.info(f"Removed parity location {location} ({len(removed)} entries)")
    return removed


def remove_item_par2_files(parity_location: str, name: str, expected: Optional[str] = None) -> List[str]:
    """Delete only one parity set from a shared .parity directory.

    The directory itself is removed once it is empty.
    """
    location = validate_parity_location(parity_location, expected)
    removed: List[str] = []
    for target in item_par2_files(location, name):
        _remove_or_raise(os.remove, target, location)
        removed.append(target)
    if os.path.isdir(location) and not os.listdir(location):
        _remove_or_raise(os.rmdir, location, location)
        removed.append(location)
    logger.info(f"Removed {len(removed)} parity entries for {name} from {location}")
    return removed


def staging_dir_for(parity_location: str, operation_id: str) -> str:
    return os.path.join(parity_location, STAGING_PREFIX + operation_id)


def _validate_staging_dir(staging_dir: str) -> str:
    normalized = os.path.normpath(staging_dir)
    if not os.path.basename(normalized).startswith(STAGING_PREFIX):
        raise Par2ProtectError(ErrorKind.CONSISTENCY, "Not a parity staging directory",
                               {"staging_dir": staging_dir})
    validate_parity_location(os.path.dirname(normalized))
    return normalized


def discard_staging(staging_dir: str) -> List[str]:
    """Delete a staging directory and whatever par2 left in it."""
    staging = _validate_staging_dir(staging_dir)
    removed: List[str] = []
    if os.path.islink(staging) or not os.path.isdir(staging):
        return removed
    for name in os.listdir(staging):
        target = os.path.join(staging, name)
        _remove_or_raise(os.remove, target, staging)
        removed.append(target)
    _remove_or_raise(os.rmdir, staging, staging)
    removed.append(staging)
    return removed


def promote_staged_parity(staging_dir: str, parity_location: str, name: str,
                          expected: Optional[str] = None) -> List[str]:
    """Replace the current parity set with the one built in ``staging_dir``.

    The old set is deleted only once the staged index file exists; the
    staged files are then renamed into place and the staging directory
    is removed.

    Returns:
        Paths of the installed parity files.
    """
    location = validate_parity_location(parity_location, expected)
    staging = _validate_staging_dir(staging_dir)
    if os.path.dirname(staging) != location:
        raise Par2ProtectError(ErrorKind.CONSISTENCY, "Staging directory is outside the parity location",
                               {"staging_dir": staging_dir, "parity_location": location})
    if not parity_artifacts_present(staging, name):
        raise Par2ProtectError(ErrorKind.EXECUTION, "par2 create succeeded but no parity files were found",
                               {"parity_location": location, "staging_dir": staging})

    staged = item_par2_files(staging, name)
    for target in item_par2_files(location, name):
        _remove_or_raise(os.remove, target, location)
    installed: List[str] = []
    for source in staged:
        target = os.path.join(location, os.path.basename(source))
        try:
            os.replace(source, target)
        except OSError as e:
            raise Par2ProtectError(ErrorKind.EXECUTION, f"Failed to install {target}: {e}",
                                   {"parity_location": location, "target": target})
        installed.append(target)
    discard_staging(staging)
    logger.info(f"Installed {len(installed)} new parity files for {name} in {location}")
    return installed
