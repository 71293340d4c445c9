"""Application source staging.

Copies a project tree into the build directory, skipping virtualenvs,
caches, VCS metadata and any extra exclusion patterns, so the
application layer only holds source files.
"""

from __future__ import annotations

import fnmatch
import logging
import os
import shutil
import stat
from collections.abc import Iterable, Sequence
from pathlib import Path

logger = logging.getLogger(__name__)

DEFAULT_EXCLUDES = (
    "venv",
    ".venv",
    "__pycache__",
    "*.pyc",
    "*.pyo",
    ".git",
    ".pytest_cache",
)


def is_excluded(name: str, rel_path: str, patterns: Iterable[str]) -> bool:
    """Return True if an entry matches any exclusion pattern.

    Patterns are matched against both the entry name and its path
    relative to the project root.
    """
    return any(
        fnmatch.fnmatch(name, pattern) or fnmatch.fnmatch(rel_path, pattern)
        for pattern in patterns
    )


def copy_tree(
    source_dir: Path,
    dest_dir: Path,
    exclude: Sequence[str] = (),
    skip: Iterable[Path] = (),
) -> int:
    """Copy *source_dir* into *dest_dir*, following symlinks.

    Symlinked files are copied as regular files. A directory reached
    again through a symlink is not copied twice.

    Args:
        source_dir: Tree to copy.
        dest_dir: Destination root (created if needed).
        exclude: Glob patterns for entries to leave out.
        skip: Absolute paths to leave out (e.g. a nested output directory).

    Returns:
        Number of files copied.

    Raises:
        OSError: If a file cannot be read or copied.
    """
    skipped = {path.resolve() for path in skip}
    seen_dirs: set[tuple[int, int]] = set()
    stack: list[tuple[Path, Path, str]] = [(source_dir, dest_dir, "")]
    copied = 0

    while stack:
        directory, target, rel_dir = stack.pop()
        dir_stat = directory.stat()
        dir_key = (dir_stat.st_dev, dir_stat.st_ino)
        if dir_key in seen_dirs:
            continue
        seen_dirs.add(dir_key)
        target.mkdir(parents=True, exist_ok=True)

        with os.scandir(directory) as entries:
            for entry in entries:
                rel_path = f"{rel_dir}/{entry.name}" if rel_dir else entry.name
                entry_path = Path(entry.path)
                if is_excluded(entry.name, rel_path, exclude):
                    logger.debug("Excluding %s", rel_path)
                    continue
                if entry_path.resolve() in skipped:
                    continue

                mode = entry_path.stat().st_mode
                if stat.S_ISDIR(mode):
                    stack.append((entry_path, target / entry.name, rel_path))
                elif stat.S_ISREG(mode):
                    shutil.copy2(entry_path, target / entry.name)
                    copied += 1

    return copied


def stage_application(
    project_dir: Path,
    dest_dir: Path,
    extra_excludes: Sequence[str] = (),
    skip: Iterable[Path] = (),
) -> Path:
    """Stage a project's source files for the application layer.

    Returns:
        *dest_dir*.
    """
    patterns = [*DEFAULT_EXCLUDES, *extra_excludes]
    count = copy_tree(project_dir, dest_dir, patterns, skip)
    logger.info("Staged %d application files from %s", count, project_dir)
    return dest_dir


__all__ = ["DEFAULT_EXCLUDES", "copy_tree", "is_excluded", "stage_application"]
