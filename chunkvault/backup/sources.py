"""
Source enumeration for backup operations.

Expands configured path patterns into a concrete list of regular files and
applies exclude patterns. Paths that do not exist are reported as failures
rather than aborting the scan.
"""

import glob
import logging
import os
import stat
from fnmatch import fnmatch
from pathlib import PurePosixPath
from typing import Dict, Iterable, List

from .errors import FileFailure, VaultError

logger = logging.getLogger(__name__)


class SourceError(VaultError):
    """Raised when the source configuration is unusable."""
    pass


def _has_magic(pattern: str) -> bool:
    return any(char in pattern for char in '*?[')


def _match_names(names, pattern_parts) -> bool:
    """Match path components against pattern components; '**' spans any number."""
    if not pattern_parts:
        return not names
    head, rest = pattern_parts[0], pattern_parts[1:]
    if head == '**':
        return any(_match_names(names[i:], rest) for i in range(len(names) + 1))
    return bool(names) and fnmatch(names[0], head) and _match_names(names[1:], rest)


def matches_exclude(path: str, patterns: Iterable[str]) -> bool:
    """
    Check if a path matches any exclude pattern.

    Patterns are matched one path component at a time: '*' and '?' never
    cross a '/', while a '**' component matches any number of directories.
    A pattern without a slash matches any single component, an absolute
    pattern matches from the root, and any other pattern matches anywhere in
    the path. A path is also excluded when one of its parent directories
    matches, so '**/cache/*' excludes everything below any directory named
    'cache'.

    Args:
        path: Absolute path to check
        patterns: Glob patterns

    Returns:
        True if path matches any exclude pattern, False otherwise
    """
    names = [part for part in PurePosixPath(path).parts if part != '/']

    for pattern in patterns:
        if '/' not in pattern:
            if any(fnmatch(name, pattern) for name in names):
                return True
            continue

        pattern_parts = [part for part in pattern.split('/') if part]
        starts = [0] if pattern.startswith('/') else range(len(names))

        # The path itself or any of its parent directories
        for start in starts:
            for end in range(start + 1, len(names) + 1):
                if _match_names(names[start:end], pattern_parts):
                    return True

    return False


class LocalSource:
    """
    Enumerates files from the local filesystem.
    """

    def __init__(self, paths: List[str], exclude_patterns: List[str] = None):
        """
        Initialize local source handler.

        Args:
            paths: List of file/directory paths or glob patterns to backup
            exclude_patterns: List of glob patterns to exclude (e.g., *.log, **/cache/*)
        """
        if not paths:
            raise SourceError("No source paths configured")

        self.paths = list(paths)
        self.exclude_patterns = list(exclude_patterns or [])
        self.failures: List[FileFailure] = []

    def _should_exclude(self, path: str) -> bool:
        return bool(self.exclude_patterns) and matches_exclude(path, self.exclude_patterns)

    def expand(self) -> List[str]:
        """
        Expand configured patterns to absolute paths that exist.

        Missing literal paths are recorded in self.failures; glob patterns
        without matches are only logged.
        """
        expanded = []

        for pattern in self.paths:
            candidate = os.path.abspath(os.path.expanduser(pattern))

            if _has_magic(candidate):
                matches = sorted(glob.glob(candidate, recursive=True))
                if not matches:
                    logger.warning(f"Pattern matched nothing: {pattern}")
                expanded.extend(os.path.abspath(match) for match in matches)
            elif os.path.lexists(candidate):
                expanded.append(candidate)
            else:
                logger.warning(f"Path does not exist: {pattern}")
                self.failures.append(FileFailure(candidate, 'path does not exist'))

        # Keep first occurrence order, drop duplicates
        return list(dict.fromkeys(expanded))

    def collect(self) -> List[str]:
        """
        List every regular file to back up, after exclusions.

        Directories are walked recursively without following symlinks;
        excluded directories are not descended into.

        Returns:
            Sorted list of absolute file paths
        """
        self.failures = []
        files: Dict[str, None] = {}

        for root_path in self.expand():
            if self._should_exclude(root_path):
                logger.debug(f"Excluded: {root_path}")
                continue

            try:
                mode = os.lstat(root_path).st_mode
            except OSError as e:
                self.failures.append(FileFailure(root_path, str(e)))
                continue

            if stat.S_ISREG(mode):
                files[root_path] = None
            elif stat.S_ISDIR(mode):
                for file_path in self._walk(root_path):
                    files[file_path] = None
            else:
                logger.debug(f"Skipping non-regular file: {root_path}")

        return sorted(files)

    def _walk(self, directory: str) -> Iterable[str]:
        def on_error(error: OSError):
            logger.warning(f"Cannot read directory {error.filename}: {error.strerror}")
            self.failures.append(FileFailure(error.filename or directory, error.strerror or str(error)))

        for current, dirnames, filenames in os.walk(directory, onerror=on_error, followlinks=False):
            # Prune excluded directories in place
            dirnames[:] = sorted(
                name for name in dirnames
                if not self._should_exclude(os.path.join(current, name))
            )

            for name in sorted(filenames):
                file_path = os.path.join(current, name)
                if self._should_exclude(file_path):
                    logger.debug(f"Excluded: {file_path}")
                    continue
                try:
                    mode = os.lstat(file_path).st_mode
                except OSError as e:
                    self.failures.append(FileFailure(file_path, str(e)))
                    continue
                if stat.S_ISREG(mode):
                    yield file_path
