"""Target tree enumeration.

Produces lazy, restartable sequences of artifacts under a target root,
filtered per rule. Exclude patterns are applied before include patterns.
Symlinked directories are followed, and cycles are broken by tracking
visited (device, inode) pairs.
"""

import fnmatch
import hashlib
import os
import re
import stat
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Iterator, List, Optional, Sequence

from ..common.logger import get_logger
from ..errors import WalkError

logger = get_logger("walker")

# Bytes inspected when deciding whether a file is text
BINARY_SNIFF_BYTES = 8192

DEFAULT_MAX_TEXT_SIZE = 5242880  # 5MB

ErrorHandler = Callable[[WalkError], None]


def _compile_pattern(pattern: str) -> Callable[[str, str], bool]:
    """Compile a file pattern into a predicate over (name, relpath).

    Patterns prefixed with "glob:" use shell-style matching, anything else
    is a regex searched in both the file name and the relative path.
    """
    if pattern.startswith("glob:"):
        glob = pattern[len("glob:"):]
        return lambda name, rel: fnmatch.fnmatch(name, glob) or fnmatch.fnmatch(rel, glob)
    regex = re.compile(pattern)
    return lambda name, rel: bool(regex.search(name) or regex.search(rel))


class FileFilter:
    """Include/exclude filter over root-relative POSIX paths."""

    def __init__(
        self,
        include: Optional[Sequence[str]] = None,
        exclude: Sequence[str] = (),
    ):
        """Initialize filter.

        Args:
            include: Patterns a file must match; None or empty includes all
            exclude: Patterns that reject a file before include is consulted
        """
        self.include = [_compile_pattern(p) for p in (include or []) if p]
        self.exclude = [_compile_pattern(p) for p in exclude if p]

    def is_excluded(self, relpath: str) -> bool:
        name = relpath.rstrip("/").rsplit("/", 1)[-1]
        return any(check(name, relpath) for check in self.exclude)

    def matches(self, relpath: str) -> bool:
        if self.is_excluded(relpath):
            return False
        if not self.include:
            return True
        name = relpath.rsplit("/", 1)[-1]
        return any(check(name, relpath) for check in self.include)


@dataclass
class Artifact:
    """A file under the target root with lazy content access."""

    path: Path
    relpath: str
    size: int
    max_text_size: int = DEFAULT_MAX_TEXT_SIZE
    _digest: Optional[str] = field(default=None, repr=False, compare=False)

    @property
    def name(self) -> str:
        return self.path.name

    def read_bytes(self) -> bytes:
        """Read the artifact's content.

        Raises:
            WalkError: If the file cannot be read
        """
        try:
            return self.path.read_bytes()
        except (IOError, OSError) as e:
            raise WalkError(self.relpath, e.strerror or str(e)) from e

    def read_text(self) -> str:
        return self.read_bytes().decode("utf-8", errors="replace")

    def sha256(self) -> str:
        if self._digest is None:
            self._digest = hashlib.sha256(self.read_bytes()).hexdigest()
        return self._digest

    @property
    def is_text(self) -> bool:
        """Whether text-pattern rules should look at this artifact.

        Raises:
            WalkError: If the file cannot be read
        """
        if self.size > self.max_text_size:
            return False
        try:
            with self.path.open("rb") as f:
                head = f.read(BINARY_SNIFF_BYTES)
        except (IOError, OSError) as e:
            raise WalkError(self.relpath, e.strerror or str(e)) from e
        return b"\x00" not in head


class TargetWalker:
    """Enumerates candidate artifacts under a target root."""

    def __init__(
        self,
        root: str,
        exclude: Sequence[str] = (),
        max_text_size: int = DEFAULT_MAX_TEXT_SIZE,
    ):
        """Initialize walker.

        Args:
            root: Target directory (or single file)
            exclude: Patterns excluded for every rule
            max_text_size: Files above this size are not text artifacts
        """
        self.root = Path(root)
        self.exclude = list(exclude)
        self.max_text_size = max_text_size

    def file_filter(self, include: Optional[Sequence[str]] = None) -> FileFilter:
        """Build a filter combining the walker's excludes with rule includes."""
        return FileFilter(include=include, exclude=self.exclude)

    def walk(
        self,
        file_filter: Optional[FileFilter] = None,
        on_error: Optional[ErrorHandler] = None,
        text_only: bool = False,
    ) -> Iterator[Artifact]:
        """Yield matching artifacts in a deterministic order.

        Each call starts a fresh traversal.

        Args:
            file_filter: Filter to apply; defaults to the walker's excludes only
            on_error: Receives WalkErrors for unreadable paths
            text_only: Skip large and binary files

        Yields:
            Artifact for each matching regular file
        """
        file_filter = file_filter or self.file_filter()
        report = on_error or self._log_error

        if self.root.is_file():
            artifact = self._artifact(self.root, self.root.name, file_filter, report, text_only, set())
            if artifact is not None:
                yield artifact
            return

        if not self.root.exists():
            report(WalkError(str(self.root), "target does not exist"))
            return

        visited_dirs = set()
        seen_files = set()
        real_root = os.path.realpath(self.root)

        def _onerror(error: OSError) -> None:
            report(WalkError(str(error.filename or self.root), error.strerror or str(error)))

        for dirpath, dirnames, filenames in os.walk(self.root, followlinks=True, onerror=_onerror):
            try:
                dir_stat = os.stat(dirpath)
            except OSError as e:
                _onerror(e)
                dirnames[:] = []
                continue

            key = (dir_stat.st_dev, dir_stat.st_ino)
            if key in visited_dirs:
                logger.debug(f"Skipping already visited directory: {dirpath}")
                dirnames[:] = []
                continue
            visited_dirs.add(key)

            base = Path(dirpath)
            rel_base = base.relative_to(self.root).as_posix()
            rel_base = "" if rel_base == "." else f"{rel_base}/"
            linked_dir = os.path.realpath(dirpath) != os.path.normpath(os.path.join(real_root, rel_base))

            # Prune excluded directories, sorted for a stable traversal order
            dirnames[:] = sorted(
                d for d in dirnames if not file_filter.is_excluded(f"{rel_base}{d}/")
            )

            for filename in sorted(filenames):
                relpath = f"{rel_base}{filename}"
                if not file_filter.matches(relpath):
                    continue
                artifact = self._artifact(
                    base / filename, relpath, file_filter, report, text_only, seen_files, linked_dir
                )
                if artifact is not None:
                    yield artifact

    def _artifact(
        self,
        path: Path,
        relpath: str,
        file_filter: FileFilter,
        report: ErrorHandler,
        text_only: bool,
        seen_files: set,
        linked_dir: bool = False,
    ) -> Optional[Artifact]:
        if not file_filter.matches(relpath):
            return None
        try:
            file_stat = path.stat()
        except OSError as e:
            report(WalkError(relpath, e.strerror or str(e)))
            return None

        if not stat.S_ISREG(file_stat.st_mode):
            return None

        # Hard links are distinct artifacts; only symlinked paths repeat a file
        key = (file_stat.st_dev, file_stat.st_ino)
        if (linked_dir or path.is_symlink()) and key in seen_files:
            return None
        seen_files.add(key)

        artifact = Artifact(
            path=path,
            relpath=relpath,
            size=file_stat.st_size,
            max_text_size=self.max_text_size,
        )
        if text_only:
            try:
                if not artifact.is_text:
                    logger.debug(f"Skipping large or binary file for text rules: {relpath}")
                    return None
            except WalkError as e:
                report(e)
                return None
        return artifact

    def _log_error(self, error: WalkError) -> None:
        logger.warning(f"Skipping artifact: {error}")

    def collect(self, file_filter: Optional[FileFilter] = None) -> List[Artifact]:
        """Collect all matching artifacts (mainly for testing)."""
        return list(self.walk(file_filter))
