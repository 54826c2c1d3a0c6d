"""Build context walking, ignore rules, and tar streaming.

This module handles:
- Loading .dockerignore patterns
- Deciding whether a context-relative path is ignored
- Walking a build context deterministically with ignored subtrees pruned
- Streaming the non-ignored tree as a tar archive through a bounded pipe
- Estimating and validating context size
"""

from __future__ import annotations

import functools
import logging
import os
import re
import stat
import tarfile
import threading
from collections.abc import Iterator
from dataclasses import dataclass
from pathlib import Path

from pctl.builds.streams import PipeStream

logger = logging.getLogger(__name__)

DOCKERIGNORE_FILENAME = ".dockerignore"

BYTES_PER_MB = 1024 * 1024


class ContextError(Exception):
    """Raised when a build context cannot be read or archived."""

    def __init__(self, message: str, code: str = "context_error") -> None:
        super().__init__(message)
        self.code = code


@dataclass(frozen=True)
class ContextEntry:
    """A non-ignored filesystem entry inside a build context.

    Attributes:
        rel_path: Slash-separated path relative to the context root.
        path: Absolute path on disk.
        mode: st_mode from lstat (symlinks are not followed).
        size: Size in bytes from lstat.
    """

    rel_path: str
    path: Path
    mode: int
    size: int

    @property
    def is_regular(self) -> bool:
        return stat.S_ISREG(self.mode)

    @property
    def is_dir(self) -> bool:
        return stat.S_ISDIR(self.mode)


def load_dockerignore(context_path: str | Path) -> list[str]:
    """Load ignore patterns from the context's .dockerignore.

    Blank lines and lines starting with '#' are skipped; every other line is
    taken verbatim (after stripping surrounding whitespace).

    Args:
        context_path: Build context directory.

    Returns:
        List of patterns, empty if there is no .dockerignore.

    Raises:
        ContextError: If the file exists but cannot be read.
    """
    ignore_path = Path(context_path) / DOCKERIGNORE_FILENAME
    if not ignore_path.exists():
        return []

    try:
        content = ignore_path.read_text(encoding="utf-8", errors="surrogateescape")
    except OSError as e:
        raise ContextError(
            f"Failed to read {DOCKERIGNORE_FILENAME}: {e}",
            code="dockerignore_unreadable",
        ) from e

    patterns: list[str] = []
    for line in content.splitlines():
        line = line.strip()
        if not line or line.startswith("#"):
            continue
        patterns.append(line)
    return patterns


@functools.lru_cache(maxsize=256)
def _compile_glob(pattern: str) -> re.Pattern[str] | None:
    """Translate a shell glob into a regex whose wildcards stop at '/'.

    Returns None for a malformed pattern, which then matches nothing.
    """
    parts: list[str] = []
    i, n = 0, len(pattern)
    while i < n:
        c = pattern[i]
        if c == "*":
            parts.append("[^/]*")
        elif c == "?":
            parts.append("[^/]")
        elif c == "\\":
            i += 1
            if i >= n:
                return None
            parts.append(re.escape(pattern[i]))
        elif c == "[":
            j = i + 1
            negate = j < n and pattern[j] == "^"
            if negate:
                j += 1
            end = pattern.find("]", j)
            if end == -1 or end == j:
                return None
            body = "".join(
                "\\" + ch if ch in "\\^[]" else ch for ch in pattern[j:end]
            )
            parts.append(f"[^/{body}]" if negate else f"[{body}]")
            i = end
        else:
            parts.append(re.escape(c))
        i += 1

    try:
        return re.compile("".join(parts))
    except re.error:
        return None


def glob_match(pattern: str, rel_path: str) -> bool:
    """Match a whole relative path against a single-segment shell glob."""
    compiled = _compile_glob(pattern)
    return compiled is not None and compiled.fullmatch(rel_path) is not None


def matches_pattern(rel_path: str, pattern: str) -> bool:
    """Check whether a context-relative path matches one ignore pattern.

    Rules, first applicable wins:
    - 'dir/' matches 'dir' and everything below it
    - a pattern containing '*' is a glob over the full path ('*' stops at '/')
    - exact equality
    - bare directory prefix ('temp' matches 'temp/file.txt')
    """
    if pattern.endswith("/"):
        dir_pattern = pattern.rstrip("/")
        return rel_path == dir_pattern or rel_path.startswith(dir_pattern + "/")

    if "*" in pattern:
        return glob_match(pattern, rel_path)

    if rel_path == pattern:
        return True

    return rel_path.startswith(pattern + "/")


def should_ignore(rel_path: str, patterns: list[str]) -> bool:
    """Check whether any ignore pattern matches the path."""
    return any(matches_pattern(rel_path, pattern) for pattern in patterns)


def _raise_walk_error(error: OSError) -> None:
    raise error


def walk_context(context_path: str | Path, patterns: list[str]) -> Iterator[ContextEntry]:
    """Walk a build context, yielding non-ignored entries in sorted order.

    Ignored directories are pruned without descending. Symlinks are yielded
    as entries but never followed.

    Raises:
        ContextError: If a directory or entry cannot be read.
    """
    root = Path(context_path)
    try:
        for dirpath, dirnames, filenames in os.walk(root, onerror=_raise_walk_error):
            current = Path(dirpath)
            rel_dir = current.relative_to(root).as_posix()
            prefix = "" if rel_dir == "." else rel_dir + "/"

            dirnames.sort()
            kept: list[str] = []
            for name in dirnames:
                rel_path = prefix + name
                if should_ignore(rel_path, patterns):
                    logger.debug("Ignoring directory %s", rel_path)
                    continue
                full = current / name
                st = full.lstat()
                yield ContextEntry(rel_path, full, st.st_mode, st.st_size)
                if stat.S_ISDIR(st.st_mode):
                    kept.append(name)
            dirnames[:] = kept

            for name in sorted(filenames):
                rel_path = prefix + name
                if should_ignore(rel_path, patterns):
                    continue
                full = current / name
                st = full.lstat()
                yield ContextEntry(rel_path, full, st.st_mode, st.st_size)
    except OSError as e:
        raise ContextError(
            f"Failed to walk build context {root}: {e}",
            code="context_read_error",
        ) from e


class ContextArchiver:
    """Creates tar streams of build contexts and estimates their size."""

    def __init__(self, warn_threshold_mb: int = 0) -> None:
        self.warn_threshold_mb = warn_threshold_mb

    def create_tar_stream(self, context_path: str | Path) -> PipeStream:
        """Start streaming a tar archive of the context.

        The archive is written by a background thread into a bounded pipe;
        the caller consumes the returned stream and should close it when done.

        Raises:
            ContextError: If the context is not a directory or its
                .dockerignore cannot be read.
        """
        root = Path(context_path)
        _require_directory(root)
        patterns = load_dockerignore(root)

        pipe = PipeStream()
        thread = threading.Thread(
            target=self._produce,
            args=(root, patterns, pipe),
            name=f"context-tar-{root.name}",
            daemon=True,
        )
        thread.start()
        return pipe

    def _produce(self, root: Path, patterns: list[str], pipe: PipeStream) -> None:
        try:
            with tarfile.open(fileobj=pipe, mode="w|", format=tarfile.PAX_FORMAT) as tar:
                written = self._write_context(root, patterns, tar)
        except BrokenPipeError:
            logger.debug("Context tar consumer went away for %s", root)
            return
        except OSError as e:
            pipe.close_with_error(
                ContextError(
                    f"Failed to archive build context {root}: {e}",
                    code="context_read_error",
                )
            )
            return
        except Exception as e:
            # Hand every producer failure to the reader instead of leaving it blocked
            pipe.close_with_error(e)
            return

        logger.debug("Archived %d bytes of file content from %s", written, root)
        pipe.close()

    def _write_context(
        self, root: Path, patterns: list[str], tar: tarfile.TarFile
    ) -> int:
        total = 0
        for entry in walk_context(root, patterns):
            info = tar.gettarinfo(str(entry.path), arcname=entry.rel_path)
            if info is None:
                # Sockets and other unsupported file types
                continue
            if entry.is_regular:
                with entry.path.open("rb") as f:
                    tar.addfile(info, f)
                total += info.size
            else:
                tar.addfile(info)
        return total

    def get_context_size(self, context_path: str | Path) -> int:
        """Sum the sizes of regular files the archive would contain."""
        patterns = load_dockerignore(context_path)
        return sum(
            entry.size
            for entry in walk_context(context_path, patterns)
            if entry.is_regular
        )

    def validate_context(self, context_path: str | Path) -> int:
        """Check that a context is usable and return its size in bytes.

        Raises:
            ContextError: If the context is not a directory, its .dockerignore
                is unreadable, or the tree cannot be walked.
        """
        root = Path(context_path)
        _require_directory(root)

        ignore_path = root / DOCKERIGNORE_FILENAME
        if ignore_path.exists():
            try:
                with ignore_path.open("rb"):
                    pass
            except OSError as e:
                raise ContextError(
                    f"Cannot read {DOCKERIGNORE_FILENAME}: {e}",
                    code="dockerignore_unreadable",
                ) from e

        return self.get_context_size(root)

    def exceeds_threshold(self, size_bytes: int) -> bool:
        """Whether a context size is above the configured warning threshold."""
        return (
            self.warn_threshold_mb > 0
            and size_bytes > self.warn_threshold_mb * BYTES_PER_MB
        )


def _require_directory(path: Path) -> None:
    if not path.is_dir():
        raise ContextError(
            f"Context path is not a directory: {path}",
            code="context_not_directory",
        )


__all__ = [
    "BYTES_PER_MB",
    "DOCKERIGNORE_FILENAME",
    "ContextArchiver",
    "ContextEntry",
    "ContextError",
    "glob_match",
    "load_dockerignore",
    "matches_pattern",
    "should_ignore",
    "walk_context",
]
