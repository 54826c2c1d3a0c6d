"""Content hash computation for build contexts.

This module handles:
- Hashing the Dockerfile path and contents
- Hashing build arguments in sorted key order
- Hashing every non-ignored regular file (path and bytes) in sorted order

Identical inputs always produce the same hash; any change to the Dockerfile,
a build argument, or a non-ignored file's path or content changes it. The
short hash is used as the `{{hash}}` component of image tags.
"""

from __future__ import annotations

import hashlib
import logging
from pathlib import Path
from typing import Any

from pctl.builds.context import ContextError, load_dockerignore, walk_context
from pctl.types import DEFAULT_DOCKERFILE

logger = logging.getLogger(__name__)

# Number of hex characters kept from the SHA-256 digest
CONTENT_HASH_LENGTH = 12

# Chunk size for reading files into the hasher
HASH_CHUNK_SIZE = 64 * 1024  # 64 KB

# Section markers fed into the hash
DOCKERFILE_PATH_MARKER = b"DOCKERFILE_PATH:\n"
DOCKERFILE_CONTENTS_MARKER = b"\nDOCKERFILE_CONTENTS:\n"
BUILD_ARGS_MARKER = b"\nBUILD_ARGS:\n"
FILE_MARKER = b"FILE:\n"


def _path_bytes(rel_path: str) -> bytes:
    # File names need not be valid UTF-8; hash the raw name bytes
    return rel_path.encode("utf-8", "surrogateescape")


def _feed_file(hasher: Any, path: Path) -> None:
    with path.open("rb") as f:
        while chunk := f.read(HASH_CHUNK_SIZE):
            hasher.update(chunk)


def hash_build_context(
    context_path: str | Path,
    dockerfile: str | None = DEFAULT_DOCKERFILE,
    build_args: dict[str, str] | None = None,
) -> str:
    """Compute the content hash of a build context.

    The hash covers, in order:
    - the Dockerfile's relative path, then its bytes if it can be opened
    - build arguments as sorted `key=value` lines (only when non-empty)
    - each non-ignored regular file's relative path and bytes, sorted by path

    Args:
        context_path: Build context directory.
        dockerfile: Dockerfile path relative to the context.
        build_args: Build arguments for the service.

    Returns:
        First 12 hex characters of the SHA-256 digest.

    Raises:
        ContextError: If the context cannot be walked or a file cannot be read.
    """
    root = Path(context_path).resolve()
    patterns = load_dockerignore(root)
    hasher = hashlib.sha256()

    dockerfile_rel = dockerfile or DEFAULT_DOCKERFILE
    hasher.update(DOCKERFILE_PATH_MARKER)
    hasher.update(_path_bytes(dockerfile_rel))

    # A missing Dockerfile is left for the build itself to report
    dockerfile_path = root / dockerfile_rel
    if dockerfile_path.is_file():
        hasher.update(DOCKERFILE_CONTENTS_MARKER)
        try:
            _feed_file(hasher, dockerfile_path)
        except OSError as e:
            raise ContextError(
                f"Failed to read Dockerfile for hashing: {e}",
                code="dockerfile_unreadable",
            ) from e

    if build_args:
        hasher.update(BUILD_ARGS_MARKER)
        for key in sorted(build_args):
            hasher.update(f"{key}={build_args[key]}\n".encode())

    files = sorted(
        (entry.rel_path for entry in walk_context(root, patterns) if entry.is_regular),
        key=_path_bytes,
    )

    for rel_path in files:
        hasher.update(FILE_MARKER)
        hasher.update(_path_bytes(rel_path))
        hasher.update(b"\n")
        try:
            _feed_file(hasher, root / rel_path)
        except OSError as e:
            raise ContextError(
                f"Failed to read {rel_path} for hashing: {e}",
                code="context_read_error",
            ) from e

    content_hash = hasher.hexdigest()[:CONTENT_HASH_LENGTH]
    logger.debug(
        "Hashed %d file(s) in %s -> %s", len(files), root, content_hash
    )
    return content_hash


__all__ = [
    "CONTENT_HASH_LENGTH",
    "hash_build_context",
]
