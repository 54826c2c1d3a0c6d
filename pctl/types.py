"""Shared type definitions for pctl.

This module contains dataclasses, enums, and type aliases shared across
subpackages to avoid circular imports.
"""

from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path

# Callback receiving one line of remote or local build output
LineCallback = Callable[[str], None]

DEFAULT_DOCKERFILE = "Dockerfile"

# Parallelism value that sizes the build pool from the remote host
PARALLEL_AUTO = "auto"


class BuildMode(str, Enum):
    """How service images are produced."""

    REMOTE_BUILD = "remote-build"
    LOAD = "load"


@dataclass(frozen=True)
class BuildDirective:
    """The `build:` section of a Compose service.

    Attributes:
        context: Build context path as written in the Compose file.
        dockerfile: Dockerfile path relative to the context.
        args: Build arguments.
        target: Optional build stage target.
        cache_from: Optional cache source images.
    """

    context: str = "."
    dockerfile: str = DEFAULT_DOCKERFILE
    args: dict[str, str] = field(default_factory=dict)
    target: str | None = None
    cache_from: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class ServiceBuildInfo:
    """A Compose service that carries a build directive."""

    service_name: str
    build: BuildDirective
    context_path: Path


@dataclass(frozen=True)
class BuildResult:
    """Outcome of building a single service.

    Attributes:
        service_name: Compose service name.
        image_tag: Resulting image reference (empty on failure).
        success: Whether the service ended with a usable image.
        error: Failure cause when success is False.
        skipped: True when an existing image was reused without building.
    """

    service_name: str
    image_tag: str = ""
    success: bool = False
    error: Exception | None = None
    skipped: bool = False

    @classmethod
    def failed(cls, service_name: str, error: Exception) -> "BuildResult":
        """Create a failed result."""
        return cls(service_name=service_name, success=False, error=error)

    @classmethod
    def built(
        cls, service_name: str, image_tag: str, skipped: bool = False
    ) -> "BuildResult":
        """Create a successful result."""
        return cls(
            service_name=service_name,
            image_tag=image_tag,
            success=True,
            skipped=skipped,
        )


@dataclass
class BuildOptions:
    """Options for a remote image build."""

    tag: str
    dockerfile: str = DEFAULT_DOCKERFILE
    build_args: dict[str, str] = field(default_factory=dict)
    target: str | None = None
    cache_from: list[str] = field(default_factory=list)
    no_cache: bool = False


__all__ = [
    "DEFAULT_DOCKERFILE",
    "PARALLEL_AUTO",
    "BuildDirective",
    "BuildMode",
    "BuildOptions",
    "BuildResult",
    "LineCallback",
    "ServiceBuildInfo",
]
