"""Build strategies.

Each strategy turns one service plus its generated tag into a BuildResult:
- RemoteBuildStrategy streams the build context to the remote engine and
  builds there
- LoadStrategy builds locally with docker buildx and uploads the image archive

The strategy is selected once per run from the configured build mode.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import TYPE_CHECKING

from pctl.builds.context import BYTES_PER_MB, ContextArchiver, ContextError
from pctl.builds.runner import BuildExecutionError, LocalBuildRunner, merge_build_args
from pctl.portainer.client import PortainerAPIError
from pctl.types import (
    DEFAULT_DOCKERFILE,
    BuildMode,
    BuildOptions,
    BuildResult,
    LineCallback,
    ServiceBuildInfo,
)

if TYPE_CHECKING:
    from pctl.builds.logger import BuildLogger
    from pctl.config import BuildConfig
    from pctl.portainer.client import RemoteBuildClient

logger = logging.getLogger(__name__)

# How long to wait for a local build to exit once its archive was uploaded
PROCESS_EXIT_TIMEOUT = 60.0


class ServiceBuildError(Exception):
    """A per-service build failure with the step that failed."""

    def __init__(self, message: str, code: str = "build_error") -> None:
        super().__init__(message)
        self.code = code


def service_failure(service_name: str, step: str, error: Exception) -> BuildResult:
    """Create a failed BuildResult describing the failing step."""
    wrapped = ServiceBuildError(
        f"{step}: {error}", code=getattr(error, "code", "build_error")
    )
    wrapped.__cause__ = error
    return BuildResult.failed(service_name, wrapped)


class BuildStrategy(ABC):
    """Produces the image for one service on the remote engine."""

    mode: BuildMode

    def __init__(
        self,
        client: RemoteBuildClient,
        config: BuildConfig,
        env_id: int,
        build_logger: BuildLogger,
    ) -> None:
        self.client = client
        self.config = config
        self.env_id = env_id
        self.build_logger = build_logger

    def _forward(self, service_name: str) -> LineCallback:
        def on_line(line: str) -> None:
            self.build_logger.log_service(service_name, line)

        return on_line

    @abstractmethod
    def build(self, service: ServiceBuildInfo, image_tag: str) -> BuildResult:
        """Build the service image under the given tag."""


class RemoteBuildStrategy(BuildStrategy):
    """Builds on the remote engine from a streamed context archive."""

    mode = BuildMode.REMOTE_BUILD

    def __init__(
        self,
        client: RemoteBuildClient,
        config: BuildConfig,
        env_id: int,
        build_logger: BuildLogger,
        archiver: ContextArchiver | None = None,
    ) -> None:
        super().__init__(client, config, env_id, build_logger)
        self.archiver = archiver or ContextArchiver(config.warn_threshold_mb)

    def _check_context_size(self, service: ServiceBuildInfo) -> None:
        size = self.archiver.validate_context(service.context_path)
        if self.archiver.exceeds_threshold(size):
            self.build_logger.log_warn(
                f"Build context for {service.service_name} is "
                f"{size / BYTES_PER_MB:.1f} MB (threshold "
                f"{self.archiver.warn_threshold_mb} MB); consider a .dockerignore"
            )

    def build(self, service: ServiceBuildInfo, image_tag: str) -> BuildResult:
        name = service.service_name
        self.build_logger.log_service(name, "Building on remote engine...")

        try:
            self._check_context_size(service)
        except ContextError as e:
            return service_failure(name, "invalid build context", e)

        options = BuildOptions(
            tag=image_tag,
            dockerfile=service.build.dockerfile or DEFAULT_DOCKERFILE,
            build_args=merge_build_args(service.build.args, self.config.extra_build_args),
            target=service.build.target,
            cache_from=list(service.build.cache_from),
            no_cache=self.config.force_build,
        )

        try:
            with self.archiver.create_tar_stream(service.context_path) as context:
                self.client.build_image(self.env_id, context, options, self._forward(name))
        except ContextError as e:
            return service_failure(name, "failed to create context tar", e)
        except PortainerAPIError as e:
            return service_failure(name, "remote build failed", e)

        return BuildResult.built(name, image_tag)


class LoadStrategy(BuildStrategy):
    """Builds locally, then uploads the image archive to the remote engine."""

    mode = BuildMode.LOAD

    def __init__(
        self,
        client: RemoteBuildClient,
        config: BuildConfig,
        env_id: int,
        build_logger: BuildLogger,
        runner: LocalBuildRunner | None = None,
    ) -> None:
        super().__init__(client, config, env_id, build_logger)
        self.runner = runner or LocalBuildRunner()

    def build(self, service: ServiceBuildInfo, image_tag: str) -> BuildResult:
        name = service.service_name
        forward = self._forward(name)
        self.build_logger.log_service(name, "Building locally...")

        try:
            local_build = self.runner.start(
                service,
                image_tag,
                forward,
                platforms=self.config.platforms,
                extra_build_args=self.config.extra_build_args,
                no_cache=self.config.force_build,
            )
        except BuildExecutionError as e:
            return service_failure(name, "local build failed", e)

        with local_build:
            self.build_logger.log_service(name, "Loading image to remote engine...")
            try:
                self.client.load_image(self.env_id, local_build.iter_archive(), forward)
            except BuildExecutionError as e:
                return service_failure(name, "local build failed", e)
            except PortainerAPIError as e:
                # A build that died mid-stream often shows up as a rejected upload
                if not local_build.running:
                    try:
                        local_build.wait()
                    except BuildExecutionError as build_error:
                        return service_failure(name, "local build failed", build_error)
                return service_failure(name, "failed to load image", e)

            try:
                local_build.wait(timeout=PROCESS_EXIT_TIMEOUT)
            except BuildExecutionError as e:
                return service_failure(name, "local build failed", e)

        return BuildResult.built(name, image_tag)


def select_strategy(
    mode: BuildMode | str,
    client: RemoteBuildClient,
    config: BuildConfig,
    env_id: int,
    build_logger: BuildLogger,
    runner: LocalBuildRunner | None = None,
    archiver: ContextArchiver | None = None,
) -> BuildStrategy | None:
    """Return the strategy for a build mode, or None if the mode is unknown."""
    try:
        build_mode = BuildMode(mode)
    except ValueError:
        logger.error("Unsupported build mode: %s", mode)
        return None

    if build_mode is BuildMode.REMOTE_BUILD:
        return RemoteBuildStrategy(client, config, env_id, build_logger, archiver=archiver)
    return LoadStrategy(client, config, env_id, build_logger, runner=runner)


__all__ = [
    "BuildStrategy",
    "LoadStrategy",
    "RemoteBuildStrategy",
    "ServiceBuildError",
    "select_strategy",
    "service_failure",
]
