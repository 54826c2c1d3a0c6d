"""Build orchestrator.

This module provides the high-level build API:
- build_services(): build every service with a build directive
- Content hash and tag per service, skipping tags that already exist
- Dispatch to the remote-build or load strategy
- Bounded parallelism sized from the remote host's CPU count

Results are all-or-nothing: every service runs to completion, but if any
service fails no tags are returned and BuildFailedError is raised.
"""

from __future__ import annotations

import logging
import os
import threading
from concurrent.futures import ThreadPoolExecutor, as_completed
from contextlib import nullcontext
from typing import TYPE_CHECKING

from pctl.builds.context import ContextArchiver, ContextError
from pctl.builds.hashing import hash_build_context
from pctl.builds.runner import LocalBuildRunner
from pctl.builds.strategies import ServiceBuildError, select_strategy, service_failure
from pctl.builds.tagging import TagGenerator, TagValidationError, validate_tag
from pctl.portainer.client import PortainerAPIError
from pctl.types import PARALLEL_AUTO, BuildResult, ServiceBuildInfo

if TYPE_CHECKING:
    from pctl.builds.logger import BuildLogger
    from pctl.config import BuildConfig
    from pctl.portainer.client import RemoteBuildClient

logger = logging.getLogger(__name__)

# docker info field holding the host CPU count
HOST_CPU_FIELD = "NCPU"


class BuildFailedError(Exception):
    """Raised when at least one service failed to build.

    Attributes:
        results: Results for every service in the run.
        failures: The failed results, in completion order.
    """

    def __init__(self, results: list[BuildResult]) -> None:
        self.results = results
        self.failures = [r for r in results if not r.success]
        self.code = "build_failed"
        first = self.failures[0]
        super().__init__(
            f"build failed for {len(self.failures)} service(s): "
            f"failed to build {first.service_name}: {first.error}"
        )

    @property
    def first_error(self) -> Exception | None:
        return self.failures[0].error


def _local_parallelism() -> int:
    return max(1, (os.cpu_count() or 1) - 1)


class BuildOrchestrator:
    """Coordinates the builds of all services in a stack."""

    def __init__(
        self,
        client: RemoteBuildClient,
        config: BuildConfig,
        env_id: int,
        stack_name: str,
        build_logger: BuildLogger,
        runner: LocalBuildRunner | None = None,
        archiver: ContextArchiver | None = None,
    ) -> None:
        self.client = client
        self.config = config
        self.env_id = env_id
        self.stack_name = stack_name
        self.build_logger = build_logger
        self.tag_generator = TagGenerator(stack_name, config.tag_format)
        self.strategy = select_strategy(
            config.mode,
            client,
            config,
            env_id,
            build_logger,
            runner=runner,
            archiver=archiver,
        )

    def build_services(self, services: list[ServiceBuildInfo]) -> dict[str, str]:
        """Build all services and return their image tags.

        Every service runs to completion even if others fail. Build work
        is limited to get_parallelism() services at a time.

        Args:
            services: Services with build directives.

        Returns:
            Mapping of service name to image tag, for every service.

        Raises:
            BuildFailedError: If any service failed; no tags are returned.
        """
        if not services:
            return {}

        self.build_logger.log_info(
            f"Building {len(services)} service(s) with build directives"
        )
        parallel = self.get_parallelism()
        self.build_logger.log_info(f"Using parallelism: {parallel}")

        gate = threading.BoundedSemaphore(parallel)
        results: list[BuildResult] = []

        with ThreadPoolExecutor(
            max_workers=len(services), thread_name_prefix="pctl-build"
        ) as pool:
            futures = [pool.submit(self._run_service, s, gate) for s in services]
            for future in as_completed(futures):
                result = future.result()
                results.append(result)
                if result.success:
                    verb = "Unchanged" if result.skipped else "Built"
                    self.build_logger.log_info(
                        f"✓ {verb} {result.service_name} -> {result.image_tag}"
                    )
                else:
                    self.build_logger.log_error(
                        f"✗ Failed to build {result.service_name}: {result.error}"
                    )

        if any(not r.success for r in results):
            raise BuildFailedError(results)

        image_tags = {r.service_name: r.image_tag for r in results}
        self.build_logger.log_info(f"Successfully built {len(image_tags)} service(s)")
        return image_tags

    def _run_service(
        self, service: ServiceBuildInfo, gate: threading.BoundedSemaphore
    ) -> BuildResult:
        try:
            return self.build_service(service, gate)
        except Exception as e:
            # Keep one service's unexpected failure from hiding the others' results
            logger.exception("Unexpected error building %s", service.service_name)
            return service_failure(service.service_name, "unexpected error", e)

    def build_service(
        self,
        service: ServiceBuildInfo,
        gate: threading.BoundedSemaphore | None = None,
    ) -> BuildResult:
        """Hash, tag, and (unless unchanged) build a single service.

        Args:
            service: Service to build.
            gate: Semaphore bounding concurrent build work.

        Returns:
            BuildResult for the service.
        """
        name = service.service_name
        self.build_logger.log_service(name, "Starting build...")

        try:
            content_hash = hash_build_context(
                service.context_path,
                service.build.dockerfile,
                service.build.args,
            )
        except ContextError as e:
            return service_failure(name, "failed to generate content hash", e)

        image_tag = self.tag_generator.generate_tag(name, content_hash)
        try:
            validate_tag(image_tag)
        except TagValidationError as e:
            return service_failure(name, f"invalid image tag '{image_tag}'", e)

        if not self.config.force_build:
            try:
                exists = self.client.image_exists(self.env_id, image_tag)
            except Exception as e:
                # Unknown existence is treated as absent; the build decides
                logger.debug("Existence check failed for %s", image_tag, exc_info=True)
                self.build_logger.log_warn(
                    f"Could not check if image exists for {name}: {e}"
                )
            else:
                if exists:
                    self.build_logger.log_service(
                        name, f"No changes detected; skipping build (image: {image_tag})"
                    )
                    return BuildResult.built(name, image_tag, skipped=True)

        if self.config.force_build:
            self.build_logger.log_service(
                name, "Force rebuild requested; rebuilding service (no-cache)"
            )
        else:
            self.build_logger.log_service(name, "Changes detected; triggering build")

        if self.strategy is None:
            return BuildResult.failed(
                name,
                ServiceBuildError(
                    f"unsupported build mode: {self.config.mode}",
                    code="unsupported_build_mode",
                ),
            )

        with gate if gate is not None else nullcontext():
            logger.debug("Build slot acquired for %s", name)
            return self.strategy.build(service, image_tag)

    def get_parallelism(self) -> int:
        """Determine how many services may build at once.

        'auto' uses the remote host's CPU count minus one; explicit values
        are used as given. The result is always at least 1.
        """
        parallel = str(self.config.parallel).strip()

        if parallel == PARALLEL_AUTO:
            try:
                info = self.client.get_host_info(self.env_id)
            except (PortainerAPIError, OSError) as e:
                # Remote host unknown: size from the local machine instead
                logger.debug("Host info unavailable, using local CPU count: %s", e)
                return _local_parallelism()

            ncpu = info.get(HOST_CPU_FIELD)
            if isinstance(ncpu, (int, float)) and not isinstance(ncpu, bool):
                return max(1, int(ncpu) - 1)

            # No CPU count reported: size from the local machine instead
            return _local_parallelism()

        try:
            value = int(parallel)
        except ValueError:
            # Unparseable values run sequentially rather than failing the run
            logger.debug("Invalid parallel value %r, building sequentially", parallel)
            return 1

        return max(1, value)


__all__ = ["HOST_CPU_FIELD", "BuildFailedError", "BuildOrchestrator"]
