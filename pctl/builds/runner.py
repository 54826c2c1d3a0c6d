"""Local build runner for load mode.

This module handles:
- Composing `docker buildx build` commands from service build directives
- Running the build with the image archive streamed on stdout
- Forwarding stderr progress lines to a callback
- Reporting nonzero exits and timeouts as BuildExecutionError
"""

from __future__ import annotations

import logging
import shlex
import subprocess
import threading
from collections.abc import Iterator, Sequence
from types import TracebackType

from pctl.types import DEFAULT_DOCKERFILE, LineCallback, ServiceBuildInfo

logger = logging.getLogger(__name__)

DEFAULT_DOCKER_COMMAND = ("docker",)

# Chunk size when reading the exported image archive
ARCHIVE_CHUNK_SIZE = 64 * 1024  # 64 KB


class BuildExecutionError(Exception):
    """Raised when a local build fails to start or exits unsuccessfully."""

    def __init__(
        self,
        message: str,
        exit_code: int | None = None,
        code: str = "build_error",
    ) -> None:
        super().__init__(message)
        self.exit_code = exit_code
        self.code = code


def merge_build_args(
    service_args: dict[str, str] | None,
    extra_build_args: dict[str, str] | None,
) -> dict[str, str]:
    """Merge service build args with global overrides (overrides win)."""
    merged = dict(service_args or {})
    if extra_build_args:
        merged.update(extra_build_args)
    return merged


def compose_buildx_command(
    service: ServiceBuildInfo,
    image_tag: str,
    platforms: Sequence[str] | None = None,
    extra_build_args: dict[str, str] | None = None,
    no_cache: bool = False,
    docker_command: Sequence[str] = DEFAULT_DOCKER_COMMAND,
) -> list[str]:
    """Compose the `docker buildx build` command for a service.

    The image is exported as a docker archive on stdout; progress goes to
    stderr in plain format.

    Args:
        service: Service to build.
        image_tag: Tag applied to the image.
        platforms: Target platforms.
        extra_build_args: Global build arg overrides.
        no_cache: Disable the build cache.
        docker_command: Docker executable (and any leading arguments).

    Returns:
        Command as list of strings suitable for subprocess.
    """
    cmd = [*docker_command, "buildx", "build"]

    for platform in platforms or ():
        cmd.extend(["--platform", platform])

    cmd.extend(["--output", "type=docker,dest=-"])
    cmd.extend(["--progress", "plain"])
    cmd.extend(["-t", image_tag])

    if no_cache:
        cmd.append("--no-cache")

    for key, value in merge_build_args(service.build.args, extra_build_args).items():
        cmd.extend(["--build-arg", f"{key}={value}"])

    if service.build.target:
        cmd.extend(["--target", service.build.target])

    for source in service.build.cache_from:
        cmd.extend(["--cache-from", source])

    dockerfile = service.build.dockerfile or DEFAULT_DOCKERFILE
    if dockerfile != DEFAULT_DOCKERFILE:
        cmd.extend(["-f", str(service.context_path / dockerfile)])

    cmd.append(str(service.context_path))
    return cmd


class LocalBuild:
    """A running local build whose stdout is the exported image archive."""

    def __init__(
        self,
        process: subprocess.Popen[bytes],
        command: str,
        on_log_line: LineCallback,
    ) -> None:
        self.command = command
        self._process = process
        self._stderr_thread = threading.Thread(
            target=self._pump_stderr,
            args=(on_log_line,),
            name=f"buildx-stderr-{process.pid}",
            daemon=True,
        )
        self._stderr_thread.start()

    def _pump_stderr(self, on_log_line: LineCallback) -> None:
        stderr = self._process.stderr
        if stderr is None:
            return
        for raw in stderr:
            on_log_line(raw.decode("utf-8", errors="replace").rstrip("\r\n"))

    def iter_archive(self, chunk_size: int = ARCHIVE_CHUNK_SIZE) -> Iterator[bytes]:
        """Yield the image archive, then raise if the build failed.

        Raises:
            BuildExecutionError: After the last chunk, if the build exited nonzero.
        """
        stdout = self._process.stdout
        if stdout is not None:
            while chunk := stdout.read(chunk_size):
                yield chunk
        self.wait()

    def wait(self, timeout: float | None = None) -> int:
        """Wait for the build to exit.

        Returns:
            The exit code (always 0).

        Raises:
            BuildExecutionError: On nonzero exit or timeout.
        """
        try:
            exit_code = self._process.wait(timeout=timeout)
        except subprocess.TimeoutExpired as e:
            self.terminate()
            raise BuildExecutionError(
                f"Build timed out after {timeout} seconds",
                exit_code=-1,
                code="build_timeout",
            ) from e

        self._stderr_thread.join()
        if exit_code != 0:
            raise BuildExecutionError(
                f"docker buildx build failed with exit code {exit_code}",
                exit_code=exit_code,
                code="build_failed",
            )
        return exit_code

    @property
    def running(self) -> bool:
        return self._process.poll() is None

    def terminate(self) -> None:
        """Kill the build if it is still running."""
        if self.running:
            logger.debug("Killing local build: %s", self.command)
            self._process.kill()
            self._process.wait()

    def close(self) -> None:
        """Release the process pipes, killing the build if unfinished."""
        self.terminate()
        self._stderr_thread.join()
        for stream in (self._process.stdout, self._process.stderr):
            if stream is not None:
                stream.close()

    def __enter__(self) -> LocalBuild:
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        self.close()


class LocalBuildRunner:
    """Starts local `docker buildx build` processes."""

    def __init__(self, docker_command: Sequence[str] = DEFAULT_DOCKER_COMMAND) -> None:
        self.docker_command = tuple(docker_command)

    def start(
        self,
        service: ServiceBuildInfo,
        image_tag: str,
        on_log_line: LineCallback,
        platforms: Sequence[str] | None = None,
        extra_build_args: dict[str, str] | None = None,
        no_cache: bool = False,
    ) -> LocalBuild:
        """Start a local build for a service.

        Raises:
            BuildExecutionError: If the build process cannot be started.
        """
        cmd = compose_buildx_command(
            service,
            image_tag,
            platforms=platforms,
            extra_build_args=extra_build_args,
            no_cache=no_cache,
            docker_command=self.docker_command,
        )
        cmd_str = shlex.join(cmd)
        logger.info("Executing local build: %s", cmd_str)

        try:
            process = subprocess.Popen(
                cmd,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
            )
        except OSError as e:
            raise BuildExecutionError(
                f"Failed to execute build: {e}",
                exit_code=None,
                code="execution_error",
            ) from e

        return LocalBuild(process, cmd_str, on_log_line)


__all__ = [
    "ARCHIVE_CHUNK_SIZE",
    "DEFAULT_DOCKER_COMMAND",
    "BuildExecutionError",
    "LocalBuild",
    "LocalBuildRunner",
    "compose_buildx_command",
    "merge_build_args",
]
