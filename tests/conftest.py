"""Shared fixtures for build tests."""

import threading
import time
from collections.abc import Callable, Iterable
from pathlib import Path
from typing import Any

import pytest

from pctl.portainer.client import PortainerAPIError
from pctl.types import BuildDirective, BuildOptions, ServiceBuildInfo


class FakeRemoteClient:
    """In-memory stand-in for the Portainer client.

    Consumes uploaded streams, records calls, and fails builds
    for the configured service names. With `fail_loads` set, every image
    upload is rejected after the first archive chunk.
    """

    def __init__(
        self,
        existing: Iterable[str] = (),
        fail_services: Iterable[str] = (),
        host_info: dict[str, Any] | Exception | None = None,
        exists_error: Exception | None = None,
        build_delay: float = 0.0,
        fail_loads: bool = False,
        load_delay: float = 0.0,
    ) -> None:
        self.existing = set(existing)
        self.fail_services = set(fail_services)
        self.host_info = host_info if host_info is not None else {"NCPU": 4}
        self.exists_error = exists_error
        self.build_delay = build_delay
        self.fail_loads = fail_loads
        self.load_delay = load_delay

        self.exists_calls: list[str] = []
        self.builds: list[tuple[BuildOptions, bytes]] = []
        self.loads: list[bytes] = []
        self.active = 0
        self.max_active = 0
        self._lock = threading.Lock()

    def __enter__(self) -> "FakeRemoteClient":
        return self

    def __exit__(self, *exc_info: object) -> None:
        pass

    def image_exists(self, env_id: int, tag: str) -> bool:
        with self._lock:
            self.exists_calls.append(tag)
        if self.exists_error is not None:
            raise self.exists_error
        return tag in self.existing

    def _enter(self) -> None:
        with self._lock:
            self.active += 1
            self.max_active = max(self.max_active, self.active)

    def _leave(self) -> None:
        with self._lock:
            self.active -= 1

    def build_image(
        self,
        env_id: int,
        context: Iterable[bytes],
        options: BuildOptions,
        on_log_line: Callable[[str], None],
    ) -> None:
        self._enter()
        try:
            data = b"".join(context)
            if self.build_delay:
                time.sleep(self.build_delay)
            on_log_line('{"stream":"Step 1/1 : FROM scratch\\n"}')
            with self._lock:
                self.builds.append((options, data))
            for name in self.fail_services:
                if f"-{name}:" in options.tag:
                    raise PortainerAPIError(
                        f"build of {name} exploded", code="remote_error"
                    )
        finally:
            self._leave()

    def load_image(
        self,
        env_id: int,
        archive: Iterable[bytes],
        on_progress_line: Callable[[str], None],
    ) -> None:
        self._enter()
        try:
            if self.fail_loads:
                # Reject mid-stream, as the engine does for a truncated archive
                first = next(iter(archive), b"")
                with self._lock:
                    self.loads.append(first)
                time.sleep(self.load_delay)
                raise PortainerAPIError(
                    "API request failed with status 500: invalid archive",
                    status_code=500,
                    code="http_error",
                )
            data = b"".join(archive)
            with self._lock:
                self.loads.append(data)
            on_progress_line('{"stream":"Loaded image\\n"}')
        finally:
            self._leave()

    def get_host_info(self, env_id: int) -> dict[str, Any]:
        if isinstance(self.host_info, Exception):
            raise self.host_info
        return self.host_info


class RecordingBuildLogger:
    """Collects build log calls as (kind, service, message) tuples."""

    def __init__(self) -> None:
        self.records: list[tuple[str, str | None, str]] = []
        self._lock = threading.Lock()

    def _add(self, kind: str, service: str | None, message: str) -> None:
        with self._lock:
            self.records.append((kind, service, message))

    def log_service(self, service_name: str, message: str) -> None:
        self._add("service", service_name, message)

    def log_info(self, message: str) -> None:
        self._add("info", None, message)

    def log_warn(self, message: str) -> None:
        self._add("warn", None, message)

    def log_error(self, message: str) -> None:
        self._add("error", None, message)

    def messages(self, kind: str) -> list[str]:
        return [message for k, _, message in self.records if k == kind]


@pytest.fixture
def make_client() -> type[FakeRemoteClient]:
    """Factory creating in-memory remote clients."""
    return FakeRemoteClient


@pytest.fixture
def build_logger() -> RecordingBuildLogger:
    """Create a recording build logger."""
    return RecordingBuildLogger()


@pytest.fixture
def make_service(tmp_path: Path) -> Callable[..., ServiceBuildInfo]:
    """Factory creating a service with its own build context."""

    def factory(
        name: str,
        content: str = "hello",
        args: dict[str, str] | None = None,
    ) -> ServiceBuildInfo:
        context = tmp_path / name
        context.mkdir(exist_ok=True)
        (context / "Dockerfile").write_text(f"FROM scratch\nCOPY app.txt /{name}\n")
        (context / "app.txt").write_text(content)
        return ServiceBuildInfo(
            service_name=name,
            build=BuildDirective(context=f"./{name}", args=args or {}),
            context_path=context,
        )

    return factory
