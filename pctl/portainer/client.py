"""Portainer Docker proxy client.

This module handles:
- Checking whether an image tag exists on a remote engine
- Remote builds from a streamed context archive
- Loading a locally built image archive into a remote engine
- Querying remote host information (CPU count)

All calls go through Portainer's Docker proxy at
`/api/endpoints/{env_id}/docker/...` and authenticate with an API key.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Iterable
from typing import Any, Protocol
from urllib.parse import quote, urlparse

import httpx

from pctl.types import BuildOptions, LineCallback

logger = logging.getLogger(__name__)

# Timeout for short API requests (seconds)
DEFAULT_TIMEOUT = 30.0

API_KEY_HEADER = "X-API-Key"

TAR_CONTENT_TYPE = "application/x-tar"


class PortainerAPIError(Exception):
    """Raised when a Portainer or Docker proxy request fails."""

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        code: str = "api_error",
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.code = code


class RemoteBuildClient(Protocol):
    """Remote engine operations needed by the build orchestrator."""

    def image_exists(self, env_id: int, tag: str) -> bool: ...

    def build_image(
        self,
        env_id: int,
        context: Iterable[bytes],
        options: BuildOptions,
        on_log_line: LineCallback,
    ) -> None: ...

    def load_image(
        self,
        env_id: int,
        archive: Iterable[bytes],
        on_progress_line: LineCallback,
    ) -> None: ...

    def get_host_info(self, env_id: int) -> dict[str, Any]: ...


def validate_url(url: str) -> str:
    """Validate a Portainer base URL.

    Raises:
        ValueError: If the URL lacks a scheme or host.
    """
    parsed = urlparse(url)
    if not parsed.scheme:
        raise ValueError("URL must include scheme (http:// or https://)")
    if not parsed.netloc:
        raise ValueError("URL must include host")
    return url


def _status_code(code: int) -> str:
    if code == 404:
        return "not_found"
    if code in (401, 403):
        return "unauthorized"
    return "http_error"


def error_from_response(response: httpx.Response) -> PortainerAPIError:
    """Build a PortainerAPIError from an unsuccessful response.

    The response body must already be read.
    """
    status = response.status_code
    code = _status_code(status)
    body = response.text.strip()
    if not body:
        return PortainerAPIError(
            f"API request failed with status {status}", status_code=status, code=code
        )

    try:
        data = json.loads(body)
    except json.JSONDecodeError:
        return PortainerAPIError(
            f"API request failed with status {status}: {body}",
            status_code=status,
            code=code,
        )

    if isinstance(data, dict):
        message = data.get("message") or data.get("details")
        if message:
            return PortainerAPIError(
                f"API error: {message}", status_code=status, code=code
            )

    return PortainerAPIError(
        f"API request failed with status {status}", status_code=status, code=code
    )


def stream_error(line: str) -> str | None:
    """Extract the error message from a Docker JSON progress line, if any."""
    line = line.strip()
    if not line.startswith("{"):
        return None
    try:
        data = json.loads(line)
    except json.JSONDecodeError:
        return None
    if not isinstance(data, dict):
        return None

    detail = data.get("errorDetail")
    if isinstance(detail, dict) and detail.get("message"):
        return str(detail["message"])
    if data.get("error"):
        return str(data["error"])
    return None


class PortainerClient:
    """Docker proxy client for one Portainer instance."""

    def __init__(
        self,
        base_url: str,
        api_token: str,
        skip_tls_verify: bool = True,
        timeout: float = DEFAULT_TIMEOUT,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        validate_url(base_url)
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._client = httpx.Client(
            base_url=self.base_url,
            headers={API_KEY_HEADER: api_token, "Accept": "application/json"},
            verify=not skip_tls_verify,
            timeout=timeout,
            transport=transport,
        )

    def close(self) -> None:
        self._client.close()

    def __enter__(self) -> PortainerClient:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    @staticmethod
    def _docker_path(env_id: int, path: str) -> str:
        return f"/api/endpoints/{env_id}/docker/{path.lstrip('/')}"

    def _request(self, method: str, path: str, action: str) -> httpx.Response:
        try:
            return self._client.request(method, path)
        except httpx.TimeoutException as e:
            raise PortainerAPIError(f"Timeout {action}", code="timeout") from e
        except httpx.RequestError as e:
            raise PortainerAPIError(
                f"Network error {action}: {e}", code="network_error"
            ) from e

    def image_exists(self, env_id: int, tag: str) -> bool:
        """Check whether an image tag exists on the remote engine.

        Raises:
            PortainerAPIError: If the engine cannot be queried.
        """
        path = self._docker_path(env_id, f"images/{quote(tag, safe=':/')}/json")
        response = self._request("GET", path, f"checking image {tag}")

        if response.status_code == 200:
            return True
        if response.status_code == 404:
            return False
        raise error_from_response(response)

    def get_host_info(self, env_id: int) -> dict[str, Any]:
        """Return the remote engine's `docker info` document.

        Raises:
            PortainerAPIError: If the request fails.
        """
        response = self._request(
            "GET", self._docker_path(env_id, "info"), "fetching host info"
        )
        if response.status_code != 200:
            raise error_from_response(response)
        try:
            data = response.json()
        except json.JSONDecodeError as e:
            raise PortainerAPIError(
                "Failed to decode host info response", code="decode_error"
            ) from e
        if not isinstance(data, dict):
            raise PortainerAPIError("Unexpected host info response", code="decode_error")
        return data

    def build_image(
        self,
        env_id: int,
        context: Iterable[bytes],
        options: BuildOptions,
        on_log_line: LineCallback,
    ) -> None:
        """Build an image on the remote engine from a tar context stream.

        Every output line is passed to `on_log_line`.

        Raises:
            PortainerAPIError: If the request fails or the build reports an error.
        """
        params: dict[str, str] = {"t": options.tag, "dockerfile": options.dockerfile}
        if options.build_args:
            params["buildargs"] = json.dumps(options.build_args, sort_keys=True)
        if options.target:
            params["target"] = options.target
        if options.cache_from:
            params["cachefrom"] = json.dumps(options.cache_from)
        if options.no_cache:
            params["nocache"] = "1"

        logger.info("Remote build of %s on environment %d", options.tag, env_id)
        self._stream_lines(
            self._docker_path(env_id, "build"),
            params=params,
            content=context,
            on_line=on_log_line,
            action="building image",
        )

    def load_image(
        self,
        env_id: int,
        archive: Iterable[bytes],
        on_progress_line: LineCallback,
    ) -> None:
        """Upload an image archive into the remote engine.

        Raises:
            PortainerAPIError: If the request fails or the engine reports an error.
        """
        logger.info("Loading image archive into environment %d", env_id)
        self._stream_lines(
            self._docker_path(env_id, "images/load"),
            params={"quiet": "0"},
            content=archive,
            on_line=on_progress_line,
            action="loading image",
        )

    def _stream_lines(
        self,
        path: str,
        params: dict[str, str],
        content: Iterable[bytes],
        on_line: LineCallback,
        action: str,
    ) -> None:
        # Builds can be silent for a long time; only bound the connect phase
        timeout = httpx.Timeout(None, connect=self.timeout)
        error_message: str | None = None

        try:
            with self._client.stream(
                "POST",
                path,
                params=params,
                content=content,
                headers={"Content-Type": TAR_CONTENT_TYPE},
                timeout=timeout,
            ) as response:
                if response.status_code >= 400:
                    response.read()
                    raise error_from_response(response)

                for line in response.iter_lines():
                    if not line.strip():
                        continue
                    on_line(line)
                    if error_message is None:
                        error_message = stream_error(line)

        except httpx.TimeoutException as e:
            raise PortainerAPIError(f"Timeout {action}", code="timeout") from e
        except httpx.RequestError as e:
            raise PortainerAPIError(
                f"Network error {action}: {e}", code="network_error"
            ) from e

        if error_message is not None:
            raise PortainerAPIError(error_message, code="remote_error")


__all__ = [
    "API_KEY_HEADER",
    "DEFAULT_TIMEOUT",
    "PortainerAPIError",
    "PortainerClient",
    "RemoteBuildClient",
    "error_from_response",
    "stream_error",
    "validate_url",
]
