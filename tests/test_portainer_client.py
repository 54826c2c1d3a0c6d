"""Tests for the Portainer Docker proxy client.

These tests use mocked HTTP responses to test image checks, remote builds,
image loads, and error mapping.
"""

import json

import httpx
import pytest
import respx

from pctl.portainer.client import (
    API_KEY_HEADER,
    PortainerAPIError,
    PortainerClient,
    error_from_response,
    stream_error,
    validate_url,
)
from pctl.types import BuildOptions

BASE_URL = "https://portainer.example.com"
DOCKER = f"{BASE_URL}/api/endpoints/3/docker"


@pytest.fixture
def client():
    """Create a client for the test Portainer instance."""
    with PortainerClient(BASE_URL + "/", "secret-token") as portainer:
        yield portainer


def _lines(*items: dict) -> bytes:
    return b"".join(json.dumps(item).encode() + b"\n" for item in items)


class TestValidateUrl:
    """Tests for validate_url function."""

    def test_valid(self):
        """Should accept URLs with scheme and host."""
        assert validate_url("https://portainer.local:9443") == "https://portainer.local:9443"

    def test_missing_scheme(self):
        """Should reject URLs without a scheme."""
        with pytest.raises(ValueError, match="scheme"):
            validate_url("portainer.local")

    def test_missing_host(self):
        """Should reject URLs without a host."""
        with pytest.raises(ValueError, match="host"):
            validate_url("https://")


class TestErrorFromResponse:
    """Tests for error_from_response function."""

    def test_message_field(self):
        """Should use the JSON message field."""
        error = error_from_response(httpx.Response(500, json={"message": "engine down"}))
        assert str(error) == "API error: engine down"
        assert error.status_code == 500
        assert error.code == "http_error"

    def test_details_field(self):
        """Should fall back to the details field."""
        error = error_from_response(httpx.Response(404, json={"details": "no such env"}))
        assert "no such env" in str(error)
        assert error.code == "not_found"

    def test_plain_body(self):
        """Should include a non-JSON body."""
        error = error_from_response(httpx.Response(401, text="denied"))
        assert "denied" in str(error)
        assert error.code == "unauthorized"

    def test_empty_body(self):
        """Should report the status for an empty body."""
        error = error_from_response(httpx.Response(502))
        assert "502" in str(error)


class TestStreamError:
    """Tests for stream_error function."""

    def test_error_detail(self):
        """Should prefer errorDetail.message."""
        line = json.dumps({"errorDetail": {"message": "detail"}, "error": "short"})
        assert stream_error(line) == "detail"

    def test_error_field(self):
        """Should fall back to the error field."""
        assert stream_error(json.dumps({"error": "short"})) == "short"

    def test_non_error_lines(self):
        """Normal progress and plain text lines are not errors."""
        assert stream_error(json.dumps({"stream": "Step 1/2"})) is None
        assert stream_error("plain text") is None
        assert stream_error("{broken") is None


class TestImageExists:
    """Tests for PortainerClient.image_exists."""

    @respx.mock
    def test_exists(self, client: PortainerClient):
        """200 should mean the image exists."""
        route = respx.get(f"{DOCKER}/images/pctl-demo-web:abc123/json").mock(
            return_value=httpx.Response(200, json={"Id": "sha256:1"})
        )
        assert client.image_exists(3, "pctl-demo-web:abc123") is True
        assert route.calls.last.request.headers[API_KEY_HEADER] == "secret-token"

    @respx.mock
    def test_missing(self, client: PortainerClient):
        """404 should mean the image does not exist."""
        respx.get(f"{DOCKER}/images/pctl-demo-web:abc123/json").mock(
            return_value=httpx.Response(404, json={"message": "No such image"})
        )
        assert client.image_exists(3, "pctl-demo-web:abc123") is False

    @respx.mock
    def test_server_error(self, client: PortainerClient):
        """Other statuses should raise."""
        respx.get(f"{DOCKER}/images/app:1/json").mock(
            return_value=httpx.Response(500, json={"message": "boom"})
        )
        with pytest.raises(PortainerAPIError) as exc_info:
            client.image_exists(3, "app:1")
        assert exc_info.value.status_code == 500

    @respx.mock
    def test_network_error(self, client: PortainerClient):
        """Connection failures should raise network_error."""
        respx.get(f"{DOCKER}/images/app:1/json").mock(
            side_effect=httpx.ConnectError("refused")
        )
        with pytest.raises(PortainerAPIError) as exc_info:
            client.image_exists(3, "app:1")
        assert exc_info.value.code == "network_error"

    @respx.mock
    def test_timeout(self, client: PortainerClient):
        """Timeouts should raise with code timeout."""
        respx.get(f"{DOCKER}/images/app:1/json").mock(
            side_effect=httpx.ConnectTimeout("slow")
        )
        with pytest.raises(PortainerAPIError) as exc_info:
            client.image_exists(3, "app:1")
        assert exc_info.value.code == "timeout"


class TestGetHostInfo:
    """Tests for PortainerClient.get_host_info."""

    @respx.mock
    def test_returns_info(self, client: PortainerClient):
        """Should return the decoded docker info document."""
        respx.get(f"{DOCKER}/info").mock(
            return_value=httpx.Response(200, json={"NCPU": 8, "Name": "host"})
        )
        assert client.get_host_info(3)["NCPU"] == 8

    @respx.mock
    def test_error_status(self, client: PortainerClient):
        """Non-200 responses should raise."""
        respx.get(f"{DOCKER}/info").mock(return_value=httpx.Response(403))
        with pytest.raises(PortainerAPIError) as exc_info:
            client.get_host_info(3)
        assert exc_info.value.code == "unauthorized"

    @respx.mock
    def test_invalid_json(self, client: PortainerClient):
        """Undecodable responses should raise decode_error."""
        respx.get(f"{DOCKER}/info").mock(return_value=httpx.Response(200, text="nope"))
        with pytest.raises(PortainerAPIError) as exc_info:
            client.get_host_info(3)
        assert exc_info.value.code == "decode_error"


class TestBuildImage:
    """Tests for PortainerClient.build_image."""

    @respx.mock
    def test_streams_context_and_lines(self, client: PortainerClient):
        """Should upload the context and forward every output line."""
        captured: dict = {}

        def handler(request: httpx.Request) -> httpx.Response:
            captured["body"] = request.read()
            captured["params"] = dict(request.url.params)
            captured["content_type"] = request.headers["Content-Type"]
            return httpx.Response(
                200,
                content=_lines(
                    {"stream": "Step 1/2 : FROM alpine\n"},
                    {"aux": {"ID": "sha256:feed"}},
                ),
            )

        respx.post(f"{DOCKER}/build").mock(side_effect=handler)

        lines: list[str] = []
        options = BuildOptions(
            tag="pctl-demo-web:abc",
            build_args={"B": "2", "A": "1"},
            target="runtime",
            cache_from=["pctl-demo-web:prev"],
            no_cache=True,
        )
        client.build_image(3, iter([b"tar-", b"bytes"]), options, lines.append)

        assert captured["body"] == b"tar-bytes"
        assert captured["content_type"] == "application/x-tar"
        assert captured["params"] == {
            "t": "pctl-demo-web:abc",
            "dockerfile": "Dockerfile",
            "buildargs": '{"A": "1", "B": "2"}',
            "target": "runtime",
            "cachefrom": '["pctl-demo-web:prev"]',
            "nocache": "1",
        }
        assert len(lines) == 2
        assert "Step 1/2" in lines[0]

    @respx.mock
    def test_minimal_params(self, client: PortainerClient):
        """Optional parameters should be omitted when unset."""
        route = respx.post(f"{DOCKER}/build").mock(
            return_value=httpx.Response(200, content=b"")
        )
        client.build_image(3, iter([b"x"]), BuildOptions(tag="app:1"), lambda line: None)
        params = dict(route.calls.last.request.url.params)
        assert params == {"t": "app:1", "dockerfile": "Dockerfile"}

    @respx.mock
    def test_stream_error_raises(self, client: PortainerClient):
        """An error line in the stream should fail the build after forwarding."""
        respx.post(f"{DOCKER}/build").mock(
            return_value=httpx.Response(
                200,
                content=_lines(
                    {"stream": "Step 1/2\n"},
                    {"errorDetail": {"message": "RUN failed"}, "error": "RUN failed"},
                ),
            )
        )
        lines: list[str] = []
        with pytest.raises(PortainerAPIError) as exc_info:
            client.build_image(3, iter([b"x"]), BuildOptions(tag="app:1"), lines.append)
        assert str(exc_info.value) == "RUN failed"
        assert exc_info.value.code == "remote_error"
        assert len(lines) == 2

    @respx.mock
    def test_http_error(self, client: PortainerClient):
        """HTTP errors should raise with the API message."""
        respx.post(f"{DOCKER}/build").mock(
            return_value=httpx.Response(500, json={"message": "engine unavailable"})
        )
        with pytest.raises(PortainerAPIError, match="engine unavailable"):
            client.build_image(3, iter([b"x"]), BuildOptions(tag="app:1"), lambda line: None)


class TestLoadImage:
    """Tests for PortainerClient.load_image."""

    @respx.mock
    def test_uploads_archive(self, client: PortainerClient):
        """Should upload the archive and forward progress lines."""
        captured: dict = {}

        def handler(request: httpx.Request) -> httpx.Response:
            captured["body"] = request.read()
            captured["params"] = dict(request.url.params)
            return httpx.Response(
                200, content=_lines({"stream": "Loaded image: app:1\n"})
            )

        respx.post(f"{DOCKER}/images/load").mock(side_effect=handler)

        lines: list[str] = []
        client.load_image(3, iter([b"image", b"-archive"]), lines.append)

        assert captured["body"] == b"image-archive"
        assert captured["params"] == {"quiet": "0"}
        assert len(lines) == 1

    @respx.mock
    def test_load_error(self, client: PortainerClient):
        """An error line should fail the load."""
        respx.post(f"{DOCKER}/images/load").mock(
            return_value=httpx.Response(200, content=_lines({"error": "invalid tar"}))
        )
        with pytest.raises(PortainerAPIError, match="invalid tar"):
            client.load_image(3, iter([b"x"]), lambda line: None)


class TestClientConstruction:
    """Tests for PortainerClient construction."""

    def test_invalid_url(self):
        """Should reject invalid base URLs."""
        with pytest.raises(ValueError):
            PortainerClient("not-a-url", "token")

    def test_trailing_slash_stripped(self):
        """Base URL should be normalized."""
        with PortainerClient("https://p.example.com/", "token") as portainer:
            assert portainer.base_url == "https://p.example.com"
