"""Compose file parsing.

This module extracts the services that carry a `build:` directive from a
Compose document and resolves their build contexts.
"""

from pathlib import Path
from typing import Any

import yaml

from pctl.types import DEFAULT_DOCKERFILE, BuildDirective, ServiceBuildInfo


class ComposeError(Exception):
    """Raised when a Compose document cannot be parsed or transformed."""

    def __init__(self, message: str, code: str = "compose_error") -> None:
        super().__init__(message)
        self.code = code


def parse_compose(content: str) -> dict[str, Any]:
    """Parse Compose YAML content.

    Args:
        content: Compose document text.

    Returns:
        Parsed document as a dictionary.

    Raises:
        ComposeError: If the content is not valid YAML or not a mapping.
    """
    try:
        data = yaml.safe_load(content)
    except yaml.YAMLError as e:
        raise ComposeError(
            f"failed to parse compose file: {e}", code="compose_invalid"
        ) from e
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ComposeError(
            f"Expected a YAML mapping, got {type(data).__name__}",
            code="compose_invalid",
        )
    return data


def compose_services(compose: dict[str, Any]) -> dict[str, Any]:
    """Return the `services` mapping of a parsed Compose document."""
    services = compose.get("services") or {}
    if not isinstance(services, dict):
        raise ComposeError("'services' must be a mapping", code="compose_invalid")
    return services


def _build_args(value: Any) -> dict[str, str]:
    # Compose accepts both `KEY: value` mappings and `- KEY=value` lists
    if isinstance(value, dict):
        return {
            str(key): "" if item is None else str(item) for key, item in value.items()
        }
    if isinstance(value, list):
        args: dict[str, str] = {}
        for item in value:
            key, _, item_value = str(item).partition("=")
            args[key] = item_value
        return args
    return {}


def _build_directive(service_name: str, build: Any) -> BuildDirective:
    if isinstance(build, str):
        return BuildDirective(context=build or ".")

    if not isinstance(build, dict):
        raise ComposeError(
            f"invalid build directive format for service '{service_name}'",
            code="compose_invalid",
        )

    cache_from = build.get("cache_from") or []
    return BuildDirective(
        context=str(build.get("context") or "."),
        dockerfile=str(build.get("dockerfile") or DEFAULT_DOCKERFILE),
        args=_build_args(build.get("args")),
        target=str(build["target"]) if build.get("target") else None,
        cache_from=[str(item) for item in cache_from if isinstance(item, str)],
    )


def find_services_with_build(
    compose: dict[str, Any], base_dir: Path
) -> list[ServiceBuildInfo]:
    """Find services with build directives.

    Args:
        compose: Parsed Compose document.
        base_dir: Directory that relative build contexts are resolved against
            (the Compose file's directory).

    Returns:
        Services with build directives, sorted by service name.

    Raises:
        ComposeError: If a build directive has an invalid shape.
    """
    found: list[ServiceBuildInfo] = []
    for name, service in sorted(compose_services(compose).items()):
        if not isinstance(service, dict) or "build" not in service:
            continue
        directive = _build_directive(name, service["build"])
        context_path = (Path(base_dir) / directive.context).resolve()
        found.append(
            ServiceBuildInfo(
                service_name=name, build=directive, context_path=context_path
            )
        )
    return found


__all__ = [
    "ComposeError",
    "compose_services",
    "find_services_with_build",
    "parse_compose",
]
