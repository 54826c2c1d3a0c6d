"""Compose file parsing and transformation."""

from pctl.compose.parser import (
    ComposeError,
    find_services_with_build,
    parse_compose,
)
from pctl.compose.transformer import TransformResult, transform_compose

__all__ = [
    "ComposeError",
    "TransformResult",
    "find_services_with_build",
    "parse_compose",
    "transform_compose",
]
