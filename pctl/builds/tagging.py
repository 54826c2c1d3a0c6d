"""Image tag generation and validation.

Tags are rendered from a template containing any of the placeholders
`{{stack}}`, `{{service}}`, `{{hash}}` and `{{timestamp}}`. Templates are
validated up front so a bad `tag_format` fails before any build starts.
"""

from __future__ import annotations

import re
import time

DEFAULT_TAG_FORMAT = "pctl-{{stack}}-{{service}}:{{hash}}"

# Placeholder names recognised in tag templates
TEMPLATE_VARIABLES = ("stack", "service", "hash", "timestamp")

MAX_TAG_LENGTH = 128

# Values used to trial-render a template during validation
_SAMPLE_VALUES = {
    "stack": "test-stack",
    "service": "test-service",
    "hash": "abc123",
    "timestamp": "1234567890",
}

_TAG_SEGMENT_PATTERN = re.compile(r"^[A-Za-z0-9._-]+$")
_WHITESPACE = (" ", "\t", "\n", "\r")


class TagValidationError(ValueError):
    """Raised when a tag or tag template is invalid."""

    def __init__(self, message: str, code: str = "invalid_tag") -> None:
        super().__init__(message)
        self.code = code


def render_tag(
    template: str,
    stack: str,
    service: str,
    content_hash: str,
    timestamp: int | None = None,
) -> str:
    """Substitute the placeholders of a tag template.

    Unrecognised text, including unknown `{{...}}` tokens, passes through.

    Args:
        template: Tag template.
        stack: Stack name.
        service: Service name.
        content_hash: Content hash of the build context.
        timestamp: Unix seconds; defaults to the current time.

    Returns:
        Rendered tag.
    """
    if timestamp is None:
        timestamp = int(time.time())
    values = {
        "stack": stack,
        "service": service,
        "hash": content_hash,
        "timestamp": str(timestamp),
    }
    tag = template
    for name, value in values.items():
        tag = tag.replace("{{" + name + "}}", value)
    return tag


class TagGenerator:
    """Renders image tags for the services of one stack."""

    def __init__(self, stack_name: str, tag_format: str = DEFAULT_TAG_FORMAT) -> None:
        self.stack_name = stack_name
        self.tag_format = tag_format

    def generate_tag(self, service_name: str, content_hash: str) -> str:
        """Render the configured template for a service."""
        return render_tag(self.tag_format, self.stack_name, service_name, content_hash)


def validate_tag(tag: str) -> None:
    """Validate an image reference of the form `name[:version]`.

    Raises:
        TagValidationError: If the tag is empty, too long, contains whitespace,
            has more than one ':' or a segment with characters outside
            [A-Za-z0-9._-].
    """
    if not tag:
        raise TagValidationError("tag cannot be empty", code="empty_tag")

    if len(tag) > MAX_TAG_LENGTH:
        raise TagValidationError(
            f"tag too long: {len(tag)} characters (max {MAX_TAG_LENGTH})",
            code="tag_too_long",
        )

    for char in _WHITESPACE:
        if char in tag:
            raise TagValidationError(
                f"tag contains invalid character: {char!r}",
                code="invalid_tag_character",
            )

    parts = tag.split(":")
    if len(parts) > 2:
        raise TagValidationError(
            "tag has too many parts separated by ':' (max 2)",
            code="too_many_tag_parts",
        )

    for index, part in enumerate(parts, start=1):
        if not part:
            raise TagValidationError(f"tag part {index} is empty", code="empty_tag_part")
        if not _TAG_SEGMENT_PATTERN.match(part):
            bad = next(c for c in part if not _TAG_SEGMENT_PATTERN.match(c))
            raise TagValidationError(
                f"tag part {index} contains invalid character: {bad!r}",
                code="invalid_tag_character",
            )


def validate_tag_format(template: str) -> None:
    """Validate a tag template.

    Checks that every `{{...}}` token is closed and names a known variable,
    then trial-renders the template and validates the result as a tag.

    Raises:
        TagValidationError: If the template is invalid.
    """
    if not template:
        raise TagValidationError("tag format cannot be empty", code="empty_tag_format")

    remaining = template
    while (start := remaining.find("{{")) != -1:
        end = remaining.find("}}", start)
        if end == -1:
            raise TagValidationError(
                "unclosed template variable in tag format",
                code="unclosed_template_variable",
            )
        name = remaining[start + 2 : end]
        if name not in TEMPLATE_VARIABLES:
            valid = ", ".join("{{" + v + "}}" for v in TEMPLATE_VARIABLES)
            raise TagValidationError(
                f"invalid template variable: {{{{{name}}}}} (valid variables: {valid})",
                code="unknown_template_variable",
            )
        remaining = remaining[end + 2 :]

    sample = render_tag(
        template,
        _SAMPLE_VALUES["stack"],
        _SAMPLE_VALUES["service"],
        _SAMPLE_VALUES["hash"],
        int(_SAMPLE_VALUES["timestamp"]),
    )
    try:
        validate_tag(sample)
    except TagValidationError as e:
        raise TagValidationError(
            f"tag format produces invalid tag: {e}",
            code="invalid_tag_format",
        ) from e


__all__ = [
    "DEFAULT_TAG_FORMAT",
    "MAX_TAG_LENGTH",
    "TEMPLATE_VARIABLES",
    "TagGenerator",
    "TagValidationError",
    "render_tag",
    "validate_tag",
    "validate_tag_format",
]
