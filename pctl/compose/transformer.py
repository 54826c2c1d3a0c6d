"""Compose file transformation.

Replaces `build:` directives with the `image:` tags produced by a build run
so the document can be deployed without building.
"""

from dataclasses import dataclass, field

import yaml

from pctl.compose.parser import ComposeError, compose_services, parse_compose


@dataclass
class TransformResult:
    """Result of transforming a Compose document.

    Attributes:
        content: Transformed Compose YAML.
        image_tags: Service name to image tag applied.
        services_modified: Services whose build directive was replaced.
    """

    content: str
    image_tags: dict[str, str] = field(default_factory=dict)
    services_modified: list[str] = field(default_factory=list)

    def summary(self) -> str:
        """Human-readable description of the replaced services."""
        if not self.services_modified:
            return "No services were transformed"
        lines = [f"Transformed {len(self.services_modified)} service(s):"]
        for name in self.services_modified:
            lines.append(f"  - {name}: build -> image: {self.image_tags[name]}")
        return "\n".join(lines)


def transform_compose(content: str, image_tags: dict[str, str]) -> TransformResult:
    """Replace build directives with image tags.

    Services without an entry in `image_tags` are left untouched. Key order
    of the original document is preserved.

    Args:
        content: Original Compose YAML.
        image_tags: Service name to image tag.

    Returns:
        TransformResult with the new document.

    Raises:
        ComposeError: If the content is invalid or a tag names an unknown
            service.
    """
    compose = parse_compose(content)
    services = compose_services(compose)

    modified: list[str] = []
    for name in sorted(image_tags):
        service = services.get(name)
        if service is None:
            raise ComposeError(
                f"service '{name}' not found in compose file", code="service_not_found"
            )
        if not isinstance(service, dict):
            raise ComposeError(
                f"service '{name}' is not a valid service definition",
                code="compose_invalid",
            )
        service.pop("build", None)
        service["image"] = image_tags[name]
        modified.append(name)

    result: str = yaml.dump(
        compose, default_flow_style=False, allow_unicode=True, sort_keys=False
    )
    return TransformResult(
        content=result, image_tags=dict(image_tags), services_modified=modified
    )


__all__ = ["TransformResult", "transform_compose"]
