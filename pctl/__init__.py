"""pctl - build Compose services into immutable images for Portainer stacks.

This package turns the build directives of a Compose file into content-addressed
image tags, builds them on (or uploads them to) a remote Docker engine behind
Portainer, and rewrites the Compose file to reference the resulting images.
"""

__version__ = "0.1.0"
__all__ = ["__version__"]
