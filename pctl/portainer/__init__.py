"""Portainer API access.

This module provides the Docker proxy client used for remote builds,
image uploads, existence checks, and host capability queries.
"""

from pctl.portainer.client import PortainerAPIError, PortainerClient, RemoteBuildClient

__all__ = ["PortainerAPIError", "PortainerClient", "RemoteBuildClient"]
