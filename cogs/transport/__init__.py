"""Clients for collaborators outside the broker process."""

from .docker import ContainerSummary, DockerClient

__all__ = ["ContainerSummary", "DockerClient"]
