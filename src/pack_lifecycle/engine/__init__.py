"""Container engine access."""

from .base import Engine
from .docker import DockerEngine

__all__ = ["DockerEngine", "Engine"]
