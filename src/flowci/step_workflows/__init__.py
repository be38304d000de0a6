"""Backends that execute `run` steps: the host shell or a Docker container."""

from .docker import DockerBackend
from .shell import LocalBackend, ProcessResult

__all__ = ["DockerBackend", "LocalBackend", "ProcessResult"]
