"""Sandbox provider implementations and interfaces."""

from capsule.providers.sandbox.base import SandboxProvider
from capsule.providers.sandbox.local import LocalProvider

__all__ = ["LocalProvider", "SandboxProvider"]
