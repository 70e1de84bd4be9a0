"""Test support for jmapc: an in-process remote."""

from .transport import InMemoryTransport

__all__ = ["InMemoryTransport"]
