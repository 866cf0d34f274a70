"""Interfaces (ports) the application layer depends on."""

from .backend import ChatBackend, RPCEntry

__all__ = ["ChatBackend", "RPCEntry"]
