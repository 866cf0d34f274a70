"""Interactive terminal shell."""

from .repl import ChatShell

__all__ = ["ChatShell"]
