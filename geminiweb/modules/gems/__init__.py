"""Gem (persona) registry."""

from .registry import GemRegistry, parse_gems

__all__ = ["GemRegistry", "parse_gems"]
