"""Authenticated HTTP transport for the chat service."""

from .client import GeminiTransport
from .payloads import build_generate_payload, decode_generate_payload

__all__ = ["GeminiTransport", "build_generate_payload", "decode_generate_payload"]
