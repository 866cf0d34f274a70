"""Response envelope decoding."""

from .envelope import (
    ParsedResponse,
    decode_batch,
    encode_envelope,
    iter_frames,
    parse_response,
)

__all__ = [
    "ParsedResponse",
    "decode_batch",
    "encode_envelope",
    "iter_frames",
    "parse_response",
]
