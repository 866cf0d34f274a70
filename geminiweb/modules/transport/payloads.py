"""Builders for the ``f.req`` form field of generate requests."""

import json
from typing import List, Optional, Sequence

from geminiweb.domain.attachments import UploadedFile
from geminiweb.domain.tokens import ContinuationTokens

# Number of null slots between the metadata and the gem id.
_GEM_PADDING = 16


def build_generate_payload(
    prompt: str,
    tokens: ContinuationTokens,
    attachments: Sequence[UploadedFile] = (),
    gem_id: Optional[str] = None,
) -> str:
    """Serialize one chat turn.

    Inner shape without files: ``[[prompt], null, [cid, rid, rcid]]``.
    With files the first slot becomes
    ``[prompt, 0, null, [[[resource_id], name], ...]]``.
    A gem id is appended after sixteen nulls. The inner list is JSON-encoded
    and wrapped as ``[null, "<inner>"]``.
    """
    metadata = tokens.as_list()
    if attachments:
        files = [[[item.resource_id], item.name] for item in attachments]
        inner: List = [[prompt, 0, None, files], None, metadata]
    else:
        inner = [[prompt], None, metadata]

    if gem_id:
        inner.extend([None] * _GEM_PADDING)
        inner.append(gem_id)

    return json.dumps([None, json.dumps(inner)])


def decode_generate_payload(payload: str) -> dict:
    """Inverse of ``build_generate_payload`` for logging and test assertions."""
    inner = json.loads(json.loads(payload)[1])
    head = inner[0]
    files = head[3] if len(head) > 3 and head[3] else []
    return {
        "prompt": head[0],
        "tokens": ContinuationTokens.from_sequence(inner[2] or []),
        "files": [(f[0][0], f[1]) for f in files],
        "gem_id": inner[-1] if len(inner) > 3 else None,
    }


def build_batch_payload(entries) -> str:
    """``[[[rpcid, payload, null, identifier], ...]]``"""
    return json.dumps([[entry.serialize() for entry in entries]])
