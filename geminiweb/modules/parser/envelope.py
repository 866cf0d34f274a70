"""Decoder for the chat service's response envelope.

Wire shape of a generate response::

    )]}'

    1234
    [["wrb.fr",null,"<payload json>"], ...]
    56
    [["di",123],["af.httprm",...]]

Each frame is a JSON array; slot 2 of an element holds a JSON-encoded
payload string. Inside the payload, slot 1 is the continuation metadata
``[cid, rid, rcid?]`` and slot 4 the candidate list.

Unknown slots and unexpected leaf types are ignored. Missing mandatory
slots raise ``ParseError``.
"""

import json
import logging
import re
from dataclasses import dataclass
from typing import Any, Iterator, List, Optional

from geminiweb.core.log_sanitizer import sanitize_for_logging
from geminiweb.domain.errors import (
    ModelHeaderInvalidError,
    ModelInconsistentError,
    ParseError,
    PromptTooLongError,
    ProtocolError,
    RateLimitedError,
)
from geminiweb.domain.responses.models import (
    Candidate,
    GeneratedImage,
    ModelOutput,
    WebImage,
)
from geminiweb.domain.tokens import ContinuationTokens

logger = logging.getLogger(__name__)

SENTINEL = ")]}'"

# Slot paths inside a frame / payload / candidate.
PATH_ERROR_CODE = (0, 5, 2, 0, 1, 0)
PATH_ALT_ERROR_CODE = (0, 5, 0)
PATH_BODY = (2,)
PATH_METADATA = (1,)
PATH_CANDIDATES = (4,)
PATH_CAND_RCID = (0,)
PATH_CAND_TEXT = (1, 0)
PATH_CAND_TEXT_ALT = (22, 0)
PATH_CAND_THOUGHTS = (37, 0, 0)
PATH_CAND_WEB_IMAGES = (12, 1)
PATH_CAND_GEN_IMAGES = (12, 7, 0)
PATH_WEB_IMG_URL = (0, 0, 0)
PATH_WEB_IMG_TITLE = (7, 0)
PATH_WEB_IMG_ALT = (0, 4)
PATH_GEN_IMG_URL = (0, 3, 3)
PATH_GEN_IMG_NUM = (3, 6)
PATH_GEN_IMG_ALTS = (3, 5)

_CARD_CONTENT_RE = re.compile(r"^http://googleusercontent\.com/card_content/\d+")
_GEN_TITLE_RE = re.compile(r"^\[Generated Image (\S+)\]$")

_CANDIDATE_WIDTH = 38


@dataclass
class ParsedResponse:
    """Result of decoding one generate response."""
    output: ModelOutput
    tokens: ContinuationTokens


def get_path(node: Any, path) -> Any:
    """Walk nested lists by index; ``None`` when any step is missing."""
    for index in path:
        if not isinstance(node, list) or index >= len(node):
            return None
        node = node[index]
    return node


def _as_str(value: Any) -> str:
    if isinstance(value, str):
        return value
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return str(value)
    return ""


def iter_frames(body: str) -> Iterator[list]:
    """Yield every line of ``body`` that decodes to a JSON array.

    The sentinel, blank lines and length prefixes are skipped, as is any
    line that is not valid JSON.
    """
    for raw in body.splitlines():
        line = raw.strip()
        if not line or line in (SENTINEL, ")]}"):
            continue
        try:
            frame = json.loads(line)
        except ValueError:
            continue
        if isinstance(frame, list):
            yield frame


def _load_payload(element: Any) -> Optional[list]:
    raw = get_path(element, PATH_BODY)
    if not isinstance(raw, str):
        return None
    try:
        payload = json.loads(raw)
    except ValueError:
        return None
    return payload if isinstance(payload, list) else None


def service_error(code: int) -> Exception:
    """Map a numeric service error code to a domain error."""
    code_str = str(code)
    if code == 1037:
        return RateLimitedError("Usage limit exceeded for this model", code=code_str)
    if code == 1060:
        return RateLimitedError("Requests from this IP are temporarily blocked", code=code_str)
    if code == 1050:
        return ModelInconsistentError(
            "Model is inconsistent with the conversation history", code=code_str
        )
    if code == 1052:
        return ModelHeaderInvalidError("Model header is invalid or unavailable", code=code_str)
    if code == 3:
        return PromptTooLongError("Prompt is too long", code=code_str)
    return ProtocolError(f"Service returned error code {code}", code=code_str)


def _frame_error_code(frame: list) -> int:
    for path in (PATH_ALT_ERROR_CODE, PATH_ERROR_CODE):
        value = get_path(frame, path)
        if isinstance(value, int) and not isinstance(value, bool) and value > 0:
            return value
    return 0


def _has_text(candidates: list) -> bool:
    return any(_as_str(get_path(c, PATH_CAND_TEXT)) for c in candidates)


def _parse_web_images(candidate: list) -> List[WebImage]:
    images = []
    entries = get_path(candidate, PATH_CAND_WEB_IMAGES)
    for entry in entries if isinstance(entries, list) else []:
        url = _as_str(get_path(entry, PATH_WEB_IMG_URL))
        if not url:
            continue
        images.append(WebImage(
            url=url,
            title=_as_str(get_path(entry, PATH_WEB_IMG_TITLE)),
            alt=_as_str(get_path(entry, PATH_WEB_IMG_ALT)),
        ))
    return images


def _parse_generated_images(candidate: list) -> List[GeneratedImage]:
    images = []
    entries = get_path(candidate, PATH_CAND_GEN_IMAGES)
    for idx, entry in enumerate(entries if isinstance(entries, list) else []):
        url = _as_str(get_path(entry, PATH_GEN_IMG_URL))
        if not url:
            continue
        number = _as_str(get_path(entry, PATH_GEN_IMG_NUM))
        title = f"[Generated Image {number}]" if number else "[Generated Image]"
        alts = get_path(entry, PATH_GEN_IMG_ALTS)
        alt = ""
        if isinstance(alts, list) and alts:
            alt = _as_str(alts[idx] if idx < len(alts) else alts[0])
        images.append(GeneratedImage(url=url, title=title, alt=alt))
    return images


def _parse_candidate(raw: Any) -> Optional[Candidate]:
    if not isinstance(raw, list):
        return None
    rcid = _as_str(get_path(raw, PATH_CAND_RCID))
    if not rcid:
        return None

    text = _as_str(get_path(raw, PATH_CAND_TEXT))
    if _CARD_CONTENT_RE.match(text):
        text = _as_str(get_path(raw, PATH_CAND_TEXT_ALT)) or text

    return Candidate(
        rcid=rcid,
        text=text,
        thoughts=_as_str(get_path(raw, PATH_CAND_THOUGHTS)) or None,
        web_images=_parse_web_images(raw),
        generated_images=_parse_generated_images(raw),
    )


def parse_response(body: str) -> ParsedResponse:
    """Decode a generate response into a ``ModelOutput`` and received tokens.

    When several frames carry candidates (the service streams growing
    snapshots), the last one with text wins. Service error codes found
    before any usable payload are raised as their mapped domain error.

    Raises:
        ParseError: no payload with a candidate list, or no candidate with
            an rcid.
        RateLimitedError, ProtocolError: the envelope carries an error code.
    """
    payload = None
    last_error: Optional[Exception] = None

    for frame in iter_frames(body):
        code = _frame_error_code(frame)
        if code:
            last_error = service_error(code)
            continue
        for element in frame:
            candidate_payload = _load_payload(element)
            if candidate_payload is None:
                continue
            candidates = get_path(candidate_payload, PATH_CANDIDATES)
            if isinstance(candidates, list) and _has_text(candidates):
                payload = candidate_payload

    if payload is None:
        if last_error is not None:
            raise last_error
        logger.warning("No response payload found in %d bytes of response", len(body))
        raise ParseError("No response body found in envelope", code="body")

    candidates = [c for c in map(_parse_candidate, get_path(payload, PATH_CANDIDATES)) if c]
    if not candidates:
        raise ParseError("No valid candidates found", code="candidates")

    metadata = get_path(payload, PATH_METADATA)
    received = ContinuationTokens.from_sequence(metadata if isinstance(metadata, list) else [])

    chosen = 0
    if received.rcid:
        for index, candidate in enumerate(candidates):
            if candidate.rcid == received.rcid:
                chosen = index
                break

    output = ModelOutput(candidates=candidates, chosen=chosen)
    tokens = ContinuationTokens(received.cid, received.rid, output.rcid)
    logger.debug(
        "Parsed response: %d candidate(s), chosen=%d, cid=%s",
        len(candidates), chosen, sanitize_for_logging(tokens.cid),
    )
    return ParsedResponse(output=output, tokens=tokens)


def _encode_candidate(candidate: Candidate) -> list:
    slots: List[Any] = [None] * _CANDIDATE_WIDTH
    slots[0] = candidate.rcid
    slots[1] = [candidate.text]
    if candidate.thoughts:
        slots[37] = [[candidate.thoughts]]

    media: List[Any] = [None] * 8
    if candidate.web_images:
        media[1] = [
            [[[img.url], None, None, None, img.alt], None, None, None, None, None, None, [img.title]]
            for img in candidate.web_images
        ]
    if candidate.generated_images:
        generated = []
        for img in candidate.generated_images:
            match = _GEN_TITLE_RE.match(img.title)
            number = match.group(1) if match else None
            generated.append([
                [None, None, None, [None, None, None, img.url]],
                None,
                None,
                [None, None, None, None, None, [img.alt], number],
            ])
        media[7] = [generated]
    if candidate.web_images or candidate.generated_images:
        slots[12] = media
    return slots


def encode_envelope(output: ModelOutput, tokens: ContinuationTokens) -> str:
    """Serialize ``output`` back into the wire envelope.

    ``parse_response(encode_envelope(o, t))`` reproduces ``o`` structurally.
    """
    metadata = [tokens.cid, tokens.rid, output.rcid]
    payload = [None, metadata, None, None, [_encode_candidate(c) for c in output.candidates]]
    frame = json.dumps([["wrb.fr", None, json.dumps(payload)]])
    return f"{SENTINEL}\n\n{len(frame)}\n{frame}\n"


def encode_error(code: int) -> str:
    """Wire envelope carrying only a service error code."""
    frame = json.dumps([["wrb.fr", None, None, None, None, [code]]])
    return f"{SENTINEL}\n\n{len(frame)}\n{frame}\n"


def decode_batch(body: str, identifiers: List[str]) -> List[str]:
    """Match ``wrb.fr`` entries of a batch response to request identifiers.

    Returns the payload strings in request order; an identifier the
    service did not answer yields an empty string.

    Raises:
        ProtocolError: the body contains no JSON frame at all.
    """
    frames = list(iter_frames(body))
    if not frames:
        logger.warning("Batch response had no JSON frame (%d bytes)", len(body))
        raise ProtocolError("No valid JSON in batch response")

    by_identifier = {}
    for frame in frames:
        for entry in frame:
            if not isinstance(entry, list) or len(entry) < 3 or entry[0] != "wrb.fr":
                continue
            data = entry[2] if isinstance(entry[2], str) else ""
            for candidate in reversed(entry[3:]):
                if isinstance(candidate, str) and candidate in identifiers:
                    by_identifier.setdefault(candidate, data)
                    break
            else:
                # Single-request batches may omit the identifier.
                if len(identifiers) == 1:
                    by_identifier.setdefault(identifiers[0], data)

    return [by_identifier.get(identifier, "") for identifier in identifiers]


def encode_batch_response(entries) -> str:
    """Build a batch response body from ``(rpcid, data, identifier)`` tuples."""
    frame = json.dumps([
        ["wrb.fr", rpcid, data, None, None, None, identifier]
        for rpcid, data, identifier in entries
    ])
    return f"{SENTINEL}\n\n{len(frame)}\n{frame}\n"
