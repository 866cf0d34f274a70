"""Continuation tokens that thread turns on the server side."""

from dataclasses import dataclass
from typing import Any, Dict, List, Sequence


@dataclass(frozen=True)
class ContinuationTokens:
    """The opaque (cid, rid, rcid) triple issued by the service.

    Values are stored and re-sent verbatim. The only way to derive a new
    triple from an old one is ``merge``.
    """

    cid: str = ""
    rid: str = ""
    rcid: str = ""

    def is_new(self) -> bool:
        return not (self.cid or self.rid or self.rcid)

    def merge(self, received: "ContinuationTokens") -> "ContinuationTokens":
        """Per field: take the received value when non-empty, else keep ours."""
        return ContinuationTokens(
            cid=received.cid or self.cid,
            rid=received.rid or self.rid,
            rcid=received.rcid or self.rcid,
        )

    def as_list(self) -> List[str]:
        return [self.cid, self.rid, self.rcid]

    def to_dict(self) -> Dict[str, str]:
        return {"cid": self.cid, "rid": self.rid, "rcid": self.rcid}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ContinuationTokens":
        return cls(
            cid=data.get("cid") or "",
            rid=data.get("rid") or "",
            rcid=data.get("rcid") or "",
        )

    @classmethod
    def from_sequence(cls, values: Sequence[Any]) -> "ContinuationTokens":
        """Build from a positional list; missing or non-string slots are empty."""
        slots = [v if isinstance(v, str) else "" for v in list(values)[:3]]
        slots += [""] * (3 - len(slots))
        return cls(*slots)
