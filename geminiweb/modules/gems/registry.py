"""Gem (persona) catalog: fetch, cache and mutate via batch RPCs."""

import json
import logging
import threading
from typing import Any, List, Optional

from geminiweb.core.log_sanitizer import sanitize_for_logging
from geminiweb.domain.errors import (
    ImmutableError,
    NotFoundError,
    ProtocolError,
    ValidationError,
)
from geminiweb.domain.gems.models import Gem, GemJar
from geminiweb.interfaces.backend import ChatBackend, RPCEntry

logger = logging.getLogger(__name__)

RPC_LIST_GEMS = "CNgdBe"
RPC_CREATE_GEM = "oMH3Zd"
RPC_UPDATE_GEM = "kHv0Vd"
RPC_DELETE_GEM = "UXcSJb"

LIST_SYSTEM_NORMAL = 4
LIST_SYSTEM_INCLUDE_HIDDEN = 3
LIST_CUSTOM = 2


def _gem_fields(name: str, description: str, prompt: str) -> List[Any]:
    return [name, description, prompt, None, None, None, None, None, 0, None, 1, None, None, None, []]


def parse_gems(data: str, predefined: bool) -> List[Gem]:
    """Decode a list-gems payload: slot 2 holds ``[id, [name, desc], [prompt]]`` entries."""
    if not data:
        return []
    try:
        parsed = json.loads(data)
    except ValueError as exc:
        raise ProtocolError("Gem list payload is not valid JSON") from exc
    if not isinstance(parsed, list):
        raise ProtocolError("Gem list payload is not an array")

    entries = parsed[2] if len(parsed) > 2 and isinstance(parsed[2], list) else []
    gems = []
    for entry in entries:
        if not isinstance(entry, list) or not entry or not isinstance(entry[0], str) or not entry[0]:
            continue
        info = entry[1] if len(entry) > 1 and isinstance(entry[1], list) else []
        prompt_slot = entry[2] if len(entry) > 2 and isinstance(entry[2], list) else []
        gems.append(Gem(
            id=entry[0],
            name=info[0] if info and isinstance(info[0], str) else "",
            description=info[1] if len(info) > 1 and isinstance(info[1], str) else "",
            prompt=prompt_slot[0] if prompt_slot and isinstance(prompt_slot[0], str) else "",
            predefined=predefined,
        ))
    return gems


class GemRegistry:
    """Cached persona catalog.

    The cache is replaced wholesale on ``fetch`` and patched on mutations;
    readers always receive a snapshot copy.
    """

    def __init__(self, backend: ChatBackend):
        self.backend = backend
        self._lock = threading.Lock()
        self._gems: Optional[GemJar] = None

    @property
    def loaded(self) -> bool:
        with self._lock:
            return self._gems is not None

    def snapshot(self) -> GemJar:
        with self._lock:
            return GemJar(self._gems or {})

    def fetch(self, include_hidden: bool = False) -> GemJar:
        """Load system and custom gems in one batch and replace the cache."""
        system_param = LIST_SYSTEM_INCLUDE_HIDDEN if include_hidden else LIST_SYSTEM_NORMAL
        batch = [
            RPCEntry(RPC_LIST_GEMS, json.dumps([system_param]), "system"),
            RPCEntry(RPC_LIST_GEMS, json.dumps([LIST_CUSTOM]), "custom"),
        ]
        system_data, custom_data = self.backend.execute(batch)

        jar = GemJar()
        for data, predefined in ((system_data, True), (custom_data, False)):
            for gem in parse_gems(data, predefined):
                jar[gem.id] = gem

        with self._lock:
            self._gems = jar
        logger.info(
            "Fetched %d gem(s) (%d custom)", len(jar), len(jar.custom())
        )
        return GemJar(jar)

    def get(self, id_or_name: str) -> Optional[Gem]:
        """Resolve by exact id, then case-insensitive name; fetches once if the cache is empty."""
        if not self.loaded:
            self.fetch()
        return self.snapshot().get_gem(id_or_name)

    def _require(self, gem_id: str) -> Gem:
        gem = self.snapshot().get(gem_id)
        if gem is None:
            self.fetch()
            gem = self.snapshot().get(gem_id)
        if gem is None:
            raise NotFoundError(f"Gem not found: {gem_id}")
        if gem.predefined:
            raise ImmutableError(f"Gem '{gem.name}' is predefined and cannot be modified")
        return gem

    def create(self, name: str, prompt: str, description: str = "") -> Gem:
        if not name.strip():
            raise ValidationError("Gem name cannot be empty")
        payload = json.dumps([_gem_fields(name, description, prompt)])
        (data,) = self.backend.execute([RPCEntry(RPC_CREATE_GEM, payload, "create")])
        try:
            parsed = json.loads(data) if data else None
        except ValueError as exc:
            raise ProtocolError("Create-gem response is not valid JSON") from exc
        gem_id = parsed[0] if isinstance(parsed, list) and parsed and isinstance(parsed[0], str) else ""
        if not gem_id:
            raise ProtocolError("Create-gem response carried no gem id")

        gem = Gem(id=gem_id, name=name, description=description, prompt=prompt)
        with self._lock:
            if self._gems is not None:
                self._gems[gem.id] = gem
        logger.info("Created gem %s (%s)", gem.id, sanitize_for_logging(name))
        return gem

    def update(
        self,
        gem_id: str,
        name: Optional[str] = None,
        prompt: Optional[str] = None,
        description: Optional[str] = None,
    ) -> Gem:
        """Replace a custom gem; omitted fields keep their cached values."""
        current = self._require(gem_id)
        gem = Gem(
            id=gem_id,
            name=current.name if name is None else name,
            description=current.description if description is None else description,
            prompt=current.prompt if prompt is None else prompt,
        )
        payload = json.dumps([gem_id, _gem_fields(gem.name, gem.description, gem.prompt) + [0]])
        self.backend.execute([RPCEntry(RPC_UPDATE_GEM, payload, "update")])
        with self._lock:
            if self._gems is not None:
                self._gems[gem_id] = gem
        logger.info("Updated gem %s", gem_id)
        return gem

    def delete(self, gem_id: str) -> None:
        self._require(gem_id)
        self.backend.execute([RPCEntry(RPC_DELETE_GEM, json.dumps([gem_id]), "delete")])
        with self._lock:
            if self._gems is not None:
                self._gems.pop(gem_id, None)
        logger.info("Deleted gem %s", gem_id)
