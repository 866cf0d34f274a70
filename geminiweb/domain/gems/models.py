"""Domain models for gems (personas)."""

from dataclasses import dataclass
from typing import Any, Dict, List, Optional


@dataclass(frozen=True)
class Gem:
    """Named prompt preamble the service applies to a turn."""
    id: str
    name: str
    description: str = ""
    prompt: str = ""
    predefined: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "prompt": self.prompt,
            "predefined": self.predefined,
        }


class GemJar(dict):
    """Gems keyed by id."""

    def get_gem(self, id_or_name: str) -> Optional[Gem]:
        """Exact id first, then case-insensitive name."""
        if not id_or_name:
            return None
        if id_or_name in self:
            return self[id_or_name]
        wanted = id_or_name.strip().lower()
        for gem in self.values():
            if gem.name.lower() == wanted:
                return gem
        return None

    def filter(self, predefined: Optional[bool] = None, name_contains: str = "") -> "GemJar":
        needle = name_contains.lower()
        return GemJar({
            gem_id: gem
            for gem_id, gem in self.items()
            if (predefined is None or gem.predefined == predefined)
            and needle in gem.name.lower()
        })

    def custom(self) -> "GemJar":
        return self.filter(predefined=False)

    def system(self) -> "GemJar":
        return self.filter(predefined=True)

    def ordered(self) -> List[Gem]:
        """System gems first, then by name."""
        return sorted(self.values(), key=lambda g: (not g.predefined, g.name.lower()))
