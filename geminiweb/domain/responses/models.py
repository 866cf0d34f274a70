"""Domain models for parsed model responses."""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from ..errors import ValidationError


@dataclass
class WebImage:
    """Image the service found on the web."""
    url: str
    title: str = ""
    alt: str = ""

    kind = "web"

    def to_dict(self) -> Dict[str, Any]:
        return {"kind": self.kind, "url": self.url, "title": self.title, "alt": self.alt}


@dataclass
class GeneratedImage:
    """Image produced by the model. ``alt`` echoes the generation prompt when present."""
    url: str
    title: str = ""
    alt: str = ""

    kind = "generated"

    def to_dict(self) -> Dict[str, Any]:
        return {"kind": self.kind, "url": self.url, "title": self.title, "alt": self.alt}


def image_from_dict(data: Dict[str, Any]):
    cls = GeneratedImage if data.get("kind") == "generated" else WebImage
    return cls(url=data.get("url", ""), title=data.get("title", ""), alt=data.get("alt", ""))


@dataclass
class Candidate:
    """One alternative assistant response for a turn."""
    rcid: str
    text: str = ""
    thoughts: Optional[str] = None
    web_images: List[WebImage] = field(default_factory=list)
    generated_images: List[GeneratedImage] = field(default_factory=list)

    @property
    def images(self) -> list:
        return [*self.web_images, *self.generated_images]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "rcid": self.rcid,
            "text": self.text,
            "thoughts": self.thoughts,
            "web_images": [img.to_dict() for img in self.web_images],
            "generated_images": [img.to_dict() for img in self.generated_images],
        }


@dataclass
class ModelOutput:
    """Parsed assistant response: all candidates plus the selected one."""
    candidates: List[Candidate]
    chosen: int = 0

    def __post_init__(self):
        if not self.candidates:
            raise ValidationError("ModelOutput requires at least one candidate")
        if not 0 <= self.chosen < len(self.candidates):
            self.chosen = 0

    @property
    def candidate(self) -> Candidate:
        return self.candidates[self.chosen]

    @property
    def text(self) -> str:
        return self.candidate.text

    @property
    def thoughts(self) -> Optional[str]:
        return self.candidate.thoughts

    @property
    def images(self) -> list:
        return self.candidate.images

    @property
    def rcid(self) -> str:
        return self.candidate.rcid

    def choose(self, index: int) -> Candidate:
        if not 0 <= index < len(self.candidates):
            raise ValidationError(
                f"Candidate index {index} out of range (0-{len(self.candidates) - 1})"
            )
        self.chosen = index
        return self.candidate

    def to_dict(self) -> Dict[str, Any]:
        return {
            "chosen": self.chosen,
            "candidates": [c.to_dict() for c in self.candidates],
        }
