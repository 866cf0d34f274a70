"""Models the web service accepts and the header that selects them."""

import json
from enum import Enum
from typing import Dict

from .errors import ValidationError

MODEL_HEADER_KEY = "x-goog-ext-525001261-jspb"


class ModelTag(str, Enum):
    """Target model of a conversation."""
    UNSPECIFIED = "unspecified"
    G_2_5_FLASH = "gemini-2.5-flash"
    G_2_5_PRO = "gemini-2.5-pro"
    G_3_0_PRO = "gemini-3.0-pro"

    @classmethod
    def parse(cls, name: str) -> "ModelTag":
        """Resolve a model name; an empty name means unspecified."""
        if not name:
            return cls.UNSPECIFIED
        for tag in cls:
            if tag.value == name.strip().lower():
                return tag
        raise ValidationError(
            f"Unknown model '{name}'. Available: {', '.join(available_models())}"
        )

    def headers(self) -> Dict[str, str]:
        """Extra request headers that route a generate call to this model."""
        model_id = _MODEL_IDS.get(self)
        if not model_id:
            return {}
        value = [1, None, None, None, model_id, None, None, 0, [4]]
        return {MODEL_HEADER_KEY: json.dumps(value, separators=(",", ":"))}


_MODEL_IDS = {
    ModelTag.G_2_5_FLASH: "9ec249fc9ad08861",
    ModelTag.G_2_5_PRO: "4af6c7f5da75d65d",
    ModelTag.G_3_0_PRO: "9d8ca3786ebdfbea",
}

DEFAULT_MODEL = ModelTag.G_2_5_FLASH


def available_models():
    return [tag.value for tag in ModelTag if tag is not ModelTag.UNSPECIFIED]
