"""Prompt payload data models."""
from dataclasses import dataclass, field
from typing import List, Optional, Union


@dataclass(frozen=True)
class ImageAttachment:
    """Raw image bytes uploaded by the user for the current turn."""
    data: bytes
    mime_type: str = "image/jpeg"


@dataclass(frozen=True)
class TextPart:
    """Text segment of a prompt."""
    text: str


@dataclass(frozen=True)
class ImagePart:
    """Inline image segment of a prompt."""
    data: bytes
    mime_type: str


Part = Union[TextPart, ImagePart]


@dataclass
class PromptPayload:
    """Ordered content parts sent to the language model for one turn."""
    parts: List[Part] = field(default_factory=list)

    @property
    def text_parts(self) -> List[str]:
        return [part.text for part in self.parts if isinstance(part, TextPart)]

    @property
    def image(self) -> Optional[ImagePart]:
        for part in self.parts:
            if isinstance(part, ImagePart):
                return part
        return None

    @property
    def has_image(self) -> bool:
        return self.image is not None

    def as_text(self, separator: str = "\n\n") -> str:
        """Join all text parts into a single prompt string."""
        return separator.join(self.text_parts)
