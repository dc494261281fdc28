"""Conversation data models."""
from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Tuple

USER_LABEL = "Usuário"
ASSISTANT_LABEL = "EVA"


@dataclass(frozen=True)
class Turn:
    """Represents a single message in a conversation."""
    content: str
    is_user: bool

    @property
    def speaker(self) -> str:
        return USER_LABEL if self.is_user else ASSISTANT_LABEL

    def render(self) -> str:
        """Render the turn as a '<Speaker>: <content>' history line."""
        return f"{self.speaker}: {self.content}"


@dataclass
class Conversation:
    """Represents a multi-turn conversation."""
    messages: List[Turn] = field(default_factory=list)
    last_updated: datetime = field(default_factory=datetime.now)


def parse_history_line(line: str) -> Tuple[str, bool]:
    """
    Parse a rendered history line back into (content, is_user).

    Raises:
        ValueError: If the line does not start with a known speaker label
    """
    for label, is_user in ((USER_LABEL, True), (ASSISTANT_LABEL, False)):
        prefix = f"{label}: "
        if line.startswith(prefix):
            return line[len(prefix):], is_user
    raise ValueError(f"Unrecognized history line: {line[:40]!r}")
