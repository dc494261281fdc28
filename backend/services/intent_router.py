"""
Intent Router for the EVA plant assistant.

This module implements deterministic turn classification using plain keyword
membership to decide whether the plant-knowledge tool should be consulted,
and which tool call a classified turn maps to.
"""

from enum import Enum
import logging
import re
from typing import Optional

from config import IDENTIFY_TOOL_NAME, SEARCH_TOOL_NAME
from models.tool import ToolCall

logger = logging.getLogger(__name__)


class Intent(str, Enum):
    """Which lookup, if any, a turn calls for."""
    IMAGE_LOOKUP = "IMAGE_LOOKUP"
    TEXT_LOOKUP = "TEXT_LOOKUP"
    NONE = "NONE"


# Care, identification and cultivation vocabulary (matched as substrings)
PLANT_KEYWORDS = (
    "planta",
    "jardim",
    "flor",
    "cultivar",
    "cultivo",
    "regar",
    "como cuidar",
    "muda",
    "semente",
    "adubo",
    "poda",
    "horta",
    "colheita",
)

# Words after which the plant name usually follows
QUERY_TRIGGERS = (
    "como cuidar de",
    "como cuidar da",
    "como cuidar do",
    "planta",
    "plantar",
    "cultivar",
    "cuidar de",
    "flor",
    "regar",
)

# Leading articles/possessives to drop from an extracted plant name
_LEADING_STOPWORDS = {
    "a", "o", "as", "os", "um", "uma", "de", "da", "do", "das", "dos",
    "minha", "meu", "minhas", "meus", "essa", "esse", "esta", "este",
}

_PUNCTUATION = re.compile(r"[.,?!;:]")


def classify(prompt_text: str, has_image: bool) -> Intent:
    """
    Classify a turn.

    Rules, in order:
    1. An image is attached → IMAGE_LOOKUP
    2. The text contains any plant keyword (case-insensitive substring) → TEXT_LOOKUP
    3. Otherwise → NONE

    Args:
        prompt_text: User text for the turn (may be empty)
        has_image: Whether an image was uploaded with the turn

    Returns:
        The detected Intent
    """
    if has_image:
        return Intent.IMAGE_LOOKUP

    text_lower = (prompt_text or "").lower()
    if any(keyword in text_lower for keyword in PLANT_KEYWORDS):
        return Intent.TEXT_LOOKUP

    return Intent.NONE


def extract_plant_query(prompt_text: str) -> str:
    """
    Pull a plant name out of a free-text question.

    Takes up to three words following the first trigger word, strips
    punctuation and leading articles. "Como regar minha samambaia?" gives
    "samambaia".

    Returns:
        The extracted name, or an empty string when nothing usable follows
    """
    words = (prompt_text or "").split()
    lowered = [_PUNCTUATION.sub("", word).lower() for word in words]

    for i in range(len(lowered)):
        for trigger in QUERY_TRIGGERS:
            trigger_words = trigger.split()
            end = i + len(trigger_words)
            if lowered[i:end] != trigger_words:
                continue

            candidate = [_PUNCTUATION.sub("", w) for w in words[end:end + 3]]
            while candidate and candidate[0].lower() in _LEADING_STOPWORDS:
                candidate.pop(0)
            query = " ".join(w for w in candidate if w).strip()
            if query:
                return query

    return ""


def tool_call_for(intent: Intent, prompt_text: str, image_url: Optional[str] = None) -> Optional[ToolCall]:
    """
    Map a classified turn to the tool call that serves it.

    Args:
        intent: Result of classify()
        prompt_text: User text for the turn
        image_url: Public URL of the uploaded image, for IMAGE_LOOKUP turns

    Returns:
        ToolCall to perform, or None when the turn cannot use a tool
    """
    if intent is Intent.IMAGE_LOOKUP:
        if not image_url:
            return None
        arguments = {"image_url": image_url}
        if prompt_text and prompt_text.strip():
            arguments["question"] = prompt_text.strip()
        return ToolCall(name=IDENTIFY_TOOL_NAME, arguments=arguments)

    if intent is Intent.TEXT_LOOKUP:
        query = extract_plant_query(prompt_text)
        if not query:
            logger.info(f"No plant name found in prompt: {prompt_text[:50]}")
            return None
        return ToolCall(name=SEARCH_TOOL_NAME, arguments={"query": query})

    return None
