"""Prompt assembly: persona, conversation history and the current turn."""
import logging
from typing import Any, Callable, List, Optional

from models.prompt import ImageAttachment, ImagePart, PromptPayload, TextPart
from models.conversation import USER_LABEL
from services.conversation_store import ConversationStore

logger = logging.getLogger(__name__)

EVA_PERSONA = (
    "Você é uma assistente de IA útil e amigável chamada EVA 🌻. "
    "Responda sempre em português brasileiro com um tom casual e amigável, "
    "usando expressões típicas do Brasil quando apropriado. Se o usuário escrever "
    "em outro idioma, ainda assim responda em português brasileiro. "
    "Você é especialista em agricultura urbana, agricultura familiar e agricultura orgânica, "
    "e é especialmente habilidosa em fornecer informações sobre plantas, jardinagem e cultivo. "
    "Você jamais recomenda o uso de agrotóxicos ou produtos químicos: sempre sugira soluções "
    "naturais. Lembre-se do histórico da conversa para manter o contexto da interação. "
    "Se o usuário enviar uma imagem, responda somente sobre fotos de plantas; se a foto não for "
    "de uma planta, peça ao usuário para enviar apenas fotos de cultivos. Se for uma planta, "
    "analise-a com cuidado e responda de acordo com a pergunta do usuário."
)

HISTORY_HEADER = "Histórico da conversa anterior:"
DEFAULT_IMAGE_QUESTION = "Que planta é essa e como devo cuidar dela?"


def encoding_token_counter(encoding: Any) -> Callable[[str], int]:
    """Count tokens with a tiktoken encoding, treating special-token text as plain text."""
    return lambda text: len(encoding.encode(text, disallowed_special=()))


class PromptAssembler:
    """Builds the PromptPayload handed to the language model for one turn."""

    def __init__(
        self,
        store: ConversationStore,
        persona: str = EVA_PERSONA,
        token_counter: Optional[Callable[[str], int]] = None,
        history_token_budget: Optional[int] = None
    ):
        """
        Initialize the assembler.

        Args:
            store: Source of conversation history
            persona: System-level instruction text prepended to every prompt
            token_counter: Counts tokens in a string; enables history trimming
            history_token_budget: Maximum tokens of history to include
        """
        self.store = store
        self.persona = persona
        self.token_counter = token_counter
        self.history_token_budget = history_token_budget

    def build(
        self,
        conversation_id: Optional[str],
        current_text: str,
        current_image: Optional[ImageAttachment] = None
    ) -> PromptPayload:
        """
        Assemble the prompt for the current turn.

        Must be called before the current user turn is appended to the store,
        otherwise the turn would appear both in the history and as the
        current instruction.

        Part order is fixed: persona → history → current turn → image.

        Args:
            conversation_id: Conversation whose history to include (None for stateless)
            current_text: The user's literal text for this turn
            current_image: Optional uploaded image

        Returns:
            PromptPayload ready for the LLM client
        """
        parts = [TextPart(self.persona)]

        history_lines = self._bounded_history(self.store.rendered_history(conversation_id))
        if history_lines:
            parts.append(TextPart("\n".join([HISTORY_HEADER] + history_lines)))

        if current_image is not None:
            question = current_text.strip() or DEFAULT_IMAGE_QUESTION
            parts.append(TextPart(
                f"{USER_LABEL}: analise a imagem anexada e depois responda de acordo "
                f"com a pergunta: {question}"
            ))
            parts.append(ImagePart(data=current_image.data, mime_type=current_image.mime_type))
        else:
            parts.append(TextPart(f"{USER_LABEL}: {current_text}"))

        logger.debug(
            f"Built prompt for {conversation_id}: {len(history_lines)} history lines, "
            f"image={'yes' if current_image is not None else 'no'}"
        )
        return PromptPayload(parts=parts)

    def _bounded_history(self, lines: List[str]) -> List[str]:
        """Keep the most recent lines that fit in the history token budget."""
        if not lines or self.token_counter is None or not self.history_token_budget:
            return lines

        kept: List[str] = []
        used = 0
        try:
            for line in reversed(lines):
                cost = self.token_counter(line)
                if used + cost > self.history_token_budget:
                    break
                kept.append(line)
                used += cost
        except Exception as e:
            logger.warning(f"Could not count history tokens, keeping full history: {e}")
            return lines

        if len(kept) < len(lines):
            logger.info(f"Trimmed history from {len(lines)} to {len(kept)} lines ({used} tokens)")
        kept.reverse()
        return kept
