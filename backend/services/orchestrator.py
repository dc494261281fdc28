"""
Conversation orchestration for one assistant turn.

Coordinates history, prompt assembly, the language model, the plant tool
and response composition. Only input validation can fail a turn; every
downstream fault degrades to a still-useful reply.
"""

import asyncio
import contextlib
import logging
import weakref
from typing import Optional, Tuple

from models.prompt import ImageAttachment, PromptPayload
from models.tool import ToolCallResult, ToolFailureReason
from services import intent_router
from services.conversation_store import ConversationStore
from services.image_uploader import ImageUploader, UploadFailed
from services.intent_router import Intent
from services.llm_client import LLMClient, LLMClientError
from services.prompt_assembler import PromptAssembler
from services.response_composer import ResponseComposer
from services.tool_gateway import ToolGateway

logger = logging.getLogger(__name__)

APOLOGY_TEXT = "Desculpe, não consegui processar sua solicitação no momento. Tente novamente mais tarde."
EMPTY_REPLY_TEXT = "Hmm, não consegui formular uma resposta agora. Pode reformular a pergunta? 🌻"


class InvalidInput(ValueError):
    """The turn has neither text nor an image."""


class ConversationOrchestrator:
    """Top-level entry point that turns one user message into one reply."""

    def __init__(
        self,
        store: ConversationStore,
        assembler: PromptAssembler,
        llm_client: LLMClient,
        tool_gateway: ToolGateway,
        image_uploader: ImageUploader,
        composer: Optional[ResponseComposer] = None
    ):
        self.store = store
        self.assembler = assembler
        self.llm_client = llm_client
        self.tool_gateway = tool_gateway
        self.image_uploader = image_uploader
        self.composer = composer or ResponseComposer()
        self._locks: "weakref.WeakValueDictionary[str, asyncio.Lock]" = weakref.WeakValueDictionary()

    async def generate_ai_response(
        self,
        prompt_text: str,
        image: Optional[ImageAttachment] = None,
        conversation_id: Optional[str] = None
    ) -> str:
        """
        Produce the assistant reply for one turn.

        Turns of the same conversation are serialized so the history always
        reads user, assistant, user, assistant in processing order.

        Args:
            prompt_text: User text (may be empty when an image is given)
            image: Optional uploaded image
            conversation_id: Conversation to read and record history in

        Returns:
            Non-empty reply text

        Raises:
            InvalidInput: If neither text nor image was provided
        """
        prompt_text = prompt_text or ""
        if not prompt_text.strip() and image is None:
            raise InvalidInput("Prompt or image must be provided")

        lock = self._lock_for(conversation_id) if conversation_id else contextlib.nullcontext()
        async with lock:
            payload = self.assembler.build(conversation_id, prompt_text, image)
            if conversation_id:
                self.store.append(conversation_id, prompt_text, is_user=True)

            intent = intent_router.classify(prompt_text, has_image=image is not None)
            logger.info(f"Turn for {conversation_id or 'stateless'}: intent={intent.value}")

            model_text, (effective_intent, tool_result) = await asyncio.gather(
                self._call_model(payload),
                self._lookup(intent, prompt_text, image),
            )

            reply = self.composer.compose(model_text, effective_intent, tool_result, question=prompt_text)

            if conversation_id:
                self.store.append(conversation_id, reply, is_user=False)

        return reply

    def _lock_for(self, conversation_id: str) -> asyncio.Lock:
        lock = self._locks.get(conversation_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[conversation_id] = lock
        return lock

    async def _call_model(self, payload: PromptPayload) -> str:
        """Call the language model; failures become the apology text."""
        try:
            response = await self.llm_client.generate(payload)
        except LLMClientError as e:
            logger.error(f"Model call failed ({e.error.code}), replying with apology")
            return APOLOGY_TEXT
        except Exception as e:
            logger.error(f"Unexpected error calling model: {e}", exc_info=True)
            return APOLOGY_TEXT

        if not response.text or not response.text.strip():
            logger.warning(f"Model {response.model_used} returned empty text")
            return EMPTY_REPLY_TEXT
        return response.text.strip()

    async def _lookup(
        self,
        intent: Intent,
        prompt_text: str,
        image: Optional[ImageAttachment]
    ) -> Tuple[Intent, Optional[ToolCallResult]]:
        """
        Consult the plant tool for the turn.

        Returns:
            The intent to compose with (NONE when no tool call could be made)
            and the tool result, if any
        """
        if intent is Intent.NONE:
            return Intent.NONE, None

        if not self.tool_gateway.is_connected:
            logger.info(f"Tool gateway {self.tool_gateway.state.value}, skipping {intent.value}")
            return intent, ToolCallResult.failure(ToolFailureReason.NOT_CONNECTED)

        image_url = None
        if intent is Intent.IMAGE_LOOKUP and image is not None:
            try:
                image_url = await self.image_uploader.upload(image.data, image.mime_type)
            except UploadFailed as e:
                logger.warning(f"Image upload failed, continuing without lookup: {e}")
                return Intent.NONE, None

        tool_call = intent_router.tool_call_for(intent, prompt_text, image_url)
        if tool_call is None:
            return Intent.NONE, None

        try:
            result = await self.tool_gateway.call_tool(tool_call.name, tool_call.arguments)
        except Exception as e:
            logger.error(f"Tool gateway raised for '{tool_call.name}': {e}", exc_info=True)
            result = ToolCallResult.failure(ToolFailureReason.CALL_FAILED)
        return intent, result
