"""Unit tests for ConversationOrchestrator."""
import sys
import os
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', 'backend'))

import asyncio
import pytest
import tiktoken
from unittest.mock import AsyncMock, Mock
from models.prompt import ImageAttachment
from models.tool import PlantRecord, ToolCallResult, ToolFailureReason
from services.conversation_store import ConversationStore
from services.image_uploader import UploadFailed
from services.llm_client import LLMResponse, LLMError, LLMClientError
from services.orchestrator import ConversationOrchestrator, InvalidInput, APOLOGY_TEXT, EMPTY_REPLY_TEXT
from services.prompt_assembler import PromptAssembler, encoding_token_counter
from services.response_composer import SECTION_DELIMITER
from services.tool_gateway import ConnectionState
from config import IDENTIFY_TOOL_NAME, SEARCH_TOOL_NAME

MODEL_TEXT = "Essa parece ser uma samambaia! 🌿"
IMAGE = ImageAttachment(data=b"\xff\xd8jpeg", mime_type="image/jpeg")


def llm_response(text=MODEL_TEXT):
    return LLMResponse(text=text, tokens_input=10, tokens_output=5, latency_ms=1, model_used="m")


def make_gateway(connected=True, result=None):
    gateway = Mock()
    gateway.is_connected = connected
    gateway.state = ConnectionState.CONNECTED if connected else ConnectionState.DISCONNECTED
    gateway.call_tool = AsyncMock(
        return_value=result or ToolCallResult.failure(ToolFailureReason.NOT_CONNECTED)
    )
    return gateway


class TestConversationOrchestrator:
    """Test suite for ConversationOrchestrator."""

    @pytest.fixture
    def store(self):
        return ConversationStore(ttl_seconds=0)

    @pytest.fixture
    def llm_client(self):
        client = Mock()
        client.generate = AsyncMock(return_value=llm_response())
        return client

    @pytest.fixture
    def uploader(self):
        uploader = Mock()
        uploader.upload = AsyncMock(return_value="https://cdn.example/uploads/a.jpg")
        return uploader

    def make_orchestrator(self, store, llm_client, uploader, gateway):
        return ConversationOrchestrator(
            store=store,
            assembler=PromptAssembler(store),
            llm_client=llm_client,
            tool_gateway=gateway,
            image_uploader=uploader,
        )

    # Validation

    @pytest.mark.asyncio
    async def test_empty_input_rejected_before_append(self, store, llm_client, uploader):
        """Test that a turn with no text and no image is rejected without side effects."""
        store.append("abc", "oi", is_user=True)
        orchestrator = self.make_orchestrator(store, llm_client, uploader, make_gateway())

        with pytest.raises(InvalidInput):
            await orchestrator.generate_ai_response("", None, "abc")

        assert len(store.history("abc")) == 1
        llm_client.generate.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_whitespace_only_input_rejected(self, store, llm_client, uploader):
        orchestrator = self.make_orchestrator(store, llm_client, uploader, make_gateway())

        with pytest.raises(InvalidInput):
            await orchestrator.generate_ai_response("   ", None, "abc")
        assert store.history("abc") == ()

    # End-to-end scenarios

    @pytest.mark.asyncio
    async def test_image_turn_with_disconnected_gateway(self, store, llm_client, uploader):
        """Test that an image turn still answers and records two turns when the tool is down."""
        gateway = make_gateway(connected=False)
        orchestrator = self.make_orchestrator(store, llm_client, uploader, gateway)

        reply = await orchestrator.generate_ai_response("Que planta é essa?", IMAGE, "abc")

        assert reply == MODEL_TEXT
        history = store.history("abc")
        assert len(history) == 2
        assert (history[0].content, history[0].is_user) == ("Que planta é essa?", True)
        assert (history[1].content, history[1].is_user) == (MODEL_TEXT, False)
        uploader.upload.assert_not_awaited()
        gateway.call_tool.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_text_turn_without_intent_skips_tool(self, store, llm_client, uploader):
        gateway = make_gateway()
        orchestrator = self.make_orchestrator(store, llm_client, uploader, gateway)

        reply = await orchestrator.generate_ai_response("Qual é a capital da França?", None, "abc")

        assert reply == MODEL_TEXT
        gateway.call_tool.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_text_lookup_appends_tool_section(self, store, llm_client, uploader):
        """Test that a successful search enriches the reply and history."""
        record = PlantRecord(common_name="Samambaia", watering="Frequente")
        gateway = make_gateway(result=ToolCallResult.success(record))
        orchestrator = self.make_orchestrator(store, llm_client, uploader, gateway)

        reply = await orchestrator.generate_ai_response("Como regar minha samambaia?", None, "abc")

        gateway.call_tool.assert_awaited_once_with(SEARCH_TOOL_NAME, {"query": "samambaia"})
        assert reply.startswith(MODEL_TEXT)
        assert SECTION_DELIMITER in reply
        assert "Frequente" in reply
        assert store.history("abc")[-1].content == reply

    @pytest.mark.asyncio
    async def test_image_lookup_uploads_then_identifies(self, store, llm_client, uploader):
        record = PlantRecord(scientific_name="Nephrolepis exaltata")
        gateway = make_gateway(result=ToolCallResult.success(record))
        orchestrator = self.make_orchestrator(store, llm_client, uploader, gateway)

        reply = await orchestrator.generate_ai_response("Que planta é essa?", IMAGE, "abc")

        uploader.upload.assert_awaited_once_with(IMAGE.data, "image/jpeg")
        gateway.call_tool.assert_awaited_once_with(
            IDENTIFY_TOOL_NAME,
            {"image_url": "https://cdn.example/uploads/a.jpg", "question": "Que planta é essa?"}
        )
        assert "Nephrolepis exaltata" in reply

    @pytest.mark.asyncio
    async def test_upload_failure_degrades_to_model_only(self, store, llm_client, uploader):
        uploader.upload.side_effect = UploadFailed("storage down")
        gateway = make_gateway()
        orchestrator = self.make_orchestrator(store, llm_client, uploader, gateway)

        reply = await orchestrator.generate_ai_response("", IMAGE, "abc")

        assert reply == MODEL_TEXT
        gateway.call_tool.assert_not_awaited()
        assert len(store.history("abc")) == 2

    @pytest.mark.asyncio
    async def test_tool_failure_degrades_to_model_only(self, store, llm_client, uploader):
        gateway = make_gateway(result=ToolCallResult.failure(ToolFailureReason.MALFORMED_RESPONSE))
        orchestrator = self.make_orchestrator(store, llm_client, uploader, gateway)

        reply = await orchestrator.generate_ai_response("Como regar minha samambaia?", None, "abc")

        assert reply == MODEL_TEXT
        assert "MALFORMED" not in reply

    @pytest.mark.asyncio
    async def test_gateway_exception_is_absorbed(self, store, llm_client, uploader):
        gateway = make_gateway()
        gateway.call_tool.side_effect = RuntimeError("unexpected")
        orchestrator = self.make_orchestrator(store, llm_client, uploader, gateway)

        reply = await orchestrator.generate_ai_response("Como regar minha samambaia?", None, "abc")

        assert reply == MODEL_TEXT

    @pytest.mark.asyncio
    async def test_special_token_text_in_history_does_not_break_later_turns(self, store, llm_client, uploader):
        """Test that a typed <|endoftext|> only ever reaches the prompt as text."""
        encoding = tiktoken.Encoding(
            name="eva_test_bytes",
            pat_str=r"\S+|\s+",
            mergeable_ranks={bytes([i]): i for i in range(256)},
            special_tokens={"<|endoftext|>": 256},
        )
        orchestrator = ConversationOrchestrator(
            store=store,
            assembler=PromptAssembler(
                store,
                token_counter=encoding_token_counter(encoding),
                history_token_budget=3000
            ),
            llm_client=llm_client,
            tool_gateway=make_gateway(),
            image_uploader=uploader,
        )

        await orchestrator.generate_ai_response("o que é <|endoftext|>?", None, "abc")
        reply = await orchestrator.generate_ai_response("Qual é a capital da França?", None, "abc")

        assert reply == MODEL_TEXT
        assert len(store.history("abc")) == 4
        assert "<|endoftext|>" in llm_client.generate.await_args.args[0].as_text()

    # Model failures

    @pytest.mark.asyncio
    async def test_model_failure_returns_and_records_apology(self, store, llm_client, uploader):
        """Test that model errors become the apology, recorded as the AI turn."""
        llm_client.generate.side_effect = LLMClientError(LLMError("API_ERROR", "boom", {}))
        orchestrator = self.make_orchestrator(store, llm_client, uploader, make_gateway())

        reply = await orchestrator.generate_ai_response("oi", None, "abc")

        assert reply == APOLOGY_TEXT
        assert store.rendered_history("abc") == ["Usuário: oi", f"EVA: {APOLOGY_TEXT}"]

    @pytest.mark.asyncio
    async def test_unexpected_model_error_returns_apology(self, store, llm_client, uploader):
        llm_client.generate.side_effect = RuntimeError("boom")
        orchestrator = self.make_orchestrator(store, llm_client, uploader, make_gateway())

        assert await orchestrator.generate_ai_response("oi", None, "abc") == APOLOGY_TEXT

    @pytest.mark.asyncio
    async def test_blank_model_text_replaced_by_fallback(self, store, llm_client, uploader):
        llm_client.generate.return_value = llm_response(text="   \n")
        orchestrator = self.make_orchestrator(store, llm_client, uploader, make_gateway())

        assert await orchestrator.generate_ai_response("oi", None, "abc") == EMPTY_REPLY_TEXT

    # History and prompts

    @pytest.mark.asyncio
    async def test_prompt_excludes_current_turn_from_history(self, store, llm_client, uploader):
        """Test that the current turn appears exactly once in the prompt."""
        orchestrator = self.make_orchestrator(store, llm_client, uploader, make_gateway())
        await orchestrator.generate_ai_response("primeira pergunta", None, "abc")

        await orchestrator.generate_ai_response("segunda pergunta", None, "abc")

        payload = llm_client.generate.await_args.args[0]
        prompt_text = payload.as_text()
        assert prompt_text.count("segunda pergunta") == 1
        assert "Usuário: primeira pergunta" in prompt_text
        assert f"EVA: {MODEL_TEXT}" in prompt_text

    @pytest.mark.asyncio
    async def test_stateless_turn_records_nothing(self, store, llm_client, uploader):
        orchestrator = self.make_orchestrator(store, llm_client, uploader, make_gateway())

        reply = await orchestrator.generate_ai_response("oi")

        assert reply == MODEL_TEXT
        assert len(store) == 0

    @pytest.mark.asyncio
    async def test_same_conversation_turns_are_serialized(self, store, llm_client, uploader):
        """Test that racing turns of one conversation never interleave."""
        async def slow_generate(payload):
            await asyncio.sleep(0.01)
            return llm_response(text=f"resposta para: {payload.text_parts[-1]}")

        llm_client.generate.side_effect = slow_generate
        orchestrator = self.make_orchestrator(store, llm_client, uploader, make_gateway())

        await asyncio.gather(
            orchestrator.generate_ai_response("um", None, "abc"),
            orchestrator.generate_ai_response("dois", None, "abc"),
            orchestrator.generate_ai_response("três", None, "abc"),
        )

        history = store.history("abc")
        assert len(history) == 6
        assert [turn.is_user for turn in history] == [True, False] * 3
        for user_turn, ai_turn in zip(history[0::2], history[1::2]):
            assert ai_turn.content == f"resposta para: Usuário: {user_turn.content}"

    @pytest.mark.asyncio
    async def test_different_conversations_run_concurrently(self, store, llm_client, uploader):
        started = []
        release = asyncio.Event()

        async def blocking_generate(payload):
            started.append(payload)
            await release.wait()
            return llm_response()

        llm_client.generate.side_effect = blocking_generate
        orchestrator = self.make_orchestrator(store, llm_client, uploader, make_gateway())

        tasks = [
            asyncio.create_task(orchestrator.generate_ai_response("oi", None, "abc")),
            asyncio.create_task(orchestrator.generate_ai_response("oi", None, "xyz")),
        ]
        await asyncio.sleep(0.01)
        assert len(started) == 2

        release.set()
        await asyncio.gather(*tasks)
        assert len(store.history("abc")) == 2
        assert len(store.history("xyz")) == 2
