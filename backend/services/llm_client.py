"""LLM Client for Groq API integration."""
import base64
import time
from dataclasses import dataclass
from typing import List, Optional, Dict, Any
from groq import AsyncGroq
from groq import RateLimitError, AuthenticationError, APIError, APITimeoutError
import logging

from config import GROQ_API_KEY, TEXT_MODEL, VISION_MODEL, MAX_OUTPUT_TOKENS, TEMPERATURE
from models.prompt import PromptPayload, TextPart, ImagePart

logger = logging.getLogger(__name__)


@dataclass
class LLMResponse:
    """Response from LLM generation."""
    text: str
    tokens_input: int
    tokens_output: int
    latency_ms: int
    model_used: str


@dataclass
class LLMError:
    """Structured error response from LLM operations."""
    code: str
    message: str
    details: Dict[str, Any]


class LLMClientError(Exception):
    """Custom exception for LLM client errors with structured error information."""

    def __init__(self, error: LLMError):
        self.error = error
        super().__init__(error.message)


class LLMClient:
    """Client for interfacing with Groq API for text and vision generation."""

    def __init__(
        self,
        api_key: Optional[str] = None,
        text_model: str = TEXT_MODEL,
        vision_model: str = VISION_MODEL
    ):
        """
        Initialize LLM client with Groq API key.

        Args:
            api_key: Groq API key (defaults to GROQ_API_KEY from environment)
            text_model: Model used for text-only prompts
            vision_model: Model used for prompts with an image part
        """
        self.api_key = api_key or GROQ_API_KEY
        if not self.api_key:
            raise ValueError("GROQ_API_KEY must be provided or set in environment")

        self.text_model = text_model
        self.vision_model = vision_model
        self.client = AsyncGroq(api_key=self.api_key)
        logger.info("LLMClient initialized successfully")

    def model_for(self, payload: PromptPayload) -> str:
        return self.vision_model if payload.has_image else self.text_model

    async def generate(
        self,
        payload: PromptPayload,
        max_tokens: int = MAX_OUTPUT_TOKENS
    ) -> LLMResponse:
        """
        Generate response using Groq API.

        Args:
            payload: Assembled prompt parts (text and optional image)
            max_tokens: Maximum tokens to generate

        Returns:
            LLMResponse with text, token counts, and latency

        Raises:
            LLMClientError: Structured error with code, message, and details
        """
        model = self.model_for(payload)
        start_time = time.time()

        try:
            logger.debug(f"Generating response with model: {model}")

            response = await self.client.chat.completions.create(
                model=model,
                messages=self.build_messages(payload),
                max_tokens=max_tokens,
                temperature=TEMPERATURE
            )

            latency_ms = int((time.time() - start_time) * 1000)

        except RateLimitError as e:
            raise self._error(
                "RATE_LIMIT_ERROR",
                "Rate limit exceeded. Please try again in a few moments.",
                model, start_time, e, retry_after=60
            )
        except AuthenticationError as e:
            raise self._error(
                "AUTHENTICATION_ERROR",
                "Authentication failed. Please check your API key.",
                model, start_time, e
            )
        except APITimeoutError as e:
            raise self._error(
                "TIMEOUT_ERROR",
                "Request timed out. Please try again.",
                model, start_time, e
            )
        except APIError as e:
            raise self._error(
                "API_ERROR",
                f"Groq API error: {str(e)}",
                model, start_time, e
            )
        except Exception as e:
            raise self._error(
                "UNKNOWN_ERROR",
                f"Unexpected error during generation: {str(e)}",
                model, start_time, e, error_type=type(e).__name__
            )

        # Validate response shape
        try:
            text = response.choices[0].message.content
        except (AttributeError, IndexError, TypeError) as e:
            raise self._error(
                "MALFORMED_RESPONSE",
                "Received invalid response structure from Groq API.",
                model, start_time, e
            )
        if not isinstance(text, str):
            raise self._error(
                "MALFORMED_RESPONSE",
                "Received a response without text content from Groq API.",
                model, start_time, TypeError(f"content is {type(text).__name__}")
            )

        usage = getattr(response, "usage", None)
        tokens_input = getattr(usage, "prompt_tokens", 0) or 0
        tokens_output = getattr(usage, "completion_tokens", 0) or 0

        logger.info(
            f"Generated response: model={model}, "
            f"input_tokens={tokens_input}, output_tokens={tokens_output}, "
            f"latency={latency_ms}ms"
        )

        return LLMResponse(
            text=text,
            tokens_input=tokens_input,
            tokens_output=tokens_output,
            latency_ms=latency_ms,
            model_used=model
        )

    @staticmethod
    def build_messages(payload: PromptPayload) -> List[Dict[str, Any]]:
        """
        Convert a PromptPayload into chat messages.

        Text-only payloads become a single string; payloads with an image
        become content parts with the image as a base64 data URL.
        """
        if not payload.has_image:
            return [{"role": "user", "content": payload.as_text()}]

        content: List[Dict[str, Any]] = []
        for part in payload.parts:
            if isinstance(part, TextPart):
                content.append({"type": "text", "text": part.text})
            elif isinstance(part, ImagePart):
                encoded = base64.b64encode(part.data).decode("ascii")
                content.append({
                    "type": "image_url",
                    "image_url": {"url": f"data:{part.mime_type};base64,{encoded}"}
                })
        return [{"role": "user", "content": content}]

    @staticmethod
    def _error(code: str, message: str, model: str, start_time: float, cause: Exception, **extra) -> LLMClientError:
        latency_ms = int((time.time() - start_time) * 1000)
        details = {
            "model": model,
            "latency_ms": latency_ms,
            "original_error": str(cause),
            **extra
        }
        error = LLMError(code=code, message=message, details=details)
        logger.error(
            f"{code}: model={model}, latency={latency_ms}ms, error={cause}",
            exc_info=cause,
            extra={"error_code": error.code, "error_details": error.details}
        )
        return LLMClientError(error)
