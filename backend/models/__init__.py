"""Data models for the EVA plant assistant backend."""
from .conversation import Conversation, Turn, parse_history_line
from .prompt import ImageAttachment, ImagePart, PromptPayload, TextPart
from .tool import PlantRecord, ToolCall, ToolCallResult, ToolFailureReason
from .api import ConversationResponse, GenerateResponse, HistoryResponse

__all__ = [
    "Conversation",
    "Turn",
    "parse_history_line",
    "ImageAttachment",
    "ImagePart",
    "PromptPayload",
    "TextPart",
    "PlantRecord",
    "ToolCall",
    "ToolCallResult",
    "ToolFailureReason",
    "ConversationResponse",
    "GenerateResponse",
    "HistoryResponse",
]
