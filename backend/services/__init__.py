"""Services for the EVA plant assistant backend."""
from .conversation_store import ConversationStore
from .intent_router import Intent, classify, extract_plant_query, tool_call_for
from .prompt_assembler import PromptAssembler
from .response_composer import ResponseComposer
from .tool_gateway import ToolGateway, ConnectionState
from .llm_client import LLMClient, LLMResponse, LLMError, LLMClientError
from .image_uploader import ImageUploader, UploadFailed
from .orchestrator import ConversationOrchestrator, InvalidInput

__all__ = ['ConversationStore', 'Intent', 'classify', 'extract_plant_query', 'tool_call_for', 'PromptAssembler', 'ResponseComposer', 'ToolGateway', 'ConnectionState', 'LLMClient', 'LLMResponse', 'LLMError', 'LLMClientError', 'ImageUploader', 'UploadFailed', 'ConversationOrchestrator', 'InvalidInput']
