"""Main entry point for the EVA plant assistant API."""
import logging
import os
import time
from typing import Optional

import tiktoken
from fastapi import FastAPI, File, Form, HTTPException, Request, UploadFile
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from config import (
    PORT,
    LOG_LEVEL,
    LOG_FORMAT,
    CORS_ORIGINS,
    HISTORY_TOKEN_BUDGET,
    MAX_IMAGE_BYTES,
    MAX_PROMPT_CHARS,
    ALLOWED_IMAGE_EXTENSIONS,
)
from logger import setup_logging
from models.api import ConversationResponse, GenerateResponse, HistoryResponse
from models.prompt import ImageAttachment
from services.conversation_store import ConversationStore
from services.prompt_assembler import PromptAssembler, encoding_token_counter
from services.llm_client import LLMClient
from services.tool_gateway import ToolGateway
from services.image_uploader import ImageUploader
from services.orchestrator import ConversationOrchestrator, InvalidInput

if LOG_FORMAT == "json":
    setup_logging(LOG_LEVEL)

# Initialize logging
logger = logging.getLogger(__name__)

# Initialize FastAPI app
app = FastAPI(
    title="EVA Plant Assistant",
    description="Conversational assistant for urban, family and organic agriculture",
    version="1.0.0"
)

# Configure CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Initialize services (will be done on startup)
conversation_store: ConversationStore = None
tool_gateway: ToolGateway = None
orchestrator: ConversationOrchestrator = None


@app.on_event("startup")
async def startup_event():
    """Initialize services on startup."""
    global conversation_store, tool_gateway, orchestrator

    logger.info("Initializing EVA plant assistant services...")

    try:
        # Initialize tiktoken encoder for history budgeting
        tiktoken_encoder = tiktoken.get_encoding("o200k_base")
        logger.info("Initialized tiktoken encoder (o200k_base)")

        conversation_store = ConversationStore()

        assembler = PromptAssembler(
            conversation_store,
            token_counter=encoding_token_counter(tiktoken_encoder),
            history_token_budget=HISTORY_TOKEN_BUDGET
        )
        logger.info("Initialized PromptAssembler")

        llm_client = LLMClient()

        tool_gateway = ToolGateway()
        tool_gateway.start()
        logger.info("Started ToolGateway connection in background")

        orchestrator = ConversationOrchestrator(
            store=conversation_store,
            assembler=assembler,
            llm_client=llm_client,
            tool_gateway=tool_gateway,
            image_uploader=ImageUploader()
        )

        logger.info("All services initialized successfully")
    except Exception as e:
        logger.error(f"Failed to initialize services: {e}", exc_info=True)
        raise


@app.on_event("shutdown")
async def shutdown_event():
    """Dispose services on shutdown."""
    if tool_gateway is not None:
        await tool_gateway.disconnect()
    logger.info("EVA plant assistant services stopped")


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    """Report request validation failures as 400 with field errors."""
    logger.info(f"Invalid request to {request.url.path}: {exc.errors()}")
    return JSONResponse(
        status_code=400,
        content={"message": "Invalid request body", "errors": jsonable_encoder(exc.errors())}
    )


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException):
    """Render HTTP errors as {message, ...} bodies."""
    content = exc.detail if isinstance(exc.detail, dict) else {"message": exc.detail}
    return JSONResponse(status_code=exc.status_code, content=content)


@app.get("/")
async def root():
    """Health check endpoint."""
    return {"status": "ok", "message": "EVA Plant Assistant API"}


@app.get("/health")
async def health():
    """Detailed health check."""
    return {
        "status": "healthy",
        "service": "eva-plant-assistant",
        "version": "1.0.0",
        "tool_gateway": tool_gateway.state.value if tool_gateway is not None else "DISCONNECTED"
    }


@app.post("/conversation", response_model=ConversationResponse)
async def create_conversation() -> ConversationResponse:
    """Create a new conversation identifier."""
    conversation_id = conversation_store.new_conversation_id()
    logger.info(f"Issued conversation id {conversation_id}")
    return ConversationResponse(conversationId=conversation_id)


@app.post("/generate", response_model=GenerateResponse, response_model_exclude_none=True)
async def generate_endpoint(
    prompt: str = Form("", max_length=MAX_PROMPT_CHARS),
    conversationId: Optional[str] = Form(None),
    image: Optional[UploadFile] = File(None)
) -> GenerateResponse:
    """
    Generate the assistant reply for one turn.

    Accepts multipart form data with optional prompt text, conversation ID
    and image. Language-model failures still produce a 200 with an apology
    in `text`.

    Raises:
        HTTPException: 400 for invalid input or image, 500 for unexpected failures
    """
    start_time = time.time()

    attachment = await _read_image(image) if image is not None and image.filename else None

    try:
        text = await orchestrator.generate_ai_response(prompt, attachment, conversationId)
    except InvalidInput as e:
        raise HTTPException(
            status_code=400,
            detail={"message": str(e), "errors": {"prompt": ["Prompt or image must be provided"]}}
        )
    except Exception as e:
        logger.error(f"Unexpected error generating response: {e}", exc_info=True)
        raise HTTPException(
            status_code=500,
            detail={"message": "Falha ao gerar resposta da IA", "error": str(e)}
        )

    latency_ms = int((time.time() - start_time) * 1000)
    logger.info(f"Turn processed in {latency_ms}ms (conversation={conversationId})")
    return GenerateResponse(text=text, conversationId=conversationId)


@app.get("/history/{conversation_id}", response_model=HistoryResponse)
async def history_endpoint(conversation_id: str) -> HistoryResponse:
    """Get the rendered history of a conversation."""
    if len(conversation_id) < 5:
        raise HTTPException(status_code=400, detail="Formato inválido de ID de conversa.")
    return HistoryResponse(history=conversation_store.rendered_history(conversation_id))


async def _read_image(upload: UploadFile) -> ImageAttachment:
    """
    Validate and read an uploaded image.

    Raises:
        HTTPException: 400 if the extension is not allowed or the file is too large
    """
    extension = os.path.splitext(upload.filename)[1].lstrip(".").lower()
    if extension not in ALLOWED_IMAGE_EXTENSIONS:
        raise HTTPException(
            status_code=400,
            detail="Apenas arquivos de imagem (jpg, jpeg, png, gif) são permitidos!"
        )

    data = await upload.read(MAX_IMAGE_BYTES + 1)
    if len(data) > MAX_IMAGE_BYTES:
        raise HTTPException(status_code=400, detail="Erro no upload da imagem: File too large")
    if not data:
        raise HTTPException(status_code=400, detail="Erro no upload da imagem: arquivo vazio")

    return ImageAttachment(data=data, mime_type=ALLOWED_IMAGE_EXTENSIONS[extension])


if __name__ == "__main__":
    import uvicorn
    logger.info(f"Starting EVA plant assistant API on port {PORT}")
    uvicorn.run(app, host="0.0.0.0", port=PORT)
