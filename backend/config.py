"""Configuration management for the EVA plant assistant backend."""
import os
import logging
from dotenv import load_dotenv

# Load environment variables
load_dotenv()

# API Keys
GROQ_API_KEY = os.getenv("GROQ_API_KEY")
SUPABASE_URL = os.getenv("SUPABASE_URL")
SUPABASE_KEY = os.getenv("SUPABASE_KEY")

# Server Configuration
PORT = int(os.getenv("PORT", "8000"))
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
LOG_FORMAT = os.getenv("LOG_FORMAT", "text")  # "text" or "json"

# CORS Configuration
CORS_ORIGINS = os.getenv(
    "CORS_ORIGINS",
    "http://localhost:3000,http://localhost:5173"
).split(",")

# Model Configuration
TEXT_MODEL = os.getenv("TEXT_MODEL", "llama-3.3-70b-versatile")
VISION_MODEL = os.getenv("VISION_MODEL", "meta-llama/llama-4-scout-17b-16e-instruct")
MAX_OUTPUT_TOKENS = 1024
TEMPERATURE = 0.7

# Image hosting (Supabase Storage)
SUPABASE_BUCKET = os.getenv("SUPABASE_BUCKET", "plant-images")
MAX_IMAGE_BYTES = 10 * 1024 * 1024  # 10MB
ALLOWED_IMAGE_EXTENSIONS = {
    "jpg": "image/jpeg",
    "jpeg": "image/jpeg",
    "png": "image/png",
    "gif": "image/gif",
}

# Tool server (MCP over stdio)
TOOL_SERVER_COMMAND = os.getenv("TOOL_SERVER_COMMAND", "node")
TOOL_SERVER_ARGS = os.getenv("TOOL_SERVER_ARGS", "custom-server/index.js").split()
TOOL_CALL_TIMEOUT_SECONDS = float(os.getenv("TOOL_CALL_TIMEOUT_SECONDS", "30"))
TOOL_PING_INTERVAL_SECONDS = float(os.getenv("TOOL_PING_INTERVAL_SECONDS", "30"))
IDENTIFY_TOOL_NAME = "identify_plant"
SEARCH_TOOL_NAME = "search_plant"

# Conversation Configuration
CONVERSATION_TTL_SECONDS = int(os.getenv("CONVERSATION_TTL_SECONDS", "21600"))  # 6 hours
HISTORY_TOKEN_BUDGET = int(os.getenv("HISTORY_TOKEN_BUDGET", "3000"))  # tokens
MAX_PROMPT_CHARS = 2000

# Logging Configuration
logging.basicConfig(
    level=getattr(logging, LOG_LEVEL),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
