# /pdfchat/config.py
"""
Centralized configuration for the PDF chat client and relay service.
Includes remote service endpoints, model names, timeouts, paths and upload limits.
"""
import os
from pathlib import Path
from dotenv import load_dotenv
from rich.console import Console
from .observability import configure_logging

# ==============================================================================
# CONSOLE & ENVIRONMENT
# ==============================================================================
console = Console()
load_dotenv()


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return bool(default)
    return str(raw).strip().lower() in {"1", "true", "yes", "on"}


def _env_int(name: str, default: int, minimum: int = 1) -> int:
    raw = os.getenv(name)
    if raw is None:
        return int(default)
    try:
        value = int(raw)
    except ValueError:
        return int(default)
    return max(minimum, value)


def _env_float(name: str, default: float, minimum: float = 0.0) -> float:
    raw = os.getenv(name)
    if raw is None:
        return float(default)
    try:
        value = float(raw)
    except ValueError:
        return float(default)
    return max(float(minimum), value)


def _env_str(name: str, default: str | None = None) -> str | None:
    raw = os.getenv(name)
    if raw is None:
        return default
    value = raw.strip()
    return value or default


# ==============================================================================
# GLOBAL CONFIGURATION
# ==============================================================================
# --- OpenAI (relay service side) ---
OPENAI_API_KEY = _env_str("OPENAI_API_KEY")
OPENAI_MODEL_NAME = _env_str("OPENAI_MODEL_NAME", "gpt-4o-mini")
# Shared vector store; when unset every registered document gets its own store.
OPENAI_VECTOR_STORE_ID = _env_str("OPENAI_VECTOR_STORE_ID")

# --- Remote RAG service (client side) ---
RAG_SERVICE_URL = _env_str("RAG_SERVICE_URL", "http://127.0.0.1:8000")
REQUEST_TIMEOUT_S = _env_float("REQUEST_TIMEOUT_S", 30.0, minimum=1.0)

# --- Streaming Tuning ---
# Set to 0 to disable the inactivity window for a turn.
STREAM_IDLE_TIMEOUT_S = _env_float("STREAM_IDLE_TIMEOUT_S", 30.0, minimum=0.0)
SEARCH_STATUS_MESSAGE = "Searching through your PDF..."

# --- Upload Limits ---
MAX_UPLOAD_MB = _env_int("MAX_UPLOAD_MB", 25, minimum=1)
MAX_UPLOAD_BYTES = MAX_UPLOAD_MB * 1024 * 1024
UPLOAD_TIMEOUT_S = _env_float("UPLOAD_TIMEOUT_S", 30.0, minimum=1.0)
# Polling the vector store until the file is indexed can take far longer than the upload.
INDEXING_TIMEOUT_S = _env_float("INDEXING_TIMEOUT_S", 300.0, minimum=1.0)

# --- Server ---
API_HOST = _env_str("API_HOST", "127.0.0.1")
API_PORT = _env_int("API_PORT", 8000, minimum=1)
API_RELOAD = _env_bool("API_RELOAD", False)

# --- Path Configuration ---
# Data directory is at ../../data relative to this file (src/pdfchat/config.py)
_BASE_DIR = Path(__file__).resolve().parent.parent.parent
DATA_DIR = Path(_env_str("DATA_DIR", str(_BASE_DIR / "data")))
METRICS_DIR = Path(_env_str("METRICS_DIR", str(DATA_DIR / "logs")))

# --- Create necessary directories ---
DATA_DIR.mkdir(parents=True, exist_ok=True)
METRICS_DIR.mkdir(parents=True, exist_ok=True)
LOG_PATH = Path(_env_str("LOG_PATH", str(DATA_DIR / "logs" / "app.log")))
LOG_PATH.parent.mkdir(parents=True, exist_ok=True)
LOG_LEVEL = _env_str("LOG_LEVEL", "INFO")
configure_logging(LOG_PATH, LOG_LEVEL)
