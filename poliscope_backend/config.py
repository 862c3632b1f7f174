"""Shared environment configuration constants for the PoliScope backend."""
import os

# --- Database (optional; pipeline runs in memory when unset) ---
DATABASE_URL = os.getenv("DATABASE_URL")

# --- Scoring oracle ---
ORACLE_MODE = os.getenv("ORACLE_MODE", "analyze")  # 'analyze' or 'chat'
ORACLE_BASE_URL = os.getenv("ORACLE_BASE_URL", "http://localhost:8088")
ORACLE_CHAT_MODEL = os.getenv("ORACLE_CHAT_MODEL", "grok-3")
ORACLE_API_KEY = os.getenv("ORACLE_API_KEY")
ORACLE_MODEL_VERSION = os.getenv("ORACLE_MODEL_VERSION", "v1")

# --- Embeddings ---
# 'lexical' uses the built-in hashed bag-of-words vectors; 'http' calls an
# OpenAI-compatible /v1/embeddings endpoint.
EMBEDDING_MODE = os.getenv("EMBEDDING_MODE", "lexical")
EMBEDDING_BASE_URL = os.getenv("EMBEDDING_BASE_URL", ORACLE_BASE_URL)
EMBEDDING_MODEL = os.getenv("EMBEDDING_MODEL", "text-embedding-3-small")

# --- Logging ---
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
TRACE_API_CALLS = os.getenv("TRACE_API_CALLS", "false").strip().lower() in {"1", "true", "yes", "on"}
API_LOG_PREVIEW_CHARS = int(os.getenv("API_LOG_PREVIEW_CHARS", "280"))

# --- CORS ---
CORS_ORIGINS = [
    origin.strip()
    for origin in os.getenv("CORS_ORIGINS", "http://localhost:3000").split(",")
    if origin.strip()
]
