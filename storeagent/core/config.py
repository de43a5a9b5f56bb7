"""
Configuration for the agent command orchestration core.
All values come from the environment (optionally via a .env file).
"""

import os
from pathlib import Path

from dotenv import load_dotenv

load_dotenv()

# Database path configuration
DB_PATH = os.getenv("DB_PATH", "./data/store.db")

DEBUG = os.getenv("DEBUG", "false").lower() == "true"

# Approval broker (0 disables expiry)
APPROVAL_TTL_SEC = int(os.getenv("APPROVAL_TTL_SEC", "3600"))

# Tool-call adapter / LLM collaborator
LLM_PROVIDER = os.getenv("LLM_PROVIDER", "mock")  # ollama|mock
OLLAMA_MODEL = os.getenv("OLLAMA_MODEL", "qwen2.5:7b")
OLLAMA_HOST = os.getenv("OLLAMA_HOST", "http://localhost:11434")
LLM_TIMEOUT_SEC = float(os.getenv("LLM_TIMEOUT_SEC", "30"))
LLM_HISTORY_TURNS = int(os.getenv("LLM_HISTORY_TURNS", "6"))

# Name recorded on audit entries when the caller does not supply one
AGENT_NAME = os.getenv("AGENT_NAME", "AI Agent")

API_CORS_ORIGINS = [
    origin.strip()
    for origin in os.getenv("API_CORS_ORIGINS", "http://localhost:3000,http://127.0.0.1:3000").split(",")
    if origin.strip()
]

VERSION = "1.0.0"


def debug_enabled():
    """Check if debug mode is enabled."""
    return os.getenv("DEBUG", "false").lower() == "true"


def ensure_db_directory(db_path: str = None):
    """Ensure the database directory exists."""
    Path(db_path or DB_PATH).parent.mkdir(parents=True, exist_ok=True)


def get_approval_ttl():
    """Get approval time-to-live in seconds (0 means approvals never expire)."""
    return APPROVAL_TTL_SEC


def get_llm_provider():
    """Get configured LLM provider (ollama|mock)."""
    return LLM_PROVIDER


def validate_config():
    """Validate configuration and return any issues."""
    issues = []

    if APPROVAL_TTL_SEC < 0:
        issues.append("APPROVAL_TTL_SEC must be >= 0")

    if LLM_PROVIDER not in ["ollama", "mock"]:
        issues.append(f"Invalid LLM_PROVIDER: {LLM_PROVIDER}")

    if LLM_TIMEOUT_SEC <= 0:
        issues.append("LLM_TIMEOUT_SEC must be > 0")

    if LLM_HISTORY_TURNS < 0:
        issues.append("LLM_HISTORY_TURNS must be >= 0")

    return issues
