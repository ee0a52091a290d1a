"""
Configuration Module

Loads environment variables and provides configuration constants for the
evaluation engine. Everything has a local default so the engine runs without
a .env file.

==============================================================================
FEATURES CONFIGURED IN THIS MODULE:
==============================================================================

1. JUDGE ENDPOINT (Feature: llm-judge)
   - LLM_BASE_URL / LLM_API_KEY / LLM_MODEL: OpenAI-compatible responses API
   - JUDGE_*: default sampling and timeout for judge calls

2. RETRY CONFIGURATION FOR RATE LIMITING (Feature: rate-limit-retry)
   - RETRY_MAX_ATTEMPTS: How many times to try before giving up
   - RETRY_BASE_DELAY: Initial delay (seconds), doubles each retry
   - RETRY_MAX_DELAY: Maximum delay cap to prevent excessive waits

3. EVALUATION DEFAULTS (Feature: evaluation-methods)
   - DEFAULT_THRESHOLD, DEFAULT_BATCH_SIZE, FALLBACK_SCORE

==============================================================================
"""

import os
from dotenv import load_dotenv

# Load .env file
load_dotenv()

# API
API_TITLE = os.getenv("API_TITLE", "Tool Evaluation API")
API_HOST = os.getenv("API_HOST", "0.0.0.0")
API_PORT = int(os.getenv("API_PORT", "8000"))
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()

# CORS
CORS_ORIGINS = os.getenv("CORS_ORIGINS", "http://localhost:3000,http://localhost:5173").split(",")

# Storage connector factory, "package.module:callable" returning a StorageConnector
STORAGE_CONNECTOR_FACTORY = os.getenv("STORAGE_CONNECTOR_FACTORY", "")


def resolve_llm_api_key(environ=os.environ) -> str:
    """LLM_API_KEY -> OPENAI_API_KEY -> ANTHROPIC_API_KEY -> "ollama" (no-auth fallback).

    An LLM_API_KEY that is set but empty is kept empty, which disables the judge.
    """
    explicit = environ.get("LLM_API_KEY")
    if explicit is not None:
        return explicit
    return environ.get("OPENAI_API_KEY") or environ.get("ANTHROPIC_API_KEY") or "ollama"


# LLM judge (any endpoint speaking the OpenAI responses API)
# Ollama doesn't require a real key; hosted endpoints need LLM_API_KEY or a provider key.
LLM_BASE_URL = os.getenv("LLM_BASE_URL", "http://localhost:11434/v1")
LLM_API_KEY = resolve_llm_api_key()
LLM_MODEL = os.getenv("LLM_MODEL", "gpt-4o-mini")

JUDGE_TEMPERATURE = float(os.getenv("JUDGE_TEMPERATURE", "0.1"))
JUDGE_MAX_TOKENS = int(os.getenv("JUDGE_MAX_TOKENS", "1000"))
JUDGE_TIMEOUT_SECONDS = float(os.getenv("JUDGE_TIMEOUT_SECONDS", "30"))

# ==============================================================================
# RETRY CONFIGURATION FOR RATE LIMITING (Feature: rate-limit-retry)
# ==============================================================================
# With defaults (3 attempts, 1s base): waits 1s, 2s before the last attempt.
# Only rate limits and 5xx responses from the judge are retried.
# ==============================================================================
RETRY_MAX_ATTEMPTS = int(os.getenv("RETRY_MAX_ATTEMPTS", "3"))
RETRY_BASE_DELAY = float(os.getenv("RETRY_BASE_DELAY", "1.0"))
RETRY_MAX_DELAY = float(os.getenv("RETRY_MAX_DELAY", "30.0"))

# Evaluation defaults
DEFAULT_THRESHOLD = float(os.getenv("DEFAULT_THRESHOLD", "0.5"))
DEFAULT_BATCH_SIZE = int(os.getenv("DEFAULT_BATCH_SIZE", "10"))
FALLBACK_SCORE = 0.5
