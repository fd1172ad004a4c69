"""Integration test configuration and fixtures.

Offline scenarios run against a file-backed SQLite ledger with scripted
generators. Live scenarios run against real LLM providers and are skipped
automatically if the required provider is not configured.
"""

from __future__ import annotations

import os
from typing import TYPE_CHECKING

import pytest
from dotenv import load_dotenv

from runwarden.budget import SqliteLedger

# Load .env file at import time so provider availability checks work
load_dotenv()

if TYPE_CHECKING:
    from collections.abc import Generator
    from pathlib import Path

    from langchain_core.language_models import BaseChatModel


def _ollama_available() -> bool:
    """Check if Ollama is configured and reachable."""
    host = os.getenv("OLLAMA_HOST")
    if not host:
        return False

    try:
        import httpx

        response = httpx.get(f"{host}/api/tags", timeout=5.0)
        return response.status_code == 200
    except (httpx.ConnectError, httpx.TimeoutException, httpx.HTTPError, OSError):
        return False


def _openai_available() -> bool:
    """Check if OpenAI API key is configured."""
    return bool(os.getenv("OPENAI_API_KEY"))


# Skip markers
requires_any_provider = pytest.mark.skipif(
    not (_ollama_available() or _openai_available()),
    reason="No LLM provider configured (need OLLAMA_HOST or OPENAI_API_KEY)",
)


@pytest.fixture
def ledger(tmp_path: Path) -> Generator[SqliteLedger, None, None]:
    """A SQLite ledger in a temporary file, closed after the test."""
    ledger = SqliteLedger(tmp_path / "ledger.db")
    yield ledger
    ledger.close()


@pytest.fixture
def live_model() -> tuple[str, BaseChatModel]:
    """Create a chat model from the first configured provider.

    Prefers OpenAI (gpt-4o-mini for cost efficiency), then Ollama (qwen3:8b).
    """
    from runwarden.providers.factory import create_chat_model

    if _openai_available():
        return "openai", create_chat_model("openai", "gpt-4o-mini")
    if _ollama_available():
        return "ollama", create_chat_model("ollama", "qwen3:8b")
    pytest.skip("No LLM provider configured")
