"""Clients package containing the language-model client."""

from __future__ import annotations

from .base import LanguageModelClient
from .llm_client import LLMClient

__all__ = ["LLMClient", "LanguageModelClient"]
