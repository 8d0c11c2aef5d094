"""
shomer/llm — LLM backend adapters (local Ollama, hosted OpenAI-compatible).
"""

from shomer.llm.base import ChatRequest, LLMAdapter, LLMCompletion, MediaPart

__all__ = [
    "ChatRequest",
    "LLMAdapter",
    "LLMCompletion",
    "MediaPart",
]
