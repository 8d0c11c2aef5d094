"""
shomer/llm/base.py
Abstract base class for all LLM adapters.
To add a new backend: subclass LLMAdapter and implement complete().
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import List, Optional


@dataclass
class MediaPart:
    """Binary attachment sent alongside a prompt (image or audio)."""
    data:      bytes
    mime_type: str
    format:    str = ''       # audio container, e.g. "ogg", "mp3"


@dataclass
class ChatRequest:
    model:         str
    system_prompt: str
    user_prompt:   str
    temperature:   float             = 0.1
    json_mode:     bool              = True
    images:        List[MediaPart]   = field(default_factory=list)
    audio:         Optional[MediaPart] = None


@dataclass
class LLMCompletion:
    content:           str
    prompt_tokens:     int
    completion_tokens: int
    model_used:        str


class LLMAdapter(ABC):
    """
    All LLM backends implement this interface.
    The classifier calls complete() and gets back an LLMCompletion.
    The caller never knows which backend is running.
    """

    supports_audio: bool = False

    @abstractmethod
    def is_available(self) -> bool:
        """
        Returns True if the backend is reachable and ready.
        Called by the CLI before a scan so it can fail fast.
        """
        ...

    @abstractmethod
    def complete(self, request: ChatRequest) -> Optional[LLMCompletion]:
        """
        Run one chat completion.
        Returns None on API failure — caller treats it as "nothing found".
        Never raises — catch internally and return None.
        """
        ...
