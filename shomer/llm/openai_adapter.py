"""
shomer/llm/openai_adapter.py
Adapter for hosted OpenAI-compatible chat endpoints (OpenAI, OpenRouter, ...).

Retries are disabled on the client: a failed call is reported as None
and the scan moves on.
"""

import base64
import logging
from typing import Optional

from openai import OpenAI, OpenAIError

from shomer.llm.base import ChatRequest, LLMAdapter, LLMCompletion

logger = logging.getLogger(__name__)

OPENROUTER_BASE_URL = 'https://openrouter.ai/api/v1'


class OpenAIAdapter(LLMAdapter):

    supports_audio = True

    def __init__(
        self,
        api_key:     Optional[str] = None,
        base_url:    str           = OPENROUTER_BASE_URL,
        timeout_sec: int           = 120,
        client:      Optional[OpenAI] = None,
    ):
        self.base_url = base_url
        self.client   = client or OpenAI(
            api_key     = api_key,
            base_url    = base_url,
            timeout     = timeout_sec,
            max_retries = 0,
        )

    def is_available(self) -> bool:
        try:
            self.client.models.list()
            return True
        except OpenAIError as e:
            logger.warning(f"Endpoint {self.base_url} unavailable: {type(e).__name__}")
            return False

    def complete(self, request: ChatRequest) -> Optional[LLMCompletion]:
        if request.images or request.audio is not None:
            content = []
            for img in request.images:
                encoded = base64.b64encode(img.data).decode('ascii')
                content.append({
                    'type':      'image_url',
                    'image_url': {'url': f"data:{img.mime_type};base64,{encoded}"},
                })
            if request.audio is not None:
                content.append({
                    'type':        'input_audio',
                    'input_audio': {
                        'data':   base64.b64encode(request.audio.data).decode('ascii'),
                        'format': request.audio.format or 'ogg',
                    },
                })
            content.append({'type': 'text', 'text': request.user_prompt})
        else:
            content = request.user_prompt

        kwargs = {
            'model':       request.model,
            'temperature': request.temperature,
            'messages':    [
                {'role': 'system', 'content': request.system_prompt},
                {'role': 'user',   'content': content},
            ],
        }
        if request.json_mode:
            kwargs['response_format'] = {'type': 'json_object'}

        try:
            response = self.client.chat.completions.create(**kwargs)
        except OpenAIError as e:
            logger.error(f"Chat completion failed: {type(e).__name__}")
            return None

        usage  = response.usage
        choice = response.choices[0] if response.choices else None
        text   = (choice.message.content if choice and choice.message else None) or ''
        return LLMCompletion(
            content           = text.strip(),
            prompt_tokens     = int(getattr(usage, 'prompt_tokens', 0) or 0),
            completion_tokens = int(getattr(usage, 'completion_tokens', 0) or 0),
            model_used        = response.model or request.model,
        )
