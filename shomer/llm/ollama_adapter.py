"""
shomer/llm/ollama_adapter.py
Ollama backend adapter. Default backend: everything stays on the machine.
Supports any model pulled via `ollama pull <model>`.

Vision needs a multimodal model (llava, llama3.2-vision, ...).
Ollama has no audio input, so supports_audio is False and the media
subsystem falls back to local whisper transcription.
"""

import base64
import json
import logging
import urllib.error
import urllib.request
from typing import List, Optional

from shomer.llm.base import ChatRequest, LLMAdapter, LLMCompletion

logger = logging.getLogger(__name__)


class OllamaAdapter(LLMAdapter):

    supports_audio = False

    def __init__(
        self,
        host:        str = 'http://localhost:11434',
        timeout_sec: int = 120,
    ):
        self.host        = host.rstrip('/')
        self.timeout_sec = timeout_sec

    # ── AVAILABILITY CHECK ───────────────────────────────────
    def is_available(self) -> bool:
        """Ping Ollama. True if the tags endpoint answers."""
        try:
            req = urllib.request.Request(f"{self.host}/api/tags", method='GET')
            with urllib.request.urlopen(req, timeout=5) as resp:
                json.loads(resp.read().decode())
            return True
        except urllib.error.URLError:
            logger.warning(
                "Ollama not reachable at " + self.host +
                ". Start Ollama or check if it's running."
            )
            return False
        except Exception as e:
            logger.warning(f"Ollama availability check failed: {type(e).__name__}")
            return False

    # ── COMPLETION ───────────────────────────────────────────
    def complete(self, request: ChatRequest) -> Optional[LLMCompletion]:
        if request.audio is not None:
            logger.debug("Ollama has no audio input — skipping request.")
            return None

        user_msg = {'role': 'user', 'content': request.user_prompt}
        if request.images:
            user_msg['images'] = [
                base64.b64encode(img.data).decode('ascii') for img in request.images
            ]

        body = {
            'model':    request.model,
            'messages': [
                {'role': 'system', 'content': request.system_prompt},
                user_msg,
            ],
            'stream':  False,
            'options': {'temperature': request.temperature},
        }
        if request.json_mode:
            body['format'] = 'json'   # Ollama JSON mode

        payload = json.dumps(body).encode('utf-8')

        try:
            req = urllib.request.Request(
                f"{self.host}/api/chat",
                data    = payload,
                headers = {'Content-Type': 'application/json'},
                method  = 'POST',
            )
            with urllib.request.urlopen(req, timeout=self.timeout_sec) as resp:
                data = json.loads(resp.read().decode('utf-8'))

            message = data.get('message') or {}
            return LLMCompletion(
                content           = str(message.get('content', '')).strip(),
                prompt_tokens     = int(data.get('prompt_eval_count') or 0),
                completion_tokens = int(data.get('eval_count') or 0),
                model_used        = str(data.get('model') or request.model),
            )

        except urllib.error.URLError as e:
            logger.error(f"Ollama request failed: {type(e).__name__}")
            return None
        except json.JSONDecodeError:
            logger.error("JSON decode failed in Ollama response")
            return None
        except Exception as e:
            logger.error(f"Ollama complete error: {type(e).__name__}")
            return None

    # ── MODEL MANAGEMENT HELPERS ─────────────────────────────
    def list_available_models(self) -> List[str]:
        """Return list of locally available Ollama model names."""
        try:
            req = urllib.request.Request(f"{self.host}/api/tags", method='GET')
            with urllib.request.urlopen(req, timeout=5) as resp:
                data = json.loads(resp.read().decode())
            return [m['name'] for m in data.get('models', [])]
        except Exception:
            return []
