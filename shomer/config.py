"""
shomer/config.py
JSON config persisted to shomer_config.json, merged over DEFAULT_CONFIG.
Also wires the configured LLM backend and classifier.
"""

from __future__ import annotations

import json
import logging
import os
from pathlib import Path
from typing import Any, Dict, Optional

from shomer.classifier.client import ContentClassifier, ModelRate, ModelSet
from shomer.errors import ShomerError
from shomer.llm.base import LLMAdapter

logger = logging.getLogger(__name__)

CONFIG_FILENAME = "shomer_config.json"

DEFAULT_CONFIG = {
    "db_path": "shomer.db",
    "media_dir": "media",
    "backend": "ollama",                      # ollama | openai
    "ollama_host": "http://localhost:11434",
    "openai_base_url": "https://openrouter.ai/api/v1",
    "openai_api_key_env": "OPENROUTER_API_KEY",
    "model_fast": "llama3.1:8b",
    "model_deep": "llama3.1:70b",
    "model_vision": "llava:13b",
    "model_audio": "llama3.1:8b",
    "model_rates": {},                        # model → {input_per_million, output_per_million}
    "whisper_model": "small",
    "whisper_language": None,
    "request_timeout_sec": 120,
}


def _config_path(project_root: Optional[Path] = None) -> Path:
    root = Path(project_root) if project_root else Path.cwd()
    if root.suffix == ".json":
        return root
    return root / CONFIG_FILENAME


def load_config(project_root: Optional[Path] = None) -> Dict[str, Any]:
    """Load config from shomer_config.json. Returns defaults if missing or unreadable."""
    path = _config_path(project_root)
    if path.exists():
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
            if isinstance(data, dict):
                return {**DEFAULT_CONFIG, **data}
            logger.warning(f"Config {path} is not a JSON object — using defaults")
        except (json.JSONDecodeError, OSError) as e:
            logger.warning(f"Config load failed: {type(e).__name__}")
    return dict(DEFAULT_CONFIG)


def save_config(config: Dict[str, Any], project_root: Optional[Path] = None) -> Path:
    """Persist config to shomer_config.json."""
    path = _config_path(project_root)
    path.write_text(json.dumps(config, indent=2), encoding="utf-8")
    return path


def build_llm(config: Dict[str, Any]) -> LLMAdapter:
    backend = (config.get("backend") or "ollama").lower()
    timeout = int(config.get("request_timeout_sec") or 120)
    if backend == "openai":
        from shomer.llm.openai_adapter import OpenAIAdapter
        api_key = os.environ.get(config.get("openai_api_key_env") or "OPENROUTER_API_KEY")
        if not api_key:
            raise ShomerError(f"{config.get('openai_api_key_env')} is not set")
        return OpenAIAdapter(
            api_key     = api_key,
            base_url    = config.get("openai_base_url"),
            timeout_sec = timeout,
        )
    if backend != "ollama":
        logger.warning(f"Unknown backend '{backend}' — using ollama")
    from shomer.llm.ollama_adapter import OllamaAdapter
    return OllamaAdapter(host=config.get("ollama_host"), timeout_sec=timeout)


def build_classifier(config: Dict[str, Any], llm: LLMAdapter) -> ContentClassifier:
    rates = {
        model: ModelRate(
            input_per_million  = float(r.get("input_per_million", 0.0)),
            output_per_million = float(r.get("output_per_million", 0.0)),
        )
        for model, r in (config.get("model_rates") or {}).items()
        if isinstance(r, dict)
    }
    models = ModelSet(
        fast   = config.get("model_fast")   or DEFAULT_CONFIG["model_fast"],
        deep   = config.get("model_deep")   or DEFAULT_CONFIG["model_deep"],
        vision = config.get("model_vision") or DEFAULT_CONFIG["model_vision"],
        audio  = config.get("model_audio")  or DEFAULT_CONFIG["model_audio"],
    )
    return ContentClassifier(llm, models=models, rates=rates)


def build_orchestrator(config: Dict[str, Any], store, live_feed=None, llm: Optional[LLMAdapter] = None):
    """Store + configured backend → a ready ScanOrchestrator."""
    from shomer.media.analyzer import MediaAnalyzer
    from shomer.scanner import ScanOrchestrator

    classifier = build_classifier(config, llm or build_llm(config))
    media = MediaAnalyzer(
        classifier,
        whisper_model    = config.get("whisper_model") or "small",
        whisper_language = config.get("whisper_language"),
    )
    return ScanOrchestrator(store, classifier, media_analyzer=media, live_feed=live_feed)
