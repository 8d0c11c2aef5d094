"""
tests/test_config.py
Config persistence and backend wiring. No network calls are made.
"""

import json

import pytest

from fakes import FakeLLM
from shomer.config import (
    CONFIG_FILENAME, DEFAULT_CONFIG, build_classifier, build_llm, build_orchestrator,
    load_config, save_config,
)
from shomer.errors import ShomerError
from shomer.llm.ollama_adapter import OllamaAdapter
from shomer.llm.openai_adapter import OpenAIAdapter
from shomer.scanner import ScanOrchestrator


class TestLoadSave:

    def test_defaults_when_missing(self, tmp_path):
        assert load_config(tmp_path) == DEFAULT_CONFIG

    def test_roundtrip_merges_over_defaults(self, tmp_path):
        save_config({'model_fast': 'tiny'}, tmp_path)
        cfg = load_config(tmp_path)
        assert cfg['model_fast'] == 'tiny'
        assert cfg['model_deep'] == DEFAULT_CONFIG['model_deep']

    def test_explicit_json_path(self, tmp_path):
        path = tmp_path / 'custom.json'
        path.write_text(json.dumps({'backend': 'openai'}), encoding='utf-8')
        assert load_config(path)['backend'] == 'openai'

    def test_corrupt_file_gives_defaults(self, tmp_path):
        (tmp_path / CONFIG_FILENAME).write_text('{oops', encoding='utf-8')
        assert load_config(tmp_path) == DEFAULT_CONFIG

    def test_non_object_gives_defaults(self, tmp_path):
        (tmp_path / CONFIG_FILENAME).write_text('[1, 2]', encoding='utf-8')
        assert load_config(tmp_path) == DEFAULT_CONFIG

    def test_defaults_not_shared(self, tmp_path):
        cfg = load_config(tmp_path)
        cfg['db_path'] = 'elsewhere.db'
        assert DEFAULT_CONFIG['db_path'] == 'shomer.db'


class TestBuild:

    def test_ollama_is_default(self):
        llm = build_llm(dict(DEFAULT_CONFIG))
        assert isinstance(llm, OllamaAdapter)
        assert llm.supports_audio is False

    def test_openai_requires_key(self, monkeypatch):
        monkeypatch.delenv('OPENROUTER_API_KEY', raising=False)
        with pytest.raises(ShomerError):
            build_llm({**DEFAULT_CONFIG, 'backend': 'openai'})

    def test_openai_with_key(self, monkeypatch):
        monkeypatch.setenv('OPENROUTER_API_KEY', 'sk-test')
        llm = build_llm({**DEFAULT_CONFIG, 'backend': 'openai'})
        assert isinstance(llm, OpenAIAdapter)
        assert llm.supports_audio is True

    def test_classifier_models_and_rates(self):
        cfg = {**DEFAULT_CONFIG, 'model_fast': 'm-fast',
               'model_rates': {'m-fast': {'input_per_million': 0.5, 'output_per_million': 1.5}}}
        clf = build_classifier(cfg, FakeLLM())
        assert clf.models.fast == 'm-fast'
        assert clf.rates['m-fast'].output_per_million == 1.5

    def test_orchestrator_wired(self, store):
        orch = build_orchestrator(dict(DEFAULT_CONFIG), store, llm=FakeLLM())
        assert isinstance(orch, ScanOrchestrator)
        assert orch.media_analyzer is not None
        assert orch.store is store
