"""
tests/fakes.py
Scripted test doubles shared by the test modules.
No network, no real model, no real message content.
"""

import json
from pathlib import Path
from typing import Callable, List, Optional

from shomer.classifier.client import ContentClassifier, ModelRate, ModelSet
from shomer.llm.base import ChatRequest, LLMAdapter, LLMCompletion
from shomer.models.record import MessageRecord, SubjectProfile

PROMPT_TOKENS     = 1000
COMPLETION_TOKENS = 100

MODELS = ModelSet(fast='fast', deep='deep', vision='vision', audio='audio')
RATES = {
    'fast':   ModelRate(input_per_million=1.0,  output_per_million=2.0),    # 0.0012 per call
    'deep':   ModelRate(input_per_million=10.0, output_per_million=20.0),   # 0.012 per call
    'vision': ModelRate(input_per_million=1.0,  output_per_million=2.0),
    'audio':  ModelRate(input_per_million=1.0,  output_per_million=2.0),
}
FAST_COST = 0.0012
DEEP_COST = 0.012

BASE_TS = 1_700_000_000


class FakeLLM(LLMAdapter):
    """
    handler(request) -> str | None. None simulates a failed call.
    Every request is recorded for assertions.
    """

    def __init__(self, handler: Optional[Callable[[ChatRequest], Optional[str]]] = None,
                 supports_audio: bool = False):
        self.handler        = handler or (lambda req: findings_json())
        self.supports_audio = supports_audio
        self.requests: List[ChatRequest] = []

    def is_available(self) -> bool:
        return True

    def complete(self, request: ChatRequest) -> Optional[LLMCompletion]:
        self.requests.append(request)
        content = self.handler(request)
        if content is None:
            return None
        return LLMCompletion(
            content           = content,
            prompt_tokens     = PROMPT_TOKENS,
            completion_tokens = COMPLETION_TOKENS,
            model_used        = request.model,
        )

    def calls_to(self, model: str, json_mode: bool = True) -> List[ChatRequest]:
        """Requests to one model. New-contact assessments are the json_mode=False calls."""
        return [r for r in self.requests if r.model == model and r.json_mode == json_mode]


class FakeClock:
    """Monotonic fake wall clock, one second per reading."""

    def __init__(self, start: float = 1_800_000_000.0, step: float = 1.0):
        self.now  = start
        self.step = step

    def __call__(self) -> float:
        self.now += self.step
        return self.now


def finding(severity='high', category='bullying', summary='A participant is repeatedly insulting the child.',
            confidence=0.9, recommendation='Talk with your child about how they feel.'):
    return {
        'severity':       severity,
        'category':       category,
        'summary':        summary,
        'recommendation': recommendation,
        'confidence':     confidence,
    }


def findings_json(*items) -> str:
    return json.dumps({'findings': list(items)})


def make_classifier(llm: LLMAdapter) -> ContentClassifier:
    return ContentClassifier(llm, models=MODELS, rates=RATES)


def subject(account_id='acct-1', plan='basic', age=12, gender=None, name='Noa') -> SubjectProfile:
    return SubjectProfile(account_id=account_id, name=name, age=age, gender=gender, plan=plan)


def message(chat_id: str, i: int, ts: Optional[int] = None, body: Optional[str] = None,
            chat_name: str = 'Dana', **kwargs) -> MessageRecord:
    return MessageRecord(
        external_id       = f"{chat_id}-{i:04d}",
        chat_id           = chat_id,
        chat_name         = chat_name,
        sender_id         = 'child' if i % 2 == 0 else f"{chat_id}-peer",
        sender_name       = 'Noa' if i % 2 == 0 else chat_name,
        is_subject_author = i % 2 == 0,
        body              = body if body is not None else f"ordinary message number {i}",
        timestamp         = ts if ts is not None else BASE_TS + i * 60,
        **kwargs,
    )


def seed_chat(store, account_id: str, chat_id: str, count: int, start: int = 0,
              chat_name: str = 'Dana', is_group: bool = False, ts_offset: int = 0) -> List[MessageRecord]:
    """Insert `count` messages numbered from `start` and register the contact."""
    msgs = [
        message(chat_id, i, ts=BASE_TS + ts_offset + i * 60, chat_name=chat_name)
        for i in range(start, start + count)
    ]
    for m in msgs:
        store.insert_message(account_id, m)
    store.upsert_contact(account_id, chat_id, chat_name, float(msgs[0].timestamp), is_group)
    return msgs


def write_file(path: Path, size: int = 2048) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(b'\x00' * size)
    return path
