"""
shomer/classifier/client.py
Content Classifier Client.

Wraps an LLMAdapter: builds prompts, parses bounded JSON, computes the
per-call cost and enforces the confidence floor.

Failure policy:
  - adapter returned None (network / API error) → zero findings, zero cost
  - output is not parseable JSON                → zero findings, zero cost
Neither case raises. Unparseable output means "nothing found".

Privacy: No prompt text, message content or raw model output is logged.
"""

import json
import logging
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from shomer.classifier import prompts
from shomer.classifier.taxonomy import ALL_CATEGORIES, TEXT_CATEGORIES, recommendation_for
from shomer.llm.base import ChatRequest, LLMAdapter, LLMCompletion, MediaPart
from shomer.models.record import ChatInfo, Finding, MessageRecord, SubjectProfile
from shomer.models.risk import Severity

logger = logging.getLogger(__name__)

MIN_CONFIDENCE = 0.5
MAX_TEXT_LEN   = 500
TEMPERATURE    = 0.1


# ── COST MODEL ───────────────────────────────────────────────

@dataclass(frozen=True)
class ModelRate:
    """USD per one million tokens."""
    input_per_million:  float = 0.0
    output_per_million: float = 0.0


def call_cost(rate: ModelRate, prompt_tokens: int, completion_tokens: int) -> float:
    """Linear in both token counts. Advisory accounting only."""
    return (
        (prompt_tokens / 1_000_000) * rate.input_per_million
        + (completion_tokens / 1_000_000) * rate.output_per_million
    )


@dataclass
class ModelSet:
    fast:   str = 'llama3.1:8b'
    deep:   str = 'llama3.1:70b'
    vision: str = 'llava:13b'
    audio:  str = 'llama3.1:8b'


@dataclass
class ClassificationResult:
    findings: List[Finding] = field(default_factory=list)
    cost:     float         = 0.0
    ok:       bool          = True      # False when the call failed or was unparseable


@dataclass
class ImageClassification:
    description: str           = ''
    findings:    List[Finding] = field(default_factory=list)
    cost:        float         = 0.0
    ok:          bool          = True


# ── RESPONSE PARSER ──────────────────────────────────────────

def _strip_fences(text: str) -> str:
    """Handles models that add markdown fences despite JSON mode."""
    clean = (text or '').strip()
    if clean.startswith('```'):
        parts = clean.split('```')
        if len(parts) >= 2:
            clean = parts[1]
            if clean.startswith('json'):
                clean = clean[4:]
    return clean.strip()


def parse_json_object(text: str) -> Optional[dict]:
    """Decode a JSON object. None for anything else."""
    try:
        data = json.loads(_strip_fences(text))
    except (json.JSONDecodeError, TypeError):
        return None
    return data if isinstance(data, dict) else None


def parse_findings(
    data:           dict,
    allowed:        Iterable[str]  = ALL_CATEGORIES,
    min_confidence: float          = MIN_CONFIDENCE,
) -> List[Finding]:
    """
    Turn a decoded {"findings": [...]} object into Findings.
    Malformed items are dropped one by one; a bad item never voids the batch.
    """
    allowed = set(allowed)
    items = data.get('findings')
    if not isinstance(items, list):
        return []

    findings: List[Finding] = []
    for item in items:
        if not isinstance(item, dict):
            continue
        severity = Severity.parse(item.get('severity'))
        category = str(item.get('category') or '').strip().lower()
        summary  = str(item.get('summary') or item.get('detail') or '').strip()
        try:
            confidence = float(item.get('confidence'))
        except (TypeError, ValueError):
            continue
        if severity is None or category not in allowed or not summary:
            continue
        confidence = min(max(confidence, 0.0), 1.0)
        if confidence < min_confidence:
            continue
        recommendation = str(item.get('recommendation') or '').strip() or recommendation_for(category)
        findings.append(Finding(
            severity       = severity,
            category       = category,
            summary        = summary[:MAX_TEXT_LEN],
            recommendation = recommendation[:MAX_TEXT_LEN],
            confidence     = confidence,
        ))
    return findings


# ── CLIENT ───────────────────────────────────────────────────

class ContentClassifier:
    """
    Two-tier classifier: a cheap triage model over every batch, and a
    stronger model for escalation (see shomer.detectors.escalation).
    """

    def __init__(
        self,
        llm:            LLMAdapter,
        models:         Optional[ModelSet]             = None,
        rates:          Optional[Dict[str, ModelRate]] = None,
        min_confidence: float                          = MIN_CONFIDENCE,
    ):
        self.llm            = llm
        self.models         = models or ModelSet()
        self.rates          = rates or {}
        self.min_confidence = min_confidence

    # ── INTERNAL ─────────────────────────────────────────────
    def _call(self, request: ChatRequest) -> Tuple[Optional[LLMCompletion], float]:
        try:
            completion = self.llm.complete(request)
        except Exception as e:
            # Adapters must not raise; a misbehaving one still must not stop a scan.
            logger.error(f"Adapter raised {type(e).__name__} — treating as failed call")
            return None, 0.0
        if completion is None:
            return None, 0.0
        rate = self.rates.get(request.model, ModelRate())
        return completion, call_cost(rate, completion.prompt_tokens, completion.completion_tokens)

    def _request(self, model: str, system_prompt: str, user_prompt: str, **kwargs) -> ChatRequest:
        return ChatRequest(
            model         = model,
            system_prompt = system_prompt,
            user_prompt   = user_prompt,
            temperature   = TEMPERATURE,
            **kwargs,
        )

    def _findings_call(self, request: ChatRequest, allowed=TEXT_CATEGORIES) -> ClassificationResult:
        completion, cost = self._call(request)
        if completion is None:
            return ClassificationResult(ok=False)
        data = parse_json_object(completion.content)
        if data is None:
            logger.warning(f"Unparseable classifier output from {request.model} — no findings")
            return ClassificationResult(ok=False)
        return ClassificationResult(
            findings = parse_findings(data, allowed, self.min_confidence),
            cost     = cost,
        )

    # ── TEXT ─────────────────────────────────────────────────
    def classify_batch(
        self,
        subject:          SubjectProfile,
        chat:             ChatInfo,
        context_messages: Sequence[MessageRecord],
        new_messages:     Sequence[MessageRecord],
    ) -> ClassificationResult:
        """Triage pass over one batch. Context messages are read-only."""
        if not new_messages:
            return ClassificationResult()
        request = self._request(
            self.models.fast,
            prompts.build_system_prompt(subject),
            prompts.build_batch_prompt(subject, chat, context_messages, new_messages),
        )
        result = self._findings_call(request)
        logger.debug(
            f"Triage: chat={chat.chat_id} batch={len(new_messages)} "
            f"findings={len(result.findings)} ok={result.ok}"
        )
        return result

    def deep_analyze(
        self,
        subject:          SubjectProfile,
        chat:             ChatInfo,
        context_messages: Sequence[MessageRecord],
        new_messages:     Sequence[MessageRecord],
        initial_findings: Sequence[Finding],
    ) -> ClassificationResult:
        """
        Escalation pass with a stronger model. The triage findings are passed
        as hypotheses; the output is authoritative and replaces them.
        """
        request = self._request(
            self.models.deep,
            prompts.build_system_prompt(subject),
            prompts.build_deep_prompt(subject, chat, context_messages, new_messages, initial_findings),
        )
        result = self._findings_call(request)
        logger.debug(f"Deep pass: chat={chat.chat_id} findings={len(result.findings)} ok={result.ok}")
        return result

    def assess_new_contact(
        self,
        subject:      SubjectProfile,
        contact_name: str,
        messages:     Sequence[MessageRecord],
    ) -> Tuple[Optional[str], float]:
        """Lightweight free-text relationship assessment. (None, 0.0) on failure."""
        request = self._request(
            self.models.fast,
            "You are a child-protection assistant. Answer in plain text.",
            prompts.build_contact_prompt(subject, contact_name, list(messages)),
            json_mode = False,
        )
        completion, cost = self._call(request)
        if completion is None or not completion.content:
            return None, 0.0
        return completion.content[:MAX_TEXT_LEN], cost

    # ── MEDIA ────────────────────────────────────────────────
    def classify_image(self, image: MediaPart) -> ImageClassification:
        request = self._request(
            self.models.vision,
            prompts.VISION_PROMPT,
            "Analyze this image.",
            images = [image],
        )
        completion, cost = self._call(request)
        if completion is None:
            return ImageClassification(ok=False)
        data = parse_json_object(completion.content)
        if data is None:
            return ImageClassification(ok=False)
        return ImageClassification(
            description = str(data.get('description') or '')[:MAX_TEXT_LEN],
            findings    = parse_findings(data, ALL_CATEGORIES, self.min_confidence),
            cost        = cost,
        )

    def transcribe_audio(self, audio: MediaPart) -> Tuple[Optional[str], float]:
        """
        Primary transcription through the LLM backend.
        (None, cost) when the backend has no audio input or the call fails.
        """
        if not self.llm.supports_audio:
            return None, 0.0
        request = self._request(
            self.models.audio,
            prompts.TRANSCRIPTION_PROMPT,
            "Transcribe the recording.",
            audio = audio,
        )
        completion, cost = self._call(request)
        if completion is None:
            return None, 0.0
        data = parse_json_object(completion.content)
        if data is None:
            return None, cost
        text = str(data.get('transcription') or '').strip()
        return (text or None), cost

    def classify_transcript(self, subject: SubjectProfile, transcript: str) -> ClassificationResult:
        """Voice-message transcripts use the text taxonomy."""
        if not transcript.strip():
            return ClassificationResult()
        request = self._request(
            self.models.audio,
            prompts.build_transcript_system_prompt(subject),
            f"Voice message transcript:\n\"{transcript}\"",
        )
        return self._findings_call(request)
