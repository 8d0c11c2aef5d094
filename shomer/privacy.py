"""
shomer/privacy.py
Guard for the "no verbatim source text" contract.

Model output is asked to summarize, not quote, but nothing forces it to.
Every generated summary is checked against the messages it was produced
from before it is persisted as an Alert.

A text leaks a source when its word sequence contains:
  - the source's whole word sequence, when the source has at least
    MIN_BODY_WORDS words, or
  - any run of QUOTE_WORDS consecutive words from a source
A single-word source leaks only when quoted whole and it is at least
MIN_BODY_CHARS characters long (links, handles, phone numbers).
Words are compared case-insensitively with punctuation ignored.
"""

import re
from dataclasses import replace
from typing import Iterable, List

from shomer.classifier.taxonomy import category_label
from shomer.models.record import Finding

MIN_BODY_WORDS = 2
MIN_BODY_CHARS = 12
QUOTE_WORDS    = 6

_WORD = re.compile(r"\w+", re.UNICODE)


def _normalize(text: str) -> str:
    return ' '.join((text or '').lower().split())


def _words(text: str) -> List[str]:
    return _WORD.findall((text or '').lower())


def _run(words: List[str]) -> str:
    return ' ' + ' '.join(words) + ' '


def leaks_source_text(text: str, sources: Iterable[str]) -> bool:
    if not text:
        return False
    norm_text  = _normalize(text)
    text_words = _run(_words(text))

    for source in sources:
        if not source:
            continue
        norm_source = _normalize(source)
        if len(norm_source) >= MIN_BODY_CHARS and norm_source in norm_text:
            return True
        words = _words(source)
        if len(words) >= MIN_BODY_WORDS and _run(words) in text_words:
            return True
        for i in range(len(words) - QUOTE_WORDS + 1):
            if _run(words[i:i + QUOTE_WORDS]) in text_words:
                return True
    return False


def generic_summary(category: str) -> str:
    return f"Content related to {category_label(category).lower()} was detected in this conversation."


def scrub_finding(finding: Finding, sources: Iterable[str]) -> Finding:
    """Replace any leaking generated text with a neutral category sentence."""
    sources = [s for s in sources if s]
    summary = finding.summary
    recommendation = finding.recommendation
    if leaks_source_text(summary, sources):
        summary = generic_summary(finding.category)
    if leaks_source_text(recommendation, sources):
        recommendation = 'Review the conversation context and talk with your child.'
    if summary is finding.summary and recommendation is finding.recommendation:
        return finding
    return replace(finding, summary=summary, recommendation=recommendation)
