"""
shomer/classifier — Content Classifier Client, prompts and taxonomy.

Privacy: No raw message content in logs.
"""

from shomer.classifier.client import (
    MIN_CONFIDENCE,
    ClassificationResult,
    ContentClassifier,
    ModelRate,
    ModelSet,
    call_cost,
    parse_findings,
)

__all__ = [
    "MIN_CONFIDENCE",
    "ClassificationResult",
    "ContentClassifier",
    "ModelRate",
    "ModelSet",
    "call_cost",
    "parse_findings",
]
