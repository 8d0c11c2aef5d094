"""
shomer/detectors/escalation.py
Two-tier batch analysis. Triage runs on every batch; a severe,
confident triage finding triggers one deep pass for that batch.

Phase 1: triage with the fast model (always runs)
Phase 2: deep pass with the strong model (only when escalation is needed)

The deep pass is authoritative: its findings replace the triage findings
for the batch, they are not merged. If the deep call itself fails, the
triage findings stand and only the triage cost is counted.
"""

import logging
from dataclasses import dataclass, field
from typing import List, Sequence

from shomer.classifier.client import ContentClassifier
from shomer.models.record import ChatInfo, Finding, MessageRecord, SubjectProfile
from shomer.models.risk import Severity

logger = logging.getLogger(__name__)

ESCALATION_SEVERITIES = frozenset({Severity.CRITICAL, Severity.HIGH})
ESCALATION_CONFIDENCE = 0.6


@dataclass
class BatchOutcome:
    findings:  List[Finding] = field(default_factory=list)
    cost:      float         = 0.0
    escalated: bool          = False


def needs_escalation(findings: Sequence[Finding]) -> bool:
    return any(
        f.severity in ESCALATION_SEVERITIES and f.confidence >= ESCALATION_CONFIDENCE
        for f in findings
    )


def analyze_batch(
    classifier: ContentClassifier,
    subject:    SubjectProfile,
    chat:       ChatInfo,
    context:    Sequence[MessageRecord],
    batch:      Sequence[MessageRecord],
) -> BatchOutcome:
    """Triage one batch and escalate at most once."""
    triage = classifier.classify_batch(subject, chat, context, batch)

    if not needs_escalation(triage.findings):
        return BatchOutcome(findings=list(triage.findings), cost=triage.cost)

    logger.info(
        f"Escalating batch in chat {chat.chat_id}: "
        f"{len(triage.findings)} triage finding(s)"
    )
    deep = classifier.deep_analyze(subject, chat, context, batch, triage.findings)

    if not deep.ok:
        logger.warning(
            f"Deep pass failed for chat {chat.chat_id} — keeping triage findings"
        )
        return BatchOutcome(findings=list(triage.findings), cost=triage.cost, escalated=True)

    logger.debug(
        f"Deep pass: {len(triage.findings)} triage → {len(deep.findings)} final finding(s)"
    )
    return BatchOutcome(
        findings  = list(deep.findings),
        cost      = triage.cost + deep.cost,
        escalated = True,
    )
