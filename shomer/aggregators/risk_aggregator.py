"""
shomer/aggregators/risk_aggregator.py
Per-(chat, category) risk aggregation.

Every recorded finding appends one immutable RiskEvent and folds into the
RiskAggregate for its (account, chat, category):

  risk_level = max(existing, compute_risk_level(severity, confidence))
  hit_count += 1
  max severity / max confidence / last_detected_at  → running maxima
  first_detected_at                                  → set once

NOTE ON MONOTONICITY:
  risk_level never decreases through this module. A reset is an
  out-of-band store operation and is not offered here.
"""

import logging
import time
from dataclasses import replace
from typing import Optional

from shomer.models.record import Finding, RiskAggregate, RiskEvent
from shomer.models.risk import RiskLevel, Severity

logger = logging.getLogger(__name__)

HIGH_CONFIDENCE = 0.7


def compute_risk_level(severity: Severity, confidence: float) -> RiskLevel:
    """Pure. Non-decreasing in confidence for a fixed severity."""
    if severity == Severity.CRITICAL:
        return RiskLevel.CRITICAL
    if severity == Severity.HIGH:
        return RiskLevel.CRITICAL if confidence >= HIGH_CONFIDENCE else RiskLevel.HIGH
    if severity == Severity.MEDIUM:
        return RiskLevel.HIGH if confidence >= HIGH_CONFIDENCE else RiskLevel.MEDIUM
    return RiskLevel.LOW


def merge_aggregate(
    existing:    Optional[RiskAggregate],
    account_id:  str,
    chat_id:     str,
    category:    str,
    severity:    Severity,
    confidence:  float,
    detected_at: float,
) -> RiskAggregate:
    """Pure merge of one observation into an aggregate. Never mutates `existing`."""
    computed = compute_risk_level(severity, confidence)
    if existing is None:
        return RiskAggregate(
            account_id              = account_id,
            chat_id                 = chat_id,
            category                = category,
            risk_level              = computed,
            hit_count               = 1,
            max_severity_observed   = severity,
            max_confidence_observed = confidence,
            first_detected_at       = detected_at,
            last_detected_at        = detected_at,
        )
    return replace(
        existing,
        risk_level              = max(existing.risk_level, computed),
        hit_count               = existing.hit_count + 1,
        max_severity_observed   = max(existing.max_severity_observed, severity),
        max_confidence_observed = max(existing.max_confidence_observed, confidence),
        first_detected_at       = (existing.first_detected_at
                                   if existing.first_detected_at is not None else detected_at),
        last_detected_at        = max(existing.last_detected_at or detected_at, detected_at),
    )


class RiskAggregator:
    """Appends the event log and keeps aggregates current. Store I/O only."""

    def __init__(self, store):
        self.store = store

    def record(
        self,
        account_id:  str,
        chat_id:     str,
        chat_name:   str,
        finding:     Finding,
        scan_run_id: Optional[int] = None,
        now:         Optional[float] = None,
    ) -> RiskAggregate:
        detected_at = now if now is not None else time.time()

        self.store.append_risk_event(RiskEvent(
            account_id  = account_id,
            chat_id     = chat_id,
            chat_name   = chat_name,
            category    = finding.category,
            severity    = finding.severity,
            confidence  = finding.confidence,
            summary     = finding.summary,
            scan_run_id = scan_run_id,
            detected_at = detected_at,
        ))

        existing = self.store.get_aggregate(account_id, chat_id, finding.category)
        merged = merge_aggregate(
            existing, account_id, chat_id, finding.category,
            finding.severity, finding.confidence, detected_at,
        )
        self.store.save_aggregate(merged)

        if existing is None or merged.risk_level > existing.risk_level:
            logger.info(
                f"Risk level for chat {chat_id} / {finding.category} → {merged.risk_level.label}"
            )
        return merged
