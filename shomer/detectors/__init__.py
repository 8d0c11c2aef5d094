"""
shomer/detectors — two-tier batch analysis (triage → escalation).
"""

from shomer.detectors.escalation import BatchOutcome, analyze_batch, needs_escalation

__all__ = ["BatchOutcome", "analyze_batch", "needs_escalation"]
