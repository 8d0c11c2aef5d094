"""
shomer/models/risk.py
Ordinal severity and risk-level enums.

Both are IntEnums so that ordering is numeric, never lexicographic
("high" > "critical" as strings). Storage uses the lowercase label.
"""

from enum import IntEnum
from typing import Optional


class Severity(IntEnum):
    """Severity of a single finding, as reported by the classifier."""
    INFO     = 0
    LOW      = 1
    MEDIUM   = 2
    HIGH     = 3
    CRITICAL = 4

    @property
    def label(self) -> str:
        return self.name.lower()

    @classmethod
    def parse(cls, value) -> Optional["Severity"]:
        """Map a label ("high", "HIGH ") to a Severity. None if unknown."""
        if isinstance(value, cls):
            return value
        if not isinstance(value, str):
            return None
        return cls.__members__.get(value.strip().upper())


class RiskLevel(IntEnum):
    """Aggregated risk for one (chat, category). Totally ordered, never decreases."""
    NONE     = 0
    LOW      = 1
    MEDIUM   = 2
    HIGH     = 3
    CRITICAL = 4

    @property
    def label(self) -> str:
        return self.name.lower()

    @classmethod
    def parse(cls, value) -> Optional["RiskLevel"]:
        if isinstance(value, cls):
            return value
        if not isinstance(value, str):
            return None
        return cls.__members__.get(value.strip().upper())


ALERT_STATUSES = ('new', 'read', 'handled', 'dismissed')

# Allowed alert status transitions. handled / dismissed are terminal.
ALERT_TRANSITIONS = {
    'new':       frozenset({'read', 'handled', 'dismissed'}),
    'read':      frozenset({'handled', 'dismissed'}),
    'handled':   frozenset(),
    'dismissed': frozenset(),
}

SCAN_STATUSES = ('running', 'completed', 'failed')
