"""
shomer/models — dataclass schema and ordinal enums shared across the engine.
"""

from shomer.models.record import (
    Alert,
    ChatInfo,
    Finding,
    MessageRecord,
    NewContactInfo,
    RiskAggregate,
    RiskEvent,
    ScanCursor,
    ScanResult,
    ScanRun,
    SubjectProfile,
    SuspiciousGroup,
)
from shomer.models.risk import RiskLevel, Severity

__all__ = [
    "Alert",
    "ChatInfo",
    "Finding",
    "MessageRecord",
    "NewContactInfo",
    "RiskAggregate",
    "RiskEvent",
    "RiskLevel",
    "ScanCursor",
    "ScanResult",
    "ScanRun",
    "Severity",
    "SubjectProfile",
    "SuspiciousGroup",
]
