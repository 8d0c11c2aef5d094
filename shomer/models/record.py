"""
shomer/models/record.py
Shared dataclass schema. The store, classifier, media subsystem,
aggregator, orchestrator and report builder all use these types.
Do not add logic here — data only.
"""

from dataclasses import dataclass, field
from typing import List, Optional

from shomer.models.risk import RiskLevel, Severity


@dataclass
class MessageRecord:
    """Normalized message row, as written by ingestion."""
    external_id:       str
    chat_id:           str
    sender_id:         str
    is_subject_author: bool
    body:              str
    timestamp:         int              # unix seconds
    chat_name:         str            = ''
    sender_name:       str            = ''
    media_kind:        Optional[str]  = None     # image / sticker / video / audio
    media_path:        Optional[str]  = None
    transcript:        Optional[str]  = None
    media_analyzed:    bool           = False
    id:                Optional[int]  = None     # rowid once stored


@dataclass
class SubjectProfile:
    """The minor whose account is scanned."""
    account_id: str
    name:       str
    age:        Optional[int] = None
    gender:     Optional[str] = None     # girl / boy / None
    plan:       str           = 'free'


@dataclass
class ChatInfo:
    chat_id:       str
    chat_name:     str
    message_count: int
    is_group:      bool = False


@dataclass(frozen=True)
class Finding:
    """One classifier finding. Summary and recommendation are generated text."""
    severity:       Severity
    category:       str
    summary:        str
    recommendation: str
    confidence:     float


@dataclass
class Alert:
    account_id:     str
    scan_run_id:    int
    severity:       Severity
    category:       str
    chat_id:        str
    chat_name:      str
    summary:        str
    recommendation: str
    confidence:     float
    source:         str            = 'text'   # text / media
    status:         str            = 'new'
    created_at:     float          = 0.0
    id:             Optional[int]  = None


@dataclass
class ScanCursor:
    account_id:             str
    chat_id:                str
    last_scanned_timestamp: int
    last_scanned_message_id: str
    total_seen:             int = 0


@dataclass
class ScanRun:
    id:               int
    account_id:       str
    status:           str             # running / completed / failed
    started_at:       float
    messages_scanned: int            = 0
    chats_scanned:    int            = 0
    chats_skipped:    int            = 0
    alerts_found:     int            = 0
    cost:             float          = 0.0
    model:            str            = ''
    completed_at:     Optional[float] = None
    error:            Optional[str]  = None


@dataclass
class RiskAggregate:
    account_id:             str
    chat_id:                str
    category:               str
    risk_level:             RiskLevel      = RiskLevel.NONE
    hit_count:              int            = 0
    max_severity_observed:  Severity       = Severity.INFO
    max_confidence_observed: float         = 0.0
    first_detected_at:      Optional[float] = None
    last_detected_at:       Optional[float] = None


@dataclass(frozen=True)
class RiskEvent:
    """Append-only history row behind a RiskAggregate."""
    account_id:  str
    chat_id:     str
    chat_name:   str
    category:    str
    severity:    Severity
    confidence:  float
    summary:     str
    scan_run_id: Optional[int]
    detected_at: float
    id:          Optional[int] = None


@dataclass
class NewContactInfo:
    contact_id:    str
    name:          str
    message_count: int
    first_seen:    float
    assessment:    Optional[str] = None


@dataclass
class SuspiciousGroup:
    chat_id:  str
    name:     str
    category: str
    reason:   str


@dataclass
class ScanResult:
    """Machine-oriented output of one scan run. Never carries message text."""
    scan_run_id:       int
    account_id:        str
    status:            str                   = 'completed'
    messages_scanned:  int                   = 0
    messages_total:    int                   = 0
    chats_scanned:     int                   = 0
    chats_skipped:     int                   = 0
    chats_failed:      int                   = 0
    alerts:            List[Alert]           = field(default_factory=list)
    new_contacts:      List[NewContactInfo]  = field(default_factory=list)
    suspicious_groups: List[SuspiciousGroup] = field(default_factory=list)
    media_analyzed:    int                   = 0
    skipped_media:     int                   = 0
    escalations:       int                   = 0
    cost:              float                 = 0.0
    duration_ms:       int                   = 0
    error:             Optional[str]         = None
