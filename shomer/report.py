"""
shomer/report.py
Guardian-facing report.

Input: ScanResult (orchestrator), SubjectProfile, historical RiskAggregates
and recent RiskEvents per category.
Output: Report object plus a plain-text rendering for the guardian.

PRIVACY CONTRACT:
  No message body or transcript ever reaches a Report. Only generated
  summaries / recommendations (scrubbed before they were stored) and
  structural metadata: names, counts, dates, categories, levels.
  Failed scans render a fixed neutral line, never exception text.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, Iterable, List, Optional, Set

from shomer.classifier.taxonomy import category_label
from shomer.models.record import RiskAggregate, RiskEvent, ScanResult, SubjectProfile
from shomer.models.risk import RiskLevel, Severity

RECENT_EVENTS = 5

STATUS_URGENT    = 'urgent'
STATUS_ATTENTION = 'attention'
STATUS_CLEAN     = 'clean'

FAILED_SCAN_MESSAGE = "The latest scan could not be completed. It will be retried; no action is needed."


# ── REPORT SCHEMA (no message content) ───────────────────────

@dataclass
class ReportFinding:
    category:       str
    severity:       str
    chat_name:      str
    is_group:       bool
    summary:        str
    recommendation: str


@dataclass
class ReportContact:
    name:          str
    message_count: int
    assessment:    Optional[str] = None


@dataclass
class ReportGroup:
    name:     str
    category: str
    reason:   str


@dataclass
class RiskEventSummary:
    date:      float
    severity:  str
    summary:   str
    chat_name: str
    is_group:  bool


@dataclass
class RiskProfileEntry:
    category:      str
    risk_level:    str
    hit_count:     int
    last_detected: Optional[float]
    recent_events: List[RiskEventSummary] = field(default_factory=list)


@dataclass
class ScanStats:
    messages_scanned: int   = 0
    chats_scanned:    int   = 0
    chats_skipped:    int   = 0
    duration_ms:      int   = 0
    cost:             float = 0.0


@dataclass
class Report:
    subject_name:      str
    status:            str
    status_message:    str
    scan_completed:    bool
    findings:          List[ReportFinding]
    group_concerns:    int
    new_contacts:      List[ReportContact]
    suspicious_groups: List[ReportGroup]
    risk_profile:      List[RiskProfileEntry]
    skipped_media:     int
    scan_stats:        ScanStats
    generated_at:      str


# ── BUILD ────────────────────────────────────────────────────

def _risk_profile(
    aggregates:     Iterable[RiskAggregate],
    recent_events:  Dict[str, List[RiskEvent]],
    group_chat_ids: Set[str],
) -> List[RiskProfileEntry]:
    """Per category across all chats: max level, summed hits, latest detection."""
    by_category: Dict[str, RiskProfileEntry] = {}
    levels: Dict[str, RiskLevel] = {}
    for agg in aggregates:
        entry = by_category.get(agg.category)
        if entry is None:
            by_category[agg.category] = RiskProfileEntry(
                category      = agg.category,
                risk_level    = agg.risk_level.label,
                hit_count     = agg.hit_count,
                last_detected = agg.last_detected_at,
            )
            levels[agg.category] = agg.risk_level
            continue
        if agg.risk_level > levels[agg.category]:
            levels[agg.category] = agg.risk_level
            entry.risk_level = agg.risk_level.label
        entry.hit_count += agg.hit_count
        if agg.last_detected_at is not None:
            entry.last_detected = max(entry.last_detected or 0.0, agg.last_detected_at)

    for category, entry in by_category.items():
        entry.recent_events = [
            RiskEventSummary(
                date      = ev.detected_at,
                severity  = ev.severity.label,
                summary   = ev.summary,
                chat_name = ev.chat_name,
                is_group  = ev.chat_id in group_chat_ids,
            )
            for ev in recent_events.get(category, [])[:RECENT_EVENTS]
        ]

    return sorted(
        by_category.values(),
        key=lambda e: (-levels[e.category], e.category),
    )


def build_report(
    result:         ScanResult,
    subject:        SubjectProfile,
    aggregates:     Iterable[RiskAggregate]            = (),
    recent_events:  Optional[Dict[str, List[RiskEvent]]] = None,
    group_chat_ids: Optional[Set[str]]                 = None,
    generated_at:   Optional[str]                      = None,
) -> Report:
    """
    Pure transform. Status: urgent (any critical) > attention (any finding,
    or any new contact) > clean.
    """
    group_ids = set(group_chat_ids or ()) | {g.chat_id for g in result.suspicious_groups}

    findings = [
        ReportFinding(
            category       = a.category,
            severity       = a.severity.label,
            chat_name      = a.chat_name,
            is_group       = a.chat_id in group_ids,
            summary        = a.summary,
            recommendation = a.recommendation,
        )
        for a in result.alerts
    ]
    group_concerns = len({a.chat_id for a in result.alerts if a.chat_id in group_ids})

    new_contacts = [
        ReportContact(name=c.name, message_count=c.message_count, assessment=c.assessment)
        for c in result.new_contacts
    ]

    if any(a.severity == Severity.CRITICAL for a in result.alerts):
        status, message = STATUS_URGENT, "Urgent findings need your immediate attention."
    elif findings:
        status, message = STATUS_ATTENTION, f"{len(findings)} finding(s) worth your attention."
    elif new_contacts:
        status = STATUS_ATTENTION
        message = f"No concerning findings, but {len(new_contacts)} new contact(s) appeared."
    else:
        status, message = STATUS_CLEAN, "No concerning findings. Everything looks fine."

    scan_completed = result.status == 'completed'
    if not scan_completed:
        message = FAILED_SCAN_MESSAGE

    return Report(
        subject_name      = subject.name,
        status            = status,
        status_message    = message,
        scan_completed    = scan_completed,
        findings          = findings,
        group_concerns    = group_concerns,
        new_contacts      = new_contacts,
        suspicious_groups = [
            ReportGroup(name=g.name, category=g.category, reason=g.reason)
            for g in result.suspicious_groups
        ],
        risk_profile      = _risk_profile(aggregates, recent_events or {}, group_ids),
        skipped_media     = result.skipped_media,
        scan_stats        = ScanStats(
            messages_scanned = result.messages_scanned,
            chats_scanned    = result.chats_scanned,
            chats_skipped    = result.chats_skipped,
            duration_ms      = result.duration_ms,
            cost             = round(result.cost, 6),
        ),
        generated_at      = generated_at or datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ"),
    )


def build_report_from_store(store, result: ScanResult, subject: SubjectProfile) -> Report:
    """Loads history from the store, then builds the report."""
    aggregates = store.aggregates_for_account(subject.account_id)
    recent = {
        category: store.risk_events_for_category(subject.account_id, category, RECENT_EVENTS)
        for category in {a.category for a in aggregates}
    }
    groups = {c.chat_id for c in store.distinct_chats(subject.account_id) if c.is_group}
    return build_report(result, subject, aggregates, recent, groups)


def scan_result_from_store(store, account_id: str) -> Optional[ScanResult]:
    """Reconstruct the latest run's ScanResult (alerts and counters) from stored rows."""
    history = store.scan_history(account_id, limit=1)
    if not history:
        return None
    run = history[0]
    duration = int(((run.completed_at or run.started_at) - run.started_at) * 1000)
    return ScanResult(
        scan_run_id      = run.id,
        account_id       = account_id,
        status           = run.status,
        messages_scanned = run.messages_scanned,
        chats_scanned    = run.chats_scanned,
        chats_skipped    = run.chats_skipped,
        alerts           = list(reversed(store.list_alerts(account_id, scan_run_id=run.id))),
        cost             = run.cost,
        duration_ms      = duration,
    )


# ── RENDER ───────────────────────────────────────────────────

_ICON = {'critical': '[!!]', 'high': '[!]', 'medium': '[~]', 'low': '[.]', 'info': '[.]'}


def _where(chat_name: str, is_group: bool) -> str:
    return f"group: {chat_name}" if is_group else f"chat with: {chat_name}"


def _fmt_date(ts: float) -> str:
    return datetime.fromtimestamp(ts, tz=timezone.utc).strftime('%d %b %H:%M')


def format_guardian_message(report: Report) -> str:
    """Plain-text rendering for the guardian."""
    lines = [f"Scan report for {report.subject_name}", report.status_message, '']

    if report.suspicious_groups:
        lines.append("Groups that need attention:")
        for g in report.suspicious_groups:
            lines.append(f"  - {g.name}: {category_label(g.category)}. {g.reason}")
        lines.append('')

    for f in report.findings:
        lines.append(f"{_ICON.get(f.severity, '')} {category_label(f.category)} ({_where(f.chat_name, f.is_group)})")
        lines.append(f"    {f.summary}")
        lines.append(f"    Suggested: {f.recommendation}")
        lines.append('')

    if report.new_contacts:
        lines.append("New contacts:")
        for c in report.new_contacts:
            lines.append(f"  - {c.name} ({c.message_count} message{'s' if c.message_count != 1 else ''})")
            if c.assessment:
                lines.append(f"    {c.assessment}")
        lines.append('')

    if report.scan_completed and not (report.findings or report.new_contacts or report.suspicious_groups):
        lines.append("We scanned the latest messages and found nothing concerning.")

    active = [r for r in report.risk_profile if r.risk_level not in ('none', 'low')]
    if active:
        lines.append('')
        lines.append("Cumulative risk profile:")
        for r in active:
            times = 'once' if r.hit_count == 1 else f"{r.hit_count} times"
            lines.append(f"  {_ICON.get(r.risk_level, '')} {category_label(r.category)}: {r.risk_level}, {times}")
            for ev in r.recent_events[:3]:
                where = f" ({_where(ev.chat_name, ev.is_group)})" if ev.chat_name else ''
                lines.append(f"      {_fmt_date(ev.date)}{where}")

    lines.append('')
    lines.append(
        f"{report.scan_stats.messages_scanned} messages scanned in "
        f"{round(report.scan_stats.duration_ms / 1000)} s"
    )
    if report.skipped_media:
        lines.append(
            f"{report.skipped_media} media file(s) were not scanned. Images, videos and voice "
            "messages can carry content that text analysis cannot see; upgrade to include them."
        )
    return '\n'.join(lines)


def report_to_dict(report: Report) -> Dict:
    """Convert Report to a JSON-serializable dict (for export)."""
    def _dataclass_to_dict(obj):
        if hasattr(obj, "__dataclass_fields__"):
            return {k: _dataclass_to_dict(getattr(obj, k)) for k in obj.__dataclass_fields__}
        if isinstance(obj, list):
            return [_dataclass_to_dict(x) for x in obj]
        return obj

    return _dataclass_to_dict(report)
