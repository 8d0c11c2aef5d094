"""
shomer/scanner.py
Scan Orchestrator. Drives one full scan of one account.

Per run:
  1. create a `running` ScanRun
  2. enumerate chats (most recently active first)
  3. per chat: safety-listed → skip + cleanup; unchanged since cursor → skip
  4. window the newest messages, batch them, triage + escalate per batch
  5. persist alerts, feed the risk aggregator
  6. media (paid plans) or count skipped media (free)
  7. advance the cursor, then retention cleanup, strictly last
  8. after the loop: new contacts, suspicious groups, close the run,
     free plan → disconnect the live feed once

WINDOWING:
  With a cursor, window messages up to and including the cursor message
  are context only; only newer messages are batched. Without one the
  whole window is batched and batch 0 has no context.

FAILURE POLICY:
  run_scan raises AccountNotFound only. One chat failing is logged by
  exception class, counted, and leaves that chat's cursor and messages
  untouched. A failure before the chat loop closes the run as `failed`.
"""

import logging
import time
from dataclasses import dataclass
from typing import Callable, Dict, Iterable, List, Optional

from shomer.aggregators.risk_aggregator import RiskAggregator
from shomer.classifier.client import ContentClassifier
from shomer.detectors.escalation import analyze_batch
from shomer.errors import AccountNotFound
from shomer.live_feed import LiveFeed, NullLiveFeed
from shomer.media.analyzer import MediaAnalyzer, analyze_chat_media
from shomer.models.record import (
    Alert,
    ChatInfo,
    Finding,
    MessageRecord,
    ScanCursor,
    ScanResult,
    SubjectProfile,
    SuspiciousGroup,
)
from shomer.plans import is_free, plan_includes_media
from shomer.privacy import leaks_source_text, scrub_finding
from shomer.retention import cleanup_chat

logger = logging.getLogger(__name__)


# ── SCAN TUNABLES ────────────────────────────────────────────

@dataclass(frozen=True)
class ScanLimits:
    window:               int = 150    # newest messages loaded per chat
    batch_size:           int = 50
    context_size:         int = 15     # read-only context per batch
    retain:               int = 15     # messages kept after cleanup
    media_limit:          int = 20     # attachments analyzed per chat per run
    contact_min_messages: int = 3
    contact_sample:       int = 20


def first_unscanned_index(window: List[MessageRecord], cursor: Optional[ScanCursor]) -> int:
    """Index of the first window message not covered by the cursor."""
    if cursor is None:
        return 0
    for idx, msg in enumerate(window):
        if msg.external_id == cursor.last_scanned_message_id:
            return idx + 1
    # Cursor message already pruned: anything at or after its timestamp is new.
    for idx, msg in enumerate(window):
        if msg.timestamp >= cursor.last_scanned_timestamp:
            return idx
    return len(window)


def _sources(messages: Iterable[MessageRecord]) -> List[str]:
    out = []
    for m in messages:
        if m.body:
            out.append(m.body)
        if m.transcript:
            out.append(m.transcript)
    return out


class ScanOrchestrator:

    def __init__(
        self,
        store,
        classifier:     ContentClassifier,
        media_analyzer: Optional[MediaAnalyzer]    = None,
        live_feed:      Optional[LiveFeed]         = None,
        limits:         Optional[ScanLimits]       = None,
        clock:          Optional[Callable[[], float]] = None,
    ):
        self.store          = store
        self.classifier     = classifier
        self.media_analyzer = media_analyzer
        self.live_feed      = live_feed or NullLiveFeed()
        self.limits         = limits or ScanLimits()
        self.clock          = clock or time.time
        self.aggregator     = RiskAggregator(store)

    # ── ENTRY POINT ──────────────────────────────────────────

    def run_scan(self, account_id: str) -> ScanResult:
        started = time.monotonic()

        subject = self.store.get_account(account_id)
        if subject is None:
            raise AccountNotFound(account_id)

        run_id = self.store.create_scan_run(
            account_id, model=str(self.classifier.models.fast), started_at=self.clock(),
        )
        result = ScanResult(scan_run_id=run_id, account_id=account_id)
        logger.info(f"Scan {run_id} started for {account_id} (plan={subject.plan})")

        try:
            chats = self.store.distinct_chats(account_id)
            include_media = plan_includes_media(subject.plan) and self.media_analyzer is not None
        except Exception as e:
            return self._fail(result, e, started)

        for chat in chats:
            try:
                self._scan_chat(subject, chat, result, include_media)
            except Exception as e:
                result.chats_failed += 1
                logger.error(
                    f"Chat {chat.chat_id} failed: {type(e).__name__} — cursor unchanged, no cleanup"
                )

        result.messages_total = sum(c.message_count for c in chats)

        try:
            result.new_contacts = self._new_contacts(subject, run_id, result)
        except Exception as e:
            logger.error(f"New-contact detection failed: {type(e).__name__}")
        result.suspicious_groups = self._suspicious_groups(result.alerts, chats)

        result.duration_ms = int((time.monotonic() - started) * 1000)
        try:
            self.store.finish_scan_run(
                run_id, 'completed',
                messages_scanned = result.messages_scanned,
                chats_scanned    = result.chats_scanned,
                chats_skipped    = result.chats_skipped,
                alerts_found     = len(result.alerts),
                cost             = result.cost,
                completed_at     = self.clock(),
            )
        except Exception as e:
            logger.error(f"Could not close scan {run_id}: {type(e).__name__}")
            result.error = type(e).__name__

        logger.info(
            f"Scan {run_id} completed: {result.chats_scanned} scanned, "
            f"{result.chats_skipped} skipped, {result.chats_failed} failed, "
            f"{result.messages_scanned} messages, {len(result.alerts)} alert(s), "
            f"{result.escalations} escalation(s), cost ${result.cost:.4f}, "
            f"{result.duration_ms} ms"
        )

        if is_free(subject.plan):
            self._disconnect(account_id)
        return result

    # ── PER CHAT ─────────────────────────────────────────────

    def _scan_chat(
        self,
        subject:       SubjectProfile,
        chat:          ChatInfo,
        result:        ScanResult,
        include_media: bool,
    ) -> None:
        account_id = subject.account_id
        lim = self.limits

        if self.store.is_safety_listed(account_id, chat.chat_id):
            result.chats_skipped += 1
            logger.debug(f"Chat {chat.chat_id} is safety-listed — skipped")
            cleanup_chat(self.store, account_id, chat.chat_id, keep=lim.retain)
            return

        window = self.store.last_n_messages(account_id, chat.chat_id, lim.window)
        if not window:
            return
        newest = window[-1]
        cursor = self.store.get_cursor(account_id, chat.chat_id)
        if cursor is not None and cursor.last_scanned_message_id == newest.external_id:
            result.chats_skipped += 1
            return

        start = first_unscanned_index(window, cursor)
        if start >= len(window):
            result.chats_skipped += 1
            return

        result.chats_scanned += 1
        sources = _sources(window)
        logger.debug(f"Chat {chat.chat_id}: {len(window) - start} new of {len(window)} loaded")

        # ── TEXT ─────────────────────────────────────────────
        for i in range(start, len(window), lim.batch_size):
            batch   = window[i:i + lim.batch_size]
            context = window[max(0, i - lim.context_size):i]
            outcome = analyze_batch(self.classifier, subject, chat, context, batch)
            result.cost += outcome.cost
            result.messages_scanned += len(batch)
            if outcome.escalated:
                result.escalations += 1
            for finding in outcome.findings:
                self._persist(subject, chat, finding, sources, result, source='text')

        # ── MEDIA ────────────────────────────────────────────
        pending = self.store.count_unanalyzed_media(account_id, chat.chat_id)
        if pending:
            if include_media:
                media = analyze_chat_media(
                    self.store, self.media_analyzer, account_id, chat.chat_id,
                    limit=lim.media_limit, subject=subject,
                )
                result.cost += media.cost
                result.media_analyzed += media.analyzed
                for flag in media.flags:
                    flag_sources = sources + ([flag.transcript] if flag.transcript else [])
                    self._persist(subject, chat, flag.finding, flag_sources, result, source='media')
            else:
                result.skipped_media += pending

        # ── CURSOR, THEN CLEANUP ─────────────────────────────
        self.store.upsert_cursor(ScanCursor(
            account_id              = account_id,
            chat_id                 = chat.chat_id,
            last_scanned_timestamp  = newest.timestamp,
            last_scanned_message_id = newest.external_id,
            total_seen              = (cursor.total_seen if cursor else 0) + len(window) - start,
        ))
        cleanup_chat(self.store, account_id, chat.chat_id, keep=lim.retain)

    def _persist(
        self,
        subject: SubjectProfile,
        chat:    ChatInfo,
        finding: Finding,
        sources: List[str],
        result:  ScanResult,
        source:  str,
    ) -> None:
        """Scrub, insert idempotently, and aggregate only what was actually inserted."""
        safe = scrub_finding(finding, sources)
        if safe is not finding:
            logger.warning(f"Generated {safe.category} summary quoted source text — replaced")
        now = self.clock()
        alert = Alert(
            account_id     = subject.account_id,
            scan_run_id    = result.scan_run_id,
            severity       = safe.severity,
            category       = safe.category,
            chat_id        = chat.chat_id,
            chat_name      = chat.chat_name,
            summary        = safe.summary,
            recommendation = safe.recommendation,
            confidence     = safe.confidence,
            source         = source,
            created_at     = now,
        )
        alert_id = self.store.insert_alert(alert)
        if alert_id is None:
            logger.debug(f"Duplicate {safe.category} alert in chat {chat.chat_id} ignored")
            return
        alert.id = alert_id
        result.alerts.append(alert)
        self.aggregator.record(
            subject.account_id, chat.chat_id, chat.chat_name, safe, result.scan_run_id, now,
        )

    # ── AFTER THE LOOP ───────────────────────────────────────

    def _new_contacts(self, subject: SubjectProfile, run_id: int, result: ScanResult):
        previous = self.store.previous_completed_run(subject.account_id, run_id)
        since = previous.started_at if previous else 0.0
        contacts = self.store.new_contacts_since(subject.account_id, since)

        for contact in contacts:
            if contact.message_count < self.limits.contact_min_messages:
                continue
            messages = self.store.last_n_messages(
                subject.account_id, contact.contact_id, self.limits.contact_sample,
            )
            assessment, cost = self.classifier.assess_new_contact(subject, contact.name, messages)
            result.cost += cost
            if assessment and leaks_source_text(assessment, _sources(messages)):
                logger.warning("New-contact assessment quoted source text — dropped")
                assessment = None
            contact.assessment = assessment

        if contacts:
            logger.info(f"{len(contacts)} new contact(s) since last completed scan")
        return contacts

    @staticmethod
    def _suspicious_groups(alerts: List[Alert], chats: List[ChatInfo]) -> List[SuspiciousGroup]:
        """First alert per group chat."""
        groups: Dict[str, ChatInfo] = {c.chat_id: c for c in chats if c.is_group}
        seen = set()
        out = []
        for alert in alerts:
            if alert.chat_id in groups and alert.chat_id not in seen:
                seen.add(alert.chat_id)
                out.append(SuspiciousGroup(
                    chat_id  = alert.chat_id,
                    name     = alert.chat_name,
                    category = alert.category,
                    reason   = alert.summary,
                ))
        return out

    def _disconnect(self, account_id: str) -> None:
        try:
            self.live_feed.disconnect(account_id)
            logger.info(f"Free plan — live feed disconnected for {account_id}")
        except Exception as e:
            logger.warning(f"Disconnect failed for {account_id}: {type(e).__name__}")

    def _fail(self, result: ScanResult, error: Exception, started: float) -> ScanResult:
        result.status      = 'failed'
        result.error       = f"{type(error).__name__}: {error}"
        result.duration_ms = int((time.monotonic() - started) * 1000)
        logger.error(f"Scan {result.scan_run_id} failed before chat loop: {type(error).__name__}")
        try:
            self.store.finish_scan_run(
                result.scan_run_id, 'failed', error=result.error, completed_at=self.clock(),
            )
        except Exception as e:
            logger.error(f"Could not record failure of scan {result.scan_run_id}: {type(e).__name__}")
        return result
