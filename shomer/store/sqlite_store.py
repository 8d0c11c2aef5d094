"""
shomer/store/sqlite_store.py
SQLite implementation of the storage boundary.

SCHEMA DESIGN NOTES:
- messages is owned by ingestion; the engine reads it and prunes it in
  retention cleanup only
- scan_runs / alerts / scan_cursors / risk_aggregates / risk_events are
  owned by the engine
- risk_events is append-only; nothing in this module updates or deletes it
- alerts carry a UNIQUE dedupe_key so a re-run of the same window inside
  one scan run cannot insert the same alert twice
- Message timestamps are INTEGER unix seconds; run and alert times are REAL

Every public method opens its own connection and commits before
returning: "durable" means "committed".
"""

import hashlib
import logging
import sqlite3
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, List, Optional, Set, Tuple

from shomer.classifier.prompts import calculate_age
from shomer.errors import AlertNotFound, InvalidStatusTransition
from shomer.models.record import (
    Alert,
    ChatInfo,
    MessageRecord,
    NewContactInfo,
    RiskAggregate,
    RiskEvent,
    ScanCursor,
    ScanRun,
    SubjectProfile,
)
from shomer.models.risk import ALERT_TRANSITIONS, RiskLevel, Severity

logger = logging.getLogger(__name__)

SCHEMA_VERSION = '1.0'

_MESSAGE_COLUMNS = (
    "id, external_id, chat_id, chat_name, sender_id, sender_name, "
    "is_subject_author, body, timestamp, media_kind, media_path, "
    "transcript, media_analyzed"
)


def alert_dedupe_key(scan_run_id: int, chat_id: str, category: str, summary: str) -> str:
    summary_hash = hashlib.sha256(summary.encode('utf-8')).hexdigest()
    raw = f"{scan_run_id}|{chat_id}|{category}|{summary_hash}"
    return hashlib.sha256(raw.encode('utf-8')).hexdigest()


class SqliteStore:

    def __init__(self, db_path):
        self.db_path = Path(db_path)
        self._create_schema()

    @contextmanager
    def _connect(self) -> Iterator[sqlite3.Connection]:
        conn = sqlite3.connect(str(self.db_path), timeout=30)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys=ON")
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    # ── SCHEMA ───────────────────────────────────────────────

    def _create_schema(self) -> None:
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        with self._connect() as conn:
            conn.execute("PRAGMA journal_mode=WAL")   # Safe concurrent reads
            conn.executescript("""
                CREATE TABLE IF NOT EXISTS store_meta (
                    key             TEXT PRIMARY KEY,
                    value           TEXT
                );

                CREATE TABLE IF NOT EXISTS accounts (
                    account_id      TEXT PRIMARY KEY,
                    name            TEXT NOT NULL,
                    birthdate       TEXT,
                    age             INTEGER,
                    gender          TEXT,
                    plan            TEXT NOT NULL DEFAULT 'free',
                    created_at      REAL
                );

                CREATE TABLE IF NOT EXISTS contacts (
                    account_id      TEXT NOT NULL,
                    contact_id      TEXT NOT NULL,
                    name            TEXT,
                    is_group        INTEGER DEFAULT 0,
                    first_seen      REAL,
                    PRIMARY KEY (account_id, contact_id)
                );

                CREATE TABLE IF NOT EXISTS safe_contacts (
                    account_id      TEXT NOT NULL,
                    contact_id      TEXT NOT NULL,
                    PRIMARY KEY (account_id, contact_id)
                );

                CREATE TABLE IF NOT EXISTS group_members (
                    account_id      TEXT NOT NULL,
                    group_id        TEXT NOT NULL,
                    member_id       TEXT NOT NULL,
                    PRIMARY KEY (account_id, group_id, member_id)
                );

                CREATE TABLE IF NOT EXISTS messages (
                    id                INTEGER PRIMARY KEY AUTOINCREMENT,
                    account_id        TEXT    NOT NULL,
                    external_id       TEXT    NOT NULL,
                    chat_id           TEXT    NOT NULL,
                    chat_name         TEXT,
                    sender_id         TEXT,
                    sender_name       TEXT,
                    is_subject_author INTEGER DEFAULT 0,
                    body              TEXT,
                    timestamp         INTEGER NOT NULL,
                    media_kind        TEXT,
                    media_path        TEXT,
                    transcript        TEXT,
                    media_analyzed    INTEGER DEFAULT 0,
                    media_result      TEXT,    -- JSON description + findings, or skip reason
                    UNIQUE(account_id, external_id)
                );

                CREATE TABLE IF NOT EXISTS scan_runs (
                    id               INTEGER PRIMARY KEY AUTOINCREMENT,
                    account_id       TEXT    NOT NULL REFERENCES accounts(account_id),
                    status           TEXT    NOT NULL,
                    started_at       REAL    NOT NULL,
                    completed_at     REAL,
                    messages_scanned INTEGER DEFAULT 0,
                    chats_scanned    INTEGER DEFAULT 0,
                    chats_skipped    INTEGER DEFAULT 0,
                    alerts_found     INTEGER DEFAULT 0,
                    cost             REAL    DEFAULT 0.0,
                    model            TEXT,
                    error            TEXT
                );

                CREATE TABLE IF NOT EXISTS alerts (
                    id              INTEGER PRIMARY KEY AUTOINCREMENT,
                    account_id      TEXT    NOT NULL,
                    scan_run_id     INTEGER NOT NULL REFERENCES scan_runs(id),
                    severity        TEXT    NOT NULL,
                    category        TEXT    NOT NULL,
                    chat_id         TEXT    NOT NULL,
                    chat_name       TEXT,
                    summary         TEXT    NOT NULL,
                    recommendation  TEXT,
                    confidence      REAL    NOT NULL,
                    source          TEXT    DEFAULT 'text',
                    status          TEXT    NOT NULL DEFAULT 'new',
                    created_at      REAL    NOT NULL,
                    dedupe_key      TEXT    NOT NULL UNIQUE
                );

                CREATE TABLE IF NOT EXISTS scan_cursors (
                    account_id              TEXT    NOT NULL,
                    chat_id                 TEXT    NOT NULL,
                    last_scanned_timestamp  INTEGER NOT NULL,
                    last_scanned_message_id TEXT    NOT NULL,
                    total_seen              INTEGER DEFAULT 0,
                    updated_at              REAL,
                    PRIMARY KEY (account_id, chat_id)
                );

                CREATE TABLE IF NOT EXISTS risk_aggregates (
                    account_id        TEXT    NOT NULL,
                    chat_id           TEXT    NOT NULL,
                    category          TEXT    NOT NULL,
                    risk_level        TEXT    NOT NULL,
                    hit_count         INTEGER DEFAULT 0,
                    max_severity      TEXT,
                    max_confidence    REAL    DEFAULT 0.0,
                    first_detected_at REAL,
                    last_detected_at  REAL,
                    PRIMARY KEY (account_id, chat_id, category)
                );

                CREATE TABLE IF NOT EXISTS risk_events (
                    id              INTEGER PRIMARY KEY AUTOINCREMENT,
                    account_id      TEXT    NOT NULL,
                    chat_id         TEXT    NOT NULL,
                    chat_name       TEXT,
                    category        TEXT    NOT NULL,
                    severity        TEXT    NOT NULL,
                    confidence      REAL    NOT NULL,
                    summary         TEXT,
                    scan_run_id     INTEGER,
                    detected_at     REAL    NOT NULL
                );

                CREATE INDEX IF NOT EXISTS idx_msg_chat_ts   ON messages(account_id, chat_id, timestamp);
                CREATE INDEX IF NOT EXISTS idx_msg_media     ON messages(account_id, chat_id, media_analyzed);
                CREATE INDEX IF NOT EXISTS idx_run_account   ON scan_runs(account_id, started_at);
                CREATE INDEX IF NOT EXISTS idx_alert_account ON alerts(account_id, created_at);
                CREATE INDEX IF NOT EXISTS idx_event_cat     ON risk_events(account_id, category, detected_at);
            """)
            conn.execute(
                "INSERT OR IGNORE INTO store_meta (key, value) VALUES ('schema_version', ?)",
                (SCHEMA_VERSION,),
            )

    # ── ACCOUNTS / CONTACTS (ingestion-facing) ───────────────

    def upsert_account(self, profile: SubjectProfile, birthdate: Optional[str] = None) -> None:
        with self._connect() as conn:
            conn.execute("""
                INSERT INTO accounts (account_id, name, birthdate, age, gender, plan, created_at)
                VALUES (?,?,?,?,?,?,?)
                ON CONFLICT(account_id) DO UPDATE SET
                    name      = excluded.name,
                    birthdate = COALESCE(excluded.birthdate, accounts.birthdate),
                    age       = COALESCE(excluded.age, accounts.age),
                    gender    = excluded.gender,
                    plan      = excluded.plan
            """, (
                profile.account_id, profile.name, birthdate, profile.age,
                profile.gender, profile.plan, time.time(),
            ))

    def get_account(self, account_id: str) -> Optional[SubjectProfile]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM accounts WHERE account_id = ?", (account_id,)
            ).fetchone()
        if row is None:
            return None
        age = calculate_age(row['birthdate'])
        return SubjectProfile(
            account_id = row['account_id'],
            name       = row['name'],
            age        = age if age is not None else row['age'],
            gender     = row['gender'],
            plan       = row['plan'] or 'free',
        )

    def list_accounts(self) -> List[SubjectProfile]:
        with self._connect() as conn:
            ids = [r['account_id'] for r in conn.execute(
                "SELECT account_id FROM accounts ORDER BY account_id"
            )]
        return [self.get_account(account_id) for account_id in ids]

    def add_safe_contact(self, account_id: str, contact_id: str) -> None:
        with self._connect() as conn:
            conn.execute(
                "INSERT OR IGNORE INTO safe_contacts (account_id, contact_id) VALUES (?,?)",
                (account_id, contact_id),
            )

    def add_group_member(self, account_id: str, group_id: str, member_id: str) -> None:
        with self._connect() as conn:
            conn.execute(
                "INSERT OR IGNORE INTO group_members (account_id, group_id, member_id) VALUES (?,?,?)",
                (account_id, group_id, member_id),
            )

    def upsert_contact(
        self,
        account_id: str,
        contact_id: str,
        name:       str,
        first_seen: float,
        is_group:   bool = False,
    ) -> None:
        """first_seen keeps the earliest value ever reported."""
        with self._connect() as conn:
            conn.execute("""
                INSERT INTO contacts (account_id, contact_id, name, is_group, first_seen)
                VALUES (?,?,?,?,?)
                ON CONFLICT(account_id, contact_id) DO UPDATE SET
                    name       = COALESCE(NULLIF(excluded.name, ''), contacts.name),
                    is_group   = MAX(contacts.is_group, excluded.is_group),
                    first_seen = MIN(COALESCE(contacts.first_seen, excluded.first_seen),
                                     excluded.first_seen)
            """, (account_id, contact_id, name, int(is_group), first_seen))

    def insert_message(self, account_id: str, msg: MessageRecord) -> bool:
        """INSERT OR IGNORE on (account_id, external_id). True if a row was written."""
        with self._connect() as conn:
            cur = conn.execute("""
                INSERT OR IGNORE INTO messages
                (account_id, external_id, chat_id, chat_name, sender_id, sender_name,
                 is_subject_author, body, timestamp, media_kind, media_path, transcript,
                 media_analyzed)
                VALUES (?,?,?,?,?,?,?,?,?,?,?,?,?)
            """, (
                account_id, msg.external_id, msg.chat_id, msg.chat_name,
                msg.sender_id, msg.sender_name, int(msg.is_subject_author),
                msg.body, int(msg.timestamp), msg.media_kind, msg.media_path,
                msg.transcript, int(msg.media_analyzed),
            ))
            return cur.rowcount == 1

    # ── CHATS / MESSAGES ─────────────────────────────────────

    def distinct_chats(self, account_id: str) -> List[ChatInfo]:
        """Chats with stored messages, most recently active first; chat_id breaks ties."""
        with self._connect() as conn:
            rows = conn.execute("""
                SELECT m.chat_id,
                       MAX(m.chat_name)  AS chat_name,
                       COUNT(*)          AS message_count,
                       MAX(m.timestamp)  AS last_ts,
                       COALESCE(c.is_group, 0) AS contact_group,
                       EXISTS (SELECT 1 FROM group_members g
                               WHERE g.account_id = m.account_id
                                 AND g.group_id   = m.chat_id) AS has_members
                FROM messages m
                LEFT JOIN contacts c
                       ON c.account_id = m.account_id AND c.contact_id = m.chat_id
                WHERE m.account_id = ?
                GROUP BY m.chat_id
                ORDER BY last_ts DESC, m.chat_id ASC
            """, (account_id,)).fetchall()
        return [
            ChatInfo(
                chat_id       = r['chat_id'],
                chat_name     = r['chat_name'] or r['chat_id'],
                message_count = r['message_count'],
                is_group      = bool(r['contact_group'] or r['has_members']),
            )
            for r in rows
        ]

    def last_n_messages(self, account_id: str, chat_id: str, n: int) -> List[MessageRecord]:
        """The newest n messages of a chat, returned oldest first."""
        with self._connect() as conn:
            rows = conn.execute(f"""
                SELECT {_MESSAGE_COLUMNS} FROM messages
                WHERE account_id = ? AND chat_id = ?
                ORDER BY timestamp DESC, id DESC
                LIMIT ?
            """, (account_id, chat_id, n)).fetchall()
        return [_row_to_message(r) for r in reversed(rows)]

    def message_count(self, account_id: str, chat_id: str) -> int:
        with self._connect() as conn:
            return conn.execute(
                "SELECT COUNT(*) FROM messages WHERE account_id = ? AND chat_id = ?",
                (account_id, chat_id),
            ).fetchone()[0]

    def media_paths(self, account_id: Optional[str] = None) -> Set[str]:
        """Attachment paths still referenced by any stored message."""
        sql = "SELECT DISTINCT media_path FROM messages WHERE media_path IS NOT NULL"
        params: tuple = ()
        if account_id is not None:
            sql += " AND account_id = ?"
            params = (account_id,)
        with self._connect() as conn:
            return {r[0] for r in conn.execute(sql, params)}

    def delete_messages_keep_recent(
        self, account_id: str, chat_id: str, keep: int,
    ) -> Tuple[int, List[str]]:
        """
        Delete all but the newest `keep` messages of a chat.
        Returns (rows deleted, media paths the deleted rows referenced).
        """
        with self._connect() as conn:
            doomed = conn.execute("""
                SELECT id, media_path FROM messages
                WHERE account_id = ? AND chat_id = ?
                ORDER BY timestamp DESC, id DESC
                LIMIT -1 OFFSET ?
            """, (account_id, chat_id, keep)).fetchall()
            if not doomed:
                return 0, []
            conn.executemany(
                "DELETE FROM messages WHERE id = ?", [(r['id'],) for r in doomed]
            )
        paths = sorted({r['media_path'] for r in doomed if r['media_path']})
        return len(doomed), paths

    # ── SAFETY LIST ──────────────────────────────────────────

    def is_safety_listed(self, account_id: str, chat_id: str) -> bool:
        """Directly listed, or a group with at least one listed member."""
        with self._connect() as conn:
            row = conn.execute("""
                SELECT EXISTS (
                    SELECT 1 FROM safe_contacts
                    WHERE account_id = ? AND contact_id = ?
                ) OR EXISTS (
                    SELECT 1 FROM group_members g
                    JOIN safe_contacts s
                      ON s.account_id = g.account_id AND s.contact_id = g.member_id
                    WHERE g.account_id = ? AND g.group_id = ?
                )
            """, (account_id, chat_id, account_id, chat_id)).fetchone()
        return bool(row[0])

    # ── CURSORS ──────────────────────────────────────────────

    def get_cursor(self, account_id: str, chat_id: str) -> Optional[ScanCursor]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM scan_cursors WHERE account_id = ? AND chat_id = ?",
                (account_id, chat_id),
            ).fetchone()
        if row is None:
            return None
        return ScanCursor(
            account_id              = row['account_id'],
            chat_id                 = row['chat_id'],
            last_scanned_timestamp  = row['last_scanned_timestamp'],
            last_scanned_message_id = row['last_scanned_message_id'],
            total_seen              = row['total_seen'],
        )

    def upsert_cursor(self, cursor: ScanCursor) -> None:
        """last_scanned_timestamp never moves backwards."""
        with self._connect() as conn:
            conn.execute("""
                INSERT INTO scan_cursors
                (account_id, chat_id, last_scanned_timestamp, last_scanned_message_id,
                 total_seen, updated_at)
                VALUES (?,?,?,?,?,?)
                ON CONFLICT(account_id, chat_id) DO UPDATE SET
                    last_scanned_message_id = CASE
                        WHEN excluded.last_scanned_timestamp >= scan_cursors.last_scanned_timestamp
                        THEN excluded.last_scanned_message_id
                        ELSE scan_cursors.last_scanned_message_id END,
                    last_scanned_timestamp = MAX(scan_cursors.last_scanned_timestamp,
                                                 excluded.last_scanned_timestamp),
                    total_seen = excluded.total_seen,
                    updated_at = excluded.updated_at
            """, (
                cursor.account_id, cursor.chat_id, int(cursor.last_scanned_timestamp),
                cursor.last_scanned_message_id, cursor.total_seen, time.time(),
            ))

    # ── MEDIA ────────────────────────────────────────────────

    def unanalyzed_media(self, account_id: str, chat_id: str, limit: int) -> List[MessageRecord]:
        with self._connect() as conn:
            rows = conn.execute(f"""
                SELECT {_MESSAGE_COLUMNS} FROM messages
                WHERE account_id = ? AND chat_id = ?
                  AND media_kind IS NOT NULL AND media_analyzed = 0
                ORDER BY timestamp ASC, id ASC
                LIMIT ?
            """, (account_id, chat_id, limit)).fetchall()
        return [_row_to_message(r) for r in rows]

    def count_unanalyzed_media(self, account_id: str, chat_id: str) -> int:
        with self._connect() as conn:
            return conn.execute("""
                SELECT COUNT(*) FROM messages
                WHERE account_id = ? AND chat_id = ?
                  AND media_kind IS NOT NULL AND media_analyzed = 0
            """, (account_id, chat_id)).fetchone()[0]

    def mark_media_analyzed(self, message_id: int, result: str) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE messages SET media_analyzed = 1, media_result = ? WHERE id = ?",
                (result, message_id),
            )

    def media_result(self, message_id: int) -> Optional[str]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT media_result FROM messages WHERE id = ?", (message_id,)
            ).fetchone()
        return row[0] if row else None

    def update_transcript(self, message_id: int, transcript: str) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE messages SET transcript = ? WHERE id = ?", (transcript, message_id)
            )

    # ── SCAN RUNS ────────────────────────────────────────────

    def create_scan_run(self, account_id: str, model: str = '', started_at: Optional[float] = None) -> int:
        with self._connect() as conn:
            cur = conn.execute(
                "INSERT INTO scan_runs (account_id, status, started_at, model) VALUES (?,?,?,?)",
                (account_id, 'running', started_at if started_at is not None else time.time(), model),
            )
            return cur.lastrowid

    def finish_scan_run(
        self,
        scan_run_id:      int,
        status:           str,
        messages_scanned: int             = 0,
        chats_scanned:    int             = 0,
        chats_skipped:    int             = 0,
        alerts_found:     int             = 0,
        cost:             float           = 0.0,
        error:            Optional[str]   = None,
        completed_at:     Optional[float] = None,
    ) -> bool:
        """Exactly one terminal update per run. Returns False if the run was already final."""
        if status not in ('completed', 'failed'):
            raise ValueError(f"Not a terminal scan status: {status}")
        with self._connect() as conn:
            cur = conn.execute("""
                UPDATE scan_runs SET
                    status = ?, messages_scanned = ?, chats_scanned = ?, chats_skipped = ?,
                    alerts_found = ?, cost = ?, error = ?, completed_at = ?
                WHERE id = ? AND status = 'running'
            """, (
                status, messages_scanned, chats_scanned, chats_skipped, alerts_found,
                cost, error, completed_at if completed_at is not None else time.time(),
                scan_run_id,
            ))
            updated = cur.rowcount == 1
        if not updated:
            logger.warning(f"Scan run {scan_run_id} already final — terminal update refused")
        return updated

    def get_scan_run(self, scan_run_id: int) -> Optional[ScanRun]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM scan_runs WHERE id = ?", (scan_run_id,)).fetchone()
        return _row_to_run(row) if row else None

    def running_scan(self, account_id: str) -> Optional[ScanRun]:
        with self._connect() as conn:
            row = conn.execute("""
                SELECT * FROM scan_runs WHERE account_id = ? AND status = 'running'
                ORDER BY id DESC LIMIT 1
            """, (account_id,)).fetchone()
        return _row_to_run(row) if row else None

    def scan_history(self, account_id: str, limit: int = 20) -> List[ScanRun]:
        """Newest first."""
        with self._connect() as conn:
            rows = conn.execute("""
                SELECT * FROM scan_runs WHERE account_id = ?
                ORDER BY started_at DESC, id DESC LIMIT ?
            """, (account_id, limit)).fetchall()
        return [_row_to_run(r) for r in rows]

    def previous_completed_run(self, account_id: str, before_id: int) -> Optional[ScanRun]:
        with self._connect() as conn:
            row = conn.execute("""
                SELECT * FROM scan_runs
                WHERE account_id = ? AND status = 'completed' AND id < ?
                ORDER BY id DESC LIMIT 1
            """, (account_id, before_id)).fetchone()
        return _row_to_run(row) if row else None

    # ── ALERTS ───────────────────────────────────────────────

    def insert_alert(self, alert: Alert) -> Optional[int]:
        """
        Idempotent on (scan_run_id, chat_id, category, summary hash).
        Returns the new row id, or None when an identical alert already exists.
        """
        key = alert_dedupe_key(alert.scan_run_id, alert.chat_id, alert.category, alert.summary)
        with self._connect() as conn:
            cur = conn.execute("""
                INSERT OR IGNORE INTO alerts
                (account_id, scan_run_id, severity, category, chat_id, chat_name,
                 summary, recommendation, confidence, source, status, created_at, dedupe_key)
                VALUES (?,?,?,?,?,?,?,?,?,?,?,?,?)
            """, (
                alert.account_id, alert.scan_run_id, alert.severity.label, alert.category,
                alert.chat_id, alert.chat_name, alert.summary, alert.recommendation,
                alert.confidence, alert.source, alert.status,
                alert.created_at or time.time(), key,
            ))
            if cur.rowcount != 1:
                return None
            return cur.lastrowid

    def get_alert(self, alert_id: int) -> Optional[Alert]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM alerts WHERE id = ?", (alert_id,)).fetchone()
        return _row_to_alert(row) if row else None

    def list_alerts(
        self,
        account_id:  str,
        status:      Optional[str] = None,
        scan_run_id: Optional[int] = None,
        limit:       int           = 100,
    ) -> List[Alert]:
        sql = "SELECT * FROM alerts WHERE account_id = ?"
        params: list = [account_id]
        if status is not None:
            sql += " AND status = ?"
            params.append(status)
        if scan_run_id is not None:
            sql += " AND scan_run_id = ?"
            params.append(scan_run_id)
        sql += " ORDER BY created_at DESC, id DESC LIMIT ?"
        params.append(limit)
        with self._connect() as conn:
            rows = conn.execute(sql, params).fetchall()
        return [_row_to_alert(r) for r in rows]

    def update_alert_status(self, alert_id: int, new_status: str) -> Alert:
        """Status is the only mutable alert field."""
        with self._connect() as conn:
            row = conn.execute("SELECT status FROM alerts WHERE id = ?", (alert_id,)).fetchone()
            if row is None:
                raise AlertNotFound(alert_id)
            current = row['status']
            if new_status not in ALERT_TRANSITIONS.get(current, frozenset()):
                raise InvalidStatusTransition(current, new_status)
            conn.execute("UPDATE alerts SET status = ? WHERE id = ?", (new_status, alert_id))
        logger.info(f"Alert {alert_id}: {current} → {new_status}")
        return self.get_alert(alert_id)

    # ── RISK AGGREGATES / EVENTS ─────────────────────────────

    def get_aggregate(self, account_id: str, chat_id: str, category: str) -> Optional[RiskAggregate]:
        with self._connect() as conn:
            row = conn.execute("""
                SELECT * FROM risk_aggregates
                WHERE account_id = ? AND chat_id = ? AND category = ?
            """, (account_id, chat_id, category)).fetchone()
        return _row_to_aggregate(row) if row else None

    def save_aggregate(self, agg: RiskAggregate) -> None:
        with self._connect() as conn:
            conn.execute("""
                INSERT OR REPLACE INTO risk_aggregates
                (account_id, chat_id, category, risk_level, hit_count, max_severity,
                 max_confidence, first_detected_at, last_detected_at)
                VALUES (?,?,?,?,?,?,?,?,?)
            """, (
                agg.account_id, agg.chat_id, agg.category, agg.risk_level.label,
                agg.hit_count, agg.max_severity_observed.label, agg.max_confidence_observed,
                agg.first_detected_at, agg.last_detected_at,
            ))

    def aggregates_for_account(self, account_id: str) -> List[RiskAggregate]:
        with self._connect() as conn:
            rows = conn.execute("""
                SELECT * FROM risk_aggregates WHERE account_id = ?
                ORDER BY category, chat_id
            """, (account_id,)).fetchall()
        return [_row_to_aggregate(r) for r in rows]

    def append_risk_event(self, event: RiskEvent) -> int:
        with self._connect() as conn:
            cur = conn.execute("""
                INSERT INTO risk_events
                (account_id, chat_id, chat_name, category, severity, confidence,
                 summary, scan_run_id, detected_at)
                VALUES (?,?,?,?,?,?,?,?,?)
            """, (
                event.account_id, event.chat_id, event.chat_name, event.category,
                event.severity.label, event.confidence, event.summary,
                event.scan_run_id, event.detected_at,
            ))
            return cur.lastrowid

    def risk_events_for_category(self, account_id: str, category: str, limit: int = 5) -> List[RiskEvent]:
        """Newest first."""
        with self._connect() as conn:
            rows = conn.execute("""
                SELECT * FROM risk_events WHERE account_id = ? AND category = ?
                ORDER BY detected_at DESC, id DESC LIMIT ?
            """, (account_id, category, limit)).fetchall()
        return [
            RiskEvent(
                id          = r['id'],
                account_id  = r['account_id'],
                chat_id     = r['chat_id'],
                chat_name   = r['chat_name'] or '',
                category    = r['category'],
                severity    = Severity.parse(r['severity']) or Severity.INFO,
                confidence  = r['confidence'],
                summary     = r['summary'] or '',
                scan_run_id = r['scan_run_id'],
                detected_at = r['detected_at'],
            )
            for r in rows
        ]

    # ── NEW CONTACTS ─────────────────────────────────────────

    def new_contacts_since(self, account_id: str, since: float) -> List[NewContactInfo]:
        """Direct contacts first seen after `since`, safety-listed ones excluded."""
        with self._connect() as conn:
            rows = conn.execute("""
                SELECT c.contact_id, c.name, c.first_seen,
                       (SELECT COUNT(*) FROM messages m
                        WHERE m.account_id = c.account_id AND m.chat_id = c.contact_id) AS message_count
                FROM contacts c
                WHERE c.account_id = ?
                  AND c.is_group = 0
                  AND c.first_seen > ?
                  AND NOT EXISTS (SELECT 1 FROM safe_contacts s
                                  WHERE s.account_id = c.account_id
                                    AND s.contact_id = c.contact_id)
                ORDER BY c.first_seen ASC, c.contact_id ASC
            """, (account_id, since)).fetchall()
        return [
            NewContactInfo(
                contact_id    = r['contact_id'],
                name          = r['name'] or r['contact_id'],
                message_count = r['message_count'],
                first_seen    = r['first_seen'],
            )
            for r in rows
        ]


# ── ROW MAPPERS ──────────────────────────────────────────────

def _row_to_message(r: sqlite3.Row) -> MessageRecord:
    return MessageRecord(
        id                = r['id'],
        external_id       = r['external_id'],
        chat_id           = r['chat_id'],
        chat_name         = r['chat_name'] or '',
        sender_id         = r['sender_id'] or '',
        sender_name       = r['sender_name'] or '',
        is_subject_author = bool(r['is_subject_author']),
        body              = r['body'] or '',
        timestamp         = r['timestamp'],
        media_kind        = r['media_kind'],
        media_path        = r['media_path'],
        transcript        = r['transcript'],
        media_analyzed    = bool(r['media_analyzed']),
    )


def _row_to_run(r: sqlite3.Row) -> ScanRun:
    return ScanRun(
        id               = r['id'],
        account_id       = r['account_id'],
        status           = r['status'],
        started_at       = r['started_at'],
        messages_scanned = r['messages_scanned'],
        chats_scanned    = r['chats_scanned'],
        chats_skipped    = r['chats_skipped'],
        alerts_found     = r['alerts_found'],
        cost             = r['cost'],
        model            = r['model'] or '',
        completed_at     = r['completed_at'],
        error            = r['error'],
    )


def _row_to_alert(r: sqlite3.Row) -> Alert:
    return Alert(
        id             = r['id'],
        account_id     = r['account_id'],
        scan_run_id    = r['scan_run_id'],
        severity       = Severity.parse(r['severity']) or Severity.INFO,
        category       = r['category'],
        chat_id        = r['chat_id'],
        chat_name      = r['chat_name'] or '',
        summary        = r['summary'],
        recommendation = r['recommendation'] or '',
        confidence     = r['confidence'],
        source         = r['source'],
        status         = r['status'],
        created_at     = r['created_at'],
    )


def _row_to_aggregate(r: sqlite3.Row) -> RiskAggregate:
    return RiskAggregate(
        account_id              = r['account_id'],
        chat_id                 = r['chat_id'],
        category                = r['category'],
        risk_level              = RiskLevel.parse(r['risk_level']) or RiskLevel.NONE,
        hit_count               = r['hit_count'],
        max_severity_observed   = Severity.parse(r['max_severity']) or Severity.INFO,
        max_confidence_observed = r['max_confidence'],
        first_detected_at       = r['first_detected_at'],
        last_detected_at        = r['last_detected_at'],
    )
