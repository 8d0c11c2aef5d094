"""
shomer/parsers/feed_parser.py
Loads the normalized message feed written by ingestion.

Feed files are JSON Lines named feed-*.jsonl, one message per line:
  {"account_id", "external_id", "chat_id", "chat_name", "is_group",
   "sender_id", "sender_name", "is_subject_author", "body", "timestamp",
   "media_kind", "media_path", "transcript"}

An optional accounts.json in the same directory lists subject profiles:
  [{"account_id", "name", "birthdate", "gender", "plan",
    "safe_contacts": [...]}]

Encoding: UTF-8 with or without BOM. Malformed lines are skipped with a
warning that carries the line number only, never the line.
"""

import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

from shomer.models.record import MessageRecord, SubjectProfile

logger = logging.getLogger(__name__)

BOM_UTF8 = b'\xef\xbb\xbf'

MEDIA_KINDS = frozenset({'image', 'sticker', 'video', 'audio', 'document'})


@dataclass
class FeedEntry:
    account_id: str
    message:    MessageRecord
    is_group:   bool = False


def _read_text(path: Path) -> str:
    raw = path.read_bytes()
    if raw.startswith(BOM_UTF8):
        raw = raw[len(BOM_UTF8):]
    try:
        return raw.decode('utf-8', errors='strict')
    except UnicodeDecodeError:
        return raw.decode('utf-8', errors='replace')


def _parse_row(row: Dict[str, Any]) -> Optional[FeedEntry]:
    try:
        account_id  = str(row['account_id'])
        external_id = str(row.get('external_id') or row['id'])
        chat_id     = str(row['chat_id'])
        timestamp   = int(row['timestamp'])
    except (KeyError, TypeError, ValueError):
        return None
    if timestamp > 10_000_000_000:   # milliseconds
        timestamp //= 1000

    media_kind = row.get('media_kind') or None
    if media_kind is not None and media_kind not in MEDIA_KINDS:
        media_kind = 'document'

    return FeedEntry(
        account_id = account_id,
        is_group   = bool(row.get('is_group', False)),
        message    = MessageRecord(
            external_id       = external_id,
            chat_id           = chat_id,
            chat_name         = str(row.get('chat_name') or ''),
            sender_id         = str(row.get('sender_id') or ''),
            sender_name       = str(row.get('sender_name') or ''),
            is_subject_author = bool(row.get('is_subject_author', False)),
            body              = str(row.get('body') or ''),
            timestamp         = timestamp,
            media_kind        = media_kind,
            media_path        = row.get('media_path') or None,
            transcript        = row.get('transcript') or None,
        ),
    )


def parse_feed_file(path: Path) -> List[FeedEntry]:
    """Parse one feed-*.jsonl file. Returns [] when the file cannot be read."""
    path = Path(path)
    try:
        text = _read_text(path)
    except OSError as e:
        logger.error(f"File read error {path.name}: {type(e).__name__}")
        return []

    entries: List[FeedEntry] = []
    skipped = 0
    for lineno, line in enumerate(text.splitlines(), start=1):
        if not line.strip():
            continue
        try:
            row = json.loads(line)
        except json.JSONDecodeError:
            skipped += 1
            logger.warning(f"{path.name}:{lineno}: not valid JSON — skipped")
            continue
        entry = _parse_row(row) if isinstance(row, dict) else None
        if entry is None:
            skipped += 1
            logger.warning(f"{path.name}:{lineno}: missing required fields — skipped")
            continue
        entries.append(entry)

    logger.info(f"Parsed {len(entries)} message(s) from {path.name} ({skipped} skipped)")
    return entries


def parse_feed_directory(directory: Path) -> List[FeedEntry]:
    """
    Parse all feed-*.jsonl files in a directory.
    Deduplicates on (account_id, external_id); sorted by timestamp.
    """
    directory = Path(directory)
    files = sorted(directory.glob('feed-*.jsonl'))
    if not files:
        logger.warning(f"No feed-*.jsonl files found in {directory}")
        return []

    seen = set()
    entries: List[FeedEntry] = []
    for path in files:
        for entry in parse_feed_file(path):
            key = (entry.account_id, entry.message.external_id)
            if key in seen:
                continue
            seen.add(key)
            entries.append(entry)

    entries.sort(key=lambda e: (e.message.timestamp, e.message.external_id))
    logger.info(f"Total: {len(entries)} unique message(s) from {len(files)} file(s)")
    return entries


def parse_accounts_file(path: Path) -> List[Dict[str, Any]]:
    path = Path(path)
    if not path.exists():
        return []
    try:
        data = json.loads(_read_text(path))
    except (json.JSONDecodeError, OSError) as e:
        logger.error(f"Accounts file {path.name} unreadable: {type(e).__name__}")
        return []
    if not isinstance(data, list):
        logger.error(f"Accounts file {path.name} must hold a JSON list")
        return []
    return [a for a in data if isinstance(a, dict) and a.get('account_id') and a.get('name')]


def load_accounts(store, accounts: Iterable[Dict[str, Any]]) -> int:
    count = 0
    for a in accounts:
        store.upsert_account(
            SubjectProfile(
                account_id = str(a['account_id']),
                name       = str(a['name']),
                age        = a.get('age'),
                gender     = a.get('gender'),
                plan       = a.get('plan') or 'free',
            ),
            birthdate = a.get('birthdate'),
        )
        for contact_id in a.get('safe_contacts') or []:
            store.add_safe_contact(str(a['account_id']), str(contact_id))
        count += 1
    return count


def load_feed(store, entries: Iterable[FeedEntry]) -> int:
    """
    Insert messages (idempotent) and keep contacts and group membership
    current. Returns the number of new message rows.
    """
    inserted = 0
    for entry in entries:
        msg = entry.message
        if store.insert_message(entry.account_id, msg):
            inserted += 1
        store.upsert_contact(
            entry.account_id, msg.chat_id, msg.chat_name, float(msg.timestamp), entry.is_group,
        )
        if entry.is_group and msg.sender_id and not msg.is_subject_author:
            store.add_group_member(entry.account_id, msg.chat_id, msg.sender_id)
    logger.info(f"Feed load: {inserted} new message row(s)")
    return inserted
