"""
shomer/retention.py
Retention cleanup: the privacy contract that raw conversation content is
not kept long-term.

After a chat is scanned, every message except the newest K (context for
the next run) is deleted, and attachment files that no remaining row
references are unlinked.

Must run last for a chat, after its alerts and cursor are committed.
"""

import logging
from dataclasses import dataclass
from pathlib import Path

logger = logging.getLogger(__name__)

RETAIN_MESSAGES = 15


@dataclass
class CleanupResult:
    messages_deleted: int = 0
    files_deleted:    int = 0


def cleanup_chat(store, account_id: str, chat_id: str, keep: int = RETAIN_MESSAGES) -> CleanupResult:
    """Never raises; a failed cleanup is logged and reported as zero deletions."""
    try:
        deleted, paths = store.delete_messages_keep_recent(account_id, chat_id, keep)
    except Exception as e:
        logger.error(f"Cleanup failed for chat {chat_id}: {type(e).__name__}")
        return CleanupResult()

    files_deleted = 0
    if paths:
        still_referenced = store.media_paths()
        for path in paths:
            if path in still_referenced:
                continue
            try:
                Path(path).unlink()
                files_deleted += 1
            except FileNotFoundError:
                pass
            except OSError as e:
                logger.warning(f"Could not delete attachment file: {type(e).__name__}")

    if deleted:
        logger.info(
            f"Cleanup chat {chat_id}: {deleted} message(s), {files_deleted} file(s) deleted, "
            f"{keep} kept"
        )
    return CleanupResult(messages_deleted=deleted, files_deleted=files_deleted)
