"""
shomer/cli.py
Command-line interface for the Shomer scanning engine.

USAGE:
  shomer ingest    --feed-dir ./feed
  shomer scan      --account ACCOUNT_ID
  shomer report    --account ACCOUNT_ID [--json]
  shomer scheduler [--once]
  shomer list-models

Global options: --db PATH, --config PATH, --verbose
"""

import argparse
import logging
import sys
import time
from pathlib import Path

from shomer.config import build_llm, build_orchestrator, load_config
from shomer.errors import AccountNotFound, ScanAlreadyRunning, ShomerError
from shomer.store.sqlite_store import SqliteStore

logger = logging.getLogger(__name__)

# ANSI colors
GREEN  = '\033[92m'
YELLOW = '\033[93m'
RED    = '\033[91m'
CYAN   = '\033[96m'
RESET  = '\033[0m'
BOLD   = '\033[1m'


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog        = 'shomer',
        description = 'Shomer — guardian scanning & risk-aggregation engine',
        formatter_class = argparse.RawDescriptionHelpFormatter,
        epilog = """
PRIVACY NOTICE:
  Scanned conversations are pruned to the last few messages per chat.
  Reports contain generated summaries only, never message text.
        """
    )
    parser.add_argument(
        '--db',
        type    = Path,
        default = None,
        help    = 'SQLite database path (default: from config, shomer.db)',
    )
    parser.add_argument(
        '--config',
        type    = Path,
        default = None,
        help    = 'Config file or directory holding shomer_config.json (default: cwd)',
    )
    parser.add_argument(
        '--verbose', '-v',
        action  = 'store_true',
        help    = 'Enable debug logging',
    )

    sub = parser.add_subparsers(dest='command', required=True)

    p_ingest = sub.add_parser('ingest', help='Load feed-*.jsonl (and accounts.json) into the store')
    p_ingest.add_argument('--feed-dir', '-d', required=True, type=Path)

    p_scan = sub.add_parser('scan', help='Scan one account now')
    p_scan.add_argument('--account', '-a', required=True)

    p_report = sub.add_parser('report', help="Render the latest scan's guardian report")
    p_report.add_argument('--account', '-a', required=True)
    p_report.add_argument('--json', action='store_true', help='Versioned JSON export instead of text')

    p_sched = sub.add_parser('scheduler', help='Run scans for accounts whose plan interval is due')
    p_sched.add_argument('--once', action='store_true', help='One pass, then exit')
    p_sched.add_argument('--poll-interval', type=int, default=3600)

    sub.add_parser('list-models', help='List models available on the configured Ollama host')
    return parser


def main(argv=None):
    args = build_parser().parse_args(argv)

    # ── LOGGING SETUP ────────────────────────────────────────
    log_level = logging.DEBUG if args.verbose else logging.INFO
    logging.basicConfig(
        level   = log_level,
        format  = '%(asctime)s [%(levelname)s] %(name)s: %(message)s',
        datefmt = '%H:%M:%S',
    )

    config = load_config(args.config)
    db_path = args.db or Path(config['db_path'])

    try:
        code = _dispatch(args, config, db_path)
    except ShomerError as e:
        _print(f"{RED}Error: {e}{RESET}")
        code = 1
    sys.exit(code)


def _dispatch(args, config, db_path: Path) -> int:
    # ── LIST MODELS ──────────────────────────────────────────
    if args.command == 'list-models':
        from shomer.llm.ollama_adapter import OllamaAdapter
        adapter = OllamaAdapter(host=config['ollama_host'])
        models  = adapter.list_available_models()
        if models:
            _print(f"\n{BOLD}Available Ollama models:{RESET}")
            for m in models:
                _print(f"  • {m}")
        else:
            _print(f"{YELLOW}No models found. Is Ollama running?{RESET}")
        return 0

    store = SqliteStore(db_path)

    # ── INGEST ───────────────────────────────────────────────
    if args.command == 'ingest':
        from shomer.parsers.feed_parser import (
            load_accounts, load_feed, parse_accounts_file, parse_feed_directory,
        )
        if not args.feed_dir.exists():
            _print(f"{RED}Error: Directory not found: {args.feed_dir}{RESET}")
            return 1
        t0 = time.time()
        accounts = load_accounts(store, parse_accounts_file(args.feed_dir / 'accounts.json'))
        inserted = load_feed(store, parse_feed_directory(args.feed_dir))
        _ok(f"{accounts} account(s), {inserted} new message(s) loaded in {_elapsed(t0)}")
        return 0

    # ── REPORT ───────────────────────────────────────────────
    if args.command == 'report':
        from shomer.report import build_report_from_store, format_guardian_message, scan_result_from_store
        from shomer.report_export import export_to_json
        subject = store.get_account(args.account)
        if subject is None:
            raise AccountNotFound(args.account)
        result = scan_result_from_store(store, args.account)
        if result is None:
            _print(f"{YELLOW}No scans yet for {args.account}{RESET}")
            return 1
        report = build_report_from_store(store, result, subject)
        if args.json:
            _print(export_to_json(report, {'account_id': args.account, 'scan_run_id': result.scan_run_id}))
        else:
            _print(format_guardian_message(report))
        return 0

    orchestrator = build_orchestrator(config, store, llm=build_llm(config))
    if not orchestrator.classifier.llm.is_available():
        _print(f"{YELLOW}⚠ LLM backend unavailable — batches will yield no findings.{RESET}")

    # ── SCAN ─────────────────────────────────────────────────
    if args.command == 'scan':
        from shomer.scheduler import trigger_scan
        _step(f"Scanning {args.account}...")
        try:
            result = trigger_scan(store, orchestrator, args.account)
        except ScanAlreadyRunning as e:
            _print(f"{YELLOW}{e}{RESET}")
            return 2
        if result.status != 'completed':
            _print(f"{RED}✗ Scan {result.scan_run_id} failed{RESET}")
            return 1
        _print(f"\n{BOLD}{GREEN}✓ Scan {result.scan_run_id} complete{RESET}")
        _print(f"  Chats      : {result.chats_scanned} scanned, {result.chats_skipped} skipped, {result.chats_failed} failed")
        _print(f"  Messages   : {result.messages_scanned:,}")
        _print(f"  Alerts     : {len(result.alerts)}")
        _print(f"  Escalations: {result.escalations}")
        _print(f"  Media      : {result.media_analyzed} analyzed, {result.skipped_media} skipped")
        _print(f"  Cost       : ${result.cost:.4f}")
        return 0

    # ── SCHEDULER ────────────────────────────────────────────
    if args.command == 'scheduler':
        from shomer.scheduler import run_due_scans, run_forever
        if args.once:
            results = run_due_scans(store, orchestrator)
            _ok(f"{len(results)} scan(s) run")
            return 0
        try:
            run_forever(store, orchestrator, poll_interval_sec=args.poll_interval)
        except KeyboardInterrupt:
            _print("\nStopped.")
        return 0

    return 1


# ── PRINT HELPERS ────────────────────────────────────────────

def _step(msg):  _print(f"  {CYAN}→{RESET} {msg}")
def _ok(msg):    _print(f"  {GREEN}✓{RESET} {msg}")
def _print(msg): print(msg)

def _elapsed(t0: float) -> str:
    s = time.time() - t0
    return f"{s:.1f}s" if s < 60 else f"{int(s//60)}m {int(s%60)}s"


if __name__ == '__main__':
    main()
