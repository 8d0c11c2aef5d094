"""
shomer/api.py
─────────────────────────────────────────────────────────────────────────────
Shomer — Dual-mode API layer

TWO USAGE MODES:
  1. Importable module:
         from shomer.api import ShomerAPI
         api = ShomerAPI(db_path=Path("shomer.db"))
         alerts = api.list_alerts("acct-1")

  2. FastAPI HTTP server:
         shomer-api                               # default: port 8765
         shomer-api --port 9000
         uvicorn shomer.api:app --port 8765

ENDPOINTS:
  POST  /accounts/{id}/scan    — run a scan now (404 unknown, 409 already running)
  GET   /accounts/{id}/alerts  — alerts, newest first, optional ?status=
  PATCH /alerts/{id}           — alert status transition (400 invalid, 404 unknown)
  GET   /accounts/{id}/risk    — per-category risk profile + per-chat aggregates
  GET   /accounts/{id}/scans   — scan run history
  GET   /health                — liveness

PRIVACY NOTE:
  Responses carry generated summaries and metadata only, never message
  text. The server binds to 127.0.0.1 by default.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Dict, List, Optional

from fastapi import FastAPI, HTTPException, Query
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel

from shomer import __version__
from shomer.errors import (
    AccountNotFound,
    AlertNotFound,
    InvalidStatusTransition,
    ScanAlreadyRunning,
)
from shomer.models.record import Alert, RiskAggregate, ScanResult, ScanRun
from shomer.report import build_report_from_store, report_to_dict
from shomer.store.sqlite_store import SqliteStore

logger = logging.getLogger(__name__)


# ═══════════════════════════════════════════════════════════════════════════
# SERIALIZERS: severity / level enums become their labels
# ═══════════════════════════════════════════════════════════════════════════

def alert_to_dict(a: Alert) -> Dict[str, Any]:
    return {
        "id":             a.id,
        "scan_run_id":    a.scan_run_id,
        "severity":       a.severity.label,
        "category":       a.category,
        "chat_id":        a.chat_id,
        "chat_name":      a.chat_name,
        "summary":        a.summary,
        "recommendation": a.recommendation,
        "confidence":     a.confidence,
        "source":         a.source,
        "status":         a.status,
        "created_at":     a.created_at,
    }


def aggregate_to_dict(agg: RiskAggregate) -> Dict[str, Any]:
    return {
        "chat_id":                 agg.chat_id,
        "category":                agg.category,
        "risk_level":              agg.risk_level.label,
        "hit_count":               agg.hit_count,
        "max_severity_observed":   agg.max_severity_observed.label,
        "max_confidence_observed": agg.max_confidence_observed,
        "first_detected_at":       agg.first_detected_at,
        "last_detected_at":        agg.last_detected_at,
    }


def scan_run_to_dict(run: ScanRun) -> Dict[str, Any]:
    return {
        "id":               run.id,
        "status":           run.status,
        "started_at":       run.started_at,
        "completed_at":     run.completed_at,
        "messages_scanned": run.messages_scanned,
        "chats_scanned":    run.chats_scanned,
        "chats_skipped":    run.chats_skipped,
        "alerts_found":     run.alerts_found,
        "cost":             run.cost,
        "model":            run.model,
        "failed":           run.status == "failed",
    }


def scan_result_to_dict(r: ScanResult) -> Dict[str, Any]:
    return {
        "scan_run_id":      r.scan_run_id,
        "account_id":       r.account_id,
        "status":           r.status,
        "messages_scanned": r.messages_scanned,
        "messages_total":   r.messages_total,
        "chats_scanned":    r.chats_scanned,
        "chats_skipped":    r.chats_skipped,
        "chats_failed":     r.chats_failed,
        "alerts":           [alert_to_dict(a) for a in r.alerts],
        "new_contacts":     [
            {"name": c.name, "message_count": c.message_count, "assessment": c.assessment}
            for c in r.new_contacts
        ],
        "suspicious_groups": [
            {"name": g.name, "category": g.category, "reason": g.reason}
            for g in r.suspicious_groups
        ],
        "media_analyzed":   r.media_analyzed,
        "skipped_media":    r.skipped_media,
        "escalations":      r.escalations,
        "cost":             r.cost,
        "duration_ms":      r.duration_ms,
    }


# ═══════════════════════════════════════════════════════════════════════════
# IMPORTABLE CLASS
# ═══════════════════════════════════════════════════════════════════════════

class ShomerAPI:
    """
    Pure-Python API over the store and orchestrator.
    No HTTP layer required — import and call directly.

    The store is opened on first use, and the orchestrator is built from
    config on first scan unless one is injected.
    """

    def __init__(
        self,
        db_path:      Path            = Path("shomer.db"),
        config:       Optional[Dict]  = None,
        orchestrator                  = None,
        store:        Optional[SqliteStore] = None,
    ):
        self.db_path       = Path(db_path)
        self._config       = config
        self._orchestrator = orchestrator
        self._store        = store

    # ── INTERNAL ──────────────────────────────────────────────────────────

    @property
    def store(self) -> SqliteStore:
        if self._store is None:
            self._store = SqliteStore(self.db_path)
        return self._store

    @property
    def orchestrator(self):
        if self._orchestrator is None:
            from shomer.config import build_orchestrator, load_config
            self._orchestrator = build_orchestrator(self._config or load_config(), self.store)
        return self._orchestrator

    def _require_account(self, account_id: str):
        subject = self.store.get_account(account_id)
        if subject is None:
            raise AccountNotFound(account_id)
        return subject

    # ── OPERATIONS ────────────────────────────────────────────────────────

    def scan(self, account_id: str) -> Dict[str, Any]:
        from shomer.scheduler import trigger_scan
        subject = self._require_account(account_id)
        result = trigger_scan(self.store, self.orchestrator, account_id)
        out = scan_result_to_dict(result)
        out["report"] = report_to_dict(build_report_from_store(self.store, result, subject))
        return out

    def list_alerts(
        self,
        account_id: str,
        status:     Optional[str] = None,
        limit:      int           = 100,
    ) -> List[Dict[str, Any]]:
        self._require_account(account_id)
        return [alert_to_dict(a) for a in self.store.list_alerts(account_id, status=status, limit=limit)]

    def update_alert_status(self, alert_id: int, status: str) -> Dict[str, Any]:
        return alert_to_dict(self.store.update_alert_status(alert_id, status))

    def risk(self, account_id: str) -> Dict[str, Any]:
        self._require_account(account_id)
        aggregates = self.store.aggregates_for_account(account_id)
        by_category: Dict[str, Dict[str, Any]] = {}
        for agg in aggregates:
            entry = by_category.setdefault(agg.category, {
                "category": agg.category, "risk_level": agg.risk_level, "hit_count": 0,
            })
            entry["risk_level"] = max(entry["risk_level"], agg.risk_level)
            entry["hit_count"] += agg.hit_count
        categories = sorted(by_category.values(), key=lambda e: (-e["risk_level"], e["category"]))
        for entry in categories:
            entry["risk_level"] = entry["risk_level"].label
        return {
            "account_id": account_id,
            "categories": categories,
            "aggregates": [aggregate_to_dict(a) for a in aggregates],
        }

    def scans(self, account_id: str, limit: int = 20) -> List[Dict[str, Any]]:
        self._require_account(account_id)
        return [scan_run_to_dict(r) for r in self.store.scan_history(account_id, limit=limit)]

    def health(self) -> Dict[str, Any]:
        return {
            "status":    "ok",
            "db_exists": self.db_path.exists(),
            "db_path":   str(self.db_path),
            "version":   __version__,
        }


# ═══════════════════════════════════════════════════════════════════════════
# FASTAPI APP
# ═══════════════════════════════════════════════════════════════════════════

class AlertStatusUpdate(BaseModel):
    status: str


def _build_app(db_path: Path = Path("shomer.db"), api: Optional[ShomerAPI] = None) -> FastAPI:
    """Build the FastAPI application around a ShomerAPI instance."""
    _api = api or ShomerAPI(db_path=db_path)

    _app = FastAPI(
        title       = "Shomer API",
        description = "Guardian scanning & risk-aggregation engine — local API",
        version     = __version__,
        docs_url    = "/docs",
        redoc_url   = None,
    )

    # CORS: localhost origins only
    _app.add_middleware(
        CORSMiddleware,
        allow_origins     = [
            "http://localhost",
            "http://localhost:8765",
            "http://127.0.0.1",
            "http://127.0.0.1:8765",
            "null",   # file:// origin
        ],
        allow_methods     = ["GET", "POST", "PATCH", "OPTIONS"],
        allow_headers     = ["Content-Type"],
        allow_credentials = False,
    )

    @_app.post("/accounts/{account_id}/scan", summary="Run a scan now")
    def scan(account_id: str):
        try:
            return _api.scan(account_id)
        except AccountNotFound:
            raise HTTPException(status_code=404, detail=f"Account not found: {account_id}")
        except ScanAlreadyRunning as exc:
            logger.warning(f"[api] Scan refused for {account_id}: {exc}")
            raise HTTPException(status_code=409, detail=str(exc))

    @_app.get("/accounts/{account_id}/alerts", summary="List alerts")
    def list_alerts(
        account_id: str,
        status:     Optional[str] = Query(default=None),
        limit:      int           = Query(default=100, ge=1, le=1000),
    ):
        try:
            return _api.list_alerts(account_id, status=status, limit=limit)
        except AccountNotFound:
            raise HTTPException(status_code=404, detail=f"Account not found: {account_id}")

    @_app.patch("/alerts/{alert_id}", summary="Change alert status")
    def update_alert(alert_id: int, update: AlertStatusUpdate):
        try:
            return _api.update_alert_status(alert_id, update.status)
        except AlertNotFound:
            raise HTTPException(status_code=404, detail=f"Alert not found: {alert_id}")
        except InvalidStatusTransition as exc:
            raise HTTPException(status_code=400, detail=str(exc))

    @_app.get("/accounts/{account_id}/risk", summary="Cumulative risk profile")
    def risk(account_id: str):
        try:
            return _api.risk(account_id)
        except AccountNotFound:
            raise HTTPException(status_code=404, detail=f"Account not found: {account_id}")

    @_app.get("/accounts/{account_id}/scans", summary="Scan history")
    def scans(account_id: str, limit: int = Query(default=20, ge=1, le=200)):
        try:
            return _api.scans(account_id, limit=limit)
        except AccountNotFound:
            raise HTTPException(status_code=404, detail=f"Account not found: {account_id}")

    @_app.get("/health", summary="Health check")
    def health():
        return _api.health()

    return _app


# Module-level app instance for uvicorn shomer.api:app
app = _build_app()


# ═══════════════════════════════════════════════════════════════════════════
# CLI ENTRYPOINT: shomer-api / python -m shomer.api
# ═══════════════════════════════════════════════════════════════════════════

def main():
    import argparse

    import uvicorn

    parser = argparse.ArgumentParser(
        prog        = "shomer-api",
        description = "Shomer API server — localhost only",
    )
    parser.add_argument("--port",    type=int, default=8765,
                        help="Port to bind (default: 8765)")
    parser.add_argument("--db",      type=str, default="shomer.db",
                        help="Path to shomer.db (default: shomer.db)")
    parser.add_argument("--host",    type=str, default="127.0.0.1",
                        help="Host to bind — DO NOT change to 0.0.0.0 on shared networks")
    args = parser.parse_args()

    logging.basicConfig(
        level  = logging.INFO,
        format = '%(asctime)s [%(levelname)s] %(name)s: %(message)s',
    )

    print(f"""
+--------------------------------------------------+
|   Shomer API Server v{__version__}
+--------------------------------------------------+
|  Local:    http://{args.host}:{args.port}
|  DB:       {args.db}
|  Docs:     http://{args.host}:{args.port}/docs
|  Health:   http://{args.host}:{args.port}/health
+--------------------------------------------------+
""")

    uvicorn.run(
        _build_app(db_path=Path(args.db)),
        host      = args.host,
        port      = args.port,
        log_level = "info",
    )


if __name__ == "__main__":
    main()
