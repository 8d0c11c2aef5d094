"""
shomer/report_export.py
Versioned export of a guardian report.

Output: JSON (primary), structured dict (secondary).
Every export includes: report metadata (generated_at, engine version, scan params),
data integrity hash (SHA-256 of export content), export format version.
No raw message content — generated summaries, counts and metadata only.
"""

import hashlib
import json
from typing import Any, Dict, Optional

from shomer import __version__
from shomer.report import Report, report_to_dict


EXPORT_FORMAT_VERSION = "1.0"


def _build_export_payload(
    report: Report,
    scan_parameters: Optional[Dict[str, Any]] = None,
) -> Dict[str, Any]:
    """Build export payload (no hash yet). Used for both JSON and dict output."""
    report_metadata = {
        "generated_at": report.generated_at,
        "engine_version": __version__,
        "scan_parameters": dict(scan_parameters) if scan_parameters else {},
    }
    return {
        "export_format_version": EXPORT_FORMAT_VERSION,
        "report_metadata": report_metadata,
        "report": report_to_dict(report),
    }


def _content_hash(payload: Dict[str, Any]) -> str:
    """SHA-256 of canonical JSON serialization of payload (no hash field)."""
    canonical = json.dumps(payload, sort_keys=True, separators=(",", ":"), ensure_ascii=False)
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


def export_to_dict(
    report: Report,
    scan_parameters: Optional[Dict[str, Any]] = None,
) -> Dict[str, Any]:
    payload = _build_export_payload(report, scan_parameters)
    return {**payload, "content_hash_sha256": _content_hash(payload)}


def export_to_json(
    report: Report,
    scan_parameters: Optional[Dict[str, Any]] = None,
    indent: Optional[int] = 2,
) -> str:
    """Export report to a JSON string with integrity hash and format version."""
    return json.dumps(export_to_dict(report, scan_parameters), indent=indent, ensure_ascii=False)


def verify_export(export_obj: Dict[str, Any]) -> bool:
    """True when the stored content hash matches the payload."""
    payload = {k: v for k, v in export_obj.items() if k != "content_hash_sha256"}
    return export_obj.get("content_hash_sha256") == _content_hash(payload)
