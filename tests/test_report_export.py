"""
tests/test_report_export.py
Versioned export format: metadata, integrity hash, no message content.
"""

import json

from shomer import __version__
from shomer.models.record import Alert, ScanResult, SubjectProfile
from shomer.models.risk import Severity
from shomer.report import build_report
from shomer.report_export import (
    EXPORT_FORMAT_VERSION,
    export_to_dict,
    export_to_json,
    verify_export,
)


def _report():
    alert = Alert(
        account_id='acct-1', scan_run_id=7, severity=Severity.HIGH, category='bullying',
        chat_id='c1', chat_name='Dana', summary='Repeated insults from one participant.',
        recommendation='Talk with your child.', confidence=0.8,
    )
    result = ScanResult(scan_run_id=7, account_id='acct-1', alerts=[alert], messages_scanned=12)
    return build_report(result, SubjectProfile(account_id='acct-1', name='Noa'),
                        generated_at='2026-01-01T00:00:00Z')


class TestReportExport:

    def test_export_includes_format_version(self):
        assert export_to_dict(_report())["export_format_version"] == EXPORT_FORMAT_VERSION

    def test_export_includes_metadata(self):
        d = export_to_dict(_report())
        assert d["report_metadata"]["generated_at"] == '2026-01-01T00:00:00Z'
        assert d["report_metadata"]["engine_version"] == __version__
        assert d["report_metadata"]["scan_parameters"] == {}

    def test_export_includes_scan_parameters(self):
        params = {"account_id": "acct-1", "scan_run_id": 7}
        d = export_to_dict(_report(), scan_parameters=params)
        assert d["report_metadata"]["scan_parameters"] == params

    def test_export_includes_content_hash(self):
        h = export_to_dict(_report())["content_hash_sha256"]
        assert len(h) == 64
        assert all(c in "0123456789abcdef" for c in h)

    def test_hash_is_deterministic(self):
        assert export_to_dict(_report())["content_hash_sha256"] == export_to_dict(_report())["content_hash_sha256"]

    def test_verify_detects_tampering(self):
        d = json.loads(export_to_json(_report()))
        assert verify_export(d) is True
        d["report"]["status"] = "clean"
        assert verify_export(d) is False

    def test_export_no_raw_message_content(self):
        s = json.dumps(export_to_dict(_report()))
        assert '"body"' not in s
        assert '"transcript"' not in s
        report_keys = set(export_to_dict(_report())["report"])
        assert {"subject_name", "status", "findings", "risk_profile", "scan_stats"} <= report_keys
