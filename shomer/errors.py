"""
shomer/errors.py
Exception taxonomy.

Only NotFound-class errors reach run_scan callers. Classifier failures are
recovered inside the classifier (adapters return None). MediaUnreadable is
caught per attachment. Everything else inside a scan ends as a failed
ScanRun row, not a raised exception.
"""


class ShomerError(Exception):
    """Base for all engine errors."""


class NotFoundError(ShomerError):
    pass


class AccountNotFound(NotFoundError):
    def __init__(self, account_id: str):
        super().__init__(f"Account not found: {account_id}")
        self.account_id = account_id


class AlertNotFound(NotFoundError):
    def __init__(self, alert_id: int):
        super().__init__(f"Alert not found: {alert_id}")
        self.alert_id = alert_id


class MediaUnreadable(ShomerError):
    """Attachment missing, corrupt or of an unsupported kind."""

    def __init__(self, reason: str):
        super().__init__(reason)
        self.reason = reason


class InvalidStatusTransition(ShomerError, ValueError):
    def __init__(self, current: str, requested: str):
        super().__init__(f"Cannot move alert from '{current}' to '{requested}'")
        self.current   = current
        self.requested = requested


class ScanAlreadyRunning(ShomerError):
    def __init__(self, account_id: str, scan_run_id: int):
        super().__init__(f"Scan {scan_run_id} already running for {account_id}")
        self.account_id  = account_id
        self.scan_run_id = scan_run_id
