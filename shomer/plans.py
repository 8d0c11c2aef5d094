"""
shomer/plans.py
Plan tiers as the engine sees them: whether media is scanned, how often
the scheduler runs, and whether the live feed is dropped after a scan.
Unknown plan names are treated as free.
"""

from dataclasses import dataclass
from typing import Dict, Optional

DAY_SECONDS = 24 * 60 * 60


@dataclass(frozen=True)
class Plan:
    name:                  str
    media_scanning:        bool
    scan_interval_sec:     Optional[int]    # None = manual only
    disconnect_after_scan: bool


PLANS: Dict[str, Plan] = {
    'free':     Plan('free',     media_scanning=False, scan_interval_sec=None,            disconnect_after_scan=True),
    'basic':    Plan('basic',    media_scanning=True,  scan_interval_sec=7 * DAY_SECONDS, disconnect_after_scan=False),
    'advanced': Plan('advanced', media_scanning=True,  scan_interval_sec=DAY_SECONDS,     disconnect_after_scan=False),
}


def get_plan(name: str) -> Plan:
    return PLANS.get((name or '').lower(), PLANS['free'])


def plan_includes_media(name: str) -> bool:
    return get_plan(name).media_scanning


def scan_interval_seconds(name: str) -> Optional[int]:
    return get_plan(name).scan_interval_sec


def is_free(name: str) -> bool:
    return get_plan(name).disconnect_after_scan
