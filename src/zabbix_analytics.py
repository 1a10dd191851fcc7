"""
Analysis capabilities offered by the Zabbix MCP tools.

None of them has an implementation yet. Each one answers with a
NotImplementedCapability naming itself so that callers can show the gap
instead of a made-up figure.
"""

from dataclasses import asdict, dataclass
from typing import Any, Dict, List, Optional

NOT_IMPLEMENTED = "not_implemented"


@dataclass(frozen=True)
class NotImplementedCapability:
    capability: str
    detail: str
    status: str = NOT_IMPLEMENTED

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def calculate_maintenance_window(
    usage_patterns: Any, preferred_time: Optional[str] = None
) -> NotImplementedCapability:
    """Pick a maintenance window from a week of trend data."""
    return NotImplementedCapability(
        capability="calculate_maintenance_window",
        detail="No maintenance window selection is available; "
        f"received {_count(usage_patterns)} trend records"
        + (f" and preferred time {preferred_time}" if preferred_time else ""),
    )


def analyze_resource_usage(metrics: Any) -> NotImplementedCapability:
    return NotImplementedCapability(
        capability="analyze_resource_usage",
        detail=f"No resource usage analysis is available; received {_count(metrics)} trend records",
    )


def perform_security_audit(
    scope: str, checks: Optional[List[str]] = None
) -> NotImplementedCapability:
    return NotImplementedCapability(
        capability="perform_security_audit",
        detail=f"No security audit engine is available for scope {scope!r}"
        + (f" with checks {', '.join(checks)}" if checks else ""),
    )


def get_deployment_metrics(
    application: str, version: str, metrics: List[str]
) -> NotImplementedCapability:
    return NotImplementedCapability(
        capability="get_deployment_metrics",
        detail=f"No deployment health collection is available for {application} {version}"
        + (f" (metrics: {', '.join(metrics)})" if metrics else ""),
    )


def _count(records: Any) -> int:
    return len(records) if isinstance(records, (list, tuple)) else 0
