"""Provider interfaces for slapdctl."""
from __future__ import annotations

from .slapd import (
    AdminOutcome,
    AdminResult,
    SlapdToolError,
    SlapdTools,
    classify_admin_result,
    parse_dns,
)

__all__ = [
    "AdminOutcome",
    "AdminResult",
    "SlapdToolError",
    "SlapdTools",
    "classify_admin_result",
    "parse_dns",
]
