"""First-run bootstrap workflow for slapd instances."""
from __future__ import annotations

from .orchestrator import (
    DEFAULT_DATABASE_DN,
    OPTIONAL_MODULES,
    BootstrapError,
    BootstrapOrchestrator,
    BootstrapReport,
    RuntimeConfigSource,
    StepResult,
    entry_dn,
    split_ldif_entries,
)

__all__ = [
    "BootstrapError",
    "BootstrapOrchestrator",
    "BootstrapReport",
    "DEFAULT_DATABASE_DN",
    "OPTIONAL_MODULES",
    "RuntimeConfigSource",
    "StepResult",
    "entry_dn",
    "split_ldif_entries",
]
