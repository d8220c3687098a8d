"""State helpers: the host registry and per-instance runtime records."""
from __future__ import annotations

from .registry import StateRegistry, StateRegistryError
from .store import InstanceState, StateStore

__all__ = ["InstanceState", "StateRegistry", "StateRegistryError", "StateStore"]
