"""State helpers for ghostctl."""
from __future__ import annotations

from .instance import InstanceState, InstanceStateError, InstanceStore

__all__ = ["InstanceState", "InstanceStateError", "InstanceStore"]
