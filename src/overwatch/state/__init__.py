"""Persistent state helpers for Overwatch."""
from __future__ import annotations

from .store import StateStore, StateStoreError

__all__ = ["StateStore", "StateStoreError"]
