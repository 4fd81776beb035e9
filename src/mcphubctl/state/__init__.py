"""Persistent registry of server definitions and client instances."""
from __future__ import annotations

from .registry import INSTANCES_FILE, SERVERS_FILE, StateRegistry, StateRegistryError

__all__ = ["INSTANCES_FILE", "SERVERS_FILE", "StateRegistry", "StateRegistryError"]
