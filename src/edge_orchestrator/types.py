"""Common type definitions for Edge Orchestrator.

This module provides TypedDict definitions for the persisted snapshot and the
native backend event shapes, to avoid passing bare Dict[str, Any] around.
"""

from typing import Any, Callable, Dict, List, TypedDict


# Native backend event: one decoded JSON line / SSE payload / SDK message dict
NativeEvent = Dict[str, Any]


class RegistrySnapshot(TypedDict):
    """Serialized registry state."""
    version: str
    sessions: Dict[str, Dict[str, Any]]
    entries: Dict[str, List[Dict[str, Any]]]
    child_to_parent_map: Dict[str, str]


class PersistedState(TypedDict, total=False):
    """Document written by SnapshotStore."""
    registry: RegistrySnapshot
    routing_cache: Dict[str, str]
    saved_at: int


# Registry listener: receives RegistryEvent instances
RegistryListener = Callable[[Any], None]
Unsubscribe = Callable[[], None]
