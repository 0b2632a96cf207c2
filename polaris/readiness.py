"""Readiness state reported by the readiness probe."""

from __future__ import annotations

import threading
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from typing import Any

from polaris.resolver import ResolverBuildInfo

_UNINITIALIZED = "uninitialized"


@dataclass(frozen=True)
class ReadinessSnapshot:
    """A consistent view of readiness at one moment."""

    ready: bool
    recursor_initialized: bool
    root_hints_loaded: bool
    trust_anchor_loaded: bool
    self_check_ok: bool
    generation: int
    root_hints_source: str
    trust_anchor_source: str
    root_hints_count: int
    trust_anchor_count: int

    def to_dict(self) -> dict[str, Any]:
        """Returns the snapshot as a JSON-ready mapping."""
        return asdict(self)


class ReadinessState:
    """Thread-safe readiness flags and details; starts out not ready."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._recursor_initialized = False
        self._root_hints_loaded = False
        self._trust_anchor_loaded = False
        self._self_check_ok = False
        self._generation = 0
        self._root_hints_source = _UNINITIALIZED
        self._trust_anchor_source = _UNINITIALIZED
        self._root_hints_count = 0
        self._trust_anchor_count = 0
        self._loaded_at: datetime | None = None
        self._last_self_check: datetime | None = None

    @property
    def loaded_at(self) -> datetime | None:
        """When the active resolver generation was built, if any."""
        with self._lock:
            return self._loaded_at

    @property
    def last_self_check(self) -> datetime | None:
        """When the self-check result was last recorded, if ever."""
        with self._lock:
            return self._last_self_check

    def set_from_build_info(self, info: ResolverBuildInfo) -> None:
        """Records a resolver generation build."""
        with self._lock:
            self._recursor_initialized = True
            self._root_hints_loaded = info.root_hints_count > 0
            self._trust_anchor_loaded = info.trust_anchor_count > 0
            self._generation = info.generation
            self._root_hints_source = info.root_hints_source
            self._trust_anchor_source = info.trust_anchor_source
            self._root_hints_count = info.root_hints_count
            self._trust_anchor_count = info.trust_anchor_count
            self._loaded_at = info.loaded_at

    def set_self_check(self, ok: bool) -> None:
        """Stores the startup self-check result."""
        with self._lock:
            self._self_check_ok = ok
            self._last_self_check = datetime.now(timezone.utc)

    def snapshot(self) -> ReadinessSnapshot:
        """Returns the current readiness; ready only when every check passed."""
        with self._lock:
            return ReadinessSnapshot(
                ready=(
                    self._recursor_initialized
                    and self._root_hints_loaded
                    and self._trust_anchor_loaded
                    and self._self_check_ok
                ),
                recursor_initialized=self._recursor_initialized,
                root_hints_loaded=self._root_hints_loaded,
                trust_anchor_loaded=self._trust_anchor_loaded,
                self_check_ok=self._self_check_ok,
                generation=self._generation,
                root_hints_source=self._root_hints_source,
                trust_anchor_source=self._trust_anchor_source,
                root_hints_count=self._root_hints_count,
                trust_anchor_count=self._trust_anchor_count,
            )