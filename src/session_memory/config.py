"""Configuration defaults for session memory."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path

_DEFAULT_HOME = "~/.session-memory"


def _default_bases() -> dict[str, float]:
    return {"light": 0.1, "moderate": 0.3, "aggressive": 0.5}


@dataclass
class DecayConfig:
    """Tunables for keepit decay thresholds."""

    compression_base: dict[str, float] = field(default_factory=_default_bases)
    max_session_distance: int = 10
    pinned_weight: float = 1.0
    threshold_cap: float = 0.99


@dataclass
class LockConfig:
    """Timing for session and manifest locks (seconds)."""

    session_stale_after: float = 300.0
    manifest_stale_after: float = 30.0
    manifest_retries: int = 5
    manifest_min_delay: float = 0.1
    manifest_max_delay: float = 1.0
    manifest_backoff_factor: float = 2.0
    acquire_timeout: float = 30.0
    acquire_initial_delay: float = 0.1
    acquire_max_delay: float = 2.0


@dataclass
class CompositionConfig:
    """Budget and selection thresholds for composition."""

    component_overhead_tokens: int = 50
    min_total_budget: int = 1000
    selection_threshold: float = 0.5
    part_selection_threshold: float = 0.3


@dataclass
class MemoryConfig:
    """Top-level configuration bundle."""

    home: Path = field(default_factory=lambda: Path(_DEFAULT_HOME).expanduser())
    decay: DecayConfig = field(default_factory=DecayConfig)
    locks: LockConfig = field(default_factory=LockConfig)
    composition: CompositionConfig = field(default_factory=CompositionConfig)

    @property
    def projects_dir(self) -> Path:
        return self.home / "projects"

    @classmethod
    def from_env(cls) -> MemoryConfig:
        """Build a config from ``SESSION_MEMORY_*`` environment variables."""
        home = Path(os.environ.get("SESSION_MEMORY_HOME", _DEFAULT_HOME)).expanduser()
        decay = DecayConfig(
            max_session_distance=int(
                os.environ.get("SESSION_MEMORY_MAX_SESSION_DISTANCE", "10")
            ),
        )
        locks = LockConfig(
            session_stale_after=float(
                os.environ.get("SESSION_MEMORY_LOCK_STALE_SEC", "300")
            ),
            manifest_stale_after=float(
                os.environ.get("SESSION_MEMORY_MANIFEST_STALE_SEC", "30")
            ),
        )
        return cls(home=home, decay=decay, locks=locks)
