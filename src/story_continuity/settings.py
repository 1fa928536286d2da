"""Environment-driven settings for thresholds, storage paths, and I/O limits."""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path

_ENV_PREFIX = "STORY_CONTINUITY_"


def _env(name: str) -> str:
    return os.environ.get(f"{_ENV_PREFIX}{name}", "").strip()


def _int_env(name: str, default: int, *, minimum: int, maximum: int) -> int:
    raw = _env(name)
    if not raw:
        return default
    try:
        value = int(raw)
    except ValueError:
        return default
    return max(minimum, min(maximum, value))


def _float_env(name: str, default: float, *, minimum: float, maximum: float) -> float:
    raw = _env(name)
    if not raw:
        return default
    try:
        value = float(raw)
    except ValueError:
        return default
    return max(minimum, min(maximum, value))


@dataclass(frozen=True)
class Settings:
    """Runtime configuration shared by the store, extractor, and validator."""

    data_path: Path = Path("work/story_states/story_continuity.db")
    state_backend: str = "sqlite"
    io_timeout_seconds: float = 10.0
    name_min_mentions: int = 3
    foreshadowing_limit: int = 10
    foreshadowing_stale_span: int = 20
    pass_threshold: float = 0.7

    @classmethod
    def from_env(cls) -> Settings:
        """Read ``STORY_CONTINUITY_*`` variables, clamping out-of-range values."""
        defaults = cls()
        data_path = _env("DATA_PATH")
        return cls(
            data_path=Path(data_path) if data_path else defaults.data_path,
            state_backend=_env("STATE_BACKEND").lower() or defaults.state_backend,
            io_timeout_seconds=_float_env(
                "IO_TIMEOUT_SECONDS", defaults.io_timeout_seconds, minimum=0.1, maximum=300.0
            ),
            name_min_mentions=_int_env(
                "NAME_MIN_MENTIONS", defaults.name_min_mentions, minimum=1, maximum=50
            ),
            foreshadowing_limit=_int_env(
                "FORESHADOWING_LIMIT", defaults.foreshadowing_limit, minimum=1, maximum=1000
            ),
            foreshadowing_stale_span=_int_env(
                "FORESHADOWING_STALE_SPAN",
                defaults.foreshadowing_stale_span,
                minimum=1,
                maximum=10_000,
            ),
            pass_threshold=_float_env(
                "PASS_THRESHOLD", defaults.pass_threshold, minimum=0.0, maximum=1.0
            ),
        )
