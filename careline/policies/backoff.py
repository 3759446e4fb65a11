from __future__ import annotations

from typing import Any, Dict, Optional

from .base import BackoffPolicy


class FixedBackoff(BackoffPolicy):
    """Same delay before every retry."""

    name = "fixed"

    def delay_for(self, retry: int) -> int:
        return self.delay_ms


class ExponentialBackoff(BackoffPolicy):
    """Delay doubling with every retry: ``delay_ms * 2 ** (retry - 1)``."""

    name = "exponential"

    def __init__(self, delay_ms: int = 0, max_delay_ms: Optional[int] = None) -> None:
        super().__init__(delay_ms)
        self.max_delay_ms = max_delay_ms

    def delay_for(self, retry: int) -> int:
        delay = self.delay_ms * 2 ** max(0, retry - 1)
        if self.max_delay_ms is not None:
            delay = min(delay, self.max_delay_ms)
        return delay

    def to_config(self) -> Dict[str, Any]:
        cfg = super().to_config()
        if self.max_delay_ms is not None:
            cfg["max_delay_ms"] = self.max_delay_ms
        return cfg
