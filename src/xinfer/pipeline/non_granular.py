"""Shared step counter that switches X-LoRA scalings from per-token to frozen."""

from __future__ import annotations

import threading


class NonGranularState:
    """Counts X-LoRA forward calls of a generation.

    While the counter is below the target, scalings are recomputed on every
    call.  The call made when the counter equals the target freezes its
    scalings; every later call for the same batch reuses them, and a new
    batch freezes its own.  The counter itself never depends on the batch.

    Args:
        tgt_non_granular_index: The step at which scalings freeze.
    """

    def __init__(self, tgt_non_granular_index: int) -> None:
        if tgt_non_granular_index < 0:
            raise ValueError(
                f"tgt_non_granular_index must be >= 0, got {tgt_non_granular_index}"
            )
        self.tgt_non_granular_index = tgt_non_granular_index
        self._index = 0
        self._lock = threading.Lock()

    @property
    def non_granular_index(self) -> int:
        with self._lock:
            return self._index

    def reached_target(self) -> bool:
        with self._lock:
            return self._index >= self.tgt_non_granular_index

    def advance(self) -> int:
        """Count one forward call; returns the new index."""
        with self._lock:
            self._index += 1
            return self._index

    def reset(self) -> None:
        with self._lock:
            self._index = 0
