"""Growable per-layer KV cache for a batch of right-padded sequences."""

from __future__ import annotations

import torch
from torch import Tensor


class KVCache:
    """Per-layer key/value store shared by every sequence of a batch.

    The cache grows by concatenation along the position axis.  Because
    prompts are right-padded, a cache column does not correspond to the
    same token position in every row, so the cache also keeps a boolean
    ``valid`` mask (``[batch, num_columns]``) marking real entries, and the
    per-row ``token_counts`` each sequence has cached so far.

    The cache stores K/V *after* RoPE, so cached entries are position-encoded
    and ready for attention.

    Args:
        num_layers: Number of decoder layers; one slot per layer.
    """

    def __init__(self, num_layers: int) -> None:
        self._keys: list[Tensor | None] = [None] * num_layers
        self._values: list[Tensor | None] = [None] * num_layers
        self.valid: Tensor | None = None
        self.token_counts: list[int] = []

    def __len__(self) -> int:
        return len(self._keys)

    @property
    def num_columns(self) -> int:
        """Number of cached columns (including padding columns)."""
        return 0 if self.valid is None else self.valid.shape[1]

    @property
    def batch_size(self) -> int:
        return 0 if self.valid is None else self.valid.shape[0]

    def reset(self) -> None:
        """Drop every cached entry."""
        self._keys = [None] * len(self._keys)
        self._values = [None] * len(self._values)
        self.valid = None
        self.token_counts = []

    def extend_mask(self, input_mask: Tensor) -> Tensor:
        """Append validity columns for the tokens about to be written.

        Called once per forward pass, before any layer writes.

        Args:
            input_mask: ``[batch, new_len]`` bool, ``True`` for real tokens.

        Returns:
            The full ``[batch, num_columns]`` validity mask.

        Raises:
            ValueError: If the batch size differs from the cached one.
        """
        if self.valid is None:
            self.valid = input_mask.clone()
        else:
            if input_mask.shape[0] != self.valid.shape[0]:
                raise ValueError(
                    f"batch size {input_mask.shape[0]} does not match cached batch size "
                    f"{self.valid.shape[0]}"
                )
            self.valid = torch.cat([self.valid, input_mask], dim=1)
        return self.valid

    def update(self, layer_idx: int, k: Tensor, v: Tensor) -> tuple[Tensor, Tensor]:
        """Store new K/V entries and return the full K/V for this layer.

        Args:
            layer_idx: Which layer's cache to update.
            k: New key tensor ``[batch, num_kv_heads, new_len, head_dim]``.
            v: New value tensor ``[batch, num_kv_heads, new_len, head_dim]``.

        Returns:
            ``(cached_k, cached_v)``, each ``[batch, num_kv_heads, num_columns, head_dim]``.
        """
        cached_k = self._keys[layer_idx]
        cached_v = self._values[layer_idx]
        if cached_k is not None and cached_v is not None:
            k = torch.cat([cached_k, k], dim=2)
            v = torch.cat([cached_v, v], dim=2)
        self._keys[layer_idx] = k
        self._values[layer_idx] = v
        return k, v

    def commit(self, token_counts: list[int]) -> None:
        """Record each row's cached token count after a completed forward pass."""
        self.token_counts = list(token_counts)
