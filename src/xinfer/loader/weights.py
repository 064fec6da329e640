"""Safetensors weight loader: load checkpoint shards into a flat tensor dict."""

from __future__ import annotations

from collections.abc import Iterable, Sequence
from pathlib import Path

import torch
from safetensors.torch import load_file


def _apply_dtype(tensors: dict[str, torch.Tensor], dtype: torch.dtype) -> None:
    """Convert floating-point tensors to the given dtype in place."""
    for name, tensor in tensors.items():
        if tensor.is_floating_point():
            tensors[name] = tensor.to(dtype)


def load_safetensors(
    paths: Sequence[str | Path],
    *,
    device: str | torch.device = "cpu",
    dtype: torch.dtype | None = None,
) -> dict[str, torch.Tensor]:
    """Load and merge one or more safetensors files.

    Args:
        paths: Shard files; their tensor names must not overlap.
        device: Device to load tensors onto (passed to ``safetensors.torch.load_file``).
        dtype: If provided, floating-point tensors are converted to this dtype.

    Returns:
        A flat ``dict[str, torch.Tensor]`` keyed by checkpoint tensor name.

    Raises:
        FileNotFoundError: If a shard does not exist.
        ValueError: If no paths are given or two shards define the same tensor.
    """
    if not paths:
        raise ValueError("no safetensors files to load")

    tensors: dict[str, torch.Tensor] = {}
    for path in paths:
        if not Path(path).exists():
            raise FileNotFoundError(f"safetensors file not found: {path}")
        shard = load_file(str(path), device=str(device))
        duplicates = tensors.keys() & shard.keys()
        if duplicates:
            raise ValueError(
                f"{len(duplicates)} tensor(s) defined in more than one shard: "
                f"{sorted(duplicates)[:5]}{'...' if len(duplicates) > 5 else ''}"
            )
        tensors.update(shard)

    if dtype is not None:
        _apply_dtype(tensors, dtype)
    return tensors


def strip_prefixes(
    tensors: dict[str, torch.Tensor], prefixes: Iterable[str]
) -> dict[str, torch.Tensor]:
    """Return a copy of ``tensors`` with the first matching prefix removed from each name.

    Prefixes are tried in the given order, so list longer ones first.
    """
    prefixes = tuple(prefixes)
    stripped: dict[str, torch.Tensor] = {}
    for name, tensor in tensors.items():
        for prefix in prefixes:
            if name.startswith(prefix):
                name = name[len(prefix) :]
                break
        stripped[name] = tensor
    return stripped
