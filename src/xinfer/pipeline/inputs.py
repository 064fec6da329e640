"""Model inputs for one forward call over a batch of sequences."""

from __future__ import annotations

from collections.abc import Sequence as SequenceABC
from dataclasses import dataclass

import torch
from torch import Tensor

from xinfer.errors import InvariantViolation
from xinfer.pipeline.sequence import Sequence


@dataclass
class ModelInputs:
    """Padded token batch plus the per-row bookkeeping the models need.

    Attributes:
        input_ids: ``[batch, seq_len]`` right-padded token IDs.
        input_mask: ``[batch, seq_len]`` bool, ``True`` for real tokens.
        seqlen_offsets: Per-row position of the first token of ``input_ids``.
        context_lens: Per-row ``(start, length)`` of the positions whose
            logits are returned.
        input_ids_full: Full-context token IDs (X-LoRA only).
        input_mask_full: Mask for ``input_ids_full``.
        seqlen_offsets_full: Offsets for ``input_ids_full`` (always 0).
    """

    input_ids: Tensor
    input_mask: Tensor
    seqlen_offsets: list[int]
    context_lens: list[tuple[int, int]]
    input_ids_full: Tensor | None = None
    input_mask_full: Tensor | None = None
    seqlen_offsets_full: list[int] | None = None


def _pad(rows: list[list[int]], device: torch.device) -> tuple[Tensor, Tensor]:
    width = max(len(row) for row in rows)
    ids = torch.zeros((len(rows), width), dtype=torch.long)
    mask = torch.zeros((len(rows), width), dtype=torch.bool)
    for i, row in enumerate(rows):
        ids[i, : len(row)] = torch.tensor(row, dtype=torch.long)
        mask[i, : len(row)] = True
    return ids.to(device), mask.to(device)


def _full_context(
    sequences: SequenceABC[Sequence], device: torch.device, n_positions: int = 1
) -> ModelInputs:
    """Every token of every sequence, the last ``n_positions`` real positions gathered."""
    ids, mask = _pad([seq.get_toks() for seq in sequences], device)
    return ModelInputs(
        input_ids=ids,
        input_mask=mask,
        seqlen_offsets=[0] * len(sequences),
        context_lens=[(len(seq) - n_positions, n_positions) for seq in sequences],
    )


def _trailing_tokens(
    sequences: SequenceABC[Sequence], device: torch.device, n_positions: int
) -> ModelInputs:
    """Each sequence's newest ``n_positions`` tokens, starting at ``len - n_positions``."""
    ids, mask = _pad([seq.get_toks()[-n_positions:] for seq in sequences], device)
    return ModelInputs(
        input_ids=ids,
        input_mask=mask,
        seqlen_offsets=[len(seq) - n_positions for seq in sequences],
        context_lens=[(0, n_positions)] * len(sequences),
    )


def calculate_inputs(
    sequences: SequenceABC[Sequence],
    is_prompt: bool,
    is_xlora: bool,
    device: torch.device,
    no_kv_cache: bool,
    n_positions: int = 1,
) -> ModelInputs:
    """Build the model inputs for one forward call.

    Args:
        sequences: The batch.
        is_prompt: Prompt mode (full context) rather than decode mode.
        is_xlora: Also build the full-context inputs the X-LoRA scaling pass needs.
        device: Device the tensors are placed on.
        no_kv_cache: Always feed the full context.
        n_positions: Number of trailing positions whose logits are returned.
            Above 1 this is a verification pass over draft tokens already
            appended to each sequence; in decode mode those tokens are fed
            together and the cache must hold everything before them.

    Raises:
        InvariantViolation: If the batch is empty or a sequence is shorter
            than ``n_positions``.
    """
    if not sequences:
        raise InvariantViolation("forward called with an empty batch")
    if n_positions < 1:
        raise InvariantViolation(f"n_positions must be >= 1, got {n_positions}")
    shortest = min(len(seq) for seq in sequences)
    if shortest < n_positions:
        raise InvariantViolation(
            f"cannot return {n_positions} positions for a sequence of {shortest} token(s)"
        )

    if is_prompt or no_kv_cache:
        inputs = _full_context(sequences, device, n_positions)
        if is_xlora:
            inputs.input_ids_full = inputs.input_ids
            inputs.input_mask_full = inputs.input_mask
            inputs.seqlen_offsets_full = list(inputs.seqlen_offsets)
        return inputs

    inputs = _trailing_tokens(sequences, device, n_positions)
    if is_xlora:
        full = _full_context(sequences, device)
        inputs.input_ids_full = full.input_ids
        inputs.input_mask_full = full.input_mask
        inputs.seqlen_offsets_full = full.seqlen_offsets
    return inputs
