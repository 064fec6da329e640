"""Per-step decode: sample, check against the grammar, resample if needed.

``sample_sequence`` is one decode step for one sequence:

1. Sample a tentative token from the unbiased logits.
2. If the sequence has a recognizer and the grammar rejects the token,
   add a bias of ``-inf`` everywhere except the grammar's allowed set and
   sample again from the biased logits, with the same context window.
3. Advance the recognizer past the final token.

Sampling may be moved off the event loop onto a bounded worker pool; the
result is the same either way.
"""

from __future__ import annotations

import asyncio
import functools
import logging
import os
import threading
from concurrent.futures import ThreadPoolExecutor
from typing import TYPE_CHECKING

import torch
from torch import Tensor

from xinfer.errors import ComputationError, GrammarRejectionError
from xinfer.grammar.toktrie import VocabularyTrie
from xinfer.sampling.sampler import Logprobs, Sampler, SharedRng

if TYPE_CHECKING:
    from xinfer.pipeline.sequence import Sequence

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Worker pool
# ---------------------------------------------------------------------------

_POOL_SIZE = min(32, (os.cpu_count() or 1) + 4)
_pool: ThreadPoolExecutor | None = None
_pool_lock = threading.Lock()


def _sampling_pool() -> ThreadPoolExecutor:
    global _pool
    with _pool_lock:
        if _pool is None:
            _pool = ThreadPoolExecutor(max_workers=_POOL_SIZE, thread_name_prefix="sampler")
        return _pool


def shutdown_sampling_pool() -> None:
    """Stop the worker pool; it is recreated on next use."""
    global _pool
    with _pool_lock:
        if _pool is not None:
            _pool.shutdown(wait=True)
            _pool = None


async def sample_async(
    use_async_pool: bool,
    sampler: Sampler,
    logits: Tensor,
    context: list[int],
    return_logprobs: bool,
    rng: SharedRng,
) -> Logprobs:
    """Run ``sampler.sample`` on the worker pool or inline."""
    if not use_async_pool:
        return sampler.sample(logits, context, return_logprobs, rng)
    loop = asyncio.get_running_loop()
    return await loop.run_in_executor(
        _sampling_pool(),
        functools.partial(sampler.sample, logits, context, return_logprobs, rng),
    )


# ---------------------------------------------------------------------------
# Decode steps
# ---------------------------------------------------------------------------


async def sample_sequence(
    logits: Tensor,
    seq: Sequence,
    return_logprobs: bool,
    repeat_last_n: int,
    tok_trie: VocabularyTrie,
    rng: SharedRng,
    use_async_pool: bool,
) -> Logprobs:
    """Sample the next token of ``seq`` from a single position's logits.

    Args:
        logits: Logits for exactly one position (e.g. ``[1, 1, vocab]``).
        seq: The sequence; its recognizer, if any, is advanced.
        return_logprobs: Report the sampler's top alternatives.
        repeat_last_n: How many trailing tokens the penalties look at.
        tok_trie: Vocabulary trie of the model's tokenizer.
        rng: Shared random generator.
        use_async_pool: Run sampling on the worker pool.

    Returns:
        The chosen token.

    Raises:
        ComputationError: If ``logits`` covers more than one position.
        GrammarRejectionError: If the grammar allows no token within the logits.
    """
    vocab = logits.shape[-1]
    if logits.numel() != vocab:
        raise ComputationError(
            "decode", f"expected logits for one position, got shape {tuple(logits.shape)}"
        )
    logits = logits.reshape(vocab).float().cpu()

    tokens = seq.get_toks()
    context = tokens[max(len(tokens) - repeat_last_n, 0) :]

    first = await sample_async(
        use_async_pool, seq.sampler, logits, context, return_logprobs, rng
    )
    recognizer = seq.recognizer
    if recognizer is None:
        return first

    allowed = tok_trie.bias_if_not_allowed(recognizer, first.token)
    if allowed is None:
        chosen = first
    else:
        logger.debug(
            "Token %d rejected by grammar, resampling over %d allowed tokens",
            first.token,
            len(allowed),
        )
        bias = allowed.to_bias(vocab)
        if not torch.isfinite(bias).any():
            raise GrammarRejectionError(
                f"none of the {len(allowed)} allowed tokens is within the {vocab} logits"
            )
        chosen = await sample_async(
            use_async_pool, seq.sampler, logits + bias, context, return_logprobs, rng
        )

    tok_trie.append_token(recognizer, chosen.token)
    return chosen


async def sample_target_sequence_speculative(
    logits: Tensor,
    seq: Sequence,
    return_logprobs: bool,
    repeat_last_n: int,
    tok_trie: VocabularyTrie,
    rng: SharedRng,
    n_toks: int,
) -> list[Logprobs]:
    """Sample ``n_toks`` consecutive positions of a verification pass.

    Positions are sampled in order, each with :func:`sample_sequence` on the
    worker pool, so the recognizer advances once per position.

    Args:
        logits: ``[1, n_toks, vocab]`` logits.
        n_toks: Number of positions; must match the position axis.

    Returns:
        One result per position, in order.

    Raises:
        ComputationError: If ``n_toks`` does not match the logits.
    """
    if n_toks < 1 or logits.dim() != 3 or logits.shape[1] != n_toks:
        raise ComputationError(
            "decode",
            f"expected logits with {n_toks} positions, got shape {tuple(logits.shape)}",
        )
    sampled: list[Logprobs] = []
    for chunk in logits.chunk(n_toks, dim=1):
        sampled.append(
            await sample_sequence(
                chunk, seq, return_logprobs, repeat_last_n, tok_trie, rng, use_async_pool=True
            )
        )
    return sampled
