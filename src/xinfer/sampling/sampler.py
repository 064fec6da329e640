"""Sampling parameters, the per-sequence sampler, and the shared RNG."""

from __future__ import annotations

import threading
from collections import Counter
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass

import torch
import torch.nn.functional as F
from torch import Tensor

from xinfer.loader.tokenizer import Tokenizer


@dataclass
class SamplingParams:
    """Parameters controlling token sampling during generation.

    Attributes:
        temperature: Scales logits before softmax.  ``0.0`` is greedy (argmax).
        top_p: Nucleus sampling threshold.  ``1.0`` disables.
        top_k: Keep only top-k tokens.  ``None`` disables.
        repetition_penalty: CTRL-paper penalty for repeated tokens.  ``1.0`` disables.
        frequency_penalty: Subtracted once per occurrence in the context window.
        presence_penalty: Subtracted once for any token present in the context window.
        top_n_logprobs: Number of alternatives reported with each logprob.
        max_new_tokens: Maximum tokens to generate (excluding prompt).
        stop: Text strings that trigger early stopping.
        seed: Random seed for reproducible sampling.  ``None`` = non-deterministic.
    """

    temperature: float = 1.0
    top_p: float = 1.0
    top_k: int | None = None
    repetition_penalty: float = 1.0
    frequency_penalty: float = 0.0
    presence_penalty: float = 0.0
    top_n_logprobs: int = 0
    max_new_tokens: int = 128
    stop: list[str] | None = None
    seed: int | None = None

    def __post_init__(self) -> None:
        self.validate()

    def validate(self) -> None:
        """Validate parameter ranges, raising ``ValueError`` on invalid values."""
        if self.temperature < 0.0:
            raise ValueError(f"temperature must be >= 0.0, got {self.temperature}")
        if not (0.0 < self.top_p <= 1.0):
            raise ValueError(f"top_p must be in (0.0, 1.0], got {self.top_p}")
        if self.top_k is not None and self.top_k < 1:
            raise ValueError(f"top_k must be >= 1, got {self.top_k}")
        if self.repetition_penalty <= 0.0:
            raise ValueError(f"repetition_penalty must be > 0.0, got {self.repetition_penalty}")
        if not (-2.0 <= self.frequency_penalty <= 2.0):
            raise ValueError(
                f"frequency_penalty must be in [-2.0, 2.0], got {self.frequency_penalty}"
            )
        if not (-2.0 <= self.presence_penalty <= 2.0):
            raise ValueError(
                f"presence_penalty must be in [-2.0, 2.0], got {self.presence_penalty}"
            )
        if self.top_n_logprobs < 0:
            raise ValueError(f"top_n_logprobs must be >= 0, got {self.top_n_logprobs}")
        if self.max_new_tokens < 1:
            raise ValueError(f"max_new_tokens must be >= 1, got {self.max_new_tokens}")


# ---------------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------------


@dataclass
class TopLogprob:
    """One alternative token with its log-probability."""

    token: int
    logprob: float
    text: str | None = None


@dataclass
class Logprobs:
    """A sampled token with its log-probability and optional alternatives.

    Attributes:
        token: The sampled token ID.
        logprob: Log-probability of ``token`` under the sampling distribution.
        text: Decoded text of ``token`` when a tokenizer is available.
        top_logprobs: The most likely alternatives, when requested.
    """

    token: int
    logprob: float
    text: str | None = None
    top_logprobs: list[TopLogprob] | None = None


# ---------------------------------------------------------------------------
# Shared RNG
# ---------------------------------------------------------------------------


class SharedRng:
    """A CPU ``torch.Generator`` shared by every sampler of a process.

    Sampling calls may run on worker threads; each acquires the lock for the
    duration of its draw, so draws are serialized but never interleaved.
    """

    def __init__(self, seed: int | None = None) -> None:
        self._generator = torch.Generator(device="cpu")
        if seed is None:
            self._generator.seed()
        else:
            self._generator.manual_seed(seed)
        self._lock = threading.Lock()

    @contextmanager
    def lock(self) -> Iterator[torch.Generator]:
        with self._lock:
            yield self._generator


# ---------------------------------------------------------------------------
# Sampling transforms (applied in fixed order)
# ---------------------------------------------------------------------------


def apply_repetition_penalty(
    logits: Tensor,
    token_ids: list[int],
    penalty: float,
) -> Tensor:
    """Penalize tokens that appear in the context.

    For each unique token in *token_ids*:
    - Positive logits are divided by *penalty*.
    - Negative logits are multiplied by *penalty*.

    Args:
        logits: Raw logits, shape ``[vocab_size]``.
        token_ids: Context token IDs.
        penalty: Penalty factor.  ``1.0`` is a no-op.

    Returns:
        Penalized logits (same shape and dtype).
    """
    if penalty == 1.0 or len(token_ids) == 0:
        return logits

    unique_ids = torch.tensor(list(set(token_ids)), dtype=torch.long, device=logits.device)
    penalized = logits.clone()
    scores = penalized[unique_ids]
    penalized[unique_ids] = torch.where(scores > 0, scores / penalty, scores * penalty)
    return penalized


def apply_frequency_presence_penalty(
    logits: Tensor,
    token_ids: list[int],
    frequency_penalty: float,
    presence_penalty: float,
) -> Tensor:
    """OpenAI-style additive penalties.

    Each context token's logit is lowered by ``count * frequency_penalty +
    presence_penalty``.
    """
    if (frequency_penalty == 0.0 and presence_penalty == 0.0) or len(token_ids) == 0:
        return logits

    counts = Counter(token_ids)
    ids = torch.tensor(list(counts.keys()), dtype=torch.long, device=logits.device)
    occurrences = torch.tensor(list(counts.values()), dtype=logits.dtype, device=logits.device)
    penalized = logits.clone()
    penalized[ids] -= occurrences * frequency_penalty + presence_penalty
    return penalized


def apply_temperature(logits: Tensor, temperature: float) -> Tensor:
    """Scale logits by temperature.

    Returns logits unchanged when ``temperature == 1.0``.  Greedy mode
    (``temperature == 0.0``) is handled at the sampling step.
    """
    if temperature == 1.0:
        return logits
    return logits / temperature


def apply_top_k(logits: Tensor, k: int) -> Tensor:
    """Keep only the top-k logits, setting the rest to ``-inf``."""
    if k >= logits.shape[-1]:
        return logits
    top_values, top_indices = torch.topk(logits, k)
    result = torch.full_like(logits, float("-inf"))
    result.scatter_(0, top_indices, top_values)
    return result


def apply_top_p(logits: Tensor, p: float) -> Tensor:
    """Nucleus sampling: keep the smallest set of tokens with cumulative probability >= *p*."""
    if p == 1.0:
        return logits

    sorted_logits, sorted_indices = torch.sort(logits, descending=True)
    sorted_probs = F.softmax(sorted_logits, dim=-1)
    cumulative_probs = torch.cumsum(sorted_probs, dim=-1)

    # Keep at least the top token: each token's own probability is excluded
    # so the first token whose cumulative probability crosses p is kept.
    sorted_mask = (cumulative_probs - sorted_probs) >= p
    sorted_logits = sorted_logits.masked_fill(sorted_mask, float("-inf"))

    result = torch.full_like(logits, float("-inf"))
    result.scatter_(0, sorted_indices, sorted_logits)
    return result


# ---------------------------------------------------------------------------
# Sampler
# ---------------------------------------------------------------------------


class Sampler:
    """Turns one position's logits into a token for one sequence.

    Transform order: repetition penalty -> frequency/presence penalty ->
    temperature -> top-k -> top-p -> sample.

    Args:
        params: Sampling parameters.
        tokenizer: Optional tokenizer used to attach token text to results.
    """

    def __init__(self, params: SamplingParams, tokenizer: Tokenizer | None = None) -> None:
        self.params = params
        self._tokenizer = tokenizer

    def _distribution(self, logits: Tensor, context: list[int]) -> Tensor:
        params = self.params
        logits = apply_repetition_penalty(logits, context, params.repetition_penalty)
        logits = apply_frequency_presence_penalty(
            logits, context, params.frequency_penalty, params.presence_penalty
        )
        if params.temperature == 0.0:
            return logits
        logits = apply_temperature(logits, params.temperature)
        if params.top_k is not None:
            logits = apply_top_k(logits, params.top_k)
        if params.top_p < 1.0:
            logits = apply_top_p(logits, params.top_p)
        return logits

    def _text(self, token_id: int) -> str | None:
        if self._tokenizer is None:
            return None
        return self._tokenizer.decode([token_id], skip_special_tokens=False)

    def sample(
        self,
        logits: Tensor,
        context: list[int],
        return_logprobs: bool,
        rng: SharedRng,
    ) -> Logprobs:
        """Sample a token from a single position's logits.

        Args:
            logits: float32 logits, shape ``[vocab_size]``.
            context: Recent token IDs the penalties apply to.
            return_logprobs: Also report the ``top_n_logprobs`` alternatives.
            rng: Shared generator; locked only for the random draw.

        Returns:
            The sampled token with its log-probability.
        """
        logits = self._distribution(logits, context)
        log_probs = F.log_softmax(logits, dim=-1)

        if self.params.temperature == 0.0:
            token = int(torch.argmax(logits).item())
        else:
            probs = log_probs.exp()
            with rng.lock() as generator:
                token = int(
                    torch.multinomial(probs.unsqueeze(0), num_samples=1, generator=generator).item()
                )

        top: list[TopLogprob] | None = None
        if return_logprobs:
            n = min(self.params.top_n_logprobs, log_probs.shape[-1])
            values, indices = torch.topk(log_probs, n)
            top = [
                TopLogprob(token=int(i), logprob=float(v), text=self._text(int(i)))
                for v, i in zip(values.tolist(), indices.tolist())
            ]
        return Logprobs(
            token=token,
            logprob=float(log_probs[token].item()),
            text=self._text(token),
            top_logprobs=top,
        )
