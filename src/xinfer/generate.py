"""Single-sequence generation loop over a pipeline.

Drives a prompt forward call followed by decode forward calls, running the
constrained decode step after each one, until EOS, a stop string, the token
limit, or the model's maximum sequence length.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field

from xinfer.grammar.recognizer import Recognizer
from xinfer.loader.tokenizer import Tokenizer
from xinfer.pipeline.pipeline import Pipeline, PipelineHandle
from xinfer.pipeline.sequence import Sequence
from xinfer.sampling.decode import sample_sequence
from xinfer.sampling.sampler import Logprobs, Sampler, SamplingParams, SharedRng


@dataclass
class GenerationTiming:
    """Timing breakdown for a single generation."""

    prefill_time_s: float = 0.0
    """Time for the prompt forward call and its decode step."""

    decode_times_s: list[float] = field(default_factory=list)
    """Time for each later decode step."""

    @property
    def decode_time_s(self) -> float:
        return sum(self.decode_times_s)

    @property
    def total_time_s(self) -> float:
        return self.prefill_time_s + self.decode_time_s


@dataclass
class GenerationResult:
    """Result of a single generation request."""

    token_ids: list[int]
    """Generated token IDs (excluding the prompt)."""

    text: str
    """Decoded generated text (truncated at stop string if applicable)."""

    finish_reason: str
    """Why generation stopped: ``"eos"``, ``"stop"``, or ``"length"``."""

    prompt_tokens: int
    """Number of tokens in the input prompt."""

    logprobs: list[Logprobs]
    """Sampling result of every generated token."""

    timing: GenerationTiming
    """Per-step and aggregate timing measurements."""


def _find_stop(text: str, stop_strings: list[str]) -> int | None:
    """Index of the earliest stop string in ``text``, or ``None``."""
    hits = [idx for idx in (text.find(s) for s in stop_strings) if idx != -1]
    return min(hits) if hits else None


def _decoded(tokenizer: Tokenizer, token_ids: list[int]) -> str:
    return tokenizer.decode(token_ids, skip_special_tokens=True)


async def _decode_loop(
    pipeline: Pipeline,
    seq: Sequence,
    params: SamplingParams,
    rng: SharedRng,
    timing: GenerationTiming,
) -> str:
    eos_ids = set(pipeline.eos_tok())
    max_seq_len = pipeline.get_max_seq_len()

    for step in range(params.max_new_tokens):
        if len(seq) > max_seq_len:
            return "length"
        t0 = time.perf_counter()
        logits = pipeline.forward([seq], is_prompt=step == 0)
        logprobs = await sample_sequence(
            logits,
            seq,
            seq.return_logprobs,
            pipeline.get_repeat_last_n(),
            pipeline.tok_trie(),
            rng,
            use_async_pool=False,
        )
        elapsed = time.perf_counter() - t0
        if step == 0:
            timing.prefill_time_s = elapsed
        else:
            timing.decode_times_s.append(elapsed)

        seq.add_token(logprobs)
        # EOS takes priority over stop strings.
        if logprobs.token in eos_ids:
            return "eos"
        if params.stop:
            text = _decoded(pipeline.tokenizer(), seq.generated_tokens())
            if _find_stop(text, params.stop) is not None:
                return "stop"
    return "length"


def generate(
    handle: PipelineHandle,
    prompt_token_ids: list[int],
    params: SamplingParams,
    *,
    recognizer: Recognizer | None = None,
    rng: SharedRng | None = None,
    return_logprobs: bool = False,
) -> GenerationResult:
    """Generate tokens for one prompt.

    The pipeline is held for the whole generation.  Its non-granular state
    is reset before and after, so each generation starts from step 0.

    Args:
        handle: The pipeline to generate with.
        prompt_token_ids: Pre-tokenized prompt.
        params: Sampling parameters.
        recognizer: Grammar constraint for the output, or ``None``.
        rng: Random generator; a fresh one seeded from ``params.seed`` if omitted.
        return_logprobs: Record top alternatives for every token.

    Returns:
        A :class:`GenerationResult`.

    Raises:
        ValueError: If the prompt is empty or longer than the model allows.
    """
    if not prompt_token_ids:
        raise ValueError("prompt_token_ids must not be empty")
    if rng is None:
        rng = SharedRng(params.seed)

    timing = GenerationTiming()
    with handle.lock() as pipeline:
        if len(prompt_token_ids) > pipeline.get_max_seq_len():
            raise ValueError(
                f"prompt has {len(prompt_token_ids)} tokens, "
                f"the model allows {pipeline.get_max_seq_len()}"
            )
        tokenizer = pipeline.tokenizer()
        seq = Sequence(
            list(prompt_token_ids),
            Sampler(params, tokenizer),
            recognizer=recognizer,
            return_logprobs=return_logprobs,
        )
        pipeline.reset_non_granular_state()
        try:
            finish_reason = asyncio.run(_decode_loop(pipeline, seq, params, rng, timing))
        finally:
            pipeline.reset_non_granular_state()

    generated = seq.generated_tokens()
    text = _decoded(tokenizer, generated)
    if finish_reason == "stop" and params.stop:
        end = _find_stop(text, params.stop)
        if end is not None:
            text = text[:end]

    return GenerationResult(
        token_ids=generated,
        text=text,
        finish_reason=finish_reason,
        prompt_tokens=len(prompt_token_ids),
        logprobs=seq.logprobs,
        timing=timing,
    )
