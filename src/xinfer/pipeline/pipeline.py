"""The per-model pipeline the scheduler drives.

A :class:`Pipeline` wraps exactly one model variant together with its
tokenizer, vocabulary trie, chat template, optional non-granular state, and
generation metadata.  ``forward`` is the only mutator; every other method is a
plain accessor.

Access from several consumers goes through :class:`PipelineHandle`, which
serializes a forward call and its decode steps behind one lock.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Iterator
from collections.abc import Sequence as SequenceABC
from contextlib import contextmanager
from dataclasses import dataclass
from typing import assert_never

import torch
from torch import Tensor

from xinfer.errors import ComputationError, InvariantViolation
from xinfer.grammar.toktrie import VocabularyTrie
from xinfer.loader.chat_template import ChatTemplate
from xinfer.loader.tokenizer import Tokenizer
from xinfer.models.kv_cache import KVCache
from xinfer.pipeline.inputs import ModelInputs, calculate_inputs
from xinfer.pipeline.non_granular import NonGranularState
from xinfer.pipeline.sequence import Sequence
from xinfer.pipeline.variant import ModelVariant, NormalVariant, XLoraVariant

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class GenerationMetadata:
    """Generation settings fixed at load time."""

    repeat_last_n: int
    """Number of trailing tokens the repetition penalties look at."""

    eos_tok: tuple[int, ...]
    """Token IDs that end a sequence."""

    no_kv_cache: bool = False
    """Recompute the full context on every forward call."""


class Pipeline:
    """One loaded model and everything needed to decode with it.

    Args:
        model_id: Name reported by :meth:`name`.
        variant: The model variant.
        tokenizer: The model's tokenizer.
        tok_trie: Vocabulary trie built from ``tokenizer``.
        chat_template: The model's chat template.
        metadata: Generation settings.
        device: Device the model lives on.
        non_granular_state: Shared X-LoRA step counter, if a target index
            was requested.
    """

    def __init__(
        self,
        model_id: str,
        variant: ModelVariant,
        tokenizer: Tokenizer,
        tok_trie: VocabularyTrie,
        chat_template: ChatTemplate,
        metadata: GenerationMetadata,
        device: torch.device,
        non_granular_state: NonGranularState | None = None,
    ) -> None:
        self._model_id = model_id
        self._variant = variant
        self._tokenizer = tokenizer
        self._tok_trie = tok_trie
        self._chat_template = chat_template
        self._metadata = metadata
        self._device = device
        self._non_granular_state = non_granular_state

    # -- forward ------------------------------------------------------------

    @torch.inference_mode()
    def forward(
        self, sequences: SequenceABC[Sequence], is_prompt: bool, n_positions: int = 1
    ) -> Tensor:
        """Compute next-token logits for a batch.

        In prompt mode (and always when the pipeline has no KV cache) the
        full context of every sequence is fed and the caches are reset
        first.  Otherwise each sequence contributes its newest
        ``n_positions`` tokens, and the cache must hold exactly the tokens
        before them.

        Args:
            sequences: The batch.
            is_prompt: Whether this is the first call for these sequences.
            n_positions: Trailing positions to return logits for.  A
                speculative verification pass appends the draft tokens to each
                sequence and asks for one position per draft token.

        Returns:
            ``[batch, n_positions, vocab_size]`` float32 logits.

        Raises:
            InvariantViolation: If the batch is empty, the cache does not
                match the sequences, or X-LoRA inputs are missing.
            ComputationError: If the forward pass fails.
        """
        no_kv_cache = self._metadata.no_kv_cache
        inputs = calculate_inputs(
            sequences, is_prompt, self.is_xlora(), self._device, no_kv_cache, n_positions
        )
        if is_prompt or no_kv_cache:
            self._reset_caches()
        else:
            self._check_cache(inputs)

        try:
            return self._run(inputs, is_prompt)
        except (RuntimeError, ValueError) as exc:
            raise ComputationError("forward", str(exc)) from exc

    def _run(self, inputs: ModelInputs, is_prompt: bool) -> Tensor:
        no_kv_cache = self._metadata.no_kv_cache
        match self._variant:
            case NormalVariant(model=model):
                return model(
                    inputs.input_ids,
                    inputs.seqlen_offsets,
                    inputs.input_mask,
                    inputs.context_lens,
                    use_cache=not no_kv_cache,
                )
            case XLoraVariant(model=model, is_lora=is_lora):
                return model(
                    inputs.input_ids,
                    inputs.seqlen_offsets,
                    inputs.input_mask,
                    inputs.context_lens,
                    input_ids_full=inputs.input_ids_full,
                    seqlen_offsets_full=inputs.seqlen_offsets_full,
                    input_mask_full=inputs.input_mask_full,
                    no_kv_cache=no_kv_cache,
                    non_granular_state=None if is_lora else self._non_granular_state,
                    is_prompt=is_prompt,
                )
            case _:
                assert_never(self._variant)

    def _reset_caches(self) -> None:
        match self._variant:
            case NormalVariant(model=model):
                model.kv_cache.reset()
            case XLoraVariant(model=model):
                model.reset_caches()
            case _:
                assert_never(self._variant)

    def _check_cache(self, inputs: ModelInputs) -> None:
        cache = self.cache()
        if cache.batch_size != len(inputs.seqlen_offsets):
            raise InvariantViolation(
                f"KV cache holds {cache.batch_size} sequence(s), "
                f"decode call has {len(inputs.seqlen_offsets)}"
            )
        if cache.token_counts != inputs.seqlen_offsets:
            raise InvariantViolation(
                f"KV cache token counts {cache.token_counts} do not match "
                f"sequence offsets {inputs.seqlen_offsets}"
            )

    # -- accessors ----------------------------------------------------------

    def cache(self) -> KVCache:
        """The active KV cache; ``len(cache())`` is the number of hidden layers."""
        match self._variant:
            case NormalVariant(model=model):
                return model.kv_cache
            case XLoraVariant(model=model):
                return model.kv_cache
            case _:
                assert_never(self._variant)

    @property
    def num_hidden_layers(self) -> int:
        return len(self.cache())

    @property
    def variant(self) -> ModelVariant:
        return self._variant

    def is_xlora(self) -> bool:
        """True only for an X-LoRA variant that is not reduced to LoRA."""
        match self._variant:
            case NormalVariant():
                return False
            case XLoraVariant(is_lora=is_lora):
                return not is_lora
            case _:
                assert_never(self._variant)

    def get_max_seq_len(self) -> int:
        match self._variant:
            case NormalVariant(model=model):
                return model.max_seq_len
            case XLoraVariant(model=model):
                return model.max_seq_len
            case _:
                assert_never(self._variant)

    def get_repeat_last_n(self) -> int:
        return self._metadata.repeat_last_n

    def eos_tok(self) -> tuple[int, ...]:
        return self._metadata.eos_tok

    def tokenizer(self) -> Tokenizer:
        return self._tokenizer

    def tok_trie(self) -> VocabularyTrie:
        return self._tok_trie

    def get_chat_template(self) -> ChatTemplate:
        return self._chat_template

    def get_non_granular_state(self) -> NonGranularState | None:
        return self._non_granular_state

    def has_no_kv_cache(self) -> bool:
        return self._metadata.no_kv_cache

    def name(self) -> str:
        return self._model_id

    def device(self) -> torch.device:
        return self._device

    def reset_non_granular_state(self) -> None:
        """Start a new generation: zero the step counter and drop frozen scalings."""
        if self._non_granular_state is None:
            return
        self._non_granular_state.reset()
        match self._variant:
            case XLoraVariant(model=model):
                model.frozen_scalings = None
            case NormalVariant():
                pass
            case _:
                assert_never(self._variant)
        logger.debug("Reset non-granular state of %s", self._model_id)


class PipelineHandle:
    """Shared owner of a :class:`Pipeline`, granting exclusive access.

    Example::

        with handle.lock() as pipeline:
            logits = pipeline.forward(seqs, is_prompt=True)
    """

    def __init__(self, pipeline: Pipeline) -> None:
        self._pipeline = pipeline
        self._lock = threading.Lock()

    @contextmanager
    def lock(self) -> Iterator[Pipeline]:
        with self._lock:
            yield self._pipeline
