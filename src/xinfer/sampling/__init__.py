"""Sampling: parameters, the per-sequence sampler, and grammar-checked decode steps."""

from xinfer.sampling.decode import (
    sample_async,
    sample_sequence,
    sample_target_sequence_speculative,
    shutdown_sampling_pool,
)
from xinfer.sampling.sampler import Logprobs, Sampler, SamplingParams, SharedRng, TopLogprob

__all__ = [
    "Logprobs",
    "Sampler",
    "SamplingParams",
    "SharedRng",
    "TopLogprob",
    "sample_async",
    "sample_sequence",
    "sample_target_sequence_speculative",
    "shutdown_sampling_pool",
]
