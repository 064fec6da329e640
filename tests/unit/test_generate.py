"""End-to-end generation over a tiny random model."""

from __future__ import annotations

from pathlib import Path

import pytest
from tiny_repo import load_handle, token_id

from xinfer.generate import generate
from xinfer.grammar.recognizer import RegexRecognizer
from xinfer.loader.loader import ModelKind
from xinfer.pipeline import PipelineHandle
from xinfer.pipeline.variant import XLoraVariant
from xinfer.sampling.sampler import SamplingParams, SharedRng

PROMPT = [token_id("<s>"), token_id("hello")]
GREEDY = SamplingParams(temperature=0.0, max_new_tokens=8)

# Too long to complete within the tests' token limits, so EOS is never allowed.
NEVER_DONE = "[ab]{40}"


@pytest.fixture()
def handle(model_dir: Path) -> PipelineHandle:
    return load_handle(model_dir)


class TestFinishReasons:
    def test_eos_once_grammar_completes(self, handle: PipelineHandle) -> None:
        result = generate(handle, PROMPT, GREEDY, recognizer=RegexRecognizer.from_regex("1"))
        assert result.finish_reason == "eos"
        assert result.token_ids[0] == token_id("1")
        with handle.lock() as pipeline:
            assert result.token_ids[1] in pipeline.eos_tok()
        assert result.text == "1"

    def test_length(self, handle: PipelineHandle) -> None:
        params = SamplingParams(temperature=0.0, max_new_tokens=3)
        result = generate(handle, PROMPT, params, recognizer=RegexRecognizer.from_regex(NEVER_DONE))
        assert result.finish_reason == "length"
        assert len(result.token_ids) == 3
        assert result.prompt_tokens == 2

    def test_model_length_limit(self, handle: PipelineHandle) -> None:
        prompt = [token_id("a")] * 63
        result = generate(handle, prompt, GREEDY, recognizer=RegexRecognizer.from_regex(NEVER_DONE))
        assert result.finish_reason == "length"
        assert len(result.token_ids) == 2

    def test_stop_string_truncates(self, handle: PipelineHandle) -> None:
        params = SamplingParams(temperature=0.0, max_new_tokens=8, stop=["b"])
        recognizer = RegexRecognizer.from_regex("1b{20}")
        result = generate(handle, PROMPT, params, recognizer=recognizer)
        assert result.finish_reason == "stop"
        assert result.token_ids == [token_id("1"), token_id("b")]
        assert result.text.startswith("1")
        assert "b" not in result.text


class TestConstraints:
    @pytest.mark.parametrize("seed", [0, 1, 2])
    def test_output_stays_in_language(self, handle: PipelineHandle, seed: int) -> None:
        params = SamplingParams(temperature=1.0, max_new_tokens=6, seed=seed)
        result = generate(handle, PROMPT, params, recognizer=RegexRecognizer.from_regex("[0-9]+"))
        digits = {token_id(t) for t in ("1", "2", "3", "12")}
        with handle.lock() as pipeline:
            eos = set(pipeline.eos_tok())
        body = result.token_ids[:-1] if result.finish_reason == "eos" else result.token_ids
        assert body
        assert set(body) <= digits
        if result.finish_reason == "eos":
            assert result.token_ids[-1] in eos

    def test_same_seed_same_output(self, handle: PipelineHandle) -> None:
        params = SamplingParams(temperature=1.0, max_new_tokens=5)
        first = generate(handle, PROMPT, params, rng=SharedRng(11))
        second = generate(handle, PROMPT, params, rng=SharedRng(11))
        assert first.token_ids == second.token_ids


class TestResult:
    def test_logprobs_and_timing(self, handle: PipelineHandle) -> None:
        params = SamplingParams(temperature=0.0, max_new_tokens=4, top_n_logprobs=3)
        recognizer = RegexRecognizer.from_regex(NEVER_DONE)
        result = generate(handle, PROMPT, params, recognizer=recognizer, return_logprobs=True)
        assert [lp.token for lp in result.logprobs] == result.token_ids
        assert all(lp.top_logprobs is not None for lp in result.logprobs)
        assert all(len(lp.top_logprobs or []) == 3 for lp in result.logprobs)
        assert result.timing.prefill_time_s > 0
        assert len(result.timing.decode_times_s) == 3
        assert result.timing.total_time_s >= result.timing.prefill_time_s

    def test_empty_prompt(self, handle: PipelineHandle) -> None:
        with pytest.raises(ValueError, match="empty"):
            generate(handle, [], GREEDY)

    def test_prompt_too_long(self, handle: PipelineHandle) -> None:
        with pytest.raises(ValueError, match="allows 64"):
            generate(handle, [token_id("a")] * 65, GREEDY)


def test_xlora_generation_resets_step_counter(model_dir: Path, adapter_dir: Path) -> None:
    handle = load_handle(model_dir, adapter_dir, ModelKind.XLORA_NORMAL, tgt_non_granular_index=1)
    params = SamplingParams(temperature=0.0, max_new_tokens=4)
    first = generate(handle, PROMPT, params, recognizer=RegexRecognizer.from_regex(NEVER_DONE))
    with handle.lock() as pipeline:
        state = pipeline.get_non_granular_state()
        assert state is not None
        assert state.non_granular_index == 0
        variant = pipeline.variant
        assert isinstance(variant, XLoraVariant)
        assert variant.model.frozen_scalings is None
    second = generate(handle, PROMPT, params, recognizer=RegexRecognizer.from_regex(NEVER_DONE))
    assert first.token_ids == second.token_ids
