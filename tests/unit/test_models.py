"""Tests for the KV cache and the Llama/Gemma decoders."""

from __future__ import annotations

import dataclasses

import pytest
import torch
from tiny_repo import TINY_CONFIG

from xinfer.loader.config import ModelConfig, parse_config
from xinfer.models.common import OffsetRMSNorm, RMSNorm, attention_mask
from xinfer.models.gemma import GemmaModel
from xinfer.models.kv_cache import KVCache
from xinfer.models.llama import LlamaModel


@pytest.fixture
def config() -> ModelConfig:
    return parse_config(dict(TINY_CONFIG))


@pytest.fixture
def llama(config: ModelConfig) -> LlamaModel:
    torch.manual_seed(0)
    return LlamaModel(config).eval()


def _mask(rows: list[int], width: int) -> torch.Tensor:
    return torch.arange(width)[None, :] < torch.tensor(rows)[:, None]


# ---------------------------------------------------------------------------
# KVCache
# ---------------------------------------------------------------------------


class TestKVCache:
    def test_empty(self) -> None:
        cache = KVCache(3)
        assert len(cache) == 3
        assert cache.num_columns == 0
        assert cache.batch_size == 0
        assert cache.token_counts == []

    def test_update_concatenates(self) -> None:
        cache = KVCache(1)
        k1, v1 = torch.randn(1, 2, 3, 4), torch.randn(1, 2, 3, 4)
        k2, v2 = torch.randn(1, 2, 1, 4), torch.randn(1, 2, 1, 4)
        cache.update(0, k1, v1)
        k, v = cache.update(0, k2, v2)
        assert k.shape == (1, 2, 4, 4)
        assert torch.equal(k[:, :, 3:], k2)
        assert torch.equal(v[:, :, :3], v1)

    def test_extend_mask(self) -> None:
        cache = KVCache(1)
        cache.extend_mask(torch.tensor([[True, True], [True, False]]))
        valid = cache.extend_mask(torch.tensor([[True], [True]]))
        assert valid.tolist() == [[True, True, True], [True, False, True]]
        assert cache.num_columns == 3
        assert cache.batch_size == 2

    def test_extend_mask_batch_mismatch(self) -> None:
        cache = KVCache(1)
        cache.extend_mask(torch.ones(2, 3, dtype=torch.bool))
        with pytest.raises(ValueError, match="batch size"):
            cache.extend_mask(torch.ones(3, 1, dtype=torch.bool))

    def test_reset(self) -> None:
        cache = KVCache(2)
        cache.extend_mask(torch.ones(1, 2, dtype=torch.bool))
        cache.update(1, torch.randn(1, 1, 2, 4), torch.randn(1, 1, 2, 4))
        cache.commit([2])
        cache.reset()
        assert len(cache) == 2
        assert cache.num_columns == 0
        assert cache.token_counts == []


# ---------------------------------------------------------------------------
# Masks and norms
# ---------------------------------------------------------------------------


def test_attention_mask_causal_and_padding() -> None:
    key_valid = torch.tensor([[True, True, False], [True, True, True]])
    mask = attention_mask(key_valid, past_len=0, seq_len=3, dtype=torch.float32)
    assert mask.shape == (2, 1, 3, 3)
    inf = float("-inf")
    assert mask[1, 0].tolist() == [[0.0, inf, inf], [0.0, 0.0, inf], [0.0, 0.0, 0.0]]
    # The padded column is hidden from every query.
    assert (mask[0, 0, :, 2] == inf).all()


def test_attention_mask_decode_sees_all_past() -> None:
    key_valid = torch.tensor([[True, True, True]])
    mask = attention_mask(key_valid, past_len=2, seq_len=1, dtype=torch.float32)
    assert mask[0, 0].tolist() == [[0.0, 0.0, 0.0]]


def test_offset_rms_norm_matches_unit_rms_norm_at_init() -> None:
    x = torch.randn(2, 5, 8)
    torch.testing.assert_close(OffsetRMSNorm(8)(x), RMSNorm(8)(x))


# ---------------------------------------------------------------------------
# Decoder models
# ---------------------------------------------------------------------------


class TestDecoderModel:
    def test_logits_shape(self, llama: LlamaModel) -> None:
        ids = torch.tensor([[1, 5, 6, 7]])
        logits = llama(ids, [0], _mask([4], 4), [(3, 1)])
        assert logits.shape == (1, 1, TINY_CONFIG["vocab_size"])
        assert logits.dtype == torch.float32

    def test_cached_decode_matches_full_recompute(self, llama: LlamaModel) -> None:
        prompt = [1, 5, 6, 7]
        llama.kv_cache.reset()
        llama(torch.tensor([prompt]), [0], _mask([4], 4), [(3, 1)])
        cached = llama(torch.tensor([[9]]), [4], _mask([1], 1), [(0, 1)])

        full_ids = torch.tensor([prompt + [9]])
        full = llama(full_ids, [0], _mask([5], 5), [(4, 1)], use_cache=False)
        torch.testing.assert_close(cached, full, atol=1e-5, rtol=1e-4)
        assert llama.kv_cache.token_counts == [5]

    def test_right_padded_batch_matches_single_rows(self, llama: LlamaModel) -> None:
        rows = [[1, 5, 6, 7], [1, 8]]
        ids = torch.tensor([rows[0], rows[1] + [0, 0]])
        batched = llama(ids, [0, 0], _mask([4, 2], 4), [(3, 1), (1, 1)], use_cache=False)
        for i, row in enumerate(rows):
            n = len(row)
            single = llama(torch.tensor([row]), [0], _mask([n], n), [(n - 1, 1)], use_cache=False)
            torch.testing.assert_close(batched[i : i + 1], single, atol=1e-5, rtol=1e-4)

    def test_cache_counts_per_row(self, llama: LlamaModel) -> None:
        llama.kv_cache.reset()
        ids = torch.tensor([[1, 5, 6], [1, 8, 0]])
        llama(ids, [0, 0], _mask([3, 2], 3), [(2, 1), (1, 1)])
        assert llama.kv_cache.token_counts == [3, 2]
        llama(torch.tensor([[4], [4]]), [3, 2], _mask([1, 1], 1), [(0, 1), (0, 1)])
        assert llama.kv_cache.token_counts == [4, 3]

    def test_position_past_maximum(self, llama: LlamaModel) -> None:
        with pytest.raises(ValueError, match="max_position_embeddings"):
            llama(torch.tensor([[1]]), [64], _mask([1], 1), [(0, 1)], use_cache=False)

    def test_context_lengths_must_agree(self, llama: LlamaModel) -> None:
        ids = torch.tensor([[1, 5], [1, 6]])
        with pytest.raises(ValueError, match="context lengths"):
            llama(ids, [0, 0], _mask([2, 2], 2), [(0, 2), (1, 1)], use_cache=False)

    def test_max_seq_len(self, llama: LlamaModel) -> None:
        assert llama.max_seq_len == TINY_CONFIG["max_position_embeddings"]


class TestGemma:
    def test_ties_head_and_scales_embeddings(self, config: ModelConfig) -> None:
        gemma_config = dataclasses.replace(config, hidden_activation="gelu_pytorch_tanh")
        model = GemmaModel(gemma_config)
        assert model.lm_head.weight is model.embed_tokens.weight
        assert isinstance(model.norm, OffsetRMSNorm)
        assert model.embed_scale == pytest.approx(gemma_config.hidden_size**0.5)

    @torch.inference_mode()
    def test_forward(self, config: ModelConfig) -> None:
        model = GemmaModel(dataclasses.replace(config, hidden_act="gelu")).eval()
        logits = model(torch.tensor([[1, 2, 3]]), [0], _mask([3], 3), [(2, 1)], use_cache=False)
        assert logits.shape == (1, 1, config.vocab_size)
        assert torch.isfinite(logits).all()

    def test_requires_activation(self, config: ModelConfig) -> None:
        bare = dataclasses.replace(config, hidden_act=None, hidden_activation=None)
        with pytest.raises(ValueError, match="hidden_act"):
            GemmaModel(bare)
