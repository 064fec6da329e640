"""Tests for the generic loader: kinds, weights, adapters, and EOS ids."""

from __future__ import annotations

import json
from pathlib import Path

import pytest
import torch
from safetensors.torch import load_file, save_file
from tiny_repo import ADAPTER_NAMES, TINY_CONFIG, load_handle, token_id, write_json, write_model_dir

from xinfer.errors import ModelLoadError, TokenizerLoadError, UnsupportedModelKindError
from xinfer.loader.loader import Loader, LoaderConfig, ModelKind, default_dtype
from xinfer.loader.paths import TokenSource
from xinfer.pipeline import Pipeline, PipelineHandle, Sequence
from xinfer.pipeline.variant import NormalVariant, XLoraVariant
from xinfer.sampling.sampler import Sampler, SamplingParams


def _pipeline(handle: PipelineHandle) -> Pipeline:
    with handle.lock() as pipeline:
        return pipeline


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------


class TestLoaderConfig:
    @pytest.mark.parametrize(
        "kind", [k for k in ModelKind if k.value.startswith(("quantized", "xlora-g", "lora-g"))]
    )
    def test_quantized_kinds_rejected(self, kind: ModelKind) -> None:
        with pytest.raises(UnsupportedModelKindError, match=kind.value):
            Loader(LoaderConfig(model_id="m", kind=kind))

    def test_supported_kinds(self) -> None:
        supported = {k for k in ModelKind if k.is_supported}
        assert supported == {ModelKind.NORMAL, ModelKind.LORA_NORMAL, ModelKind.XLORA_NORMAL}

    def test_unknown_architecture(self) -> None:
        with pytest.raises(ValueError, match="Unknown architecture"):
            LoaderConfig(model_id="m", architecture="mistral").validate()

    def test_model_id_required(self) -> None:
        with pytest.raises(ValueError, match="model_id"):
            LoaderConfig().validate()

    def test_adapter_kinds_need_ordering(self) -> None:
        with pytest.raises(ValueError, match="ordering"):
            LoaderConfig(kind=ModelKind.LORA_NORMAL, xlora_model_id="x").validate()

    def test_adapter_kinds_need_adapter_repo(self) -> None:
        config = LoaderConfig(kind=ModelKind.XLORA_NORMAL, xlora_order_path="o.json")
        with pytest.raises(ValueError, match="adapter model id"):
            config.validate()

    def test_target_index_accepted_for_any_kind(self) -> None:
        LoaderConfig(model_id="m", tgt_non_granular_index=1).validate()
        LoaderConfig(
            kind=ModelKind.LORA_NORMAL,
            xlora_model_id="x",
            xlora_order_path="o.json",
            tgt_non_granular_index=0,
        ).validate()

    def test_negative_target_index(self) -> None:
        with pytest.raises(ValueError, match="tgt_non_granular_index"):
            LoaderConfig(model_id="m", tgt_non_granular_index=-1).validate()

    def test_negative_repeat_window(self) -> None:
        with pytest.raises(ValueError, match="repeat_last_n"):
            LoaderConfig(model_id="m", repeat_last_n=-1).validate()


def test_default_dtype() -> None:
    assert default_dtype(torch.device("cpu")) == torch.float32
    assert default_dtype(torch.device("cuda")) == torch.bfloat16


# ---------------------------------------------------------------------------
# Loader construction
# ---------------------------------------------------------------------------


class TestLoaderIdentity:
    def test_base_model_from_ordering(self, model_dir: Path, adapter_dir: Path) -> None:
        loader = Loader(
            LoaderConfig(
                kind=ModelKind.XLORA_NORMAL,
                xlora_model_id=str(adapter_dir),
                xlora_order_path=str(adapter_dir / "ordering.json"),
            )
        )
        assert loader.model_id == str(model_dir)
        assert loader.get_id() == str(adapter_dir)
        assert loader.get_kind() is ModelKind.XLORA_NORMAL
        assert loader.ordering is not None
        assert loader.ordering.adapters == ADAPTER_NAMES

    def test_normal_id(self, model_dir: Path) -> None:
        assert Loader(LoaderConfig(model_id=str(model_dir))).get_id() == str(model_dir)

    def test_unreadable_ordering(self, tmp_path: Path) -> None:
        config = LoaderConfig(
            model_id="m",
            kind=ModelKind.LORA_NORMAL,
            xlora_model_id="x",
            xlora_order_path=str(tmp_path / "absent.json"),
        )
        with pytest.raises(ModelLoadError, match="ordering"):
            Loader(config)


# ---------------------------------------------------------------------------
# Normal models
# ---------------------------------------------------------------------------


class TestNormal:
    def test_weights_loaded(self, model_dir: Path) -> None:
        pipeline = _pipeline(load_handle(model_dir))
        variant = pipeline.variant
        assert isinstance(variant, NormalVariant)
        assert not variant.model.training
        saved = load_file(str(model_dir / "model.safetensors"))
        torch.testing.assert_close(
            variant.model.embed_tokens.weight, saved["model.embed_tokens.weight"]
        )
        torch.testing.assert_close(variant.model.lm_head.weight, saved["lm_head.weight"])
        assert variant.model.embed_tokens.weight.dtype == torch.float32

    def test_explicit_dtype(self, model_dir: Path) -> None:
        loader = Loader(LoaderConfig(model_id=str(model_dir)))
        handle = loader.load_model(token_source=TokenSource("none"), dtype=torch.bfloat16)
        model = _pipeline(handle).variant.model
        assert all(p.dtype == torch.bfloat16 for p in model.parameters())

    def test_tied_embeddings(self, tmp_path: Path) -> None:
        model_dir = write_model_dir(tmp_path / "tied", {**TINY_CONFIG, "tie_word_embeddings": True})
        model = _pipeline(load_handle(model_dir)).variant.model
        assert model.lm_head.weight is model.embed_tokens.weight

    def test_eos_ids(self, model_dir: Path) -> None:
        pipeline = _pipeline(load_handle(model_dir))
        assert pipeline.eos_tok() == (token_id("</s>"), token_id("<|eot_id|>"))
        assert pipeline.tok_trie().eos_token_ids == frozenset(pipeline.eos_tok())

    def test_options_carried(self, model_dir: Path) -> None:
        pipeline = _pipeline(load_handle(model_dir, repeat_last_n=8, no_kv_cache=True))
        assert pipeline.get_repeat_last_n() == 8
        assert pipeline.has_no_kv_cache()
        assert pipeline.get_non_granular_state() is None


# ---------------------------------------------------------------------------
# Adapter models
# ---------------------------------------------------------------------------


class TestAdapters:
    def test_xlora(self, model_dir: Path, adapter_dir: Path) -> None:
        handle = load_handle(
            model_dir, adapter_dir, ModelKind.XLORA_NORMAL, tgt_non_granular_index=2
        )
        pipeline = _pipeline(handle)
        variant = pipeline.variant
        assert isinstance(variant, XLoraVariant)
        assert not variant.is_lora
        model = variant.model
        assert model.adapter_names == ADAPTER_NAMES
        assert model.classifier is not None

        saved = load_file(str(adapter_dir / "xlora_classifier.safetensors"))
        torch.testing.assert_close(
            model.classifier.layers[0].weight,
            saved["internal_xlora_classifier.layers.0.weight"],
        )
        adapter = load_file(str(adapter_dir / ADAPTER_NAMES[1] / "adapter_model.safetensors"))
        torch.testing.assert_close(
            model.lora_layers["layers.1.self_attn.v_proj"].lora_b[1].weight,
            adapter["base_model.model.model.layers.1.self_attn.v_proj.lora_B.weight"],
        )

        state = pipeline.get_non_granular_state()
        assert state is not None
        assert state.tgt_non_granular_index == 2
        assert pipeline.name() == str(adapter_dir)

    def test_lora(self, model_dir: Path, adapter_dir: Path) -> None:
        variant = _pipeline(load_handle(model_dir, adapter_dir, ModelKind.LORA_NORMAL)).variant
        assert isinstance(variant, XLoraVariant)
        assert variant.is_lora
        assert variant.model.classifier is None

    def test_lora_with_target_index(self, model_dir: Path, adapter_dir: Path) -> None:
        pipeline = _pipeline(
            load_handle(model_dir, adapter_dir, ModelKind.LORA_NORMAL, tgt_non_granular_index=1)
        )
        state = pipeline.get_non_granular_state()
        assert state is not None
        assert not pipeline.is_xlora()
        seq = Sequence([token_id("<s>"), token_id("a")], Sampler(SamplingParams()))
        pipeline.forward([seq], is_prompt=True)
        assert state.non_granular_index == 0

    def test_bad_adapter_weights(self, model_dir: Path, adapter_dir: Path) -> None:
        weights = adapter_dir / ADAPTER_NAMES[0] / "adapter_model.safetensors"
        tensors = load_file(str(weights))
        tensors.pop(next(iter(tensors)))
        save_file(tensors, str(weights))
        with pytest.raises(ModelLoadError, match="missing"):
            load_handle(model_dir, adapter_dir, ModelKind.LORA_NORMAL)


# ---------------------------------------------------------------------------
# Malformed artifacts
# ---------------------------------------------------------------------------


class TestMalformed:
    def test_config_missing_fields(self, model_dir: Path) -> None:
        write_json(model_dir / "config.json", {"hidden_size": 16})
        with pytest.raises(ModelLoadError, match="config"):
            load_handle(model_dir)

    def test_config_not_json(self, model_dir: Path) -> None:
        (model_dir / "config.json").write_text("{not json")
        with pytest.raises(ModelLoadError):
            load_handle(model_dir)

    def test_checkpoint_mismatch(self, model_dir: Path) -> None:
        weights = model_dir / "model.safetensors"
        tensors = load_file(str(weights))
        del tensors["model.norm.weight"]
        save_file(tensors, str(weights))
        with pytest.raises(ModelLoadError, match="norm.weight"):
            load_handle(model_dir)

    def test_tokenizer(self, model_dir: Path) -> None:
        (model_dir / "tokenizer.json").write_text("{}")
        with pytest.raises(TokenizerLoadError):
            load_handle(model_dir)

    def test_template_without_eos(self, model_dir: Path) -> None:
        path = model_dir / "tokenizer_config.json"
        raw = json.loads(path.read_text())
        del raw["eos_token"]
        write_json(path, raw)
        with pytest.raises(ModelLoadError, match="eos_token"):
            load_handle(model_dir)

    def test_eos_outside_vocabulary(self, model_dir: Path) -> None:
        path = model_dir / "tokenizer_config.json"
        raw = json.loads(path.read_text())
        raw["eos_token"] = "<|end|>"
        write_json(path, raw)
        with pytest.raises(ModelLoadError, match="vocabulary"):
            load_handle(model_dir)

    def test_gemma_requires_head_dim(self, model_dir: Path) -> None:
        with pytest.raises(ModelLoadError, match="head_dim"):
            load_handle(model_dir, architecture="gemma")
