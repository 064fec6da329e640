"""Full-model logits parity tests against HuggingFace transformers.

Each test builds a transformers model, loads the same weights through our
loader, runs a forward pass on the same input, and compares logits at every
position.

The tiny random models run on CPU in float32 and must match closely.  The
Hub checkpoints are marked ``@pytest.mark.slow`` and are skipped when they
cannot be fetched.

Tolerance thresholds:
  - float32: max < 1e-4, mean < 1e-5.
  - bfloat16: max < 2.5, mean < 0.2 (rounding accumulation across layers).
"""

from __future__ import annotations

from collections.abc import Callable
from pathlib import Path

import pytest
import torch
from tiny_repo import VOCAB, write_json, write_tokenizer
from transformers import (
    AutoModelForCausalLM,
    AutoTokenizer,
    GemmaConfig,
    GemmaForCausalLM,
    LlamaConfig,
    LlamaForCausalLM,
    PreTrainedModel,
)

from xinfer.loader.loader import Loader, LoaderConfig
from xinfer.loader.paths import TokenSource
from xinfer.models.common import DecoderModel

_TINY = {
    "hidden_size": 32,
    "intermediate_size": 64,
    "num_hidden_layers": 2,
    "num_attention_heads": 4,
    "num_key_value_heads": 2,
    "vocab_size": len(VOCAB),
    "max_position_embeddings": 64,
    "rms_norm_eps": 1e-6,
}


def _save_tiny(ref: PreTrainedModel, root: Path) -> Path:
    ref.save_pretrained(root, safe_serialization=True)
    write_tokenizer(root / "tokenizer.json")
    write_json(root / "tokenizer_config.json", {"eos_token": "</s>"})
    return root


def _our_model(model_dir: Path | str, arch: str, dtype: torch.dtype) -> DecoderModel:
    loader = Loader(LoaderConfig(model_id=str(model_dir), architecture=arch))
    handle = loader.load_model(token_source=TokenSource("none"), dtype=dtype)
    with handle.lock() as pipeline:
        model = pipeline.variant.model
    assert isinstance(model, DecoderModel)
    return model


def _all_logits(model: DecoderModel, input_ids: torch.Tensor) -> torch.Tensor:
    n = input_ids.shape[1]
    mask = torch.ones_like(input_ids, dtype=torch.bool)
    return model(input_ids, [0], mask, [(0, n)], use_cache=False)


def _compare(ours: torch.Tensor, ref: torch.Tensor, dtype: torch.dtype) -> None:
    diff = (ours.float() - ref.float()).abs()
    max_err = diff.max().item()
    mean_err = diff.mean().item()
    if dtype == torch.float32:
        assert max_err < 1e-4, f"fp32 max error {max_err:.6e} exceeds threshold 1e-4"
        assert mean_err < 1e-5, f"fp32 mean error {mean_err:.6e} exceeds threshold 1e-5"
    else:
        assert max_err < 2.5, f"Max absolute error {max_err:.6e} exceeds threshold 2.5"
        assert mean_err < 0.2, f"Mean absolute error {mean_err:.6e} exceeds threshold 0.2"


# ---------------------------------------------------------------------------
# Tiny random models (CPU)
# ---------------------------------------------------------------------------


def _tiny_llama() -> PreTrainedModel:
    return LlamaForCausalLM(LlamaConfig(**_TINY, tie_word_embeddings=False, hidden_act="silu"))


def _tiny_gemma() -> PreTrainedModel:
    config = GemmaConfig(
        **_TINY,
        head_dim=8,
        hidden_act="gelu_pytorch_tanh",
        hidden_activation="gelu_pytorch_tanh",
    )
    return GemmaForCausalLM(config)


@pytest.mark.parametrize(
    ("arch", "build"),
    [
        pytest.param("llama", _tiny_llama, id="llama"),
        pytest.param("gemma", _tiny_gemma, id="gemma"),
    ],
)
def test_tiny_logits_parity(
    arch: str, build: Callable[[], PreTrainedModel], tmp_path: Path
) -> None:
    torch.manual_seed(0)
    ref_model = build().eval()
    model_dir = _save_tiny(ref_model, tmp_path / arch)
    our_model = _our_model(model_dir, arch, torch.float32)

    input_ids = torch.randint(4, len(VOCAB), (1, 12))
    with torch.no_grad():
        ours = _all_logits(our_model, input_ids)
        ref = ref_model(input_ids).logits
    _compare(ours, ref, torch.float32)


def test_tiny_cached_decode_parity(tmp_path: Path) -> None:
    torch.manual_seed(0)
    ref_model = _tiny_llama().eval()
    our_model = _our_model(_save_tiny(ref_model, tmp_path / "llama"), "llama", torch.float32)

    input_ids = torch.randint(4, len(VOCAB), (1, 9))
    our_model.kv_cache.reset()
    with torch.no_grad():
        prefix = input_ids[:, :-1]
        our_model(prefix, [0], torch.ones_like(prefix, dtype=torch.bool), [(7, 1)])
        ours = our_model(input_ids[:, -1:], [8], torch.ones(1, 1, dtype=torch.bool), [(0, 1)])
        ref = ref_model(input_ids).logits[:, -1:]
    _compare(ours, ref, torch.float32)


# ---------------------------------------------------------------------------
# Hub checkpoints
# ---------------------------------------------------------------------------

_MODELS = [
    pytest.param("TinyLlama/TinyLlama-1.1B-Chat-v1.0", "llama", id="tinyllama"),
]

_DTYPES = [
    pytest.param(torch.float32, id="fp32"),
    pytest.param(torch.bfloat16, id="bf16"),
]


@pytest.mark.slow
@pytest.mark.parametrize("dtype", _DTYPES)
@pytest.mark.parametrize(("model_id", "arch"), _MODELS)
def test_hub_logits_parity(model_id: str, arch: str, dtype: torch.dtype) -> None:
    """Verify our model's logits match HF transformers on a released checkpoint."""
    try:
        ref_model = AutoModelForCausalLM.from_pretrained(model_id, torch_dtype=dtype)
        tokenizer = AutoTokenizer.from_pretrained(model_id)
    except Exception as exc:
        pytest.skip(f"Could not load HF model {model_id}: {exc}")
    ref_model.eval()

    try:
        loader = Loader(LoaderConfig(model_id=model_id, architecture=arch))
        handle = loader.load_model(dtype=dtype)
    except Exception as exc:
        pytest.skip(f"Could not load our model {model_id}: {exc}")
    with handle.lock() as pipeline:
        our_model = pipeline.variant.model
    assert isinstance(our_model, DecoderModel)

    input_ids = tokenizer.encode("The capital of France is", return_tensors="pt")
    with torch.no_grad():
        ours = _all_logits(our_model, input_ids)
        ref = ref_model(input_ids).logits
    _compare(ours, ref, dtype)
