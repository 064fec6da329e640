"""Config reader: parse a HuggingFace config.json into a typed dataclass."""

from __future__ import annotations

import json
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Any

# Fields every supported architecture needs; missing ones are reported together.
_REQUIRED_FIELDS = (
    "hidden_size",
    "intermediate_size",
    "num_hidden_layers",
    "num_attention_heads",
    "vocab_size",
)

# Activation names accepted by ``hidden_act`` / ``hidden_activation``.
SUPPORTED_ACTIVATIONS = frozenset({"silu", "gelu", "gelu_pytorch_tanh", "gelu_new", "relu"})


@dataclass
class ModelConfig:
    """Typed representation of a HuggingFace model config."""

    # Dimensions
    hidden_size: int
    intermediate_size: int
    num_hidden_layers: int
    num_attention_heads: int
    vocab_size: int
    num_key_value_heads: int | None = None
    head_dim: int | None = None
    max_position_embeddings: int = 4096

    # Normalization
    rms_norm_eps: float = 1e-6

    # RoPE
    rope_theta: float = 10000.0

    # Projection biases
    attention_bias: bool = False

    # Activation.  Older configs use ``hidden_act``, newer Gemma ones use
    # ``hidden_activation``; either satisfies the same role.
    hidden_act: str | None = None
    hidden_activation: str | None = None

    # Embeddings
    tie_word_embeddings: bool = False

    model_type: str | None = None

    @property
    def computed_head_dim(self) -> int:
        if self.head_dim is not None:
            return self.head_dim
        return self.hidden_size // self.num_attention_heads

    @property
    def computed_num_key_value_heads(self) -> int:
        if self.num_key_value_heads is not None:
            return self.num_key_value_heads
        return self.num_attention_heads

    @property
    def activation(self) -> str:
        """The resolved activation function name.

        ``hidden_act`` wins when both legacy fields are present (CodeGemma
        configs carry both).

        Raises:
            ValueError: If neither field is set.
        """
        act = self.hidden_act if self.hidden_act is not None else self.hidden_activation
        if act is None:
            raise ValueError("config sets neither hidden_act nor hidden_activation")
        return act


def parse_config(raw: dict[str, Any]) -> ModelConfig:
    """Build a :class:`ModelConfig` from a decoded config.json mapping.

    Unknown keys are ignored and ``null`` values fall back to the defaults.

    Raises:
        ValueError: If a required field is missing or a value is invalid.
    """
    missing = [name for name in _REQUIRED_FIELDS if raw.get(name) is None]
    if missing:
        raise ValueError(f"config.json is missing required fields: {missing}")

    known_fields = {f.name for f in fields(ModelConfig)}
    filtered = {k: v for k, v in raw.items() if k in known_fields and v is not None}
    config = ModelConfig(**filtered)

    for name in ("hidden_act", "hidden_activation"):
        act = getattr(config, name)
        if act is not None and act not in SUPPORTED_ACTIVATIONS:
            raise ValueError(
                f"Unsupported {name}: {act!r}. Supported: {sorted(SUPPORTED_ACTIVATIONS)}"
            )
    if config.num_attention_heads % config.computed_num_key_value_heads != 0:
        raise ValueError(
            f"num_attention_heads ({config.num_attention_heads}) must be a multiple of "
            f"num_key_value_heads ({config.computed_num_key_value_heads})"
        )
    return config


def load_config(config_path: str | Path) -> ModelConfig:
    """Load and parse a config.json file into a ModelConfig.

    Args:
        config_path: Path to the config.json file.

    Returns:
        A populated ModelConfig instance.

    Raises:
        FileNotFoundError: If the file does not exist.
        json.JSONDecodeError: If the file is not valid JSON.
        ValueError: If required fields are missing or invalid.
    """
    with open(config_path) as f:
        raw = json.load(f)
    if not isinstance(raw, dict):
        raise ValueError(f"{config_path} must contain a JSON object")
    return parse_config(raw)
