"""Llama model: pre-norm blocks, standard RMSNorm, SwiGLU MLP."""

from __future__ import annotations

from xinfer.loader.config import ModelConfig
from xinfer.models.common import DecoderModel, RMSNorm


class LlamaModel(DecoderModel):
    """Llama decoder.

    The activation is always SiLU; ``hidden_act`` is not consulted.

    Args:
        config: Model configuration.
    """

    def __init__(self, config: ModelConfig) -> None:
        super().__init__(
            config,
            norm_cls=RMSNorm,
            act_fn="silu",
            tie_word_embeddings=config.tie_word_embeddings,
        )
