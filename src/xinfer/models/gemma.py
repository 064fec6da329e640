"""Gemma model.

Differs from Llama in three places:

- token embeddings are multiplied by ``sqrt(hidden_size)``;
- every RMSNorm uses the ``(1 + weight)`` convention;
- the MLP activation comes from ``hidden_act`` / ``hidden_activation``
  (GeGLU in released checkpoints).

The LM head is always tied to the embedding table.
"""

from __future__ import annotations

from xinfer.loader.config import ModelConfig
from xinfer.models.common import DecoderModel, OffsetRMSNorm, sqrt_hidden_scale


class GemmaModel(DecoderModel):
    """Gemma decoder.

    Args:
        config: Model configuration.  Must set ``hidden_act`` or
            ``hidden_activation``.
    """

    def __init__(self, config: ModelConfig) -> None:
        super().__init__(
            config,
            norm_cls=OffsetRMSNorm,
            act_fn=config.activation,
            embed_scale=sqrt_hidden_scale(config),
            tie_word_embeddings=True,
        )
