"""Shared components used across all supported architectures.

Every model here follows the same forward contract so the pipeline can drive
them interchangeably:

- ``hidden_states(input_ids, seqlen_offsets, input_mask, cache)`` runs the
  embedding and decoder stack and returns final-normed hidden states
  ``[batch, seq_len, hidden_size]``.
- ``forward(input_ids, seqlen_offsets, input_mask, context_lens, use_cache=...)``
  additionally gathers the requested positions and projects them to logits.
"""

from __future__ import annotations

import math

import torch
import torch.nn.functional as F
from torch import Tensor, nn

from xinfer.loader.config import ModelConfig
from xinfer.models.kv_cache import KVCache


class RMSNorm(nn.Module):
    """Root Mean Square Layer Normalization.

    Applies the transform: ``x * rsqrt(mean(x^2) + eps) * weight``

    Args:
        dim: The dimension to normalize over (last axis).
        eps: Small constant for numerical stability.
    """

    def __init__(self, dim: int, eps: float = 1e-6) -> None:
        super().__init__()
        self.weight = nn.Parameter(torch.ones(dim))
        self.eps = eps

    def forward(self, x: Tensor) -> Tensor:
        # Upcast to float32 for numerical stability with bfloat16/float16 inputs.
        input_dtype = x.dtype
        x = x.to(torch.float32)
        normed = x * torch.rsqrt(x.pow(2).mean(-1, keepdim=True) + self.eps)
        return self.weight.to(input_dtype) * normed.to(input_dtype)


class OffsetRMSNorm(RMSNorm):
    """RMSNorm with the ``(1 + weight)`` convention used by Gemma checkpoints.

    Weight is initialized to zeros, so the layer is an identity scale at init.
    """

    def __init__(self, dim: int, eps: float = 1e-6) -> None:
        super().__init__(dim, eps)
        self.weight = nn.Parameter(torch.zeros(dim))

    def forward(self, x: Tensor) -> Tensor:
        input_dtype = x.dtype
        x = x.to(torch.float32)
        normed = x * torch.rsqrt(x.pow(2).mean(-1, keepdim=True) + self.eps)
        return ((1.0 + self.weight.float()) * normed).to(input_dtype)


# ---------------------------------------------------------------------------
# RoPE: Rotary Position Embeddings
# ---------------------------------------------------------------------------


def build_rope_cos_sin(
    head_dim: int, max_seq_len: int, theta: float = 10000.0
) -> tuple[Tensor, Tensor]:
    """Precompute cos/sin tables for rotary position embeddings.

    Returns:
        ``(cos, sin)`` each of shape ``[max_seq_len, head_dim]``, in float32.
    """
    inv_freq = 1.0 / (theta ** (torch.arange(0, head_dim, 2, dtype=torch.float) / head_dim))
    positions = torch.arange(max_seq_len, dtype=torch.float)
    freqs = torch.outer(positions, inv_freq)  # [max_seq_len, head_dim/2]
    emb = torch.cat([freqs, freqs], dim=-1)  # [max_seq_len, head_dim]
    return emb.cos(), emb.sin()


def _rotate_half(x: Tensor) -> Tensor:
    """Swap and negate halves: [a, b] -> [-b, a]."""
    x1 = x[..., : x.shape[-1] // 2]
    x2 = x[..., x.shape[-1] // 2 :]
    return torch.cat((-x2, x1), dim=-1)


def apply_rope(q: Tensor, k: Tensor, cos: Tensor, sin: Tensor) -> tuple[Tensor, Tensor]:
    """Apply rotary position embeddings to Q and K.

    Args:
        q: Query tensor ``[batch, num_heads, seq_len, head_dim]``.
        k: Key tensor ``[batch, num_kv_heads, seq_len, head_dim]``.
        cos: Per-row cosine table ``[batch, seq_len, head_dim]``.
        sin: Per-row sine table ``[batch, seq_len, head_dim]``.

    Returns:
        ``(q_rotated, k_rotated)`` with the same shapes as the inputs.
    """
    cos = cos[:, None, :, :]  # broadcast over heads
    sin = sin[:, None, :, :]
    q_rotated = q * cos + _rotate_half(q) * sin
    k_rotated = k * cos + _rotate_half(k) * sin
    return q_rotated.to(q.dtype), k_rotated.to(k.dtype)


# ---------------------------------------------------------------------------
# Attention
# ---------------------------------------------------------------------------


class Attention(nn.Module):
    """Multi-head attention with GQA and RoPE.

    Args:
        hidden_size: Model hidden dimension (input/output size).
        num_heads: Number of query attention heads.
        num_kv_heads: Number of key/value heads (for GQA).
        head_dim: Dimension of each attention head.
        bias: Whether to use bias in Q/K/V/O projections.
    """

    def __init__(
        self,
        hidden_size: int,
        num_heads: int,
        num_kv_heads: int,
        head_dim: int,
        bias: bool = False,
    ) -> None:
        super().__init__()
        self.num_heads = num_heads
        self.num_kv_heads = num_kv_heads
        self.head_dim = head_dim
        self.scale = head_dim**-0.5

        self.q_proj = nn.Linear(hidden_size, num_heads * head_dim, bias=bias)
        self.k_proj = nn.Linear(hidden_size, num_kv_heads * head_dim, bias=bias)
        self.v_proj = nn.Linear(hidden_size, num_kv_heads * head_dim, bias=bias)
        self.o_proj = nn.Linear(num_heads * head_dim, hidden_size, bias=bias)

    def forward(
        self,
        x: Tensor,
        cos: Tensor,
        sin: Tensor,
        mask: Tensor,
        cache: KVCache | None = None,
        layer_idx: int = 0,
    ) -> Tensor:
        """Forward pass.

        Args:
            x: Input tensor ``[batch, seq_len, hidden_size]``.
            cos: RoPE cosine table ``[batch, seq_len, head_dim]``.
            sin: RoPE sine table ``[batch, seq_len, head_dim]``.
            mask: Additive attention mask ``[batch, 1, seq_len, kv_len]``.
            cache: Optional KV cache; new K/V are appended to it.
            layer_idx: Layer index for cache indexing.

        Returns:
            Output tensor ``[batch, seq_len, hidden_size]``.
        """
        batch, seq_len, _ = x.shape

        q = self.q_proj(x).view(batch, seq_len, self.num_heads, self.head_dim).transpose(1, 2)
        k = self.k_proj(x).view(batch, seq_len, self.num_kv_heads, self.head_dim).transpose(1, 2)
        v = self.v_proj(x).view(batch, seq_len, self.num_kv_heads, self.head_dim).transpose(1, 2)

        q, k = apply_rope(q, k, cos, sin)

        if cache is not None:
            k, v = cache.update(layer_idx, k, v)

        # GQA: expand K/V heads to match Q heads.
        if self.num_kv_heads < self.num_heads:
            n_rep = self.num_heads // self.num_kv_heads
            k = k.repeat_interleave(n_rep, dim=1)
            v = v.repeat_interleave(n_rep, dim=1)

        out = F.scaled_dot_product_attention(q, k, v, attn_mask=mask, scale=self.scale)
        out = out.transpose(1, 2).contiguous().view(batch, seq_len, -1)
        return self.o_proj(out)


# ---------------------------------------------------------------------------
# Gated MLP
# ---------------------------------------------------------------------------

_ACTIVATIONS: dict[str, nn.Module] = {
    "silu": nn.SiLU(),
    "gelu": nn.GELU(),
    "gelu_pytorch_tanh": nn.GELU(approximate="tanh"),
    "gelu_new": nn.GELU(approximate="tanh"),
    "relu": nn.ReLU(),
}


class GatedMLP(nn.Module):
    """Gated MLP: ``down_proj(act_fn(gate_proj(x)) * up_proj(x))``.

    SwiGLU with ``silu`` (Llama), GeGLU with a GELU variant (Gemma).
    """

    def __init__(self, hidden_size: int, intermediate_size: int, act_fn: str = "silu") -> None:
        super().__init__()
        self.gate_proj = nn.Linear(hidden_size, intermediate_size, bias=False)
        self.up_proj = nn.Linear(hidden_size, intermediate_size, bias=False)
        self.down_proj = nn.Linear(intermediate_size, hidden_size, bias=False)
        if act_fn not in _ACTIVATIONS:
            raise ValueError(f"Unknown activation: {act_fn!r}. Choose from {sorted(_ACTIVATIONS)}")
        self.act_fn = _ACTIVATIONS[act_fn]

    def forward(self, x: Tensor) -> Tensor:
        return self.down_proj(self.act_fn(self.gate_proj(x)) * self.up_proj(x))


# ---------------------------------------------------------------------------
# Mask helpers
# ---------------------------------------------------------------------------


def attention_mask(key_valid: Tensor, past_len: int, seq_len: int, dtype: torch.dtype) -> Tensor:
    """Causal mask over cached plus new columns that also hides padding.

    Query ``j`` of the new tokens sits at column ``past_len + j`` and may attend
    to every valid key column at or before it.  Uses the float additive
    convention: ``0.0`` for attend, ``-inf`` for mask.

    Args:
        key_valid: ``[batch, kv_len]`` bool, ``True`` for real entries.
        past_len: Number of columns cached before this pass.
        seq_len: Number of new (query) columns.
        dtype: Output tensor dtype.

    Returns:
        Mask of shape ``[batch, 1, seq_len, kv_len]``.
    """
    kv_len = key_valid.shape[1]
    device = key_valid.device
    key_cols = torch.arange(kv_len, device=device)
    query_cols = past_len + torch.arange(seq_len, device=device)
    allowed = (key_cols[None, :] <= query_cols[:, None])[None, :, :] & key_valid[:, None, :]
    mask = torch.zeros(allowed.shape, dtype=dtype, device=device)
    mask.masked_fill_(~allowed, float("-inf"))
    return mask[:, None, :, :]


# ---------------------------------------------------------------------------
# Decoder stack
# ---------------------------------------------------------------------------


class DecoderBlock(nn.Module):
    """Pre-norm transformer block shared by Llama and Gemma.

    Block structure::

        residual = x
        x = attention(input_layernorm(x)) + residual
        residual = x
        x = mlp(post_attention_layernorm(x)) + residual
    """

    def __init__(self, config: ModelConfig, norm_cls: type[RMSNorm], act_fn: str) -> None:
        super().__init__()
        self.input_layernorm = norm_cls(config.hidden_size, eps=config.rms_norm_eps)
        self.self_attn = Attention(
            hidden_size=config.hidden_size,
            num_heads=config.num_attention_heads,
            num_kv_heads=config.computed_num_key_value_heads,
            head_dim=config.computed_head_dim,
            bias=config.attention_bias,
        )
        self.post_attention_layernorm = norm_cls(config.hidden_size, eps=config.rms_norm_eps)
        self.mlp = GatedMLP(config.hidden_size, config.intermediate_size, act_fn=act_fn)

    def forward(
        self,
        x: Tensor,
        cos: Tensor,
        sin: Tensor,
        mask: Tensor,
        cache: KVCache | None = None,
        layer_idx: int = 0,
    ) -> Tensor:
        x = x + self.self_attn(self.input_layernorm(x), cos, sin, mask, cache, layer_idx)
        return x + self.mlp(self.post_attention_layernorm(x))


class DecoderModel(nn.Module):
    """Embedding, decoder blocks, final norm, and LM head.

    The model owns its KV cache (``kv_cache``), one slot per decoder block.

    Args:
        config: Model configuration.
        norm_cls: RMSNorm variant used for every norm layer.
        act_fn: MLP activation name.
        embed_scale: Optional multiplier applied to token embeddings.
        tie_word_embeddings: Share the LM head weight with the embedding table.
    """

    def __init__(
        self,
        config: ModelConfig,
        *,
        norm_cls: type[RMSNorm] = RMSNorm,
        act_fn: str = "silu",
        embed_scale: float | None = None,
        tie_word_embeddings: bool = False,
    ) -> None:
        super().__init__()
        self.config = config
        self.embed_scale = embed_scale
        self.embed_tokens = nn.Embedding(config.vocab_size, config.hidden_size)
        self.layers = nn.ModuleList(
            [DecoderBlock(config, norm_cls, act_fn) for _ in range(config.num_hidden_layers)]
        )
        self.norm = norm_cls(config.hidden_size, eps=config.rms_norm_eps)
        self.lm_head = nn.Linear(config.hidden_size, config.vocab_size, bias=False)
        if tie_word_embeddings:
            self.lm_head.weight = self.embed_tokens.weight

        cos, sin = build_rope_cos_sin(
            config.computed_head_dim, config.max_position_embeddings, theta=config.rope_theta
        )
        self.cos: Tensor
        self.sin: Tensor
        self.register_buffer("cos", cos, persistent=False)
        self.register_buffer("sin", sin, persistent=False)

        self.kv_cache = KVCache(config.num_hidden_layers)

    @property
    def max_seq_len(self) -> int:
        return self.cos.shape[0]

    def hidden_states(
        self,
        input_ids: Tensor,
        seqlen_offsets: list[int],
        input_mask: Tensor,
        cache: KVCache | None,
    ) -> Tensor:
        """Run the decoder stack.

        Args:
            input_ids: Token IDs ``[batch, seq_len]``, right-padded.
            seqlen_offsets: Per-row position of the first token in ``input_ids``.
            input_mask: ``[batch, seq_len]`` bool, ``True`` for real tokens.
            cache: KV cache to read from and append to, or ``None`` to attend
                only within ``input_ids``.

        Returns:
            Final-normed hidden states ``[batch, seq_len, hidden_size]``.

        Raises:
            ValueError: If a position exceeds ``max_position_embeddings``.
        """
        batch_size, seq_len = input_ids.shape
        device = input_ids.device

        x = self.embed_tokens(input_ids)
        if self.embed_scale is not None:
            x = x * torch.tensor(self.embed_scale, dtype=x.dtype, device=device)

        offsets = torch.tensor(seqlen_offsets, dtype=torch.long, device=device)
        positions = offsets[:, None] + torch.arange(seq_len, device=device)[None, :]
        if max(seqlen_offsets) + seq_len > self.max_seq_len:
            raise ValueError(
                f"position {max(seqlen_offsets) + seq_len - 1} exceeds "
                f"max_position_embeddings ({self.max_seq_len})"
            )
        cos = self.cos[positions].to(x.dtype)  # [batch, seq_len, head_dim]
        sin = self.sin[positions].to(x.dtype)

        if cache is not None:
            past_len = cache.num_columns
            key_valid = cache.extend_mask(input_mask)
        else:
            past_len = 0
            key_valid = input_mask
        mask = attention_mask(key_valid, past_len, seq_len, x.dtype)

        for i, layer in enumerate(self.layers):
            x = layer(x, cos, sin, mask, cache, i)

        if cache is not None:
            counts = input_mask.sum(dim=1).tolist()
            cache.commit([offset + int(n) for offset, n in zip(seqlen_offsets, counts)])
        return self.norm(x)

    def logits(self, hidden: Tensor, context_lens: list[tuple[int, int]]) -> Tensor:
        """Project the requested positions of each row to vocabulary logits.

        Args:
            hidden: ``[batch, seq_len, hidden_size]``.
            context_lens: Per-row ``(start, length)``; lengths must agree.

        Returns:
            ``[batch, length, vocab_size]`` float32 logits.
        """
        lengths = {length for _, length in context_lens}
        if len(lengths) != 1:
            raise ValueError(f"context lengths must agree across the batch, got {context_lens}")
        selected = torch.stack(
            [
                hidden[row, start : start + length]
                for row, (start, length) in enumerate(context_lens)
            ]
        )
        return self.lm_head(selected).float()

    def forward(
        self,
        input_ids: Tensor,
        seqlen_offsets: list[int],
        input_mask: Tensor,
        context_lens: list[tuple[int, int]],
        *,
        use_cache: bool = True,
    ) -> Tensor:
        """Forward pass returning logits ``[batch, length, vocab_size]``."""
        cache = self.kv_cache if use_cache else None
        hidden = self.hidden_states(input_ids, seqlen_offsets, input_mask, cache)
        return self.logits(hidden, context_lens)


def sqrt_hidden_scale(config: ModelConfig) -> float:
    """Embedding multiplier ``sqrt(hidden_size)`` used by Gemma."""
    return math.sqrt(config.hidden_size)
