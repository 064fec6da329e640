"""LoRA adapters and the X-LoRA mixture-of-adapters wrapper.

X-LoRA runs every forward call in two passes over the same base model:

1. A *scaling pass* with every adapter weighted by ``scaling_pass_value``.
   Its final hidden states feed a small classifier that predicts one weight
   per (token, LoRA layer, adapter).
2. The *main pass* with those predicted scalings applied to the adapters.

The scaling pass keeps its own KV cache (``xlora_cache``) since its
activations differ from the main pass.  A LoRA model (no classifier) skips
the scaling pass and applies every adapter with weight 1.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

import torch
from torch import Tensor, nn

from xinfer.errors import MissingFullInputsError
from xinfer.loader.adapters import LoraConfig, XLoraConfig
from xinfer.models.common import DecoderModel
from xinfer.models.kv_cache import KVCache

if TYPE_CHECKING:
    from xinfer.pipeline.non_granular import NonGranularState

logger = logging.getLogger(__name__)

# Never wrapped, even when an adapter lists them.
_SKIP_NAMES = {"embed_tokens", "lm_head"}


class ScalingState:
    """Adapter scalings visible to every :class:`LoraLinear` during one pass.

    ``scalings`` is ``[batch, seq_len or 1, num_layers, num_adapters]``, or
    ``None`` to apply every adapter with weight 1.
    """

    def __init__(self) -> None:
        self.scalings: Tensor | None = None


class LoraLinear(nn.Module):
    """``nn.Linear`` plus one low-rank update per adapter.

    Computes ``base(x) + sum_i s_i * scale_i * B_i(A_i(x))`` where ``s_i``
    comes from the shared :class:`ScalingState`.

    Args:
        base: The wrapped linear layer.
        adapters: ``(adapter_index, config)`` for each adapter targeting this layer.
        layer_index: Which scaling layer this module reads.
        state: Shared scaling state.
    """

    def __init__(
        self,
        base: nn.Linear,
        adapters: list[tuple[int, LoraConfig]],
        layer_index: int,
        state: ScalingState,
    ) -> None:
        super().__init__()
        self.base = base
        self.layer_index = layer_index
        self.state = state
        self.adapter_indices = [index for index, _ in adapters]
        self.scales = [config.scale for _, config in adapters]
        self.lora_a = nn.ModuleList(
            [nn.Linear(base.in_features, config.r, bias=False) for _, config in adapters]
        )
        self.lora_b = nn.ModuleList(
            [nn.Linear(config.r, base.out_features, bias=False) for _, config in adapters]
        )
        self.dropouts = nn.ModuleList([nn.Dropout(config.lora_dropout) for _, config in adapters])
        for b in self.lora_b:
            nn.init.zeros_(b.weight)

    def forward(self, x: Tensor) -> Tensor:
        out = self.base(x)
        scalings = self.state.scalings
        for slot, adapter_index in enumerate(self.adapter_indices):
            delta = self.lora_b[slot](self.lora_a[slot](self.dropouts[slot](x))) * self.scales[slot]
            if scalings is not None:
                weight = scalings[:, :, self.layer_index, adapter_index : adapter_index + 1]
                delta = delta * weight.to(delta.dtype)
            out = out + delta
        return out


def replace_linear_with_lora(
    model: nn.Module,
    adapters: list[LoraConfig],
    state: ScalingState,
    layers: dict[str, int] | None = None,
) -> dict[str, LoraLinear]:
    """Wrap every ``nn.Linear`` targeted by at least one adapter in a :class:`LoraLinear`.

    Args:
        model: The model to modify in place.
        adapters: Adapter configs, in ordering order.
        state: Scaling state shared by all wrapped layers.
        layers: Optional map from module path to scaling layer index.  Paths
            may carry a leading ``model.``.  When omitted, layers are numbered
            in traversal order.

    Returns:
        The wrapped modules keyed by module path, in traversal order.

    Raises:
        ValueError: If no module is targeted, or ``layers`` misses a targeted module.
    """
    layer_map = None
    if layers is not None:
        layer_map = {path.removeprefix("model."): index for path, index in layers.items()}

    wrapped: dict[str, LoraLinear] = {}
    for parent_name, parent_module in list(model.named_modules()):
        for name, child in list(parent_module.named_children()):
            if not isinstance(child, nn.Linear) or name in _SKIP_NAMES:
                continue
            targeting = [(i, cfg) for i, cfg in enumerate(adapters) if name in cfg.target_modules]
            if not targeting:
                continue
            full_name = f"{parent_name}.{name}" if parent_name else name
            if layer_map is None:
                layer_index = len(wrapped)
            elif full_name in layer_map:
                layer_index = layer_map[full_name]
            else:
                raise ValueError(f"adapter ordering has no layer index for {full_name}")
            lora = LoraLinear(child, targeting, layer_index, state)
            lora.to(device=child.weight.device, dtype=child.weight.dtype)
            setattr(parent_module, name, lora)
            wrapped[full_name] = lora

    if not wrapped:
        raise ValueError("no module of the model is targeted by any adapter")
    return wrapped


# ---------------------------------------------------------------------------
# Classifier
# ---------------------------------------------------------------------------


class XLoraClassifier(nn.Module):
    """Predicts per-token adapter scalings from the scaling pass hidden states.

    Args:
        config: Classifier configuration.
        num_adapters: Number of adapters.
        num_layers: Number of LoRA scaling layers.
    """

    def __init__(self, config: XLoraConfig, num_adapters: int, num_layers: int) -> None:
        super().__init__()
        self.config = config
        self.num_adapters = num_adapters
        self.num_layers = num_layers
        out_features = num_adapters * (num_layers if config.layerwise_scalings else 1)

        modules: list[nn.Module] = []
        in_features = config.hidden_size
        for _ in range(config.xlora_depth - 1):
            modules.append(nn.Linear(in_features, config.xlora_size, bias=True))
            if config.enable_relu_and_dropout:
                modules.append(nn.ReLU())
                modules.append(nn.Dropout(config.xlora_dropout_p))
            in_features = config.xlora_size
        modules.append(nn.Linear(in_features, out_features, bias=True))
        self.layers = nn.Sequential(*modules)

    def forward(self, hidden: Tensor) -> Tensor:
        """Map ``[batch, seq_len, hidden]`` to scalings ``[batch, seq_len, layers, adapters]``."""
        batch, seq_len, _ = hidden.shape
        logits = self.layers(hidden).float()
        if self.config.layerwise_scalings:
            logits = logits.view(batch, seq_len, self.num_layers, self.num_adapters)
        else:
            logits = logits.view(batch, seq_len, 1, self.num_adapters)
            logits = logits.expand(batch, seq_len, self.num_layers, self.num_adapters)

        if self.config.enable_softmax:
            scalings = torch.softmax(logits / self.config.softmax_temperature, dim=-1)
        else:
            scalings = logits

        top_k = self.config.top_k_lora
        if top_k is not None and top_k < self.num_adapters:
            _, keep = torch.topk(scalings, top_k, dim=-1)
            kept = torch.zeros_like(scalings, dtype=torch.bool).scatter_(-1, keep, True)
            if self.config.enable_softmax_topk:
                scalings = torch.softmax(scalings.masked_fill(~kept, float("-inf")), dim=-1)
            else:
                scalings = scalings.masked_fill(~kept, 0.0)
        return scalings * self.config.global_scaling_weight


# ---------------------------------------------------------------------------
# Model wrapper
# ---------------------------------------------------------------------------


class XLoraModel(nn.Module):
    """A base decoder with LoRA adapters and an optional X-LoRA classifier.

    Args:
        base: The base model; modified in place.
        adapter_names: Adapter names, in ordering order.
        adapters: Adapter configs, parallel to ``adapter_names``.
        layers: Optional module path to scaling layer index map.
        classifier_config: X-LoRA classifier config, or ``None`` for a plain
            LoRA model.
    """

    def __init__(
        self,
        base: DecoderModel,
        adapter_names: list[str],
        adapters: list[LoraConfig],
        *,
        layers: dict[str, int] | None = None,
        classifier_config: XLoraConfig | None = None,
    ) -> None:
        super().__init__()
        self.base = base
        self.adapter_names = list(adapter_names)
        self.scaling_state = ScalingState()
        self.lora_layers = replace_linear_with_lora(base, adapters, self.scaling_state, layers)
        self.num_scaling_layers = max(m.layer_index for m in self.lora_layers.values()) + 1

        self.classifier: XLoraClassifier | None = None
        if classifier_config is not None:
            self.classifier = XLoraClassifier(
                classifier_config, len(adapter_names), self.num_scaling_layers
            )
        self.xlora_cache = KVCache(len(base.layers))
        self.frozen_scalings: Tensor | None = None

    @property
    def kv_cache(self) -> KVCache:
        return self.base.kv_cache

    @property
    def max_seq_len(self) -> int:
        return self.base.max_seq_len

    def reset_caches(self) -> None:
        self.base.kv_cache.reset()
        self.xlora_cache.reset()

    # -- weights ------------------------------------------------------------

    def load_adapter_weights(self, adapter_tensors: dict[str, dict[str, Tensor]]) -> None:
        """Copy PEFT adapter tensors into the wrapped layers.

        Args:
            adapter_tensors: Per adapter name, tensors keyed by
                ``<module path>.lora_A.weight`` / ``<module path>.lora_B.weight``.

        Raises:
            ValueError: If a tensor is missing, unexpected, or mis-shaped.
        """
        for name, tensors in adapter_tensors.items():
            if name not in self.adapter_names:
                raise ValueError(f"weights given for unknown adapter {name!r}")
            adapter_index = self.adapter_names.index(name)
            remaining = dict(tensors)
            for path, layer in self.lora_layers.items():
                if adapter_index not in layer.adapter_indices:
                    continue
                slot = layer.adapter_indices.index(adapter_index)
                for key, target in (("lora_A", layer.lora_a[slot]), ("lora_B", layer.lora_b[slot])):
                    tensor = remaining.pop(f"{path}.{key}.weight", None)
                    if tensor is None:
                        raise ValueError(f"adapter {name!r} is missing {path}.{key}.weight")
                    if tensor.shape != target.weight.shape:
                        raise ValueError(
                            f"adapter {name!r}: {path}.{key}.weight has shape "
                            f"{tuple(tensor.shape)}, expected {tuple(target.weight.shape)}"
                        )
                    with torch.no_grad():
                        target.weight.copy_(tensor)
            if remaining:
                raise ValueError(
                    f"adapter {name!r} has {len(remaining)} unexpected tensor(s): "
                    f"{sorted(remaining)[:5]}"
                )

    def load_classifier_weights(self, tensors: dict[str, Tensor]) -> None:
        """Load the classifier state dict (``layers.<i>.weight`` / ``.bias`` names)."""
        if self.classifier is None:
            raise ValueError("classifier weights given for a LoRA model")
        self.classifier.load_state_dict(tensors, strict=True)

    # -- forward ------------------------------------------------------------

    def _scalings(
        self,
        input_ids: Tensor,
        seqlen_offsets: list[int],
        input_mask: Tensor,
        context_lens: list[tuple[int, int]],
        cache: KVCache | None,
        non_granular_state: NonGranularState | None,
        is_prompt: bool,
    ) -> Tensor:
        assert self.classifier is not None
        batch, seq_len = input_ids.shape
        frozen = self.frozen_scalings
        if (
            non_granular_state is not None
            and frozen is not None
            and not is_prompt
            and frozen.shape[0] == batch
        ):
            return frozen

        self.scaling_state.scalings = torch.full(
            (batch, seq_len, self.num_scaling_layers, len(self.adapter_names)),
            self.classifier.config.scaling_pass_value,
            device=input_ids.device,
        )
        try:
            hidden = self.base.hidden_states(input_ids, seqlen_offsets, input_mask, cache)
        finally:
            self.scaling_state.scalings = None
        scalings = self.classifier(hidden)

        if non_granular_state is not None and non_granular_state.reached_target():
            # Each row keeps its scalings at its last requested position; they
            # broadcast over every later pass of this batch.
            last = torch.tensor(
                [start + length - 1 for start, length in context_lens], device=scalings.device
            )
            rows = torch.arange(batch, device=scalings.device)
            self.frozen_scalings = scalings[rows, last].unsqueeze(1).detach()
            logger.debug(
                "Froze X-LoRA scalings at step %d", non_granular_state.non_granular_index
            )
        return scalings

    def forward(
        self,
        input_ids: Tensor,
        seqlen_offsets: list[int],
        input_mask: Tensor,
        context_lens: list[tuple[int, int]],
        *,
        input_ids_full: Tensor | None = None,
        seqlen_offsets_full: list[int] | None = None,
        input_mask_full: Tensor | None = None,
        no_kv_cache: bool = False,
        non_granular_state: NonGranularState | None = None,
        is_prompt: bool = False,
    ) -> Tensor:
        """Forward pass returning logits ``[batch, length, vocab_size]``.

        With ``no_kv_cache`` both passes run over the full inputs without a
        cache; otherwise both run over ``input_ids`` against their caches.

        Frozen scalings are reused only by later calls for the batch that
        froze them.  A prompt call, or a call whose batch size differs, runs
        the scaling pass again and, once the target step has been reached,
        freezes its own scalings instead.

        Raises:
            MissingFullInputsError: If an X-LoRA call lacks the full inputs.
        """
        if self.classifier is None:
            self.scaling_state.scalings = None
            return self.base(
                input_ids, seqlen_offsets, input_mask, context_lens, use_cache=not no_kv_cache
            )

        if input_ids_full is None or seqlen_offsets_full is None or input_mask_full is None:
            raise MissingFullInputsError("X-LoRA forward requires the full-context inputs")

        if no_kv_cache:
            input_ids, input_mask = input_ids_full, input_mask_full
            seqlen_offsets = seqlen_offsets_full
            scaling_cache, main_cache = None, None
        else:
            scaling_cache, main_cache = self.xlora_cache, self.base.kv_cache

        scalings = self._scalings(
            input_ids,
            seqlen_offsets,
            input_mask,
            context_lens,
            scaling_cache,
            non_granular_state,
            is_prompt,
        )
        self.scaling_state.scalings = scalings
        try:
            hidden = self.base.hidden_states(input_ids, seqlen_offsets, input_mask, main_cache)
        finally:
            self.scaling_state.scalings = None
        if non_granular_state is not None:
            non_granular_state.advance()
        return self.base.logits(hidden, context_lens)
