"""Generic loader: resolve a model kind's artifacts and build a pipeline.

One routine serves every architecture.  The architecture only contributes
its config checks, its model constructor, and its extra stop markers (see
:mod:`xinfer.loader.architectures`).

Loading happens in two steps:

1. :meth:`Loader.download_model` locates every file (fetching Hub repos when
   needed) without reading them.
2. :meth:`Loader.setup_model` parses the files, builds the model variant,
   and wraps everything in a :class:`~xinfer.pipeline.PipelineHandle`.
"""

from __future__ import annotations

import enum
import logging
from dataclasses import dataclass

import torch
from torch import Tensor

from xinfer.errors import ModelLoadError, UnsupportedModelKindError
from xinfer.grammar.toktrie import VocabularyTrie
from xinfer.loader.adapters import (
    LoraConfig,
    Ordering,
    XLoraConfig,
    load_lora_config,
    load_ordering,
    load_xlora_config,
)
from xinfer.loader.architectures import Architecture, get_architecture
from xinfer.loader.chat_template import ChatTemplate
from xinfer.loader.config import ModelConfig, load_config
from xinfer.loader.paths import ModelPaths, TokenSource, resolve_model_paths
from xinfer.loader.tokenizer import Tokenizer
from xinfer.loader.weights import load_safetensors, strip_prefixes
from xinfer.models.common import DecoderModel
from xinfer.models.xlora import XLoraModel
from xinfer.pipeline.non_granular import NonGranularState
from xinfer.pipeline.pipeline import GenerationMetadata, Pipeline, PipelineHandle
from xinfer.pipeline.variant import ModelVariant, NormalVariant, XLoraVariant

logger = logging.getLogger(__name__)

_BASE_PREFIXES = ("model.",)
_ADAPTER_PREFIXES = ("base_model.model.model.", "base_model.model.")
_CLASSIFIER_PREFIXES = ("internal_xlora_classifier.",)


class ModelKind(enum.Enum):
    """Every model kind a request may name."""

    NORMAL = "normal"
    XLORA_NORMAL = "xlora-normal"
    LORA_NORMAL = "lora-normal"
    QUANTIZED_GGUF = "quantized-gguf"
    QUANTIZED_GGML = "quantized-ggml"
    XLORA_GGUF = "xlora-gguf"
    XLORA_GGML = "xlora-ggml"
    LORA_GGUF = "lora-gguf"
    LORA_GGML = "lora-ggml"

    @property
    def is_adapter(self) -> bool:
        return self in (ModelKind.XLORA_NORMAL, ModelKind.LORA_NORMAL)

    @property
    def is_supported(self) -> bool:
        return self in _SUPPORTED_KINDS


_SUPPORTED_KINDS = frozenset({ModelKind.NORMAL, ModelKind.XLORA_NORMAL, ModelKind.LORA_NORMAL})


@dataclass
class LoaderConfig:
    """What to load and how.

    Attributes:
        model_id: Base model directory or Hub repo id.  May be omitted for
            adapter kinds; the ordering's ``base_model_id`` is used then.
        kind: The model kind.
        architecture: Architecture name (``llama`` or ``gemma``).
        repeat_last_n: Trailing tokens the repetition penalties look at.
        xlora_model_id: Adapter repo (adapter kinds only).
        xlora_order_path: Adapter ordering JSON file (adapter kinds only).
        no_kv_cache: Recompute the full context on every forward call.
        chat_template: Override path for the chat template JSON.
        tokenizer_json: Override path for tokenizer.json.
        tgt_non_granular_index: Step at which X-LoRA scalings freeze.
    """

    model_id: str | None = None
    kind: ModelKind = ModelKind.NORMAL
    architecture: str = "llama"
    repeat_last_n: int = 64
    xlora_model_id: str | None = None
    xlora_order_path: str | None = None
    no_kv_cache: bool = False
    chat_template: str | None = None
    tokenizer_json: str | None = None
    tgt_non_granular_index: int | None = None

    def validate(self) -> None:
        """Reject kind and option combinations this loader cannot serve.

        Raises:
            UnsupportedModelKindError: For quantized kinds.
            ValueError: For inconsistent options.
        """
        if not self.kind.is_supported:
            raise UnsupportedModelKindError(
                f"model kind {self.kind.value!r} is not supported; expected one of "
                f"{sorted(k.value for k in _SUPPORTED_KINDS)}"
            )
        get_architecture(self.architecture)
        if self.repeat_last_n < 0:
            raise ValueError(f"repeat_last_n must be >= 0, got {self.repeat_last_n}")
        if self.tgt_non_granular_index is not None and self.tgt_non_granular_index < 0:
            raise ValueError(
                f"tgt_non_granular_index must be >= 0, got {self.tgt_non_granular_index}"
            )
        if self.kind.is_adapter:
            if self.xlora_order_path is None:
                raise ValueError(f"{self.kind.value} models require an adapter ordering file")
            if self.xlora_model_id is None:
                raise ValueError(f"{self.kind.value} models require an adapter model id")
        elif self.model_id is None:
            raise ValueError("model_id is required")


def default_dtype(device: torch.device) -> torch.dtype:
    """Reduced precision on accelerators, full precision otherwise."""
    return torch.bfloat16 if device.type == "cuda" else torch.float32


class Loader:
    """Builds pipelines for one :class:`LoaderConfig`.

    Construction validates the configuration and reads the adapter ordering,
    so unsupported requests fail before anything is fetched.

    Raises:
        UnsupportedModelKindError: If the kind cannot be served.
        ModelLoadError: If the ordering file cannot be read.
        ValueError: If the options are inconsistent.
    """

    def __init__(self, config: LoaderConfig) -> None:
        config.validate()
        self.config = config
        self.architecture: Architecture = get_architecture(config.architecture)

        self.ordering: Ordering | None = None
        if config.kind.is_adapter:
            assert config.xlora_order_path is not None
            try:
                self.ordering = load_ordering(config.xlora_order_path)
            except (OSError, ValueError) as exc:
                raise ModelLoadError(
                    f"cannot read adapter ordering {config.xlora_order_path}: {exc}"
                ) from exc

        model_id = config.model_id
        if model_id is None:
            assert self.ordering is not None
            model_id = self.ordering.base_model_id
            logger.info("Using base model %s from the adapter ordering", model_id)
        self.model_id: str = model_id

    def get_id(self) -> str:
        """The adapter repo id when there is one, else the model id."""
        return self.config.xlora_model_id or self.model_id

    def get_kind(self) -> ModelKind:
        return self.config.kind

    # -- step 1: locate files -----------------------------------------------

    def download_model(
        self,
        revision: str | None = None,
        token_source: TokenSource | None = None,
    ) -> ModelPaths:
        """Locate every artifact of the model without reading it.

        Raises:
            ModelLoadError: If a repo cannot be fetched or a file is missing.
        """
        token = (token_source or TokenSource("cache")).resolve()
        return resolve_model_paths(
            self.model_id,
            revision=revision,
            token=token,
            tokenizer_json=self.config.tokenizer_json,
            chat_template=self.config.chat_template,
            xlora_model_id=self.config.xlora_model_id,
            ordering=self.ordering,
            with_classifier=self.config.kind is ModelKind.XLORA_NORMAL,
        )

    # -- step 2: build ------------------------------------------------------

    def setup_model(
        self,
        paths: ModelPaths,
        dtype: torch.dtype | None = None,
        device: str | torch.device = "cpu",
    ) -> PipelineHandle:
        """Parse the artifacts and build a pipeline.

        Args:
            paths: Output of :meth:`download_model`.
            dtype: Weight dtype; chosen from the device when ``None``.
            device: Device to place the model on.

        Raises:
            ModelLoadError: If any artifact is malformed; no pipeline is built.
            TokenizerLoadError: If the tokenizer cannot be constructed.
        """
        device = torch.device(device)
        if dtype is None:
            dtype = default_dtype(device)

        try:
            config = load_config(paths.config)
            self.architecture.validate_config(config)
        except (OSError, ValueError) as exc:
            raise ModelLoadError(f"invalid model config {paths.config}: {exc}") from exc
        logger.info("Model config: %s", config)
        logger.info("Loading %s onto %s as %s", self.model_id, device, dtype)

        tokenizer = Tokenizer.from_file(paths.tokenizer)
        try:
            chat_template = ChatTemplate.from_file(paths.template)
        except (OSError, ValueError) as exc:
            raise ModelLoadError(f"invalid chat template {paths.template}: {exc}") from exc

        try:
            variant = self._build_variant(config, paths, dtype, device)
        except (OSError, ValueError, RuntimeError) as exc:
            raise ModelLoadError(f"cannot load weights for {self.model_id}: {exc}") from exc

        eos_tok = self._eos_token_ids(chat_template, tokenizer)
        tok_trie = VocabularyTrie.from_tokenizer(tokenizer, eos_tok)

        non_granular_state = None
        if self.config.tgt_non_granular_index is not None:
            non_granular_state = NonGranularState(self.config.tgt_non_granular_index)

        pipeline = Pipeline(
            model_id=self.get_id(),
            variant=variant,
            tokenizer=tokenizer,
            tok_trie=tok_trie,
            chat_template=chat_template,
            metadata=GenerationMetadata(
                repeat_last_n=self.config.repeat_last_n,
                eos_tok=eos_tok,
                no_kv_cache=self.config.no_kv_cache,
            ),
            device=device,
            non_granular_state=non_granular_state,
        )
        return PipelineHandle(pipeline)

    def load_model(
        self,
        revision: str | None = None,
        token_source: TokenSource | None = None,
        dtype: torch.dtype | None = None,
        device: str | torch.device = "cpu",
    ) -> PipelineHandle:
        """:meth:`download_model` followed by :meth:`setup_model`."""
        paths = self.download_model(revision=revision, token_source=token_source)
        return self.setup_model(paths, dtype=dtype, device=device)

    def _build_variant(
        self,
        config: ModelConfig,
        paths: ModelPaths,
        dtype: torch.dtype,
        device: torch.device,
    ) -> ModelVariant:
        base = self.architecture.build_model(config)
        _load_base_weights(base, paths, dtype)

        variant: ModelVariant
        if self.config.kind is ModelKind.NORMAL:
            variant = NormalVariant(base)
        else:
            variant = XLoraVariant(
                self._wrap_adapters(base, paths, dtype),
                is_lora=self.config.kind is ModelKind.LORA_NORMAL,
            )
        variant.model.to(device=device, dtype=dtype)
        variant.model.eval()
        return variant

    def _wrap_adapters(
        self, base: DecoderModel, paths: ModelPaths, dtype: torch.dtype
    ) -> XLoraModel:
        assert self.ordering is not None and paths.adapters is not None
        adapter_configs: list[LoraConfig] = [load_lora_config(p.config) for p in paths.adapters]
        classifier_config: XLoraConfig | None = None
        if self.config.kind is ModelKind.XLORA_NORMAL:
            assert paths.classifier_config is not None
            classifier_config = load_xlora_config(paths.classifier_config)

        model = XLoraModel(
            base,
            [a.name for a in paths.adapters],
            adapter_configs,
            layers=self.ordering.layers,
            classifier_config=classifier_config,
        )
        adapter_tensors = {}
        for adapter in paths.adapters:
            tensors = load_safetensors([adapter.weights], dtype=dtype)
            adapter_tensors[adapter.name] = strip_prefixes(tensors, _ADAPTER_PREFIXES)
        model.load_adapter_weights(adapter_tensors)
        if classifier_config is not None:
            assert paths.classifier_weights is not None
            tensors = load_safetensors([paths.classifier_weights], dtype=dtype)
            model.load_classifier_weights(strip_prefixes(tensors, _CLASSIFIER_PREFIXES))
        logger.info(
            "Loaded %d adapter(s): %s", len(paths.adapters), ", ".join(model.adapter_names)
        )
        return model

    def _eos_token_ids(
        self, chat_template: ChatTemplate, tokenizer: Tokenizer
    ) -> tuple[int, ...]:
        """EOS IDs: the chat template's EOS token plus known architecture stop markers."""
        try:
            eos_token = chat_template.eos_tok()
        except ValueError as exc:
            raise ModelLoadError(str(exc)) from exc
        eos_id = tokenizer.token_to_id(eos_token)
        if eos_id is None:
            raise ModelLoadError(f"EOS token {eos_token!r} is not in the tokenizer vocabulary")

        eos_ids = [eos_id]
        for marker in self.architecture.extra_eos_tokens:
            marker_id = tokenizer.token_to_id(marker)
            if marker_id is not None and marker_id not in eos_ids:
                eos_ids.append(marker_id)
        logger.info(
            "BOS token %r, EOS token %r, UNK token %r",
            chat_template.bos_token,
            eos_token,
            chat_template.unk_token,
        )
        logger.info("EOS token ids: %s", eos_ids)
        return tuple(eos_ids)


def _load_base_weights(model: DecoderModel, paths: ModelPaths, dtype: torch.dtype) -> None:
    """Copy the checkpoint into ``model``; the tied LM head is filled from the embeddings."""
    tensors: dict[str, Tensor] = strip_prefixes(
        load_safetensors(paths.weights, dtype=dtype), _BASE_PREFIXES
    )
    if model.lm_head.weight is model.embed_tokens.weight and "embed_tokens.weight" in tensors:
        tensors["lm_head.weight"] = tensors["embed_tokens.weight"]
    missing, unexpected = model.load_state_dict(tensors, strict=False)
    if missing or unexpected:
        raise ValueError(
            f"checkpoint mismatch: missing {sorted(missing)[:5]}, "
            f"unexpected {sorted(unexpected)[:5]}"
        )
