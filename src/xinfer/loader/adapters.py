"""Adapter configs: PEFT LoRA adapters, the X-LoRA classifier, and the adapter ordering."""

from __future__ import annotations

import json
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any


def _read_json_object(path: str | Path) -> dict[str, Any]:
    with open(path) as f:
        raw = json.load(f)
    if not isinstance(raw, dict):
        raise ValueError(f"{path} must contain a JSON object")
    return raw


def _known(cls: type, raw: dict[str, Any]) -> dict[str, Any]:
    names = {f.name for f in fields(cls)}
    return {k: v for k, v in raw.items() if k in names and v is not None}


@dataclass
class LoraConfig:
    """One PEFT-format LoRA adapter (``adapter_config.json``)."""

    r: int
    lora_alpha: float
    lora_dropout: float = 0.0
    target_modules: list[str] = field(default_factory=list)

    @property
    def scale(self) -> float:
        """Multiplier applied to the low-rank update (``alpha / r``)."""
        return self.lora_alpha / self.r

    def validate(self) -> None:
        if self.r < 1:
            raise ValueError(f"r must be >= 1, got {self.r}")
        if not 0.0 <= self.lora_dropout < 1.0:
            raise ValueError(f"lora_dropout must be in [0, 1), got {self.lora_dropout}")
        if not self.target_modules:
            raise ValueError("target_modules must not be empty")


@dataclass
class XLoraConfig:
    """Configuration for the X-LoRA scaling classifier (``xlora_config.json``)."""

    hidden_size: int
    xlora_depth: int = 1
    xlora_size: int = 2048
    enable_softmax: bool = True
    enable_softmax_topk: bool = False
    softmax_temperature: float = 1.0
    layerwise_scalings: bool = False
    enable_relu_and_dropout: bool = True
    xlora_dropout_p: float = 0.2
    top_k_lora: int | None = None
    scaling_pass_value: float = 0.0
    global_scaling_weight: float = 1.0

    def validate(self) -> None:
        if self.xlora_depth < 1:
            raise ValueError(f"xlora_depth must be >= 1, got {self.xlora_depth}")
        if self.softmax_temperature <= 0:
            raise ValueError(
                f"softmax_temperature must be > 0, got {self.softmax_temperature}"
            )
        if self.top_k_lora is not None and self.top_k_lora < 1:
            raise ValueError(f"top_k_lora must be >= 1, got {self.top_k_lora}")
        if self.enable_softmax_topk and self.top_k_lora is None:
            raise ValueError("enable_softmax_topk requires top_k_lora")


@dataclass
class Ordering:
    """Adapter ordering for an X-LoRA or LoRA model.

    Attributes:
        adapters: Adapter names, in the order the classifier outputs them.
            Each name is a subdirectory of the adapter repo.
        layers: Maps a dotted module path (e.g.
            ``model.layers.0.self_attn.q_proj``) to its scaling layer index.
            When absent, layers are numbered in module traversal order.
        base_model_id: The base model repo; used when no model id is given.
    """

    adapters: list[str]
    base_model_id: str
    layers: dict[str, int] | None = None

    def validate(self) -> None:
        if not self.adapters:
            raise ValueError("ordering must name at least one adapter")
        if len(set(self.adapters)) != len(self.adapters):
            raise ValueError(f"duplicate adapter names in ordering: {self.adapters}")
        if self.layers is not None:
            indices = sorted(set(self.layers.values()))
            if indices != list(range(len(indices))):
                raise ValueError("ordering layer indices must be contiguous from 0")


def load_lora_config(path: str | Path) -> LoraConfig:
    """Read a PEFT ``adapter_config.json``."""
    config = LoraConfig(**_known(LoraConfig, _read_json_object(path)))
    config.validate()
    return config


def load_xlora_config(path: str | Path) -> XLoraConfig:
    """Read an ``xlora_config.json``."""
    config = XLoraConfig(**_known(XLoraConfig, _read_json_object(path)))
    config.validate()
    return config


def load_ordering(path: str | Path) -> Ordering:
    """Read an ordering file.

    The file is a JSON object with ``order`` (adapter names), ``base_model_id``,
    and an optional ``layers`` map.
    """
    raw = _read_json_object(path)
    if "order" not in raw or "base_model_id" not in raw:
        raise ValueError(f"{path} must define 'order' and 'base_model_id'")
    ordering = Ordering(
        adapters=list(raw["order"]),
        base_model_id=raw["base_model_id"],
        layers=raw.get("layers"),
    )
    ordering.validate()
    return ordering
