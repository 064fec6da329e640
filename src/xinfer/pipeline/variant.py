"""The closed set of model variants a pipeline can hold."""

from __future__ import annotations

from dataclasses import dataclass

from xinfer.models.common import DecoderModel
from xinfer.models.xlora import XLoraModel


@dataclass
class NormalVariant:
    """A plain base model."""

    model: DecoderModel


@dataclass
class XLoraVariant:
    """A base model with adapters.

    Attributes:
        model: The adapter-wrapped model.
        is_lora: ``True`` for a LoRA model (fixed scalings, no classifier).
    """

    model: XLoraModel
    is_lora: bool


ModelVariant = NormalVariant | XLoraVariant
