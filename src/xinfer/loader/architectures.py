"""Per-architecture pieces plugged into the generic loader."""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field

from xinfer.loader.config import ModelConfig
from xinfer.models.common import DecoderModel
from xinfer.models.gemma import GemmaModel
from xinfer.models.llama import LlamaModel


def _no_checks(config: ModelConfig) -> None:
    return None


def _validate_gemma(config: ModelConfig) -> None:
    if config.head_dim is None:
        raise ValueError("gemma config must set head_dim")
    if config.hidden_act is None and config.hidden_activation is None:
        raise ValueError("gemma config must set hidden_act or hidden_activation")


@dataclass(frozen=True)
class Architecture:
    """What the loader needs to know about one model family.

    Attributes:
        name: Registry key, also accepted on the command line.
        build_model: Constructs an uninitialized model from its config.
        validate_config: Raises ``ValueError`` for configs the family cannot use.
        extra_eos_tokens: Stop markers beyond the chat template's EOS token,
            added to the EOS set when the tokenizer knows them.
    """

    name: str
    build_model: Callable[[ModelConfig], DecoderModel]
    validate_config: Callable[[ModelConfig], None] = _no_checks
    extra_eos_tokens: tuple[str, ...] = field(default=())


LLAMA = Architecture(name="llama", build_model=LlamaModel, extra_eos_tokens=("<|eot_id|>",))
GEMMA = Architecture(name="gemma", build_model=GemmaModel, validate_config=_validate_gemma)

ARCHITECTURES: dict[str, Architecture] = {arch.name: arch for arch in (LLAMA, GEMMA)}


def get_architecture(name: str) -> Architecture:
    """Look up an architecture by name.

    Raises:
        ValueError: If ``name`` is not registered.
    """
    arch = ARCHITECTURES.get(name)
    if arch is None:
        raise ValueError(f"Unknown architecture: {name!r}. Supported: {sorted(ARCHITECTURES)}")
    return arch
