"""Thin wrapper around a HuggingFace fast tokenizer.

Provides a stable interface so the rest of the codebase doesn't import
``transformers`` directly.
"""

from __future__ import annotations

import json
from pathlib import Path

from transformers import PreTrainedTokenizerBase, PreTrainedTokenizerFast

from xinfer.errors import TokenizerLoadError


class Tokenizer:
    """Wrapper around a HuggingFace tokenizer.

    Args:
        backend: The underlying HuggingFace tokenizer.
    """

    def __init__(self, backend: PreTrainedTokenizerBase) -> None:
        self._tokenizer = backend

    @classmethod
    def from_file(cls, tokenizer_json: str | Path) -> Tokenizer:
        """Build a tokenizer from a ``tokenizer.json`` file.

        Raises:
            TokenizerLoadError: If the file is missing or malformed.
        """
        try:
            backend = PreTrainedTokenizerFast(tokenizer_file=str(tokenizer_json))
        except Exception as exc:  # the tokenizers backend raises a bare Exception
            raise TokenizerLoadError(f"cannot load tokenizer from {tokenizer_json}: {exc}") from exc
        return cls(backend)

    def encode(self, text: str, *, add_special_tokens: bool = True) -> list[int]:
        """Encode text to token IDs.

        Args:
            text: The string to tokenize.
            add_special_tokens: Whether to apply the tokenizer's post-processor
                (e.g. prepend BOS).

        Returns:
            List of integer token IDs.
        """
        return self._tokenizer.encode(text, add_special_tokens=add_special_tokens)

    def decode(self, token_ids: list[int], *, skip_special_tokens: bool = True) -> str:
        """Decode token IDs back to text."""
        result = self._tokenizer.decode(token_ids, skip_special_tokens=skip_special_tokens)
        assert isinstance(result, str)  # single list always returns str
        return result

    def token_to_id(self, token: str) -> int | None:
        """Return the id of an exact vocabulary entry, or ``None`` if absent."""
        return self.get_vocab().get(token)

    @property
    def vocab_size(self) -> int:
        """Number of token ids, including added tokens."""
        return len(self._tokenizer)

    @property
    def special_token_ids(self) -> set[int]:
        """Ids of tokens that carry no text (BOS, EOS, chat markers, ...)."""
        ids = set(self._tokenizer.all_special_ids)
        for token_id, added in self._tokenizer.added_tokens_decoder.items():
            if added.special:
                ids.add(token_id)
        return ids

    @property
    def is_byte_level(self) -> bool:
        """Whether vocabulary entries are GPT-2 style byte-level strings."""
        backend = getattr(self._tokenizer, "backend_tokenizer", None)
        if backend is None:
            return False
        decoder = json.loads(backend.to_str()).get("decoder") or {}
        if decoder.get("type") == "Sequence":
            return any(d.get("type") == "ByteLevel" for d in decoder.get("decoders", []))
        return decoder.get("type") == "ByteLevel"

    def get_vocab(self) -> dict[str, int]:
        """Return the full vocabulary as a mapping from token string to token ID."""
        return self._tokenizer.get_vocab()
