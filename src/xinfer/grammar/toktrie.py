"""Vocabulary trie: which tokens may follow the text a recognizer has seen.

Every token with a textual form is inserted into a character trie.  Walking
the trie depth-first while pushing characters into a recognizer visits each
shared prefix once, and a subtree is skipped as soon as the recognizer
rejects its first character.

End-of-sequence tokens carry no text; they are allowed exactly when the
recognizer is in an accepting state.  Other special tokens and tokens whose
bytes are not valid UTF-8 on their own are never allowed under a grammar.
"""

from __future__ import annotations

from collections.abc import Iterable, Iterator, Mapping

import torch
from torch import Tensor

from xinfer.errors import GrammarRejectionError
from xinfer.grammar.recognizer import Recognizer
from xinfer.loader.tokenizer import Tokenizer


def _bytes_to_unicode() -> dict[int, str]:
    """GPT-2's reversible byte <-> printable character table."""
    bs = (
        list(range(ord("!"), ord("~") + 1))
        + list(range(ord("¡"), ord("¬") + 1))
        + list(range(ord("®"), ord("ÿ") + 1))
    )
    cs = bs[:]
    n = 0
    for b in range(256):
        if b not in bs:
            bs.append(b)
            cs.append(256 + n)
            n += 1
    return dict(zip(bs, map(chr, cs)))


_BYTE_DECODER = {ch: b for b, ch in _bytes_to_unicode().items()}


def decode_token_string(token_str: str, *, byte_level: bool) -> str | None:
    """Decode a raw vocabulary entry to the text it produces.

    Handles common tokenizer conventions:

    - Byte-level BPE (GPT-2 style): every character stands for one byte.
    - SentencePiece: ``\\u2581`` (lower one eighth block) is a space.
    - Byte-fallback tokens: ``<0xAB>``.

    Returns:
        The decoded text, or ``None`` if the token has no standalone text.
    """
    if byte_level:
        try:
            raw = bytes(_BYTE_DECODER[ch] for ch in token_str)
            return raw.decode("utf-8") or None
        except (KeyError, UnicodeDecodeError):
            return None

    if len(token_str) == 6 and token_str.startswith("<0x") and token_str.endswith(">"):
        try:
            byte_val = int(token_str[3:5], 16)
        except ValueError:
            pass
        else:
            # Bytes >= 0x80 are fragments of a multi-byte character.
            return chr(byte_val) if byte_val < 0x80 else None

    return token_str.replace("▁", " ") or None


# ---------------------------------------------------------------------------
# Token sets
# ---------------------------------------------------------------------------


class TokenSet:
    """A set of token IDs drawn from a vocabulary of fixed size.

    Args:
        vocab_size: Size of the vocabulary the IDs index into.
        token_ids: Initial members.
    """

    def __init__(self, vocab_size: int, token_ids: Iterable[int] = ()) -> None:
        self.vocab_size = vocab_size
        self._ids: set[int] = set(token_ids)

    def add(self, token_id: int) -> None:
        self._ids.add(token_id)

    def __contains__(self, token_id: object) -> bool:
        return token_id in self._ids

    def __len__(self) -> int:
        return len(self._ids)

    def __iter__(self) -> Iterator[int]:
        return iter(sorted(self._ids))

    def is_empty(self) -> bool:
        return not self._ids

    def apply_to(self, bias: Tensor) -> None:
        """Set ``bias`` to ``0`` at every member ID (in place).

        IDs past the end of ``bias`` (added tokens beyond the model's logits)
        are skipped.
        """
        ids = sorted(i for i in self._ids if i < bias.shape[0])
        if ids:
            index = torch.tensor(ids, dtype=torch.long, device=bias.device)
            bias.index_fill_(0, index, 0.0)

    def to_bias(self, length: int, *, device: str | torch.device = "cpu") -> Tensor:
        """Additive logit bias: ``0`` for members, ``-inf`` everywhere else.

        Args:
            length: Bias length; the logits length, which may exceed the
                tokenizer's vocabulary.
        """
        bias = torch.full((length,), float("-inf"), dtype=torch.float32, device=device)
        self.apply_to(bias)
        return bias


# ---------------------------------------------------------------------------
# Trie
# ---------------------------------------------------------------------------


class _TrieNode:
    __slots__ = ("children", "token_ids")

    def __init__(self) -> None:
        self.children: dict[str, _TrieNode] = {}
        self.token_ids: list[int] = []


class VocabularyTrie:
    """Character trie over a tokenizer's vocabulary.

    Args:
        token_texts: Text of every token that produces text.
        vocab_size: Number of token IDs in the vocabulary.
        eos_token_ids: End-of-sequence token IDs.
    """

    def __init__(
        self,
        token_texts: Mapping[int, str],
        *,
        vocab_size: int,
        eos_token_ids: Iterable[int] = (),
    ) -> None:
        self._vocab_size = vocab_size
        self._texts = dict(token_texts)
        self._eos = frozenset(eos_token_ids)
        self._root = _TrieNode()
        for token_id, text in self._texts.items():
            if token_id in self._eos:
                continue
            node = self._root
            for ch in text:
                node = node.children.setdefault(ch, _TrieNode())
            node.token_ids.append(token_id)

    @classmethod
    def from_tokenizer(
        cls, tokenizer: Tokenizer, eos_token_ids: Iterable[int] = ()
    ) -> VocabularyTrie:
        """Build the trie from a tokenizer's vocabulary."""
        vocab = tokenizer.get_vocab()
        special = tokenizer.special_token_ids
        byte_level = tokenizer.is_byte_level
        texts: dict[int, str] = {}
        for token_str, token_id in vocab.items():
            if token_id in special:
                continue
            text = decode_token_string(token_str, byte_level=byte_level)
            if text is not None:
                texts[token_id] = text
        vocab_size = max(tokenizer.vocab_size, max(vocab.values(), default=-1) + 1)
        return cls(texts, vocab_size=vocab_size, eos_token_ids=eos_token_ids)

    @property
    def vocab_size(self) -> int:
        return self._vocab_size

    @property
    def eos_token_ids(self) -> frozenset[int]:
        return self._eos

    def token_text(self, token_id: int) -> str | None:
        """The decoded text of a token, or ``None`` for special/textless tokens."""
        return self._texts.get(token_id)

    def is_allowed(self, recognizer: Recognizer, token_id: int) -> bool:
        """Whether appending ``token_id`` keeps the output inside the grammar."""
        if token_id in self._eos:
            return recognizer.is_accepting()
        text = self._texts.get(token_id)
        if text is None:
            return False
        if not recognizer.try_push_text(text):
            return False
        recognizer.pop_chars(len(text))
        return True

    def allowed_tokens(self, recognizer: Recognizer) -> TokenSet:
        """Every token the grammar allows next; the recognizer is left unchanged."""
        allowed = TokenSet(self._vocab_size)
        if recognizer.is_accepting():
            for token_id in self._eos:
                allowed.add(token_id)
        self._walk(self._root, recognizer, allowed)
        return allowed

    def _walk(self, node: _TrieNode, recognizer: Recognizer, allowed: TokenSet) -> None:
        for ch, child in node.children.items():
            if not recognizer.try_push_char(ch):
                continue
            for token_id in child.token_ids:
                allowed.add(token_id)
            self._walk(child, recognizer, allowed)
            recognizer.pop_chars(1)

    def bias_if_not_allowed(self, recognizer: Recognizer, token_id: int) -> TokenSet | None:
        """``None`` if ``token_id`` is allowed, else the full allowed set.

        Raises:
            GrammarRejectionError: If the grammar allows no token at all.
        """
        if self.is_allowed(recognizer, token_id):
            return None
        allowed = self.allowed_tokens(recognizer)
        if allowed.is_empty():
            raise GrammarRejectionError("the grammar allows no token at this point")
        return allowed

    def append_token(self, recognizer: Recognizer, token_id: int) -> None:
        """Advance ``recognizer`` past an accepted token.

        Raises:
            GrammarRejectionError: If the grammar does not allow the token.
        """
        if token_id in self._eos:
            if not recognizer.is_accepting():
                raise GrammarRejectionError(
                    f"end of sequence token {token_id} before the grammar is complete"
                )
            return
        text = self._texts.get(token_id)
        if text is None or not recognizer.try_push_text(text):
            raise GrammarRejectionError(f"token {token_id} is not allowed by the grammar")
        recognizer.commit()
