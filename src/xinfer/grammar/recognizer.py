"""Character-level grammar recognizers.

A recognizer consumes generated text one character at a time and keeps its
parse state on a stack, so the vocabulary trie can push a token's characters,
check the outcome, and pop them back off while exploring candidate tokens.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod

from outlines_core.json_schema import build_regex_from_schema

from xinfer.grammar.regex import DFA, compile_regex

logger = logging.getLogger(__name__)


class Recognizer(ABC):
    """Incremental recognizer over the characters of generated text."""

    @abstractmethod
    def try_push_char(self, ch: str) -> bool:
        """Consume ``ch`` if the grammar allows it; otherwise leave state untouched."""

    @abstractmethod
    def pop_chars(self, n: int) -> None:
        """Undo the last ``n`` successful pushes."""

    @abstractmethod
    def is_accepting(self) -> bool:
        """Whether the text consumed so far is a complete sentence of the grammar."""

    def commit(self) -> None:
        """Make the current state permanent; earlier states need not be kept."""

    def try_push_text(self, text: str) -> bool:
        """Push every character of ``text`` or none of them."""
        pushed = 0
        for ch in text:
            if not self.try_push_char(ch):
                self.pop_chars(pushed)
                return False
            pushed += 1
        return True


# ---------------------------------------------------------------------------
# Regex recognizer
# ---------------------------------------------------------------------------

_DFA_CACHE: dict[str, DFA] = {}


def _compile_cached(pattern: str) -> DFA:
    dfa = _DFA_CACHE.get(pattern)
    if dfa is None:
        dfa = compile_regex(pattern)
        if not dfa.accept_states:
            raise ValueError(f"regex {pattern!r} matches no string")
        _DFA_CACHE[pattern] = dfa
    return dfa


def clear_regex_cache() -> None:
    """Clear the regex compilation cache. Useful for testing."""
    _DFA_CACHE.clear()


class RegexRecognizer(Recognizer):
    """Recognizes the full-match language of a regex via its DFA.

    Args:
        dfa: A pruned DFA; every state must be able to reach acceptance.
    """

    def __init__(self, dfa: DFA) -> None:
        self._dfa = dfa
        self._stack = [dfa.initial_state]

    @classmethod
    def from_regex(cls, pattern: str) -> RegexRecognizer:
        """Compile (or reuse) the DFA for ``pattern``.

        Raises:
            ValueError: If the pattern is invalid or matches nothing.
        """
        return cls(_compile_cached(pattern))

    @classmethod
    def from_json_schema(cls, schema: str) -> RegexRecognizer:
        """Constrain output to JSON documents valid under ``schema``.

        Raises:
            ValueError: If the schema cannot be converted or compiled.
        """
        pattern = build_regex_from_schema(schema)
        logger.debug("JSON schema compiled to regex of length %d", len(pattern))
        return cls.from_regex(pattern)

    @property
    def state(self) -> int:
        return self._stack[-1]

    def try_push_char(self, ch: str) -> bool:
        next_state = self._dfa.step(self._stack[-1], ch)
        if next_state is None:
            return False
        self._stack.append(next_state)
        return True

    def pop_chars(self, n: int) -> None:
        if n:
            del self._stack[-n:]

    def is_accepting(self) -> bool:
        return self._stack[-1] in self._dfa.accept_states

    def commit(self) -> None:
        del self._stack[:-1]
