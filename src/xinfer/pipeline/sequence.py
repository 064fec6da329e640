"""A sequence being generated: its tokens, sampler, and grammar state."""

from __future__ import annotations

from dataclasses import dataclass, field

from xinfer.grammar.recognizer import Recognizer
from xinfer.sampling.sampler import Logprobs, Sampler


@dataclass
class Sequence:
    """Per-sequence generation state.

    Attributes:
        tokens: Prompt followed by every accepted token.
        sampler: The sequence's sampler.
        recognizer: Grammar recognizer, or ``None`` for unconstrained output.
        return_logprobs: Whether decode steps report top alternatives.
        prompt_len: Number of prompt tokens at the head of ``tokens``.
        logprobs: Results of every accepted generated token.
    """

    tokens: list[int]
    sampler: Sampler
    recognizer: Recognizer | None = None
    return_logprobs: bool = False
    prompt_len: int = field(init=False)
    logprobs: list[Logprobs] = field(default_factory=list)

    def __post_init__(self) -> None:
        if not self.tokens:
            raise ValueError("a sequence needs at least one prompt token")
        self.prompt_len = len(self.tokens)

    def __len__(self) -> int:
        return len(self.tokens)

    def get_toks(self) -> list[int]:
        return self.tokens

    def generated_tokens(self) -> list[int]:
        return self.tokens[self.prompt_len :]

    def add_token(self, logprobs: Logprobs) -> None:
        """Append an accepted token."""
        self.tokens.append(logprobs.token)
        self.logprobs.append(logprobs)
