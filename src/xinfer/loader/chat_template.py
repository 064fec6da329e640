"""Chat template: special token strings and the Jinja2 prompt template.

Both come from a model's ``tokenizer_config.json`` (or a JSON override with
the same schema).  Special tokens may be spelled either as a plain string or
as an added-token object ``{"content": "<s>", ...}``.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import jinja2
from jinja2.sandbox import ImmutableSandboxedEnvironment


def _token_content(value: Any) -> str | None:
    if value is None or isinstance(value, str):
        return value
    if isinstance(value, dict) and isinstance(value.get("content"), str):
        return value["content"]
    raise ValueError(f"special token must be a string or {{'content': ...}}, got {value!r}")


def _raise_exception(message: str) -> None:
    raise jinja2.TemplateError(message)


# Templates shipped in tokenizer_config.json call ``raise_exception`` and rely
# on loop controls, so they run in the same sandbox transformers uses.
_ENV = ImmutableSandboxedEnvironment(
    trim_blocks=True, lstrip_blocks=True, extensions=["jinja2.ext.loopcontrols"]
)
_ENV.globals["raise_exception"] = _raise_exception


@dataclass
class ChatTemplate:
    """Special tokens and the chat template of one model."""

    bos_token: str | None = None
    eos_token: str | None = None
    unk_token: str | None = None
    chat_template: str | None = None
    add_bos_token: bool | None = None
    add_eos_token: bool | None = None

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> ChatTemplate:
        template = raw.get("chat_template")
        # Some repos ship a list of named templates; the default one is used.
        if isinstance(template, list):
            named = {t.get("name"): t.get("template") for t in template if isinstance(t, dict)}
            template = named.get("default")
        return cls(
            bos_token=_token_content(raw.get("bos_token")),
            eos_token=_token_content(raw.get("eos_token")),
            unk_token=_token_content(raw.get("unk_token")),
            chat_template=template,
            add_bos_token=raw.get("add_bos_token"),
            add_eos_token=raw.get("add_eos_token"),
        )

    @classmethod
    def from_file(cls, path: str | Path) -> ChatTemplate:
        """Parse a tokenizer_config.json-shaped file.

        Raises:
            OSError: If the file cannot be read.
            ValueError: If the file is not a JSON object or a token is malformed.
        """
        with open(path) as f:
            raw = json.load(f)
        if not isinstance(raw, dict):
            raise ValueError(f"{path} must contain a JSON object")
        return cls.from_dict(raw)

    def eos_tok(self) -> str:
        """The end-of-sequence token string.

        Raises:
            ValueError: If the template defines no EOS token.
        """
        if self.eos_token is None:
            raise ValueError("chat template defines no eos_token")
        return self.eos_token

    def render(
        self,
        messages: list[dict[str, str]],
        *,
        add_generation_prompt: bool = True,
    ) -> str:
        """Render chat messages into a prompt string.

        Args:
            messages: Message dicts with ``"role"`` and ``"content"`` keys.
            add_generation_prompt: Whether to append the assistant turn header.

        Returns:
            The formatted prompt, including special token text.

        Raises:
            ValueError: If no chat template is defined.
            jinja2.TemplateError: If the template rejects the messages.
        """
        if self.chat_template is None:
            raise ValueError("no chat template is defined for this model")
        return _ENV.from_string(self.chat_template).render(
            messages=messages,
            add_generation_prompt=add_generation_prompt,
            bos_token=self.bos_token or "",
            eos_token=self.eos_token or "",
            unk_token=self.unk_token or "",
        )
