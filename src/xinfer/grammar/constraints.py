"""Build a recognizer from a user-facing constraint."""

from __future__ import annotations

from xinfer.grammar.cfg import CfgRecognizer
from xinfer.grammar.recognizer import Recognizer, RegexRecognizer


def build_recognizer(
    *,
    regex: str | None = None,
    json_schema: str | None = None,
    grammar: str | None = None,
) -> Recognizer | None:
    """Return a fresh recognizer for at most one constraint, or ``None``.

    Args:
        regex: Output must fully match this regex.
        json_schema: Output must be a JSON document valid under this schema.
        grammar: Output must be a sentence of this GBNF-style grammar.

    Raises:
        ValueError: If more than one constraint is given or it fails to compile.
    """
    given = [c for c in (regex, json_schema, grammar) if c is not None]
    if len(given) > 1:
        raise ValueError("at most one of regex, json_schema, grammar may be given")
    if regex is not None:
        return RegexRecognizer.from_regex(regex)
    if json_schema is not None:
        return RegexRecognizer.from_json_schema(json_schema)
    if grammar is not None:
        return CfgRecognizer.from_grammar(grammar)
    return None
