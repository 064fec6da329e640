"""Character sets and escape handling shared by the regex and grammar parsers.

Negated classes and ``.`` are taken relative to :data:`UNIVERSE`, printable
ASCII plus common whitespace.
"""

from __future__ import annotations

PRINTABLE_ASCII = frozenset(chr(i) for i in range(32, 127))
WHITESPACE = frozenset(" \t\n\r")
UNIVERSE = PRINTABLE_ASCII | WHITESPACE

DIGIT_CHARS = frozenset("0123456789")
WORD_CHARS = frozenset("abcdefghijklmnopqrstuvwxyzABCDEFGHIJKLMNOPQRSTUVWXYZ0123456789_")
SPACE_CHARS = WHITESPACE | frozenset("\f\v")

_SHORTHAND = {
    "d": DIGIT_CHARS,
    "D": UNIVERSE - DIGIT_CHARS,
    "w": WORD_CHARS,
    "W": UNIVERSE - WORD_CHARS,
    "s": SPACE_CHARS,
    "S": UNIVERSE - SPACE_CHARS,
}

_CONTROL = {"n": "\n", "t": "\t", "r": "\r", "f": "\f", "v": "\v", "0": "\0"}


def read_escape(text: str, pos: int) -> tuple[frozenset[str] | str, int]:
    """Read the escape sequence whose backslash is at ``text[pos]``.

    Returns:
        ``(value, next_pos)`` where ``value`` is a single character for
        literal escapes or a character set for shorthand classes.

    Raises:
        ValueError: If the escape is truncated or malformed.
    """
    if pos + 1 >= len(text):
        raise ValueError(f"Dangling backslash at position {pos} in {text!r}")
    ch = text[pos + 1]
    if ch in _SHORTHAND:
        return _SHORTHAND[ch], pos + 2
    if ch in _CONTROL:
        return _CONTROL[ch], pos + 2
    if ch in ("x", "u"):
        width = 2 if ch == "x" else 4
        digits = text[pos + 2 : pos + 2 + width]
        if len(digits) != width or any(d not in "0123456789abcdefABCDEF" for d in digits):
            raise ValueError(f"Malformed \\{ch} escape at position {pos} in {text!r}")
        return chr(int(digits, 16)), pos + 2 + width
    return ch, pos + 2


def read_class(text: str, pos: int) -> tuple[frozenset[str], int]:
    """Read the bracket class whose ``[`` is at ``text[pos]``.

    Supports ranges, escapes, shorthand classes, and leading ``^`` negation.

    Returns:
        ``(chars, next_pos)`` with ``next_pos`` just past the closing ``]``.

    Raises:
        ValueError: If the class is unterminated or a range is inverted.
    """
    pos += 1
    negated = False
    if pos < len(text) and text[pos] == "^":
        negated = True
        pos += 1

    chars: set[str] = set()
    first = True
    while True:
        if pos >= len(text):
            raise ValueError(f"Unterminated character class in {text!r}")
        ch = text[pos]
        if ch == "]" and not first:
            pos += 1
            break
        first = False
        if ch == "\\":
            value, pos = read_escape(text, pos)
            if isinstance(value, frozenset):
                chars |= value
                continue
            ch = value
        else:
            pos += 1
        if pos + 1 < len(text) and text[pos] == "-" and text[pos + 1] != "]":
            if text[pos + 1] == "\\":
                end, pos = read_escape(text, pos + 1)
                if isinstance(end, frozenset):
                    raise ValueError(f"Invalid range end in {text!r}")
            else:
                end, pos = text[pos + 1], pos + 2
            if ord(end) < ord(ch):
                raise ValueError(f"Inverted range {ch!r}-{end!r} in {text!r}")
            chars.update(chr(i) for i in range(ord(ch), ord(end) + 1))
        else:
            chars.add(ch)

    if negated:
        return UNIVERSE - chars, pos
    return frozenset(chars), pos
