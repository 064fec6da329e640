"""Context-free grammar constraints.

Grammars are written in a GBNF-style notation::

    root   ::= "[" number ("," number)* "]"
    number ::= [0-9]+

Rules are ``name ::= alternatives``; items are double-quoted literals,
bracket classes, rule references, and parenthesized groups, each optionally
followed by ``*``, ``+`` or ``?``.  ``#`` starts a comment.  The start
symbol is ``root`` when defined, otherwise the first rule.

The notation itself is parsed with lark.  Recognition of generated text is
done by a character-level Earley recognizer whose columns double as the
push/pop state stack the vocabulary trie needs.
"""

from __future__ import annotations

from dataclasses import dataclass

from lark import Lark, Transformer
from lark.exceptions import LarkError

from xinfer.grammar.charset import read_class, read_escape
from xinfer.grammar.recognizer import Recognizer

# A symbol is a rule name (nonterminal) or a set of characters (terminal).
Symbol = str | frozenset[str]

_GBNF = r"""
    start: rule+
    rule: RULE_NAME "::=" alternatives
    alternatives: sequence ("|" sequence)*
    sequence: item*
    item: atom QUANTIFIER?
    ?atom: STRING                -> literal
         | CHAR_CLASS            -> char_class
         | SYMBOL                -> symbol
         | "(" alternatives ")"  -> group

    RULE_NAME: /[a-zA-Z_][a-zA-Z0-9_-]*(?=\s*::=)/
    SYMBOL: /[a-zA-Z_][a-zA-Z0-9_-]*(?![a-zA-Z0-9_-])(?!\s*::=)/
    STRING: /"(\\.|[^"\\])*"/
    CHAR_CLASS: /\[(\\.|[^\]\\])+\]/
    QUANTIFIER: /[*+?]/
    COMMENT: /#[^\n]*/

    %import common.WS
    %ignore WS
    %ignore COMMENT
"""

_PARSER = Lark(_GBNF, parser="lalr")


def _unescape_literal(body: str) -> list[str]:
    chars: list[str] = []
    pos = 0
    while pos < len(body):
        if body[pos] == "\\":
            value, pos = read_escape(body, pos)
            if isinstance(value, frozenset):
                raise ValueError(f"character class escape inside literal {body!r}")
            chars.append(value)
        else:
            chars.append(body[pos])
            pos += 1
    return chars


class _RuleBuilder(Transformer):
    """Flattens the parse tree into ``name -> [alternative, ...]`` productions.

    Groups and quantified items become helper rules; helper names contain
    ``#`` so they can never collide with user rule names.
    """

    def __init__(self) -> None:
        super().__init__()
        self.rules: dict[str, list[tuple[Symbol, ...]]] = {}
        self.order: list[str] = []
        self._helpers = 0

    def _helper(self, alternatives: list[tuple[Symbol, ...]]) -> str:
        name = f"helper#{self._helpers}"
        self._helpers += 1
        self.rules[name] = alternatives
        return name

    def literal(self, children):
        return [frozenset(ch) for ch in _unescape_literal(str(children[0])[1:-1])]

    def char_class(self, children):
        chars, _ = read_class(str(children[0]), 0)
        return [chars]

    def symbol(self, children):
        return [str(children[0])]

    def group(self, children):
        return [self._helper(children[0])]

    def item(self, children):
        symbols = children[0]
        if len(children) == 1:
            return symbols
        unit = symbols[0] if len(symbols) == 1 else self._helper([tuple(symbols)])
        name = f"helper#{self._helpers}"
        self._helpers += 1
        match str(children[1]):
            case "*":
                self.rules[name] = [(unit, name), ()]
            case "+":
                self.rules[name] = [(unit, name), (unit,)]
            case _:
                self.rules[name] = [(unit,), ()]
        return [name]

    def sequence(self, children):
        return tuple(symbol for item in children for symbol in item)

    def alternatives(self, children):
        return list(children)

    def rule(self, children):
        name = str(children[0])
        if name in self.rules:
            raise ValueError(f"rule {name!r} is defined twice")
        self.rules[name] = children[1]
        self.order.append(name)

    def start(self, children):
        return None


@dataclass
class Grammar:
    """A compiled context-free grammar.

    Attributes:
        start: The start symbol.
        productions: ``(lhs, rhs)`` pairs.
        by_lhs: Production indices per nonterminal.
        nullable: Nonterminals that derive the empty string.
    """

    start: str
    productions: list[tuple[str, tuple[Symbol, ...]]]
    by_lhs: dict[str, list[int]]
    nullable: frozenset[str]

    @classmethod
    def parse(cls, text: str) -> Grammar:
        """Parse grammar text.

        Raises:
            ValueError: If the text is malformed, a rule is defined twice, or
                an undefined rule is referenced.
        """
        builder = _RuleBuilder()
        try:
            builder.transform(_PARSER.parse(text))
        except LarkError as exc:
            # Errors raised inside transformer callbacks arrive wrapped.
            cause = getattr(exc, "orig_exc", None)
            if isinstance(cause, ValueError):
                raise cause from exc
            raise ValueError(f"invalid grammar: {exc}") from exc

        productions: list[tuple[str, tuple[Symbol, ...]]] = []
        by_lhs: dict[str, list[int]] = {}
        for lhs, alternatives in builder.rules.items():
            for rhs in alternatives:
                by_lhs.setdefault(lhs, []).append(len(productions))
                productions.append((lhs, rhs))

        undefined = {
            sym
            for _, rhs in productions
            for sym in rhs
            if isinstance(sym, str) and sym not in by_lhs
        }
        if undefined:
            raise ValueError(f"grammar references undefined rules: {sorted(undefined)}")

        start = "root" if "root" in by_lhs else builder.order[0]
        return cls(start, productions, by_lhs, _nullable(productions))


def _nullable(productions: list[tuple[str, tuple[Symbol, ...]]]) -> frozenset[str]:
    nullable: set[str] = set()
    changed = True
    while changed:
        changed = False
        for lhs, rhs in productions:
            if lhs not in nullable and all(isinstance(s, str) and s in nullable for s in rhs):
                nullable.add(lhs)
                changed = True
    return frozenset(nullable)


# ---------------------------------------------------------------------------
# Earley recognizer
# ---------------------------------------------------------------------------

# (production index, dot position, origin column)
Item = tuple[int, int, int]


class _Column:
    __slots__ = ("items", "waiting", "scanners")

    def __init__(self) -> None:
        self.items: set[Item] = set()
        self.waiting: dict[str, list[Item]] = {}
        self.scanners: list[Item] = []


class CfgRecognizer(Recognizer):
    """Earley recognizer over characters; one column per consumed character.

    Args:
        grammar: The compiled grammar.
    """

    def __init__(self, grammar: Grammar) -> None:
        self._grammar = grammar
        self._columns: list[_Column] = []
        self._columns.append(self._build_column([(p, 0, 0) for p in grammar.by_lhs[grammar.start]]))

    @classmethod
    def from_grammar(cls, text: str) -> CfgRecognizer:
        """Compile (or reuse) ``text`` and start a fresh recognizer.

        Raises:
            ValueError: If the grammar is invalid.
        """
        grammar = _GRAMMAR_CACHE.get(text)
        if grammar is None:
            grammar = Grammar.parse(text)
            _GRAMMAR_CACHE[text] = grammar
        return cls(grammar)

    def _build_column(self, seeds: list[Item]) -> _Column:
        """Close ``seeds`` under prediction and completion.

        The column is built at index ``len(self._columns)``.  Nullable
        nonterminals are stepped over at prediction time, so completions
        never need to look inside the column under construction.
        """
        productions = self._grammar.productions
        index = len(self._columns)
        column = _Column()
        agenda: list[Item] = []

        def add(item: Item) -> None:
            if item not in column.items:
                column.items.add(item)
                agenda.append(item)

        for seed in seeds:
            add(seed)
        while agenda:
            item = agenda.pop()
            prod, dot, origin = item
            lhs, rhs = productions[prod]
            if dot < len(rhs):
                symbol = rhs[dot]
                if isinstance(symbol, str):
                    column.waiting.setdefault(symbol, []).append(item)
                    for p in self._grammar.by_lhs[symbol]:
                        add((p, 0, index))
                    if symbol in self._grammar.nullable:
                        add((prod, dot + 1, origin))
                else:
                    column.scanners.append(item)
            elif origin < index:
                for p2, d2, o2 in self._columns[origin].waiting.get(lhs, ()):
                    add((p2, d2 + 1, o2))
        return column

    def try_push_char(self, ch: str) -> bool:
        productions = self._grammar.productions
        seeds = [
            (p, d + 1, o)
            for p, d, o in self._columns[-1].scanners
            if ch in productions[p][1][d]  # type: ignore[operator]
        ]
        if not seeds:
            return False
        self._columns.append(self._build_column(seeds))
        return True

    def pop_chars(self, n: int) -> None:
        if n:
            del self._columns[-n:]

    def is_accepting(self) -> bool:
        productions = self._grammar.productions
        start = self._grammar.start
        return any(
            origin == 0 and productions[p][0] == start and dot == len(productions[p][1])
            for p, dot, origin in self._columns[-1].items
        )


_GRAMMAR_CACHE: dict[str, Grammar] = {}


def clear_grammar_cache() -> None:
    """Clear the grammar compilation cache. Useful for testing."""
    _GRAMMAR_CACHE.clear()
