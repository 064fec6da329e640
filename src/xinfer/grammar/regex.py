"""Regex to finite-state machine compiler.

Compiles regex patterns into NFAs (Thompson construction), then converts
to DFAs (subset construction) and prunes dead states, so every state of
the result can still reach acceptance.

Supported regex features:
- Literal characters, ``\\xNN`` and ``\\uNNNN`` escapes
- Character classes: [abc], [a-z], [^abc], \\d, \\w, \\s and negations
- Quantifiers: *, +, ?, {n}, {n,m}, {n,} (a trailing lazy ``?`` is accepted
  and ignored, since only the language matters)
- Alternation, capturing ``(...)`` and non-capturing ``(?:...)`` groups
- Dot: . (any character of the universe except newline)
- ``^`` at the start and ``$`` at the end (the whole output is always matched)
"""

from __future__ import annotations

from dataclasses import dataclass, field

from xinfer.grammar.charset import UNIVERSE, read_class, read_escape

# ---------------------------------------------------------------------------
# NFA representation
# ---------------------------------------------------------------------------


@dataclass
class NFAState:
    """A state in a Thompson NFA.

    Attributes:
        edges: ``(chars, target)`` pairs; any character in ``chars`` moves to ``target``.
        epsilon: State IDs reachable without consuming input.
    """

    edges: list[tuple[frozenset[str], int]] = field(default_factory=list)
    epsilon: list[int] = field(default_factory=list)


@dataclass
class NFA:
    """Thompson NFA with a single start and single accept state."""

    states: list[NFAState]
    start: int
    accept: int


@dataclass(frozen=True)
class _Fragment:
    start: int
    accept: int


class _NFABuilder:
    """Allocates states in one shared list so fragments never need renumbering."""

    def __init__(self) -> None:
        self.states: list[NFAState] = []

    def _state(self) -> int:
        self.states.append(NFAState())
        return len(self.states) - 1

    def chars(self, chars: frozenset[str]) -> _Fragment:
        start, accept = self._state(), self._state()
        self.states[start].edges.append((chars, accept))
        return _Fragment(start, accept)

    def empty(self) -> _Fragment:
        start, accept = self._state(), self._state()
        self.states[start].epsilon.append(accept)
        return _Fragment(start, accept)

    def concat(self, a: _Fragment, b: _Fragment) -> _Fragment:
        self.states[a.accept].epsilon.append(b.start)
        return _Fragment(a.start, b.accept)

    def alternate(self, a: _Fragment, b: _Fragment) -> _Fragment:
        start, accept = self._state(), self._state()
        self.states[start].epsilon.extend([a.start, b.start])
        self.states[a.accept].epsilon.append(accept)
        self.states[b.accept].epsilon.append(accept)
        return _Fragment(start, accept)

    def star(self, inner: _Fragment) -> _Fragment:
        start, accept = self._state(), self._state()
        self.states[start].epsilon.extend([inner.start, accept])
        self.states[inner.accept].epsilon.extend([inner.start, accept])
        return _Fragment(start, accept)

    def plus(self, inner: _Fragment) -> _Fragment:
        start, accept = self._state(), self._state()
        self.states[start].epsilon.append(inner.start)
        self.states[inner.accept].epsilon.extend([inner.start, accept])
        return _Fragment(start, accept)

    def optional(self, inner: _Fragment) -> _Fragment:
        start, accept = self._state(), self._state()
        self.states[start].epsilon.extend([inner.start, accept])
        self.states[inner.accept].epsilon.append(accept)
        return _Fragment(start, accept)


# ---------------------------------------------------------------------------
# DFA representation
# ---------------------------------------------------------------------------


@dataclass
class DFA:
    """Deterministic finite automaton.

    Attributes:
        transitions: state -> char -> next_state mapping.
        initial_state: Starting state ID.
        accept_states: Set of accepting state IDs.
    """

    transitions: dict[int, dict[str, int]]
    initial_state: int
    accept_states: set[int]

    def step(self, state: int, ch: str) -> int | None:
        """Return the state after ``ch``, or ``None`` if ``ch`` is rejected."""
        return self.transitions.get(state, {}).get(ch)

    def walk(self, text: str, start_state: int | None = None) -> int | None:
        """Walk the DFA on a string, returning the final state or None if stuck."""
        state: int | None = self.initial_state if start_state is None else start_state
        for ch in text:
            assert state is not None
            state = self.step(state, ch)
            if state is None:
                return None
        return state

    def accepts(self, text: str) -> bool:
        state = self.walk(text)
        return state is not None and state in self.accept_states


# ---------------------------------------------------------------------------
# Regex parser
# ---------------------------------------------------------------------------

_QUANTIFIERS = set("*+?{")
_METACHARS = set("()|") | _QUANTIFIERS


class _RegexParser:
    """Recursive descent parser for regex patterns.

    Grammar::

        expr       -> term ('|' term)*
        term       -> factor*
        factor     -> atom quantifier?
        atom       -> '(' ('?:')? expr ')' | '[' class ']' | '.' | escape | literal
        quantifier -> ('*' | '+' | '?' | '{' n (',' m?)? '}') '?'?
    """

    def __init__(self, pattern: str, builder: _NFABuilder) -> None:
        self.pattern = pattern
        self.pos = 0
        self.builder = builder

    def peek(self) -> str | None:
        if self.pos >= len(self.pattern):
            return None
        return self.pattern[self.pos]

    def expect(self, ch: str) -> None:
        if self.peek() != ch:
            found = "end of pattern" if self.peek() is None else repr(self.peek())
            raise ValueError(
                f"Expected {ch!r} at position {self.pos}, found {found} in {self.pattern!r}"
            )
        self.pos += 1

    def parse(self) -> _Fragment:
        if self.peek() == "^":
            self.pos += 1
        fragment = self._parse_expr()
        if self.pos < len(self.pattern):
            raise ValueError(
                f"Unexpected character {self.pattern[self.pos]!r} "
                f"at position {self.pos} in {self.pattern!r}"
            )
        return fragment

    def _parse_expr(self) -> _Fragment:
        left = self._parse_term()
        while self.peek() == "|":
            self.pos += 1
            left = self.builder.alternate(left, self._parse_term())
        return left

    def _parse_term(self) -> _Fragment:
        result: _Fragment | None = None
        while self.peek() is not None and self.peek() not in ("|", ")"):
            if self.peek() == "$" and self.pos == len(self.pattern) - 1:
                self.pos += 1
                break
            factor = self._parse_factor()
            result = factor if result is None else self.builder.concat(result, factor)
        return result if result is not None else self.builder.empty()

    def _parse_factor(self) -> _Fragment:
        atom_start = self.pos
        atom = self._parse_atom()
        atom_end = self.pos

        ch = self.peek()
        if ch is None or ch not in _QUANTIFIERS:
            return atom
        self.pos += 1
        if ch == "*":
            result = self.builder.star(atom)
        elif ch == "+":
            result = self.builder.plus(atom)
        elif ch == "?":
            result = self.builder.optional(atom)
        else:
            min_count, max_count = self._parse_bounds()
            result = self._repeat(atom, self.pattern[atom_start:atom_end], min_count, max_count)
        if self.peek() == "?":  # lazy suffix
            self.pos += 1
        return result

    def _parse_bounds(self) -> tuple[int, int | None]:
        min_count = self._parse_int()
        max_count: int | None = min_count
        if self.peek() == ",":
            self.pos += 1
            max_count = None if self.peek() == "}" else self._parse_int()
        self.expect("}")
        if max_count is not None and max_count < min_count:
            raise ValueError(f"Invalid repeat {{{min_count},{max_count}}} in {self.pattern!r}")
        return min_count, max_count

    def _parse_int(self) -> int:
        start = self.pos
        while self.peek() is not None and self.peek().isdigit():  # type: ignore[union-attr]
            self.pos += 1
        if start == self.pos:
            raise ValueError(f"Expected integer at position {self.pos} in {self.pattern!r}")
        return int(self.pattern[start : self.pos])

    def _repeat(
        self, first: _Fragment, atom_pattern: str, min_count: int, max_count: int | None
    ) -> _Fragment:
        """Build ``atom{min,max}``; extra copies are re-parsed from the atom's source."""

        def copy() -> _Fragment:
            return _RegexParser(atom_pattern, self.builder)._parse_atom()

        copies = [first] + [copy() for _ in range(max(min_count, 1) - 1)]
        if min_count == 0:
            result = self.builder.empty()
            spare: _Fragment | None = first
        else:
            result = copies[0]
            for c in copies[1:]:
                result = self.builder.concat(result, c)
            spare = None

        if max_count is None:
            return self.builder.concat(result, self.builder.star(spare or copy()))
        for _ in range(max_count - min_count):
            result = self.builder.concat(result, self.builder.optional(spare or copy()))
            spare = None
        return result

    def _parse_atom(self) -> _Fragment:
        ch = self.peek()
        if ch == "(":
            self.pos += 1
            if self.pattern.startswith("?:", self.pos):
                self.pos += 2
            inner = self._parse_expr()
            self.expect(")")
            return inner
        if ch == "[":
            chars, self.pos = read_class(self.pattern, self.pos)
            return self.builder.chars(chars)
        if ch == ".":
            self.pos += 1
            return self.builder.chars(UNIVERSE - {"\n"})
        if ch == "\\":
            value, self.pos = read_escape(self.pattern, self.pos)
            chars = value if isinstance(value, frozenset) else frozenset(value)
            return self.builder.chars(chars)
        if ch is not None and ch not in _METACHARS:
            self.pos += 1
            return self.builder.chars(frozenset(ch))
        found = "end of pattern" if ch is None else repr(ch)
        raise ValueError(f"Unexpected {found} at position {self.pos} in {self.pattern!r}")


# ---------------------------------------------------------------------------
# NFA to DFA conversion (subset construction)
# ---------------------------------------------------------------------------


def _epsilon_closure(nfa: NFA, state_ids: set[int]) -> frozenset[int]:
    stack = list(state_ids)
    closure = set(state_ids)
    while stack:
        s = stack.pop()
        for target in nfa.states[s].epsilon:
            if target not in closure:
                closure.add(target)
                stack.append(target)
    return frozenset(closure)


def nfa_to_dfa(nfa: NFA) -> DFA:
    """Convert an NFA to a DFA via subset construction.

    Only characters appearing on an edge of the current subset are tried,
    so large classes cost nothing in states that do not use them.
    """
    initial = _epsilon_closure(nfa, {nfa.start})
    state_ids: dict[frozenset[int], int] = {initial: 0}
    transitions: dict[int, dict[str, int]] = {}
    accept: set[int] = set()
    worklist = [initial]

    while worklist:
        current = worklist.pop()
        current_id = state_ids[current]
        if nfa.accept in current:
            accept.add(current_id)

        moves: dict[str, set[int]] = {}
        for s in current:
            for chars, target in nfa.states[s].edges:
                for ch in chars:
                    moves.setdefault(ch, set()).add(target)

        row: dict[str, int] = {}
        for ch, targets in moves.items():
            closure = _epsilon_closure(nfa, targets)
            if closure not in state_ids:
                state_ids[closure] = len(state_ids)
                worklist.append(closure)
            row[ch] = state_ids[closure]
        transitions[current_id] = row

    return DFA(transitions=transitions, initial_state=0, accept_states=accept)


def prune_dfa(dfa: DFA) -> DFA:
    """Remove states from which no accepting state is reachable.

    The result's initial state is 0.  A DFA accepting nothing becomes a single
    non-accepting state with no transitions.
    """
    reverse: dict[int, set[int]] = {}
    for s, row in dfa.transitions.items():
        for t in row.values():
            reverse.setdefault(t, set()).add(s)

    live = set(dfa.accept_states)
    queue = list(live)
    while queue:
        s = queue.pop()
        for pred in reverse.get(s, ()):
            if pred not in live:
                live.add(pred)
                queue.append(pred)

    if dfa.initial_state not in live:
        return DFA(transitions={0: {}}, initial_state=0, accept_states=set())

    old_to_new = {dfa.initial_state: 0}
    for s in sorted(live - {dfa.initial_state}):
        old_to_new[s] = len(old_to_new)

    transitions = {
        old_to_new[s]: {
            ch: old_to_new[t] for ch, t in dfa.transitions.get(s, {}).items() if t in live
        }
        for s in live
    }
    return DFA(
        transitions=transitions,
        initial_state=0,
        accept_states={old_to_new[s] for s in dfa.accept_states},
    )


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


def parse_regex(pattern: str) -> NFA:
    """Parse a regex pattern into a Thompson NFA.

    Raises:
        ValueError: If the pattern is invalid.
    """
    builder = _NFABuilder()
    fragment = _RegexParser(pattern, builder).parse()
    return NFA(states=builder.states, start=fragment.start, accept=fragment.accept)


def compile_regex(pattern: str) -> DFA:
    """Compile a regex pattern into a pruned DFA.

    Raises:
        ValueError: If the pattern is invalid.
    """
    return prune_dfa(nfa_to_dfa(parse_regex(pattern)))
