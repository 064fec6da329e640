"""Tests for grammar parsing and the Earley recognizer."""

from __future__ import annotations

import pytest

from xinfer.grammar.cfg import CfgRecognizer, Grammar, clear_grammar_cache

LIST_GRAMMAR = r"""
# A JSON-ish list of numbers.
root   ::= "[" number ("," number)* "]"
number ::= [0-9]+
"""

ARITH_GRAMMAR = r"""
root ::= expr
expr ::= term (("+" | "-") term)*
term ::= factor ("*" factor)*
factor ::= [0-9]+ | "(" expr ")"
"""


def _accepts(grammar: str, text: str) -> bool:
    rec = CfgRecognizer.from_grammar(grammar)
    return rec.try_push_text(text) and rec.is_accepting()


# ---------------------------------------------------------------------------
# Parsing
# ---------------------------------------------------------------------------


class TestGrammarParse:
    def test_start_is_root(self) -> None:
        grammar = Grammar.parse('other ::= "x"\nroot ::= other')
        assert grammar.start == "root"

    def test_start_defaults_to_first_rule(self) -> None:
        grammar = Grammar.parse('greeting ::= "hi" name\nname ::= [a-z]+')
        assert grammar.start == "greeting"

    def test_nullable_rules(self) -> None:
        grammar = Grammar.parse('root ::= a "x"\na ::= "y"?')
        assert "a" in grammar.nullable
        assert "root" not in grammar.nullable

    def test_undefined_rule(self) -> None:
        with pytest.raises(ValueError, match="undefined rules"):
            Grammar.parse("root ::= missing")

    def test_duplicate_rule(self) -> None:
        with pytest.raises(ValueError, match="defined twice"):
            Grammar.parse('root ::= "a"\nroot ::= "b"')

    def test_syntax_error(self) -> None:
        with pytest.raises(ValueError):
            Grammar.parse('root ::= ("a"')


# ---------------------------------------------------------------------------
# Recognition
# ---------------------------------------------------------------------------


class TestCfgRecognizer:
    def setup_method(self) -> None:
        clear_grammar_cache()

    @pytest.mark.parametrize("text", ["[1]", "[12,3]", "[0,0,0]"])
    def test_list_accepts(self, text: str) -> None:
        assert _accepts(LIST_GRAMMAR, text)

    @pytest.mark.parametrize("text", ["[]", "[1,]", "[a]", "1"])
    def test_list_rejects(self, text: str) -> None:
        assert not _accepts(LIST_GRAMMAR, text)

    @pytest.mark.parametrize("text", ["1", "1+2*3", "(1+2)*3", "((4))"])
    def test_arithmetic_accepts(self, text: str) -> None:
        assert _accepts(ARITH_GRAMMAR, text)

    @pytest.mark.parametrize("text", ["", "1+", "(1", "1)", "*2"])
    def test_arithmetic_rejects(self, text: str) -> None:
        assert not _accepts(ARITH_GRAMMAR, text)

    def test_prefix_is_viable_but_not_accepting(self) -> None:
        rec = CfgRecognizer.from_grammar(LIST_GRAMMAR)
        assert rec.try_push_text("[1,")
        assert not rec.is_accepting()
        assert not rec.try_push_char("]")

    def test_pop_restores_state(self) -> None:
        rec = CfgRecognizer.from_grammar(LIST_GRAMMAR)
        rec.try_push_text("[1")
        assert rec.try_push_char("]")
        assert rec.is_accepting()
        rec.pop_chars(1)
        assert not rec.is_accepting()
        assert rec.try_push_char(",")

    def test_left_recursion(self) -> None:
        grammar = 'root ::= list\nlist ::= list "a" | "a"'
        assert _accepts(grammar, "aaa")
        assert not _accepts(grammar, "")

    def test_nullable_in_middle(self) -> None:
        grammar = 'root ::= "<" opt opt ">"\nopt ::= "x"?'
        assert _accepts(grammar, "<>")
        assert _accepts(grammar, "<x>")
        assert _accepts(grammar, "<xx>")
        assert not _accepts(grammar, "<xxx>")

    def test_escapes_and_classes(self) -> None:
        grammar = r'root ::= "\"" [^"\n]* "\""'
        assert _accepts(grammar, '"hi there"')
        assert not _accepts(grammar, '"a"b"')
