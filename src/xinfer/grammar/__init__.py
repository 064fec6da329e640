"""Grammar-constrained decoding: recognizers and the vocabulary trie."""

from xinfer.grammar.cfg import CfgRecognizer, Grammar
from xinfer.grammar.constraints import build_recognizer
from xinfer.grammar.recognizer import Recognizer, RegexRecognizer
from xinfer.grammar.toktrie import TokenSet, VocabularyTrie

__all__ = [
    "CfgRecognizer",
    "Grammar",
    "Recognizer",
    "RegexRecognizer",
    "TokenSet",
    "VocabularyTrie",
    "build_recognizer",
]
