"""
coder-openapi :: Test Tokenizer Adapter
"""

import os
import sys

import pytest

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from coder_openapi.core.errors import TokenizerError
from coder_openapi.core.tokenizer import load_tokenizer

from conftest import WORDS, build_tokenizer


class TestCoderTokenizer:

    def test_encode(self, tokenizer):
        ids = tokenizer.encode("Hello world")
        assert ids == [WORDS.index("Hello"), WORDS.index("world")]

    def test_encode_unknown_word(self, tokenizer):
        assert tokenizer.encode("banana") == [WORDS.index("[UNK]")]

    def test_encode_empty(self, tokenizer):
        assert tokenizer.encode("") == []

    def test_decode(self, tokenizer):
        ids = [WORDS.index("def"), WORDS.index("x"), WORDS.index(":")]
        assert tokenizer.decode(ids) == "def x :"

    def test_decode_single_token(self, tokenizer):
        assert tokenizer.decode([WORDS.index("print")]) == "print"

    def test_vocab_and_lookup(self, tokenizer):
        assert tokenizer.vocab_size == len(WORDS)
        assert tokenizer.token_id("return") == WORDS.index("return")
        assert tokenizer.token_id("banana") is None


class TestLoadTokenizer:

    def test_load_from_file(self, tmp_path):
        path = tmp_path / "tokenizer.json"
        build_tokenizer().save(str(path))
        tok = load_tokenizer(path)
        assert tok.encode("Hello") == [WORDS.index("Hello")]

    def test_missing_file(self, tmp_path):
        with pytest.raises(TokenizerError, match="not found"):
            load_tokenizer(tmp_path / "tokenizer.json")

    def test_corrupt_file(self, tmp_path):
        path = tmp_path / "tokenizer.json"
        path.write_text("{ definitely not a tokenizer")
        with pytest.raises(TokenizerError):
            load_tokenizer(path)
