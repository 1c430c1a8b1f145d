"""Tests for structured query parsing and semantic query validation."""

import pytest
from pydantic import ValidationError

from quarry.core.errors import AmbiguousQueryError
from quarry.core.models import SearchType, StructuredSubSearch
from quarry.core.query_parser import (
    expand_plain_query,
    parse_structured_query,
    validate_semantic_query,
)


def pairs(searches):
    return [(s.type.value, s.query) for s in searches]


class TestPlainQueries:
    """Inputs that should fall back to the caller's own expansion."""

    @pytest.mark.parametrize("text", ["CAP theorem", "distributed systems"])
    def test_single_line_without_prefix(self, text):
        assert parse_structured_query(text) is None

    @pytest.mark.parametrize("text", ["", "   ", "\n\n"])
    def test_empty_input(self, text):
        assert parse_structured_query(text) is None


class TestPrefixedQueries:

    def test_each_type(self):
        assert pairs(parse_structured_query("lex: CAP theorem")) == [("lex", "CAP theorem")]
        assert pairs(parse_structured_query("vec: what is the CAP theorem")) == [
            ("vec", "what is the CAP theorem")
        ]
        assert pairs(parse_structured_query("hyde: The CAP theorem states that...")) == [
            ("hyde", "The CAP theorem states that...")
        ]

    def test_prefix_is_case_insensitive(self):
        assert parse_structured_query("LEX: a") == parse_structured_query("lex: a")
        assert pairs(parse_structured_query("HYDE: passage")) == [("hyde", "passage")]
        assert pairs(parse_structured_query("VeC: test")) == [("vec", "test")]

    def test_lex_and_vec(self):
        assert pairs(parse_structured_query("lex: a\nvec: b")) == [("lex", "a"), ("vec", "b")]

    def test_order_preserved(self):
        result = parse_structured_query("hyde: p\nvec: q\nlex: r")
        assert pairs(result) == [("hyde", "p"), ("vec", "q"), ("lex", "r")]

    def test_duplicate_types_allowed(self):
        result = parse_structured_query("lex: term1\nlex: term2\nlex: term3")
        assert pairs(result) == [("lex", "term1"), ("lex", "term2"), ("lex", "term3")]

    def test_returns_typed_values(self):
        result = parse_structured_query("vec: question")
        assert result == [StructuredSubSearch(type=SearchType.VEC, query="question")]


class TestMixedPlainAndPrefixed:

    def test_plain_line_becomes_first_lex(self):
        result = parse_structured_query("keywords\nhyde: x\nvec: y")
        assert pairs(result) == [("lex", "keywords"), ("hyde", "x"), ("vec", "y")]

    def test_plain_line_moves_to_front_from_the_end(self):
        result = parse_structured_query("vec: semantic question\nplain keywords")
        assert pairs(result) == [("lex", "plain keywords"), ("vec", "semantic question")]


class TestAmbiguousInput:

    @pytest.mark.parametrize("text", ["line one\nline two", "a\nb\nc", "vec: q\nfirst\nsecond"])
    def test_multiple_plain_lines_raise(self, text):
        with pytest.raises(AmbiguousQueryError, match="multiple lines without a type prefix"):
            parse_structured_query(text)


class TestWhitespace:

    def test_blank_lines_ignored(self):
        result = parse_structured_query("lex: keywords\n\n   \nvec: question\n")
        assert pairs(result) == [("lex", "keywords"), ("vec", "question")]

    def test_lines_trimmed_internal_spaces_kept(self):
        assert pairs(parse_structured_query("  lex:   multiple   spaces   ")) == [
            ("lex", "multiple   spaces")
        ]

    def test_empty_prefix_value_dropped(self):
        assert pairs(parse_structured_query("lex: \nvec: actual")) == [("vec", "actual")]

    def test_only_empty_prefix_values(self):
        assert parse_structured_query("lex: \nvec: \nhyde: ") is None

    def test_windows_line_endings(self):
        assert pairs(parse_structured_query("lex: a\r\nvec: b")) == [("lex", "a"), ("vec", "b")]


class TestColons:

    def test_colon_in_query_text(self):
        assert pairs(parse_structured_query("lex: time: 12:30 PM")) == [("lex", "time: 12:30 PM")]

    def test_prefix_like_text_inside_query(self):
        assert pairs(parse_structured_query("vec: what does lex: mean")) == [
            ("vec", "what does lex: mean")
        ]

    def test_unknown_prefix_is_plain_text(self):
        assert parse_structured_query("note: remember this") is None


class TestStructuredSubSearch:

    def test_query_is_stripped(self):
        assert StructuredSubSearch(type="lex", query="  test  ").query == "test"

    def test_empty_query_rejected(self):
        with pytest.raises(ValidationError):
            StructuredSubSearch(type="vec", query="   ")

    def test_unknown_type_rejected(self):
        with pytest.raises(ValidationError):
            StructuredSubSearch(type="fuzzy", query="test")

    def test_is_semantic(self):
        assert not SearchType.LEX.is_semantic
        assert SearchType.VEC.is_semantic
        assert SearchType.HYDE.is_semantic


class TestValidateSemanticQuery:

    @pytest.mark.parametrize("text", [
        "how does error handling work",
        "what is the CAP theorem",
        "error-handling in long-running jobs",
        "temperatures of -5 degrees",
        "or maybe something else",
    ])
    def test_accepts_natural_language(self, text):
        assert validate_semantic_query(text) is None

    def test_accepts_hypothetical_answer(self):
        passage = (
            "The CAP theorem states that a distributed system cannot simultaneously "
            "provide consistency, availability, and partition tolerance. In practice, "
            "systems choose between consistency and availability during a partition."
        )
        assert validate_semantic_query(passage) is None

    @pytest.mark.parametrize("text", ["performance -sports", '-"exact phrase"', "-leading"])
    def test_rejects_negation(self, text):
        assert "Negation" in validate_semantic_query(text)

    @pytest.mark.parametrize("text", ["auth OR authentication", "OR auth"])
    def test_rejects_or(self, text):
        assert "OR is not supported in semantic search" in validate_semantic_query(text)


class TestExpandPlainQuery:

    def test_lex_and_vec(self):
        assert pairs(expand_plain_query("CAP theorem")) == [("lex", "CAP theorem"), ("vec", "CAP theorem")]

    def test_lexical_operators_stay_lexical(self):
        assert pairs(expand_plain_query("performance -sports")) == [("lex", "performance -sports")]

    def test_empty(self):
        assert expand_plain_query("   ") == []
