"""Structured query parsing (lex:/vec:/hyde: lines) and semantic query validation."""

import logging
import re
from typing import List, Optional

from .errors import AmbiguousQueryError
from .models import SearchType, StructuredSubSearch

logger = logging.getLogger(__name__)

# Only the keyword is case-insensitive; the first "type:" at line start is the prefix.
_PREFIX_RE = re.compile(r"^(lex|vec|hyde):\s*", re.IGNORECASE)

# "-word" or -"phrase" at the start of a token. "-5" is a number, not an exclusion.
_NEGATION_RE = re.compile(r'(?:^|\s)-(?:"|[^\W\d_])')
_OR_RE = re.compile(r"(?:^|\s)OR(?:\s|$)")

NEGATION_MESSAGE = (
    "Negation syntax is not supported in semantic search. "
    "Use a lex: query to exclude terms."
)
OR_MESSAGE = (
    "OR is not supported in semantic search. "
    "Use separate vec: lines or a lex: query with OR."
)


def parse_structured_query(text: str) -> Optional[List[StructuredSubSearch]]:
    """
    Split multi-line query text into typed sub-searches.

    Args:
        text: Raw query text, one sub-search per line

    Returns:
        Sub-searches in line order, or None when the text is a plain
        single-line query (or has nothing usable) and the caller should
        apply its own expansion

    Raises:
        AmbiguousQueryError: More than one line lacks a type prefix
    """
    lines = [line.strip() for line in text.splitlines()]
    lines = [line for line in lines if line]
    if not lines:
        return None

    searches: List[StructuredSubSearch] = []
    plain_lines: List[str] = []

    for line in lines:
        match = _PREFIX_RE.match(line)
        if not match:
            plain_lines.append(line)
            continue

        value = line[match.end():].strip()
        if not value:
            logger.debug(f"Dropping empty {match.group(1).lower()}: line")
            continue
        searches.append(StructuredSubSearch(type=SearchType(match.group(1).lower()), query=value))

    if not searches and len(plain_lines) == 1:
        return None

    if len(plain_lines) > 1:
        raise AmbiguousQueryError(
            "Ambiguous query: multiple lines without a type prefix. "
            "Prefix each line with lex:, vec: or hyde:."
        )

    # A lone untyped line is an implicit lex search and always leads.
    if plain_lines:
        searches.insert(0, StructuredSubSearch(type=SearchType.LEX, query=plain_lines[0]))

    return searches or None


def validate_semantic_query(query: str) -> Optional[str]:
    """Return an error message if the query uses lexical-only operators, else None."""
    if _NEGATION_RE.search(query):
        return NEGATION_MESSAGE
    if _OR_RE.search(query):
        return OR_MESSAGE
    return None


def expand_plain_query(text: str) -> List[StructuredSubSearch]:
    """
    Expand a plain single-line query into a lex + vec pair.

    Text the semantic validator would reject is searched lexically only.
    """
    text = text.strip()
    if not text:
        return []

    searches = [StructuredSubSearch(type=SearchType.LEX, query=text)]
    if validate_semantic_query(text) is None:
        searches.append(StructuredSubSearch(type=SearchType.VEC, query=text))
    return searches


__all__ = [
    "parse_structured_query",
    "validate_semantic_query",
    "expand_plain_query",
    "NEGATION_MESSAGE",
    "OR_MESSAGE",
]
