"""Keyword search: expression compiler (prefix terms, phrases, exclusions, OR) over a BM25 index."""

import bisect
import logging
import math
import re
import threading
from dataclasses import dataclass
from typing import TYPE_CHECKING, Dict, FrozenSet, List, Optional, Set, Tuple, Union

import numpy as np
from rank_bm25 import BM25Okapi

from .errors import QuerySyntaxError
from .models import RawHit

if TYPE_CHECKING:
    from .store import DocumentStore

logger = logging.getLogger(__name__)

_WORD_RE = re.compile(r"\w+")


def tokenize(text: str) -> List[str]:
    """Lowercase word tokens, shared by indexing and query compilation."""
    return _WORD_RE.findall(text.lower())


class _LuceneBM25(BM25Okapi):
    """BM25Okapi with Lucene's idf, which stays positive for terms found in most documents."""

    def _calc_idf(self, nd):
        for word, freq in nd.items():
            self.idf[word] = math.log(1 + (self.corpus_size - freq + 0.5) / (freq + 0.5))


@dataclass(frozen=True)
class TermClause:
    """Matches any index term starting with `prefix`."""
    prefix: str


@dataclass(frozen=True)
class PhraseClause:
    """Matches the tokens adjacent and in order."""
    tokens: Tuple[str, ...]


Clause = Union[TermClause, PhraseClause]


@dataclass(frozen=True)
class LexicalQuery:
    """Compiled expression: every group must match (AND), any clause within a group (OR)."""
    groups: Tuple[Tuple[Clause, ...], ...]
    exclusions: Tuple[Clause, ...] = ()


@dataclass
class _Token:
    kind: str  # "word", "phrase" or "or"
    text: str = ""
    negated: bool = False


def _scan(expression: str) -> List[_Token]:
    tokens: List[_Token] = []
    i, n = 0, len(expression)

    while i < n:
        if expression[i].isspace():
            i += 1
            continue

        negated = False
        if expression[i] == "-":
            negated = True
            i += 1
            if i >= n or expression[i].isspace():
                raise QuerySyntaxError("Lone '-': an exclusion needs a term or a quoted phrase after it")

        if expression[i] == '"':
            end = expression.find('"', i + 1)
            if end == -1:
                raise QuerySyntaxError("Unterminated quoted phrase: missing closing '\"'")
            tokens.append(_Token("phrase", expression[i + 1:end], negated))
            i = end + 1
            continue

        j = i
        while j < n and not expression[j].isspace() and expression[j] != '"':
            j += 1
        word = expression[i:j]
        if word == "OR" and not negated:
            tokens.append(_Token("or"))
        else:
            tokens.append(_Token("word", word, negated))
        i = j

    return tokens


def _build_clause(token: _Token) -> Optional[Clause]:
    words = tokenize(token.text)
    if not words:
        return None
    if token.kind == "word" and len(words) == 1:
        return TermClause(words[0])
    return PhraseClause(tuple(words))


def compile_expression(expression: str) -> Optional[LexicalQuery]:
    """
    Compile a keyword expression.

    Args:
        expression: Bare words (prefix match), "quoted phrases", -exclusions
            and OR between terms

    Returns:
        Compiled query, or None if the expression contains nothing indexable

    Raises:
        QuerySyntaxError: The expression is malformed
    """
    groups: List[List[Clause]] = []
    exclusions: List[Clause] = []
    last = "none"

    for token in _scan(expression):
        if token.kind == "or":
            if last != "positive":
                raise QuerySyntaxError("OR must appear between two search terms")
            last = "or"
            continue

        clause = _build_clause(token)

        if token.negated:
            if last == "or":
                raise QuerySyntaxError("OR cannot be followed by an exclusion")
            if clause is None:
                raise QuerySyntaxError(f"Empty exclusion: '-{token.text}' has no searchable text")
            exclusions.append(clause)
            last = "exclusion"
            continue

        if clause is None:
            # Punctuation-only words contribute nothing.
            continue

        if last == "or":
            groups[-1].append(clause)
        else:
            groups.append([clause])
        last = "positive"

    if last == "or":
        raise QuerySyntaxError("OR must appear between two search terms")

    if not groups:
        if exclusions:
            raise QuerySyntaxError("Exclusions need at least one term to match")
        return None

    return LexicalQuery(
        groups=tuple(tuple(group) for group in groups),
        exclusions=tuple(exclusions),
    )


class LexicalIndex:
    """In-memory BM25 index over document tokens, partitioned by collection."""

    def __init__(self, k1: float = 1.5, b: float = 0.75):
        self.k1 = k1
        self.b = b
        self._doc_ids: List[str] = []
        self._collections: List[str] = []
        self._tokens: List[List[str]] = []
        self._token_sets: List[Set[str]] = []
        self._positions: Dict[str, int] = {}
        self._bm25: Optional[_LuceneBM25] = None
        self._vocabulary: List[str] = []
        self._lock = threading.Lock()

    def __len__(self) -> int:
        return len(self._doc_ids)

    def add(self, doc_id: str, collection: str, text: str) -> None:
        """Add or replace a document."""
        tokens = tokenize(text)
        with self._lock:
            if doc_id in self._positions:
                pos = self._positions[doc_id]
                self._collections[pos] = collection
                self._tokens[pos] = tokens
                self._token_sets[pos] = set(tokens)
            else:
                self._positions[doc_id] = len(self._doc_ids)
                self._doc_ids.append(doc_id)
                self._collections.append(collection)
                self._tokens.append(tokens)
                self._token_sets.append(set(tokens))
            self._bm25 = None

    def remove(self, doc_id: str) -> None:
        with self._lock:
            pos = self._positions.pop(doc_id, None)
            if pos is None:
                return
            for column in (self._doc_ids, self._collections, self._tokens, self._token_sets):
                del column[pos]
            self._positions = {d: i for i, d in enumerate(self._doc_ids)}
            self._bm25 = None

    def _ensure_built(self) -> Optional[_LuceneBM25]:
        with self._lock:
            if self._bm25 is None and any(self._tokens):
                self._bm25 = _LuceneBM25(self._tokens, k1=self.k1, b=self.b)
                self._vocabulary = sorted(set().union(*self._token_sets))
                logger.debug(f"Built BM25 index over {len(self._tokens)} documents")
            return self._bm25

    def _expand_prefix(self, prefix: str) -> Set[str]:
        start = bisect.bisect_left(self._vocabulary, prefix)
        terms = set()
        for term in self._vocabulary[start:]:
            if not term.startswith(prefix):
                break
            terms.add(term)
        return terms

    def _clause_matches(self, pos: int, clause: Clause, expansions: Dict[str, Set[str]]) -> bool:
        token_set = self._token_sets[pos]
        if isinstance(clause, TermClause):
            return not token_set.isdisjoint(expansions[clause.prefix])

        if not token_set.issuperset(clause.tokens):
            return False
        tokens = self._tokens[pos]
        width = len(clause.tokens)
        first = clause.tokens[0]
        for i, token in enumerate(tokens[: len(tokens) - width + 1]):
            if token == first and tuple(tokens[i:i + width]) == clause.tokens:
                return True
        return False

    def query(
        self,
        compiled: LexicalQuery,
        collections: FrozenSet[str] = frozenset(),
    ) -> List[Tuple[str, float]]:
        """
        Return (doc_id, bm25_score) for matching documents, best first.

        Args:
            compiled: Compiled keyword expression
            collections: Restrict to these collections; empty means all

        Returns:
            All matches ordered by descending score, ties by doc id
        """
        bm25 = self._ensure_built()
        if bm25 is None:
            return []

        all_clauses = [c for group in compiled.groups for c in group] + list(compiled.exclusions)
        expansions = {
            c.prefix: self._expand_prefix(c.prefix)
            for c in all_clauses
            if isinstance(c, TermClause)
        }

        candidates = []
        for pos in range(len(self._doc_ids)):
            if collections and self._collections[pos] not in collections:
                continue
            if not all(
                any(self._clause_matches(pos, c, expansions) for c in group)
                for group in compiled.groups
            ):
                continue
            if any(self._clause_matches(pos, c, expansions) for c in compiled.exclusions):
                continue
            candidates.append(pos)

        if not candidates:
            return []

        # Score with every term the positive clauses can match.
        score_terms: Set[str] = set()
        for group in compiled.groups:
            for clause in group:
                if isinstance(clause, TermClause):
                    score_terms.update(expansions[clause.prefix])
                else:
                    score_terms.update(clause.tokens)

        scores = bm25.get_batch_scores(sorted(score_terms), candidates)
        scores = np.maximum(np.asarray(scores, dtype=float), 0.0)

        ranked = sorted(zip(candidates, scores), key=lambda item: (-item[1], self._doc_ids[item[0]]))
        return [(self._doc_ids[pos], float(score)) for pos, score in ranked]


def lex_search(
    store: "DocumentStore",
    expression: Union[str, LexicalQuery],
    collections: FrozenSet[str] = frozenset(),
    limit: int = 10,
) -> List[RawHit]:
    """
    Run a keyword search against the store's lexical index.

    Args:
        store: Document store holding the lexical index
        expression: Keyword expression, or an already compiled query
        collections: Collections to search; empty means all
        limit: Maximum number of hits, applied after collection filtering

    Returns:
        Hits ordered by descending BM25 score

    Raises:
        QuerySyntaxError: The expression cannot be compiled
    """
    compiled = compile_expression(expression) if isinstance(expression, str) else expression
    if compiled is None:
        return []

    matches = store.lexical_index.query(compiled, collections)
    hits = [RawHit(doc_id, score) for doc_id, score in matches[:limit]]
    logger.debug(f"Lexical search returned {len(hits)} of {len(matches)} matches")
    return hits


__all__ = [
    "tokenize",
    "TermClause",
    "PhraseClause",
    "LexicalQuery",
    "compile_expression",
    "LexicalIndex",
    "lex_search",
]
