"""Structured search: validate sub-searches, run them in parallel, fuse the ranked lists."""

import logging
import time
from concurrent.futures import FIRST_EXCEPTION, Future, ThreadPoolExecutor, wait
from typing import TYPE_CHECKING, Callable, List, Optional, Sequence

from .embeddings import EmbeddingBackend, get_default_backend
from .errors import QuerySyntaxError, SearchTimeoutError
from .fusion import DEFAULT_RRF_K, fuse
from .lexical import LexicalQuery, compile_expression, lex_search
from .logging_config import get_audit_logger, log_structured_search
from .models import FusedResult, RawHit, SearchOptions, SearchType, StructuredSubSearch
from .query_parser import expand_plain_query, parse_structured_query, validate_semantic_query
from .semantic import semantic_search

if TYPE_CHECKING:
    from .store import DocumentStore

logger = logging.getLogger(__name__)

# Each sub-search fetches more than the final limit so fusion sees overlapping candidates.
CANDIDATE_MULTIPLIER = 3
DEFAULT_MAX_WORKERS = 4

SubSearchTask = Callable[[], List[RawHit]]


def _lexical_task(store: "DocumentStore", compiled: Optional[LexicalQuery], options: SearchOptions, k: int) -> SubSearchTask:
    def run() -> List[RawHit]:
        if compiled is None:
            return []
        return lex_search(store, compiled, options.collections, k)
    return run


def _semantic_task(
    store: "DocumentStore",
    text: str,
    backend: EmbeddingBackend,
    options: SearchOptions,
    k: int,
) -> SubSearchTask:
    def run() -> List[RawHit]:
        # The lease lives in the worker so it covers embedding even after a timeout.
        with backend.lease():
            return semantic_search(store, text, backend, options.collections, k)
    return run


def _plan(
    store: "DocumentStore",
    searches: Sequence[StructuredSubSearch],
    options: SearchOptions,
    backend: Optional[EmbeddingBackend],
) -> List[SubSearchTask]:
    """Validate every sub-search and build its task; no index is touched here."""
    k = options.limit * CANDIDATE_MULTIPLIER
    tasks: List[SubSearchTask] = []

    for position, search in enumerate(searches):
        if search.type is SearchType.LEX:
            tasks.append(_lexical_task(store, compile_expression(search.query), options, k))
        elif search.type in (SearchType.VEC, SearchType.HYDE):
            error = validate_semantic_query(search.query)
            if error:
                raise QuerySyntaxError(f"{search.type.value}: {error}")
            tasks.append(_semantic_task(store, search.query, backend, options, k))
        else:
            raise ValueError(f"Unhandled search type at position {position}: {search.type!r}")

    return tasks


def _run_parallel(tasks: List[SubSearchTask], timeout: Optional[float], max_workers: int) -> List[List[RawHit]]:
    """Run tasks concurrently; results keep task order. The first failure cancels the rest."""
    executor = ThreadPoolExecutor(
        max_workers=max(1, min(max_workers, len(tasks))),
        thread_name_prefix="quarry-search",
    )
    try:
        futures: List[Future] = [executor.submit(task) for task in tasks]
        done, pending = wait(futures, timeout=timeout, return_when=FIRST_EXCEPTION)

        failed = [f for f in futures if f in done and f.exception() is not None]
        if failed or pending:
            for future in pending:
                future.cancel()
            if failed:
                failed[0].result()
            raise SearchTimeoutError(
                f"Structured search timed out after {timeout}s with {len(pending)} sub-search(es) pending"
            )

        return [future.result() for future in futures]
    finally:
        executor.shutdown(wait=False, cancel_futures=True)


def structured_search(
    store: "DocumentStore",
    searches: Sequence[StructuredSubSearch],
    options: Optional[SearchOptions] = None,
    *,
    backend: Optional[EmbeddingBackend] = None,
    timeout: Optional[float] = None,
    normalization: str = "max",
    rrf_k: int = DEFAULT_RRF_K,
    max_workers: int = DEFAULT_MAX_WORKERS,
) -> List[FusedResult]:
    """
    Run typed sub-searches and fuse them into one ranked list.

    Args:
        store: Document store to search
        searches: Sub-searches; the first one is weighted double in fusion
        options: Collection filter, result limit and minimum fused score
        backend: Embedding backend for vec/hyde; the process default when None
        timeout: Seconds to wait for all sub-searches; None waits indefinitely
        normalization: Per-list score normalization before fusion ("max" or "rrf")
        rrf_k: Rank offset when normalization is "rrf"
        max_workers: Upper bound on concurrently running sub-searches

    Returns:
        Fused results, best first

    Raises:
        QuerySyntaxError: A sub-search is malformed (raised before any index access)
        EmbeddingUnavailableError: A vec/hyde sub-search could not be embedded
        SearchTimeoutError: The timeout elapsed
    """
    if not searches:
        return []

    options = options or SearchOptions()
    audit_logger = get_audit_logger("search")
    start_time = time.time()

    if backend is None and any(s.type.is_semantic for s in searches):
        backend = get_default_backend()

    tasks = _plan(store, searches, options, backend)
    sub_results = _run_parallel(tasks, timeout, max_workers)

    results = fuse(
        sub_results,
        store.resolve,
        min_score=options.min_score,
        limit=options.limit,
        normalization=normalization,
        rrf_k=rrf_k,
    )

    log_structured_search(
        audit_logger,
        search_types=[s.type.value for s in searches],
        collections=list(options.collections),
        sub_result_counts=[len(hits) for hits in sub_results],
        result_count=len(results),
        execution_time_ms=(time.time() - start_time) * 1000,
        options={"limit": options.limit, "min_score": options.min_score, "normalization": normalization},
    )
    return results


def search_query(
    store: "DocumentStore",
    text: str,
    options: Optional[SearchOptions] = None,
    **kwargs,
) -> List[FusedResult]:
    """Parse free-form query text and search; a plain query becomes lex + vec."""
    searches = parse_structured_query(text)
    if searches is None:
        searches = expand_plain_query(text)
    return structured_search(store, searches, options, **kwargs)


__all__ = ["structured_search", "search_query", "CANDIDATE_MULTIPLIER"]
