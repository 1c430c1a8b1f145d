"""Structured logging configuration for quarry."""

import logging
from typing import Any, Dict, List, Optional, Sequence

import structlog
from structlog.stdlib import LoggerFactory


def configure_logging(log_level: str = "INFO", json_logs: bool = False) -> None:
    """Configure structured logging with audit events."""

    # Set log level
    numeric_level = getattr(logging, log_level.upper(), logging.INFO)
    logging.basicConfig(level=numeric_level)

    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.add_log_level,
        structlog.processors.StackInfoRenderer(),
        structlog.dev.set_exc_info,
    ]

    if json_logs:
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=True))

    structlog.configure(
        processors=processors,
        logger_factory=LoggerFactory(),
        wrapper_class=structlog.make_filtering_bound_logger(numeric_level),
        context_class=dict,
        cache_logger_on_first_use=True,
    )


def get_audit_logger(component: str) -> structlog.BoundLogger:
    """Get a logger with audit context for a specific component."""
    logger = structlog.get_logger(component)
    return logger.bind(component=component, audit=True)


def log_structured_search(
    logger: structlog.BoundLogger,
    search_types: Sequence[str],
    collections: Sequence[str],
    sub_result_counts: List[int],
    result_count: int,
    execution_time_ms: float,
    options: Optional[Dict[str, Any]] = None,
) -> None:
    """Log a completed structured search."""
    logger.info(
        "structured_search_completed",
        search_types=list(search_types),
        collections=sorted(collections),
        sub_result_counts=sub_result_counts,
        result_count=result_count,
        execution_time_ms=execution_time_ms,
        options=options or {},
        event_type="structured_search",
    )


def log_indexing_event(
    logger: structlog.BoundLogger,
    directory: str,
    collection: str,
    documents_indexed: int,
    documents_skipped: int,
    embedded: bool,
    processing_time_ms: float,
) -> None:
    """Log a directory indexing run."""
    logger.info(
        "collection_indexed",
        directory=directory,
        collection=collection,
        documents_indexed=documents_indexed,
        documents_skipped=documents_skipped,
        embedded=embedded,
        processing_time_ms=processing_time_ms,
        event_type="indexing",
    )
