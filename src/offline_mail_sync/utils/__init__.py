"""Utility functions for Offline Mail Sync."""

import logging
from collections.abc import Iterable, Iterator
from typing import TypeVar

import structlog

T = TypeVar("T")


def configure_logging(log_level: str = "INFO", debug: bool = False) -> None:
    """Configure structlog's filtering level.

    Args:
        log_level: Standard level name (DEBUG, INFO, WARNING, ERROR, CRITICAL).
        debug: Force DEBUG regardless of ``log_level``.
    """

    level = logging.DEBUG if debug else logging.getLevelName(log_level.upper())
    if not isinstance(level, int):
        level = logging.INFO

    structlog.configure(
        wrapper_class=structlog.make_filtering_bound_logger(level),
    )


def chunked(items: Iterable[T], size: int) -> Iterator[list[T]]:
    """Yield consecutive lists of at most ``size`` items."""

    if size < 1:
        raise ValueError("size must be >= 1")

    batch: list[T] = []
    for item in items:
        batch.append(item)
        if len(batch) >= size:
            yield batch
            batch = []
    if batch:
        yield batch
