"""Bounded-memory retrieval of a primary record set ordered by an integer key.

Chunked queries are templates taking ``%(start)s`` and ``%(stop)s`` and must
select ``key > %(start)s AND key <= %(stop)s`` ordered by the key.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, Iterator, Optional

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class KeyRange:
    min_key: int
    max_key: int


@dataclass(frozen=True)
class Chunk:
    start: int
    stop: int

    @property
    def params(self) -> Dict[str, int]:
        return {"start": self.start, "stop": self.stop}


def chunk_ranges(min_key: int, max_key: int, chunk_size: int) -> Iterator[Chunk]:
    if chunk_size <= 0:
        raise ValueError(f"chunk_size must be positive, got {chunk_size}")
    if max_key < min_key:
        return
    start = ((min_key - 1) // chunk_size) * chunk_size
    while start < max_key:
        yield Chunk(start, start + chunk_size)
        start += chunk_size


class RecordCursor:
    def __init__(self, source) -> None:
        self.source = source

    def key_bounds(self, bounds_sql: str, params: Optional[Dict[str, Any]] = None) -> Optional[KeyRange]:
        row = self.source.fetch_one(bounds_sql, params)
        if not row or row.get("max_key") is None:
            return None
        max_key = int(row["max_key"])
        min_key = row.get("min_key")
        return KeyRange(int(min_key) if min_key is not None else max_key, max_key)

    def iter_chunks(self, chunk_size: int, bounds_sql: str) -> Iterator[Chunk]:
        bounds = self.key_bounds(bounds_sql)
        if bounds is None:
            logger.info("[cursor] no rows, nothing to chunk")
            return
        logger.info(
            "[cursor] keys %s..%s in chunks of %s",
            bounds.min_key,
            bounds.max_key,
            chunk_size,
        )
        yield from chunk_ranges(bounds.min_key, bounds.max_key, chunk_size)

    def fetch_chunk(self, query: str, chunk: Chunk) -> Iterator[Dict[str, Any]]:
        return self.source.stream(query, chunk.params)

    def open_chunked(self, query: str, chunk_size: int, bounds_sql: str) -> Iterator[Dict[str, Any]]:
        for chunk in self.iter_chunks(chunk_size, bounds_sql):
            yield from self.fetch_chunk(query, chunk)

    def open_stream(self, query: str, params: Optional[Any] = None) -> Iterator[Dict[str, Any]]:
        return self.source.stream(query, params)
