from __future__ import annotations

import logging
import sys
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterable, Iterator, List, Mapping, Optional, Sequence, Tuple

from feindexer.errors import ConfigurationError

logger = logging.getLogger(__name__)

Row = Mapping[str, Any]


class LookupCache:
    """Immutable one-to-many join table: key -> tuple of values.

    A key is present only when it has at least one value; ``get`` returns
    ``None`` for everything else.
    """

    __slots__ = ("name", "_data", "skipped")

    def __init__(self, data: Mapping[Any, Sequence[Any]], name: str = "lookup", skipped: int = 0) -> None:
        self.name = name
        self._data: Dict[Any, Tuple[Any, ...]] = {key: tuple(values) for key, values in data.items() if values}
        self.skipped = skipped

    @classmethod
    def build(
        cls,
        rows: Iterable[Row],
        key_column: str,
        value_column: str,
        *,
        distinct: bool = False,
        intern: bool = False,
        name: str = "lookup",
    ) -> "LookupCache":
        return cls._collect(rows, key_column, lambda row: row.get(value_column), distinct, intern, name)

    @classmethod
    def build_value_object(
        cls,
        rows: Iterable[Row],
        key_column: str,
        value_factory: Callable[[Row], Any],
        *,
        distinct: bool = False,
        name: str = "lookup",
    ) -> "LookupCache":
        return cls._collect(rows, key_column, value_factory, distinct, False, name)

    @classmethod
    def from_ordering(cls, values: Iterable[Any], name: str = "ordering") -> "LookupCache":
        ranks: Dict[Any, List[int]] = {}
        for position, value in enumerate(values):
            if value is not None and value not in ranks:
                ranks[value] = [position]
        return cls(ranks, name=name)

    @classmethod
    def merge(cls, caches: Iterable["LookupCache"], name: Optional[str] = None) -> "LookupCache":
        merged: Dict[Any, List[Any]] = {}
        skipped = 0
        cache_name = name
        for cache in caches:
            cache_name = cache_name or cache.name
            skipped += cache.skipped
            for key, values in cache._data.items():
                merged.setdefault(key, []).extend(values)
        return cls(merged, name=cache_name or "lookup", skipped=skipped)

    @classmethod
    def _collect(
        cls,
        rows: Iterable[Row],
        key_column: str,
        value_of: Callable[[Row], Any],
        distinct: bool,
        intern: bool,
        name: str,
    ) -> "LookupCache":
        grouped: Dict[Any, List[Any]] = {}
        seen: Dict[Any, set] = {}
        skipped = 0
        for row in rows:
            key = row.get(key_column)
            if key is None:
                skipped += 1
                continue
            value = value_of(row)
            if value is None:
                continue
            if intern and isinstance(value, str):
                value = sys.intern(value)
            if distinct:
                key_seen = seen.setdefault(key, set())
                if value in key_seen:
                    continue
                key_seen.add(value)
            grouped.setdefault(key, []).append(value)
        if skipped:
            logger.warning("[lookup] %s: skipped %s rows with null %s", name, skipped, key_column)
        return cls(grouped, name=name, skipped=skipped)

    def get(self, key: Any) -> Optional[Tuple[Any, ...]]:
        return self._data.get(key)

    def first(self, key: Any) -> Any:
        values = self._data.get(key)
        return values[0] if values else None

    def last(self, key: Any) -> Any:
        values = self._data.get(key)
        return values[-1] if values else None

    def max(self, key: Any) -> Any:
        values = self._data.get(key)
        return max(values) if values else None

    def min(self, key: Any) -> Any:
        values = self._data.get(key)
        return min(values) if values else None

    def joined(self, key: Any, separator: str = " ") -> Optional[str]:
        values = self._data.get(key)
        return separator.join(str(value) for value in values) if values else None

    def count(self, key: Any) -> int:
        return len(self._data.get(key, ()))

    def keys(self) -> Iterator[Any]:
        return iter(self._data.keys())

    @property
    def size(self) -> int:
        return sum(len(values) for values in self._data.values())

    def __contains__(self, key: Any) -> bool:
        return key in self._data

    def __len__(self) -> int:
        return len(self._data)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, LookupCache):
            return NotImplemented
        return self._data == other._data

    def __repr__(self) -> str:
        return f"LookupCache(name={self.name!r}, keys={len(self._data)}, values={self.size})"


@dataclass(frozen=True)
class LookupSpec:
    name: str
    sql: str
    key_column: str
    value_column: Optional[str] = None
    value_factory: Optional[Callable[[Row], Any]] = None
    distinct: bool = False
    intern: bool = False
    chunked: bool = False
    expand_with: Optional[str] = None
    expand_keep_self: bool = False
    # ordering tables map each distinct value_column value to its sort position
    ordering: bool = False
    order_key: Optional[Callable[[Any], Any]] = None

    def __post_init__(self) -> None:
        if (self.value_column is None) == (self.value_factory is None):
            raise ConfigurationError(f"lookup {self.name} needs exactly one of value_column or value_factory")
        if self.expand_with == self.name:
            raise ConfigurationError(f"lookup {self.name} cannot expand with itself")
        if self.ordering and (self.value_column is None or self.expand_with or self.chunked):
            raise ConfigurationError(f"ordering lookup {self.name} needs a value_column and cannot be chunked or expanded")

    @property
    def depends_on(self) -> Tuple[str, ...]:
        return (self.expand_with,) if self.expand_with else ()

    def build(self, rows: Iterable[Row], caches: Mapping[str, LookupCache]) -> LookupCache:
        if self.ordering:
            values = {row.get(self.value_column) for row in rows} - {None}
            return LookupCache.from_ordering(sorted(values, key=self.order_key), name=self.name)
        if self.value_factory is not None:
            cache = LookupCache.build_value_object(
                rows, self.key_column, self.value_factory, distinct=self.distinct, name=self.name
            )
        else:
            cache = LookupCache.build(
                rows,
                self.key_column,
                self.value_column,
                distinct=self.distinct,
                intern=self.intern,
                name=self.name,
            )
        if self.expand_with:
            cache = self._expand(cache, caches[self.expand_with])
        return cache

    def _expand(self, cache: LookupCache, through: LookupCache) -> LookupCache:
        expanded: Dict[Any, List[Any]] = {}
        for key in cache.keys():
            values: List[Any] = []
            seen = set()
            for value in cache.get(key):
                candidates = ((value,) if self.expand_keep_self else ()) + (through.get(value) or ())
                for candidate in candidates:
                    if self.distinct:
                        if candidate in seen:
                            continue
                        seen.add(candidate)
                    values.append(candidate)
            if values:
                expanded[key] = values
        return LookupCache(expanded, name=self.name, skipped=cache.skipped)


def order_lookups(specs: Sequence[LookupSpec], available: Iterable[str] = ()) -> List[LookupSpec]:
    """Return ``specs`` so that every lookup follows the lookups it expands with.

    Names in ``available`` are treated as already built.
    """
    by_name: Dict[str, LookupSpec] = {}
    for spec in specs:
        if spec.name in by_name:
            raise ConfigurationError(f"duplicate lookup name {spec.name}")
        by_name[spec.name] = spec
    done = set(available)
    ordered: List[LookupSpec] = []
    visiting: set = set()

    def visit(spec: LookupSpec) -> None:
        if spec.name in done:
            return
        if spec.name in visiting:
            raise ConfigurationError(f"lookup dependency cycle at {spec.name}")
        visiting.add(spec.name)
        for dependency in spec.depends_on:
            if dependency in done:
                continue
            if dependency not in by_name:
                raise ConfigurationError(f"lookup {spec.name} depends on unknown lookup {dependency}")
            visit(by_name[dependency])
        visiting.discard(spec.name)
        done.add(spec.name)
        ordered.append(spec)

    for spec in specs:
        visit(spec)
    return ordered


def build_lookups(
    source,
    specs: Sequence[LookupSpec],
    params: Optional[Mapping[str, Any]] = None,
    available: Optional[Mapping[str, LookupCache]] = None,
) -> Dict[str, LookupCache]:
    """Build ``specs`` from ``source`` and return them merged over ``available``."""
    caches: Dict[str, LookupCache] = dict(available or {})
    for spec in order_lookups(specs, caches.keys()):
        started = time.monotonic()
        rows = source.fetch_all(spec.sql, params if spec.chunked else None)
        cache = spec.build(rows, caches)
        caches[spec.name] = cache
        logger.info(
            "[lookup] %s: %s keys, %s values (%.2fs)",
            spec.name,
            len(cache),
            cache.size,
            time.monotonic() - started,
        )
    return caches
