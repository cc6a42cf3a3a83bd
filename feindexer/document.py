from __future__ import annotations

from typing import Any, Dict, Iterable, Iterator, List, Optional, Set


class Document:
    """One search document.

    Single-valued fields are set with ``set``; multi-valued fields are built
    with ``add``. ``None`` is never stored, so a field with no values is absent
    rather than present-but-empty.
    """

    __slots__ = ("_fields", "_distinct")

    def __init__(self, fields: Optional[Dict[str, Any]] = None) -> None:
        self._fields: Dict[str, Any] = {}
        self._distinct: Dict[str, Set[Any]] = {}
        for name, value in (fields or {}).items():
            if isinstance(value, list):
                self.add_all(name, value)
            else:
                self.set(name, value)

    def set(self, field: str, value: Any) -> None:
        if value is None:
            return
        self._fields[field] = value

    def add(self, field: str, value: Any) -> None:
        if value is None:
            return
        values = self._fields.get(field)
        if not isinstance(values, list):
            values = [] if values is None else [values]
            self._fields[field] = values
        values.append(value)

    def add_distinct(self, field: str, value: Any) -> None:
        if value is None:
            return
        seen = self._distinct.get(field)
        if seen is None:
            existing = self._fields.get(field)
            if isinstance(existing, list):
                seen = set(existing)
            elif existing is not None:
                seen = {existing}
            else:
                seen = set()
            self._distinct[field] = seen
        if value in seen:
            return
        seen.add(value)
        self.add(field, value)

    def add_all(self, field: str, values: Optional[Iterable[Any]], distinct: bool = False) -> None:
        if values is None:
            return
        for value in values:
            if distinct:
                self.add_distinct(field, value)
            else:
                self.add(field, value)

    def get(self, field: str, default: Any = None) -> Any:
        return self._fields.get(field, default)

    def to_dict(self) -> Dict[str, Any]:
        return {name: list(value) if isinstance(value, list) else value for name, value in self._fields.items()}

    def values(self, field: str) -> List[Any]:
        value = self._fields.get(field)
        if value is None:
            return []
        return list(value) if isinstance(value, list) else [value]

    def __contains__(self, field: str) -> bool:
        return field in self._fields

    def __getitem__(self, field: str) -> Any:
        return self._fields[field]

    def __iter__(self) -> Iterator[str]:
        return iter(self._fields)

    def __len__(self) -> int:
        return len(self._fields)

    def __eq__(self, other: object) -> bool:
        if isinstance(other, Document):
            return self._fields == other._fields
        if isinstance(other, dict):
            return self._fields == other
        return NotImplemented

    def __repr__(self) -> str:
        return f"Document({self._fields!r})"
