from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, Set, Union

from feindexer.document import Document
from feindexer.errors import ConfigurationError, MissingFieldError
from feindexer.lookup import LookupCache

Row = Mapping[str, Any]
Lookups = Mapping[str, LookupCache]


class Collapse(str, Enum):
    ALL = "all"
    FIRST = "first"
    LAST = "last"
    MAX = "max"
    MIN = "min"
    JOIN = "join"
    COUNT = "count"


@dataclass(frozen=True)
class ScalarField:
    column: str
    target: Optional[str] = None
    required: bool = False
    default: Any = None
    transform: Optional[Callable[[Any], Any]] = None

    @property
    def field(self) -> str:
        return self.target or self.column

    @property
    def multi(self) -> bool:
        return False

    def apply(self, doc: Document, row: Row, lookups: Lookups) -> None:
        value = row.get(self.column)
        if value is not None and self.transform is not None:
            value = self.transform(value)
        if value is None:
            value = self.default
        if value is None and self.required:
            raise MissingFieldError(self.field)
        doc.set(self.field, value)


@dataclass(frozen=True)
class LookupField:
    lookup: str
    target: str
    join_column: str
    collapse: Collapse = Collapse.ALL
    distinct: bool = False
    project: Optional[Callable[[Any], Any]] = None
    separator: str = " "
    default: Any = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "collapse", Collapse(self.collapse))

    @property
    def field(self) -> str:
        return self.target

    @property
    def multi(self) -> bool:
        return self.collapse is Collapse.ALL

    def apply(self, doc: Document, row: Row, lookups: Lookups) -> None:
        values = lookups[self.lookup].get(row.get(self.join_column))
        if values is not None and self.project is not None:
            values = tuple(v for v in (self.project(value) for value in values) if v is not None)
        if self.collapse is Collapse.ALL:
            if values:
                doc.add_all(self.target, values, distinct=self.distinct)
            elif self.default is not None:
                doc.add(self.target, self.default)
            return
        doc.set(self.target, self._collapse(values))

    def _collapse(self, values: Optional[Sequence[Any]]) -> Any:
        if self.collapse is Collapse.COUNT:
            return len(values) if values else 0
        if not values:
            return self.default
        if self.collapse is Collapse.FIRST:
            return values[0]
        if self.collapse is Collapse.LAST:
            return values[-1]
        if self.collapse is Collapse.MAX:
            return max(values)
        if self.collapse is Collapse.MIN:
            return min(values)
        return self.separator.join(str(value) for value in values)


@dataclass(frozen=True)
class RankField:
    lookup: str
    target: str
    column: str

    @property
    def field(self) -> str:
        return self.target

    @property
    def multi(self) -> bool:
        return False

    def apply(self, doc: Document, row: Row, lookups: Lookups) -> None:
        doc.set(self.target, lookups[self.lookup].first(row.get(self.column)))


@dataclass(frozen=True)
class DerivedField:
    target: str
    compute: Callable[[Row, Lookups], Any]
    multi: bool = False
    distinct: bool = False

    @property
    def field(self) -> str:
        return self.target

    def apply(self, doc: Document, row: Row, lookups: Lookups) -> None:
        value = self.compute(row, lookups)
        if self.multi:
            doc.add_all(self.target, value, distinct=self.distinct)
        else:
            doc.set(self.target, value)


Rule = Union[ScalarField, LookupField, RankField, DerivedField]


class DocumentAssembler:
    def __init__(self, id_field: str, rules: Sequence[Rule], id_column: Optional[str] = None) -> None:
        self.id_field = id_field
        self.id_column = id_column or id_field
        self.rules: List[Rule] = list(rules)
        self._validate()

    def _validate(self) -> None:
        multiplicity: Dict[str, bool] = {}
        for rule in self.rules:
            previous = multiplicity.setdefault(rule.field, rule.multi)
            if previous != rule.multi:
                raise ConfigurationError(f"field {rule.field} is declared both single- and multi-valued")
            elif not rule.multi and sum(1 for other in self.rules if other.field == rule.field) > 1:
                raise ConfigurationError(f"single-valued field {rule.field} has more than one rule")

    @property
    def lookups_required(self) -> Set[str]:
        return {rule.lookup for rule in self.rules if isinstance(rule, (LookupField, RankField))}

    def assemble(self, row: Row, lookups: Lookups) -> Document:
        doc_key = row.get(self.id_column)
        if doc_key is None:
            raise MissingFieldError(self.id_field)
        doc = Document()
        doc.set(self.id_field, str(doc_key))
        for rule in self.rules:
            try:
                rule.apply(doc, row, lookups)
            except MissingFieldError as exc:
                raise MissingFieldError(exc.field, doc_key) from None
        return doc
