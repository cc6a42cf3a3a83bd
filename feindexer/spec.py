from __future__ import annotations

from dataclasses import dataclass, field
from typing import List, Optional, Sequence

from feindexer.assembler import DocumentAssembler, Rule
from feindexer.errors import ConfigurationError
from feindexer.lookup import LookupSpec, order_lookups


@dataclass(frozen=True)
class ClosureStep:
    """Materialize the transitive closure of ``edge_sql`` into ``table``.

    ``edge_sql`` must select ``child_key`` and ``parent_key`` columns; the
    working table gets ``descendant_key`` and ``ancestor_key``.
    """

    table: str
    edge_sql: str


@dataclass
class IndexerSpec:
    name: str
    index: str
    id_field: str
    query: str
    bounds_sql: Optional[str] = None
    stream: bool = False
    chunk_size: int = 10000
    lookups: List[LookupSpec] = field(default_factory=list)
    rules: List[Rule] = field(default_factory=list)
    prepare: List[ClosureStep] = field(default_factory=list)
    optimize: bool = True
    mapping: Optional[str] = None
    id_column: Optional[str] = None

    def __post_init__(self) -> None:
        self.validate()

    def validate(self) -> None:
        if self.stream and self.bounds_sql:
            raise ConfigurationError(f"{self.name}: stream mode takes no bounds_sql")
        if not self.stream:
            if not self.bounds_sql:
                raise ConfigurationError(f"{self.name}: chunked mode needs bounds_sql")
            if self.chunk_size <= 0:
                raise ConfigurationError(f"{self.name}: chunk_size must be positive")
        if self.stream and any(spec.chunked for spec in self.lookups):
            raise ConfigurationError(f"{self.name}: chunked lookups need chunked mode")
        order_lookups(self.lookups)
        known = {spec.name for spec in self.lookups}
        missing = sorted(self.assembler().lookups_required - known)
        if missing:
            raise ConfigurationError(f"{self.name}: unknown lookups {', '.join(missing)}")
        for spec in self.run_lookups:
            for dependency in spec.depends_on:
                if self.lookup(dependency).chunked:
                    raise ConfigurationError(f"{self.name}: lookup {spec.name} cannot expand with chunked {dependency}")

    def assembler(self) -> DocumentAssembler:
        return DocumentAssembler(self.id_field, self.rules, id_column=self.id_column)

    def lookup(self, name: str) -> LookupSpec:
        for spec in self.lookups:
            if spec.name == name:
                return spec
        raise KeyError(name)

    @property
    def run_lookups(self) -> Sequence[LookupSpec]:
        return [spec for spec in self.lookups if not spec.chunked]

    @property
    def chunk_lookups(self) -> Sequence[LookupSpec]:
        return [spec for spec in self.lookups if spec.chunked]
