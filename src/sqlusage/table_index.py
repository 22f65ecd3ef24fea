import logging
from dataclasses import dataclass, field
from typing import Dict, FrozenSet, Iterable, List, Optional, Sequence, Tuple

logger = logging.getLogger(__name__)
logger.addHandler(logging.NullHandler())

DEFAULT_SCHEMA = "dbo"
DEFAULT_SCHEMA_PREFIXES: Tuple[str, ...] = (DEFAULT_SCHEMA,)


def strip_brackets(token: str) -> str:
    return token.replace("[", "").replace("]", "")


def _own_variants(name: str, schema: str) -> List[str]:
    return [
        f"{schema}.{name}",
        f"[{schema}].[{name}]",
        f"{schema}.[{name}]",
        f"[{schema}].{name}",
        f"[{schema}.{name}]",
    ]


def _assumed_variants(name: str, schema: str, default_schema: str) -> List[str]:
    variants = [name, f"[{name}]"]
    if schema != default_schema:
        variants.extend(_own_variants(name, default_schema))
    return variants


@dataclass(frozen=True)
class TableDescriptor:
    name: str
    schema: str = DEFAULT_SCHEMA
    default_schema: str = DEFAULT_SCHEMA
    variations: FrozenSet[str] = field(default=frozenset(), compare=False, repr=False)

    @classmethod
    def create(cls, name: str, schema: Optional[str] = None, default_schema: str = DEFAULT_SCHEMA):
        name = strip_brackets(name or "").strip()
        schema = strip_brackets(schema or default_schema).strip() or default_schema
        if not name:
            raise ValueError("Table name is required")
        upper_name, upper_schema = name.upper(), schema.upper()
        upper_default = default_schema.upper()
        variations = frozenset(
            _own_variants(upper_name, upper_schema)
            + _assumed_variants(upper_name, upper_schema, upper_default)
        )
        return cls(name=name, schema=schema, default_schema=default_schema, variations=variations)

    @classmethod
    def from_catalog_row(cls, row: dict, default_schema: str = DEFAULT_SCHEMA):
        """Build from a catalog row such as {'object_name': ..., 'schema_name': ...}."""
        name = row.get("object_name") or row.get("name") or ""
        schema = row.get("schema_name") or row.get("schema")
        if not schema and "." in name:
            schema, name = name.rsplit(".", 1)
        return cls.create(name, schema, default_schema=default_schema)

    @property
    def qualified_name(self) -> str:
        return f"{self.schema}.{self.name}"

    @property
    def display_name(self) -> str:
        if self.schema.upper() == self.default_schema.upper():
            return self.name
        return self.qualified_name

    @property
    def key(self) -> str:
        return self.qualified_name.upper()

    @property
    def own_variations(self) -> FrozenSet[str]:
        return frozenset(_own_variants(self.name.upper(), self.schema.upper()))


class TableIndex:
    """Lookup of every textual form of the known tables, first registration wins."""

    def __init__(
        self,
        tables: Iterable[TableDescriptor],
        default_schema: str = DEFAULT_SCHEMA,
        schema_prefixes: Sequence[str] = DEFAULT_SCHEMA_PREFIXES,
    ):
        self.default_schema = default_schema
        self.schema_prefixes = tuple(p.upper() for p in schema_prefixes if p)
        self.collisions = 0
        self._lookup: Dict[str, TableDescriptor] = {}
        self._tables: Dict[str, TableDescriptor] = {}

        ordered = []
        for table in tables:
            if table.key in self._tables:
                self.collisions += 1
                continue
            self._tables[table.key] = table
            ordered.append(table)

        # Exact schema-qualified forms go in first so an assumed default schema never shadows them.
        for table in ordered:
            for variant in sorted(table.own_variations):
                self._register(variant, table)
        # Bare names prefer the default schema, then listing order.
        default_upper = default_schema.upper()
        for table in sorted(ordered, key=lambda t: t.schema.upper() != default_upper):
            for variant in sorted(table.variations - table.own_variations):
                self._register(variant, table)

        if self.collisions:
            logger.debug(f"Table index rejected {self.collisions} colliding name variants")

    def _register(self, variant: str, table: TableDescriptor):
        if variant in self._lookup:
            if self._lookup[variant] is not table:
                self.collisions += 1
            return
        self._lookup[variant] = table

    def __len__(self) -> int:
        return len(self._tables)

    def __contains__(self, token: str) -> bool:
        return self.find(token) is not None

    @property
    def tables(self) -> List[TableDescriptor]:
        return list(self._tables.values())

    @property
    def keys(self) -> List[str]:
        return list(self._lookup)

    def variants_of(self, table: TableDescriptor) -> List[str]:
        return sorted(k for k, v in self._lookup.items() if v is table)

    def find(self, token: str) -> Optional[TableDescriptor]:
        if not token:
            return None
        upper = token.upper()
        found = self._lookup.get(upper)
        if found:
            return found

        bare = strip_brackets(upper)
        found = self._lookup.get(bare)
        if found:
            return found

        if "." not in bare:
            for prefix in self.schema_prefixes:
                found = self._lookup.get(f"{prefix}.{bare}")
                if found:
                    return found
        return None

    def find_parts(self, parts: Sequence[str]) -> Optional[TableDescriptor]:
        """Resolve an already split name such as ``["SALES", "ORDERS"]``."""
        if not parts or not parts[-1]:
            return None
        if len(parts) == 1:
            return self.find(parts[0])
        schema = parts[-2]
        if not schema:
            return self.find(parts[-1])
        return self.find(f"{schema}.{parts[-1]}")

    def match_at(self, parts: Sequence[str], start: int) -> Optional[Tuple[TableDescriptor, int]]:
        """Match a dotted name beginning at ``parts[start]``.

        ``parts`` is a token text sequence where separators appear as ``"."``.
        Returns the descriptor and the number of tokens consumed.
        """
        n = len(parts)
        if start >= n or parts[start] == ".":
            return None

        # database.schema.table and database..table
        if start + 4 < n and parts[start + 1] == "." and parts[start + 3] == ".":
            found = self.find(f"{parts[start + 2]}.{parts[start + 4]}")
            if found:
                return found, 5
        if start + 3 < n and parts[start + 1] == "." and parts[start + 2] == ".":
            found = self.find(parts[start + 3])
            if found:
                return found, 4
        if start + 2 < n and parts[start + 1] == "." and parts[start + 2] != ".":
            found = self.find(f"{parts[start]}.{parts[start + 2]}")
            if found:
                return found, 3
            # schema.table where the schema is unknown but qualified: not the bare name
            return None

        found = self.find(parts[start])
        if found:
            return found, 1
        return None


def build_index(
    tables: Iterable[TableDescriptor],
    default_schema: str = DEFAULT_SCHEMA,
    schema_prefixes: Sequence[str] = DEFAULT_SCHEMA_PREFIXES,
) -> TableIndex:
    return TableIndex(tables, default_schema=default_schema, schema_prefixes=schema_prefixes)
