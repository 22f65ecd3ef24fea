from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional, Sequence, Tuple

from sqlalchemy.engine import Engine

from ..table_index import DEFAULT_SCHEMA, DEFAULT_SCHEMA_PREFIXES, TableDescriptor, strip_brackets


TABLE = "Table"
VIEW = "View"
PROCEDURE = "Procedure"
FUNCTION = "Function"
TRIGGER = "Trigger"


def parse_object_name(object_name: str, default_schema: str = DEFAULT_SCHEMA) -> Tuple[str, str, bool]:
    """Split ``schema.name`` on the last dot; returns (schema, name, qualified)."""
    cleaned = strip_brackets((object_name or "").strip())
    if "." in cleaned:
        schema, name = cleaned.rsplit(".", 1)
        return schema or default_schema, name, True
    return default_schema, cleaned, False


def object_row(name: str, schema: str, object_type: str, default_schema: str = DEFAULT_SCHEMA,
               is_encrypted: bool = False) -> Dict[str, Any]:
    qualified = f"{schema}.{name}"
    return {
        "name": name if schema.lower() == default_schema.lower() else qualified,
        "object_name": name,
        "schema_name": schema,
        "qualified_name": qualified,
        "object_type": object_type,
        "is_encrypted": int(bool(is_encrypted)),
    }


class BaseCatalogAdapter(ABC):
    """Source of table listings and object definitions for one server."""

    def __init__(
        self,
        engine: Engine,
        default_schema: str = DEFAULT_SCHEMA,
        schema_prefixes: Sequence[str] = DEFAULT_SCHEMA_PREFIXES,
    ):
        self.engine = engine
        self.default_schema = default_schema
        self.schema_prefixes = list(schema_prefixes)

    @abstractmethod
    def list_tables(self, database: str) -> List[TableDescriptor]:
        """User tables of ``database``."""

    @abstractmethod
    def get_object_definition(self, database: str, object_name: str) -> Optional[str]:
        """Source text of a view, procedure, function or trigger; None for tables or hidden text."""

    @abstractmethod
    def list_objects(self, database: str) -> List[Dict[str, Any]]:
        """Catalog rows: name, object_name, schema_name, qualified_name, object_type, is_encrypted."""

    def dispose(self):
        self.engine.dispose()
