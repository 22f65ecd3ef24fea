# src/sqlusage/adapters/__init__.py

from typing import Sequence

from sqlalchemy import create_engine

from ..table_index import DEFAULT_SCHEMA, DEFAULT_SCHEMA_PREFIXES
from .base import BaseCatalogAdapter, parse_object_name
from .inspector import InspectorCatalogAdapter
from .mssql import MSSQLCatalogAdapter


def get_adapter(
    source_config: dict,
    default_schema: str = DEFAULT_SCHEMA,
    schema_prefixes: Sequence[str] = DEFAULT_SCHEMA_PREFIXES,
) -> BaseCatalogAdapter:
    """Return a catalog adapter for the configured source database."""
    db_type = source_config.get("type", "mssql").lower()
    uri = source_config["uri"]

    if db_type not in ("mssql", "generic"):
        raise ValueError(f"Unsupported Source DB Type: {db_type}")

    engine = create_engine(uri)

    if db_type == "mssql":
        return MSSQLCatalogAdapter(engine, default_schema=default_schema, schema_prefixes=schema_prefixes)
    return InspectorCatalogAdapter(
        engine,
        schemas=source_config.get("schemas"),
        default_schema=default_schema,
        schema_prefixes=schema_prefixes,
    )


__all__ = [
    "BaseCatalogAdapter",
    "InspectorCatalogAdapter",
    "MSSQLCatalogAdapter",
    "get_adapter",
    "parse_object_name",
]
