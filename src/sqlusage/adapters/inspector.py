import logging
from typing import Any, Dict, List, Optional, Sequence

from sqlalchemy import inspect
from sqlalchemy.engine import Engine
from sqlalchemy.exc import NoSuchTableError, SQLAlchemyError

from ..models import AdapterError
from ..table_index import DEFAULT_SCHEMA, DEFAULT_SCHEMA_PREFIXES, TableDescriptor
from .base import TABLE, VIEW, BaseCatalogAdapter, object_row, parse_object_name

logger = logging.getLogger(__name__)


class InspectorCatalogAdapter(BaseCatalogAdapter):
    """Any SQLAlchemy dialect through ``inspect()``; the engine URL selects the database."""

    def __init__(
        self,
        engine: Engine,
        schemas: Optional[Sequence[Optional[str]]] = None,
        default_schema: str = DEFAULT_SCHEMA,
        schema_prefixes: Sequence[str] = DEFAULT_SCHEMA_PREFIXES,
    ):
        super().__init__(engine, default_schema=default_schema, schema_prefixes=schema_prefixes)
        self.schemas: List[Optional[str]] = list(schemas) if schemas else [None]

    def _label(self, schema: Optional[str]) -> str:
        return schema or self.default_schema

    def list_tables(self, database: str) -> List[TableDescriptor]:
        try:
            inspector = inspect(self.engine)
            tables = []
            for schema in self.schemas:
                for t_name in inspector.get_table_names(schema=schema):
                    tables.append(TableDescriptor.create(t_name, self._label(schema), default_schema=self.default_schema))
        except SQLAlchemyError as e:
            logger.error(f"Failed to list tables: {e}")
            raise AdapterError(f"Failed to list tables for {database}: {e}") from e
        logger.info(f"Listed {len(tables)} tables for {database}")
        return tables

    def list_objects(self, database: str) -> List[Dict[str, Any]]:
        try:
            inspector = inspect(self.engine)
            results = []
            for schema in self.schemas:
                label = self._label(schema)
                for t_name in inspector.get_table_names(schema=schema):
                    results.append(object_row(t_name, label, TABLE, self.default_schema))
                for v_name in inspector.get_view_names(schema=schema):
                    results.append(object_row(v_name, label, VIEW, self.default_schema))
        except SQLAlchemyError as e:
            raise AdapterError(f"Failed to list objects for {database}: {e}") from e
        return results

    def _schema_for(self, schema: str, qualified: bool) -> List[Optional[str]]:
        if not qualified:
            return list(self.schemas)
        if schema.lower() == self.default_schema.lower() and None in self.schemas:
            return [None]
        return [schema]

    def get_object_definition(self, database: str, object_name: str) -> Optional[str]:
        schema, name, qualified = parse_object_name(object_name, self.default_schema)
        try:
            inspector = inspect(self.engine)
            for candidate in self._schema_for(schema, qualified):
                if name not in inspector.get_view_names(schema=candidate):
                    continue
                try:
                    return inspector.get_view_definition(name, schema=candidate)
                except NoSuchTableError:
                    return None
        except SQLAlchemyError as e:
            raise AdapterError(f"Failed to fetch definition of {object_name}: {e}") from e
        logger.debug(f"{object_name} is not a view in {database}")
        return None
