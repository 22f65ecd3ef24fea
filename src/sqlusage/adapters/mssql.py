import logging
from typing import Any, Dict, List, Optional

from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from ..models import AdapterError
from ..table_index import TableDescriptor
from .base import FUNCTION, PROCEDURE, TABLE, TRIGGER, VIEW, BaseCatalogAdapter, object_row, parse_object_name

logger = logging.getLogger(__name__)

OBJECT_TYPES = {"U": TABLE, "V": VIEW, "P": PROCEDURE, "FN": FUNCTION, "IF": FUNCTION, "TF": FUNCTION, "TR": TRIGGER}

OBJECTS_SQL = """
SELECT o.name AS object_name,
       s.name AS schema_name,
       o.type AS object_type,
       CASE WHEN o.type IN ('P', 'FN', 'IF', 'TF', 'TR', 'V')
            THEN ISNULL(OBJECTPROPERTY(o.object_id, 'IsEncrypted'), 0)
            ELSE 0 END AS is_encrypted
FROM sys.objects o
INNER JOIN sys.schemas s ON o.schema_id = s.schema_id
WHERE o.type IN ('U', 'V', 'P', 'FN', 'IF', 'TF', 'TR')
  AND o.is_ms_shipped = 0
ORDER BY s.name, o.type, o.name
"""

TABLES_SQL = """
SELECT o.name AS object_name, s.name AS schema_name
FROM sys.objects o
INNER JOIN sys.schemas s ON o.schema_id = s.schema_id
WHERE o.type = 'U' AND o.is_ms_shipped = 0
ORDER BY s.name, o.name
"""

DEFINITION_SQL = """
SELECT o.type AS object_type,
       ISNULL(OBJECTPROPERTY(o.object_id, 'IsEncrypted'), 0) AS is_encrypted,
       OBJECT_DEFINITION(o.object_id) AS definition
FROM sys.objects o
INNER JOIN sys.schemas s ON o.schema_id = s.schema_id
WHERE s.name = :schema AND o.name = :name
"""


def quote_database(database: str) -> str:
    return "[" + database.replace("]", "]]") + "]"


class MSSQLCatalogAdapter(BaseCatalogAdapter):
    """SQL Server catalog views; every query runs after ``USE [database]`` on the same connection."""

    def _query(self, database: str, sql: str, params: Optional[dict] = None) -> List[Any]:
        try:
            with self.engine.connect() as conn:
                conn.execute(text(f"USE {quote_database(database)}"))
                return list(conn.execute(text(sql), params or {}))
        except SQLAlchemyError as e:
            logger.error(f"Catalog query failed on {database}: {e}")
            raise AdapterError(f"Catalog query failed on {database}: {e}") from e

    def list_tables(self, database: str) -> List[TableDescriptor]:
        rows = self._query(database, TABLES_SQL)
        tables = [TableDescriptor.create(row[0], row[1], default_schema=self.default_schema) for row in rows]
        logger.info(f"Listed {len(tables)} tables in {database}")
        return tables

    def list_objects(self, database: str) -> List[Dict[str, Any]]:
        results = []
        for row in self._query(database, OBJECTS_SQL):
            object_type = OBJECT_TYPES.get(str(row[2]).strip(), str(row[2]).strip())
            results.append(object_row(row[0], row[1], object_type, self.default_schema, bool(row[3])))
        return results

    def get_object_definition(self, database: str, object_name: str) -> Optional[str]:
        schema, name, qualified = parse_object_name(object_name, self.default_schema)
        candidates = [schema] if qualified else [schema] + [p for p in self.schema_prefixes if p != schema]

        for candidate in candidates:
            rows = self._query(database, DEFINITION_SQL, {"schema": candidate, "name": name})
            if not rows:
                continue
            object_type, is_encrypted, definition = rows[0][0], rows[0][1], rows[0][2]
            if str(object_type).strip() == "U":
                logger.debug(f"{candidate}.{name} is a table; no definition")
                return None
            if is_encrypted:
                logger.warning(f"{candidate}.{name} is encrypted; definition unavailable")
                return None
            return definition

        logger.debug(f"No definition found for {object_name} in {database}")
        return None
