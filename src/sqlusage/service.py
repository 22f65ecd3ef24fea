import logging
import re
import time
from collections import Counter
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Callable, Dict, List, Optional, Sequence

from .adapters import get_adapter
from .models import (
    WRITE_OPERATIONS,
    AnalysisMetadata,
    AnalysisResult,
    Diagnostic,
    ErrorCode,
    Strategy,
    empty_result,
)
from .normalizer import DEFAULT_MAX_BYTES, normalize
from .result_cache import CacheSweeper, ResultCache, TTLCache
from .strategies import DEFAULT_CONTEXT_WINDOW, TieredAnalyzer, default_strategies
from .table_index import DEFAULT_SCHEMA, DEFAULT_SCHEMA_PREFIXES, TableIndex, build_index

logger = logging.getLogger(__name__)

# statement separators and comment markers are never part of an object name
_UNSAFE_NAME = re.compile(r"[;']|--|/\*|\*/")
_WRITE_VALUES = {op.value for op in WRITE_OPERATIONS}

TYPE_SUMMARY_KEYS = {
    "Procedure": "procedures",
    "View": "views",
    "Function": "functions",
    "Trigger": "triggers",
    "Table": "tables",
}


class _Timeout(Exception):
    pass


def validate_inputs(database: str, object_name: str) -> Optional[str]:
    """Return a reason the request is rejected, or None."""
    for label, value in (("database", database), ("object name", object_name)):
        if not isinstance(value, str) or not value.strip():
            return f"A non-empty {label} is required"
        if _UNSAFE_NAME.search(value):
            return f"Invalid characters in {label}: {value!r}"
    return None


class DependencyService:
    """Analyze object definitions into table dependencies; never raises from public methods."""

    def __init__(
        self,
        adapter,
        cache: Optional[ResultCache] = None,
        index_cache: Optional[TTLCache] = None,
        analyzer: Optional[TieredAnalyzer] = None,
        default_schema: str = DEFAULT_SCHEMA,
        schema_prefixes: Sequence[str] = DEFAULT_SCHEMA_PREFIXES,
        max_definition_bytes: int = DEFAULT_MAX_BYTES,
        max_workers: int = 4,
        timeout_seconds: Optional[float] = None,
        sweeper: Optional[CacheSweeper] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.adapter = adapter
        self.cache = cache if cache is not None else ResultCache()
        self.index_cache = index_cache if index_cache is not None else TTLCache(
            ttl_seconds=self.cache.ttl_seconds, max_entries=self.cache.max_entries
        )
        self.analyzer = analyzer or TieredAnalyzer()
        self.default_schema = default_schema
        self.schema_prefixes = list(schema_prefixes)
        self.max_definition_bytes = max_definition_bytes
        self.max_workers = max_workers
        self.timeout_seconds = timeout_seconds
        self.sweeper = sweeper
        self.clock = clock

    @classmethod
    def from_config(cls, config: dict, adapter=None) -> "DependencyService":
        analysis_conf = config.get("analysis", {})
        cache_conf = config.get("cache", {})
        default_schema = analysis_conf.get("default_schema", DEFAULT_SCHEMA)
        schema_prefixes = analysis_conf.get("schema_prefixes") or [default_schema]

        if adapter is None:
            adapter = get_adapter(
                config["database"]["source"], default_schema=default_schema, schema_prefixes=schema_prefixes
            )

        ttl = cache_conf.get("ttl_seconds", 300)
        max_entries = cache_conf.get("max_entries", 100)
        cache = ResultCache(ttl_seconds=ttl, max_entries=max_entries)
        index_cache = TTLCache(ttl_seconds=ttl, max_entries=max_entries)

        sweeper = None
        interval = cache_conf.get("sweep_interval_seconds")
        if interval:
            sweeper = CacheSweeper(cache, index_cache, interval_seconds=interval)
            sweeper.start()

        analyzer = TieredAnalyzer(
            default_strategies(
                dialect=analysis_conf.get("dialect", "tsql"),
                context_window=analysis_conf.get("context_window", DEFAULT_CONTEXT_WINDOW),
            )
        )
        return cls(
            adapter,
            cache=cache,
            index_cache=index_cache,
            analyzer=analyzer,
            default_schema=default_schema,
            schema_prefixes=schema_prefixes,
            max_definition_bytes=analysis_conf.get("max_definition_bytes", DEFAULT_MAX_BYTES),
            max_workers=analysis_conf.get("max_workers", 4),
            timeout_seconds=analysis_conf.get("timeout_seconds"),
            sweeper=sweeper,
        )

    # --- Core analysis ------------------------------------------------------

    def analyze_dependencies(
        self, database: str, object_name: str, timeout_seconds: Optional[float] = None
    ) -> AnalysisResult:
        started = time.perf_counter()
        try:
            result = self._analyze(database, object_name, timeout_seconds)
        except Exception as e:
            logger.exception(f"Unexpected failure analyzing {database}.{object_name}")
            result = empty_result(
                database, object_name, 0.0, [Diagnostic(ErrorCode.ALL_STRATEGIES_FAILED, str(e), "service")]
            )
        if not result.metadata.elapsed_ms:
            result.metadata.elapsed_ms = (time.perf_counter() - started) * 1000
        return result

    def _check_deadline(self, deadline: Optional[float], stage: str):
        if deadline is not None and self.clock() >= deadline:
            raise _Timeout(stage)

    def _analyze(self, database: str, object_name: str, timeout_seconds: Optional[float]) -> AnalysisResult:
        reason = validate_inputs(database, object_name)
        if reason:
            logger.warning(f"Rejected analysis request: {reason}")
            return empty_result(
                database, object_name, 0.0, [Diagnostic(ErrorCode.INVALID_INPUT, reason, "validate")]
            )

        cached = self.cache.get(database, object_name)
        if cached is not None:
            return cached

        started = time.perf_counter()
        timeout = timeout_seconds if timeout_seconds is not None else self.timeout_seconds
        deadline = self.clock() + timeout if timeout is not None else None

        try:
            self._check_deadline(deadline, "fetch definition")
            try:
                definition = self.adapter.get_object_definition(database, object_name)
            except Exception as e:
                return self._fetch_error(database, object_name, f"Definition fetch failed: {e}")

            if definition is None or not definition.strip():
                logger.info(f"{database}.{object_name} has no definition text")
                result = empty_result(
                    database,
                    object_name,
                    1.0,
                    [Diagnostic(ErrorCode.EMPTY_DEFINITION, "Object has no retrievable definition", "fetch")],
                )
                result.metadata.elapsed_ms = (time.perf_counter() - started) * 1000
                self.cache.put(database, object_name, result)
                return result

            self._check_deadline(deadline, "list tables")
            try:
                index = self.get_table_index(database)
            except Exception as e:
                return self._fetch_error(database, object_name, f"Table listing failed: {e}")
            self._check_deadline(deadline, "analyze")
        except _Timeout as e:
            logger.warning(f"Analysis of {database}.{object_name} timed out before {e}")
            return empty_result(
                database, object_name, 0.0, [Diagnostic(ErrorCode.TIMEOUT, f"Timed out before {e}", "service")]
            )

        normalized = normalize(definition, self.max_definition_bytes)
        outcome = self.analyzer.run(normalized, index)

        diagnostics = list(normalized.diagnostics) + list(outcome.diagnostics)
        if not len(index):
            diagnostics.append(Diagnostic(ErrorCode.NO_TABLES, f"No tables listed for {database}", "index"))

        result = AnalysisResult(
            depends_on=outcome.records,
            metadata=AnalysisMetadata(
                database=database,
                object_name=object_name,
                strategy=outcome.strategy,
                confidence=outcome.confidence,
                diagnostics=diagnostics,
                elapsed_ms=(time.perf_counter() - started) * 1000,
            ),
        )
        if outcome.strategy != Strategy.NONE:
            self.cache.put(database, object_name, result)
        logger.info(
            f"Analyzed {database}.{object_name}: {len(result.depends_on)} tables "
            f"via {outcome.strategy.value} ({outcome.confidence})"
        )
        return result

    def _fetch_error(self, database: str, object_name: str, message: str) -> AnalysisResult:
        logger.error(f"{database}.{object_name}: {message}")
        return empty_result(
            database, object_name, 0.0, [Diagnostic(ErrorCode.EXTERNAL_FETCH_ERROR, message, "fetch")]
        )

    def get_table_index(self, database: str) -> TableIndex:
        """Cached index of the tables in ``database``; adapter errors propagate."""
        key = (database or "").strip().lower()
        index = self.index_cache.get_item(key)
        if index is None:
            tables = self.adapter.list_tables(database)
            index = build_index(tables, default_schema=self.default_schema, schema_prefixes=self.schema_prefixes)
            self.index_cache.put_item(key, index)
            logger.debug(f"Built table index for {database}: {len(index)} tables, {index.collisions} collisions")
        return index

    def analyze_many(
        self, database: str, object_names: Sequence[str], max_workers: Optional[int] = None
    ) -> Dict[str, AnalysisResult]:
        workers = max(1, max_workers or self.max_workers)
        with ThreadPoolExecutor(max_workers=workers) as executor:
            futures = {name: executor.submit(self.analyze_dependencies, database, name) for name in object_names}
            return {name: future.result() for name, future in futures.items()}

    # --- Host-facing views --------------------------------------------------

    def get_table_usage_analysis(self, database: str, object_name: str) -> Dict[str, Any]:
        result = self.analyze_dependencies(database, object_name)
        tables_used = [record.to_dict() for record in result.depends_on]
        operation_counts: Counter = Counter()
        read_tables = write_tables = 0
        for record in result.depends_on:
            operation_counts.update(record.operations)
            if record.is_selected:
                read_tables += 1
            if _WRITE_VALUES.intersection(record.operations):
                write_tables += 1
        return {
            "objectName": object_name,
            "tablesUsed": tables_used,
            "relatedObjects": [],
            "summary": {
                "totalTables": len(tables_used),
                "readTables": read_tables,
                "writeTables": write_tables,
                "operationCounts": dict(operation_counts),
            },
            "metadata": result.metadata.to_dict(),
        }

    def get_table_usage_by_objects(self, database: str, table_name: str) -> Dict[str, Any]:
        """Objects of ``database`` whose dependencies include ``table_name``."""
        summary = {"totalObjects": 0, "procedures": 0, "views": 0, "functions": 0, "triggers": 0, "tables": 0}
        empty = {"tableName": table_name, "usedByObjects": [], "summary": summary}
        if validate_inputs(database, table_name):
            logger.warning(f"Rejected reverse lookup for {database!r}.{table_name!r}")
            return empty
        try:
            objects = self.adapter.list_objects(database)
        except Exception as e:
            logger.error(f"Could not list objects of {database}: {e}")
            return empty

        candidates = [
            obj for obj in objects
            if obj.get("object_type") != "Table" and (obj.get("qualified_name") or obj.get("name"))
        ]
        names = [obj.get("qualified_name") or obj.get("name") for obj in candidates]
        results = self.analyze_many(database, names)

        wanted = table_name.strip().upper()
        used_by: List[Dict[str, Any]] = []
        for obj, name in zip(candidates, names):
            match = next(
                (r for r in results[name].depends_on if r.referenced_object.upper() == wanted), None
            )
            if match is None:
                continue
            used_by.append(
                {
                    "object_name": obj.get("name") or name,
                    "object_type": obj.get("object_type"),
                    "table_name": table_name,
                    "operation_type": match.dependency_type,
                    "operations_array": list(match.operations),
                    "is_selected": match.is_selected,
                    "is_updated": match.is_updated,
                    "is_insert_all": match.is_insert_all,
                    "is_delete": match.is_delete,
                }
            )
            key = TYPE_SUMMARY_KEYS.get(obj.get("object_type"))
            if key:
                summary[key] += 1
        summary["totalObjects"] = len(used_by)
        return {"tableName": table_name, "usedByObjects": used_by, "summary": summary}

    def get_dependency_tree(self, database: str, object_name: str, max_depth: int = 3) -> Dict[str, Any]:
        """Nested dependencies of ``object_name`` down to ``max_depth`` levels."""
        try:
            return self._build_tree(database, object_name, 0, max_depth, frozenset())
        except Exception as e:
            logger.error(f"Failed to build dependency tree for {database}.{object_name}: {e}")
            return {"name": object_name, "dependencies": [], "level": 0}

    def _build_tree(self, database: str, name: str, level: int, max_depth: int, visited: frozenset) -> Dict[str, Any]:
        key = name.strip().upper()
        if level >= max_depth or key in visited:
            return {"name": name, "dependencies": [], "level": level}
        visited = visited | {key}

        result = self.analyze_dependencies(database, name)
        children = []
        for record in result.depends_on:
            child = self._build_tree(database, record.referenced_object, level + 1, max_depth, visited)
            child["type"] = record.referenced_object_type
            child["dependency_type"] = record.dependency_type
            children.append(child)
        return {"name": name, "dependencies": children, "level": level}

    # --- Management ---------------------------------------------------------

    def clear_cache(self, database: Optional[str] = None) -> int:
        try:
            removed = self.cache.invalidate(database)
            if database is None:
                self.index_cache.clear()
            else:
                db = database.strip().lower()
                self.index_cache.remove_where(lambda key: key == db)
            return removed
        except Exception as e:
            logger.error(f"Failed to clear cache: {e}")
            return 0

    def force_reindex(self, database: str) -> Dict[str, Any]:
        removed = self.clear_cache(database)
        logger.info(f"Forced reindex of {database}: {removed} cached results dropped")
        return {"database": database, "removed": removed}

    def get_cache_stats(self) -> Dict[str, Any]:
        return {"results": self.cache.stats(), "tableIndexes": self.index_cache.stats()}

    def dispose(self):
        if self.sweeper is not None:
            self.sweeper.stop(timeout=1.0)
            self.sweeper = None
        self.clear_cache()
        try:
            dispose = getattr(self.adapter, "dispose", None)
            if dispose is not None:
                dispose()
        except Exception as e:
            logger.error(f"Failed to dispose adapter: {e}")
