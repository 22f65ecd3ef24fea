import argparse
import json
import logging
import os
import sys
from logging.handlers import RotatingFileHandler
from typing import Optional
from urllib.parse import urlsplit, urlunsplit

import yaml

from .models import AdapterError
from .normalizer import DEFAULT_MAX_BYTES
from .service import DependencyService
from .sqlite_store import ResultStore

logger = logging.getLogger("sqlusage")

SOURCE_TYPES = ("mssql", "generic")
DEFAULT_LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"

# --- Helper Functions ---

def load_config(path="config.yaml"):
    if not os.path.exists(path):
        print(f"Config file not found: {path}", file=sys.stderr)
        sys.exit(1)
    with open(path, "r", encoding="utf-8") as f:
        return yaml.safe_load(f) or {}


def redact_dsn(dsn: str) -> str:
    """Drop user and password from a connection URL before it is logged."""
    try:
        parts = urlsplit(dsn)
        if parts.username or parts.password:
            safe_netloc = parts.hostname or ""
            if parts.port:
                safe_netloc = f"{safe_netloc}:{parts.port}"
            parts = parts._replace(netloc=safe_netloc)
        return urlunsplit(parts)
    except Exception:
        return "<redacted>"


def _expand(path: Optional[str]) -> Optional[str]:
    if not path:
        return path
    return os.path.expanduser(os.path.expandvars(path))


def _positive(section: dict, key: str, label: str, allow_none: bool = False):
    value = section.get(key)
    if value is None and allow_none:
        return
    if not isinstance(value, (int, float)) or isinstance(value, bool) or value <= 0:
        raise ValueError(f"{label} must be a positive number")


def validate_config(config: dict) -> dict:
    """Check required keys, expand $VARS in paths and fill defaults. Raises ValueError."""
    if not isinstance(config, dict):
        raise ValueError("Configuration must be a mapping")

    project = config.get("project")
    if not isinstance(project, dict):
        raise ValueError("project section is required")
    for key in ("name", "db_file"):
        if not project.get(key):
            raise ValueError(f"project.{key} is required")
    project["db_file"] = _expand(project["db_file"])

    database = config.get("database")
    if not isinstance(database, dict) or not isinstance(database.get("source"), dict):
        raise ValueError("database.source section is required")
    source = database["source"]
    source_type = str(source.get("type", "")).lower()
    if source_type not in SOURCE_TYPES:
        raise ValueError(f"database.source.type must be one of {', '.join(SOURCE_TYPES)}")
    source["type"] = source_type
    if not source.get("uri"):
        raise ValueError("database.source.uri is required")
    source["uri"] = os.path.expandvars(source["uri"])

    analysis = config.setdefault("analysis", {})
    analysis.setdefault("default_schema", "dbo")
    if not analysis.get("schema_prefixes"):
        analysis["schema_prefixes"] = [analysis["default_schema"]]
    if not isinstance(analysis["schema_prefixes"], list):
        raise ValueError("analysis.schema_prefixes must be a list")
    analysis.setdefault("max_definition_bytes", DEFAULT_MAX_BYTES)
    analysis.setdefault("dialect", "tsql")
    analysis.setdefault("context_window", 15)
    analysis.setdefault("max_workers", 4)
    analysis.setdefault("timeout_seconds", None)
    _positive(analysis, "max_definition_bytes", "analysis.max_definition_bytes")
    _positive(analysis, "context_window", "analysis.context_window")
    _positive(analysis, "max_workers", "analysis.max_workers")
    _positive(analysis, "timeout_seconds", "analysis.timeout_seconds", allow_none=True)

    cache = config.setdefault("cache", {})
    cache.setdefault("ttl_seconds", 300)
    cache.setdefault("max_entries", 100)
    cache.setdefault("sweep_interval_seconds", 600)
    _positive(cache, "ttl_seconds", "cache.ttl_seconds")
    _positive(cache, "max_entries", "cache.max_entries")
    _positive(cache, "sweep_interval_seconds", "cache.sweep_interval_seconds", allow_none=True)

    log_conf = config.setdefault("logging", {})
    log_conf.setdefault("level", "INFO")
    log_conf.setdefault("file", "sqlusage.log")
    log_conf["file"] = _expand(log_conf.get("file"))
    return config


def apply_logging_overrides(config: dict, args) -> dict:
    """Environment variables override the file, CLI flags override both."""
    log_conf = config.setdefault("logging", {})
    env_level = os.environ.get("SQLUSAGE_LOG_LEVEL")
    env_file = os.environ.get("SQLUSAGE_LOG_FILE")
    if env_level:
        log_conf["level"] = env_level
    if env_file:
        log_conf["file"] = env_file
    if getattr(args, "log_level", None):
        log_conf["level"] = args.log_level
    if getattr(args, "log_file", None):
        log_conf["file"] = args.log_file
    return config


def configure_logging(config):
    log_conf = config.get("logging", {})
    log_file = log_conf.get("file", "sqlusage.log")
    level_name = str(log_conf.get("level", "INFO")).upper()
    level = getattr(logging, level_name, logging.INFO)

    handlers = [logging.StreamHandler(sys.stdout)]
    if log_file:
        log_dir = os.path.dirname(log_file)
        if log_dir:
            os.makedirs(log_dir, exist_ok=True)
        handlers.append(RotatingFileHandler(
            log_file,
            maxBytes=log_conf.get("max_bytes", 1024 * 1024),
            backupCount=log_conf.get("backup_count", 3),
            encoding="utf-8",
        ))

    fmt = log_conf.get("format", DEFAULT_LOG_FORMAT)
    logging.basicConfig(level=level, format=fmt, handlers=handlers, force=True)


def get_store(config) -> ResultStore:
    store = ResultStore(config["project"]["db_file"], project_name=config["project"]["name"])
    store.init_db()
    return store


def _print_json(payload):
    print(json.dumps(payload, indent=2, default=str))

# --- Core Actions ---

def action_analyze(service: DependencyService, database: str, object_name: str, as_json=False):
    result = service.analyze_dependencies(database, object_name)
    if as_json:
        _print_json(result.to_dict())
        return result

    meta = result.metadata
    print(f"\n--- {object_name} ({meta.strategy.value}, confidence {meta.confidence}) ---")
    for record in result.depends_on:
        print(f"{record.referenced_object}: {record.dependency_type} (score {record.confidence:g})")
    if not result.depends_on:
        print("No table dependencies found.")
    for diag in meta.diagnostics:
        print(f"[{diag.code.value}] {diag.message}")
    return result


def action_usage(service: DependencyService, database: str, object_name: str, as_json=False):
    analysis = service.get_table_usage_analysis(database, object_name)
    if as_json:
        _print_json(analysis)
        return analysis

    summary = analysis["summary"]
    print(f"\n--- Table usage of {object_name} ---")
    print(f"Tables: {summary['totalTables']}  read: {summary['readTables']}  write: {summary['writeTables']}")
    for op, count in sorted(summary["operationCounts"].items()):
        print(f"  {op}: {count}")
    return analysis


def action_index(service: DependencyService, store: ResultStore, database: str):
    try:
        objects = service.adapter.list_objects(database)
    except AdapterError as e:
        logger.error(f"Could not list objects of {database}: {e}")
        store.add_execution_log("index", detail=f"{database}: {e}", level="ERROR")
        print(f"Indexing failed: {e}")
        return 0

    candidates = [
        obj for obj in objects
        if obj.get("object_type") != "Table" and not obj.get("is_encrypted")
        and (obj.get("qualified_name") or obj.get("name"))
    ]
    names = [obj.get("qualified_name") or obj.get("name") for obj in candidates]
    print(f"Analyzing {len(names)} objects in {database}...")
    results = service.analyze_many(database, names)

    for obj, name in zip(candidates, names):
        result = results[name]
        store.save_result(database, obj.get("name") or name, result, object_type=obj.get("object_type"))
        if result.confidence == 0:
            codes = ", ".join(d.code.value for d in result.diagnostics)
            store.add_execution_log("analyze", detail=f"{name} -> {codes}", level="WARNING")

    store.add_execution_log("index", detail=f"{database}: {len(names)} objects analyzed")
    print("Indexing completed.")
    return len(names)


def action_referenced_by(store: ResultStore, database: str, table_name: str, as_json=False):
    rows = store.fetch_referenced_by(database, table_name)
    if as_json:
        _print_json([dict(row) for row in rows])
        return rows
    print(f"\n--- Objects using {table_name} ---")
    for row in rows:
        print(f"{row['object_type'] or '?'} {row['object_name']}: {row['operations']}")
    if not rows:
        print("No stored objects reference this table. Run --mode index first.")
    return rows


def action_status(store: ResultStore, service: Optional[DependencyService] = None):
    print("\n--- Analysis Status ---")
    for row in store.summarize():
        print(f"{row['database_name']} {row['strategy']}: {row['count']} (avg confidence {row['avg_confidence']:.2f})")

    if service is not None:
        stats = service.get_cache_stats()["results"]
        print(f"\nCache: {stats['size']}/{stats['max_entries']} entries, hit rate {stats['hit_rate']}")

    print("\n--- Recent Logs ---")
    for log in store.fetch_execution_logs(limit=10):
        print(f"[{log['created_at']}] {log['level']}: {log['event']} {log['detail'] or ''}")

# --- Main Dispatch ---

def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Table usage analysis for SQL object definitions")
    parser.add_argument("--config", default="config.yaml", help="Path to config file")
    parser.add_argument(
        "--mode", choices=["analyze", "usage", "referenced-by", "index", "status"], default="status"
    )
    parser.add_argument("--object", help="Object to analyze, optionally schema-qualified")
    parser.add_argument("--table", help="Table for --mode referenced-by")
    parser.add_argument("--database", help="Database name (defaults to database.name)")
    parser.add_argument("--log-level", help="Override logging.level")
    parser.add_argument("--log-file", help="Override logging.file")
    parser.add_argument("--json", action="store_true", help="Print results as JSON")
    return parser


def main(argv=None):
    parser = build_parser()
    args = parser.parse_args(argv)

    config = load_config(args.config)
    try:
        config = validate_config(config)
    except ValueError as e:
        print(f"Invalid configuration: {e}", file=sys.stderr)
        sys.exit(2)
    apply_logging_overrides(config, args)
    configure_logging(config)

    mode = args.mode
    database = args.database or config["database"].get("name")
    if mode in ("analyze", "usage", "index", "referenced-by") and not database:
        parser.error("--database is required when database.name is not configured")
    if mode in ("analyze", "usage") and not args.object:
        parser.error(f"--object is required for --mode {mode}")
    if mode == "referenced-by" and not args.table:
        parser.error("--table is required for --mode referenced-by")

    store = get_store(config)
    if mode == "referenced-by":
        action_referenced_by(store, database, args.table, as_json=args.json)
        return
    if mode == "status":
        action_status(store)
        return

    logger.info(f"Connecting to {redact_dsn(config['database']['source']['uri'])}")
    service = DependencyService.from_config(config)
    try:
        if mode == "analyze":
            action_analyze(service, database, args.object, as_json=args.json)
        elif mode == "usage":
            action_usage(service, database, args.object, as_json=args.json)
        elif mode == "index":
            action_index(service, store, database)
    finally:
        service.dispose()


if __name__ == "__main__":
    main()
