import json
import logging
import os
import sqlite3
from contextlib import contextmanager
from typing import List, Optional

from .models import AnalysisResult

logger = logging.getLogger(__name__)
logger.addHandler(logging.NullHandler())


class ResultStore:
    """SQLite persistence of analysis results, their table dependencies and run logs."""

    def __init__(self, db_path: str, project_name: str | None = None):
        self.db_path = db_path
        self.project_name = project_name or "default"

    def get_connection(self):
        try:
            conn = sqlite3.connect(self.db_path, check_same_thread=False)
            conn.row_factory = sqlite3.Row
            return conn
        except sqlite3.Error as e:
            logger.error(f"DB Connection failed: {e}")
            raise

    @contextmanager
    def get_cursor(self, commit: bool = False):
        conn = self.get_connection()
        cursor = conn.cursor()
        try:
            yield cursor
            if commit:
                conn.commit()
        except Exception as e:
            conn.rollback()
            logger.error(f"DB Operation failed: {e}")
            raise
        finally:
            cursor.close()
            conn.close()

    def init_db(self):
        """Create result, dependency and log tables."""
        db_dir = os.path.dirname(self.db_path)
        if db_dir:
            os.makedirs(db_dir, exist_ok=True)

        analysis_results_ddl = """
        CREATE TABLE IF NOT EXISTS analysis_results (
            result_id INTEGER PRIMARY KEY AUTOINCREMENT,
            project_name TEXT NOT NULL,
            database_name TEXT NOT NULL,
            object_name TEXT NOT NULL,
            object_type TEXT,
            strategy TEXT NOT NULL,
            confidence REAL NOT NULL,
            diagnostics TEXT,
            elapsed_ms REAL,
            analyzed_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
            UNIQUE(project_name, database_name, object_name)
        );
        """

        table_dependencies_ddl = """
        CREATE TABLE IF NOT EXISTS table_dependencies (
            project_name TEXT NOT NULL,
            database_name TEXT NOT NULL,
            object_name TEXT NOT NULL,
            object_type TEXT,
            table_name TEXT NOT NULL,
            operations TEXT NOT NULL,
            is_selected INTEGER DEFAULT 0,
            is_updated INTEGER DEFAULT 0,
            is_insert_all INTEGER DEFAULT 0,
            is_delete INTEGER DEFAULT 0,
            confidence REAL,
            UNIQUE(project_name, database_name, object_name, table_name)
        );
        """

        idx_dependencies_table = """
            CREATE INDEX IF NOT EXISTS idx_dependencies_table
            ON table_dependencies(project_name, database_name, table_name)
        """

        execution_logs_ddl = """
        CREATE TABLE IF NOT EXISTS execution_logs (
            log_id INTEGER PRIMARY KEY AUTOINCREMENT,
            project_name TEXT NOT NULL,
            level TEXT NOT NULL,
            event TEXT NOT NULL,
            detail TEXT,
            created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
        );
        """

        try:
            with self.get_cursor(commit=True) as cursor:
                cursor.execute(analysis_results_ddl)
                cursor.execute(table_dependencies_ddl)
                cursor.execute(idx_dependencies_table)
                cursor.execute(execution_logs_ddl)
            logger.info(f"Result store initialized at {self.db_path}")
        except Exception as e:
            logger.error(f"Failed to initialize result store: {e}")
            raise

    def save_result(
        self, database: str, object_name: str, result: AnalysisResult, object_type: Optional[str] = None
    ) -> None:
        """Replace the stored result and dependency rows of one object."""
        metadata = result.metadata
        diagnostics = json.dumps([d.to_dict() for d in metadata.diagnostics])
        with self.get_cursor(commit=True) as cur:
            cur.execute(
                """
                INSERT INTO analysis_results (
                    project_name, database_name, object_name, object_type,
                    strategy, confidence, diagnostics, elapsed_ms
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(project_name, database_name, object_name) DO UPDATE SET
                    object_type=excluded.object_type,
                    strategy=excluded.strategy,
                    confidence=excluded.confidence,
                    diagnostics=excluded.diagnostics,
                    elapsed_ms=excluded.elapsed_ms,
                    analyzed_at=CURRENT_TIMESTAMP
                """,
                (
                    self.project_name,
                    database,
                    object_name,
                    object_type,
                    metadata.strategy.value,
                    metadata.confidence,
                    diagnostics,
                    metadata.elapsed_ms,
                ),
            )
            cur.execute(
                "DELETE FROM table_dependencies WHERE project_name = ? AND database_name = ? AND object_name = ?",
                (self.project_name, database, object_name),
            )
            cur.executemany(
                """
                INSERT INTO table_dependencies (
                    project_name, database_name, object_name, object_type, table_name, operations,
                    is_selected, is_updated, is_insert_all, is_delete, confidence
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                [
                    (
                        self.project_name,
                        database,
                        object_name,
                        object_type,
                        record.referenced_object,
                        record.dependency_type,
                        record.is_selected,
                        record.is_updated,
                        record.is_insert_all,
                        record.is_delete,
                        record.confidence,
                    )
                    for record in result.depends_on
                ],
            )

    def fetch_dependencies(self, database: str, object_name: str) -> List[sqlite3.Row]:
        sql = (
            "SELECT table_name, operations, is_selected, is_updated, is_insert_all, is_delete, confidence "
            "FROM table_dependencies "
            "WHERE project_name = ? AND database_name = ? AND object_name = ? "
            "ORDER BY confidence DESC, table_name"
        )
        with self.get_cursor() as cur:
            cur.execute(sql, (self.project_name, database, object_name))
            return cur.fetchall()

    def fetch_referenced_by(self, database: str, table_name: str) -> List[sqlite3.Row]:
        """Objects whose stored dependencies include ``table_name`` (case-insensitive)."""
        sql = (
            "SELECT object_name, object_type, operations, is_selected, is_updated, is_insert_all, is_delete "
            "FROM table_dependencies "
            "WHERE project_name = ? AND database_name = ? AND UPPER(table_name) = UPPER(?) "
            "ORDER BY object_type, object_name"
        )
        with self.get_cursor() as cur:
            cur.execute(sql, (self.project_name, database, table_name))
            return cur.fetchall()

    # --- Execution log helpers ----------------------------------------------

    def add_execution_log(self, event: str, detail: Optional[str] = None, level: str = "INFO") -> None:
        with self.get_cursor(commit=True) as cur:
            cur.execute(
                """
                INSERT INTO execution_logs (project_name, level, event, detail)
                VALUES (?, ?, ?, ?)
                """,
                (self.project_name, level.upper(), event, detail),
            )

    def fetch_execution_logs(self, limit: int = 200, level: Optional[str] = None) -> List[sqlite3.Row]:
        base_sql = [
            "SELECT project_name, level, event, detail, created_at",
            "FROM execution_logs",
            "WHERE project_name = ?",
        ]
        params: List = [self.project_name]
        if level:
            base_sql.append("AND level = ?")
            params.append(level.upper())
        base_sql.append("ORDER BY log_id DESC LIMIT ?")
        params.append(limit)
        with self.get_cursor() as cur:
            cur.execute("\n".join(base_sql), params)
            return cur.fetchall()

    def summarize(self, database: Optional[str] = None) -> List[sqlite3.Row]:
        """Analyzed object counts and average confidence per database and strategy."""
        base_sql = [
            "SELECT database_name, strategy, COUNT(*) AS count, AVG(confidence) AS avg_confidence",
            "FROM analysis_results",
            "WHERE project_name = ?",
        ]
        params: List = [self.project_name]
        if database:
            base_sql.append("AND database_name = ?")
            params.append(database)
        base_sql.append("GROUP BY database_name, strategy ORDER BY database_name, strategy")
        with self.get_cursor() as cur:
            cur.execute("\n".join(base_sql), params)
            return cur.fetchall()
