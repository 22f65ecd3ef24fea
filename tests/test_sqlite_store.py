import json
import sqlite3

import pytest

from sqlusage.models import (
    AnalysisMetadata,
    AnalysisResult,
    Diagnostic,
    ErrorCode,
    Strategy,
    TableUsageRecord,
)
from sqlusage.sqlite_store import ResultStore


def _result(*records, strategy=Strategy.ENHANCED, confidence=1.0, diagnostics=()):
    return AnalysisResult(
        depends_on=list(records),
        metadata=AnalysisMetadata(
            database="Shop",
            object_name="GetOrders",
            strategy=strategy,
            confidence=confidence,
            diagnostics=list(diagnostics),
            elapsed_ms=1.5,
        ),
    )


ORDERS_UPDATE = TableUsageRecord("Orders", ["SELECT", "UPDATE"], is_selected=1, is_updated=1, confidence=5.0)
CUSTOMERS_READ = TableUsageRecord("Customers", ["SELECT"], is_selected=1, confidence=2.0)


@pytest.fixture
def store(tmp_path):
    store = ResultStore(str(tmp_path / "nested" / "usage.db"), project_name="demo")
    store.init_db()
    return store


def test_init_db_creates_tables(store):
    with store.get_cursor() as cur:
        cur.execute(
            "SELECT name FROM sqlite_master WHERE type='table' "
            "AND name IN ('analysis_results', 'table_dependencies', 'execution_logs')"
        )
        tables = {row[0] for row in cur.fetchall()}

    assert tables == {"analysis_results", "table_dependencies", "execution_logs"}


def test_get_cursor_rolls_back_on_error(store):
    with pytest.raises(sqlite3.Error):
        with store.get_cursor(commit=True) as cur:
            cur.execute(
                "INSERT INTO execution_logs(project_name, level, event) VALUES ('demo', 'INFO', 'index')"
            )
            cur.execute("INSERT INTO missing_table VALUES (2)")

    with store.get_cursor() as cur:
        cur.execute("SELECT COUNT(*) FROM execution_logs")
        assert cur.fetchone()[0] == 0


def test_save_and_fetch_dependencies(store):
    diagnostics = [Diagnostic(ErrorCode.TRUNCATED, "cut", "normalize")]
    store.save_result("Shop", "GetOrders", _result(ORDERS_UPDATE, CUSTOMERS_READ, diagnostics=diagnostics), "Procedure")

    rows = store.fetch_dependencies("Shop", "GetOrders")

    assert [row["table_name"] for row in rows] == ["Orders", "Customers"]
    assert rows[0]["operations"] == "SELECT, UPDATE"
    assert rows[0]["is_updated"] == 1
    with store.get_cursor() as cur:
        cur.execute("SELECT strategy, confidence, diagnostics, object_type FROM analysis_results")
        saved = cur.fetchone()
    assert saved["strategy"] == "enhanced"
    assert saved["object_type"] == "Procedure"
    assert json.loads(saved["diagnostics"])[0]["code"] == "TRUNCATED"


def test_saving_again_replaces_previous_rows(store):
    store.save_result("Shop", "GetOrders", _result(ORDERS_UPDATE, CUSTOMERS_READ))
    store.save_result("Shop", "GetOrders", _result(CUSTOMERS_READ, strategy=Strategy.BASIC, confidence=0.7))

    rows = store.fetch_dependencies("Shop", "GetOrders")

    assert [row["table_name"] for row in rows] == ["Customers"]
    summary = store.summarize()
    assert [(row["strategy"], row["count"]) for row in summary] == [("basic", 1)]


def test_referenced_by_is_case_insensitive(store):
    store.save_result("Shop", "GetOrders", _result(ORDERS_UPDATE), "Procedure")
    store.save_result("Shop", "vOrders", _result(TableUsageRecord("Orders", ["SELECT"], is_selected=1)), "View")
    store.save_result("Warehouse", "Other", _result(ORDERS_UPDATE), "Procedure")

    rows = store.fetch_referenced_by("Shop", "ORDERS")

    assert [(row["object_type"], row["object_name"]) for row in rows] == [
        ("Procedure", "GetOrders"),
        ("View", "vOrders"),
    ]


def test_projects_are_isolated(store, tmp_path):
    store.save_result("Shop", "GetOrders", _result(ORDERS_UPDATE))
    other = ResultStore(store.db_path, project_name="other")

    assert other.fetch_dependencies("Shop", "GetOrders") == []


def test_execution_logs_filter_by_level(store):
    store.add_execution_log("index", detail="Shop: 2 objects analyzed")
    store.add_execution_log("analyze", detail="dbo.Broken -> TIMEOUT", level="warning")

    assert len(store.fetch_execution_logs()) == 2
    warnings = store.fetch_execution_logs(level="WARNING")
    assert [row["event"] for row in warnings] == ["analyze"]
    assert warnings[0]["level"] == "WARNING"


def test_summarize_by_database(store):
    store.save_result("Shop", "A", _result(strategy=Strategy.ENHANCED, confidence=1.0))
    store.save_result("Shop", "B", _result(strategy=Strategy.ENHANCED, confidence=1.0))
    store.save_result("Warehouse", "C", _result(strategy=Strategy.SIMPLE, confidence=0.3))

    rows = store.summarize("Shop")

    assert len(rows) == 1
    assert rows[0]["database_name"] == "Shop"
    assert rows[0]["count"] == 2
    assert rows[0]["avg_confidence"] == pytest.approx(1.0)
