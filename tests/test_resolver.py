import pytest
from sqlglot.errors import ParseError

from sqlusage import resolver
from sqlusage.models import records_from_usages
from sqlusage.normalizer import normalize
from sqlusage.resolver import resolve
from sqlusage.structure import extract_structure
from sqlusage.table_index import build_index

from conftest import make_tables


def _usage(sql, index):
    records = records_from_usages(resolve(extract_structure(normalize(sql)), index))
    return {r.referenced_object: r for r in records}


def test_aliases_are_not_reported_as_tables(index):
    usage = _usage(
        "SELECT o.Id, c.Name FROM dbo.Orders o JOIN Customers AS c ON o.CustomerId = c.Id", index
    )

    assert set(usage) == {"Orders", "Customers"}
    assert usage["Orders"].operations == ["SELECT"]
    assert usage["Customers"].is_selected == 1


def test_cte_shadowing_a_real_table_is_excluded():
    index = build_index(make_tables(extra=[("Recent", "dbo")]))

    usage = _usage("WITH Recent AS (SELECT Id FROM Orders) SELECT * FROM Recent", index)

    assert set(usage) == {"Orders"}


def test_derived_table_alias_is_temporary(index):
    usage = _usage("SELECT d.Id FROM (SELECT Id FROM OrderLines) AS Orders", index)

    assert set(usage) == {"OrderLines"}


def test_update_through_alias_is_a_write(index):
    usage = _usage(
        "UPDATE o SET Status = 'X' FROM Orders o JOIN Customers c ON c.Id = o.CustomerId WHERE c.Active = 1",
        index,
    )

    assert usage["Orders"].operations == ["UPDATE"]
    assert usage["Orders"].is_updated == 1
    assert usage["Orders"].is_selected == 0
    assert usage["Customers"].operations == ["SELECT"]


def test_insert_select_and_select_into(index):
    usage = _usage(
        "INSERT INTO dbo.OrderArchive (Id) SELECT Id FROM Orders WHERE Id < 10; "
        "SELECT * INTO Staging FROM Products",
        index,
    )

    assert usage["OrderArchive"].operations == ["INSERT"]
    assert usage["OrderArchive"].is_insert_all == 1
    assert usage["Orders"].operations == ["SELECT"]
    assert usage["Staging"].operations == ["INSERT"]
    assert usage["Products"].operations == ["SELECT"]


def test_delete_with_subquery(index):
    usage = _usage("DELETE FROM Orders WHERE Id IN (SELECT OrderId FROM OrderLines)", index)

    assert usage["Orders"].operations == ["DELETE"]
    assert usage["Orders"].is_delete == 1
    assert usage["OrderLines"].operations == ["SELECT"]


def test_merge_target_collects_actions(index):
    usage = _usage(
        "MERGE INTO Customers AS t USING Staging AS s ON t.Id = s.Id "
        "WHEN MATCHED THEN UPDATE SET Name = s.Name "
        "WHEN NOT MATCHED THEN INSERT (Id, Name) VALUES (s.Id, s.Name);",
        index,
    )

    assert usage["Customers"].operations == ["INSERT", "MERGE", "UPDATE"]
    assert usage["Staging"].operations == ["SELECT"]


def test_truncate(index):
    usage = _usage("TRUNCATE TABLE sales.Invoices", index)

    assert usage["sales.Invoices"].operations == ["TRUNCATE"]


def test_temp_tables_and_table_variables_are_ignored(index):
    usage = _usage(
        "SELECT * INTO #work FROM Orders; SELECT * FROM #work w; "
        "DECLARE @t TABLE (Id INT); INSERT INTO @t SELECT Id FROM Customers",
        index,
    )

    assert set(usage) == {"Orders", "Customers"}


def test_dynamic_sql_tables_are_tagged_separately(index):
    usage = _usage(
        "DECLARE @sql NVARCHAR(MAX) = 'SELECT * FROM Products p JOIN hr.Employees e ON 1 = 1'; "
        "EXEC sp_executesql @sql",
        index,
    )

    assert usage["Products"].operations == ["DYNAMIC_SQL"]
    assert usage["hr.Employees"].operations == ["DYNAMIC_SQL"]
    assert usage["Products"].is_selected == 0


def test_unparseable_dynamic_sql_falls_back_to_name_scan(index, monkeypatch):
    def refuse(*_args, **_kwargs):
        raise ParseError("unsupported")

    monkeypatch.setattr(resolver.sqlglot, "parse", refuse)

    usage = _usage("EXEC('SELECT * FROM [dbo].[Orders]')", index)

    assert usage["Orders"].operations == ["DYNAMIC_SQL"]


def test_other_occurrences_are_references(index):
    usage = _usage("GRANT SELECT ON Orders TO public", index)

    assert usage["Orders"].operations == ["REFERENCE"]


def test_reference_is_dropped_when_a_concrete_operation_exists(index):
    usage = _usage("SELECT Orders.Id FROM Orders", index)

    assert usage["Orders"].operations == ["SELECT"]


def test_procedure_header_is_not_a_table(index):
    usage = _usage("CREATE PROCEDURE dbo.GetOrders AS BEGIN SELECT * FROM Orders WITH (NOLOCK) END", index)

    assert set(usage) == {"Orders"}


def test_results_are_ordered_by_confidence_then_name(index):
    records = records_from_usages(
        resolve(
            extract_structure(normalize("UPDATE Orders SET a = 1; SELECT * FROM Customers JOIN Products ON 1 = 1")),
            index,
        )
    )

    assert [r.referenced_object for r in records] == ["Orders", "Customers", "Products"]


@pytest.mark.parametrize(
    "sql",
    [
        "SELECT * FROM Orders o JOIN OrderLines l ON l.OrderId = o.Id",
        "UPDATE Orders SET a = 1 WHERE Id IN (SELECT OrderId FROM OrderLines)",
    ],
)
def test_resolution_is_idempotent(index, sql):
    first = [r.to_dict() for r in records_from_usages(resolve(extract_structure(normalize(sql)), index))]
    second = [r.to_dict() for r in records_from_usages(resolve(extract_structure(normalize(sql)), index))]

    assert first == second
