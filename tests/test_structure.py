from sqlusage.models import ErrorCode
from sqlusage.normalizer import normalize
from sqlusage.structure import FragmentKind, StatementKind, extract_structure, split_statements
from sqlusage.tokens import QUOTED, STRING, VARIABLE, tokenize


def _structure(sql):
    return extract_structure(normalize(sql))


def _kinds(structure):
    return [s.statement_kind for s in structure.statements]


def test_tokenize_kinds_and_literal_indices():
    tokens = tokenize("SELECT [A B], @X FROM T WHERE C = '?' OR D = '?'")

    assert tokens[1].kind == QUOTED
    assert tokens[1].value == "A B"
    assert tokens[3].kind == VARIABLE
    strings = [t for t in tokens if t.kind == STRING]
    assert [t.literal_index for t in strings] == [0, 1]


def test_statements_split_on_semicolons_and_keywords():
    structure = _structure("select a from t; update t set a = 1 delete from t")

    assert _kinds(structure) == [StatementKind.SELECT, StatementKind.UPDATE, StatementKind.DELETE]


def test_insert_select_is_one_statement():
    structure = _structure("insert into t (a) select a from s union all select a from u")

    assert _kinds(structure) == [StatementKind.INSERT]
    assert [t.text for t in structure.statements[0].target] == ["T"]


def test_case_else_end_does_not_split():
    statements = split_statements(
        tokenize("SELECT CASE WHEN A = 1 THEN 2 ELSE 3 END FROM T BEGIN SELECT 1 END")
    )

    assert len(statements) == 2
    assert statements[0][-1].text == "T"


def test_trigger_header_keywords_do_not_start_statements():
    structure = _structure("create trigger trg on t after insert, update as begin select 1 end")

    assert _kinds(structure)[0] == StatementKind.UNKNOWN
    assert len(structure.statements) == 2


def test_cte_names_are_registered_and_bodies_walked():
    structure = _structure(
        "with recent (id) as (select id from orders), big as (select id from recent) select * from big"
    )

    assert structure.temp_names == {"RECENT", "BIG"}
    assert [c.name for c in structure.ctes] == ["RECENT", "BIG"]
    statement = structure.statements[0]
    assert statement.statement_kind == StatementKind.WITH
    assert statement.body_kind == StatementKind.SELECT


def test_with_followed_by_update():
    structure = _structure("with x as (select id from s) update t set a = 1 from x")

    statement = structure.statements[0]
    assert len(structure.statements) == 1
    assert statement.effective_kind == StatementKind.UPDATE
    assert [t.text for t in statement.target] == ["T"]


def test_clause_map_and_join_modifiers():
    structure = _structure(
        "select a from t1 left outer join t2 on t1.id = t2.id where a > 1 group by a order by a"
    )

    clauses = structure.statements[0].clauses
    assert [t.text for t in clauses["FROM"][0]] == ["T1"]
    assert [t.text for t in clauses["JOIN"][0]] == ["T2"]
    assert "WHERE" in clauses
    assert "GROUP BY" in clauses
    assert "ORDER BY" in clauses


def test_nested_subqueries_are_found():
    structure = _structure(
        "select * from t where a in (select b from u where c in (select d from v))"
    )

    assert len(structure.subqueries) == 2
    assert all(s.kind == FragmentKind.SUBQUERY for s in structure.subqueries)


def test_dynamic_sql_from_declared_variable():
    structure = _structure(
        "DECLARE @sql NVARCHAR(MAX) = 'SELECT * FROM Products'; EXEC sp_executesql @sql"
    )

    assert len(structure.dynamic_sql) == 1
    assert structure.dynamic_sql[0].payload == "SELECT * FROM Products"
    assert structure.diagnostics == []


def test_dynamic_sql_concatenation_and_append():
    structure = _structure(
        "DECLARE @s VARCHAR(100)\n"
        "SET @s = 'SELECT * ' + 'FROM Orders'\n"
        "SET @s += ' WHERE 1 = 1'\n"
        "EXEC (@s)"
    )

    assert structure.dynamic_sql[0].payload == "SELECT *  FROM Orders  WHERE 1 = 1"


def test_exec_with_literal_argument():
    structure = _structure("EXEC('DELETE FROM Orders')")

    assert structure.dynamic_sql[0].payload == "DELETE FROM Orders"


def test_unresolved_dynamic_sql_is_diagnosed():
    structure = _structure("EXEC sp_executesql @built_elsewhere")

    assert structure.dynamic_sql[0].payload == ""
    assert structure.diagnostics[0].code == ErrorCode.UNRESOLVED_DYNAMIC_SQL


def test_plain_procedure_call_is_not_dynamic_sql():
    structure = _structure("EXEC dbo.DoWork @a = 1")

    assert structure.dynamic_sql == []
