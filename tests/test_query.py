from __future__ import annotations

import logging

import pytest

from dwiw.errors import ExecutionError, NotConnectedError


@pytest.fixture
def connection(registry, server):
    server.on(
        "SELECT id, note, extra FROM notes",
        columns=(("id", "int4"), ("note", "text"), ("extra", "varchar")),
        rows=[(1, "x", None), (2, 'say "hi"', "ok")],
    )
    server.on("SELECT id FROM empty", columns=(("id", "int4"),), rows=[])
    return registry.connect("main")


def test_prepared_statement_rows_by_mapping_and_array(connection) -> None:
    statement = connection.prepare("SELECT a, b FROM t WHERE id = ?")

    assert statement.query == "SELECT a, b FROM t WHERE id = $1"
    assert statement.execute(5) == 1
    assert connection.mapping() == {"a": "x", "b": "y"}
    assert connection.mapping() is None
    assert connection.array(statement, 5) == ["x", "y"]
    assert statement.columns == ("a", "b")
    assert connection.array(statement, 6) == ["z", "w"]


def test_mapping_can_walk_a_result_row_by_row(connection) -> None:
    seen = []
    row = connection.mapping("SELECT id, a FROM t ORDER BY id")
    while row:
        seen.append(row["id"])
        row = connection.mapping()

    assert seen == [5, 6]
    assert connection.last_error is None


def test_multi_row_accessors(connection) -> None:
    sql = "SELECT id, a FROM t ORDER BY id"

    assert connection.mappings(sql) == [{"id": 5, "a": "x"}, {"id": 6, "a": "z"}]
    assert connection.arrays(sql) == [[5, "x"], [6, "z"]]
    assert connection.flat_array(sql) == [5, "x", 6, "z"]


def test_scalar_warns_on_extra_rows(connection, caplog) -> None:
    assert connection.scalar("SELECT 1") == 1

    with caplog.at_level(logging.WARNING, logger="dwiw.query"):
        assert connection.scalar("SELECT id, a FROM t ORDER BY id") == 5
    assert "returned more than 1 row and/or column" in caplog.text


def test_empty_results(connection) -> None:
    assert connection.array("SELECT id FROM empty") == []
    assert connection.mappings("SELECT id FROM empty") == []
    assert connection.scalar("SELECT id FROM empty") is None
    assert connection.csv("SELECT id FROM empty") == ""
    assert connection.last_error is None


def test_csv_quotes_text_columns_and_writes_nulls(connection) -> None:
    assert connection.csv("SELECT id, note, extra FROM notes") == '1,"x",NULL\n2,"say ""hi""","ok"\n'


def test_row_counts_come_from_the_command_tag(connection, server) -> None:
    server.on("INSERT INTO t (a, b) VALUES ($1, $2)", status="INSERT 0 1")
    server.on("CREATE TABLE u (id serial)", status="CREATE TABLE")

    assert connection.execute("INSERT INTO t (a, b) VALUES (?, ?)", "q", "r") == 1
    assert connection.rows_affected() == 1
    assert connection.recent_statement.status == "INSERT 0 1"
    assert connection.execute("CREATE TABLE u (id serial)") == 0
    assert connection.execute_return_code == 0
    assert connection.recent_sql == "CREATE TABLE u (id serial)"


def test_failed_queries_return_empty_results(connection) -> None:
    assert connection.arrays("SELECT broken") == []
    assert isinstance(connection.last_error, ExecutionError)
    assert connection.csv("SELECT broken") is None
    assert connection.scalar("SELECT broken") is None
    assert connection.mapping("SELECT broken") is None


def test_accessors_on_disconnected_connection_do_not_raise(connection, caplog) -> None:
    connection.disconnect()

    with caplog.at_level(logging.WARNING, logger="dwiw.connections"):
        assert connection.array("SELECT 1") == []
    assert "not connected to the database" in caplog.text
    assert isinstance(connection.last_error, NotConnectedError)
    assert connection.flat_array("SELECT 1") == []
    assert connection.csv("SELECT 1") is None
