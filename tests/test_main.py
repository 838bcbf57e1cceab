from __future__ import annotations

from pathlib import Path

import pytest

from dwiw.__main__ import _coerce, main


@pytest.fixture
def base_args(tmp_path: Path) -> list[str]:
    return [
        "--config",
        str(tmp_path / "missing.toml"),
        "--database",
        "app",
        "--user",
        "app",
        "--password",
        "secret",
    ]


def test_select_prints_csv(server, base_args, capsys) -> None:
    assert main([*base_args, "SELECT id, a FROM t ORDER BY id"]) == 0

    assert capsys.readouterr().out == '5,"x"\n6,"z"\n'


def test_placeholder_values_are_coerced(server, base_args, capsys) -> None:
    assert main([*base_args, "SELECT a, b FROM t WHERE id = ?", "6"]) == 0

    assert capsys.readouterr().out == '"z","w"\n'
    assert server.executed[-1] == ("SELECT a, b FROM t WHERE id = $1", (6,))


def test_commands_report_affected_rows(server, base_args, capsys) -> None:
    server.on("INSERT INTO t (a) VALUES ($1)", status="INSERT 0 1")

    assert main([*base_args, "INSERT INTO t (a) VALUES (?)", "q"]) == 0

    assert capsys.readouterr().out == "1 row(s) affected\n"


def test_query_failure_exits_with_1(server, base_args, capsys) -> None:
    assert main([*base_args, "SELECT broken"]) == 1

    assert "syntax error" in capsys.readouterr().err


def test_connect_failure_exits_with_2(server, base_args, capsys) -> None:
    server.connect_errors = [RuntimeError('password authentication failed for user "app"')]

    assert main([*base_args, "SELECT 1"]) == 2

    assert "can't connect to database" in capsys.readouterr().err


def test_missing_parameters_exit_with_2(server, tmp_path, capsys) -> None:
    assert main(["--config", str(tmp_path / "missing.toml"), "--database", "app", "SELECT 1"]) == 2

    assert "missing user" in capsys.readouterr().err


@pytest.mark.parametrize(
    ("value", "expected"),
    [("6", 6), ("-12", -12), ("0", 0), ("2.5", 2.5), ("007", "007"), ("nan", "nan"), ("inf", "inf"), ("1e3", "1e3")],
)
def test_only_canonical_numbers_are_coerced(value, expected) -> None:
    assert _coerce(value) == expected
    assert type(_coerce(value)) is type(expected)


def test_raw_flag_binds_values_as_text(server, base_args, capsys) -> None:
    server.on("SELECT a FROM t WHERE a = $1", columns=(("a", "text"),), rows=[("007",)])

    assert main([*base_args, "--raw", "SELECT a FROM t WHERE a = ?", "007"]) == 0

    assert server.executed[-1] == ("SELECT a FROM t WHERE a = $1", ("007",))
    assert capsys.readouterr().out == '"007"\n'
