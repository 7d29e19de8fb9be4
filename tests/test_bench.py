import random
import sqlite3

import pytest

from litefs.bench import (
    BenchOptions,
    Stats,
    main,
    migrate,
    run,
    run_insert_iter,
    run_query_iter,
)


@pytest.fixture
def conn(tmp_path):
    connection = sqlite3.connect(tmp_path / "bench.db", isolation_level=None)
    migrate(connection)
    yield connection
    connection.close()


def row_count(connection):
    return connection.execute("SELECT COUNT(*) FROM t").fetchone()[0]


def test_migrate_creates_table_and_index(conn):
    migrate(conn)  # idempotent
    names = {row[0] for row in conn.execute("SELECT name FROM sqlite_master")}
    assert {"t", "idx"} <= names


def test_insert_iter_records_rows(conn):
    stats = Stats()
    options = BenchOptions(mode="insert")
    run_insert_iter(conn, random.Random(1), options, stats)
    assert stats.tx_n == 1
    assert 1 <= stats.row_n <= options.max_rows_per_iter
    assert row_count(conn) == stats.row_n
    longest = conn.execute("SELECT MAX(LENGTH(data)) FROM t").fetchone()[0]
    assert longest < options.max_row_size
    assert not conn.in_transaction


def test_insert_iter_is_deterministic(tmp_path):
    results = []
    for name in ("a.db", "b.db"):
        connection = sqlite3.connect(tmp_path / name, isolation_level=None)
        migrate(connection)
        run_insert_iter(connection, random.Random(99), BenchOptions(mode="insert"), Stats())
        results.append(connection.execute("SELECT num, data FROM t ORDER BY id").fetchall())
        connection.close()
    assert results[0] == results[1]


def test_query_iter_on_empty_table_fails(conn):
    stats = Stats()
    with pytest.raises(RuntimeError, match="query max id"):
        run_query_iter(conn, random.Random(1), BenchOptions(mode="query"), stats)
    assert stats.snapshot() == (0, 0)
    assert not conn.in_transaction


def test_query_iter_after_insert(conn):
    stats = Stats()
    options = BenchOptions(mode="query", max_rows_per_iter=5)
    run_insert_iter(conn, random.Random(3), options, stats)
    _, rows_before = stats.snapshot()
    run_query_iter(conn, random.Random(4), options, stats)
    tx_n, rows_after = stats.snapshot()
    assert tx_n == 2
    assert 1 <= rows_after - rows_before <= options.max_rows_per_iter
    assert not conn.in_transaction


def test_stats_record():
    stats = Stats()
    stats.record(3)
    stats.record(4)
    assert stats.snapshot() == (2, 7)


def test_run_insert(tmp_path):
    dsn = str(tmp_path / "run.db")
    stats = run(BenchOptions(mode="insert", iter=3, seed=5), dsn)
    assert stats.tx_n == 3
    connection = sqlite3.connect(dsn)
    assert row_count(connection) == stats.row_n
    connection.close()


def test_run_sets_journal_mode(tmp_path):
    dsn = str(tmp_path / "wal.db")
    run(BenchOptions(mode="insert", iter=1, seed=2, journal_mode="wal"), dsn)
    connection = sqlite3.connect(dsn)
    assert connection.execute("PRAGMA journal_mode").fetchone()[0] == "wal"
    connection.close()


def test_run_requires_mode(tmp_path):
    with pytest.raises(ValueError, match="required: -mode MODE"):
        run(BenchOptions(iter=1), str(tmp_path / "x.db"))


def test_run_invalid_mode(tmp_path):
    with pytest.raises(ValueError, match='invalid bench mode: "bogus"'):
        run(BenchOptions(mode="bogus", iter=1, seed=1), str(tmp_path / "x.db"))


def test_run_query_on_empty_wraps_iteration(tmp_path):
    with pytest.raises(RuntimeError, match="iter 0: query max id"):
        run(BenchOptions(mode="query", iter=1, seed=1), str(tmp_path / "x.db"))


def test_main_without_args_prints_usage(capsys):
    assert main([]) == 1
    assert "litefs-bench is a tool for simulating load" in capsys.readouterr().out


def test_main_too_many_args(capsys, tmp_path):
    assert main(["-mode", "insert", str(tmp_path / "a"), str(tmp_path / "b")]) == 1
    assert "ERROR: too many arguments" in capsys.readouterr().err


def test_main_missing_mode(capsys, tmp_path):
    assert main([str(tmp_path / "a.db")]) == 1
    assert "ERROR: required: -mode MODE" in capsys.readouterr().err


def test_main_runs_insert(tmp_path):
    dsn = tmp_path / "main.db"
    assert main(["-mode", "insert", "-iter", "2", "-seed", "7", str(dsn)]) == 0
    connection = sqlite3.connect(dsn)
    assert row_count(connection) >= 2
    connection.close()