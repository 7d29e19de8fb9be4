"""Load generator that runs insert or query transactions against a SQLite database."""

from __future__ import annotations

import argparse
import itertools
import logging
import random
import sqlite3
import sys
import threading
import time
from dataclasses import dataclass, field

__all__ = [
    "Stats",
    "BenchOptions",
    "migrate",
    "run_insert_iter",
    "run_query_iter",
    "run",
    "main",
]

logger = logging.getLogger(__name__)

USAGE = """\
litefs-bench is a tool for simulating load against a SQLite database.

Usage:

\tlitefs-bench MODE [arguments] DSN

Modes:

\tinsert       continuous INSERTs into a single indexed table
\tquery        continuous short SELECT queries against a table

Arguments:
"""


@dataclass
class Stats:
    """Thread-safe counters of completed transactions and rows."""

    tx_n: int = 0
    row_n: int = 0
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False, compare=False)

    def record(self, rows: int) -> None:
        with self._lock:
            self.tx_n += 1
            self.row_n += rows

    def snapshot(self) -> tuple[int, int]:
        with self._lock:
            return self.tx_n, self.row_n


@dataclass
class BenchOptions:
    """Settings for a benchmark run."""

    mode: str = ""
    journal_mode: str = ""
    seed: int = 0
    cache_size: int = -2000
    iter: int = 0
    max_row_size: int = 256
    max_rows_per_iter: int = 10
    iter_per_sec: float = 0.0


def migrate(conn: sqlite3.Connection) -> None:
    """Create the benchmark table and its index if they do not exist."""
    try:
        conn.execute("CREATE TABLE IF NOT EXISTS t (id INTEGER PRIMARY KEY, num INTEGER, data TEXT)")
    except sqlite3.Error as exc:
        raise RuntimeError(f"create table: {exc}") from exc
    try:
        conn.execute("CREATE INDEX IF NOT EXISTS idx ON t (num)")
    except sqlite3.Error as exc:
        raise RuntimeError(f"create index: {exc}") from exc


def _rollback(conn: sqlite3.Connection) -> None:
    if conn.in_transaction:
        try:
            conn.execute("ROLLBACK")
        except sqlite3.Error:
            pass


def run_insert_iter(
    conn: sqlite3.Connection, rng: random.Random, options: BenchOptions, stats: Stats
) -> None:
    """Insert a random batch of rows in one transaction."""
    try:
        conn.execute("BEGIN")
    except sqlite3.Error as exc:
        raise RuntimeError(f"begin: {exc}") from exc

    try:
        row_n = rng.randrange(options.max_rows_per_iter) + 1
        for i in range(row_n):
            buf = rng.randbytes(options.max_row_size)
            num = rng.getrandbits(63)
            row_size = rng.randrange(options.max_row_size)
            data = buf.hex()[:row_size]
            try:
                conn.execute("INSERT INTO t (num, data) VALUES (?, ?)", (num, data))
            except sqlite3.Error as exc:
                raise RuntimeError(f"insert({i}): {exc}") from exc

        try:
            conn.execute("COMMIT")
        except sqlite3.Error as exc:
            raise RuntimeError(f"commit: {exc}") from exc
    finally:
        _rollback(conn)

    stats.record(row_n)

    if rng.randrange(100) == 0:
        try:
            conn.execute("VACUUM")
        except sqlite3.Error as exc:
            raise RuntimeError(f"vacuum: {exc}") from exc

    if rng.randrange(10) == 0:
        try:
            conn.execute("PRAGMA wal_checkpoint(TRUNCATE)").fetchall()
        except sqlite3.Error as exc:
            raise RuntimeError(f"truncate: {exc}") from exc


def run_query_iter(
    conn: sqlite3.Connection, rng: random.Random, options: BenchOptions, stats: Stats
) -> None:
    """Read a few rows starting from the highest ID in one read transaction."""
    try:
        conn.execute("BEGIN")
    except sqlite3.Error as exc:
        raise RuntimeError(f"begin: {exc}") from exc

    try:
        try:
            (max_id,) = conn.execute("SELECT MAX(id) FROM t").fetchone()
        except sqlite3.Error as exc:
            raise RuntimeError(f"query max id: {exc}") from exc
        if max_id is None:
            raise RuntimeError("query max id: converting NULL to int is unsupported")

        try:
            cursor = conn.execute("SELECT id, num, data FROM t WHERE id >= ?", (max_id,))
        except sqlite3.Error as exc:
            raise RuntimeError(f"query: {exc}") from exc

        row_n = rng.randrange(options.max_rows_per_iter) + 1
        try:
            for _ in itertools.islice(cursor, row_n):
                pass
        except sqlite3.Error as exc:
            raise RuntimeError(f"scan: {exc}") from exc
        cursor.close()

        try:
            conn.execute("ROLLBACK")
        except sqlite3.Error as exc:
            raise RuntimeError(f"rollback: {exc}") from exc
    finally:
        _rollback(conn)

    stats.record(row_n)


def _monitor(stats: Stats, stop: threading.Event) -> None:
    prev_time = time.monotonic()
    prev_tx, prev_rows = 0, 0
    while not stop.wait(1.0):
        curr_tx, curr_rows = stats.snapshot()
        curr_time = time.monotonic()
        elapsed = curr_time - prev_time
        logger.info(
            "stats: tx/sec=%0.03f rows/sec=%0.03f",
            (curr_tx - prev_tx) / elapsed,
            (curr_rows - prev_rows) / elapsed,
        )
        prev_tx, prev_rows, prev_time = curr_tx, curr_rows, curr_time


_ITERATIONS = {"insert": run_insert_iter, "query": run_query_iter}


def run(options: BenchOptions, dsn: str) -> Stats:
    """Run the benchmark against the database at ``dsn`` and return its stats."""
    if not options.mode:
        raise ValueError("required: -mode MODE")

    seed = options.seed or time.time_ns()
    print(f"running litefs-bench: seed={seed}")

    conn = sqlite3.connect(dsn, isolation_level=None, check_same_thread=False)
    stats = Stats()
    stop = threading.Event()
    monitor = threading.Thread(target=_monitor, args=(stats, stop), daemon=True)
    try:
        try:
            conn.execute("PRAGMA busy_timeout = 5000")
        except sqlite3.Error as exc:
            raise RuntimeError(f"set busy timeout: {exc}") from exc

        try:
            conn.execute(f"PRAGMA cache_size = {int(options.cache_size)}")
        except sqlite3.Error as exc:
            raise RuntimeError(f"set cache size to {options.cache_size}: {exc}") from exc

        if options.journal_mode:
            logger.info('setting journal mode to "%s"', options.journal_mode)
            try:
                conn.execute("PRAGMA journal_mode = " + options.journal_mode).fetchall()
            except sqlite3.Error as exc:
                raise RuntimeError(f"set journal mode: {exc}") from exc

        try:
            migrate(conn)
        except RuntimeError as exc:
            raise RuntimeError(f"migrate: {exc}") from exc

        monitor.start()

        interval = 1.0 / options.iter_per_sec if options.iter_per_sec > 0 else 0.0
        next_tick = time.monotonic() + interval
        counter = itertools.count() if options.iter == 0 else range(options.iter)
        for i in counter:
            delay = next_tick - time.monotonic()
            if delay > 0:
                time.sleep(delay)
            next_tick = max(next_tick + interval, time.monotonic())

            iteration = _ITERATIONS.get(options.mode)
            if iteration is None:
                raise ValueError(f'invalid bench mode: "{options.mode}"')
            try:
                iteration(conn, random.Random(seed + i), options, stats)
            except (RuntimeError, sqlite3.Error) as exc:
                raise RuntimeError(f"iter {i}: {exc}") from exc
    finally:
        stop.set()
        if monitor.is_alive():
            monitor.join()
        conn.close()

    return stats


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="litefs-bench", add_help=False, allow_abbrev=False)
    parser.add_argument("-mode", "--mode", dest="mode", default="", help="benchmark mode")
    parser.add_argument(
        "-journal-mode", "--journal-mode", dest="journal_mode", default="", help="journal mode"
    )
    parser.add_argument("-seed", "--seed", dest="seed", type=int, default=0, help="prng seed")
    parser.add_argument(
        "-cache-size", "--cache-size", dest="cache_size", type=int, default=-2000,
        help="SQLite cache size",
    )
    parser.add_argument(
        "-iter", "--iter", dest="iter", type=int, default=0, help="number of iterations"
    )
    parser.add_argument(
        "-max-row-size", "--max-row-size", dest="max_row_size", type=int, default=256,
        help="maximum row size",
    )
    parser.add_argument(
        "-max-rows-per-iter", "--max-rows-per-iter", dest="max_rows_per_iter", type=int,
        default=10, help="maximum number of rows per iteration",
    )
    parser.add_argument(
        "-iter-per-sec", "--iter-per-sec", dest="iter_per_sec", type=float, default=0.0,
        help="iterations per second",
    )
    parser.add_argument("dsn", nargs="*")
    return parser


def main(argv: list[str] | None = None) -> int:
    """Command-line entry point; returns the process exit code."""
    parser = _build_parser()
    args = parser.parse_args(argv)

    if not args.dsn:
        print(USAGE)
        print(parser.format_help())
        return 1
    if len(args.dsn) > 1:
        print("ERROR: too many arguments", file=sys.stderr)
        return 1

    options = BenchOptions(
        mode=args.mode,
        journal_mode=args.journal_mode,
        seed=args.seed,
        cache_size=args.cache_size,
        iter=args.iter,
        max_row_size=args.max_row_size,
        max_rows_per_iter=args.max_rows_per_iter,
        iter_per_sec=args.iter_per_sec,
    )
    try:
        run(options, args.dsn[0])
    except (ValueError, RuntimeError, sqlite3.Error, OSError) as exc:
        print(f"ERROR: {exc}", file=sys.stderr)
        return 1
    return 0