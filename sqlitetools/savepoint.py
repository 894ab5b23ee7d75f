"""Savepoints and transactions as context managers.

Each context manager starts a savepoint or transaction on entry. When the
block finishes normally it releases or commits; when the block raises it rolls
back and the exception propagates. If the connection has already left the
transaction, for example because the block ran COMMIT or ROLLBACK itself,
there is nothing left to end and exit does nothing.
"""

from __future__ import annotations

import sqlite3
from collections.abc import Iterator, Sequence
from contextlib import AbstractContextManager, contextmanager

from sqlitetools.exec import SQLiteError, execute

__all__ = [
    "save",
    "transaction",
    "immediate_transaction",
    "exclusive_transaction",
]

_DEFAULT_NAME = "sqlitetools.save"


def _abort(conn: sqlite3.Connection, exc: BaseException, rollback: Sequence[str]) -> None:
    if not conn.in_transaction:
        return
    try:
        for sql in rollback:
            execute(conn, sql)
    except SQLiteError as err:
        raise SQLiteError(err.code, f"{exc}\n\t{err}") from exc


def _complete(conn: sqlite3.Connection, finish: str, rollback: Sequence[str]) -> None:
    if not conn.in_transaction:
        return
    try:
        execute(conn, finish)
    except SQLiteError as err:
        _abort(conn, err, rollback)
        raise


@contextmanager
def _scope(
    conn: sqlite3.Connection, begin: str, finish: str, rollback: Sequence[str]
) -> Iterator[None]:
    execute(conn, begin)
    try:
        yield
    except BaseException as exc:
        _abort(conn, exc, rollback)
        raise
    _complete(conn, finish, rollback)


def save(conn: sqlite3.Connection, name: str = _DEFAULT_NAME) -> AbstractContextManager[None]:
    """Run a block inside ``SAVEPOINT name``, released on success, rolled back on error."""
    if '"' in name:
        raise ValueError(f"sqlitetools.save: invalid name: {name!r}")
    quoted = f'"{name}"'
    return _scope(
        conn,
        f"SAVEPOINT {quoted};",
        f"RELEASE {quoted};",
        (f"ROLLBACK TO {quoted};", f"RELEASE {quoted};"),
    )


def _transaction(conn: sqlite3.Connection, mode: str) -> AbstractContextManager[None]:
    return _scope(conn, f"BEGIN {mode};", "COMMIT;", ("ROLLBACK;",))


def transaction(conn: sqlite3.Connection) -> AbstractContextManager[None]:
    """Run a block inside a DEFERRED transaction."""
    return _transaction(conn, "DEFERRED")


def immediate_transaction(conn: sqlite3.Connection) -> AbstractContextManager[None]:
    """Run a block inside an IMMEDIATE transaction."""
    return _transaction(conn, "IMMEDIATE")


def exclusive_transaction(conn: sqlite3.Connection) -> AbstractContextManager[None]:
    """Run a block inside an EXCLUSIVE transaction."""
    return _transaction(conn, "EXCLUSIVE")