"""Execute SQL statements and scripts against :mod:`sqlite3` connections.

Statements are executed from strings with :func:`execute`,
:func:`execute_transient` and :func:`execute_script`, or from files with
:func:`execute_fs`, :func:`execute_transient_fs`, :func:`execute_script_fs`
and :func:`prepare_transient_fs`.

Connections should be opened with ``isolation_level=None`` so that
transactions are controlled explicitly.
"""

from __future__ import annotations

import enum
import os
import re
import sqlite3
from collections.abc import Callable, Iterator, Mapping, Sequence
from contextlib import contextmanager
from pathlib import Path
from typing import Any

__all__ = [
    "ResultCode",
    "SQLiteError",
    "Bitset",
    "Statement",
    "error_code",
    "execute",
    "execute_transient",
    "exec_legacy",
    "exec_transient_legacy",
    "execute_script",
    "exec_script",
    "execute_fs",
    "execute_transient_fs",
    "execute_script_fs",
    "prepare_transient_fs",
]


class ResultCode(enum.IntEnum):
    """SQLite result codes, primary and the extended ones used here."""

    OK = 0
    ERROR = 1
    INTERNAL = 2
    PERM = 3
    ABORT = 4
    BUSY = 5
    LOCKED = 6
    NOMEM = 7
    READONLY = 8
    INTERRUPT = 9
    IOERR = 10
    CORRUPT = 11
    NOTFOUND = 12
    FULL = 13
    CANTOPEN = 14
    PROTOCOL = 15
    EMPTY = 16
    SCHEMA = 17
    TOOBIG = 18
    CONSTRAINT = 19
    MISMATCH = 20
    MISUSE = 21
    NOLFS = 22
    AUTH = 23
    FORMAT = 24
    RANGE = 25
    NOTADB = 26
    NOTICE = 27
    WARNING = 28
    ROW = 100
    DONE = 101
    BUSY_SNAPSHOT = 517
    CONSTRAINT_NOTNULL = 1299
    CONSTRAINT_PRIMARYKEY = 1555
    CONSTRAINT_UNIQUE = 2067


class SQLiteError(Exception):
    """An error carrying an SQLite result code."""

    def __init__(self, code: ResultCode, message: str) -> None:
        super().__init__(message)
        self.code = ResultCode(code)


def _code_from_int(value: int) -> ResultCode:
    try:
        return ResultCode(value)
    except ValueError:
        try:
            return ResultCode(value & 0xFF)
        except ValueError:
            return ResultCode.ERROR


def error_code(err: BaseException | None) -> ResultCode:
    """Return the SQLite result code that best describes ``err``."""
    if err is None:
        return ResultCode.OK
    if isinstance(err, SQLiteError):
        return err.code
    code = getattr(err, "sqlite_errorcode", None)
    if isinstance(code, int):
        return _code_from_int(code)
    return ResultCode.ERROR


def _convert(err: sqlite3.Error) -> SQLiteError:
    return SQLiteError(error_code(err), f"sqlite: {err}")


class Bitset:
    """A fixed-size set of small non-negative integers stored in 64-bit words."""

    _FULL = (1 << 64) - 1

    def __init__(self, size: int = 0, words: Sequence[int] | None = None) -> None:
        if words is not None:
            self.words = [w & self._FULL for w in words]
        else:
            self.words = [0] * ((size + 63) // 64)

    def set(self, n: int) -> None:
        self.words[n // 64] |= 1 << (n % 64)

    def has_all(self, n: int) -> bool:
        """Report whether the set contains every integer in ``[0, n)``."""
        nwords = (n + 63) // 64
        if len(self.words) < nwords:
            return False
        full = n // 64
        if any(w != self._FULL for w in self.words[:full]):
            return False
        if full == nwords:
            return True
        mask = (1 << (n % 64)) - 1
        return self.words[nwords - 1] & mask == mask

    def first_missing(self) -> int:
        for i, word in enumerate(self.words):
            if word == self._FULL:
                continue
            for j in range(64):
                if not word & (1 << j):
                    return i * 64 + j
        return len(self.words) * 64

    def __str__(self) -> str:
        return "".join(f"{w:08b}" for w in reversed(self.words))


def _is_ident(ch: str) -> bool:
    return ch.isalnum() or ch == "_" or ord(ch) > 127


def _scan(sql: str) -> Iterator[tuple[str, int, int]]:
    """Yield ("param"|"semi", start, end) tokens outside literals and comments."""
    i, n = 0, len(sql)
    while i < n:
        c = sql[i]
        if c in "'\"`":
            j = i + 1
            while j < n:
                if sql[j] == c:
                    if j + 1 < n and sql[j + 1] == c:
                        j += 2
                        continue
                    break
                j += 1
            i = j + 1
        elif c == "[":
            j = sql.find("]", i + 1)
            i = n if j < 0 else j + 1
        elif sql.startswith("--", i):
            j = sql.find("\n", i)
            i = n if j < 0 else j + 1
        elif sql.startswith("/*", i):
            j = sql.find("*/", i + 2)
            i = n if j < 0 else j + 2
        elif c == ";":
            yield "semi", i, i + 1
            i += 1
        elif c == "?":
            j = i + 1
            while j < n and sql[j].isdigit():
                j += 1
            yield "param", i, j
            i = j
        elif c in ":@$" and i + 1 < n and _is_ident(sql[i + 1]):
            j = i + 1
            while j < n and _is_ident(sql[j]):
                j += 1
            yield "param", i, j
            i = j
        elif _is_ident(c):
            j = i + 1
            while j < n and (_is_ident(sql[j]) or sql[j] == "$"):
                j += 1
            i = j
        else:
            i += 1


_COMMENT_RE = re.compile(r"--[^\n]*|/\*.*?(?:\*/|$)", re.DOTALL)


def _is_blank(text: str) -> bool:
    return _COMMENT_RE.sub("", text).strip() == ""


def _coerce(value: Any) -> Any:
    if value is None or isinstance(value, (int, float, str, bytes)):
        return int(value) if isinstance(value, bool) else value
    if isinstance(value, (bytearray, memoryview)):
        return bytes(value)
    return str(value)


class Statement:
    """The first SQL statement of a string, with its parameters."""

    def __init__(self, conn: sqlite3.Connection, sql: str) -> None:
        if conn is None:
            raise SQLiteError(ResultCode.MISUSE, "sqlite: nil connection")
        self._conn = conn
        tokens = list(_scan(sql))
        end = len(sql)
        for kind, _, stop in tokens:
            if kind == "semi" and sqlite3.complete_statement(sql[:stop]):
                end = stop
                break
        rest = sql[end:]
        self.trailing = "" if _is_blank(rest) else rest

        names: dict[int, str] = {}
        by_name: dict[str, int] = {}
        count = 0
        pieces: list[str] = []
        pos = 0
        for kind, start, stop in tokens:
            if kind != "param" or stop > end:
                continue
            token = sql[start:stop]
            if token == "?":
                count += 1
                index = count
                names.setdefault(index, "")
            elif token.startswith("?"):
                index = int(token[1:])
                names.setdefault(index, token)
                count = max(count, index)
            elif token in by_name:
                index = by_name[token]
            else:
                count += 1
                index = count
                by_name[token] = index
                names[index] = token
            pieces.append(sql[pos:start])
            pieces.append(f"?{index}")
            pos = stop
        pieces.append(sql[pos:end])
        self.sql = sql[:end]
        self._rewritten = "".join(pieces)
        self._names = names
        self._by_name = by_name
        self._count = count
        self._values: dict[int, Any] = {}

    def param_count(self) -> int:
        return self._count

    def param_name(self, index: int) -> str:
        """Name of the parameter at 1-based ``index``, or "" if it is unnamed."""
        return self._names.get(index, "")

    def bind(self, param: int | str, value: Any) -> None:
        """Bind ``value`` to a 1-based index or a parameter name."""
        if isinstance(param, str):
            if param not in self._by_name:
                raise SQLiteError(ResultCode.RANGE, f"sqlite: unknown parameter {param}")
            index = self._by_name[param]
        else:
            index = param
        if not 1 <= index <= self._count:
            raise SQLiteError(ResultCode.RANGE, f"sqlite: parameter index {index} out of range")
        self._values[index] = _coerce(value)

    def clear_bindings(self) -> None:
        self._values.clear()

    def rows(self) -> Iterator[tuple]:
        """Run the statement, yielding each result row as a tuple."""
        values = [self._values.get(i) for i in range(1, self._count + 1)]
        try:
            cursor = self._conn.execute(self._rewritten, values)
        except sqlite3.Error as err:
            raise _convert(err) from err
        while True:
            try:
                row = cursor.fetchone()
            except sqlite3.Error as err:
                raise _convert(err) from err
            if row is None:
                return
            yield row


ResultFunc = Callable[[tuple], None]


def _set_named(
    stmt: Statement,
    provided: Bitset,
    forbid_missing: bool,
    forbid_extra: bool,
    named: Mapping[str, Any] | None,
) -> None:
    if not named:
        return
    unused = set(named) if forbid_extra else set()
    for index in range(1, stmt.param_count() + 1):
        name = stmt.param_name(index)
        if not name:
            continue
        if name not in named:
            if forbid_missing:
                raise SQLiteError(ResultCode.ERROR, f"missing parameter {name}")
            continue
        unused.discard(name)
        provided.set(index - 1)
        stmt.bind(index, named[name])
    if unused:
        raise SQLiteError(ResultCode.RANGE, f"sqlite: unknown argument {min(unused)}")


def _exec(
    stmt: Statement,
    *,
    forbid_missing: bool,
    forbid_extra: bool,
    args: Sequence[Any] | None,
    named: Mapping[str, Any] | None,
    result_func: ResultFunc | None,
) -> None:
    count = stmt.param_count()
    provided = Bitset(count)
    args = args or ()
    if len(args) > count:
        raise SQLiteError(
            ResultCode.RANGE,
            f"sqlitetools: too many arguments ({len(args)} > {count})",
        )
    for i, arg in enumerate(args):
        provided.set(i)
        stmt.bind(i + 1, arg)
    _set_named(stmt, provided, forbid_missing, forbid_extra, named)
    if forbid_missing and not provided.has_all(count):
        index = provided.first_missing() + 1
        name = stmt.param_name(index) or f"?{index}"
        raise SQLiteError(ResultCode.ERROR, f"sqlitetools: missing argument for {name}")
    for row in stmt.rows():
        if result_func is not None:
            result_func(row)


def _single(conn: sqlite3.Connection, query: str) -> Statement:
    stmt = Statement(conn, query)
    if stmt.trailing:
        raise SQLiteError(
            ResultCode.ERROR, f"sqlitetools: execute: query {query!r} has trailing bytes"
        )
    return stmt


def execute(
    conn: sqlite3.Connection,
    query: str,
    *,
    args: Sequence[Any] | None = None,
    named: Mapping[str, Any] | None = None,
    result_func: ResultFunc | None = None,
) -> None:
    """Execute one statement, calling ``result_func`` with each row."""
    stmt = _single(conn, query)
    _exec(stmt, forbid_missing=True, forbid_extra=True, args=args, named=named,
          result_func=result_func)


def execute_transient(
    conn: sqlite3.Connection,
    query: str,
    *,
    args: Sequence[Any] | None = None,
    named: Mapping[str, Any] | None = None,
    result_func: ResultFunc | None = None,
) -> None:
    """Execute one statement without relying on any statement cache."""
    execute(conn, query, args=args, named=named, result_func=result_func)


def exec_legacy(
    conn: sqlite3.Connection, query: str, result_func: ResultFunc | None, *args: Any
) -> None:
    """Execute one statement with positional arguments; missing ones become NULL."""
    stmt = _single(conn, query)
    _exec(stmt, forbid_missing=False, forbid_extra=False, args=args, named=None,
          result_func=result_func)


def exec_transient_legacy(
    conn: sqlite3.Connection, query: str, result_func: ResultFunc | None, *args: Any
) -> None:
    """Same as :func:`exec_legacy`."""
    exec_legacy(conn, query, result_func, *args)


@contextmanager
def _script_savepoint(conn: sqlite3.Connection) -> Iterator[None]:
    name = "sqlitetools.execute_script"
    execute(conn, f'SAVEPOINT "{name}";')
    try:
        yield
    except BaseException:
        if conn.in_transaction:
            execute(conn, f'ROLLBACK TO "{name}";')
            execute(conn, f'RELEASE "{name}";')
        raise
    if conn.in_transaction:
        execute(conn, f'RELEASE "{name}";')


def execute_script(
    conn: sqlite3.Connection,
    queries: str,
    *,
    args: Sequence[Any] | None = None,
    named: Mapping[str, Any] | None = None,
) -> None:
    """Execute a script of statements inside a savepoint rolled back on error."""
    if conn is None:
        raise SQLiteError(ResultCode.MISUSE, "sqlite: nil connection")
    with _script_savepoint(conn):
        unused = set(named or ())
        while queries := queries.strip():
            stmt = Statement(conn, queries)
            for index in range(1, stmt.param_count() + 1):
                unused.discard(stmt.param_name(index))
            queries = stmt.trailing
            _exec(stmt, forbid_missing=True, forbid_extra=False, args=args,
                  named=named, result_func=None)
        if unused:
            raise SQLiteError(ResultCode.RANGE, f"sqlite: unknown argument {min(unused)}")


def exec_script(conn: sqlite3.Connection, queries: str) -> None:
    """Execute a script without arguments."""
    execute_script(conn, queries)


def _read(fsys: Any, filename: str) -> str:
    root = Path(fsys) if isinstance(fsys, (str, os.PathLike)) else fsys
    return (root / filename).read_text(encoding="utf-8")


def _rewrap(err: SQLiteError, prefix: str) -> SQLiteError:
    return SQLiteError(err.code, f"{prefix}: {err}")


def execute_fs(
    fsys: Any,
    conn: sqlite3.Connection,
    filename: str,
    *,
    args: Sequence[Any] | None = None,
    named: Mapping[str, Any] | None = None,
    result_func: ResultFunc | None = None,
) -> None:
    """Execute the single statement held in ``filename`` under ``fsys``."""
    query = _read(fsys, filename).strip()
    try:
        execute(conn, query, args=args, named=named, result_func=result_func)
    except SQLiteError as err:
        raise _rewrap(err, f"sqlitetools: execute {filename}") from err


def execute_transient_fs(
    fsys: Any,
    conn: sqlite3.Connection,
    filename: str,
    *,
    args: Sequence[Any] | None = None,
    named: Mapping[str, Any] | None = None,
    result_func: ResultFunc | None = None,
) -> None:
    """Execute the single statement in a file without caching."""
    execute_fs(fsys, conn, filename, args=args, named=named, result_func=result_func)


def execute_script_fs(
    fsys: Any,
    conn: sqlite3.Connection,
    filename: str,
    *,
    args: Sequence[Any] | None = None,
    named: Mapping[str, Any] | None = None,
) -> None:
    """Execute the script held in ``filename`` under ``fsys``."""
    queries = _read(fsys, filename)
    try:
        execute_script(conn, queries, args=args, named=named)
    except SQLiteError as err:
        raise _rewrap(err, f"sqlitetools: execute {filename}") from err


def prepare_transient_fs(conn: sqlite3.Connection, fsys: Any, filename: str) -> Statement:
    """Prepare the statement held in ``filename`` under ``fsys``."""
    return Statement(conn, _read(fsys, filename).strip())