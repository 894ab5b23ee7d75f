"""A fixed-size pool of SQLite connections safe to share between threads."""

from __future__ import annotations

import enum
import sqlite3
import threading
import time
from collections import deque
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from urllib.parse import parse_qsl, quote, urlencode

from sqlitetools.exec import ResultCode, SQLiteError, error_code, execute

__all__ = ["OpenFlags", "PoolClosedError", "Pool", "open_conn"]


class OpenFlags(enum.IntFlag):
    """Flags controlling how a connection is opened."""

    READONLY = 0x00000001
    READWRITE = 0x00000002
    CREATE = 0x00000004
    URI = 0x00000040
    MEMORY = 0x00000080
    NOMUTEX = 0x00008000
    FULLMUTEX = 0x00010000
    SHAREDCACHE = 0x00020000
    PRIVATECACHE = 0x00040000
    WAL = 0x00080000


_DEFAULT_FLAGS = OpenFlags.READWRITE | OpenFlags.CREATE | OpenFlags.WAL | OpenFlags.URI


class PoolClosedError(SQLiteError):
    """The pool has been closed."""

    def __init__(self, message: str = "get sqlite connection: pool closed") -> None:
        super().__init__(ResultCode.ERROR, message)


def _build_uri(uri: str, flags: OpenFlags) -> str:
    if flags & OpenFlags.URI and uri.startswith("file:"):
        base, _, query = uri.partition("?")
    else:
        base, query = "file:" + quote(uri, safe="/:"), ""
    params = parse_qsl(query, keep_blank_values=True)
    keys = {key for key, _ in params}
    if "mode" not in keys:
        if flags & OpenFlags.MEMORY:
            params.append(("mode", "memory"))
        elif flags & OpenFlags.READONLY:
            params.append(("mode", "ro"))
        elif flags & OpenFlags.READWRITE and flags & OpenFlags.CREATE:
            params.append(("mode", "rwc"))
        elif flags & OpenFlags.READWRITE:
            params.append(("mode", "rw"))
    if "cache" not in keys:
        if flags & OpenFlags.SHAREDCACHE:
            params.append(("cache", "shared"))
        elif flags & OpenFlags.PRIVATECACHE:
            params.append(("cache", "private"))
    return f"{base}?{urlencode(params)}" if params else base


def open_conn(uri: str, flags: OpenFlags | int | None = None) -> sqlite3.Connection:
    """Open a connection in autocommit mode, usable from any thread."""
    flags = OpenFlags(flags) if flags else _DEFAULT_FLAGS
    try:
        conn = sqlite3.connect(
            _build_uri(uri, flags),
            uri=True,
            isolation_level=None,
            check_same_thread=False,
        )
    except sqlite3.Error as err:
        raise SQLiteError(error_code(err), f"sqlite: open {uri}: {err}") from err
    if flags & OpenFlags.WAL and not flags & OpenFlags.READONLY:
        try:
            execute(conn, "PRAGMA journal_mode = wal;")
        except SQLiteError:
            conn.close()
            raise
    return conn


ConnPrepareFunc = Callable[[sqlite3.Connection], None]


class Pool:
    """A fixed set of connections handed out with :meth:`take` and returned with :meth:`put`.

    ``prepare_conn``, if given, is called on a connection the first time it is
    taken, and again on later takes until it succeeds.
    """

    def __init__(
        self,
        uri: str,
        flags: OpenFlags | int | None = None,
        pool_size: int = 0,
        prepare_conn: ConnPrepareFunc | None = None,
    ) -> None:
        if uri == ":memory:":
            raise ValueError(
                'sqlite: ":memory:" does not work with multiple connections, '
                'use "file::memory:?mode=memory&cache=shared"'
            )
        size = pool_size if pool_size >= 1 else 10
        self._prepare = prepare_conn
        self._cond = threading.Condition()
        self._free: deque[sqlite3.Connection] = deque()
        self._members: list[sqlite3.Connection] = []
        self._busy: set[sqlite3.Connection] = set()
        self._inited: set[sqlite3.Connection] = set()
        self._closed = False
        try:
            for _ in range(size):
                conn = open_conn(uri, flags or _DEFAULT_FLAGS)
                self._members.append(conn)
                self._free.append(conn)
        except BaseException:
            for conn in self._members:
                conn.close()
            raise

    def take(self, timeout: float | None = None) -> sqlite3.Connection:
        """Take a connection, waiting up to ``timeout`` seconds for one to be free."""
        deadline = None if timeout is None else time.monotonic() + timeout
        with self._cond:
            while True:
                if self._closed:
                    raise PoolClosedError()
                if self._free:
                    break
                remaining = None if deadline is None else deadline - time.monotonic()
                if remaining is not None and remaining <= 0:
                    raise TimeoutError("get sqlite connection: timed out")
                self._cond.wait(remaining)
            conn = self._free.popleft()
            self._busy.add(conn)
            needs_prepare = self._prepare is not None and conn not in self._inited
        if needs_prepare:
            try:
                self._prepare(conn)
            except BaseException:
                self._release(conn)
                raise
            with self._cond:
                self._inited.add(conn)
        return conn

    def put(self, conn: sqlite3.Connection | None) -> None:
        """Return a connection taken from this pool. ``None`` is ignored."""
        if conn is None:
            return
        self._release(conn)

    def _release(self, conn: sqlite3.Connection) -> None:
        with self._cond:
            if not any(member is conn for member in self._members):
                raise ValueError("sqlite pool put: connection not created by this pool")
            if conn not in self._busy:
                raise ValueError("sqlite pool put: connection is already in the pool")
            self._busy.discard(conn)
            self._free.append(conn)
            self._cond.notify_all()

    @contextmanager
    def connection(self, timeout: float | None = None) -> Iterator[sqlite3.Connection]:
        """Take a connection for the duration of a block."""
        conn = self.take(timeout)
        try:
            yield conn
        finally:
            self.put(conn)

    def close(self) -> None:
        """Interrupt and close every connection, waiting for taken ones to come back."""
        with self._cond:
            if self._closed:
                raise PoolClosedError("close sqlite pool: already closed")
            self._closed = True
            busy = list(self._busy)
            self._cond.notify_all()
        for conn in busy:
            conn.interrupt()
        with self._cond:
            self._cond.wait_for(lambda: not self._busy)
        first_error: sqlite3.Error | None = None
        for conn in self._members:
            try:
                conn.close()
            except sqlite3.Error as err:
                first_error = first_error or err
        if first_error is not None:
            raise SQLiteError(error_code(first_error), f"sqlite: close: {first_error}") from first_error

    def __enter__(self) -> Pool:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()