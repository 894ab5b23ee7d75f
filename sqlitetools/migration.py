"""A connection pool that applies schema migrations before handing out connections.

:class:`MigrationPool` opens a :class:`~sqlitetools.pool.Pool` in the
background. It runs every migration in a :class:`Schema` that the database
has not seen yet. Until that has succeeded once, no connection is handed out.
:func:`migrate` applies the same migrations to a single connection.
"""

from __future__ import annotations

import sqlite3
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass, field

from sqlitetools.exec import ResultCode, SQLiteError, Statement, error_code, execute, exec_script
from sqlitetools.pool import OpenFlags, Pool
from sqlitetools.query import result_bool, result_int
from sqlitetools.savepoint import immediate_transaction

__all__ = ["Schema", "MigrationOptions", "Options", "MigrationPool", "migrate"]

SignalFunc = Callable[[], None]
ReportFunc = Callable[[BaseException], None]
ConnPrepareFunc = Callable[[sqlite3.Connection], None]

_RETRY_INTERVAL = 5.0


@dataclass
class MigrationOptions:
    """Optional settings for one migration.

    With ``disable_foreign_keys`` set, foreign keys are switched off while the
    migration runs and switched back on afterwards, if they were on before.
    """

    disable_foreign_keys: bool = False


@dataclass
class Schema:
    """The migrations of an application.

    ``migrations`` run in order, each in its own transaction. ``migration_options``
    must not be longer than ``migrations``. ``app_id`` is stored in the database
    to identify the application. ``repeatable_migration`` runs as part of the
    last migration's transaction whenever any migration ran.
    """

    migrations: list[str] = field(default_factory=list)
    migration_options: list[MigrationOptions | None] = field(default_factory=list)
    app_id: int = 0
    repeatable_migration: str = ""


@dataclass
class Options:
    """Optional behaviour of a :class:`MigrationPool`."""

    flags: OpenFlags | int = 0
    pool_size: int = 0
    on_start_migrate: SignalFunc | None = None
    on_ready: SignalFunc | None = None
    on_error: ReportFunc | None = None
    prepare_conn: ConnPrepareFunc | None = None


def _signal(func: SignalFunc | None) -> None:
    if func is not None:
        func()


def _report(func: ReportFunc | None, err: BaseException) -> None:
    if func is not None:
        func(err)


def _wrap(prefix: str, err: BaseException) -> SQLiteError:
    return SQLiteError(error_code(err), f"{prefix}: {err}")


def _user_version(conn: sqlite3.Connection) -> int:
    try:
        return result_int(Statement(conn, "PRAGMA user_version;"))
    except SQLiteError as err:
        raise _wrap("get database user_version", err) from err


def _rollback(conn: sqlite3.Connection) -> None:
    if not conn.in_transaction:
        return
    try:
        execute(conn, "ROLLBACK;")
    except SQLiteError:
        pass


def _ensure_app_id(conn: sqlite3.Connection, want_app_id: int) -> int:
    # An immediate transaction takes the write lock up front, so a busy
    # database waits on the busy timeout instead of failing on upgrade.
    with immediate_transaction(conn):
        has_schema = result_bool(
            Statement(conn, "VALUES ((SELECT COUNT(*) FROM sqlite_master) > 0);")
        )
        db_app_id = result_int(Statement(conn, "PRAGMA application_id;"))
        if db_app_id != want_app_id and not (db_app_id == 0 and not has_schema):
            raise SQLiteError(
                ResultCode.ERROR,
                f"database application_id = {db_app_id:#x} (expected {want_app_id:#x})",
            )
        version = _user_version(conn)
        execute(conn, f"PRAGMA application_id = {int(want_app_id)};")
    return version


def _migrate(conn: sqlite3.Connection, schema: Schema, on_start: SignalFunc | None) -> None:
    try:
        version = _ensure_app_id(conn, schema.app_id)
    except SQLiteError as err:
        raise _wrap("migrate database", err) from err

    _signal(on_start)

    try:
        foreign_keys = result_bool(Statement(conn, "PRAGMA foreign_keys;"))
    except SQLiteError as err:
        raise _wrap("migrate database", err) from err

    count = len(schema.migrations)
    while version < count:
        migration = schema.migrations[version]
        options = (
            schema.migration_options[version]
            if version < len(schema.migration_options)
            else None
        )
        disable_fks = foreign_keys and options is not None and options.disable_foreign_keys
        if disable_fks:
            try:
                execute(conn, "PRAGMA foreign_keys = off;")
            except SQLiteError as err:
                raise _wrap("migrate database: disable foreign keys", err) from err

        prefix = f"migrate database: apply migrations[{version}]"
        try:
            execute(conn, "BEGIN IMMEDIATE;")
        except SQLiteError as err:
            raise _wrap(prefix, err) from err
        try:
            actual = _user_version(conn)
        except SQLiteError as err:
            _rollback(conn)
            raise _wrap("migrate database", err) from err
        if actual != version:
            # Another connection migrated while this one was outside a transaction.
            _rollback(conn)
            version = actual
            continue

        try:
            if migration.strip():
                exec_script(conn, migration)
            execute(conn, f"PRAGMA user_version = {version + 1};")
        except SQLiteError as err:
            _rollback(conn)
            raise _wrap(prefix, err) from err

        if version == count - 1 and schema.repeatable_migration:
            try:
                exec_script(conn, schema.repeatable_migration)
            except SQLiteError as err:
                _rollback(conn)
                raise _wrap("migrate database: apply repeatable migration", err) from err

        try:
            execute(conn, "COMMIT;")
        except SQLiteError as err:
            _rollback(conn)
            raise _wrap(prefix, err) from err

        if disable_fks:
            try:
                execute(conn, "PRAGMA foreign_keys = on;")
            except SQLiteError as err:
                raise _wrap("migrate database: reenable foreign keys", err) from err
        version += 1


def migrate(conn: sqlite3.Connection, schema: Schema) -> None:
    """Apply any migrations in ``schema`` that the database has not run yet."""
    _migrate(conn, schema, None)


class MigrationPool:
    """A pool whose connections are available only after migrations succeeded.

    Construction does not block: the pool is opened and migrated on a
    background thread. :meth:`take` waits for that to finish.
    """

    def __init__(self, uri: str, schema: Schema, options: Options | None = None) -> None:
        self._opts = options or Options()
        self._ready = threading.Event()
        self._retry = threading.Event()
        self._cancel = threading.Event()
        self._lock = threading.Lock()
        self._closed = False
        self._active: sqlite3.Connection | None = None
        self._pool: Pool | None = None
        self._error: BaseException | None = None
        thread = threading.Thread(target=self._run, args=(uri, schema), daemon=True)
        thread.start()

    def _run(self, uri: str, schema: Schema) -> None:
        try:
            self._pool = self._open(uri, schema)
        except Exception as err:
            self._error = err
            _report(self._opts.on_error, err)
        finally:
            self._ready.set()

    def _wait_for_retry(self) -> None:
        while True:
            if self._cancel.is_set():
                raise SQLiteError(ResultCode.ERROR, "closed before successful migration")
            if self._retry.wait(0.1):
                self._retry.clear()
                return

    def _close_quietly(self, pool: Pool, context: str) -> None:
        try:
            pool.close()
        except Exception as err:
            _report(self._opts.on_error, _wrap(context, err))

    def _open(self, uri: str, schema: Schema) -> Pool:
        opts = self._opts
        first = True
        while True:
            if not first:
                self._wait_for_retry()
            first = False

            try:
                pool = Pool(
                    uri,
                    flags=opts.flags or None,
                    pool_size=opts.pool_size,
                    prepare_conn=opts.prepare_conn,
                )
            except Exception as err:
                _report(opts.on_error, err)
                continue

            if self._cancel.is_set():
                self._close_quietly(pool, "close after cancellation")
                raise SQLiteError(ResultCode.ERROR, "closed before successful migration")

            try:
                conn = pool.take()
            except Exception:
                self._close_quietly(pool, "close after failed connection preparation")
                raise

            with self._lock:
                self._active = conn
            try:
                _migrate(conn, schema, opts.on_start_migrate)
            except Exception:
                pool.put(conn)
                self._close_quietly(pool, "close after failed migration")
                raise
            finally:
                with self._lock:
                    self._active = None
            pool.put(conn)
            _signal(opts.on_ready)
            return pool

    def take(self, timeout: float | None = None) -> sqlite3.Connection:
        """Take a connection once migration is done, waiting up to ``timeout`` seconds."""
        deadline = None if timeout is None else time.monotonic() + timeout
        while not self._ready.is_set():
            self._retry.set()
            wait = _RETRY_INTERVAL
            if deadline is not None:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    raise TimeoutError("get sqlite connection: timed out")
                wait = min(wait, remaining)
            self._ready.wait(wait)

        if self._error is not None:
            raise _wrap("get sqlite connection", self._error) from self._error
        assert self._pool is not None
        remaining = None if deadline is None else max(0.0, deadline - time.monotonic())
        return self._pool.take(remaining)

    def get(self, timeout: float | None = None) -> sqlite3.Connection:
        """Same as :meth:`take`."""
        return self.take(timeout)

    def put(self, conn: sqlite3.Connection | None) -> None:
        """Return a connection obtained from :meth:`take`."""
        if not self._ready.is_set():
            raise RuntimeError("MigrationPool.put before pool is ready")
        if self._error is not None or self._pool is None:
            raise RuntimeError("MigrationPool.put on failed pool")
        self._pool.put(conn)

    def check_health(self) -> None:
        """Raise if the pool is closed or migration has not completed successfully."""
        with self._lock:
            closed = self._closed
        if closed:
            raise RuntimeError("sqlite pool health: closed")
        if not self._ready.is_set():
            raise RuntimeError("sqlite pool health: not ready")
        if self._error is not None:
            raise RuntimeError(f"sqlite pool health: {self._error}") from self._error

    def close(self) -> None:
        """Close every connection, interrupting a migration that is still running."""
        with self._lock:
            if self._closed:
                raise RuntimeError("close sqlite pool: already closed")
            self._closed = True
            active = self._active
        self._cancel.set()
        self._retry.set()
        if active is not None:
            active.interrupt()
        self._ready.wait()
        if self._pool is not None:
            self._pool.close()

    def __enter__(self) -> MigrationPool:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()