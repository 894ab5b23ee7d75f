# sqlitetools

Helpers for working with SQLite through Python's standard `sqlite3` module.
The package has no dependencies outside the standard library.

| Module | What it gives you |
| --- | --- |
| `sqlitetools.exec` | Statement execution with argument checks, scripts, SQL read from files, `SQLiteError` and `ResultCode` |
| `sqlitetools.query` | Reading the single value a statement returns |
| `sqlitetools.savepoint` | Savepoints and transactions as context managers |
| `sqlitetools.rand_id` | Inserting rows keyed by a random id |
| `sqlitetools.pool` | A fixed-size, thread-safe connection pool |
| `sqlitetools.migration` | Schema migrations, and a pool that runs them before it hands out connections |

Open connections with `isolation_level=None`. The helpers issue `BEGIN`,
`SAVEPOINT`, `COMMIT` and `ROLLBACK` themselves. `sqlitetools.pool.open_conn`
and `Pool` already open connections this way.

## Installation

```
pip install sqlitetools
```

## Errors

Failures reported by SQLite are raised as `sqlitetools.exec.SQLiteError`. Its
`code` attribute is a `ResultCode`, for example `ResultCode.RANGE`,
`ResultCode.INTERRUPT` or `ResultCode.CONSTRAINT_PRIMARYKEY`.
`error_code(err)` returns the code for any exception:

- `OK` for `None`.
- The extended code of a `sqlite3.Error`.
- `ERROR` for anything else.

## Executing statements

```python
import sqlite3
from sqlitetools.exec import execute, execute_script

conn = sqlite3.connect(":memory:", isolation_level=None)
execute_script(conn, "CREATE TABLE t (a, b, c, d);")
execute(conn, "INSERT INTO t (a, b, c, d) VALUES (?, ?, ?, ?);",
        args=["a1", 1, 42, 1])

rows = []
execute(conn, "SELECT a, b FROM t WHERE c = ? AND d = ?;",
        args=[42, 1], result_func=rows.append)
# rows == [("a1", 1)]
```

### `execute` and `execute_transient`

- `execute(conn, query, *, args=None, named=None, result_func=None)` runs exactly one statement.
  - `result_func` is called with each result row as a tuple.
  - `args` binds `?1`, `?2`, and so on.
  - `named` binds parameters by their full name: `":x"`, `"@x"` or `"$x"`.
- `execute_transient` does the same.
- Values are bound as follows:
  - `None`, `int`, `float`, `str` and `bytes` are bound as they are.
  - `bool` is bound as `0` or `1`.
  - `bytearray` and `memoryview` are bound as bytes.
  - Anything else is bound as `str(value)`.
- Errors:
  - More positional arguments than parameters, or a named argument that the statement does not use, raises `SQLiteError` with code `RANGE`.
  - A parameter left without a value raises `SQLiteError` with code `ERROR`.
  - A query with text after its first statement is rejected as having trailing bytes.
  - An exception raised by `result_func` stops execution and propagates.

### Looser variants

`exec_legacy(conn, query, result_func, *args)` and `exec_transient_legacy`
take positional arguments only. They do not complain about parameters left
unbound; those are `NULL`. Too many arguments is still an error.

### Scripts

`execute_script(conn, queries, *, args=None, named=None)` runs every statement
in `queries` inside a savepoint. If any statement fails, the savepoint is
rolled back.

- Each statement must have all of its parameters bound.
- A named argument that no statement uses raises `SQLiteError` with code `RANGE`.

`exec_script(conn, queries)` is the same without arguments.

### SQL from files

The first argument, `fsys`, is a directory. It can be a path string, an
`os.PathLike`, or any object that supports `/` and `.read_text()`, such as a
`pathlib.Path` or an `importlib.resources` traversable.

- `execute_fs(fsys, conn, filename, ...)` and `execute_transient_fs(...)` run the single statement in the file.
- `execute_script_fs(fsys, conn, filename, ...)` runs the file as a script.
- `prepare_transient_fs(conn, fsys, filename)` returns a `Statement`. Note that `conn` comes first here.

### `Statement`

`Statement(conn, sql)` holds the first statement of `sql`, together with its
parameters. The text after that statement is kept in `stmt.trailing`.

| Method | What it does |
| --- | --- |
| `param_count()` | Number of parameters in the statement |
| `param_name(index)` | Name of the parameter at a 1-based index, or `""` if it is unnamed |
| `bind(param, value)` | Binds by 1-based index or by name |
| `clear_bindings()` | Removes all bound values |
| `rows()` | Runs the statement and yields each row as a tuple |

A statement can be run again after binding new values.

## Single results

```python
from sqlitetools.exec import Statement
from sqlitetools.query import result_int

count = result_int(Statement(conn, "SELECT count(*) FROM t;"))
```

`result_int`, `result_bool`, `result_float`, `result_text` and `result_bytes`
return the first column of the statement's only row.

- If the statement returns no rows, they raise `NoResultsError`.
- If it returns more than one row, they raise `MultipleResultsError`.
- Both errors are subclasses of `SQLiteError`.
- A `NULL` value becomes `0`, `0.0`, `""` or `b""`.

## Savepoints and transactions

```python
from sqlitetools.savepoint import save, transaction

with save(conn, "work"):
    execute(conn, "INSERT INTO t (a) VALUES ('hello');")
    # an exception here rolls the insert back and propagates
```

- `save(conn, name="sqlitetools.save")` wraps the block in `SAVEPOINT`.
  - On normal exit it runs `RELEASE`.
  - On an exception it runs `ROLLBACK TO` and then `RELEASE`.
  - A name containing `"` raises `ValueError`.
- `transaction(conn)`, `immediate_transaction(conn)` and `exclusive_transaction(conn)` start a `DEFERRED`, `IMMEDIATE` or `EXCLUSIVE` transaction. They commit on success and roll back on an exception.
- If the connection is no longer in a transaction when the block ends, exit does nothing. This happens, for example, after the block ran `COMMIT` or `ROLLBACK` itself.
- If the release or commit fails, the changes are rolled back and the error is raised.

## Random ids

```python
from sqlitetools.rand_id import insert_rand_id

stmt = Statement(conn, "INSERT INTO t (key, val) VALUES ($key, $val);")
stmt.bind("$val", "value")
new_id = insert_rand_id(stmt, "$key", 1000, 10000)  # 1000 <= new_id < 10000
```

`insert_rand_id` binds a random id from the `secrets` module and runs the statement.

- On a primary-key collision it tries again with a new id, up to 100 times.
- A negative minimum or an empty range raises `ValueError`.

## Connection pool

```python
from sqlitetools.pool import OpenFlags, Pool

with Pool("app.db", pool_size=4) as pool:
    with pool.connection() as conn:
        execute(conn, "SELECT 1;")
```

### Creating a pool

`Pool(uri, flags=None, pool_size=0, prepare_conn=None)` opens a fixed number of connections.

- The pool size defaults to 10.
- Connections can be used from any thread.
- `flags` is an `OpenFlags` combination. The default is `READWRITE | CREATE | WAL | URI`.
- `":memory:"` is rejected with `ValueError`. Use `"file::memory:?mode=memory&cache=shared"` instead.
- `prepare_conn(conn)` is called the first time a connection is taken. If it raises, it is called again on the next take.

### Using a pool

| Method | What it does |
| --- | --- |
| `take(timeout=None)` | Waits up to `timeout` seconds for a free connection; raises `TimeoutError` if none comes free in time |
| `put(conn)` | Returns a connection; `put(None)` is ignored |
| `connection(timeout=None)` | Context manager that takes a connection and puts it back |
| `close()` | Interrupts the connections that are out, waits for them to come back, and closes everything |

- `put` raises `ValueError` for a connection that came from another pool, or one that is already in the pool.
- After `close`, `take` raises `PoolClosedError`. A second `close` also raises it.
- The pool is a context manager that closes itself on exit.

`open_conn(uri, flags=None)` opens one connection the same way the pool does.

## Migrations

```python
from sqlitetools.migration import MigrationPool, Options, Schema

schema = Schema(
    migrations=[
        "CREATE TABLE foo ( id INTEGER NOT NULL PRIMARY KEY );",
        "ALTER TABLE foo ADD COLUMN name TEXT;",
    ],
    repeatable_migration=(
        "DROP VIEW IF EXISTS bar;\n"
        "CREATE VIEW bar ( id, name ) AS SELECT id, name FROM foo;\n"
    ),
)

pool = MigrationPool("app.db", schema, Options())
conn = pool.get()          # blocks until migrations have run
try:
    ...
finally:
    pool.put(conn)
    pool.close()
```

### `Schema`

- `migrations`
  - The scripts run in order, each in its own `BEGIN IMMEDIATE` transaction.
  - A script that fails is rolled back.
  - `PRAGMA user_version` records how many scripts have run. Later runs continue from there.
  - If another connection migrated in the meantime, the loop continues from that connection's version.
- `app_id` is stored in `PRAGMA application_id`. A database with a different, non-zero id, or with a zero id but an existing schema, is refused.
- `repeatable_migration` runs inside the last migration's transaction whenever any migration ran.
- `migration_options` is a list of `MigrationOptions`, one per migration. `MigrationOptions(disable_foreign_keys=True)` turns foreign keys off while that migration runs, if they were on, and back on afterwards.

`migrate(conn, schema)` applies the migrations to a single connection.

### `MigrationPool`

`MigrationPool(uri, schema, options=None)` opens a `Pool` and migrates on a
background thread.

`Options` holds the following fields:

- `flags` and `pool_size`, passed on to the pool.
- `prepare_conn`, passed on to the pool.
- `on_start_migrate`, called after the application id is checked.
- `on_ready`, called after migrations have succeeded.
- `on_error`, called with errors that happen while opening or migrating.

| Method | What it does |
| --- | --- |
| `take(timeout=None)` / `get(timeout=None)` | Waits for migration to finish; then raises the migration's error, or hands out a connection |
| `put(conn)` | Returns a connection |
| `check_health()` | Raises `RuntimeError` if the pool is closed, not yet ready, or failed |
| `close()` | Closes the pool, interrupting a migration still in progress |

`MigrationPool` is a context manager that closes itself on exit.

## What this package does not do

- It is a library only. It has no command-line tool and no interactive shell.
- It works through the standard `sqlite3` module. It does not register custom SQL functions, virtual tables or other extensions; use `sqlite3` directly for those, for example in a `prepare_conn` callback.

## Running the tests

```
pip install -e ".[test]"
pytest
```