import sqlite3

import pytest

from sqlitetools.exec import ResultCode, SQLiteError, Statement, exec_legacy, execute
from sqlitetools.query import result_int
from sqlitetools.savepoint import (
    exclusive_transaction,
    immediate_transaction,
    save,
    transaction,
)


class NoSuccess(Exception):
    pass


@pytest.fixture
def conn():
    c = sqlite3.connect(":memory:", isolation_level=None)
    execute(c, "CREATE TABLE t (c1);")
    yield c
    c.close()


def count(c, table="t"):
    return result_int(Statement(c, f"SELECT count(*) FROM {table};"))


def insert(c, scope, succeed):
    with scope(c):
        execute(c, "INSERT INTO t VALUES ('hello');")
        if not succeed:
            raise NoSuccess()


@pytest.mark.parametrize(
    "scope", [save, transaction, immediate_transaction, exclusive_transaction]
)
def test_commit_and_rollback(conn, scope):
    insert(conn, scope, True)
    assert count(conn) == 1
    insert(conn, scope, True)
    assert count(conn) == 2
    with pytest.raises(NoSuccess):
        insert(conn, scope, False)
    assert count(conn) == 2
    assert conn.in_transaction is False


def test_save_rolls_back_on_sql_error(conn):
    execute(conn, "INSERT INTO t VALUES ('one');")
    with pytest.raises(SQLiteError) as info:
        with save(conn):
            execute(conn, "INSERT INTO t VALUES ('hello');")
            execute(conn, "SELECT bad query")
    assert "sqlite" in str(info.value)
    assert count(conn) == 1


def test_save_release_ends_transaction(tmp_path):
    path = tmp_path / "release.db"
    conn1 = sqlite3.connect(path, isolation_level=None)
    conn2 = sqlite3.connect(path, isolation_level=None)
    try:
        execute(conn1, "CREATE TABLE t (c1);")
        insert(conn1, save, True)
        assert count(conn2) == 1
        with pytest.raises(NoSuccess):
            insert(conn1, save, False)
        assert conn1.in_transaction is False
        assert count(conn2) == 1
    finally:
        conn1.close()
        conn2.close()


def test_nested_saves(conn):
    with save(conn):
        execute(conn, "INSERT INTO t VALUES (1);")
        with pytest.raises(NoSuccess):
            with save(conn):
                execute(conn, "INSERT INTO t VALUES (2);")
                raise NoSuccess()
        assert count(conn) == 1
    assert count(conn) == 1
    assert conn.in_transaction is False


def test_save_invalid_name(conn):
    with pytest.raises(ValueError):
        save(conn, 'bad"name')


def test_custom_name(conn):
    with save(conn, "my.savepoint"):
        execute(conn, "INSERT INTO t VALUES (1);")
        assert conn.in_transaction is True
    assert count(conn) == 1


def test_user_rollback_inside_save(conn):
    with save(conn):
        execute(conn, "INSERT INTO t VALUES (1);")
        execute(conn, "ROLLBACK;")
    assert count(conn) == 0
    assert conn.in_transaction is False


def test_user_commit_then_error(conn):
    with pytest.raises(NoSuccess):
        with transaction(conn):
            execute(conn, "INSERT INTO t VALUES (1);")
            execute(conn, "COMMIT;")
            raise NoSuccess()
    assert count(conn) == 1


def test_transaction_inside_transaction(conn):
    with transaction(conn):
        execute(conn, "INSERT INTO t VALUES (1);")
        with pytest.raises(SQLiteError) as info:
            with transaction(conn):
                pass
        assert info.value.code == ResultCode.ERROR
    assert count(conn) == 1


def test_immediate_transaction_locks(tmp_path):
    path = tmp_path / "immediate.db"
    conn1 = sqlite3.connect(path, isolation_level=None)
    conn2 = sqlite3.connect(path, timeout=0, isolation_level=None)
    try:
        execute(conn1, "CREATE TABLE t (c1);")
        with immediate_transaction(conn1):
            with pytest.raises(SQLiteError) as info:
                execute(conn2, "BEGIN IMMEDIATE;")
            assert info.value.code == ResultCode.BUSY
    finally:
        conn1.close()
        conn2.close()


def test_busy_snapshot(tmp_path):
    path = tmp_path / "busysnapshot.db"
    conn0 = sqlite3.connect(path, isolation_level=None)
    conn1 = sqlite3.connect(path, isolation_level=None)
    try:
        execute(conn0, "PRAGMA journal_mode = wal;")
        execute(conn0, "CREATE TABLE t (c, b BLOB);")
        execute(conn0, "INSERT INTO t (c, b) VALUES (4, 'hi');")
        with pytest.raises(SQLiteError) as info:
            with save(conn0):
                c = result_int(Statement(conn0, "SELECT count(*) FROM t WHERE c > 3;"))
                exec_legacy(conn1, "INSERT INTO t (c) VALUES (4);", None)
                stmt = Statement(conn0, "UPDATE t SET c = $c WHERE c = 4;")
                stmt.bind("$c", c)
                list(stmt.rows())
        assert info.value.code == ResultCode.BUSY_SNAPSHOT
        assert conn0.in_transaction is False
    finally:
        conn0.close()
        conn1.close()