import threading
import time
from pathlib import Path

import pytest

from sqlitetools.exec import ResultCode, SQLiteError, Statement, exec_legacy, execute
from sqlitetools.pool import OpenFlags, Pool, PoolClosedError, open_conn
from sqlitetools.query import result_int
from sqlitetools.savepoint import immediate_transaction

MEM_URI = "file::memory:?mode=memory&cache=shared"
MEM_FLAGS = OpenFlags.READWRITE | OpenFlags.CREATE | OpenFlags.URI | OpenFlags.SHAREDCACHE


def test_concurrent_inserts(tmp_path):
    pool = Pool(str(tmp_path / "pool.db"), pool_size=5)
    try:
        with pool.connection() as c:
            execute(c, "CREATE TABLE footable (col1 integer);")
        errors = []

        def worker():
            try:
                for _ in range(3):
                    with pool.connection() as c, immediate_transaction(c):
                        for i in range(20):
                            exec_legacy(c, "INSERT INTO footable (col1) VALUES (?);", None, i)
            except Exception as err:  # collected for the assertion below
                errors.append(err)

        threads = [threading.Thread(target=worker) for _ in range(5)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert errors == []
        with pool.connection() as c:
            assert result_int(Statement(c, "SELECT COUNT(*) FROM footable;")) == 300
    finally:
        pool.close()


def test_take_after_close():
    pool = Pool(MEM_URI, MEM_FLAGS, pool_size=20)
    pool.close()
    for _ in range(200):
        with pytest.raises(PoolClosedError):
            pool.take()


def test_close_twice():
    pool = Pool(MEM_URI, MEM_FLAGS, pool_size=2)
    pool.close()
    with pytest.raises(PoolClosedError):
        pool.close()


def test_put_mismatch():
    pool0 = Pool(MEM_URI, MEM_FLAGS, pool_size=20)
    pool1 = Pool(MEM_URI, MEM_FLAGS, pool_size=20)
    try:
        c = pool0.take()
        with pytest.raises(ValueError):
            pool1.put(c)
        pool0.put(c)
        with pytest.raises(ValueError):
            pool0.put(c)
    finally:
        pool0.close()
        pool1.close()


def test_put_none_is_noop():
    pool = Pool(MEM_URI, MEM_FLAGS, pool_size=1)
    try:
        pool.put(None)
        conn = pool.take(timeout=1)
        assert result_int(Statement(conn, "SELECT 7;")) == 7
        pool.put(conn)
    finally:
        pool.close()


def test_memory_uri_rejected():
    with pytest.raises(ValueError):
        Pool(":memory:")


def test_wal_close(tmp_path):
    db = tmp_path / "wal-close.db"
    wal = Path(str(db) + "-wal")
    pool = Pool(str(db), OpenFlags.READWRITE | OpenFlags.CREATE | OpenFlags.WAL, pool_size=10)
    conn = pool.take()
    assert wal.exists()
    execute(conn, "CREATE TABLE foo (id integer primary key);")
    pool.put(conn)
    pool.close()
    assert not wal.exists()


def test_prepare_conn(tmp_path):
    calls = []

    def prepare(conn):
        calls.append(conn)
        execute(conn, "PRAGMA foreign_keys = on;")

    pool = Pool(str(tmp_path / "foo.db"), pool_size=1, prepare_conn=prepare)
    try:
        with pool.connection() as conn:
            assert result_int(Statement(conn, "PRAGMA foreign_keys;")) == 1
        with pool.connection():
            pass
        assert len(calls) == 1
    finally:
        pool.close()


def test_prepare_conn_failure_is_retried(tmp_path):
    attempts = []

    def prepare(conn):
        attempts.append(conn)
        if len(attempts) == 1:
            raise RuntimeError("first attempt fails")

    pool = Pool(str(tmp_path / "retry.db"), pool_size=1, prepare_conn=prepare)
    try:
        with pytest.raises(RuntimeError):
            pool.take()
        conn = pool.take(timeout=1)
        assert len(attempts) == 2
        pool.put(conn)
    finally:
        pool.close()


def test_take_timeout():
    pool = Pool(MEM_URI, MEM_FLAGS, pool_size=1)
    try:
        conn = pool.take()
        with pytest.raises(TimeoutError):
            pool.take(timeout=0.05)
        pool.put(conn)
    finally:
        pool.close()


def test_close_waits_for_put():
    pool = Pool(MEM_URI, MEM_FLAGS, pool_size=1)
    conn = pool.take()
    returned = []

    def give_back():
        time.sleep(0.1)
        returned.append(True)
        pool.put(conn)

    t = threading.Thread(target=give_back)
    t.start()
    pool.close()
    t.join()
    assert returned == [True]
    with pytest.raises(PoolClosedError):
        pool.take(timeout=0.05)


def test_open_conn_shared_memory():
    uri = "file:sharedtest?mode=memory&cache=shared"
    a = open_conn(uri, MEM_FLAGS)
    b = open_conn(uri, MEM_FLAGS)
    try:
        execute(a, "CREATE TABLE t (c);")
        execute(a, "INSERT INTO t VALUES (1), (2);")
        assert result_int(Statement(b, "SELECT count(*) FROM t;")) == 2
    finally:
        a.close()
        b.close()


def test_open_conn_readonly(tmp_path):
    path = str(tmp_path / "ro.db")
    rw = open_conn(path, OpenFlags.READWRITE | OpenFlags.CREATE)
    execute(rw, "CREATE TABLE t (c);")
    rw.close()
    ro = open_conn(path, OpenFlags.READONLY)
    try:
        with pytest.raises(SQLiteError) as info:
            execute(ro, "INSERT INTO t VALUES (1);")
        assert info.value.code == ResultCode.READONLY
    finally:
        ro.close()


def test_open_conn_missing_without_create(tmp_path):
    with pytest.raises(SQLiteError) as info:
        open_conn(str(tmp_path / "missing.db"), OpenFlags.READWRITE)
    assert info.value.code == ResultCode.CANTOPEN