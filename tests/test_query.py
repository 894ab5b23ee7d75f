import sqlite3

import pytest

from sqlitetools.exec import ResultCode, Statement, execute_script
from sqlitetools.query import (
    MultipleResultsError,
    NoResultsError,
    result_bool,
    result_bytes,
    result_float,
    result_int,
    result_text,
)


@pytest.fixture
def conn():
    c = sqlite3.connect(":memory:", isolation_level=None)
    execute_script(c, """
CREATE TABLE foo (
    id integer not null primary key
);
INSERT INTO foo VALUES (1), (2);""")
    yield c
    c.close()


@pytest.fixture
def blob_conn():
    c = sqlite3.connect(":memory:", isolation_level=None)
    execute_script(c, """
CREATE TABLE foo (
    id integer not null primary key,
    my_blob blob
);
INSERT INTO foo VALUES (1, CAST('hi' AS BLOB)), (2, CAST('bye' AS BLOB));""")
    yield c
    c.close()


def test_result_int_single(conn):
    assert result_int(Statement(conn, "SELECT 42;")) == 42


def test_result_int_multiple(conn):
    with pytest.raises(MultipleResultsError) as info:
        result_int(Statement(conn, "SELECT id FROM foo;"))
    assert info.value.code == ResultCode.ERROR


def test_result_int_no_rows(conn):
    with pytest.raises(NoResultsError):
        result_int(Statement(conn, "SELECT id FROM foo WHERE id > 3;"))


def test_result_bool_false(conn):
    assert result_bool(Statement(conn, "SELECT false;")) is False


def test_result_bool_true(conn):
    assert result_bool(Statement(conn, "SELECT true;")) is True


def test_result_bool_multiple(conn):
    with pytest.raises(MultipleResultsError):
        result_bool(Statement(conn, "SELECT id = 1 FROM foo;"))


def test_result_bool_no_rows(conn):
    with pytest.raises(NoResultsError):
        result_bool(Statement(conn, "SELECT id = 1 FROM foo WHERE id > 3;"))


def test_result_text_single(blob_conn):
    assert result_text(Statement(blob_conn, "SELECT my_blob FROM foo WHERE id = 1;")) == "hi"


def test_result_text_multiple(blob_conn):
    with pytest.raises(MultipleResultsError):
        result_text(Statement(blob_conn, "SELECT my_blob FROM foo;"))


def test_result_text_no_rows(blob_conn):
    with pytest.raises(NoResultsError):
        result_text(Statement(blob_conn, "SELECT my_blob FROM foo WHERE id = 3;"))


def test_result_float_single(conn):
    assert result_float(Statement(conn, "SELECT 42;")) == 42.0


def test_result_float_multiple(conn):
    with pytest.raises(MultipleResultsError):
        result_float(Statement(conn, "SELECT id FROM foo;"))


def test_result_float_no_rows(conn):
    with pytest.raises(NoResultsError):
        result_float(Statement(conn, "SELECT id FROM foo WHERE id > 3;"))


def test_result_bytes_single(blob_conn):
    assert result_bytes(Statement(blob_conn, "SELECT my_blob FROM foo WHERE id = 1;")) == b"hi"


def test_result_bytes_multiple(blob_conn):
    with pytest.raises(MultipleResultsError):
        result_bytes(Statement(blob_conn, "SELECT my_blob FROM foo;"))


def test_result_bytes_no_rows(blob_conn):
    with pytest.raises(NoResultsError):
        result_bytes(Statement(blob_conn, "SELECT my_blob FROM foo WHERE id = 3;"))


def test_result_statement_reusable(conn):
    stmt = Statement(conn, "SELECT count(*) FROM foo WHERE id >= :min;")
    stmt.bind(":min", 2)
    assert result_int(stmt) == 1
    stmt.bind(":min", 1)
    assert result_int(stmt) == 2