"""Read the single value produced by a statement."""

from __future__ import annotations

from typing import Any

from sqlitetools.exec import ResultCode, SQLiteError, Statement

__all__ = [
    "NoResultsError",
    "MultipleResultsError",
    "result_bool",
    "result_int",
    "result_text",
    "result_float",
    "result_bytes",
]


class NoResultsError(SQLiteError):
    """The statement produced no rows."""

    def __init__(self) -> None:
        super().__init__(ResultCode.ERROR, "sqlite: statement has no results")


class MultipleResultsError(SQLiteError):
    """The statement produced more than one row."""

    def __init__(self) -> None:
        super().__init__(ResultCode.ERROR, "sqlite: statement has multiple result rows")


def _single_value(stmt: Statement) -> Any:
    rows = stmt.rows()
    try:
        try:
            first = next(rows)
        except StopIteration:
            raise NoResultsError() from None
        try:
            next(rows)
        except StopIteration:
            return first[0]
        raise MultipleResultsError()
    finally:
        rows.close()


def _to_float(value: Any) -> float:
    if value is None:
        return 0.0
    if isinstance(value, bytes):
        value = value.decode("utf-8", errors="replace")
    try:
        return float(value)
    except (TypeError, ValueError):
        return 0.0


def result_int(stmt: Statement) -> int:
    """First column of the only row, as an integer."""
    value = _single_value(stmt)
    if isinstance(value, int):
        return value
    return int(_to_float(value))


def result_bool(stmt: Statement) -> bool:
    """Whether the first column of the only row is non-zero."""
    return result_int(stmt) != 0


def result_float(stmt: Statement) -> float:
    """First column of the only row, as a float."""
    return _to_float(_single_value(stmt))


def result_text(stmt: Statement) -> str:
    """First column of the only row, as text."""
    value = _single_value(stmt)
    if value is None:
        return ""
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace")
    return str(value)


def result_bytes(stmt: Statement) -> bytes:
    """First column of the only row, as bytes."""
    value = _single_value(stmt)
    if value is None:
        return b""
    if isinstance(value, bytes):
        return value
    return str(value).encode("utf-8")