"""Insert rows keyed by a random identifier."""

from __future__ import annotations

import secrets

from sqlitetools.exec import ResultCode, SQLiteError, Statement, error_code

__all__ = ["insert_rand_id"]

_MAX_RETRIES = 100


def insert_rand_id(stmt: Statement, param: str, min_value: int, max_value: int) -> int:
    """Run ``stmt`` with a random id in ``[min_value, max_value)`` bound to ``param``.

    Primary key collisions are retried with a fresh id, up to a limit.
    Returns the id that was inserted.
    """
    if min_value < 0:
        raise ValueError(f"sqlitetools.insert_rand_id: min ({min_value}) is negative")
    if max_value <= min_value:
        raise ValueError(
            f"sqlitetools.insert_rand_id: empty range [{min_value}, {max_value})"
        )
    attempt = 0
    while True:
        new_id = secrets.randbelow(max_value - min_value) + min_value
        stmt.bind(param, new_id)
        try:
            for _ in stmt.rows():
                pass
        except SQLiteError as err:
            code = error_code(err)
            if attempt >= _MAX_RETRIES or code != ResultCode.CONSTRAINT_PRIMARYKEY:
                raise SQLiteError(code, f"sqlitetools.insert_rand_id: {err}") from err
            attempt += 1
            continue
        return new_id