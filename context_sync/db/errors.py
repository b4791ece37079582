from __future__ import annotations

SQLSTATE_ERROR_CODES: dict[str, tuple[str, bool]] = {
    "23505": ("unique_violation", False),
    "23503": ("foreign_key_violation", False),
    "40P01": ("deadlock_detected", True),
    "40001": ("serialization_failure", True),
    "57014": ("query_canceled", True),
}

# a retry cannot fix bad data or a broken constraint
SQLSTATE_CLASS_ERROR_CODES: dict[str, tuple[str, bool]] = {
    "22": ("data_exception", False),
    "23": ("integrity_violation", False),
}


class DatabaseOperationError(RuntimeError):
    def __init__(self, *, error_code: str, sqlstate: str | None, retryable: bool) -> None:
        super().__init__(error_code)
        self.error_code = error_code
        self.sqlstate = sqlstate
        self.retryable = retryable


def map_sqlstate(sqlstate: str | None) -> tuple[str, bool]:
    if sqlstate is None:
        return "database_error", True
    if sqlstate in SQLSTATE_ERROR_CODES:
        return SQLSTATE_ERROR_CODES[sqlstate]
    return SQLSTATE_CLASS_ERROR_CODES.get(sqlstate[:2], ("database_error", True))
