from __future__ import annotations

from typing import Optional


class FaiscaUserError(Exception):
    """An instructional error intended for end users.

    Use this for mistakes in the pipeline definition (invalid params, missing columns, etc.).
    It carries a short error code and an optional hint to guide the user.
    """

    default_code = "E_USER"

    def __init__(self, code: Optional[str], message: str, *, hint: Optional[str] = None):
        super().__init__(message)
        self.code = code or self.default_code
        self.message = message
        self.hint = hint

    def __str__(self) -> str:
        base = f"[{self.code}] {self.message}"
        if self.hint:
            return base + f"\nHint: {self.hint}"
        return base


class NotFoundError(FaiscaUserError):
    """The input location does not exist or cannot be reached."""

    default_code = "E_SOURCE_NOT_FOUND"

    def __init__(self, location: str, *, code: Optional[str] = None, hint: Optional[str] = None):
        super().__init__(
            code,
            f"Input location not found: '{location}'.",
            hint=hint or "Check the path, or create the file before running the pipeline.",
        )
        self.location = location


class UnsupportedFormatError(FaiscaUserError):
    default_code = "E_FORMAT_UNSUPPORTED"


class SchemaMismatchError(FaiscaUserError):
    """A source value cannot be represented as its declared schema type."""

    default_code = "E_SCHEMA_MISMATCH"

    def __init__(
        self,
        message: str,
        *,
        column: Optional[str] = None,
        row: Optional[int] = None,
        code: Optional[str] = None,
        hint: Optional[str] = None,
    ):
        super().__init__(code, message, hint=hint)
        self.column = column
        self.row = row


class ColumnNotFoundError(FaiscaUserError):
    """A transform (or sink) refers to a column the dataset does not have.

    `index` is the position of the offending op in the transform list, when known.
    """

    default_code = "E_COLUMN_NOT_FOUND"

    def __init__(
        self,
        column: str,
        *,
        op: Optional[str] = None,
        index: Optional[int] = None,
        hint: Optional[str] = None,
    ):
        where = ""
        if op is not None:
            where = f" in '{op}'"
            if index is not None:
                where += f" (step #{index})"
        super().__init__(None, f"Unknown column {column!r}{where}.", hint=hint)
        self.column = column
        self.op = op
        self.index = index


class MissingPartitionValueError(FaiscaUserError):
    default_code = "E_SINK_PARTITION_VALUE"

    def __init__(self, column: str, *, row: Optional[int] = None):
        at = f" at row {row}" if row is not None else ""
        super().__init__(
            None,
            f"Record{at} has no value for partition column '{column}'.",
            hint="Fill the column first, e.g. Transform('coalesce', params={'column': ..., 'fallbacks': [...]}).",
        )
        self.column = column
        self.row = row


class StageExecutionError(FaiscaUserError):
    """Wraps a failure with the pipeline stage (read, transform, write) it happened in."""

    def __init__(
        self,
        stage: str,
        cause: BaseException,
        *,
        code: Optional[str] = None,
        message: Optional[str] = None,
        hint: Optional[str] = None,
    ):
        if message is None:
            message = f"{stage} stage failed: {type(cause).__name__}: {cause}"
        super().__init__(code or f"E_STAGE_{stage.upper()}", message, hint=hint)
        self.stage = stage
        self.cause = cause
