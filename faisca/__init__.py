import logging

from faisca.models.pipeline import Pipeline, RunResult, run
from faisca.models.sinks import Sink, WriteResult, write
from faisca.models.sources import Source, read
from faisca.models.transforms import Transform, apply
from faisca.errors import (
    ColumnNotFoundError,
    FaiscaUserError,
    MissingPartitionValueError,
    NotFoundError,
    SchemaMismatchError,
    StageExecutionError,
    UnsupportedFormatError,
)

logging.getLogger(__name__).addHandler(logging.NullHandler())

__all__ = [
    "Pipeline", "RunResult", "Sink", "Source", "Transform", "WriteResult",
    "read", "apply", "write", "run",
    "FaiscaUserError", "NotFoundError", "UnsupportedFormatError", "SchemaMismatchError",
    "ColumnNotFoundError", "MissingPartitionValueError", "StageExecutionError",
]
