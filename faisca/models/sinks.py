from __future__ import annotations

import logging
import os
import shutil
import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Tuple, Union

from faisca.errors import (
    ColumnNotFoundError,
    FaiscaUserError,
    MissingPartitionValueError,
    StageExecutionError,
    UnsupportedFormatError,
)
from faisca.models.formats import partition_dirname, write_delta, write_file
from faisca.schema import FrictionlessSchema
from faisca.util import FORMATS, PART_EXTENSIONS, _as_str, _infer_type_from_uri, _is_probably_url

logger = logging.getLogger(__name__)

MODES = ("overwrite", "append")


@dataclass(frozen=True)
class WriteResult:
    record_count: int
    files: List[str] = field(default_factory=list)
    partitions: List[Dict[str, Any]] = field(default_factory=list)


@dataclass(frozen=True)
class Sink:
    """Where and how a dataset is written.

    `uri` is a directory: part files go below it, one `col=value` level per partition column.
    """
    uri: str
    type: Optional[str] = None
    mode: str = "overwrite"
    partition_by: Sequence[str] = ()
    options: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        uri = _as_str(self.uri)
        if not isinstance(uri, str) or not uri:
            raise FaiscaUserError(
                "E_SINK_URI",
                "Sink requires a non-empty location string.",
                hint="Example: Sink('out/clientes', type='parquet')",
            )
        object.__setattr__(self, "uri", uri)
        object.__setattr__(self, "partition_by", tuple(self.partition_by or ()))

        if _is_probably_url(uri):
            raise UnsupportedFormatError(
                "E_SINK_URI",
                f"Remote locations are not supported: '{uri}'.",
                hint="Write to a local directory and upload it afterwards.",
            )

        inferred = self.type or _infer_type_from_uri(uri)
        object.__setattr__(self, "type", inferred)
        if self.type is None:
            raise UnsupportedFormatError(
                "E_SINK_TYPE_INFER",
                f"Could not infer Sink type from uri='{uri}'.",
                hint="Provide type explicitly, e.g. Sink('out/data', type='parquet').",
            )
        if self.type not in FORMATS:
            raise UnsupportedFormatError(
                "E_SINK_TYPE_UNSUPPORTED",
                f"Sink type '{self.type}' is not supported.",
                hint="Supported sink types: " + ", ".join(FORMATS) + ".",
            )

        if self.mode not in MODES:
            raise FaiscaUserError(
                "E_SINK_MODE",
                f"Sink mode must be 'overwrite' or 'append', got {self.mode!r}.",
                hint="overwrite replaces the target partitions; append adds new part files.",
            )
        for c in self.partition_by:
            if not isinstance(c, str) or not c:
                raise FaiscaUserError(
                    "E_SINK_PARTITION_BY",
                    "Sink partition_by must be a list of column names.",
                    hint="Example: Sink('out/vendas', type='parquet', partition_by=['ano', 'mes'])",
                )

        # Fail fast: ensure the output location can be created before running the pipeline.
        if os.path.exists(uri) and not os.path.isdir(uri):
            raise FaiscaUserError(
                "E_SINK_NOT_DIRECTORY",
                f"Output location exists and is not a directory: '{uri}'.",
                hint="Sinks write a directory of part files; choose a directory path.",
            )
        parent = os.path.dirname(os.path.abspath(uri)) or "."
        if not os.path.isdir(parent):
            raise FaiscaUserError(
                "E_SINK_DIR_NOT_FOUND",
                f"Output directory does not exist: '{parent}'.",
                hint="Create the directory or choose a different output path.",
            )
        if not os.access(parent, os.W_OK):
            raise FaiscaUserError(
                "E_SINK_NOT_WRITABLE",
                f"Output directory is not writable: '{parent}'.",
                hint="Check permissions or choose a different output location.",
            )

    def _group(self, table) -> Tuple[List[str], Dict[Tuple[Any, ...], List[tuple]], int]:
        """Split the table into partition buckets of payload rows (partition columns removed)."""
        it = iter(table)
        try:
            header = list(next(it))
        except StopIteration:
            header = []
        for c in self.partition_by:
            if c not in header:
                raise ColumnNotFoundError(
                    c, op="sink", hint="partition_by columns must exist in the dataset: " + ", ".join(header)
                )

        pidx = [header.index(c) for c in self.partition_by]
        keep = [i for i, h in enumerate(header) if i not in pidx]
        payload_header = [header[i] for i in keep] if self.type != "delta" else header

        buckets: Dict[Tuple[Any, ...], List[tuple]] = {}
        count = 0
        for rownum, row in enumerate(it, start=1):
            key = []
            for c, i in zip(self.partition_by, pidx):
                v = row[i] if i < len(row) else None
                if v is None:
                    raise MissingPartitionValueError(c, row=rownum)
                key.append(v)
            payload = tuple(row) if self.type == "delta" else tuple(row[i] for i in keep)
            buckets.setdefault(tuple(key), []).append(payload)
            count += 1
        return payload_header, buckets, count

    def write(self, table, *, schema: Optional[FrictionlessSchema] = None) -> WriteResult:
        header, buckets, count = self._group(table)
        partitions = [dict(zip(self.partition_by, key)) for key in buckets if key]

        if self.type == "delta":
            rows = [r for bucket in buckets.values() for r in bucket]
            try:
                write_delta(self.uri, header, rows, mode=self.mode, partition_by=self.partition_by,
                            partitions=[k for k in buckets if k], schema=schema, options=self.options)
            except FaiscaUserError:
                raise
            except Exception as e:
                raise self._write_error(e) from e
            logger.info("wrote %d record(s) to delta table %s (mode=%s)", count, self.uri, self.mode)
            return WriteResult(record_count=count, files=[self.uri], partitions=partitions)

        token = uuid.uuid4().hex[:12]
        ext = PART_EXTENSIONS[self.type]
        new_files: List[str] = []
        targets: List[str] = []
        try:
            os.makedirs(self.uri, exist_ok=True)
            for n, (key, rows) in enumerate(buckets.items()):
                d = os.path.join(self.uri, *[partition_dirname(c, v) for c, v in zip(self.partition_by, key)])
                os.makedirs(d, exist_ok=True)
                targets.append(d)
                path = os.path.join(d, f"part-{n:05d}-{token}{ext}")
                new_files.append(path)
                write_file(path, self.type, header, rows, schema=schema, options=self.options)
        except Exception as e:
            self._discard(new_files)
            if isinstance(e, FaiscaUserError):
                raise
            raise self._write_error(e) from e

        try:
            if self.mode == "overwrite":
                self._remove_old(targets if self.partition_by else [self.uri], keep=set(new_files))
            with open(os.path.join(self.uri, "_SUCCESS"), "w", encoding="utf-8"):
                pass
        except OSError as e:
            raise self._write_error(e) from e

        logger.info("wrote %d record(s) in %d file(s) to %s (mode=%s)", count, len(new_files), self.uri, self.mode)
        return WriteResult(record_count=count, files=new_files, partitions=partitions)

    def _write_error(self, e: BaseException) -> StageExecutionError:
        code = "E_SINK_NOT_WRITABLE" if isinstance(e, PermissionError) else "E_SINK_WRITE"
        return StageExecutionError(
            "write",
            e,
            code=code,
            message=f"Could not write sink '{self.uri}': {type(e).__name__}: {e}",
            hint="Check file permissions and Sink options.",
        )

    @staticmethod
    def _discard(paths: List[str]) -> None:
        for p in paths:
            try:
                os.remove(p)
            except FileNotFoundError:
                pass

    @staticmethod
    def _remove_old(dirs: List[str], *, keep: set) -> None:
        """Delete everything in `dirs` except the files in `keep` (and the directories holding them)."""
        keep_dirs = {os.path.dirname(p) for p in keep}
        for d in dirs:
            for name in os.listdir(d):
                path = os.path.join(d, name)
                if path in keep:
                    continue
                if os.path.isdir(path):
                    if any(k == path or k.startswith(path + os.sep) for k in keep_dirs):
                        continue
                    shutil.rmtree(path)
                else:
                    os.remove(path)

    def __str__(self) -> str:
        parts = f"  partition_by={list(self.partition_by)}" if self.partition_by else ""
        return f'Sink("{self.uri}")  kind={self.type}  mode={self.mode}{parts}'


def write(dataset, spec: Union[Sink, str], schema: Optional[FrictionlessSchema] = None, **kwargs: Any) -> WriteResult:
    """Write `dataset` according to `spec` (a Sink, or a location plus Sink keyword arguments)."""
    sink = spec if isinstance(spec, Sink) else Sink(spec, **kwargs)
    return sink.write(dataset, schema=schema)