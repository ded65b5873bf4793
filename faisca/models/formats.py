"""Per-format readers and writers.

Readers return lazy PETL tables: nothing is opened until the table is iterated,
and every file handle is closed when iteration ends (or is abandoned).
Writers take a PETL table and a single destination file (or table directory for delta).
"""
from __future__ import annotations

import logging
import os
from typing import Any, Dict, List, Optional, Sequence, Tuple
from urllib.parse import quote, unquote

import petl as etl
import pyarrow as pa
import pyarrow.orc as orc
import pyarrow.parquet as pq
from petl.util.base import Table

from faisca.errors import UnsupportedFormatError
from faisca.schema import FrictionlessSchema
from faisca.util import PART_EXTENSIONS, _is_hidden

logger = logging.getLogger(__name__)

ARROW_TYPES = {
    "integer": pa.int64(),
    "number": pa.float64(),
    "string": pa.string(),
    "boolean": pa.bool_(),
    "datetime": pa.timestamp("us"),
    "date": pa.date32(),
}

_READ_EXTENSIONS = {
    "csv": (".csv",),
    "json": (".json", ".jsonl"),
    "parquet": (".parquet",),
    "avro": (".avro",),
    "orc": (".orc",),
}


# ---------------- arrow-backed views ----------------

class ArrowFileView(Table):
    """Rows of a parquet or orc file, read batch by batch."""

    def __init__(self, path: str, fmt: str, batch_size: int = 10_000):
        self.path = path
        self.fmt = fmt
        self.batch_size = batch_size

    def __iter__(self):
        with open(self.path, "rb") as fh:
            if self.fmt == "parquet":
                pf = pq.ParquetFile(fh)
                names = pf.schema_arrow.names
                batches = pf.iter_batches(batch_size=self.batch_size)
            else:
                tbl = orc.ORCFile(fh).read()
                names = tbl.column_names
                batches = tbl.to_batches(max_chunksize=self.batch_size)
            yield tuple(names)
            for batch in batches:
                cols = [batch.column(i).to_pylist() for i in range(batch.num_columns)]
                for row in zip(*cols):
                    yield row


class DeltaView(Table):
    def __init__(self, uri: str):
        self.uri = uri

    def __iter__(self):
        from deltalake import DeltaTable

        tbl = DeltaTable(self.uri).to_pyarrow_table()
        yield tuple(tbl.column_names)
        for batch in tbl.to_batches():
            cols = [batch.column(i).to_pylist() for i in range(batch.num_columns)]
            for row in zip(*cols):
                yield row


def read_file(path: str, fmt: str, options: Optional[Dict[str, Any]] = None):
    """Lazy PETL table over one file."""
    options = dict(options or {})
    if fmt == "csv":
        # Spark reads empty csv fields as null
        return etl.replaceall(etl.fromcsv(path, **options), "", None)
    if fmt == "json":
        if path.endswith(".jsonl"):
            options.setdefault("lines", True)
        return etl.fromjson(path, **options)
    if fmt == "avro":
        return etl.fromavro(path, **options)
    if fmt in ("parquet", "orc"):
        return ArrowFileView(path, fmt, **options)
    raise UnsupportedFormatError(
        "E_SOURCE_TYPE_UNSUPPORTED",
        f"Format {fmt!r} cannot be read from a single file.",
        hint="Supported file formats: " + ", ".join(_READ_EXTENSIONS) + ".",
    )


# ---------------- hive-style partition directories ----------------

def partition_dirname(column: str, value: Any) -> str:
    return f"{column}={quote(str(value), safe='')}"


def parse_partition_dir(name: str) -> Optional[Tuple[str, str]]:
    if "=" not in name:
        return None
    col, _, val = name.partition("=")
    if not col:
        return None
    return col, unquote(val)


def list_part_files(root: str, fmt: str) -> List[Tuple[str, List[Tuple[str, str]]]]:
    """All data files below `root` with the partition (column, value) pairs from their path.

    Hidden entries (``_SUCCESS``, ``.crc``...) are skipped. Order is deterministic.
    """
    exts = _READ_EXTENSIONS.get(fmt, ())
    out: List[Tuple[str, List[Tuple[str, str]]]] = []
    for dirpath, dirnames, filenames in os.walk(root):
        dirnames[:] = sorted(d for d in dirnames if not _is_hidden(d))
        rel = os.path.relpath(dirpath, root)
        parts: List[Tuple[str, str]] = []
        if rel != ".":
            for seg in rel.split(os.sep):
                kv = parse_partition_dir(seg)
                if kv is not None:
                    parts.append(kv)
        for fn in sorted(filenames):
            if _is_hidden(fn) or not fn.endswith(exts):
                continue
            out.append((os.path.join(dirpath, fn), parts))
    return out


class PartitionedDirView(Table):
    """Concatenates the part files of a directory, appending partition columns from the path.

    The header is the union of the file headers, in order of appearance; a file lacking
    a column yields None for it.
    """

    def __init__(self, root: str, fmt: str, options: Optional[Dict[str, Any]] = None):
        self.root = root
        self.fmt = fmt
        self.options = dict(options or {})

    def _files(self):
        return list_part_files(self.root, self.fmt)

    def _headers(self):
        out = []
        for path, parts in self._files():
            try:
                hdr = list(etl.header(read_file(path, self.fmt, self.options)))
            except StopIteration:
                hdr = []
            out.append((path, hdr, dict(parts)))
        return out

    def __iter__(self):
        files = self._headers()
        header: List[str] = []
        part_cols: List[str] = []
        for _, _, parts in files:
            for col in parts:
                if col not in part_cols:
                    part_cols.append(col)
        for _, hdr, _ in files:
            for h in hdr:
                if h not in header and h not in part_cols:
                    header.append(h)

        yield tuple(header + part_cols)
        # one file open at a time
        for path, hdr, parts in files:
            idx = {h: i for i, h in enumerate(hdr)}
            it = iter(read_file(path, self.fmt, self.options))
            next(it, None)
            for row in it:
                out = []
                for name in header:
                    i = idx.get(name)
                    out.append(row[i] if i is not None and i < len(row) else None)
                for name in part_cols:
                    out.append(parts.get(name))
                yield tuple(out)


# ---------------- writers ----------------

def arrow_schema(schema: Optional[FrictionlessSchema], names: Sequence[str]) -> Optional[pa.Schema]:
    """Arrow schema for `names` when every column has a concrete type, else None (let arrow infer)."""
    if not schema:
        return None
    types = {f["name"]: f.get("type", "any") for f in schema.get("fields", [])}
    fields = []
    for n in names:
        at = ARROW_TYPES.get(types.get(n, "any"))
        if at is None:
            return None
        fields.append(pa.field(n, at))
    return pa.schema(fields)


def to_arrow(header: Sequence[str], rows: Sequence[Sequence[Any]],
             schema: Optional[FrictionlessSchema] = None) -> pa.Table:
    names = list(header)
    columns = [list(col) for col in zip(*rows)] if rows else [[] for _ in names]
    sch = arrow_schema(schema, names)
    if sch is not None:
        return pa.Table.from_arrays([pa.array(c, type=f.type) for c, f in zip(columns, sch)], schema=sch)
    arrays = []
    for c in columns:
        arr = pa.array(c)
        if pa.types.is_null(arr.type):
            # all-null column: orc and delta have no null type
            arr = pa.array(c, type=pa.string())
        arrays.append(arr)
    return pa.Table.from_arrays(arrays, names=names)


def write_file(path: str, fmt: str, header: Sequence[str], rows: List[Tuple[Any, ...]],
               *, schema: Optional[FrictionlessSchema] = None,
               options: Optional[Dict[str, Any]] = None) -> None:
    options = dict(options or {})
    if fmt in ("csv", "json", "avro"):
        table = etl.wrap([tuple(header)] + rows)
        if fmt == "csv":
            etl.tocsv(table, path, **options)
        elif fmt == "json":
            options.setdefault("default", str)
            etl.tojson(table, path, **options)
        else:
            etl.toavro(table, path, **options)
    elif fmt == "parquet":
        pq.write_table(to_arrow(header, rows, schema), path, **options)
    elif fmt == "orc":
        orc.write_table(to_arrow(header, rows, schema), path, **options)
    else:
        raise UnsupportedFormatError(
            "E_SINK_TYPE_UNSUPPORTED",
            f"Format {fmt!r} cannot be written as a part file.",
            hint="Supported part-file formats: " + ", ".join(PART_EXTENSIONS) + ".",
        )
    logger.debug("wrote %d row(s) to %s", len(rows), path)


def _sql_literal(v: Any) -> str:
    if isinstance(v, bool):
        return "true" if v else "false"
    if isinstance(v, (int, float)):
        return str(v)
    return "'" + str(v).replace("'", "''") + "'"


def write_delta(uri: str, header: Sequence[str], rows: List[Tuple[Any, ...]], *, mode: str,
                partition_by: Sequence[str], partitions: Sequence[Tuple[Any, ...]],
                schema: Optional[FrictionlessSchema] = None,
                options: Optional[Dict[str, Any]] = None) -> None:
    """Write through the delta transaction log; partitioned overwrite replaces only `partitions`."""
    from deltalake import write_deltalake

    options = dict(options or {})
    data = to_arrow(header, rows, schema)
    kwargs: Dict[str, Any] = {"mode": mode}
    if partition_by:
        kwargs["partition_by"] = list(partition_by)
        if mode == "overwrite" and partitions and os.path.isdir(os.path.join(uri, "_delta_log")):
            clauses = [
                "(" + " AND ".join(f"{c} = {_sql_literal(v)}" for c, v in zip(partition_by, key)) + ")"
                for key in partitions
            ]
            kwargs["predicate"] = " OR ".join(clauses)
    kwargs.update(options)
    write_deltalake(uri, data, **kwargs)
    logger.debug("wrote %d row(s) to delta table %s", len(rows), uri)
