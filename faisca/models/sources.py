from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import petl as etl
import yaml
from frictionless import Detector, Resource
from petl.util.base import Table

from faisca.errors import (
    FaiscaUserError,
    NotFoundError,
    SchemaMismatchError,
    StageExecutionError,
    UnsupportedFormatError,
)
from faisca.models.formats import DeltaView, PartitionedDirView, read_file
from faisca.schema import (
    CoercionError,
    FrictionlessSchema,
    _normalize_inline_schema,
    converter_for,
    from_frictionless,
    infer_from_rows,
)
from faisca.util import FORMATS, _as_str, _infer_type_from_uri, _is_delta_dir, _is_probably_url

logger = logging.getLogger(__name__)


def _source_rows(source, uri: str):
    """Iterate `source`, reporting decoder and driver failures as read-stage errors."""
    try:
        for row in source:
            yield row
    except FaiscaUserError:
        raise
    except Exception as e:
        raise StageExecutionError(
            "read",
            e,
            code="E_SOURCE_READ",
            message=f"read stage failed: could not read '{uri}': {type(e).__name__}: {e}",
            hint="Check the file encoding and format options, or whether the file is corrupt.",
        ) from e


class SchemaView(Table):
    """Coerces the rows of `source` to `schema`.

    strict=True (explicit schema): output has exactly the schema columns in schema order,
    unparseable values and nulls in non-nullable columns raise SchemaMismatchError.
    strict=False (inferred schema): values that do not parse are passed through unchanged.
    """

    def __init__(self, source, schema: FrictionlessSchema, *, strict: bool, uri: str = ""):
        self.source = source
        self.schema = schema
        self.strict = strict
        self.uri = uri

    def __iter__(self):
        fields = self.schema.get("fields", [])
        names = [f["name"] for f in fields]
        it = _source_rows(self.source, self.uri)
        hdr = list(next(it, ()))
        if not hdr:
            # empty input, e.g. a sink directory holding only _SUCCESS
            yield tuple(names)
            return

        positions = []
        for f in fields:
            if f["name"] not in hdr:
                raise SchemaMismatchError(
                    f"Column '{f['name']}' is declared in the schema but missing from '{self.uri}'.",
                    column=f["name"],
                    hint="Available columns: " + ", ".join(map(str, hdr)),
                )
            positions.append((f["name"], hdr.index(f["name"]), converter_for(f.get("type", "any")),
                              f.get("nullable", True), f.get("type", "any")))

        yield tuple(names)
        for rownum, row in enumerate(it, start=1):
            out = []
            for name, i, conv, nullable, typ in positions:
                v = row[i] if i < len(row) else None
                try:
                    cv = conv(v)
                except CoercionError as e:
                    if self.strict:
                        raise SchemaMismatchError(
                            f"Row {rownum}: value {v!r} in column '{name}' is not a valid {typ}.",
                            column=name,
                            row=rownum,
                            hint="Fix the data, or declare the column as 'string' and cast it later "
                                 "with Transform('cast', params={..., 'on_error': 'null'}).",
                        ) from e
                    cv = v
                if cv is None and not nullable:
                    raise SchemaMismatchError(
                        f"Row {rownum}: column '{name}' is not nullable but the value is missing.",
                        column=name,
                        row=rownum,
                    )
                out.append(cv)
            yield tuple(out)


def _load_schema_ref(ref: str) -> Dict[str, Any]:
    p = Path(ref)
    if not p.exists():
        raise NotFoundError(ref, code="E_SCHEMA_REF_NOT_FOUND", hint="schema= expects a YAML/JSON schema file path.")
    try:
        data = yaml.safe_load(p.read_text(encoding="utf-8"))
    except yaml.YAMLError as e:
        raise FaiscaUserError(
            "E_SCHEMA_REF_PARSE",
            f"Could not parse schema file '{ref}': {e}",
            hint="The file must hold a mapping like {fields: [{name: age, type: integer}]}.",
        ) from e
    return _normalize_inline_schema(data)


@dataclass(frozen=True)
class Source:
    uri: str
    type: Optional[str] = None
    schema: Optional[Union[str, FrictionlessSchema]] = None
    options: Dict[str, Any] = field(default_factory=dict)

    # --- UX controls (bounded by design) ---
    preview_rows: int = 5
    preview_max_chars: int = 6_000  # prevent huge terminal spam

    _inferred_schema: Optional[Dict[str, Any]] = field(default=None, init=False, repr=False)
    _schema_warnings: List[str] = field(default_factory=list, init=False, repr=False)

    def __post_init__(self) -> None:
        uri = _as_str(self.uri)
        if not isinstance(uri, str) or not uri:
            raise FaiscaUserError(
                "E_SOURCE_URI",
                "Source requires a non-empty location string.",
                hint="Example: Source('clientes.csv')",
            )
        object.__setattr__(self, "uri", uri)

        if _is_probably_url(uri):
            raise UnsupportedFormatError(
                "E_SOURCE_URI",
                f"Remote locations are not supported: '{uri}'.",
                hint="Download the data first and point Source at the local copy.",
            )

        # Fail fast: missing inputs are reported before any pipeline work.
        if not os.path.exists(uri):
            raise NotFoundError(uri)

        inferred = self.type or _infer_type_from_uri(uri)
        object.__setattr__(self, "type", inferred)

        if self.type is None:
            raise UnsupportedFormatError(
                "E_SOURCE_TYPE_INFER",
                f"Could not infer Source type from uri='{uri}'.",
                hint="Provide type explicitly, e.g. Source('data.txt', type='csv').",
            )

        if self.type not in FORMATS:
            raise UnsupportedFormatError(
                "E_SOURCE_TYPE_UNSUPPORTED",
                f"Source type '{self.type}' is not supported.",
                hint="Supported source types: " + ", ".join(FORMATS) + ".",
            )

        if self.type == "delta" and not _is_delta_dir(uri):
            raise NotFoundError(uri, hint="A delta table is a directory containing a _delta_log folder.")

        if isinstance(self.schema, dict):
            object.__setattr__(self, "schema", _normalize_inline_schema(self.schema))

    @property
    def is_directory(self) -> bool:
        return os.path.isdir(self.uri)

    # ---------- PETL tables (lazy) ----------
    def raw_table(self):
        """The table as stored, without schema coercion."""
        if not os.path.exists(self.uri):
            raise NotFoundError(self.uri)
        if self.type == "delta":
            return DeltaView(self.uri)
        if self.is_directory:
            return PartitionedDirView(self.uri, self.type, self.options)
        return read_file(self.uri, self.type, self.options)

    def table(self):
        """
        Return a PETL table coerced to the declared (or inferred) schema.
        PETL is lazy: reading occurs on iteration.
        """
        sch = self.resolved_schema()
        return SchemaView(self.raw_table(), sch, strict=self.schema is not None, uri=self.uri)

    def resolved_schema(self) -> FrictionlessSchema:
        if isinstance(self.schema, str):
            return _load_schema_ref(self.schema)
        if isinstance(self.schema, dict):
            return self.schema
        return self.peek_schema()

    # ---------- Peepholes / inspection ----------
    def head(self, n: Optional[int] = None):
        n = n or self.preview_rows
        return etl.head(self.table(), n)

    def _preview_str(self) -> str:
        """
        Bounded preview string. Does NOT load full dataset.
        """
        t = self.head(self.preview_rows)
        s = str(etl.look(t))
        if len(s) > self.preview_max_chars:
            s = s[: self.preview_max_chars] + "\n… (truncated)"
        return s

    def _text_columns(self, header: List[str]) -> List[str]:
        if self.type == "csv":
            return header
        # partition values recovered from directory names are always text
        if self.is_directory and self.type != "delta":
            files = PartitionedDirView(self.uri, self.type, self.options)._files()
            return sorted({c for _, parts in files for c, _ in parts})
        return []

    def peek_schema(self, *, sample_rows: int = 200, force: bool = False) -> Dict[str, Any]:
        """Infer a schema from a bounded sample.

        - Never loads full data.
        - Uses Frictionless for single csv files, Python value types otherwise.
        - Caches the inferred schema on the Source instance.
        """
        if self._inferred_schema is not None and not force:
            return self._inferred_schema

        warnings: List[str] = []

        # If user provided a schema, prefer it (it is authoritative)
        if self.schema is not None:
            sch = self.resolved_schema()
            object.__setattr__(self, "_inferred_schema", sch)
            object.__setattr__(self, "_schema_warnings", warnings)
            return sch

        sch = None
        if self.type == "csv" and not self.is_directory and not self.options:
            try:
                detector = Detector(sample_size=sample_rows)
                resource = Resource(path=self.uri, detector=detector)
                resource.infer()
                desc = resource.to_descriptor()
                sch = from_frictionless(desc.get("schema") or {"fields": []})
                if not sch["fields"]:
                    sch = None
            except Exception as e:
                # frictionless is picky about dialects; the sampler below still works
                warnings.append(f"Frictionless inference failed, sampling instead: {e}")
                sch = None

        if sch is None:
            sample = etl.data(etl.head(self.raw_table(), sample_rows))
            try:
                header = list(etl.header(self.raw_table()))
            except StopIteration:
                header = []
            sch = infer_from_rows(header, sample, text_columns=self._text_columns(header))

        fields = sch.get("fields", [])
        if not fields:
            warnings.append("No fields inferred; the file may be empty or unreadable with current options.")
        for f in fields:
            if f.get("type") == "any":
                warnings.append(f"Column '{f['name']}' had only nulls in the sample; its type is unknown.")

        if warnings:
            logger.warning("schema inference for %s: %s", self.uri, "; ".join(warnings))
        object.__setattr__(self, "_inferred_schema", sch)
        object.__setattr__(self, "_schema_warnings", warnings)
        return sch

    def schema_warnings(self) -> List[str]:
        """Warnings produced during the last schema inference pass."""
        return list(self._schema_warnings)

    def __str__(self) -> str:
        kind = self.type or "unknown"
        hdr = f'Source("{self.uri}")  kind={kind}'
        if self.schema is None:
            sch = "  schema=(none; inferred from a sample)"
        elif isinstance(self.schema, str):
            sch = f"  schema_ref={self.schema}"
        else:
            sch = "  schema=(inline)"

        inferred = self._inferred_schema
        if inferred is not None and self.schema is None:
            pairs = [f"{f['name']}:{f.get('type', 'any')}" for f in inferred.get("fields", [])]
            if pairs:
                sch += "  inferred={" + ", ".join(pairs[:8])
                if len(pairs) > 8:
                    sch += ", …"
                sch += "}"
            if self._schema_warnings:
                sch += "  warnings=" + str(len(self._schema_warnings))
        return hdr + sch + "\nPreview:\n" + self._preview_str()

    # ---------- Pipeline composition ----------
    def __gt__(self, other: Any) -> "Pipeline":
        """
        Source > Transform or Source > Sink creates a Pipeline.
        (Do NOT encourage chained a > b > c in one expression; Python chains comparisons.)
        """
        from faisca.models.pipeline import Pipeline

        return Pipeline(self).then(other)


def read(location: Union[str, os.PathLike], format: Optional[str] = None,
         schema: Optional[Union[str, FrictionlessSchema]] = None, **options: Any):
    """Open `location` as a lazy dataset, coerced to `schema` (or an inferred one)."""
    return Source(location, type=format, schema=schema, options=options).table()
