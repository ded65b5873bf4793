from __future__ import annotations

import difflib
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, Tuple, Type

import petl as etl
from petl.util.base import Table

from faisca.errors import ColumnNotFoundError, FaiscaUserError, StageExecutionError
from faisca.expr import Expression
from faisca.models.context import PipelineContext
from faisca.schema import CONVERTERS, CoercionError, FrictionlessSchema, canonical_type, field_types

logger = logging.getLogger(__name__)


# ---------------- Transform implementation registry ----------------

class TransformImpl:
    """Internal implementation for a Transform op.

    Users interact with `Transform(op, params)`.
    Implementations are registered by op name and invoked by `Transform.apply`.
    """

    op: str = ""

    @classmethod
    def validate_params(cls, params: Dict[str, Any], input_schema: Optional[FrictionlessSchema] = None) -> None:
        # default: no validation
        return

    @classmethod
    def apply(cls, table, *, params: Dict[str, Any], context: PipelineContext):
        raise FaiscaUserError(
            "E_OP_NOT_IMPL",
            f"Transform op '{cls.op}' is not implemented.",
            hint="Implement it as a TransformImpl and register it.",
        )

    @classmethod
    def output_schema(cls, input_schema: Optional[FrictionlessSchema], params: Dict[str, Any]) -> Optional[
        FrictionlessSchema]:
        """Infer the output schema given an input schema.

        Return None if the schema cannot be determined statically.
        """
        return input_schema


TRANSFORM_REGISTRY: Dict[str, Type[TransformImpl]] = {}


def register_transform(op: str) -> Callable[[Type[TransformImpl]], Type[TransformImpl]]:
    """Decorator to register a TransformImpl under an op string."""

    def deco(cls: Type[TransformImpl]) -> Type[TransformImpl]:
        cls.op = op
        TRANSFORM_REGISTRY[op] = cls
        return cls

    return deco


# ---------------- helpers ----------------

def _suggest(col: str, columns: Sequence[str]) -> str:
    matches = difflib.get_close_matches(col, list(columns), n=3, cutoff=0.6)
    if matches:
        return f"Did you mean {matches[0]!r}?"
    return "Available columns: " + ", ".join(map(str, columns))


def _header(table) -> List[str]:
    try:
        return list(etl.header(table))
    except StopIteration:
        return []


def _require_columns(header: Sequence[str], cols: Iterable[str], *, op: str, context: PipelineContext) -> None:
    for c in cols:
        if c not in header:
            raise ColumnNotFoundError(c, op=op, index=context.op_index, hint=_suggest(c, header))


def _holds(v: Any) -> bool:
    # three-valued: None (unknown) does not hold
    return v is not None and bool(v)


class _Record(dict):
    """Row mapping handed to user callables; remembers which columns were read."""

    def __init__(self, header, row):
        super().__init__(zip(header, row))
        self.read: List[str] = []

    def __getitem__(self, key):
        self.read.append(key)
        return super().__getitem__(key)

    def get(self, key, default=None):
        self.read.append(key)
        return super().get(key, default)


def _call_user(fn: Callable[[Any], Any], rec: _Record, *, op: str, index: Optional[int], header: Sequence[str]):
    try:
        return fn(rec)
    except KeyError as e:
        raise ColumnNotFoundError(str(e.args[0]), op=op, index=index, hint=_suggest(str(e.args[0]), header)) from e
    except FaiscaUserError:
        raise
    except Exception as e:
        where = f" (step #{index})" if index is not None else ""
        raise StageExecutionError(
            "transform",
            e,
            message=f"transform stage failed: {op} callable{where} raised {type(e).__name__}: {e}",
        ) from e


def _params_error(op: str, message: str, hint: str) -> FaiscaUserError:
    return FaiscaUserError(f"E_{op.upper()}_PARAMS", message, hint=hint)


def _check_str_list(op: str, params: Dict[str, Any], key: str, *, required: bool, hint: str) -> None:
    v = params.get(key)
    if v is None and not required:
        return
    if not isinstance(v, list) or (required and not v) or not all(isinstance(c, str) and c for c in v):
        need = "a non-empty list" if required else "a list"
        raise _params_error(op, f"{op} requires params.{key} as {need} of column names.", hint)


def _set_column(table, header: Sequence[str], name: str, fn: Callable[[Any], Any]):
    """Overwrite `name` with fn(row) when present, else append it."""
    if name in header:
        return etl.convert(table, name, lambda v, row: fn(row), pass_row=True, failonerror=True)
    return etl.addfield(table, name, fn)


def _with_field(input_schema: Optional[FrictionlessSchema], name: str, typ: str) -> Optional[FrictionlessSchema]:
    if not input_schema or not isinstance(input_schema.get("fields"), list):
        return input_schema
    out: List[Dict[str, Any]] = []
    replaced = False
    for f in input_schema["fields"]:
        if isinstance(f, dict) and f.get("name") == name:
            nf = dict(f)
            nf["type"] = typ
            out.append(nf)
            replaced = True
        else:
            out.append(f)
    if not replaced:
        out.append({"name": name, "type": typ, "nullable": True})
    return {"fields": out}


def _expr_type(expr: Any, input_schema: Optional[FrictionlessSchema]) -> str:
    """Best-effort result type of an expression: literal, bare column, or boolean-ish root."""
    if not isinstance(expr, str):
        return "any"
    s = expr.strip()
    if len(s) >= 2 and s[0] == s[-1] and s[0] in "'\"":
        return "string"
    try:
        int(s)
        return "integer"
    except ValueError:
        pass
    try:
        float(s)
        return "number"
    except ValueError:
        pass
    types = field_types(input_schema)
    if s in types:
        return types[s]
    if any(tok in s for tok in ("==", "!=", ">=", "<=", ">", "<", " and ", " or ", "not ", " is ")):
        return "boolean"
    return "any"


# ---------------- row ops ----------------

@register_transform("filter")
class FilterTransform(TransformImpl):
    """Keep rows whose predicate is true; false and unknown (null) both drop the row."""

    @classmethod
    def validate_params(cls, params: Dict[str, Any], input_schema: Optional[FrictionlessSchema] = None) -> None:
        where = params.get("where")
        if not callable(where) and (not isinstance(where, str) or not where.strip()):
            raise _params_error(
                "filter",
                "filter requires params.where as a non-empty expression string (or a callable).",
                "Example: Transform('filter', params={'where': \"age > 18 and country == 'BR'\"})",
            )
        strict = params.get("strict", True)
        if not isinstance(strict, bool):
            raise _params_error(
                "filter",
                "filter params.strict must be a boolean.",
                "Example: Transform('filter', params={'where': 'age >= 30', 'strict': true})",
            )

    @classmethod
    def apply(cls, table, *, params: Dict[str, Any], context: PipelineContext):
        where = params.get("where")
        header = _header(table)

        if callable(where):
            index = context.op_index

            def _keep(row) -> bool:
                rec = _Record(header, row)
                try:
                    return _holds(_call_user(where, rec, op="filter", index=index, header=header))
                except StageExecutionError as e:
                    # comparing a null the predicate read is unknown, which filters out
                    if isinstance(e.cause, TypeError) and any(dict.get(rec, c) is None for c in rec.read):
                        return False
                    raise

            return etl.select(table, _keep)

        expr = Expression(where, strict=params.get("strict", True), prefix="E_FILTER")
        _require_columns(header, expr.columns, op="filter", context=context)
        return etl.select(table, lambda r: _holds(expr.evaluate(r)))


@register_transform("derive")
class DeriveTransform(TransformImpl):
    """Compute a column per row; an existing column of that name is overwritten in place."""

    @classmethod
    def validate_params(cls, params: Dict[str, Any], input_schema: Optional[FrictionlessSchema] = None) -> None:
        new = params.get("new")
        expr = params.get("expr")
        if not isinstance(new, str) or not new.strip():
            raise _params_error(
                "derive",
                "derive requires params.new as a non-empty column name string.",
                "Example: Transform('derive', params={'new': 'is_adult', 'expr': 'age >= 18'})",
            )
        if not callable(expr) and (not isinstance(expr, str) or not expr.strip()):
            raise _params_error(
                "derive",
                "derive requires params.expr as a non-empty expression string (or a callable).",
                "Example: Transform('derive', params={'new': 'is_adult', 'expr': 'age >= 18'})",
            )
        if not isinstance(params.get("strict", True), bool):
            raise _params_error(
                "derive",
                "derive params.strict must be a boolean.",
                "Example: Transform('derive', params={'new': 'x', 'expr': 'a / b', 'strict': false})",
            )

    @classmethod
    def apply(cls, table, *, params: Dict[str, Any], context: PipelineContext):
        new = params["new"]
        expr = params["expr"]
        header = _header(table)

        if callable(expr):
            index = context.op_index
            return _set_column(table, header, new,
                               lambda r: _call_user(expr, _Record(header, r), op="derive", index=index, header=header))

        compiled = Expression(expr, strict=params.get("strict", True), prefix="E_DERIVE")
        _require_columns(header, compiled.columns, op="derive", context=context)
        return _set_column(table, header, new, compiled.evaluate)

    @classmethod
    def output_schema(cls, input_schema: Optional[FrictionlessSchema], params: Dict[str, Any]) -> Optional[
        FrictionlessSchema]:
        new = params.get("new")
        if not isinstance(new, str) or not new:
            return input_schema
        return _with_field(input_schema, new, _expr_type(params.get("expr"), input_schema))


@register_transform("coalesce")
class CoalesceTransform(TransformImpl):
    """First non-null of `column`, then each of `fallbacks`, written to `new` (default: `column`)."""

    @classmethod
    def validate_params(cls, params: Dict[str, Any], input_schema: Optional[FrictionlessSchema] = None) -> None:
        hint = "Example: Transform('coalesce', params={'column': 'phone', 'fallbacks': ['mobile', 'work_phone']})"
        column = params.get("column")
        if not isinstance(column, str) or not column:
            raise _params_error("coalesce", "coalesce requires params.column as a column name string.", hint)
        _check_str_list("coalesce", params, "fallbacks", required=False, hint=hint)
        new = params.get("new")
        if new is not None and (not isinstance(new, str) or not new):
            raise _params_error("coalesce", "coalesce params.new must be a column name string.", hint)

    @classmethod
    def apply(cls, table, *, params: Dict[str, Any], context: PipelineContext):
        cols = [params["column"], *(params.get("fallbacks") or [])]
        header = _header(table)
        _require_columns(header, cols, op="coalesce", context=context)
        idx = [header.index(c) for c in cols]

        def _first(row):
            for i in idx:
                if row[i] is not None:
                    return row[i]
            return None

        return _set_column(table, header, params.get("new") or params["column"], _first)

    @classmethod
    def output_schema(cls, input_schema: Optional[FrictionlessSchema], params: Dict[str, Any]) -> Optional[
        FrictionlessSchema]:
        column = params.get("column")
        new = params.get("new") or column
        if not isinstance(new, str):
            return input_schema
        types = field_types(input_schema)
        cols = [column, *(params.get("fallbacks") or [])]
        distinct = {types.get(c, "any") for c in cols}
        typ = distinct.pop() if len(distinct) == 1 else "any"
        return _with_field(input_schema, new, typ)


# ---------------- window ----------------

RANKING_KINDS = ("row_number", "rank", "dense_rank")
OFFSET_KINDS = ("lag", "lead")
AGGREGATE_KINDS = ("sum", "avg", "min", "max", "count")
WINDOW_KINDS = RANKING_KINDS + OFFSET_KINDS + AGGREGATE_KINDS


def _parse_order(entry: str) -> Tuple[str, bool]:
    """'age' -> ('age', False); 'age desc' -> ('age', True)."""
    parts = entry.strip().split()
    if len(parts) == 2 and parts[1].lower() in ("asc", "desc"):
        return parts[0], parts[1].lower() == "desc"
    return entry.strip(), False


def _sort_key(v: Any) -> Tuple[Any, ...]:
    # nulls sort first ascending, last descending
    return (0,) if v is None else (1, v)


def window_output_column(params: Dict[str, Any]) -> str:
    kind = params.get("kind")
    if params.get("new"):
        return params["new"]
    if kind in RANKING_KINDS:
        return params["target"]
    return f"{kind}_{params['target']}"


class WindowView(Table):
    """Materializes the input, groups it by partition key and emits each group in window order.

    Groups are emitted in order of first appearance; ties in the order columns keep input order.
    """

    def __init__(self, source, *, kind: str, partition_by: Sequence[str], order_by: Sequence[Tuple[str, bool]],
                 target: Optional[str], output: str, offset: int = 1, default: Any = None):
        self.source = source
        self.kind = kind
        self.partition_by = list(partition_by)
        self.order_by = list(order_by)
        self.target = target
        self.output = output
        self.offset = offset
        self.default = default
        self._rows: Optional[List[tuple]] = None

    def __iter__(self):
        # sorted once per view; step previews and the sink share the result
        if self._rows is None:
            self._rows = list(self._materialize())
        return iter(self._rows)

    def _materialize(self):
        it = iter(self.source)
        header = list(next(it))
        replace = self.output in header
        out_header = header if replace else header + [self.output]
        yield tuple(out_header)

        pidx = [header.index(c) for c in self.partition_by]
        oidx = [(header.index(c), desc) for c, desc in self.order_by]
        tidx = header.index(self.target) if self.target in header else None
        out_i = header.index(self.output) if replace else None

        groups: Dict[Tuple[Any, ...], List[tuple]] = {}
        for row in it:
            groups.setdefault(tuple(row[i] for i in pidx), []).append(tuple(row))

        for rows in groups.values():
            # multi-pass stable sort, least significant key first
            for i, desc in reversed(oidx):
                rows.sort(key=lambda r, i=i: _sort_key(r[i]), reverse=desc)
            values = self._compute(rows, oidx, tidx)
            for row, val in zip(rows, values):
                if replace:
                    r = list(row)
                    r[out_i] = val
                    yield tuple(r)
                else:
                    yield row + (val,)

    def _compute(self, rows: List[tuple], oidx, tidx) -> List[Any]:
        kind = self.kind
        n = len(rows)
        if kind == "row_number":
            return list(range(1, n + 1))
        if kind in ("rank", "dense_rank"):
            out: List[int] = []
            prev = object()
            rank = 0
            dense = 0
            for pos, row in enumerate(rows, start=1):
                key = tuple(row[i] for i, _ in oidx)
                if key != prev:
                    rank = pos
                    dense += 1
                    prev = key
                out.append(rank if kind == "rank" else dense)
            return out
        vals = [row[tidx] for row in rows]
        if kind == "lag":
            return [vals[i - self.offset] if i - self.offset >= 0 else self.default for i in range(n)]
        if kind == "lead":
            return [vals[i + self.offset] if i + self.offset < n else self.default for i in range(n)]

        present = [v for v in vals if v is not None]
        if kind == "count":
            agg: Any = len(present)
        elif not present:
            agg = None
        elif kind in ("min", "max"):
            try:
                agg = min(present) if kind == "min" else max(present)
            except TypeError as e:
                raise self._type_error(present) from e
        else:
            if not all(isinstance(v, (int, float)) and not isinstance(v, bool) for v in present):
                raise self._type_error(present)
            agg = sum(present)
            if kind == "avg":
                agg = agg / len(present)
        return [agg] * n

    def _type_error(self, values: List[Any]) -> FaiscaUserError:
        sample = ", ".join(repr(v) for v in values[:3])
        return FaiscaUserError(
            "E_WINDOW_TYPE",
            f"window {self.kind} needs numeric values in '{self.target}', got {sample}.",
            hint="Cast the column first, e.g. Transform('cast', params={'types': {...: 'number'}}).",
        )


@register_transform("window")
class WindowTransform(TransformImpl):
    """Ranking, offset and whole-partition aggregate functions over partition groups."""

    @classmethod
    def validate_params(cls, params: Dict[str, Any], input_schema: Optional[FrictionlessSchema] = None) -> None:
        hint = ("Example: Transform('window', params={'kind': 'rank', 'partition_by': ['dept'], "
                "'order_by': ['salary desc'], 'target': 'salary_rank'})")
        kind = params.get("kind")
        if kind not in WINDOW_KINDS:
            raise _params_error("window", f"window params.kind must be one of: {', '.join(WINDOW_KINDS)}.", hint)
        _check_str_list("window", params, "partition_by", required=False, hint=hint)
        _check_str_list("window", params, "order_by", required=False, hint=hint)
        target = params.get("target")
        if not isinstance(target, str) or not target:
            what = "output column" if kind in RANKING_KINDS else "input column"
            raise _params_error("window", f"window {kind} requires params.target (the {what}).", hint)
        new = params.get("new")
        if new is not None and (not isinstance(new, str) or not new):
            raise _params_error("window", "window params.new must be a column name string.", hint)
        offset = params.get("offset", 1)
        if kind in OFFSET_KINDS and (not isinstance(offset, int) or isinstance(offset, bool) or offset < 0):
            raise _params_error("window", f"window {kind} params.offset must be a non-negative integer.", hint)

    @classmethod
    def apply(cls, table, *, params: Dict[str, Any], context: PipelineContext):
        kind = params["kind"]
        partition_by = params.get("partition_by") or []
        order_by = [_parse_order(o) for o in (params.get("order_by") or [])]
        target = params["target"]
        header = _header(table)

        needed = list(partition_by) + [c for c, _ in order_by]
        if kind not in RANKING_KINDS:
            needed.append(target)
        _require_columns(header, needed, op="window", context=context)

        return WindowView(
            table,
            kind=kind,
            partition_by=partition_by,
            order_by=order_by,
            target=target if kind not in RANKING_KINDS else None,
            output=window_output_column(params),
            offset=params.get("offset", 1),
            default=params.get("default"),
        )

    @classmethod
    def output_schema(cls, input_schema: Optional[FrictionlessSchema], params: Dict[str, Any]) -> Optional[
        FrictionlessSchema]:
        kind = params.get("kind")
        if kind not in WINDOW_KINDS or not params.get("target"):
            return input_schema
        src = field_types(input_schema).get(params["target"], "any")
        if kind in RANKING_KINDS or kind == "count":
            typ = "integer"
        elif kind == "avg":
            typ = "number"
        elif kind == "sum":
            typ = src if src in ("integer", "number") else "number"
        else:
            typ = src
        return _with_field(input_schema, window_output_column(params), typ)


# ---------------- column ops ----------------

@register_transform("select")
class SelectTransform(TransformImpl):
    @classmethod
    def validate_params(cls, params: Dict[str, Any], input_schema: Optional[FrictionlessSchema] = None) -> None:
        _check_str_list("select", params, "columns", required=True,
                        hint="Example: Transform('select', params={'columns': ['id', 'age']})")

    @classmethod
    def apply(cls, table, *, params: Dict[str, Any], context: PipelineContext):
        cols = params["columns"]
        _require_columns(_header(table), cols, op="select", context=context)
        return etl.cut(table, *cols)

    @classmethod
    def output_schema(cls, input_schema: Optional[FrictionlessSchema], params: Dict[str, Any]) -> Optional[
        FrictionlessSchema]:
        if not input_schema or "fields" not in input_schema:
            return input_schema
        by_name = {f.get("name"): f for f in input_schema.get("fields", [])}
        return {"fields": [by_name[c] for c in params.get("columns") or [] if c in by_name]}


@register_transform("drop")
class DropTransform(TransformImpl):
    @classmethod
    def validate_params(cls, params: Dict[str, Any], input_schema: Optional[FrictionlessSchema] = None) -> None:
        _check_str_list("drop", params, "columns", required=True,
                        hint="Example: Transform('drop', params={'columns': ['debug_col']})")

    @classmethod
    def apply(cls, table, *, params: Dict[str, Any], context: PipelineContext):
        cols = params["columns"]
        _require_columns(_header(table), cols, op="drop", context=context)
        return etl.cutout(table, *cols)

    @classmethod
    def output_schema(cls, input_schema: Optional[FrictionlessSchema], params: Dict[str, Any]) -> Optional[
        FrictionlessSchema]:
        if not input_schema or "fields" not in input_schema:
            return input_schema
        drop_cols = set(params.get("columns") or [])
        return {"fields": [f for f in input_schema.get("fields", []) if f.get("name") not in drop_cols]}


@register_transform("rename")
class RenameTransform(TransformImpl):
    @classmethod
    def validate_params(cls, params: Dict[str, Any], input_schema: Optional[FrictionlessSchema] = None) -> None:
        cols = params.get("columns")
        if not isinstance(cols, dict) or not cols or not all(
            isinstance(k, str) and k and isinstance(v, str) and v for k, v in cols.items()
        ):
            raise _params_error(
                "rename",
                "rename requires params.columns as a non-empty mapping {old: new}.",
                "Example: Transform('rename', params={'columns': {'dt_nasc': 'birth_date'}})",
            )

    @classmethod
    def apply(cls, table, *, params: Dict[str, Any], context: PipelineContext):
        cols = params["columns"]
        header = _header(table)
        _require_columns(header, cols.keys(), op="rename", context=context)
        final = [cols.get(h, h) for h in header]
        dupes = sorted({c for c in final if final.count(c) > 1})
        if dupes:
            raise FaiscaUserError(
                "E_RENAME_DUPLICATE",
                f"rename would produce duplicate column(s): {dupes}.",
                hint="Drop or rename the existing column first.",
            )
        return etl.rename(table, dict(cols))

    @classmethod
    def output_schema(cls, input_schema: Optional[FrictionlessSchema], params: Dict[str, Any]) -> Optional[
        FrictionlessSchema]:
        if not input_schema or "fields" not in input_schema:
            return input_schema
        cols = params.get("columns") or {}
        out = []
        for f in input_schema.get("fields", []):
            nf = dict(f)
            nf["name"] = cols.get(f.get("name"), f.get("name"))
            out.append(nf)
        return {"fields": out}


@register_transform("cast")
class CastTransform(TransformImpl):
    @classmethod
    def validate_params(cls, params: Dict[str, Any], input_schema: Optional[FrictionlessSchema] = None) -> None:
        types = params.get("types")
        if not isinstance(types, dict) or not types:
            raise FaiscaUserError(
                "E_CAST_TYPES",
                "cast requires params.types as a non-empty mapping: {column: type, ...}.",
                hint="Example: Transform('cast', params={'types': {'age': 'integer'}, 'on_error': 'null'})",
            )
        for col, typ in types.items():
            if not isinstance(col, str) or not col:
                raise FaiscaUserError(
                    "E_CAST_KEY",
                    "cast types keys must be non-empty strings.",
                    hint="Example: {'age': 'integer', 'income': 'number'}",
                )
            try:
                canonical_type(typ)
            except FaiscaUserError as e:
                raise FaiscaUserError("E_CAST_TYPE_UNSUPPORTED", f"Unsupported cast type for '{col}': {typ!r}.",
                                      hint=e.hint) from e
        on_error = params.get("on_error", "fail")
        if on_error not in {"fail", "null", "keep"}:
            raise FaiscaUserError(
                "E_CAST_ON_ERROR",
                "cast params.on_error must be one of: 'fail', 'null', 'keep'.",
                hint="Example: Transform('cast', params={'types': {...}, 'on_error': 'null'})",
            )

    @classmethod
    def apply(cls, table, *, params: Dict[str, Any], context: PipelineContext):
        types = params["types"]
        on_error = params.get("on_error", "fail")
        _require_columns(_header(table), types.keys(), op="cast", context=context)

        def _wrap(col: str, conv: Callable[[Any], Any]):
            def f(v: Any) -> Any:
                try:
                    return conv(v)
                except CoercionError as e:
                    # value-level coercion failure: apply policy
                    if on_error == "fail":
                        raise FaiscaUserError(
                            "E_CAST_COERCE",
                            f"{e} (column '{col}')",
                            hint="Use on_error='null' or on_error='keep' to handle messy rows.",
                        ) from e
                    if on_error == "null":
                        return None
                    return v

            return f

        conversions = {col: _wrap(col, CONVERTERS[canonical_type(typ)]) for col, typ in types.items()}
        return etl.convert(table, conversions, failonerror=True)

    @classmethod
    def output_schema(cls, input_schema: Optional[FrictionlessSchema], params: Dict[str, Any]) -> Optional[
        FrictionlessSchema]:
        if not input_schema or "fields" not in input_schema:
            return input_schema
        out = input_schema
        for col, typ in (params.get("types") or {}).items():
            out = _with_field(out, col, canonical_type(typ))
        return out


# ---------------- user-facing op ----------------

@dataclass(frozen=True)
class Transform:
    op: str
    params: Dict[str, Any] = field(default_factory=dict)
    output_schema_override: Optional[FrictionlessSchema] = None

    def apply(self, table, *, context: Optional[PipelineContext] = None, index: Optional[int] = None):
        """
        Apply this transform to a PETL table.

        Params are validated and referenced columns are checked against the table header here,
        so a bad op fails when it is applied, not when it is constructed.
        """
        impl = TRANSFORM_REGISTRY.get(self.op)
        if impl is None:
            raise FaiscaUserError(
                "E_OP_NOT_IMPL",
                f"Transform op '{self.op}' is not implemented.",
                hint="Supported ops: " + ", ".join(sorted(TRANSFORM_REGISTRY.keys())),
            )
        if context is None:
            context = PipelineContext()
        if index is not None:
            context.op_index = index

        impl.validate_params(self.params, input_schema=context.schema)
        return impl.apply(table, params=self.params, context=context)

    def output_schema(self, input_schema: Optional[FrictionlessSchema]) -> Optional[FrictionlessSchema]:
        if self.output_schema_override is not None:
            return self.output_schema_override
        impl = TRANSFORM_REGISTRY.get(self.op)
        if impl is None:
            return input_schema
        return impl.output_schema(input_schema, self.params)

    def __str__(self) -> str:
        return f"Transform(op={self.op}, params={self.params})"


def apply(dataset, ops: Sequence[Transform], context: Optional[PipelineContext] = None):
    """Apply `ops` in order; each op's output feeds the next."""
    ctx = context if context is not None else PipelineContext()
    table = dataset
    for i, op in enumerate(ops):
        if not isinstance(op, Transform):
            raise FaiscaUserError(
                "E_PIPELINE_STEP",
                f"Step #{i} is not a Transform: {op!r}.",
                hint="Example: Transform('filter', params={'where': 'age > 18'})",
            )
        table = op.apply(table, context=ctx, index=i)
        ctx.schema = op.output_schema(ctx.schema)
        logger.debug("applied step #%d %s", i, op)
    return table
