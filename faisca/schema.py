from __future__ import annotations

from datetime import date, datetime
from typing import Any, Callable, Dict, Iterable, List, Optional

from faisca.errors import FaiscaUserError

FrictionlessSchema = Dict[str, Any]

TYPES = ("integer", "number", "string", "boolean", "datetime", "date", "any")

_ALIASES = {
    "int": "integer",
    "long": "integer",
    "bigint": "integer",
    "float": "number",
    "double": "number",
    "decimal": "number",
    "str": "string",
    "bool": "boolean",
    "timestamp": "datetime",
}

# frictionless types without a counterpart here are read as strings
_FRICTIONLESS_TYPES = {
    "integer": "integer",
    "number": "number",
    "string": "string",
    "boolean": "boolean",
    "datetime": "datetime",
    "date": "date",
    "any": "any",
    "year": "integer",
}

_NULL_TOKENS = {"", "null", "none", "na", "nan"}


class CoercionError(ValueError):
    """A single value cannot be converted to the requested type."""


def canonical_type(typ: Any) -> str:
    if not isinstance(typ, str):
        raise FaiscaUserError(
            "E_SCHEMA_TYPE",
            f"Schema type must be a string, got {typ!r}.",
            hint="Supported types: " + ", ".join(TYPES) + ".",
        )
    t = typ.strip().lower()
    t = _ALIASES.get(t, t)
    if t not in TYPES:
        raise FaiscaUserError(
            "E_SCHEMA_TYPE",
            f"Unsupported schema type {typ!r}.",
            hint="Supported types: " + ", ".join(TYPES) + ".",
        )
    return t


def _normalize_inline_schema(schema: Dict[str, Any]) -> Dict[str, Any]:
    """
    Expect frictionless-ish schema:
      {"fields":[{"name":"age","type":"integer","nullable":true}, ...]}

    Returns a new mapping with canonical type names and an explicit nullable flag.
    """
    if not isinstance(schema, dict):
        raise FaiscaUserError(
            "E_SCHEMA_INLINE_TYPE",
            "Inline schema must be a mapping (dict).",
            hint="Example: {'fields': [{'name': 'age', 'type': 'integer'}]}",
        )
    fields = schema.get("fields", [])
    if not isinstance(fields, list):
        raise FaiscaUserError(
            "E_SCHEMA_INLINE_FIELDS",
            "Inline schema['fields'] must be a list.",
            hint="Example: {'fields': [{'name': 'age', 'type': 'integer'}]}",
        )

    out: List[Dict[str, Any]] = []
    seen = set()
    for f in fields:
        if not isinstance(f, dict) or not isinstance(f.get("name"), str) or not f["name"]:
            raise FaiscaUserError(
                "E_SCHEMA_INLINE_FIELDS",
                f"Every schema field needs a non-empty 'name': {f!r}.",
                hint="Example: {'name': 'age', 'type': 'integer'}",
            )
        name = f["name"]
        if name in seen:
            raise FaiscaUserError(
                "E_SCHEMA_DUPLICATE",
                f"Column '{name}' appears more than once in the schema.",
                hint="Column names must be unique.",
            )
        seen.add(name)
        nullable = f.get("nullable", True)
        if not isinstance(nullable, bool):
            raise FaiscaUserError(
                "E_SCHEMA_INLINE_FIELDS",
                f"Field '{name}': 'nullable' must be a boolean.",
            )
        nf = dict(f)
        nf["type"] = canonical_type(f.get("type", "any"))
        nf["nullable"] = nullable
        out.append(nf)
    return {"fields": out}


def field_types(schema: Optional[FrictionlessSchema]) -> Dict[str, str]:
    if not schema:
        return {}
    return {f["name"]: f.get("type", "any") for f in schema.get("fields", []) if isinstance(f, dict)}


# ---------------- value converters ----------------

def _to_int(v: Any) -> Any:
    if v is None:
        return None
    if isinstance(v, bool):
        raise CoercionError(f"Cannot coerce value {v!r} to integer.")
    if isinstance(v, int):
        return v
    if isinstance(v, float):
        if v.is_integer():
            return int(v)
        raise CoercionError(f"Cannot coerce value {v!r} to integer.")
    if isinstance(v, str):
        s = v.strip()
        if s == "":
            return None
        try:
            return int(s)
        except ValueError:
            pass
        try:
            f = float(s)
        except ValueError as e:
            raise CoercionError(f"Cannot coerce value {v!r} to integer.") from e
        if f.is_integer():
            return int(f)
    raise CoercionError(f"Cannot coerce value {v!r} to integer.")


def _to_number(v: Any) -> Any:
    if v is None:
        return None
    if isinstance(v, bool):
        raise CoercionError(f"Cannot coerce value {v!r} to number.")
    if isinstance(v, (int, float)):
        return float(v)
    if isinstance(v, str):
        s = v.strip()
        if s == "":
            return None
        try:
            return float(s)
        except ValueError as e:
            raise CoercionError(f"Cannot coerce value {v!r} to number.") from e
    raise CoercionError(f"Cannot coerce value {v!r} to number.")


def _to_bool(v: Any) -> Any:
    if v is None:
        return None
    if isinstance(v, bool):
        return v
    if isinstance(v, (int, float)):
        return bool(v)
    if isinstance(v, str):
        s = v.strip().lower()
        if s in _NULL_TOKENS:
            return None
        if s in {"true", "t", "yes", "y", "1"}:
            return True
        if s in {"false", "f", "no", "n", "0"}:
            return False
    raise CoercionError(f"Cannot coerce value {v!r} to boolean.")


def _to_str(v: Any) -> Any:
    if v is None:
        return None
    if isinstance(v, bool):
        return "true" if v else "false"
    if isinstance(v, datetime):
        return v.isoformat(sep=" ")
    if isinstance(v, date):
        return v.isoformat()
    return str(v)


def _to_date(v: Any) -> Any:
    if v is None:
        return None
    if isinstance(v, datetime):
        return v.date()
    if isinstance(v, date):
        return v
    if isinstance(v, str):
        s = v.strip()
        if s == "":
            return None
        try:
            return date.fromisoformat(s[:10])
        except ValueError as e:
            raise CoercionError(f"Cannot coerce value {v!r} to date.") from e
    raise CoercionError(f"Cannot coerce value {v!r} to date.")


def _to_datetime(v: Any) -> Any:
    if v is None:
        return None
    if isinstance(v, datetime):
        return v
    if isinstance(v, date):
        return datetime(v.year, v.month, v.day)
    if isinstance(v, str):
        s = v.strip()
        if s == "":
            return None
        try:
            return datetime.fromisoformat(s.replace("Z", "+00:00"))
        except ValueError as e:
            raise CoercionError(f"Cannot coerce value {v!r} to datetime.") from e
    raise CoercionError(f"Cannot coerce value {v!r} to datetime.")


def _to_any(v: Any) -> Any:
    return v


CONVERTERS: Dict[str, Callable[[Any], Any]] = {
    "integer": _to_int,
    "number": _to_number,
    "boolean": _to_bool,
    "string": _to_str,
    "date": _to_date,
    "datetime": _to_datetime,
    "any": _to_any,
}


def converter_for(typ: str) -> Callable[[Any], Any]:
    return CONVERTERS[canonical_type(typ)]


# ---------------- inference ----------------

def _type_of(v: Any) -> Optional[str]:
    if v is None:
        return None
    if isinstance(v, bool):
        return "boolean"
    if isinstance(v, int):
        return "integer"
    if isinstance(v, float):
        return "number"
    if isinstance(v, datetime):
        return "datetime"
    if isinstance(v, date):
        return "date"
    return "string"


def _widen(a: Optional[str], b: Optional[str]) -> Optional[str]:
    if a is None:
        return b
    if b is None or a == b:
        return a
    if {a, b} == {"integer", "number"}:
        return "number"
    if {a, b} == {"date", "datetime"}:
        return "datetime"
    return "string"


def _guess_text(v: str) -> Optional[str]:
    s = v.strip()
    if s == "":
        return None
    for typ in ("integer", "number"):
        try:
            CONVERTERS[typ](s)
            return typ
        except CoercionError:
            pass
    if s.lower() in {"true", "false"}:
        return "boolean"
    if len(s) == 10:
        try:
            date.fromisoformat(s)
            return "date"
        except ValueError:
            pass
    try:
        datetime.fromisoformat(s)
        return "datetime"
    except ValueError:
        return "string"


def infer_from_rows(
    header: Iterable[str],
    rows: Iterable[Iterable[Any]],
    *,
    text_columns: Iterable[str] = (),
) -> FrictionlessSchema:
    """Infer a schema from a sample of rows.

    Values are typed by their Python type, except in `text_columns` (csv fields,
    partition directory values) where strings are parsed. Mixed types widen
    integer->number, date->datetime, anything else->string. Columns with only
    nulls become 'any'.
    """
    names = list(header)
    text = set(text_columns)
    seen: Dict[str, Optional[str]] = {n: None for n in names}
    for r in rows:
        for n, v in zip(names, r):
            if n in text and isinstance(v, str):
                t = _guess_text(v)
            else:
                t = _type_of(v)
            seen[n] = _widen(seen[n], t)
    return {"fields": [{"name": n, "type": seen[n] or "any", "nullable": True} for n in names]}


def from_frictionless(schema: Dict[str, Any]) -> FrictionlessSchema:
    fields = []
    for f in schema.get("fields", []) or []:
        if not isinstance(f, dict) or not isinstance(f.get("name"), str):
            continue
        typ = _FRICTIONLESS_TYPES.get(f.get("type", "any"), "string")
        fields.append({"name": f["name"], "type": typ, "nullable": True})
    return {"fields": fields}
