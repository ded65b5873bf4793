"""Shared expression language for filter and derive.

Grammar (lowest to highest precedence)::

    expr    := or
    or      := and ("or" and)*
    and     := not ("and" not)*
    cmp     := add (("==" | "!=" | ">" | ">=" | "<" | "<=") add | "is" ["not"] "null")?
    add     := mul (("+" | "-") mul)*
    mul     := unary (("*" | "/") unary)*
    unary   := "not" unary | "-" unary | atom
    atom    := NUM | STR | true | false | null | IDENT | IDENT "(" args ")" | "(" expr ")"

Evaluation uses SQL three-valued logic: comparisons against null yield None
("unknown"), and/or/not follow Kleene logic, arithmetic propagates null.
"""
from __future__ import annotations

import math
import re
from datetime import date, datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Tuple

from faisca.errors import FaiscaUserError
from faisca.schema import CoercionError, _to_date

_re_ws = re.compile(r"\s+")
_re_ident = re.compile(r"[A-Za-z_][A-Za-z0-9_]*")
_re_number = re.compile(r"(?:\d+\.\d*|\d*\.\d+|\d+)")
KEYWORDS = {"and", "or", "not", "true", "false", "null", "is"}

_CMP_OPS = {"==", "!=", ">=", "<=", ">", "<"}


class _ExprTok:
    __slots__ = ("typ", "val", "pos")

    def __init__(self, typ: str, val: Any, pos: int):
        self.typ = typ
        self.val = val
        self.pos = pos


def _caret(src: str, pos: int) -> str:
    return f"At position {pos}: {src}\n" + (" " * pos) + "^"


def _expr_tokenize(src: str, *, allow_arith: bool) -> List[_ExprTok]:
    ops_2 = {"==", "!=", ">=", "<="}
    ops_1 = {">", "<", "(", ")", ","}
    if allow_arith:
        ops_1 |= {"+", "-", "*", "/"}

    out: List[_ExprTok] = []
    i = 0
    n = len(src)

    while i < n:
        m = _re_ws.match(src, i)
        if m:
            i = m.end()
            continue

        if src[i] in ("'", '"'):
            q = src[i]
            j = i + 1
            buf = []
            while j < n:
                ch = src[j]
                if ch == "\\" and j + 1 < n:
                    buf.append(src[j + 1])
                    j += 2
                    continue
                if ch == q:
                    out.append(_ExprTok("STR", "".join(buf), i))
                    i = j + 1
                    break
                buf.append(ch)
                j += 1
            else:
                raise FaiscaUserError(
                    "E_EXPR_PARSE",
                    "Unterminated string literal in expression.",
                    hint=src,
                )
            continue

        two = src[i: i + 2]
        if two in ops_2:
            out.append(_ExprTok("OP", two, i))
            i += 2
            continue

        if src[i] in ops_1:
            out.append(_ExprTok("OP", src[i], i))
            i += 1
            continue

        m = _re_number.match(src, i)
        if m:
            s = m.group(0)
            out.append(_ExprTok("NUM", float(s) if ("." in s) else int(s), i))
            i = m.end()
            continue

        m = _re_ident.match(src, i)
        if m:
            s = m.group(0)
            low = s.lower()
            if low in KEYWORDS:
                out.append(_ExprTok("KW", low, i))
            else:
                out.append(_ExprTok("IDENT", s, i))
            i = m.end()
            continue

        raise FaiscaUserError(
            "E_EXPR_PARSE",
            f"Unexpected character {src[i]!r} in expression.",
            hint=_caret(src, i),
        )

    out.append(_ExprTok("EOF", None, n))
    return out


def _expr_parse(src: str, *, allow_arith: bool) -> Any:
    toks = _expr_tokenize(src, allow_arith=allow_arith)
    k = 0

    def _peek() -> _ExprTok:
        return toks[k]

    def _is(typ: str, val: Any = None) -> bool:
        t = toks[k]
        return t.typ == typ and (val is None or t.val == val)

    def _eat(expected_typ: str, expected_val: Optional[str] = None) -> _ExprTok:
        nonlocal k
        t = toks[k]
        if t.typ != expected_typ:
            raise FaiscaUserError(
                "E_EXPR_PARSE",
                f"Expected {expected_typ} but found {t.typ}.",
                hint=_caret(src, t.pos),
            )
        if expected_val is not None and t.val != expected_val:
            raise FaiscaUserError(
                "E_EXPR_PARSE",
                f"Expected '{expected_val}' but found '{t.val}'.",
                hint=_caret(src, t.pos),
            )
        k += 1
        return t

    def parse_or():
        node = parse_and()
        while _is("KW", "or"):
            _eat("KW", "or")
            node = ("or", node, parse_and())
        return node

    def parse_and():
        node = parse_not()
        while _is("KW", "and"):
            _eat("KW", "and")
            node = ("and", node, parse_not())
        return node

    def parse_not():
        if _is("KW", "not"):
            _eat("KW", "not")
            return ("not", parse_not())
        return parse_cmp()

    def parse_cmp():
        left = parse_add()
        if _peek().typ == "OP" and _peek().val in _CMP_OPS:
            op_tok = _eat("OP")
            return ("cmp", op_tok.val, left, parse_add())
        if _is("KW", "is"):
            _eat("KW", "is")
            negate = False
            if _is("KW", "not"):
                _eat("KW", "not")
                negate = True
            _eat("KW", "null")
            return ("isnull", left, negate)
        return left

    def parse_add():
        node = parse_mul()
        while _peek().typ == "OP" and _peek().val in {"+", "-"}:
            op_tok = _eat("OP")
            node = ("bin", op_tok.val, node, parse_mul())
        return node

    def parse_mul():
        node = parse_unary()
        while _peek().typ == "OP" and _peek().val in {"*", "/"}:
            op_tok = _eat("OP")
            node = ("bin", op_tok.val, node, parse_unary())
        return node

    def parse_unary():
        if _is("OP", "-"):
            _eat("OP", "-")
            return ("neg", parse_unary())
        return parse_atom()

    def parse_atom():
        t = _peek()
        if t.typ == "OP" and t.val == "(":
            _eat("OP", "(")
            node = parse_or()
            _eat("OP", ")")
            return node
        if t.typ == "IDENT":
            _eat("IDENT")
            if _is("OP", "("):
                return parse_call(t)
            return ("col", t.val, t.pos)
        if t.typ == "NUM":
            _eat("NUM")
            return ("lit", t.val)
        if t.typ == "STR":
            _eat("STR")
            return ("lit", t.val)
        if t.typ == "KW" and t.val in {"true", "false", "null"}:
            _eat("KW")
            return ("lit", {"true": True, "false": False, "null": None}[t.val])
        raise FaiscaUserError(
            "E_EXPR_PARSE",
            f"Unexpected token '{t.val}' in expression.",
            hint=_caret(src, t.pos),
        )

    def parse_call(name_tok: _ExprTok):
        fname = name_tok.val.lower()
        spec = FUNCTIONS.get(fname)
        if spec is None:
            raise FaiscaUserError(
                "E_EXPR_FUNCTION",
                f"Unknown function '{name_tok.val}'.",
                hint="Available functions: " + ", ".join(sorted(FUNCTIONS)),
            )
        _eat("OP", "(")
        args = []
        if not _is("OP", ")"):
            args.append(parse_or())
            while _is("OP", ","):
                _eat("OP", ",")
                args.append(parse_or())
        _eat("OP", ")")
        lo, hi = spec[1], spec[2]
        if len(args) < lo or (hi is not None and len(args) > hi):
            want = str(lo) if hi == lo else (f"{lo}+" if hi is None else f"{lo}-{hi}")
            raise FaiscaUserError(
                "E_EXPR_FUNCTION",
                f"Function '{fname}' takes {want} argument(s), got {len(args)}.",
                hint=_caret(src, name_tok.pos),
            )
        return ("call", fname, args, name_tok.pos)

    ast = parse_or()
    _eat("EOF")
    return ast


def referenced_columns(ast: Any) -> List[Tuple[str, int]]:
    """Column names (with source position) referenced by a parsed expression, in order."""
    out: List[Tuple[str, int]] = []

    def walk(node):
        if not isinstance(node, tuple):
            return
        tag = node[0]
        if tag == "col":
            out.append((node[1], node[2]))
        elif tag == "call":
            for a in node[2]:
                walk(a)
        else:
            for child in node[1:]:
                walk(child)

    walk(ast)
    return out


# ---------------- function catalogue ----------------

def _num(v: Any) -> bool:
    return isinstance(v, (int, float)) and not isinstance(v, bool)


def _looks_number(v: Any) -> bool:
    if _num(v):
        return True
    if isinstance(v, str):
        s = v.strip()
        if s == "":
            return False
        try:
            float(s)
            return True
        except ValueError:
            return False
    return False


def _to_float(v: Any) -> float:
    if isinstance(v, str):
        return float(v.strip())
    return float(v)


def _as_date(v: Any) -> date:
    try:
        return _to_date(v)
    except CoercionError as e:
        raise TypeError(str(e)) from e


def _fn_substring(s, pos, length=None):
    s = str(s)
    start = max(int(pos) - 1, 0) if int(pos) > 0 else max(len(s) + int(pos), 0)
    if length is None:
        return s[start:]
    return s[start: start + int(length)]


def _fn_round(x, digits=0):
    # half-up like Spark, not banker's rounding
    q = 10 ** int(digits)
    r = math.floor(abs(x) * q + 0.5) / q
    r = math.copysign(r, x)
    return int(r) if int(digits) <= 0 and isinstance(x, int) else r


def _fn_date_add(d, n):
    return _as_date(d) + timedelta(days=int(n))


def _fn_datediff(end, start):
    return (_as_date(end) - _as_date(start)).days


# name -> (callable, min args, max args or None, null-propagating)
FUNCTIONS: Dict[str, Tuple[Callable[..., Any], int, Optional[int], bool]] = {
    "upper": (lambda s: str(s).upper(), 1, 1, True),
    "lower": (lambda s: str(s).lower(), 1, 1, True),
    "trim": (lambda s: str(s).strip(), 1, 1, True),
    "length": (lambda s: len(str(s)), 1, 1, True),
    "concat": (lambda *a: "".join(str(x) for x in a), 1, None, True),
    "substring": (_fn_substring, 2, 3, True),
    "replace": (lambda s, old, new: str(s).replace(str(old), str(new)), 3, 3, True),
    "abs": (abs, 1, 1, True),
    "round": (_fn_round, 1, 2, True),
    "floor": (math.floor, 1, 1, True),
    "ceil": (math.ceil, 1, 1, True),
    "year": (lambda d: _as_date(d).year, 1, 1, True),
    "month": (lambda d: _as_date(d).month, 1, 1, True),
    "day": (lambda d: _as_date(d).day, 1, 1, True),
    "to_date": (_as_date, 1, 1, True),
    "date_add": (_fn_date_add, 2, 2, True),
    "datediff": (_fn_datediff, 2, 2, True),
    "coalesce": (lambda *a: next((x for x in a if x is not None), None), 1, None, False),
}


# ---------------- compiled expression ----------------

class Expression:
    """A parsed expression bound to an error-code prefix (E_FILTER / E_DERIVE).

    ``evaluate`` accepts any row supporting lookup by column name (petl Record, dict).
    """

    def __init__(self, src: str, *, allow_arith: bool = True, strict: bool = True, prefix: str = "E_EXPR"):
        self.src = src
        self.strict = strict
        self.prefix = prefix
        try:
            self.ast = _expr_parse(src, allow_arith=allow_arith)
        except FaiscaUserError as e:
            if e.code == "E_EXPR_PARSE" and prefix != "E_EXPR":
                raise FaiscaUserError(f"{prefix}_PARSE", e.message, hint=e.hint) from e
            raise

    @property
    def columns(self) -> List[str]:
        seen: List[str] = []
        for name, _ in referenced_columns(self.ast):
            if name not in seen:
                seen.append(name)
        return seen

    def _type_error(self, msg: str):
        return FaiscaUserError(
            f"{self.prefix}_TYPE",
            msg,
            hint="Consider applying Transform('cast', ...) earlier in the pipeline, or set strict=false.",
        )

    def evaluate(self, row: Any) -> Any:
        return self._eval(self.ast, row)

    def _eval(self, node: Any, row: Any) -> Any:
        tag = node[0]
        if tag == "lit":
            return node[1]
        if tag == "col":
            return row[node[1]]
        if tag == "and":
            a = _truth(self._eval(node[1], row))
            if a is False:
                return False
            b = _truth(self._eval(node[2], row))
            if b is False:
                return False
            if a is None or b is None:
                return None
            return True
        if tag == "or":
            a = _truth(self._eval(node[1], row))
            if a is True:
                return True
            b = _truth(self._eval(node[2], row))
            if b is True:
                return True
            if a is None or b is None:
                return None
            return False
        if tag == "not":
            a = _truth(self._eval(node[1], row))
            return None if a is None else (not a)
        if tag == "isnull":
            v = self._eval(node[1], row)
            return (v is not None) if node[2] else (v is None)
        if tag == "cmp":
            return self._compare(node[1], self._eval(node[2], row), self._eval(node[3], row))
        if tag == "neg":
            v = self._eval(node[1], row)
            if v is None:
                return None
            if _num(v):
                return -v
            if _looks_number(v):
                return -_to_float(v)
            if self.strict:
                raise self._type_error(f"Cannot apply unary '-' to {v!r}.")
            return None
        if tag == "bin":
            return self._arith(node[1], self._eval(node[2], row), self._eval(node[3], row))
        if tag == "call":
            return self._call(node[1], [self._eval(a, row) for a in node[2]])
        raise FaiscaUserError(
            f"{self.prefix}_UNSUPPORTED",
            "Unsupported construct in expression.",
            hint="Use literals, column names, + - * /, comparisons, and/or/not, functions and parentheses.",
        )

    def _compare(self, opx: str, a: Any, b: Any) -> Any:
        if a is None or b is None:
            return None

        if _num(a) and _num(b):
            pass
        elif _looks_number(a) and _looks_number(b) and (_num(a) or _num(b)):
            # numeric text against a number, e.g. an uncast csv column
            a, b = _to_float(a), _to_float(b)
        elif isinstance(a, datetime) and isinstance(b, str):
            b = _try_datetime(b)
        elif isinstance(b, datetime) and isinstance(a, str):
            a = _try_datetime(a)
        elif isinstance(a, date) and isinstance(b, str):
            b = _try_date(b)
        elif isinstance(b, date) and isinstance(a, str):
            a = _try_date(a)

        comparable = (
            (_num(a) and _num(b))
            or type(a) is type(b)
        )
        if not comparable:
            if opx == "==":
                return False
            if opx == "!=":
                return True
            if self.strict:
                raise self._type_error(f"Type mismatch in comparison: {a!r} {opx} {b!r}.")
            return None

        if opx == "==":
            return a == b
        if opx == "!=":
            return a != b
        if opx == ">":
            return a > b
        if opx == ">=":
            return a >= b
        if opx == "<":
            return a < b
        return a <= b

    def _arith(self, opx: str, a: Any, b: Any) -> Any:
        if a is None or b is None:
            return None

        if opx == "+" and isinstance(a, str) and isinstance(b, str) and not (
            _looks_number(a) and _looks_number(b)
        ):
            return a + b

        if opx in {"+", "-"} and isinstance(a, date) and _num(b):
            delta = timedelta(days=b)
            return a + delta if opx == "+" else a - delta

        if _looks_number(a) and _looks_number(b):
            if not (_num(a) and _num(b)):
                a, b = _to_float(a), _to_float(b)
            if opx == "+":
                return a + b
            if opx == "-":
                return a - b
            if opx == "*":
                return a * b
            if b == 0:
                return None
            return a / b

        if self.strict:
            raise self._type_error(f"Type mismatch in arithmetic: {a!r} {opx} {b!r}.")
        return None

    def _call(self, fname: str, args: List[Any]) -> Any:
        fn, _, _, propagates_null = FUNCTIONS[fname]
        if propagates_null and any(a is None for a in args):
            return None
        try:
            return fn(*args)
        except (TypeError, ValueError) as e:
            if self.strict:
                raise self._type_error(f"{fname}({', '.join(repr(a) for a in args)}) failed: {e}") from e
            return None

    def __repr__(self) -> str:
        return f"Expression({self.src!r})"


def _truth(v: Any) -> Optional[bool]:
    if v is None:
        return None
    return bool(v)


def _try_datetime(s: str) -> Any:
    try:
        return datetime.fromisoformat(s.strip())
    except ValueError:
        return s


def _try_date(s: str) -> Any:
    try:
        return date.fromisoformat(s.strip())
    except ValueError:
        return s
