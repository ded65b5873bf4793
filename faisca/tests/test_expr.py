from datetime import date

import pytest

from faisca.errors import FaiscaUserError
from faisca.expr import Expression


def _ev(src, **row):
    return Expression(src).evaluate(row)


def test_columns_are_collected_once_in_order():
    assert Expression("b > 1 and a < b or concat(c, a) == 'x'").columns == ["b", "a", "c"]


def test_three_valued_logic():
    assert _ev("age > 18", age=None) is None
    assert _ev("age > 18 and x", age=None, x=False) is False
    assert _ev("age > 18 or x", age=None, x=True) is True
    assert _ev("age > 18 or x", age=None, x=False) is None
    assert _ev("not (age > 18)", age=None) is None


def test_is_null_and_is_not_null():
    assert _ev("a is null", a=None) is True
    assert _ev("a is not null", a=None) is False


def test_arithmetic_precedence_and_unary_minus():
    assert _ev("a + b * 2", a=1, b=3) == 7
    assert _ev("-(a - 5)", a=2) == 3


def test_string_concatenation_with_plus():
    assert _ev("first + ' ' + last", first="Ana", last="Lima") == "Ana Lima"


def test_date_comparison_against_iso_literal():
    assert _ev("d >= '2024-01-01'", d=date(2024, 3, 1)) is True


def test_date_plus_days():
    assert _ev("d + 1", d=date(2024, 2, 28)) == date(2024, 2, 29)


def test_functions():
    assert _ev("substring(s, 2, 3)", s="abcdef") == "bcd"
    assert _ev("replace(s, 'a', 'o')", s="banana") == "bonono"
    assert _ev("length(s)", s="abc") == 3
    assert _ev("round(x, 1)", x=2.25) == 2.3
    assert _ev("floor(x) + ceil(x)", x=1.5) == 3
    assert _ev("abs(x)", x=-4) == 4
    assert _ev("datediff(a, b)", a="2024-03-01", b="2024-02-01") == 29
    assert _ev("year(d)", d="2023-07-04") == 2023
    assert _ev("coalesce(a, b, 'z')", a=None, b=None) == "z"
    assert _ev("upper(a)", a=None) is None


def test_unknown_function_and_wrong_arity():
    with pytest.raises(FaiscaUserError) as ex:
        Expression("nope(a)")
    assert ex.value.code == "E_EXPR_FUNCTION"
    with pytest.raises(FaiscaUserError) as ex:
        Expression("upper(a, b)")
    assert ex.value.code == "E_EXPR_FUNCTION"


def test_parse_error_uses_prefix():
    with pytest.raises(FaiscaUserError) as ex:
        Expression("a >", prefix="E_DERIVE")
    assert ex.value.code == "E_DERIVE_PARSE"


def test_mismatched_equality_is_false_not_an_error():
    assert _ev("a == 1", a="x") is False
    assert _ev("a != 1", a="x") is True


def test_non_strict_type_errors_become_null():
    expr = Expression("a * 2", strict=False)
    assert expr.evaluate({"a": "x"}) is None
    with pytest.raises(FaiscaUserError) as ex:
        Expression("a * 2").evaluate({"a": "x"})
    assert ex.value.code == "E_EXPR_TYPE"
