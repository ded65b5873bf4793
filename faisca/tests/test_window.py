import petl as etl
import pytest
from petl.util.base import Table

from faisca import ColumnNotFoundError, FaiscaUserError, Transform


def _window(data, **params):
    return list(Transform("window", params=params).apply(etl.wrap(data)))


def test_rank_leaves_gaps_after_ties():
    out = _window([("v",), (10,), (10,), (20,)], kind="rank", order_by=["v"], target="r")
    assert out == [("v", "r"), (10, 1), (10, 1), (20, 3)]


def test_dense_rank_and_row_number():
    data = [("v",), (10,), (10,), (20,)]
    assert [r[1] for r in _window(data, kind="dense_rank", order_by=["v"], target="r")[1:]] == [1, 1, 2]
    assert [r[1] for r in _window(data, kind="row_number", order_by=["v"], target="r")[1:]] == [1, 2, 3]


def test_ties_keep_input_order():
    data = [("id", "v"), ("a", 1), ("b", 1), ("c", 0)]
    out = _window(data, kind="row_number", order_by=["v"], target="rn")
    assert out[1:] == [("c", 0, 1), ("a", 1, 2), ("b", 1, 3)]


def test_partitions_are_emitted_in_first_appearance_order():
    data = [("g", "v"), ("b", 3), ("a", 2), ("b", 1)]
    out = _window(data, kind="row_number", partition_by=["g"], order_by=["v"], target="rn")
    assert out[1:] == [("b", 1, 1), ("b", 3, 2), ("a", 2, 1)]


def test_descending_order_puts_nulls_last():
    data = [("v",), (None,), (5,), (7,)]
    out = _window(data, kind="row_number", order_by=["v desc"], target="rn")
    assert out[1:] == [(7, 1), (5, 2), (None, 3)]


def test_lag_and_lead():
    data = [("g", "d", "v"), ("x", 1, 10), ("x", 2, 20), ("x", 3, 30), ("y", 1, 5)]
    lag = _window(data, kind="lag", partition_by=["g"], order_by=["d"], target="v")
    assert lag[0] == ("g", "d", "v", "lag_v")
    assert [r[3] for r in lag[1:]] == [None, 10, 20, None]

    lead = _window(data, kind="lead", partition_by=["g"], order_by=["d"], target="v", offset=2, default=0,
                   new="ahead")
    assert lead[0][-1] == "ahead"
    assert [r[3] for r in lead[1:]] == [30, 0, 0, 0]


def test_aggregates_are_broadcast_per_partition():
    data = [("g", "v"), ("x", 1), ("x", 3), ("y", None), ("y", 4)]
    s = _window(data, kind="sum", partition_by=["g"], target="v")
    assert [r[2] for r in s[1:]] == [4, 4, 4, 4]
    avg = _window(data, kind="avg", partition_by=["g"], target="v")
    assert [r[2] for r in avg[1:]] == [2.0, 2.0, 4.0, 4.0]
    cnt = _window(data, kind="count", partition_by=["g"], target="v")
    assert [r[2] for r in cnt[1:]] == [2, 2, 1, 1]
    mx = _window(data, kind="max", partition_by=["g"], target="v", new="v")
    assert mx[0] == ("g", "v")
    assert [r[1] for r in mx[1:]] == [3, 3, 4, 4]


def test_sum_over_text_fails():
    t = Transform("window", params={"kind": "sum", "target": "v"})
    out = t.apply(etl.wrap([("v",), ("a",)]))
    with pytest.raises(FaiscaUserError) as ex:
        list(out)
    assert ex.value.code == "E_WINDOW_TYPE"


def test_window_params_validation():
    with pytest.raises(FaiscaUserError) as ex:
        Transform("window", params={"kind": "ntile", "target": "v"}).apply(etl.wrap([("v",), (1,)]))
    assert ex.value.code == "E_WINDOW_PARAMS"

    with pytest.raises(FaiscaUserError) as ex:
        Transform("window", params={"kind": "lag", "target": "v", "offset": -1}).apply(etl.wrap([("v",), (1,)]))
    assert ex.value.code == "E_WINDOW_PARAMS"


def test_window_unknown_order_column():
    t = Transform("window", params={"kind": "rank", "order_by": ["score desc"], "target": "r"})
    with pytest.raises(ColumnNotFoundError) as ex:
        t.apply(etl.wrap([("v",), (1,)]))
    assert ex.value.column == "score"


def test_window_output_schema():
    sch = {"fields": [{"name": "v", "type": "integer", "nullable": True}]}
    out = Transform("window", params={"kind": "avg", "target": "v"}).output_schema(sch)
    assert out["fields"][-1]["name"] == "avg_v"
    assert out["fields"][-1]["type"] == "number"
    out = Transform("window", params={"kind": "rank", "order_by": ["v"], "target": "r"}).output_schema(sch)
    assert out["fields"][-1]["type"] == "integer"


def test_window_sorts_its_input_once():
    pulls = []

    def rows():
        pulls.append(1)
        yield ("v",)
        yield from [(3,), (1,), (2,)]

    class _Counting(Table):
        def __iter__(self):
            return rows()

    out = Transform("window", params={"kind": "row_number", "order_by": ["v"], "target": "rn"}).apply(_Counting())
    before = len(pulls)
    assert list(etl.head(out, 1)) == [("v", "rn"), (1, 1)]
    assert list(out) == [("v", "rn"), (1, 1), (2, 2), (3, 3)]
    assert etl.nrows(out) == 3
    assert len(pulls) == before + 1
