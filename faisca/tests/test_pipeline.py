import petl as etl
import pytest

import faisca.models.pipeline as mp
from faisca import FaiscaUserError, Pipeline, RunResult, Sink, Source, StageExecutionError, Transform, read, run
from faisca.models.transforms import TransformImpl, register_transform

SCHEMA = {"fields": [{"name": "id", "type": "string"}, {"name": "age", "type": "integer"}]}


@register_transform("test_addcol")
class _AddCol(TransformImpl):
    @classmethod
    def apply(cls, table, *, params, context):
        return etl.addfield(table, "b", lambda row: params.get("value", 0))

    @classmethod
    def output_schema(cls, input_schema, params):
        fields = input_schema.get("fields", []) if isinstance(input_schema, dict) else []
        return {"fields": [*fields, {"name": "b", "type": "any"}]}


def _make_source(tmp_path, name="clientes.csv", text="id,age\ncliente1,25\ncliente2,30\n", schema=SCHEMA):
    p = tmp_path / name
    p.write_text(text, encoding="utf-8")
    return Source(str(p), schema=schema)


def _make_sink(tmp_path, name="out", **kwargs):
    kwargs.setdefault("type", "csv")
    return Sink(str(tmp_path / name), **kwargs)


# ---------- composition ----------
def test_pipeline_then_validates_step_type(tmp_path):
    pipe = Pipeline(_make_source(tmp_path))
    with pytest.raises(FaiscaUserError) as ex:
        pipe.then("not-a-step")  # type: ignore[arg-type]
    assert ex.value.code == "E_PIPELINE_STEP"


def test_pipeline_then_rejects_steps_after_sink(tmp_path):
    pipe = Pipeline(_make_source(tmp_path)).then(_make_sink(tmp_path))

    with pytest.raises(FaiscaUserError) as ex:
        pipe.then(Transform("test_addcol"))
    assert ex.value.code == "E_PIPELINE_ORDER"

    with pytest.raises(FaiscaUserError) as ex:
        pipe.then(_make_sink(tmp_path, "other"))
    assert ex.value.code == "E_PIPELINE_ORDER"


def test_then_returns_new_pipeline(tmp_path):
    pipe = Pipeline(_make_source(tmp_path))
    longer = pipe.then(Transform("test_addcol"))
    assert pipe.steps == []
    assert len(longer.steps) == 1


def test_source_gt_builds_pipeline(tmp_path):
    src = _make_source(tmp_path)
    pipe = src > Transform("filter", params={"where": "age > 26"})
    assert isinstance(pipe, Pipeline)
    pipe = pipe > _make_sink(tmp_path)
    assert pipe.sink is not None


def test_preflight_rejects_unknown_step_type(tmp_path):
    pipe = Pipeline(_make_source(tmp_path), steps=[object()])
    with pytest.raises(FaiscaUserError) as ex:
        pipe.preflight()
    assert ex.value.code == "E_PIPELINE_STEP_TYPE"


def test_preflight_checks_params_but_not_columns(tmp_path):
    ok = Pipeline(_make_source(tmp_path)).then(Transform("filter", params={"where": "missing > 1"}))
    ok.preflight()

    bad = Pipeline(_make_source(tmp_path)).then(Transform("filter", params={}))
    with pytest.raises(FaiscaUserError) as ex:
        bad.preflight()
    assert ex.value.code == "E_FILTER_PARAMS"


# ---------- run ----------
def test_end_to_end_filter_and_append(tmp_path):
    src = _make_source(tmp_path)
    out = tmp_path / "fresh"
    result = run(src, [Transform("filter", params={"where": "age > 26"})],
                 Sink(str(out), type="csv", mode="append"))

    assert isinstance(result, RunResult)
    assert result.status == "done"
    assert result.ok
    assert result.record_count == 1
    assert result.error is None
    assert result.states == ["idle", "reading", "transforming", "writing", "done"]
    assert list(read(str(out), format="csv", schema=SCHEMA)) == [("id", "age"), ("cliente2", 30)]


def test_run_accepts_plain_specs(tmp_path):
    src = _make_source(tmp_path)
    result = run(
        {"uri": src.uri, "schema": SCHEMA},
        [Transform("derive", params={"new": "older", "expr": "age + 1"})],
        {"uri": str(tmp_path / "out"), "type": "parquet"},
    )
    assert result.raise_for_error() is result
    assert result.record_count == 2
    assert [f["name"] for f in result.schema["fields"]] == ["id", "age", "older"]


def test_run_without_sink_counts_records(tmp_path):
    result = Pipeline(_make_source(tmp_path)).then(Transform("filter", params={"where": "age > 0"})).run()
    assert result.status == "done"
    assert result.record_count == 2
    assert result.states == ["idle", "reading", "transforming", "done"]


def test_run_records_checkpoints(tmp_path):
    pipe = (Pipeline(_make_source(tmp_path))
            .then(Transform("test_addcol", params={"value": 7}))
            .then(_make_sink(tmp_path)))
    result = pipe.run()

    kinds = [c[1]["kind"] for c in result.checkpoints]
    assert kinds == ["transform", "sink"]
    step = result.checkpoints[0][1]
    assert step["header"] == ["id", "age", "b"]
    assert step["preview"][0] == ("cliente1", 25, 7)
    assert result.checkpoints[1][1]["record_count"] == 2


def test_missing_source_is_a_read_failure(tmp_path):
    result = run(str(tmp_path / "nope.csv"), [], None)
    assert result.status == "failed"
    assert result.stage == "read"
    assert isinstance(result.error, StageExecutionError)
    assert result.error.cause.code == "E_SOURCE_NOT_FOUND"
    assert result.states == ["idle", "reading", "failed"]


def test_unknown_column_is_a_transform_failure(tmp_path):
    pipe = Pipeline(_make_source(tmp_path)).then(Transform("select", params={"columns": ["idade"]}))
    result = pipe.run()

    assert result.stage == "transform"
    assert result.error.code == "E_STAGE_TRANSFORM"
    assert result.error.cause.column == "idade"
    assert result.error.cause.index == 0
    assert result.states == ["idle", "reading", "transforming", "failed"]


def test_bad_source_value_surfacing_during_write_is_charged_to_read(tmp_path):
    src = _make_source(tmp_path, text="id,age\ncliente1,25\ncliente2,abc\n")
    result = Pipeline(src).then(_make_sink(tmp_path)).run()

    assert result.status == "failed"
    assert result.stage == "read"
    assert result.error.cause.code == "E_SCHEMA_MISMATCH"
    assert result.states[-2:] == ["writing", "failed"]


def test_expression_error_is_charged_to_transform(tmp_path):
    src = _make_source(tmp_path, text="id,age\ncliente1,25\n", schema=None)
    pipe = Pipeline(src).then(Transform("derive", params={"new": "x", "expr": "id * 2"})).then(_make_sink(tmp_path))
    result = pipe.run()

    assert result.stage == "transform"
    assert result.error.cause.code == "E_DERIVE_TYPE"


def test_invalid_sink_spec_fails_in_writing_state(tmp_path):
    result = run(_make_source(tmp_path), [], {"uri": str(tmp_path / "out"), "type": "csv", "mode": "upsert"})
    assert result.stage == "write"
    assert result.error.cause.code == "E_SINK_MODE"
    assert result.states == ["idle", "reading", "transforming", "writing", "failed"]


def test_filter_dropping_every_row_writes_a_readable_empty_output(tmp_path):
    out = tmp_path / "out"
    result = run(_make_source(tmp_path), [Transform("filter", params={"where": "age > 100"})],
                 Sink(str(out), type="parquet"))

    assert result.ok
    assert result.record_count == 0
    assert list(read(str(out), format="parquet", schema=SCHEMA)) == [("id", "age")]


def test_undecodable_source_bytes_are_charged_to_read(tmp_path):
    p = tmp_path / "clientes.csv"
    good = "".join(f"cliente{i},{i}\n" for i in range(5000))
    p.write_bytes(("id,age\n" + good).encode("utf-8") + b"\xff\xfe,1\n")
    src = Source(str(p), schema=SCHEMA, options={"encoding": "utf-8"})

    result = Pipeline(src).then(_make_sink(tmp_path)).run()

    assert result.stage == "read"
    assert result.error.code == "E_SOURCE_READ"
    assert isinstance(result.error.cause, UnicodeDecodeError)
    assert result.states[-2:] == ["writing", "failed"]


def test_failing_callable_is_charged_to_transform(tmp_path):
    pipe = (Pipeline(_make_source(tmp_path))
            .then(Transform("derive", params={"new": "x", "expr": lambda r: r["age"] / 0}))
            .then(_make_sink(tmp_path)))
    result = pipe.run()

    assert result.stage == "transform"
    assert result.error.code == "E_STAGE_TRANSFORM"
    assert isinstance(result.error.cause, ZeroDivisionError)


def test_sink_failure_is_a_write_failure(tmp_path, monkeypatch):
    def boom(*args, **kwargs):
        raise OSError("disk full")

    monkeypatch.setattr("faisca.models.sinks.write_file", boom)
    result = Pipeline(_make_source(tmp_path)).then(_make_sink(tmp_path)).run()

    assert result.stage == "write"
    assert result.error.code == "E_SINK_WRITE"
    with pytest.raises(StageExecutionError):
        result.raise_for_error()


def test_missing_partition_value_is_a_write_failure(tmp_path):
    src = _make_source(tmp_path, text="id,age\ncliente1,\n")
    result = Pipeline(src).then(_make_sink(tmp_path, partition_by=["age"])).run()
    assert result.stage == "write"
    assert result.error.cause.code == "E_SINK_PARTITION_VALUE"


# ---------- schema ----------
def test_schema_applies_output_schemas(tmp_path):
    pipe = Pipeline(_make_source(tmp_path)).then(Transform("test_addcol"))
    sch = pipe.schema()
    assert [f["name"] for f in sch["fields"]] == ["id", "age", "b"]


def test_lock_schema_preserves_sinks(tmp_path):
    pipe = Pipeline(_make_source(tmp_path)).then(Transform("test_addcol")).then(_make_sink(tmp_path))
    locked = pipe.lock_schema()
    assert isinstance(locked.steps[-1], Sink)
    assert locked.steps[0].output_schema_override["fields"][-1]["name"] == "b"


# ---------- IR / YAML ----------
def test_ir_round_trip(tmp_path):
    pipe = (Pipeline(_make_source(tmp_path))
            .then(Transform("filter", params={"where": "age > 26"}))
            .then(_make_sink(tmp_path, mode="append", partition_by=["id"])))
    ir = pipe.to_ir()

    assert ir["faisca"] == 0
    assert ir["pipeline"]["steps"][-1]["sink"]["mode"] == "append"
    again = Pipeline.from_ir(ir)
    assert again.to_ir() == ir


def test_ir_rejects_callables(tmp_path):
    pipe = Pipeline(_make_source(tmp_path)).then(Transform("filter", params={"where": lambda r: True}))
    with pytest.raises(FaiscaUserError) as ex:
        pipe.to_ir()
    assert ex.value.code == "E_IR_CALLABLE"


def test_from_ir_validations(tmp_path):
    src = _make_source(tmp_path)
    with pytest.raises(FaiscaUserError) as ex:
        Pipeline.from_ir({"faisca": 9, "pipeline": {"start": {"uri": src.uri}}})
    assert ex.value.code == "E_IR_VERSION"

    with pytest.raises(FaiscaUserError) as ex:
        Pipeline.from_ir({"pipeline": {"start": {"uri": src.uri}, "steps": "oops"}})
    assert ex.value.code == "E_IR_STEPS"

    with pytest.raises(FaiscaUserError) as ex:
        Pipeline.from_ir({"pipeline": {"start": {"uri": src.uri}, "steps": [{"unknown": {}}]}})
    assert ex.value.code == "E_IR_STEP"


def test_yaml_round_trip_resolves_relative_paths(tmp_path):
    _make_source(tmp_path)
    cfg = tmp_path / "pipe.yaml"
    cfg.write_text(
        "faisca: 0\n"
        "pipeline:\n"
        "  start:\n"
        "    uri: clientes.csv\n"
        "    schema: {fields: [{name: id, type: string}, {name: age, type: int}]}\n"
        "  steps:\n"
        "    - transform: {op: filter, params: {where: 'age > 26'}}\n"
        "    - sink: {uri: out, type: csv, mode: append}\n",
        encoding="utf-8",
    )

    pipe = Pipeline.load_yaml(cfg)
    assert pipe.start.uri == str(tmp_path / "clientes.csv")
    assert pipe.sink.uri == str(tmp_path / "out")
    assert pipe.run().record_count == 1

    saved = tmp_path / "saved.yaml"
    pipe.save_yaml(saved)
    assert Pipeline.from_yaml(saved).to_ir() == pipe.to_ir()


def test_from_yaml_parse_errors():
    with pytest.raises(FaiscaUserError) as ex:
        Pipeline.from_yaml("pipeline: [unclosed")
    assert ex.value.code == "E_YAML_PARSE"


def test_stage_attribution_helper():
    err = FaiscaUserError("E_SINK_WRITE", "x")
    assert mp._stage_of(err, "read") == "write"
    assert mp._stage_of(FaiscaUserError("E_DERIVE_TYPE", "x"), "write") == "transform"
    assert mp._stage_of(ValueError("x"), "write") == "write"
