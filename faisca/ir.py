"""Dict/YAML intermediate representation of a pipeline.

    faisca: 0
    pipeline:
      start: {uri: clientes.csv, type: csv, schema: {...}}
      steps:
        - transform: {op: filter, params: {where: "age > 26"}}
        - sink: {uri: out, type: parquet, mode: append, partition_by: [uf]}
"""
from __future__ import annotations

from pathlib import Path
from typing import Any, Dict, List, Optional

from faisca.errors import FaiscaUserError
from faisca.models.sinks import Sink
from faisca.models.sources import Source
from faisca.models.transforms import Transform
from faisca.util import _norm_path

IR_VERSION = 0


def _source_to_ir(src: Source) -> Dict[str, Any]:
    d: Dict[str, Any] = {"uri": src.uri}
    if src.type is not None:
        d["type"] = src.type
    if src.schema is not None:
        d["schema"] = src.schema
    if src.options:
        d["options"] = dict(src.options)
    return d


def _sink_to_ir(sink: Sink) -> Dict[str, Any]:
    d: Dict[str, Any] = {"uri": sink.uri, "type": sink.type, "mode": sink.mode}
    if sink.partition_by:
        d["partition_by"] = list(sink.partition_by)
    if sink.options:
        d["options"] = dict(sink.options)
    return d


def _transform_to_ir(t: Transform) -> Dict[str, Any]:
    for k, v in t.params.items():
        if callable(v):
            raise FaiscaUserError(
                "E_IR_CALLABLE",
                f"Transform '{t.op}' has a Python callable in params.{k}; it cannot be serialized.",
                hint="Use an expression string instead, e.g. {'where': 'age > 18'}.",
            )
    d: Dict[str, Any] = {"op": t.op}
    if t.params:
        d["params"] = dict(t.params)
    if t.output_schema_override is not None:
        d["output_schema"] = t.output_schema_override
    return d


def _source_from_ir(d: Dict[str, Any]) -> Source:
    if not isinstance(d, dict):
        raise FaiscaUserError(
            "E_IR_SOURCE",
            "IR source must be a mapping.",
            hint="Example: start: {uri: clientes.csv, type: csv}",
        )
    uri = d.get("uri")
    if not isinstance(uri, str) or not uri:
        raise FaiscaUserError(
            "E_IR_SOURCE",
            "IR source requires a non-empty 'uri' string.",
            hint="Example: start: {uri: clientes.csv}",
        )
    return Source(
        uri,
        type=d.get("type"),
        schema=d.get("schema"),
        options=d.get("options") or {},
    )


def _sink_from_ir(d: Dict[str, Any]) -> Sink:
    if not isinstance(d, dict):
        raise FaiscaUserError(
            "E_IR_SINK",
            "IR sink must be a mapping.",
            hint="Example: {sink: {uri: out, type: parquet}}",
        )
    uri = d.get("uri")
    if not isinstance(uri, str) or not uri:
        raise FaiscaUserError(
            "E_IR_SINK",
            "IR sink requires a non-empty 'uri' string.",
            hint="Example: {sink: {uri: out, type: parquet}}",
        )
    return Sink(
        uri,
        type=d.get("type"),
        mode=d.get("mode") or "overwrite",
        partition_by=d.get("partition_by") or (),
        options=d.get("options") or {},
    )


def _transform_from_ir(d: Dict[str, Any]) -> Transform:
    if not isinstance(d, dict):
        raise FaiscaUserError(
            "E_IR_TRANSFORM",
            "IR transform must be a mapping.",
            hint="Example: - transform: {op: filter, params: {where: 'age > 18'}}",
        )
    op = d.get("op")
    if not isinstance(op, str) or not op:
        raise FaiscaUserError(
            "E_IR_TRANSFORM",
            "IR transform requires a non-empty 'op' string.",
            hint="Example: - transform: {op: filter, params: {where: 'age > 18'}}",
        )
    params = d.get("params") or {}
    if not isinstance(params, dict):
        raise FaiscaUserError(
            "E_IR_TRANSFORM",
            "IR transform 'params' must be a mapping.",
            hint="Example: params: {where: \"age >= 30\"}",
        )
    return Transform(op, params=dict(params), output_schema_override=d.get("output_schema"))


def _normalize_ir(ir: Any, *, base_dir: Optional[Path]) -> Dict[str, Any]:
    """Normalize IR structure and paths.

    Guarantees:
      - returns a dict with keys: faisca, pipeline
      - pipeline.start.uri and every sink.uri are resolved against base_dir
      - a string schema reference is resolved against base_dir
      - missing/None options become {}
      - missing transform params become {}

    This does not change semantics; it makes the IR portable and deterministic.
    """
    if not isinstance(ir, dict):
        raise FaiscaUserError(
            "E_IR_ROOT",
            "IR must be a mapping at the root.",
            hint="Expected keys: faisca, pipeline.",
        )

    version = ir.get("faisca", IR_VERSION)
    if version != IR_VERSION:
        raise FaiscaUserError(
            "E_IR_VERSION",
            f"Unsupported IR version: {version!r}.",
            hint=f"Supported: faisca: {IR_VERSION}",
        )

    pipe = ir.get("pipeline")
    if not isinstance(pipe, dict):
        raise FaiscaUserError(
            "E_IR_PIPELINE",
            "IR requires a 'pipeline' mapping.",
            hint="Example: {faisca: 0, pipeline: {start: {...}, steps: [...]}}",
        )

    start = pipe.get("start")
    if not isinstance(start, dict):
        raise FaiscaUserError(
            "E_IR_SOURCE",
            "IR pipeline.start must be a mapping.",
            hint="Example: start: {uri: clientes.csv, type: csv}",
        )
    start2: Dict[str, Any] = dict(start)
    if isinstance(start2.get("uri"), str):
        start2["uri"] = _norm_path(start2["uri"], base_dir=base_dir)
    if isinstance(start2.get("schema"), str):
        start2["schema"] = _norm_path(start2["schema"], base_dir=base_dir)
    if start2.get("options") is None:
        start2.pop("options", None)

    steps = pipe.get("steps")
    if steps is None:
        steps = []
    if not isinstance(steps, list):
        raise FaiscaUserError(
            "E_IR_STEPS",
            "IR pipeline.steps must be a list.",
            hint="Example: steps: [{transform: {...}}, {sink: {...}}]",
        )

    norm_steps: List[Dict[str, Any]] = []
    for i, item in enumerate(steps):
        if not isinstance(item, dict) or len(item) != 1:
            raise FaiscaUserError(
                "E_IR_STEP",
                f"IR step #{i} must be a mapping with exactly one key: 'transform' or 'sink'.",
                hint=str(item),
            )

        if "sink" in item:
            s = item["sink"]
            if not isinstance(s, dict):
                raise FaiscaUserError(
                    "E_IR_SINK",
                    "IR sink must be a mapping.",
                    hint="Example: - sink: {uri: out, type: parquet}",
                )
            s2: Dict[str, Any] = dict(s)
            if isinstance(s2.get("uri"), str):
                s2["uri"] = _norm_path(s2["uri"], base_dir=base_dir)
            if s2.get("options") is None:
                s2.pop("options", None)
            norm_steps.append({"sink": s2})
            continue

        if "transform" in item:
            t = item["transform"]
            if not isinstance(t, dict):
                raise FaiscaUserError(
                    "E_IR_TRANSFORM",
                    "IR transform must be a mapping.",
                    hint="Example: - transform: {op: select, params: {...}}",
                )
            t2: Dict[str, Any] = dict(t)
            if t2.get("params") is None:
                t2["params"] = {}
            norm_steps.append({"transform": t2})
            continue

        raise FaiscaUserError(
            "E_IR_STEP",
            f"IR step #{i} must be 'transform' or 'sink'.",
            hint="Example: {transform: {op: select, params: {...}}}",
        )

    return {"faisca": IR_VERSION, "pipeline": {"start": start2, "steps": norm_steps}}
