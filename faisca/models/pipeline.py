from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Tuple, Union

import petl as etl
import yaml

from faisca.errors import (
    ColumnNotFoundError,
    FaiscaUserError,
    MissingPartitionValueError,
    NotFoundError,
    SchemaMismatchError,
    StageExecutionError,
)
from faisca.ir import (
    IR_VERSION,
    _normalize_ir,
    _sink_from_ir,
    _sink_to_ir,
    _source_from_ir,
    _source_to_ir,
    _transform_from_ir,
    _transform_to_ir,
)
from faisca.models.context import PipelineContext
from faisca.models.sinks import Sink
from faisca.models.sources import Source
from faisca.models.transforms import TRANSFORM_REGISTRY, Transform
from faisca.schema import FrictionlessSchema

logger = logging.getLogger(__name__)

_STATE_OF_STAGE = {"read": "reading", "transform": "transforming", "write": "writing"}


def _stage_of(e: BaseException, current: str) -> str:
    """The stage an error belongs to.

    petl is lazy, so rows are only pulled by the sink; a bad value in the source or an
    expression error in a filter surfaces while writing and must be charged to its origin.
    """
    if isinstance(e, StageExecutionError):
        return e.stage
    if isinstance(e, (NotFoundError, SchemaMismatchError)):
        return "read"
    if isinstance(e, MissingPartitionValueError):
        return "write"
    if isinstance(e, ColumnNotFoundError):
        return "write" if e.op == "sink" else "transform"
    if isinstance(e, FaiscaUserError):
        code = e.code or ""
        if code.startswith(("E_SOURCE_", "E_SCHEMA_")):
            return "read"
        if code.startswith("E_SINK_"):
            return "write"
        return "transform"
    return current


def _wrap(e: BaseException, stage: str) -> StageExecutionError:
    if isinstance(e, StageExecutionError) and e.stage == stage:
        return e
    if isinstance(e, FaiscaUserError):
        return StageExecutionError(stage, e, message=f"{stage} stage failed: [{e.code}] {e.message}", hint=e.hint)
    code = "E_SOURCE_READ" if stage == "read" else None
    return StageExecutionError(stage, e, code=code)


@dataclass
class RunResult:
    status: str
    record_count: int = 0
    error: Optional[StageExecutionError] = None
    stage: Optional[str] = None
    states: List[str] = field(default_factory=list)
    checkpoints: List[Tuple[str, Dict[str, Any]]] = field(default_factory=list)
    schema: Optional[FrictionlessSchema] = None

    @property
    def ok(self) -> bool:
        return self.status == "done"

    def raise_for_error(self) -> "RunResult":
        if self.error is not None:
            raise self.error
        return self


@dataclass
class Pipeline:
    """
    A linear pipeline: Source -> Transform* -> Sink?
    """
    start: Source
    steps: List[Union[Transform, Sink]] = field(default_factory=list)

    def then(self, step: Union[Transform, Sink]) -> "Pipeline":
        if not isinstance(step, (Transform, Sink)):
            raise FaiscaUserError(
                "E_PIPELINE_STEP",
                "Pipeline.then expects a Transform or Sink.",
                hint="Example: pipe.then(Transform('select', params={...})) or pipe.then(Sink('out', type='csv')).",
            )

        if self.sink is not None:
            raise FaiscaUserError(
                "E_PIPELINE_ORDER",
                f"Cannot add {type(step).__name__} after the Sink; a pipeline ends with at most one Sink.",
                hint="Move the Sink to the end of the pipeline, or start a new Pipeline from the written data.",
            )

        return Pipeline(self.start, self.steps + [step])

    def __gt__(self, other: Any) -> "Pipeline":
        return self.then(other)

    @property
    def transforms(self) -> List[Transform]:
        return [s for s in self.steps if isinstance(s, Transform)]

    @property
    def sink(self) -> Optional[Sink]:
        for s in self.steps:
            if isinstance(s, Sink):
                return s
        return None

    def __str__(self) -> str:
        parts = [f"Pipeline(start={self.start.uri})"]
        for s in self.steps:
            parts.append(f"  -> {s}")
        return "\n".join(parts)

    def preflight(self) -> None:
        """
        Validate the pipeline definition before any data is pulled.

        This checks:
        - the source location still exists
        - every op is registered and its params are well formed
        - step ordering (transforms first, one sink, last)

        Column references are checked later, when each op is applied.
        """
        if not os.path.exists(self.start.uri):
            raise NotFoundError(self.start.uri)

        for i, step in enumerate(self.steps):
            if isinstance(step, Transform):
                impl = TRANSFORM_REGISTRY.get(step.op)
                if impl is None:
                    raise FaiscaUserError(
                        "E_OP_NOT_IMPL",
                        f"Transform op '{step.op}' (step #{i}) is not implemented.",
                        hint="Supported ops: " + ", ".join(sorted(TRANSFORM_REGISTRY.keys())),
                    )
                impl.validate_params(step.params)
            elif isinstance(step, Sink):
                if i != len(self.steps) - 1:
                    raise FaiscaUserError(
                        "E_PIPELINE_ORDER",
                        f"Sink at step #{i} is not the last step.",
                        hint="Reorder the pipeline so that the sink comes last.",
                    )
            else:
                raise FaiscaUserError(
                    "E_PIPELINE_STEP_TYPE",
                    f"Pipeline step #{i} has unknown type {type(step).__name__}.",
                    hint="Add steps with Pipeline.then(Transform(...)) or Pipeline.then(Sink(...)).",
                )

    def run(self) -> RunResult:
        """Execute the pipeline.

        Stage failures do not raise; they come back as RunResult(status='failed', error=...)
        where error is a StageExecutionError naming the stage. Use raise_for_error() to raise.
        """
        ctx = PipelineContext()
        states = ["idle"]
        stage = "read"

        def enter(s: str) -> None:
            nonlocal stage
            stage = s
            states.append(_STATE_OF_STAGE[s])
            logger.info("pipeline %s: %s", self.start.uri, _STATE_OF_STAGE[s])

        record_count = 0
        try:
            enter("read")
            self.preflight()
            ctx.schema = self.start.resolved_schema()
            table = self.start.table()
            # pulls the header so missing files and schema columns fail here
            etl.header(table)

            enter("transform")
            for i, step in enumerate(self.transforms):
                table = step.apply(table, context=ctx, index=i)
                # keep a best-effort running schema for the sink and for RunResult
                ctx.schema = step.output_schema(ctx.schema)

                # Deterministic checkpoint: header + up to 5 data rows after each transform.
                ctx.checkpoints.append(
                    (
                        "step",
                        {
                            "index": i,
                            "kind": "transform",
                            "op": step.op,
                            "params": {k: v for k, v in step.params.items() if not callable(v)},
                            "header": list(etl.header(table)),
                            "preview": list(etl.data(etl.head(table, 5))),
                        },
                    )
                )

            sink = self.sink
            if sink is None:
                record_count = etl.nrows(table)
            else:
                enter("write")
                result = sink.write(table, schema=ctx.schema)
                record_count = result.record_count
                ctx.checkpoints.append(
                    (
                        "step",
                        {
                            "index": len(self.steps) - 1,
                            "kind": "sink",
                            "uri": sink.uri,
                            "type": sink.type,
                            "mode": sink.mode,
                            "partition_by": list(sink.partition_by),
                            "record_count": result.record_count,
                            "files": list(result.files),
                        },
                    )
                )
        except Exception as e:
            failed_stage = _stage_of(e, stage)
            err = _wrap(e, failed_stage)
            states.append("failed")
            logger.error("pipeline %s failed in %s stage: %s", self.start.uri, failed_stage, err)
            return RunResult(
                status="failed",
                error=err,
                stage=failed_stage,
                states=states,
                checkpoints=ctx.checkpoints,
                schema=ctx.schema,
            )

        states.append("done")
        logger.info("pipeline %s: done (%d record(s))", self.start.uri, record_count)
        return RunResult(
            status="done",
            record_count=record_count,
            states=states,
            checkpoints=ctx.checkpoints,
            schema=ctx.schema,
        )

    def schema(self, *, sample_rows: int = 200, force: bool = False) -> Optional[FrictionlessSchema]:
        """Infer the pipeline's output schema without executing the full pipeline.

        - Uses Source.peek_schema() (bounded sample)
        - Applies each Transform's output_schema(...) in order
        - Returns None if it cannot be determined statically
        """
        sch: Optional[FrictionlessSchema] = self.start.peek_schema(sample_rows=sample_rows, force=force)
        for step in self.transforms:
            sch = step.output_schema(sch)
        return sch

    def lock_schema(self, sample_rows: int = 200, force: bool = False) -> "Pipeline":
        """A copy whose transforms carry their statically inferred output schema."""
        sch = self.start.peek_schema(sample_rows=sample_rows, force=force)
        locked_steps: List[Union[Transform, Sink]] = []
        for step in self.steps:
            if isinstance(step, Transform):
                sch = step.output_schema(sch)
                locked_steps.append(Transform(step.op, params=dict(step.params), output_schema_override=sch))
            else:
                locked_steps.append(step)
        return Pipeline(self.start, locked_steps)

    def to_ir(self) -> Dict[str, Any]:
        """Serialize this pipeline to a YAML-friendly IR (dict)."""
        steps_ir: List[Dict[str, Any]] = []
        for s in self.steps:
            if isinstance(s, Transform):
                steps_ir.append({"transform": _transform_to_ir(s)})
            else:
                steps_ir.append({"sink": _sink_to_ir(s)})
        return {
            "faisca": IR_VERSION,
            "pipeline": {
                "start": _source_to_ir(self.start),
                "steps": steps_ir,
            },
        }

    @classmethod
    def from_ir(cls, ir: Dict[str, Any], *, base_dir: Optional[Path] = None) -> "Pipeline":
        """Deserialize a pipeline from IR (dict)."""
        ir = _normalize_ir(ir, base_dir=base_dir)
        pipe = ir["pipeline"]

        out = cls(_source_from_ir(pipe["start"]))
        for item in pipe["steps"]:
            if "transform" in item:
                out = out.then(_transform_from_ir(item["transform"]))
            else:
                out = out.then(_sink_from_ir(item["sink"]))
        return out

    def to_yaml(
        self,
        path: Optional[Union[str, Path]] = None,
        *,
        lock_schema: bool = False,
        sample_rows: int = 200,
        force: bool = False,
    ) -> str:
        """Dump IR to YAML string. If `path` is provided, also write the file."""
        pipe = self.lock_schema(sample_rows=sample_rows, force=force) if lock_schema else self
        text = yaml.safe_dump(pipe.to_ir(), sort_keys=False)
        if path is not None:
            Path(path).write_text(text, encoding="utf-8")
        return text

    @classmethod
    def from_yaml(cls, text_or_path: Union[str, Path], *, base_dir: Optional[Path] = None) -> "Pipeline":
        """Load pipeline from YAML string or file path."""
        text = str(text_or_path)
        if isinstance(text_or_path, Path) or ("\n" not in text and text.endswith((".yaml", ".yml"))):
            p = Path(text_or_path)
            if not p.exists():
                raise NotFoundError(str(p), code="E_YAML_NOT_FOUND", hint="Pass a YAML file path or YAML text.")
            base_dir = base_dir or p.parent
            text = p.read_text(encoding="utf-8")
        try:
            ir = yaml.safe_load(text)
        except yaml.YAMLError as e:
            raise FaiscaUserError(
                "E_YAML_PARSE",
                f"Failed to parse YAML: {e}",
                hint="Check indentation and quoting.",
            ) from e
        return cls.from_ir(ir, base_dir=base_dir)

    def save_yaml(self, path: Union[str, Path], *, lock_schema: bool = False, sample_rows: int = 200,
                  force: bool = False) -> None:
        """Write YAML IR to a file."""
        self.to_yaml(path, lock_schema=lock_schema, sample_rows=sample_rows, force=force)

    @classmethod
    def load_yaml(cls, path: Union[str, Path]) -> "Pipeline":
        """Load YAML IR from a file."""
        p = Path(path)
        return cls.from_yaml(p.read_text(encoding="utf-8"), base_dir=p.parent)


def _as_source(spec: Any) -> Source:
    if isinstance(spec, Source):
        return spec
    if isinstance(spec, dict):
        return _source_from_ir(spec)
    return Source(spec)


def _as_sink(spec: Any) -> Sink:
    if isinstance(spec, Sink):
        return spec
    if isinstance(spec, dict):
        return _sink_from_ir(spec)
    return Sink(spec)


def run(read_spec: Any, ops: Sequence[Transform] = (), write_spec: Any = None) -> RunResult:
    """Read, transform and write in one call.

    read_spec / write_spec: a Source / Sink, a location, or an IR mapping like {uri: ..., type: ...}.
    Invalid specs are reported as a failed RunResult for the stage they belong to.
    """
    states = ["idle"]
    try:
        source = _as_source(read_spec)
    except FaiscaUserError as e:
        return _failed_early(e, "read", states)

    pipe = Pipeline(source)
    try:
        for op in ops:
            pipe = pipe.then(op)
    except FaiscaUserError as e:
        return _failed_early(e, "transform", states)

    if write_spec is not None:
        try:
            pipe = pipe.then(_as_sink(write_spec))
        except FaiscaUserError as e:
            return _failed_early(e, "write", states)

    return pipe.run()


def _failed_early(e: FaiscaUserError, stage: str, states: List[str]) -> RunResult:
    err = _wrap(e, stage)
    logger.error("pipeline failed before running (%s): %s", stage, err)
    # walk the state machine up to the stage that failed
    stages = list(_STATE_OF_STAGE)
    reached = [_STATE_OF_STAGE[s] for s in stages[: stages.index(stage) + 1]]
    return RunResult(status="failed", error=err, stage=stage, states=states + reached + ["failed"])


__all__ = ["Pipeline", "PipelineContext", "RunResult", "run"]
