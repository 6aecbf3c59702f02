"""Pipeline definition loading, expressions and planning."""

from pipewright.definition.graph import RunPlan, plan_run
from pipewright.definition.loader import (
    PipelineDocument,
    PreparedRun,
    build_run_snapshot,
    compile_pipeline,
    load_document,
    prepare_run,
)
from pipewright.definition.snapshot import RunSnapshot

__all__ = [
    "PipelineDocument",
    "PreparedRun",
    "RunPlan",
    "RunSnapshot",
    "build_run_snapshot",
    "compile_pipeline",
    "load_document",
    "plan_run",
    "prepare_run",
]
