"""Dependency graph and run planning.

The declared graph has two levels: stages depend on stages, and jobs depend
on sibling jobs within their stage. Both are validated (unknown names,
cycles) before any condition is evaluated, then conditions decide which
nodes are active for the run and dependencies on excluded nodes are pruned.
"""

import logging
from collections import deque
from dataclasses import dataclass, field, replace
from typing import Any, Iterator, Optional

from pipewright.core.constants import NodeKind
from pipewright.core.exceptions import ConfigurationError
from pipewright.core.models import JobDef, PipelineDefinition, StageDef
from pipewright.definition.expressions import evaluate_condition
from pipewright.definition.snapshot import RunSnapshot


logger = logging.getLogger(__name__)


# ============================================================================
# Node ids
# ============================================================================

def stage_id(stage: str) -> str:
    return stage


def job_id(stage: str, job: str) -> str:
    return f"{stage}/{job}"


def step_id(stage: str, job: str, index: int) -> str:
    return f"{stage}/{job}/{index + 1:02d}"


def job_step_ids(stage: str, job: JobDef) -> list[str]:
    """Step node ids of a planned job, numbered by declared position."""
    return [
        step_id(stage, job.name, index if step.position is None else step.position)
        for index, step in enumerate(job.steps)
    ]


# ============================================================================
# DAG helpers
# ============================================================================

def build_dag(
    dependencies: dict[str, list[str]],
    *,
    scope: str = "pipeline",
) -> tuple[dict[str, set[str]], dict[str, int]]:
    """Build adjacency and in-degree maps from a name -> dependencies mapping.

    Raises:
        ConfigurationError: If a node depends on an unknown node or itself
    """
    names = set(dependencies)
    adjacency: dict[str, set[str]] = {name: set() for name in names}
    indegree: dict[str, int] = {name: 0 for name in names}

    for name, deps in dependencies.items():
        for dep in deps:
            if dep == name:
                raise ConfigurationError(f"'{name}' in {scope} depends on itself")
            if dep not in names:
                raise ConfigurationError(
                    f"'{name}' in {scope} depends on unknown '{dep}'. "
                    f"Known: {', '.join(sorted(names))}"
                )
            # Edge dep -> name (dep must finish first)
            if name not in adjacency[dep]:
                adjacency[dep].add(name)
                indegree[name] += 1

    return adjacency, indegree


def topo_levels(
    adjacency: dict[str, set[str]],
    indegree: dict[str, int],
    *,
    scope: str = "pipeline",
) -> list[list[str]]:
    """Group nodes into levels; every node's dependencies sit in earlier levels.

    Raises:
        ConfigurationError: If the graph has a cycle, naming the nodes involved
    """
    indegree = dict(indegree)
    queue = deque(sorted(n for n, d in indegree.items() if d == 0))

    levels: list[list[str]] = []
    processed = 0

    while queue:
        level: list[str] = []
        for _ in range(len(queue)):
            node = queue.popleft()
            level.append(node)
            processed += 1
            for child in sorted(adjacency.get(node, set())):
                indegree[child] -= 1
                if indegree[child] == 0:
                    queue.append(child)
        levels.append(level)

    if processed != len(indegree):
        remaining = sorted(n for n, d in indegree.items() if d > 0)
        raise ConfigurationError(
            f"Dependency cycle in {scope} involving: {', '.join(remaining)}"
        )

    return levels


def dependency_levels(
    dependencies: dict[str, list[str]],
    *,
    scope: str = "pipeline",
) -> list[list[str]]:
    adjacency, indegree = build_dag(dependencies, scope=scope)
    return topo_levels(adjacency, indegree, scope=scope)


def validate_definition(definition: PipelineDefinition) -> None:
    """Check stage and job dependency graphs.

    Raises:
        ConfigurationError: On unknown dependencies or cycles
    """
    dependency_levels(
        {stage.name: stage.depends_on for stage in definition.stages},
        scope=f"pipeline '{definition.name}'",
    )
    for stage in definition.stages:
        dependency_levels(
            {job.name: job.depends_on for job in stage.jobs},
            scope=f"stage '{stage.name}'",
        )


# ============================================================================
# Plan
# ============================================================================

@dataclass(frozen=True)
class PlannedNode:
    """One stage, job or step a run will track."""
    node_id: str
    kind: NodeKind
    name: str
    parent_id: Optional[str] = None
    required: bool = True


@dataclass
class RunPlan:
    """Active subgraph of a definition for one run."""
    pipeline: str
    stages: list[StageDef] = field(default_factory=list)
    excluded: list[str] = field(default_factory=list)

    def get_stage(self, name: str) -> Optional[StageDef]:
        for stage in self.stages:
            if stage.name == name:
                return stage
        return None

    def get_job(self, stage: str, job: str) -> Optional[JobDef]:
        found = self.get_stage(stage)
        return found.get_job(job) if found else None

    def stage_levels(self) -> list[list[str]]:
        return dependency_levels({s.name: s.depends_on for s in self.stages})

    def iter_nodes(self) -> Iterator[PlannedNode]:
        """Yield every stage, job and step node in definition order."""
        for stage in self.stages:
            yield PlannedNode(
                node_id=stage_id(stage.name),
                kind=NodeKind.STAGE,
                name=stage.name,
                required=stage.required,
            )
            for job in stage.jobs:
                yield PlannedNode(
                    node_id=job_id(stage.name, job.name),
                    kind=NodeKind.JOB,
                    name=job.name,
                    parent_id=stage_id(stage.name),
                    required=stage.required,
                )
                for node_id, step in zip(job_step_ids(stage.name, job), job.steps):
                    yield PlannedNode(
                        node_id=node_id,
                        kind=NodeKind.STEP,
                        name=step.name,
                        parent_id=job_id(stage.name, job.name),
                        required=stage.required,
                    )

    @property
    def job_count(self) -> int:
        return sum(len(stage.jobs) for stage in self.stages)

    def to_dict(self) -> dict[str, Any]:
        return {
            "pipeline": self.pipeline,
            "stages": [stage.to_dict() for stage in self.stages],
            "excluded": list(self.excluded),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "RunPlan":
        return cls(
            pipeline=data["pipeline"],
            stages=[StageDef.from_dict(s) for s in data.get("stages", [])],
            excluded=list(data.get("excluded", [])),
        )


def _plan_stage(stage: StageDef, snapshot: RunSnapshot, excluded: list[str]) -> StageDef:
    active_jobs: list[JobDef] = []
    for job in stage.jobs:
        if not evaluate_condition(job.condition, snapshot):
            excluded.append(job_id(stage.name, job.name))
            continue

        active_steps = []
        for index, step in enumerate(job.steps):
            if evaluate_condition(step.condition, snapshot):
                active_steps.append(replace(step, position=index))
            else:
                excluded.append(step_id(stage.name, job.name, index))
        active_jobs.append(replace(job, steps=active_steps))

    names = {job.name for job in active_jobs}
    pruned_jobs = []
    for job in active_jobs:
        kept = [dep for dep in job.depends_on if dep in names]
        if len(kept) != len(job.depends_on):
            logger.debug(
                f"Pruned dependencies of {job_id(stage.name, job.name)} on excluded jobs: "
                f"{sorted(set(job.depends_on) - names)}"
            )
        pruned_jobs.append(replace(job, depends_on=kept))

    return replace(stage, jobs=pruned_jobs)


def plan_run(definition: PipelineDefinition, snapshot: RunSnapshot) -> RunPlan:
    """Evaluate conditions and produce the active subgraph.

    Conditions are evaluated against the run snapshot. Excluded nodes never
    appear in the plan; dependencies on them are dropped.

    Raises:
        ConfigurationError: On cycles, unknown dependencies or bad expressions
    """
    validate_definition(definition)

    excluded: list[str] = []
    active: list[StageDef] = []
    for stage in definition.stages:
        if not evaluate_condition(stage.condition, snapshot):
            excluded.append(stage_id(stage.name))
            continue
        active.append(_plan_stage(stage, snapshot, excluded))

    names = {stage.name for stage in active}
    stages = [
        replace(stage, depends_on=[dep for dep in stage.depends_on if dep in names])
        for stage in active
    ]

    plan = RunPlan(pipeline=definition.name, stages=stages, excluded=excluded)
    logger.info(
        f"Planned {len(plan.stages)} stage(s), {plan.job_count} job(s) "
        f"for {definition.name}; {len(excluded)} node(s) excluded"
    )
    return plan
