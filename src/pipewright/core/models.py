"""Core data models for pipewright.

This module defines the data structures shared across the application:
the compiled pipeline definition (parameters, variables, stages, jobs,
steps, environment selectors, schedules) and the per-run records
(trigger, run metadata, node records, step results).
"""

from dataclasses import dataclass, field
from datetime import datetime
from fnmatch import fnmatch
from pathlib import Path
from typing import Any, Optional

from pipewright.core.constants import (
    BuildReason,
    DependencyPolicy,
    EnvironmentKind,
    NodeKind,
    NodeStatus,
    ParameterType,
    RunOutcome,
)
from pipewright.core.exceptions import ConfigurationError


_TRUE_STRINGS = {"true", "yes", "1", "on"}
_FALSE_STRINGS = {"false", "no", "0", "off"}


def _parse_datetime(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


def _format_datetime(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


# ============================================================================
# Parameters & Variables
# ============================================================================

@dataclass(frozen=True)
class Parameter:
    """A typed pipeline parameter supplied at trigger time."""
    name: str
    type: ParameterType = ParameterType.STRING
    default: Any = None
    values: tuple[Any, ...] = ()            # Allowed values (enum parameters)
    display_name: Optional[str] = None

    @property
    def is_enum(self) -> bool:
        return bool(self.values)

    def coerce(self, value: Any) -> Any:
        """Coerce a supplied value to the declared type.

        Args:
            value: Raw value (from YAML or the command line)

        Returns:
            Value of the declared type

        Raises:
            ConfigurationError: If the value cannot be coerced or is not allowed
        """
        if self.type == ParameterType.BOOLEAN:
            if isinstance(value, bool):
                coerced: Any = value
            elif isinstance(value, str) and value.strip().lower() in _TRUE_STRINGS:
                coerced = True
            elif isinstance(value, str) and value.strip().lower() in _FALSE_STRINGS:
                coerced = False
            else:
                raise ConfigurationError(
                    f"Parameter '{self.name}' expects a boolean, got {value!r}"
                )
        elif self.type == ParameterType.NUMBER:
            if isinstance(value, bool):
                raise ConfigurationError(
                    f"Parameter '{self.name}' expects a number, got {value!r}"
                )
            try:
                coerced = float(value)
            except (TypeError, ValueError) as e:
                raise ConfigurationError(
                    f"Parameter '{self.name}' expects a number, got {value!r}"
                ) from e
            if coerced.is_integer():
                coerced = int(coerced)
        else:
            if value is None:
                coerced = ""
            elif isinstance(value, bool):
                coerced = "true" if value else "false"
            else:
                coerced = str(value)

        if self.values and coerced not in self.values:
            allowed = ", ".join(str(v) for v in self.values)
            raise ConfigurationError(
                f"Value {coerced!r} is not allowed for parameter '{self.name}'. "
                f"Allowed values: {allowed}"
            )
        return coerced


@dataclass(frozen=True)
class Variable:
    """A pipeline variable; `value` may contain ${{ }} template expressions."""
    name: str
    value: Any


# ============================================================================
# Triggers & Schedules
# ============================================================================

def short_branch_name(branch: str) -> str:
    """Strip the refs/heads/ prefix from a branch reference."""
    prefix = "refs/heads/"
    return branch[len(prefix):] if branch.startswith(prefix) else branch


@dataclass(frozen=True)
class BranchFilter:
    """Glob based include/exclude branch filter."""
    include: tuple[str, ...] = ()
    exclude: tuple[str, ...] = ()

    def matches(self, branch: str) -> bool:
        """Check whether a branch passes the filter.

        An empty include list includes every branch; excludes always win.
        """
        name = short_branch_name(branch)
        for pattern in self.exclude:
            if fnmatch(name, short_branch_name(pattern)):
                return False
        if not self.include:
            return True
        return any(fnmatch(name, short_branch_name(p)) for p in self.include)


@dataclass(frozen=True)
class Schedule:
    """Cron schedule bound to a branch filter."""
    cron: str
    display_name: str = ""
    branches: BranchFilter = field(default_factory=BranchFilter)
    always: bool = False


@dataclass(frozen=True)
class Trigger:
    """What started a run: reason, branch, actor and parameter values."""
    reason: BuildReason = BuildReason.MANUAL
    branch: str = "main"
    parameters: dict[str, Any] = field(default_factory=dict)
    requested_for: str = "system"

    @property
    def source_branch(self) -> str:
        if self.branch.startswith("refs/"):
            return self.branch
        return f"refs/heads/{self.branch}"

    @property
    def source_branch_name(self) -> str:
        return self.source_branch.rsplit("/", 1)[-1]

    def to_dict(self) -> dict[str, Any]:
        return {
            "reason": self.reason.value,
            "branch": self.branch,
            "parameters": dict(self.parameters),
            "requested_for": self.requested_for,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Trigger":
        return cls(
            reason=BuildReason(data.get("reason", BuildReason.MANUAL.value)),
            branch=data.get("branch", "main"),
            parameters=dict(data.get("parameters", {})),
            requested_for=data.get("requested_for", "system"),
        )


# ============================================================================
# Execution environments
# ============================================================================

@dataclass(frozen=True)
class ContainerResource:
    """A container image declared under resources.containers."""
    name: str
    image: str
    options: str = ""
    env: tuple[tuple[str, str], ...] = ()


@dataclass(frozen=True)
class EnvironmentSelector:
    """Where a job runs: a named pool, a container image or a hosted VM image."""
    kind: EnvironmentKind
    pool: Optional[str] = None
    image: Optional[str] = None
    options: str = ""
    env: tuple[tuple[str, str], ...] = ()

    @classmethod
    def named_pool(cls, name: str) -> "EnvironmentSelector":
        return cls(kind=EnvironmentKind.POOL, pool=name)

    @classmethod
    def vm_image(cls, image: str) -> "EnvironmentSelector":
        return cls(kind=EnvironmentKind.VM_IMAGE, image=image)

    @classmethod
    def container(
        cls,
        resource: ContainerResource,
        pool: Optional[str] = None,
    ) -> "EnvironmentSelector":
        return cls(
            kind=EnvironmentKind.CONTAINER,
            pool=pool,
            image=resource.image,
            options=resource.options,
            env=resource.env,
        )

    def describe(self) -> str:
        if self.kind == EnvironmentKind.VM_IMAGE:
            return f"vm_image:{self.image}"
        if self.kind == EnvironmentKind.CONTAINER:
            return f"container:{self.image}" + (f"@{self.pool}" if self.pool else "")
        return f"pool:{self.pool}"

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": self.kind.value,
            "pool": self.pool,
            "image": self.image,
            "options": self.options,
            "env": [list(pair) for pair in self.env],
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "EnvironmentSelector":
        return cls(
            kind=EnvironmentKind(data["kind"]),
            pool=data.get("pool"),
            image=data.get("image"),
            options=data.get("options", ""),
            env=tuple((k, v) for k, v in data.get("env", [])),
        )


# ============================================================================
# Compiled pipeline definition
# ============================================================================

@dataclass
class StepDef:
    """Smallest unit of work: one shell command."""
    name: str
    script: str
    display_name: Optional[str] = None
    env: dict[str, str] = field(default_factory=dict)
    working_directory: Optional[str] = None
    timeout_minutes: Optional[float] = None
    continue_on_error: bool = False
    best_effort: bool = False
    condition: Optional[str] = None
    # Declared 0-based index in the job, kept when earlier steps are excluded
    position: Optional[int] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "script": self.script,
            "display_name": self.display_name,
            "env": dict(self.env),
            "working_directory": self.working_directory,
            "timeout_minutes": self.timeout_minutes,
            "continue_on_error": self.continue_on_error,
            "best_effort": self.best_effort,
            "condition": self.condition,
            "position": self.position,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "StepDef":
        return cls(**data)


@dataclass
class JobDef:
    """A unit of execution assigned to one worker environment."""
    name: str
    steps: list[StepDef] = field(default_factory=list)
    display_name: Optional[str] = None
    depends_on: list[str] = field(default_factory=list)
    environment: Optional[EnvironmentSelector] = None
    timeout_minutes: Optional[float] = None
    variables: dict[str, str] = field(default_factory=dict)
    condition: Optional[str] = None
    dependency_policy: DependencyPolicy = DependencyPolicy.SUCCEEDED
    # Approval jobs run no steps; they wait for an operator decision
    approval: bool = False
    instructions: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "steps": [s.to_dict() for s in self.steps],
            "display_name": self.display_name,
            "depends_on": list(self.depends_on),
            "environment": self.environment.to_dict() if self.environment else None,
            "timeout_minutes": self.timeout_minutes,
            "variables": dict(self.variables),
            "condition": self.condition,
            "dependency_policy": self.dependency_policy.value,
            "approval": self.approval,
            "instructions": self.instructions,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "JobDef":
        environment = data.get("environment")
        return cls(
            name=data["name"],
            steps=[StepDef.from_dict(s) for s in data.get("steps", [])],
            display_name=data.get("display_name"),
            depends_on=list(data.get("depends_on", [])),
            environment=EnvironmentSelector.from_dict(environment) if environment else None,
            timeout_minutes=data.get("timeout_minutes"),
            variables=dict(data.get("variables", {})),
            condition=data.get("condition"),
            dependency_policy=DependencyPolicy(data.get("dependency_policy", "succeeded")),
            approval=bool(data.get("approval", False)),
            instructions=data.get("instructions"),
        )


@dataclass
class StageDef:
    """Top-level phase of a run: a named group of jobs."""
    name: str
    jobs: list[JobDef] = field(default_factory=list)
    display_name: Optional[str] = None
    depends_on: list[str] = field(default_factory=list)
    condition: Optional[str] = None
    environment: Optional[EnvironmentSelector] = None
    variables: dict[str, str] = field(default_factory=dict)
    required: bool = True
    dependency_policy: DependencyPolicy = DependencyPolicy.SUCCEEDED

    def get_job(self, name: str) -> Optional[JobDef]:
        for job in self.jobs:
            if job.name == name:
                return job
        return None

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "jobs": [j.to_dict() for j in self.jobs],
            "display_name": self.display_name,
            "depends_on": list(self.depends_on),
            "condition": self.condition,
            "environment": self.environment.to_dict() if self.environment else None,
            "variables": dict(self.variables),
            "required": self.required,
            "dependency_policy": self.dependency_policy.value,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "StageDef":
        environment = data.get("environment")
        return cls(
            name=data["name"],
            jobs=[JobDef.from_dict(j) for j in data.get("jobs", [])],
            display_name=data.get("display_name"),
            depends_on=list(data.get("depends_on", [])),
            condition=data.get("condition"),
            environment=EnvironmentSelector.from_dict(environment) if environment else None,
            variables=dict(data.get("variables", {})),
            required=data.get("required", True),
            dependency_policy=DependencyPolicy(data.get("dependency_policy", "succeeded")),
        )


@dataclass
class PipelineDefinition:
    """A pipeline after template expansion and conditional inclusion."""
    name: str
    stages: list[StageDef] = field(default_factory=list)
    parameters: list[Parameter] = field(default_factory=list)
    variables: list[Variable] = field(default_factory=list)
    schedules: list[Schedule] = field(default_factory=list)
    trigger: Optional[BranchFilter] = None   # None: CI triggering disabled
    containers: dict[str, ContainerResource] = field(default_factory=dict)
    path: Optional[Path] = None

    def get_stage(self, name: str) -> Optional[StageDef]:
        for stage in self.stages:
            if stage.name == name:
                return stage
        return None


# ============================================================================
# Run records
# ============================================================================

@dataclass
class StepResult:
    """Result of executing one step."""
    status: NodeStatus
    exit_code: Optional[int] = None
    duration: float = 0.0
    log_path: Optional[Path] = None
    error_code: Optional[str] = None
    error_message: Optional[str] = None

    @property
    def success(self) -> bool:
        return self.status == NodeStatus.SUCCEEDED


@dataclass
class JobResult:
    """Aggregate result of a job's steps."""
    status: NodeStatus
    steps: list[StepResult] = field(default_factory=list)
    issues: int = 0                         # continue-on-error failures
    error_code: Optional[str] = None
    error_message: Optional[str] = None


@dataclass
class NodeRecord:
    """Per-run state of one stage, job or step."""
    node_id: str                            # Stage, Stage/Job, Stage/Job/NN
    run_id: str
    kind: NodeKind
    name: str
    status: NodeStatus = NodeStatus.PENDING
    parent_id: Optional[str] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    exit_code: Optional[int] = None
    error_code: Optional[str] = None
    error_message: Optional[str] = None
    log_path: Optional[Path] = None
    attempts: int = 0
    issues: int = 0
    reused: bool = False
    required: bool = True

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    @property
    def duration(self) -> Optional[float]:
        """Node duration in seconds."""
        if self.started_at is None:
            return None
        end_time = self.completed_at or datetime.now()
        return (end_time - self.started_at).total_seconds()


@dataclass(frozen=True)
class Approval:
    """An operator's decision on an approval job."""
    run_id: str
    node_id: str
    approved: bool
    approver: str = "system"
    comment: Optional[str] = None
    decided_at: datetime = field(default_factory=datetime.now)

    def to_dict(self) -> dict[str, Any]:
        return {
            "run_id": self.run_id,
            "node_id": self.node_id,
            "approved": self.approved,
            "approver": self.approver,
            "comment": self.comment,
            "decided_at": self.decided_at.isoformat(),
        }


@dataclass
class RunMetadata:
    """Metadata for a pipeline run."""
    id: str
    pipeline: str
    trigger: Trigger
    outcome: RunOutcome
    created_at: datetime
    definition_path: Optional[Path] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    canceled: bool = False
    retry_of: Optional[str] = None
    plan: dict[str, Any] = field(default_factory=dict)
    variables: dict[str, Any] = field(default_factory=dict)

    # Paths
    run_dir: Path = field(default=Path())
    logs_dir: Path = field(default=Path())
    audit_dir: Path = field(default=Path())

    @property
    def duration(self) -> Optional[float]:
        """Run duration in seconds."""
        if self.started_at is None:
            return None
        end_time = self.completed_at or datetime.now()
        return (end_time - self.started_at).total_seconds()

    @property
    def is_finished(self) -> bool:
        return self.outcome.is_finished

