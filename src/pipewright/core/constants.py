"""Constants used throughout pipewright.

This module contains enums, default values, and static configurations
to ensure consistency across the application.
"""

from enum import Enum


class NodeKind(Enum):
    """Kinds of nodes tracked in a run."""
    STAGE = "stage"
    JOB = "job"
    STEP = "step"


class NodeStatus(Enum):
    """Execution status of a stage, job or step."""
    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELED = "canceled"
    TIMED_OUT = "timed_out"
    SKIPPED = "skipped"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES

    @property
    def is_failure(self) -> bool:
        return self in (NodeStatus.FAILED, NodeStatus.TIMED_OUT)


TERMINAL_STATUSES = frozenset({
    NodeStatus.SUCCEEDED,
    NodeStatus.FAILED,
    NodeStatus.CANCELED,
    NodeStatus.TIMED_OUT,
    NodeStatus.SKIPPED,
})


# Legal status transitions; anything else is rejected by the state tracker
ALLOWED_TRANSITIONS: dict[NodeStatus, frozenset[NodeStatus]] = {
    # FAILED: the job never got an environment
    NodeStatus.PENDING: frozenset({
        NodeStatus.RUNNING,
        NodeStatus.FAILED,
        NodeStatus.SKIPPED,
        NodeStatus.CANCELED,
    }),
    NodeStatus.RUNNING: frozenset({
        NodeStatus.SUCCEEDED,
        NodeStatus.FAILED,
        NodeStatus.CANCELED,
        NodeStatus.TIMED_OUT,
        NodeStatus.SKIPPED,
    }),
}


class RunOutcome(Enum):
    """Overall result of a run."""
    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELED = "canceled"

    @property
    def exit_code(self) -> int:
        return OUTCOME_EXIT_CODES.get(self, 1)

    @property
    def is_finished(self) -> bool:
        return self in (RunOutcome.SUCCEEDED, RunOutcome.FAILED, RunOutcome.CANCELED)


OUTCOME_EXIT_CODES = {
    RunOutcome.SUCCEEDED: 0,
    RunOutcome.FAILED: 1,
    RunOutcome.CANCELED: 2,
}

CONFIGURATION_ERROR_EXIT_CODE = 3


class BuildReason(Enum):
    """Why a run was started."""
    MANUAL = "Manual"
    SCHEDULE = "Schedule"
    INDIVIDUAL_CI = "IndividualCI"
    BATCHED_CI = "BatchedCI"

    @classmethod
    def parse(cls, value: str) -> "BuildReason":
        """Parse a reason from its value or a short alias (manual, schedule, ci)."""
        aliases = {
            "manual": cls.MANUAL,
            "schedule": cls.SCHEDULE,
            "scheduled": cls.SCHEDULE,
            "ci": cls.INDIVIDUAL_CI,
            "individualci": cls.INDIVIDUAL_CI,
            "batchedci": cls.BATCHED_CI,
        }
        key = value.strip().lower()
        if key in aliases:
            return aliases[key]
        raise ValueError(f"Unknown build reason: {value}")


class ParameterType(Enum):
    """Declared type of a pipeline parameter."""
    BOOLEAN = "boolean"
    STRING = "string"
    NUMBER = "number"


class DependencyPolicy(Enum):
    """When a node's dependencies count as satisfied."""
    SUCCEEDED = "succeeded"     # every dependency succeeded
    COMPLETED = "completed"     # every dependency is terminal, any outcome


class EnvironmentKind(Enum):
    """Kinds of execution environment a job can select."""
    POOL = "pool"
    CONTAINER = "container"
    VM_IMAGE = "vm_image"


class RunnerKind(Enum):
    """Backends able to provide an execution environment."""
    LOCAL = "local"
    DOCKER = "docker"


class ErrorCode(str, Enum):
    """Error codes recorded on failed nodes."""
    STEP_FAILED = "step_failed"
    TIMEOUT = "timeout"
    ENVIRONMENT_UNAVAILABLE = "environment_unavailable"
    CANCELED = "canceled"
    DEPENDENCY_FAILED = "dependency_failed"
    APPROVAL_REJECTED = "approval_rejected"
    INTERNAL = "internal"


class AuditEventType(str, Enum):
    """Types of events recorded in the audit log."""
    RUN_START = "run_start"
    RUN_FINISH = "run_finish"
    NODE_TRANSITION = "node_transition"
    DISPATCH = "dispatch"
    ENVIRONMENT_ACQUIRE = "environment_acquire"
    CANCEL_REQUESTED = "cancel_requested"
    APPROVAL = "approval"


# Predefined variable names derived from the trigger
BUILD_REASON_VAR = "Build.Reason"
SOURCE_BRANCH_VAR = "Build.SourceBranch"
SOURCE_BRANCH_NAME_VAR = "Build.SourceBranchName"
REQUESTED_FOR_VAR = "Build.RequestedFor"
BUILD_ID_VAR = "Build.BuildId"

MAX_TEMPLATE_DEPTH = 20

# Install commands for `install:` steps; {version} is substituted
TOOL_INSTALLERS = {
    "node": "npx --yes n {version}",
    "yarn": "npm install -g yarn@{version}",
    "python": "pyenv install --skip-existing {version}",
    "rust": "rustup toolchain install {version}",
}


# Application-wide defaults
DEFAULTS = {
    "data_dir": "~/.local/share/pipewright",
    "default_pool": "default",
    "pool_concurrency": 2,
    "hosted_concurrency": 10,
    "job_timeout_minutes": 60,
    "cancel_grace_period": 10.0,
    "retention_days": 30,
    "approval_poll_interval": 5.0,
    "environment_retry_attempts": 3,
    "environment_retry_backoff_base": 2.0,
    "environment_retry_backoff_max": 30.0,
}
