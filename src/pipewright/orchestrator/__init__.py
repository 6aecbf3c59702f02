"""Orchestrator module for pipeline execution.

This module provides the core orchestration components for driving a
planned run: dependency scheduling, worker pool dispatch, step execution
and run state tracking.
"""

from pipewright.orchestrator.state import RunStateTracker
from pipewright.orchestrator.scheduler import (
    DependencyScheduler,
    SchedulerStats,
)
from pipewright.orchestrator.dispatcher import (
    PoolDispatcher,
    WorkerPool,
)
from pipewright.orchestrator.executor import StepExecutor
from pipewright.orchestrator.pipeline import (
    PipelineOrchestrator,
    default_runners,
    stage_status,
)


__all__ = [
    # State tracking
    "RunStateTracker",
    # Scheduler
    "DependencyScheduler",
    "SchedulerStats",
    # Dispatch
    "PoolDispatcher",
    "WorkerPool",
    # Execution
    "StepExecutor",
    # Pipeline
    "PipelineOrchestrator",
    "default_runners",
    "stage_status",
]
