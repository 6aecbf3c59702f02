"""Pipeline definition loader.

Loading happens in two phases:

1. ``load_document`` reads the YAML file and parses the parts that do not
   depend on a run: name, parameter declarations, schedules, CI trigger and
   container resources.
2. ``compile_pipeline`` builds the run snapshot from a trigger, expands
   templates and conditional inclusion, and produces a PipelineDefinition.
"""

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

from pipewright.core.config import Settings
from pipewright.core.constants import DependencyPolicy
from pipewright.core.exceptions import ConfigurationError
from pipewright.core.models import (
    BranchFilter,
    ContainerResource,
    EnvironmentSelector,
    JobDef,
    Parameter,
    PipelineDefinition,
    Schedule,
    StageDef,
    StepDef,
    Trigger,
    Variable,
)
from pipewright.definition.expressions import format_value
from pipewright.definition.graph import RunPlan, plan_run
from pipewright.definition.schedules import CronExpression
from pipewright.definition.snapshot import (
    RunSnapshot,
    compute_variables,
    parse_parameters,
    parse_variables,
    resolve_parameters,
    trigger_variables,
)
from pipewright.definition.templates import TemplateExpander, load_yaml_file


logger = logging.getLogger(__name__)


@dataclass
class PipelineDocument:
    """A parsed, not yet compiled, pipeline definition file."""
    name: str
    path: Path
    raw: dict[str, Any]
    parameters: list[Parameter] = field(default_factory=list)
    schedules: list[Schedule] = field(default_factory=list)
    trigger: Optional[BranchFilter] = None
    containers: dict[str, ContainerResource] = field(default_factory=dict)


def _get(data: dict[str, Any], *keys: str, default: Any = None) -> Any:
    """Return the first present key, so snake_case and camelCase both work."""
    for key in keys:
        if key in data:
            return data[key]
    return default


def _as_name_list(value: Any, *, field_name: str, owner: str) -> list[str]:
    if value is None:
        return []
    if isinstance(value, str):
        return [value]
    if isinstance(value, list) and all(isinstance(v, str) for v in value):
        return list(value)
    raise ConfigurationError(f"'{field_name}' of {owner} must be a name or a list of names")


def _as_timeout(value: Any, *, owner: str) -> Optional[float]:
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, (int, float)) or value <= 0:
        raise ConfigurationError(f"Timeout of {owner} must be a positive number of minutes")
    return float(value)


def _as_policy(value: Any, *, owner: str) -> DependencyPolicy:
    if value is None:
        return DependencyPolicy.SUCCEEDED
    try:
        return DependencyPolicy(str(value).lower())
    except ValueError as e:
        raise ConfigurationError(
            f"Unknown dependency_policy {value!r} for {owner} "
            f"(expected 'succeeded' or 'completed')"
        ) from e


def _as_string_map(value: Any, *, owner: str) -> dict[str, str]:
    if value is None:
        return {}
    if not isinstance(value, (dict, list)):
        raise ConfigurationError(f"Variables/env of {owner} must be a mapping")
    if isinstance(value, list):
        variables = parse_variables(value, source=owner)
        return {v.name: format_value(v.value) for v in variables}
    return {str(k): format_value(v) for k, v in value.items()}


# ============================================================================
# Document
# ============================================================================

def _parse_branch_filter(data: Any, *, source: str) -> BranchFilter:
    if data is None:
        return BranchFilter()
    if isinstance(data, list):
        return BranchFilter(include=tuple(str(b) for b in data))
    if not isinstance(data, dict):
        raise ConfigurationError(f"Invalid branch filter in {source}")
    return BranchFilter(
        include=tuple(str(b) for b in data.get("include") or ()),
        exclude=tuple(str(b) for b in data.get("exclude") or ()),
    )


def _parse_trigger(data: Any, *, source: str) -> Optional[BranchFilter]:
    if data is None:
        # No trigger section: CI runs on every branch
        return BranchFilter()
    if data == "none" or data is False:
        return None
    if isinstance(data, list):
        return BranchFilter(include=tuple(str(b) for b in data))
    if isinstance(data, dict):
        return _parse_branch_filter(data.get("branches"), source=source)
    raise ConfigurationError(f"Invalid 'trigger' section in {source}")


def _parse_schedules(data: Any, *, source: str) -> list[Schedule]:
    if data is None:
        return []
    if not isinstance(data, list):
        raise ConfigurationError(f"'schedules' in {source} must be a list")

    schedules: list[Schedule] = []
    for entry in data:
        if not isinstance(entry, dict) or "cron" not in entry:
            raise ConfigurationError(f"Every schedule in {source} needs a 'cron'")
        cron = str(entry["cron"])
        CronExpression.parse(cron)
        schedules.append(Schedule(
            cron=cron,
            display_name=str(_get(entry, "displayName", "display_name", default=cron)),
            branches=_parse_branch_filter(entry.get("branches"), source=source),
            always=bool(entry.get("always", False)),
        ))
    return schedules


def _parse_containers(data: Any, *, source: str) -> dict[str, ContainerResource]:
    resources = (data or {}).get("containers") if isinstance(data, dict) else None
    if not resources:
        return {}
    if not isinstance(resources, list):
        raise ConfigurationError(f"'resources.containers' in {source} must be a list")

    containers: dict[str, ContainerResource] = {}
    for entry in resources:
        if not isinstance(entry, dict) or "image" not in entry:
            raise ConfigurationError(f"Every container resource in {source} needs an 'image'")
        name = str(_get(entry, "container", "name", default=entry["image"]))
        env = entry.get("env") or {}
        containers[name] = ContainerResource(
            name=name,
            image=str(entry["image"]),
            options=str(entry.get("options") or ""),
            env=tuple((str(k), str(v)) for k, v in env.items()),
        )
    return containers


def load_document(path: Path | str) -> PipelineDocument:
    """Load a pipeline definition file.

    Args:
        path: Path to the pipeline YAML

    Returns:
        Parsed document

    Raises:
        ConfigurationError: If the file cannot be read or is malformed
    """
    path = Path(path)
    raw = load_yaml_file(path)
    if not isinstance(raw, dict):
        raise ConfigurationError(f"Pipeline definition {path} must be a mapping")
    if "stages" not in raw:
        raise ConfigurationError(f"Pipeline definition {path} has no 'stages'")

    name = raw.get("name")
    if not isinstance(name, str) or "$" in name or not name.strip():
        name = path.stem

    source = str(path)
    document = PipelineDocument(
        name=name,
        path=path,
        raw=raw,
        parameters=parse_parameters(raw.get("parameters"), source=source),
        schedules=_parse_schedules(raw.get("schedules"), source=source),
        trigger=_parse_trigger(raw.get("trigger"), source=source),
        containers=_parse_containers(raw.get("resources"), source=source),
    )
    logger.debug(
        f"Loaded {path}: {len(document.parameters)} parameters, "
        f"{len(document.schedules)} schedules"
    )
    return document


# ============================================================================
# Compilation
# ============================================================================

def build_run_snapshot(document: PipelineDocument, trigger: Trigger) -> RunSnapshot:
    """Resolve parameters, trigger context and pipeline variables.

    Conditional inclusion inside the `variables` section is resolved against
    parameters and the predefined variables only.

    Raises:
        ConfigurationError: If anything cannot be resolved
    """
    base = RunSnapshot(
        parameters=resolve_parameters(document.parameters, trigger.parameters),
        variables=trigger_variables(trigger),
        trigger=trigger,
    )
    selector = TemplateExpander(base, base_dir=document.path.parent, render=False)
    raw_variables = selector.expand(document.raw.get("variables"))
    variables = parse_variables(raw_variables, source=str(document.path))
    return base.with_variables(compute_variables(variables, base))


class _Compiler:
    """Turns expanded stage mappings into StageDef/JobDef/StepDef."""

    def __init__(self, document: PipelineDocument, settings: Settings) -> None:
        self.document = document
        self.settings = settings

    def environment(
        self,
        data: dict[str, Any],
        *,
        owner: str,
        inherited: Optional[EnvironmentSelector] = None,
    ) -> Optional[EnvironmentSelector]:
        pool = data.get("pool")
        pool_selector: Optional[EnvironmentSelector] = None
        if isinstance(pool, str):
            self.settings.get_pool(pool)
            pool_selector = EnvironmentSelector.named_pool(pool)
        elif isinstance(pool, dict):
            image = _get(pool, "vm_image", "vmImage")
            if image:
                pool_selector = EnvironmentSelector.vm_image(str(image))
            elif "name" in pool:
                self.settings.get_pool(str(pool["name"]))
                pool_selector = EnvironmentSelector.named_pool(str(pool["name"]))
            else:
                raise ConfigurationError(f"'pool' of {owner} needs a name or a vm_image")
        elif pool is not None:
            raise ConfigurationError(f"Invalid 'pool' for {owner}")

        container = data.get("container")
        if container is None:
            return pool_selector or inherited

        if isinstance(container, dict):
            if "image" not in container:
                raise ConfigurationError(f"'container' of {owner} needs an 'image'")
            env = container.get("env") or {}
            resource = ContainerResource(
                name=str(container["image"]),
                image=str(container["image"]),
                options=str(container.get("options") or ""),
                env=tuple((str(k), str(v)) for k, v in env.items()),
            )
        else:
            name = str(container)
            resource = self.document.containers.get(name) or ContainerResource(name=name, image=name)

        admission = pool_selector or inherited
        if admission is not None and admission.pool is None:
            raise ConfigurationError(
                f"{owner} selects a container and a hosted VM image; pick one"
            )
        return EnvironmentSelector.container(
            resource, pool=admission.pool if admission else None
        )

    def step(self, data: Any, *, owner: str, index: int) -> Optional[StepDef]:
        if not isinstance(data, dict):
            raise ConfigurationError(f"Step {index + 1} of {owner} must be a mapping")

        if "checkout" in data:
            logger.debug(f"Ignoring checkout step in {owner}")
            return None

        display_name = _get(data, "displayName", "display_name")
        if "install" in data:
            script = self._install_script(data, owner=owner)
            default_name = script
        else:
            script = _get(data, "script", "bash")
            if not isinstance(script, str) or not script.strip():
                raise ConfigurationError(
                    f"Step {index + 1} of {owner} needs a 'script', 'install' or 'template'"
                )
            default_name = script.strip().splitlines()[0][:60]

        return StepDef(
            name=str(_get(data, "name", default=None) or display_name or default_name),
            script=script,
            display_name=display_name,
            env=_as_string_map(data.get("env"), owner=owner),
            working_directory=_get(data, "working_directory", "workingDirectory"),
            timeout_minutes=_as_timeout(
                _get(data, "timeout_minutes", "timeoutInMinutes"), owner=f"step of {owner}"
            ),
            continue_on_error=bool(_get(data, "continue_on_error", "continueOnError", default=False)),
            best_effort=bool(_get(data, "best_effort", "bestEffort", default=False)),
            condition=data.get("condition"),
        )

    def _install_script(self, data: dict[str, Any], *, owner: str) -> str:
        install = data["install"]
        if isinstance(install, str):
            tool, version = install, data.get("version")
        elif isinstance(install, dict):
            tool, version = install.get("tool"), install.get("version")
        else:
            raise ConfigurationError(f"Invalid 'install' step in {owner}")

        template = self.settings.tool_installers.get(str(tool))
        if template is None:
            known = ", ".join(sorted(self.settings.tool_installers))
            raise ConfigurationError(
                f"No installer for tool '{tool}' in {owner}. Known tools: {known}"
            )
        if version is None:
            raise ConfigurationError(f"Install of '{tool}' in {owner} needs a 'version'")
        return template.format(version=version)

    def job(
        self,
        data: Any,
        *,
        stage: str,
        inherited: Optional[EnvironmentSelector],
    ) -> JobDef:
        if not isinstance(data, dict):
            raise ConfigurationError(f"Jobs of stage '{stage}' must be mappings")
        name = _get(data, "job", "deployment", "approval", "name")
        if not isinstance(name, str) or not name:
            raise ConfigurationError(f"Every job in stage '{stage}' needs a name")
        owner = f"job '{stage}/{name}'"

        if "approval" in data:
            return self.approval_job(data, name=name, owner=owner)

        steps_data = data.get("steps")
        if steps_data is None and isinstance(data.get("strategy"), dict):
            # Deployment jobs keep their steps under strategy.runOnce.deploy
            steps_data = (
                ((data["strategy"].get("runOnce") or {}).get("deploy") or {}).get("steps")
            )
        if steps_data is not None and not isinstance(steps_data, list):
            raise ConfigurationError(f"'steps' of {owner} must be a list")

        steps = [
            step
            for index, raw_step in enumerate(steps_data or [])
            if (step := self.step(raw_step, owner=owner, index=index)) is not None
        ]

        timeout = _as_timeout(_get(data, "timeout_minutes", "timeoutInMinutes"), owner=owner)
        return JobDef(
            name=name,
            steps=steps,
            display_name=_get(data, "displayName", "display_name"),
            depends_on=_as_name_list(
                _get(data, "depends_on", "dependsOn"), field_name="depends_on", owner=owner
            ),
            environment=self.environment(data, owner=owner, inherited=inherited),
            timeout_minutes=timeout or self.settings.default_job_timeout_minutes,
            variables=_as_string_map(data.get("variables"), owner=owner),
            condition=data.get("condition"),
            dependency_policy=_as_policy(
                _get(data, "dependency_policy", "dependencyPolicy"), owner=owner
            ),
        )

    def approval_job(self, data: dict[str, Any], *, name: str, owner: str) -> JobDef:
        """Map an `approval:` job. It has no steps and needs no environment."""
        for key in ("steps", "pool", "container", "strategy"):
            if key in data:
                raise ConfigurationError(f"Approval {owner} cannot declare '{key}'")

        timeout = _as_timeout(_get(data, "timeout_minutes", "timeoutInMinutes"), owner=owner)
        instructions = data.get("instructions")
        return JobDef(
            name=name,
            display_name=_get(data, "displayName", "display_name"),
            depends_on=_as_name_list(
                _get(data, "depends_on", "dependsOn"), field_name="depends_on", owner=owner
            ),
            timeout_minutes=timeout or self.settings.default_job_timeout_minutes,
            condition=data.get("condition"),
            dependency_policy=_as_policy(
                _get(data, "dependency_policy", "dependencyPolicy"), owner=owner
            ),
            approval=True,
            instructions=str(instructions) if instructions is not None else None,
        )

    def stage(self, data: Any) -> StageDef:
        if not isinstance(data, dict):
            raise ConfigurationError("Every stage must be a mapping")
        name = _get(data, "stage", "name")
        if not isinstance(name, str) or not name:
            raise ConfigurationError("Every stage needs a name")
        owner = f"stage '{name}'"

        environment = self.environment(data, owner=owner)
        jobs_data = data.get("jobs") or []
        if not isinstance(jobs_data, list):
            raise ConfigurationError(f"'jobs' of {owner} must be a list")

        jobs = [self.job(j, stage=name, inherited=environment) for j in jobs_data]
        seen: set[str] = set()
        for job in jobs:
            if job.name in seen:
                raise ConfigurationError(f"Duplicate job '{job.name}' in {owner}")
            seen.add(job.name)

        return StageDef(
            name=name,
            jobs=jobs,
            display_name=_get(data, "displayName", "display_name"),
            depends_on=_as_name_list(
                _get(data, "depends_on", "dependsOn"), field_name="depends_on", owner=owner
            ),
            condition=data.get("condition"),
            environment=environment,
            variables=_as_string_map(data.get("variables"), owner=owner),
            required=bool(data.get("required", True)),
            dependency_policy=_as_policy(
                _get(data, "dependency_policy", "dependencyPolicy"), owner=owner
            ),
        )


def compile_pipeline(
    document: PipelineDocument,
    snapshot: RunSnapshot,
    settings: Settings,
) -> PipelineDefinition:
    """Expand templates and conditional inclusion into a PipelineDefinition.

    Raises:
        ConfigurationError: If the expanded definition is invalid
    """
    expander = TemplateExpander(snapshot, base_dir=document.path.parent)
    stages_data = expander.expand(document.raw.get("stages") or [])

    compiler = _Compiler(document, settings)
    stages = [compiler.stage(s) for s in stages_data]

    seen: set[str] = set()
    for stage in stages:
        if stage.name in seen:
            raise ConfigurationError(f"Duplicate stage '{stage.name}'")
        seen.add(stage.name)

    return PipelineDefinition(
        name=document.name,
        stages=stages,
        parameters=list(document.parameters),
        variables=[Variable(name, value) for name, value in snapshot.variables.items()],
        schedules=list(document.schedules),
        trigger=document.trigger,
        containers=dict(document.containers),
        path=document.path,
    )


@dataclass
class PreparedRun:
    """Everything needed to start a run, resolved before any node exists."""
    document: PipelineDocument
    snapshot: RunSnapshot
    definition: PipelineDefinition
    plan: RunPlan


def prepare_run(
    path: Path | str,
    trigger: Trigger,
    settings: Settings,
) -> PreparedRun:
    """Load, resolve and plan a pipeline for one trigger.

    Raises:
        ConfigurationError: If any phase fails; no run state exists yet
    """
    document = load_document(path)
    snapshot = build_run_snapshot(document, trigger)
    definition = compile_pipeline(document, snapshot, settings)
    plan = plan_run(definition, snapshot)
    return PreparedRun(document=document, snapshot=snapshot, definition=definition, plan=plan)
