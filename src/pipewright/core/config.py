"""Settings loader for pipewright.

This module loads and validates the YAML settings file that describes
worker pools, hosted VM images, retry and cancellation policies, storage
location and notification providers.
"""

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

import yaml

from pipewright.core.constants import DEFAULTS, TOOL_INSTALLERS, RunnerKind
from pipewright.core.exceptions import ConfigurationError


SETTINGS_FILENAME = "pipewright.yaml"


# ============================================================================
# Settings Models
# ============================================================================

@dataclass(frozen=True)
class PoolConfig:
    """A named class of worker environments with bounded concurrency."""
    name: str
    max_concurrency: int = DEFAULTS["pool_concurrency"]
    runner: RunnerKind = RunnerKind.LOCAL
    image: Optional[str] = None             # Default image for docker pools


@dataclass(frozen=True)
class HostedConfig:
    """Hosted VM image pools."""
    max_concurrency: int = DEFAULTS["hosted_concurrency"]
    images: dict[str, RunnerKind] = field(default_factory=dict)

    def runner_for(self, image: str) -> RunnerKind:
        return self.images.get(image, RunnerKind.LOCAL)


@dataclass(frozen=True)
class RetryPolicy:
    """Bounded exponential backoff for environment acquisition."""
    attempts: int = DEFAULTS["environment_retry_attempts"]
    backoff_base: float = DEFAULTS["environment_retry_backoff_base"]
    backoff_max: float = DEFAULTS["environment_retry_backoff_max"]

    def delay(self, attempt: int) -> float:
        """Delay before retrying after the given (1-based) failed attempt."""
        return min(self.backoff_max, self.backoff_base * (2 ** (attempt - 1)))


@dataclass(frozen=True)
class NotificationSettings:
    enabled: bool = False
    events: tuple[str, ...] = ()
    providers: dict[str, dict[str, Any]] = field(default_factory=dict)


@dataclass(frozen=True)
class Settings:
    """Orchestrator settings."""
    data_dir: Path = field(default_factory=lambda: Path(DEFAULTS["data_dir"]).expanduser())
    default_pool: str = DEFAULTS["default_pool"]
    pools: dict[str, PoolConfig] = field(
        default_factory=lambda: {
            DEFAULTS["default_pool"]: PoolConfig(name=DEFAULTS["default_pool"])
        }
    )
    hosted: HostedConfig = field(default_factory=HostedConfig)
    environment_retry: RetryPolicy = field(default_factory=RetryPolicy)
    cancel_grace_period: float = DEFAULTS["cancel_grace_period"]
    default_job_timeout_minutes: float = DEFAULTS["job_timeout_minutes"]
    retention_days: int = DEFAULTS["retention_days"]
    approval_poll_interval: float = DEFAULTS["approval_poll_interval"]
    tool_installers: dict[str, str] = field(default_factory=lambda: dict(TOOL_INSTALLERS))
    notifications: NotificationSettings = field(default_factory=NotificationSettings)

    @property
    def db_path(self) -> Path:
        return self.data_dir / "pipewright.db"

    @property
    def runs_dir(self) -> Path:
        return self.data_dir / "runs"

    def get_pool(self, name: str) -> PoolConfig:
        """Get a pool by name.

        Raises:
            ConfigurationError: If the pool is not configured
        """
        if name not in self.pools:
            available = ", ".join(sorted(self.pools))
            raise ConfigurationError(
                f"Unknown pool '{name}'. Configured pools: {available}"
            )
        return self.pools[name]


# ============================================================================
# Loader
# ============================================================================

def find_settings_file(explicit: Path | str | None = None) -> Optional[Path]:
    """Locate the settings file.

    Args:
        explicit: Path given on the command line

    Returns:
        Path to the settings file, or None to use built-in defaults

    Raises:
        ConfigurationError: If an explicit path does not exist
    """
    if explicit is not None:
        path = Path(explicit)
        if not path.exists():
            raise ConfigurationError(f"Settings file not found: {path}")
        return path

    candidate = Path.cwd() / SETTINGS_FILENAME
    if candidate.exists():
        return candidate
    return None


def _require_positive_int(section: str, value: Any) -> int:
    if isinstance(value, bool) or not isinstance(value, int) or value < 1:
        raise ConfigurationError(f"'{section}' must be a positive integer, got {value!r}")
    return value


def _require_number(section: str, value: Any, *, minimum: float = 0.0) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)) or value < minimum:
        raise ConfigurationError(f"'{section}' must be a number >= {minimum}, got {value!r}")
    return float(value)


def _parse_runner(section: str, value: Any) -> RunnerKind:
    try:
        return RunnerKind(str(value).lower())
    except ValueError as e:
        choices = ", ".join(r.value for r in RunnerKind)
        raise ConfigurationError(
            f"'{section}' must be one of: {choices}, got {value!r}"
        ) from e


def _parse_pools(data: Any) -> dict[str, PoolConfig]:
    if not isinstance(data, dict) or not data:
        raise ConfigurationError("'pools' must be a non-empty mapping")

    pools: dict[str, PoolConfig] = {}
    for name, config in data.items():
        config = config or {}
        if not isinstance(config, dict):
            raise ConfigurationError(f"Invalid configuration for pool '{name}'")
        pools[str(name)] = PoolConfig(
            name=str(name),
            max_concurrency=_require_positive_int(
                f"pools.{name}.max_concurrency",
                config.get("max_concurrency", DEFAULTS["pool_concurrency"]),
            ),
            runner=_parse_runner(f"pools.{name}.runner", config.get("runner", "local")),
            image=config.get("image"),
        )
    return pools


def parse_settings(data: dict[str, Any] | None, *, source: str = "<defaults>") -> Settings:
    """Build Settings from a parsed YAML mapping.

    Args:
        data: Parsed settings mapping (None or empty for defaults)
        source: Description of where the data came from, for error messages

    Returns:
        Validated Settings

    Raises:
        ConfigurationError: If any section is invalid
    """
    if not data:
        return Settings()
    if not isinstance(data, dict):
        raise ConfigurationError(f"Settings in {source} must be a mapping")

    kwargs: dict[str, Any] = {}

    if "data_dir" in data:
        kwargs["data_dir"] = Path(str(data["data_dir"])).expanduser()

    pools = _parse_pools(data["pools"]) if "pools" in data else Settings().pools
    default_pool = str(data.get("default_pool", DEFAULTS["default_pool"]))
    if default_pool not in pools:
        raise ConfigurationError(
            f"default_pool '{default_pool}' is not a configured pool in {source}"
        )
    kwargs["pools"] = pools
    kwargs["default_pool"] = default_pool

    hosted = data.get("hosted") or {}
    if not isinstance(hosted, dict):
        raise ConfigurationError("'hosted' must be a mapping")
    images = hosted.get("images") or {}
    if not isinstance(images, dict):
        raise ConfigurationError("'hosted.images' must be a mapping")
    kwargs["hosted"] = HostedConfig(
        max_concurrency=_require_positive_int(
            "hosted.max_concurrency",
            hosted.get("max_concurrency", DEFAULTS["hosted_concurrency"]),
        ),
        images={
            str(image): _parse_runner(f"hosted.images.{image}", runner)
            for image, runner in images.items()
        },
    )

    retry = data.get("environment_retry") or {}
    if not isinstance(retry, dict):
        raise ConfigurationError("'environment_retry' must be a mapping")
    kwargs["environment_retry"] = RetryPolicy(
        attempts=_require_positive_int(
            "environment_retry.attempts",
            retry.get("attempts", DEFAULTS["environment_retry_attempts"]),
        ),
        backoff_base=_require_number(
            "environment_retry.backoff_base",
            retry.get("backoff_base", DEFAULTS["environment_retry_backoff_base"]),
        ),
        backoff_max=_require_number(
            "environment_retry.backoff_max",
            retry.get("backoff_max", DEFAULTS["environment_retry_backoff_max"]),
        ),
    )

    if "cancel_grace_period" in data:
        kwargs["cancel_grace_period"] = _require_number(
            "cancel_grace_period", data["cancel_grace_period"]
        )
    if "default_job_timeout_minutes" in data:
        kwargs["default_job_timeout_minutes"] = _require_number(
            "default_job_timeout_minutes", data["default_job_timeout_minutes"], minimum=0.001
        )
    if "retention_days" in data:
        kwargs["retention_days"] = _require_positive_int(
            "retention_days", data["retention_days"]
        )
    if "approval_poll_interval" in data:
        kwargs["approval_poll_interval"] = _require_number(
            "approval_poll_interval", data["approval_poll_interval"], minimum=0.001
        )

    installers = data.get("tool_installers") or {}
    if not isinstance(installers, dict):
        raise ConfigurationError("'tool_installers' must be a mapping")
    kwargs["tool_installers"] = {**TOOL_INSTALLERS, **{str(k): str(v) for k, v in installers.items()}}

    notifications = data.get("notifications") or {}
    if not isinstance(notifications, dict):
        raise ConfigurationError("'notifications' must be a mapping")
    providers = notifications.get("providers") or {}
    if not isinstance(providers, dict):
        raise ConfigurationError("'notifications.providers' must be a mapping")
    for name, provider in providers.items():
        if not isinstance(provider, dict) or "url" not in provider:
            raise ConfigurationError(f"Notification provider '{name}' needs a 'url'")
    kwargs["notifications"] = NotificationSettings(
        enabled=bool(notifications.get("enabled", False)),
        events=tuple(notifications.get("events") or ()),
        providers={str(k): dict(v) for k, v in providers.items()},
    )

    return Settings(**kwargs)


def load_settings(settings_file: Path | str | None = None) -> Settings:
    """Load settings from YAML.

    Args:
        settings_file: Explicit settings path. If None, ./pipewright.yaml is
            used when present, else built-in defaults.

    Returns:
        Validated Settings

    Raises:
        ConfigurationError: If the file cannot be read, parsed or validated
    """
    path = find_settings_file(settings_file)
    if path is None:
        return Settings()

    try:
        with path.open("r") as f:
            data = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ConfigurationError(f"Failed to parse settings YAML: {e}") from e
    except OSError as e:
        raise ConfigurationError(f"Failed to read settings file: {e}") from e

    return parse_settings(data, source=str(path))
