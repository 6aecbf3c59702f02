"""Cron schedules and CI trigger filters."""

import re
from dataclasses import dataclass
from datetime import datetime
from typing import TYPE_CHECKING

from pipewright.core.exceptions import ConfigurationError
from pipewright.core.models import BranchFilter, Schedule, short_branch_name

if TYPE_CHECKING:
    from pipewright.definition.loader import PipelineDocument


_MONTHS = ["january", "february", "march", "april", "may", "june", "july",
           "august", "september", "october", "november", "december"]
_DAYS = ["sunday", "monday", "tuesday", "wednesday", "thursday", "friday", "saturday"]

# Both short (Mon) and full (Monday) names
_MONTH_NAMES = {
    **{name[:3]: index + 1 for index, name in enumerate(_MONTHS)},
    **{name: index + 1 for index, name in enumerate(_MONTHS)},
}
_DAY_NAMES = {
    **{name[:3]: index for index, name in enumerate(_DAYS)},
    **{name: index for index, name in enumerate(_DAYS)},
}

# (field name, minimum, maximum, names)
_FIELDS = (
    ("minute", 0, 59, {}),
    ("hour", 0, 23, {}),
    ("day of month", 1, 31, {}),
    ("month", 1, 12, _MONTH_NAMES),
    ("day of week", 0, 7, _DAY_NAMES),
)

_GLOB_CHARS = re.compile(r"[*?\[]")


def _parse_value(text: str, names: dict[str, int], field_name: str, expression: str) -> int:
    key = text.strip().lower()
    if key in names:
        return names[key]
    try:
        return int(key)
    except ValueError as e:
        raise ConfigurationError(
            f"Invalid {field_name} value {text!r} in cron expression '{expression}'"
        ) from e


def _parse_field(
    text: str,
    minimum: int,
    maximum: int,
    names: dict[str, int],
    field_name: str,
    expression: str,
) -> frozenset[int]:
    values: set[int] = set()
    for part in text.split(","):
        step = 1
        if "/" in part:
            part, step_text = part.split("/", 1)
            try:
                step = int(step_text)
            except ValueError as e:
                raise ConfigurationError(
                    f"Invalid step {step_text!r} in cron expression '{expression}'"
                ) from e
            if step < 1:
                raise ConfigurationError(f"Step must be positive in cron expression '{expression}'")

        if part == "*":
            start, end = minimum, maximum
        elif "-" in part:
            low, high = part.split("-", 1)
            start = _parse_value(low, names, field_name, expression)
            end = _parse_value(high, names, field_name, expression)
        else:
            start = _parse_value(part, names, field_name, expression)
            end = maximum if step > 1 else start

        if not (minimum <= start <= maximum and minimum <= end <= maximum) or start > end:
            raise ConfigurationError(
                f"{field_name.capitalize()} range {part!r} out of bounds "
                f"({minimum}-{maximum}) in cron expression '{expression}'"
            )
        values.update(range(start, end + 1, step))
    return frozenset(values)


@dataclass(frozen=True)
class CronExpression:
    """Standard five-field cron expression.

    Supports ``*``, ranges (``1-5``), lists (``1,3``), steps (``*/15``) and
    month and weekday names (``Mon-Fri``). Times are matched as given; the
    caller decides which timezone `at` is in.
    """
    expression: str
    minutes: frozenset[int]
    hours: frozenset[int]
    days: frozenset[int]
    months: frozenset[int]
    weekdays: frozenset[int]
    days_restricted: bool
    weekdays_restricted: bool

    @classmethod
    def parse(cls, expression: str) -> "CronExpression":
        """Parse a cron expression.

        Raises:
            ConfigurationError: If the expression is malformed
        """
        parts = expression.split()
        if len(parts) != 5:
            raise ConfigurationError(
                f"Cron expression '{expression}' must have 5 fields, got {len(parts)}"
            )

        parsed = [
            _parse_field(part, minimum, maximum, names, field_name, expression)
            for part, (field_name, minimum, maximum, names) in zip(parts, _FIELDS)
        ]
        # 7 is an alias for Sunday
        weekdays = frozenset(0 if day == 7 else day for day in parsed[4])

        return cls(
            expression=expression,
            minutes=parsed[0],
            hours=parsed[1],
            days=parsed[2],
            months=parsed[3],
            weekdays=weekdays,
            days_restricted=parts[2] != "*",
            weekdays_restricted=parts[4] != "*",
        )

    def matches(self, at: datetime) -> bool:
        """Check whether the expression fires at the minute containing `at`."""
        if at.minute not in self.minutes or at.hour not in self.hours:
            return False
        if at.month not in self.months:
            return False

        weekday = (at.weekday() + 1) % 7     # datetime: Monday=0; cron: Sunday=0
        day_ok = at.day in self.days
        weekday_ok = weekday in self.weekdays
        if self.days_restricted and self.weekdays_restricted:
            # Either field may match when both are restricted
            return day_ok or weekday_ok
        return day_ok and weekday_ok


def is_due(schedule: Schedule, at: datetime) -> bool:
    return CronExpression.parse(schedule.cron).matches(at)


def due_schedules(document: "PipelineDocument", at: datetime) -> list[Schedule]:
    """Schedules of a document that fire at the given minute."""
    return [schedule for schedule in document.schedules if is_due(schedule, at)]


def scheduled_branches(schedule: Schedule) -> list[str]:
    """Branches a schedule starts runs for: literal include entries only."""
    branches = []
    for pattern in schedule.branches.include:
        name = short_branch_name(pattern)
        if _GLOB_CHARS.search(name):
            continue
        if schedule.branches.matches(name):
            branches.append(name)
    return branches


def ci_trigger_allows(trigger: BranchFilter | None, branch: str) -> bool:
    """Whether a push to `branch` starts a CI run; None means CI is disabled."""
    if trigger is None:
        return False
    return trigger.matches(branch)
