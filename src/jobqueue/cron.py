"""
Five-field cron evaluation for recurring templates.

    minute  hour  day-of-month  month  day-of-week

Field matching is delegated to APScheduler's CronTrigger. Two points of
standard cron are handled here because CronTrigger differs on them:
- day-of-week numbers count from Sunday (0 or 7 = Sunday, 1 = Monday);
  the field is rewritten into weekday names before it reaches the trigger
- when both day-of-month and day-of-week are restricted, a day matches if
  EITHER field matches; evaluated as the earlier of two triggers
"""

from datetime import datetime, timezone
from typing import Optional

from apscheduler.triggers.cron import CronTrigger

from .errors import InvalidCronExpressionError


WEEKDAY_NAMES = ["sun", "mon", "tue", "wed", "thu", "fri", "sat"]


def _parse_weekday(token: str, expression: str) -> int:
    token = token.strip().lower()
    if token.isdigit():
        value = int(token)
        if not 0 <= value <= 7:
            raise InvalidCronExpressionError(expression, f"day-of-week out of range: {token}")
        return value
    if token[:3] in WEEKDAY_NAMES and len(token) == 3:
        return WEEKDAY_NAMES.index(token)
    raise InvalidCronExpressionError(expression, f"invalid day-of-week: {token}")


def normalize_day_of_week(field: str, expression: str) -> str:
    """
    Rewrite a standard day-of-week field as weekday names.

    "1-5" -> "mon,tue,wed,thu,fri"; "*/2" -> "sun,tue,thu,sat"; "*" stays "*".
    """
    if field == "*":
        return field

    days: set[int] = set()
    for part in field.split(","):
        if not part:
            raise InvalidCronExpressionError(expression, "empty day-of-week element")

        base, _, step_text = part.partition("/")
        step = 1
        if step_text:
            if not step_text.isdigit() or int(step_text) == 0:
                raise InvalidCronExpressionError(expression, f"invalid step: {part}")
            step = int(step_text)

        if base == "*":
            first, last = 0, 6
        elif "-" in base:
            start_text, _, end_text = base.partition("-")
            first = _parse_weekday(start_text, expression)
            last = _parse_weekday(end_text, expression)
            if first > last:
                raise InvalidCronExpressionError(expression, f"descending range: {base}")
        else:
            first = _parse_weekday(base, expression)
            last = 7 if step_text else first

        days.update(day % 7 for day in range(first, last + 1, step))

    if len(days) == 7:
        return "*"
    return ",".join(WEEKDAY_NAMES[day] for day in sorted(days))


class CronSchedule:
    """
    A parsed cron expression.

    Raises InvalidCronExpressionError on construction if the expression is
    malformed, so templates are validated before they reach the store.
    """

    def __init__(self, expression: str):
        self.expression = expression
        self._triggers = self._build_triggers(expression)

    @staticmethod
    def _build_triggers(expression: str) -> list[CronTrigger]:
        if not expression or not expression.strip():
            raise InvalidCronExpressionError(expression or "", "empty expression")

        fields = expression.split()
        if len(fields) != 5:
            raise InvalidCronExpressionError(
                expression, f"expected 5 fields, got {len(fields)}"
            )

        minute, hour, day, month, day_of_week = fields
        day_of_week = normalize_day_of_week(day_of_week, expression)

        try:
            if day != "*" and day_of_week != "*":
                return [
                    CronTrigger(minute=minute, hour=hour, day=day, month=month, timezone="UTC"),
                    CronTrigger(
                        minute=minute,
                        hour=hour,
                        month=month,
                        day_of_week=day_of_week,
                        timezone="UTC",
                    ),
                ]
            return [
                CronTrigger(
                    minute=minute,
                    hour=hour,
                    day=day,
                    month=month,
                    day_of_week=day_of_week,
                    timezone="UTC",
                )
            ]
        except ValueError as e:
            raise InvalidCronExpressionError(expression, str(e)) from e

    def next_fire_time(self, after: datetime) -> Optional[datetime]:
        """
        First occurrence strictly after `after`.

        Returns:
            Aware UTC datetime, or None if the expression never fires again
            (e.g. a day that never occurs in the given month)
        """
        if after.tzinfo is None:
            after = after.replace(tzinfo=timezone.utc)

        candidates = [
            trigger.get_next_fire_time(after, after) for trigger in self._triggers
        ]
        candidates = [c.astimezone(timezone.utc) for c in candidates if c is not None]
        if not candidates:
            return None
        return min(candidates)

    def is_due(self, last_fired: datetime, now: datetime) -> Optional[datetime]:
        """Return the next occurrence after last_fired if it is at or before now."""
        next_fire = self.next_fire_time(last_fired)
        if next_fire is not None and next_fire <= now:
            return next_fire
        return None

    def __repr__(self) -> str:
        return f"CronSchedule({self.expression!r})"


def validate_cron_expression(expression: str) -> CronSchedule:
    """Parse expression or raise InvalidCronExpressionError."""
    return CronSchedule(expression)
