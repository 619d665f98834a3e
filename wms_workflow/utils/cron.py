"""Five-field cron expressions for scheduled rules.

Format: ``minute hour day-of-month month day-of-week`` (UTC).
Supported per field: ``*``, numbers, lists (``1,15``), ranges (``8-17``) and
steps (``*/15``, ``8-17/2``).  Day-of-week is 0-6 with Sunday = 0 (7 is also
accepted as Sunday).  All five fields must match (no cron OR rule between
day-of-month and day-of-week).
"""

from __future__ import annotations

from datetime import datetime, timedelta

# (name, min, max)
_FIELDS = (
    ("minute", 0, 59),
    ("hour", 0, 23),
    ("day_of_month", 1, 31),
    ("month", 1, 12),
    ("day_of_week", 0, 7),
)

MAX_SCAN_MINUTES = 24 * 60
FALLBACK_DELAY = timedelta(hours=1)


def _parse_field(pattern: str, name: str, low: int, high: int) -> frozenset[int]:
    values: set[int] = set()
    for part in pattern.split(","):
        part = part.strip()
        if not part:
            raise ValueError(f"{name}: empty list element")
        step = 1
        if "/" in part:
            part, step_text = part.split("/", 1)
            if not step_text.isdigit() or int(step_text) <= 0:
                raise ValueError(f"{name}: invalid step {step_text!r}")
            step = int(step_text)
        if part == "*":
            start, end = low, high
        elif "-" in part:
            start_text, end_text = part.split("-", 1)
            if not (start_text.isdigit() and end_text.isdigit()):
                raise ValueError(f"{name}: invalid range {part!r}")
            start, end = int(start_text), int(end_text)
        elif part.isdigit():
            start = end = int(part)
            if step != 1:
                end = high
        else:
            raise ValueError(f"{name}: invalid value {part!r}")
        if start < low or end > high or start > end:
            raise ValueError(f"{name}: {start}-{end} outside {low}-{high}")
        values.update(range(start, end + 1, step))
    return frozenset(values)


class CronSchedule:
    def __init__(self, expression: str):
        parts = (expression or "").split()
        if len(parts) != 5:
            raise ValueError("cron expression needs exactly 5 fields: minute hour day month weekday")
        self.expression = " ".join(parts)
        parsed = [_parse_field(p, name, low, high) for p, (name, low, high) in zip(parts, _FIELDS)]
        self.minutes, self.hours, self.days, self.months, dow = parsed
        self.weekdays = frozenset(0 if d == 7 else d for d in dow)

    def matches(self, when: datetime) -> bool:
        return (
            when.minute in self.minutes
            and when.hour in self.hours
            and when.day in self.days
            and when.month in self.months
            and (when.weekday() + 1) % 7 in self.weekdays
        )

    def next_run(self, after: datetime) -> datetime:
        """First matching minute strictly after ``after`` within 24h, else after + 1h."""
        candidate = after.replace(second=0, microsecond=0) + timedelta(minutes=1)
        for _ in range(MAX_SCAN_MINUTES):
            if self.matches(candidate):
                return candidate
            candidate += timedelta(minutes=1)
        return after + FALLBACK_DELAY

    def __repr__(self):
        return f"<CronSchedule {self.expression!r}>"


def validate_cron(expression: str) -> str | None:
    """Return an error message, or None when the expression is valid."""
    try:
        CronSchedule(expression)
    except ValueError as exc:
        return str(exc)
    return None
