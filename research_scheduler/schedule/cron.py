from __future__ import annotations

from croniter import croniter


CRON_FIELDS = 5


def split_fields(expression: str | None) -> list[str]:
    return (expression or "").split()


def has_five_fields(expression: str | None) -> bool:
    return len(split_fields(expression)) == CRON_FIELDS


def is_valid_expression(expression: str | None) -> bool:
    """Five whitespace-separated fields that croniter can evaluate."""
    if not has_five_fields(expression):
        return False
    try:
        croniter(expression)
    except (ValueError, KeyError):
        return False
    return True


def derive_offset_expression(parent_expression: str, offset_minutes: int) -> str:
    """Shift the minute/hour fields of a cron expression by ``offset_minutes``.

    Minutes past 59 carry one hour; hour 24 wraps to 0. Day-of-month, month and
    day-of-week are copied from the parent unchanged, so a shift across
    midnight does not move to the next day.

    The parent's minute and hour fields must be plain integers; ``ValueError``
    is raised otherwise.
    """
    fields = split_fields(parent_expression)
    if len(fields) != CRON_FIELDS:
        raise ValueError(f"expected {CRON_FIELDS} fields: {parent_expression!r}")

    minute = int(fields[0])
    hour = int(fields[1])

    new_minute = minute + offset_minutes
    new_hour = hour
    if new_minute >= 60:
        new_minute -= 60
        new_hour = hour + 1
        if new_hour >= 24:
            new_hour = 0

    return " ".join([str(new_minute), str(new_hour), *fields[2:]])
