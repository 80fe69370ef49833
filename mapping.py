"""Field mapping between P6 and EBS record shapes.

Every function here is pure and total: missing or malformed optional
fields map to None or a documented default, never to an exception.
"""

import math
from datetime import date, datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Iterable, NamedTuple

from patterns import Patterns

# P6 status -> EBS status
P6_TO_EBS_STATUS = {
    "Active": "APPROVED",
    "Planned": "PENDING",
    "Inactive": "INACTIVE",
    "Completed": "COMPLETE",
}
DEFAULT_EBS_STATUS = "PENDING"

# EBS status -> P6 status (task-level codes included)
EBS_TO_P6_STATUS = {
    "APPROVED": "Active",
    "IN_PROGRESS": "Active",
    "PENDING": "Planned",
    "PLANNED": "Planned",
    "INACTIVE": "Inactive",
    "COMPLETE": "Completed",
}
DEFAULT_P6_STATUS = "Planned"

# EBS operating unit <-> P6 OBS name
OPERATING_UNIT_TO_OBS = {
    "Capital Projects": "OBS1",
}
DEFAULT_OBS = "OBS1"
DEFAULT_OPERATING_UNIT = "Capital Projects"

SECONDS_PER_DAY = 24 * 60 * 60


def _lookup(table: dict[str, str], value, default: str) -> str:
    if not isinstance(value, str):
        return default
    wanted = value.strip().casefold()
    for key, mapped in table.items():
        if key.casefold() == wanted:
            return mapped
    return default


def p6_status_to_ebs(status) -> str:
    """Map a P6 status to EBS; unknown values become PENDING."""
    return _lookup(P6_TO_EBS_STATUS, status, DEFAULT_EBS_STATUS)


def ebs_status_to_p6(status) -> str:
    """Map an EBS status to P6; unknown values become Planned."""
    return _lookup(EBS_TO_P6_STATUS, status, DEFAULT_P6_STATUS)


def operating_unit_to_obs(unit) -> str:
    return _lookup(OPERATING_UNIT_TO_OBS, unit, DEFAULT_OBS)


def obs_to_operating_unit(obs) -> str:
    reverse = {v: k for k, v in OPERATING_UNIT_TO_OBS.items()}
    return _lookup(reverse, obs, DEFAULT_OPERATING_UNIT)


# ============================================================================
# Identity
# ============================================================================


def normalize_id(value, aliases: dict[str, str] | None = None) -> str | None:
    """Canonical form of an entity id: no whitespace, upper case, aliased.

    Aliases map ids that differ between the two systems onto one another
    (e.g. {"P1001": "EBS1001"}); both sides of the table are normalized
    the same way before lookup.
    """
    if value is None:
        return None
    text = Patterns.WHITESPACE.sub("", str(value)).upper()
    if not text:
        return None
    if aliases:
        table = {normalize_id(k): normalize_id(v) for k, v in aliases.items()}
        return table.get(text, text)
    return text


def ingest(record: dict, fields: Iterable[str], aliases: dict[str, str] | None = None) -> dict:
    """Copy a fetched record with its id fields normalized."""
    ingested = dict(record)
    for name in fields:
        if name in ingested:
            ingested[name] = normalize_id(ingested[name], aliases)
    return ingested


# ============================================================================
# Dates & derived values
# ============================================================================


def parse_date(value) -> datetime | None:
    """Parse an ISO date/datetime (string, date or datetime) into naive UTC."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, date):
        parsed = datetime(value.year, value.month, value.day)
    elif isinstance(value, str):
        try:
            parsed = datetime.fromisoformat(Patterns.UTC_SUFFIX.sub("+00:00", value.strip()))
        except ValueError:
            return None
    else:
        return None
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


def calculate_duration_in_days(start, end) -> int:
    """Whole days between two dates (ceiling, order-independent); 0 if either is missing."""
    start_dt = parse_date(start)
    end_dt = parse_date(end)
    if start_dt is None or end_dt is None:
        return 0
    seconds = abs((end_dt - start_dt).total_seconds())
    return math.ceil(seconds / SECONDS_PER_DAY)


def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def _decimal(value) -> Decimal | None:
    if value is None or value == "":
        return None
    try:
        parsed = Decimal(str(value))
    except InvalidOperation:
        return None
    # NaN and Infinity are not amounts
    return parsed if parsed.is_finite() else None


class Rollup(NamedTuple):
    """Schedule metrics of a WBS node derived from its activities."""

    start: str | None
    finish: str | None
    percent_complete: int
    activity_count: int

    @property
    def has_data(self) -> bool:
        return bool(self.start or self.finish or self.activity_count)


def rollup_activities(activities: Iterable[dict]) -> Rollup:
    """Earliest start, latest finish and average percent complete.

    Only activities that report a percent complete are counted toward the
    average; dates are returned in their original representation.
    """
    start, start_dt = None, None
    finish, finish_dt = None, None
    total = 0.0
    count = 0

    for activity in activities:
        candidate = parse_date(activity.get("StartDate"))
        if candidate and (start_dt is None or candidate < start_dt):
            start, start_dt = activity["StartDate"], candidate

        candidate = parse_date(activity.get("FinishDate"))
        if candidate and (finish_dt is None or candidate > finish_dt):
            finish, finish_dt = activity["FinishDate"], candidate

        percent = activity.get("PercentComplete")
        if isinstance(percent, (int, float)) and math.isfinite(percent):
            total += percent
            count += 1

    average = _round_half_up(total / count) if count else 0
    return Rollup(start, finish, average, count)


# ============================================================================
# Projects
# ============================================================================


def ebs_project_to_p6(project: dict) -> dict:
    """EBS project -> P6 project fields."""
    return {
        "Id": project.get("PROJECT_ID"),
        "Name": project.get("NAME"),
        "PlannedStartDate": project.get("START_DATE"),
        "PlannedFinishDate": project.get("COMPLETION_DATE"),
        "Status": ebs_status_to_p6(project.get("STATUS_CODE")),
        "ProjectManager": project.get("PROJECT_MANAGER_ID"),
        "OBSName": operating_unit_to_obs(project.get("OPERATING_UNIT")),
    }


def p6_project_to_ebs(project: dict) -> dict:
    """P6 project -> EBS project fields."""
    return {
        "PROJECT_ID": project.get("Id"),
        "NAME": project.get("Name"),
        "START_DATE": project.get("PlannedStartDate"),
        "COMPLETION_DATE": project.get("PlannedFinishDate"),
        "STATUS_CODE": p6_status_to_ebs(project.get("Status")),
        "PROJECT_MANAGER_ID": project.get("ProjectManager"),
        "OPERATING_UNIT": obs_to_operating_unit(project.get("OBSName")),
    }


# ============================================================================
# Tasks / WBS
# ============================================================================


def ebs_task_to_p6_wbs(task: dict, parent_object_id: str | None = None) -> dict:
    """EBS task -> P6 WBS node.

    The parent is given as the P6 ObjectId of the already-written parent
    node; the EBS parent id has no meaning on the P6 side.
    """
    return {
        "Id": task.get("TASK_ID"),
        "Code": task.get("TASK_NUMBER"),
        "Name": task.get("TASK_NAME"),
        "Status": ebs_status_to_p6(task.get("STATUS_CODE")),
        "ParentObjectId": parent_object_id,
    }


def p6_wbs_to_ebs_task(
    wbs: dict,
    percent_complete: int | None = None,
    start: str | None = None,
    finish: str | None = None,
) -> dict:
    """P6 WBS node -> EBS task progress fields.

    Values computed from the node's activities take precedence over the
    ones carried on the node itself.
    """
    if percent_complete is None:
        percent_complete = wbs.get("PercentComplete")
    return {
        "TASK_ID": wbs.get("Id"),
        "START_DATE": start or wbs.get("AnticipatedStartDate"),
        "COMPLETION_DATE": finish or wbs.get("AnticipatedFinishDate"),
        "PHYSICAL_PERCENT_COMPLETE": percent_complete,
    }


# ============================================================================
# Resource assignments
# ============================================================================


def p6_assignment_to_ebs(assignment: dict) -> dict:
    """P6 resource assignment -> EBS resource assignment (actuals)."""
    start = assignment.get("ActualStartDate")
    finish = assignment.get("ActualFinishDate")
    duration = assignment.get("ActualDuration")
    if duration is None:
        duration = calculate_duration_in_days(start, finish)
    return {
        "resourceId": assignment.get("ResourceId"),
        "activityId": assignment.get("ActivityId"),
        "actualCost": _decimal(assignment.get("ActualCost")),
        "actualDuration": duration,
        "actualUnits": assignment.get("ActualUnits"),
        "actualStart": start,
        "actualFinish": finish,
    }


def validate_assignment(assignment: dict) -> list[str]:
    """Check a P6 assignment before it is written.

    Returns:
        Empty list if valid, otherwise list of error messages.
    """
    errors = []

    for key in ["ResourceId", "ActivityId"]:
        if not assignment.get(key):
            errors.append(f"Missing {key}")

    cost = assignment.get("ActualCost")
    if cost is not None:
        parsed = _decimal(cost)
        if parsed is None:
            errors.append(f"ActualCost is not a number: {cost!r}")
        elif parsed < 0:
            errors.append("ActualCost must not be negative")

    for key in ["ActualDuration", "ActualUnits"]:
        value = assignment.get(key)
        if value is not None and (
            not isinstance(value, (int, float)) or not math.isfinite(value) or value < 0
        ):
            errors.append(f"{key} must be a non-negative number")

    start = parse_date(assignment.get("ActualStartDate"))
    finish = parse_date(assignment.get("ActualFinishDate"))
    if start and finish and finish < start:
        errors.append("ActualFinishDate is before ActualStartDate")

    return errors
