"""In-memory P6 and EBS data sources.

Used for demos (`--fixture`) and tests. They behave like the live
clients: lookups return copies, writes to unknown records fail with a
404-style ApiError, and an offline source refuses to connect.
"""

import copy
import itertools

from clients import ApiError, ConnectivityError
from sources import EbsSource, P6Source

EBS_PROJECTS = [
    {
        "PROJECT_ID": "EBS1001",
        "NAME": "Office Building Construction",
        "START_DATE": "2025-05-01",
        "COMPLETION_DATE": "2026-01-15",
        "STATUS_CODE": "APPROVED",
        "PROJECT_MANAGER_ID": "PM1001",
        "OPERATING_UNIT": "Capital Projects",
    },
    {
        "PROJECT_ID": "EBS1002",
        "NAME": "Data Center Renovation",
        "START_DATE": "2025-06-15",
        "COMPLETION_DATE": "2025-12-31",
        "STATUS_CODE": "PENDING",
        "PROJECT_MANAGER_ID": "PM1002",
        "OPERATING_UNIT": "Capital Projects",
    },
    {
        "PROJECT_ID": "EBS1003",
        "NAME": "Campus Expansion",
        "START_DATE": "2025-07-01",
        "COMPLETION_DATE": "2026-05-30",
        "STATUS_CODE": "APPROVED",
        "PROJECT_MANAGER_ID": "PM1003",
        "OPERATING_UNIT": "Capital Projects",
    },
]


def _task(task_id, number, name, parent, status, project, start, finish, percent):
    return {
        "TASK_ID": task_id,
        "TASK_NUMBER": number,
        "TASK_NAME": name,
        "PARENT_TASK_ID": parent,
        "STATUS_CODE": status,
        "PROJECT_ID": project,
        "START_DATE": start,
        "COMPLETION_DATE": finish,
        "PHYSICAL_PERCENT_COMPLETE": percent,
    }


EBS_TASKS = [
    # EBS1001: three levels deep
    _task("T1001", "TASK-001", "Project Initiation", None, "APPROVED", "EBS1001", "2025-05-01", "2025-05-31", 100),
    _task("T1002", "TASK-002", "Site Preparation", "T1001", "APPROVED", "EBS1001", "2025-06-01", "2025-07-15", 85),
    _task("T1003", "TASK-003", "Foundation Work", "T1002", "APPROVED", "EBS1001", "2025-07-16", "2025-08-30", 60),
    _task("T1004", "TASK-004", "Structural Framework", "T1001", "IN_PROGRESS", "EBS1001", "2025-09-01", "2025-11-15", 25),
    _task("T1005", "TASK-005", "External Walls and Roof", "T1004", "PLANNED", "EBS1001", "2025-11-16", "2026-01-15", 0),
    _task("T1006", "TASK-006", "Internal Systems", "T1001", "PLANNED", "EBS1001", "2026-01-16", "2026-03-31", 0),
    # EBS1002
    _task("T2001", "TASK-101", "Assessment Phase", None, "APPROVED", "EBS1002", "2025-06-15", "2025-07-15", 100),
    _task("T2002", "TASK-102", "Design Phase", "T2001", "APPROVED", "EBS1002", "2025-07-16", "2025-08-30", 90),
    _task("T2003", "TASK-103", "Procurement", "T2001", "IN_PROGRESS", "EBS1002", "2025-08-15", "2025-09-30", 65),
    # EBS1003
    _task("T3001", "TASK-201", "Feasibility Study", None, "APPROVED", "EBS1003", "2025-07-01", "2025-08-15", 100),
    _task("T3002", "TASK-202", "Land Acquisition", "T3001", "APPROVED", "EBS1003", "2025-08-16", "2025-10-31", 75),
]

EBS_RESOURCE_ASSIGNMENTS = [
    {
        "resourceId": "R001",
        "activityId": "A001",
        "projectId": "EBS1001",
        "actualCost": 15000,
        "actualDuration": 15,
        "actualUnits": 1.0,
        "actualStart": "2025-05-01",
        "actualFinish": "2025-05-15",
    },
    {
        "resourceId": "R002",
        "activityId": "A002",
        "projectId": "EBS1001",
        "actualCost": 25000,
        "actualDuration": 30,
        "actualUnits": 0.5,
        "actualStart": "2025-06-01",
        "actualFinish": "2025-07-01",
    },
]

P6_EPS = [{"ObjectId": "100", "Id": "ENTERPRISE", "Name": "Enterprise"}]
P6_OBS = [{"ObjectId": "200", "GUID": "{OBS-0001}", "Name": "OBS1"}]

# EBS1002 already lives in P6 with part of its WBS scheduled
P6_PROJECTS = [
    {
        "ObjectId": "5001",
        "Id": "EBS1002",
        "Name": "Data Center Renovation",
        "Status": "Planned",
        "PlannedStartDate": "2025-06-15",
        "PlannedFinishDate": "2025-12-31",
        "OBSName": "OBS1",
    },
]
P6_WBS = [
    {"ObjectId": "6001", "Id": "T2001", "Code": "TASK-101", "Name": "Assessment Phase",
     "Status": "Active", "ParentObjectId": None, "ProjectObjectId": "5001"},
    {"ObjectId": "6002", "Id": "T2002", "Code": "TASK-102", "Name": "Design Phase",
     "Status": "Active", "ParentObjectId": "6001", "ProjectObjectId": "5001"},
    {"ObjectId": "6003", "Id": "T2009", "Code": "TASK-109", "Name": "Commissioning",
     "Status": "Planned", "ParentObjectId": "6001", "ProjectObjectId": "5001"},
]
P6_ACTIVITIES = [
    {"ObjectId": "7001", "Id": "A001", "WBSObjectId": "6001",
     "StartDate": "2025-06-15", "FinishDate": "2025-07-01", "PercentComplete": 100},
    {"ObjectId": "7002", "Id": "A002", "WBSObjectId": "6001",
     "StartDate": "2025-06-20", "FinishDate": "2025-07-20", "PercentComplete": 80},
    {"ObjectId": "7003", "Id": "A003", "WBSObjectId": "6002",
     "StartDate": "2025-07-16", "FinishDate": "2025-08-30", "PercentComplete": 45},
]
P6_RESOURCE_ASSIGNMENTS = [
    {"ResourceId": "R001", "ActivityId": "A001", "ActualCost": 16500.50, "ActualDuration": 16,
     "ActualUnits": 1.0, "ActualStartDate": "2025-05-01", "ActualFinishDate": "2025-05-16"},
    {"ResourceId": "R003", "ActivityId": "A003", "ActualCost": 18000, "ActualDuration": None,
     "ActualUnits": 0.75, "ActualStartDate": "2025-06-15", "ActualFinishDate": "2025-07-05"},
]


class _Fixture:
    def __init__(self, offline: bool = False):
        self.offline = offline
        self.writes: list[tuple[str, dict]] = []  # (operation, payload) in call order

    def connect(self) -> None:
        if self.offline:
            raise ConnectivityError(f"{self.name}: Cannot connect to fixture. Source is offline!")

    def _log(self, operation: str, payload: dict) -> None:
        self.writes.append((operation, copy.deepcopy(payload)))


def _find(records: list[dict], **match) -> dict | None:
    for record in records:
        if all(record.get(k) == v for k, v in match.items()):
            return record
    return None


class FixtureP6Source(_Fixture, P6Source):
    """P6 backed by Python lists."""

    def __init__(self, projects=None, eps=None, obs=None, wbs=None, activities=None,
                 assignments=None, offline: bool = False):
        super().__init__(offline)
        self.projects = copy.deepcopy(P6_PROJECTS if projects is None else projects)
        self.eps = copy.deepcopy(P6_EPS if eps is None else eps)
        self.obs = copy.deepcopy(P6_OBS if obs is None else obs)
        self.wbs = copy.deepcopy(P6_WBS if wbs is None else wbs)
        self.activities = copy.deepcopy(P6_ACTIVITIES if activities is None else activities)
        self.assignments = copy.deepcopy(P6_RESOURCE_ASSIGNMENTS if assignments is None else assignments)
        self._ids = itertools.count(9001)

    def _new_id(self) -> str:
        return str(next(self._ids))

    def list_projects(self, project_id: str | None = None) -> list[dict]:
        self.connect()
        return copy.deepcopy([p for p in self.projects if project_id is None or p.get("Id") == project_id])

    def create_project(self, data: dict) -> str:
        self.connect()
        self._log("create_project", data)
        record = {**data, "ObjectId": self._new_id()}
        self.projects.append(record)
        return record["ObjectId"]

    def update_project(self, object_id: str, data: dict) -> None:
        self.connect()
        record = _find(self.projects, ObjectId=object_id)
        if record is None:
            raise ApiError(f"P6: Project {object_id} not found.", 404)
        self._log("update_project", {"ObjectId": object_id, **data})
        record.update(data)

    def list_eps(self) -> list[dict]:
        self.connect()
        return copy.deepcopy(self.eps)

    def list_obs(self) -> list[dict]:
        self.connect()
        return copy.deepcopy(self.obs)

    def list_wbs(self, project_object_id: str) -> list[dict]:
        self.connect()
        return copy.deepcopy([w for w in self.wbs if w.get("ProjectObjectId") == project_object_id])

    def create_wbs(self, data: dict) -> str:
        self.connect()
        parent = data.get("ParentObjectId")
        if parent is not None and _find(self.wbs, ObjectId=parent) is None:
            raise ApiError(f"P6: Parent WBS {parent} does not exist.", 400)
        self._log("create_wbs", data)
        record = {**data, "ObjectId": self._new_id()}
        self.wbs.append(record)
        return record["ObjectId"]

    def update_wbs(self, object_id: str, data: dict) -> None:
        self.connect()
        record = _find(self.wbs, ObjectId=object_id)
        if record is None:
            raise ApiError(f"P6: WBS {object_id} not found.", 404)
        self._log("update_wbs", {"ObjectId": object_id, **data})
        record.update(data)

    def list_activities(self, wbs_object_id: str) -> list[dict]:
        self.connect()
        return copy.deepcopy([a for a in self.activities if a.get("WBSObjectId") == wbs_object_id])

    def list_resource_assignments(self) -> list[dict]:
        self.connect()
        return copy.deepcopy(self.assignments)


class FixtureEbsSource(_Fixture, EbsSource):
    """EBS backed by Python lists."""

    def __init__(self, projects=None, tasks=None, assignments=None, offline: bool = False):
        super().__init__(offline)
        self.projects = copy.deepcopy(EBS_PROJECTS if projects is None else projects)
        self.tasks = copy.deepcopy(EBS_TASKS if tasks is None else tasks)
        self.assignments = copy.deepcopy(EBS_RESOURCE_ASSIGNMENTS if assignments is None else assignments)

    def list_projects(self) -> list[dict]:
        self.connect()
        return copy.deepcopy(self.projects)

    def get_project(self, project_id: str) -> dict | None:
        self.connect()
        return copy.deepcopy(_find(self.projects, PROJECT_ID=project_id))

    def list_tasks(self, project_id: str) -> list[dict]:
        self.connect()
        return copy.deepcopy([t for t in self.tasks if t.get("PROJECT_ID") == project_id])

    def update_task(self, project_id: str, task_id: str, data: dict) -> None:
        self.connect()
        record = _find(self.tasks, PROJECT_ID=project_id, TASK_ID=task_id)
        if record is None:
            raise ApiError(f"EBS: Task {task_id} not found in project {project_id}.", 404)
        self._log("update_task", {"TASK_ID": task_id, **data})
        record.update(data)

    def find_resource_assignments(self, resource_id: str, activity_id: str) -> list[dict]:
        self.connect()
        return copy.deepcopy(
            [a for a in self.assignments if a.get("resourceId") == resource_id and a.get("activityId") == activity_id]
        )

    def create_resource_assignment(self, data: dict) -> None:
        self.connect()
        self._log("create_resource_assignment", data)
        self.assignments.append(dict(data))

    def update_resource_assignment(self, resource_id: str, activity_id: str, data: dict) -> None:
        self.connect()
        record = _find(self.assignments, resourceId=resource_id, activityId=activity_id)
        if record is None:
            raise ApiError(f"EBS: Resource assignment {resource_id}/{activity_id} not found.", 404)
        self._log("update_resource_assignment", {"resourceId": resource_id, "activityId": activity_id, **data})
        record.update(data)
