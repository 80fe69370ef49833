"""Sync orchestration between P6 and EBS.

Every public call walks the same stages (Fetching, Mapping, Resolving,
Writing) and always returns a SyncResult. A failure before the batch
starts (missing project, unreachable system) fails the whole call;
failures of single items are recorded in the result and the batch
carries on.
"""

import logging
from collections import defaultdict, deque
from dataclasses import dataclass
from datetime import datetime
from typing import Callable

from clients import ApiError, ConnectivityError, EbsClient, P6Client
from fixtures import FixtureEbsSource, FixtureP6Source
from mapping import (
    ebs_project_to_p6,
    ebs_task_to_p6_wbs,
    ingest,
    normalize_id,
    p6_assignment_to_ebs,
    p6_wbs_to_ebs_task,
    rollup_activities,
    validate_assignment,
)
from models import COMPLETED, FAILED, Stage, SyncConfig, SyncError
from resolver import ASSIGNMENT_RULE, PROJECT_RULE, TASK_RULE, WBS_RULE, EntityResolver
from results import BatchResults, SyncResult
from sources import EbsSource, P6Source
from tracking import JsonSyncLog, MemorySyncLog
from utils import client_config, sync_config

logger = logging.getLogger(__name__)

TASK_ID_FIELDS = ("TASK_ID", "PARENT_TASK_ID", "PROJECT_ID")
ASSIGNMENT_ID_FIELDS = ("ResourceId", "ActivityId")
BULK_STATUSES = ("APPROVED", "ACTIVE")


def create_sources(config: dict) -> tuple[P6Source, EbsSource]:
    """Pick live or fixture data sources once, from configuration."""
    if config.get("backend", "live") == "fixture":
        logger.info("Using fixture data for P6 and EBS")
        return FixtureP6Source(), FixtureEbsSource()
    return P6Client(client_config(config, "p6")), EbsClient(client_config(config, "ebs"))


def order_tasks(tasks: list[dict]) -> tuple[list[dict], list[dict]]:
    """Order tasks so every parent comes before its children.

    Kahn's algorithm over the parent -> child edges, roots first and then
    level by level. Tasks whose parent is not part of the list start the
    walk as well (they fail later, together with their descendants).

    Returns:
        - ordered: tasks in write order
        - on_cycle: tasks that can never be reached because their
          ancestry loops back on itself
    """
    known = {t["TASK_ID"] for t in tasks}
    children: dict[str, list[dict]] = defaultdict(list)
    starts = []

    for task in tasks:
        parent = task.get("PARENT_TASK_ID")
        if parent is not None and parent in known:
            children[parent].append(task)
        else:
            starts.append(task)

    # Real roots before orphans
    queue = deque(sorted(starts, key=lambda t: t.get("PARENT_TASK_ID") is not None))
    ordered = []
    while queue:
        task = queue.popleft()
        ordered.append(task)
        queue.extend(children.pop(task["TASK_ID"], []))

    reached = {id(t) for t in ordered}
    on_cycle = [t for t in tasks if id(t) not in reached]
    return ordered, on_cycle


@dataclass
class _Run:
    """Bookkeeping for one sync call."""

    operation_id: str
    stage: Stage = Stage.FETCHING


class SyncEngine:
    """Synchronizes projects, WBS/tasks and resource assignments."""

    def __init__(
        self,
        p6: P6Source,
        ebs: EbsSource,
        config: SyncConfig | None = None,
        sync_log: MemorySyncLog | None = None,
    ):
        self.p6 = p6
        self.ebs = ebs
        self.config = config or SyncConfig()
        self.sync_log = sync_log or MemorySyncLog()

        fuzzy = self.config.allow_fuzzy_names
        aliases = self.config.id_aliases
        external = self.config.external_id_field
        self.project_resolver = EntityResolver(PROJECT_RULE, fuzzy, aliases).with_external_id(external)
        self.wbs_resolver = EntityResolver(WBS_RULE, fuzzy, aliases).with_external_id(external)
        self.task_resolver = EntityResolver(TASK_RULE, fuzzy, aliases)
        self.assignment_resolver = EntityResolver(ASSIGNMENT_RULE, aliases=aliases)

    @classmethod
    def from_config(cls, config: dict) -> "SyncEngine":
        p6, ebs = create_sources(config)
        settings = sync_config(config)
        if settings.log_file:
            sync_log = JsonSyncLog(settings.log_file, settings.log_max_operations)
        else:
            sync_log = MemorySyncLog()
        return cls(p6, ebs, settings, sync_log)

    # ------------------------------------------------------------------
    # Projects
    # ------------------------------------------------------------------

    def sync_project(self, ebs_project_id: str) -> SyncResult:
        """Create or update the P6 project for one EBS project."""
        project_id = self._id(ebs_project_id)
        run = self._begin("Project EBS to P6", f"Project {project_id}")
        try:
            self._connect()
            project = self._fetch_ebs_project(project_id)

            run.stage = Stage.MAPPING
            data = ebs_project_to_p6(project)

            run.stage = Stage.RESOLVING
            match = self.project_resolver.resolve(project, lambda: self._p6_project_candidates(project_id))

            run.stage = Stage.WRITING
            if match.found:
                update = {
                    key: data[key]
                    for key in ("Name", "PlannedStartDate", "PlannedFinishDate", "ProjectManager", "Status")
                }
                self.p6.update_project(match.target_id, update)
                logger.info(f"Updated project in P6 with ID: {match.target_id}")
                result = SyncResult(True, "Project updated in P6", target_id=match.target_id,
                                    extra={"action": "updated"})
            else:
                eps = self._first(self.p6.list_eps(), "EPS")
                obs = self._first(self.p6.list_obs(), "OBS")
                logger.info(f"Using EPS node {eps.get('Name')} and OBS node {obs.get('Name')}")
                new = {**data, "ParentEPSObjectId": eps["ObjectId"], "OBSObjectId": obs["ObjectId"]}
                if self.config.external_id_field:
                    new[self.config.external_id_field] = project_id
                target_id = self.p6.create_project(new)
                logger.info(f"Created new project in P6 with ID: {target_id}")
                result = SyncResult(True, "Project created in P6", target_id=target_id,
                                    extra={"action": "created"})
            return self._finish(run, result)
        except Exception as e:
            return self._fail(run, e)

    def sync_all_projects(self, sync_tasks: bool = False) -> SyncResult:
        """Sync every approved/active EBS project, optionally with its tasks."""
        kind = "Bulk EBS to P6 Projects and Tasks" if sync_tasks else "Bulk EBS to P6 Projects"
        run = self._begin(kind, "All Projects")
        try:
            self._connect()
            projects = self.ebs.list_projects()
        except Exception as e:
            return self._fail(run, e)

        eligible = [p for p in projects if str(p.get("STATUS_CODE", "")).upper() in BULK_STATUSES]
        logger.info(f"Found {len(eligible)} eligible projects to sync")

        run.stage = Stage.WRITING
        batch = BatchResults()
        task_totals = {"total": 0, "succeeded": 0, "failed": 0}

        for project in eligible:
            project_id = project.get("PROJECT_ID")
            with batch.track({"projectId": project_id}) as item:
                result = self.sync_project(project_id)
                if not result.success:
                    raise SyncError(result.message)

                detail = {"name": project.get("NAME")}
                if sync_tasks:
                    task_result = self.sync_tasks(project_id)
                    if task_result.success:
                        tasks = task_result.results
                        task_totals["total"] += len(tasks.items)
                        task_totals["succeeded"] += tasks.succeeded
                        task_totals["failed"] += tasks.failed
                        detail["tasks"] = {"success": True, "synced": tasks.succeeded, "failed": tasks.failed}
                    else:
                        task_totals["failed"] += 1
                        detail["tasks"] = {"success": False, "error": task_result.message}
                item.done(result.extra.get("action", "synced"), result.target_id, **detail)

        message = f"Completed syncing {len(eligible)} projects: {batch.summary()}"
        if sync_tasks:
            message += f". Tasks: {task_totals['succeeded']} succeeded, {task_totals['failed']} failed"
        extra = {"taskSync": task_totals} if sync_tasks else {}
        return self._finish(run, SyncResult(True, message, results=batch, extra=extra))

    # ------------------------------------------------------------------
    # Tasks -> WBS
    # ------------------------------------------------------------------

    def sync_tasks(self, ebs_project_id: str) -> SyncResult:
        """Create or update P6 WBS nodes from the tasks of one EBS project.

        Parents are always written before their children; a child whose
        parent has no P6 node after this ordering fails on its own.
        """
        project_id = self._id(ebs_project_id)
        run = self._begin("Tasks EBS to P6", f"Project {project_id}")
        try:
            self._connect()
            project = self._fetch_ebs_project(project_id)
            match = self.project_resolver.resolve(project, lambda: self._p6_project_candidates(project_id))
            if not match.found:
                raise SyncError(f"P6 project not found for EBS project: {project_id}")
            p6_project_id = match.target_id
            tasks = [ingest(t, TASK_ID_FIELDS, self.config.id_aliases) for t in self.ebs.list_tasks(project_id)]
            logger.info(f"Retrieved {len(tasks)} tasks from EBS project {project_id}")

            run.stage = Stage.MAPPING
            batch = BatchResults()
            tasks = self._unique_tasks(tasks, batch)
            ordered, on_cycle = order_tasks(tasks)

            run.stage = Stage.RESOLVING
            existing = self._prefetch(lambda: self.p6.list_wbs(p6_project_id), "existing P6 WBS")
        except Exception as e:
            return self._fail(run, e)

        run.stage = Stage.WRITING
        written: dict[str, str] = {}  # EBS TASK_ID -> P6 WBS ObjectId

        for task in ordered:
            task_id = task["TASK_ID"]
            with batch.track({"taskId": task_id}) as item:
                parent = task.get("PARENT_TASK_ID")
                parent_object_id = None
                if parent is not None:
                    parent_object_id = written.get(parent)
                    if parent_object_id is None:
                        raise SyncError(f"Parent WBS not found (parent task {parent})")

                data = ebs_task_to_p6_wbs(task, parent_object_id)
                found = self.wbs_resolver.resolve(task, existing)
                if found.found:
                    self.p6.update_wbs(found.target_id, {k: v for k, v in data.items() if k != "Id"})
                    logger.info(f"Updated WBS in P6 for EBS task: {task_id}")
                    item.done("updated", found.target_id)
                    written[task_id] = found.target_id
                else:
                    new = {"ProjectObjectId": p6_project_id, **data}
                    if self.config.external_id_field:
                        new[self.config.external_id_field] = task_id
                    object_id = self.p6.create_wbs(new)
                    logger.info(f"Created new WBS in P6 for EBS task: {task_id}")
                    item.done("created", object_id)
                    written[task_id] = object_id

        for task in on_cycle:
            batch.fail({"taskId": task["TASK_ID"]}, "WBS hierarchy cycle: task is its own ancestor")

        message = f"Synced tasks of project {project_id} to P6: {batch.summary()}"
        return self._finish(run, SyncResult(True, message, target_id=p6_project_id, results=batch))

    # ------------------------------------------------------------------
    # WBS -> Tasks
    # ------------------------------------------------------------------

    def sync_wbs_to_tasks(self, p6_project_id: str) -> SyncResult:
        """Push progress rolled up from P6 activities onto the EBS tasks."""
        project_id = self._id(p6_project_id)
        run = self._begin("WBS P6 to EBS", f"Project {project_id}")
        try:
            self._connect()
            p6_project = self.p6.get_project(project_id)
            if p6_project is None:
                raise SyncError(f"P6 project not found: {project_id}")
            ebs_project_id = self._id(p6_project.get("Id"))
            if self.ebs.get_project(ebs_project_id) is None:
                raise SyncError(f"EBS project not found for P6 project: {project_id}")
            nodes = [ingest(w, ("Id",), self.config.id_aliases) for w in self.p6.list_wbs(p6_project["ObjectId"])]
            logger.info(f"Retrieved {len(nodes)} WBS elements from P6 project {project_id}")

            run.stage = Stage.RESOLVING
            ebs_tasks = self._prefetch(lambda: self.ebs.list_tasks(ebs_project_id), "EBS tasks")
        except Exception as e:
            return self._fail(run, e)

        run.stage = Stage.WRITING
        batch = BatchResults()
        for wbs in nodes:
            with batch.track({"wbsId": wbs.get("Id")}) as item:
                rollup = rollup_activities(self.p6.list_activities(wbs["ObjectId"]))
                if not rollup.has_data:
                    logger.info(f"Skipped updating EBS task {wbs.get('Id')} - no activity data available")
                    item.skip("No activity data available")
                    continue

                match = self.task_resolver.resolve(wbs, ebs_tasks)
                if not match.found:
                    raise SyncError(f"EBS task not found for WBS {wbs.get('Id')}")

                percent = rollup.percent_complete if rollup.activity_count else None
                data = p6_wbs_to_ebs_task(wbs, percent, rollup.start, rollup.finish)
                del data["TASK_ID"]
                self.ebs.update_task(ebs_project_id, match.target_id, data)
                logger.info(f"Updated EBS task {match.target_id} with data from P6 WBS")
                item.done("updated", match.target_id, updates=data)

        message = f"Synced WBS of project {project_id} to EBS: {batch.summary()}"
        return self._finish(run, SyncResult(True, message, results=batch))

    # ------------------------------------------------------------------
    # Resource assignments
    # ------------------------------------------------------------------

    def sync_resource_assignments(self) -> SyncResult:
        """Create or update every P6 resource assignment in EBS."""
        run = self._begin("Resource Assignments P6 to EBS", "All Resource Assignments")
        try:
            self._connect()
            assignments = [
                ingest(a, ASSIGNMENT_ID_FIELDS, self.config.id_aliases)
                for a in self.p6.list_resource_assignments()
            ]
            logger.info(f"Retrieved {len(assignments)} resource assignments from P6")
        except Exception as e:
            return self._fail(run, e)

        run.stage = Stage.WRITING
        batch = BatchResults()
        for assignment in assignments:
            resource_id = assignment.get("ResourceId")
            activity_id = assignment.get("ActivityId")
            with batch.track({"resourceId": resource_id, "activityId": activity_id}) as item:
                errors = validate_assignment(assignment)
                if errors:
                    raise SyncError("; ".join(errors))

                data = p6_assignment_to_ebs(assignment)
                match = self.assignment_resolver.resolve(
                    assignment, lambda: self.ebs.find_resource_assignments(resource_id, activity_id)
                )
                if match.found:
                    update = {k: v for k, v in data.items() if k not in ("resourceId", "activityId")}
                    self.ebs.update_resource_assignment(
                        match.snapshot["resourceId"], match.snapshot["activityId"], update
                    )
                    logger.info(f"Updated resource assignment in EBS for Resource: {resource_id}, Activity: {activity_id}")
                    item.done("updated")
                else:
                    self.ebs.create_resource_assignment(data)
                    logger.info(f"Created resource assignment in EBS for Resource: {resource_id}, Activity: {activity_id}")
                    item.done("created")

        message = f"Synced resource assignments to EBS: {batch.summary()}"
        return self._finish(run, SyncResult(True, message, results=batch))

    # ------------------------------------------------------------------
    # Health
    # ------------------------------------------------------------------

    def check_health(self) -> dict:
        return {
            "p6": "connected" if self.p6.ping() else "disconnected",
            "ebs": "connected" if self.ebs.ping() else "disconnected",
            "timestamp": datetime.now().isoformat(timespec="seconds"),
        }

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _id(self, value) -> str | None:
        return normalize_id(value, self.config.id_aliases)

    def _connect(self) -> None:
        self.p6.connect()
        self.ebs.connect()

    def _fetch_ebs_project(self, project_id: str | None) -> dict:
        if not project_id:
            raise SyncError("No EBS project id given")
        project = self.ebs.get_project(project_id)
        if project is None:
            raise SyncError(f"EBS project not found: {project_id}")
        project = ingest(project, ("PROJECT_ID",), self.config.id_aliases)
        logger.info(f"Retrieved EBS project: {project.get('NAME')}")
        return project

    def _p6_project_candidates(self, project_id: str) -> list[dict]:
        # Name and external-id matching need the whole project list
        if self.config.allow_fuzzy_names or self.config.external_id_field:
            return self.p6.list_projects()
        return self.p6.list_projects(project_id)

    def _prefetch(self, fetch: Callable[[], list[dict]], label: str) -> list[dict]:
        """Load a resolution pool; an unreadable pool means nothing matches."""
        try:
            return list(fetch())
        except ConnectivityError:
            raise
        except ApiError as e:
            logger.warning(f"Could not load {label}, every item will be treated as new: {e}")
            return []

    @staticmethod
    def _first(nodes: list[dict], kind: str) -> dict:
        # The first node P6 lists is the default container
        if not nodes:
            raise SyncError(f"No {kind} nodes found. Cannot create project without one.")
        return nodes[0]

    @staticmethod
    def _unique_tasks(tasks: list[dict], batch: BatchResults) -> list[dict]:
        """Drop tasks without an id or with an id seen before, recording them as failed."""
        unique, seen = [], set()
        for task in tasks:
            task_id = task.get("TASK_ID")
            if task_id is None:
                batch.fail({"taskId": None}, "Task has no TASK_ID")
            elif task_id in seen:
                batch.fail({"taskId": task_id}, "Duplicate TASK_ID in project")
            else:
                seen.add(task_id)
                unique.append(task)
        return unique

    def _begin(self, kind: str, source: str) -> _Run:
        return _Run(self.sync_log.start(kind, source))

    def _finish(self, run: _Run, result: SyncResult) -> SyncResult:
        result.stage = Stage.COMPLETED
        self.sync_log.finish(run.operation_id, COMPLETED, result.message)
        return result

    def _fail(self, run: _Run, error: Exception) -> SyncResult:
        if isinstance(error, (ApiError, SyncError)):
            logger.error(f"Sync failed during {run.stage.value}: {error}")
        else:
            logger.exception(f"Sync failed during {run.stage.value}")
        message = f"Error: {error}"
        self.sync_log.finish(run.operation_id, FAILED, f"{run.stage.value}: {error}")
        return SyncResult(False, message, stage=Stage.FAILED, extra={"failedStage": run.stage.value})
