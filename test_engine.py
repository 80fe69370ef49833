"""Tests for the sync engine, run against the fixture data sources."""

import pytest

from clients import ApiError, EbsClient, P6Client
from engine import SyncEngine, create_sources, order_tasks
from fixtures import P6_ACTIVITIES, FixtureEbsSource, FixtureP6Source
from models import COMPLETED, FAILED, Stage, SyncConfig
from tracking import JsonSyncLog, MemorySyncLog


def _task(task_id, parent=None, project="EBS1002", status="APPROVED"):
    return {
        "TASK_ID": task_id,
        "TASK_NUMBER": f"NUM-{task_id}",
        "TASK_NAME": f"Task {task_id}",
        "PARENT_TASK_ID": parent,
        "STATUS_CODE": status,
        "PROJECT_ID": project,
    }


def _assignment(resource_id, activity_id, cost=100):
    return {
        "ResourceId": resource_id,
        "ActivityId": activity_id,
        "ActualCost": cost,
        "ActualDuration": 2,
        "ActualUnits": 1.0,
        "ActualStartDate": "2025-05-01",
        "ActualFinishDate": "2025-05-03",
    }


def _created_wbs(p6):
    """Payloads of create_wbs calls, in call order."""
    return [payload for op, payload in p6.writes if op == "create_wbs"]


@pytest.fixture
def p6():
    return FixtureP6Source()


@pytest.fixture
def ebs():
    return FixtureEbsSource()


@pytest.fixture
def engine(p6, ebs):
    return SyncEngine(p6, ebs)


# ---------------------------------------------------------------------------
# order_tasks — parents before children
# ---------------------------------------------------------------------------

class TestOrderTasks:

    def test_three_levels_given_in_reverse(self):
        tasks = [_task("T3", "T2"), _task("T2", "T1"), _task("T1")]
        ordered, on_cycle = order_tasks(tasks)
        assert [t["TASK_ID"] for t in ordered] == ["T1", "T2", "T3"]
        assert on_cycle == []

    def test_level_by_level(self):
        tasks = [_task("C1", "B1"), _task("B1", "A"), _task("B2", "A"), _task("A")]
        ordered, _ = order_tasks(tasks)
        assert [t["TASK_ID"] for t in ordered] == ["A", "B1", "B2", "C1"]

    def test_roots_before_orphans(self):
        tasks = [_task("O", "MISSING"), _task("R")]
        ordered, _ = order_tasks(tasks)
        assert [t["TASK_ID"] for t in ordered] == ["R", "O"]

    def test_cycle(self):
        tasks = [_task("R"), _task("A", "B"), _task("B", "A")]
        ordered, on_cycle = order_tasks(tasks)
        assert [t["TASK_ID"] for t in ordered] == ["R"]
        assert [t["TASK_ID"] for t in on_cycle] == ["A", "B"]

    def test_own_parent_is_a_cycle(self):
        _, on_cycle = order_tasks([_task("A", "A")])
        assert [t["TASK_ID"] for t in on_cycle] == ["A"]


# ---------------------------------------------------------------------------
# sync_project
# ---------------------------------------------------------------------------

class TestSyncProject:

    def test_creates_missing_project(self, engine, p6):
        result = engine.sync_project("EBS1001")

        assert result.success
        assert result.stage == Stage.COMPLETED
        assert result.message == "Project created in P6"
        created = [p for p in p6.projects if p["Id"] == "EBS1001"]
        assert len(created) == 1
        assert created[0]["ObjectId"] == result.target_id
        assert created[0]["Status"] == "Active"
        assert created[0]["ParentEPSObjectId"] == "100"
        assert created[0]["OBSObjectId"] == "200"

    def test_updates_existing_project(self, engine, p6):
        result = engine.sync_project("EBS1002")

        assert result.success
        assert result.message == "Project updated in P6"
        assert result.target_id == "5001"
        op, payload = p6.writes[-1]
        assert op == "update_project"
        assert payload["ObjectId"] == "5001"
        assert payload["Status"] == "Planned"
        assert payload["Name"] == "Data Center Renovation"

    def test_twice_is_idempotent(self, engine, p6):
        first = engine.sync_project("EBS1001")
        second = engine.sync_project("EBS1001")

        assert first.target_id == second.target_id
        assert second.message == "Project updated in P6"
        assert len([p for p in p6.projects if p["Id"] == "EBS1001"]) == 1

    def test_id_is_normalized(self, engine):
        assert engine.sync_project(" ebs1002 ").target_id == "5001"

    def test_unknown_project_fails_call(self, engine):
        result = engine.sync_project("EBS9999")

        assert not result.success
        assert result.stage == Stage.FAILED
        assert "EBS project not found" in result.message
        assert result.extra["failedStage"] == "Fetching"

    def test_no_eps_fails_call(self, ebs):
        engine = SyncEngine(FixtureP6Source(eps=[]), ebs)
        result = engine.sync_project("EBS1001")

        assert not result.success
        assert "No EPS nodes found" in result.message
        assert result.extra["failedStage"] == "Writing"

    def test_offline_target_fails_call(self, ebs):
        engine = SyncEngine(FixtureP6Source(offline=True), ebs)
        result = engine.sync_project("EBS1001")

        assert not result.success
        assert "Cannot connect" in result.message

    def test_external_id_field(self, p6, ebs):
        engine = SyncEngine(p6, ebs, SyncConfig(external_id_field="EbsProjectId"))
        first = engine.sync_project("EBS1001")

        # Renamed in P6 afterwards; the external id still finds it
        created = next(p for p in p6.projects if p["ObjectId"] == first.target_id)
        assert created["EbsProjectId"] == "EBS1001"
        created["Id"] = "OFFICE-BUILDING"

        second = engine.sync_project("EBS1001")
        assert second.target_id == first.target_id

    def test_sync_log(self, engine):
        engine.sync_project("EBS1001")
        engine.sync_project("EBS9999")

        failed, completed = engine.sync_log.recent(2)
        assert completed.type == "Project EBS to P6"
        assert completed.status == COMPLETED
        assert completed.completed_at is not None
        assert failed.status == FAILED
        assert "EBS9999" in failed.details


# ---------------------------------------------------------------------------
# sync_tasks — EBS tasks -> P6 WBS
# ---------------------------------------------------------------------------

class TestSyncTasks:

    def test_requires_p6_project(self, engine):
        result = engine.sync_tasks("EBS1001")
        assert not result.success
        assert "P6 project not found" in result.message

    def test_multi_level_tree_parent_before_child(self, engine, p6):
        engine.sync_project("EBS1001")
        result = engine.sync_tasks("EBS1001")

        assert result.success
        assert result.results.succeeded == 6
        assert result.results.failed == 0

        created = _created_wbs(p6)
        position = {payload["Id"]: i for i, payload in enumerate(created)}
        object_ids = {w["Id"]: w["ObjectId"] for w in p6.wbs}
        parents = {"T1002": "T1001", "T1003": "T1002", "T1004": "T1001", "T1005": "T1004", "T1006": "T1001"}
        for child, parent in parents.items():
            assert position[parent] < position[child]
            assert next(w for w in p6.wbs if w["Id"] == child)["ParentObjectId"] == object_ids[parent]
        assert next(w for w in p6.wbs if w["Id"] == "T1001")["ParentObjectId"] is None

    def test_root_written_before_child_given_first(self, p6):
        ebs = FixtureEbsSource(tasks=[_task("C", "R"), _task("R")])
        result = SyncEngine(p6, ebs).sync_tasks("EBS1002")

        root = result.results.get(taskId="R")
        child = result.results.get(taskId="C")
        assert root.action == "created"
        assert child.action == "created"
        assert [payload["Id"] for payload in _created_wbs(p6)] == ["R", "C"]
        assert _created_wbs(p6)[1]["ParentObjectId"] == root.target_id
        assert _created_wbs(p6)[1]["ProjectObjectId"] == "5001"

    def test_updates_existing_wbs(self, engine, p6):
        result = engine.sync_tasks("EBS1002")

        assert result.success
        assert result.target_id == "5001"
        assert result.results.get(taskId="T2001").action == "updated"
        assert result.results.get(taskId="T2001").target_id == "6001"
        assert result.results.get(taskId="T2002").target_id == "6002"
        new = result.results.get(taskId="T2003")
        assert new.action == "created"
        assert next(w for w in p6.wbs if w["ObjectId"] == new.target_id)["ParentObjectId"] == "6001"

    def test_rerun_updates_only(self, engine, p6):
        engine.sync_project("EBS1001")
        engine.sync_tasks("EBS1001")
        count = len(p6.wbs)

        result = engine.sync_tasks("EBS1001")
        assert {item.action for item in result.results.items} == {"updated"}
        assert len(p6.wbs) == count

    def test_missing_parent_fails_item_only(self, p6):
        ebs = FixtureEbsSource(tasks=[_task("R"), _task("C", "MISSING"), _task("GC", "C")])
        result = SyncEngine(p6, ebs).sync_tasks("EBS1002")

        assert result.success
        assert result.results.get(taskId="R").success
        child = result.results.get(taskId="C")
        assert not child.success
        assert "parent wbs not found" in child.error.lower()
        assert not result.results.get(taskId="GC").success
        assert [payload["Id"] for payload in _created_wbs(p6)] == ["R"]

    def test_cycle_fails_items(self, p6):
        ebs = FixtureEbsSource(tasks=[_task("R"), _task("A", "B"), _task("B", "A")])
        result = SyncEngine(p6, ebs).sync_tasks("EBS1002")

        assert result.success
        assert result.results.succeeded == 1
        assert result.results.failed == 2
        assert "cycle" in result.results.get(taskId="A").error

    def test_duplicate_task_id(self, p6):
        ebs = FixtureEbsSource(tasks=[_task("R"), _task("R")])
        result = SyncEngine(p6, ebs).sync_tasks("EBS1002")

        assert result.results.succeeded == 1
        assert result.results.failed == 1
        assert "Duplicate" in result.results.items[0].error

    def test_write_error_fails_item_and_children(self, p6):
        ebs = FixtureEbsSource(tasks=[_task("R"), _task("A", "R"), _task("B", "A"), _task("S", "R")])
        original = p6.create_wbs

        def flaky(data):
            if data["Id"] == "A":
                raise ApiError("P6: Server error.", 500)
            return original(data)

        p6.create_wbs = flaky
        result = SyncEngine(p6, ebs).sync_tasks("EBS1002")

        assert result.success
        assert [item.key["taskId"] for item in result.results.items if item.success] == ["R", "S"]
        assert result.results.get(taskId="A").error == "P6: Server error."
        assert "parent wbs not found" in result.results.get(taskId="B").error.lower()

    def test_unreadable_wbs_pool_creates(self, p6, ebs, caplog):
        def broken(project_object_id):
            raise ApiError("P6: Server error.", 500)

        p6.list_wbs = broken
        result = SyncEngine(p6, ebs).sync_tasks("EBS1002")

        assert result.success
        assert {item.action for item in result.results.items} == {"created"}
        assert "Could not load existing P6 WBS" in caplog.text

    def test_offline_source_fails_call(self, p6):
        result = SyncEngine(p6, FixtureEbsSource(offline=True)).sync_tasks("EBS1002")
        assert not result.success
        assert result.results is None


# ---------------------------------------------------------------------------
# sync_wbs_to_tasks — P6 progress -> EBS tasks
# ---------------------------------------------------------------------------

class TestSyncWbsToTasks:

    def test_rolls_up_activities(self, engine, ebs):
        result = engine.sync_wbs_to_tasks("EBS1002")

        assert result.success
        task = next(t for t in ebs.tasks if t["TASK_ID"] == "T2001")
        assert task["START_DATE"] == "2025-06-15"
        assert task["COMPLETION_DATE"] == "2025-07-20"
        assert task["PHYSICAL_PERCENT_COMPLETE"] == 90
        task = next(t for t in ebs.tasks if t["TASK_ID"] == "T2002")
        assert task["PHYSICAL_PERCENT_COMPLETE"] == 45

    def test_node_without_activities_is_skipped(self, engine, ebs):
        result = engine.sync_wbs_to_tasks("EBS1002")

        skipped = result.results.get(wbsId="T2009")
        assert skipped.action == "skipped"
        assert result.results.summary() == "3 succeeded, 0 failed (1 skipped)"
        assert [payload["TASK_ID"] for op, payload in ebs.writes] == ["T2001", "T2002"]

    def test_missing_ebs_task_fails_item(self, ebs):
        activities = P6_ACTIVITIES + [
            {"ObjectId": "7009", "Id": "A009", "WBSObjectId": "6003",
             "StartDate": "2025-09-01", "FinishDate": "2025-09-30", "PercentComplete": 0},
        ]
        result = SyncEngine(FixtureP6Source(activities=activities), ebs).sync_wbs_to_tasks("EBS1002")

        assert result.success
        failed = result.results.get(wbsId="T2009")
        assert not failed.success
        assert "EBS task not found" in failed.error
        assert result.results.get(wbsId="T2001").success

    def test_unknown_p6_project(self, engine):
        result = engine.sync_wbs_to_tasks("EBS1001")
        assert not result.success
        assert "P6 project not found" in result.message

    def test_missing_ebs_project(self, p6):
        result = SyncEngine(p6, FixtureEbsSource(projects=[])).sync_wbs_to_tasks("EBS1002")
        assert not result.success
        assert "EBS project not found" in result.message


# ---------------------------------------------------------------------------
# sync_resource_assignments — P6 -> EBS
# ---------------------------------------------------------------------------

class TestSyncResourceAssignments:

    def test_updates_and_creates(self, engine, ebs):
        result = engine.sync_resource_assignments()

        assert result.success
        assert result.results.get(resourceId="R001", activityId="A001").action == "updated"
        assert result.results.get(resourceId="R003", activityId="A003").action == "created"
        updated = next(a for a in ebs.assignments if a["resourceId"] == "R001")
        assert float(updated["actualCost"]) == 16500.5
        created = next(a for a in ebs.assignments if a["resourceId"] == "R003")
        assert created["actualDuration"] == 20

    def test_one_write_error_does_not_abort(self):
        p6 = FixtureP6Source(assignments=[_assignment(f"R{n}", f"A{n}") for n in range(1, 6)])
        ebs = FixtureEbsSource(assignments=[])
        original = ebs.create_resource_assignment

        def flaky(data):
            if data["resourceId"] == "R3":
                raise ApiError("EBS: Server error.", 500)
            original(data)

        ebs.create_resource_assignment = flaky
        result = SyncEngine(p6, ebs).sync_resource_assignments()

        assert result.success
        assert result.results.succeeded == 4
        assert result.results.failed == 1
        failed = result.results.get(resourceId="R3", activityId="A3")
        assert not failed.success
        assert failed.error == "EBS: Server error."
        assert len(ebs.assignments) == 4

    def test_invalid_assignment_fails_item(self):
        p6 = FixtureP6Source(assignments=[_assignment("R1", "A1", cost=-5), _assignment("R2", "A2")])
        ebs = FixtureEbsSource(assignments=[])
        result = SyncEngine(p6, ebs).sync_resource_assignments()

        assert result.results.get(resourceId="R1").error == "ActualCost must not be negative"
        assert result.results.get(resourceId="R2").success

    def test_ids_normalized_before_lookup(self, ebs):
        p6 = FixtureP6Source(assignments=[_assignment(" r001", "a001 ")])
        result = SyncEngine(p6, ebs).sync_resource_assignments()

        item = result.results.items[0]
        assert item.key == {"resourceId": "R001", "activityId": "A001"}
        assert item.action == "updated"

    def test_offline_fails_call(self, ebs):
        result = SyncEngine(FixtureP6Source(offline=True), ebs).sync_resource_assignments()
        assert not result.success
        assert result.stage == Stage.FAILED


# ---------------------------------------------------------------------------
# sync_all_projects
# ---------------------------------------------------------------------------

class TestSyncAllProjects:

    def test_only_approved_and_active(self, engine):
        result = engine.sync_all_projects()

        assert result.success
        assert [item.key["projectId"] for item in result.results.items] == ["EBS1001", "EBS1003"]
        assert {item.action for item in result.results.items} == {"created"}
        assert "taskSync" not in result.extra

    def test_active_status_case_insensitive(self, p6):
        ebs = FixtureEbsSource(projects=[
            {"PROJECT_ID": "EBS2001", "NAME": "A", "STATUS_CODE": "active"},
            {"PROJECT_ID": "EBS2002", "NAME": "B", "STATUS_CODE": "INACTIVE"},
        ])
        result = SyncEngine(p6, ebs).sync_all_projects()
        assert [item.key["projectId"] for item in result.results.items] == ["EBS2001"]

    def test_with_tasks(self, engine):
        result = engine.sync_all_projects(sync_tasks=True)

        assert result.success
        assert result.extra["taskSync"] == {"total": 8, "succeeded": 8, "failed": 0}
        assert result.results.get(projectId="EBS1001").detail["tasks"]["synced"] == 6

    def test_failing_projects_recorded(self, ebs):
        result = SyncEngine(FixtureP6Source(eps=[]), ebs).sync_all_projects()

        assert result.success
        assert result.results.failed == 2
        assert "No EPS nodes found" in result.results.items[0].error

    def test_offline_fails_call(self, p6):
        result = SyncEngine(p6, FixtureEbsSource(offline=True)).sync_all_projects()
        assert not result.success


# ---------------------------------------------------------------------------
# Health, construction
# ---------------------------------------------------------------------------

class TestCheckHealth:

    def test_both_connected(self, engine):
        health = engine.check_health()
        assert health["p6"] == "connected"
        assert health["ebs"] == "connected"
        assert health["timestamp"]

    def test_disconnected(self, ebs):
        health = SyncEngine(FixtureP6Source(offline=True), ebs).check_health()
        assert health["p6"] == "disconnected"
        assert health["ebs"] == "connected"


class TestConstruction:

    def test_fixture_backend(self):
        engine = SyncEngine.from_config({"backend": "fixture"})
        assert isinstance(engine.p6, FixtureP6Source)
        assert isinstance(engine.ebs, FixtureEbsSource)
        assert isinstance(engine.sync_log, MemorySyncLog)

    def test_live_backend(self):
        p6, ebs = create_sources({
            "p6": {"base_url": "https://p6.example.com/p6ws/", "username": "u", "password": "p"},
            "ebs": {"base_url": "https://ebs.example.com/api", "username": "u", "password": "p"},
        })
        assert isinstance(p6, P6Client)
        assert isinstance(ebs, EbsClient)
        assert p6.config.base_url == "https://p6.example.com/p6ws"

    def test_log_file(self, tmp_path):
        path = tmp_path / "ops.json"
        engine = SyncEngine.from_config({"backend": "fixture", "sync": {"log_file": str(path)}})
        assert isinstance(engine.sync_log, JsonSyncLog)

        engine.sync_project("EBS1002")
        assert path.exists()

    def test_fuzzy_names_from_config(self):
        engine = SyncEngine.from_config({"backend": "fixture", "sync": {"allow_fuzzy_names": True}})
        assert engine.project_resolver.allow_fuzzy
        assert engine.wbs_resolver.allow_fuzzy
