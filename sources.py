"""Capability interfaces of the two systems.

The engine only talks to these; whether the records come from the live
REST APIs (clients.py) or from in-memory fixtures (fixtures.py) is
decided once, when the sources are created.
"""

from abc import ABC, abstractmethod


class P6Source(ABC):
    """Scheduling system: projects, EPS/OBS, WBS, activities, assignments."""

    name = "P6"

    @abstractmethod
    def connect(self) -> None:
        """Authenticate; raises ConnectivityError when unreachable."""

    def ping(self) -> bool:
        try:
            self.connect()
        except Exception:
            return False
        return True

    @abstractmethod
    def list_projects(self, project_id: str | None = None) -> list[dict]:
        """All projects, or those whose Id equals project_id."""

    def get_project(self, project_id: str) -> dict | None:
        projects = self.list_projects(project_id)
        return projects[0] if projects else None

    @abstractmethod
    def create_project(self, data: dict) -> str:
        """Create a project, return its ObjectId."""

    @abstractmethod
    def update_project(self, object_id: str, data: dict) -> None: ...

    @abstractmethod
    def list_eps(self) -> list[dict]: ...

    @abstractmethod
    def list_obs(self) -> list[dict]: ...

    @abstractmethod
    def list_wbs(self, project_object_id: str) -> list[dict]: ...

    @abstractmethod
    def create_wbs(self, data: dict) -> str:
        """Create a WBS node, return its ObjectId."""

    @abstractmethod
    def update_wbs(self, object_id: str, data: dict) -> None: ...

    @abstractmethod
    def list_activities(self, wbs_object_id: str) -> list[dict]: ...

    @abstractmethod
    def list_resource_assignments(self) -> list[dict]: ...


class EbsSource(ABC):
    """Financial system: projects, tasks, resource assignments."""

    name = "EBS"

    @abstractmethod
    def connect(self) -> None:
        """Authenticate; raises ConnectivityError when unreachable."""

    def ping(self) -> bool:
        try:
            self.connect()
        except Exception:
            return False
        return True

    @abstractmethod
    def list_projects(self) -> list[dict]: ...

    @abstractmethod
    def get_project(self, project_id: str) -> dict | None: ...

    @abstractmethod
    def list_tasks(self, project_id: str) -> list[dict]: ...

    @abstractmethod
    def update_task(self, project_id: str, task_id: str, data: dict) -> None: ...

    @abstractmethod
    def find_resource_assignments(self, resource_id: str, activity_id: str) -> list[dict]: ...

    @abstractmethod
    def create_resource_assignment(self, data: dict) -> None: ...

    @abstractmethod
    def update_resource_assignment(self, resource_id: str, activity_id: str, data: dict) -> None: ...
