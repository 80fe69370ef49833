"""API clients for P6 and EBS."""

import json
import logging
import time
from datetime import date, datetime
from decimal import Decimal
from typing import Callable, TypeVar

import requests

from mapping import parse_date
from models import ClientConfig
from patterns import Patterns
from sources import EbsSource, P6Source
from utils import retry

T = TypeVar("T")

logger = logging.getLogger(__name__)

TOKEN_SKEW_S = 60  # Refresh this long before the token actually expires

P6_PROJECT_FIELDS = "ObjectId,Id,Name,Status,PlannedStartDate,PlannedFinishDate,OBSName"
P6_WBS_FIELDS = "ObjectId,Id,Code,Name,Status,ParentObjectId,ProjectObjectId,AnticipatedStartDate,AnticipatedFinishDate"
P6_ACTIVITY_FIELDS = "ObjectId,Id,WBSObjectId,StartDate,FinishDate,PercentComplete"
P6_ASSIGNMENT_FIELDS = (
    "ResourceId,ActivityId,ActualCost,ActualDuration,ActualUnits,ActualStartDate,ActualFinishDate"
)


class ApiError(Exception):
    """User-friendly API error."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class ConnectivityError(ApiError):
    """The remote system could not be reached at all."""


def _handle_api_error(response: requests.Response, service: str) -> str:
    """Convert HTTP errors to user-friendly messages."""
    status = response.status_code

    messages = {
        400: f"{service}: Bad request. The record was rejected: {response.text[:200]}",
        401: f"{service}: Authentication failed. Check username and password!",
        403: f"{service}: Access denied. Check your permissions!",
        404: f"{service}: Resource not found. Check the base_url in config.json!",
        429: f"{service}: Too many requests. Wait a moment and try again.",
        500: f"{service}: Server error. The service may be temporarily unavailable.",
        502: f"{service}: Bad gateway. The service may be temporarily unavailable.",
        503: f"{service}: Service unavailable. Try again later.",
    }

    return messages.get(status, f"{service}: HTTP {status} - {response.reason}")


def _is_transient(error: Exception) -> bool:
    """Connection problems and 5xx are retried, 4xx never."""
    if isinstance(error, ConnectivityError):
        return True
    return isinstance(error, ApiError) and error.status_code is not None and error.status_code >= 500


def _json_default(value):
    if isinstance(value, Decimal):
        return float(value)
    if isinstance(value, (date, datetime)):
        return value.isoformat()
    raise TypeError(f"Cannot serialize {type(value).__name__}")


def _as_list(data) -> list[dict]:
    """Collections arrive either bare or wrapped in {"items": [...]}."""
    if data is None:
        return []
    if isinstance(data, dict):
        return list(data.get("items", []))
    return list(data)


def _segment(value) -> str:
    """Quote an id for use as one URL path segment."""
    return requests.utils.quote(str(value), safe="")


class RestClient:
    """Shared plumbing: session, token cache, retries, error translation."""

    service = "API"

    def __init__(self, config: ClientConfig, session: requests.Session | None = None):
        self.config = config
        self.session = session or requests.Session()
        self.session.headers.update(
            {"Accept": "application/json", "Content-Type": "application/json"}
        )
        self._token: str | None = None
        self._token_expires_at = 0.0

    def connect(self) -> None:
        self._ensure_token()

    def _ensure_token(self) -> None:
        """Authenticate unless the cached token is still comfortably valid."""
        if self._token and time.time() < self._token_expires_at - TOKEN_SKEW_S:
            return
        self._token, self._token_expires_at = self._with_retries(self._authenticate, "login")
        logger.info(f"{self.service}: authenticated")

    def _with_retries(self, operation: Callable[[], T], label: str) -> T:
        """Run one HTTP exchange under the configured retry policy."""

        def on_retry(attempt_num: int, error: Exception) -> None:
            logger.warning(
                f"{self.service}: retrying {label} "
                f"(attempt {attempt_num}/{self.config.retry_attempts}): {error}"
            )

        return retry(
            operation,
            max_attempts=self.config.retry_attempts + 1,
            delay=self.config.backoff_s,
            is_transient=_is_transient,
            on_retry=on_retry,
        )

    def _authenticate(self) -> tuple[str, float]:
        """Log in, return (token, expiry as epoch seconds)."""
        raise NotImplementedError

    def _auth_headers(self) -> dict:
        return {}

    def _send(self, method: str, path: str, params=None, payload=None, headers=None) -> requests.Response:
        """Single HTTP attempt, errors translated to ApiError."""
        url = f"{self.config.base_url}{path}"
        try:
            r = self.session.request(
                method,
                url,
                params=params,
                data=json.dumps(payload, default=_json_default) if payload is not None else None,
                headers={**self._auth_headers(), **(headers or {})},
                timeout=self.config.timeout_s,
            )
        except requests.exceptions.ConnectionError:
            raise ConnectivityError(
                f"{self.service}: Cannot connect to {self.config.base_url}. Check your network!"
            )
        except requests.exceptions.Timeout:
            raise ConnectivityError(f"{self.service}: Connection timed out. The server may be slow.")

        if not r.ok:
            raise ApiError(_handle_api_error(r, self.service), r.status_code)
        return r

    def request(self, method: str, path: str, params=None, payload=None):
        """Authenticated request with retries; returns decoded JSON (or None)."""

        def send() -> requests.Response:
            return self._send(method, path, params, payload)

        self._ensure_token()
        try:
            r = self._with_retries(send, f"{method} {path}")
        except ApiError as e:
            if e.status_code != 401:
                raise
            # Token revoked server-side before its expiry; log in again once
            logger.info(f"{self.service}: token rejected, re-authenticating")
            self._token = None
            self._ensure_token()
            r = self._with_retries(send, f"{method} {path}")

        if not r.content:
            return None
        return r.json()


class P6Client(RestClient, P6Source):
    """Client for the P6 EPPM REST API (session cookie authentication)."""

    service = "P6"

    def _authenticate(self) -> tuple[str, float]:
        params = {"DatabaseName": self.config.database_name} if self.config.database_name else None
        self._send(
            "POST",
            "/restapi/login",
            params=params,
            headers={"username": self.config.username, "password": self.config.password},
        )
        # The session lives in the cookie jar; P6 does not announce an expiry
        return "session", time.time() + self.config.session_ttl_s

    def list_projects(self, project_id: str | None = None) -> list[dict]:
        params = {"Fields": P6_PROJECT_FIELDS}
        if project_id is not None:
            # The id is spliced into a P6 filter expression
            if not Patterns.ENTITY_ID.match(str(project_id)):
                raise ValueError(f"P6: Invalid project id for filter: {project_id!r}")
            params["Filter"] = f"Id = '{project_id}'"
        return _as_list(self.request("GET", "/restapi/project", params=params))

    def create_project(self, data: dict) -> str:
        created = _as_list(self.request("POST", "/restapi/project", payload=[data]))
        return str(created[0]["ObjectId"])

    def update_project(self, object_id: str, data: dict) -> None:
        self.request("PUT", "/restapi/project", payload=[{"ObjectId": object_id, **data}])

    def list_eps(self) -> list[dict]:
        return _as_list(self.request("GET", "/restapi/eps", params={"Fields": "ObjectId,Id,Name"}))

    def list_obs(self) -> list[dict]:
        return _as_list(self.request("GET", "/restapi/obs", params={"Fields": "ObjectId,GUID,Name"}))

    def list_wbs(self, project_object_id: str) -> list[dict]:
        params = {"Fields": P6_WBS_FIELDS, "Filter": f"ProjectObjectId = {project_object_id}"}
        return _as_list(self.request("GET", "/restapi/wbs", params=params))

    def create_wbs(self, data: dict) -> str:
        created = _as_list(self.request("POST", "/restapi/wbs", payload=[data]))
        return str(created[0]["ObjectId"])

    def update_wbs(self, object_id: str, data: dict) -> None:
        self.request("PUT", "/restapi/wbs", payload=[{"ObjectId": object_id, **data}])

    def list_activities(self, wbs_object_id: str) -> list[dict]:
        params = {"Fields": P6_ACTIVITY_FIELDS, "Filter": f"WBSObjectId = {wbs_object_id}"}
        return _as_list(self.request("GET", "/restapi/activity", params=params))

    def list_resource_assignments(self) -> list[dict]:
        params = {"Fields": P6_ASSIGNMENT_FIELDS}
        return _as_list(self.request("GET", "/restapi/resourceAssignment", params=params))


class EbsClient(RestClient, EbsSource):
    """Client for the EBS projects REST API (bearer token authentication)."""

    service = "EBS"

    def _authenticate(self) -> tuple[str, float]:
        r = self._send(
            "POST",
            "/auth",
            payload={"username": self.config.username, "password": self.config.password},
        )
        data = r.json()
        token = data.get("token")
        if not token:
            raise ApiError("EBS: Authentication response did not contain a token.")

        expires_at = time.time() + self.config.session_ttl_s
        if data.get("expires_in") is not None:
            expires_at = time.time() + float(data["expires_in"])
        elif data.get("expires"):
            expiry = parse_date(data["expires"])
            if expiry is not None:
                expires_at = (expiry - datetime(1970, 1, 1)).total_seconds()
        return token, expires_at

    def _auth_headers(self) -> dict:
        return {"Authorization": f"Bearer {self._token}"} if self._token else {}

    def list_projects(self) -> list[dict]:
        return _as_list(self.request("GET", "/projects"))

    def get_project(self, project_id: str) -> dict | None:
        try:
            return self.request("GET", f"/projects/{_segment(project_id)}")
        except ApiError as e:
            if e.status_code == 404:
                return None
            raise

    def list_tasks(self, project_id: str) -> list[dict]:
        return _as_list(self.request("GET", f"/projects/{_segment(project_id)}/tasks"))

    def update_task(self, project_id: str, task_id: str, data: dict) -> None:
        self.request("PUT", f"/projects/{_segment(project_id)}/tasks/{_segment(task_id)}", payload=data)

    def find_resource_assignments(self, resource_id: str, activity_id: str) -> list[dict]:
        params = {"resourceId": resource_id, "activityId": activity_id}
        return _as_list(self.request("GET", "/resourceassignments", params=params))

    def create_resource_assignment(self, data: dict) -> None:
        self.request("POST", "/resourceassignments", payload=data)

    def update_resource_assignment(self, resource_id: str, activity_id: str, data: dict) -> None:
        self.request("PUT", f"/resourceassignments/{_segment(resource_id)}/{_segment(activity_id)}", payload=data)
