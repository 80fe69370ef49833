"""Data models for P6 <-> EBS sync."""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum


class SyncError(Exception):
    """A sync step could not be completed (missing record, bad hierarchy)."""


class Stage(str, Enum):
    """Where a sync call currently is, or where it stopped."""

    FETCHING = "Fetching"
    MAPPING = "Mapping"
    RESOLVING = "Resolving"
    WRITING = "Writing"
    COMPLETED = "Completed"
    FAILED = "Failed"


# Sync operation log statuses
IN_PROGRESS = "In Progress"
COMPLETED = "Completed"
FAILED = "Failed"


@dataclass
class ClientConfig:
    """Connection settings for one remote system."""

    base_url: str
    username: str = ""
    password: str = ""
    database_name: str | None = None  # P6 only
    timeout_s: float = 30.0
    retry_attempts: int = 3
    backoff_s: float = 1.0
    session_ttl_s: int = 3600  # Used when the server gives no expiry


@dataclass
class SyncConfig:
    """Configuration for sync behavior."""

    allow_fuzzy_names: bool = False
    external_id_field: str | None = None  # P6 field carrying the EBS id
    id_aliases: dict[str, str] = field(default_factory=dict)
    log_file: str | None = None
    log_max_operations: int = 1000  # Oldest entries beyond this are dropped


@dataclass
class Resolution:
    """Outcome of looking up a source entity in the target system."""

    found: bool
    target_id: str | None = None
    snapshot: dict | None = None
    strategy: str | None = None  # external_id, natural_id, name

    @classmethod
    def not_found(cls) -> "Resolution":
        return cls(found=False)


@dataclass
class ItemResult:
    """Per-item outcome inside a batch."""

    key: dict[str, str]
    success: bool
    action: str  # created, updated, skipped, failed
    target_id: str | None = None
    error: str | None = None
    detail: dict = field(default_factory=dict)

    def to_dict(self) -> dict:
        data = {**self.key, "action": self.action, "success": self.success}
        if self.target_id is not None:
            data["targetId"] = self.target_id
        if self.error is not None:
            data["error"] = self.error
        data.update(self.detail)
        return data


@dataclass
class SyncOperation:
    """A row in the sync operation log."""

    id: str
    type: str
    source: str
    status: str = IN_PROGRESS
    details: str = ""
    started_at: str = field(default_factory=lambda: datetime.now().isoformat(timespec="seconds"))
    completed_at: str | None = None
