"""Per-item result collection for sync batches."""

import logging
from dataclasses import dataclass, field

from models import ItemResult, Stage

logger = logging.getLogger(__name__)


class ItemTracker:
    """Handle for one batch item; the body reports how the item ended."""

    def __init__(self, batch: "BatchResults", key: dict[str, str]):
        self.batch = batch
        self.key = key
        self._result: ItemResult | None = None

    def done(self, action: str, target_id: str | None = None, **detail) -> None:
        self._result = ItemResult(self.key, True, action, target_id, detail=detail)

    def skip(self, reason: str) -> None:
        self._result = ItemResult(self.key, True, "skipped", detail={"reason": reason})

    def __enter__(self) -> "ItemTracker":
        return self

    def __exit__(self, exc_type, exc, tb) -> bool:
        if exc_type is None:
            self.batch.add(self._result or ItemResult(self.key, True, "synced"))
            return False
        if not issubclass(exc_type, Exception):
            return False  # KeyboardInterrupt and friends end the batch
        logger.error(f"Item {_describe(self.key)} failed: {exc}")
        self.batch.add(ItemResult(self.key, False, "failed", error=str(exc)))
        return True


class BatchResults:
    """Collects item outcomes so one failure never aborts the batch.

    Usage:
        for task in tasks:
            with batch.track({"taskId": task["TASK_ID"]}) as item:
                ...
                item.done("created", target_id)
    """

    def __init__(self):
        self.items: list[ItemResult] = []

    def track(self, key: dict[str, str]) -> ItemTracker:
        return ItemTracker(self, key)

    def add(self, result: ItemResult) -> None:
        self.items.append(result)

    def fail(self, key: dict[str, str], error: str) -> None:
        """Record a failure for an item that never reached processing."""
        logger.error(f"Item {_describe(key)} failed: {error}")
        self.add(ItemResult(key, False, "failed", error=error))

    @property
    def succeeded(self) -> int:
        return sum(1 for r in self.items if r.success)

    @property
    def failed(self) -> int:
        return sum(1 for r in self.items if not r.success)

    @property
    def skipped(self) -> int:
        return sum(1 for r in self.items if r.action == "skipped")

    def get(self, **key) -> ItemResult | None:
        """First result whose key contains the given fields."""
        for result in self.items:
            if all(result.key.get(k) == v for k, v in key.items()):
                return result
        return None

    def summary(self) -> str:
        text = f"{self.succeeded} succeeded, {self.failed} failed"
        if self.skipped:
            text += f" ({self.skipped} skipped)"
        return text

    def to_dict(self) -> dict:
        return {
            "success": self.succeeded,
            "failed": self.failed,
            "skipped": self.skipped,
            "items": [r.to_dict() for r in self.items],
        }


@dataclass
class SyncResult:
    """What a sync call hands back to its caller."""

    success: bool
    message: str
    stage: Stage = Stage.COMPLETED
    target_id: str | None = None
    results: BatchResults | None = None
    extra: dict = field(default_factory=dict)

    def to_dict(self) -> dict:
        data = {"success": self.success, "message": self.message, "stage": self.stage.value}
        if self.target_id is not None:
            data["targetId"] = self.target_id
        if self.results is not None:
            data["results"] = self.results.to_dict()
        data.update(self.extra)
        return data


def _describe(key: dict[str, str]) -> str:
    return ", ".join(f"{k}={v}" for k, v in key.items())
