"""Sync operation log.

The engine reports the start and the end of every batch here. Two
stores are provided: an in-process one and a JSON file, which is enough
for a command-line tool; anything heavier plugs in through the same
three methods.
"""

import json
import logging
import os
import uuid
from dataclasses import asdict
from datetime import datetime

from models import IN_PROGRESS, SyncOperation

logger = logging.getLogger(__name__)

MAX_OPERATIONS = 1000


class MemorySyncLog:
    """Keeps sync operations in a list."""

    def __init__(self):
        self.operations: list[SyncOperation] = []

    def start(self, type: str, source: str) -> str:
        operation = SyncOperation(id=str(uuid.uuid4()), type=type, source=source)
        self.operations.append(operation)
        self._save()
        logger.info(f"Sync operation logged: {type} - {operation.status}")
        return operation.id

    def finish(self, operation_id: str, status: str, details: str = "") -> SyncOperation | None:
        operation = self.get(operation_id)
        if operation is None:
            logger.warning(f"No sync operation found with ID: {operation_id}")
            return None
        operation.status = status
        operation.details = details
        if status != IN_PROGRESS:
            operation.completed_at = datetime.now().isoformat(timespec="seconds")
        self._save()
        logger.info(f"Sync operation updated: {operation.type} - {status}")
        return operation

    def get(self, operation_id: str) -> SyncOperation | None:
        for operation in self.operations:
            if operation.id == operation_id:
                return operation
        return None

    def recent(self, limit: int = 10) -> list[SyncOperation]:
        """Newest first."""
        return self.operations[::-1][:limit]

    def _save(self) -> None:
        pass


class JsonSyncLog(MemorySyncLog):
    """Sync operations persisted to a JSON file after every change.

    Only the newest ``max_operations`` entries are kept. A file that is
    not valid JSON raises json.JSONDecodeError on load.
    """

    def __init__(self, path: str, max_operations: int = MAX_OPERATIONS):
        super().__init__()
        self.path = path
        self.max_operations = max_operations
        if os.path.exists(path):
            with open(path) as f:
                self.operations = [SyncOperation(**row) for row in json.load(f)]

    def _save(self) -> None:
        if len(self.operations) > self.max_operations:
            self.operations = self.operations[-self.max_operations:]
        with open(self.path, "w") as f:
            json.dump([asdict(op) for op in self.operations], f, indent=2, ensure_ascii=False)
