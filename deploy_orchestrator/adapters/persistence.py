"""Database-backed port implementations."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from deploy_orchestrator.application.ports import VersionStore
from deploy_orchestrator.database import Database
from deploy_orchestrator.models import DeploymentRecord


@dataclass(slots=True)
class DatabaseVersionStore(VersionStore):
    """Append-only version store backed by SQLite."""

    database: Database

    def record(self, record: DeploymentRecord) -> DeploymentRecord:
        record_id = self.database.append_record(record)
        return record.model_copy(update={"id": record_id})

    def last_success(
        self, target_id: str, *, exclude_version: Optional[str] = None
    ) -> Optional[DeploymentRecord]:
        if exclude_version is None:
            return self.database.last_success(target_id)
        return self.database.last_success_excluding(target_id, exclude_version)

    def list_records(self, target_id: str) -> list[DeploymentRecord]:
        return self.database.list_records(target_id)

    def list_for_request(self, request_id: str) -> list[DeploymentRecord]:
        return self.database.list_records_for_request(request_id)
