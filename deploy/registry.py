"""
Container Registry

Disk-backed inventory of runtime units, one JSON file per unit at
``{apps_dir}/{app}/containers/{process_type}/{ordinal}.json``.
"""

import logging
import os
import tempfile
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path

from pydantic import BaseModel, Field, ValidationError

from deploy.errors import PreconditionError

logger = logging.getLogger(__name__)


class UnitStatus(str, Enum):
    RUNNING = "running"
    STOPPED = "stopped"


class ContainerRecord(BaseModel):
    name: str
    app_name: str
    process_type: str
    ordinal: int = Field(ge=1)
    host_port: int | None = None
    internal_port: int | None = None
    status: UnitStatus = UnitStatus.RUNNING
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @classmethod
    def for_unit(
        cls,
        app_name: str,
        process_type: str,
        ordinal: int,
        host_port: int | None = None,
        internal_port: int | None = None,
    ) -> "ContainerRecord":
        return cls(
            name=unit_name(app_name, process_type, ordinal),
            app_name=app_name,
            process_type=process_type,
            ordinal=ordinal,
            host_port=host_port,
            internal_port=internal_port,
        )


def unit_name(app_name: str, process_type: str, ordinal: int) -> str:
    return f"{app_name}-{process_type}-{ordinal}"


class ContainerRegistry:
    def __init__(self, base_path):
        self.base_path = Path(base_path)

    def _process_dir(self, app_name: str, process_type: str) -> Path:
        return self.base_path / app_name / "containers" / process_type

    def _record_path(self, app_name: str, process_type: str, ordinal: int) -> Path:
        return self._process_dir(app_name, process_type) / f"{ordinal}.json"

    def save(self, record: ContainerRecord) -> None:
        path = self._record_path(record.app_name, record.process_type, record.ordinal)
        path.parent.mkdir(parents=True, exist_ok=True)

        # Write-then-rename so readers never see a half-written record
        fd, tmp_path = tempfile.mkstemp(dir=path.parent, prefix=".", suffix=".tmp")
        try:
            with os.fdopen(fd, "w") as f:
                f.write(record.model_dump_json(indent=2))
                f.write("\n")
            os.replace(tmp_path, path)
        except BaseException:
            Path(tmp_path).unlink(missing_ok=True)
            raise

    def get(self, app_name: str, process_type: str, ordinal: int) -> ContainerRecord:
        path = self._record_path(app_name, process_type, ordinal)
        try:
            return ContainerRecord.model_validate_json(path.read_text())
        except FileNotFoundError:
            raise PreconditionError(
                f"No record for {unit_name(app_name, process_type, ordinal)}"
            )

    def list_units(self, app_name: str, process_type: str) -> list[ContainerRecord]:
        process_dir = self._process_dir(app_name, process_type)
        if not process_dir.is_dir():
            return []

        records = []
        for path in process_dir.glob("*.json"):
            try:
                records.append(ContainerRecord.model_validate_json(path.read_text()))
            except (OSError, ValueError, ValidationError) as e:
                logger.warning(f"Skipping unreadable record {path}: {e}")
                continue
        return sorted(records, key=lambda r: r.ordinal)

    def list_all(self, app_name: str) -> list[ContainerRecord]:
        containers_dir = self.base_path / app_name / "containers"
        if not containers_dir.is_dir():
            return []

        records = []
        for process_dir in containers_dir.iterdir():
            if process_dir.is_dir():
                records.extend(self.list_units(app_name, process_dir.name))
        return sorted(records, key=lambda r: (r.process_type, r.ordinal))

    def process_types(self, app_name: str) -> list[str]:
        containers_dir = self.base_path / app_name / "containers"
        if not containers_dir.is_dir():
            return []
        return sorted(p.name for p in containers_dir.iterdir() if p.is_dir())

    def next_ordinal(self, app_name: str, process_type: str) -> int:
        process_dir = self._process_dir(app_name, process_type)
        if not process_dir.is_dir():
            return 1
        # From file names, so an unreadable record still holds its ordinal
        ordinals = [int(p.stem) for p in process_dir.glob("*.json") if p.stem.isdigit()]
        return max(ordinals, default=0) + 1

    def remove(self, app_name: str, process_type: str, ordinal: int) -> None:
        self._record_path(app_name, process_type, ordinal).unlink(missing_ok=True)

    def update_status(self, app_name: str, process_type: str, ordinal: int, status: UnitStatus) -> ContainerRecord:
        record = self.get(app_name, process_type, ordinal)
        record.status = UnitStatus(status)
        self.save(record)
        return record
