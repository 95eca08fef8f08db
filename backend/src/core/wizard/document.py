"""
Typed access to the JSON columns of a DeploymentSession row.

JSON columns are not mutation-tracked, so every writer replaces the whole
value instead of editing it in place.
"""

from typing import Optional

from src.core.models import DeploymentSession
from src.core.schemas import SessionMetadata, StageData, StageRecord, project_context_adapter


def read_stage_data(row: DeploymentSession) -> StageData:
    return StageData.model_validate(row.current_stage_data or {})


def write_stage_data(row: DeploymentSession, data: StageData) -> None:
    row.current_stage_data = data.model_dump(mode="json")


def read_history(row: DeploymentSession) -> list[StageRecord]:
    return [StageRecord.model_validate(entry) for entry in row.stage_history or []]


def append_history(row: DeploymentSession, record: StageRecord) -> None:
    row.stage_history = [*(row.stage_history or []), record.model_dump(mode="json")]


def read_metadata(row: DeploymentSession) -> SessionMetadata:
    return SessionMetadata.model_validate(row.session_metadata or {})


def write_metadata(row: DeploymentSession, metadata: SessionMetadata) -> None:
    row.session_metadata = metadata.model_dump(mode="json")


def read_project_context(row: DeploymentSession) -> Optional[dict]:
    if row.project_context is None:
        return None
    # Round-trip through the union so only known shapes leave the store
    return project_context_adapter.dump_python(
        project_context_adapter.validate_python(row.project_context), mode="json"
    )
