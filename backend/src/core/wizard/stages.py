"""
Stage catalogue - the fixed pipeline a deployment walks through.
"""

from dataclasses import dataclass
from typing import Optional

from src.core.exceptions import NotFoundError, ValidationFailure


@dataclass(frozen=True)
class StageDefinition:
    """One stage of the deployment pipeline."""
    id: str
    name: str
    description: str
    verification: str


DEFAULT_STAGES: tuple[StageDefinition, ...] = (
    StageDefinition(
        id="ANALYZE",
        name="Project Analysis",
        description="Review project structure, detect services, and identify requirements",
        verification="Project structure, services and runtime requirements are identified",
    ),
    StageDefinition(
        id="FILE_GENERATION",
        name="Generate Files",
        description="Create Dockerfiles, compose files and environment templates",
        verification="All deployment files exist and are syntactically valid",
    ),
    StageDefinition(
        id="CREDENTIAL_COLLECTION",
        name="Credential Collection",
        description="Collect cloud credentials and environment variables",
        verification="Every required credential and variable is available",
    ),
    StageDefinition(
        id="TERRAFORM_GENERATION",
        name="Infrastructure Code",
        description="Generate Terraform configuration for the target infrastructure",
        verification="terraform validate succeeds and the plan contains the expected resources",
    ),
    StageDefinition(
        id="SANDBOX_TESTING",
        name="Sandbox Testing",
        description="Build images and run containers locally to verify they work",
        verification="Images build and all containers report healthy",
    ),
    StageDefinition(
        id="PROVISION",
        name="Provision Infrastructure",
        description="Apply the Terraform plan and create cloud resources",
        verification="terraform apply completed and resources are reachable",
    ),
    StageDefinition(
        id="DEPLOY",
        name="Deploy",
        description="Ship the application onto the provisioned infrastructure",
        verification="Application processes are running on the target hosts",
    ),
    StageDefinition(
        id="HEALTH_CHECK",
        name="Health Check",
        description="Verify the deployment answers its health endpoints",
        verification="Health checks pass",
    ),
)

_STAGES_BY_ID = {stage.id: stage for stage in DEFAULT_STAGES}


def get_stage(stage_id: str) -> StageDefinition:
    """Look up a stage definition by id."""
    try:
        return _STAGES_BY_ID[stage_id]
    except KeyError:
        raise NotFoundError(f"Unknown stage: {stage_id}", {"stage_id": stage_id}) from None


def build_stage_sequence(stage_ids: Optional[list[str]] = None) -> list[str]:
    """
    Validate a custom stage sequence, or return the default one.

    Ids must be known and unique; order is preserved as given.
    """
    if stage_ids is None:
        return [stage.id for stage in DEFAULT_STAGES]
    if not stage_ids:
        raise ValidationFailure("Stage sequence must not be empty")

    unknown = [sid for sid in stage_ids if sid not in _STAGES_BY_ID]
    if unknown:
        raise ValidationFailure(
            f"Unknown stages: {', '.join(unknown)}", {"unknown": unknown}
        )
    if len(set(stage_ids)) != len(stage_ids):
        raise ValidationFailure("Stage sequence contains duplicates", {"stages": stage_ids})
    return list(stage_ids)
