"""Data schemas for the engine's external interface.

Pydantic models for submissions coming from the code-generation pipeline and
for the status / artifact views returned to the editor and preview layers.
"""

from __future__ import annotations

from typing import Optional, List, Any

from pydantic import BaseModel, Field

from shadow_build.models.artifact import Artifact
from shadow_build.models.changeset import (
    ChangeKind, ChangeSet, IMPLIED_ROLE, Platform, SourceUnit, UnitRole,
)
from shadow_build.models.job import Job, JobError


class UnitDescriptor(BaseModel):
    """One source unit of a submission, with its role when the pipeline knows it."""

    content_hash: str = Field(min_length=1)
    name: Optional[str] = None
    role: Optional[str] = None                 # "view", "logic", "dependency_manifest", ...
    dependencies: List[str] = Field(default_factory=list)

    class Config:
        extra = "allow"

    def to_unit(self, default_role: UnitRole = UnitRole.UNKNOWN) -> SourceUnit:
        return SourceUnit(
            name=self.name or self.content_hash,
            content_hash=self.content_hash,
            role=UnitRole.parse(self.role) if self.role else default_role,
            dependencies=tuple(self.dependencies),
        )


class SubmitChangeSetRequest(BaseModel):
    """Payload of submit_changeset.

    Example:
    {
      "project_id": "proj-42",
      "declared_kind": "ui_only",
      "unit_hashes": ["9f2c...", "01ab..."],
      "platform": "ios"
    }
    """

    project_id: str = Field(min_length=1)
    unit_hashes: List[str] = Field(default_factory=list)
    declared_kind: str = "unknown"             # unrecognised kinds classify as COLD
    units: List[UnitDescriptor] = Field(default_factory=list)
    platform: Platform = Platform.IOS

    class Config:
        extra = "allow"

    def to_changeset(self) -> ChangeSet:
        implied = IMPLIED_ROLE[ChangeKind.parse(self.declared_kind)]
        return ChangeSet.create(
            project_id=self.project_id,
            unit_hashes=self.unit_hashes,
            declared_kind=self.declared_kind,
            units=[u.to_unit(implied) for u in self.units],
            platform=self.platform,
        )


class ErrorInfo(BaseModel):
    """Failure details attached to a job status."""

    kind: str                                  # infra_failure, build_failed, timeout, cancelled
    message: str = ""
    unit: Optional[str] = None
    stage: Optional[str] = None
    tier: Optional[str] = None
    elapsed_sec: float = 0.0

    @classmethod
    def from_job_error(cls, error: JobError) -> ErrorInfo:
        return cls(**error.to_dict())


class JobStatus(BaseModel):
    """Externally visible state of a job."""

    job_id: str
    project_id: str
    state: str
    tier: str
    artifact_ref: Optional[str] = None
    error: Optional[ErrorInfo] = None
    sla_violated: bool = False
    retry_count: int = 0
    runner_id: Optional[str] = None
    submitted_at: float = 0.0
    deadline: float = 0.0
    completed_at: Optional[float] = None

    @classmethod
    def from_job(cls, job: Job, now: Optional[float] = None) -> JobStatus:
        return cls(
            job_id=job.job_id,
            project_id=job.project_id,
            state=job.state.value,
            tier=job.tier.value,
            artifact_ref=job.artifact_ref,
            error=ErrorInfo.from_job_error(job.error) if job.error else None,
            sla_violated=job.sla_violated(now),
            retry_count=job.retry_count,
            runner_id=job.runner_id,
            submitted_at=job.submitted_at,
            deadline=job.deadline,
            completed_at=job.completed_at,
        )


class ArtifactInfo(BaseModel):
    """Where the preview layer finds a published build."""

    content_hash: str
    binary_location: Optional[str] = None
    platform: str
    size: int = 0
    job_ids: List[str] = Field(default_factory=list)

    @classmethod
    def from_artifact(cls, artifact: Artifact, job_ids: Optional[List[Any]] = None) -> ArtifactInfo:
        return cls(
            content_hash=artifact.content_hash,
            binary_location=artifact.binary_location,
            platform=artifact.platform.value,
            size=artifact.size,
            job_ids=list(job_ids or [artifact.job_id]),
        )
