"""
Admin API routes for batch import and batch update of provider platforms.
Routes require a Bearer token when ADMIN_TOKEN is configured.
"""

import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, Request, status
from pydantic import BaseModel, Field

from providerhub.models.batch import (
    BatchEntry,
    BatchProgress,
    BatchUpdateResult,
    ImportRecord,
    KeyFetchResult,
    ModelDiff,
    sorted_key_refs,
)
from providerhub.services.backend_client import BackendClient
from providerhub.services.import_parser import parse_import_text
from providerhub.services.registry import BatchJob, BatchJobRegistry
from providerhub.utils.auth import require_admin_auth
from providerhub.utils.exceptions import (
    BackendError,
    raise_bad_gateway,
    raise_bad_request,
    raise_conflict,
    raise_not_found,
)
from providerhub.utils.rename import RenameRule

logger = logging.getLogger(__name__)

router = APIRouter()


def get_registry(request: Request) -> BatchJobRegistry:
    return request.app.state.registry


def get_backend(request: Request) -> BackendClient:
    return request.app.state.backend


# ============================================================================
# Request/Response Models
# ============================================================================


class BatchOptions(BaseModel):
    auto_rename: Optional[bool] = None
    rename_rules: Optional[List[RenameRule]] = None

    def to_options(self) -> Dict[str, Any]:
        """Keyword options for the orchestrator; unset fields fall back to settings."""
        options: Dict[str, Any] = {}
        if self.auto_rename is not None:
            options["auto_rename"] = self.auto_rename
        if self.rename_rules is not None:
            options["rename_rules"] = self.rename_rules
        return options


class ParseRequest(BaseModel):
    text: str


class ImportRequest(BatchOptions):
    text: str = Field(..., min_length=1, description="One provider per line: provider,name,baseUrl[,apiKey...]")


class UpdateRequest(BatchOptions):
    platform_ids: List[int] = Field(..., min_length=1)
    auto_confirm: Optional[bool] = None


class DecisionRequest(BaseModel):
    confirmed: bool
    selected: Optional[List[str]] = Field(None, description="Added/updated model names to apply; all when omitted")
    removed: Optional[List[str]] = Field(None, description="Removed model names to delete; all when omitted")


class KeyResultResponse(BaseModel):
    key: str
    key_preview: str
    status: str
    model_count: int
    error: Optional[str] = None

    @classmethod
    def from_result(cls, result: KeyFetchResult) -> "KeyResultResponse":
        return cls(
            key=str(result.key_ref),
            key_preview=result.key_preview,
            status=result.status.value,
            model_count=result.model_count,
            error=result.error,
        )


class EntryResponse(BaseModel):
    entry_id: int
    status: str
    error: Optional[str] = None
    added_count: int = 0
    removed_count: int = 0
    updated_count: int = 0
    key_results: List[KeyResultResponse] = []

    # Import records
    line: Optional[int] = None
    raw_text: Optional[str] = None
    provider: Optional[str] = None
    name: Optional[str] = None
    base_url: Optional[str] = None
    key_count: Optional[int] = None
    platform_id: Optional[int] = None
    failed_stage: Optional[str] = None

    @classmethod
    def from_entry(cls, entry: BatchEntry) -> "EntryResponse":
        data: Dict[str, Any] = dict(
            entry_id=entry.entry_id,
            status=entry.status.value,
            error=entry.error,
            added_count=entry.added_count,
            removed_count=entry.removed_count,
            updated_count=entry.updated_count,
            key_results=[KeyResultResponse.from_result(r) for r in entry.key_results],
        )
        if isinstance(entry, ImportRecord):
            data.update(line=entry.line, raw_text=entry.raw_text)
            if entry.parsed is not None:
                data.update(
                    provider=entry.parsed.provider,
                    name=entry.parsed.name,
                    base_url=entry.parsed.base_url,
                    key_count=len(entry.parsed.api_keys),
                )
            if entry.creation_state is not None:
                data["platform_id"] = entry.creation_state.platform_id
                if entry.creation_state.failed_stage is not None:
                    data["failed_stage"] = entry.creation_state.failed_stage.value
        elif isinstance(entry, BatchUpdateResult):
            data.update(
                provider=entry.platform.format,
                name=entry.platform.name,
                base_url=entry.platform.base_url,
                platform_id=entry.platform.id,
            )
        return cls(**data)


class ModelDiffResponse(BaseModel):
    type: str
    name: str
    alias: str
    key_ids: List[str]
    persisted_id: Optional[int] = None
    keys_added: List[str] = []
    keys_removed: List[str] = []

    @classmethod
    def from_diff(cls, diff: ModelDiff) -> "ModelDiffResponse":
        change = diff.key_change
        return cls(
            type=diff.type.value,
            name=diff.model.name,
            alias=diff.model.alias,
            key_ids=[str(ref) for ref in sorted_key_refs(diff.model.key_ids)],
            persisted_id=diff.model.persisted_id,
            keys_added=[str(ref) for ref in change.added] if change else [],
            keys_removed=[str(ref) for ref in change.removed] if change else [],
        )


class PendingDecisionResponse(BaseModel):
    entry_id: int
    diffs: List[ModelDiffResponse]


class ProgressResponse(BaseModel):
    completed_keys: int
    total_keys: int
    completed_entries: int
    total_entries: int
    percent: float

    @classmethod
    def from_progress(cls, progress: BatchProgress) -> "ProgressResponse":
        return cls(
            completed_keys=progress.completed_keys,
            total_keys=progress.total_keys,
            completed_entries=progress.completed_entries,
            total_entries=progress.total_entries,
            percent=progress.percent,
        )


class JobSummaryResponse(BaseModel):
    id: str
    kind: str
    running: bool
    created_at: datetime
    has_failed_items: bool
    progress: ProgressResponse

    @classmethod
    def from_job(cls, job: BatchJob) -> "JobSummaryResponse":
        orchestrator = job.orchestrator
        return cls(
            id=job.id,
            kind=job.kind,
            running=job.running,
            created_at=job.created_at,
            has_failed_items=orchestrator.has_failed_items,
            progress=ProgressResponse.from_progress(orchestrator.progress),
        )


class JobResponse(JobSummaryResponse):
    entries: List[EntryResponse] = []
    pending_decisions: List[PendingDecisionResponse] = []

    @classmethod
    def from_job(cls, job: BatchJob) -> "JobResponse":
        # Reuse the summary mapping and add the detail fields
        summary = JobSummaryResponse.from_job(job).model_dump()
        orchestrator = job.orchestrator
        return cls(
            **summary,
            entries=[EntryResponse.from_entry(e) for e in orchestrator.entries],
            pending_decisions=[
                PendingDecisionResponse(
                    entry_id=entry_id, diffs=[ModelDiffResponse.from_diff(d) for d in diffs]
                )
                for entry_id, diffs in orchestrator.pending_decisions.items()
            ],
        )


def _get_job_or_404(registry: BatchJobRegistry, job_id: str) -> BatchJob:
    job = registry.get_job(job_id)
    if job is None:
        raise_not_found("Batch job", job_id)
    return job


# ============================================================================
# Batch Endpoints
# ============================================================================


@router.post("/batch/parse", response_model=List[EntryResponse])
async def parse_batch(
    request: ParseRequest,
    _: Optional[str] = Depends(require_admin_auth),
):
    """Preview how import text will be parsed, without running anything."""
    return [EntryResponse.from_entry(record) for record in parse_import_text(request.text)]


@router.post("/batch/imports", response_model=JobResponse, status_code=status.HTTP_202_ACCEPTED)
async def create_import_job(
    request: ImportRequest,
    _: Optional[str] = Depends(require_admin_auth),
    registry: BatchJobRegistry = Depends(get_registry),
):
    """Start importing providers from batch text."""
    records = parse_import_text(request.text)
    if not records:
        raise_bad_request("No provider lines found")

    job = registry.create_import_job(records, **request.to_options())
    registry.start(job)
    return JobResponse.from_job(job)


@router.post("/batch/updates", response_model=JobResponse, status_code=status.HTTP_202_ACCEPTED)
async def create_update_job(
    request: UpdateRequest,
    _: Optional[str] = Depends(require_admin_auth),
    registry: BatchJobRegistry = Depends(get_registry),
    backend: BackendClient = Depends(get_backend),
):
    """Start refreshing the model lists of existing platforms."""
    platforms = []
    for platform_id in dict.fromkeys(request.platform_ids):
        try:
            platforms.append(await backend.get_platform(platform_id))
        except BackendError as e:
            if e.status == 404:
                raise_not_found("Platform", platform_id)
            raise_bad_gateway(f"Failed to load platform {platform_id}: {e}")

    options = request.to_options()
    if request.auto_confirm is not None:
        options["auto_confirm"] = request.auto_confirm
    job = registry.create_update_job(platforms, **options)
    registry.start(job)
    return JobResponse.from_job(job)


@router.get("/batch/jobs", response_model=List[JobSummaryResponse])
async def list_jobs(
    _: Optional[str] = Depends(require_admin_auth),
    registry: BatchJobRegistry = Depends(get_registry),
):
    return [JobSummaryResponse.from_job(job) for job in registry.list_jobs()]


@router.get("/batch/jobs/{job_id}", response_model=JobResponse)
async def get_job(
    job_id: str,
    _: Optional[str] = Depends(require_admin_auth),
    registry: BatchJobRegistry = Depends(get_registry),
):
    return JobResponse.from_job(_get_job_or_404(registry, job_id))


@router.post("/batch/jobs/{job_id}/retry", response_model=JobResponse, status_code=status.HTTP_202_ACCEPTED)
async def retry_job(
    job_id: str,
    _: Optional[str] = Depends(require_admin_auth),
    registry: BatchJobRegistry = Depends(get_registry),
):
    """Retry the failed entries of a finished job."""
    job = _get_job_or_404(registry, job_id)
    if job.running:
        raise_conflict("Job is still running")
    if not job.orchestrator.has_failed_items:
        raise_bad_request("Job has no failed entries")
    registry.start(job, retry=True)
    return JobResponse.from_job(job)


@router.post("/batch/jobs/{job_id}/entries/{entry_id}/decision")
async def decide_entry(
    job_id: str,
    entry_id: int,
    request: DecisionRequest,
    _: Optional[str] = Depends(require_admin_auth),
    registry: BatchJobRegistry = Depends(get_registry),
):
    """Confirm or cancel the model changes an update entry is waiting on."""
    job = _get_job_or_404(registry, job_id)
    orchestrator = job.orchestrator

    if request.confirmed:
        resolved = orchestrator.confirm(
            entry_id,
            selected=set(request.selected) if request.selected is not None else None,
            removed=set(request.removed) if request.removed is not None else None,
        )
    else:
        resolved = orchestrator.cancel(entry_id)

    if not resolved:
        raise_not_found("Pending decision for entry", entry_id)

    logger.info(f"Job {job_id} entry {entry_id}: changes {'confirmed' if request.confirmed else 'cancelled'}")
    return {"message": "Decision recorded", "confirmed": request.confirmed}
