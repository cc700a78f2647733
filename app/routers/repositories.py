from typing import Literal

from fastapi import APIRouter, Depends, File, Form, Query, UploadFile
from fastapi.responses import StreamingResponse
from pydantic import BaseModel, Field

from app.core.exceptions import BadRequestError, ValidationError
from app.deps import get_current_user
from app.models.email_repository import EmailRepository
from app.models.membership_entry import MembershipEntry
from app.models.snowball_node import SnowballNode
from app.models.user import User
from app.services import csv_pipeline, merge as merge_service, repositories as repositories_service
from app.services import snowball as snowball_service

router = APIRouter()

UPLOAD_SUFFIXES = (".csv", ".txt", ".xlsx")


class CreateRepositoryRequest(BaseModel):
    name: str = Field(..., min_length=3, max_length=100)
    description: str = Field("", max_length=500)
    is_private: bool = False
    allow_snowball: bool = True
    quality_threshold: float | None = Field(None, ge=0.0, le=1.0)


class UpdateRepositoryRequest(BaseModel):
    description: str | None = Field(None, max_length=500)
    is_private: bool | None = None
    allow_snowball: bool | None = None
    quality_threshold: float | None = Field(None, ge=0.0, le=1.0)
    collaborators: list[str] | None = None


class AddEmailsRequest(BaseModel):
    emails: list[str] = Field(..., min_length=1, max_length=1000)
    source: Literal["manual", "api"] = "manual"


class SnowballRequest(BaseModel):
    emails: list[str] = Field(..., min_length=1, max_length=1000)
    parent_email: str | None = None


class MemberStatusRequest(BaseModel):
    email: str
    status: Literal["pending", "verified", "bounced", "spam"]


class MergeRequest(BaseModel):
    source_ids: list[str] = Field(..., min_length=1)
    remove_duplicates: bool = True
    preserve_metadata: bool = True


def _repository_out(repo: EmailRepository) -> dict:
    return {
        "id": str(repo.id),
        "owner_id": repo.owner_id,
        "name": repo.name,
        "slug": repo.slug,
        "description": repo.description,
        "is_private": repo.is_private,
        "allow_snowball": repo.allow_snowball,
        "quality_threshold": repo.quality_threshold,
        "collaborators": repo.collaborators,
        "status": repo.status,
        "archived_at": repo.archived_at.isoformat() if repo.archived_at else None,
        "archive_reason": repo.archive_reason,
        "archived_into": repo.archived_into,
        "created_at": repo.created_at.isoformat(),
        "updated_at": repo.updated_at.isoformat(),
    }


def _member_out(entry: MembershipEntry) -> dict:
    return {
        "email": entry.email,
        "name": entry.name,
        "tags": entry.tags,
        "status": entry.status,
        "source": entry.source,
        "added_by": entry.added_by,
        "added_at": entry.added_at.isoformat(),
        "csv_filename": entry.csv_filename,
        "merged_from": entry.merged_from,
        "quality_score": entry.quality_score,
    }


def _node_out(node: SnowballNode) -> dict:
    return {
        "email": node.email,
        "generation": node.generation,
        "parent": node.parent,
        "discovered_at": node.discovered_at.isoformat(),
    }


def _check_upload(file: UploadFile) -> str:
    if not file.filename:
        raise BadRequestError("Missing filename")
    if not file.filename.lower().endswith(UPLOAD_SUFFIXES):
        raise ValidationError("Only CSV and XLSX files are accepted", code="UNSUPPORTED_FILE_TYPE")
    return file.filename


@router.post("")
async def repository_create(
    body: CreateRepositoryRequest,
    user: User = Depends(get_current_user),
):
    repo = await repositories_service.create_repository(
        user,
        body.name,
        description=body.description,
        is_private=body.is_private,
        allow_snowball=body.allow_snowball,
        quality_threshold=body.quality_threshold,
    )
    return _repository_out(repo)


@router.get("")
async def repository_list(
    user: User = Depends(get_current_user),
    include_archived: bool = Query(False),
):
    """Repositories the user owns or collaborates on."""
    repos = await repositories_service.list_repositories(user, include_archived=include_archived)
    return {"items": [_repository_out(r) for r in repos]}


@router.post("/csv/preview")
async def csv_preview(
    user: User = Depends(get_current_user),
    file: UploadFile = File(...),
    max_rows: int | None = Form(None, ge=1, le=100),
):
    """Parse the first rows of a CSV and report the detected layout. Nothing is stored."""
    _check_upload(file)
    result = csv_pipeline.preview(file.file, max_rows=max_rows)
    return {
        "headers": result.headers,
        "address_column": result.address_column,
        "has_header": result.has_header,
        "sample_rows": result.sample_rows,
        "valid_count": result.valid_count,
        "invalid_count": result.invalid_count,
        "estimated_unique": result.estimated_unique,
        "truncated": result.truncated,
    }


@router.get("/{repository_id}")
async def repository_get(repository_id: str, user: User = Depends(get_current_user)):
    repo = await repositories_service.get_repository_for_user(repository_id, user)
    return _repository_out(repo)


@router.patch("/{repository_id}")
async def repository_update(
    repository_id: str,
    body: UpdateRepositoryRequest,
    user: User = Depends(get_current_user),
):
    repo = await repositories_service.update_repository(repository_id, user, **body.model_dump(exclude_none=True))
    return _repository_out(repo)


@router.get("/{repository_id}/stats")
async def repository_stats(repository_id: str, user: User = Depends(get_current_user)):
    return await repositories_service.repository_stats(repository_id, user)


@router.get("/{repository_id}/members")
async def repository_members(
    repository_id: str,
    user: User = Depends(get_current_user),
    limit: int = Query(100, ge=1, le=500),
    offset: int = Query(0, ge=0),
    status: Literal["pending", "verified", "bounced", "spam"] | None = Query(None),
):
    page = await repositories_service.list_members(repository_id, user, limit=limit, offset=offset, status=status)
    return {
        "items": [_member_out(e) for e in page.items],
        "limit": page.limit,
        "offset": page.offset,
        "total": page.total,
        "has_more": page.has_more,
    }


@router.get("/{repository_id}/activity")
async def repository_activity(
    repository_id: str,
    user: User = Depends(get_current_user),
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
):
    page = await repositories_service.repository_activity(repository_id, user, limit=limit, offset=offset)
    return {
        "items": [
            {
                "event_type": e.event_type,
                "user_id": e.user_id,
                "metadata": e.metadata,
                "created_at": e.created_at.isoformat(),
            }
            for e in page.items
        ],
        "limit": page.limit,
        "offset": page.offset,
        "total": page.total,
    }


@router.post("/{repository_id}/emails")
async def repository_add_emails(
    repository_id: str,
    body: AddEmailsRequest,
    user: User = Depends(get_current_user),
):
    result = await repositories_service.add_emails(repository_id, user, body.emails, source=body.source)
    return result.to_dict()


@router.post("/{repository_id}/csv")
async def repository_import_csv(
    repository_id: str,
    user: User = Depends(get_current_user),
    file: UploadFile = File(...),
    validate_emails: bool = Form(True),
    remove_duplicates: bool = Form(True),
):
    """Import a CSV/XLSX upload. Re-importing the same file adds nothing."""
    filename = _check_upload(file)
    result = await repositories_service.import_csv(
        repository_id,
        user,
        file.file,
        filename,
        validate_emails=validate_emails,
        remove_duplicates=remove_duplicates,
    )
    return result.to_dict()


@router.get("/{repository_id}/csv")
async def repository_export_csv(
    repository_id: str,
    user: User = Depends(get_current_user),
    include_metadata: bool = Query(False),
    include_stats: bool = Query(False),
):
    filename, chunks, count = await repositories_service.export_csv(
        repository_id, user, include_metadata=include_metadata, include_stats=include_stats
    )
    return StreamingResponse(
        chunks,
        media_type="text/csv",
        headers={
            "Content-Disposition": f'attachment; filename="{filename}"',
            "X-Total-Count": str(count),
        },
    )


@router.post("/{repository_id}/snowball")
async def repository_snowball(
    repository_id: str,
    body: SnowballRequest,
    user: User = Depends(get_current_user),
):
    """Add addresses referred by ``parent_email`` (or a seed batch without one)."""
    result = await snowball_service.attribute(repository_id, body.emails, user, parent_address=body.parent_email)
    return {
        **result.summary(),
        "nodes": [_node_out(n) for n in result.nodes],
        "duplicates": result.rejected_duplicates,
        "invalid": [{"value": r.raw, "reason": r.reason} for r in result.invalid],
        "below_threshold_emails": result.below_threshold,
    }


@router.get("/{repository_id}/snowball/chain")
async def repository_snowball_chain(
    repository_id: str,
    email: str = Query(...),
    user: User = Depends(get_current_user),
):
    chain = await snowball_service.get_chain(repository_id, email, user)
    return {"chain": [_node_out(n) for n in chain]}


@router.patch("/{repository_id}/members/status")
async def repository_member_status(
    repository_id: str,
    body: MemberStatusRequest,
    user: User = Depends(get_current_user),
):
    entry = await repositories_service.update_member_status(repository_id, user, body.email, body.status)
    return _member_out(entry)


@router.delete("/{repository_id}/members")
async def repository_member_remove(
    repository_id: str,
    email: str = Query(...),
    user: User = Depends(get_current_user),
):
    await repositories_service.remove_member(repository_id, user, email)
    return {"ok": True}


@router.post("/{repository_id}/merge")
async def repository_merge(
    repository_id: str,
    body: MergeRequest,
    user: User = Depends(get_current_user),
):
    """Merge ``source_ids`` into this repository and archive them. Owner only."""
    return await merge_service.merge_repositories(
        user,
        body.source_ids,
        repository_id,
        remove_duplicates=body.remove_duplicates,
        preserve_metadata=body.preserve_metadata,
    )
