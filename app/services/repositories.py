"""Email repositories: creation, ingestion (direct lists and CSV), membership maintenance, stats and export."""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, BinaryIO, Iterator

from beanie.operators import Or
from pymongo.errors import DuplicateKeyError

from app.core.audit import REPOSITORY, log_event, repository_activity as audit_activity
from app.core.config import get_settings
from app.core.exceptions import AuthorizationError, ConflictError, ForbiddenError, NotFoundError, ValidationError
from app.core.locks import repository_lock
from app.core.logging import get_logger
from app.core.pagination import Page, fetch_page
from app.models.email_repository import EmailRepository, slugify
from app.models.membership_entry import MembershipEntry, MembershipSource, MembershipStatus
from app.models.snowball_node import SnowballNode
from app.services import csv_pipeline, karma, membership
from app.services.csv_pipeline import ImportBatch, ImportedRow, ParseOptions
from app.services.dedupe import dedupe
from app.services.snowball import LineageForest, growth_rate, growth_timeline, snowball_stats
from app.services.validation import default_mx_checker, normalize_email, validate_many

log = get_logger(__name__)

REASON_QUALITY = "quality"
MAX_REPORTED_ERRORS = 100
MEMBERSHIP_STATUSES = ("pending", "verified", "bounced", "spam")
MEMBERSHIP_SOURCES = ("manual", "csv", "snowball", "api", "merge")


@dataclass
class IngestionResult:
    raw_rows: int = 0
    valid_rows: int = 0
    invalid_rows: int = 0
    duplicates_removed: int = 0
    below_threshold: int = 0
    emails_added: int = 0
    errors: list[dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "raw_rows": self.raw_rows,
            "valid_rows": self.valid_rows,
            "invalid_rows": self.invalid_rows,
            "duplicates_removed": self.duplicates_removed,
            "below_threshold": self.below_threshold,
            "emails_added": self.emails_added,
            "errors": self.errors[:MAX_REPORTED_ERRORS],
            "errors_truncated": len(self.errors) > MAX_REPORTED_ERRORS,
        }


async def _unique_slug(name: str) -> str:
    base = slugify(name)
    slug, counter = base, 1
    while await EmailRepository.find_one(EmailRepository.slug == slug):
        slug = f"{base}-{counter}"
        counter += 1
    return slug


async def create_repository(
    user,
    name: str,
    description: str = "",
    is_private: bool = False,
    allow_snowball: bool = True,
    quality_threshold: float | None = None,
) -> EmailRepository:
    name = (name or "").strip()
    if len(name) < 3 or len(name) > 100:
        raise ValidationError("Repository name must be 3-100 characters")
    settings = get_settings()
    if getattr(user, "karma", 0) < settings.min_karma_to_create_repository:
        raise ForbiddenError("Not enough karma to create a repository")
    existing = await EmailRepository.find_one(
        EmailRepository.owner.id == user.id,
        EmailRepository.name == name,
    )
    if existing:
        raise ConflictError("You already have a repository with this name", details={"name": name})
    repo = EmailRepository(
        owner=user,
        name=name,
        slug=await _unique_slug(name),
        description=description,
        is_private=is_private,
        allow_snowball=allow_snowball,
        quality_threshold=settings.default_quality_threshold if quality_threshold is None else quality_threshold,
    )
    try:
        await repo.insert()
    except DuplicateKeyError as e:
        raise ConflictError("You already have a repository with this name", details={"name": name}) from e
    log.info("repository_created", repository_id=str(repo.id), name=name)
    return repo


async def get_repository_for_user(repository_id: str, user) -> EmailRepository:
    return await membership.load_for_view(repository_id, user)


async def list_repositories(user, include_archived: bool = False) -> list[EmailRepository]:
    query = EmailRepository.find(
        Or(EmailRepository.owner.id == user.id, EmailRepository.collaborators == str(user.id)),
    )
    if not include_archived:
        query = query.find(EmailRepository.status == "active")
    return await query.sort(-EmailRepository.created_at).to_list()


async def update_repository(repository_id: str, user, **changes: Any) -> EmailRepository:
    """Owner-only settings update: description, privacy, snowball switch, quality threshold, collaborators."""
    repo = await membership.load_for_owner(repository_id, user)
    membership.ensure_mutable(repo)
    allowed = {"description", "is_private", "allow_snowball", "quality_threshold", "collaborators"}
    updates: dict[str, Any] = {}
    for key, value in changes.items():
        if key not in allowed or value is None:
            continue
        if key == "quality_threshold" and not 0.0 <= value <= 1.0:
            raise ValidationError("quality_threshold must be between 0 and 1")
        updates[key] = value
    async with repository_lock(str(repo.id)):
        repo = await membership.reload_mutable(repo)
        updates["updated_at"] = datetime.utcnow()
        # writes only the changed fields
        await repo.set(updates)
    return repo


async def _ingest_rows(
    repo: EmailRepository,
    user,
    rows: list[ImportedRow],
    source: MembershipSource,
    result: IngestionResult,
    csv_filename: str | None = None,
) -> IngestionResult:
    """Quality gate, then dedupe against the repository and insert, all under its lock."""
    async with repository_lock(str(repo.id)):
        repo = await membership.reload_mutable(repo)
        accepted: list[ImportedRow] = []
        for r in rows:
            if r.quality_score < repo.quality_threshold:
                result.below_threshold += 1
                result.errors.append({"row": r.row, "value": r.email, "reason": REASON_QUALITY})
            else:
                accepted.append(r)
        existing = await membership.existing_addresses(repo)
        deduped = dedupe([r.email for r in accepted], existing)
        first: dict[str, ImportedRow] = {}
        for r in accepted:
            first.setdefault(r.email, r)
        now = datetime.utcnow()
        entries = [
            MembershipEntry(
                repository=repo,
                email=email,
                name=first[email].name,
                tags=first[email].tags,
                source=source,
                added_by=str(user.id),
                added_at=now,
                csv_filename=csv_filename,
                quality_score=first[email].quality_score,
            )
            for email in deduped.unique
        ]
        await membership.insert_members(repo, entries)

    result.duplicates_removed += deduped.duplicates_removed
    result.emails_added = len(entries)
    result.errors.sort(key=lambda e: e["row"])
    log.info(
        "emails_ingested",
        repository_id=str(repo.id),
        source=source,
        emails_added=result.emails_added,
        duplicates_removed=result.duplicates_removed,
        invalid_rows=result.invalid_rows,
        below_threshold=result.below_threshold,
    )
    await log_event(
        str(user.id),
        "csv_import" if source == "csv" else "emails_added",
        REPOSITORY,
        str(repo.id),
        {k: v for k, v in result.to_dict().items() if k != "errors"} | {"csv_filename": csv_filename},
    )
    await karma.emit_karma_signal(str(user.id), str(repo.id), result.emails_added, source)
    return result


async def add_emails(
    repository_id: str,
    user,
    emails: list[str],
    source: MembershipSource = "manual",
) -> IngestionResult:
    """Add a direct list of addresses (manual entry or API)."""
    if source not in ("manual", "api"):
        raise ValidationError("source must be manual or api")
    repo = await membership.load_for_edit(repository_id, user)
    result = IngestionResult(raw_rows=len(emails))
    rows: list[ImportedRow] = []
    for i, r in enumerate(validate_many(emails, default_mx_checker()), start=1):
        if r.is_valid:
            result.valid_rows += 1
            rows.append(ImportedRow(row=i, email=r.normalized, quality_score=r.quality_score))
        else:
            result.invalid_rows += 1
            result.errors.append({"row": i, "value": r.raw.strip(), "reason": r.reason})
    return await _ingest_rows(repo, user, rows, source, result)


async def import_csv(
    repository_id: str,
    user,
    stream: BinaryIO,
    filename: str,
    validate_emails: bool = True,
    remove_duplicates: bool = True,
    max_rows: int | None = None,
) -> IngestionResult:
    """Parse an upload and add its addresses. Parsing completes before the repository lock is taken."""
    repo = await membership.load_for_edit(repository_id, user)
    options = ParseOptions.from_settings(
        validate_emails=validate_emails,
        remove_duplicates=remove_duplicates,
        max_rows=max_rows,
    )
    if filename.lower().endswith(".xlsx"):
        batch: ImportBatch = csv_pipeline.parse_xlsx(stream.read(), options)
    else:
        batch = csv_pipeline.parse(stream, options)
    result = IngestionResult(
        raw_rows=batch.raw_rows,
        valid_rows=batch.valid_rows,
        invalid_rows=batch.invalid_rows,
        duplicates_removed=batch.duplicate_rows,
        errors=[{"row": e.row, "value": e.value, "reason": e.reason} for e in batch.errors],
    )
    return await _ingest_rows(repo, user, batch.rows, "csv", result, csv_filename=filename)


async def list_members(
    repository_id: str,
    user,
    limit: int = 100,
    offset: int = 0,
    status: MembershipStatus | None = None,
) -> Page[MembershipEntry]:
    repo = await membership.load_for_view(repository_id, user)
    query = MembershipEntry.find(MembershipEntry.repository.id == repo.id)
    if status:
        query = query.find(MembershipEntry.status == status)
    return await fetch_page(query, limit, offset, +MembershipEntry.added_at, +MembershipEntry.email)


async def repository_activity(repository_id: str, user, limit: int = 50, offset: int = 0) -> Page:
    """Audit trail of one repository, visible to its owner and collaborators."""
    repo = await membership.load_for_view(repository_id, user)
    if not membership.can_edit(repo, user):
        raise AuthorizationError("Only the owner and collaborators can see repository activity")
    return await audit_activity(str(repo.id), limit=limit, offset=offset)


async def _get_member(repo: EmailRepository, email: str) -> MembershipEntry:
    address = normalize_email(email)
    entry = await MembershipEntry.find_one(
        MembershipEntry.repository.id == repo.id,
        MembershipEntry.email == address,
    )
    if not entry:
        raise NotFoundError("Email is not a member of this repository", details={"email": address})
    return entry


async def update_member_status(repository_id: str, user, email: str, status: MembershipStatus) -> MembershipEntry:
    """Record a verification result for one member."""
    if status not in MEMBERSHIP_STATUSES:
        raise ValidationError(f"Invalid status: {status}")
    repo = await membership.load_for_edit(repository_id, user)
    entry = await _get_member(repo, email)
    if entry.status != status:
        log.info("member_status_changed", repository_id=str(repo.id), email=entry.email, old=entry.status, new=status)
        entry.status = status
        await entry.save()
    return entry


async def remove_member(repository_id: str, user, email: str) -> None:
    """Owner removes one address. A referrer with referred addresses below it cannot be removed."""
    repo = await membership.load_for_owner(repository_id, user)
    membership.ensure_mutable(repo)
    async with repository_lock(str(repo.id)):
        repo = await membership.reload_mutable(repo)
        entry = await _get_member(repo, email)
        children = await SnowballNode.find(
            SnowballNode.repository.id == repo.id,
            SnowballNode.lineage.parent == entry.email,
        ).count()
        if children:
            raise ConflictError(
                "Address has referred members and cannot be removed",
                details={"email": entry.email, "referred": children},
            )
        await SnowballNode.find(
            SnowballNode.repository.id == repo.id,
            SnowballNode.email == entry.email,
        ).delete()
        await entry.delete()
    await log_event(str(user.id), "member_removed", REPOSITORY, str(repo.id), {"email": entry.email})


async def repository_stats(repository_id: str, user, now: datetime | None = None) -> dict[str, Any]:
    repo = await membership.load_for_view(repository_id, user)
    entries = await membership.fetch_entries(repo)
    forest = LineageForest.from_nodes(await membership.fetch_nodes(repo))
    window = get_settings().growth_window_days
    added = [e.added_at for e in entries]
    by_status = {s: 0 for s in MEMBERSHIP_STATUSES}
    by_source = {s: 0 for s in MEMBERSHIP_SOURCES}
    for e in entries:
        by_status[e.status] += 1
        by_source[e.source] += 1
    total = len(entries)
    return {
        "total_emails": total,
        "by_status": by_status,
        "by_source": by_source,
        "bounce_rate": by_status["bounced"] / total if total else 0.0,
        "growth_rate": growth_rate(added, now, window),
        "growth_window_days": window,
        "growth_timeline": growth_timeline(added, now, window),
        "snowball": snowball_stats(forest),
        "collaborators": len(repo.collaborators),
        "archived": repo.is_archived,
    }


async def export_csv(
    repository_id: str,
    user,
    include_metadata: bool = False,
    include_stats: bool = False,
) -> tuple[str, Iterator[bytes], int]:
    """Return (filename, CSV chunks, row count) for a download."""
    repo = await membership.load_for_view(repository_id, user)
    entries = await membership.fetch_entries(repo)
    lineage = {n.email: n for n in await membership.fetch_nodes(repo)} if include_stats else None
    filename = csv_pipeline.export_filename(repo.slug or slugify(repo.name))
    log.info("csv_exported", repository_id=str(repo.id), emails=len(entries))
    return filename, csv_pipeline.generate_chunks(entries, include_metadata, include_stats, lineage), len(entries)
