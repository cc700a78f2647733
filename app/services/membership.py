"""
Repository membership store.

Every mutation of a repository's membership goes through ``insert_members``
while the caller holds ``repository_lock(repo.id)``: re-read the repository
with ``reload_mutable``, read the existing set, dedupe, then insert. The
unique (repository, email) index turns a race with another process into a
ConflictError instead of a duplicate row.
"""

from beanie import PydanticObjectId
from beanie.operators import In
from bson.errors import InvalidId
from pydantic import BaseModel
from pymongo.errors import BulkWriteError, DuplicateKeyError

from app.core.exceptions import AuthorizationError, ConflictError, NotFoundError
from app.core.logging import get_logger
from app.models.email_repository import EmailRepository
from app.models.membership_entry import MembershipEntry
from app.models.snowball_node import SnowballNode

log = get_logger(__name__)

DUPLICATE_KEY = 11000


class _EmailOnly(BaseModel):
    email: str


def _user_id(user) -> str:
    return str(user.id)


def can_view(repo: EmailRepository, user) -> bool:
    if not repo.is_private:
        return True
    return can_edit(repo, user)


def can_edit(repo: EmailRepository, user) -> bool:
    uid = _user_id(user)
    return repo.owner_id == uid or uid in repo.collaborators


def is_owner(repo: EmailRepository, user) -> bool:
    return repo.owner_id == _user_id(user)


def ensure_mutable(repo: EmailRepository) -> None:
    if repo.is_archived:
        raise ConflictError(
            "Repository is archived",
            details={"repository_id": str(repo.id), "archive_reason": repo.archive_reason},
        )


async def get_repository(repository_id: str | PydanticObjectId) -> EmailRepository:
    try:
        oid = PydanticObjectId(str(repository_id))
    except (InvalidId, TypeError) as e:
        raise NotFoundError("Repository not found", details={"repository_id": str(repository_id)}) from e
    repo = await EmailRepository.get(oid)
    if not repo:
        raise NotFoundError("Repository not found", details={"repository_id": str(repository_id)})
    return repo


async def load_for_view(repository_id: str, user) -> EmailRepository:
    repo = await get_repository(repository_id)
    if not can_view(repo, user):
        # private repositories are invisible to outsiders
        raise NotFoundError("Repository not found", details={"repository_id": str(repository_id)})
    return repo


async def load_for_edit(repository_id: str, user) -> EmailRepository:
    repo = await get_repository(repository_id)
    if not can_edit(repo, user):
        raise AuthorizationError()
    ensure_mutable(repo)
    return repo


async def load_for_owner(repository_id: str, user) -> EmailRepository:
    repo = await load_for_view(repository_id, user)
    if not is_owner(repo, user):
        raise AuthorizationError("Only the repository owner can do this")
    return repo


async def reload_mutable(repo: EmailRepository) -> EmailRepository:
    """Fresh copy of ``repo`` for use under its lock. A merge may have archived it since it was loaded."""
    fresh = await get_repository(repo.id)
    ensure_mutable(fresh)
    return fresh


async def existing_addresses(repo: EmailRepository) -> set[str]:
    rows = await MembershipEntry.find(MembershipEntry.repository.id == repo.id).project(_EmailOnly).to_list()
    return {r.email for r in rows}


async def fetch_entries(repo: EmailRepository) -> list[MembershipEntry]:
    return await MembershipEntry.find(MembershipEntry.repository.id == repo.id).to_list()


async def fetch_nodes(repo: EmailRepository) -> list[SnowballNode]:
    return await SnowballNode.find(SnowballNode.repository.id == repo.id).to_list()


async def _rollback_entries(repo: EmailRepository, emails: list[str]) -> None:
    if emails:
        await MembershipEntry.find(
            MembershipEntry.repository.id == repo.id,
            In(MembershipEntry.email, emails),
        ).delete()


def _is_duplicate(exc: Exception) -> bool:
    if isinstance(exc, DuplicateKeyError):
        return True
    if isinstance(exc, BulkWriteError):
        return any(err.get("code") == DUPLICATE_KEY for err in exc.details.get("writeErrors", []))
    return False


async def insert_members(
    repo: EmailRepository,
    entries: list[MembershipEntry],
    nodes: list[SnowballNode] | None = None,
) -> None:
    """
    Insert a batch of entries (and their lineage nodes) for one repository.
    Caller holds the repository lock and has already deduplicated. A lost race
    removes whatever part of the batch got in and raises ConflictError.
    """
    if not entries and not nodes:
        return
    emails = [e.email for e in entries]
    try:
        if entries:
            await MembershipEntry.insert_many(entries)
    except (BulkWriteError, DuplicateKeyError) as e:
        inserted = e.details.get("nInserted", 0) if isinstance(e, BulkWriteError) else 0
        await _rollback_entries(repo, emails[:inserted])
        if _is_duplicate(e):
            log.warning("membership_conflict", repository_id=str(repo.id), batch_size=len(entries))
            raise ConflictError(
                "Concurrent insert of the same address into this repository",
                details={"repository_id": str(repo.id)},
            ) from e
        raise
    if not nodes:
        return
    try:
        await SnowballNode.insert_many(nodes)
    except (BulkWriteError, DuplicateKeyError) as e:
        inserted = e.details.get("nInserted", 0) if isinstance(e, BulkWriteError) else 0
        if inserted:
            await SnowballNode.find(
                SnowballNode.repository.id == repo.id,
                In(SnowballNode.email, [n.email for n in nodes[:inserted]]),
            ).delete()
        await _rollback_entries(repo, emails)
        if _is_duplicate(e):
            log.warning("lineage_conflict", repository_id=str(repo.id), batch_size=len(nodes))
            raise ConflictError(
                "Lineage already recorded for an address in this batch",
                details={"repository_id": str(repo.id)},
            ) from e
        raise
