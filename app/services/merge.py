"""Repository merge: move memberships from source repositories into a target and archive the sources."""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Collection, Iterable

from app.core.audit import REPOSITORY, log_event
from app.core.exceptions import ConflictError, ValidationError
from app.core.locks import repository_locks
from app.core.logging import get_logger
from app.models.email_repository import EmailRepository
from app.models.membership_entry import MembershipEntry
from app.models.snowball_node import Seed, SnowballNode
from app.services import karma, membership
from app.services.dedupe import dedupe

log = get_logger(__name__)


@dataclass
class MergedMember:
    email: str
    name: str | None
    tags: list[str]
    status: str
    added_at: datetime
    quality_score: float
    merged_from: str | None
    added_by: str | None = None
    had_lineage: bool = False


@dataclass
class SourceMembers:
    name: str
    entries: list[Any]  # objects with MembershipEntry's fields
    lineage: Collection[str] = ()


@dataclass
class MergePlan:
    members: list[MergedMember] = field(default_factory=list)
    duplicates: list[str] = field(default_factory=list)

    @property
    def emails_merged(self) -> int:
        return len(self.members)

    @property
    def duplicates_removed(self) -> int:
        return len(self.duplicates)


def plan_merge(
    target_existing: Collection[str],
    sources: Iterable[SourceMembers],
    remove_duplicates: bool = True,
    preserve_metadata: bool = True,
) -> MergePlan:
    """
    Union of source memberships not already in the target. Sources are taken
    in order, entries oldest first: the first one seen wins and the target's
    own entry always wins. With ``remove_duplicates`` off, any overlap aborts
    the merge instead of being dropped.
    """
    plan = MergePlan()
    seen = set(target_existing)
    for source in sources:
        ordered = sorted(source.entries, key=lambda e: (e.added_at, e.email))
        deduped = dedupe([e.email for e in ordered], seen)
        plan.duplicates += deduped.duplicates_against_existing + deduped.duplicates_within_batch
        keep = set(deduped.unique)
        for entry in ordered:
            if entry.email not in keep:
                continue
            keep.discard(entry.email)
            plan.members.append(MergedMember(
                email=entry.email,
                name=entry.name,
                tags=list(entry.tags or []),
                status=entry.status,
                added_at=entry.added_at,
                quality_score=entry.quality_score,
                merged_from=source.name if preserve_metadata else None,
                added_by=entry.added_by,
                had_lineage=entry.email in source.lineage,
            ))
        seen.update(deduped.unique)
    if plan.duplicates and not remove_duplicates:
        raise ConflictError(
            "Repositories share addresses and duplicate removal is disabled",
            details={"duplicates": sorted(set(plan.duplicates))[:100]},
        )
    return plan


async def merge_repositories(
    user,
    source_ids: list[str],
    target_id: str,
    remove_duplicates: bool = True,
    preserve_metadata: bool = True,
) -> dict:
    """
    Merge ``source_ids`` into ``target_id``. Every repository is loaded and
    ownership-checked before anything is written; the target gets one insert
    for entries and one for lineage, then the sources are archived.
    Merged addresses restart as generation-0 seeds in the target.
    """
    if not source_ids:
        raise ValidationError("At least one source repository is required")
    if len(set(source_ids)) != len(source_ids):
        raise ValidationError("Source repositories must be distinct")
    if target_id in source_ids:
        raise ValidationError("A repository cannot be merged into itself")

    target = await membership.load_for_owner(target_id, user)
    membership.ensure_mutable(target)
    sources: list[EmailRepository] = []
    for sid in source_ids:
        repo = await membership.load_for_owner(sid, user)
        membership.ensure_mutable(repo)
        sources.append(repo)

    # sources stay locked from the snapshot to their archival
    async with repository_locks(str(target.id), *(str(r.id) for r in sources)):
        target = await membership.reload_mutable(target)
        sources = [await membership.reload_mutable(r) for r in sources]
        source_members = []
        for repo in sources:
            nodes = await membership.fetch_nodes(repo)
            source_members.append(SourceMembers(
                name=repo.name,
                entries=await membership.fetch_entries(repo),
                lineage={n.email for n in nodes},
            ))
        existing = await membership.existing_addresses(target)
        plan = plan_merge(existing, source_members, remove_duplicates, preserve_metadata)

        now = datetime.utcnow()
        entries = [
            MembershipEntry(
                repository=target,
                email=m.email,
                name=m.name,
                tags=m.tags,
                status=m.status,
                source="merge",
                added_by=m.added_by,
                added_at=m.added_at,
                merged_from=m.merged_from,
                quality_score=m.quality_score,
            )
            for m in plan.members
        ]
        nodes = [
            SnowballNode(repository=target, email=m.email, lineage=Seed(), discovered_at=now)
            for m in plan.members
            if m.had_lineage
        ]
        await membership.insert_members(target, entries, nodes)

        for repo in sources:
            await repo.set({
                EmailRepository.status: "archived",
                EmailRepository.archived_at: now,
                EmailRepository.archive_reason: f"Merged into {target.name}",
                EmailRepository.archived_into: str(target.id),
                EmailRepository.updated_at: now,
            })
        await target.set({EmailRepository.updated_at: now})

    result = {"emails_merged": plan.emails_merged, "duplicates_removed": plan.duplicates_removed}
    log.info("repositories_merged", target_id=str(target.id), source_ids=source_ids, **result)
    await log_event(
        str(user.id),
        "repositories_merged",
        REPOSITORY,
        str(target.id),
        {"source_ids": source_ids, **result},
    )
    await karma.emit_karma_signal(str(user.id), str(target.id), plan.emails_merged, "merge")
    return result
