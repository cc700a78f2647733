"""Snowball growth: attribute new addresses to a referrer and track generations."""

from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Collection, Iterable, Mapping

from app.core.audit import REPOSITORY, log_event
from app.core.exceptions import ChainCorruptError, ConflictError, NotFoundError, ParentNotFoundError
from app.core.locks import repository_lock
from app.core.logging import get_logger
from app.models.membership_entry import MembershipEntry
from app.models.snowball_node import Lineage, Referred, Seed, SnowballNode
from app.services import karma, membership
from app.services.dedupe import dedupe
from app.services.validation import ValidationResult, default_mx_checker, normalize_email, validate_many

log = get_logger(__name__)


@dataclass
class AttributionPlan:
    new_nodes: list[tuple[str, Lineage]] = field(default_factory=list)
    rejected: list[str] = field(default_factory=list)
    parent_seed: str | None = None  # member that gets a Seed node in the same write


@dataclass
class AttributionResult:
    nodes: list[SnowballNode] = field(default_factory=list)
    rejected_duplicates: list[str] = field(default_factory=list)
    invalid: list[ValidationResult] = field(default_factory=list)
    below_threshold: list[str] = field(default_factory=list)

    def summary(self) -> dict:
        return {
            "emails_added": len(self.nodes),
            "duplicates_removed": len(self.rejected_duplicates),
            "invalid_rows": len(self.invalid),
            "below_threshold": len(self.below_threshold),
        }


class LineageForest:
    """Referral forest of one repository: address -> Seed | Referred."""

    def __init__(self, lineages: Mapping[str, Lineage] | None = None):
        self._lineages: dict[str, Lineage] = dict(lineages or {})

    @classmethod
    def from_nodes(cls, nodes: Iterable[SnowballNode]) -> "LineageForest":
        return cls({n.email: n.lineage for n in nodes})

    def __contains__(self, address: str) -> bool:
        return address in self._lineages

    def __len__(self) -> int:
        return len(self._lineages)

    def get(self, address: str) -> Lineage | None:
        return self._lineages.get(address)

    def items(self):
        return self._lineages.items()

    def generation_of(self, address: str) -> int | None:
        lineage = self._lineages.get(address)
        return None if lineage is None else lineage.generation

    def children(self, address: str) -> list[str]:
        return [a for a, l in self._lineages.items() if l.parent == address]

    def plan(self, addresses: Iterable[str], members: Collection[str], parent: str | None = None) -> AttributionPlan:
        """
        Work out the nodes a batch would create. Addresses already in
        ``members`` are rejected. A parent must be a member; a member without
        lineage yet counts as a generation-0 seed.
        """
        result = AttributionPlan()
        if parent is None:
            lineage: Lineage = Seed()
        else:
            if parent not in members:
                raise ParentNotFoundError(parent)
            parent_lineage = self._lineages.get(parent)
            if parent_lineage is None:
                result.parent_seed = parent
                parent_generation = 0
            else:
                parent_generation = parent_lineage.generation
            lineage = Referred(parent=parent, generation=parent_generation + 1)
        deduped = dedupe(addresses, members)
        result.new_nodes = [(a, lineage) for a in deduped.unique]
        result.rejected = deduped.duplicates_against_existing + deduped.duplicates_within_batch
        return result

    def apply(self, plan: AttributionPlan) -> None:
        if plan.parent_seed:
            self._lineages[plan.parent_seed] = Seed()
        for address, lineage in plan.new_nodes:
            self._lineages[address] = lineage

    def chain(self, address: str) -> list[tuple[str, Lineage]]:
        """Seed-first path to ``address`` following parent pointers."""
        if address not in self._lineages:
            raise NotFoundError("Address has no referral lineage", details={"address": address})
        path: list[tuple[str, Lineage]] = []
        seen: set[str] = set()
        current = address
        while True:
            if current in seen:
                raise ChainCorruptError("Cycle in referral chain", details={"address": address, "at": current})
            seen.add(current)
            lineage = self._lineages.get(current)
            if lineage is None:
                raise ChainCorruptError("Referral chain points at a missing node", details={"address": address, "missing": current})
            path.append((current, lineage))
            if isinstance(lineage, Seed):
                break
            parent = self._lineages.get(lineage.parent)
            if parent is not None and parent.generation != lineage.generation - 1:
                raise ChainCorruptError(
                    "Generation does not follow parent",
                    details={"address": current, "generation": lineage.generation, "parent_generation": parent.generation},
                )
            current = lineage.parent
        path.reverse()
        return path


def growth_rate(added_ats: Iterable[datetime], now: datetime | None = None, window_days: int = 30) -> float:
    """Fraction of current membership added within the trailing window."""
    now = now or datetime.utcnow()
    cutoff = now - timedelta(days=window_days)
    total = recent = 0
    for added_at in added_ats:
        total += 1
        if added_at >= cutoff:
            recent += 1
    return recent / total if total else 0.0


def growth_timeline(added_ats: Iterable[datetime], now: datetime | None = None, days: int = 30) -> list[dict]:
    """Daily additions over the last ``days`` days, oldest first."""
    now = now or datetime.utcnow()
    today = now.date()
    counts = Counter(a.date() for a in added_ats)
    return [
        {"date": (today - timedelta(days=i)).isoformat(), "count": counts.get(today - timedelta(days=i), 0)}
        for i in range(days - 1, -1, -1)
    ]


def snowball_stats(forest: LineageForest, top: int = 5) -> dict:
    by_generation = Counter(l.generation for _, l in forest.items())
    referrers = Counter(l.parent for _, l in forest.items() if isinstance(l, Referred))
    return {
        "nodes": len(forest),
        "seeds": by_generation.get(0, 0),
        "max_generation": max(by_generation, default=0),
        "by_generation": {str(g): c for g, c in sorted(by_generation.items())},
        "top_referrers": [{"email": e, "referred": c} for e, c in referrers.most_common(top)],
    }


async def attribute(
    repository_id: str,
    addresses: list[str],
    user,
    parent_address: str | None = None,
) -> AttributionResult:
    """
    Add ``addresses`` to a repository as referral growth. Without a parent the
    batch is a generation-0 seed batch; with one, every new address sits one
    generation below the parent.
    """
    repo = await membership.load_for_edit(repository_id, user)
    if not repo.allow_snowball:
        raise ConflictError("Snowball growth is disabled for this repository")
    parent = normalize_email(parent_address) if parent_address else None

    out = AttributionResult()
    valid: list[ValidationResult] = []
    for r in validate_many(addresses, default_mx_checker()):
        if r.is_valid:
            valid.append(r)
        else:
            out.invalid.append(r)

    async with repository_lock(str(repo.id)):
        repo = await membership.reload_mutable(repo)
        if not repo.allow_snowball:
            raise ConflictError("Snowball growth is disabled for this repository")
        quality: dict[str, float] = {}
        candidates: list[str] = []
        for r in valid:
            if r.quality_score < repo.quality_threshold:
                out.below_threshold.append(r.normalized)
            else:
                quality.setdefault(r.normalized, r.quality_score)
                candidates.append(r.normalized)
        members = await membership.existing_addresses(repo)
        forest = LineageForest.from_nodes(await membership.fetch_nodes(repo))
        plan = forest.plan(candidates, members, parent)
        now = datetime.utcnow()
        entries = [
            MembershipEntry(
                repository=repo,
                email=address,
                source="snowball",
                added_by=None,
                added_at=now,
                quality_score=quality[address],
            )
            for address, _ in plan.new_nodes
        ]
        nodes = [
            SnowballNode(repository=repo, email=address, lineage=lineage, discovered_at=now)
            for address, lineage in plan.new_nodes
        ]
        parent_nodes = []
        if plan.parent_seed:
            parent_nodes.append(SnowballNode(repository=repo, email=plan.parent_seed, lineage=Seed(), discovered_at=now))
        await membership.insert_members(repo, entries, parent_nodes + nodes)

    out.nodes = nodes
    out.rejected_duplicates = plan.rejected
    log.info(
        "snowball_attributed",
        repository_id=str(repo.id),
        parent=parent,
        generation=nodes[0].generation if nodes else None,
        **out.summary(),
    )
    await log_event(
        str(user.id),
        "snowball_attributed",
        REPOSITORY,
        str(repo.id),
        {"parent": parent, **out.summary()},
    )
    await karma.emit_karma_signal(str(user.id), str(repo.id), len(nodes), "snowball")
    return out


async def get_chain(repository_id: str, address: str, user) -> list[SnowballNode]:
    """Nodes from the seed down to ``address``."""
    repo = await membership.load_for_view(repository_id, user)
    nodes = await membership.fetch_nodes(repo)
    by_email = {n.email: n for n in nodes}
    forest = LineageForest({e: n.lineage for e, n in by_email.items()})
    path = forest.chain(normalize_email(address))
    return [by_email[email] for email, _ in path]
