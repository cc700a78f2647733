"""Set-based deduplication of normalized addresses."""

from dataclasses import dataclass, field
from typing import Collection, Iterable


@dataclass
class DedupeResult:
    unique: list[str] = field(default_factory=list)
    duplicates_within_batch: list[str] = field(default_factory=list)
    duplicates_against_existing: list[str] = field(default_factory=list)

    @property
    def duplicates_removed(self) -> int:
        return len(self.duplicates_within_batch) + len(self.duplicates_against_existing)


def dedupe(addresses: Iterable[str], existing: Collection[str] = ()) -> DedupeResult:
    """
    Split addresses into unique / repeated-in-batch / already-present buckets.
    Addresses must already be normalized. First occurrence wins; order is kept.
    An address both repeated and already present is reported against existing
    on its first occurrence and within-batch afterwards.
    """
    result = DedupeResult()
    seen: set[str] = set()
    for address in addresses:
        if address in seen:
            result.duplicates_within_batch.append(address)
            continue
        seen.add(address)
        if address in existing:
            result.duplicates_against_existing.append(address)
        else:
            result.unique.append(address)
    return result
