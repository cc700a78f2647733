"""Merge planning (no DB)."""

from datetime import datetime, timedelta
from types import SimpleNamespace

import pytest

from app.core.exceptions import ConflictError
from app.services.merge import SourceMembers, plan_merge

T0 = datetime(2024, 1, 1)


def _entry(email, minutes=0, **kw):
    values = {
        "name": None, "tags": [], "status": "pending", "quality_score": 0.9,
        "added_by": "u1", "added_at": T0 + timedelta(minutes=minutes),
    }
    values.update(kw)
    return SimpleNamespace(email=email, **values)


def test_union_without_duplicates():
    s1 = SourceMembers("one", [_entry("a@x.com"), _entry("b@x.com", 1)])
    s2 = SourceMembers("two", [_entry("b@x.com", 2, status="verified"), _entry("c@x.com", 3)])
    plan = plan_merge({"c@x.com", "t@x.com"}, [s1, s2])

    assert [m.email for m in plan.members] == ["a@x.com", "b@x.com"]
    assert sorted(plan.duplicates) == ["b@x.com", "c@x.com"]
    assert plan.emails_merged == 2
    assert plan.duplicates_removed == 2
    # first source seen wins
    assert plan.members[1].merged_from == "one"
    assert plan.members[1].status == "pending"


def test_sizes_are_conserved():
    sources = [
        SourceMembers("one", [_entry("a@x.com"), _entry("b@x.com")]),
        SourceMembers("two", [_entry("b@x.com"), _entry("c@x.com"), _entry("d@x.com")]),
    ]
    existing = {"d@x.com", "z@x.com"}
    plan = plan_merge(existing, sources)
    total_source = sum(len(s.entries) for s in sources)
    assert plan.emails_merged + plan.duplicates_removed == total_source
    assert len(existing) + plan.emails_merged == len(existing | {"a@x.com", "b@x.com", "c@x.com", "d@x.com"})


def test_metadata_is_carried():
    entry = _entry("a@x.com", name="Ada", tags=["vip"], status="verified", added_by="owner-1")
    plan = plan_merge(set(), [SourceMembers("one", [entry], lineage={"a@x.com"})])
    m = plan.members[0]
    assert (m.name, m.tags, m.status, m.added_at, m.added_by) == ("Ada", ["vip"], "verified", entry.added_at, "owner-1")
    assert m.merged_from == "one"
    assert m.had_lineage


def test_merged_from_dropped_without_preserve_metadata():
    plan = plan_merge(set(), [SourceMembers("one", [_entry("a@x.com")])], preserve_metadata=False)
    assert plan.members[0].merged_from is None


def test_overlap_rejected_when_duplicates_kept():
    sources = [SourceMembers("one", [_entry("a@x.com")])]
    with pytest.raises(ConflictError):
        plan_merge({"a@x.com"}, sources, remove_duplicates=False)


def test_oldest_entry_in_a_source_wins():
    s = SourceMembers("one", [_entry("a@x.com", 5, name="late"), _entry("a@x.com", 1, name="early")])
    plan = plan_merge(set(), [s])
    assert [m.name for m in plan.members] == ["early"]
