"""Lineage forest planning, chain reconstruction and growth stats (no DB)."""

from datetime import datetime, timedelta

import pytest

from app.core.exceptions import ChainCorruptError, NotFoundError, ParentNotFoundError
from app.models.snowball_node import Referred, Seed
from app.services.snowball import LineageForest, growth_rate, growth_timeline, snowball_stats


def _grow(forest, members, addresses, parent=None):
    plan = forest.plan(addresses, members, parent)
    forest.apply(plan)
    members.update(a for a, _ in plan.new_nodes)
    return plan


def test_seed_then_two_generations():
    forest, members = LineageForest(), set()
    _grow(forest, members, ["a@example.com"])
    _grow(forest, members, ["b@example.com"], parent="a@example.com")
    plan = _grow(forest, members, ["c@example.com"], parent="b@example.com")

    assert forest.generation_of("a@example.com") == 0
    assert forest.generation_of("b@example.com") == 1
    assert plan.new_nodes[0][1] == Referred(parent="b@example.com", generation=2)
    chain = [address for address, _ in forest.chain("c@example.com")]
    assert chain == ["a@example.com", "b@example.com", "c@example.com"]


def test_existing_member_is_rejected():
    forest, members = LineageForest(), set()
    _grow(forest, members, ["a@example.com"])
    plan = forest.plan(["a@example.com", "d@example.com"], members, None)
    assert [a for a, _ in plan.new_nodes] == ["d@example.com"]
    assert plan.rejected == ["a@example.com"]


def test_parent_must_be_a_member():
    with pytest.raises(ParentNotFoundError):
        LineageForest().plan(["x@example.com"], set(), "ghost@example.com")


def test_member_without_lineage_becomes_seed_parent():
    forest = LineageForest()
    plan = forest.plan(["x@example.com"], {"csv@example.com"}, "csv@example.com")
    assert plan.parent_seed == "csv@example.com"
    assert plan.new_nodes[0][1].generation == 1
    forest.apply(plan)
    assert isinstance(forest.get("csv@example.com"), Seed)


def test_children():
    forest = LineageForest({
        "a@x.com": Seed(),
        "b@x.com": Referred(parent="a@x.com", generation=1),
        "c@x.com": Referred(parent="a@x.com", generation=1),
    })
    assert sorted(forest.children("a@x.com")) == ["b@x.com", "c@x.com"]
    assert forest.children("b@x.com") == []


def test_chain_of_unknown_address():
    with pytest.raises(NotFoundError):
        LineageForest().chain("nobody@example.com")


def test_chain_detects_cycle():
    forest = LineageForest({
        "a@x.com": Referred(parent="b@x.com", generation=1),
        "b@x.com": Referred(parent="a@x.com", generation=1),
    })
    with pytest.raises(ChainCorruptError):
        forest.chain("a@x.com")


def test_chain_detects_missing_parent():
    forest = LineageForest({"a@x.com": Referred(parent="gone@x.com", generation=1)})
    with pytest.raises(ChainCorruptError):
        forest.chain("a@x.com")


def test_chain_detects_generation_gap():
    forest = LineageForest({
        "a@x.com": Seed(),
        "b@x.com": Referred(parent="a@x.com", generation=3),
    })
    with pytest.raises(ChainCorruptError):
        forest.chain("b@x.com")


def test_referred_generation_is_at_least_one():
    with pytest.raises(ValueError):
        Referred(parent="a@x.com", generation=0)


def test_growth_rate_window():
    now = datetime(2024, 6, 30)
    added = [now - timedelta(days=d) for d in (1, 5, 40, 100)]
    assert growth_rate(added, now, window_days=30) == pytest.approx(0.5)
    assert growth_rate([], now) == 0.0


def test_growth_timeline_is_oldest_first():
    now = datetime(2024, 6, 30, 12)
    added = [now, now, now - timedelta(days=1)]
    timeline = growth_timeline(added, now, days=3)
    assert [p["date"] for p in timeline] == ["2024-06-28", "2024-06-29", "2024-06-30"]
    assert [p["count"] for p in timeline] == [0, 1, 2]


def test_snowball_stats():
    forest = LineageForest({
        "a@x.com": Seed(),
        "b@x.com": Referred(parent="a@x.com", generation=1),
        "c@x.com": Referred(parent="a@x.com", generation=1),
        "d@x.com": Referred(parent="b@x.com", generation=2),
    })
    stats = snowball_stats(forest)
    assert stats["nodes"] == 4
    assert stats["seeds"] == 1
    assert stats["max_generation"] == 2
    assert stats["by_generation"] == {"0": 1, "1": 2, "2": 1}
    assert stats["top_referrers"][0] == {"email": "a@x.com", "referred": 2}
