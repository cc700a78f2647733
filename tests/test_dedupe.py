from app.services.dedupe import dedupe


def test_first_occurrence_wins_and_order_is_kept():
    r = dedupe(["b@x.com", "a@x.com", "b@x.com", "c@x.com"])
    assert r.unique == ["b@x.com", "a@x.com", "c@x.com"]
    assert r.duplicates_within_batch == ["b@x.com"]
    assert r.duplicates_removed == 1


def test_existing_addresses_are_reported():
    r = dedupe(["a@x.com", "b@x.com", "a@x.com"], existing={"a@x.com"})
    assert r.unique == ["b@x.com"]
    assert r.duplicates_against_existing == ["a@x.com"]
    assert r.duplicates_within_batch == ["a@x.com"]


def test_counts_add_up():
    batch = ["a@x.com", "a@x.com", "b@x.com", "c@x.com", "c@x.com"]
    r = dedupe(batch, existing={"b@x.com"})
    assert len(r.unique) + r.duplicates_removed == len(batch)
    assert not set(r.unique) & {"b@x.com"}


def test_empty_batch():
    r = dedupe([])
    assert r.unique == []
    assert r.duplicates_removed == 0
