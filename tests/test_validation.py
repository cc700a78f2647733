"""Unit tests for address validation and quality scoring (no DB)."""

import pytest

from app.services import validation
from app.services.validation import (
    REASON_DISPOSABLE,
    REASON_DOMAIN,
    REASON_EMPTY,
    REASON_FORMAT,
    normalize_email,
    quality_score,
    validate,
    validate_many,
)


def test_normalize_trims_lowercases_and_strips_brackets():
    assert normalize_email("  <Good.User@Example.COM> ") == "good.user@example.com"
    assert normalize_email(None) == ""


def test_valid_address_scores():
    r = validate("good.user@example.com")
    assert r.is_valid
    assert r.reason is None
    assert r.normalized == "good.user@example.com"
    assert r.quality_score == pytest.approx(0.94)
    assert 0.0 <= r.quality_score <= 1.0


@pytest.mark.parametrize(
    "raw,reason",
    [
        ("foo@@bar", REASON_FORMAT),
        ("no-at-sign.example.com", REASON_FORMAT),
        ("a..b@example.com", REASON_FORMAT),
        ("user@mailinator.com", REASON_DISPOSABLE),
        ("user@inbox.mailinator.com", REASON_DISPOSABLE),
        ("   ", REASON_EMPTY),
    ],
)
def test_invalid_addresses_carry_reason(raw, reason):
    r = validate(raw)
    assert not r.is_valid
    assert r.reason == reason
    assert r.quality_score == 0.0


def test_score_is_deterministic():
    assert quality_score("someone@example.org") == quality_score("someone@example.org")


def test_free_mail_scores_below_corporate_domain():
    assert quality_score("jane@gmail.com") < quality_score("jane@example.com")


def test_role_address_is_penalised_not_rejected():
    r = validate("admin@example.com")
    assert r.is_valid
    assert r.quality_score == pytest.approx(0.74)


def test_mx_false_marks_domain_invalid():
    r = validate("user@example.com", mx_checker=lambda d: False)
    assert not r.is_valid
    assert r.reason == REASON_DOMAIN
    assert r.mx_valid is False


def test_mx_unknown_does_not_reject():
    r = validate("user@example.com", mx_checker=lambda d: None)
    assert r.is_valid
    assert r.mx_valid is None


def test_mx_checker_error_counts_as_unknown():
    def boom(domain):
        raise RuntimeError("resolver down")

    r = validate("user@example.com", mx_checker=boom)
    assert r.is_valid


def test_validate_many_keeps_order_and_caches_mx():
    calls = []

    def checker(domain):
        calls.append(domain)
        return True

    results = validate_many(["a@example.com", "bad", "b@example.com"], checker)
    assert [r.is_valid for r in results] == [True, False, True]
    assert calls == ["example.com"]


def test_reputation_feed_overrides_default(tmp_path, monkeypatch):
    feed = tmp_path / "reputation.json"
    feed.write_text('{"shady.example": 0.1}')
    settings = validation.get_settings()
    monkeypatch.setattr(settings, "domain_reputation_file", str(feed))
    validation.domain_reputation_feed.cache_clear()
    try:
        assert validation.domain_reputation("shady.example") == pytest.approx(0.1)
        assert quality_score("x@shady.example") < quality_score("x@example.com")
    finally:
        monkeypatch.undo()
        validation.domain_reputation_feed.cache_clear()


def test_bulk_route_reports_counts():
    from fastapi.testclient import TestClient

    from app.deps import get_current_user
    from app.main import app

    app.dependency_overrides[get_current_user] = lambda: object()
    try:
        c = TestClient(app)
        r = c.post("/v1/validate/bulk", json={"emails": ["good.user@example.com", "foo@@bar"]})
        assert r.status_code == 200
        data = r.json()
        assert data["valid_count"] == 1
        assert data["invalid_count"] == 1
        assert data["results"][1]["reason"] == "format"

        r = c.post("/v1/validate/email", json={"email": "user@mailinator.com"})
        assert r.status_code == 200
        assert r.json()["reason"] == "disposable"
    finally:
        app.dependency_overrides.clear()
