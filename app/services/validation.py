"""Email validation: normalization, syntax, disposable list, optional MX, quality score."""

import json
import re
from dataclasses import asdict, dataclass
from functools import lru_cache
from typing import Callable, Iterable

import dns.exception
import dns.resolver

from app.core.config import get_settings
from app.core.logging import get_logger

log = get_logger(__name__)

EMAIL_RE = re.compile(r"^[a-z0-9._%+'-]+@[a-z0-9-]+(\.[a-z0-9-]+)*\.[a-z]{2,}$")
# Loose shape used by column detection: something@something.tld
PLAUSIBLE_RE = re.compile(r"^<?\s*[^@\s<>]+@[^@\s<>]+\.[^@\s<>]+\s*>?$")
MAX_EMAIL_LENGTH = 254
MAX_LOCAL_LENGTH = 64

REASON_EMPTY = "empty"
REASON_FORMAT = "format"
REASON_DISPOSABLE = "disposable"
REASON_DOMAIN = "domain"

DISPOSABLE_DOMAINS = frozenset({
    "tempmail.com", "throwaway.email", "guerrillamail.com", "10minutemail.com",
    "mailinator.com", "temp-mail.org", "fakeinbox.com", "trashmail.com",
    "trash-mail.com", "maildrop.cc", "mintemail.com", "fake-mail.net",
    "yopmail.com", "nada.email", "dispostable.com", "sharklasers.com",
    "getnada.com", "mailnesia.com",
})

FREE_MAIL_DOMAINS = frozenset({
    "gmail.com", "yahoo.com", "hotmail.com", "outlook.com", "protonmail.com",
    "icloud.com", "mail.com", "aol.com", "fastmail.com", "zoho.com",
})

ROLE_LOCAL_PARTS = frozenset({
    "noreply", "no-reply", "donotreply", "admin", "postmaster",
    "mailer-daemon", "bounce", "notifications",
})

FREE_MAIL_REPUTATION = 0.7
DEFAULT_REPUTATION = 0.9
ROLE_PENALTY = 0.2

# domain -> True (has MX) | False (no MX) | None (could not tell)
MxChecker = Callable[[str], bool | None]


@dataclass(frozen=True)
class ValidationResult:
    raw: str
    normalized: str
    is_valid: bool
    reason: str | None
    quality_score: float
    domain: str = ""
    mx_valid: bool | None = None

    def to_dict(self) -> dict:
        return asdict(self)


def normalize_email(raw: str | None) -> str:
    """Trim, strip surrounding angle brackets, lowercase."""
    if not raw:
        return ""
    s = str(raw).strip()
    if s.startswith("<") and s.endswith(">"):
        s = s[1:-1].strip()
    return s.lower()


def extract_domain(email: str) -> str:
    if "@" in email:
        return email.rsplit("@", 1)[1].lower()
    return ""


def is_plausible_email(value: str | None) -> bool:
    return bool(value and PLAUSIBLE_RE.match(value.strip()))


def check_syntax(email: str) -> bool:
    if not email or len(email) > MAX_EMAIL_LENGTH:
        return False
    if not EMAIL_RE.match(email):
        return False
    local = email.split("@", 1)[0]
    if len(local) > MAX_LOCAL_LENGTH:
        return False
    if ".." in email or local.startswith(".") or local.endswith("."):
        return False
    return True


@lru_cache
def disposable_domains() -> frozenset[str]:
    return DISPOSABLE_DOMAINS | frozenset(get_settings().disposable_domains_extra)


def is_disposable(domain: str) -> bool:
    domain = domain.lower()
    blocked = disposable_domains()
    if domain in blocked:
        return True
    # sub.mailinator.com counts as mailinator.com
    parts = domain.split(".")
    return any(".".join(parts[i:]) in blocked for i in range(1, len(parts) - 1))


@lru_cache
def domain_reputation_feed() -> dict[str, float]:
    """Optional {domain: score} feed loaded from DOMAIN_REPUTATION_FILE."""
    path = get_settings().domain_reputation_file
    if not path:
        return {}
    try:
        with open(path, encoding="utf-8") as fh:
            raw = json.load(fh)
    except (OSError, ValueError) as e:
        log.warning("domain_reputation_unavailable", path=path, error=str(e))
        return {}
    return {str(k).lower(): max(0.0, min(1.0, float(v))) for k, v in raw.items()}


def domain_reputation(domain: str) -> float:
    if is_disposable(domain):
        return 0.0
    feed = domain_reputation_feed()
    if domain in feed:
        return feed[domain]
    if domain in FREE_MAIL_DOMAINS:
        return FREE_MAIL_REPUTATION
    return DEFAULT_REPUTATION


def syntactic_confidence(email: str) -> float:
    local = email.split("@", 1)[0]
    confidence = 1.0
    if "+" in local:
        confidence -= 0.1
    if len(local) > 32:
        confidence -= 0.1
    digits = sum(c.isdigit() for c in local)
    if local and digits * 2 > len(local):
        confidence -= 0.1
    return confidence


def quality_score(email: str) -> float:
    """Deterministic [0, 1] score from domain reputation and syntactic confidence."""
    domain = extract_domain(email)
    score = 0.6 * domain_reputation(domain) + 0.4 * syntactic_confidence(email)
    if email.split("@", 1)[0] in ROLE_LOCAL_PARTS:
        score -= ROLE_PENALTY
    return round(max(0.0, min(1.0, score)), 4)


def dns_mx_checker(domain: str) -> bool | None:
    """MX lookup through dnspython. NXDOMAIN / no answer -> False, resolver trouble -> None."""
    try:
        dns.resolver.resolve(domain, "MX", lifetime=get_settings().mx_timeout_seconds)
        return True
    except (dns.resolver.NXDOMAIN, dns.resolver.NoAnswer):
        return False
    except dns.exception.DNSException:
        return None


def default_mx_checker() -> MxChecker | None:
    return dns_mx_checker if get_settings().validation_mx_check else None


def validate(raw: str | None, mx_checker: MxChecker | None = None) -> ValidationResult:
    """Validate one address. Never raises; failures come back as a reason."""
    raw_str = "" if raw is None else str(raw)
    email = normalize_email(raw_str)
    if not email:
        return ValidationResult(raw=raw_str, normalized="", is_valid=False, reason=REASON_EMPTY, quality_score=0.0)
    domain = extract_domain(email)
    if not check_syntax(email):
        return ValidationResult(raw=raw_str, normalized=email, is_valid=False, reason=REASON_FORMAT, quality_score=0.0, domain=domain)
    if is_disposable(domain):
        return ValidationResult(raw=raw_str, normalized=email, is_valid=False, reason=REASON_DISPOSABLE, quality_score=0.0, domain=domain)
    mx_valid = None
    if mx_checker is not None:
        try:
            mx_valid = mx_checker(domain)
        except Exception as e:  # checker errors count as unknown
            log.warning("mx_check_failed", domain=domain, error=str(e))
            mx_valid = None
        if mx_valid is False:
            return ValidationResult(
                raw=raw_str, normalized=email, is_valid=False, reason=REASON_DOMAIN,
                quality_score=0.0, domain=domain, mx_valid=False,
            )
    return ValidationResult(
        raw=raw_str,
        normalized=email,
        is_valid=True,
        reason=None,
        quality_score=quality_score(email),
        domain=domain,
        mx_valid=mx_valid,
    )


def validate_many(raws: Iterable[str | None], mx_checker: MxChecker | None = None) -> list[ValidationResult]:
    """Validate in input order; MX lookups are cached per domain for the call."""
    if mx_checker is not None:
        mx_checker = lru_cache(maxsize=None)(mx_checker)
    return [validate(r, mx_checker) for r in raws]
