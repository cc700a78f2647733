"""Karma-award signals for the reputation service. Award arithmetic lives there, not here."""

from beanie import PydanticObjectId
from beanie.operators import In, Set

from app.core.logging import get_logger
from app.models.karma_signal import KarmaSignal

log = get_logger(__name__)

REASONS = ("manual", "csv", "snowball", "api", "merge")


async def emit_karma_signal(
    user_id: str | None,
    repository_id: str,
    emails_added: int,
    reason: str,
) -> KarmaSignal | None:
    """Record "N addresses added by user X". No-op for zero additions or anonymous callers."""
    if reason not in REASONS:
        raise ValueError(f"Invalid karma signal reason: {reason}")
    if not user_id or emails_added <= 0:
        return None
    signal = KarmaSignal(
        user_id=user_id,
        repository_id=repository_id,
        emails_added=emails_added,
        reason=reason,
    )
    await signal.insert()
    log.info("karma_signal", user_id=user_id, repository_id=repository_id, emails_added=emails_added, reason=reason)
    return signal


async def pending_signals(limit: int = 100) -> list[KarmaSignal]:
    """Oldest unconsumed signals, for the reputation service to drain."""
    return await KarmaSignal.find(KarmaSignal.consumed == False).sort(+KarmaSignal.created_at).limit(limit).to_list()  # noqa: E712


async def mark_consumed(signal_ids: list[str]) -> int:
    ids = [PydanticObjectId(i) for i in signal_ids]
    if not ids:
        return 0
    result = await KarmaSignal.find(In(KarmaSignal.id, ids)).update(Set({KarmaSignal.consumed: True}))
    return getattr(result, "modified_count", 0)
