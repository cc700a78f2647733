"""Outbox of "N addresses added by user X" signals for the reputation service."""

from datetime import datetime

from beanie import Document
from pydantic import Field


class KarmaSignal(Document):
    user_id: str
    repository_id: str
    emails_added: int
    reason: str  # manual | csv | snowball | api | merge
    consumed: bool = False
    created_at: datetime = Field(default_factory=datetime.utcnow)

    class Settings:
        name = "karma_signals"
        indexes = [
            [("consumed", 1), ("created_at", 1)],
            [("user_id", 1), ("created_at", -1)],
        ]
