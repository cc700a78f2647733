from datetime import datetime
from typing import Literal

import pymongo
from beanie import Document, Link
from pydantic import Field
from pymongo import IndexModel

from app.models.email_repository import EmailRepository

MembershipStatus = Literal["pending", "verified", "bounced", "spam"]
MembershipSource = Literal["manual", "csv", "snowball", "api", "merge"]


class MembershipEntry(Document):
    repository: Link[EmailRepository]
    email: str  # normalized
    name: str | None = None
    tags: list[str] = Field(default_factory=list)
    status: MembershipStatus = "pending"
    source: MembershipSource = "manual"
    added_by: str | None = None  # None for snowball-attributed entries
    added_at: datetime = Field(default_factory=datetime.utcnow)
    csv_filename: str | None = None
    merged_from: str | None = None
    quality_score: float = 0.0

    class Settings:
        name = "membership_entries"
        indexes = [
            # backstop for the per-repository check-then-insert
            IndexModel([("repository.$id", pymongo.ASCENDING), ("email", pymongo.ASCENDING)], unique=True),
            [("repository.$id", 1), ("added_at", -1)],
        ]
