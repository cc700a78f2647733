import re
from datetime import datetime
from typing import Literal

import pymongo
from beanie import Document, Link
from pydantic import Field
from pymongo import IndexModel

from app.models.user import User


def slugify(name: str) -> str:
    slug = re.sub(r"[^\w\s-]", "", name.lower())
    slug = re.sub(r"[\s_]+", "-", slug)
    return re.sub(r"-+", "-", slug).strip("-") or "repository"


class EmailRepository(Document):
    owner: Link[User]
    name: str
    slug: str = ""
    description: str = ""
    is_private: bool = False
    allow_snowball: bool = True
    quality_threshold: float = Field(default=0.0, ge=0.0, le=1.0)
    collaborators: list[str] = Field(default_factory=list)  # user ids
    status: Literal["active", "archived"] = "active"
    archived_at: datetime | None = None
    archive_reason: str | None = None
    archived_into: str | None = None  # target repository id
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)

    @property
    def is_archived(self) -> bool:
        return self.status == "archived"

    @property
    def owner_id(self) -> str:
        owner = self.owner
        if isinstance(owner, Link):
            return str(owner.ref.id)
        return str(owner.id)

    class Settings:
        name = "email_repositories"
        indexes = [
            IndexModel([("owner.$id", pymongo.ASCENDING), ("name", pymongo.ASCENDING)], unique=True),
            [("status", 1)],
        ]
