"""Referral lineage attached to a membership entry."""

from datetime import datetime
from typing import Annotated, Literal, Union

import pymongo
from beanie import Document, Link
from pydantic import BaseModel, Field
from pymongo import IndexModel

from app.models.email_repository import EmailRepository


class Seed(BaseModel):
    """Root of a referral chain."""

    kind: Literal["seed"] = "seed"

    @property
    def generation(self) -> int:
        return 0

    @property
    def parent(self) -> None:
        return None


class Referred(BaseModel):
    kind: Literal["referred"] = "referred"
    parent: str
    generation: int = Field(ge=1)


Lineage = Annotated[Union[Seed, Referred], Field(discriminator="kind")]


class SnowballNode(Document):
    repository: Link[EmailRepository]
    email: str
    lineage: Lineage = Field(default_factory=Seed)
    discovered_at: datetime = Field(default_factory=datetime.utcnow)

    @property
    def generation(self) -> int:
        return self.lineage.generation

    @property
    def parent(self) -> str | None:
        return self.lineage.parent

    class Settings:
        name = "snowball_nodes"
        indexes = [
            IndexModel([("repository.$id", pymongo.ASCENDING), ("email", pymongo.ASCENDING)], unique=True),
            [("repository.$id", 1), ("lineage.parent", 1)],
        ]
