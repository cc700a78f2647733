from datetime import datetime

from beanie import Document, Indexed
from pydantic import Field


class User(Document):
    """Mirror of the auth collaborator's user; karma is maintained externally."""

    email: Indexed(str, unique=True)
    username: str = ""
    name: str = ""
    role: str = "user"  # "user" | "admin"
    karma: int = 0
    session_version: int = 0
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)

    class Settings:
        name = "users"
