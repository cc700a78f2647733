from datetime import datetime
from typing import Any

from beanie import Document
from pydantic import Field


class AuditLog(Document):
    user_id: str | None = None  # None for system events
    event_type: str  # csv_import, emails_added, snowball_attributed, repositories_merged, ...
    entity_type: str
    entity_id: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=datetime.utcnow)

    class Settings:
        name = "audit_logs"
        indexes = [
            [("entity_type", 1), ("entity_id", 1), ("created_at", -1)],
            [("user_id", 1), ("created_at", -1)],
        ]
