from app.models.user import User
from app.models.audit_log import AuditLog
from app.models.email_repository import EmailRepository
from app.models.membership_entry import MembershipEntry
from app.models.snowball_node import Referred, Seed, SnowballNode
from app.models.karma_signal import KarmaSignal

__all__ = [
    "User",
    "AuditLog",
    "EmailRepository",
    "MembershipEntry",
    "SnowballNode",
    "Seed",
    "Referred",
    "KarmaSignal",
]
