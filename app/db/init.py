import certifi
from beanie import init_beanie
from motor.motor_asyncio import AsyncIOMotorClient

from app.core.config import get_settings
from app.models.audit_log import AuditLog
from app.models.email_repository import EmailRepository
from app.models.karma_signal import KarmaSignal
from app.models.membership_entry import MembershipEntry
from app.models.snowball_node import SnowballNode
from app.models.user import User

DOCUMENT_MODELS = [
    User,
    EmailRepository,
    MembershipEntry,
    SnowballNode,
    KarmaSignal,
    AuditLog,
]


def _use_tls(uri: str) -> bool:
    """True if URI uses TLS (Atlas or explicit tls=true). Avoids TLS for plain mongodb:// in CI."""
    return "mongodb+srv://" in uri or "tls=true" in uri.lower()


def get_client(**kwargs) -> AsyncIOMotorClient:
    settings = get_settings()
    if _use_tls(settings.mongodb_uri):
        kwargs["tlsCAFile"] = certifi.where()
        kwargs["tlsDisableOCSPEndpointCheck"] = True
    return AsyncIOMotorClient(settings.mongodb_uri, **kwargs)


async def init_db(**client_kwargs) -> AsyncIOMotorClient:
    settings = get_settings()
    client = get_client(**client_kwargs)
    database = client[settings.mongodb_db_name]
    await init_beanie(database=database, document_models=DOCUMENT_MODELS)
    return client
