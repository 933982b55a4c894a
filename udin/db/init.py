import certifi
from beanie import init_beanie
from motor.motor_asyncio import AsyncIOMotorClient

from udin.core.config import get_settings
from udin.models.audit_log import AuditLog
from udin.models.compensation_task import CompensationTask
from udin.models.counter import Counter
from udin.models.document import DocumentRecord
from udin.models.payment import Payment
from udin.models.reconciliation_case import ReconciliationCase
from udin.models.transaction import Transaction
from udin.models.upload import UploadBatch
from udin.models.user import User

DOCUMENT_MODELS = [
    User,
    Transaction,
    Payment,
    DocumentRecord,
    UploadBatch,
    Counter,
    CompensationTask,
    ReconciliationCase,
    AuditLog,
]


def _use_tls(uri: str) -> bool:
    """True if URI uses TLS (Atlas or explicit tls=true). Avoids TLS for plain mongodb:// in CI."""
    return "mongodb+srv://" in uri or "tls=true" in uri.lower()


async def init_db(database=None) -> None:
    """Bind Beanie models. Tests pass an in-memory ``database``."""
    if database is None:
        settings = get_settings()
        kwargs = {}
        if _use_tls(settings.mongodb_uri):
            kwargs["tlsCAFile"] = certifi.where()
            kwargs["tlsDisableOCSPEndpointCheck"] = True
        client = AsyncIOMotorClient(settings.mongodb_uri, **kwargs)
        database = client[settings.mongodb_db_name]
    await init_beanie(database=database, document_models=DOCUMENT_MODELS)
