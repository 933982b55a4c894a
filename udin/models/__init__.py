from udin.models.user import User
from udin.models.transaction import Transaction
from udin.models.payment import Payment
from udin.models.document import DocumentRecord
from udin.models.upload import UploadBatch
from udin.models.counter import Counter
from udin.models.compensation_task import CompensationTask
from udin.models.reconciliation_case import ReconciliationCase
from udin.models.audit_log import AuditLog

__all__ = [
    "User",
    "Transaction",
    "Payment",
    "DocumentRecord",
    "UploadBatch",
    "Counter",
    "CompensationTask",
    "ReconciliationCase",
    "AuditLog",
]
