"""ORM models package -- re-exports all models and the Base class."""

from photostudio.models.base import Base
from photostudio.models.user import CreditTransaction, TxnType, User
from photostudio.models.payment import AuditLog, Payment, PaymentStatus
from photostudio.models.library import Folder, Image

__all__ = [
    "Base",
    "User",
    "CreditTransaction",
    "TxnType",
    "Payment",
    "PaymentStatus",
    "AuditLog",
    "Folder",
    "Image",
]
