"""ORM models package."""
from .alert import Alert
from .audit import AuditLog
from .base import Base
from .booking import Booking, BookingStatus, Milestone, MilestoneStatus
from .escrow import EscrowAccount, EscrowEvent, EscrowStatus
from .lock import DistributedLock
from .payment import PaymentRecord, PaymentStatus
from .payout import ACTIVE_PAYOUT_STATUSES, PayoutRecord, PayoutStatus, VendorPayoutAccount
from .vendor_document import DocumentStatus, DocumentType, VendorDocument
from .webhook_event import WebhookEvent, WebhookOutcome

__all__ = [
    "ACTIVE_PAYOUT_STATUSES",
    "Alert",
    "AuditLog",
    "Base",
    "Booking",
    "BookingStatus",
    "DistributedLock",
    "DocumentStatus",
    "DocumentType",
    "EscrowAccount",
    "EscrowEvent",
    "EscrowStatus",
    "Milestone",
    "MilestoneStatus",
    "PaymentRecord",
    "PaymentStatus",
    "PayoutRecord",
    "PayoutStatus",
    "VendorDocument",
    "VendorPayoutAccount",
    "WebhookEvent",
    "WebhookOutcome",
]
