"""Schema package exports."""
from .alert import AlertRead
from .common import Envelope
from .escrow import (
    EscrowCancelRequest,
    EscrowCreate,
    EscrowRead,
    EscrowRefundRequest,
    EscrowReleaseRead,
    EscrowReleaseRequest,
)
from .milestone import MilestoneRead
from .payment import InvoiceRead, PaymentCreate, PaymentRead, RefundCreate
from .payout import PayoutAccountRead, PayoutAccountSetup, PayoutRead

__all__ = [
    "AlertRead",
    "Envelope",
    "EscrowCancelRequest",
    "EscrowCreate",
    "EscrowRead",
    "EscrowRefundRequest",
    "EscrowReleaseRead",
    "EscrowReleaseRequest",
    "InvoiceRead",
    "MilestoneRead",
    "PaymentCreate",
    "PaymentRead",
    "PayoutAccountRead",
    "PayoutAccountSetup",
    "PayoutRead",
    "RefundCreate",
]
