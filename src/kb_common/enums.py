"""Global enums: must match DB CHECK constraints exactly (alembic/versions)."""

from enum import Enum


class TransactionStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    REJECTED = "rejected"
    REFUNDED = "refunded"


class HoldStatus(str, Enum):
    PENDING = "pending"
    HELD = "held"
    RELEASED = "released"
    REFUNDED = "refunded"
    DISPUTED = "disputed"


class PendingAction(str, Enum):
    """Gateway call in flight against a hold; blocks competing transitions."""
    REFUND = "refund"
    PARTIAL_REFUND = "partial_refund"


class ReleaseTrigger(str, Enum):
    BUYER_CONFIRMATION = "buyer_confirmation"
    AUTO_RELEASE = "auto_release"
    DISPUTE_RESOLUTION = "dispute_resolution"
    MANUAL_ADMIN = "manual_admin"


class SettlementKind(str, Enum):
    """Derived ledger entries written when a hold reaches a terminal state."""
    RELEASE = "RELEASE"
    REFUND = "REFUND"


class DisputeResolution(str, Enum):
    PENDING = "pending"
    REFUND_BUYER = "refund_buyer"
    PAY_SELLER = "pay_seller"
    PARTIAL_REFUND = "partial_refund"


class DisputeInitiator(str, Enum):
    BUYER = "buyer"
    SELLER = "seller"
    ADMIN = "admin"


class PayoutJobStatus(str, Enum):
    QUEUED = "QUEUED"
    IN_FLIGHT = "IN_FLIGHT"
    SUCCEEDED = "SUCCEEDED"
    FAILED = "FAILED"


class PayoutJobSource(str, Enum):
    RELEASE = "RELEASE"
    WITHDRAWAL = "WITHDRAWAL"


class PayoutRecordStatus(str, Enum):
    """PayoutRecord is append-only: only outcomes are ever written."""
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"


class GatewayOutcome(str, Enum):
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"
    # Accepted by the gateway, final result arrives via webhook
    PENDING = "PENDING"
    # Timeout or transport error with no confirmation either way
    AMBIGUOUS = "AMBIGUOUS"


class PrincipalRole(str, Enum):
    SELLER = "seller"
    ADMIN = "admin"
    SERVICE = "service"
