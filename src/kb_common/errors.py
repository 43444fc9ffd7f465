"""Unified error codes and custom exceptions.

Error code ranges:
  1xxx: Auth
  2xxx: Payments / Transactions
  3xxx: Escrow holds
  4xxx: Disputes
  5xxx: Payouts / Wallet
  9xxx: System

Idempotent no-ops (release of an already released hold, lock of an already
held transaction) are NOT errors; services return them as outcomes.
"""


class AppError(Exception):
    """Base application error."""

    def __init__(
        self,
        code: int,
        message: str,
        http_status: int = 500,
    ) -> None:
        self.code = code
        self.message = message
        self.http_status = http_status
        super().__init__(message)


# --- Validation / precondition families ---

class InvalidInputError(AppError):
    """Malformed or missing input: rejected with no side effect."""

    def __init__(self, detail: str) -> None:
        super().__init__(9003, f"Invalid input: {detail}", 400)


class PreconditionFailedError(AppError):
    def __init__(self, detail: str, code: int = 3009) -> None:
        super().__init__(code, f"Precondition failed: {detail}", 409)


# --- 1xxx: Auth ---

class InvalidCredentialsError(AppError):
    def __init__(self) -> None:
        super().__init__(1003, "Invalid or expired token", 401)


class ForbiddenError(AppError):
    def __init__(self, detail: str = "Insufficient role") -> None:
        super().__init__(1006, detail, 403)


class InvalidSignatureError(AppError):
    def __init__(self) -> None:
        super().__init__(1007, "Invalid webhook signature", 401)


# --- 2xxx: Payments / Transactions ---

class TransactionNotFoundError(AppError):
    def __init__(self, ref: str) -> None:
        super().__init__(2001, f"Transaction not found: {ref}", 404)


class TransactionNotCompletedError(PreconditionFailedError):
    def __init__(self, transaction_id: str, status: str) -> None:
        super().__init__(
            f"transaction {transaction_id} is {status}, expected completed", code=2002
        )


class AmountMismatchError(AppError):
    def __init__(self, expected: int, received: int) -> None:
        super().__init__(
            2003, f"Gateway amount {received} does not match transaction amount {expected}", 422
        )


# --- 3xxx: Escrow holds ---

class HoldNotFoundError(AppError):
    def __init__(self, ref: str) -> None:
        super().__init__(3001, f"Escrow hold not found: {ref}", 404)


class AlreadyLockedError(PreconditionFailedError):
    def __init__(self, transaction_id: str, status: str) -> None:
        super().__init__(
            f"transaction {transaction_id} already has a {status} hold", code=3002
        )


class AlreadyTerminalError(AppError):
    def __init__(self, hold_id: str, status: str) -> None:
        super().__init__(3003, f"Hold {hold_id} is already {status}", 409)


class SettlementInProgressError(PreconditionFailedError):
    def __init__(self, hold_id: str, action: str) -> None:
        super().__init__(f"hold {hold_id} has a {action} in flight", code=3004)


class InvalidConfirmationCodeError(AppError):
    def __init__(self) -> None:
        super().__init__(3005, "Invalid confirmation code", 404)


# --- 4xxx: Disputes ---

class DisputeNotFoundError(AppError):
    def __init__(self, dispute_id: str) -> None:
        super().__init__(4001, f"Dispute not found: {dispute_id}", 404)


class AlreadyResolvedError(AppError):
    def __init__(self, dispute_id: str, resolution: str) -> None:
        super().__init__(4002, f"Dispute {dispute_id} already resolved as {resolution}", 409)


class InvalidAmountError(AppError):
    def __init__(self, amount: int | None, hold_amount: int) -> None:
        super().__init__(
            4003,
            f"Partial amount must satisfy 0 < amount < {hold_amount}, got {amount}",
            422,
        )


class DisputeExistsError(PreconditionFailedError):
    def __init__(self, transaction_id: str) -> None:
        super().__init__(f"transaction {transaction_id} already has a dispute", code=4004)


# --- 5xxx: Payouts / Wallet ---

class InsufficientBalanceError(AppError):
    def __init__(self, required: int, available: int) -> None:
        super().__init__(
            5001,
            f"Insufficient balance: required {required}, available {available}",
            422,
        )


class PayoutJobNotFoundError(AppError):
    def __init__(self, job_id: str) -> None:
        super().__init__(5002, f"Payout job not found: {job_id}", 404)


class PayoutAccountMissingError(PreconditionFailedError):
    def __init__(self, seller_id: str) -> None:
        super().__init__(f"seller {seller_id} has no payout account", code=5003)


# --- 9xxx: System ---

class RateLimitError(AppError):
    def __init__(self) -> None:
        super().__init__(9001, "Rate limit exceeded", 429)


class InternalError(AppError):
    def __init__(self, detail: str = "Internal server error") -> None:
        super().__init__(9002, detail, 500)


class ExternalServiceError(AppError):
    """Gateway or verification failure. Retryable; ledger left in prior state."""

    def __init__(self, service: str, detail: str, retry_after: int = 30) -> None:
        self.service = service
        self.retry_after = retry_after
        super().__init__(9004, f"{service} error: {detail}", 502)
