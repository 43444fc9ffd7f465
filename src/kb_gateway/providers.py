"""Request-scoped service construction.

The gateway adapter, verifier and session factory are created once by the
application lifespan and kept on ``app.state``; services are cheap and built
per request from them. Tests override these dependencies with fakes.
"""

from fastapi import Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from config.settings import settings
from src.kb_dispute.application.service import DisputeResolver
from src.kb_dispute.infrastructure.persistence import DisputeRepository
from src.kb_escrow.application.service import EscrowStateMachine
from src.kb_escrow.application.shipments import ShipmentService
from src.kb_escrow.domain.verification import VerificationServiceProtocol
from src.kb_escrow.infrastructure.persistence import EscrowRepository
from src.kb_payments.application.service import PaymentService
from src.kb_payments.application.webhook import WebhookProcessor
from src.kb_payments.domain.gateway import PaymentGatewayProtocol
from src.kb_payments.infrastructure.persistence import TransactionRepository
from src.kb_payout.application.service import PayoutExecutor
from src.kb_payout.infrastructure.persistence import PayoutRepository
from src.kb_scheduler.application.service import AutoReleaseScheduler
from src.kb_scheduler.infrastructure.persistence import CandidateRepository
from src.kb_wallet.application.service import WalletProjector
from src.kb_wallet.infrastructure.persistence import WalletRepository


def get_gateway(request: Request) -> PaymentGatewayProtocol:
    return request.app.state.gateway  # type: ignore[no-any-return]


def get_verifier(request: Request) -> VerificationServiceProtocol:
    return request.app.state.verifier  # type: ignore[no-any-return]


def get_session_factory(request: Request) -> async_sessionmaker[AsyncSession]:
    return request.app.state.session_factory  # type: ignore[no-any-return]


def get_escrow_repository() -> EscrowRepository:
    return EscrowRepository()


def get_state_machine(
    gateway: PaymentGatewayProtocol = Depends(get_gateway),
) -> EscrowStateMachine:
    return EscrowStateMachine(
        EscrowRepository(),
        TransactionRepository(),
        PayoutRepository(),
        gateway,
        gateway_timeout=settings.GATEWAY_TIMEOUT_SECONDS,
    )


def get_payout_executor(
    gateway: PaymentGatewayProtocol = Depends(get_gateway),
) -> PayoutExecutor:
    return PayoutExecutor(
        PayoutRepository(),
        gateway,
        gateway_timeout=settings.GATEWAY_TIMEOUT_SECONDS,
        stale_after_seconds=settings.PAYOUT_INFLIGHT_STALE_SECONDS,
        currency=settings.DEFAULT_CURRENCY,
    )


def get_dispute_resolver(
    escrow: EscrowStateMachine = Depends(get_state_machine),
) -> DisputeResolver:
    return DisputeResolver(DisputeRepository(), escrow, TransactionRepository())


def get_payment_service(
    gateway: PaymentGatewayProtocol = Depends(get_gateway),
) -> PaymentService:
    return PaymentService(TransactionRepository(), gateway)


def get_webhook_processor(
    escrow: EscrowStateMachine = Depends(get_state_machine),
    payouts: PayoutExecutor = Depends(get_payout_executor),
) -> WebhookProcessor:
    return WebhookProcessor(escrow, payouts)


def get_shipment_service() -> ShipmentService:
    return ShipmentService(EscrowRepository(), TransactionRepository())


def get_wallet_projector() -> WalletProjector:
    return WalletProjector(WalletRepository(), currency=settings.DEFAULT_CURRENCY)


def get_scheduler(
    escrow: EscrowStateMachine = Depends(get_state_machine),
) -> AutoReleaseScheduler:
    return AutoReleaseScheduler(
        CandidateRepository(), escrow, window_hours=settings.AUTO_RELEASE_WINDOW_HOURS
    )
