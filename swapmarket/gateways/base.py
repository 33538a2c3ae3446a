from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Protocol, runtime_checkable


@dataclass(frozen=True)
class EscrowResult:
    escrow_id: str
    status: str


@dataclass(frozen=True)
class PaymentTransaction:
    transaction_id: str
    status: str
    amount: Decimal | None = None
    detail: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class SettlementDetails:
    """What gets written to the ledger for a settled swap."""

    settlement_id: str
    listing_id: str
    payer_id: str
    recipient_id: str
    proposal_type: str
    target_id: str | None = None
    auction_proposal_id: str | None = None
    source_listing_id: str | None = None
    amount: Decimal | None = None
    currency: str | None = None
    payment_transaction_id: str | None = None

    def as_payload(self) -> dict[str, Any]:
        return {
            "settlement_id": self.settlement_id,
            "listing_id": self.listing_id,
            "source_listing_id": self.source_listing_id,
            "target_id": self.target_id,
            "auction_proposal_id": self.auction_proposal_id,
            "payer_id": self.payer_id,
            "recipient_id": self.recipient_id,
            "proposal_type": self.proposal_type,
            "amount": str(self.amount) if self.amount is not None else None,
            "currency": self.currency,
            "payment_transaction_id": self.payment_transaction_id,
        }


@runtime_checkable
class PaymentGateway(Protocol):
    """
    Escrow-backed payment provider.
    Raises PaymentDeclined or GatewayUnavailable.
    """

    async def create_escrow(
        self,
        *,
        settlement_id: str,
        amount: Decimal,
        currency: str,
        payer_id: str,
        recipient_id: str,
        listing_ref: str,
        payment_method_id: str | None = None,
    ) -> EscrowResult:
        ...

    async def release_escrow(
        self,
        *,
        escrow_id: str,
        recipient_id: str,
        amount: Decimal | None = None,
    ) -> PaymentTransaction:
        ...

    async def refund_escrow(self, *, escrow_id: str, reason: str) -> PaymentTransaction:
        """
        Compensation: return held or released funds to the payer.
        """
        ...


@runtime_checkable
class BlockchainGateway(Protocol):
    async def record_settlement(self, details: SettlementDetails) -> str:
        """
        Returns the ledger transaction id.
        Raises NetworkError or InsufficientBalance.
        """
        ...


@runtime_checkable
class NotificationGateway(Protocol):
    async def emit(self, event_type: str, user_id: str, payload: dict[str, Any]) -> None:
        ...
