"""
Closed error hierarchy for the swap core.

Every error has a stable ``code`` and a ``category``. The API layer maps
categories to HTTP statuses in one exhaustive table, so adding a category
without a mapping is caught at import time.
"""
from __future__ import annotations

from enum import Enum
from typing import Any


class ErrorCategory(str, Enum):
    VALIDATION = "validation"
    NOT_FOUND = "not_found"
    AUTHORIZATION = "authorization"
    BUSINESS = "business"
    INFRASTRUCTURE = "infrastructure"
    CONSISTENCY = "consistency"


class SwapError(Exception):
    code: str = "swap_error"
    category: ErrorCategory = ErrorCategory.BUSINESS
    default_message: str = "Swap operation failed"

    def __init__(self, message: str | None = None, **details: Any):
        self.message = message or self.default_message
        self.details = details
        super().__init__(self.message)

    @property
    def retryable(self) -> bool:
        return self.category is ErrorCategory.INFRASTRUCTURE

    def to_dict(self) -> dict[str, Any]:
        return {"code": self.code, "message": self.message, "details": [self.details] if self.details else []}


class InvalidRequest(SwapError):
    code = "invalid_request"
    category = ErrorCategory.VALIDATION
    default_message = "Invalid request"


# --- targeting ---------------------------------------------------------------

class TargetingError(SwapError):
    code = "targeting_error"


class ListingNotFound(TargetingError):
    code = "listing_not_found"
    category = ErrorCategory.NOT_FOUND
    default_message = "Listing not found"


class TargetNotFound(TargetingError):
    code = "target_not_found"
    category = ErrorCategory.NOT_FOUND
    default_message = "Target not found"


class TargetingForbidden(TargetingError):
    code = "targeting_forbidden"
    category = ErrorCategory.AUTHORIZATION
    default_message = "User does not own the source listing"


class SelfTargetingNotAllowed(TargetingError):
    code = "self_targeting_not_allowed"
    category = ErrorCategory.AUTHORIZATION
    default_message = "Cannot target your own listing"


class DuplicateActiveTarget(TargetingError):
    code = "duplicate_active_target"
    default_message = "Source already has an active target; retarget instead"


class NoActiveTarget(TargetingError):
    code = "no_active_target"
    default_message = "No active target found"


class TargetAlreadyResolved(TargetingError):
    code = "target_already_resolved"
    default_message = "Target has already been resolved"


class ListingNotTargetable(TargetingError):
    code = "listing_not_targetable"
    default_message = "Listing is not available for targeting"


class AuctionModeListing(TargetingError):
    code = "auction_mode_listing"
    default_message = "Listing collects proposals through its auction"


class CircularTargeting(TargetingError):
    code = "circular_targeting"
    default_message = "Targeting would create a cycle"


class CashOfferBelowMinimum(TargetingError):
    code = "cash_offer_below_minimum"
    category = ErrorCategory.VALIDATION
    default_message = "Cash offer is below the listing minimum"


# --- acceptance --------------------------------------------------------------

class AcceptanceError(SwapError):
    code = "acceptance_error"


class ProposalNotFound(AcceptanceError):
    code = "proposal_not_found"
    category = ErrorCategory.NOT_FOUND
    default_message = "Proposal not found"


class Forbidden(AcceptanceError):
    code = "forbidden"
    category = ErrorCategory.AUTHORIZATION
    default_message = "Only the listing owner can respond to this proposal"


class CannotAcceptOwnProposal(AcceptanceError):
    code = "cannot_accept_own_proposal"
    category = ErrorCategory.AUTHORIZATION
    default_message = "Proposers cannot accept their own proposal"


class ProposalAlreadyResolved(AcceptanceError):
    code = "proposal_already_resolved"
    default_message = "Proposal has already been resolved"


class ListingNoLongerAvailable(AcceptanceError):
    code = "listing_no_longer_available"
    default_message = "Listing is no longer available"


class ListingExpired(AcceptanceError):
    code = "listing_expired"
    default_message = "Listing has expired"


# --- auctions ----------------------------------------------------------------

class AuctionError(SwapError):
    code = "auction_error"


class AuctionNotFound(AuctionError):
    code = "auction_not_found"
    category = ErrorCategory.NOT_FOUND
    default_message = "Auction not found"


class AuctionProposalNotFound(AuctionError):
    code = "auction_proposal_not_found"
    category = ErrorCategory.NOT_FOUND
    default_message = "Proposal not found in this auction"


class AuctionNotOpen(AuctionError):
    code = "auction_not_open"
    default_message = "Auction is not open"


class AuctionNotEnded(AuctionError):
    code = "auction_not_ended"
    default_message = "Auction has not ended"


class WinnerAlreadySelected(AuctionError):
    code = "winner_already_selected"
    default_message = "Winning proposal has already been selected"


class ProposalTypeNotAllowed(AuctionError):
    code = "proposal_type_not_allowed"
    category = ErrorCategory.VALIDATION
    default_message = "Proposal type is not allowed by this auction"


class CannotProposeToOwnAuction(AuctionError):
    code = "cannot_propose_to_own_auction"
    category = ErrorCategory.AUTHORIZATION
    default_message = "Cannot propose to your own auction"


# --- gateways ----------------------------------------------------------------

class GatewayError(SwapError):
    code = "gateway_error"
    category = ErrorCategory.INFRASTRUCTURE
    default_message = "External gateway failed"
    # declined payments and unfunded accounts are final answers, not outages
    transient: bool = True

    @property
    def retryable(self) -> bool:
        return self.transient


class GatewayUnavailable(GatewayError):
    code = "gateway_unavailable"
    default_message = "External gateway unavailable"


class PaymentDeclined(GatewayError):
    code = "payment_declined"
    default_message = "Payment was declined"
    transient = False


class NetworkError(GatewayError):
    code = "blockchain_network_error"
    default_message = "Blockchain network error"


class InsufficientBalance(GatewayError):
    code = "insufficient_balance"
    default_message = "Blockchain account has insufficient balance"
    transient = False


# --- settlement --------------------------------------------------------------

class SettlementError(SwapError):
    code = "settlement_error"
    category = ErrorCategory.INFRASTRUCTURE


class SettlementNotFound(SettlementError):
    code = "settlement_not_found"
    category = ErrorCategory.NOT_FOUND
    default_message = "Settlement record not found"


class SettlementFailed(SettlementError):
    code = "settlement_failed"
    default_message = "Settlement failed and the acceptance was rolled back"

    def __init__(self, stage: str, cause: SwapError | None = None, settlement_id: str | None = None, **details: Any):
        self.stage = stage
        self.cause = cause
        self.settlement_id = settlement_id
        super().__init__(
            f"Settlement failed at {stage} stage",
            stage=stage,
            settlement_id=settlement_id,
            cause=cause.code if cause else None,
            **details,
        )

    @property
    def retryable(self) -> bool:
        return bool(self.cause and self.cause.retryable)


class CriticalRollbackFailure(SettlementError):
    code = "critical_rollback_failure"
    category = ErrorCategory.CONSISTENCY
    default_message = "Settlement partially committed and could not be reversed; requires manual reconciliation"
