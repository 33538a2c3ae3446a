from pydantic import BaseModel, Field

from swapmarket.schemas.auction import AuctionOut, AuctionProposalOut
from swapmarket.schemas.settlement import SettlementOut
from swapmarket.schemas.target import TargetOut


class AcceptRequest(BaseModel):
    # seconds the caller is willing to wait for settlement
    deadline_seconds: float | None = Field(default=None, gt=0, le=300)


class RejectRequest(BaseModel):
    reason: str | None = Field(default=None, max_length=2000)


class AcceptanceOut(BaseModel):
    proposal: TargetOut | AuctionProposalOut
    settlement: SettlementOut
    rejected: list[TargetOut] = Field(default_factory=list)
    auction: AuctionOut | None = None


class RejectionOut(BaseModel):
    proposal: TargetOut | AuctionProposalOut
