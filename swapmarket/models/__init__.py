from swapmarket.models.base import Base  # noqa: F401

from swapmarket.models.listing import Listing  # noqa: F401
from swapmarket.models.target import Target  # noqa: F401
from swapmarket.models.auction import Auction, AuctionProposal  # noqa: F401
from swapmarket.models.settlement import SettlementRecord  # noqa: F401
from swapmarket.models.targeting_event import TargetingEvent  # noqa: F401
