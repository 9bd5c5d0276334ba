"""Auction status as seen through the wall clock, and closing.

Nothing closes an auction on a timer. An auction past its end time is
treated as closed for bidding and display, but its winner is only written
when close_auction (or close_expired_auctions) is called.
"""
import logging
from datetime import datetime
from typing import Iterable, List, Optional

from auction_server import config
from auction_server.errors import NotFound
from auction_server.models import Auction, AuctionStatus, Bid
from auction_server.storage import Ledger, Storage

logger = logging.getLogger(__name__)


def is_expired(auction: Auction, now: datetime) -> bool:
    return now > auction.end_time


def effective_status(auction: Auction, now: datetime) -> AuctionStatus:
    if auction.status == AuctionStatus.CLOSED or is_expired(auction, now):
        return AuctionStatus.CLOSED
    return AuctionStatus.ACTIVE


def is_open_for_bids(auction: Auction, now: datetime) -> bool:
    return effective_status(auction, now) == AuctionStatus.ACTIVE


def with_effective_status(auction: Auction, now: datetime) -> Auction:
    """Copy of the auction whose status field reflects the wall clock."""
    return auction.model_copy(update={"status": effective_status(auction, now)})


def determine_winner(bids: Iterable[Bid]) -> Optional[int]:
    """Bidder of the highest bid, or None when nobody bid."""
    best = max(bids, key=lambda b: (b.amount, b.created_at, b.id), default=None)
    return best.user_id if best else None


def close_auction(ledger: Ledger, auction_id: int) -> Auction:
    # same critical section as bidding, so a bid cannot land mid-close
    with ledger.auction_lock(auction_id):
        auction = ledger.get_auction(auction_id)
        if not auction:
            raise NotFound("Auction not found")
        if auction.status == AuctionStatus.CLOSED:
            return auction

        winner_id = determine_winner(ledger.get_bids_for_auction(auction_id))
        closed = ledger.set_auction_winner_and_close(auction_id, winner_id)
        logger.info(f"[Lifecycle] Closed auction {auction_id}, winner: {winner_id}")
        return closed


def close_expired_auctions(ledger: Storage, now: datetime) -> List[Auction]:
    """Close every stored-active auction whose end time has passed."""
    closed = []
    for auction in ledger.list_auctions():
        if auction.status == AuctionStatus.ACTIVE and is_expired(auction, now):
            closed.append(close_auction(ledger, auction.id))
    return closed


def active_auctions(auctions: Iterable[Auction], now: datetime) -> List[Auction]:
    return [with_effective_status(a, now) for a in auctions if is_open_for_bids(a, now)]


def recently_closed(auctions: Iterable[Auction], now: datetime,
                    limit: int = config.RECENTLY_CLOSED_LIMIT) -> List[Auction]:
    ended = [with_effective_status(a, now) for a in auctions if not is_open_for_bids(a, now)]
    ended.sort(key=lambda a: a.end_time, reverse=True)
    return ended[:limit]

