"""Bid acceptance.

A bid is validated and written while holding the auction's lock, and the
write itself is a compare-and-swap on the auction version read during
validation. Two bidders racing on the same auction are therefore serialized:
whoever commits second is validated against the price the first one set.
"""
import logging
from datetime import datetime
from typing import Callable

from auction_server import config
from auction_server.errors import (
    AuctionClosed,
    BidBelowIncrement,
    BidTooLow,
    LedgerConflict,
    LedgerFailure,
    NotFound,
)
from auction_server.lifecycle import is_open_for_bids
from auction_server.models import Auction, Bid, utcnow
from auction_server.storage import Ledger

logger = logging.getLogger(__name__)


def validate_bid(auction: Auction, amount: int, now: datetime) -> None:
    """Raise the first rule the bid breaks, in the order bidders see them."""
    if not is_open_for_bids(auction, now):
        raise AuctionClosed(auction.id)
    if amount <= auction.current_price:
        raise BidTooLow(auction.current_price)
    if amount < auction.min_next_bid:
        raise BidBelowIncrement(auction.min_bid_increment, auction.min_next_bid)


class BidEngine:
    def __init__(self, ledger: Ledger, clock: Callable[[], datetime] = utcnow,
                 max_retries: int = config.BID_MAX_RETRIES):
        self.ledger = ledger
        self.clock = clock
        self.max_retries = max_retries

    def place_bid(self, bidder_id: int, auction_id: int, amount: int) -> Bid:
        with self.ledger.auction_lock(auction_id):
            for attempt in range(1, self.max_retries + 1):
                auction = self.ledger.get_auction(auction_id)
                if not auction:
                    raise NotFound("Auction not found")

                try:
                    validate_bid(auction, amount, self.clock())
                except (AuctionClosed, BidTooLow, BidBelowIncrement) as e:
                    logger.info(f"[Bid] Rejected {amount} on auction {auction_id} "
                                f"by user {bidder_id}: {e.message}")
                    raise

                try:
                    bid = self.ledger.commit_bid(bidder_id, auction_id, amount, auction.version)
                except LedgerConflict as e:
                    logger.warning(f"[Bid] Conflict on attempt {attempt}/{self.max_retries}: {e.message}")
                    continue

                logger.info(f"[Bid] Accepted {amount} on auction {auction_id} by user {bidder_id}")
                return bid

        logger.error(f"[Bid] Giving up on auction {auction_id} after {self.max_retries} conflicts")
        raise LedgerFailure("The auction is busy, please retry your bid")
