"""Failures raised by the ledger, the bid engine and the lifecycle.

Every error carries the HTTP status the API answers with and the JSON body
it renders, so the API layer needs a single handler for all of them.
"""


class AuctionError(Exception):
    status_code = 400

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_dict(self) -> dict:
        return {"message": self.message}


class NotFound(AuctionError):
    status_code = 404


class AuctionClosed(AuctionError):
    def __init__(self, auction_id: int):
        super().__init__("This auction is no longer active")
        self.auction_id = auction_id


class BidTooLow(AuctionError):
    def __init__(self, current_price: int):
        super().__init__("Bid amount must be higher than the current price")
        self.current_price = current_price

    def to_dict(self) -> dict:
        return {"message": self.message, "currentPrice": self.current_price}


class BidBelowIncrement(AuctionError):
    def __init__(self, min_bid_increment: int, min_bid: int):
        super().__init__(
            f"Bid must be at least {min_bid_increment} higher than the current price"
        )
        self.min_bid_increment = min_bid_increment
        self.min_bid = min_bid

    def to_dict(self) -> dict:
        return {"message": self.message, "minBid": self.min_bid}


class DuplicateRecord(AuctionError):
    pass


class Forbidden(AuctionError):
    status_code = 403


class LedgerConflict(AuctionError):
    """The auction changed between the read and the write. Retried by the engine."""

    status_code = 409

    def __init__(self, auction_id: int, expected_version: int, actual_version: int):
        super().__init__(
            f"Auction {auction_id} was modified concurrently "
            f"(expected version {expected_version}, found {actual_version})"
        )
        self.auction_id = auction_id


class LedgerFailure(AuctionError):
    status_code = 503
