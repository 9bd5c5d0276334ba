import random
import threading
from datetime import timedelta

import pytest

from auction_server.bidding import BidEngine, validate_bid
from auction_server.errors import (
    AuctionClosed,
    BidBelowIncrement,
    BidTooLow,
    LedgerConflict,
    LedgerFailure,
    NotFound,
)
from auction_server.lifecycle import close_auction
from auction_server.models import UserCreate
from auction_server.storage import Storage
from tests.conftest import auction_data


class TestPlaceBid:
    def test_example_scenario(self, ledger, engine, auction, bidders):
        first, second, _ = bidders

        with pytest.raises(BidBelowIncrement) as exc:
            engine.place_bid(first.id, auction.id, 1040)
        assert exc.value.min_bid == 1050

        engine.place_bid(first.id, auction.id, 1050)
        state = ledger.get_auction(auction.id)
        assert (state.current_price, state.bid_count) == (1050, 1)

        with pytest.raises(BidTooLow) as exc:
            engine.place_bid(second.id, auction.id, 1050)
        assert exc.value.current_price == 1050

        engine.place_bid(second.id, auction.id, 1200)
        state = ledger.get_auction(auction.id)
        assert (state.current_price, state.bid_count) == (1200, 2)

        closed = close_auction(ledger, auction.id)
        assert closed.status == "closed"
        assert closed.winner_id == second.id

        with pytest.raises(AuctionClosed):
            engine.place_bid(first.id, auction.id, 2000)

    def test_accepted_bid_is_returned_and_recorded(self, ledger, engine, clock, auction, bidders):
        clock.advance(minutes=5)
        bid = engine.place_bid(bidders[0].id, auction.id, 1100)

        assert bid.user_id == bidders[0].id
        assert bid.auction_id == auction.id
        assert bid.amount == 1100
        assert bid.created_at == clock.now
        assert ledger.get_bids_for_auction(auction.id) == [bid]
        assert ledger.get_auction(auction.id).updated_at == clock.now

    def test_amount_equal_to_price_is_too_low(self, engine, auction, bidders):
        with pytest.raises(BidTooLow) as exc:
            engine.place_bid(bidders[0].id, auction.id, 1000)
        assert exc.value.to_dict() == {
            "message": "Bid amount must be higher than the current price",
            "currentPrice": 1000,
        }

    def test_amount_below_price_is_too_low(self, engine, auction, bidders):
        with pytest.raises(BidTooLow):
            engine.place_bid(bidders[0].id, auction.id, 10)

    @pytest.mark.parametrize("amount", [1001, 1025, 1049])
    def test_amount_inside_increment_window(self, engine, auction, bidders, amount):
        with pytest.raises(BidBelowIncrement) as exc:
            engine.place_bid(bidders[0].id, auction.id, amount)
        assert exc.value.to_dict()["minBid"] == 1050

    def test_first_bid_may_use_current_price_above_start(self, ledger, engine, make_auction, bidders):
        auction = make_auction(starting_price=500, current_price=800, min_bid_increment=25)

        with pytest.raises(BidBelowIncrement):
            engine.place_bid(bidders[0].id, auction.id, 820)
        engine.place_bid(bidders[0].id, auction.id, 825)
        assert ledger.get_auction(auction.id).current_price == 825

    def test_unknown_auction(self, engine, bidders):
        with pytest.raises(NotFound):
            engine.place_bid(bidders[0].id, 999, 5000)

    def test_rejected_bid_changes_nothing(self, ledger, engine, auction, bidders):
        with pytest.raises(BidBelowIncrement):
            engine.place_bid(bidders[0].id, auction.id, 1040)

        state = ledger.get_auction(auction.id)
        assert state.current_price == 1000
        assert state.bid_count == 0
        assert ledger.get_bids_for_auction(auction.id) == []


class TestClosedAuctions:
    def test_stored_closed_rejects_any_amount(self, ledger, engine, auction, bidders):
        ledger.set_auction_winner_and_close(auction.id, None)

        with pytest.raises(AuctionClosed):
            engine.place_bid(bidders[0].id, auction.id, 10 ** 9)

    def test_expired_but_not_closed_rejects(self, ledger, engine, clock, auction, bidders):
        clock.now = auction.end_time + timedelta(seconds=1)

        with pytest.raises(AuctionClosed):
            engine.place_bid(bidders[0].id, auction.id, 5000)
        # rejection does not persist the close
        assert ledger.get_auction(auction.id).status == "active"

    def test_bid_exactly_at_end_time_is_accepted(self, engine, clock, auction, bidders):
        clock.now = auction.end_time
        assert engine.place_bid(bidders[0].id, auction.id, 1050).amount == 1050

    def test_closed_is_checked_before_price(self, engine, clock, auction, bidders):
        clock.now = auction.end_time + timedelta(days=1)
        with pytest.raises(AuctionClosed):
            engine.place_bid(bidders[0].id, auction.id, 1)


class TestInvariants:
    def test_monotonic_and_count_consistent(self, ledger, engine, auction, bidders):
        rng = random.Random(7)
        for _ in range(200):
            bidder = rng.choice(bidders)
            amount = ledger.get_auction(auction.id).current_price + rng.randint(-20, 120)
            try:
                engine.place_bid(bidder.id, auction.id, amount)
            except (BidTooLow, BidBelowIncrement):
                pass

        bids = sorted(ledger.get_bids_for_auction(auction.id), key=lambda b: b.id)
        state = ledger.get_auction(auction.id)
        assert bids
        assert state.bid_count == len(bids)
        assert state.current_price == bids[-1].amount
        assert bids[0].amount >= 1050
        for earlier, later in zip(bids, bids[1:]):
            assert later.amount - earlier.amount >= 50

    def test_validate_bid_order(self, auction, clock):
        validate_bid(auction, 1050, clock())
        with pytest.raises(BidTooLow):
            validate_bid(auction, 999, clock())
        with pytest.raises(AuctionClosed):
            validate_bid(auction, 999, auction.end_time + timedelta(seconds=1))


class ConflictingStorage(Storage):
    """Reports a concurrent modification on the first `conflicts` commits."""

    def __init__(self, conflicts, **kwargs):
        super().__init__(**kwargs)
        self.conflicts = conflicts
        self.commit_calls = 0

    def commit_bid(self, bidder_id, auction_id, amount, expected_version):
        self.commit_calls += 1
        if self.commit_calls <= self.conflicts:
            raise LedgerConflict(auction_id, expected_version, expected_version + 1)
        return super().commit_bid(bidder_id, auction_id, amount, expected_version)


class TestRetries:
    def _setup(self, clock, conflicts):
        ledger = ConflictingStorage(conflicts, clock=clock, seed=True)
        user = ledger.create_user(UserCreate(username="u", email="u@example.com", full_name="U U"))
        auction = ledger.create_auction(user.id, auction_data())
        return ledger, user, auction

    def test_conflict_is_retried(self, clock):
        ledger, user, auction = self._setup(clock, conflicts=2)
        engine = BidEngine(ledger, clock=clock, max_retries=3)

        bid = engine.place_bid(user.id, auction.id, 1050)

        assert bid.amount == 1050
        assert ledger.commit_calls == 3
        assert ledger.get_auction(auction.id).bid_count == 1

    def test_gives_up_after_max_retries(self, clock):
        ledger, user, auction = self._setup(clock, conflicts=10)
        engine = BidEngine(ledger, clock=clock, max_retries=3)

        with pytest.raises(LedgerFailure) as exc:
            engine.place_bid(user.id, auction.id, 1050)

        assert exc.value.status_code == 503
        assert ledger.commit_calls == 3
        assert ledger.get_bids_for_auction(auction.id) == []
        assert ledger.get_auction(auction.id).current_price == 1000

    def test_validation_failures_are_not_retried(self, clock):
        ledger, user, auction = self._setup(clock, conflicts=0)
        engine = BidEngine(ledger, clock=clock, max_retries=3)

        with pytest.raises(BidTooLow):
            engine.place_bid(user.id, auction.id, 900)
        assert ledger.commit_calls == 0


class TickingClock:
    """Moves forward a millisecond on every reading, safe to share between threads."""

    def __init__(self, now):
        self.now = now
        self._lock = threading.Lock()

    def __call__(self):
        with self._lock:
            self.now = self.now + timedelta(milliseconds=1)
            return self.now


class SlowReadStorage(Storage):
    """Widens the window between reading the auction and writing the bid."""

    def get_auction(self, auction_id):
        auction = super().get_auction(auction_id)
        threading.Event().wait(0.002)
        return auction


def run_concurrently(engine, auction_id, submissions):
    barrier = threading.Barrier(len(submissions))
    accepted, rejected = [], []
    record = threading.Lock()

    def submit(bidder_id, amount):
        barrier.wait()
        try:
            bid = engine.place_bid(bidder_id, auction_id, amount)
        except (BidTooLow, BidBelowIncrement) as e:
            with record:
                rejected.append((amount, e))
        else:
            with record:
                accepted.append(bid)

    threads = [threading.Thread(target=submit, args=s) for s in submissions]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    return accepted, rejected


class TestConcurrency:
    @pytest.fixture
    def slow_ledger(self, clock):
        return SlowReadStorage(clock=clock, seed=True)

    def _auction(self, ledger):
        user = ledger.create_user(UserCreate(username="s", email="s@example.com", full_name="S S"))
        return ledger.create_auction(user.id, auction_data())

    def test_same_amount_only_one_wins(self, slow_ledger, clock):
        auction = self._auction(slow_ledger)
        engine = BidEngine(slow_ledger, clock=clock)

        accepted, rejected = run_concurrently(
            engine, auction.id, [(i, 1050) for i in range(1, 21)])

        assert len(accepted) == 1
        assert len(rejected) == 19
        assert all(isinstance(e, BidTooLow) for _, e in rejected)
        state = slow_ledger.get_auction(auction.id)
        assert state.current_price == 1050
        assert state.bid_count == 1

    def test_increasing_amounts_serialize(self, slow_ledger, clock):
        auction = self._auction(slow_ledger)
        engine = BidEngine(slow_ledger, clock=clock)
        amounts = [1050 + 50 * i for i in range(20)]
        random.Random(3).shuffle(amounts)

        accepted, rejected = run_concurrently(
            engine, auction.id, [(i + 1, amount) for i, amount in enumerate(amounts)])

        in_order = sorted(accepted, key=lambda b: b.id)
        for earlier, later in zip(in_order, in_order[1:]):
            assert later.amount - earlier.amount >= 50
        state = slow_ledger.get_auction(auction.id)
        assert state.current_price == max(amounts)
        assert state.current_price == in_order[-1].amount
        assert state.bid_count == len(accepted)
        assert len(slow_ledger.get_bids_for_auction(auction.id)) == len(accepted)
        assert len(accepted) + len(rejected) == 20

    def test_different_auctions_do_not_interfere(self, slow_ledger, clock):
        first = self._auction(slow_ledger)
        second = slow_ledger.create_auction(first.seller_id, auction_data())
        engine = BidEngine(slow_ledger, clock=clock)

        results = {}

        def bid_on(auction_id):
            results[auction_id] = engine.place_bid(1, auction_id, 1050)

        threads = [threading.Thread(target=bid_on, args=(a.id,)) for a in (first, second)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert {b.auction_id for b in results.values()} == {first.id, second.id}

    def test_close_races_bids(self, clock):
        ticking = TickingClock(clock.now)
        ledger = SlowReadStorage(clock=ticking, seed=True)
        auction = self._auction(ledger)
        engine = BidEngine(ledger, clock=ticking)
        version_before = ledger.get_auction(auction.id).version

        amounts = [1050 + 50 * i for i in range(10)]
        random.Random(11).shuffle(amounts)
        submissions = [("bid", i + 1, amount) for i, amount in enumerate(amounts)]
        submissions += [("close", None, None)] * 3
        barrier = threading.Barrier(len(submissions))
        accepted, closes = [], []
        record = threading.Lock()

        def submit(kind, bidder_id, amount):
            barrier.wait()
            if kind == "close":
                result = close_auction(ledger, auction.id)
                with record:
                    closes.append(result)
                return
            try:
                bid = engine.place_bid(bidder_id, auction.id, amount)
            except (BidTooLow, BidBelowIncrement, AuctionClosed):
                return
            with record:
                accepted.append(bid)

        threads = [threading.Thread(target=submit, args=s) for s in submissions]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert len(closes) == 3
        closed = closes[0]
        assert all(c == closed for c in closes)
        assert closed.status == "closed"
        assert all(bid.created_at < closed.updated_at for bid in accepted)

        stored = ledger.get_bids_for_auction(auction.id)
        assert sorted(b.id for b in stored) == sorted(b.id for b in accepted)
        top = max(stored, key=lambda b: b.amount, default=None)
        assert closed.winner_id == (top.user_id if top else None)

        state = ledger.get_auction(auction.id)
        assert state.bid_count == len(accepted)
        assert state.version == version_before + len(accepted) + 1
