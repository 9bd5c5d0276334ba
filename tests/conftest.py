from datetime import datetime, timedelta, timezone

import pytest
from fastapi.testclient import TestClient

from auction_server.bidding import BidEngine
from auction_server.main import app, get_clock, get_storage
from auction_server.models import AuctionCreate, UserCreate
from auction_server.storage import Storage

START = datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)


class FakeClock:
    def __init__(self, now=START):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now = self.now + timedelta(**kwargs)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def ledger(clock):
    return Storage(clock=clock, seed=True)


@pytest.fixture
def engine(ledger, clock):
    return BidEngine(ledger, clock=clock)


@pytest.fixture
def seller(ledger):
    return ledger.create_user(UserCreate(username="seller", email="seller@example.com",
                                         full_name="Sam Seller"))


@pytest.fixture
def bidders(ledger):
    return [
        ledger.create_user(UserCreate(username=f"bidder{i}", email=f"bidder{i}@example.com",
                                      full_name=f"Bidder {i}"))
        for i in range(1, 4)
    ]


def auction_data(**overrides):
    data = dict(
        title="Vintage watch",
        title_ar="ساعة قديمة",
        description="Swiss made, 1962",
        description_ar="صنع سويسري",
        image_url="https://example.com/watch.jpg",
        starting_price=1000,
        min_bid_increment=50,
        category_id=1,
        start_time=START - timedelta(days=1),
        end_time=START + timedelta(days=7),
    )
    data.update(overrides)
    return AuctionCreate(**data)


@pytest.fixture
def make_auction(ledger, seller):
    def make(**overrides):
        return ledger.create_auction(seller.id, auction_data(**overrides))
    return make


@pytest.fixture
def auction(make_auction):
    return make_auction()


@pytest.fixture
def api(ledger, clock):
    app.dependency_overrides[get_storage] = lambda: ledger
    app.dependency_overrides[get_clock] = lambda: clock
    with TestClient(app) as client:
        yield client
    app.dependency_overrides.clear()
