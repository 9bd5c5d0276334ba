import logging
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Callable, List, Optional

import uvicorn
from fastapi import Depends, FastAPI, Header, HTTPException, Query, Request
from fastapi.responses import JSONResponse

from auction_server import config, lifecycle
from auction_server.bidding import BidEngine
from auction_server.errors import AuctionError, Forbidden, NotFound
from auction_server.models import (
    Auction,
    AuctionCreate,
    Bid,
    BidCreate,
    Category,
    Favorite,
    FavoriteCreate,
    User,
    UserCreate,
    UserUpdate,
    utcnow,
)
from auction_server.storage import Storage, storage

logging.basicConfig(
    level=config.LOG_LEVEL,
    format="%(asctime)s:%(levelname)s:%(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info(f"[Startup] {len(storage.get_all_categories())} categories loaded, "
                f"bid retries: {config.BID_MAX_RETRIES}")
    yield
    logger.info("[Shutdown] Auction server stopping")

app = FastAPI(title="Auction server", lifespan=lifespan)


@app.exception_handler(AuctionError)
async def auction_error_handler(request: Request, exc: AuctionError):
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


# ===== DEPENDENCIES =====

def get_storage() -> Storage:
    return storage


def get_clock() -> Callable[[], datetime]:
    return utcnow


def get_engine(ledger: Storage = Depends(get_storage),
               clock: Callable[[], datetime] = Depends(get_clock)) -> BidEngine:
    return BidEngine(ledger, clock=clock)


def current_user(x_user_id: Optional[int] = Header(default=None),
                 ledger: Storage = Depends(get_storage)) -> User:
    # stands in for the session layer
    if x_user_id is None:
        raise HTTPException(status_code=401, detail="Unauthorized")
    user = ledger.get_user(x_user_id)
    if not user:
        raise HTTPException(status_code=401, detail="Unauthorized")
    return user


def require_auction(auction_id: int, ledger: Storage) -> Auction:
    auction = ledger.get_auction(auction_id)
    if not auction:
        raise NotFound("Auction not found")
    return auction


# ===== CATEGORIES =====

@app.get("/api/categories", response_model=List[Category])
def list_categories(ledger: Storage = Depends(get_storage)):
    return ledger.get_all_categories()


# ===== AUCTIONS =====

@app.get("/api/auctions", response_model=List[Auction])
def list_auctions(ledger: Storage = Depends(get_storage), clock=Depends(get_clock)):
    return lifecycle.active_auctions(ledger.list_auctions(), clock())


@app.get("/api/auctions/featured", response_model=List[Auction])
def featured_auctions(ledger: Storage = Depends(get_storage), clock=Depends(get_clock)):
    return lifecycle.active_auctions(ledger.list_auctions(featured=True), clock())


@app.get("/api/auctions/closed", response_model=List[Auction])
def closed_auctions(ledger: Storage = Depends(get_storage), clock=Depends(get_clock)):
    return lifecycle.recently_closed(ledger.list_auctions(), clock())


@app.get("/api/auctions/search", response_model=List[Auction])
def search_auctions(q: str = Query(default=""), ledger: Storage = Depends(get_storage),
                    clock=Depends(get_clock)):
    return lifecycle.active_auctions(ledger.list_auctions(query=q or None), clock())


@app.get("/api/auctions/category/{category_id}", response_model=List[Auction])
def auctions_by_category(category_id: int, ledger: Storage = Depends(get_storage),
                         clock=Depends(get_clock)):
    return lifecycle.active_auctions(ledger.list_auctions(category_id=category_id), clock())


@app.post("/api/auctions/close-expired", response_model=List[Auction])
def close_expired(user: User = Depends(current_user), ledger: Storage = Depends(get_storage),
                  clock=Depends(get_clock)):
    closed = lifecycle.close_expired_auctions(ledger, clock())
    logger.info(f"[Lifecycle] User {user.id} swept {len(closed)} expired auctions")
    return closed


@app.get("/api/auctions/{auction_id}", response_model=Auction)
def get_auction(auction_id: int, ledger: Storage = Depends(get_storage), clock=Depends(get_clock)):
    return lifecycle.with_effective_status(require_auction(auction_id, ledger), clock())


@app.post("/api/auctions", response_model=Auction, status_code=201)
def create_auction(data: AuctionCreate, user: User = Depends(current_user),
                   ledger: Storage = Depends(get_storage)):
    return ledger.create_auction(user.id, data)


@app.post("/api/auctions/{auction_id}/close", response_model=Auction)
def close_auction(auction_id: int, user: User = Depends(current_user),
                  ledger: Storage = Depends(get_storage), clock=Depends(get_clock)):
    auction = require_auction(auction_id, ledger)
    # anyone may settle an auction whose time is up, only the seller may end it early
    if user.id != auction.seller_id and not lifecycle.is_expired(auction, clock()):
        raise Forbidden("Only the seller can close a running auction")
    return lifecycle.close_auction(ledger, auction_id)


# ===== BIDS =====

@app.get("/api/auctions/{auction_id}/bids", response_model=List[Bid])
def list_bids(auction_id: int, ledger: Storage = Depends(get_storage)):
    require_auction(auction_id, ledger)
    return ledger.get_bids_for_auction(auction_id)


@app.post("/api/bids", response_model=Bid, status_code=201)
def place_bid(data: BidCreate, user: User = Depends(current_user),
              engine: BidEngine = Depends(get_engine)):
    return engine.place_bid(user.id, data.auction_id, data.amount)


# ===== USERS =====

@app.post("/api/users", response_model=User, status_code=201)
def register_user(data: UserCreate, ledger: Storage = Depends(get_storage)):
    return ledger.create_user(data)


@app.get("/api/users/{user_id}", response_model=User)
def get_user(user_id: int, ledger: Storage = Depends(get_storage)):
    user = ledger.get_user(user_id)
    if not user:
        raise NotFound("User not found")
    return user


@app.get("/api/users/{user_id}/auctions", response_model=List[Auction])
def auctions_by_seller(user_id: int, ledger: Storage = Depends(get_storage),
                       clock=Depends(get_clock)):
    now = clock()
    return [lifecycle.with_effective_status(a, now) for a in ledger.list_auctions(seller_id=user_id)]


@app.patch("/api/user/profile", response_model=User)
def update_profile(data: UserUpdate, user: User = Depends(current_user),
                   ledger: Storage = Depends(get_storage)):
    updated = ledger.update_user_profile(user.id, data)
    if not updated:
        raise NotFound("User not found")
    return updated


# ===== FAVORITES =====

@app.get("/api/favorites", response_model=List[Favorite])
def list_favorites(user: User = Depends(current_user), ledger: Storage = Depends(get_storage)):
    return ledger.get_favorites_for_user(user.id)


@app.post("/api/favorites", response_model=Favorite, status_code=201)
def add_favorite(data: FavoriteCreate, user: User = Depends(current_user),
                 ledger: Storage = Depends(get_storage)):
    return ledger.create_favorite(user.id, data.auction_id)


@app.delete("/api/favorites/{auction_id}")
def remove_favorite(auction_id: int, user: User = Depends(current_user),
                    ledger: Storage = Depends(get_storage)):
    if not ledger.remove_favorite(user.id, auction_id):
        raise NotFound("Favorite not found")
    return {"message": "Favorite removed successfully"}


# ===== HEALTH =====

@app.get("/health")
def health():
    return {"status": "alive"}


def run():
    uvicorn.run(app, host=config.HOST, port=config.PORT, log_level=config.LOG_LEVEL.lower())


if __name__ == "__main__":
    run()
