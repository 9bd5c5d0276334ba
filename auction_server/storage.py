import itertools
import logging
import threading
from abc import ABC, abstractmethod
from contextlib import contextmanager
from datetime import datetime
from typing import Callable, Dict, Iterator, List, Optional

from auction_server import config
from auction_server.errors import DuplicateRecord, LedgerConflict, NotFound
from auction_server.models import (
    Auction,
    AuctionCreate,
    AuctionStatus,
    Bid,
    Category,
    CategoryCreate,
    Favorite,
    User,
    UserCreate,
    UserUpdate,
    utcnow,
)

logger = logging.getLogger(__name__)

DEFAULT_CATEGORIES = [
    CategoryCreate(
        name_en="Jewelry & Watches",
        name_ar="المجوهرات والساعات",
        slug="jewelry-watches",
        image_url="https://images.unsplash.com/photo-1618220048045-10a6dbdf83e0",
    ),
    CategoryCreate(
        name_en="Art & Paintings",
        name_ar="اللوحات والفن",
        slug="art-paintings",
        image_url="https://images.unsplash.com/photo-1592492152545-9695d3f473f4",
    ),
    CategoryCreate(
        name_en="Heritage Items",
        name_ar="المقتنيات التراثية",
        slug="heritage-items",
        image_url="https://images.unsplash.com/photo-1614332287897-cdc485fa562d",
    ),
    CategoryCreate(
        name_en="Luxury Cars",
        name_ar="السيارات الفاخرة",
        slug="luxury-cars",
        image_url="https://images.unsplash.com/photo-1583121274602-3e2820c69888",
    ),
]


class Ledger(ABC):
    """What the bid engine and the lifecycle need from a store.

    Implementations must make commit_bid and set_auction_winner_and_close
    atomic, and auction_lock must serialize callers per auction id.
    """

    @abstractmethod
    def get_auction(self, auction_id: int) -> Optional[Auction]: ...

    @abstractmethod
    def update_auction_on_bid(self, auction_id: int, new_price: int,
                              expected_version: Optional[int] = None) -> Auction: ...

    @abstractmethod
    def create_bid(self, bidder_id: int, auction_id: int, amount: int) -> Bid: ...

    @abstractmethod
    def commit_bid(self, bidder_id: int, auction_id: int, amount: int,
                   expected_version: int) -> Bid: ...

    @abstractmethod
    def get_bids_for_auction(self, auction_id: int) -> List[Bid]: ...

    @abstractmethod
    def set_auction_winner_and_close(self, auction_id: int,
                                     winner_id: Optional[int]) -> Auction: ...

    @abstractmethod
    def auction_lock(self, auction_id: int): ...


class Storage(Ledger):
    """In-memory ledger. Records handed out are copies of what is stored."""

    def __init__(self, clock: Callable[[], datetime] = utcnow, seed: bool = config.SEED_CATEGORIES):
        self.clock = clock
        self.users: Dict[int, User] = {}
        self.categories: Dict[int, Category] = {}
        self.auctions: Dict[int, Auction] = {}
        self.bids: Dict[int, Bid] = {}
        self.favorites: Dict[int, Favorite] = {}

        self._user_ids = itertools.count(1)
        self._category_ids = itertools.count(1)
        self._auction_ids = itertools.count(1)
        self._bid_ids = itertools.count(1)
        self._favorite_ids = itertools.count(1)

        # guards the maps for the span of one read or write
        self._lock = threading.RLock()
        self._auction_locks: Dict[int, threading.Lock] = {}

        if seed:
            for category in DEFAULT_CATEGORIES:
                self.create_category(category)

    @contextmanager
    def auction_lock(self, auction_id: int) -> Iterator[None]:
        with self._lock:
            lock = self._auction_locks.get(auction_id)
        if lock is None:
            raise NotFound("Auction not found")
        with lock:
            yield

    # ===== USERS =====

    def create_user(self, data: UserCreate) -> User:
        with self._lock:
            if self._find_user(lambda u: u.username.lower() == data.username.lower()):
                raise DuplicateRecord("Username already exists")
            if self._find_user(lambda u: u.email.lower() == data.email.lower()):
                raise DuplicateRecord("Email is already in use")
            now = self.clock()
            user = User(id=next(self._user_ids), created_at=now, updated_at=now,
                        **data.model_dump())
            self.users[user.id] = user
            return user.model_copy()

    def get_user(self, user_id: int) -> Optional[User]:
        with self._lock:
            user = self.users.get(user_id)
            return user.model_copy() if user else None

    def get_user_by_username(self, username: str) -> Optional[User]:
        with self._lock:
            user = self._find_user(lambda u: u.username.lower() == username.lower())
            return user.model_copy() if user else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._lock:
            user = self._find_user(lambda u: u.email.lower() == email.lower())
            return user.model_copy() if user else None

    def update_user_profile(self, user_id: int, data: UserUpdate) -> Optional[User]:
        changes = data.model_dump(exclude_unset=True)
        with self._lock:
            user = self.users.get(user_id)
            if not user:
                return None
            email = changes.get("email")
            if email:
                other = self._find_user(lambda u: u.email.lower() == email.lower())
                if other and other.id != user_id:
                    raise DuplicateRecord("Email is already in use")
            updated = User.model_validate({**user.model_dump(), **changes, "updated_at": self.clock()})
            self.users[user_id] = updated
            return updated.model_copy()

    def _find_user(self, predicate) -> Optional[User]:
        return next((u for u in self.users.values() if predicate(u)), None)

    # ===== CATEGORIES =====

    def get_all_categories(self) -> List[Category]:
        with self._lock:
            return [c.model_copy() for c in self.categories.values()]

    def get_category(self, category_id: int) -> Optional[Category]:
        with self._lock:
            category = self.categories.get(category_id)
            return category.model_copy() if category else None

    def get_category_by_slug(self, slug: str) -> Optional[Category]:
        with self._lock:
            category = next((c for c in self.categories.values() if c.slug == slug), None)
            return category.model_copy() if category else None

    def create_category(self, data: CategoryCreate) -> Category:
        with self._lock:
            if any(c.slug == data.slug for c in self.categories.values()):
                raise DuplicateRecord(f"Category slug {data.slug!r} already exists")
            category = Category(id=next(self._category_ids), auction_count=0, **data.model_dump())
            self.categories[category.id] = category
            return category.model_copy()

    # ===== AUCTIONS =====

    def create_auction(self, seller_id: int, data: AuctionCreate) -> Auction:
        with self._lock:
            category = self.categories.get(data.category_id)
            if not category:
                raise NotFound("Category not found")
            now = self.clock()
            auction = Auction(
                id=next(self._auction_ids),
                seller_id=seller_id,
                winner_id=None,
                status=AuctionStatus.ACTIVE,
                bid_count=0,
                created_at=now,
                updated_at=now,
                version=0,
                **data.model_dump(),
            )
            self.auctions[auction.id] = auction
            self._auction_locks[auction.id] = threading.Lock()
            # never decremented, there is no auction removal path
            category.auction_count += 1
            logger.info(f"[Ledger] Created auction {auction.id} in category {category.slug}")
            return auction.model_copy()

    def get_auction(self, auction_id: int) -> Optional[Auction]:
        with self._lock:
            auction = self.auctions.get(auction_id)
            return auction.model_copy() if auction else None

    def list_auctions(self, category_id: Optional[int] = None, seller_id: Optional[int] = None,
                      featured: Optional[bool] = None, query: Optional[str] = None) -> List[Auction]:
        """Auctions matching every given filter, newest first."""
        needle = query.lower() if query else None
        with self._lock:
            found = []
            for auction in self.auctions.values():
                if category_id is not None and auction.category_id != category_id:
                    continue
                if seller_id is not None and auction.seller_id != seller_id:
                    continue
                if featured is not None and auction.featured != featured:
                    continue
                if needle and not any(needle in text.lower() for text in (
                        auction.title, auction.title_ar, auction.description, auction.description_ar)):
                    continue
                found.append(auction.model_copy())
        found.sort(key=lambda a: (a.created_at, a.id), reverse=True)
        return found

    def update_auction_on_bid(self, auction_id: int, new_price: int,
                              expected_version: Optional[int] = None) -> Auction:
        with self._lock:
            auction = self._auction_for_write(auction_id, expected_version)
            auction.current_price = new_price
            auction.bid_count += 1
            auction.updated_at = self.clock()
            auction.version += 1
            return auction.model_copy()

    def set_auction_winner_and_close(self, auction_id: int, winner_id: Optional[int]) -> Auction:
        with self._lock:
            auction = self._auction_for_write(auction_id)
            auction.winner_id = winner_id
            auction.status = AuctionStatus.CLOSED
            auction.updated_at = self.clock()
            auction.version += 1
            return auction.model_copy()

    def _auction_for_write(self, auction_id: int, expected_version: Optional[int] = None) -> Auction:
        auction = self.auctions.get(auction_id)
        if not auction:
            raise NotFound("Auction not found")
        if expected_version is not None and auction.version != expected_version:
            raise LedgerConflict(auction_id, expected_version, auction.version)
        return auction

    # ===== BIDS =====

    def get_bids_for_auction(self, auction_id: int) -> List[Bid]:
        with self._lock:
            found = [b.model_copy() for b in self.bids.values() if b.auction_id == auction_id]
        found.sort(key=lambda b: (b.created_at, b.id), reverse=True)
        return found

    def create_bid(self, bidder_id: int, auction_id: int, amount: int) -> Bid:
        with self._lock:
            if auction_id not in self.auctions:
                raise NotFound("Auction not found")
            bid = Bid(id=next(self._bid_ids), user_id=bidder_id, auction_id=auction_id,
                      amount=amount, created_at=self.clock())
            self.bids[bid.id] = bid
            return bid.model_copy()

    def commit_bid(self, bidder_id: int, auction_id: int, amount: int, expected_version: int) -> Bid:
        """Record the bid and advance the auction as one unit.

        Raises LedgerConflict without writing anything if the auction's
        version is no longer expected_version.
        """
        with self._lock:
            self._auction_for_write(auction_id, expected_version)
            bid = self.create_bid(bidder_id, auction_id, amount)
            self.update_auction_on_bid(auction_id, amount, expected_version)
            return bid

    # ===== FAVORITES =====

    def get_favorites_for_user(self, user_id: int) -> List[Favorite]:
        with self._lock:
            found = [f.model_copy() for f in self.favorites.values() if f.user_id == user_id]
        found.sort(key=lambda f: (f.created_at, f.id), reverse=True)
        return found

    def create_favorite(self, user_id: int, auction_id: int) -> Favorite:
        with self._lock:
            if auction_id not in self.auctions:
                raise NotFound("Auction not found")
            existing = self._find_favorite(user_id, auction_id)
            if existing:
                return existing.model_copy()
            favorite = Favorite(id=next(self._favorite_ids), user_id=user_id,
                                auction_id=auction_id, created_at=self.clock())
            self.favorites[favorite.id] = favorite
            return favorite.model_copy()

    def remove_favorite(self, user_id: int, auction_id: int) -> bool:
        with self._lock:
            favorite = self._find_favorite(user_id, auction_id)
            if not favorite:
                return False
            del self.favorites[favorite.id]
            return True

    def _find_favorite(self, user_id: int, auction_id: int) -> Optional[Favorite]:
        return next((f for f in self.favorites.values()
                     if f.user_id == user_id and f.auction_id == auction_id), None)


storage = Storage()
