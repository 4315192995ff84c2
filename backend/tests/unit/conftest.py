"""
Conftest for unit tests with an in-memory store.

The in-memory repositories apply each call atomically, matching the store
procedures, and yield to the event loop before doing so to let concurrent
callers interleave. All tests in this directory are automatically marked as
unit tests.
"""
import asyncio
import pytest
from fastapi.testclient import TestClient
from datetime import datetime, timedelta, timezone
from typing import Iterable, Optional
from uuid import UUID, uuid4
import sys
from pathlib import Path

# Add parent directory to path to import main
backend_path = Path(__file__).parent.parent.parent
sys.path.insert(0, str(backend_path))

from main import app, get_dispatcher, get_trade_repository, get_wishlist_repository
from models.card import CardBase
from models.trade import OPEN_STATUSES, TERMINAL_STATUSES, Trade, TradeStatus
from models.wishlist import WishlistItem
from trading.eligibility import EligibilityResolver
from trading.errors import DuplicateOffer, IntegrityViolation, StoreError
from trading.negotiation import NegotiationService
from trading.notifications import NotificationDispatcher


def pytest_collection_modifyitems(items):
    """Automatically mark all tests in this directory as unit tests."""
    for item in items:
        if "unit" in str(item.fspath):
            item.add_marker(pytest.mark.unit)


BASE_TIME = datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)


# ============== In-memory store ==============

class InMemoryStore:
    """Tables plus failure switches used to simulate store outages."""

    def __init__(self):
        self.usernames: dict[str, str] = {}
        self.cards: dict[str, CardBase] = {}
        self.wishlist: dict[UUID, WishlistItem] = {}
        self.trades: dict[UUID, Trade] = {}

        self.fail_reads = False
        self.fail_writes = False
        # complete() leaves traded flags untouched this many times
        self.drop_flag_updates = 0
        # mark_traded() raises this many times
        self.fail_mark_traded = 0
        self.mark_traded_calls = 0

    # ----- seeding -----

    def add_user(self, user_id: str, username: str) -> str:
        self.usernames[user_id] = username
        return user_id

    def add_card(
        self,
        card_id: str,
        rarity: str,
        pack: str = "Genetic Apex",
        card_number: str = "001",
        tradeable: bool = True,
    ) -> CardBase:
        card = CardBase(
            id=card_id,
            pack=pack,
            card_number=card_number,
            card_name=f"Card {card_id}",
            card_rarity=rarity,
            tradeable=tradeable,
        )
        self.cards[card_id] = card
        return card

    def add_item(self, user_id: str, card_id: str, traded: bool = False, minutes: int = 0) -> WishlistItem:
        item = WishlistItem(
            id=uuid4(),
            user_id=user_id,
            card_id=card_id,
            traded=traded,
            created_at=BASE_TIME + timedelta(minutes=minutes),
        )
        self.wishlist[item.id] = item
        return self.item(item.id)

    def add_trade(
        self,
        offer_ref: UUID,
        offered_by: str,
        status: TradeStatus = TradeStatus.OFFERED,
        request_ref: Optional[UUID] = None,
        offered_at: Optional[datetime] = None,
        requested_at: Optional[datetime] = None,
        closed_at: Optional[datetime] = None,
    ) -> Trade:
        if closed_at is None and status in TERMINAL_STATUSES:
            closed_at = (offered_at or BASE_TIME) + timedelta(days=1)
        trade = Trade(
            id=uuid4(),
            offer_ref=offer_ref,
            request_ref=request_ref,
            status=status,
            offered_by=offered_by,
            offered_at=offered_at or BASE_TIME,
            requested_at=requested_at or (BASE_TIME + timedelta(hours=1) if request_ref else None),
            closed_at=closed_at,
        )
        self.trades[trade.id] = trade
        return trade.model_copy()

    # ----- snapshots -----

    def item(self, item_id: UUID) -> WishlistItem:
        stored = self.wishlist[item_id]
        return stored.model_copy(update={
            "card": self.cards.get(stored.card_id),
            "username": self.usernames.get(stored.user_id),
        })

    def trade(self, trade_id: UUID) -> Trade:
        return self.trades[trade_id].model_copy()

    def committed_holders(self, item_id: UUID) -> list[Trade]:
        return [
            t for t in self.trades.values()
            if t.is_committed and item_id in t.item_refs
        ]

    async def read(self):
        await asyncio.sleep(0)
        if self.fail_reads:
            raise StoreError("Store unreachable")

    async def write(self):
        await asyncio.sleep(0)
        if self.fail_writes:
            raise StoreError("Store unreachable")


class InMemoryWishlistRepository:
    def __init__(self, store: InMemoryStore):
        self.store = store

    async def get(self, item_id: UUID) -> Optional[WishlistItem]:
        await self.store.read()
        if item_id not in self.store.wishlist:
            return None
        return self.store.item(item_id)

    async def get_many(self, item_ids: Iterable[UUID]) -> list[WishlistItem]:
        await self.store.read()
        return [self.store.item(i) for i in item_ids if i in self.store.wishlist]

    async def list_for_user(self, user_id: str) -> list[WishlistItem]:
        await self.store.read()
        items = [self.store.item(i) for i, w in self.store.wishlist.items() if w.user_id == user_id]
        return sorted(items, key=lambda w: w.created_at, reverse=True)

    async def list_untraded_for_users(self, user_ids: Iterable[str]) -> list[WishlistItem]:
        await self.store.read()
        users = set(user_ids)
        items = [
            self.store.item(i) for i, w in self.store.wishlist.items()
            if w.user_id in users and not w.traded
        ]
        return sorted(items, key=lambda w: w.created_at)

    async def create(self, user_id: str, card_id: str, created_at: datetime) -> WishlistItem:
        await self.store.write()
        item = WishlistItem(id=uuid4(), user_id=user_id, card_id=card_id, created_at=created_at)
        self.store.wishlist[item.id] = item
        return self.store.item(item.id)

    async def delete(self, item_id: UUID) -> bool:
        await self.store.write()
        item = self.store.wishlist.get(item_id)
        if item is None or item.traded:
            return False
        del self.store.wishlist[item_id]
        return True

    async def mark_traded(self, item_ids: Iterable[UUID]) -> list[WishlistItem]:
        await self.store.write()
        self.store.mark_traded_calls += 1
        if self.store.fail_mark_traded > 0:
            self.store.fail_mark_traded -= 1
            raise StoreError("Store unreachable")
        marked = []
        for item_id in item_ids:
            if item_id in self.store.wishlist:
                self.store.wishlist[item_id].traded = True
                marked.append(self.store.item(item_id))
        return marked

    async def delete_traded(self, item_ids: Iterable[UUID]) -> int:
        await self.store.write()
        count = 0
        for item_id in list(item_ids):
            item = self.store.wishlist.get(item_id)
            if item is not None and item.traded:
                del self.store.wishlist[item_id]
                count += 1
        return count


class InMemoryTradeRepository:
    def __init__(self, store: InMemoryStore):
        self.store = store

    async def get(self, trade_id: UUID) -> Optional[Trade]:
        await self.store.read()
        if trade_id not in self.store.trades:
            return None
        return self.store.trade(trade_id)

    async def create(self, offer_ref: UUID, offered_by: str, offered_at: datetime) -> Optional[Trade]:
        await self.store.write()
        target = self.store.wishlist.get(offer_ref)
        if target is None or target.traded:
            return None
        for t in self.store.trades.values():
            if t.offer_ref == offer_ref and t.offered_by == offered_by and t.status in OPEN_STATUSES:
                raise DuplicateOffer("An open offer against this wishlist item already exists")
        trade = Trade(
            id=uuid4(),
            offer_ref=offer_ref,
            status=TradeStatus.OFFERED,
            offered_by=offered_by,
            offered_at=offered_at,
        )
        self.store.trades[trade.id] = trade
        return trade.model_copy()

    async def find_open_offer(self, offer_ref: UUID, offered_by: str) -> Optional[Trade]:
        await self.store.read()
        for t in self.store.trades.values():
            if t.offer_ref == offer_ref and t.offered_by == offered_by and t.status in OPEN_STATUSES:
                return t.model_copy()
        return None

    async def list_for_item(self, item_id: UUID) -> list[Trade]:
        await self.store.read()
        trades = [t.model_copy() for t in self.store.trades.values() if item_id in t.item_refs]
        return sorted(trades, key=lambda t: t.offered_at, reverse=True)

    async def list_for_user(self, user_id, item_ids, status=None) -> list[Trade]:
        await self.store.read()
        ids = set(item_ids)
        trades = [
            t.model_copy() for t in self.store.trades.values()
            if (t.offered_by == user_id or ids.intersection(t.item_refs))
            and (status is None or t.status == status)
        ]
        return sorted(trades, key=lambda t: t.offered_at, reverse=True)

    async def list_committed_for_items(self, item_ids: Iterable[UUID]) -> list[Trade]:
        await self.store.read()
        ids = set(item_ids)
        return [
            t.model_copy() for t in self.store.trades.values()
            if t.is_committed and ids.intersection(t.item_refs)
        ]

    async def transition(self, trade_id: UUID, expected: TradeStatus, changes: dict) -> Optional[Trade]:
        await self.store.write()
        trade = self.store.trades.get(trade_id)
        if trade is None or trade.status != expected:
            return None
        self.store.trades[trade_id] = trade.model_copy(update=changes)
        return self.store.trade(trade_id)

    async def attach_counter(self, trade_id: UUID, request_ref: UUID, requested_at: datetime) -> Optional[Trade]:
        await self.store.write()
        trade = self.store.trades.get(trade_id)
        if trade is None:
            return None
        for ref in (trade.offer_ref, request_ref):
            item = self.store.wishlist.get(ref)
            if item is None or item.traded:
                return None
            if any(t.id != trade_id for t in self.store.committed_holders(ref)):
                return None
        if trade.status != TradeStatus.OFFERED or trade.request_ref is not None:
            return None
        self.store.trades[trade_id] = trade.model_copy(update={
            "request_ref": request_ref,
            "requested_at": requested_at,
            "status": TradeStatus.NEGOTIATING,
        })
        return self.store.trade(trade_id)

    async def complete(self, trade_id: UUID) -> Optional[Trade]:
        await self.store.write()
        trade = self.store.trades.get(trade_id)
        if trade is None or trade.status != TradeStatus.ACCEPTED:
            return None
        refs = trade.item_refs
        if any(self.store.wishlist[ref].traded for ref in refs):
            raise IntegrityViolation("A wishlist item in this trade was already traded elsewhere")

        closed_at = datetime.now(timezone.utc)
        self.store.trades[trade_id] = trade.model_copy(update={
            "status": TradeStatus.COMPLETE,
            "closed_at": closed_at,
        })
        if self.store.drop_flag_updates > 0:
            self.store.drop_flag_updates -= 1
        else:
            for ref in refs:
                self.store.wishlist[ref].traded = True

        for other in list(self.store.trades.values()):
            if other.id != trade_id and other.status in OPEN_STATUSES and set(refs) & set(other.item_refs):
                self.store.trades[other.id] = other.model_copy(update={
                    "status": TradeStatus.REJECTED,
                    "closed_at": closed_at,
                })
        return self.store.trade(trade_id)

    async def list_closed_before(self, cutoff: datetime) -> list[Trade]:
        await self.store.read()
        return [
            t.model_copy() for t in self.store.trades.values()
            if t.status in (TradeStatus.COMPLETE, TradeStatus.REJECTED)
            and t.closed_at is not None and t.closed_at < cutoff
        ]

    async def delete_many(self, trade_ids: Iterable[UUID]) -> int:
        await self.store.write()
        count = 0
        for trade_id in list(trade_ids):
            if self.store.trades.pop(trade_id, None) is not None:
                count += 1
        return count


class RecordingNotifier:
    """Collects notifications; can be told to fail."""

    def __init__(self):
        self.sent: list[tuple] = []
        self.fail = False

    async def notify(self, user_id, kind, fields):
        if self.fail:
            raise RuntimeError("notification sink down")
        self.sent.append((user_id, kind, fields))

    def kinds_for(self, user_id):
        return [kind for uid, kind, _ in self.sent if uid == user_id]


# ============== Core fixtures ==============

@pytest.fixture
def store():
    return InMemoryStore()


@pytest.fixture
def wishlist_repo(store):
    return InMemoryWishlistRepository(store)


@pytest.fixture
def trade_repo(store):
    return InMemoryTradeRepository(store)


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def dispatcher(notifier):
    return NotificationDispatcher(notifier, timeout=1)


@pytest.fixture
def resolver(wishlist_repo, trade_repo):
    return EligibilityResolver(wishlist_repo, trade_repo)


@pytest.fixture
def service(wishlist_repo, trade_repo, resolver, dispatcher):
    return NegotiationService(
        wishlist_repo,
        trade_repo,
        resolver,
        dispatcher,
        flag_retry_attempts=3,
        flag_retry_backoff=0,
    )


@pytest.fixture
def client(wishlist_repo, trade_repo, dispatcher):
    """Create a test client for the FastAPI app backed by the in-memory store."""
    app.dependency_overrides[get_wishlist_repository] = lambda: wishlist_repo
    app.dependency_overrides[get_trade_repository] = lambda: trade_repo
    app.dependency_overrides[get_dispatcher] = lambda: dispatcher
    yield TestClient(app)
    app.dependency_overrides.clear()


# ============== Trading scenario fixtures ==============

@pytest.fixture
def alice(store):
    """Offering user."""
    return store.add_user("user_alice", "alice")


@pytest.fixture
def bob(store):
    """Owner of the wishlist item being offered against."""
    return store.add_user("user_bob", "bob")


@pytest.fixture
def carol(store):
    """A second offering user."""
    return store.add_user("user_carol", "carol")


@pytest.fixture
def cards(store):
    return {
        "wanted": store.add_card("A1-010", "Rare", card_number="010"),
        "rare_1": store.add_card("A1-003", "Rare", card_number="003"),
        "rare_2": store.add_card("A1-001", "Rare", card_number="001"),
        "rare_other_pack": store.add_card("P-A-002", "Rare", pack="Promo A", card_number="002"),
        "rare_untradeable": store.add_card("A1-020", "Rare", card_number="020", tradeable=False),
        "common": store.add_card("A1-050", "Common", card_number="050"),
    }


@pytest.fixture
def wanted_item(store, bob, cards):
    """Bob's wishlist item W (Rare)."""
    return store.add_item(bob, "A1-010")


@pytest.fixture
def alice_items(store, alice, cards):
    """Alice's wishlist items: two Rares, a Common and an untradeable Rare."""
    return {
        "rare_1": store.add_item(alice, "A1-003", minutes=1),
        "rare_2": store.add_item(alice, "A1-001", minutes=2),
        "common": store.add_item(alice, "A1-050", minutes=3),
        "rare_untradeable": store.add_item(alice, "A1-020", minutes=4),
    }


@pytest.fixture
def offered_trade(store, alice, wanted_item):
    """Alice has offered against Bob's wishlist item."""
    return store.add_trade(wanted_item.id, alice)


@pytest.fixture
def negotiating_trade(store, alice, wanted_item, alice_items):
    """Bob has countered Alice's offer with her first Rare."""
    return store.add_trade(
        wanted_item.id,
        alice,
        status=TradeStatus.NEGOTIATING,
        request_ref=alice_items["rare_1"].id,
    )


@pytest.fixture
def accepted_trade(store, alice, wanted_item, alice_items):
    """Alice accepted Bob's counter-offer."""
    return store.add_trade(
        wanted_item.id,
        alice,
        status=TradeStatus.ACCEPTED,
        request_ref=alice_items["rare_1"].id,
    )
