from contextlib import asynccontextmanager
from fastapi import Depends, FastAPI, Header, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
import logging
import os
import sys
import structlog
from supabase import acreate_client, AsyncClient
from uuid import UUID
from typing import Optional

from models.trade import (
    EligibilityResponse,
    Trade,
    TradeCleanupResponse,
    TradeCounterOffer,
    TradeCreate,
    TradeListResponse,
    TradeStatus,
    TradeWithItemsResponse,
)
from models.wishlist import WishlistItem, WishlistItemCreate, WishlistListResponse
from trading.eligibility import EligibilityResolver
from trading.errors import (
    AlreadyOwnItem,
    DuplicateOffer,
    IntegrityViolation,
    InvalidTransition,
    ItemAlreadyTraded,
    LoadFailed,
    NotAuthorized,
    NotEligible,
    NotFound,
    ResolutionFailed,
    StoreError,
    TradingError,
    WishlistItemLocked,
)
from trading.negotiation import NegotiationService
from trading.notifications import NotificationDispatcher, SupabaseNotifier
from trading.repositories import (
    SupabaseTradeRepository,
    SupabaseWishlistRepository,
    TradeRepository,
    WishlistRepository,
)
from trading.wishlist import WishlistService, cleanup_closed_trades

logger = structlog.get_logger(__name__)

# Supabase client and notification dispatcher, created on startup
supabase: Optional[AsyncClient] = None
dispatcher: Optional[NotificationDispatcher] = None


def configure_logging(log_level: str = "INFO", log_format: str = "json") -> None:
    """Structured logging; JSON by default, console rendering for local runs."""
    level = getattr(logging, log_level.upper(), logging.INFO)

    # stdlib logging for third-party libraries
    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=level)

    renderer = (
        structlog.dev.ConsoleRenderer()
        if log_format == "console"
        else structlog.processors.JSONRenderer()
    )
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    global supabase, dispatcher

    configure_logging(os.getenv("LOG_LEVEL", "INFO"), os.getenv("LOG_FORMAT", "json"))
    supabase = await acreate_client(os.getenv("SUPABASE_URL"), os.getenv("SUPABASE_KEY"))
    dispatcher = NotificationDispatcher(
        SupabaseNotifier(supabase),
        timeout=float(os.getenv("NOTIFY_TIMEOUT_SECONDS", "5")),
    )
    logger.info("app_started")

    yield

    await dispatcher.drain()
    logger.info("app_stopped")


app = FastAPI(lifespan=lifespan)

# CORS for the web front end
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # Configure properly for production
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ============== Error Mapping ==============

ERROR_STATUS_CODES = {
    NotFound: 404,
    AlreadyOwnItem: 400,
    NotAuthorized: 403,
    InvalidTransition: 409,
    NotEligible: 409,
    DuplicateOffer: 409,
    ItemAlreadyTraded: 409,
    WishlistItemLocked: 409,
    IntegrityViolation: 409,
    ResolutionFailed: 503,
    LoadFailed: 503,
    StoreError: 503,
}


@app.exception_handler(TradingError)
async def trading_error_handler(request: Request, exc: TradingError):
    """Return the error kind and current state so callers can reconcile."""
    status_code = ERROR_STATUS_CODES.get(type(exc), 500)
    return JSONResponse(
        status_code=status_code,
        content={"detail": exc.to_detail().model_dump(mode="json")},
    )


# ============== Dependencies ==============

def get_supabase() -> AsyncClient:
    if supabase is None:
        raise StoreError("Store client is not initialised")
    return supabase


def get_wishlist_repository(client: AsyncClient = Depends(get_supabase)) -> WishlistRepository:
    return SupabaseWishlistRepository(client)


def get_trade_repository(client: AsyncClient = Depends(get_supabase)) -> TradeRepository:
    return SupabaseTradeRepository(client)


def get_dispatcher() -> NotificationDispatcher:
    if dispatcher is None:
        raise StoreError("Notification dispatcher is not initialised")
    return dispatcher


def get_resolver(
    wishlists: WishlistRepository = Depends(get_wishlist_repository),
    trades: TradeRepository = Depends(get_trade_repository),
) -> EligibilityResolver:
    return EligibilityResolver(wishlists, trades)


def get_negotiation_service(
    wishlists: WishlistRepository = Depends(get_wishlist_repository),
    trades: TradeRepository = Depends(get_trade_repository),
    resolver: EligibilityResolver = Depends(get_resolver),
    notifications: NotificationDispatcher = Depends(get_dispatcher),
) -> NegotiationService:
    return NegotiationService(wishlists, trades, resolver, notifications)


def get_wishlist_service(
    wishlists: WishlistRepository = Depends(get_wishlist_repository),
    trades: TradeRepository = Depends(get_trade_repository),
) -> WishlistService:
    return WishlistService(wishlists, trades)


def get_actor_id(x_user_id: str = Header(description="Authenticated user id from the identity provider")) -> str:
    return x_user_id


@app.get("/")
def read_root():
    return {"message": "Card Trading API"}

@app.get("/health")
def health_check():
    return {"status": "healthy"}


# ============== Wishlist Endpoints ==============

@app.post("/wishlist", response_model=WishlistItem, status_code=201)
async def add_wishlist_item(
    item: WishlistItemCreate,
    actor_id: str = Depends(get_actor_id),
    service: WishlistService = Depends(get_wishlist_service),
):
    """Mark a card as wanted by the acting user."""
    return await service.add_item(actor_id, item.card_id)


@app.get("/wishlist/{wishlist_item_id}", response_model=WishlistItem)
async def get_wishlist_item(
    wishlist_item_id: UUID,
    service: WishlistService = Depends(get_wishlist_service),
):
    """Get a specific wishlist item by ID."""
    return await service.get_item(wishlist_item_id)


@app.get("/users/{user_id}/wishlist", response_model=WishlistListResponse)
async def get_user_wishlist(
    user_id: str,
    service: WishlistService = Depends(get_wishlist_service),
):
    """Get all wishlist items for a specific user."""
    items = await service.list_for_user(user_id)
    return {"items": items, "total": len(items)}


@app.delete("/wishlist/{wishlist_item_id}", status_code=204)
async def remove_wishlist_item(
    wishlist_item_id: UUID,
    actor_id: str = Depends(get_actor_id),
    service: WishlistService = Depends(get_wishlist_service),
):
    """Remove a wishlist item; refused while traded or in an open trade."""
    await service.remove_item(actor_id, wishlist_item_id)
    return None


# ============== Eligibility Endpoints ==============

@app.get("/wishlist/{wishlist_item_id}/eligible-cards", response_model=EligibilityResponse)
async def list_eligible_cards(
    wishlist_item_id: UUID,
    resolver: EligibilityResolver = Depends(get_resolver),
):
    """Cards the offering users could send back for this wishlist item."""
    return await resolver.resolve(wishlist_item_id)


# ============== Trade Endpoints ==============

@app.post("/trades", response_model=Trade, status_code=201)
async def create_offer(
    offer: TradeCreate,
    actor_id: str = Depends(get_actor_id),
    service: NegotiationService = Depends(get_negotiation_service),
):
    """Offer against another user's wishlist item."""
    return await service.create_offer(actor_id, offer.wishlist_item_id)


@app.get("/trades/{trade_id}", response_model=TradeWithItemsResponse)
async def get_trade(
    trade_id: UUID,
    service: NegotiationService = Depends(get_negotiation_service),
):
    """Get a trade with both wishlist items and who offered / countered."""
    return await service.get_trade(trade_id)


@app.post("/trades/{trade_id}/counter", response_model=Trade)
async def submit_counter_offer(
    trade_id: UUID,
    counter: TradeCounterOffer,
    actor_id: str = Depends(get_actor_id),
    service: NegotiationService = Depends(get_negotiation_service),
):
    """Choose the offerer's wishlist item to send back."""
    return await service.submit_counter_offer(actor_id, trade_id, counter.wishlist_item_id)


@app.post("/trades/{trade_id}/accept", response_model=Trade)
async def accept_counter_offer(
    trade_id: UUID,
    actor_id: str = Depends(get_actor_id),
    service: NegotiationService = Depends(get_negotiation_service),
):
    """Original offerer accepts the counter-offer."""
    return await service.accept_counter_offer(actor_id, trade_id)


@app.post("/trades/{trade_id}/reject", response_model=Trade)
async def reject_counter_offer(
    trade_id: UUID,
    actor_id: str = Depends(get_actor_id),
    service: NegotiationService = Depends(get_negotiation_service),
):
    """Original offerer rejects the counter-offer; the trade returns to offered."""
    return await service.reject_counter_offer(actor_id, trade_id)


@app.post("/trades/{trade_id}/complete", response_model=Trade)
async def complete_trade(
    trade_id: UUID,
    actor_id: str = Depends(get_actor_id),
    service: NegotiationService = Depends(get_negotiation_service),
):
    """Either participant confirms the exchange happened. Safe to repeat."""
    return await service.complete_trade(actor_id, trade_id)


@app.get("/wishlist/{wishlist_item_id}/trades", response_model=TradeListResponse)
async def get_wishlist_item_trades(
    wishlist_item_id: UUID,
    service: NegotiationService = Depends(get_negotiation_service),
):
    """All trades referencing a wishlist item on either side."""
    trades = await service.list_trades_for_item(wishlist_item_id)
    return {"trades": trades, "total": len(trades)}


@app.get("/users/{user_id}/trades", response_model=TradeListResponse)
async def get_user_trades(
    user_id: str,
    status: Optional[TradeStatus] = Query(None),
    service: NegotiationService = Depends(get_negotiation_service),
):
    """Trades a user offered or whose wishlist items are involved."""
    trades = await service.list_trades_for_user(user_id, status)
    return {"trades": trades, "total": len(trades)}


# ============== Admin Endpoints ==============

@app.post("/admin/trades/cleanup", response_model=TradeCleanupResponse)
async def cleanup_trades(
    retention_days: int = Query(30, ge=0),
    dry_run: bool = Query(True),
    wishlists: WishlistRepository = Depends(get_wishlist_repository),
    trades: TradeRepository = Depends(get_trade_repository),
):
    """Remove trades closed longer ago than the retention window and retire their traded wishlist items."""
    return await cleanup_closed_trades(wishlists, trades, retention_days, dry_run)
