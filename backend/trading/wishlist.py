"""Wishlist item management and closed-trade cleanup."""
from datetime import datetime, timedelta, timezone
from uuid import UUID

import structlog

from models.trade import OPEN_STATUSES, TERMINAL_STATUSES, TradeCleanupResponse, TradeStatus
from models.wishlist import WishlistItem
from trading.errors import LoadFailed, NotAuthorized, NotFound, StoreError, WishlistItemLocked
from trading.repositories import TradeRepository, WishlistRepository

logger = structlog.get_logger(__name__)


class WishlistService:
    def __init__(self, wishlists: WishlistRepository, trades: TradeRepository):
        self.wishlists = wishlists
        self.trades = trades

    async def add_item(self, actor_id: str, card_id: str) -> WishlistItem:
        item = await self.wishlists.create(actor_id, card_id, datetime.now(timezone.utc))
        logger.info("wishlist_item_added", user_id=actor_id, card_id=card_id, wishlist_item_id=str(item.id))
        return item

    async def get_item(self, item_id: UUID) -> WishlistItem:
        try:
            item = await self.wishlists.get(item_id)
        except StoreError as exc:
            raise LoadFailed("Could not load wishlist item", wishlist_item_id=item_id) from exc
        if item is None:
            raise NotFound("Wishlist item not found", wishlist_item_id=item_id)
        return item

    async def list_for_user(self, user_id: str) -> list[WishlistItem]:
        try:
            return await self.wishlists.list_for_user(user_id)
        except StoreError as exc:
            raise LoadFailed("Could not load wishlist") from exc

    async def remove_item(self, actor_id: str, item_id: UUID) -> None:
        """
        Delete the actor's own wishlist item.

        Refused while the item is traded or referenced by an open trade;
        closed trades on it go with it.
        """
        item = await self.get_item(item_id)
        if item.user_id != actor_id:
            raise NotAuthorized("Only the owner can remove a wishlist item", wishlist_item_id=item_id)
        if item.traded:
            raise WishlistItemLocked("Traded wishlist items cannot be removed", wishlist_item_id=item_id)

        try:
            trades = await self.trades.list_for_item(item_id)
        except StoreError as exc:
            raise LoadFailed("Could not load trades for wishlist item", wishlist_item_id=item_id) from exc

        open_trade = next((t for t in trades if t.status in OPEN_STATUSES), None)
        if open_trade is not None:
            raise WishlistItemLocked(
                "Wishlist item is part of an open trade",
                trade_id=open_trade.id,
                wishlist_item_id=item_id,
                current_status=open_trade.status,
            )

        if not await self.wishlists.delete(item_id):
            # Lost a race with a completion that flagged it traded
            raise WishlistItemLocked("Wishlist item could not be removed", wishlist_item_id=item_id)
        logger.info("wishlist_item_removed", user_id=actor_id, wishlist_item_id=str(item_id))


async def cleanup_closed_trades(
    wishlists: WishlistRepository,
    trades: TradeRepository,
    retention_days: int,
    dry_run: bool = True,
) -> TradeCleanupResponse:
    """
    Administrative cleanup: drop trades closed longer ago than the retention
    window (measured from closed_at) and retire the traded wishlist items their completions consumed.
    """
    cutoff = datetime.now(timezone.utc) - timedelta(days=retention_days)
    closed = [t for t in await trades.list_closed_before(cutoff) if t.status in TERMINAL_STATUSES]

    consumed = {
        ref
        for t in closed
        if t.status == TradeStatus.COMPLETE
        for ref in t.item_refs
    }

    if dry_run:
        retired = sum(1 for item in await wishlists.get_many(consumed) if item.traded)
        cleaned = len(closed)
    else:
        cleaned = await trades.delete_many([t.id for t in closed])
        retired = await wishlists.delete_traded(consumed)

    logger.info(
        "trade_cleanup",
        retention_days=retention_days,
        dry_run=dry_run,
        trades_cleaned=cleaned,
        wishlist_items_retired=retired,
    )
    return TradeCleanupResponse(
        trades_cleaned=cleaned,
        wishlist_items_retired=retired,
        dry_run=dry_run,
        retention_days=retention_days,
    )
