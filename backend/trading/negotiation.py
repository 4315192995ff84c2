"""
Negotiation state machine for single-row trades.

    OFFERED -> NEGOTIATING -> ACCEPTED -> COMPLETE
                    |
                    +-> OFFERED   (counter-offer rejected, request_ref cleared)

Every transition is validated against the trade's current state and then
applied as a conditional update on the expected status, so two conflicting
callers produce exactly one success. The actor id is always an explicit
argument; nothing here reads session state.
"""
import asyncio
from datetime import datetime, timezone
from enum import Enum
from typing import Optional
from uuid import UUID

import structlog

from models.trade import (
    NotificationKind,
    Trade,
    TradeParties,
    TradeStatus,
    TradeWithItemsResponse,
)
from models.wishlist import WishlistItem
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
    StoreError,
    TradingError,
)
from trading.notifications import NotificationDispatcher
from trading.repositories import TradeRepository, WishlistRepository

logger = structlog.get_logger(__name__)

FLAG_RETRY_ATTEMPTS = 3
FLAG_RETRY_BACKOFF_SECONDS = 0.2


class TradeAction(str, Enum):
    """Caller-driven actions on an existing trade."""
    COUNTER = "counter"
    ACCEPT = "accept"
    REJECT = "reject"
    COMPLETE = "complete"


# Every reachable (status, action) pair. Anything else is an invalid transition.
TRANSITIONS: dict[tuple[TradeStatus, TradeAction], TradeStatus] = {
    (TradeStatus.OFFERED, TradeAction.COUNTER): TradeStatus.NEGOTIATING,
    (TradeStatus.NEGOTIATING, TradeAction.ACCEPT): TradeStatus.ACCEPTED,
    (TradeStatus.NEGOTIATING, TradeAction.REJECT): TradeStatus.OFFERED,
    (TradeStatus.ACCEPTED, TradeAction.COMPLETE): TradeStatus.COMPLETE,
}


def next_status(trade: Trade, action: TradeAction) -> TradeStatus:
    """Target status for an action, or InvalidTransition."""
    target = TRANSITIONS.get((trade.status, action))
    if target is None:
        raise InvalidTransition(
            f"Cannot {action.value} a trade that is {trade.status.value}",
            trade_id=trade.id,
            current_status=trade.status,
        )
    return target


def resolve_parties(trade: Trade, offer_owner_id: str) -> TradeParties:
    """
    Work out who made the original offer and who countered.

    The side with the earlier stored timestamp (offered_at vs requested_at)
    is the original offer side. This is for display; authorization uses the
    stored offered_by, which clock skew between the two writes cannot flip.
    """
    if trade.request_ref is None or trade.requested_at is None:
        return TradeParties(original_offerer_id=trade.offered_by)

    if trade.offered_at <= trade.requested_at:
        return TradeParties(original_offerer_id=trade.offered_by, counter_offerer_id=offer_owner_id)
    return TradeParties(original_offerer_id=offer_owner_id, counter_offerer_id=trade.offered_by)


def _now() -> datetime:
    return datetime.now(timezone.utc)


class NegotiationService:
    """Validates and applies trade transitions, then notifies the counterparty."""

    def __init__(
        self,
        wishlists: WishlistRepository,
        trades: TradeRepository,
        resolver: EligibilityResolver,
        dispatcher: NotificationDispatcher,
        flag_retry_attempts: int = FLAG_RETRY_ATTEMPTS,
        flag_retry_backoff: float = FLAG_RETRY_BACKOFF_SECONDS,
    ):
        self.wishlists = wishlists
        self.trades = trades
        self.resolver = resolver
        self.dispatcher = dispatcher
        self.flag_retry_attempts = flag_retry_attempts
        self.flag_retry_backoff = flag_retry_backoff

    # ============== Transitions ==============

    async def create_offer(self, actor_id: str, target_item_id: UUID) -> Trade:
        """Offer against another user's wishlist item (-> OFFERED)."""
        log = logger.bind(actor_id=actor_id, wishlist_item_id=str(target_item_id))
        target = await self._load_item(target_item_id)

        try:
            if target.user_id == actor_id:
                raise AlreadyOwnItem("Cannot offer on your own wishlist item", wishlist_item_id=target.id)
            if target.traded:
                raise ItemAlreadyTraded("Wishlist item has already been traded", wishlist_item_id=target.id)

            existing = await self._read(self.trades.find_open_offer(target.id, actor_id))
            if existing is not None:
                raise DuplicateOffer(
                    "You already have an open offer on this wishlist item",
                    trade_id=existing.id,
                    wishlist_item_id=target.id,
                    current_status=existing.status,
                )

            trade = await self.trades.create(target.id, actor_id, _now())
            if trade is None:
                # Traded (or removed) after the read above
                current = await self._load_item(target_item_id)
                raise ItemAlreadyTraded("Wishlist item has already been traded", wishlist_item_id=current.id)
        except TradingError as exc:
            log.info("offer_rejected", error=exc.kind)
            raise

        log.info("offer_created", trade_id=str(trade.id))
        self.dispatcher.dispatch(
            target.user_id,
            NotificationKind.OFFER_RECEIVED,
            trade_id=trade.id,
            actor_id=actor_id,
            card_name=self._card_name(target),
        )
        return trade

    async def submit_counter_offer(self, actor_id: str, trade_id: UUID, chosen_item_id: UUID) -> Trade:
        """Attach the offerer's wishlist item the recipient will send back (OFFERED -> NEGOTIATING)."""
        log = logger.bind(actor_id=actor_id, trade_id=str(trade_id), chosen_item_id=str(chosen_item_id))
        trade = await self._load_trade(trade_id)
        target = await self._load_item(trade.offer_ref)

        try:
            if actor_id != target.user_id:
                raise NotAuthorized(
                    "Only the owner of the wishlist item can choose a counter-offer",
                    trade_id=trade.id,
                    current_status=trade.status,
                )
            next_status(trade, TradeAction.COUNTER)
            if trade.request_ref is not None:
                raise InvalidTransition(
                    "Trade already has a counter-offer attached",
                    trade_id=trade.id,
                    current_status=trade.status,
                )

            # Never trust the client's view of eligibility
            card = await self.resolver.check_counter(trade, chosen_item_id)

            updated = await self.trades.attach_counter(trade.id, chosen_item_id, _now())
            if updated is None:
                current = await self._load_trade(trade_id)
                if current.status != TradeStatus.OFFERED or current.request_ref is not None:
                    raise InvalidTransition(
                        "Trade changed before the counter-offer was applied",
                        trade_id=current.id,
                        current_status=current.status,
                    )
                raise NotEligible(
                    "Selected card was committed to another trade",
                    trade_id=current.id,
                    wishlist_item_id=chosen_item_id,
                    current_status=current.status,
                )
        except TradingError as exc:
            log.info("counter_offer_rejected", error=exc.kind)
            raise

        log.info("counter_offer_submitted", status=updated.status.value)
        self.dispatcher.dispatch(
            trade.offered_by,
            NotificationKind.COUNTEROFFER_RECEIVED,
            trade_id=trade.id,
            actor_id=actor_id,
            actor_username=target.username,
            card_name=card.card_name,
        )
        return updated

    async def accept_counter_offer(self, actor_id: str, trade_id: UUID) -> Trade:
        """The original offerer accepts the counter-offer (NEGOTIATING -> ACCEPTED)."""
        trade, target = await self._decide(actor_id, trade_id, TradeAction.ACCEPT, {})
        self.dispatcher.dispatch(
            target.user_id,
            NotificationKind.TRADE_ACCEPTED,
            trade_id=trade.id,
            actor_id=actor_id,
            card_name=self._card_name(target),
        )
        return trade

    async def reject_counter_offer(self, actor_id: str, trade_id: UUID) -> Trade:
        """The original offerer rejects the counter-offer (NEGOTIATING -> OFFERED)."""
        trade, target = await self._decide(
            actor_id,
            trade_id,
            TradeAction.REJECT,
            {"request_ref": None, "requested_at": None},
        )
        self.dispatcher.dispatch(
            target.user_id,
            NotificationKind.OFFER_REJECTED,
            trade_id=trade.id,
            actor_id=actor_id,
            card_name=self._card_name(target),
        )
        return trade

    async def complete_trade(self, actor_id: str, trade_id: UUID) -> Trade:
        """
        Either party confirms the hand-off happened (ACCEPTED -> COMPLETE).

        Idempotent: completing an already COMPLETE trade returns it unchanged.
        The store applies the status, both traded flags and the closing of
        every other open trade on either item in one transaction; the flags
        are then verified and re-applied if a store lost them.
        """
        log = logger.bind(actor_id=actor_id, trade_id=str(trade_id))
        trade = await self._load_trade(trade_id)
        target = await self._load_item(trade.offer_ref)

        try:
            if actor_id not in (trade.offered_by, target.user_id):
                raise NotAuthorized(
                    "Only the trade's participants can complete it",
                    trade_id=trade.id,
                    current_status=trade.status,
                )

            if trade.status == TradeStatus.COMPLETE:
                await self._ensure_traded(trade)
                log.info("trade_already_complete")
                return trade

            next_status(trade, TradeAction.COMPLETE)

            items = await self._read(self.wishlists.get_many(trade.item_refs))
            if len(items) != len(trade.item_refs):
                raise IntegrityViolation(
                    "A wishlist item referenced by this trade no longer exists",
                    trade_id=trade.id,
                    current_status=trade.status,
                )
            if any(item.traded for item in items):
                concurrent = await self._completed_concurrently(trade_id)
                if concurrent is not None:
                    return concurrent
                raise IntegrityViolation(
                    "A wishlist item in this trade was already traded elsewhere",
                    trade_id=trade.id,
                    current_status=trade.status,
                )

            try:
                updated = await self.trades.complete(trade.id)
            except IntegrityViolation:
                concurrent = await self._completed_concurrently(trade_id)
                if concurrent is not None:
                    return concurrent
                raise

            if updated is None:
                concurrent = await self._completed_concurrently(trade_id)
                if concurrent is not None:
                    return concurrent
                current = await self._load_trade(trade_id)
                raise InvalidTransition(
                    "Trade changed before it could be completed",
                    trade_id=current.id,
                    current_status=current.status,
                )
        except TradingError as exc:
            log.info("complete_rejected", error=exc.kind)
            raise

        await self._ensure_traded(updated)
        log.info("trade_completed")
        return updated

    # ============== Reads ==============

    async def get_trade(self, trade_id: UUID) -> TradeWithItemsResponse:
        """Trade with both wishlist items and the resolved parties."""
        trade = await self._load_trade(trade_id)
        items = {item.id: item for item in await self._read(self.wishlists.get_many(trade.item_refs))}
        offer = items.get(trade.offer_ref)
        request = items.get(trade.request_ref) if trade.request_ref else None

        parties = resolve_parties(trade, offer.user_id) if offer is not None else None
        return TradeWithItemsResponse(
            **trade.model_dump(),
            offer=offer,
            request=request,
            parties=parties,
        )

    async def list_trades_for_item(self, item_id: UUID) -> list[Trade]:
        await self._load_item(item_id)
        return await self._read(self.trades.list_for_item(item_id))

    async def list_trades_for_user(self, user_id: str, status: Optional[TradeStatus] = None) -> list[Trade]:
        items = await self._read(self.wishlists.list_for_user(user_id))
        return await self._read(self.trades.list_for_user(user_id, [item.id for item in items], status))

    # ============== Internals ==============

    async def _decide(
        self, actor_id: str, trade_id: UUID, action: TradeAction, changes: dict
    ) -> tuple[Trade, WishlistItem]:
        """Shared path for the original offerer's accept / reject decision."""
        log = logger.bind(actor_id=actor_id, trade_id=str(trade_id), action=action.value)
        trade = await self._load_trade(trade_id)
        target = await self._load_item(trade.offer_ref)

        try:
            if actor_id != trade.offered_by:
                raise NotAuthorized(
                    f"Only the original offerer can {action.value} a counter-offer",
                    trade_id=trade.id,
                    current_status=trade.status,
                )
            target_status = next_status(trade, action)

            updated = await self.trades.transition(
                trade.id, trade.status, {**changes, "status": target_status}
            )
            if updated is None:
                current = await self._load_trade(trade_id)
                raise InvalidTransition(
                    f"Trade changed before it could be {action.value}ed",
                    trade_id=current.id,
                    current_status=current.status,
                )
        except TradingError as exc:
            log.info("decision_rejected", error=exc.kind)
            raise

        log.info("decision_applied", status=updated.status.value)
        return updated, target

    async def _completed_concurrently(self, trade_id: UUID) -> Optional[Trade]:
        """Return the trade if another caller completed it first."""
        current = await self._load_trade(trade_id)
        if current.status != TradeStatus.COMPLETE:
            return None
        await self._ensure_traded(current)
        logger.info("trade_completed_concurrently", trade_id=str(trade_id))
        return current

    async def _ensure_traded(self, trade: Trade) -> None:
        """Make sure a COMPLETE trade's items are flagged traded, retrying with backoff."""
        refs = trade.item_refs
        for attempt in range(self.flag_retry_attempts):
            try:
                items = await self.wishlists.get_many(refs)
                pending = [item.id for item in items if not item.traded]
                if not pending:
                    return

                logger.warning(
                    "trade_flags_pending",
                    trade_id=str(trade.id),
                    pending=[str(item_id) for item_id in pending],
                    attempt=attempt,
                )
                marked = await self.wishlists.mark_traded(pending)
                if {item.id for item in marked if item.traded} >= set(pending):
                    return
            except StoreError:
                logger.warning("trade_flag_update_failed", trade_id=str(trade.id), attempt=attempt)

            await asyncio.sleep(self.flag_retry_backoff * (2 ** attempt))

        logger.error("trade_flags_unrecoverable", trade_id=str(trade.id))
        raise StoreError(
            "Trade is complete but its wishlist items could not be marked traded",
            trade_id=trade.id,
            current_status=TradeStatus.COMPLETE,
        )

    async def _load_trade(self, trade_id: UUID) -> Trade:
        trade = await self._read(self.trades.get(trade_id))
        if trade is None:
            raise NotFound("Trade not found", trade_id=trade_id)
        return trade

    async def _load_item(self, item_id: UUID) -> WishlistItem:
        item = await self._read(self.wishlists.get(item_id))
        if item is None:
            raise NotFound("Wishlist item not found", wishlist_item_id=item_id)
        return item

    @staticmethod
    async def _read(call):
        try:
            return await call
        except StoreError as exc:
            raise LoadFailed("Could not load trade state") from exc

    @staticmethod
    def _card_name(item: WishlistItem) -> Optional[str]:
        return item.card.card_name if item.card else None
