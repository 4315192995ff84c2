"""
Eligibility resolver: which cards the offering users could send back.

For a wishlist item W that has received offers, the pool is every un-traded
wishlist item of the offering users whose card is tradeable and has exactly
W's rarity, minus items held by another committed trade. Items attached to
W's own in-flight negotiation stay visible so it can be re-displayed.
"""
from typing import Optional
from uuid import UUID

import structlog

from models.trade import (
    EligibilityResponse,
    EligibilityStatus,
    EligibleCard,
    Trade,
    TradeStatus,
)
from models.wishlist import WishlistItem
from trading.errors import NotEligible, NotFound, ResolutionFailed, StoreError
from trading.repositories import TradeRepository, WishlistRepository

logger = structlog.get_logger(__name__)

ACTIVE_NEGOTIATION_STATUSES = frozenset({TradeStatus.NEGOTIATING, TradeStatus.ACCEPTED})


def _rarity_matches(item: WishlistItem, target: WishlistItem) -> bool:
    if item.card is None or target.card is None:
        return False
    if not item.card.tradeable:
        return False
    return item.rarity is not None and item.rarity == target.rarity


def _to_eligible_card(item: WishlistItem) -> EligibleCard:
    return EligibleCard(
        **item.card.model_dump(),
        wishlist_item_id=item.id,
        owner_user_id=item.user_id,
        offerer_username=item.username,
    )


class EligibilityResolver:
    """Read-only; reflects current store state on every call."""

    def __init__(self, wishlists: WishlistRepository, trades: TradeRepository):
        self.wishlists = wishlists
        self.trades = trades

    async def resolve(self, wishlist_item_id: UUID) -> EligibilityResponse:
        """
        List the eligible cards for a wishlist item.

        Raises:
            NotFound: the wishlist item does not exist.
            ResolutionFailed: the store could not be read. An empty result
                is only ever returned as ``none_eligible``.
        """
        target = await self._load_target(wishlist_item_id)

        try:
            items = await self._eligible_items(target)
        except StoreError as exc:
            logger.error("eligibility_resolution_failed", wishlist_item_id=str(wishlist_item_id))
            raise ResolutionFailed(
                "Could not resolve eligible cards", wishlist_item_id=wishlist_item_id
            ) from exc

        cards = []
        seen_cards = set()
        for item in items:
            if item.card_id in seen_cards:
                continue
            seen_cards.add(item.card_id)
            cards.append(_to_eligible_card(item))

        cards.sort(key=lambda card: card.sort_key())

        logger.info(
            "eligibility_resolved",
            wishlist_item_id=str(wishlist_item_id),
            eligible=len(cards),
        )
        return EligibilityResponse(
            wishlist_item_id=wishlist_item_id,
            status=EligibilityStatus.ELIGIBLE if cards else EligibilityStatus.NONE_ELIGIBLE,
            cards=cards,
        )

    async def check_counter(self, trade: Trade, chosen_item_id: UUID) -> EligibleCard:
        """
        Re-validate a counter-offer selection against current store state.

        The chosen item must be in the eligible pool for the trade's target
        and belong to the trade's offerer.
        """
        target = await self._load_target(trade.offer_ref)

        try:
            items = await self._eligible_items(target)
        except StoreError as exc:
            raise ResolutionFailed(
                "Could not re-validate counter-offer", trade_id=trade.id, wishlist_item_id=chosen_item_id
            ) from exc

        chosen: Optional[WishlistItem] = next((i for i in items if i.id == chosen_item_id), None)
        if chosen is None:
            raise NotEligible(
                "Selected card is not eligible for this trade",
                trade_id=trade.id,
                wishlist_item_id=chosen_item_id,
                current_status=trade.status,
            )
        if chosen.user_id != trade.offered_by:
            raise NotEligible(
                "Selected card does not belong to this trade's offerer",
                trade_id=trade.id,
                wishlist_item_id=chosen_item_id,
                current_status=trade.status,
            )
        return _to_eligible_card(chosen)

    async def _load_target(self, wishlist_item_id: UUID) -> WishlistItem:
        try:
            target = await self.wishlists.get(wishlist_item_id)
        except StoreError as exc:
            raise ResolutionFailed(
                "Could not load wishlist item", wishlist_item_id=wishlist_item_id
            ) from exc
        if target is None:
            raise NotFound("Wishlist item not found", wishlist_item_id=wishlist_item_id)
        return target

    async def _eligible_items(self, target: WishlistItem) -> list[WishlistItem]:
        """Eligible wishlist items before de-duplication, in-flight items first."""
        against = [t for t in await self.trades.list_for_item(target.id) if t.offer_ref == target.id]
        active = [t for t in against if t.status in ACTIVE_NEGOTIATION_STATUSES]

        offerers: list[str] = []
        for trade in against:
            if trade.status == TradeStatus.OFFERED or trade in active:
                if trade.offered_by not in offerers:
                    offerers.append(trade.offered_by)
        if not offerers:
            return []

        candidates = await self.wishlists.list_untraded_for_users(offerers)
        matching = [item for item in candidates if _rarity_matches(item, target)]
        if not matching:
            return []

        active_ids = {t.id for t in active}
        attached = {ref for t in active for ref in t.item_refs}
        committed = await self.trades.list_committed_for_items([item.id for item in matching])
        held = {ref for t in committed if t.id not in active_ids for ref in t.item_refs}

        visible = [item for item in matching if item.id not in held]
        # Stable sort keeps store order within each group
        visible.sort(key=lambda item: item.id not in attached)
        return visible
