# backend/models/trade.py
from datetime import datetime
from enum import Enum
from uuid import UUID
from pydantic import BaseModel, Field, ConfigDict
from typing import Optional

from models.card import CardBase
from models.wishlist import WishlistItem


# ============== Enums ==============

class TradeStatus(str, Enum):
    """Trade lifecycle states."""
    OFFERED = "offered"
    NEGOTIATING = "negotiating"
    ACCEPTED = "accepted"
    COMPLETE = "complete"
    REJECTED = "rejected"  # Closed because a referenced item was consumed by another trade


# Statuses in which a trade holds its wishlist items exclusively
COMMITTED_STATUSES = frozenset({
    TradeStatus.NEGOTIATING,
    TradeStatus.ACCEPTED,
    TradeStatus.COMPLETE,
})

# Statuses a negotiation can still move out of
OPEN_STATUSES = frozenset({
    TradeStatus.OFFERED,
    TradeStatus.NEGOTIATING,
    TradeStatus.ACCEPTED,
})

TERMINAL_STATUSES = frozenset({
    TradeStatus.COMPLETE,
    TradeStatus.REJECTED,
})


class NotificationKind(str, Enum):
    """Events the notification sink is informed of."""
    OFFER_RECEIVED = "offer_received"
    COUNTEROFFER_RECEIVED = "counteroffer_received"
    TRADE_ACCEPTED = "trade_accepted"
    OFFER_REJECTED = "offer_rejected"


class EligibilityStatus(str, Enum):
    """Outcome of a successful eligibility resolution."""
    ELIGIBLE = "eligible"
    NONE_ELIGIBLE = "none_eligible"


# ============== Create / Action Schemas ==============

class TradeCreate(BaseModel):
    """Schema for offering against another user's wishlist item."""
    wishlist_item_id: UUID = Field(description="Wishlist item the offer is made against")


class TradeCounterOffer(BaseModel):
    """Schema for selecting the card to send back."""
    wishlist_item_id: UUID = Field(description="Offerer's wishlist item chosen as the counter-offer")


# ============== Core Records ==============

class Trade(BaseModel):
    """A single negotiation between the owner of offer_ref and the offerer."""
    id: UUID
    offer_ref: UUID = Field(description="Wishlist item being offered against")
    request_ref: Optional[UUID] = Field(default=None, description="Wishlist item chosen as counter-offer")
    status: TradeStatus
    offered_by: str
    offered_at: datetime
    requested_at: Optional[datetime] = None
    closed_at: Optional[datetime] = Field(default=None, description="When the trade reached a closed status")

    model_config = ConfigDict(from_attributes=True)

    @property
    def item_refs(self) -> list[UUID]:
        return [ref for ref in (self.offer_ref, self.request_ref) if ref is not None]

    @property
    def is_committed(self) -> bool:
        return self.status in COMMITTED_STATUSES


class TradeParties(BaseModel):
    """Original offerer and counter-offerer, resolved from stored timestamps."""
    original_offerer_id: str
    counter_offerer_id: Optional[str] = None


class TradeWithItemsResponse(Trade):
    """Trade with both wishlist items and the resolved parties."""
    offer: Optional[WishlistItem] = None
    request: Optional[WishlistItem] = None
    parties: Optional[TradeParties] = None


class TradeListResponse(BaseModel):
    """List of trades."""
    trades: list[Trade]
    total: int


# ============== Eligibility Schemas ==============

class EligibleCard(CardBase):
    """A card a counterparty could send back, with its source wishlist item."""
    wishlist_item_id: UUID
    owner_user_id: str
    offerer_username: Optional[str] = None


class EligibilityResponse(BaseModel):
    """Eligible cards for a wishlist item; status separates empty from failed."""
    wishlist_item_id: UUID
    status: EligibilityStatus
    cards: list[EligibleCard] = []


# ============== Error Schemas ==============

class TradeErrorDetail(BaseModel):
    """Structured rejection returned to callers so they can reconcile state."""
    error: str
    message: str
    trade_id: Optional[UUID] = None
    wishlist_item_id: Optional[UUID] = None
    current_status: Optional[TradeStatus] = None


# ============== Admin Schemas ==============

class TradeCleanupResponse(BaseModel):
    """Response from trade cleanup operation."""
    trades_cleaned: int = Field(description="Number of closed trades removed")
    wishlist_items_retired: int = Field(description="Number of traded wishlist items deleted")
    dry_run: bool = Field(description="Whether this was a preview (no actual deletions)")
    retention_days: int = Field(description="Trades offered before this many days ago were cleaned")
