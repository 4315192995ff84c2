# backend/models/wishlist.py
from datetime import datetime
from uuid import UUID
from pydantic import BaseModel, Field, ConfigDict
from typing import Optional

from models.card import CardBase


# ============== Create Schemas ==============

class WishlistItemCreate(BaseModel):
    """Schema for marking a card as wanted."""
    card_id: str = Field(description="Card the user wants to receive")


# ============== Response Schemas ==============

class WishlistItem(BaseModel):
    """A (user, card) pairing; the unit trades are built around."""
    id: UUID
    user_id: str
    card_id: str
    traded: bool = Field(default=False, description="Set once a trade on this item completes")
    created_at: Optional[datetime] = None

    # Joined data (populated when fetching with card / owner details)
    card: Optional[CardBase] = None
    username: Optional[str] = None

    model_config = ConfigDict(from_attributes=True)

    @property
    def rarity(self) -> Optional[str]:
        return self.card.card_rarity if self.card else None


class WishlistListResponse(BaseModel):
    """All wishlist items for a user."""
    items: list[WishlistItem]
    total: int
