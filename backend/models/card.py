# backend/models/card.py
from pydantic import BaseModel, ConfigDict
from typing import Optional


# ============== Base Schemas ==============

class CardBase(BaseModel):
    """Base schema for a card entry"""
    id: str
    pack: str
    card_number: str
    card_name: str
    card_type: Optional[str] = None
    card_rarity: Optional[str] = None
    card_element: Optional[str] = None
    image_url: Optional[str] = None
    tradeable: bool = True

    model_config = ConfigDict(from_attributes=True)

    def sort_key(self) -> tuple:
        """Order by pack, then numerically by card number where possible."""
        number = self.card_number or ""
        if number.isdigit():
            return (self.pack or "", 0, int(number), "")
        return (self.pack or "", 1, 0, number)
