"""
Error taxonomy for the trading core.

Every rejection carries a machine-readable ``kind`` plus whatever state the
caller needs to reconcile (trade id, current status, wishlist item id).
"""
from typing import Optional
from uuid import UUID

from models.trade import TradeErrorDetail, TradeStatus


class TradingError(Exception):
    """Base class for all trading core errors."""

    kind = "trading_error"

    def __init__(
        self,
        message: str,
        *,
        trade_id: Optional[UUID] = None,
        wishlist_item_id: Optional[UUID] = None,
        current_status: Optional[TradeStatus] = None,
    ):
        super().__init__(message)
        self.message = message
        self.trade_id = trade_id
        self.wishlist_item_id = wishlist_item_id
        self.current_status = current_status

    def to_detail(self) -> TradeErrorDetail:
        return TradeErrorDetail(
            error=self.kind,
            message=self.message,
            trade_id=self.trade_id,
            wishlist_item_id=self.wishlist_item_id,
            current_status=self.current_status,
        )


# ============== Validation errors ==============

class NotFound(TradingError):
    kind = "not_found"


class AlreadyOwnItem(TradingError):
    kind = "already_own_item"


class ItemAlreadyTraded(TradingError):
    kind = "item_already_traded"


class DuplicateOffer(TradingError):
    kind = "duplicate_offer"


class NotEligible(TradingError):
    kind = "not_eligible"


class InvalidTransition(TradingError):
    kind = "invalid_transition"


class NotAuthorized(TradingError):
    kind = "not_authorized"


class WishlistItemLocked(TradingError):
    """Wishlist item cannot be removed while traded or committed."""
    kind = "wishlist_item_locked"


# ============== Integrity violations ==============

class IntegrityViolation(TradingError):
    kind = "integrity_violation"


# ============== Infrastructure errors ==============

class StoreError(TradingError):
    """The store rejected or failed a call; a write must not be assumed applied."""
    kind = "store_error"


class ResolutionFailed(TradingError):
    kind = "resolution_failed"


class LoadFailed(TradingError):
    kind = "load_failed"
