"""
Supabase-backed data access for wishlist items and trades.

Reads and single-row writes go through the PostgREST query builder. Writes
that depend on wishlist row state (opening an offer, attaching a
counter-offer, completing a trade) are store procedures defined in
``supabase/migrations`` so the check and the write run in one transaction.
"""
from datetime import datetime
from typing import Iterable, Optional, Protocol
from uuid import UUID

import httpx
import structlog
from postgrest.exceptions import APIError
from supabase import AsyncClient

from models.trade import COMMITTED_STATUSES, OPEN_STATUSES, Trade, TradeStatus
from models.wishlist import WishlistItem
from trading.errors import DuplicateOffer, IntegrityViolation, NotFound, StoreError

logger = structlog.get_logger(__name__)

WISHLIST_TABLE = "wishlist_items"
TRADE_TABLE = "trades"

WISHLIST_SELECT = "*, card:card_id(*), user:user_id(username)"

UNIQUE_VIOLATION = "23505"
FOREIGN_KEY_VIOLATION = "23503"


# ============== Interfaces ==============

class WishlistRepository(Protocol):
    async def get(self, item_id: UUID) -> Optional[WishlistItem]: ...

    async def get_many(self, item_ids: Iterable[UUID]) -> list[WishlistItem]: ...

    async def list_for_user(self, user_id: str) -> list[WishlistItem]: ...

    async def list_untraded_for_users(self, user_ids: Iterable[str]) -> list[WishlistItem]: ...

    async def create(self, user_id: str, card_id: str, created_at: datetime) -> WishlistItem: ...

    async def delete(self, item_id: UUID) -> bool: ...

    async def mark_traded(self, item_ids: Iterable[UUID]) -> list[WishlistItem]: ...

    async def delete_traded(self, item_ids: Iterable[UUID]) -> int: ...


class TradeRepository(Protocol):
    async def get(self, trade_id: UUID) -> Optional[Trade]: ...

    async def create(self, offer_ref: UUID, offered_by: str, offered_at: datetime) -> Optional[Trade]: ...

    async def find_open_offer(self, offer_ref: UUID, offered_by: str) -> Optional[Trade]: ...

    async def list_for_item(self, item_id: UUID) -> list[Trade]: ...

    async def list_for_user(
        self, user_id: str, item_ids: Iterable[UUID], status: Optional[TradeStatus] = None
    ) -> list[Trade]: ...

    async def list_committed_for_items(self, item_ids: Iterable[UUID]) -> list[Trade]: ...

    async def transition(
        self, trade_id: UUID, expected: TradeStatus, changes: dict
    ) -> Optional[Trade]: ...

    async def attach_counter(
        self, trade_id: UUID, request_ref: UUID, requested_at: datetime
    ) -> Optional[Trade]: ...

    async def complete(self, trade_id: UUID) -> Optional[Trade]: ...

    async def list_closed_before(self, cutoff: datetime) -> list[Trade]: ...

    async def delete_many(self, trade_ids: Iterable[UUID]) -> int: ...


# ============== Helpers ==============

def _ids(values: Iterable) -> list[str]:
    return [str(v) for v in values]


def _wishlist_from_row(row: dict) -> WishlistItem:
    data = dict(row)
    user = data.pop("user", None)
    if isinstance(user, dict):
        data["username"] = user.get("username")
    return WishlistItem.model_validate(data)


def _serialize_changes(changes: dict) -> dict:
    serialized = {}
    for key, value in changes.items():
        if isinstance(value, TradeStatus):
            value = value.value
        elif isinstance(value, UUID):
            value = str(value)
        elif isinstance(value, datetime):
            value = value.isoformat()
        serialized[key] = value
    return serialized


async def _execute(query, action: str, **context):
    """Run a query, translating transport and PostgREST failures into StoreError."""
    try:
        return await query.execute()
    except APIError as exc:
        logger.error("store_call_failed", action=action, code=exc.code, error=exc.message, **context)
        raise StoreError(f"Store call failed: {action}") from exc
    except httpx.HTTPError as exc:
        logger.error("store_unreachable", action=action, error=str(exc), **context)
        raise StoreError(f"Store unreachable: {action}") from exc


# ============== Wishlist ==============

class SupabaseWishlistRepository:
    """Wishlist items with their card and owner username joined."""

    def __init__(self, client: AsyncClient):
        self.client = client

    def _select(self):
        return self.client.table(WISHLIST_TABLE).select(WISHLIST_SELECT)

    async def get(self, item_id: UUID) -> Optional[WishlistItem]:
        result = await _execute(
            self._select().eq("id", str(item_id)), "get_wishlist_item", wishlist_item_id=str(item_id)
        )
        if not result.data:
            return None
        return _wishlist_from_row(result.data[0])

    async def get_many(self, item_ids: Iterable[UUID]) -> list[WishlistItem]:
        ids = _ids(item_ids)
        if not ids:
            return []
        result = await _execute(self._select().in_("id", ids), "get_wishlist_items")
        return [_wishlist_from_row(row) for row in result.data]

    async def list_for_user(self, user_id: str) -> list[WishlistItem]:
        result = await _execute(
            self._select().eq("user_id", user_id).order("created_at", desc=True),
            "list_user_wishlist",
            user_id=user_id,
        )
        return [_wishlist_from_row(row) for row in result.data]

    async def list_untraded_for_users(self, user_ids: Iterable[str]) -> list[WishlistItem]:
        users = list(user_ids)
        if not users:
            return []
        result = await _execute(
            self._select().in_("user_id", users).eq("traded", False).order("created_at"),
            "list_untraded_wishlist",
        )
        return [_wishlist_from_row(row) for row in result.data]

    async def create(self, user_id: str, card_id: str, created_at: datetime) -> WishlistItem:
        data = {
            "user_id": user_id,
            "card_id": card_id,
            "traded": False,
            "created_at": created_at.isoformat(),
        }
        try:
            result = await self.client.table(WISHLIST_TABLE).insert(data).execute()
        except APIError as exc:
            if exc.code == FOREIGN_KEY_VIOLATION:
                raise NotFound("Card or user not found") from exc
            logger.error("store_call_failed", action="create_wishlist_item", code=exc.code, error=exc.message)
            raise StoreError("Store call failed: create_wishlist_item") from exc
        except httpx.HTTPError as exc:
            logger.error("store_unreachable", action="create_wishlist_item", error=str(exc))
            raise StoreError("Store unreachable: create_wishlist_item") from exc

        if not result.data:
            raise StoreError("Failed to create wishlist item")
        # Re-read so the card join is populated
        created = await self.get(result.data[0]["id"])
        return created or _wishlist_from_row(result.data[0])

    async def delete(self, item_id: UUID) -> bool:
        # Guarded on traded so a concurrent completion cannot be undone
        result = await _execute(
            self.client.table(WISHLIST_TABLE).delete().eq("id", str(item_id)).eq("traded", False),
            "delete_wishlist_item",
            wishlist_item_id=str(item_id),
        )
        return bool(result.data)

    async def mark_traded(self, item_ids: Iterable[UUID]) -> list[WishlistItem]:
        ids = _ids(item_ids)
        if not ids:
            return []
        result = await _execute(
            self.client.table(WISHLIST_TABLE).update({"traded": True}).in_("id", ids),
            "mark_wishlist_traded",
        )
        return [_wishlist_from_row(row) for row in result.data]

    async def delete_traded(self, item_ids: Iterable[UUID]) -> int:
        ids = _ids(item_ids)
        if not ids:
            return 0
        result = await _execute(
            self.client.table(WISHLIST_TABLE).delete().in_("id", ids).eq("traded", True),
            "retire_wishlist_items",
        )
        return len(result.data or [])


# ============== Trades ==============

class SupabaseTradeRepository:
    """Trade rows; status changes are conditional on the expected current status."""

    def __init__(self, client: AsyncClient):
        self.client = client

    def _table(self):
        return self.client.table(TRADE_TABLE)

    async def get(self, trade_id: UUID) -> Optional[Trade]:
        result = await _execute(
            self._table().select("*").eq("id", str(trade_id)), "get_trade", trade_id=str(trade_id)
        )
        if not result.data:
            return None
        return Trade.model_validate(result.data[0])

    async def create(self, offer_ref: UUID, offered_by: str, offered_at: datetime) -> Optional[Trade]:
        """
        Open an OFFERED trade against a wishlist item.

        The procedure share-locks the item row and inserts only while it is
        untraded, so a completion committing alongside cannot leave an open
        offer on a traded item. Returns None when the item is missing or
        already traded.
        """
        params = {
            "p_offer_ref": str(offer_ref),
            "p_offered_by": offered_by,
            "p_offered_at": offered_at.isoformat(),
        }
        try:
            result = await self.client.rpc("create_offer", params).execute()
        except APIError as exc:
            if exc.code == UNIQUE_VIOLATION:
                raise DuplicateOffer(
                    "An open offer against this wishlist item already exists",
                    wishlist_item_id=offer_ref,
                ) from exc
            logger.error("store_call_failed", action="create_trade", code=exc.code, error=exc.message)
            raise StoreError("Store call failed: create_trade") from exc
        except httpx.HTTPError as exc:
            logger.error("store_unreachable", action="create_trade", error=str(exc))
            raise StoreError("Store unreachable: create_trade") from exc

        if not result.data:
            return None
        return Trade.model_validate(result.data[0])

    async def find_open_offer(self, offer_ref: UUID, offered_by: str) -> Optional[Trade]:
        result = await _execute(
            self._table()
            .select("*")
            .eq("offer_ref", str(offer_ref))
            .eq("offered_by", offered_by)
            .in_("status", [s.value for s in OPEN_STATUSES])
            .limit(1),
            "find_open_offer",
        )
        if not result.data:
            return None
        return Trade.model_validate(result.data[0])

    async def list_for_item(self, item_id: UUID) -> list[Trade]:
        item = str(item_id)
        result = await _execute(
            self._table()
            .select("*")
            .or_(f"offer_ref.eq.{item},request_ref.eq.{item}")
            .order("offered_at", desc=True),
            "list_item_trades",
            wishlist_item_id=item,
        )
        return [Trade.model_validate(row) for row in result.data]

    async def list_for_user(
        self, user_id: str, item_ids: Iterable[UUID], status: Optional[TradeStatus] = None
    ) -> list[Trade]:
        ids = ",".join(_ids(item_ids))
        clauses = [f"offered_by.eq.{user_id}"]
        if ids:
            clauses.append(f"offer_ref.in.({ids})")
            clauses.append(f"request_ref.in.({ids})")

        query = self._table().select("*").or_(",".join(clauses))
        if status is not None:
            query = query.eq("status", status.value)

        result = await _execute(query.order("offered_at", desc=True), "list_user_trades", user_id=user_id)
        return [Trade.model_validate(row) for row in result.data]

    async def list_committed_for_items(self, item_ids: Iterable[UUID]) -> list[Trade]:
        ids = ",".join(_ids(item_ids))
        if not ids:
            return []
        result = await _execute(
            self._table()
            .select("*")
            .in_("status", [s.value for s in COMMITTED_STATUSES])
            .or_(f"offer_ref.in.({ids}),request_ref.in.({ids})"),
            "list_committed_trades",
        )
        return [Trade.model_validate(row) for row in result.data]

    async def transition(
        self, trade_id: UUID, expected: TradeStatus, changes: dict
    ) -> Optional[Trade]:
        """Compare-and-swap update; returns None when the status no longer matches."""
        result = await _execute(
            self._table()
            .update(_serialize_changes(changes))
            .eq("id", str(trade_id))
            .eq("status", expected.value),
            "transition_trade",
            trade_id=str(trade_id),
            expected=expected.value,
        )
        if not result.data:
            return None
        return Trade.model_validate(result.data[0])

    async def attach_counter(
        self, trade_id: UUID, request_ref: UUID, requested_at: datetime
    ) -> Optional[Trade]:
        """
        Attach a counter-offer in one transaction.

        The procedure locks both wishlist rows, refuses if either is held by
        another committed trade, and updates only an OFFERED trade whose
        request_ref is still empty. Returns None when any condition fails.
        """
        result = await _execute(
            self.client.rpc(
                "attach_counter_offer",
                {
                    "p_trade_id": str(trade_id),
                    "p_request_ref": str(request_ref),
                    "p_requested_at": requested_at.isoformat(),
                },
            ),
            "attach_counter_offer",
            trade_id=str(trade_id),
        )
        if not result.data:
            return None
        return Trade.model_validate(result.data[0])

    async def complete(self, trade_id: UUID) -> Optional[Trade]:
        """
        Complete an ACCEPTED trade in one transaction: status, both traded
        flags, and the closing of every other open trade on either item.
        """
        try:
            result = await self.client.rpc("complete_trade", {"p_trade_id": str(trade_id)}).execute()
        except APIError as exc:
            if "integrity_violation" in (exc.message or ""):
                raise IntegrityViolation(
                    "A wishlist item in this trade was already traded elsewhere",
                    trade_id=trade_id,
                    current_status=TradeStatus.ACCEPTED,
                ) from exc
            logger.error("store_call_failed", action="complete_trade", code=exc.code, error=exc.message)
            raise StoreError("Store call failed: complete_trade", trade_id=trade_id) from exc
        except httpx.HTTPError as exc:
            logger.error("store_unreachable", action="complete_trade", error=str(exc))
            raise StoreError("Store unreachable: complete_trade", trade_id=trade_id) from exc

        if not result.data:
            return None
        return Trade.model_validate(result.data[0])

    async def list_closed_before(self, cutoff: datetime) -> list[Trade]:
        """Closed trades whose close time is older than the cutoff."""
        result = await _execute(
            self._table()
            .select("*")
            .in_("status", [TradeStatus.COMPLETE.value, TradeStatus.REJECTED.value])
            .lt("closed_at", cutoff.isoformat()),
            "list_closed_trades",
        )
        return [Trade.model_validate(row) for row in result.data]

    async def delete_many(self, trade_ids: Iterable[UUID]) -> int:
        ids = _ids(trade_ids)
        if not ids:
            return 0
        result = await _execute(self._table().delete().in_("id", ids), "delete_trades")
        return len(result.data or [])
