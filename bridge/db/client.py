"""
Supabase DB client wrapper — CRUD for bridge_orders plus the append-only
bridge_actions / bridge_events audit tables.
Includes retry on transient errors, operation timeouts, and metrics.
"""

import asyncio
import time
import uuid
from datetime import datetime, timezone
from typing import List, Optional

from supabase import create_client, Client

from bridge.orders import types
from bridge.orders.errors import BridgeError, OrderNotFoundError, UpstreamError
from bridge.orders.types import BridgeOrder, CreateOrderInput, OrderPage


DB_OPERATION_TIMEOUT = 10.0    # seconds per DB operation
DB_RETRY_ATTEMPTS = 3          # retries on transient errors
DB_RETRY_BASE_DELAY = 0.5     # seconds — exponential backoff base

ORDERS_TABLE = "bridge_orders"
ACTIONS_TABLE = "bridge_actions"
EVENTS_TABLE = "bridge_events"

# Transient error substrings that trigger retry
_TRANSIENT_ERRORS = (
    "timeout", "connection", "unavailable", "502", "503", "504",
    "broken pipe", "reset by peer", "socket", "network",
    "too many requests", "rate limit",
)

# Order fields a patch may touch → bridge_orders column
_PATCHABLE_COLUMNS = {
    "status": "status",
    "atomiq_swap_id": "atomiq_swap_id",
    "source_tx_id": "source_tx_id",
    "destination_tx_id": "destination_tx_id",
    "quote": "quote_json",
    "expires_at": "expires_at",
    "last_error": "last_error",
    "raw_state": "raw_state_json",
}


def init_supabase(url: str, key: str) -> Client:
    """Initialize and return a Supabase client."""
    return create_client(url, key)


async def health_check(client: Client) -> bool:
    """Health check — actually queries Supabase to verify connectivity."""
    try:
        if client is None or not hasattr(client, "table"):
            return False
        result = await asyncio.to_thread(
            lambda: client.table(ORDERS_TABLE).select("id", count="exact").limit(0).execute()
        )
        return result is not None
    except Exception:
        return False


def _is_transient(e: Exception) -> bool:
    """Check if an exception is transient and worth retrying."""
    msg = str(e).lower()
    return any(kw in msg for kw in _TRANSIENT_ERRORS)


def _is_uuid(value: str) -> bool:
    try:
        uuid.UUID(str(value))
    except ValueError:
        return False
    return True


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class Database:
    """Async wrapper around Supabase client — the bridge order store.

    All operations retry on transient errors with exponential backoff
    and have a per-operation timeout. update_order is read-merge-write:
    the whole mutable row is rewritten, so concurrent writers to the same
    order are last-writer-wins.
    """

    def __init__(self, client: Client):
        self.client = client
        # Metrics
        self._op_count = 0
        self._op_errors = 0
        self._op_retries = 0
        self._total_latency_ms = 0.0

    async def _exec(self, fn, label: str = "db_op"):
        """Execute a Supabase operation with retry, timeout, and metrics.

        Args:
            fn: callable returning a Supabase execute() result
            label: operation name for logging
        """
        last_err = None
        for attempt in range(DB_RETRY_ATTEMPTS):
            t0 = time.monotonic()
            try:
                result = await asyncio.wait_for(
                    asyncio.to_thread(fn),
                    timeout=DB_OPERATION_TIMEOUT,
                )
                latency = (time.monotonic() - t0) * 1000
                self._op_count += 1
                self._total_latency_ms += latency
                return result
            except asyncio.TimeoutError:
                self._op_errors += 1
                last_err = UpstreamError(f"DB operation '{label}' timed out after {DB_OPERATION_TIMEOUT}s")
                self._op_retries += 1
            except Exception as e:
                self._op_errors += 1
                last_err = e
                if _is_transient(e) and attempt < DB_RETRY_ATTEMPTS - 1:
                    delay = DB_RETRY_BASE_DELAY * (2 ** attempt)
                    print(f"[DB] {label} transient error (attempt {attempt+1}): {e}. "
                          f"Retry in {delay:.1f}s")
                    self._op_retries += 1
                    await asyncio.sleep(delay)
                    continue
                raise  # non-transient or last attempt

        raise last_err

    # ------------------------------------------------------------------
    # Schema
    # ------------------------------------------------------------------

    async def init(self):
        """Verify the bridge tables exist. The DDL lives in bridge/db/schema.sql;
        PostgREST cannot create tables, so a missing table is fatal here."""
        for table in (ORDERS_TABLE, ACTIONS_TABLE, EVENTS_TABLE):
            try:
                await self._exec(
                    lambda t=table: self.client.table(t).select("id", count="exact").limit(0).execute(),
                    f"init({table})",
                )
            except Exception as e:
                raise UpstreamError(
                    f"table '{table}' is not reachable ({e}) — apply bridge/db/schema.sql"
                ) from e
        print("[DB] Bridge tables OK")

    # ------------------------------------------------------------------
    # Orders
    # ------------------------------------------------------------------

    async def create_order(
        self,
        order_input: CreateOrderInput,
        status: str,
        atomiq_swap_id: Optional[str] = None,
        quote: Optional[dict] = None,
        expires_at: Optional[str] = None,
        raw_state: Optional[dict] = None,
    ) -> BridgeOrder:
        """Insert a new order, return it as stored."""
        if status not in types.ORDER_STATUSES:
            raise ValueError(f"unknown order status: {status}")
        now = _now_iso()
        row = {
            "id": str(uuid.uuid4()),
            "network": order_input.network,
            "source_asset": order_input.source_asset,
            "destination_asset": order_input.destination_asset,
            "amount": order_input.amount,
            "amount_type": order_input.amount_type,
            "receive_address": order_input.receive_address,
            "wallet_address": order_input.wallet_address,
            "status": status,
            "atomiq_swap_id": atomiq_swap_id,
            "quote_json": quote,
            "expires_at": expires_at,
            "raw_state_json": raw_state,
            "created_at": now,
            "updated_at": now,
        }
        result = await self._exec(
            lambda: self.client.table(ORDERS_TABLE).insert(row).execute(),
            "create_order",
        )
        return BridgeOrder.from_row(result.data[0] if result.data else row)

    async def get_order_by_id(self, order_id: str) -> Optional[BridgeOrder]:
        """Get a single order by ID. Non-UUID ids cannot exist, so they short-circuit."""
        if not _is_uuid(order_id):
            return None
        result = await self._exec(
            lambda: self.client.table(ORDERS_TABLE).select("*").eq("id", order_id).limit(1).execute(),
            f"get_order({order_id[:8]})",
        )
        return BridgeOrder.from_row(result.data[0]) if result.data else None

    async def list_orders_by_wallet(self, wallet_address: str, page: int, limit: int) -> OrderPage:
        """Newest-first page of a wallet's orders plus the exact total."""
        offset = (page - 1) * limit
        result = await self._exec(
            lambda: self.client.table(ORDERS_TABLE)
                .select("*", count="exact")
                .eq("wallet_address", wallet_address)
                .order("created_at", desc=True)
                .range(offset, offset + limit - 1)
                .execute(),
            f"list_orders({wallet_address[:10]})",
        )
        rows = result.data or []
        total = result.count if getattr(result, "count", None) is not None else len(rows)
        return OrderPage.build([BridgeOrder.from_row(r) for r in rows], total, page, limit)

    async def update_order(self, order_id: str, patch: dict) -> BridgeOrder:
        """Apply a partial patch. Keys present in patch overwrite (None clears);
        absent keys keep the stored value."""
        unknown = set(patch) - set(_PATCHABLE_COLUMNS)
        if unknown:
            raise ValueError(f"unpatchable order fields: {sorted(unknown)}")
        if "status" in patch and patch["status"] not in types.ORDER_STATUSES:
            raise ValueError(f"unknown order status: {patch['status']}")

        current = await self.get_order_by_id(order_id)
        if current is None:
            raise OrderNotFoundError(order_id)

        new_swap_id = patch.get("atomiq_swap_id", current.atomiq_swap_id)
        if current.atomiq_swap_id and new_swap_id != current.atomiq_swap_id:
            raise BridgeError(f"atomiq_swap_id is immutable once set (order {order_id[:8]})")

        row = {
            column: patch[field] if field in patch else getattr(current, field)
            for field, column in _PATCHABLE_COLUMNS.items()
        }
        row["updated_at"] = _now_iso()

        result = await self._exec(
            lambda: self.client.table(ORDERS_TABLE).update(row).eq("id", order_id).execute(),
            f"update_order({order_id[:8]})",
        )
        if not result.data:
            raise OrderNotFoundError(order_id)
        return BridgeOrder.from_row(result.data[0])

    async def get_active_orders(self, limit: int = 50) -> List[BridgeOrder]:
        """Non-terminal orders, least recently updated first."""
        result = await self._exec(
            lambda: self.client.table(ORDERS_TABLE)
                .select("*")
                .in_("status", list(types.ACTIVE_STATUSES))
                .order("updated_at")
                .limit(limit)
                .execute(),
            "get_active_orders",
        )
        return [BridgeOrder.from_row(r) for r in (result.data or [])]

    # ------------------------------------------------------------------
    # Audit trail
    # ------------------------------------------------------------------

    async def add_action(self, order_id: str, action_type: str, action_status: str,
                         payload: Optional[dict] = None):
        """Append an audit action row."""
        await self._exec(
            lambda: self.client.table(ACTIONS_TABLE).insert({
                "order_id": order_id,
                "action_type": action_type,
                "action_status": action_status,
                "payload_json": payload,
            }).execute(),
            f"add_action({order_id[:8]},{action_type})",
        )

    async def add_event(self, order_id: str, event_type: str, from_status: Optional[str],
                        to_status: Optional[str], payload: Optional[dict] = None):
        """Append a status transition event row."""
        await self._exec(
            lambda: self.client.table(EVENTS_TABLE).insert({
                "order_id": order_id,
                "event_type": event_type,
                "from_status": from_status,
                "to_status": to_status,
                "payload_json": payload,
            }).execute(),
            f"add_event({order_id[:8]},{event_type})",
        )

    # ------------------------------------------------------------------
    # Metrics
    # ------------------------------------------------------------------

    def metrics(self) -> dict:
        avg_lat = (self._total_latency_ms / max(self._op_count, 1))
        return {
            "operations": self._op_count,
            "errors": self._op_errors,
            "retries": self._op_retries,
            "avg_latency_ms": round(avg_lat, 1),
        }
