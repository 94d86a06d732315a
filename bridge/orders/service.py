"""
Bridge Order Service — drives the BTC → Starknet order lifecycle.

create → prepare → submit are user-driven; everything after the bitcoin
transaction is broadcast is reconciliation: fetch the live swap from the
gateway, map its state, claim or refund when the gateway says we can, and
persist the outcome. Every status-affecting call writes one audit action and
one transition event.
"""

import asyncio
import re
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Dict, Optional, Tuple

from bridge.orders import types
from bridge.orders.errors import OrderExpiredError, OrderNotFoundError
from bridge.orders.poller import RecoveryPoller, DEFAULT_POLL_INTERVAL
from bridge.orders.state_mapper import map_external_state_to_status
from bridge.orders.types import BridgeOrder, CreateOrderInput, OrderPage, PrepareResult, SubmitInput
from bridge.orders.validation import (
    normalize_wallet_address,
    validate_create_order_input,
    validate_create_order_payload,
    validate_pagination,
    validate_submit_input,
    validate_submit_payload,
)

ACTIVE_BATCH_LIMIT = 100    # orders reconciled per recovery pass

# PostgREST trims trailing zeros from fractional seconds (".12+00:00")
_FRACTION = re.compile(r"\.(\d+)")


def _parse_iso(value: str) -> Optional[datetime]:
    try:
        normalized = _FRACTION.sub(
            lambda m: "." + m.group(1)[:6].ljust(6, "0"),
            value.strip().replace("Z", "+00:00"),
        )
        parsed = datetime.fromisoformat(normalized)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class BridgeOrderService:
    """Handles bridge order lifecycle: create → prepare → submit → reconcile."""

    def __init__(self, store, swap_client, active_batch_limit: int = ACTIVE_BATCH_LIMIT,
                 verbose: bool = False):
        self.store = store
        self.swap_client = swap_client
        self.active_batch_limit = active_batch_limit
        self.verbose = verbose
        self._poller: Optional[RecoveryPoller] = None
        # order_id → [lock, users]; entries dropped when the last user leaves
        self._order_locks: Dict[str, list] = {}
        # Metrics
        self._reconciled = 0
        self._reconcile_errors = 0
        self._claims_ok = 0
        self._claims_failed = 0
        self._refunds_ok = 0
        self._refunds_failed = 0

    async def init(self):
        await self.store.init()

    # ------------------------------------------------------------------
    # Recovery poller handle
    # ------------------------------------------------------------------

    def start_recovery_poller(self, interval: float = DEFAULT_POLL_INTERVAL) -> RecoveryPoller:
        """Start the background reconciler. No-op if it is already running."""
        if self._poller and self._poller.running:
            return self._poller
        self._poller = RecoveryPoller(self, interval=interval)
        self._poller.start()
        return self._poller

    async def stop_recovery_poller(self):
        """Stop the background reconciler. Safe to call when not running."""
        poller, self._poller = self._poller, None
        if poller:
            await poller.stop()

    @property
    def poller(self) -> Optional[RecoveryPoller]:
        return self._poller

    # ------------------------------------------------------------------
    # User-driven steps
    # ------------------------------------------------------------------

    async def create_order(self, order_input: CreateOrderInput) -> BridgeOrder:
        """Quote a swap with the gateway, then persist the order.

        Input is validated first; nothing reaches the gateway or the store
        if it is rejected, and nothing is written if the gateway call fails.
        """
        order_input = validate_create_order_input(order_input)
        swap = await self.swap_client.create_incoming_swap(
            network=order_input.network,
            destination_asset=order_input.destination_asset,
            amount=order_input.amount,
            amount_type=order_input.amount_type,
            receive_address=order_input.receive_address,
        )
        status_raw = swap.get("status_raw")

        order = await self.store.create_order(
            order_input,
            status=types.CREATED,
            atomiq_swap_id=swap["atomiq_swap_id"],
            quote=swap.get("quote"),
            expires_at=swap.get("expires_at"),
            raw_state={"state": "" if status_raw is None else str(status_raw)},
        )
        await self.store.add_action(order.id, types.ACTION_CREATE_ORDER, types.ACTION_SUCCESS, {
            "atomiqSwapId": order.atomiq_swap_id,
        })
        await self.store.add_event(order.id, types.EVENT_ORDER_CREATED, None, types.CREATED, {
            "quote": order.quote,
            "expiresAt": order.expires_at,
        })
        print(f"[BRIDGE] Order {order.id[:8]} created — {order.amount} sats "
              f"({order.amount_type}) → {order.destination_asset} on {order.network}, "
              f"swap {order.atomiq_swap_id}")
        return order

    async def create_order_from_payload(self, payload: dict) -> BridgeOrder:
        """Create from a raw request body (camelCase or snake_case keys)."""
        return await self.create_order(validate_create_order_payload(payload))

    async def prepare_order(self, order_id: str) -> Tuple[BridgeOrder, PrepareResult]:
        """Fetch funding instructions and move the order to AWAITING_USER_SIGNATURE."""
        order = await self._require_order(order_id)
        instructions = await self.swap_client.prepare_incoming_swap(order)
        payload = instructions.to_dict()

        updated = await self.store.update_order(order.id, {"status": types.AWAITING_USER_SIGNATURE})
        await self.store.add_action(order.id, types.ACTION_PREPARE_ORDER, types.ACTION_SUCCESS, payload)
        await self.store.add_event(order.id, types.EVENT_ORDER_PREPARED, order.status, updated.status, {
            "payload": payload,
        })
        print(f"[BRIDGE] Order {order.id[:8]} prepared — {instructions.type}")
        return updated, instructions

    async def submit_order(self, order_id: str, submit_input: SubmitInput) -> BridgeOrder:
        """Forward the user's signed PSBT (or broadcast tx id) to the gateway.

        An expired quote is rejected: the order goes to EXPIRED and
        OrderExpiredError is raised without contacting the gateway.
        """
        submit_input = validate_submit_input(submit_input)
        order = await self._require_order(order_id)
        if self._is_expired(order):
            expired = await self.store.update_order(order.id, {"status": types.EXPIRED})
            await self.store.add_action(order.id, types.ACTION_SUBMIT_ORDER, types.ACTION_FAILED, {
                "error": "Order quote expired",
                "expiresAt": order.expires_at,
            })
            await self.store.add_event(order.id, types.EVENT_ORDER_EXPIRED, order.status, expired.status, {
                "expiresAt": order.expires_at,
            })
            print(f"[BRIDGE] Order {order.id[:8]} submit rejected — quote expired at {order.expires_at}")
            raise OrderExpiredError(order.id, order.expires_at)

        result = await self.swap_client.submit_incoming_swap(order, submit_input)
        source_tx_id = result.get("source_tx_id")
        updated = await self.store.update_order(order.id, {
            "status": types.SOURCE_SUBMITTED,
            "source_tx_id": source_tx_id,
            "last_error": None,
        })
        await self.store.add_action(order.id, types.ACTION_SUBMIT_ORDER, types.ACTION_SUCCESS, {
            "sourceTxId": source_tx_id,
        })
        await self.store.add_event(order.id, types.EVENT_ORDER_SUBMITTED, order.status, updated.status, {
            "sourceTxId": source_tx_id,
        })
        print(f"[BRIDGE] Order {order.id[:8]} submitted — btc tx {source_tx_id}")
        return updated

    async def submit_order_from_payload(self, order_id: str, payload: dict) -> BridgeOrder:
        return await self.submit_order(order_id, validate_submit_payload(payload))

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get_order(self, order_id: str) -> BridgeOrder:
        return await self._require_order(order_id)

    async def list_orders(self, wallet_address: str, page=None, limit=None) -> OrderPage:
        page_num, limit_num = validate_pagination(page, limit)
        return await self.store.list_orders_by_wallet(
            normalize_wallet_address(wallet_address), page_num, limit_num,
        )

    # ------------------------------------------------------------------
    # Reconciliation
    # ------------------------------------------------------------------

    async def retry_order(self, order_id: str) -> BridgeOrder:
        """Operator/user-triggered reconcile, recorded as MANUAL_RETRY."""
        order = await self._require_order(order_id)
        await self.store.add_action(order.id, types.ACTION_MANUAL_RETRY, types.ACTION_SUCCESS)
        return await self.reconcile_order(order.id)

    async def reconcile_order(self, order_id: str) -> BridgeOrder:
        """One reconciliation pass for one order. Passes for the same order
        id are serialized within this process."""
        async with self._order_lock(order_id):
            return await self._reconcile(order_id)

    async def _reconcile(self, order_id: str) -> BridgeOrder:
        order = await self._require_order(order_id)
        snapshot = await self.swap_client.get_order_snapshot(order)

        next_status = map_external_state_to_status(snapshot.status_raw)
        destination_tx_id = snapshot.destination_tx_id or order.destination_tx_id
        last_error = None

        # At most one claim or refund per pass, gated by the gateway's own flags
        if snapshot.is_claimable:
            ok, tx_id, last_error = await self._attempt(order, types.ACTION_AUTO_CLAIM, self.swap_client.try_claim)
            if ok:
                self._claims_ok += 1
                next_status = types.SETTLED
                destination_tx_id = tx_id or destination_tx_id
            else:
                self._claims_failed += 1
                next_status = types.CLAIMING
        elif snapshot.is_refundable:
            ok, tx_id, last_error = await self._attempt(order, types.ACTION_AUTO_REFUND, self.swap_client.try_refund)
            if ok:
                self._refunds_ok += 1
                next_status = types.REFUNDED
                destination_tx_id = tx_id or destination_tx_id
            else:
                self._refunds_failed += 1
                next_status = types.REFUNDING

        source_tx_id = snapshot.source_tx_id or order.source_tx_id
        updated = await self.store.update_order(order.id, {
            "status": next_status,
            "source_tx_id": source_tx_id,
            "destination_tx_id": destination_tx_id,
            "raw_state": snapshot.raw_state,
            "last_error": last_error,
        })

        status_raw = "" if snapshot.status_raw is None else str(snapshot.status_raw)
        await self.store.add_action(order.id, types.ACTION_POLL_ORDER, types.ACTION_SUCCESS, {
            "statusRaw": status_raw,
            "mappedStatus": next_status,
            "sourceTxId": source_tx_id,
            "destinationTxId": destination_tx_id,
        })
        await self.store.add_event(order.id, types.EVENT_ORDER_RECONCILED, order.status, updated.status, {
            "statusRaw": status_raw,
            "sourceTxId": source_tx_id,
            "destinationTxId": destination_tx_id,
        })
        self._reconciled += 1

        if order.status != updated.status:
            final = " (final)" if types.is_terminal(updated.status) else ""
            print(f"[BRIDGE] Order {order.id[:8]}: {order.status} → {updated.status}{final} (gateway: {status_raw})")
        elif self.verbose:
            print(f"[BRIDGE] Order {order.id[:8]}: unchanged {updated.status} (gateway: {status_raw})")
        return updated

    async def _attempt(self, order: BridgeOrder, action_type: str, action_fn):
        """Run a claim/refund and audit it. Returns (success, tx_id, error).

        A raising gateway call counts as a failed attempt: the next pass
        retries if the gateway still reports the swap as actionable.
        """
        try:
            result = await action_fn(order)
        except Exception as e:
            error = str(e) or type(e).__name__
            print(f"[BRIDGE] Order {order.id[:8]}: {action_type} raised — {error}")
            await self.store.add_action(order.id, action_type, types.ACTION_FAILED, {
                "txId": None,
                "error": error,
            })
            return False, None, error

        await self.store.add_action(
            order.id, action_type,
            types.ACTION_SUCCESS if result.success else types.ACTION_FAILED,
            {"txId": result.tx_id},
        )
        if result.success:
            print(f"[BRIDGE] Order {order.id[:8]}: {action_type} OK tx={result.tx_id}")
        else:
            print(f"[BRIDGE] Order {order.id[:8]}: {action_type} not accepted by gateway — will retry")
        return result.success, result.tx_id, None

    async def reconcile_active_orders(self) -> dict:
        """Reconcile every non-terminal order, oldest update first.

        One failing order never stops the rest of the batch.
        """
        active = await self.store.get_active_orders(self.active_batch_limit)
        summary = {"checked": len(active), "reconciled": 0, "failed": 0}
        if not active:
            return summary

        for order in active:
            try:
                await self.reconcile_order(order.id)
                summary["reconciled"] += 1
            except asyncio.CancelledError:
                raise
            except Exception as e:
                summary["failed"] += 1
                self._reconcile_errors += 1
                print(f"[BRIDGE] Reconcile failed for order {order.id[:8]} ({order.status}): {e}")

        print(f"[BRIDGE] Recovery pass: {summary['reconciled']}/{summary['checked']} reconciled, "
              f"{summary['failed']} failed")
        return summary

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _require_order(self, order_id: str) -> BridgeOrder:
        order = await self.store.get_order_by_id(order_id)
        if order is None:
            raise OrderNotFoundError(order_id)
        return order

    @staticmethod
    def _is_expired(order: BridgeOrder) -> bool:
        if not order.expires_at:
            return False
        expires = _parse_iso(order.expires_at)
        if expires is None:
            print(f"[BRIDGE] Order {order.id[:8]}: unparseable expires_at {order.expires_at!r} — ignoring")
            return False
        return expires < datetime.now(timezone.utc)

    @asynccontextmanager
    async def _order_lock(self, order_id: str):
        entry = self._order_locks.get(order_id)
        if entry is None:
            entry = self._order_locks[order_id] = [asyncio.Lock(), 0]
        entry[1] += 1
        try:
            async with entry[0]:
                yield
        finally:
            entry[1] -= 1
            if entry[1] == 0:
                self._order_locks.pop(order_id, None)

    def metrics(self) -> dict:
        return {
            "reconciled": self._reconciled,
            "reconcile_errors": self._reconcile_errors,
            "claims_ok": self._claims_ok,
            "claims_failed": self._claims_failed,
            "refunds_ok": self._refunds_ok,
            "refunds_failed": self._refunds_failed,
            "poller": self._poller.metrics() if self._poller else None,
        }
