"""
Pytest fixtures: an in-memory order store and a scriptable swap gateway.

InMemoryOrderStore mirrors bridge.db.client.Database (same method names,
same patch semantics) so the service can be exercised without Supabase.
StubSwapClient mirrors bridge.atomiq.client.AtomiqClient.
"""

import asyncio
import dataclasses
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

import pytest

from bridge.orders import types
from bridge.orders.errors import BridgeError, OrderNotFoundError, UpstreamError
from bridge.orders.types import (
    ActionResult,
    BridgeOrder,
    CreateOrderInput,
    OrderPage,
    OrderSnapshot,
    PrepareResult,
    SubmitInput,
)

_BASE_TIME = datetime(2026, 1, 1, tzinfo=timezone.utc)

RECEIVE_ADDRESS = "0x" + "0" * 61 + "abc"
WALLET = "0xwallet"


def make_input(**overrides) -> CreateOrderInput:
    fields = dict(
        network="testnet",
        destination_asset="USDC",
        amount="10000",
        amount_type="exactIn",
        receive_address=RECEIVE_ADDRESS,
        wallet_address=WALLET,
    )
    fields.update(overrides)
    return CreateOrderInput(**fields)


class InMemoryOrderStore:
    """Fake order store. Records every action and event it is given."""

    def __init__(self):
        self.orders: Dict[str, BridgeOrder] = {}
        self.actions: List[Dict[str, Any]] = []
        self.events: List[Dict[str, Any]] = []
        self.initialized = False
        self._clock = 0

    def _tick(self) -> str:
        self._clock += 1
        return (_BASE_TIME + timedelta(seconds=self._clock)).isoformat()

    async def init(self):
        self.initialized = True

    async def create_order(self, order_input, status, atomiq_swap_id=None, quote=None,
                           expires_at=None, raw_state=None) -> BridgeOrder:
        now = self._tick()
        order = BridgeOrder(
            id=str(uuid.uuid4()),
            network=order_input.network,
            source_asset=order_input.source_asset,
            destination_asset=order_input.destination_asset,
            amount=order_input.amount,
            amount_type=order_input.amount_type,
            receive_address=order_input.receive_address,
            wallet_address=order_input.wallet_address,
            status=status,
            atomiq_swap_id=atomiq_swap_id,
            quote=quote,
            expires_at=expires_at,
            raw_state=raw_state,
            created_at=now,
            updated_at=now,
        )
        self.orders[order.id] = order
        return order

    async def get_order_by_id(self, order_id) -> Optional[BridgeOrder]:
        return self.orders.get(order_id)

    async def list_orders_by_wallet(self, wallet_address, page, limit) -> OrderPage:
        matching = sorted(
            (o for o in self.orders.values() if o.wallet_address == wallet_address),
            key=lambda o: o.created_at,
            reverse=True,
        )
        offset = (page - 1) * limit
        return OrderPage.build(matching[offset:offset + limit], len(matching), page, limit)

    async def update_order(self, order_id, patch) -> BridgeOrder:
        current = self.orders.get(order_id)
        if current is None:
            raise OrderNotFoundError(order_id)
        new_swap_id = patch.get("atomiq_swap_id", current.atomiq_swap_id)
        if current.atomiq_swap_id and new_swap_id != current.atomiq_swap_id:
            raise BridgeError("atomiq_swap_id is immutable once set")
        updated = dataclasses.replace(current, updated_at=self._tick(), **patch)
        self.orders[order_id] = updated
        return updated

    async def get_active_orders(self, limit=50) -> List[BridgeOrder]:
        active = [o for o in self.orders.values() if o.status in types.ACTIVE_STATUSES]
        return sorted(active, key=lambda o: o.updated_at)[:limit]

    async def add_action(self, order_id, action_type, action_status, payload=None):
        self.actions.append({
            "order_id": order_id,
            "action_type": action_type,
            "action_status": action_status,
            "payload": payload,
        })

    async def add_event(self, order_id, event_type, from_status, to_status, payload=None):
        self.events.append({
            "order_id": order_id,
            "event_type": event_type,
            "from_status": from_status,
            "to_status": to_status,
            "payload": payload,
        })

    def actions_for(self, order_id, action_type=None) -> List[Dict[str, Any]]:
        return [
            a for a in self.actions
            if a["order_id"] == order_id and (action_type is None or a["action_type"] == action_type)
        ]

    def events_for(self, order_id) -> List[Dict[str, Any]]:
        return [e for e in self.events if e["order_id"] == order_id]

    def metrics(self) -> dict:
        return {"orders": len(self.orders)}


class StubSwapClient:
    """Scriptable gateway. Set snapshot / claim_result / refund_result (or the
    *_error fields) before driving the service."""

    def __init__(self):
        self.swap_counter = 0
        self.create_status_raw = "PR_CREATED"
        self.expires_at = (datetime.now(timezone.utc) + timedelta(hours=1)).isoformat()
        self.create_error: Optional[Exception] = None
        self.prepare_result = PrepareResult(
            type=types.PREPARE_SIGN_PSBT, psbt_base64="cHNidP8=", sign_inputs=(0,),
        )
        self.snapshot = OrderSnapshot(status_raw="PR_CREATED", raw_state={"state": "PR_CREATED"})
        self.snapshots: Dict[str, OrderSnapshot] = {}          # by swap id
        self.snapshot_errors: Dict[str, Exception] = {}        # by swap id
        self.snapshot_delay = 0.0
        self.claim_result = ActionResult(success=False)
        self.claim_error: Optional[Exception] = None
        self.refund_result = ActionResult(success=False)
        self.refund_error: Optional[Exception] = None
        self.calls: Dict[str, int] = {
            "create": 0, "prepare": 0, "submit": 0, "snapshot": 0, "claim": 0, "refund": 0,
        }
        self._in_flight = 0
        self.max_in_flight = 0

    def set_snapshot(self, status_raw, claimable=False, refundable=False,
                     source_tx_id=None, destination_tx_id=None):
        self.snapshot = OrderSnapshot(
            status_raw=status_raw,
            source_tx_id=source_tx_id,
            destination_tx_id=destination_tx_id,
            raw_state={"state": status_raw},
            is_claimable=claimable,
            is_refundable=refundable,
        )

    async def create_incoming_swap(self, network, destination_asset, amount, amount_type,
                                   receive_address) -> dict:
        self.calls["create"] += 1
        if self.create_error:
            raise self.create_error
        self.swap_counter += 1
        return {
            "atomiq_swap_id": f"swap-{self.swap_counter}",
            "status_raw": self.create_status_raw,
            "quote": {"amountIn": amount, "amountOut": "9950"},
            "expires_at": self.expires_at,
        }

    async def prepare_incoming_swap(self, order) -> PrepareResult:
        self.calls["prepare"] += 1
        return self.prepare_result

    async def submit_incoming_swap(self, order, submit: SubmitInput) -> dict:
        self.calls["submit"] += 1
        return {"source_tx_id": submit.source_tx_id or "btc-tx-from-psbt"}

    async def get_order_snapshot(self, order) -> OrderSnapshot:
        self.calls["snapshot"] += 1
        self._in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self._in_flight)
        try:
            if self.snapshot_delay:
                await asyncio.sleep(self.snapshot_delay)
            if order.atomiq_swap_id in self.snapshot_errors:
                raise self.snapshot_errors[order.atomiq_swap_id]
            return self.snapshots.get(order.atomiq_swap_id, self.snapshot)
        finally:
            self._in_flight -= 1

    async def try_claim(self, order) -> ActionResult:
        self.calls["claim"] += 1
        if self.claim_error:
            raise self.claim_error
        return self.claim_result

    async def try_refund(self, order) -> ActionResult:
        self.calls["refund"] += 1
        if self.refund_error:
            raise self.refund_error
        return self.refund_result

    async def close(self):
        pass


@pytest.fixture
def store():
    return InMemoryOrderStore()


@pytest.fixture
def swap_client():
    return StubSwapClient()


@pytest.fixture
def service(store, swap_client):
    from bridge.orders.service import BridgeOrderService
    return BridgeOrderService(store, swap_client)


@pytest.fixture
def gateway_error():
    return UpstreamError("Atomiq gateway POST /swaps failed: HTTP 500", status=500)
