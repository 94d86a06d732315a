"""
Bridge order data model — canonical statuses, audit vocabularies, and the
frozen value objects passed between the service, the store and the gateway.
"""

import math
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

# === Canonical order statuses ===
CREATED = "CREATED"
AWAITING_USER_SIGNATURE = "AWAITING_USER_SIGNATURE"
SOURCE_SUBMITTED = "SOURCE_SUBMITTED"
SOURCE_CONFIRMED = "SOURCE_CONFIRMED"
CLAIMING = "CLAIMING"
REFUNDING = "REFUNDING"
SETTLED = "SETTLED"
REFUNDED = "REFUNDED"
FAILED = "FAILED"
EXPIRED = "EXPIRED"

ACTIVE_STATUSES = (
    CREATED,
    AWAITING_USER_SIGNATURE,
    SOURCE_SUBMITTED,
    SOURCE_CONFIRMED,
    CLAIMING,
    REFUNDING,
)
TERMINAL_STATUSES = (SETTLED, REFUNDED, FAILED, EXPIRED)
ORDER_STATUSES = ACTIVE_STATUSES + TERMINAL_STATUSES

# === Audit actions ===
ACTION_CREATE_ORDER = "CREATE_ORDER"
ACTION_PREPARE_ORDER = "PREPARE_ORDER"
ACTION_SUBMIT_ORDER = "SUBMIT_ORDER"
ACTION_POLL_ORDER = "POLL_ORDER"
ACTION_AUTO_CLAIM = "AUTO_CLAIM"
ACTION_AUTO_REFUND = "AUTO_REFUND"
ACTION_MANUAL_RETRY = "MANUAL_RETRY"

ACTION_SUCCESS = "SUCCESS"
ACTION_FAILED = "FAILED"

# === Transition events (free-form tags, these are the ones we emit) ===
EVENT_ORDER_CREATED = "ORDER_CREATED"
EVENT_ORDER_PREPARED = "ORDER_PREPARED"
EVENT_ORDER_SUBMITTED = "ORDER_SUBMITTED"
EVENT_ORDER_EXPIRED = "ORDER_EXPIRED"
EVENT_ORDER_RECONCILED = "ORDER_RECONCILED"

NETWORKS = ("mainnet", "testnet")
AMOUNT_TYPES = ("exactIn", "exactOut")
SOURCE_ASSET = "BTC"

PREPARE_SIGN_PSBT = "SIGN_PSBT"
PREPARE_ADDRESS = "ADDRESS"


def is_terminal(status: str) -> bool:
    return status in TERMINAL_STATUSES


@dataclass(frozen=True)
class CreateOrderInput:
    """Validated create request (see validation.validate_create_order_payload)."""
    network: str
    destination_asset: str
    amount: str             # base-10 integer string, smallest unit, > 0
    amount_type: str        # "exactIn" | "exactOut"
    receive_address: str
    wallet_address: str     # lower-cased
    source_asset: str = SOURCE_ASSET


@dataclass(frozen=True)
class SubmitInput:
    signed_psbt_base64: Optional[str] = None
    source_tx_id: Optional[str] = None


@dataclass(frozen=True)
class BridgeOrder:
    """One bridging attempt. Instances are snapshots; the store returns a new
    one on every write."""
    id: str
    network: str
    destination_asset: str
    amount: str
    amount_type: str
    receive_address: str
    wallet_address: str
    status: str
    source_asset: str = SOURCE_ASSET
    atomiq_swap_id: Optional[str] = None
    source_tx_id: Optional[str] = None
    destination_tx_id: Optional[str] = None
    quote: Optional[Dict[str, Any]] = None
    expires_at: Optional[str] = None
    last_error: Optional[str] = None
    raw_state: Optional[Dict[str, Any]] = None
    created_at: str = ""
    updated_at: str = ""

    @classmethod
    def from_row(cls, row: dict) -> "BridgeOrder":
        """Build from a bridge_orders row (snake_case, *_json columns)."""
        amount = row["amount"]
        if isinstance(amount, float) and amount.is_integer():
            amount = int(amount)  # PostgREST may hand NUMERIC back as a JSON number
        return cls(
            id=str(row["id"]),
            network=row["network"],
            source_asset=row.get("source_asset") or SOURCE_ASSET,
            destination_asset=row["destination_asset"],
            amount=str(amount),
            amount_type=row["amount_type"],
            receive_address=row["receive_address"],
            wallet_address=row["wallet_address"],
            status=row["status"],
            atomiq_swap_id=row.get("atomiq_swap_id"),
            source_tx_id=row.get("source_tx_id"),
            destination_tx_id=row.get("destination_tx_id"),
            quote=row.get("quote_json"),
            expires_at=row.get("expires_at"),
            last_error=row.get("last_error"),
            raw_state=row.get("raw_state_json"),
            created_at=row.get("created_at") or "",
            updated_at=row.get("updated_at") or "",
        )

    def to_dict(self) -> dict:
        """Public camelCase shape."""
        return {
            "id": self.id,
            "network": self.network,
            "sourceAsset": self.source_asset,
            "destinationAsset": self.destination_asset,
            "amount": self.amount,
            "amountType": self.amount_type,
            "receiveAddress": self.receive_address,
            "walletAddress": self.wallet_address,
            "status": self.status,
            "atomiqSwapId": self.atomiq_swap_id,
            "sourceTxId": self.source_tx_id,
            "destinationTxId": self.destination_tx_id,
            "quote": self.quote,
            "expiresAt": self.expires_at,
            "lastError": self.last_error,
            "rawState": self.raw_state,
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
        }

    def __repr__(self) -> str:
        return f"BridgeOrder({self.id[:8]} {self.status} swap={self.atomiq_swap_id})"


@dataclass(frozen=True)
class OrderPage:
    data: List[BridgeOrder]
    total: int
    page: int
    limit: int

    @classmethod
    def build(cls, data: List[BridgeOrder], total: int, page: int, limit: int) -> "OrderPage":
        return cls(data=list(data), total=total, page=page, limit=limit)

    @property
    def total_pages(self) -> int:
        if self.total == 0:
            return 0
        return math.ceil(self.total / self.limit)

    @property
    def has_next_page(self) -> bool:
        return self.page < self.total_pages

    @property
    def has_prev_page(self) -> bool:
        return self.page > 1

    @property
    def meta(self) -> dict:
        return {
            "total": self.total,
            "page": self.page,
            "limit": self.limit,
            "totalPages": self.total_pages,
            "hasNextPage": self.has_next_page,
            "hasPrevPage": self.has_prev_page,
        }

    def to_dict(self) -> dict:
        return {"data": [o.to_dict() for o in self.data], "meta": self.meta}


@dataclass(frozen=True)
class PrepareResult:
    """Funding instructions: either a PSBT to sign or an address to pay."""
    type: str                                   # SIGN_PSBT | ADDRESS
    psbt_base64: Optional[str] = None
    sign_inputs: Optional[Tuple[int, ...]] = None
    deposit_address: Optional[str] = None
    amount_sats: Optional[str] = None
    raw: Any = None

    def to_dict(self) -> dict:
        payload: Dict[str, Any] = {"type": self.type}
        if self.psbt_base64 is not None:
            payload["psbtBase64"] = self.psbt_base64
        if self.sign_inputs is not None:
            payload["signInputs"] = list(self.sign_inputs)
        if self.deposit_address is not None:
            payload["depositAddress"] = self.deposit_address
        if self.amount_sats is not None:
            payload["amountSats"] = self.amount_sats
        if self.raw is not None:
            payload["raw"] = self.raw
        return payload


@dataclass(frozen=True)
class OrderSnapshot:
    """Live view of the external swap, as reported by the gateway."""
    status_raw: Any = None
    source_tx_id: Optional[str] = None
    destination_tx_id: Optional[str] = None
    raw_state: Dict[str, Any] = field(default_factory=dict)
    is_claimable: bool = False
    is_refundable: bool = False


@dataclass(frozen=True)
class ActionResult:
    """Outcome of a claim or refund attempt."""
    success: bool
    tx_id: Optional[str] = None
