"""
Atomiq swap gateway client — BTC → Starknet incoming swaps over JSON/HTTP.

The Atomiq SDK only ships for JavaScript, so a small gateway process wraps it
and exposes the handful of calls the bridge needs. One gateway per bitcoin
network. Gateway routes used here:

  POST /swaps                  create an incoming swap quote
  POST /swaps/{id}/execute     funding instructions (SDK txsExecute steps)
  POST /swaps/{id}/psbt        submit a signed funding PSBT
  GET  /swaps/{id}             live swap state
  POST /swaps/{id}/claim       claim on Starknet (409 when not claimable)
  POST /swaps/{id}/refund      refund on bitcoin (409 when not refundable)

Gateway payloads are read through bridge.payloads accessors: field names have
shifted between SDK versions (getState/state/status, inputTxId/btcTxId ...).
"""

import asyncio
from datetime import datetime, timezone
from typing import Dict, Optional

import aiohttp

from bridge.orders import types
from bridge.orders.errors import BridgeValidationError, UpstreamError
from bridge.orders.types import ActionResult, BridgeOrder, OrderSnapshot, PrepareResult, SubmitInput
from bridge.payloads import (
    as_boolean,
    as_number,
    as_optional_number,
    as_optional_string,
    as_string,
    first_present,
    parse_optional_boolean,
    pick_array,
)

HTTP_TIMEOUT_SEC = 30
HTTP_RETRY_ATTEMPTS = 3
HTTP_RETRY_BASE_DELAY = 0.5    # seconds — exponential backoff base
_RETRY_STATUSES = (429, 502, 503, 504)
MAX_RETRY_AFTER_SEC = 30.0     # cap on a gateway-supplied Retry-After
_NOT_ACTIONABLE_STATUSES = (409, 422)

_AMOUNT_TYPES = {"exactIn": "EXACT_IN", "exactOut": "EXACT_OUT"}


def _unwrap(payload) -> dict:
    """Gateway responses are either the object itself or {"data": {...}}."""
    if isinstance(payload, dict) and isinstance(payload.get("data"), dict):
        return payload["data"]
    return payload if isinstance(payload, dict) else {}


def _amount_like(value) -> Optional[str]:
    """SDK token amounts arrive as {amount|rawAmount|value} or as a scalar."""
    if isinstance(value, dict):
        value = first_present(value, ("amount", "rawAmount", "value"))
    if value is None or isinstance(value, (dict, list)):
        return None
    return str(value)


def _expiry_iso(value) -> Optional[str]:
    """Epoch milliseconds (SDK getTimeoutTime) or an ISO string → ISO string."""
    if isinstance(value, str) and value.strip() and as_optional_number(value) is None:
        return value.strip()
    millis = as_optional_number(value)
    if millis is None:
        return None
    return datetime.fromtimestamp(millis / 1000, tz=timezone.utc).isoformat()


def parse_prepare_result(raw) -> PrepareResult:
    """Pick the funding instruction out of the SDK's execution steps.

    The first "Payment" step carrying a FUNDED_PSBT or ADDRESS tx wins.
    Anything else falls back to an ADDRESS result holding the raw payload.
    """
    for step in pick_array(raw, ("steps", "data")):
        if step.get("name") != "Payment":
            continue
        for tx in pick_array(step.get("txs"), ("txs",)):
            tx_type = tx.get("type")
            if tx_type == "FUNDED_PSBT":
                sign_inputs = tx.get("signInputs")
                return PrepareResult(
                    type=types.PREPARE_SIGN_PSBT,
                    psbt_base64=tx.get("psbtBase64") if isinstance(tx.get("psbtBase64"), str) else None,
                    sign_inputs=(
                        tuple(v for v in sign_inputs if isinstance(v, int) and not isinstance(v, bool))
                        if isinstance(sign_inputs, list) else None
                    ),
                    raw=tx,
                )
            if tx_type == "ADDRESS":
                return PrepareResult(
                    type=types.PREPARE_ADDRESS,
                    deposit_address=tx.get("address") if isinstance(tx.get("address"), str) else None,
                    amount_sats=None if tx.get("amount") is None else str(tx.get("amount")),
                    raw=tx,
                )
    return PrepareResult(type=types.PREPARE_ADDRESS, raw=raw)


def _flag(value) -> bool:
    """JSON bool, or the "true"/"false" strings some gateway builds send."""
    return as_boolean(value, fallback=parse_optional_boolean(value) is True)


def parse_snapshot(payload) -> OrderSnapshot:
    data = _unwrap(payload)
    status_raw = first_present(data, ("state", "status", "swapState"))
    return OrderSnapshot(
        status_raw=status_raw,
        source_tx_id=as_optional_string(first_present(data, ("inputTxId", "sourceTxId", "btcTxId"))),
        destination_tx_id=as_optional_string(
            first_present(data, ("outputTxId", "destinationTxId", "claimTxId"))
        ),
        raw_state={"state": None if status_raw is None else str(status_raw)},
        is_claimable=_flag(first_present(data, ("isClaimable", "claimable"))),
        is_refundable=_flag(first_present(data, ("isRefundable", "refundable"))),
    )


class AtomiqClient:
    """Async client for the Atomiq swap gateway.

    Args:
        base_urls: {"mainnet": url, "testnet": url}
        api_key: optional bearer token for the gateway
    """

    def __init__(self, base_urls: Dict[str, str], api_key: str = "",
                 timeout: float = HTTP_TIMEOUT_SEC):
        self.base_urls = {k: v.rstrip("/") for k, v in base_urls.items()}
        self.api_key = api_key
        self.timeout = timeout
        self._session: Optional[aiohttp.ClientSession] = None
        # Metrics
        self._request_count = 0
        self._request_errors = 0
        self._request_retries = 0

    async def _ensure_session(self):
        if self._session is None or self._session.closed:
            headers = {"Accept": "application/json"}
            if self.api_key:
                headers["Authorization"] = f"Bearer {self.api_key}"
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self.timeout),
                headers=headers,
            )

    async def close(self):
        if self._session and not self._session.closed:
            await self._session.close()

    def _url(self, network: str, path: str) -> str:
        base = self.base_urls.get(network)
        if not base:
            raise BridgeValidationError(f"no swap gateway configured for network '{network}'")
        return f"{base}{path}"

    async def _request(self, method: str, network: str, path: str, body: Optional[dict] = None,
                       accept_statuses: tuple = ()):
        """Send one gateway request with retry on transport errors and 429/5xx.

        Returns (status, json). Non-2xx statuses outside accept_statuses raise
        UpstreamError.
        """
        url = self._url(network, path)
        await self._ensure_session()
        label = f"{method} {path}"

        for attempt in range(HTTP_RETRY_ATTEMPTS):
            last_attempt = attempt == HTTP_RETRY_ATTEMPTS - 1
            retry_after = 0.0
            try:
                async with self._session.request(method, url, json=body) as resp:
                    self._request_count += 1
                    try:
                        data = await resp.json(content_type=None)
                    except ValueError:
                        data = None
                    if 200 <= resp.status < 300 or resp.status in accept_statuses:
                        return resp.status, data
                    if resp.status in _RETRY_STATUSES and not last_attempt:
                        retry_reason = f"HTTP {resp.status}"
                        retry_after = min(as_number(resp.headers.get("Retry-After")), MAX_RETRY_AFTER_SEC)
                    else:
                        self._request_errors += 1
                        detail = as_string(first_present(data, ("error", "message")), "")
                        raise UpstreamError(
                            f"Atomiq gateway {label} failed: HTTP {resp.status}"
                            + (f" — {detail}" if detail else ""),
                            status=resp.status,
                        )
            except (aiohttp.ClientError, asyncio.TimeoutError) as e:
                self._request_errors += 1
                if last_attempt:
                    raise UpstreamError(f"Atomiq gateway {label} unreachable: {str(e) or type(e).__name__}") from e
                retry_reason = str(e) or type(e).__name__

            delay = max(HTTP_RETRY_BASE_DELAY * (2 ** attempt), retry_after)
            print(f"[ATOMIQ] {label} transient error (attempt {attempt+1}): {retry_reason}. "
                  f"Retry in {delay:.1f}s")
            self._request_retries += 1
            await asyncio.sleep(delay)

        raise UpstreamError(f"Atomiq gateway {label} failed after {HTTP_RETRY_ATTEMPTS} attempts")

    @staticmethod
    def _swap_path(order: BridgeOrder, suffix: str = "") -> str:
        if not order.atomiq_swap_id:
            raise UpstreamError(f"Order {order.id[:8]} has no atomiq swap id")
        return f"/swaps/{order.atomiq_swap_id}{suffix}"

    # ------------------------------------------------------------------
    # Swap lifecycle
    # ------------------------------------------------------------------

    async def create_incoming_swap(self, network: str, destination_asset: str, amount: str,
                                   amount_type: str, receive_address: str) -> dict:
        """Quote a BTC → destination_asset swap paying out to receive_address."""
        _, payload = await self._request("POST", network, "/swaps", {
            "from": types.SOURCE_ASSET,
            "to": destination_asset,
            "amount": amount,
            "amountType": _AMOUNT_TYPES.get(amount_type, "EXACT_IN"),
            "receiveAddress": receive_address,
        })
        data = _unwrap(payload)
        swap_id = as_optional_string(first_present(data, ("id", "swapId", "atomiqSwapId")))
        if not swap_id:
            raise UpstreamError("Unable to create Atomiq swap id")

        quote = data.get("quote") if isinstance(data.get("quote"), dict) else {
            "amountIn": _amount_like(data.get("input")),
            "amountOut": _amount_like(data.get("output")),
            "depositAddress": as_optional_string(data.get("address")),
        }
        return {
            "atomiq_swap_id": swap_id,
            "status_raw": first_present(data, ("state", "status")),
            "quote": quote,
            "expires_at": _expiry_iso(first_present(data, ("expiresAt", "timeoutTime", "expiry"))),
        }

    async def prepare_incoming_swap(self, order: BridgeOrder) -> PrepareResult:
        _, payload = await self._request("POST", order.network, self._swap_path(order, "/execute"))
        return parse_prepare_result(payload)

    async def submit_incoming_swap(self, order: BridgeOrder, submit: SubmitInput) -> dict:
        if submit.signed_psbt_base64:
            _, payload = await self._request(
                "POST", order.network, self._swap_path(order, "/psbt"),
                {"psbt": submit.signed_psbt_base64},
            )
            tx_id = as_optional_string(first_present(_unwrap(payload), ("txId", "sourceTxId")))
            return {"source_tx_id": tx_id or submit.source_tx_id}
        if submit.source_tx_id:
            return {"source_tx_id": submit.source_tx_id}
        raise BridgeValidationError("Either signedPsbtBase64 or sourceTxId must be provided")

    async def get_order_snapshot(self, order: BridgeOrder) -> OrderSnapshot:
        _, payload = await self._request("GET", order.network, self._swap_path(order))
        return parse_snapshot(payload)

    async def try_claim(self, order: BridgeOrder) -> ActionResult:
        return await self._try_action(order, "/claim")

    async def try_refund(self, order: BridgeOrder) -> ActionResult:
        return await self._try_action(order, "/refund")

    async def _try_action(self, order: BridgeOrder, suffix: str) -> ActionResult:
        status, payload = await self._request(
            "POST", order.network, self._swap_path(order, suffix),
            accept_statuses=_NOT_ACTIONABLE_STATUSES,
        )
        if status in _NOT_ACTIONABLE_STATUSES:
            return ActionResult(success=False)
        data = _unwrap(payload)
        tx_id = as_optional_string(first_present(data, ("txId", "transactionHash")))
        success = as_boolean(data.get("success"), fallback=tx_id is not None)
        return ActionResult(success=success, tx_id=tx_id)

    def metrics(self) -> dict:
        return {
            "requests": self._request_count,
            "errors": self._request_errors,
            "retries": self._request_retries,
        }
