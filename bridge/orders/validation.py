"""
Request validators for the bridge service boundary.
Every validator normalises its input and raises BridgeValidationError
on anything it cannot accept; none of them touch the store or the gateway.
"""

import re
from typing import Any, Tuple

from bridge.orders import types
from bridge.orders.errors import BridgeValidationError
from bridge.payloads import as_string, first_present

SUPPORTED_DESTINATION_ASSETS = ("USDC", "ETH", "STRK", "WBTC", "USDT", "TBTC")

DEFAULT_PAGE = 1
DEFAULT_LIMIT = 20
MAX_LIST_LIMIT = 100

# Starknet felt addresses live below 2**251
STARKNET_ADDRESS_BOUND = 2 ** 251
_HEX_ADDRESS = re.compile(r"^0x[0-9a-fA-F]{1,64}$")
_DIGITS = re.compile(r"^\d+$")


def normalize_wallet_address(value: Any) -> str:
    return as_string(value).strip().lower()


def validate_network(value: Any) -> str:
    normalized = as_string(value).strip().lower()
    if normalized not in types.NETWORKS:
        raise BridgeValidationError("network must be one of: mainnet, testnet")
    return normalized


def validate_amount_type(value: Any) -> str:
    normalized = as_string(value).strip()
    if normalized not in types.AMOUNT_TYPES:
        raise BridgeValidationError("amountType must be one of: exactIn, exactOut")
    return normalized


def validate_positive_integer_string(value: Any, field: str) -> str:
    """Base-10 integer string strictly greater than zero. Leading zeros are
    stripped so "0010" and "10" are stored the same way."""
    normalized = as_string(value).strip()
    if not _DIGITS.match(normalized):
        raise BridgeValidationError(f"{field} must be a positive integer string")
    if int(normalized) <= 0:
        raise BridgeValidationError(f"{field} must be greater than zero")
    return str(int(normalized))


def validate_destination_asset(value: Any) -> str:
    normalized = as_string(value).strip().upper()
    if normalized not in SUPPORTED_DESTINATION_ASSETS:
        raise BridgeValidationError(
            "destinationAsset is unsupported, use one of: "
            + ", ".join(SUPPORTED_DESTINATION_ASSETS)
        )
    return normalized


def validate_starknet_receive_address(value: Any) -> str:
    """0x-prefixed felt, returned zero-padded to 64 hex digits, lower-case."""
    raw = as_string(value).strip()
    if not raw:
        raise BridgeValidationError("receiveAddress is required")
    if not _HEX_ADDRESS.match(raw):
        raise BridgeValidationError("receiveAddress must be a valid Starknet address")
    as_int = int(raw, 16)
    if as_int >= STARKNET_ADDRESS_BOUND:
        raise BridgeValidationError("receiveAddress must be a valid Starknet address")
    return "0x" + format(as_int, "064x")


def validate_create_order_payload(payload: Any) -> types.CreateOrderInput:
    """Validate a create request. Accepts camelCase or snake_case keys."""
    body = payload if isinstance(payload, dict) else {}

    source_asset = as_string(first_present(body, ("sourceAsset", "source_asset"))).strip().upper()
    if source_asset != types.SOURCE_ASSET:
        raise BridgeValidationError("sourceAsset must be BTC for incoming bridge")

    wallet_address = normalize_wallet_address(first_present(body, ("walletAddress", "wallet_address")))
    if not wallet_address:
        raise BridgeValidationError("walletAddress is required")

    return types.CreateOrderInput(
        network=validate_network(body.get("network")),
        destination_asset=validate_destination_asset(
            first_present(body, ("destinationAsset", "destination_asset"))
        ),
        amount=validate_positive_integer_string(body.get("amount"), "amount"),
        amount_type=validate_amount_type(first_present(body, ("amountType", "amount_type"))),
        receive_address=validate_starknet_receive_address(
            first_present(body, ("receiveAddress", "receive_address"))
        ),
        wallet_address=wallet_address,
    )


def validate_create_order_input(order_input: types.CreateOrderInput) -> types.CreateOrderInput:
    """Re-check an already-built CreateOrderInput. Returns the normalised copy."""
    if as_string(order_input.source_asset).strip().upper() != types.SOURCE_ASSET:
        raise BridgeValidationError("sourceAsset must be BTC for incoming bridge")
    wallet_address = normalize_wallet_address(order_input.wallet_address)
    if not wallet_address:
        raise BridgeValidationError("walletAddress is required")
    return types.CreateOrderInput(
        network=validate_network(order_input.network),
        destination_asset=validate_destination_asset(order_input.destination_asset),
        amount=validate_positive_integer_string(order_input.amount, "amount"),
        amount_type=validate_amount_type(order_input.amount_type),
        receive_address=validate_starknet_receive_address(order_input.receive_address),
        wallet_address=wallet_address,
    )


def validate_submit_input(submit: types.SubmitInput) -> types.SubmitInput:
    return validate_submit_payload({
        "signedPsbtBase64": submit.signed_psbt_base64,
        "sourceTxId": submit.source_tx_id,
    })


def validate_submit_payload(payload: Any) -> types.SubmitInput:
    body = payload if isinstance(payload, dict) else {}
    signed_psbt = as_string(first_present(body, ("signedPsbtBase64", "signed_psbt_base64"))).strip()
    source_tx_id = as_string(first_present(body, ("sourceTxId", "source_tx_id"))).strip()
    if not signed_psbt and not source_tx_id:
        raise BridgeValidationError("signedPsbtBase64 or sourceTxId is required")
    return types.SubmitInput(
        signed_psbt_base64=signed_psbt or None,
        source_tx_id=source_tx_id or None,
    )


def _as_positive_int(value: Any, field: str) -> int:
    if isinstance(value, bool):
        raise BridgeValidationError(f"{field} must be a positive integer")
    if isinstance(value, int):
        parsed = value
    elif isinstance(value, float) and value.is_integer():
        parsed = int(value)
    elif isinstance(value, str) and _DIGITS.match(value.strip()):
        parsed = int(value.strip())
    else:
        raise BridgeValidationError(f"{field} must be a positive integer")
    if parsed < 1:
        raise BridgeValidationError(f"{field} must be a positive integer")
    return parsed


def validate_pagination(page: Any = None, limit: Any = None) -> Tuple[int, int]:
    """Returns (page, limit) with limit capped at MAX_LIST_LIMIT."""
    page_num = _as_positive_int(DEFAULT_PAGE if page is None else page, "page")
    limit_num = _as_positive_int(DEFAULT_LIMIT if limit is None else limit, "limit")
    return page_num, min(limit_num, MAX_LIST_LIMIT)
