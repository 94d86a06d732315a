"""
Maps the swap gateway's free-text swap state onto a canonical order status.

The gateway vocabulary is not fixed, so matching is by substring and the
first matching rule wins. Order matters: settlement evidence beats
confirmation evidence beats submission evidence.
"""

from typing import Any

from bridge.orders import types

_RULES = (
    (("CLAIMED", "SETTLED", "SUCCESS"), types.SETTLED),
    (("BTC_TX_CONFIRMED", "CONFIRMED"), types.SOURCE_CONFIRMED),
    (("COMMIT", "SUBMIT", "PENDING"), types.SOURCE_SUBMITTED),
    (("EXPIRE",), types.EXPIRED),
    (("REFUND",), types.REFUNDED),
    (("FAIL",), types.FAILED),
)


def map_external_state_to_status(raw_state: Any) -> str:
    value = "" if raw_state is None else str(raw_state).upper()
    for needles, status in _RULES:
        if any(needle in value for needle in needles):
            return status
    return types.CREATED
