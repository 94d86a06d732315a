"""Bridge error taxonomy. Callers map these to transport responses."""

from typing import Optional


class BridgeError(Exception):
    """Base for every error the bridge engine raises on purpose."""


class BridgeValidationError(BridgeError):
    """Malformed or unsupported input. Raised before any state change."""


class OrderNotFoundError(BridgeError):
    def __init__(self, order_id: str = ""):
        super().__init__("Bridge order not found")
        self.order_id = order_id


class OrderExpiredError(BridgeError):
    def __init__(self, order_id: str = "", expires_at: Optional[str] = None):
        super().__init__("Order quote expired")
        self.order_id = order_id
        self.expires_at = expires_at


class UpstreamError(BridgeError):
    """Swap gateway or store failure."""

    def __init__(self, message: str, status: Optional[int] = None):
        super().__init__(message)
        self.status = status
